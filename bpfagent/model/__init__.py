"""
Data model: desired programs, per-node records, selectors and metadata.
"""

from .meta import (
    Condition,
    ContainerStatus,
    Node,
    ObjectMeta,
    OwnerReference,
    Pod,
    collapse_conditions,
    current_condition,
    set_condition,
)
from .selectors import LabelSelector, SelectorOperator, SelectorRequirement
from .program import (
    ApplicationInfo,
    ApplicationProgram,
    BytecodeImage,
    BytecodeSelector,
    ContainerSelector,
    DesiredProgram,
    Direction,
    FentryInfo,
    InterfaceAttachSpec,
    InterfaceDiscoveryConfig,
    InterfaceHookInfo,
    InterfaceSelector,
    KprobeAttachSpec,
    KprobeInfo,
    ProgramKind,
    PullPolicy,
    TracepointAttachSpec,
    TracepointInfo,
    UprobeAttachSpec,
    UprobeInfo,
)
from .records import (
    AttachRecord,
    FentryLink,
    InterfaceLink,
    KprobeLink,
    LinkStatus,
    PerNodeRecord,
    ProgramLinkStatus,
    ProgramState,
    RecordConditionType,
    TracepointLink,
    UprobeLink,
)
from .manifest import load_manifests, program_from_dict

__all__ = [
    # Metadata
    'Condition',
    'ContainerStatus',
    'Node',
    'ObjectMeta',
    'OwnerReference',
    'Pod',
    'collapse_conditions',
    'current_condition',
    'set_condition',

    # Selectors
    'LabelSelector',
    'SelectorOperator',
    'SelectorRequirement',

    # Desired programs
    'ApplicationInfo',
    'ApplicationProgram',
    'BytecodeImage',
    'BytecodeSelector',
    'ContainerSelector',
    'DesiredProgram',
    'Direction',
    'FentryInfo',
    'InterfaceAttachSpec',
    'InterfaceDiscoveryConfig',
    'InterfaceHookInfo',
    'InterfaceSelector',
    'KprobeAttachSpec',
    'KprobeInfo',
    'ProgramKind',
    'PullPolicy',
    'TracepointAttachSpec',
    'TracepointInfo',
    'UprobeAttachSpec',
    'UprobeInfo',

    # Records
    'AttachRecord',
    'FentryLink',
    'InterfaceLink',
    'KprobeLink',
    'LinkStatus',
    'PerNodeRecord',
    'ProgramLinkStatus',
    'ProgramState',
    'RecordConditionType',
    'TracepointLink',
    'UprobeLink',

    # Manifests
    'load_manifests',
    'program_from_dict',
]
