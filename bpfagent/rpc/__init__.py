"""
Contract with the external load/attach/detach runtime.
"""

from .client import (
    AttachInfo,
    AttachRequest,
    AttachType,
    BpfmanClient,
    BytecodeLocation,
    FentryAttachInfo,
    FexitAttachInfo,
    KernelInfo,
    KprobeAttachInfo,
    LinkInfo,
    ListFilter,
    LoadRequest,
    ProgramInfo,
    ProgramType,
    TcAttachInfo,
    TcxAttachInfo,
    TracepointAttachInfo,
    UprobeAttachInfo,
    XdpAttachInfo,
    attach_program,
    detach_link,
    find_program_by_uuid,
    get_program,
    kernel_info_annotations,
    list_programs_by_uuid,
    load_program,
    resolve_bytecode,
    unload_program,
)

__all__ = [
    'AttachInfo',
    'AttachRequest',
    'AttachType',
    'BpfmanClient',
    'BytecodeLocation',
    'FentryAttachInfo',
    'FexitAttachInfo',
    'KernelInfo',
    'KprobeAttachInfo',
    'LinkInfo',
    'ListFilter',
    'LoadRequest',
    'ProgramInfo',
    'ProgramType',
    'TcAttachInfo',
    'TcxAttachInfo',
    'TracepointAttachInfo',
    'UprobeAttachInfo',
    'XdpAttachInfo',
    'attach_program',
    'detach_link',
    'find_program_by_uuid',
    'get_program',
    'kernel_info_annotations',
    'list_programs_by_uuid',
    'load_program',
    'resolve_bytecode',
    'unload_program',
]
