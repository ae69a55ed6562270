"""
Per-Node Records

The per-node materialization of a DesiredProgram: kernel program state,
the ordered collection of attach records ("links") and the record's
status condition.

Invariants:
- ``link_id is not None`` implies ``link_status == AttachSuccess``
- a link with ``should_attach == False`` and no ``link_id`` is removed by
  the next link reconcile pass
- ``program_id`` is set exactly while a load has succeeded and no unload
  has succeeded since
"""

import uuid
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple

from .meta import Condition, ObjectMeta
from .program import ProgramKind


class LinkStatus(Enum):
    NOT_ATTACHED = "NotAttached"
    ATTACH_SUCCESS = "AttachSuccess"
    ATTACH_ERROR = "AttachError"
    DETACHED = "Detached"


class ProgramLinkStatus(Enum):
    SUCCESS = "Success"
    ERROR = "Error"


class RecordConditionType(Enum):
    """Conditions on a per-node record; exactly one is present at a time."""
    PENDING = "Pending"
    LOADED = "Loaded"
    NOT_LOADED = "NotLoaded"
    RECONCILE_SUCCESS = "ReconcileSuccess"
    RECONCILE_ERROR = "ReconcileError"
    DELETING = "Deleting"
    DELETE_ERROR = "DeleteError"


def new_link_uuid() -> str:
    return str(uuid.uuid4())


# =============================================================================
# ATTACH RECORDS
# =============================================================================

@dataclass
class AttachRecord:
    """
    One concrete attachment point.

    Subclasses list the fields that identify the attachment point in
    ``IDENTITY_FIELDS``; the volatile fields declared here never take part
    in identity comparison.
    """
    IDENTITY_FIELDS: ClassVar[Tuple[str, ...]] = ()

    should_attach: bool = True
    uuid: str = field(default_factory=new_link_uuid)
    link_id: Optional[int] = None
    link_status: LinkStatus = LinkStatus.NOT_ATTACHED
    error: str = ""

    # Set on the placeholder emitted when a container selector matches nothing
    no_containers_on_node: bool = False

    @property
    def attached(self) -> bool:
        return self.link_id is not None

    def describe(self) -> str:
        """Short human readable form of the identity fields."""
        parts = []
        for name in self.IDENTITY_FIELDS:
            value = getattr(self, name)
            if value in (None, "", [], ()):
                continue
            if isinstance(value, Enum):
                value = value.value
            parts.append(f"{name}={value}")
        if self.no_containers_on_node:
            parts.append("no-containers-on-node")
        return f"{type(self).__name__}({', '.join(parts)})"


@dataclass
class InterfaceLink(AttachRecord):
    """XDP, TC or TCX hook on one interface, optionally inside a network namespace."""
    IDENTITY_FIELDS: ClassVar[Tuple[str, ...]] = (
        "interface_name", "netns_path", "priority", "proceed_on", "direction",
        "no_containers_on_node",
    )

    interface_name: str = ""
    netns_path: Optional[str] = None
    priority: int = 0
    proceed_on: List[str] = field(default_factory=list)
    direction: Optional[str] = None


@dataclass
class KprobeLink(AttachRecord):
    IDENTITY_FIELDS: ClassVar[Tuple[str, ...]] = ("function_name", "offset")

    function_name: str = ""
    offset: int = 0


@dataclass
class UprobeLink(AttachRecord):
    IDENTITY_FIELDS: ClassVar[Tuple[str, ...]] = (
        "target", "function_name", "offset", "container_pid", "no_containers_on_node",
    )

    target: str = ""
    function_name: Optional[str] = None
    offset: int = 0
    container_pid: Optional[int] = None


@dataclass
class FentryLink(AttachRecord):
    """Fentry and fexit programs have a single attachment to the load-time function."""
    IDENTITY_FIELDS: ClassVar[Tuple[str, ...]] = ("function_name",)

    function_name: str = ""


@dataclass
class TracepointLink(AttachRecord):
    IDENTITY_FIELDS: ClassVar[Tuple[str, ...]] = ("name",)

    name: str = ""


# =============================================================================
# PROGRAM STATE AND RECORD
# =============================================================================

@dataclass
class ProgramState:
    """Node-scoped kernel program state."""
    program_id: Optional[int] = None
    program_link_status: ProgramLinkStatus = ProgramLinkStatus.SUCCESS


@dataclass
class PerNodeRecord:
    """One per (DesiredProgram, node); owns its attach records."""
    meta: ObjectMeta
    kind: ProgramKind
    node_name: str
    state: ProgramState = field(default_factory=ProgramState)
    links: List[AttachRecord] = field(default_factory=list)
    conditions: List[Condition] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.meta.name

    @property
    def program_id(self) -> Optional[int]:
        return self.state.program_id

    @property
    def condition_type(self) -> Optional[str]:
        if not self.conditions:
            return None
        return max(self.conditions, key=lambda c: c.last_transition_time).type

    def to_dict(self) -> Dict[str, Any]:
        """Status view of the record, suitable for dumping as YAML or JSON."""
        return {
            'name': self.meta.name,
            'node': self.node_name,
            'kind': self.kind.value,
            'owner': self.meta.owner.name if self.meta.owner else None,
            'programId': self.state.program_id,
            'programLinkStatus': self.state.program_link_status.value,
            'links': [_link_to_dict(link) for link in self.links],
            'conditions': [
                {'type': c.type, 'reason': c.reason, 'message': c.message}
                for c in self.conditions
            ],
        }


def _link_to_dict(link: AttachRecord) -> Dict[str, Any]:
    data: Dict[str, Any] = {'type': type(link).__name__}
    for f in fields(link):
        value = getattr(link, f.name)
        if isinstance(value, Enum):
            value = value.value
        data[f.name] = value
    return data
