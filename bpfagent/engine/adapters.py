"""
Kind Adapters

One adapter per attachment kind. Adapters are the only kind-specific code:
the link and lifecycle engines work through this contract alone.

    adapter = get_adapter(ProgramKind.XDP)
    expected = adapter.expand(unit.info, ctx)
    request = adapter.build_attach_request(program_id, link)
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple, Type

from ..constants import MetadataKeys
from ..model.program import (
    DEFAULT_TC_PROCEED_ON,
    DEFAULT_XDP_PROCEED_ON,
    TC_PROCEED_ON,
    XDP_PROCEED_ON,
    DesiredProgram,
    KindInfo,
    KprobeInfo,
    ProgramKind,
    UprobeInfo,
)
from ..model.records import (
    AttachRecord,
    FentryLink,
    InterfaceLink,
    KprobeLink,
    TracepointLink,
    UprobeLink,
)
from ..rpc.client import (
    AttachInfo,
    AttachRequest,
    AttachType,
    BytecodeLocation,
    FentryAttachInfo,
    FexitAttachInfo,
    KprobeAttachInfo,
    LoadRequest,
    ProgramType,
    TcAttachInfo,
    TcxAttachInfo,
    TracepointAttachInfo,
    UprobeAttachInfo,
    XdpAttachInfo,
)
from . import expansion
from .expansion import ExpansionContext

logger = logging.getLogger(__name__)


@dataclass
class ProgramUnit:
    """
    One loadable program: a single-kind DesiredProgram, or one sub-program
    of an application. Bytecode and global data always come from the owner.
    """
    owner: DesiredProgram
    kind: ProgramKind
    bpf_function_name: str
    info: KindInfo
    app_program_id: Optional[str] = None

    @classmethod
    def from_program(cls, program: DesiredProgram) -> 'ProgramUnit':
        return cls(
            owner=program,
            kind=program.kind,
            bpf_function_name=program.bpf_function_name,
            info=program.info,
        )

    @property
    def name(self) -> str:
        if self.app_program_id:
            return f"{self.owner.name}/{self.app_program_id}"
        return self.owner.name


class KindAdapter(ABC):
    """Contract every attachment kind implements."""

    kind: ProgramKind
    program_type: ProgramType
    record_type: Type[AttachRecord]

    @property
    def identity_fields(self) -> Tuple[str, ...]:
        return self.record_type.IDENTITY_FIELDS

    @abstractmethod
    def expand(self, info: KindInfo, ctx: ExpansionContext) -> List[AttachRecord]:
        """Expected attach records for this node."""
        pass

    def build_load_request(
        self,
        unit: ProgramUnit,
        bytecode: BytecodeLocation,
        metadata: Dict[str, str],
    ) -> LoadRequest:
        return LoadRequest(
            bytecode=bytecode,
            name=unit.bpf_function_name,
            program_type=self.program_type,
            global_data=dict(unit.owner.global_data),
            metadata=dict(metadata),
        )

    @abstractmethod
    def build_attach_info(self, record: AttachRecord, unit: ProgramUnit) -> Optional[AttachInfo]:
        """Kind-specific attach info, or None when the record cannot be attached."""
        pass

    def build_attach_request(
        self,
        program_id: int,
        record: AttachRecord,
        unit: ProgramUnit,
    ) -> Optional[AttachRequest]:
        if record.no_containers_on_node:
            return None
        info = self.build_attach_info(record, unit)
        if info is None:
            return None
        return AttachRequest(
            program_id=program_id,
            info=info,
            metadata={MetadataKeys.UUID: record.uuid},
        )

    def is_attached(self, record: AttachRecord) -> bool:
        return record.link_id is not None


# =============================================================================
# INTERFACE HOOKS
# =============================================================================

def _proceed_on_codes(values: List[str], table: Dict[str, int], default: List[str]) -> List[int]:
    return [table[v] for v in (values or default) if v in table]


class _InterfaceHookAdapter(KindAdapter):
    record_type = InterfaceLink
    program_type = ProgramType.SCHED_CLS

    def expand(self, info, ctx):
        return expansion.expand_interface_hook(info, ctx)


class XdpAdapter(_InterfaceHookAdapter):
    kind = ProgramKind.XDP
    program_type = ProgramType.XDP

    def build_attach_info(self, record, unit):
        return XdpAttachInfo(
            iface=record.interface_name,
            priority=record.priority,
            proceed_on=_proceed_on_codes(record.proceed_on, XDP_PROCEED_ON, DEFAULT_XDP_PROCEED_ON),
            netns=record.netns_path or None,
        )


class TcAdapter(_InterfaceHookAdapter):
    kind = ProgramKind.TC

    def build_attach_info(self, record, unit):
        return TcAttachInfo(
            iface=record.interface_name,
            priority=record.priority,
            direction=record.direction,
            proceed_on=_proceed_on_codes(record.proceed_on, TC_PROCEED_ON, DEFAULT_TC_PROCEED_ON),
            netns=record.netns_path or None,
        )


class TcxAdapter(_InterfaceHookAdapter):
    kind = ProgramKind.TCX

    def build_attach_info(self, record, unit):
        return TcxAttachInfo(
            iface=record.interface_name,
            priority=record.priority,
            direction=record.direction,
            netns=record.netns_path or None,
        )


# =============================================================================
# PROBES
# =============================================================================

class KprobeAdapter(KindAdapter):
    kind = ProgramKind.KPROBE
    program_type = ProgramType.KPROBE
    record_type = KprobeLink

    def expand(self, info, ctx):
        return expansion.expand_kprobe(info, ctx)

    def build_attach_info(self, record, unit):
        retprobe = isinstance(unit.info, KprobeInfo) and unit.info.retprobe
        return KprobeAttachInfo(fn_name=record.function_name, offset=record.offset, retprobe=retprobe)


class UprobeAdapter(KindAdapter):
    kind = ProgramKind.UPROBE
    # Uprobes load as kprobe-type programs
    program_type = ProgramType.KPROBE
    record_type = UprobeLink

    def expand(self, info, ctx):
        return expansion.expand_uprobe(info, ctx)

    def build_attach_info(self, record, unit):
        retprobe = isinstance(unit.info, UprobeInfo) and unit.info.retprobe
        return UprobeAttachInfo(
            target=record.target,
            fn_name=record.function_name or None,
            offset=record.offset,
            retprobe=retprobe,
            container_pid=record.container_pid,
        )


class _TracingAdapter(KindAdapter):
    program_type = ProgramType.TRACING
    record_type = FentryLink
    attach_type: AttachType

    def expand(self, info, ctx):
        return expansion.expand_fentry(info, ctx)

    def build_load_request(self, unit, bytecode, metadata):
        request = super().build_load_request(unit, bytecode, metadata)
        request.function_name = unit.info.function_name
        request.attach_type = self.attach_type
        return request


class FentryAdapter(_TracingAdapter):
    kind = ProgramKind.FENTRY
    attach_type = AttachType.FENTRY

    def build_attach_info(self, record, unit):
        return FentryAttachInfo()


class FexitAdapter(_TracingAdapter):
    kind = ProgramKind.FEXIT
    attach_type = AttachType.FEXIT

    def build_attach_info(self, record, unit):
        return FexitAttachInfo()


class TracepointAdapter(KindAdapter):
    kind = ProgramKind.TRACEPOINT
    program_type = ProgramType.TRACEPOINT
    record_type = TracepointLink

    def expand(self, info, ctx):
        return expansion.expand_tracepoint(info, ctx)

    def build_attach_info(self, record, unit):
        return TracepointAttachInfo(tracepoint=record.name)


# =============================================================================
# REGISTRY
# =============================================================================

_ADAPTERS: Dict[ProgramKind, KindAdapter] = {}


def register_adapter(adapter_cls: Callable[[], KindAdapter]) -> None:
    adapter = adapter_cls()
    _ADAPTERS[adapter.kind] = adapter


for _cls in (XdpAdapter, TcAdapter, TcxAdapter, KprobeAdapter, UprobeAdapter,
             FentryAdapter, FexitAdapter, TracepointAdapter):
    register_adapter(_cls)


def get_adapter(kind: ProgramKind) -> KindAdapter:
    """Adapter for a single-program kind; applications have none."""
    try:
        return _ADAPTERS[kind]
    except KeyError:
        raise ValueError(f"no adapter for kind {kind.value}") from None
