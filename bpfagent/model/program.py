"""
Desired Program Model

Cluster-scoped description of one eBPF program: where its bytecode lives,
which nodes it should run on, and one attachment-kind specific info block
describing where it should be attached.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Union

from ..constants import Limits
from ..utils.error_handling import ConfigurationError
from .meta import Condition, ObjectMeta
from .selectors import LabelSelector


class ProgramKind(Enum):
    """Attachment kinds understood by the agent."""
    XDP = "XDP"
    TC = "TC"
    TCX = "TCX"
    KPROBE = "Kprobe"
    UPROBE = "Uprobe"
    FENTRY = "Fentry"
    FEXIT = "Fexit"
    TRACEPOINT = "Tracepoint"
    APPLICATION = "Application"

    @property
    def is_interface_hook(self) -> bool:
        return self in (ProgramKind.XDP, ProgramKind.TC, ProgramKind.TCX)


class PullPolicy(Enum):
    ALWAYS = "Always"
    IF_NOT_PRESENT = "IfNotPresent"
    NEVER = "Never"


class Direction(Enum):
    INGRESS = "ingress"
    EGRESS = "egress"


# Must match the runtime's internal proceed-on codes
XDP_PROCEED_ON: Dict[str, int] = {
    "Aborted": 0,
    "Drop": 1,
    "Pass": 2,
    "TX": 3,
    "ReDirect": 4,
    "DispatcherReturn": 31,
}

TC_PROCEED_ON: Dict[str, int] = {
    "UnSpec": -1,
    "OK": 0,
    "ReClassify": 1,
    "Shot": 2,
    "Pipe": 3,
    "Stolen": 4,
    "Queued": 5,
    "Repeat": 6,
    "ReDirect": 7,
    "Trap": 8,
    "DispatcherReturn": 30,
}

DEFAULT_XDP_PROCEED_ON = ["Pass", "DispatcherReturn"]
DEFAULT_TC_PROCEED_ON = ["Pipe", "DispatcherReturn"]


# =============================================================================
# SELECTORS AND BYTECODE
# =============================================================================

@dataclass
class BytecodeImage:
    """OCI image holding the bytecode."""
    url: str
    pull_policy: PullPolicy = PullPolicy.IF_NOT_PRESENT
    pull_secret: Optional[str] = None


@dataclass
class BytecodeSelector:
    """Exactly one of image or path must be set."""
    image: Optional[BytecodeImage] = None
    path: Optional[str] = None

    def validate(self) -> None:
        if (self.image is None) == (self.path is None):
            raise ConfigurationError("bytecode must set exactly one of image or path")


@dataclass
class InterfaceDiscoveryConfig:
    """Auto-discovery of node interfaces with allow and deny lists."""
    interface_auto_discovery: bool = False
    allowed_interfaces: List[str] = field(default_factory=list)
    excluded_interfaces: List[str] = field(default_factory=list)


@dataclass
class InterfaceSelector:
    """Selects the interfaces an interface hook is attached to."""
    interfaces: List[str] = field(default_factory=list)
    primary_node_interface: bool = False
    discovery: Optional[InterfaceDiscoveryConfig] = None

    def validate(self) -> None:
        chosen = sum([
            bool(self.interfaces),
            self.primary_node_interface,
            self.discovery is not None and self.discovery.interface_auto_discovery,
        ])
        if chosen == 0:
            raise ConfigurationError(
                "interface selector must set one of interfaces, primaryNodeInterface "
                "or interfacesDiscoveryConfig"
            )
        if chosen > 1:
            raise ConfigurationError("interface selector sets more than one selection mode")


@dataclass
class ContainerSelector:
    """Selects containers by namespace, pod labels and optional container names."""
    namespace: str = ""
    pods: LabelSelector = field(default_factory=LabelSelector)
    container_names: Optional[List[str]] = None


# =============================================================================
# KIND-SPECIFIC INFO BLOCKS
# =============================================================================

@dataclass
class InterfaceAttachSpec:
    """One attach spec of an XDP, TC or TCX program."""
    interface_selector: InterfaceSelector
    priority: int = Limits.PRIORITY_DEFAULT
    proceed_on: List[str] = field(default_factory=list)
    direction: Optional[Direction] = None
    network_namespaces: Optional[ContainerSelector] = None


@dataclass
class InterfaceHookInfo:
    links: List[InterfaceAttachSpec] = field(default_factory=list)


@dataclass
class KprobeAttachSpec:
    function_name: str
    offset: int = 0


@dataclass
class KprobeInfo:
    links: List[KprobeAttachSpec] = field(default_factory=list)
    retprobe: bool = False


@dataclass
class UprobeAttachSpec:
    target: str
    function_name: Optional[str] = None
    offset: int = 0
    containers: Optional[ContainerSelector] = None


@dataclass
class UprobeInfo:
    links: List[UprobeAttachSpec] = field(default_factory=list)
    retprobe: bool = False


@dataclass
class FentryInfo:
    """Fentry/fexit programs attach once, to the function named at load time."""
    function_name: str
    attach: bool = True


@dataclass
class TracepointAttachSpec:
    name: str


@dataclass
class TracepointInfo:
    links: List[TracepointAttachSpec] = field(default_factory=list)


KindInfo = Union[InterfaceHookInfo, KprobeInfo, UprobeInfo, FentryInfo, TracepointInfo]


@dataclass
class ApplicationProgram:
    """One sub-program of a composite application."""
    kind: ProgramKind
    bpf_function_name: str
    info: KindInfo


@dataclass
class ApplicationInfo:
    programs: List[ApplicationProgram] = field(default_factory=list)


INFO_TYPES = {
    ProgramKind.XDP: InterfaceHookInfo,
    ProgramKind.TC: InterfaceHookInfo,
    ProgramKind.TCX: InterfaceHookInfo,
    ProgramKind.KPROBE: KprobeInfo,
    ProgramKind.UPROBE: UprobeInfo,
    ProgramKind.FENTRY: FentryInfo,
    ProgramKind.FEXIT: FentryInfo,
    ProgramKind.TRACEPOINT: TracepointInfo,
    ProgramKind.APPLICATION: ApplicationInfo,
}


# =============================================================================
# DESIRED PROGRAM
# =============================================================================

@dataclass
class DesiredProgram:
    """
    Desired state of one eBPF program, as stored in the cluster.

    Owns one per-node record on every node its node selector matches.
    Program-level status conditions are written by the cluster status
    aggregator.
    """
    meta: ObjectMeta
    kind: ProgramKind
    info: Union[KindInfo, ApplicationInfo]
    bytecode: BytecodeSelector = field(default_factory=BytecodeSelector)
    bpf_function_name: str = ""
    global_data: Dict[str, bytes] = field(default_factory=dict)
    node_selector: LabelSelector = field(default_factory=LabelSelector)
    conditions: List[Condition] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.meta.name

    def validate(self) -> None:
        """Raise ConfigurationError for a spec the agent cannot act on."""
        expected = INFO_TYPES[self.kind]
        if not isinstance(self.info, expected):
            raise ConfigurationError(
                f"{self.kind.value} program {self.name!r} carries {type(self.info).__name__}, "
                f"expected {expected.__name__}"
            )
        self.bytecode.validate()

        if self.kind == ProgramKind.APPLICATION:
            if not self.info.programs:
                raise ConfigurationError(f"application {self.name!r} declares no programs")
            for sub in self.info.programs:
                if sub.kind == ProgramKind.APPLICATION:
                    raise ConfigurationError("applications cannot be nested")
                if not isinstance(sub.info, INFO_TYPES[sub.kind]):
                    raise ConfigurationError(
                        f"application {self.name!r}: {sub.kind.value} program "
                        f"{sub.bpf_function_name!r} carries {type(sub.info).__name__}"
                    )
                _validate_info(sub.kind, sub.info)
            return

        if not self.bpf_function_name:
            raise ConfigurationError(f"program {self.name!r} has no bpfFunctionName")
        _validate_info(self.kind, self.info)


def _validate_info(kind: ProgramKind, info: KindInfo) -> None:
    if kind.is_interface_hook:
        for spec in info.links:
            spec.interface_selector.validate()
            if not Limits.PRIORITY_MIN <= spec.priority <= Limits.PRIORITY_MAX:
                raise ConfigurationError(
                    f"priority {spec.priority} outside "
                    f"{Limits.PRIORITY_MIN}..{Limits.PRIORITY_MAX}"
                )
            if kind in (ProgramKind.TC, ProgramKind.TCX) and spec.direction is None:
                raise ConfigurationError(f"{kind.value} attach spec requires a direction")
            if kind == ProgramKind.TCX and spec.proceed_on:
                raise ConfigurationError("TCX programs do not take proceedOn")
            table = XDP_PROCEED_ON if kind == ProgramKind.XDP else TC_PROCEED_ON
            unknown = [p for p in spec.proceed_on if p not in table]
            if unknown:
                raise ConfigurationError(f"unknown {kind.value} proceedOn values: {unknown}")
    elif kind in (ProgramKind.FENTRY, ProgramKind.FEXIT):
        if not info.function_name:
            raise ConfigurationError(f"{kind.value} program requires functionName")
    elif kind == ProgramKind.KPROBE:
        for spec in info.links:
            if not spec.function_name:
                raise ConfigurationError("kprobe attach spec requires functionName")
    elif kind == ProgramKind.UPROBE:
        for spec in info.links:
            if not spec.target:
                raise ConfigurationError("uprobe attach spec requires a target")
    elif kind == ProgramKind.TRACEPOINT:
        for spec in info.links:
            if not spec.name:
                raise ConfigurationError("tracepoint attach spec requires a name")
