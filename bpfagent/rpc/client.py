"""
bpfman RPC Contract

The per-node runtime that performs kernel loads and attaches is an external
service. This module defines the request/response contract the agent
consumes, the abstract client, and thin call helpers that bound every call
with a timeout and normalise failures into RpcError.

Every call is synchronous. A failed or timed-out call is an ordinary
per-record error for the caller; nothing here is fatal.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Callable, Dict, List, Optional, Tuple, Union

from ..constants import MetadataKeys, Timeouts
from ..model.program import BytecodeSelector, PullPolicy
from ..utils.error_handling import RpcError, RpcTimeoutError

logger = logging.getLogger(__name__)


class ProgramType(IntEnum):
    """Kernel program types, as reported by the runtime."""
    UNSPEC = 0
    KPROBE = 2
    SCHED_CLS = 3
    TRACEPOINT = 5
    XDP = 6
    TRACING = 26


class AttachType(IntEnum):
    """Attach type for TRACING programs."""
    FENTRY = 24
    FEXIT = 25


# =============================================================================
# REQUESTS
# =============================================================================

@dataclass
class BytecodeLocation:
    """Resolved bytecode location: an image reference or a file on the node."""
    image_url: Optional[str] = None
    image_pull_policy: int = 1
    username: Optional[str] = None
    password: Optional[str] = None
    file: Optional[str] = None


@dataclass
class LoadRequest:
    bytecode: BytecodeLocation
    name: str
    program_type: ProgramType
    global_data: Dict[str, bytes] = field(default_factory=dict)
    metadata: Dict[str, str] = field(default_factory=dict)
    # Fentry/fexit bind their target function at load time
    function_name: Optional[str] = None
    attach_type: Optional[AttachType] = None


@dataclass
class XdpAttachInfo:
    iface: str
    priority: int
    proceed_on: List[int] = field(default_factory=list)
    netns: Optional[str] = None


@dataclass
class TcAttachInfo:
    iface: str
    priority: int
    direction: str
    proceed_on: List[int] = field(default_factory=list)
    netns: Optional[str] = None


@dataclass
class TcxAttachInfo:
    iface: str
    priority: int
    direction: str
    netns: Optional[str] = None


@dataclass
class KprobeAttachInfo:
    fn_name: str
    offset: int = 0
    retprobe: bool = False


@dataclass
class UprobeAttachInfo:
    target: str
    fn_name: Optional[str] = None
    offset: int = 0
    retprobe: bool = False
    container_pid: Optional[int] = None


@dataclass
class FentryAttachInfo:
    pass


@dataclass
class FexitAttachInfo:
    pass


@dataclass
class TracepointAttachInfo:
    tracepoint: str


AttachInfo = Union[
    XdpAttachInfo, TcAttachInfo, TcxAttachInfo, KprobeAttachInfo, UprobeAttachInfo,
    FentryAttachInfo, FexitAttachInfo, TracepointAttachInfo,
]


@dataclass
class AttachRequest:
    program_id: int
    info: AttachInfo
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class ListFilter:
    program_type: Optional[ProgramType] = None
    match_metadata: Dict[str, str] = field(default_factory=dict)
    bpfman_programs_only: bool = True


# =============================================================================
# RESPONSES
# =============================================================================

@dataclass
class KernelInfo:
    id: int
    name: str = ""
    program_type: int = 0
    loaded_at: str = ""
    tag: str = ""
    gpl_compatible: bool = False
    map_ids: List[int] = field(default_factory=list)
    btf_id: int = 0
    bytes_xlated: int = 0
    jited: bool = False
    bytes_jited: int = 0
    bytes_memlock: int = 0
    verified_insns: int = 0


@dataclass
class LinkInfo:
    link_id: int
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class ProgramInfo:
    """One loaded program as reported by List/Get."""
    program_id: int
    name: str = ""
    metadata: Dict[str, str] = field(default_factory=dict)
    links: List[LinkInfo] = field(default_factory=list)
    kernel_info: Optional[KernelInfo] = None

    def link_ids(self) -> List[int]:
        return [link.link_id for link in self.links]

    def link_for_uuid(self, link_uuid: str) -> Optional[int]:
        """Handle of the live link whose attach metadata carries ``link_uuid``."""
        for link in self.links:
            if link.metadata.get(MetadataKeys.UUID) == link_uuid:
                return link.link_id
        return None


# =============================================================================
# CLIENT CONTRACT
# =============================================================================

class BpfmanClient(ABC):
    """
    Abstract load/attach/detach service.

    Implementations must honour ``timeout`` (seconds) and raise on failure;
    the helpers below turn any raised exception into RpcError.
    """

    @abstractmethod
    def load(self, request: LoadRequest, timeout: Optional[float] = None) -> int:
        """Load a program; returns the kernel program id."""

    @abstractmethod
    def unload(self, program_id: int, timeout: Optional[float] = None) -> None:
        """Unload a program and all of its links."""

    @abstractmethod
    def attach(self, request: AttachRequest, timeout: Optional[float] = None) -> int:
        """Attach a loaded program; returns the link handle."""

    @abstractmethod
    def detach(self, link_id: int, timeout: Optional[float] = None) -> None:
        """Detach one link."""

    @abstractmethod
    def list(self, list_filter: ListFilter, timeout: Optional[float] = None) -> List[ProgramInfo]:
        """List loaded programs matching the filter."""

    @abstractmethod
    def get(self, program_id: int, timeout: Optional[float] = None) -> ProgramInfo:
        """Get one loaded program with its live links."""


def _call(operation: str, func: Callable, *args, timeout: Optional[float] = None):
    try:
        return func(*args, timeout=timeout)
    except RpcError:
        raise
    except TimeoutError as e:
        raise RpcTimeoutError(operation, f"timed out after {timeout}s: {e}") from e
    except Exception as e:
        raise RpcError(operation, str(e)) from e


def load_program(client: BpfmanClient, request: LoadRequest,
                 timeout: float = Timeouts.RPC_DEFAULT) -> int:
    program_id = _call("load bpfProgram", client.load, request, timeout=timeout)
    logger.debug(f"Loaded {request.name} as program {program_id}")
    return program_id


def unload_program(client: BpfmanClient, program_id: int,
                   timeout: float = Timeouts.RPC_DEFAULT) -> None:
    _call("unload bpfProgram", client.unload, program_id, timeout=timeout)
    logger.debug(f"Unloaded program {program_id}")


def attach_program(client: BpfmanClient, request: AttachRequest,
                   timeout: float = Timeouts.RPC_DEFAULT) -> int:
    return _call("attach bpfProgram", client.attach, request, timeout=timeout)


def detach_link(client: BpfmanClient, link_id: int,
                timeout: float = Timeouts.RPC_DEFAULT) -> None:
    _call("detach link", client.detach, link_id, timeout=timeout)


def get_program(client: BpfmanClient, program_id: int,
                timeout: float = Timeouts.RPC_DEFAULT) -> ProgramInfo:
    return _call("get bpfProgram", client.get, program_id, timeout=timeout)


def list_programs_by_uuid(
    client: BpfmanClient,
    program_type: Optional[ProgramType] = None,
    timeout: float = Timeouts.RPC_DEFAULT,
) -> Dict[str, ProgramInfo]:
    """Map of load-time UUID metadata to program for every agent-managed program."""
    results = _call("list bpfPrograms", client.list,
                    ListFilter(program_type=program_type), timeout=timeout)

    out: Dict[str, ProgramInfo] = {}
    for info in results:
        program_uuid = info.metadata.get(MetadataKeys.UUID)
        if program_uuid is None:
            raise RpcError("list bpfPrograms",
                           f"program {info.program_id} carries no uuid metadata")
        out[program_uuid] = info
    return out


def find_program_by_uuid(
    client: BpfmanClient,
    program_uuid: str,
    timeout: float = Timeouts.RPC_DEFAULT,
) -> Optional[ProgramInfo]:
    """
    Find the program loaded for a record UID, if any.

    Raises RpcError if more than one program carries the UID.
    """
    results = _call(
        "list bpfPrograms", client.list,
        ListFilter(match_metadata={MetadataKeys.UUID: program_uuid}), timeout=timeout,
    )
    if not results:
        return None
    if len(results) != 1:
        raise RpcError("list bpfPrograms",
                       f"multiple programs found for uuid {program_uuid}: {len(results)}")
    return results[0]


def kernel_info_annotations(info: ProgramInfo) -> Dict[str, str]:
    """Convert a program's kernel info into record annotations."""
    kernel = info.kernel_info
    if kernel is None:
        return {}
    try:
        type_name = ProgramType(kernel.program_type).name.lower()
    except ValueError:
        type_name = str(kernel.program_type)
    return {
        "Kernel-ID": str(kernel.id),
        "Name": kernel.name,
        "Type": type_name,
        "Loaded-At": kernel.loaded_at,
        "Tag": kernel.tag,
        "GPL-Compatible": str(kernel.gpl_compatible).lower(),
        "Map-IDs": str(kernel.map_ids),
        "BTF-ID": str(kernel.btf_id),
        "Size-Translated-Bytes": str(kernel.bytes_xlated),
        "JITed": str(kernel.jited).lower(),
        "Size-JITed-Bytes": str(kernel.bytes_jited),
        "Kernel-Allocated-Memory-Bytes": str(kernel.bytes_memlock),
        "Verified-Instruction-Count": str(kernel.verified_insns),
    }


# =============================================================================
# BYTECODE RESOLUTION
# =============================================================================

PULL_POLICY_CODES = {
    PullPolicy.ALWAYS: 0,
    PullPolicy.IF_NOT_PRESENT: 1,
    PullPolicy.NEVER: 2,
}

# Looks up (username, password) for a pull secret name and registry domain
CredentialLookup = Callable[[str, str], Optional[Tuple[str, str]]]


def _image_domain(url: str) -> str:
    first = url.split('/', 1)[0]
    if '/' not in url or ('.' not in first and ':' not in first and first != 'localhost'):
        return "docker.io"
    return first


def resolve_bytecode(
    selector: BytecodeSelector,
    credentials: Optional[CredentialLookup] = None,
) -> BytecodeLocation:
    """Turn a bytecode selector into the location handed to Load."""
    selector.validate()

    if selector.path is not None:
        return BytecodeLocation(file=selector.path)

    image = selector.image
    username = password = None
    if image.pull_secret and credentials is not None:
        domain = _image_domain(image.url)
        # docker.io credentials are stored under the index URL
        if domain == "docker.io":
            domain = "https://index.docker.io/v1/"
        creds = credentials(image.pull_secret, domain)
        if creds is None:
            raise RpcError("resolve bytecode",
                           f"no registry credentials found in secret: {image.pull_secret}")
        username, password = creds

    return BytecodeLocation(
        image_url=image.url,
        image_pull_policy=PULL_POLICY_CODES.get(image.pull_policy, 1),
        username=username,
        password=password,
    )
