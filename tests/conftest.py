"""
Pytest configuration and shared fixtures for BPF Link Agent tests.

This module provides an in-memory cluster store, a fake bpfman runtime with
failure injection, nodes, pods and sample desired programs.
"""

import copy
import itertools
import logging
import os
import shutil
import tempfile
from collections import Counter
from pathlib import Path
from typing import Dict, Generator, List, Optional, Set

import pytest

# Add the parent directory to the path for imports
import sys
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from bpfagent.agent import ProgramAgent
from bpfagent.config import AgentConfig
from bpfagent.engine.expansion import ExpansionContext
from bpfagent.engine.lifecycle import LifecycleEngine
from bpfagent.model import (
    ApplicationInfo,
    ApplicationProgram,
    BytecodeSelector,
    ContainerSelector,
    ContainerStatus,
    DesiredProgram,
    Direction,
    FentryInfo,
    InterfaceAttachSpec,
    InterfaceHookInfo,
    InterfaceSelector,
    KprobeAttachSpec,
    KprobeInfo,
    LabelSelector,
    Node,
    ObjectMeta,
    Pod,
    ProgramKind,
    TracepointAttachSpec,
    TracepointInfo,
    UprobeAttachSpec,
    UprobeInfo,
)
from bpfagent.node import PodContainerGetter, StaticInterfaceDiscovery
from bpfagent.rpc import (
    AttachRequest,
    BpfmanClient,
    KernelInfo,
    LinkInfo,
    ListFilter,
    LoadRequest,
    ProgramInfo,
)
from bpfagent.store import InMemoryStore
from bpfagent.utils.error_handling import get_error_aggregator


NODE_NAME = "worker-1"
BYTECODE_PATH = "/opt/bytecode/prog.o"


# ===========================================================================
# Fake bpfman Runtime
# ===========================================================================

class FakeBpfmanClient(BpfmanClient):
    """
    In-process stand-in for the bpfman runtime.

    Failure injection:
        fail_load / fail_unload / fail_get / fail_list: every such call raises
        fail_attach_ifaces: attaches to these interfaces raise
        fail_attach_all: every attach raises
        fail_detach: every detach raises
        timeout_calls: these operation names raise TimeoutError
    """

    def __init__(self):
        self.programs: Dict[int, ProgramInfo] = {}
        self.link_owner: Dict[int, int] = {}
        self.calls: Counter = Counter()
        self.call_log: List[str] = []
        self.load_requests: List[LoadRequest] = []
        self.attach_requests: List[AttachRequest] = []
        self._program_ids = itertools.count(100)
        self._link_ids = itertools.count(1000)

        self.fail_load = False
        self.fail_unload = False
        self.fail_get = False
        self.fail_list = False
        self.fail_attach_all = False
        self.fail_attach_ifaces: Set[str] = set()
        self.fail_detach = False
        self.timeout_calls: Set[str] = set()

    def _enter(self, operation: str, timeout: Optional[float]) -> None:
        self.calls[operation] += 1
        self.call_log.append(operation)
        assert timeout is not None, f"{operation} called without a timeout"
        if operation in self.timeout_calls:
            raise TimeoutError(f"{operation} deadline exceeded")

    def load(self, request, timeout=None):
        self._enter('load', timeout)
        if self.fail_load:
            raise ConnectionError("bpfman unreachable")
        program_id = next(self._program_ids)
        self.load_requests.append(request)
        self.programs[program_id] = ProgramInfo(
            program_id=program_id,
            name=request.name,
            metadata=dict(request.metadata),
            kernel_info=KernelInfo(id=program_id, name=request.name,
                                   program_type=int(request.program_type), tag="abcd"),
        )
        return program_id

    def unload(self, program_id, timeout=None):
        self._enter('unload', timeout)
        if self.fail_unload:
            raise ConnectionError("bpfman unreachable")
        program = self.programs.pop(program_id, None)
        if program is None:
            raise RuntimeError(f"program {program_id} not loaded")
        for link in program.links:
            self.link_owner.pop(link.link_id, None)

    def attach(self, request, timeout=None):
        self._enter('attach', timeout)
        iface = getattr(request.info, 'iface', None)
        if self.fail_attach_all or (iface is not None and iface in self.fail_attach_ifaces):
            raise ConnectionError(f"attach failed on {iface}")
        program = self.programs.get(request.program_id)
        if program is None:
            raise RuntimeError(f"program {request.program_id} not loaded")
        link_id = next(self._link_ids)
        self.attach_requests.append(request)
        program.links.append(LinkInfo(link_id=link_id, metadata=dict(request.metadata)))
        self.link_owner[link_id] = request.program_id
        return link_id

    def detach(self, link_id, timeout=None):
        self._enter('detach', timeout)
        if self.fail_detach:
            raise ConnectionError("detach refused")
        program_id = self.link_owner.pop(link_id, None)
        if program_id is None:
            raise RuntimeError(f"link {link_id} not found")
        program = self.programs[program_id]
        program.links = [l for l in program.links if l.link_id != link_id]

    def list(self, list_filter: ListFilter, timeout=None):
        self._enter('list', timeout)
        if self.fail_list:
            raise ConnectionError("bpfman unreachable")
        results = []
        for program in self.programs.values():
            if all(program.metadata.get(k) == v for k, v in list_filter.match_metadata.items()):
                results.append(copy.deepcopy(program))
        return results

    def get(self, program_id, timeout=None):
        self._enter('get', timeout)
        if self.fail_get:
            raise ConnectionError("bpfman unreachable")
        program = self.programs.get(program_id)
        if program is None:
            raise RuntimeError(f"program {program_id} not loaded")
        return copy.deepcopy(program)

    def live_link_ids(self) -> Set[int]:
        return set(self.link_owner)

    def restart(self) -> None:
        """Forget every program and link, as a restarted runtime would."""
        self.programs.clear()
        self.link_owner.clear()

    def drop_link(self, link_id: int) -> None:
        """Remove a link behind the agent's back, as a runtime restart would."""
        program_id = self.link_owner.pop(link_id)
        program = self.programs[program_id]
        program.links = [l for l in program.links if l.link_id != link_id]


# ===========================================================================
# Builders
# ===========================================================================

def make_node(name: str = NODE_NAME, labels: Optional[Dict[str, str]] = None,
              addresses: Optional[List[str]] = None) -> Node:
    return Node(
        meta=ObjectMeta(name=name, labels=labels if labels is not None else {"role": "worker"}),
        addresses=addresses if addresses is not None else ["10.0.0.1"],
    )


def make_pod(name: str, labels: Dict[str, str], pids: Dict[str, int],
             node_name: str = NODE_NAME, namespace: str = "default") -> Pod:
    return Pod(
        meta=ObjectMeta(name=name, namespace=namespace, labels=labels),
        node_name=node_name,
        containers=[ContainerStatus(name=n, pid=p) for n, p in pids.items()],
    )


def make_program(name: str, kind: ProgramKind, info, bpf_function_name: str = "prog",
                 node_selector: Optional[LabelSelector] = None) -> DesiredProgram:
    return DesiredProgram(
        meta=ObjectMeta(name=name),
        kind=kind,
        info=info,
        bytecode=BytecodeSelector(path=BYTECODE_PATH),
        bpf_function_name=bpf_function_name,
        node_selector=node_selector or LabelSelector(),
    )


def xdp_program(name: str = "xdp-pass", interfaces: Optional[List[str]] = None,
                priority: int = 50, network_namespaces: Optional[ContainerSelector] = None,
                node_selector: Optional[LabelSelector] = None) -> DesiredProgram:
    spec = InterfaceAttachSpec(
        interface_selector=InterfaceSelector(interfaces=interfaces or ["eth0"]),
        priority=priority,
        network_namespaces=network_namespaces,
    )
    return make_program(name, ProgramKind.XDP, InterfaceHookInfo(links=[spec]), "xdp_pass",
                        node_selector)


def tc_program(name: str = "tc-count", interfaces: Optional[List[str]] = None) -> DesiredProgram:
    spec = InterfaceAttachSpec(
        interface_selector=InterfaceSelector(interfaces=interfaces or ["eth0"]),
        priority=10,
        direction=Direction.INGRESS,
    )
    return make_program(name, ProgramKind.TC, InterfaceHookInfo(links=[spec]), "tc_count")


def kprobe_program(name: str = "kprobe-open", functions: Optional[List[str]] = None,
                   retprobe: bool = False) -> DesiredProgram:
    info = KprobeInfo(
        links=[KprobeAttachSpec(function_name=f) for f in (functions or ["do_sys_open"])],
        retprobe=retprobe,
    )
    return make_program(name, ProgramKind.KPROBE, info, "kprobe_open")


def uprobe_program(name: str = "uprobe-malloc",
                   containers: Optional[ContainerSelector] = None) -> DesiredProgram:
    info = UprobeInfo(links=[UprobeAttachSpec(target="libc", function_name="malloc",
                                              containers=containers)])
    return make_program(name, ProgramKind.UPROBE, info, "uprobe_malloc")


def tracepoint_program(name: str = "tp-kill") -> DesiredProgram:
    info = TracepointInfo(links=[TracepointAttachSpec(name="syscalls/sys_enter_kill")])
    return make_program(name, ProgramKind.TRACEPOINT, info, "enter_kill")


def application_program(name: str = "app") -> DesiredProgram:
    info = ApplicationInfo(programs=[
        ApplicationProgram(
            kind=ProgramKind.XDP,
            bpf_function_name="xdp_stats",
            info=InterfaceHookInfo(links=[InterfaceAttachSpec(
                interface_selector=InterfaceSelector(interfaces=["eth0"]), priority=20)]),
        ),
        ApplicationProgram(
            kind=ProgramKind.FENTRY,
            bpf_function_name="fentry_open",
            info=FentryInfo(function_name="do_unlinkat"),
        ),
        ApplicationProgram(
            kind=ProgramKind.TRACEPOINT,
            bpf_function_name="enter_kill",
            info=TracepointInfo(links=[TracepointAttachSpec(name="syscalls/sys_enter_kill")]),
        ),
    ])
    return make_program(name, ProgramKind.APPLICATION, info, "")


# ===========================================================================
# Core Fixtures
# ===========================================================================

@pytest.fixture(autouse=True)
def clear_error_aggregator():
    """Error de-duplication is process-global; start every test clean."""
    get_error_aggregator().clear()
    yield
    get_error_aggregator().clear()


@pytest.fixture
def restore_logging():
    """Put the root logger back after a test reconfigures logging."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        if handler not in handlers:
            handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory that is cleaned up after the test."""
    tmpdir = tempfile.mkdtemp(prefix="bpfagent_test_")
    yield Path(tmpdir)
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
def store() -> InMemoryStore:
    """Provide an empty in-memory cluster store."""
    return InMemoryStore()


@pytest.fixture
def client() -> FakeBpfmanClient:
    """Provide a fake bpfman runtime with no programs loaded."""
    return FakeBpfmanClient()


@pytest.fixture
def node(store: InMemoryStore) -> Node:
    """Provide this test node, stored in the cluster store."""
    return store.create(make_node())


@pytest.fixture
def interfaces() -> StaticInterfaceDiscovery:
    """Provide a node with eth0 (primary), eth1 and loopback."""
    return StaticInterfaceDiscovery(
        interfaces={"eth0": [], "eth1": [], "lo": []},
        addresses={"eth0": ["10.0.0.1"], "eth1": ["192.168.1.5"], "lo": ["127.0.0.1"]},
    )


@pytest.fixture
def containers(store: InMemoryStore) -> PodContainerGetter:
    return PodContainerGetter(store, NODE_NAME)


@pytest.fixture
def context(node, interfaces, containers) -> ExpansionContext:
    return ExpansionContext(node=node, interfaces=interfaces, containers=containers)


@pytest.fixture
def engine(store, client, context) -> LifecycleEngine:
    """Provide a lifecycle engine for this test node."""
    return LifecycleEngine(store, client, context, rpc_timeout=2.0)


@pytest.fixture
def agent_config() -> AgentConfig:
    return AgentConfig(
        node_name=NODE_NAME,
        rpc_timeout=2.0,
        agent_retry_delay=5.0,
        resync_interval=60.0,
        workers=1,
    )


@pytest.fixture
def agent(store, client, node, interfaces, agent_config) -> ProgramAgent:
    """Provide a node agent for this test node."""
    return ProgramAgent(store, client, agent_config, interfaces=interfaces)
