"""
Agent Runtime

Wires one node agent, the optional cluster status aggregator and the event
router around a shared object store and RPC client, and seeds the store
with program manifests from disk.
"""

import logging
from typing import Any, Dict, Optional

from .agent import ProgramAgent
from .cluster.events import EventRouter
from .cluster.status import ProgramStatusAggregator
from .config.agent_config import AgentConfig, LoggingOptions, load_config
from .constants import ObjectKinds
from .logging_config import setup_logging
from .model.manifest import load_manifests
from .model.program import DesiredProgram
from .node.containers import ContainerGetter
from .node.interfaces import InterfaceDiscovery
from .rpc.client import BpfmanClient
from .store.base import Store, update_with_retry
from .utils.error_handling import NotFoundError, get_error_aggregator

logger = logging.getLogger(__name__)


def configure_logging(options: LoggingOptions) -> None:
    setup_logging(
        verbose=options.verbose,
        trace=options.trace,
        log_file=options.file,
        json_format=options.json,
    )


def apply_program(store: Store, program: DesiredProgram) -> DesiredProgram:
    """Create a desired program, or replace the desired state of an existing one."""
    try:
        store.get(ObjectKinds.DESIRED_PROGRAM, program.name)
    except NotFoundError:
        logger.info(f"Creating program {program.name} ({program.kind.value})")
        return store.create(program)

    def apply(fresh: DesiredProgram) -> bool:
        fresh.kind = program.kind
        fresh.info = program.info
        fresh.bytecode = program.bytecode
        fresh.bpf_function_name = program.bpf_function_name
        fresh.global_data = program.global_data
        fresh.node_selector = program.node_selector
        return True

    logger.info(f"Updating program {program.name}")
    return update_with_retry(store, ObjectKinds.DESIRED_PROGRAM, program.name, apply)


class AgentRuntime:
    """Agent process: controllers, event routing and manifest seeding."""

    def __init__(
        self,
        store: Store,
        client: BpfmanClient,
        config: Optional[AgentConfig] = None,
        interfaces: Optional[InterfaceDiscovery] = None,
        containers: Optional[ContainerGetter] = None,
        run_aggregator: bool = True,
    ):
        self.store = store
        self.config = config or AgentConfig()
        self._running = False

        self.agent = ProgramAgent(store, client, self.config,
                                  interfaces=interfaces, containers=containers)
        self.agent_controller = self.agent.build_controller()

        self.aggregator = None
        self.status_controller = None
        if run_aggregator:
            self.aggregator = ProgramStatusAggregator(
                store,
                retry_delay=self.config.operator_retry_delay,
                resync_interval=self.config.resync_interval,
            )
            self.status_controller = self.aggregator.build_controller()

        self.router = EventRouter(
            store,
            node_name=self.config.node_name,
            agent_enqueue=self.agent_controller.enqueue,
            status_enqueue=self.status_controller.enqueue if self.status_controller else None,
        )
        self.router.register()

    @classmethod
    def from_config_file(cls, path: Optional[str], store: Store, client: BpfmanClient,
                         **kwargs) -> 'AgentRuntime':
        """Load configuration, set up logging and build the runtime."""
        config = load_config(path)
        configure_logging(config.logging)
        return cls(store, client, config, **kwargs)

    def load_manifests(self, path: Optional[str] = None) -> int:
        """Apply every program found under ``path`` (default: config.manifests_path)."""
        path = path or self.config.manifests_path
        if not path:
            return 0
        programs = load_manifests(path)
        for program in programs:
            apply_program(self.store, program)
        logger.info(f"Applied {len(programs)} program manifests from {path}")
        return len(programs)

    def start(self):
        """Start the controllers and queue every known key once."""
        if self._running:
            logger.warning("Agent runtime already running")
            return

        for problem in self.config.validate():
            logger.warning(f"Configuration: {problem}")

        self._running = True
        self.agent_controller.start()
        self.agent_controller.resync()
        if self.status_controller is not None:
            self.status_controller.start()
            self.status_controller.resync()
        logger.info(f"Agent runtime started on node {self.config.node_name}")

    def stop(self):
        if not self._running:
            return
        self._running = False
        self.agent_controller.stop()
        if self.status_controller is not None:
            self.status_controller.stop()
        logger.info("Agent runtime stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    def get_status(self) -> Dict[str, Any]:
        status = {
            'node': self.config.node_name,
            'running': self._running,
            'agent_failures': self.agent_controller.failure_counts(),
            'error_summary': get_error_aggregator().get_error_summary(),
        }
        if self.status_controller is not None:
            status['status_failures'] = self.status_controller.failure_counts()
        return status
