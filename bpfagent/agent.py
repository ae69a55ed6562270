"""
Node Agent

Per-node reconcile entry point. A key is the name of a DesiredProgram; one
reconcile brings every per-node record of that program on this node in
line with the program, the node's labels and the containers on the node:

- programs whose node selector matches get their record(s) created,
  loaded and their links converged
- records of a deleted, deselected or replaced program, and application
  sub-records no longer declared, are torn down and deleted

Every unit is reconciled even when an earlier one fails; the last error is
raised afterwards so the key is retried.

Usage:
    agent = ProgramAgent(store, client, config)
    controller = agent.build_controller()
    controller.start()
"""

import logging
from typing import List, Optional, Set

from .config.agent_config import AgentConfig
from .constants import Labels, ObjectKinds
from .engine.adapters import ProgramUnit
from .engine.application import decompose, finalizer_for
from .engine.expansion import ExpansionContext
from .engine.lifecycle import BytecodeResolver, LifecycleEngine, ReconcileOutcome
from .model.program import DesiredProgram
from .node.containers import ContainerGetter, PodContainerGetter
from .node.interfaces import HostInterfaceDiscovery, InterfaceDiscovery
from .rpc.client import BpfmanClient, resolve_bytecode
from .store.base import Store
from .utils.error_handling import ConfigurationError, NotFoundError, handle_error
from .workqueue import Controller

logger = logging.getLogger(__name__)


class ProgramAgent:
    """Reconciles desired programs into per-node records on one node."""

    def __init__(
        self,
        store: Store,
        client: BpfmanClient,
        config: Optional[AgentConfig] = None,
        interfaces: Optional[InterfaceDiscovery] = None,
        containers: Optional[ContainerGetter] = None,
        bytecode_resolver: BytecodeResolver = resolve_bytecode,
    ):
        self.store = store
        self.client = client
        self.config = config or AgentConfig()
        self.interfaces = interfaces or HostInterfaceDiscovery()
        self.containers = containers or PodContainerGetter(store, self.config.node_name)
        self.bytecode_resolver = bytecode_resolver

        logger.info(f"ProgramAgent initialized for node {self.node_name}")

    @property
    def node_name(self) -> str:
        return self.config.node_name

    def _engine(self) -> LifecycleEngine:
        node = self.store.get(ObjectKinds.NODE, self.node_name)
        context = ExpansionContext(
            node=node,
            interfaces=self.interfaces,
            containers=self.containers,
            excluded_interfaces=tuple(self.config.excluded_interfaces),
        )
        return LifecycleEngine(
            self.store, self.client, context,
            rpc_timeout=self.config.rpc_timeout,
            bytecode_resolver=self.bytecode_resolver,
        )

    def is_selected(self, program: Optional[DesiredProgram]) -> bool:
        """Whether ``program`` should have records on this node."""
        if program is None or program.meta.being_deleted:
            return False
        node = self.store.get(ObjectKinds.NODE, self.node_name)
        return program.node_selector.matches(node.meta.labels)

    # =========================================================================
    # Reconcile
    # =========================================================================

    def reconcile(self, key: str) -> List[ReconcileOutcome]:
        """
        Reconcile every record of program ``key`` on this node.

        Raises the last error encountered, after all records were processed.
        """
        engine = self._engine()

        try:
            program = self.store.get(ObjectKinds.DESIRED_PROGRAM, key)
        except NotFoundError:
            program = None

        outcomes: List[ReconcileOutcome] = []
        current: Set[str] = set()

        if self.is_selected(program):
            try:
                program.validate()
            except ConfigurationError as e:
                # Records are left as they are until the program is fixed
                handle_error(e, f"validate {key}", additional_context={'node': self.node_name})
                return outcomes

            finalizer = finalizer_for(program)
            for unit in decompose(program):
                record = engine.ensure_record(unit, finalizer)
                current.add(record.name)
                outcomes.append(engine.reconcile(unit, record))

        outcomes.extend(self._cleanup(engine, key, program, current))

        errors = [o.error for o in outcomes if o.error is not None]
        if errors:
            logger.warning(f"Reconcile of {key} on {self.node_name}: "
                           f"{len(errors)} of {len(outcomes)} records failed")
            raise errors[-1]

        logger.debug(f"Reconciled {key} on {self.node_name}: {len(outcomes)} records")
        return outcomes

    def _cleanup(
        self,
        engine: LifecycleEngine,
        key: str,
        program: Optional[DesiredProgram],
        current: Set[str],
    ) -> List[ReconcileOutcome]:
        """Tear down this node's records of ``key`` that are no longer wanted."""
        outcomes = []
        records = self.store.list(ObjectKinds.PER_NODE_RECORD, labels={
            Labels.PROGRAM_OWNER: key,
            Labels.HOSTNAME: self.node_name,
        })
        units = {}
        if program is not None:
            units = {u.app_program_id: u for u in decompose(program)}

        for record in records:
            if record.name in current:
                continue
            unit: Optional[ProgramUnit] = units.get(record.meta.labels.get(Labels.APP_PROGRAM_ID))
            logger.info(f"Record {record.name} is no longer wanted on {self.node_name}")
            outcomes.append(engine.delete(record, unit))
        return outcomes

    # =========================================================================
    # Wiring
    # =========================================================================

    def list_keys(self) -> List[str]:
        """Every program that has, or may need, a record on this node."""
        keys = {p.name for p in self.store.list(ObjectKinds.DESIRED_PROGRAM)}
        for record in self.store.list(ObjectKinds.PER_NODE_RECORD,
                                      labels={Labels.HOSTNAME: self.node_name}):
            owner = record.meta.labels.get(Labels.PROGRAM_OWNER)
            if owner:
                keys.add(owner)
        return sorted(keys)

    def build_controller(self) -> Controller:
        return Controller(
            name=f"agent-{self.node_name}",
            reconcile=self.reconcile,
            list_keys=self.list_keys,
            workers=self.config.workers,
            retry_delay=self.config.retry_delay,
            resync_interval=self.config.resync_interval,
        )
