"""
Program Lifecycle Engine

Drives one per-node record through

    Pending -> Loaded -> ReconcileSuccess | ReconcileError -> Deleting -> gone

with NotLoaded when the load call fails and DeleteError when teardown
fails. Exactly one condition is present on the record after every pass.

Records are created with the lifecycle finalizer. Teardown detaches every
link, unloads the program once no links remain, and only then removes the
finalizer so the store can drop the record.

A stored program id is confirmed against the runtime before links are
converged. A program the runtime no longer holds, as after a restart, is
forgotten together with its link ids and loaded again.
"""

import hashlib
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from ..constants import Annotations, Labels, Limits, MetadataKeys, ObjectKinds, Timeouts
from ..model.meta import ObjectMeta, OwnerReference, collapse_conditions, set_condition
from ..model.program import BytecodeSelector
from ..model.records import LinkStatus, PerNodeRecord, ProgramLinkStatus, RecordConditionType
from ..rpc.client import (
    BpfmanClient,
    BytecodeLocation,
    find_program_by_uuid,
    get_program,
    kernel_info_annotations,
    load_program,
    resolve_bytecode,
    unload_program,
)
from ..store.base import Store, update_with_retry
from ..utils.error_handling import (
    ConfigurationError,
    InvariantViolation,
    NotFoundError,
    RpcError,
    handle_error,
)
from .adapters import ProgramUnit, get_adapter
from .expansion import ExpansionContext
from .links import LinkReconciler

logger = logging.getLogger(__name__)

BytecodeResolver = Callable[[BytecodeSelector], BytecodeLocation]


@dataclass
class ReconcileOutcome:
    """What one lifecycle pass did to one record."""
    record_name: str
    condition: Optional[RecordConditionType]
    error: Optional[Exception] = None
    deleted: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


# =============================================================================
# RECORD NAMING
# =============================================================================

def _short_hash(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()[:8]


def _fit_name(name: str) -> str:
    if len(name) <= Limits.MAX_NAME_LENGTH:
        return name
    return f"{name[:Limits.MAX_NAME_LENGTH - 9]}-{_short_hash(name)}"


def record_name(unit: ProgramUnit, node_name: str) -> str:
    """``<program>-<node>``, or ``<app>-<kind>-<hash>-<node>`` for sub-programs."""
    if unit.app_program_id:
        return _fit_name(
            f"{unit.owner.name}-{unit.kind.value.lower()}-"
            f"{_short_hash(unit.app_program_id)}-{node_name}"
        )
    return _fit_name(f"{unit.owner.name}-{node_name}")


def record_labels(unit: ProgramUnit, node_name: str) -> Dict[str, str]:
    labels = {
        Labels.PROGRAM_OWNER: unit.owner.name,
        Labels.HOSTNAME: node_name,
    }
    if unit.app_program_id:
        labels[Labels.APP_PROGRAM_ID] = unit.app_program_id
    return labels


# =============================================================================
# LIFECYCLE ENGINE
# =============================================================================

class LifecycleEngine:
    """
    Per-node lifecycle of the records of one node.

    Callers serialize by owning program, so a record is never reconciled by
    two threads at once.
    """

    def __init__(
        self,
        store: Store,
        client: BpfmanClient,
        context: ExpansionContext,
        rpc_timeout: float = Timeouts.RPC_DEFAULT,
        bytecode_resolver: BytecodeResolver = resolve_bytecode,
    ):
        self.store = store
        self.client = client
        self.context = context
        self.rpc_timeout = rpc_timeout
        self.bytecode_resolver = bytecode_resolver

    @property
    def node_name(self) -> str:
        return self.context.node.name

    # =========================================================================
    # Record creation
    # =========================================================================

    def ensure_record(self, unit: ProgramUnit, finalizer: str) -> PerNodeRecord:
        """
        Fetch this node's record for ``unit``, creating it in Pending if absent.

        Raises:
            InvariantViolation: if a record of that name is not owned by the program
        """
        name = record_name(unit, self.node_name)
        try:
            record = self.store.get(ObjectKinds.PER_NODE_RECORD, name)
        except NotFoundError:
            record = PerNodeRecord(
                meta=ObjectMeta(
                    name=name,
                    labels=record_labels(unit, self.node_name),
                    finalizers=[finalizer],
                    owner=OwnerReference(
                        kind=ObjectKinds.DESIRED_PROGRAM,
                        name=unit.owner.name,
                        uid=unit.owner.meta.uid,
                    ),
                ),
                kind=unit.kind,
                node_name=self.node_name,
            )
            record.conditions = set_condition([], RecordConditionType.PENDING.value,
                                              reason="Pending", message="Waiting for load")
            logger.info(f"Creating record {name} for {unit.name}")
            return self.store.create(record)

        if record.meta.owner is None:
            raise InvariantViolation(f"record {name} has no owner reference")
        if record.meta.owner.uid != unit.owner.meta.uid and not record.meta.being_deleted:
            raise InvariantViolation(
                f"record {name} is owned by {record.meta.owner.name} "
                f"({record.meta.owner.uid}), not {unit.owner.name} ({unit.owner.meta.uid})"
            )
        return record

    # =========================================================================
    # Reconcile
    # =========================================================================

    def reconcile(self, unit: ProgramUnit, record: PerNodeRecord) -> ReconcileOutcome:
        """Load if needed, converge links and set the record's condition."""
        if record.meta.being_deleted:
            return self.teardown(record, unit)

        adapter = get_adapter(unit.kind)
        record.conditions = collapse_conditions(record.conditions)

        if record.state.program_id is not None:
            self._confirm_loaded(record)

        if record.state.program_id is None:
            try:
                self._load(unit, record)
            except (RpcError, ConfigurationError) as e:
                handle_error(e, f"load {unit.name}", additional_context={'node': self.node_name})
                self._set_condition(record, RecordConditionType.NOT_LOADED, "LoadFailed", str(e))
                self._persist(record)
                return ReconcileOutcome(record.name, RecordConditionType.NOT_LOADED, error=e)

            self._set_condition(record, RecordConditionType.LOADED, "Loaded",
                                f"Program {record.state.program_id} loaded")
            record = self._persist(record)

        try:
            expected = adapter.expand(unit.info, self.context)
        except ConfigurationError as e:
            # Links are left untouched until the program is fixed
            handle_error(e, f"expand {unit.name}", additional_context={'node': self.node_name})
            self._set_condition(record, RecordConditionType.RECONCILE_ERROR,
                                "ConfigurationError", str(e))
            self._persist(record)
            return ReconcileOutcome(record.name, RecordConditionType.RECONCILE_ERROR, error=e)

        reconciler = LinkReconciler(self.client, adapter, unit, self.rpc_timeout)
        result = reconciler.reconcile(record.state.program_id, record.links, expected)
        record.links = result.links
        record.state.program_link_status = result.program_link_status
        no_containers = bool(expected) and all(link.no_containers_on_node for link in expected)
        record.meta.annotations[Annotations.NO_CONTAINERS_ON_NODE] = str(no_containers).lower()

        if result.error is not None or result.program_link_status == ProgramLinkStatus.ERROR:
            message = str(result.error) if result.error else "links not converged"
            self._set_condition(record, RecordConditionType.RECONCILE_ERROR, "LinkError", message)
            condition = RecordConditionType.RECONCILE_ERROR
        else:
            self._set_condition(record, RecordConditionType.RECONCILE_SUCCESS, "Success",
                                f"{len(record.links)} links reconciled")
            condition = RecordConditionType.RECONCILE_SUCCESS

        self._persist(record)
        error = result.error
        if error is None and condition == RecordConditionType.RECONCILE_ERROR:
            error = RpcError("reconcile links", f"{unit.name} links not converged")
        return ReconcileOutcome(record.name, condition, error=error)

    def _confirm_loaded(self, record: PerNodeRecord) -> None:
        """Drop the stored program id and link ids if the runtime lost the program."""
        stored_id = record.state.program_id
        try:
            live = find_program_by_uuid(self.client, record.meta.uid, timeout=self.rpc_timeout)
        except RpcError as e:
            logger.warning(f"Could not confirm program {stored_id} of {record.name}, "
                           f"using stored state: {e}")
            return

        if live is not None:
            if live.program_id != stored_id:
                logger.warning(f"Program of {record.name} is {live.program_id}, "
                               f"record says {stored_id}")
                record.state.program_id = live.program_id
            return

        logger.warning(f"Program {stored_id} of {record.name} is no longer loaded on "
                       f"{self.node_name}, reloading")
        record.state.program_id = None
        for link in record.links:
            link.link_id = None
            link.link_status = LinkStatus.NOT_ATTACHED

    def _load(self, unit: ProgramUnit, record: PerNodeRecord) -> None:
        adapter = get_adapter(unit.kind)

        # A load whose result was never persisted is found by the record UID
        existing = find_program_by_uuid(self.client, record.meta.uid, timeout=self.rpc_timeout)
        if existing is not None:
            logger.info(f"Adopting loaded program {existing.program_id} for {record.name}")
            record.state.program_id = existing.program_id
            record.meta.annotations.update(kernel_info_annotations(existing))
            return

        bytecode = self.bytecode_resolver(unit.owner.bytecode)
        request = adapter.build_load_request(unit, bytecode, {
            MetadataKeys.UUID: record.meta.uid,
            MetadataKeys.PROGRAM_NAME: unit.owner.name,
        })
        program_id = load_program(self.client, request, timeout=self.rpc_timeout)
        record.state.program_id = program_id
        logger.info(f"Loaded {unit.name} on {self.node_name} as program {program_id}")

        try:
            info = get_program(self.client, program_id, timeout=self.rpc_timeout)
            record.meta.annotations.update(kernel_info_annotations(info))
        except RpcError as e:
            logger.warning(f"Could not read kernel info of program {program_id}: {e}")

    # =========================================================================
    # Deletion
    # =========================================================================

    def delete(self, record: PerNodeRecord, unit: Optional[ProgramUnit] = None) -> ReconcileOutcome:
        """Request deletion of a record and tear it down."""
        if not record.meta.being_deleted:
            logger.info(f"Deleting record {record.name}")
            try:
                self.store.delete(ObjectKinds.PER_NODE_RECORD, record.name)
                record = self.store.get(ObjectKinds.PER_NODE_RECORD, record.name)
            except NotFoundError:
                return ReconcileOutcome(record.name, None, deleted=True)
        return self.teardown(record, unit)

    def teardown(self, record: PerNodeRecord, unit: Optional[ProgramUnit] = None) -> ReconcileOutcome:
        """Detach everything, unload once no links remain, then drop the finalizer."""
        adapter = get_adapter(record.kind)
        record.conditions = collapse_conditions(record.conditions)

        reconciler = LinkReconciler(self.client, adapter, unit, self.rpc_timeout, name=record.name)
        result = reconciler.reconcile(record.state.program_id, record.links, [])
        record.links = result.links
        record.state.program_link_status = result.program_link_status

        if record.links:
            if result.error is not None:
                self._set_condition(record, RecordConditionType.DELETE_ERROR, "DetachFailed",
                                    str(result.error))
                condition = RecordConditionType.DELETE_ERROR
            else:
                self._set_condition(record, RecordConditionType.DELETING, "Deleting",
                                    f"{len(record.links)} links remaining")
                condition = RecordConditionType.DELETING
            self._persist(record)
            error = result.error or RpcError("detach link", f"{len(record.links)} links remaining")
            return ReconcileOutcome(record.name, condition, error=error)

        if record.state.program_id is not None:
            try:
                unload_program(self.client, record.state.program_id, timeout=self.rpc_timeout)
            except RpcError as e:
                handle_error(e, f"unload {record.name}", additional_context={'node': self.node_name})
                self._set_condition(record, RecordConditionType.DELETE_ERROR, "UnloadFailed", str(e))
                self._persist(record)
                return ReconcileOutcome(record.name, RecordConditionType.DELETE_ERROR, error=e)
            logger.info(f"Unloaded program {record.state.program_id} of {record.name}")
            record.state.program_id = None

        self._set_condition(record, RecordConditionType.DELETING, "Deleting", "Removing finalizer")
        finalizers = list(record.meta.finalizers)
        self._persist(record, remove_finalizers=finalizers)
        logger.info(f"Record {record.name} torn down")
        return ReconcileOutcome(record.name, RecordConditionType.DELETING, deleted=True)

    # =========================================================================
    # Persistence
    # =========================================================================

    @staticmethod
    def _set_condition(record: PerNodeRecord, cond: RecordConditionType,
                       reason: str, message: str) -> None:
        record.conditions = set_condition(record.conditions, cond.value, reason, message)

    def _persist(self, record: PerNodeRecord,
                 remove_finalizers: Optional[List[str]] = None) -> PerNodeRecord:
        """
        Write the record's status back, re-reading it after a conflict.

        Links, program state, conditions and annotations belong to this
        engine and always win; other metadata comes from the fresh read.
        """
        def apply(fresh: PerNodeRecord) -> bool:
            fresh.links = record.links
            fresh.state = record.state
            fresh.conditions = record.conditions
            fresh.meta.annotations.update(record.meta.annotations)
            for finalizer in remove_finalizers or []:
                fresh.meta.remove_finalizer(finalizer)
            return True

        stored = update_with_retry(self.store, ObjectKinds.PER_NODE_RECORD, record.name, apply)
        return stored if stored is not None else record
