"""
Cluster Status Aggregation

Rolls the per-node records of every DesiredProgram up into one
program-level condition:

- NotYetLoaded     no node record exists yet, or records are still loading
- ReconcileError   at least one node record failed
- ReconcileSuccess every node record succeeded
- Deleting         the program is being deleted and node records remain
- DeleteError      the program is being deleted and a node failed teardown

The aggregator owns the operator finalizer on DesiredPrograms: it is added
on first sight and removed only once no node record of the program is left.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from ..constants import Finalizers, Labels, ObjectKinds, Retry
from ..model.meta import current_condition, set_condition
from ..model.program import DesiredProgram
from ..model.records import PerNodeRecord, RecordConditionType
from ..store.base import Store, update_with_retry
from ..utils.error_handling import NotFoundError
from ..workqueue import Controller

logger = logging.getLogger(__name__)


class ProgramConditionType(Enum):
    """Program-level conditions written onto DesiredPrograms."""
    NOT_YET_LOADED = "NotYetLoaded"
    RECONCILE_ERROR = "ReconcileError"
    RECONCILE_SUCCESS = "ReconcileSuccess"
    DELETING = "Deleting"
    DELETE_ERROR = "DeleteError"


_FAILED_RECORD_CONDITIONS = {
    RecordConditionType.NOT_LOADED.value,
    RecordConditionType.RECONCILE_ERROR.value,
    RecordConditionType.DELETE_ERROR.value,
}


@dataclass
class ProgramStatus:
    """Aggregated view of one program across nodes."""
    name: str
    condition: ProgramConditionType
    message: str
    nodes: Dict[str, str] = field(default_factory=dict)
    finalized: bool = False

    @property
    def healthy(self) -> bool:
        return self.condition == ProgramConditionType.RECONCILE_SUCCESS


def record_succeeded(record: PerNodeRecord) -> bool:
    """Whether a node record counts toward program success."""
    return record.condition_type == RecordConditionType.RECONCILE_SUCCESS.value


def aggregate_condition(records: List[PerNodeRecord]) -> Tuple[ProgramConditionType, str]:
    """Program condition and message for a live program's node records."""
    if not records:
        return ProgramConditionType.NOT_YET_LOADED, "No node records exist yet"

    failed = sorted(r.node_name for r in records
                    if r.condition_type in _FAILED_RECORD_CONDITIONS)
    if failed:
        return (ProgramConditionType.RECONCILE_ERROR,
                f"Reconcile failed on {len(failed)} of {len(records)} nodes: {', '.join(failed)}")

    pending = sorted(r.node_name for r in records if not record_succeeded(r))
    if pending:
        return (ProgramConditionType.NOT_YET_LOADED,
                f"Waiting on {len(pending)} of {len(records)} nodes: {', '.join(pending)}")

    return ProgramConditionType.RECONCILE_SUCCESS, f"Reconciled on {len(records)} nodes"


def deletion_condition(records: List[PerNodeRecord]) -> Tuple[ProgramConditionType, str]:
    """Program condition while a program waits for its node records to go."""
    failed = sorted(r.node_name for r in records
                    if r.condition_type == RecordConditionType.DELETE_ERROR.value)
    if failed:
        return (ProgramConditionType.DELETE_ERROR,
                f"Teardown failed on {len(failed)} nodes: {', '.join(failed)}")
    return (ProgramConditionType.DELETING,
            f"Waiting for {len(records)} node records to be removed")


class ProgramStatusAggregator:
    """Writes program-level conditions and manages the operator finalizer."""

    def __init__(self, store: Store, retry_delay: float = Retry.OPERATOR_RETRY_DELAY,
                 resync_interval: float = Retry.RESYNC_INTERVAL):
        self.store = store
        self.retry_delay = retry_delay
        self.resync_interval = resync_interval

    def _records(self, program: DesiredProgram) -> List[PerNodeRecord]:
        records = self.store.list(ObjectKinds.PER_NODE_RECORD,
                                  labels={Labels.PROGRAM_OWNER: program.name})
        return [r for r in records if r.meta.owner is not None
                and r.meta.owner.uid == program.meta.uid]

    def reconcile(self, key: str) -> Optional[ProgramStatus]:
        """Aggregate the status of program ``key``; None if it no longer exists."""
        try:
            program = self.store.get(ObjectKinds.DESIRED_PROGRAM, key)
        except NotFoundError:
            logger.debug(f"Program {key} not found, nothing to aggregate")
            return None

        if not program.meta.being_deleted and not program.meta.has_finalizer(Finalizers.OPERATOR):
            logger.info(f"Adding operator finalizer to {key}")
            program = update_with_retry(self.store, ObjectKinds.DESIRED_PROGRAM, key,
                                        lambda p: p.meta.add_finalizer(Finalizers.OPERATOR))
            if program is None:
                return None

        records = self._records(program)
        nodes = {r.node_name: r.condition_type or "" for r in records}

        if program.meta.being_deleted:
            if not records:
                self._remove_finalizer(key)
                logger.info(f"All node records of {key} removed, program finalized")
                return ProgramStatus(key, ProgramConditionType.DELETING, "Finalized",
                                     nodes, finalized=True)
            condition, message = deletion_condition(records)
        else:
            condition, message = aggregate_condition(records)

        self._update_status(key, condition, message)
        return ProgramStatus(key, condition, message, nodes)

    def _update_status(self, key: str, condition: ProgramConditionType, message: str) -> None:
        # Re-read so a stale copy never overwrites a newer finalizer list
        def apply(fresh: DesiredProgram) -> bool:
            updated = set_condition(fresh.conditions, condition.value, condition.value, message)
            if updated == fresh.conditions:
                return False
            fresh.conditions = updated
            return True

        if update_with_retry(self.store, ObjectKinds.DESIRED_PROGRAM, key, apply) is not None:
            logger.debug(f"Program {key} status: {condition.value}: {message}")

    def _remove_finalizer(self, key: str) -> None:
        update_with_retry(self.store, ObjectKinds.DESIRED_PROGRAM, key,
                          lambda p: p.meta.remove_finalizer(Finalizers.OPERATOR))

    # =========================================================================
    # Wiring and reporting
    # =========================================================================

    def list_keys(self) -> List[str]:
        return [p.name for p in self.store.list(ObjectKinds.DESIRED_PROGRAM)]

    def build_controller(self, workers: int = 1) -> Controller:
        return Controller(
            name="status",
            reconcile=self.reconcile,
            list_keys=self.list_keys,
            workers=workers,
            retry_delay=self.retry_delay,
            resync_interval=self.resync_interval,
        )

    def get_cluster_summary(self) -> str:
        """
        Get a human-readable summary of every program and its node records.

        Returns:
            Formatted string with program and node information
        """
        programs = self.store.list(ObjectKinds.DESIRED_PROGRAM)
        healthy = 0
        lines = []
        for program in programs:
            cond = current_condition(program.conditions)
            cond_type = cond.type if cond else "Unknown"
            if cond_type == ProgramConditionType.RECONCILE_SUCCESS.value:
                healthy += 1
            deleting = " [DELETING]" if program.meta.being_deleted else ""
            lines.append(f"  {program.name} ({program.kind.value}): {cond_type}{deleting}")
            for record in self._records(program):
                status = "✓" if record_succeeded(record) else "✗"
                lines.append(f"    {status} {record.node_name}: {record.condition_type} "
                             f"({len(record.links)} links)")

        summary = []
        summary.append("Cluster Summary")
        summary.append("===============")
        summary.append(f"Total Programs: {len(programs)}")
        summary.append(f"Healthy Programs: {healthy}")
        summary.append("\nPrograms:")
        summary.extend(lines)
        return "\n".join(summary)
