"""
Tests for the program lifecycle engine.

Covers record creation, load and load adoption, condition handling,
deletion ordering and failure during teardown.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from bpfagent.constants import Annotations, Finalizers, Labels, Limits, MetadataKeys, ObjectKinds
from bpfagent.engine.adapters import ProgramUnit
from bpfagent.engine.application import decompose
from bpfagent.engine.lifecycle import record_name
from bpfagent.model.meta import collapse_conditions
from bpfagent.model import (
    Condition,
    InterfaceSelector,
    LinkStatus,
    ProgramLinkStatus,
    RecordConditionType,
)
from bpfagent.rpc import BytecodeLocation, LoadRequest, ProgramType
from bpfagent.utils.error_handling import InvariantViolation, NotFoundError

from conftest import NODE_NAME, application_program, xdp_program


FINALIZER = Finalizers.for_kind("XDP")


@pytest.fixture
def program(store):
    return store.create(xdp_program(interfaces=["eth0", "eth1"]))


@pytest.fixture
def unit(program) -> ProgramUnit:
    return ProgramUnit.from_program(program)


def stored(store, name):
    return store.get(ObjectKinds.PER_NODE_RECORD, name)


# ===========================================================================
# Record Creation Tests
# ===========================================================================

class TestEnsureRecord:
    """Tests for LifecycleEngine.ensure_record()."""

    def test_creates_pending_record(self, engine, unit, program):
        record = engine.ensure_record(unit, FINALIZER)

        assert record.name == f"xdp-pass-{NODE_NAME}"
        assert record.meta.owner.uid == program.meta.uid
        assert record.meta.labels[Labels.PROGRAM_OWNER] == "xdp-pass"
        assert record.meta.labels[Labels.HOSTNAME] == NODE_NAME
        assert record.meta.finalizers == [FINALIZER]
        assert [c.type for c in record.conditions] == [RecordConditionType.PENDING.value]
        assert record.state.program_id is None

    def test_returns_existing_record(self, engine, unit):
        first = engine.ensure_record(unit, FINALIZER)
        second = engine.ensure_record(unit, FINALIZER)
        assert first.meta.uid == second.meta.uid

    def test_foreign_owner_rejected(self, store, engine, unit):
        engine.ensure_record(unit, FINALIZER)

        impostor = xdp_program(interfaces=["eth0", "eth1"])
        with pytest.raises(InvariantViolation):
            engine.ensure_record(ProgramUnit.from_program(impostor), FINALIZER)

    def test_application_record_names(self):
        units = decompose(application_program())
        names = {record_name(u, NODE_NAME) for u in units}

        assert len(names) == 3
        assert all(n.startswith("app-") and n.endswith(f"-{NODE_NAME}") for n in names)

    def test_long_names_are_shortened(self):
        unit = ProgramUnit.from_program(xdp_program(name="x" * 300))
        name = record_name(unit, NODE_NAME)
        assert len(name) <= Limits.MAX_NAME_LENGTH
        assert name != record_name(ProgramUnit.from_program(xdp_program(name="x" * 299)), NODE_NAME)


# ===========================================================================
# Reconcile Tests
# ===========================================================================

class TestReconcile:
    """Tests for LifecycleEngine.reconcile()."""

    def test_load_and_attach(self, store, client, engine, unit):
        record = engine.ensure_record(unit, FINALIZER)
        outcome = engine.reconcile(unit, record)

        assert outcome.ok
        assert outcome.condition == RecordConditionType.RECONCILE_SUCCESS
        assert client.calls['load'] == 1

        saved = stored(store, record.name)
        assert saved.state.program_id in client.programs
        assert saved.state.program_link_status == ProgramLinkStatus.SUCCESS
        assert [l.link_status for l in saved.links] == [LinkStatus.ATTACH_SUCCESS] * 2
        assert [c.type for c in saved.conditions] == [RecordConditionType.RECONCILE_SUCCESS.value]
        assert saved.meta.annotations["Kernel-ID"] == str(saved.state.program_id)
        assert saved.meta.annotations[Annotations.NO_CONTAINERS_ON_NODE] == "false"

    def test_load_request_metadata(self, client, engine, unit):
        record = engine.ensure_record(unit, FINALIZER)
        engine.reconcile(unit, record)

        request = client.load_requests[0]
        assert request.metadata[MetadataKeys.UUID] == record.meta.uid
        assert request.metadata[MetadataKeys.PROGRAM_NAME] == "xdp-pass"
        assert request.program_type == ProgramType.XDP
        assert request.bytecode.file == "/opt/bytecode/prog.o"

    def test_idempotent_reconcile(self, store, client, engine, unit):
        record = engine.ensure_record(unit, FINALIZER)
        engine.reconcile(unit, record)
        first = stored(store, record.name)

        engine.reconcile(unit, first)
        second = stored(store, record.name)

        assert client.calls['load'] == 1
        assert client.calls['attach'] == 2
        assert [(l.uuid, l.link_id) for l in second.links] == [(l.uuid, l.link_id) for l in first.links]
        assert second.conditions[0].last_transition_time == first.conditions[0].last_transition_time

    def test_adopts_unpersisted_load(self, store, client, engine, unit):
        """A program loaded for this record's UID is adopted instead of reloaded."""
        record = engine.ensure_record(unit, FINALIZER)
        program_id = client.load(LoadRequest(
            bytecode=BytecodeLocation(file="/x.o"), name="xdp_pass", program_type=ProgramType.XDP,
            metadata={MetadataKeys.UUID: record.meta.uid}), timeout=1.0)

        engine.reconcile(unit, record)

        assert client.calls['load'] == 1
        assert stored(store, record.name).state.program_id == program_id

    def test_load_failure_sets_not_loaded(self, store, client, engine, unit):
        client.fail_load = True
        record = engine.ensure_record(unit, FINALIZER)

        outcome = engine.reconcile(unit, record)

        assert outcome.condition == RecordConditionType.NOT_LOADED
        assert outcome.error is not None
        saved = stored(store, record.name)
        assert saved.state.program_id is None
        assert saved.links == []
        assert [c.type for c in saved.conditions] == [RecordConditionType.NOT_LOADED.value]

    def test_conditions_collapse_to_one(self, store, engine, unit):
        """Several leftover conditions are reduced to the single current one."""
        record = engine.ensure_record(unit, FINALIZER)
        record.conditions = [
            Condition(type=RecordConditionType.LOADED.value, last_transition_time=1.0),
            Condition(type=RecordConditionType.RECONCILE_ERROR.value, last_transition_time=2.0),
            Condition(type=RecordConditionType.PENDING.value, last_transition_time=3.0),
        ]
        record = store.update(record)

        engine.reconcile(unit, record)

        saved = stored(store, record.name)
        assert len(saved.conditions) == 1
        assert saved.conditions[0].type == RecordConditionType.RECONCILE_SUCCESS.value

    def test_collapse_tie_keeps_later_entry(self):
        conditions = [
            Condition(type=RecordConditionType.LOADED.value, last_transition_time=5.0),
            Condition(type=RecordConditionType.RECONCILE_ERROR.value, last_transition_time=5.0),
            Condition(type=RecordConditionType.PENDING.value, last_transition_time=1.0),
        ]

        [kept] = collapse_conditions(conditions)

        assert kept.type == RecordConditionType.RECONCILE_ERROR.value

    def test_partial_attach_failure(self, store, client, engine, unit):
        client.fail_attach_ifaces = {"eth0"}
        record = engine.ensure_record(unit, FINALIZER)

        outcome = engine.reconcile(unit, record)

        assert outcome.condition == RecordConditionType.RECONCILE_ERROR
        saved = stored(store, record.name)
        by_iface = {l.interface_name: l for l in saved.links}
        assert by_iface["eth0"].link_status == LinkStatus.ATTACH_ERROR
        assert by_iface["eth1"].link_status == LinkStatus.ATTACH_SUCCESS
        assert saved.state.program_link_status == ProgramLinkStatus.ERROR
        assert "eth0" in saved.conditions[0].message

    def test_repeated_failure_scenario(self, store, client, engine, unit):
        """Two failing passes keep AttachError and ReconcileError, one attempt per pass."""
        client.fail_attach_ifaces = {"eth0"}
        record = engine.ensure_record(unit, FINALIZER)

        engine.reconcile(unit, record)
        engine.reconcile(unit, stored(store, record.name))

        saved = stored(store, record.name)
        eth0 = [l for l in saved.links if l.interface_name == "eth0"][0]
        assert eth0.link_status == LinkStatus.ATTACH_ERROR
        assert saved.conditions[0].type == RecordConditionType.RECONCILE_ERROR.value
        assert len(saved.links) == 2
        # eth0 twice, eth1 once
        assert client.calls['attach'] == 3

    def test_configuration_error_leaves_links(self, store, client, engine, unit, program):
        record = engine.ensure_record(unit, FINALIZER)
        engine.reconcile(unit, record)
        before = stored(store, record.name)

        program.info.links[0].interface_selector = InterfaceSelector()
        broken = ProgramUnit.from_program(program)
        outcome = engine.reconcile(broken, before)

        assert outcome.condition == RecordConditionType.RECONCILE_ERROR
        saved = stored(store, record.name)
        assert [l.link_id for l in saved.links] == [l.link_id for l in before.links]
        assert client.calls['detach'] == 0


# ===========================================================================
# Runtime Drift Tests
# ===========================================================================

class TestRuntimeDrift:
    """Stored program and link ids are checked against the runtime."""

    def test_restarted_runtime_reloads_and_reattaches(self, store, client, engine, unit):
        record = engine.ensure_record(unit, FINALIZER)
        engine.reconcile(unit, record)
        before = stored(store, record.name)
        old_program = before.state.program_id

        client.restart()
        outcome = engine.reconcile(unit, stored(store, record.name))

        assert outcome.condition == RecordConditionType.RECONCILE_SUCCESS
        saved = stored(store, record.name)
        assert saved.state.program_id in client.programs
        assert saved.state.program_id != old_program
        assert client.calls['load'] == 2
        assert {l.link_id for l in saved.links} == client.live_link_ids()
        assert all(l.link_status == LinkStatus.ATTACH_SUCCESS for l in saved.links)

    def test_restart_then_repeated_passes_are_stable(self, store, client, engine, unit):
        record = engine.ensure_record(unit, FINALIZER)
        engine.reconcile(unit, record)
        client.restart()

        for _ in range(3):
            engine.reconcile(unit, stored(store, record.name))

        assert client.calls['load'] == 2
        assert len(client.live_link_ids()) == 2
        assert client.calls['attach'] == 4

    def test_unreachable_runtime_keeps_stored_state(self, store, client, engine, unit):
        record = engine.ensure_record(unit, FINALIZER)
        engine.reconcile(unit, record)
        before = stored(store, record.name)
        client.fail_list = True
        client.fail_get = True

        outcome = engine.reconcile(unit, before)

        assert outcome.condition == RecordConditionType.RECONCILE_SUCCESS
        saved = stored(store, record.name)
        assert saved.state.program_id == before.state.program_id
        assert [l.link_id for l in saved.links] == [l.link_id for l in before.links]
        assert client.calls['load'] == 1
        assert client.calls['attach'] == 2


# ===========================================================================
# Deletion Tests
# ===========================================================================

class TestDeletion:
    """Finalizer-gated teardown."""

    def _loaded(self, store, engine, unit):
        record = engine.ensure_record(unit, FINALIZER)
        engine.reconcile(unit, record)
        return stored(store, record.name)

    def test_delete_converges(self, store, client, engine, unit):
        """All links detached, program unloaded, record gone."""
        record = self._loaded(store, engine, unit)

        outcome = engine.delete(record, unit)

        assert outcome.deleted
        assert outcome.ok
        assert client.programs == {}
        assert client.live_link_ids() == set()
        with pytest.raises(NotFoundError):
            stored(store, record.name)

    def test_unload_after_last_detach(self, store, client, engine, unit):
        record = self._loaded(store, engine, unit)
        client.call_log.clear()

        engine.delete(record, unit)

        mutating = [c for c in client.call_log if c in ('detach', 'unload')]
        assert mutating == ['detach', 'detach', 'unload']

    def test_detach_failure_blocks_unload(self, store, client, engine, unit):
        record = self._loaded(store, engine, unit)
        client.fail_detach = True

        outcome = engine.delete(record, unit)

        assert not outcome.ok
        assert outcome.condition == RecordConditionType.DELETE_ERROR
        assert client.calls['unload'] == 0
        saved = stored(store, record.name)
        assert saved.meta.being_deleted
        assert saved.meta.finalizers == [FINALIZER]
        assert saved.conditions[0].type == RecordConditionType.DELETE_ERROR.value

        client.fail_detach = False
        outcome = engine.reconcile(unit, saved)

        assert outcome.deleted
        with pytest.raises(NotFoundError):
            stored(store, record.name)

    def test_unload_failure_keeps_finalizer(self, store, client, engine, unit):
        record = self._loaded(store, engine, unit)
        client.fail_unload = True

        outcome = engine.delete(record, unit)

        assert outcome.condition == RecordConditionType.DELETE_ERROR
        saved = stored(store, record.name)
        assert saved.links == []
        assert saved.state.program_id is not None

        client.fail_unload = False
        assert engine.teardown(saved).deleted
        assert client.programs == {}

    def test_delete_never_loaded_record(self, store, client, engine, unit):
        record = engine.ensure_record(unit, FINALIZER)
        outcome = engine.delete(record)
        assert outcome.deleted
        assert client.calls['unload'] == 0
