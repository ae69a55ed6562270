"""
Tests for the node agent.

Covers program creation, node selection, program deletion, application
sub-records, the zero-container placeholder and controller retries.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from bpfagent.agent import ProgramAgent
from bpfagent.constants import Annotations, Finalizers, Labels, ObjectKinds
from bpfagent.model import (
    ContainerSelector,
    LabelSelector,
    LinkStatus,
    RecordConditionType,
)
from bpfagent.utils.error_handling import NotFoundError, RpcError

from conftest import (
    NODE_NAME,
    application_program,
    make_pod,
    uprobe_program,
    xdp_program,
)


def records(store, owner=None):
    labels = {Labels.HOSTNAME: NODE_NAME}
    if owner:
        labels[Labels.PROGRAM_OWNER] = owner
    return store.list(ObjectKinds.PER_NODE_RECORD, labels=labels)


def relabel_node(store, labels):
    node = store.get(ObjectKinds.NODE, NODE_NAME)
    node.meta.labels = labels
    store.update(node)


# ===========================================================================
# Create and Select Tests
# ===========================================================================

class TestProgramCreation:
    """A new program selecting this node gets a loaded, attached record."""

    def test_create_attaches(self, store, client, agent):
        store.create(xdp_program(interfaces=["eth0", "eth1"]))

        outcomes = agent.reconcile("xdp-pass")

        assert len(outcomes) == 1
        assert outcomes[0].condition == RecordConditionType.RECONCILE_SUCCESS
        [record] = records(store, "xdp-pass")
        assert record.state.program_id in client.programs
        assert len(record.links) == 2
        assert all(l.link_status == LinkStatus.ATTACH_SUCCESS for l in record.links)
        assert record.meta.finalizers == [Finalizers.for_kind("XDP")]

    def test_reconcile_twice_is_stable(self, store, client, agent):
        store.create(xdp_program())
        agent.reconcile("xdp-pass")
        first = records(store)[0]

        agent.reconcile("xdp-pass")

        second = records(store)[0]
        assert client.calls['load'] == 1
        assert client.calls['attach'] == 1
        assert second.links[0].uuid == first.links[0].uuid

    def test_selector_mismatch_creates_nothing(self, store, client, agent):
        store.create(xdp_program(node_selector=LabelSelector(match_labels={"role": "gpu"})))

        assert agent.reconcile("xdp-pass") == []
        assert records(store) == []
        assert client.calls['load'] == 0

    def test_is_selected(self, store, agent):
        assert not agent.is_selected(None)
        assert agent.is_selected(xdp_program(node_selector=LabelSelector(
            match_labels={"role": "worker"})))

    def test_invalid_program_skipped(self, store, client, agent):
        """A program that fails validation is left alone and not retried."""
        store.create(xdp_program(priority=5000))

        assert agent.reconcile("xdp-pass") == []
        assert records(store) == []
        assert client.calls['load'] == 0

    def test_missing_node_raises(self, store, client, interfaces, agent_config):
        agent = ProgramAgent(store, client, agent_config, interfaces=interfaces)
        store.create(xdp_program())

        with pytest.raises(NotFoundError):
            agent.reconcile("xdp-pass")

    def test_attach_failure_raises_after_persisting(self, store, client, agent):
        store.create(xdp_program(interfaces=["eth0", "eth1"]))
        client.fail_attach_ifaces = {"eth0"}

        with pytest.raises(RpcError):
            agent.reconcile("xdp-pass")

        [record] = records(store)
        assert record.conditions[0].type == RecordConditionType.RECONCILE_ERROR.value
        assert len(client.live_link_ids()) == 1


# ===========================================================================
# Removal Tests
# ===========================================================================

class TestRemoval:
    """Records are torn down when the program stops applying to this node."""

    def test_node_deselected(self, store, client, agent):
        store.create(xdp_program(node_selector=LabelSelector(match_labels={"role": "worker"})))
        agent.reconcile("xdp-pass")
        assert len(records(store)) == 1

        relabel_node(store, {"role": "storage"})
        outcomes = agent.reconcile("xdp-pass")

        assert [o.deleted for o in outcomes] == [True]
        assert records(store) == []
        assert client.programs == {}

    def test_program_deleted(self, store, client, agent):
        """Owner removal cascades to the record; the agent tears it down."""
        store.create(xdp_program(interfaces=["eth0", "eth1"]))
        agent.reconcile("xdp-pass")

        store.delete(ObjectKinds.DESIRED_PROGRAM, "xdp-pass")
        [pending] = records(store)
        assert pending.meta.being_deleted

        agent.reconcile("xdp-pass")

        assert records(store) == []
        assert client.programs == {}
        assert client.live_link_ids() == set()

    def test_program_deleting_with_finalizer(self, store, client, agent):
        program = xdp_program()
        program.meta.finalizers = [Finalizers.OPERATOR]
        store.create(program)
        agent.reconcile("xdp-pass")

        store.delete(ObjectKinds.DESIRED_PROGRAM, "xdp-pass")
        agent.reconcile("xdp-pass")

        assert records(store) == []
        assert store.get(ObjectKinds.DESIRED_PROGRAM, "xdp-pass").meta.being_deleted

    def test_delete_failure_keeps_record(self, store, client, agent):
        store.create(xdp_program())
        agent.reconcile("xdp-pass")
        store.delete(ObjectKinds.DESIRED_PROGRAM, "xdp-pass")
        client.fail_detach = True

        with pytest.raises(RpcError):
            agent.reconcile("xdp-pass")

        [record] = records(store)
        assert record.conditions[0].type == RecordConditionType.DELETE_ERROR.value

        client.fail_detach = False
        agent.reconcile("xdp-pass")
        assert records(store) == []

    def test_list_keys_includes_orphaned_records(self, store, agent):
        store.create(xdp_program())
        store.create(xdp_program(name="other", node_selector=LabelSelector(
            match_labels={"role": "gpu"})))
        agent.reconcile("xdp-pass")
        store.delete(ObjectKinds.DESIRED_PROGRAM, "xdp-pass")

        assert agent.list_keys() == ["other", "xdp-pass"]


# ===========================================================================
# Application Tests
# ===========================================================================

class TestApplication:
    """One record per declared sub-program."""

    def test_one_record_per_sub_program(self, store, client, agent):
        store.create(application_program())

        outcomes = agent.reconcile("app")

        assert len(outcomes) == 3
        assert all(o.ok for o in outcomes)
        app_records = records(store, "app")
        assert len(app_records) == 3
        assert {r.kind.value for r in app_records} == {"XDP", "Fentry", "Tracepoint"}
        assert all(r.meta.finalizers == [Finalizers.APPLICATION] for r in app_records)
        assert len(client.programs) == 3

    def test_removed_sub_program_is_torn_down(self, store, client, agent):
        store.create(application_program())
        agent.reconcile("app")

        program = store.get(ObjectKinds.DESIRED_PROGRAM, "app")
        program.info.programs = program.info.programs[:2]
        store.update(program)
        agent.reconcile("app")

        remaining = records(store, "app")
        assert len(remaining) == 2
        assert all(not r.meta.labels[Labels.APP_PROGRAM_ID].startswith("tracepoint")
                   for r in remaining)
        assert len(client.programs) == 2


# ===========================================================================
# Container Tests
# ===========================================================================

class TestContainers:
    """The placeholder record is replaced once a matching container appears."""

    def test_placeholder_then_pod(self, store, client, agent):
        selector = ContainerSelector(namespace="default",
                                     pods=LabelSelector(match_labels={"app": "web"}))
        store.create(uprobe_program(containers=selector))

        agent.reconcile("uprobe-malloc")

        [record] = records(store)
        assert len(record.links) == 1
        assert record.links[0].no_containers_on_node
        assert record.meta.annotations[Annotations.NO_CONTAINERS_ON_NODE] == "true"
        assert record.conditions[0].type == RecordConditionType.RECONCILE_SUCCESS.value
        assert client.calls['attach'] == 0

        store.create(make_pod("web-1", {"app": "web"}, {"app": 10}))
        agent.reconcile("uprobe-malloc")

        [record] = records(store)
        assert len(record.links) == 1
        assert record.links[0].container_pid == 10
        assert record.links[0].link_status == LinkStatus.ATTACH_SUCCESS
        assert record.meta.annotations[Annotations.NO_CONTAINERS_ON_NODE] == "false"
        assert client.calls['attach'] == 1


# ===========================================================================
# Controller Tests
# ===========================================================================

class TestAgentController:
    """Failed keys are retried after the configured delay."""

    def test_failure_requeued(self, store, client, agent):
        store.create(xdp_program())
        client.fail_attach_all = True
        controller = agent.build_controller()

        controller.enqueue("xdp-pass")
        assert controller.process_next(timeout=0)

        assert controller.failure_counts() == {"xdp-pass": 1}
        assert controller.queue.pending_delayed() == 1
        assert controller.retry_delay == 5.0

        client.fail_attach_all = False
        controller.enqueue("xdp-pass")
        assert controller.process_next(timeout=0)
        assert controller.failure_counts() == {}

    def test_resync_queues_known_programs(self, store, agent):
        store.create(xdp_program())
        store.create(xdp_program(name="second"))
        controller = agent.build_controller()

        assert controller.resync() == 2
        assert controller.drain() == 2
        assert len(records(store)) == 2
