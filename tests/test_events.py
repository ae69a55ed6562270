"""
Tests for routing store change events to reconcile queues.
"""

import os
import sys
from typing import List

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from bpfagent.cluster import EventRouter, container_selectors
from bpfagent.constants import Finalizers, Labels, ObjectKinds
from bpfagent.model import (
    ApplicationInfo,
    ApplicationProgram,
    Condition,
    ContainerSelector,
    LabelSelector,
    ObjectMeta,
    OwnerReference,
    PerNodeRecord,
    ProgramKind,
    UprobeAttachSpec,
    UprobeInfo,
)

from conftest import NODE_NAME, make_node, make_pod, uprobe_program, xdp_program


class Recorder:
    """Collects the keys routed to the agent and status queues."""

    def __init__(self):
        self.agent: List[str] = []
        self.status: List[str] = []

    def clear(self):
        self.agent.clear()
        self.status.clear()


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def router(store, recorder) -> EventRouter:
    router = EventRouter(store, NODE_NAME, agent_enqueue=recorder.agent.append,
                         status_enqueue=recorder.status.append)
    router.register()
    return router


def web_selector() -> ContainerSelector:
    return ContainerSelector(namespace="default", pods=LabelSelector(match_labels={"app": "web"}))


def make_record(program, node=NODE_NAME, finalizers=None) -> PerNodeRecord:
    return PerNodeRecord(
        meta=ObjectMeta(
            name=f"{program.name}-{node}",
            labels={Labels.PROGRAM_OWNER: program.name, Labels.HOSTNAME: node},
            finalizers=list(finalizers or []),
            owner=OwnerReference(kind=ObjectKinds.DESIRED_PROGRAM, name=program.name,
                                 uid=program.meta.uid),
        ),
        kind=ProgramKind.XDP,
        node_name=node,
    )


# ===========================================================================
# Program Event Tests
# ===========================================================================

class TestProgramEvents:
    """Program changes reach the agent only when desired state changes."""

    def test_created(self, store, router, recorder):
        store.create(xdp_program())
        assert recorder.agent == ["xdp-pass"]
        assert recorder.status == ["xdp-pass"]

    def test_status_only_update_ignored(self, store, router, recorder):
        program = store.create(xdp_program())
        recorder.clear()

        program.conditions = [Condition(type="ReconcileSuccess")]
        program.meta.finalizers = [Finalizers.OPERATOR]
        store.update(program)

        assert recorder.agent == []
        assert recorder.status == []

    def test_spec_change_wakes_agent(self, store, router, recorder):
        program = store.create(xdp_program())
        recorder.clear()

        program.info.links[0].priority = 60
        store.update(program)

        assert recorder.agent == ["xdp-pass"]
        assert recorder.status == []

    def test_deletion_requested(self, store, router, recorder):
        program = xdp_program()
        program.meta.finalizers = [Finalizers.OPERATOR]
        store.create(program)
        recorder.clear()

        store.delete(ObjectKinds.DESIRED_PROGRAM, "xdp-pass")

        assert recorder.agent == ["xdp-pass"]
        assert recorder.status == ["xdp-pass"]

    def test_removed_cascades_to_records(self, store, router, recorder):
        """Removing a program marks its records; both reach this node's agent."""
        program = store.create(xdp_program())
        store.create(make_record(program, finalizers=[Finalizers.for_kind("XDP")]))
        recorder.clear()

        store.delete(ObjectKinds.DESIRED_PROGRAM, "xdp-pass")

        assert recorder.agent == ["xdp-pass", "xdp-pass"]
        assert recorder.status == ["xdp-pass"]


# ===========================================================================
# Record Event Tests
# ===========================================================================

class TestRecordEvents:
    """Record changes feed the aggregator."""

    def test_record_status_change(self, store, router, recorder):
        program = store.create(xdp_program())
        record = store.create(make_record(program))
        assert recorder.status[-1] == "xdp-pass"
        recorder.clear()

        record.conditions = [Condition(type="ReconcileSuccess")]
        store.update(record)

        assert recorder.status == ["xdp-pass"]
        assert recorder.agent == []

    def test_annotation_only_change_ignored(self, store, router, recorder):
        program = store.create(xdp_program())
        record = store.create(make_record(program))
        recorder.clear()

        record.meta.annotations["note"] = "x"
        store.update(record)

        assert recorder.status == []

    def test_other_node_record_deletion(self, store, router, recorder):
        """A record on another node being deleted is not this agent's business."""
        program = store.create(xdp_program())
        store.create(make_record(program, node="worker-2", finalizers=["f"]))
        recorder.clear()

        store.delete(ObjectKinds.PER_NODE_RECORD, "xdp-pass-worker-2")

        assert recorder.agent == []
        assert recorder.status == ["xdp-pass"]


# ===========================================================================
# Node Event Tests
# ===========================================================================

class TestNodeEvents:
    """Label changes requeue programs whose selection flipped."""

    def test_label_change(self, store, node, router, recorder):
        store.create(xdp_program(name="a-prog", node_selector=LabelSelector(
            match_labels={"role": "worker"})))
        store.create(xdp_program(name="b-prog", node_selector=LabelSelector(
            match_labels={"role": "gpu"})))
        store.create(xdp_program(name="c-prog"))
        recorder.clear()

        current = store.get(ObjectKinds.NODE, NODE_NAME)
        current.meta.labels = {"role": "gpu"}
        store.update(current)

        assert recorder.agent == ["a-prog", "b-prog"]

    def test_unchanged_labels_ignored(self, store, node, router, recorder):
        store.create(xdp_program())
        recorder.clear()

        current = store.get(ObjectKinds.NODE, NODE_NAME)
        current.addresses = ["10.0.0.9"]
        store.update(current)

        assert recorder.agent == []

    def test_node_added(self, store, router, recorder):
        store.create(xdp_program())
        recorder.clear()

        store.create(make_node())

        assert recorder.agent == ["xdp-pass"]

    def test_other_node_ignored(self, store, router, recorder):
        store.create(xdp_program())
        recorder.clear()

        store.create(make_node("worker-2"))

        assert recorder.agent == []


# ===========================================================================
# Pod Event Tests
# ===========================================================================

class TestPodEvents:
    """Pods on this node requeue programs that select their containers."""

    def test_matching_pod(self, store, router, recorder):
        store.create(uprobe_program(containers=web_selector()))
        store.create(xdp_program())
        recorder.clear()

        store.create(make_pod("web-1", {"app": "web"}, {"app": 10}))

        assert recorder.agent == ["uprobe-malloc"]

    def test_pod_elsewhere_or_unmatched(self, store, router, recorder):
        store.create(uprobe_program(containers=web_selector()))
        recorder.clear()

        store.create(make_pod("web-9", {"app": "web"}, {"app": 90}, node_name="worker-2"))
        store.create(make_pod("db-1", {"app": "db"}, {"db": 30}))
        store.create(make_pod("web-2", {"app": "web"}, {"app": 20}, namespace="other"))

        assert recorder.agent == []

    def test_pod_relabelled_away(self, store, router, recorder):
        """A pod that stops matching still requeues, so its record is dropped."""
        store.create(uprobe_program(containers=web_selector()))
        pod = store.create(make_pod("web-1", {"app": "web"}, {"app": 10}))
        recorder.clear()

        pod.meta.labels = {"app": "api"}
        store.update(pod)

        assert recorder.agent == ["uprobe-malloc"]

    def test_container_selectors(self):
        assert container_selectors(xdp_program()) == []
        assert container_selectors(xdp_program(network_namespaces=web_selector())) == \
            [web_selector()]

        app = xdp_program(name="app")
        app.kind = ProgramKind.APPLICATION
        app.info = ApplicationInfo(programs=[ApplicationProgram(
            kind=ProgramKind.UPROBE, bpf_function_name="u",
            info=UprobeInfo(links=[UprobeAttachSpec(target="libc", containers=web_selector())]),
        )])
        assert container_selectors(app) == [web_selector()]
