"""
Cluster Sync - store change events to reconcile keys

Subscribes to the object store and turns relevant changes into program
keys for the node agent and the status aggregator:

- program created, deleted, or its desired state changed (generation)
- this node's labels changed so that a program's node selector flips
- a pod on this node changed, for programs that select containers
- a node record changed status (aggregator) or was marked for deletion
  on this node (agent)

Status-only changes on a program are ignored so that the aggregator's own
writes do not wake the agents.
"""

import logging
from typing import Any, Callable, Iterable, List, Optional

from ..constants import Labels, ObjectKinds
from ..model.meta import Node, Pod
from ..model.program import (
    ApplicationInfo,
    ContainerSelector,
    DesiredProgram,
    InterfaceHookInfo,
    UprobeInfo,
)
from ..model.records import PerNodeRecord
from ..store.base import Store, WatchEventType

logger = logging.getLogger(__name__)

Enqueue = Callable[[str], None]


def container_selectors(program: DesiredProgram) -> List[ContainerSelector]:
    """Every container selector a program uses, including application sub-programs."""
    infos: Iterable[Any] = [program.info]
    if isinstance(program.info, ApplicationInfo):
        infos = [p.info for p in program.info.programs]

    selectors = []
    for info in infos:
        if isinstance(info, InterfaceHookInfo):
            selectors.extend(s.network_namespaces for s in info.links
                             if s.network_namespaces is not None)
        elif isinstance(info, UprobeInfo):
            selectors.extend(s.containers for s in info.links if s.containers is not None)
    return selectors


def _pod_relevant(pod: Pod, selector: ContainerSelector) -> bool:
    if selector.namespace and pod.meta.namespace != selector.namespace:
        return False
    return selector.pods.matches(pod.meta.labels)


class EventRouter:
    """
    Routes store watch events to agent and aggregator queues.

    Either queue may be None, e.g. a process running only the node agent.
    """

    def __init__(
        self,
        store: Store,
        node_name: Optional[str] = None,
        agent_enqueue: Optional[Enqueue] = None,
        status_enqueue: Optional[Enqueue] = None,
    ):
        self.store = store
        self.node_name = node_name
        self.agent_enqueue = agent_enqueue
        self.status_enqueue = status_enqueue

    def register(self) -> None:
        """Subscribe to every object kind."""
        self.store.watch(ObjectKinds.DESIRED_PROGRAM, self.on_program)
        self.store.watch(ObjectKinds.PER_NODE_RECORD, self.on_record)
        self.store.watch(ObjectKinds.NODE, self.on_node)
        self.store.watch(ObjectKinds.POD, self.on_pod)
        logger.info(f"Event router registered (node={self.node_name})")

    def _to_agent(self, key: str, reason: str) -> None:
        if self.agent_enqueue is not None:
            logger.debug(f"Queue {key} for agent: {reason}")
            self.agent_enqueue(key)

    def _to_status(self, key: str, reason: str) -> None:
        if self.status_enqueue is not None:
            logger.debug(f"Queue {key} for status: {reason}")
            self.status_enqueue(key)

    # =========================================================================
    # Handlers
    # =========================================================================

    def on_program(self, event: WatchEventType, program: DesiredProgram,
                   previous: Optional[DesiredProgram]) -> None:
        if event != WatchEventType.MODIFIED or previous is None:
            self._to_agent(program.name, event.value)
            if event != WatchEventType.DELETED:
                self._to_status(program.name, event.value)
            return

        if program.meta.generation != previous.meta.generation:
            self._to_agent(program.name, "generation changed")
        if program.meta.being_deleted != previous.meta.being_deleted:
            self._to_agent(program.name, "deletion requested")
            self._to_status(program.name, "deletion requested")

    def on_record(self, event: WatchEventType, record: PerNodeRecord,
                  previous: Optional[PerNodeRecord]) -> None:
        owner = record.meta.labels.get(Labels.PROGRAM_OWNER)
        if not owner:
            return

        if event != WatchEventType.MODIFIED or previous is None:
            self._to_status(owner, f"record {record.name} {event.value}")
        elif (record.conditions != previous.conditions
              or record.state != previous.state
              or record.meta.being_deleted != previous.meta.being_deleted):
            self._to_status(owner, f"record {record.name} status changed")

        # Records marked for deletion by a cascade must be torn down on their node
        if record.node_name == self.node_name and record.meta.being_deleted and (
                previous is None or not previous.meta.being_deleted):
            self._to_agent(owner, f"record {record.name} marked for deletion")

    def on_node(self, event: WatchEventType, node: Node, previous: Optional[Node]) -> None:
        if self.node_name is None or node.name != self.node_name:
            return
        if event == WatchEventType.DELETED:
            return

        old_labels = previous.meta.labels if previous is not None else None
        if previous is not None and old_labels == node.meta.labels:
            return

        for program in self.store.list(ObjectKinds.DESIRED_PROGRAM):
            now = program.node_selector.matches(node.meta.labels)
            before = old_labels is not None and program.node_selector.matches(old_labels)
            if now != before:
                self._to_agent(program.name, f"node {node.name} labels changed")

    def on_pod(self, event: WatchEventType, pod: Pod, previous: Optional[Pod]) -> None:
        if self.node_name is None:
            return
        pods = [p for p in (pod, previous) if p is not None and p.node_name == self.node_name]
        if not pods:
            return

        for program in self.store.list(ObjectKinds.DESIRED_PROGRAM):
            if any(_pod_relevant(p, s) for p in pods for s in container_selectors(program)):
                self._to_agent(program.name, f"pod {pod.meta.key} {event.value}")
