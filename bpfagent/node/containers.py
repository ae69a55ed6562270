"""
Container Enumeration

Finds the containers on this node matched by a container selector
(namespace + pod label selector + optional container names). The pid of a
container locates both its network namespace and its filesystem for user
probes.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

from ..constants import ObjectKinds
from ..model.selectors import LabelSelector
from ..store.base import Store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContainerInfo:
    pod_name: str
    container_name: str
    pid: int
    namespace: str = ""


class ContainerGetter(ABC):
    """Enumerates containers on one node."""

    @abstractmethod
    def get_containers(
        self,
        namespace: str,
        pod_selector: LabelSelector,
        container_names: Optional[List[str]] = None,
    ) -> List[ContainerInfo]:
        """
        Containers on this node matching the selector.

        Args:
            namespace: Pod namespace; empty matches every namespace
            pod_selector: Label selector over pods
            container_names: Restrict to these container names, if given

        Returns:
            Matching containers ordered by pod then container name
        """
        pass


class PodContainerGetter(ContainerGetter):
    """Reads pod objects for this node from the cluster store."""

    def __init__(self, store: Store, node_name: str):
        self.store = store
        self.node_name = node_name

    def get_containers(
        self,
        namespace: str,
        pod_selector: LabelSelector,
        container_names: Optional[List[str]] = None,
    ) -> List[ContainerInfo]:
        pods = self.store.list(ObjectKinds.POD, namespace=namespace or None)

        result = []
        for pod in pods:
            if pod.node_name != self.node_name:
                continue
            if not pod_selector.matches(pod.meta.labels):
                continue
            for container in sorted(pod.containers, key=lambda c: c.name):
                if container_names and container.name not in container_names:
                    continue
                result.append(ContainerInfo(
                    pod_name=pod.meta.name,
                    container_name=container.name,
                    pid=container.pid,
                    namespace=pod.meta.namespace,
                ))

        logger.debug(f"Found {len(result)} containers on {self.node_name} "
                     f"for namespace={namespace!r}")
        return result


def get_one_container_per_pod(containers: List[ContainerInfo]) -> List[ContainerInfo]:
    """First container of each pod; all containers of a pod share one network namespace."""
    seen = set()
    result = []
    for container in containers:
        pod = (container.namespace, container.pod_name)
        if pod in seen:
            continue
        seen.add(pod)
        result.append(container)
    return result


def netns_path_from_pid(pid: int) -> str:
    return f"/proc/{pid}/ns/net"
