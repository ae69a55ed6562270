"""
Object Metadata and Status Conditions

Shared metadata carried by every object in the cluster store, plus the
status condition helpers used by per-node records and desired programs.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class OwnerReference:
    """Points from a dependent object to the object that owns it."""
    kind: str
    name: str
    uid: str


@dataclass
class ObjectMeta:
    """Metadata common to all stored objects."""
    name: str
    namespace: str = ""
    uid: str = field(default_factory=lambda: str(uuid.uuid4()))
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    finalizers: List[str] = field(default_factory=list)
    owner: Optional[OwnerReference] = None
    generation: int = 1
    resource_version: int = 0
    deletion_timestamp: Optional[float] = None

    @property
    def key(self) -> str:
        """Store key: ``namespace/name`` for namespaced objects, else ``name``."""
        return f"{self.namespace}/{self.name}" if self.namespace else self.name

    @property
    def being_deleted(self) -> bool:
        return self.deletion_timestamp is not None

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.finalizers

    def add_finalizer(self, finalizer: str) -> bool:
        """Add a finalizer; returns True if the metadata changed."""
        if finalizer in self.finalizers:
            return False
        self.finalizers.append(finalizer)
        return True

    def remove_finalizer(self, finalizer: str) -> bool:
        """Remove a finalizer; returns True if the metadata changed."""
        if finalizer not in self.finalizers:
            return False
        self.finalizers = [f for f in self.finalizers if f != finalizer]
        return True


@dataclass
class Node:
    """A cluster node as seen by the agent."""
    meta: ObjectMeta
    addresses: List[str] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.meta.name


@dataclass
class ContainerStatus:
    """A running container inside a pod, with its host pid."""
    name: str
    pid: int


@dataclass
class Pod:
    """A pod scheduled on some node."""
    meta: ObjectMeta
    node_name: str
    containers: List[ContainerStatus] = field(default_factory=list)


# =============================================================================
# CONDITIONS
# =============================================================================

@dataclass
class Condition:
    """A single status condition; ``type`` is a condition type value."""
    type: str
    status: str = "True"
    reason: str = ""
    message: str = ""
    last_transition_time: float = field(default_factory=time.time)


def collapse_conditions(conditions: List[Condition]) -> List[Condition]:
    """
    Reduce a condition list to the most recent entry.

    More than one condition is never a steady state; it is left behind by
    racing status writers and is repaired here.
    """
    if len(conditions) <= 1:
        return list(conditions)

    # Ties go to the later entry
    _, newest = max(enumerate(conditions),
                    key=lambda item: (item[1].last_transition_time, item[0]))
    logger.warning(
        f"Found {len(conditions)} status conditions, keeping most recent: {newest.type}"
    )
    return [newest]


def set_condition(
    conditions: List[Condition],
    cond_type: str,
    reason: str = "",
    message: str = "",
) -> List[Condition]:
    """
    Return a condition list holding exactly one condition of ``cond_type``.

    The transition time is preserved when type and message are unchanged so
    that an idempotent reconcile does not rewrite the status.
    """
    current = collapse_conditions(conditions)
    if current and current[0].type == cond_type and current[0].message == message \
            and current[0].reason == reason:
        return current

    return [Condition(type=cond_type, reason=reason, message=message)]


def current_condition(conditions: List[Condition]) -> Optional[Condition]:
    """The condition that currently describes the object, if any."""
    if not conditions:
        return None
    return max(conditions, key=lambda c: c.last_transition_time)
