"""
Object Store Backends - cluster object store contract and in-memory backend

Provides the abstract store consumed by the agent and the status aggregator,
plus an in-memory implementation with the semantics the engine relies on:
- resource versions; an update based on a stale read raises ConflictError
- finalizer-gated deletion; delete only marks an object while finalizers remain
- owner-reference cascade; removing an owner deletes its dependents
- watch callbacks on add/modify/delete
"""

import copy
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import fields
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..constants import ObjectKinds
from ..model.meta import Node, Pod
from ..model.program import DesiredProgram
from ..model.records import PerNodeRecord
from ..utils.error_handling import AlreadyExistsError, ConflictError, NotFoundError

logger = logging.getLogger(__name__)

_KIND_BY_TYPE = {
    DesiredProgram: ObjectKinds.DESIRED_PROGRAM,
    PerNodeRecord: ObjectKinds.PER_NODE_RECORD,
    Node: ObjectKinds.NODE,
    Pod: ObjectKinds.POD,
}

# Fields that never count as a spec change when bumping generation
_STATUS_FIELDS = ("meta", "conditions", "state", "links")


def kind_of(obj: Any) -> str:
    """Store kind of a model object."""
    try:
        return _KIND_BY_TYPE[type(obj)]
    except KeyError:
        raise TypeError(f"{type(obj).__name__} is not a storable object") from None


class WatchEventType(Enum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"


WatchCallback = Callable[[WatchEventType, Any, Optional[Any]], None]
"""Called with (event type, new object, previous object or None)."""


class Store(ABC):
    """
    Abstract object store interface.

    Objects are addressed by kind and ``meta.key``. Implementations return
    copies; callers mutate what they got and write it back with update().
    """

    @abstractmethod
    def get(self, kind: str, key: str) -> Any:
        """
        Retrieve one object.

        Raises:
            NotFoundError: if no such object exists
        """
        pass

    @abstractmethod
    def list(self, kind: str, labels: Optional[Dict[str, str]] = None,
             namespace: Optional[str] = None) -> List[Any]:
        """
        List objects of a kind.

        Args:
            kind: Object kind
            labels: Exact-match label filter (all must match)
            namespace: Restrict to one namespace

        Returns:
            Matching objects ordered by key
        """
        pass

    @abstractmethod
    def create(self, obj: Any) -> Any:
        """Store a new object; raises AlreadyExistsError if the key is taken."""
        pass

    @abstractmethod
    def update(self, obj: Any) -> Any:
        """
        Replace a stored object.

        Raises:
            NotFoundError: if the object no longer exists
            ConflictError: if ``obj`` was read at an older resource version
        """
        pass

    @abstractmethod
    def delete(self, kind: str, key: str) -> None:
        """Request deletion; gated by the object's finalizers."""
        pass

    @abstractmethod
    def watch(self, kind: str, callback: WatchCallback) -> None:
        """Register a callback for changes to objects of ``kind``."""
        pass


class InMemoryStore(Store):
    """
    In-process object store.

    Used by tests and by single-process deployments. All operations are
    serialized by one lock; watch callbacks run after the lock is released,
    on the calling thread.
    """

    def __init__(self):
        self._objects: Dict[str, Dict[str, Any]] = {kind: {} for kind in _KIND_BY_TYPE.values()}
        self._watchers: Dict[str, List[WatchCallback]] = {kind: [] for kind in _KIND_BY_TYPE.values()}
        self._lock = threading.RLock()
        self._resource_version = 0

    def _next_version(self) -> int:
        self._resource_version += 1
        return self._resource_version

    def _bucket(self, kind: str) -> Dict[str, Any]:
        try:
            return self._objects[kind]
        except KeyError:
            raise ValueError(f"unknown kind {kind!r}") from None

    def get(self, kind: str, key: str) -> Any:
        with self._lock:
            obj = self._bucket(kind).get(key)
            if obj is None:
                raise NotFoundError(kind, key)
            return copy.deepcopy(obj)

    def list(self, kind: str, labels: Optional[Dict[str, str]] = None,
             namespace: Optional[str] = None) -> List[Any]:
        with self._lock:
            result = []
            for key in sorted(self._bucket(kind)):
                obj = self._bucket(kind)[key]
                if namespace is not None and obj.meta.namespace != namespace:
                    continue
                if labels and any(obj.meta.labels.get(k) != v for k, v in labels.items()):
                    continue
                result.append(copy.deepcopy(obj))
            return result

    def create(self, obj: Any) -> Any:
        kind = kind_of(obj)
        with self._lock:
            bucket = self._bucket(kind)
            if obj.meta.key in bucket:
                raise AlreadyExistsError(f"{kind} {obj.meta.key!r} already exists")

            stored = copy.deepcopy(obj)
            stored.meta.resource_version = self._next_version()
            stored.meta.generation = 1
            stored.meta.deletion_timestamp = None
            bucket[stored.meta.key] = stored
            result = copy.deepcopy(stored)

        logger.debug(f"Created {kind} {stored.meta.key}")
        self._notify(kind, WatchEventType.ADDED, result, None)
        return copy.deepcopy(result)

    def update(self, obj: Any) -> Any:
        kind = kind_of(obj)
        removed: List[Tuple[WatchEventType, Any]] = []
        with self._lock:
            bucket = self._bucket(kind)
            current = bucket.get(obj.meta.key)
            if current is None:
                raise NotFoundError(kind, obj.meta.key)
            if current.meta.uid != obj.meta.uid:
                raise ConflictError(f"{kind} {obj.meta.key!r} was replaced (uid mismatch)")
            if current.meta.resource_version != obj.meta.resource_version:
                raise ConflictError(
                    f"{kind} {obj.meta.key!r} modified: have version "
                    f"{obj.meta.resource_version}, stored {current.meta.resource_version}"
                )

            stored = copy.deepcopy(obj)
            stored.meta.resource_version = self._next_version()
            stored.meta.generation = current.meta.generation
            if _spec_changed(current, stored):
                stored.meta.generation += 1
            # Deletion cannot be cancelled by an update
            stored.meta.deletion_timestamp = current.meta.deletion_timestamp
            bucket[stored.meta.key] = stored
            result = copy.deepcopy(stored)

            if stored.meta.being_deleted and not stored.meta.finalizers:
                removed = self._remove_locked(kind, stored.meta.key)

        self._notify(kind, WatchEventType.MODIFIED, result, current)
        self._notify_removed(removed)
        return copy.deepcopy(result)

    def delete(self, kind: str, key: str) -> None:
        removed: List[Tuple[WatchEventType, Any]] = []
        modified = None
        with self._lock:
            current = self._bucket(kind).get(key)
            if current is None:
                raise NotFoundError(kind, key)

            if current.meta.finalizers:
                if not current.meta.being_deleted:
                    previous = copy.deepcopy(current)
                    current.meta.deletion_timestamp = time.time()
                    current.meta.resource_version = self._next_version()
                    modified = (copy.deepcopy(current), previous)
                    logger.debug(f"Marked {kind} {key} for deletion, "
                                 f"finalizers: {current.meta.finalizers}")
            else:
                removed = self._remove_locked(kind, key)

        if modified is not None:
            self._notify(kind, WatchEventType.MODIFIED, modified[0], modified[1])
        self._notify_removed(removed)

    def watch(self, kind: str, callback: WatchCallback) -> None:
        with self._lock:
            self._bucket(kind)
            self._watchers[kind].append(callback)

    # =========================================================================
    # Internals
    # =========================================================================

    def _remove_locked(self, kind: str, key: str) -> List[Tuple[WatchEventType, Any]]:
        """Remove an object and cascade to its dependents; returns pending events."""
        obj = self._bucket(kind).pop(key)
        events = [(WatchEventType.DELETED, copy.deepcopy(obj))]
        logger.debug(f"Deleted {kind} {key}")

        for dep_kind, bucket in self._objects.items():
            for dep_key, dep in list(bucket.items()):
                owner = dep.meta.owner
                if owner is None or owner.uid != obj.meta.uid:
                    continue
                if dep.meta.finalizers:
                    if not dep.meta.being_deleted:
                        dep.meta.deletion_timestamp = time.time()
                        dep.meta.resource_version = self._next_version()
                        events.append((WatchEventType.MODIFIED, copy.deepcopy(dep)))
                elif dep_key in bucket:
                    events.extend(self._remove_locked(dep_kind, dep_key))
        return events

    def _notify_removed(self, events: List[Tuple[WatchEventType, Any]]) -> None:
        for event, obj in events:
            self._notify(kind_of(obj), event, obj, None)

    def _notify(self, kind: str, event: WatchEventType, obj: Any, previous: Optional[Any]) -> None:
        with self._lock:
            callbacks = list(self._watchers.get(kind, []))

        for callback in callbacks:
            try:
                callback(event, obj, previous)
            except Exception as e:
                logger.error(f"Watch callback failed for {kind} {obj.meta.key}: {e}")


def _spec_changed(old: Any, new: Any) -> bool:
    for f in fields(old):
        if f.name in _STATUS_FIELDS:
            continue
        if getattr(old, f.name) != getattr(new, f.name):
            return True
    return False


def update_with_retry(
    store: Store,
    kind: str,
    key: str,
    mutate: Callable[[Any], bool],
    attempts: int = 5,
) -> Optional[Any]:
    """
    Read-modify-write an object, re-reading it after a conflict.

    ``mutate`` changes the fresh object in place and returns False when there
    is nothing to write. Returns the stored object, or None if it vanished.
    """
    last_error: Optional[ConflictError] = None
    for _ in range(attempts):
        try:
            obj = store.get(kind, key)
        except NotFoundError:
            return None
        if not mutate(obj):
            return obj
        try:
            return store.update(obj)
        except ConflictError as e:
            logger.debug(f"Conflict updating {kind} {key}, retrying: {e}")
            last_error = e
        except NotFoundError:
            return None
    raise last_error
