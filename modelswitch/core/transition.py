"""Zero-downtime transitions: routing, in-flight tracking and draining."""

import hashlib
import logging
import threading
import time
import uuid
import warnings
from collections import Counter, deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator

from .errors import ConflictError, DrainTimeoutWarning, NotFoundError
from .instance import CacheKey, ModelInstance
from .registry import ActiveAssignment, DynamicModelRegistry

logger = logging.getLogger(__name__)


class TransitionState(str, Enum):
    """Transition lifecycle state."""
    ACTIVE = "active"
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass
class Transition:
    """Two pinned instances of one model id sharing traffic."""
    id: str
    model_id: str
    from_key: CacheKey
    to_key: CacheKey
    state: TransitionState = TransitionState.ACTIVE
    started_at: float = field(default_factory=time.time)
    finished_at: float | None = None
    drained: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "model_id": self.model_id,
            "from_version": self.from_key[1],
            "to_version": self.to_key[1],
            "state": self.state.value,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "drained": self.drained,
        }


def routing_bucket(routing_key: str) -> int:
    """Stable bucket in [0, 100) for a request-scoped routing key."""
    digest = hashlib.md5(routing_key.encode("utf-8")).hexdigest()
    return int(digest, 16) % 100


def select_version(assignment: ActiveAssignment, routing_key: str | None) -> str:
    """Pick the version whose cumulative weight range contains the key's bucket."""
    if assignment.is_settled:
        return assignment.primary

    bucket = routing_bucket(routing_key or uuid.uuid4().hex)
    boundary = 0.0
    for version, weight in assignment.weights:
        boundary += weight
        if bucket < boundary:
            return version
    return assignment.weights[-1][0]


class TransitionManager:
    """Executes traffic transitions against live requests.

    In-flight counters are keyed by (model_id, version). Routing and the
    counter increment happen under the same condition lock that
    complete/abort hold while rewriting the assignment, so a request that
    observed the old split is always counted before a drain starts.
    """

    def __init__(
        self,
        registry: DynamicModelRegistry,
        max_transition_time: float = 30.0,
        max_history: int = 100,
    ):
        self.registry = registry
        self.cache = registry.cache
        self.max_transition_time = max_transition_time
        self._cond = threading.Condition()
        self._in_flight: Counter[CacheKey] = Counter()
        self._deferred_unload: dict[CacheKey, ModelInstance] = {}
        self._transitions: dict[str, Transition] = {}
        self._finished: deque[str] = deque()
        self.max_history = max_history

    def begin_transition(self, from_instance: ModelInstance, to_instance: ModelInstance) -> str:
        """Pin both instances and start tracking a transition."""
        from_key = from_instance.instance_key
        to_key = to_instance.instance_key
        if from_key[0] != to_key[0]:
            raise ValueError("Transition instances must belong to the same model id")
        if from_key == to_key:
            raise ValueError(f"{to_key[0]}:{to_key[1]} is already the source instance")

        with self._cond:
            for t in self._transitions.values():
                if t.model_id == from_key[0] and t.state == TransitionState.ACTIVE:
                    raise ConflictError(f"Transition {t.id} already active for {t.model_id}")

        self.cache.pin(from_key)
        try:
            self.cache.pin(to_key)
        except Exception:
            self.cache.unpin(from_key)
            raise

        transition = Transition(
            id=str(uuid.uuid4()),
            model_id=from_key[0],
            from_key=from_key,
            to_key=to_key,
        )
        with self._cond:
            self._transitions[transition.id] = transition

        logger.info(
            f"Began transition {transition.id} for {transition.model_id}: "
            f"{from_key[1]} -> {to_key[1]}"
        )
        return transition.id

    def get_transition(self, transition_id: str) -> Transition:
        with self._cond:
            transition = self._transitions.get(transition_id)
        if transition is None:
            raise NotFoundError(f"Transition {transition_id} not found")
        return transition

    def active_transitions(self) -> list[Transition]:
        with self._cond:
            return [t for t in self._transitions.values() if t.state == TransitionState.ACTIVE]

    def acquire(self, model_id: str, routing_key: str | None = None) -> CacheKey:
        """Route a request and count it as in flight on the chosen version."""
        with self._cond:
            assignment = self.registry.get_assignment(model_id)
            key = (model_id, select_version(assignment, routing_key))
            self._in_flight[key] += 1
            return key

    def release(self, key: CacheKey) -> None:
        """Finish an in-flight request started by acquire or mark_request_start."""
        unload = None
        with self._cond:
            if self._in_flight[key] <= 0:
                logger.warning(f"In-flight counter underflow for {key[0]}:{key[1]}")
                return
            self._in_flight[key] -= 1
            if self._in_flight[key] == 0:
                del self._in_flight[key]
                unload = self._deferred_unload.pop(key, None)
                self._cond.notify_all()

        if unload is not None:
            logger.info(f"Last stale request finished on {key[0]}:{key[1]}, unloading")
            unload.unload()

    def route(self, model_id: str, routing_key: str | None = None) -> ModelInstance:
        """Resolve the instance a request with routing_key should be served by.

        The same key routes to the same version for as long as the split is
        unchanged, and only moves towards the incoming version as it grows.
        """
        assignment = self.registry.get_assignment(model_id)
        version = select_version(assignment, routing_key)
        return self.registry.get_instance(model_id, version)

    def mark_request_start(self, instance: ModelInstance) -> None:
        with self._cond:
            self._in_flight[instance.instance_key] += 1

    def mark_request_complete(self, instance: ModelInstance) -> None:
        self.release(instance.instance_key)

    @contextmanager
    def track(self, instance: ModelInstance) -> Iterator[ModelInstance]:
        """Count a request as in flight for the duration of the block."""
        self.mark_request_start(instance)
        try:
            yield instance
        finally:
            self.mark_request_complete(instance)

    def in_flight(self, key: CacheKey) -> int:
        with self._cond:
            return self._in_flight.get(key, 0)

    def _drain(self, key: CacheKey, timeout: float) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: self._in_flight.get(key, 0) == 0, timeout=timeout)

    def _finish(self, transition_id: str) -> Transition:
        with self._cond:
            transition = self._transitions.get(transition_id)
            if transition is None:
                raise NotFoundError(f"Transition {transition_id} not found")
            if transition.state != TransitionState.ACTIVE:
                raise ConflictError(f"Transition {transition_id} is already {transition.state.value}")
            return transition

    def _retire(self, transition_id: str) -> None:
        """Keep only the most recent max_history finished transitions."""
        with self._cond:
            self._finished.append(transition_id)
            while len(self._finished) > self.max_history:
                self._transitions.pop(self._finished.popleft(), None)

    def complete_transition(self, transition_id: str) -> bool:
        """Make the incoming instance sole owner and drain the outgoing one.

        Returns:
            True if the outgoing instance drained within max_transition_time.
        """
        transition = self._finish(transition_id)
        model_id = transition.model_id

        with self._cond:
            self.registry.apply_assignment(model_id, {transition.to_key[1]: 100.0})
            transition.state = TransitionState.COMPLETED
        self.cache.unpin(transition.to_key)

        drained = self._drain(transition.from_key, self.max_transition_time)
        old_instance = self.cache.get(transition.from_key)
        self.cache.unpin(transition.from_key)

        if drained:
            if self.cache.pin_count(transition.from_key) == 0:
                self.cache.evict(transition.from_key)
        else:
            self._defer_unload(transition.from_key, old_instance)

        transition.finished_at = time.time()
        transition.drained = drained
        self._retire(transition_id)
        logger.info(
            f"Completed transition {transition_id}: {model_id} now serves "
            f"{transition.to_key[1]} (drained={drained})"
        )
        return drained

    def abort_transition(self, transition_id: str) -> bool:
        """Revert all traffic to the outgoing instance and release both pins.

        Returns:
            True if the incoming instance drained within max_transition_time.
        """
        transition = self._finish(transition_id)
        model_id = transition.model_id

        with self._cond:
            self.registry.apply_assignment(model_id, {transition.from_key[1]: 100.0})
            transition.state = TransitionState.ABORTED

        drained = self._drain(transition.to_key, self.max_transition_time)
        if not drained:
            self._warn_drain_timeout(transition.to_key)
        self.cache.unpin(transition.to_key)
        self.cache.unpin(transition.from_key)

        transition.finished_at = time.time()
        transition.drained = drained
        self._retire(transition_id)
        logger.info(
            f"Aborted transition {transition_id}: {model_id} reverted to "
            f"{transition.from_key[1]} (drained={drained})"
        )
        return drained

    def _warn_drain_timeout(self, key: CacheKey) -> None:
        message = (
            f"{key[0]}:{key[1]} still has {self.in_flight(key)} in-flight requests "
            f"after {self.max_transition_time}s"
        )
        logger.warning(message)
        warnings.warn(message, DrainTimeoutWarning, stacklevel=3)

    def _defer_unload(self, key: CacheKey, instance: ModelInstance | None) -> None:
        """Drop key from the cache now, unload once its stale requests finish."""
        self._warn_drain_timeout(key)
        if self.cache.pin_count(key) > 0:
            return
        self.cache.evict(key, unload=False)
        if instance is None:
            return

        with self._cond:
            if self._in_flight.get(key, 0) > 0:
                self._deferred_unload[key] = instance
                return
        instance.unload()

    def get_status(self) -> dict[str, Any]:
        with self._cond:
            return {
                "transitions": [t.to_dict() for t in self._transitions.values()],
                "in_flight": {f"{k[0]}:{k[1]}": n for k, n in self._in_flight.items()},
            }
