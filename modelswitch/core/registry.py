"""Dynamic registry tracking which version of each model serves traffic."""

import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Mapping

from readerwriterlock import rwlock

from .cache import ModelCache
from .errors import InUseError, ModelLoadError, NotFoundError, RegistrationError
from .instance import CacheKey, ModelInstance, ModelLoader, load_torch_instance
from .versions import ModelVersion, ModelVersionManager

logger = logging.getLogger(__name__)

WEIGHT_TOLERANCE = 1e-6


@dataclass(frozen=True)
class ActiveAssignment:
    """Traffic split for one model id.

    Weights are percentages in registration order of the switch (the
    version being replaced first) and always sum to 100.
    """
    model_id: str
    primary: str
    weights: tuple[tuple[str, float], ...]
    updated_at: float = field(default_factory=time.time)

    @classmethod
    def single(cls, model_id: str, version: str) -> "ActiveAssignment":
        return cls(model_id=model_id, primary=version, weights=((version, 100.0),))

    @property
    def versions(self) -> list[str]:
        return [v for v, _ in self.weights]

    @property
    def is_settled(self) -> bool:
        """True when a single version carries all traffic."""
        return len(self.weights) == 1

    def weight_of(self, version: str) -> float:
        for v, w in self.weights:
            if v == version:
                return w
        return 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "model_id": self.model_id,
            "primary": self.primary,
            "weights": {v: round(w, 4) for v, w in self.weights},
            "updated_at": self.updated_at,
        }


def derive_model_id(config: Mapping[str, Any]) -> str:
    """Logical model id from architecture and stage, else the model name."""
    arch = config.get("model_arch")
    stage = config.get("model_stage")
    if arch and stage:
        return f"{arch}-{stage}"
    model = config.get("model") or arch
    if not model:
        raise RegistrationError("Config needs model_arch and model_stage, or model")
    return str(model)


class DynamicModelRegistry:
    """Per-model active assignments backed by the version manager and cache.

    Uses a reader-writer lock so routing decisions always observe a whole
    assignment while apply_assignment swaps records atomically.
    """

    def __init__(
        self,
        versions: ModelVersionManager,
        cache: ModelCache,
        loader: ModelLoader = load_torch_instance,
        load_timeout: float | None = None,
    ):
        self.versions = versions
        self.cache = cache
        self._loader = loader
        self.load_timeout = load_timeout
        self._rw_lock = rwlock.RWLockFair()
        self._assignments: dict[str, ActiveAssignment] = {}
        self._reserved: Counter[CacheKey] = Counter()
        self._reserve_lock = threading.Lock()

    def register_model(
        self,
        config: dict[str, Any],
        version: str,
        metadata: dict[str, Any] | None = None,
        model_id: str | None = None,
    ) -> str:
        """Register a version and return its model id.

        The first version of a model id becomes active immediately.
        """
        model_id = model_id or derive_model_id(config)
        self.versions.create_version(model_id, version, config=config, metadata=metadata)

        with self._rw_lock.gen_wlock():
            if model_id not in self._assignments:
                self._assignments[model_id] = ActiveAssignment.single(model_id, version)
                logger.info(f"Activated first version {model_id}:{version}")

        return model_id

    def deregister_model(self, model_id: str, version: str) -> None:
        """Remove a version that is neither serving nor part of a running switch."""
        self.versions.get_version(model_id, version)
        key = (model_id, version)

        with self._rw_lock.gen_wlock():
            assignment = self._assignments.get(model_id)
            if assignment is not None and version in assignment.versions:
                raise InUseError(f"{model_id}:{version} is in the active assignment")
            with self._reserve_lock:
                if self._reserved[key] > 0:
                    raise InUseError(f"{model_id}:{version} is part of a running switch")

            self.cache.evict(key)
            self.versions.delete_version(model_id, version)
            if not self.versions.list_versions(model_id):
                self._assignments.pop(model_id, None)

        logger.info(f"Deregistered {model_id}:{version}")

    def reserve(self, model_id: str, *versions: str) -> None:
        """Mark versions as referenced by a running operation."""
        with self._reserve_lock:
            for version in versions:
                self._reserved[(model_id, version)] += 1

    def release(self, model_id: str, *versions: str) -> None:
        with self._reserve_lock:
            for version in versions:
                key = (model_id, version)
                self._reserved[key] -= 1
                if self._reserved[key] <= 0:
                    del self._reserved[key]

    def get_assignment(self, model_id: str) -> ActiveAssignment:
        """Get the current assignment (read-locked)."""
        with self._rw_lock.gen_rlock():
            assignment = self._assignments.get(model_id)
        if assignment is None:
            raise NotFoundError(f"Model {model_id} is not registered")
        return assignment

    def assignments(self) -> dict[str, ActiveAssignment]:
        with self._rw_lock.gen_rlock():
            return dict(self._assignments)

    def apply_assignment(
        self,
        model_id: str,
        weighted_versions: Mapping[str, float] | list[tuple[str, float]],
        primary: str | None = None,
    ) -> ActiveAssignment:
        """Atomically replace the traffic split for model_id (write-locked).

        Zero weights are dropped; the primary defaults to the heaviest version.
        """
        items = list(weighted_versions.items()) if isinstance(weighted_versions, Mapping) \
            else list(weighted_versions)
        for version, weight in items:
            if not 0.0 <= weight <= 100.0:
                raise ValueError(f"Weight for {version} out of range: {weight}")
            if not self.versions.has_version(model_id, version):
                raise NotFoundError(f"Version {version} not found for {model_id}")

        total = sum(w for _, w in items)
        if abs(total - 100.0) > WEIGHT_TOLERANCE:
            raise ValueError(f"Weights for {model_id} sum to {total}, expected 100")

        weights = tuple((v, float(w)) for v, w in items if w > 0)
        if primary is None:
            primary = max(weights, key=lambda vw: vw[1])[0]
        elif primary not in dict(weights):
            raise ValueError(f"Primary {primary} carries no traffic")

        assignment = ActiveAssignment(model_id=model_id, primary=primary, weights=weights)
        with self._rw_lock.gen_wlock():
            if model_id not in self._assignments:
                raise NotFoundError(f"Model {model_id} is not registered")
            self._assignments[model_id] = assignment

        logger.debug(f"Applied assignment {assignment.to_dict()}")
        return assignment

    def _load(self, key: CacheKey) -> tuple[ModelInstance, int]:
        version = self.versions.get_version(*key)
        try:
            instance = self._loader(version)
        except ModelLoadError:
            raise
        except Exception as e:
            raise ModelLoadError(f"Failed to load {key[0]}:{key[1]}: {e}") from e
        return instance, version.cost

    def preload(self, model_id: str, version: str, priority: int = 0):
        """Start loading a version in the background."""
        self.versions.get_version(model_id, version)
        return self.cache.preload((model_id, version), priority=priority, loader=self._load)

    def get_instance(self, model_id: str, version: str) -> ModelInstance:
        """Resolve a version to a resident instance, loading it on a miss."""
        key = (model_id, version)
        instance = self.cache.get(key)
        if instance is not None:
            return instance

        self.versions.get_version(model_id, version)
        logger.info(f"Cache miss for {model_id}:{version}, loading")
        return self.cache.preload(key, loader=self._load).result(timeout=self.load_timeout)

    def get_active_model(self, model_id: str) -> ModelInstance:
        """Resolve the primary version of model_id to an instance."""
        assignment = self.get_assignment(model_id)
        return self.get_instance(model_id, assignment.primary)

    def list_models(self) -> dict[str, list[ModelVersion]]:
        return {m: self.versions.list_versions(m) for m in self.versions.list_models()}
