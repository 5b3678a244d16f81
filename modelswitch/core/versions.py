"""Version metadata management for registered models."""

import copy
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from .errors import DuplicateVersionError, NotFoundError, RegistrationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelVersion:
    """Immutable, labeled configuration of a model id."""
    model_id: str
    version: str
    config: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def key(self) -> tuple[str, str]:
        return (self.model_id, self.version)

    @property
    def cost(self) -> int:
        """Cache accounting cost for an instance of this version."""
        return int(self.config.get("cost", 1))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "model_id": self.model_id,
            "version": self.version,
            "config": copy.deepcopy(self.config),
            "metadata": copy.deepcopy(self.metadata),
            "created_at": self.created_at.isoformat(),
        }


class VersionStore(Protocol):
    """Storage backend for version records."""

    def add(self, version: ModelVersion) -> None:
        ...

    def get(self, model_id: str, version: str) -> ModelVersion | None:
        ...

    def list_for(self, model_id: str) -> list[ModelVersion]:
        ...

    def model_ids(self) -> list[str]:
        ...

    def remove(self, model_id: str, version: str) -> None:
        ...


class InMemoryVersionStore:
    """Process-local store keeping versions in insertion order."""

    def __init__(self):
        self._versions: dict[str, dict[str, ModelVersion]] = {}

    def add(self, version: ModelVersion) -> None:
        self._versions.setdefault(version.model_id, {})[version.version] = version

    def get(self, model_id: str, version: str) -> ModelVersion | None:
        return self._versions.get(model_id, {}).get(version)

    def list_for(self, model_id: str) -> list[ModelVersion]:
        return list(self._versions.get(model_id, {}).values())

    def model_ids(self) -> list[str]:
        return list(self._versions)

    def remove(self, model_id: str, version: str) -> None:
        versions = self._versions.get(model_id)
        if versions is None:
            return
        versions.pop(version, None)
        if not versions:
            del self._versions[model_id]


class ModelVersionManager:
    """Thread-safe record of registered model versions.

    Only tracks metadata; it never loads a model instance.
    """

    def __init__(self, store: VersionStore | None = None):
        self._store = store or InMemoryVersionStore()
        self._lock = threading.Lock()

    def create_version(
        self,
        model_id: str,
        version: str,
        config: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ModelVersion:
        """Register a new immutable version of model_id."""
        if not model_id or not version:
            raise RegistrationError("model_id and version must be non-empty")

        record = ModelVersion(
            model_id=model_id,
            version=version,
            config=copy.deepcopy(config or {}),
            metadata=copy.deepcopy(metadata or {}),
        )

        with self._lock:
            if self._store.get(model_id, version) is not None:
                raise DuplicateVersionError(f"Version {version} already exists for {model_id}")
            self._store.add(record)

        logger.info(f"Created version {model_id}:{version}")
        return record

    def get_version(self, model_id: str, version: str) -> ModelVersion:
        """Get a version, raising NotFoundError if unknown."""
        with self._lock:
            record = self._store.get(model_id, version)
        if record is None:
            raise NotFoundError(f"Version {version} not found for {model_id}")
        return record

    def has_version(self, model_id: str, version: str) -> bool:
        with self._lock:
            return self._store.get(model_id, version) is not None

    def list_versions(self, model_id: str) -> list[ModelVersion]:
        """List versions of model_id in registration order."""
        with self._lock:
            return self._store.list_for(model_id)

    def list_models(self) -> list[str]:
        with self._lock:
            return self._store.model_ids()

    def delete_version(self, model_id: str, version: str) -> None:
        """Delete a version record. Callers enforce in-use checks."""
        with self._lock:
            if self._store.get(model_id, version) is None:
                raise NotFoundError(f"Version {version} not found for {model_id}")
            self._store.remove(model_id, version)
        logger.info(f"Deleted version {model_id}:{version}")

    def compare_versions(self, model_id: str, v1: str, v2: str) -> dict[str, Any]:
        """Summarize differences between two versions of the same model."""
        first = self.get_version(model_id, v1)
        second = self.get_version(model_id, v2)

        delta = (second.created_at - first.created_at).total_seconds()
        return {
            "model_id": model_id,
            "v1": v1,
            "v2": v2,
            "config": _diff(first.config, second.config),
            "metadata": _diff(first.metadata, second.metadata),
            "created_at_delta_seconds": delta,
            "newer": v2 if delta >= 0 else v1,
        }

    def get_rollback_target(self, model_id: str, current_version: str) -> ModelVersion | None:
        """Return the version registered just before current_version."""
        versions = self.list_versions(model_id)
        labels = [v.version for v in versions]
        if current_version not in labels:
            raise NotFoundError(f"Version {current_version} not found for {model_id}")

        index = labels.index(current_version)
        return versions[index - 1] if index > 0 else None


def _diff(old: dict[str, Any], new: dict[str, Any]) -> dict[str, Any]:
    """Key-level diff between two flat dictionaries."""
    added = {k: new[k] for k in new.keys() - old.keys()}
    removed = {k: old[k] for k in old.keys() - new.keys()}
    changed = {
        k: {"from": old[k], "to": new[k]}
        for k in old.keys() & new.keys()
        if old[k] != new[k]
    }
    return {"added": added, "removed": removed, "changed": changed}
