"""
Project-scoped server instances and the stores that persist them.

An instance is one user-configured use of a server definition inside a
project, e.g. project "Analytics" → "Production MongoDB" with
``{"mongoEnv": "MDB_MCP_CONNECTION_STRING=mongodb://prod/analytics"}``.

Creating an instance never validates it; a half-filled form can be saved
and completed later.
"""

from __future__ import annotations

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

# Fields a caller may change through InstanceStore.update()
UPDATABLE_FIELDS = frozenset({"name", "parameter_values", "enabled"})


def _now() -> datetime:
    return datetime.now().replace(microsecond=0)


@dataclass(frozen=True)
class Instance:
    id: str
    project_id: str
    server_id: str
    name: str
    parameter_values: dict[str, str] = field(default_factory=dict)
    enabled: bool = True
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    @classmethod
    def new(
        cls,
        project_id: str,
        server_id: str,
        name: str,
        parameter_values: dict[str, str] | None = None,
    ) -> "Instance":
        now = _now()
        return cls(
            id=str(uuid.uuid4()),
            project_id=project_id,
            server_id=server_id,
            name=name,
            parameter_values=dict(parameter_values or {}),
            enabled=True,
            created_at=now,
            updated_at=now,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "server_id": self.server_id,
            "name": self.name,
            "parameter_values": dict(self.parameter_values),
            "enabled": self.enabled,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Instance":
        return cls(
            id=str(data["id"]),
            project_id=str(data["project_id"]),
            server_id=str(data["server_id"]),
            name=str(data.get("name", "")),
            parameter_values={str(k): str(v) for k, v in (data.get("parameter_values") or {}).items()},
            enabled=bool(data.get("enabled", True)),
            created_at=datetime.fromisoformat(str(data["created_at"])),
            updated_at=datetime.fromisoformat(str(data["updated_at"])),
        )


def apply_update(instance: Instance, fields: dict[str, Any]) -> Instance | None:
    """
    Return ``instance`` with ``fields`` applied, or None when nothing changes.
    """
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update instance fields: {sorted(unknown)}")

    changes = {k: v for k, v in fields.items() if getattr(instance, k) != v}
    if not changes:
        return None
    if "parameter_values" in changes:
        changes["parameter_values"] = dict(changes["parameter_values"])
    return replace(instance, updated_at=_now(), **changes)


class InstanceStore(ABC):
    """Persistence for instances, keyed by project id and instance id."""

    @abstractmethod
    def create(self, instance: Instance) -> Instance:
        """Persist a new instance and return it."""
        pass

    @abstractmethod
    def get(self, project_id: str, instance_id: str) -> Instance | None:
        pass

    @abstractmethod
    def list(self, project_id: str) -> list[Instance]:
        pass

    @abstractmethod
    def update(self, project_id: str, instance_id: str, **fields: Any) -> bool:
        """
        Apply a partial update.

        Returns:
            True if the instance exists and a field actually changed.
        """
        pass

    @abstractmethod
    def delete(self, project_id: str, instance_id: str) -> bool:
        """Returns False if the instance did not exist."""
        pass

    @abstractmethod
    def delete_all(self, project_id: str) -> int:
        """Delete every instance of a project. Returns how many were removed."""
        pass


class InMemoryInstanceStore(InstanceStore):
    """In-memory implementation of the instance store."""

    def __init__(self) -> None:
        self._projects: dict[str, dict[str, Instance]] = {}
        self._lock = threading.RLock()

    def create(self, instance: Instance) -> Instance:
        with self._lock:
            self._projects.setdefault(instance.project_id, {})[instance.id] = instance
        return instance

    def get(self, project_id: str, instance_id: str) -> Instance | None:
        return self._projects.get(project_id, {}).get(instance_id)

    def list(self, project_id: str) -> list[Instance]:
        return list(self._projects.get(project_id, {}).values())

    def update(self, project_id: str, instance_id: str, **fields: Any) -> bool:
        with self._lock:
            existing = self.get(project_id, instance_id)
            if existing is None:
                return False
            updated = apply_update(existing, fields)
            if updated is None:
                return False
            self._projects[project_id][instance_id] = updated
            return True

    def delete(self, project_id: str, instance_id: str) -> bool:
        with self._lock:
            return self._projects.get(project_id, {}).pop(instance_id, None) is not None

    def delete_all(self, project_id: str) -> int:
        with self._lock:
            return len(self._projects.pop(project_id, {}))


class InstanceStoreError(RuntimeError):
    """A project's instance file exists but cannot be read back."""

    def __init__(self, project_id: str, path: Path, cause: Exception):
        self.project_id = project_id
        self.path = path
        super().__init__(f"Cannot read instances of project {project_id} from {path}: {cause}")


def check_project_id(project_id: str) -> str:
    """Reject ids that would escape the per-project directory."""
    if (
        not project_id
        or project_id in (".", "..")
        or "/" in project_id
        or "\\" in project_id
        or "\x00" in project_id
        or Path(project_id).is_absolute()
    ):
        raise ValueError(f"Invalid project id: {project_id!r}")
    return project_id


class YamlInstanceStore(InstanceStore):
    """
    One YAML file per project:

        <base_dir>/projects/<project_id>/mcp-instances.yml

    A file that cannot be parsed reads as an empty project, but is never
    written over: create/update/delete raise InstanceStoreError instead.
    """

    FILE_NAME = "mcp-instances.yml"

    def __init__(self, base_dir: Path):
        self.base_dir = Path(base_dir)
        self._lock = threading.RLock()

    def _path(self, project_id: str) -> Path:
        return self.base_dir / "projects" / check_project_id(project_id) / self.FILE_NAME

    def _load(self, project_id: str, strict: bool = False) -> dict[str, Instance]:
        path = self._path(project_id)
        if not path.exists():
            return {}
        try:
            raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
            entries = raw.get("instances") or []
            instances = [Instance.from_dict(entry) for entry in entries]
        except (OSError, yaml.YAMLError, KeyError, TypeError, ValueError, AttributeError) as e:
            if strict:
                raise InstanceStoreError(project_id, path, e) from e
            logger.error(f"Failed to load instances for project {project_id}: {e}")
            return {}
        return {i.id: i for i in instances}

    def _save(self, project_id: str, instances: dict[str, Instance]) -> None:
        path = self._path(project_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"instances": [i.to_dict() for i in instances.values()]}
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")
        tmp_path.replace(path)
        logger.debug(f"Saved {len(instances)} instances for project {project_id}")

    def create(self, instance: Instance) -> Instance:
        with self._lock:
            instances = self._load(instance.project_id, strict=True)
            instances[instance.id] = instance
            self._save(instance.project_id, instances)
        return instance

    def get(self, project_id: str, instance_id: str) -> Instance | None:
        return self._load(project_id).get(instance_id)

    def list(self, project_id: str) -> list[Instance]:
        return list(self._load(project_id).values())

    def update(self, project_id: str, instance_id: str, **fields: Any) -> bool:
        with self._lock:
            instances = self._load(project_id, strict=True)
            existing = instances.get(instance_id)
            if existing is None:
                return False
            updated = apply_update(existing, fields)
            if updated is None:
                return False
            instances[instance_id] = updated
            self._save(project_id, instances)
            return True

    def delete(self, project_id: str, instance_id: str) -> bool:
        with self._lock:
            instances = self._load(project_id, strict=True)
            if instances.pop(instance_id, None) is None:
                return False
            self._save(project_id, instances)
            return True

    def delete_all(self, project_id: str) -> int:
        with self._lock:
            count = len(self._load(project_id, strict=True))
            path = self._path(project_id)
            if path.exists():
                path.unlink()
                logger.debug(f"Deleted all instances for project {project_id}")
            return count
