"""
Per-tool classification records.

Every tool an instance advertises gets a category (what it does) and a
strategy (when an agent may use it). Both are first guessed from the
tool's name and description and saved with ``auto_inferred=True``; a
user can then correct them, which clears the flag so later inference
never overwrites the choice.

Records are keyed ``"<instance_id>:<tool_name>"`` and live next to the
project's instances:

    <base_dir>/projects/<project_id>/mcp-tools-config.yml

Usage:
    store = YamlToolConfigStore(settings.instances_dir)
    config = ToolConfig.inferred(instance.id, {"name": "read_file", "description": "Read a file"})
    store.update_instance_tools(project_id, instance.id, [config])
"""

from __future__ import annotations

import enum
import logging
import threading
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any

import yaml

from mcp_instances.instances import check_project_id

logger = logging.getLogger(__name__)


class ToolCategory(str, enum.Enum):
    DATABASE = "DATABASE"
    NETWORK = "NETWORK"
    FILE_READ = "FILE_READ"
    FILE_WRITE = "FILE_WRITE"
    VISUALIZE = "VISUALIZE"
    EXECUTE = "EXECUTE"
    SEARCH = "SEARCH"
    TRANSFORM = "TRANSFORM"
    VERSION_CONTROL = "VERSION_CONTROL"
    COMMUNICATION = "COMMUNICATION"
    MONITORING = "MONITORING"
    OTHER = "OTHER"


class ToolStrategy(enum.IntFlag):
    """When a tool is offered to the agent. Flags combine."""

    # Attached when the user's request asks for it
    INTENT_BASED = 1
    # Only suggested after a response, needs confirmation
    FOLLOW_UP_BASED = 2
    BOTH = INTENT_BASED | FOLLOW_UP_BASED


def _text(tool: dict) -> tuple[str, str]:
    return str(tool.get("name", "")).lower(), str(tool.get("description") or "").lower()


def _any(text: str, *words: str) -> bool:
    return any(w in text for w in words)


# Checked in order; the first matching category wins
_CATEGORY_RULES: list[tuple[ToolCategory, tuple[str, ...], tuple[str, ...]]] = [
    (
        ToolCategory.DATABASE,
        ("database", "db", "sql", "query", "postgres", "mysql", "mongo", "redis"),
        ("database", "query", "table", "schema"),
    ),
    (
        ToolCategory.NETWORK,
        ("http", "api", "webhook", "request", "fetch", "curl"),
        ("http", "api", "request", "endpoint"),
    ),
    (
        ToolCategory.VISUALIZE,
        ("chart", "graph", "plot", "visualiz", "diagram"),
        ("chart", "visualiz", "graph", "plot"),
    ),
]

_LATE_CATEGORY_RULES: list[tuple[ToolCategory, tuple[str, ...], tuple[str, ...]]] = [
    (
        ToolCategory.TRANSFORM,
        ("convert", "transform", "parse", "format", "encode", "decode"),
        ("convert", "transform", "parse", "format"),
    ),
    (
        ToolCategory.VERSION_CONTROL,
        ("git", "commit", "branch", "merge", "pull_request", "pr_"),
        ("git", "version control", "repository", "commit"),
    ),
    (
        ToolCategory.COMMUNICATION,
        ("email", "slack", "notify", "message", "send", "post_"),
        ("email", "slack", "notification", "message"),
    ),
    (
        ToolCategory.MONITORING,
        ("log", "monitor", "track", "metric", "alert"),
        ("log", "monitor", "track", "metric"),
    ),
    (
        ToolCategory.EXECUTE,
        ("execute", "run", "command", "shell", "script", "install"),
        ("execute", "run", "command", "shell"),
    ),
]


def infer_tool_category(tool: dict) -> ToolCategory:
    """
    Guess a category from a catalog entry's name and description.

    Keyword matching only; anything unrecognized is OTHER.
    """
    name, description = _text(tool)

    for category, name_words, description_words in _CATEGORY_RULES:
        if _any(name, *name_words) or _any(description, *description_words):
            return category

    if (
        name.startswith(("search_", "find_", "query_"))
        or "lookup" in name
        or "search" in description
        or ("find" in description and "file" not in description)
    ):
        return ToolCategory.SEARCH

    if _any(name, "read_file", "get_file", "list_file", "show_file", "cat_") or (
        "file" in description and _any(description, "read", "get")
    ):
        return ToolCategory.FILE_READ

    if _any(name, "write_file", "create_file", "delete_file", "save_file", "remove_file", "mkdir") or (
        "file" in description and _any(description, "write", "create", "delete")
    ):
        return ToolCategory.FILE_WRITE

    for category, name_words, description_words in _LATE_CATEGORY_RULES:
        if _any(name, *name_words) or _any(description, *description_words):
            return category

    logger.debug(f"Tool '{tool.get('name')}' classified as OTHER")
    return ToolCategory.OTHER


def infer_tool_strategy(tool: dict) -> ToolStrategy:
    """
    FOLLOW_UP_BASED for destructive operations, INTENT_BASED otherwise.

    Ordinary writes and single-item deletes stay INTENT_BASED; only
    dropping schemas, bulk deletion, system-level commands and
    permission escalation need a follow-up.
    """
    name, description = _text(tool)

    if _any(name, "drop", "truncate") and (
        _any(name, "database", "db", "table", "schema")
        or _any(description, "drop database", "drop table")
    ):
        reason = "schema destruction"
    elif _any(name, "delete", "remove", "clear", "wipe") and (
        _any(name, "all", "everything")
        or _any(description, "delete all", "remove all", "clear all", "wipe all", "bulk delete", "mass delete")
    ):
        reason = "bulk deletion"
    elif _any(name, "shutdown", "restart", "reboot", "format") or _any(
        description, "shutdown", "restart", "irreversible", "cannot be undone", "permanent deletion"
    ):
        reason = "system level"
    elif _any(name, "chmod", "permission", "grant") and _any(
        description, "777", "full access", "admin rights", "root access", "bypass security"
    ):
        reason = "permission change"
    else:
        return ToolStrategy.INTENT_BASED

    logger.debug(f"Tool '{tool.get('name')}' needs follow-up ({reason})")
    return ToolStrategy.FOLLOW_UP_BASED


def _now() -> datetime:
    return datetime.now().replace(microsecond=0)


@dataclass(frozen=True)
class ToolConfig:
    tool_name: str
    instance_id: str
    category: ToolCategory
    strategy: ToolStrategy
    auto_inferred: bool = True
    updated_at: datetime = field(default_factory=_now)

    @property
    def key(self) -> str:
        return f"{self.instance_id}:{self.tool_name}"

    @classmethod
    def inferred(cls, instance_id: str, tool: dict) -> "ToolConfig":
        return cls(
            tool_name=str(tool["name"]),
            instance_id=instance_id,
            category=infer_tool_category(tool),
            strategy=infer_tool_strategy(tool),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool_name": self.tool_name,
            "instance_id": self.instance_id,
            "category": self.category.value,
            "strategy": int(self.strategy),
            "auto_inferred": self.auto_inferred,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolConfig":
        return cls(
            tool_name=str(data["tool_name"]),
            instance_id=str(data["instance_id"]),
            category=ToolCategory(str(data["category"])),
            strategy=ToolStrategy(int(data["strategy"])),
            auto_inferred=bool(data.get("auto_inferred", True)),
            updated_at=datetime.fromisoformat(str(data["updated_at"])),
        )


@dataclass(frozen=True)
class ToolConfigStats:
    total_tools: int
    user_customized: int
    auto_inferred: int
    instance_count: int
    tools_by_instance: dict[str, int] = field(default_factory=dict)


class ToolConfigStore(ABC):
    """
    Tool records of every project, keyed ``instance_id:tool_name``.

    Subclasses provide whole-project load/save; the per-record
    operations are built on those under one lock.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()

    @abstractmethod
    def load(self, project_id: str) -> dict[str, ToolConfig]:
        pass

    @abstractmethod
    def _save(self, project_id: str, configs: dict[str, ToolConfig]) -> None:
        pass

    @abstractmethod
    def delete_all(self, project_id: str) -> int:
        """Drop every record of a project. Returns how many were removed."""
        pass

    def _load_for_update(self, project_id: str) -> dict[str, ToolConfig]:
        return self.load(project_id)

    def get(self, project_id: str, instance_id: str, tool_name: str) -> ToolConfig | None:
        return self.load(project_id).get(f"{instance_id}:{tool_name}")

    def by_instance(self, project_id: str, instance_id: str) -> list[ToolConfig]:
        return [c for c in self.load(project_id).values() if c.instance_id == instance_id]

    def update(self, project_id: str, config: ToolConfig) -> ToolConfig:
        """Insert or replace one record, stamping ``updated_at``."""
        config = replace(config, updated_at=_now())
        with self._lock:
            configs = self._load_for_update(project_id)
            configs[config.key] = config
            self._save(project_id, configs)
        return config

    def update_instance_tools(self, project_id: str, instance_id: str, tools: list[ToolConfig]) -> None:
        for config in tools:
            if config.instance_id != instance_id:
                raise ValueError(
                    f"Tool {config.tool_name} belongs to instance {config.instance_id}, not {instance_id}"
                )
        with self._lock:
            configs = self._load_for_update(project_id)
            configs.update((c.key, c) for c in tools)
            self._save(project_id, configs)
        logger.debug(f"Updated {len(tools)} tools for instance {instance_id} in project {project_id}")

    def delete(self, project_id: str, instance_id: str, tool_name: str) -> bool:
        with self._lock:
            configs = self._load_for_update(project_id)
            if configs.pop(f"{instance_id}:{tool_name}", None) is None:
                return False
            self._save(project_id, configs)
            return True

    def delete_by_instance(self, project_id: str, instance_id: str) -> int:
        with self._lock:
            configs = self._load_for_update(project_id)
            keep = {k: c for k, c in configs.items() if c.instance_id != instance_id}
            removed = len(configs) - len(keep)
            if removed:
                self._save(project_id, keep)
        logger.debug(f"Deleted {removed} tools for instance {instance_id} in project {project_id}")
        return removed

    def stats(self, project_id: str) -> ToolConfigStats:
        configs = list(self.load(project_id).values())
        by_instance = Counter(c.instance_id for c in configs)
        customized = sum(1 for c in configs if not c.auto_inferred)
        return ToolConfigStats(
            total_tools=len(configs),
            user_customized=customized,
            auto_inferred=len(configs) - customized,
            instance_count=len(by_instance),
            tools_by_instance=dict(by_instance),
        )


class InMemoryToolConfigStore(ToolConfigStore):
    def __init__(self) -> None:
        super().__init__()
        self._projects: dict[str, dict[str, ToolConfig]] = {}

    def load(self, project_id: str) -> dict[str, ToolConfig]:
        return dict(self._projects.get(project_id, {}))

    def _save(self, project_id: str, configs: dict[str, ToolConfig]) -> None:
        self._projects[project_id] = dict(configs)

    def delete_all(self, project_id: str) -> int:
        with self._lock:
            return len(self._projects.pop(project_id, {}))


class ToolConfigStoreError(RuntimeError):
    """A project's tool config file exists but cannot be read back."""


class YamlToolConfigStore(ToolConfigStore):
    """
    Same on-disk rules as YamlInstanceStore: an unreadable file loads as
    empty and is never written over.
    """

    FILE_NAME = "mcp-tools-config.yml"

    def __init__(self, base_dir: Path):
        super().__init__()
        self.base_dir = Path(base_dir)

    def _path(self, project_id: str) -> Path:
        return self.base_dir / "projects" / check_project_id(project_id) / self.FILE_NAME

    @staticmethod
    def _read(path: Path) -> dict[str, ToolConfig]:
        if not path.exists():
            return {}
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        configs = [ToolConfig.from_dict(entry) for entry in raw.get("tools") or []]
        return {c.key: c for c in configs}

    def load(self, project_id: str) -> dict[str, ToolConfig]:
        path = self._path(project_id)
        try:
            return self._read(path)
        except (OSError, yaml.YAMLError, KeyError, TypeError, ValueError, AttributeError) as e:
            logger.error(f"Failed to load tool configs for project {project_id}: {e}")
            return {}

    def _load_for_update(self, project_id: str) -> dict[str, ToolConfig]:
        path = self._path(project_id)
        try:
            return self._read(path)
        except (OSError, yaml.YAMLError, KeyError, TypeError, ValueError, AttributeError) as e:
            raise ToolConfigStoreError(
                f"Cannot read tool configs of project {project_id} from {path}: {e}"
            ) from e

    def _save(self, project_id: str, configs: dict[str, ToolConfig]) -> None:
        path = self._path(project_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"tools": [c.to_dict() for c in configs.values()]}
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")
        tmp_path.replace(path)
        logger.debug(f"Saved {len(configs)} tool configs for project {project_id}")

    def delete_all(self, project_id: str) -> int:
        with self._lock:
            path = self._path(project_id)
            if not path.exists():
                return 0
            count = len(self.load(project_id))
            path.unlink()
            logger.debug(f"Deleted all tool configs for project {project_id}")
            return count
