"""
Instance Service — the public facade over instances and their tools.

Front ends call this for CRUD, validation and connection tests; the
agent loop calls ``get_tool_provider(project_id)`` on every request and
gets a freshly started set of servers each time (nothing is reused
between calls, so a server never sees stale state from an earlier one).

Usage:
    service = InstanceService(YamlInstanceStore(settings.instances_dir),
                              load_registry(settings.catalog_path),
                              settings,
                              tool_configs=YamlToolConfigStore(settings.instances_dir))

    created = service.create_instance("proj-1", "filesystem-mcp-server",
                                      "Docs", {"rootPath": "/srv/docs"})
    provider = await service.get_tool_provider("proj-1")
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator

from mcp_instances.config import Settings
from mcp_instances.connector import Connector
from mcp_instances.definitions import ServerDefinitionRegistry
from mcp_instances.instances import Instance, InstanceStore
from mcp_instances.provider import CompositeToolProvider, ToolProviderAggregator
from mcp_instances.result import Err, ErrorKind, Ok, Result
from mcp_instances.runtime import (
    RuntimeCheckResult,
    RuntimeIssue,
    Severity,
    check_runtime,
    check_runtime_with_start,
)
from mcp_instances.templates import ValidationResult
from mcp_instances.tool_config import (
    InMemoryToolConfigStore,
    ToolCategory,
    ToolConfig,
    ToolConfigStats,
    ToolConfigStore,
    ToolStrategy,
)
from mcp_instances.transport import TransportCreationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolProviderStats:
    total: int
    enabled: int
    disabled: int
    by_server_id: dict[str, int] = field(default_factory=dict)


class _KeyedLocks:
    """
    One lock per key, created on first use and dropped again once no
    thread holds or waits for it.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        # key -> [lock, number of holders and waiters]
        self._locks: dict[str, list] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def __contains__(self, key: str) -> bool:
        with self._guard:
            return key in self._locks

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]


class InstanceService:
    """
    Manages project-scoped server instances.

    Responsibilities:
    - Instance CRUD, serialized per instance id
    - Schema validation, runtime checks and live connection tests
    - Per-tool category and strategy records
    - Building the aggregated tool provider for a project
    """

    def __init__(
        self,
        store: InstanceStore,
        registry: ServerDefinitionRegistry,
        settings: Settings | None = None,
        aggregator: ToolProviderAggregator | None = None,
        tool_configs: ToolConfigStore | None = None,
    ):
        self.store = store
        self.tool_configs = tool_configs or InMemoryToolConfigStore()
        self.registry = registry
        self.settings = settings or Settings()
        self.aggregator = aggregator or ToolProviderAggregator(
            registry,
            startup_timeout=self.settings.startup_timeout,
            close_timeout=self.settings.close_timeout,
        )
        self._instance_locks = _KeyedLocks()
        self._project_locks = _KeyedLocks()

    # ── Queries ───────────────────────────────────────────

    def get_instances(self, project_id: str) -> list[Instance]:
        return self.store.list(project_id)

    def get_instance(self, project_id: str, instance_id: str) -> Instance | None:
        return self.store.get(project_id, instance_id)

    def get_enabled_instances(self, project_id: str) -> list[Instance]:
        return [i for i in self.store.list(project_id) if i.enabled]

    def get_instance_stats(self, project_id: str) -> ToolProviderStats:
        instances = self.store.list(project_id)
        enabled = sum(1 for i in instances if i.enabled)
        return ToolProviderStats(
            total=len(instances),
            enabled=enabled,
            disabled=len(instances) - enabled,
            by_server_id=dict(Counter(i.server_id for i in instances)),
        )

    # ── Mutations ─────────────────────────────────────────

    def create_instance(
        self,
        project_id: str,
        server_id: str,
        name: str,
        parameter_values: dict[str, str],
    ) -> Result[Instance]:
        """
        Persist a new, enabled instance.

        The parameter values are not validated here so that a partially
        filled configuration can be saved; use validate_instance() for
        feedback.
        """
        if server_id not in self.registry:
            return Err(ErrorKind.NOT_FOUND, f"Server definition not found: {server_id}")

        instance = Instance.new(project_id, server_id, name, parameter_values)
        with self._project_locks.hold(project_id), self._instance_locks.hold(instance.id):
            created = self.store.create(instance)
        logger.info(f"Created instance '{created.name}' ({created.id}) for project {project_id}")
        return Ok(created)

    def update_instance(
        self,
        project_id: str,
        instance_id: str,
        parameter_values: dict[str, str] | None = None,
        name: str | None = None,
        enabled: bool | None = None,
    ) -> Result[Instance]:
        changes: dict[str, Any] = {}
        if parameter_values is not None:
            changes["parameter_values"] = dict(parameter_values)
        if name is not None:
            changes["name"] = name
        if enabled is not None:
            changes["enabled"] = enabled

        with self._project_locks.hold(project_id), self._instance_locks.hold(instance_id):
            if self.store.get(project_id, instance_id) is None:
                return Err(ErrorKind.NOT_FOUND, f"Instance not found: {instance_id}")
            changed = self.store.update(project_id, instance_id, **changes) if changes else False
            updated = self.store.get(project_id, instance_id)

        if updated is None:
            return Err(ErrorKind.NOT_FOUND, f"Instance not found: {instance_id}")
        if changed:
            logger.info(f"Updated instance '{updated.name}' ({instance_id})")
        return Ok(updated)

    def set_instance_enabled(self, project_id: str, instance_id: str, enabled: bool) -> Result[Instance]:
        return self.update_instance(project_id, instance_id, enabled=enabled)

    def delete_instance(self, project_id: str, instance_id: str) -> Result[bool]:
        """Ok(True) when removed, Ok(False) when there was nothing to remove."""
        with self._project_locks.hold(project_id), self._instance_locks.hold(instance_id):
            deleted = self.store.delete(project_id, instance_id)
            if deleted:
                self.tool_configs.delete_by_instance(project_id, instance_id)
        if deleted:
            logger.info(f"Deleted instance {instance_id} from project {project_id}")
        return Ok(deleted)

    def delete_all_instances(self, project_id: str) -> int:
        with self._project_locks.hold(project_id):
            count = self.store.delete_all(project_id)
            self.tool_configs.delete_all(project_id)
        logger.info(f"Deleted {count} instances from project {project_id}")
        return count

    # ── Validation & connectivity ─────────────────────────

    def validate_instance(self, server_id: str, parameter_values: dict[str, str]) -> ValidationResult:
        """Schema-only check, usable before the instance exists."""
        definition = self.registry.get(server_id)
        if definition is None:
            return ValidationResult.of([f"Server not found: {server_id}"])
        draft = Instance.new("draft", server_id, "draft", parameter_values)
        return Connector(draft, definition).validate()

    def _draft_connector(self, server_id: str, parameter_values: dict[str, str]) -> Connector | None:
        definition = self.registry.get(server_id)
        if definition is None:
            return None
        return Connector(
            Instance.new("draft", server_id, "draft", parameter_values),
            definition,
            startup_timeout=self.settings.startup_timeout,
            close_timeout=self.settings.close_timeout,
        )

    def check_runtime(self, server_id: str, parameter_values: dict[str, str]) -> RuntimeCheckResult:
        """Is the server's executable installed here? No process is started."""
        connector = self._draft_connector(server_id, parameter_values)
        if connector is None:
            return RuntimeCheckResult((RuntimeIssue(Severity.ERROR, f"Server not found: {server_id}"),))
        return check_runtime(connector)

    async def check_runtime_with_start(
        self, server_id: str, parameter_values: dict[str, str]
    ) -> RuntimeCheckResult:
        """check_runtime() plus one trial start; a failed start is a warning."""
        connector = self._draft_connector(server_id, parameter_values)
        if connector is None:
            return RuntimeCheckResult((RuntimeIssue(Severity.ERROR, f"Server not found: {server_id}"),))
        return await check_runtime_with_start(connector)

    def _connector_for(self, project_id: str, instance_id: str) -> Result[Connector]:
        instance = self.store.get(project_id, instance_id)
        if instance is None:
            return Err(ErrorKind.NOT_FOUND, f"Instance not found: {instance_id}")
        definition = self.registry.get(instance.server_id)
        if definition is None:
            return Err(ErrorKind.NOT_FOUND, f"Server definition not found: {instance.server_id}")
        return Ok(Connector(
            instance,
            definition,
            startup_timeout=self.settings.startup_timeout,
            close_timeout=self.settings.close_timeout,
        ))

    async def list_tools(self, project_id: str, instance_id: str) -> Result[list[dict]]:
        """Start one instance, return its tool catalog, stop it again."""
        connector = self._connector_for(project_id, instance_id)
        if connector.is_err:
            return connector

        try:
            transport = await connector.value.create_transport()
        except TransportCreationError as e:
            logger.warning(f"Instance {instance_id} could not be started: {e}")
            return Err(ErrorKind.TRANSPORT_FAILED, str(e))

        try:
            return Ok(transport.tools)
        finally:
            await transport.close()

    async def test_connection(self, project_id: str, instance_id: str) -> Result[list[str]]:
        """
        Does this instance actually start right now?

        Returns:
            Ok(tool names) on success, Err(TRANSPORT_FAILED, reason) otherwise.
        """
        tools = await self.list_tools(project_id, instance_id)
        if tools.is_err:
            return tools
        names = [t["name"] for t in tools.value]
        logger.info(f"Connection test for instance {instance_id} succeeded: {len(names)} tools")
        return Ok(names)

    # ── Tool classification ───────────────────────────────

    def get_tool_configs(self, project_id: str, instance_id: str | None = None) -> list[ToolConfig]:
        if instance_id is None:
            return list(self.tool_configs.load(project_id).values())
        return self.tool_configs.by_instance(project_id, instance_id)

    def get_tool_config_stats(self, project_id: str) -> ToolConfigStats:
        return self.tool_configs.stats(project_id)

    async def classify_tools(self, project_id: str, instance_id: str) -> Result[list[ToolConfig]]:
        """
        Category and strategy for every tool the instance advertises.

        Saved records win, whether customized or inferred earlier. Tools
        seen for the first time are inferred and saved with
        ``auto_inferred=True`` so they can be customized later.
        """
        tools = await self.list_tools(project_id, instance_id)
        if tools.is_err:
            return tools

        with self._project_locks.hold(project_id):
            saved = {c.tool_name: c for c in self.tool_configs.by_instance(project_id, instance_id)}
            configs = [saved.get(t["name"]) or ToolConfig.inferred(instance_id, t) for t in tools.value]
            fresh = [c for c in configs if c.tool_name not in saved]
            if fresh:
                self.tool_configs.update_instance_tools(project_id, instance_id, fresh)
        logger.debug(
            f"Classified {len(configs)} tools of instance {instance_id} "
            f"({len(fresh)} newly inferred)"
        )
        return Ok(configs)

    def customize_tool_config(
        self,
        project_id: str,
        instance_id: str,
        tool_name: str,
        category: ToolCategory,
        strategy: ToolStrategy,
    ) -> Result[ToolConfig]:
        """Override a tool's classification; later inference keeps it."""
        with self._project_locks.hold(project_id):
            existing = self.tool_configs.get(project_id, instance_id, tool_name)
            if existing is None:
                return Err(ErrorKind.NOT_FOUND, f"Tool not found: {tool_name}")
            updated = self.tool_configs.update(project_id, ToolConfig(
                tool_name=tool_name,
                instance_id=instance_id,
                category=ToolCategory(category),
                strategy=ToolStrategy(strategy),
                auto_inferred=False,
            ))
        logger.info(
            f"Customized tool '{tool_name}' of instance {instance_id}: "
            f"{updated.category.value}, {updated.strategy.name}"
        )
        return Ok(updated)

    def save_instance_tools(
        self,
        project_id: str,
        instance_id: str,
        categories: dict[str, ToolCategory],
        strategies: dict[str, ToolStrategy],
    ) -> list[ToolConfig]:
        """
        Store a reviewed classification for several tools at once.

        A tool named in only one of the mappings gets OTHER or
        FOLLOW_UP_BASED for the missing half.
        """
        names = sorted(set(categories) | set(strategies))
        configs = [
            ToolConfig(
                tool_name=name,
                instance_id=instance_id,
                category=ToolCategory(categories.get(name, ToolCategory.OTHER)),
                strategy=ToolStrategy(strategies.get(name, ToolStrategy.FOLLOW_UP_BASED)),
                auto_inferred=False,
            )
            for name in names
        ]
        with self._project_locks.hold(project_id):
            self.tool_configs.update_instance_tools(project_id, instance_id, configs)
        logger.debug(f"Saved {len(configs)} reviewed tools for instance {instance_id}")
        return configs

    # ── Agent loop entry point ────────────────────────────

    async def get_tool_provider(self, project_id: str) -> CompositeToolProvider | None:
        """
        Start every enabled instance of the project and merge their tools.

        None means "no tools": no instances, all disabled, or all failed.
        The caller owns the returned provider and must close() it.
        """
        instances = self.store.list(project_id)
        return await self.aggregator.build(instances)
