"""
Tool Provider — merges the tools of every enabled instance of a project.

The aggregator spawns one transport per enabled instance, concurrently,
each under its own startup timeout. An instance that fails is logged and
skipped; the others are still served. The resulting CompositeToolProvider
owns every transport it was built from and closes them all on close().

Usage:
    aggregator = ToolProviderAggregator(registry, startup_timeout=30)
    provider = await aggregator.build(store.list(project_id))
    if provider is None:
        ...  # no tools for this project
    else:
        async with provider:
            result = await provider.call("read_file", {"path": "README.md"})
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable

from mcp_instances.connector import Connector
from mcp_instances.definitions import ServerDefinition, ServerDefinitionRegistry
from mcp_instances.instances import Instance
from mcp_instances.transport import Transport, TransportCreationError

logger = logging.getLogger(__name__)

ConnectorFactory = Callable[[Instance, ServerDefinition], Connector]


@dataclass(frozen=True)
class SkippedInstance:
    instance_id: str
    server_id: str
    reason: str


class CompositeToolProvider:
    """
    A flat tool catalog over several live transports.

    Responsibilities:
    - Merge the catalogs (union of names; first registration wins)
    - Route each call to the transport that advertised the tool
    - Close every transport, exactly once
    """

    def __init__(
        self,
        transports: dict[str, Transport],
        skipped: Iterable[SkippedInstance] = (),
    ):
        """
        Args:
            transports: instance id → started transport
            skipped: instances that were enabled but could not be started
        """
        self._transports = dict(transports)
        self._routes: dict[str, str] = {}  # tool name → instance id
        self._tools: list[dict] = []
        self.skipped = list(skipped)
        self._closed = False

        for instance_id, transport in self._transports.items():
            for tool in transport.tools:
                name = tool["name"]
                if name in self._routes:
                    logger.warning(
                        f"Tool '{name}' from instance {instance_id} shadowed by "
                        f"instance {self._routes[name]}"
                    )
                    continue
                self._routes[name] = instance_id
                self._tools.append(tool)

    @property
    def tools(self) -> list[dict]:
        return list(self._tools)

    def tool_names(self) -> list[str]:
        return [t["name"] for t in self._tools]

    @property
    def sources(self) -> dict[str, list[str]]:
        """instance id → names of the tools it serves."""
        result: dict[str, list[str]] = {iid: [] for iid in self._transports}
        for name, instance_id in self._routes.items():
            result[instance_id].append(name)
        return result

    @property
    def closed(self) -> bool:
        return self._closed

    def get_tool(self, tool_name: str) -> dict | None:
        return next((t for t in self._tools if t["name"] == tool_name), None)

    async def call(self, tool_name: str, arguments: dict[str, Any]) -> Any:
        """
        Call a tool by name on whichever server provides it.

        Raises:
            KeyError: no server provides ``tool_name``
            TransportClosedError: the provider has been closed
        """
        instance_id = self._routes.get(tool_name)
        if instance_id is None:
            raise KeyError(f"Unknown tool: '{tool_name}'. Available: {sorted(self._routes)}")
        return await self._transports[instance_id].call_tool(tool_name, arguments)

    async def close(self) -> None:
        """Close every underlying transport."""
        if self._closed:
            return
        self._closed = True
        await close_all(self._transports.values())
        logger.debug(f"Tool provider closed ({len(self._transports)} transports)")

    async def __aenter__(self) -> "CompositeToolProvider":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def __len__(self) -> int:
        return len(self._tools)


async def close_all(transports: Iterable[Transport]) -> None:
    """Close transports concurrently; one failing close does not stop the rest."""
    transports = list(transports)
    results = await asyncio.gather(*(t.close() for t in transports), return_exceptions=True)
    for transport, result in zip(transports, results):
        if isinstance(result, BaseException):
            logger.error(f"Failed to close transport {getattr(transport, 'name', transport)}: {result}")


class ToolProviderAggregator:
    """Builds a CompositeToolProvider from a project's instances."""

    def __init__(
        self,
        registry: ServerDefinitionRegistry,
        startup_timeout: float = 30.0,
        close_timeout: float = 5.0,
        connector_factory: ConnectorFactory | None = None,
    ):
        self.registry = registry
        self.startup_timeout = startup_timeout
        self.close_timeout = close_timeout
        self._connector_factory = connector_factory or self._default_connector

    def _default_connector(self, instance: Instance, definition: ServerDefinition) -> Connector:
        return Connector(
            instance,
            definition,
            startup_timeout=self.startup_timeout,
            close_timeout=self.close_timeout,
        )

    async def _open(self, instance: Instance) -> Transport:
        definition = self.registry.get(instance.server_id)
        if definition is None:
            raise LookupError(f"Server definition not found: {instance.server_id}")
        connector = self._connector_factory(instance, definition)
        return await connector.create_transport()

    async def build(self, instances: Iterable[Instance]) -> CompositeToolProvider | None:
        """
        Start every enabled instance and merge their tools.

        Returns:
            A provider owning every transport that started, or None when
            no instance is enabled or none of them started.
        """
        enabled = [i for i in instances if i.enabled]
        if not enabled:
            logger.debug("No enabled instances, no tool provider")
            return None

        tasks = {
            instance.id: asyncio.create_task(self._open(instance), name=f"open:{instance.id}")
            for instance in enabled
        }
        by_id = {instance.id: instance for instance in enabled}
        transports: dict[str, Transport] = {}
        skipped: list[SkippedInstance] = []

        try:
            await asyncio.wait(tasks.values())

            for instance_id, task in tasks.items():
                instance = by_id[instance_id]
                exc = None if task.cancelled() else task.exception()
                if exc is None and not task.cancelled():
                    transports[instance_id] = task.result()
                    continue

                if exc is None:
                    reason = "startup cancelled"
                elif isinstance(exc, (TransportCreationError, LookupError)):
                    reason = str(exc)
                else:
                    reason = f"{type(exc).__name__}: {exc}"
                    logger.error(
                        f"Unexpected error starting instance {instance_id}",
                        exc_info=exc,
                    )
                logger.warning(
                    f"Skipping instance '{instance.name}' "
                    f"(id={instance_id}, server={instance.server_id}): {reason}"
                )
                skipped.append(SkippedInstance(instance_id, instance.server_id, reason))
        except BaseException:
            # Cancelled (or worse): nothing spawned by this call may outlive it.
            for task in tasks.values():
                task.cancel()
            await asyncio.gather(*tasks.values(), return_exceptions=True)
            started = [
                t.result() for t in tasks.values()
                if t.done() and not t.cancelled() and t.exception() is None
            ]
            await close_all(started)
            raise

        if not transports:
            logger.warning(f"All {len(enabled)} enabled instances failed to start, no tool provider")
            return None

        provider = CompositeToolProvider(transports, skipped)
        logger.info(
            f"Tool provider ready: {len(provider)} tools from "
            f"{len(transports)}/{len(enabled)} instances"
        )
        return provider
