"""
Bridge between a CompositeToolProvider and LangChain agents.

Converts every tool in a provider's merged catalog into a LangChain
StructuredTool whose coroutine routes the call back through the
provider to the server that advertised it.

Usage:
    from mcp_instances.bridge import to_langchain_tools

    provider = await service.get_tool_provider(project_id)
    if provider is not None:
        async with provider:
            tools = to_langchain_tools(provider)
            agent = create_agent(model, tools=tools)
            ...
"""

from __future__ import annotations

import json
from typing import Any

from langchain_core.tools import StructuredTool

from mcp_instances.provider import CompositeToolProvider

_EMPTY_SCHEMA = {"type": "object", "properties": {}}


def _input_schema(tool_schema: dict) -> dict:
    # MCP servers advertise "inputSchema"; older line-protocol servers "parameters"
    schema = tool_schema.get("inputSchema") or tool_schema.get("parameters") or _EMPTY_SCHEMA
    schema = dict(schema)
    schema.setdefault("type", "object")
    schema.setdefault("properties", {})
    return schema


def format_result(result: Any) -> str:
    """Render a tools/call result as text for the model."""
    if isinstance(result, str):
        return result
    if isinstance(result, dict) and isinstance(result.get("content"), list):
        texts = [
            item.get("text", "")
            for item in result["content"]
            if isinstance(item, dict) and item.get("type") == "text"
        ]
        if texts:
            text = "\n".join(texts)
            return f"Error: {text}" if result.get("isError") else text
    return json.dumps(result, indent=2)


def mcp_to_langchain_tool(
    provider: CompositeToolProvider,
    tool_schema: dict,
    description_override: str | None = None,
) -> StructuredTool:
    """
    Create a LangChain StructuredTool that proxies to the provider.

    Args:
        provider: The provider that owns the server for this tool
        tool_schema: The tool entry from the provider's catalog
        description_override: Optional override for the tool description

    Returns:
        An async StructuredTool. Failures come back as an error string
        for the model to read rather than as an exception.
    """
    tool_name = tool_schema["name"]
    description = description_override or tool_schema.get("description") or f"MCP tool: {tool_name}"

    async def _call_mcp(**kwargs: Any) -> str:
        """Proxy call to MCP tool server."""
        try:
            result = await provider.call(tool_name, kwargs)
        except Exception as e:
            return f"Error calling {tool_name}: {e}"
        return format_result(result)

    return StructuredTool.from_function(
        coroutine=_call_mcp,
        name=tool_name,
        description=description,
        args_schema=_input_schema(tool_schema),
    )


def to_langchain_tools(provider: CompositeToolProvider) -> list[StructuredTool]:
    """One StructuredTool per tool in the provider's merged catalog."""
    return [mcp_to_langchain_tool(provider, schema) for schema in provider.tools]
