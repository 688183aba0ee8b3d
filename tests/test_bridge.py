from __future__ import annotations

import pytest

from mcp_instances.bridge import format_result, mcp_to_langchain_tool, to_langchain_tools
from mcp_instances.provider import CompositeToolProvider
from tests.test_provider import StaticTransport


class EchoTransport(StaticTransport):
    def __init__(self):
        super().__init__()
        self._tools = [{
            "name": "echo",
            "description": "Echoes back the input message.",
            "inputSchema": {
                "type": "object",
                "properties": {"message": {"type": "string"}},
                "required": ["message"],
            },
        }]

    async def call_tool(self, tool_name, arguments):
        if arguments.get("message") == "explode":
            raise RuntimeError("server went away")
        return {"content": [{"type": "text", "text": f"echo: {arguments['message']}"}], "isError": False}


def test_format_result() -> None:
    assert format_result("plain") == "plain"
    assert format_result({"content": [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}]}) == "a\nb"
    assert format_result({"content": [{"type": "text", "text": "bad"}], "isError": True}) == "Error: bad"
    assert format_result({"x": 1}) == '{\n  "x": 1\n}'


def test_tools_mirror_catalog() -> None:
    provider = CompositeToolProvider({"i1": EchoTransport(), "i2": StaticTransport("ping")})

    tools = to_langchain_tools(provider)

    assert [t.name for t in tools] == ["echo", "ping"]
    assert tools[0].description == "Echoes back the input message."
    assert "message" in tools[0].args
    assert tools[1].description == "tool ping"


def test_description_override() -> None:
    provider = CompositeToolProvider({"i1": EchoTransport()})
    tool = mcp_to_langchain_tool(provider, provider.tools[0], description_override="Say it back")
    assert tool.description == "Say it back"


@pytest.mark.asyncio
async def test_tool_routes_through_provider() -> None:
    provider = CompositeToolProvider({"i1": EchoTransport()})
    tool = to_langchain_tools(provider)[0]

    assert await tool.ainvoke({"message": "hi"}) == "echo: hi"


@pytest.mark.asyncio
async def test_tool_errors_become_text() -> None:
    provider = CompositeToolProvider({"i1": EchoTransport()})
    tool = to_langchain_tools(provider)[0]

    result = await tool.ainvoke({"message": "explode"})

    assert result == "Error calling echo: server went away"
