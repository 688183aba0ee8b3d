from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from mcp_instances.transport import (
    JsonRpcRequest,
    JsonRpcResponse,
    ProtocolError,
    StdioTransport,
    ToolCallError,
    TransportClosedError,
    TransportCreationError,
    TransportErrorKind,
    _parse_tool_catalog,
    resolve_executable,
)
from tests.conftest import fake_server_command, process_alive


def test_response_parsing() -> None:
    response = JsonRpcResponse.from_json('{"jsonrpc": "2.0", "id": 3, "result": {"ok": true}}')
    assert response.id == 3
    assert response.result == {"ok": True}
    assert not response.is_error

    response = JsonRpcResponse.from_json('{"jsonrpc": "2.0", "id": 4, "error": "boom"}')
    assert response.is_error
    assert response.error == {"message": "boom"}

    with pytest.raises(ProtocolError):
        JsonRpcResponse.from_json("[1, 2]")


def test_request_serialization() -> None:
    payload = json.loads(JsonRpcRequest(method="tools/list", params={}, id=7).to_json())
    assert payload == {"jsonrpc": "2.0", "method": "tools/list", "params": {}, "id": 7}


def test_parse_tool_catalog() -> None:
    assert _parse_tool_catalog({"tools": [{"name": "a"}]}) == [{"name": "a"}]
    assert _parse_tool_catalog([{"name": "b"}]) == [{"name": "b"}]
    with pytest.raises(ProtocolError):
        _parse_tool_catalog({"tools": "nope"})
    with pytest.raises(ProtocolError):
        _parse_tool_catalog([{"description": "nameless"}])


def test_resolve_executable() -> None:
    assert resolve_executable([]) == []
    assert resolve_executable(["/bin/custom", "x"]) == ["/bin/custom", "x"]
    assert resolve_executable(["definitely-not-a-real-binary-xyz", "a"]) == ["definitely-not-a-real-binary-xyz", "a"]


@pytest.mark.asyncio
async def test_start_call_close() -> None:
    transport = StdioTransport(fake_server_command(), name="fake")
    tools = await transport.start(timeout=10)

    assert [t["name"] for t in tools] == ["echo", "env", "fail"]
    assert transport.server_info["name"] == "fake-tool-server"
    assert transport.is_alive()

    result = await transport.call_tool("echo", {"message": "hi"})
    assert json.loads(result["content"][0]["text"]) == {"echoed": "hi", "length": 2}

    pid = transport.pid
    await transport.close()
    assert not transport.is_alive()
    assert transport.closed
    assert not process_alive(pid)


@pytest.mark.asyncio
async def test_close_is_idempotent() -> None:
    transport = StdioTransport(fake_server_command(), name="fake")
    await transport.start(timeout=10)

    await transport.close()
    await transport.close()

    with pytest.raises(TransportClosedError):
        await transport.call_tool("echo", {"message": "late"})


@pytest.mark.asyncio
async def test_close_before_start() -> None:
    transport = StdioTransport(fake_server_command(), name="fake")
    await transport.close()
    with pytest.raises(TransportClosedError):
        await transport.start(timeout=10)


@pytest.mark.asyncio
async def test_tool_error_is_raised() -> None:
    transport = StdioTransport(fake_server_command(), name="fake")
    await transport.start(timeout=10)
    try:
        with pytest.raises(ToolCallError) as exc:
            await transport.call_tool("fail", {})
        assert "tool failed on purpose" in str(exc.value)

        # Still usable after a failed call
        result = await transport.call_tool("echo", {"message": "again"})
        assert "again" in result["content"][0]["text"]
    finally:
        await transport.close()


@pytest.mark.asyncio
async def test_send_timeout_then_late_response_skipped() -> None:
    transport = StdioTransport(fake_server_command(), name="fake")
    await transport.start(timeout=10)
    try:
        slow = JsonRpcRequest(method="debug/sleep", params={"seconds": 1}, id=transport.next_id())
        with pytest.raises(asyncio.TimeoutError):
            await transport.send(slow, timeout=0.2)

        result = await transport.call_tool("echo", {"message": "after"}, timeout=10)
        assert json.loads(result["content"][0]["text"])["echoed"] == "after"
    finally:
        await transport.close()


@pytest.mark.asyncio
async def test_noisy_server_is_tolerated() -> None:
    transport = StdioTransport(fake_server_command("--mode=noisy"), name="noisy")
    try:
        tools = await transport.start(timeout=10)
        assert len(tools) == 3
    finally:
        await transport.close()


@pytest.mark.asyncio
async def test_env_is_layered_over_parent(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FAKE_PARENT_VAR", "inherited")
    transport = StdioTransport(fake_server_command(), env={"FAKE_CHILD_VAR": "own"}, name="fake")
    await transport.start(timeout=10)
    try:
        parent = await transport.call_tool("env", {"variable": "FAKE_PARENT_VAR"})
        child = await transport.call_tool("env", {"variable": "FAKE_CHILD_VAR"})
        assert json.loads(parent["content"][0]["text"]) == {"value": "inherited"}
        assert json.loads(child["content"][0]["text"]) == {"value": "own"}
    finally:
        await transport.close()


@pytest.mark.asyncio
async def test_executable_not_found() -> None:
    transport = StdioTransport(["definitely-not-a-real-binary-xyz"], name="missing")
    with pytest.raises(TransportCreationError) as exc:
        await transport.start(timeout=5)
    assert exc.value.kind is TransportErrorKind.EXECUTABLE_NOT_FOUND
    assert transport.closed


@pytest.mark.asyncio
async def test_empty_command() -> None:
    with pytest.raises(TransportCreationError) as exc:
        await StdioTransport([]).start(timeout=5)
    assert exc.value.kind is TransportErrorKind.INVALID_COMMAND


@pytest.mark.asyncio
async def test_missing_working_directory(tmp_path: Path) -> None:
    transport = StdioTransport(fake_server_command(), working_directory=str(tmp_path / "gone"))
    with pytest.raises(TransportCreationError) as exc:
        await transport.start(timeout=5)
    assert exc.value.kind is TransportErrorKind.SPAWN_FAILED


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "command_args, env",
    [
        (("--prefix=a\x00b",), {}),
        ((), {"FAKE_VARS": "A=1\x00x,B=2"}),
        ((), {"BAD=NAME": "1"}),
    ],
)
async def test_unspawnable_arguments(command_args: tuple, env: dict) -> None:
    transport = StdioTransport(fake_server_command(*command_args), env=env, name="unspawnable")
    with pytest.raises(TransportCreationError) as exc:
        await transport.start(timeout=5)
    assert exc.value.kind is TransportErrorKind.SPAWN_FAILED
    assert transport.closed


@pytest.mark.asyncio
async def test_crash_during_startup() -> None:
    transport = StdioTransport(fake_server_command("--mode=crash"), name="crasher")
    with pytest.raises(TransportCreationError) as exc:
        await transport.start(timeout=10)
    assert exc.value.kind is TransportErrorKind.PROCESS_CRASHED
    assert "code 3" in str(exc.value)
    assert "crashing on purpose" in str(exc.value)


@pytest.mark.asyncio
@pytest.mark.parametrize("mode", ["bad-handshake", "bad-catalog"])
async def test_protocol_errors(mode: str) -> None:
    transport = StdioTransport(fake_server_command(f"--mode={mode}"), name=mode)
    with pytest.raises(TransportCreationError) as exc:
        await transport.start(timeout=10)
    assert exc.value.kind is TransportErrorKind.HANDSHAKE_PROTOCOL_ERROR
    assert transport.closed


@pytest.mark.asyncio
async def test_handshake_timeout_kills_process(tmp_path: Path) -> None:
    pid_file = tmp_path / "server.pid"
    transport = StdioTransport(fake_server_command("--mode=hang", f"--pid-file={pid_file}"), name="hang")

    with pytest.raises(TransportCreationError) as exc:
        await transport.start(timeout=1.0)

    assert exc.value.kind is TransportErrorKind.HANDSHAKE_TIMEOUT
    assert transport.closed
    assert not process_alive(int(pid_file.read_text()))


@pytest.mark.asyncio
async def test_cancelled_start_kills_process(tmp_path: Path) -> None:
    pid_file = tmp_path / "server.pid"
    transport = StdioTransport(fake_server_command("--mode=hang", f"--pid-file={pid_file}"), name="hang")

    task = asyncio.create_task(transport.start(timeout=30))
    for _ in range(100):
        if pid_file.exists() and pid_file.read_text():
            break
        await asyncio.sleep(0.05)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert transport.closed
    assert not process_alive(int(pid_file.read_text()))
