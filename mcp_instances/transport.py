"""
Transport layer for MCP tool server communication.

Currently implements:
  - StdioTransport: JSON-RPC 2.0 over stdin/stdout pipes to a child process

A transport owns exactly one live process. ``start()`` spawns it, runs
the handshake and fetches the tool catalog; ``close()`` tears it down
and is safe to call any number of times. Every failure inside
``start()`` closes the process before surfacing as a
TransportCreationError.
"""

from __future__ import annotations

import asyncio
import collections
import json
import logging
import os
import shutil
import signal
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "mcp-instances", "version": "0.1.0"}

# asyncio's default 64 KiB line limit is too small for large tool catalogs
_STREAM_LIMIT = 16 * 1024 * 1024
_STDERR_TAIL_LINES = 20

# Desktop apps often start with a minimal PATH; look here as well.
_EXTRA_EXECUTABLE_DIRS = (
    "/usr/local/bin",
    "/opt/homebrew/bin",
    "/opt/local/bin",
    str(Path.home() / ".local" / "bin"),
    str(Path.home() / ".volta" / "bin"),
)


# ── Errors ────────────────────────────────────────────────


class TransportErrorKind(str, Enum):
    EXECUTABLE_NOT_FOUND = "executable_not_found"
    SPAWN_FAILED = "spawn_failed"
    INVALID_COMMAND = "invalid_command"
    HANDSHAKE_TIMEOUT = "handshake_timeout"
    HANDSHAKE_PROTOCOL_ERROR = "handshake_protocol_error"
    PROCESS_CRASHED = "process_crashed"


class TransportError(RuntimeError):
    """Base class for transport failures."""


class TransportCreationError(TransportError):
    """The transport could not be brought up. ``kind`` says why."""

    def __init__(self, kind: TransportErrorKind, message: str):
        super().__init__(f"Transport creation failed ({kind.value}): {message}")
        self.kind = kind
        self.detail = message


class TransportClosedError(TransportError):
    """Used after close(). This is a caller bug, not a runtime condition."""


class ProcessExitedError(TransportError):
    """The tool server process went away mid-exchange."""


class ProtocolError(TransportError):
    """The tool server sent something that is not JSON-RPC."""


class ToolCallError(TransportError):
    """The tool server answered a tools/call with a JSON-RPC error."""

    def __init__(self, tool_name: str, error: dict):
        super().__init__(f"Tool call failed ({tool_name}): {error.get('message', error)}")
        self.tool_name = tool_name
        self.error = error


# ── JSON-RPC messages ─────────────────────────────────────


@dataclass
class JsonRpcRequest:
    """JSON-RPC 2.0 request."""
    method: str
    params: dict[str, Any]
    id: int | str

    def to_json(self) -> str:
        return json.dumps({
            "jsonrpc": "2.0",
            "method": self.method,
            "params": self.params,
            "id": self.id,
        })


@dataclass
class JsonRpcNotification:
    """JSON-RPC 2.0 notification (no id, no response)."""
    method: str
    params: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps({
            "jsonrpc": "2.0",
            "method": self.method,
            "params": self.params,
        })


@dataclass
class JsonRpcResponse:
    """JSON-RPC 2.0 response."""
    id: int | str | None
    result: Any = None
    error: dict | None = None

    @classmethod
    def from_json(cls, data: str) -> "JsonRpcResponse":
        parsed = json.loads(data)
        if not isinstance(parsed, dict):
            raise ProtocolError(f"Expected a JSON object, got {type(parsed).__name__}")
        return cls.from_dict(parsed)

    @classmethod
    def from_dict(cls, parsed: dict) -> "JsonRpcResponse":
        error = parsed.get("error")
        if error is not None and not isinstance(error, dict):
            error = {"message": str(error)}
        return cls(
            id=parsed.get("id"),
            result=parsed.get("result"),
            error=error,
        )

    @property
    def is_error(self) -> bool:
        return self.error is not None


# ── Executable lookup ─────────────────────────────────────


def resolve_executable(command: list[str]) -> list[str]:
    """
    Resolve the executable of ``command`` to an absolute path.

    Bare names are looked up on PATH, then in a few well-known install
    locations. Paths and names that cannot be found are returned as-is
    so the spawn reports the failure.
    """
    if not command:
        return []
    executable = command[0]
    if os.path.isabs(executable) or os.sep in executable:
        return list(command)

    found = shutil.which(executable)
    if found is None:
        extra = [d for d in _EXTRA_EXECUTABLE_DIRS if os.path.isdir(d)]
        if extra:
            found = shutil.which(executable, path=os.pathsep.join(extra))
    return [found or executable, *command[1:]]


def _parse_tool_catalog(result: Any) -> list[dict]:
    """tools/list results come as {"tools": [...]} or as a bare list."""
    if isinstance(result, dict):
        result = result.get("tools", [])
    if not isinstance(result, list):
        raise ProtocolError(f"tools/list returned {type(result).__name__}, expected a list")
    tools = []
    for entry in result:
        if not isinstance(entry, dict) or not entry.get("name"):
            raise ProtocolError(f"Malformed tool entry: {entry!r}")
        tools.append(entry)
    return tools


# ── Transports ────────────────────────────────────────────


class Transport(ABC):
    """Abstract transport layer for MCP communication."""

    @abstractmethod
    async def start(self, timeout: float) -> list[dict]:
        """Bring the channel up and return the advertised tool catalog."""
        ...

    @abstractmethod
    async def send(self, request: JsonRpcRequest, timeout: float | None = None) -> JsonRpcResponse:
        """Send a request and return the response."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release the channel. Idempotent."""
        ...

    @abstractmethod
    def is_alive(self) -> bool:
        """Check if the transport is active."""
        ...

    @property
    @abstractmethod
    def tools(self) -> list[dict]:
        """Tool schemas advertised by the server."""
        ...

    @abstractmethod
    async def call_tool(self, tool_name: str, arguments: dict[str, Any]) -> Any:
        """Invoke one advertised tool and return its result."""
        ...


class StdioTransport(Transport):
    """
    JSON-RPC over stdin/stdout pipes to a subprocess.

    This is MCP's native local transport. The tool server runs as a
    child process in its own process group. We write requests to its
    stdin and read responses from its stdout, one message per line.
    """

    def __init__(
        self,
        command: list[str],
        env: dict[str, str] | None = None,
        working_directory: str | None = None,
        name: str | None = None,
        close_timeout: float = 5.0,
    ):
        """
        Args:
            command: Executable and arguments, already resolved.
            env: Variables layered over the parent environment.
            working_directory: Optional cwd for the child.
            name: Label used in log messages.
            close_timeout: Seconds to wait after SIGTERM before SIGKILL.
        """
        self.command = list(command)
        self.env = dict(env or {})
        self.working_directory = working_directory
        self.name = name or (command[0] if command else "stdio")
        self.close_timeout = close_timeout
        self._process: asyncio.subprocess.Process | None = None
        self._stderr_task: asyncio.Task | None = None
        self._stderr_tail: collections.deque[str] = collections.deque(maxlen=_STDERR_TAIL_LINES)
        self._lock = asyncio.Lock()
        self._request_id = 0
        self._tools: list[dict] = []
        self._server_info: dict = {}
        self._closed = False

    @property
    def tools(self) -> list[dict]:
        return list(self._tools)

    @property
    def server_info(self) -> dict:
        return dict(self._server_info)

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def closed(self) -> bool:
        return self._closed

    def next_id(self) -> int:
        """Generate the next request ID."""
        self._request_id += 1
        return self._request_id

    def is_alive(self) -> bool:
        """Check if the subprocess is running."""
        return (
            not self._closed
            and self._process is not None
            and self._process.returncode is None
        )

    async def start(self, timeout: float = 30.0) -> list[dict]:
        """
        Spawn the server, run the handshake and fetch its tools.

        The whole sequence is bounded by ``timeout``. On any failure,
        including cancellation, the process is closed before the error
        propagates.

        Returns:
            The tool catalog advertised by the server.
        """
        if self._closed:
            raise TransportClosedError(f"Transport '{self.name}' is closed")
        if self._process is not None:
            raise TransportError(f"Transport '{self.name}' already started")

        try:
            await asyncio.wait_for(self._start(), timeout=timeout)
        except asyncio.TimeoutError:
            await self.close()
            raise TransportCreationError(
                TransportErrorKind.HANDSHAKE_TIMEOUT,
                f"'{self.name}' did not complete startup within {timeout:g}s",
            ) from None
        except BaseException:
            await self.close()
            raise

        tool_names = [t["name"] for t in self._tools]
        logger.info(f"Started {self.name} (pid {self.pid}): tools={tool_names}")
        return self.tools

    async def _start(self) -> None:
        argv = resolve_executable(self.command)
        if not argv or not argv[0].strip():
            raise TransportCreationError(TransportErrorKind.INVALID_COMMAND, "Command cannot be empty")
        if self.working_directory and not os.path.isdir(self.working_directory):
            raise TransportCreationError(
                TransportErrorKind.SPAWN_FAILED,
                f"Working directory does not exist: {self.working_directory}",
            )

        logger.debug(
            f"Starting stdio transport: {' '.join(argv)} "
            f"(env keys: {sorted(self.env)})"
        )
        try:
            self._process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, **self.env},
                cwd=self.working_directory,
                start_new_session=sys.platform != "win32",
                limit=_STREAM_LIMIT,
            )
        except FileNotFoundError as e:
            raise TransportCreationError(
                TransportErrorKind.EXECUTABLE_NOT_FOUND, f"{argv[0]}: {e.strerror or e}"
            ) from e
        except (OSError, ValueError) as e:
            # ValueError: NUL byte in an argument or env value, or a bad env name
            raise TransportCreationError(TransportErrorKind.SPAWN_FAILED, f"{argv[0]}: {e}") from e

        self._stderr_task = asyncio.create_task(self._drain_stderr(self._process))

        try:
            await self._handshake()
        except ProcessExitedError as e:
            raise TransportCreationError(TransportErrorKind.PROCESS_CRASHED, str(e)) from e
        except ProtocolError as e:
            raise TransportCreationError(TransportErrorKind.HANDSHAKE_PROTOCOL_ERROR, str(e)) from e

    async def _handshake(self) -> None:
        response = await self.send(JsonRpcRequest(
            method="initialize",
            params={
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": CLIENT_INFO,
            },
            id=self.next_id(),
        ))
        if response.is_error:
            raise ProtocolError(f"initialize rejected: {response.error}")
        if isinstance(response.result, dict):
            self._server_info = response.result.get("serverInfo") or {}

        await self.notify(JsonRpcNotification(method="notifications/initialized"))

        response = await self.send(JsonRpcRequest(method="tools/list", params={}, id=self.next_id()))
        if response.is_error:
            raise ProtocolError(f"tools/list failed: {response.error}")
        self._tools = _parse_tool_catalog(response.result)

    async def _drain_stderr(self, process: asyncio.subprocess.Process) -> None:
        # Keeps the pipe from filling up; the tail feeds crash messages.
        if process.stderr is None:
            return
        while True:
            line = await process.stderr.readline()
            if not line:
                return
            text = line.decode(errors="replace").rstrip()
            self._stderr_tail.append(text)
            logger.debug(f"[{self.name}] {text}")

    async def _exited(self, process: asyncio.subprocess.Process) -> ProcessExitedError:
        # Wait briefly for the exit code and the last stderr lines
        try:
            await asyncio.wait_for(process.wait(), timeout=1.0)
        except asyncio.TimeoutError:
            pass
        if self._stderr_task is not None:
            await asyncio.wait({self._stderr_task}, timeout=1.0)

        stderr = "\n".join(self._stderr_tail)
        return ProcessExitedError(
            f"Tool server process '{self.name}' exited (code {process.returncode}). "
            f"stderr: {stderr[-500:]}"
        )

    def _ensure_open(self) -> asyncio.subprocess.Process:
        if self._closed:
            raise TransportClosedError(f"Transport '{self.name}' is closed")
        if self._process is None:
            raise TransportError(f"Transport '{self.name}' not running. Call start() first.")
        return self._process

    async def _write(self, process: asyncio.subprocess.Process, line: str) -> None:
        assert process.stdin is not None
        try:
            process.stdin.write((line + "\n").encode())
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise await self._exited(process) from e

    async def notify(self, notification: JsonRpcNotification) -> None:
        process = self._ensure_open()
        async with self._lock:
            await self._write(process, notification.to_json())

    async def send(self, request: JsonRpcRequest, timeout: float | None = None) -> JsonRpcResponse:
        """
        Send JSON-RPC request via stdin, read the matching response from stdout.

        A late response to a request that timed out is skipped by the next
        send, since its id no longer matches.
        """
        if timeout is None:
            return await self._exchange(request)
        return await asyncio.wait_for(self._exchange(request), timeout=timeout)

    async def _exchange(self, request: JsonRpcRequest) -> JsonRpcResponse:
        process = self._ensure_open()
        assert process.stdout is not None

        async with self._lock:
            await self._write(process, request.to_json())

            while True:
                line = await process.stdout.readline()
                if not line:
                    raise await self._exited(process)

                text = line.decode(errors="replace").strip()
                if not text:
                    continue
                try:
                    message = json.loads(text)
                except json.JSONDecodeError:
                    logger.debug(f"[{self.name}] ignoring non-JSON output: {text[:200]}")
                    continue
                if not isinstance(message, dict):
                    raise ProtocolError(f"Expected a JSON object from '{self.name}', got: {text[:200]}")

                if "method" in message:
                    await self._answer_server_message(process, message)
                    continue
                if message.get("id") != request.id:
                    logger.debug(f"[{self.name}] skipping response for id {message.get('id')!r}")
                    continue
                return JsonRpcResponse.from_dict(message)

    async def _answer_server_message(self, process: asyncio.subprocess.Process, message: dict) -> None:
        # Server → client traffic: notifications are dropped, requests always
        # get an answer.
        if "id" not in message:
            return
        if message["method"] == "ping":
            reply = {"jsonrpc": "2.0", "id": message["id"], "result": {}}
        else:
            reply = {
                "jsonrpc": "2.0",
                "id": message["id"],
                "error": {"code": -32601, "message": f"Method not found: {message['method']}"},
            }
        await self._write(process, json.dumps(reply))

    async def call_tool(
        self,
        tool_name: str,
        arguments: dict[str, Any],
        timeout: float | None = None,
    ) -> Any:
        """
        Call a tool on this server.

        Returns:
            The tool result.
        """
        response = await self.send(JsonRpcRequest(
            method="tools/call",
            params={"name": tool_name, "arguments": arguments},
            id=self.next_id(),
        ), timeout=timeout)
        if response.is_error:
            raise ToolCallError(tool_name, response.error)
        return response.result

    async def close(self) -> None:
        """Terminate the tool server subprocess."""
        if self._closed:
            return
        self._closed = True

        process, self._process = self._process, None
        if process is not None:
            await self._terminate(process)
            logger.info(f"Stdio transport stopped: {self.name}")

        if self._stderr_task is not None:
            self._stderr_task.cancel()
            await asyncio.gather(self._stderr_task, return_exceptions=True)
            self._stderr_task = None

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()

        if process.returncode is None:
            _signal_process(process, signal.SIGTERM)
            try:
                await asyncio.wait_for(process.wait(), timeout=self.close_timeout)
            except asyncio.TimeoutError:
                _signal_process(process, signal.SIGKILL if hasattr(signal, "SIGKILL") else signal.SIGTERM)
                await process.wait()
        elif sys.platform != "win32":
            # Leader is gone; make sure nothing it spawned (npx → node) lingers.
            _signal_group(process.pid, signal.SIGKILL if hasattr(signal, "SIGKILL") else signal.SIGTERM)


def _signal_group(pid: int, sig: int) -> bool:
    try:
        os.killpg(pid, sig)
    except (ProcessLookupError, PermissionError):
        return False
    return True


def _signal_process(process: asyncio.subprocess.Process, sig: int) -> None:
    # The child leads its own session, so its pid is also its group id.
    if sys.platform != "win32" and _signal_group(process.pid, sig):
        return
    try:
        if sig == signal.SIGTERM:
            process.terminate()
        else:
            process.kill()
    except ProcessLookupError:
        pass
