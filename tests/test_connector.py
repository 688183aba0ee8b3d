from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

from mcp_instances.connector import Connector, ConnectorState
from mcp_instances.definitions import BUILTIN_DEFINITIONS, ServerDefinition, StdioConfig
from mcp_instances.instances import Instance
from mcp_instances.transport import TransportCreationError, TransportErrorKind
from tests.conftest import FAKE_DEFINITION, FAKE_SERVER

MONGO, FILESYSTEM = BUILTIN_DEFINITIONS


def _connector(definition: ServerDefinition, **values: str) -> Connector:
    return Connector(Instance.new("proj", definition.id, "test", values), definition)


def test_mismatched_server_id_rejected() -> None:
    instance = Instance.new("proj", "other", "x")
    with pytest.raises(ValueError):
        Connector(instance, FILESYSTEM)


def test_bindings_overlay_defaults() -> None:
    connector = _connector(MONGO, mongoEnv="A=1")
    assert connector.bindings() == {"readOnly": "true", "mongoEnv": "A=1"}

    connector = _connector(MONGO, mongoEnv="A=1", readOnly="false")
    assert connector.bindings()["readOnly"] == "false"


def test_resolve_mongodb_command() -> None:
    resolved = _connector(MONGO, mongoEnv="MDB_A=1,MDB_B=2").resolve()

    assert resolved.command == ["npx", "-y", "mongodb-mcp-server@latest", "--readOnly"]
    assert resolved.env == {"MDB_A": "1", "MDB_B": "2"}


def test_resolve_read_only_off() -> None:
    resolved = _connector(MONGO, mongoEnv="X=1", readOnly="no").resolve()
    assert "--readOnly" not in resolved.command


def test_validate_starts_unvalidated() -> None:
    connector = _connector(FILESYSTEM, rootPath="/srv/docs")
    assert connector.state is ConnectorState.UNVALIDATED
    assert connector.last_validation is None


def test_validate_ok() -> None:
    connector = _connector(FILESYSTEM, rootPath="/does/not/need/to/exist")
    result = connector.validate()

    assert result.is_valid, result.errors
    assert connector.state is ConnectorState.VALID


def test_validate_missing_required() -> None:
    connector = _connector(FILESYSTEM)
    result = connector.validate()

    assert not result.is_valid
    assert "Missing required parameter: rootPath" in result.errors
    assert connector.state is ConnectorState.INVALID


def test_validate_pattern_mismatch() -> None:
    result = _connector(FILESYSTEM, rootPath="relative/dir").validate()
    assert any(e.startswith("Parameter rootPath does not match pattern") for e in result.errors)


@pytest.mark.parametrize("path", ["/srv", "~/docs", "C:\\Users\\me", "D:/data"])
def test_validate_accepts_path_shapes(path: str) -> None:
    assert _connector(FILESYSTEM, rootPath=path).validate().is_valid


def test_validate_undeclared_placeholder_is_required() -> None:
    definition = ServerDefinition(
        id="bare",
        name="Bare",
        stdio_config=StdioConfig(command_template=("node", "{{script}}", "{{?debug:--inspect}}")),
    )
    result = _connector(definition).validate()

    assert result.errors == ["Missing required parameter: script"]
    assert _connector(definition, script="s.js").validate().is_valid


def test_validate_blank_executable() -> None:
    definition = ServerDefinition(
        id="blank",
        name="Blank",
        stdio_config=StdioConfig(command_template=("{{?never:node}}",)),
    )
    assert "Command cannot be empty" in _connector(definition).validate().errors


def test_validate_missing_absolute_executable(tmp_path: Path) -> None:
    missing = str(tmp_path / "no-such-binary")
    definition = ServerDefinition(id="abs", name="Abs", stdio_config=StdioConfig(command_template=(missing,)))
    assert f"Executable not found: {missing}" in _connector(definition).validate().errors


def test_build_transport_blank_command() -> None:
    definition = ServerDefinition(
        id="blank",
        name="Blank",
        stdio_config=StdioConfig(command_template=("{{?never:node}}",)),
    )
    with pytest.raises(TransportCreationError) as exc:
        _connector(definition).build_transport()
    assert exc.value.kind is TransportErrorKind.INVALID_COMMAND


def test_build_transport_resolves_templates() -> None:
    transport = _connector(FAKE_DEFINITION, prefix="a_", greeting="hi").build_transport()

    assert transport.command[:2] == [sys.executable, str(FAKE_SERVER)]
    assert "--prefix=a_" in transport.command
    assert "--mode=normal" in transport.command
    assert transport.env == {"FAKE_GREETING": "hi"}
    assert transport.name == "fake-server:test"


@pytest.mark.asyncio
async def test_create_transport_starts_server() -> None:
    transport = await _connector(FAKE_DEFINITION, prefix="c_", greeting="hello").create_transport()
    try:
        assert transport.is_alive()
        assert [t["name"] for t in transport.tools] == ["c_echo", "c_env", "c_fail"]
        result = await transport.call_tool("c_env", {"variable": "FAKE_GREETING"})
        assert '"hello"' in result["content"][0]["text"]
    finally:
        await transport.close()


@pytest.mark.asyncio
async def test_create_transport_ignores_validation_outcome(tmp_path: Path) -> None:
    # Validation is advisory: an invalid-looking config is still attempted
    connector = _connector(FAKE_DEFINITION, rootPath=str(tmp_path))
    connector.state = ConnectorState.INVALID

    transport = await connector.create_transport()
    await transport.close()


@pytest.mark.asyncio
async def test_create_transport_live_resource_failure(tmp_path: Path) -> None:
    gone = tmp_path / "deleted"
    connector = _connector(FAKE_DEFINITION, rootPath=str(gone))
    assert connector.validate().is_valid
    assert not os.path.exists(gone)

    with pytest.raises(TransportCreationError) as exc:
        await connector.create_transport()
    assert exc.value.kind is TransportErrorKind.PROCESS_CRASHED
    assert "root directory does not exist" in str(exc.value)
