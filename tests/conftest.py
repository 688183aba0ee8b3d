from __future__ import annotations

import os
import sys
from dataclasses import replace
from pathlib import Path

import pytest

from mcp_instances.definitions import (
    BUILTIN_DEFINITIONS,
    Parameter,
    ParameterLocation,
    ParameterType,
    ServerDefinition,
    ServerDefinitionRegistry,
    StdioConfig,
)
from mcp_instances.instances import InMemoryInstanceStore, Instance

FAKE_SERVER = Path(__file__).resolve().parent / "fake_tool_server.py"
FAKE_SERVER_ID = "fake-server"


def fake_server_command(*args: str) -> list[str]:
    return [sys.executable, str(FAKE_SERVER), *args]


def process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


FAKE_DEFINITION = ServerDefinition(
    id=FAKE_SERVER_ID,
    name="Fake Tool Server",
    description="Speaks MCP over stdio for tests",
    stdio_config=StdioConfig(
        command_template=(
            sys.executable,
            str(FAKE_SERVER),
            "--prefix={{prefix}}",
            "--mode={{mode}}",
            "--pid-file={{pidFile}}",
            "--root={{rootPath}}",
        ),
        env_template={"FAKE_GREETING": "{{greeting}}"},
    ),
    parameters=(
        Parameter(key="prefix", label="Tool name prefix", required=False, default_value=""),
        Parameter(key="mode", label="Mode", required=False, default_value="normal"),
        Parameter(key="pidFile", label="PID file", required=False),
        Parameter(key="rootPath", label="Root directory", type=ParameterType.PATH, required=False),
        Parameter(key="greeting", label="Greeting", required=False, location=ParameterLocation.ENVIRONMENT),
    ),
    tags=("test",),
)


@pytest.fixture
def registry() -> ServerDefinitionRegistry:
    return ServerDefinitionRegistry([FAKE_DEFINITION, *BUILTIN_DEFINITIONS])


@pytest.fixture
def store() -> InMemoryInstanceStore:
    return InMemoryInstanceStore()


@pytest.fixture
def make_instance():
    def _make(name: str = "fake", project_id: str = "proj", enabled: bool = True, **values: str) -> Instance:
        instance = Instance.new(project_id, FAKE_SERVER_ID, name, values)
        if not enabled:
            instance = replace(instance, enabled=False)
        return instance
    return _make
