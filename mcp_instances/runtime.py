"""
Runtime check — can this machine actually launch a server?

Schema validation (Connector.validate) only looks at the parameter
values. This module looks at the host: is the executable installed, does
the working directory exist, and optionally does the process start and
answer the handshake. Errors block creation; warnings are shown but the
instance may still be saved.

Usage:
    result = check_runtime(connector)
    if not result.can_proceed:
        for issue in result.errors:
            print(issue.message, issue.fix_command or "")

    result = await check_runtime_with_start(connector)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from enum import Enum

from mcp_instances.connector import Connector
from mcp_instances.transport import TransportCreationError, resolve_executable

logger = logging.getLogger(__name__)

# Install hints for launchers most catalog entries depend on
FIX_COMMANDS = {
    "npx": "npm install -g npm",
    "node": "Install Node.js from https://nodejs.org",
    "uvx": "pip install uv",
}


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True)
class RuntimeIssue:
    severity: Severity
    message: str
    fix_command: str | None = None


@dataclass(frozen=True)
class RuntimeCheckResult:
    issues: tuple[RuntimeIssue, ...] = ()

    @property
    def errors(self) -> list[RuntimeIssue]:
        return [i for i in self.issues if i.severity is Severity.ERROR]

    @property
    def warnings(self) -> list[RuntimeIssue]:
        return [i for i in self.issues if i.severity is Severity.WARNING]

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    @property
    def has_warnings(self) -> bool:
        return bool(self.warnings)

    @property
    def can_proceed(self) -> bool:
        return not self.has_errors

    def with_issue(self, issue: RuntimeIssue) -> "RuntimeCheckResult":
        return RuntimeCheckResult(self.issues + (issue,))


def _is_runnable(path: str) -> bool:
    return os.path.isfile(path) and os.access(path, os.X_OK)


def check_runtime(connector: Connector) -> RuntimeCheckResult:
    """
    Static host checks, no process is started.

    Returns at the first error; a missing working directory is only a
    warning because it may be created before the instance is used.
    """
    resolved = connector.resolve()
    if not resolved.command or not resolved.executable.strip():
        return RuntimeCheckResult((RuntimeIssue(Severity.ERROR, "Command template is empty"),))

    executable = resolved.executable
    located = resolve_executable(resolved.command)[0]
    if not _is_runnable(located):
        name = os.path.basename(executable)
        logger.debug(f"Executable '{executable}' for server {connector.definition.id} not found")
        return RuntimeCheckResult((
            RuntimeIssue(
                Severity.ERROR,
                f"'{executable}' is not installed or not in PATH",
                FIX_COMMANDS.get(name),
            ),
        ))

    issues: list[RuntimeIssue] = []
    if resolved.working_directory and not os.path.isdir(resolved.working_directory):
        issues.append(RuntimeIssue(
            Severity.WARNING,
            f"Working directory does not exist: {resolved.working_directory}",
        ))
    return RuntimeCheckResult(tuple(issues))


async def check_runtime_with_start(connector: Connector) -> RuntimeCheckResult:
    """
    check_runtime(), then start the server once and close it again.

    A failed start is reported as a warning: the server may depend on a
    database or network that is simply down right now.
    """
    result = check_runtime(connector)
    if not result.can_proceed:
        return result

    try:
        transport = await connector.create_transport()
    except TransportCreationError as e:
        logger.info(f"Trial start of server {connector.definition.id} failed: {e}")
        return result.with_issue(RuntimeIssue(Severity.WARNING, f"Failed to start server: {e}"))
    await transport.close()
    return result
