"""
Connector — binds one instance to its server definition.

There is one Connector type for every kind of server; what differs
between a filesystem server and a database server lives in the
definition's templates, not in code.

Usage:
    connector = Connector(instance, registry.get(instance.server_id))

    result = connector.validate()        # schema-level, no side effects
    transport = await connector.create_transport()   # spawn + handshake
    try:
        ...
    finally:
        await transport.close()
"""

from __future__ import annotations

import logging
import os
import re
from enum import Enum

from mcp_instances.definitions import ServerDefinition
from mcp_instances.instances import Instance
from mcp_instances.templates import (
    ResolvedCommand,
    TemplateResolver,
    ValidationResult,
    resolve_stdio_config,
)
from mcp_instances.transport import (
    StdioTransport,
    TransportCreationError,
    TransportErrorKind,
)

logger = logging.getLogger(__name__)


class ConnectorState(str, Enum):
    UNVALIDATED = "unvalidated"
    VALID = "valid"
    INVALID = "invalid"


class Connector:
    """
    Bridge between an Instance + ServerDefinition and a running transport.

    Validation is advisory: ``create_transport()`` does not require a
    prior ``validate()`` and does not consult its outcome.
    """

    def __init__(
        self,
        instance: Instance,
        definition: ServerDefinition,
        startup_timeout: float = 30.0,
        close_timeout: float = 5.0,
    ):
        if instance.server_id != definition.id:
            raise ValueError(
                f"Instance {instance.id} uses server '{instance.server_id}', "
                f"not '{definition.id}'"
            )
        self.instance = instance
        self.definition = definition
        self.startup_timeout = startup_timeout
        self.close_timeout = close_timeout
        self.state = ConnectorState.UNVALIDATED
        self.last_validation: ValidationResult | None = None

    def bindings(self) -> dict[str, str]:
        """Instance values layered over the definition's parameter defaults."""
        values = {
            p.key: p.default_value
            for p in self.definition.parameters
            if p.default_value is not None
        }
        values.update(self.instance.parameter_values)
        return values

    def resolve(self) -> ResolvedCommand:
        return resolve_stdio_config(self.definition.stdio_config, self.bindings())

    def validate(self) -> ValidationResult:
        """
        Check the instance against its definition's schema.

        Only patterns and templates are inspected. Whether a root path
        exists or a database answers is discovered by create_transport().
        """
        errors: list[str] = []
        values = self.bindings()

        for template in self.definition.templates():
            errors.extend(TemplateResolver.validate(template).errors)

        for param in self.definition.parameters:
            value = values.get(param.key)
            if param.required and (value is None or not value.strip()):
                errors.append(f"Missing required parameter: {param.key}")
                continue
            if value and param.validation_pattern:
                try:
                    matched = re.fullmatch(param.validation_pattern, value) is not None
                except re.error:
                    errors.append(f"Invalid validation pattern for parameter {param.key}")
                    continue
                if not matched:
                    errors.append(
                        f"Parameter {param.key} does not match pattern: {param.validation_pattern}"
                    )

        # Placeholders the schema does not declare are still required to be bound
        declared = set(self.definition.parameter_schema)
        for template in self.definition.templates():
            for key in TemplateResolver.extract_parameters(template) - declared:
                if not values.get(key, "").strip() and f"{{{{?{key}:" not in template:
                    errors.append(f"Missing required parameter: {key}")
                    declared.add(key)

        resolved = self.resolve()
        if not resolved.command or not resolved.executable.strip():
            errors.append("Command cannot be empty")
        elif os.path.isabs(resolved.executable) and not os.path.exists(resolved.executable):
            errors.append(f"Executable not found: {resolved.executable}")

        result = ValidationResult.of(errors)
        self.last_validation = result
        self.state = ConnectorState.VALID if result.is_valid else ConnectorState.INVALID
        if not result.is_valid:
            logger.debug(
                f"Instance '{self.instance.name}' ({self.instance.id}) failed validation: "
                f"{', '.join(result.errors)}"
            )
        return result

    def build_transport(self) -> StdioTransport:
        """Resolve templates into an unstarted transport."""
        resolved = self.resolve()
        if not resolved.command or not resolved.executable.strip():
            raise TransportCreationError(
                TransportErrorKind.INVALID_COMMAND,
                f"Command for instance '{self.instance.name}' resolved to an empty executable",
            )
        return StdioTransport(
            command=resolved.command,
            env=resolved.env,
            working_directory=resolved.working_directory,
            name=f"{self.definition.id}:{self.instance.name}",
            close_timeout=self.close_timeout,
        )

    async def create_transport(self) -> StdioTransport:
        """
        Spawn the server and complete its handshake.

        Raises:
            TransportCreationError: for every startup failure. The
                process has already been closed when this is raised.
        """
        transport = self.build_transport()
        logger.debug(f"Creating transport for instance '{self.instance.name}' ({self.instance.id})")
        await transport.start(timeout=self.startup_timeout)
        return transport
