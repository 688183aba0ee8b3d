"""
Server definitions and the read-only registry that serves them.

A definition describes HOW to launch one kind of tool server: a command
template, environment templates and the parameters a user fills in.
New server kinds are added as catalog entries, never as code.

Catalog file (YAML):

    servers:
      - id: filesystem-mcp-server
        name: Filesystem MCP Server
        transport_type: stdio
        stdio_config:
          command_template: [npx, -y, "@modelcontextprotocol/server-filesystem", "{{rootPath}}"]
        parameters:
          - key: rootPath
            label: Root Path
            type: path
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Iterator

import yaml

from mcp_instances.templates import TemplateResolver, ValidationResult

logger = logging.getLogger(__name__)


class TransportType(str, Enum):
    STDIO = "stdio"


class ParameterType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    URL = "url"
    SECRET = "secret"  # masked in UIs, never logged
    PATH = "path"


class ParameterLocation(str, Enum):
    COMMAND = "command"
    ENVIRONMENT = "environment"
    BOTH = "both"


@dataclass(frozen=True)
class Parameter:
    """A value the user supplies; referenced in templates as {{key}}."""
    key: str
    label: str
    type: ParameterType = ParameterType.STRING
    required: bool = True
    default_value: str | None = None
    description: str | None = None
    placeholder: str | None = None
    validation_pattern: str | None = None
    location: ParameterLocation = ParameterLocation.COMMAND
    allow_multiple: bool = False


@dataclass(frozen=True)
class StdioConfig:
    """
    Launch templates for a stdio server.

    command_template[0] is the executable, the rest are argument templates:
        ["node", "{{scriptPath}}", "--port", "{{port}}"]
        ["python", "server.py", "{{?debug:--verbose}}"]
    """
    command_template: tuple[str, ...]
    env_template: dict[str, str] = field(default_factory=dict)
    working_directory: str | None = None


@dataclass(frozen=True)
class ServerDefinition:
    id: str
    name: str
    stdio_config: StdioConfig
    description: str = ""
    transport_type: TransportType = TransportType.STDIO
    parameters: tuple[Parameter, ...] = ()
    version: str = "1.0.0"
    author: str | None = None
    tags: tuple[str, ...] = ()

    @property
    def command_template(self) -> str:
        return self.stdio_config.command_template[0] if self.stdio_config.command_template else ""

    @property
    def argument_templates(self) -> tuple[str, ...]:
        return self.stdio_config.command_template[1:]

    @property
    def env_templates(self) -> dict[str, str]:
        return dict(self.stdio_config.env_template)

    @property
    def parameter_schema(self) -> dict[str, Parameter]:
        return {p.key: p for p in self.parameters}

    def templates(self) -> list[str]:
        """Every template string the definition carries."""
        result = list(self.stdio_config.command_template)
        result.extend(self.stdio_config.env_template.values())
        if self.stdio_config.working_directory:
            result.append(self.stdio_config.working_directory)
        return result


def validate_definition(definition: ServerDefinition) -> ValidationResult:
    """Structural checks on a catalog entry."""
    errors: list[str] = []

    if not definition.id.strip():
        errors.append("Server definition ID cannot be blank")
    if not definition.name.strip():
        errors.append("Server definition name cannot be blank")

    config = definition.stdio_config
    if not config.command_template:
        errors.append("STDIO commandTemplate cannot be empty")
    for template in config.command_template:
        errors.extend(f"Command template error: {e}" for e in TemplateResolver.validate(template).errors)
    for template in config.env_template.values():
        errors.extend(f"Environment template error: {e}" for e in TemplateResolver.validate(template).errors)

    seen: set[str] = set()
    for param in definition.parameters:
        if not param.key.strip():
            errors.append("Parameter key cannot be blank")
        if param.key in seen:
            errors.append(f"Duplicate parameter key: {param.key}")
        seen.add(param.key)

        if not param.label.strip():
            errors.append(f"Parameter {param.key} label cannot be blank")

        if param.validation_pattern is not None:
            try:
                pattern = re.compile(param.validation_pattern)
            except re.error as e:
                errors.append(f"Invalid validation pattern for parameter {param.key}: {e}")
                continue
            if param.default_value is not None and not pattern.fullmatch(param.default_value):
                errors.append(f"Parameter {param.key} default value does not match validation pattern")

    return ValidationResult.of(errors)


class ServerDefinitionRegistry:
    """
    Read-only lookup of server definitions by id.

    Built once from a static catalog and never mutated; pass it to the
    components that need it rather than reaching for a global.
    """

    def __init__(self, definitions: Iterable[ServerDefinition] = ()):
        self._definitions: dict[str, ServerDefinition] = {}
        for definition in definitions:
            if definition.id in self._definitions:
                logger.warning(f"Duplicate server definition '{definition.id}', keeping the first")
                continue
            self._definitions[definition.id] = definition

    def get(self, server_id: str) -> ServerDefinition | None:
        return self._definitions.get(server_id)

    def all(self) -> list[ServerDefinition]:
        return list(self._definitions.values())

    def search(self, query: str) -> list[ServerDefinition]:
        """Match against name, description and tags (case-insensitive)."""
        q = query.lower()
        return [
            d for d in self._definitions.values()
            if q in d.name.lower()
            or q in d.description.lower()
            or any(q in tag.lower() for tag in d.tags)
        ]

    def __contains__(self, server_id: object) -> bool:
        return server_id in self._definitions

    def __iter__(self) -> Iterator[ServerDefinition]:
        return iter(self._definitions.values())

    def __len__(self) -> int:
        return len(self._definitions)


# ── Serialization ─────────────────────────────────────────


def _parameter_from_dict(data: dict[str, Any]) -> Parameter:
    default = data.get("default_value")
    return Parameter(
        key=str(data["key"]),
        label=str(data.get("label", data["key"])),
        type=ParameterType(str(data.get("type", "string")).lower()),
        required=bool(data.get("required", True)),
        default_value=None if default is None else str(default),
        description=data.get("description"),
        placeholder=data.get("placeholder"),
        validation_pattern=data.get("validation_pattern"),
        location=ParameterLocation(str(data.get("location", "command")).lower()),
        allow_multiple=bool(data.get("allow_multiple", False)),
    )


def definition_from_dict(data: dict[str, Any]) -> ServerDefinition:
    """Build a definition from its catalog form. Raises on malformed entries."""
    transport = TransportType(str(data.get("transport_type", "stdio")).lower())
    stdio = data.get("stdio_config") or {}
    command = stdio.get("command_template") or []
    if not isinstance(command, list):
        raise ValueError(f"command_template must be a list, got {type(command).__name__}")
    env = stdio.get("env_template") or {}

    return ServerDefinition(
        id=str(data["id"]),
        name=str(data.get("name", data["id"])),
        description=str(data.get("description", "")),
        transport_type=transport,
        stdio_config=StdioConfig(
            command_template=tuple(str(c) for c in command),
            env_template={str(k): str(v) for k, v in env.items()},
            working_directory=stdio.get("working_directory"),
        ),
        parameters=tuple(_parameter_from_dict(p) for p in data.get("parameters") or []),
        version=str(data.get("version", "1.0.0")),
        author=data.get("author"),
        tags=tuple(str(t) for t in data.get("tags") or []),
    )


def definition_to_dict(definition: ServerDefinition) -> dict[str, Any]:
    stdio: dict[str, Any] = {"command_template": list(definition.stdio_config.command_template)}
    if definition.stdio_config.env_template:
        stdio["env_template"] = dict(definition.stdio_config.env_template)
    if definition.stdio_config.working_directory:
        stdio["working_directory"] = definition.stdio_config.working_directory

    params = []
    for p in definition.parameters:
        entry: dict[str, Any] = {
            "key": p.key,
            "label": p.label,
            "type": p.type.value,
            "required": p.required,
            "location": p.location.value,
        }
        for name in ("default_value", "description", "placeholder", "validation_pattern"):
            value = getattr(p, name)
            if value is not None:
                entry[name] = value
        if p.allow_multiple:
            entry["allow_multiple"] = True
        params.append(entry)

    data: dict[str, Any] = {
        "id": definition.id,
        "name": definition.name,
        "description": definition.description,
        "transport_type": definition.transport_type.value,
        "stdio_config": stdio,
        "parameters": params,
        "version": definition.version,
        "tags": list(definition.tags),
    }
    if definition.author:
        data["author"] = definition.author
    return data


# ── Built-in catalog ──────────────────────────────────────

BUILTIN_DEFINITIONS: tuple[ServerDefinition, ...] = (
    ServerDefinition(
        id="mongodb-mcp-server",
        name="MongoDB MCP Server",
        description="Connect to MongoDB databases using the official MCP server",
        stdio_config=StdioConfig(
            command_template=("npx", "-y", "mongodb-mcp-server@latest", "{{?readOnly:--readOnly}}"),
            env_template={"MONGODB_VARS": "{{mongoEnv}}"},
        ),
        parameters=(
            Parameter(
                key="mongoEnv",
                label="MongoDB Environment Variables",
                type=ParameterType.STRING,
                placeholder="MDB_MCP_CONNECTION_STRING=mongodb://localhost:27017/myDatabase",
                description="Use 'KEY=value' or 'KEY1=value1,KEY2=value2' for multiple variables",
                location=ParameterLocation.ENVIRONMENT,
                allow_multiple=True,
            ),
            Parameter(
                key="readOnly",
                label="Read Only Mode",
                type=ParameterType.BOOLEAN,
                required=False,
                default_value="true",
                description="Only allow read operations",
            ),
        ),
        tags=("database", "mongodb", "nosql", "official"),
    ),
    ServerDefinition(
        id="filesystem-mcp-server",
        name="Filesystem MCP Server",
        description="Access and search local files and directories",
        stdio_config=StdioConfig(
            command_template=("npx", "-y", "@modelcontextprotocol/server-filesystem", "{{rootPath}}"),
        ),
        parameters=(
            Parameter(
                key="rootPath",
                label="Root Path",
                type=ParameterType.PATH,
                placeholder="/path/to/directory",
                description="Root directory for filesystem access (absolute path)",
                validation_pattern=r"(/|[A-Za-z]:[\\/]|~).*",
            ),
        ),
        tags=("filesystem", "local", "files", "official"),
    ),
)


def _definitions_from_yaml(path: Path) -> list[ServerDefinition]:
    raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    entries = raw.get("servers") if isinstance(raw, dict) else None
    if not isinstance(entries, list):
        raise ValueError(f"{path}: expected a top-level 'servers' list")

    definitions = []
    for entry in entries:
        try:
            definition = definition_from_dict(entry)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Skipping malformed server definition in {path}: {e}")
            continue

        result = validate_definition(definition)
        if not result.is_valid:
            logger.warning(
                f"Skipping invalid server definition '{definition.id}': {', '.join(result.errors)}"
            )
            continue
        definitions.append(definition)
    return definitions


def save_catalog(definitions: Iterable[ServerDefinition], path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {"servers": [definition_to_dict(d) for d in definitions]}
    tmp_path = path.with_suffix(".tmp")
    tmp_path.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")
    tmp_path.replace(path)


def load_registry(path: Path | None = None) -> ServerDefinitionRegistry:
    """
    Load the definition catalog.

    Without a path, or when the file does not exist yet, the built-in
    definitions are used (and written to ``path`` for the user to edit).
    A catalog that cannot be read falls back to the built-ins.
    """
    if path is None:
        return ServerDefinitionRegistry(BUILTIN_DEFINITIONS)

    if not path.exists():
        try:
            save_catalog(BUILTIN_DEFINITIONS, path)
            logger.debug(f"Created default server catalog at {path}")
        except OSError as e:
            logger.warning(f"Could not write default server catalog to {path}: {e}")
        return ServerDefinitionRegistry(BUILTIN_DEFINITIONS)

    try:
        definitions = _definitions_from_yaml(path)
    except (OSError, yaml.YAMLError, ValueError) as e:
        logger.error(f"Failed to load server catalog {path}, using built-in definitions: {e}")
        return ServerDefinitionRegistry(BUILTIN_DEFINITIONS)

    logger.info(f"Loaded {len(definitions)} server definitions from {path}")
    return ServerDefinitionRegistry(definitions)
