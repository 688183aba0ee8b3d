from __future__ import annotations

import logging
from pathlib import Path

import yaml

from mcp_instances.definitions import (
    BUILTIN_DEFINITIONS,
    Parameter,
    ServerDefinition,
    ServerDefinitionRegistry,
    StdioConfig,
    definition_from_dict,
    definition_to_dict,
    load_registry,
    save_catalog,
    validate_definition,
)


def _definition(**overrides) -> ServerDefinition:
    fields = {
        "id": "custom",
        "name": "Custom Server",
        "stdio_config": StdioConfig(command_template=("node", "{{script}}")),
        "parameters": (Parameter(key="script", label="Script"),),
    }
    fields.update(overrides)
    return ServerDefinition(**fields)


def test_builtin_definitions_are_valid() -> None:
    for definition in BUILTIN_DEFINITIONS:
        result = validate_definition(definition)
        assert result.is_valid, (definition.id, result.errors)


def test_builtin_mongodb_shape() -> None:
    registry = ServerDefinitionRegistry(BUILTIN_DEFINITIONS)
    mongo = registry.get("mongodb-mcp-server")

    assert mongo is not None
    assert mongo.command_template == "npx"
    assert "{{?readOnly:--readOnly}}" in mongo.argument_templates
    assert mongo.env_templates == {"MONGODB_VARS": "{{mongoEnv}}"}
    assert mongo.parameter_schema["readOnly"].default_value == "true"
    assert not mongo.parameter_schema["readOnly"].required


def test_registry_lookup_and_search() -> None:
    registry = ServerDefinitionRegistry(BUILTIN_DEFINITIONS)

    assert len(registry) == 2
    assert "filesystem-mcp-server" in registry
    assert registry.get("nope") is None
    assert [d.id for d in registry.search("MONGO")] == ["mongodb-mcp-server"]
    assert [d.id for d in registry.search("files")] == ["filesystem-mcp-server"]


def test_registry_keeps_first_duplicate(caplog) -> None:
    first = _definition(name="First")
    second = _definition(name="Second")

    with caplog.at_level(logging.WARNING):
        registry = ServerDefinitionRegistry([first, second])

    assert len(registry) == 1
    assert registry.get("custom").name == "First"
    assert "Duplicate server definition" in caplog.text


def test_validate_definition_reports_problems() -> None:
    definition = _definition(
        id=" ",
        stdio_config=StdioConfig(command_template=()),
        parameters=(
            Parameter(key="a", label="A", validation_pattern="("),
            Parameter(key="a", label="A again"),
            Parameter(key="b", label="B", default_value="x", validation_pattern=r"\d+"),
        ),
    )
    errors = validate_definition(definition).errors

    assert "Server definition ID cannot be blank" in errors
    assert "STDIO commandTemplate cannot be empty" in errors
    assert "Duplicate parameter key: a" in errors
    assert any(e.startswith("Invalid validation pattern for parameter a") for e in errors)
    assert "Parameter b default value does not match validation pattern" in errors


def test_validate_definition_checks_templates() -> None:
    definition = _definition(stdio_config=StdioConfig(command_template=("node", "{{script")))
    errors = validate_definition(definition).errors
    assert errors == ["Command template error: Unmatched opening braces"]


def test_dict_conversion_preserves_definition() -> None:
    for definition in BUILTIN_DEFINITIONS:
        assert definition_from_dict(definition_to_dict(definition)) == definition


def test_load_registry_without_path_uses_builtins() -> None:
    registry = load_registry()
    assert {d.id for d in registry} == {d.id for d in BUILTIN_DEFINITIONS}


def test_load_registry_writes_default_catalog(tmp_path: Path) -> None:
    path = tmp_path / "catalog" / "mcp-servers.yml"

    registry = load_registry(path)

    assert path.exists()
    assert len(registry) == len(BUILTIN_DEFINITIONS)
    raw = yaml.safe_load(path.read_text())
    assert [s["id"] for s in raw["servers"]] == [d.id for d in BUILTIN_DEFINITIONS]


def test_load_registry_reads_catalog_and_skips_invalid(tmp_path: Path, caplog) -> None:
    path = tmp_path / "mcp-servers.yml"
    save_catalog([_definition()], path)
    raw = yaml.safe_load(path.read_text())
    raw["servers"].append({"id": "broken", "name": "Broken", "stdio_config": {"command_template": []}})
    raw["servers"].append({"name": "no id"})
    path.write_text(yaml.safe_dump(raw))

    with caplog.at_level(logging.WARNING):
        registry = load_registry(path)

    assert [d.id for d in registry] == ["custom"]
    assert "Skipping invalid server definition 'broken'" in caplog.text
    assert "Skipping malformed server definition" in caplog.text


def test_load_registry_falls_back_on_unreadable_catalog(tmp_path: Path) -> None:
    path = tmp_path / "mcp-servers.yml"
    path.write_text("servers: [unclosed")

    registry = load_registry(path)

    assert len(registry) == len(BUILTIN_DEFINITIONS)
