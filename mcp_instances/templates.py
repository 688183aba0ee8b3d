"""
Template resolution for server command lines and environments.

Two placeholder forms are recognised inside any template string:

    {{name}}            → the value bound to ``name`` ("" when unbound)
    {{?name:literal}}   → ``literal`` when the value bound to ``name`` is
                          "true" (any case), "" otherwise

Names are ``[A-Za-z0-9_]+``. Placeholders do not nest. A conditional's
literal runs up to the first ``}}``, so single braces inside it survive:

    {{?flag:--config={value}}}  → "--config={value}"

Usage:
    resolver = TemplateResolver({"rootPath": "/srv/docs", "readOnly": "true"})
    resolver.resolve_list(["npx", "server", "{{rootPath}}", "{{?readOnly:--ro}}"])
    # → ["npx", "server", "/srv/docs", "--ro"]
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Iterable, Mapping

if TYPE_CHECKING:
    from mcp_instances.definitions import StdioConfig

_NAME = r"[A-Za-z0-9_]+"

# Single alternation so one left-to-right pass handles both forms.
_PLACEHOLDER_RE = re.compile(
    r"\{\{(?:\?(?P<flag>" + _NAME + r"):(?P<literal>.*?)|(?P<name>" + _NAME + r"))\}\}",
    re.DOTALL,
)


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of a schema-level check. Never raised, always returned."""
    is_valid: bool
    errors: list[str] = field(default_factory=list)

    @classmethod
    def of(cls, errors: Iterable[str]) -> "ValidationResult":
        errors = list(errors)
        return cls(is_valid=not errors, errors=errors)


@dataclass(frozen=True)
class ResolvedCommand:
    """A definition's templates with every placeholder substituted."""
    command: list[str]
    env: dict[str, str]
    working_directory: str | None = None

    @property
    def executable(self) -> str:
        return self.command[0] if self.command else ""


class TemplateResolver:
    """Substitutes bound parameter values into template strings."""

    def __init__(self, parameter_values: Mapping[str, str] | None = None):
        self._values = dict(parameter_values or {})

    def resolve(self, template: str) -> str:
        return _PLACEHOLDER_RE.sub(self._substitute, template)

    def resolve_list(self, templates: Iterable[str]) -> list[str]:
        """Resolve each template, dropping entries that resolve to blank."""
        resolved = (self.resolve(t) for t in templates)
        return [value for value in resolved if value.strip()]

    def resolve_map(self, templates: Mapping[str, str]) -> dict[str, str]:
        """
        Resolve a mapping of templates.

        Blank results are dropped. A result containing a comma is read as
        ``KEY1=v1,KEY2=v2`` and expanded into several entries in place of
        the template's own key.
        """
        result: dict[str, str] = {}
        for template_key, template in templates.items():
            resolved = self.resolve(template)
            if not resolved.strip():
                continue

            if "," not in resolved:
                result[template_key] = resolved
                continue

            for segment in resolved.split(","):
                segment = segment.strip()
                if "=" in segment:
                    key, value = segment.split("=", 1)
                    result[key.strip()] = value.strip()
                elif segment:
                    # Not KEY=value after all; keep the whole string as-is
                    result[template_key] = resolved
        return result

    def _substitute(self, match: re.Match[str]) -> str:
        flag = match.group("flag")
        if flag is not None:
            value = self._values.get(flag)
            if value is not None and value.lower() == "true":
                return match.group("literal")
            return ""
        return self._values.get(match.group("name")) or ""

    @staticmethod
    def validate(template: str) -> ValidationResult:
        """Check brace balance and empty placeholders."""
        errors: list[str] = []

        depth = 0
        i = 0
        while i < len(template):
            pair = template[i:i + 2]
            if pair == "{{":
                depth += 1
                i += 2
            elif pair == "}}":
                depth -= 1
                i += 2
                if depth < 0:
                    errors.append(f"Unmatched closing braces at position {i}")
                    depth = 0
            else:
                i += 1

        if depth > 0:
            errors.append("Unmatched opening braces")

        if "{{}}" in template:
            errors.append("Empty placeholder found")

        return ValidationResult.of(errors)

    @staticmethod
    def extract_parameters(template: str) -> set[str]:
        """Distinct parameter names referenced by simple or conditional placeholders."""
        names: set[str] = set()
        for match in _PLACEHOLDER_RE.finditer(template):
            names.add(match.group("flag") or match.group("name"))
        return names


class VariableLocation(str, Enum):
    COMMAND = "command"
    ENVIRONMENT = "environment"
    WORKING_DIR = "working_dir"


@dataclass(frozen=True)
class ExtractedVariable:
    key: str
    locations: frozenset[VariableLocation]
    is_conditional: bool = False


def _conditional_names(template: str) -> set[str]:
    return {
        m.group("flag") for m in _PLACEHOLDER_RE.finditer(template) if m.group("flag")
    }


def extract_variables(config: "StdioConfig") -> list[ExtractedVariable]:
    """
    List every variable a stdio config references, sorted by key.

    Drives dynamic parameter-entry forms: each variable records where it
    is used and whether it only ever appears as a conditional flag in the
    command line.
    """
    locations: dict[str, set[VariableLocation]] = {}
    conditionals: set[str] = set()

    for arg in config.command_template:
        for key in TemplateResolver.extract_parameters(arg):
            locations.setdefault(key, set()).add(VariableLocation.COMMAND)
        conditionals |= _conditional_names(arg)

    for value in config.env_template.values():
        for key in TemplateResolver.extract_parameters(value):
            locations.setdefault(key, set()).add(VariableLocation.ENVIRONMENT)

    if config.working_directory:
        for key in TemplateResolver.extract_parameters(config.working_directory):
            locations.setdefault(key, set()).add(VariableLocation.WORKING_DIR)

    return [
        ExtractedVariable(key=key, locations=frozenset(locs), is_conditional=key in conditionals)
        for key, locs in sorted(locations.items())
    ]


def resolve_stdio_config(config: "StdioConfig", values: Mapping[str, str]) -> ResolvedCommand:
    """Resolve a stdio config's command, env and working directory."""
    resolver = TemplateResolver(values)
    working_directory = None
    if config.working_directory:
        working_directory = resolver.resolve(config.working_directory).strip() or None

    return ResolvedCommand(
        command=resolver.resolve_list(config.command_template),
        env=resolver.resolve_map(config.env_template),
        working_directory=working_directory,
    )
