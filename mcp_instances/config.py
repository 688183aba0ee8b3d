from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

ENV_HOME = "MCP_INSTANCES_HOME"
ENV_STARTUP_TIMEOUT = "MCP_INSTANCES_STARTUP_TIMEOUT"
ENV_LOG_LEVEL = "MCP_INSTANCES_LOG_LEVEL"

_DEFAULT_HOME = Path.home() / ".mcp_instances"
_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


@dataclass(frozen=True)
class Settings:
    home: str = str(_DEFAULT_HOME)
    catalog_file: str = "mcp-servers.yml"
    startup_timeout: float = 30.0   # seconds per instance: spawn + handshake + tools/list
    close_timeout: float = 5.0      # seconds between SIGTERM and SIGKILL
    log_level: str = "INFO"

    @property
    def home_path(self) -> Path:
        return Path(self.home).expanduser()

    @property
    def catalog_path(self) -> Path:
        return self.home_path / self.catalog_file

    @property
    def instances_dir(self) -> Path:
        return self.home_path


def _positive_float(value: Any, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if number > 0 else default


def _validate(cfg: dict[str, Any]) -> dict[str, Any]:
    defaults = Settings().__dict__.copy()
    known = {f.name for f in fields(Settings)}
    merged = {**defaults, **{k: v for k, v in cfg.items() if k in known}}

    if not isinstance(merged["home"], str) or not merged["home"].strip():
        merged["home"] = defaults["home"]
    if not isinstance(merged["catalog_file"], str) or not merged["catalog_file"].strip():
        merged["catalog_file"] = defaults["catalog_file"]
    merged["startup_timeout"] = _positive_float(merged["startup_timeout"], defaults["startup_timeout"])
    merged["close_timeout"] = _positive_float(merged["close_timeout"], defaults["close_timeout"])
    level = str(merged["log_level"]).upper()
    merged["log_level"] = level if level in _LOG_LEVELS else defaults["log_level"]
    return merged


def _env_overrides(environ: dict[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    if environ.get(ENV_HOME):
        overrides["home"] = environ[ENV_HOME]
    if environ.get(ENV_STARTUP_TIMEOUT):
        overrides["startup_timeout"] = environ[ENV_STARTUP_TIMEOUT]
    if environ.get(ENV_LOG_LEVEL):
        overrides["log_level"] = environ[ENV_LOG_LEVEL]
    return overrides


def load_settings(path: Path | None = None, environ: dict[str, str] | None = None) -> Settings:
    """
    Defaults, then the optional YAML file, then environment variables.
    Invalid values fall back to their defaults.
    """
    raw: dict[str, Any] = {}
    if path is not None and path.exists():
        loaded = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        if isinstance(loaded, dict):
            raw.update(loaded)
    raw.update(_env_overrides(dict(os.environ if environ is None else environ)))
    return Settings(**_validate(raw))


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format="%(levelname)s: %(message)s")
