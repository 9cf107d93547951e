"""
Test configuration file loading.

Reads a YAML or JSON file and validates it into an ``AppConfig``. Every
failure (missing file, unsupported extension, parse error, schema error)
surfaces as ``ConfigError`` so the CLI can report it and exit before any
connection is made.
"""

import json
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import ValidationError

from clicktester.models.test_config import AppConfig


class ConfigError(Exception):
    """Invalid or unreadable test configuration."""


def load_config(path: str | Path) -> AppConfig:
    config_path = Path(path).expanduser().resolve()

    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    if not config_path.is_file():
        raise ConfigError(f"Config path is not a file: {config_path}")

    raw = _parse_file(config_path)
    return build_config(raw, source=str(config_path))


def build_config(raw: Mapping[str, Any], source: str = "<config>") -> AppConfig:
    try:
        return AppConfig.model_validate(dict(raw))
    except ValidationError as exc:
        raise ConfigError(f"{source}: {_format_validation_error(exc)}") from exc


def _parse_file(path: Path) -> Mapping[str, Any]:
    match path.suffix.lower():
        case ".yaml" | ".yml":
            raw = _parse_yaml(path)
        case ".json":
            raw = _parse_json(path)
        case other:
            raise ConfigError(
                f"Unsupported config file extension: {other or '(none)'} "
                "(expected .yaml, .yml or .json)"
            )

    if not isinstance(raw, Mapping):
        raise ConfigError(
            f"{path}: top-level value must be a mapping, got {type(raw).__name__}"
        )
    return raw


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigError(f"{path}: cannot read config: {exc}") from exc


def _parse_yaml(path: Path) -> Any:
    text = _read_text(path)
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"{path}: invalid YAML: {exc}") from exc


def _parse_json(path: Path) -> Any:
    text = _read_text(path)
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"{path}: invalid JSON: {exc}") from exc


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        msg = err.get("msg", "invalid value")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts)
