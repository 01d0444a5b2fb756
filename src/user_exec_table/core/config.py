from __future__ import annotations

import copy
import json
import os
from pathlib import Path
from typing import Any, Mapping

import yaml
from jsonschema import ValidationError, validate

from .errors import ConfigError
from .utils import read_json, resolve_env_placeholders


SCHEMAS_DIR = Path(__file__).resolve().parent / "schemas"
SETTINGS_SCHEMA_PATH = SCHEMAS_DIR / "settings.schema.json"

# Environment variable -> (settings key, parser)
_ENV_OVERRIDES: dict[str, tuple[str, Any]] = {
    "USER_EXEC_OSQUERY_PATH": ("osquery_path", str),
    "USER_EXEC_TIMEOUT_SECONDS": ("timeout_seconds", float),
    "USER_EXEC_MAX_WORKERS": ("max_workers", int),
    "USER_EXEC_WORKSPACE_PREFIX": ("workspace_prefix", str),
    "USER_EXEC_LOG_PATH": ("log_path", str),
}

_schema_cache: dict[Path, dict[str, Any]] = {}


def load_schema(path: Path) -> dict[str, Any]:
    if path not in _schema_cache:
        _schema_cache[path] = read_json(path)
    return _schema_cache[path]


def load_settings(path: str | None) -> dict[str, Any]:
    if not path:
        return {}
    content = Path(path).read_text(encoding="utf-8")
    try:
        if path.endswith(".json"):
            data = json.loads(content)
        else:
            data = yaml.safe_load(content)
    except (ValueError, yaml.YAMLError) as exc:
        raise ConfigError(f"Unreadable settings file {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Settings file {path} must contain a mapping")
    return data


def env_overrides(env: Mapping[str, str] | None = None) -> dict[str, Any]:
    source = os.environ if env is None else env
    overrides: dict[str, Any] = {}
    for name, (key, parser) in _ENV_OVERRIDES.items():
        raw = source.get(name, "").strip()
        if not raw:
            continue
        try:
            overrides[key] = parser(raw)
        except ValueError as exc:
            raise ConfigError(f"Invalid {name}={raw!r}: {exc}") from exc
    return overrides


def resolve_settings(
    raw: Mapping[str, Any] | None = None,
    env: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Merge file settings with environment overrides, apply defaults, validate.

    Environment values win over file values; schema defaults fill the rest.
    """

    schema = load_schema(SETTINGS_SCHEMA_PATH)
    resolved: dict[str, Any] = copy.deepcopy(dict(raw or {}))
    try:
        resolved = resolve_env_placeholders(resolved)
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc
    resolved.update(env_overrides(env))
    fill_schema_defaults(schema, resolved)
    try:
        validate(instance=resolved, schema=schema)
    except ValidationError as exc:
        location = ".".join(str(part) for part in exc.path) or "<root>"
        raise ConfigError(f"Invalid settings at {location}: {exc.message}") from exc
    return resolved


def fill_schema_defaults(schema: Mapping[str, Any], instance: Any) -> None:
    """Fill keys missing from `instance` with the defaults `schema` declares.

    Works in place on objects and on arrays of objects: settings take the
    object branch, a manifest's column list the array branch.
    """

    if isinstance(instance, list):
        items = schema.get("items")
        if isinstance(items, Mapping):
            for element in instance:
                fill_schema_defaults(items, element)
        return
    if not isinstance(instance, dict):
        return
    for key, prop in (schema.get("properties") or {}).items():
        if not isinstance(prop, Mapping):
            continue
        if key not in instance and "default" in prop:
            instance[key] = copy.deepcopy(prop["default"])
        if key in instance:
            fill_schema_defaults(prop, instance[key])
