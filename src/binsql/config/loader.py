"""Configuration loader for binsql."""
from __future__ import annotations

import dataclasses
import logging
import os
from pathlib import Path
from typing import Any, TypeVar

from binsql.config.schema import BinsqlConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("binsql.yaml")

# Environment variable -> dotted config key.
ENV_KEYS: dict[str, str] = {
    "BINSQL_BACKEND_TYPE": "backend.type",
    "BINSQL_SERVER_BIND": "server.bind",
    "BINSQL_SERVER_TOKEN": "server.token",
    "BINSQL_SERVER_HTTP_PORT": "server.http_port",
    "BINSQL_SERVER_TCP_PORT": "server.tcp_port",
    "BINSQL_LOG_LEVEL": "logging.level",
}

_T = TypeVar("_T")


def _read_yaml(path: Path) -> dict[str, Any]:
    import yaml  # type: ignore[import-untyped]

    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping at top level in {path}, got {type(data).__name__}")
    return data


def _put(raw: dict[str, Any], dotted: str, value: Any) -> None:
    """Store *value* under a dotted key, creating sections on the way."""
    *sections, leaf = dotted.split(".")
    node = raw
    for name in sections:
        child = node.get(name)
        if not isinstance(child, dict):
            child = node[name] = {}
        node = child
    node[leaf] = value


def _coerce(value: Any, annotation: str) -> Any:
    """Convert YAML/env text to the annotated scalar type when it is unambiguous.

    Annotations are strings here (postponed evaluation), so the check is on
    the type names they mention.  Values that do not convert are passed
    through unchanged for the dataclass to hold as given.
    """
    if value is None or not isinstance(value, (str, int, float)):
        return value
    names = {part.strip() for part in annotation.split("|")}
    if "bool" in names:
        return value.lower() in ("true", "1", "yes", "on") if isinstance(value, str) else bool(value)
    for name, cast in (("int", int), ("float", float)):
        if name in names and not isinstance(value, bool):
            try:
                return cast(value)
            except ValueError:
                return value
    if "str" in names and not isinstance(value, str):
        return str(value)
    return value


def _section(cls: type[_T], name: str, data: Any) -> _T:
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError(f"Config section '{name}' must be a mapping, got {type(data).__name__}")
    fields = {f.name: f for f in dataclasses.fields(cls)}  # type: ignore[arg-type]
    kwargs: dict[str, Any] = {}
    for key, value in data.items():
        f = fields.get(key)
        if f is None:
            logger.warning("Unknown config key '%s' in %s (known: %s), ignored", key, name, ", ".join(sorted(fields)))
            continue
        kwargs[key] = _coerce(value, f.type if isinstance(f.type, str) else getattr(f.type, "__name__", ""))
    return cls(**kwargs)


def _build_config(raw: dict[str, Any]) -> BinsqlConfig:
    sections = {f.name: f.default_factory for f in dataclasses.fields(BinsqlConfig)}
    for name in raw.keys() - sections.keys():
        logger.warning("Unknown config section '%s', ignored", name)
    return BinsqlConfig(**{
        name: _section(factory, name, raw.get(name))  # type: ignore[arg-type]
        for name, factory in sections.items()
    })


def load_config(
    yaml_path: Path | None = None,
    cli_overrides: dict[str, Any] | None = None,
) -> BinsqlConfig:
    """Load configuration from YAML, environment variables, and CLI overrides.

    Later layers win: dataclass defaults, then the YAML file, then
    ``BINSQL_*`` environment variables, then CLI overrides given as dotted
    keys such as ``server.token``.  ``None`` override values are skipped so
    unset argparse options leave lower layers alone.

    Args:
        yaml_path: Config file to read.  When ``None``, ``binsql.yaml`` in
            the working directory is used if present.
        cli_overrides: Dotted key/value pairs from the command line.

    Raises:
        FileNotFoundError: *yaml_path* was given but does not exist.
        ValueError: The file is not a YAML mapping.
    """
    if yaml_path is not None and not yaml_path.exists():
        raise FileNotFoundError(f"Config file not found: {yaml_path}")
    path = yaml_path if yaml_path is not None else DEFAULT_CONFIG_PATH
    raw = _read_yaml(path) if path.exists() else {}

    for env_var, dotted in ENV_KEYS.items():
        value = os.environ.get(env_var)
        if value is not None:
            _put(raw, dotted, value)

    for dotted, value in (cli_overrides or {}).items():
        if value is not None:
            _put(raw, dotted, value)

    logger.debug("Loaded config from %s", path if path.exists() else "defaults")
    return _build_config(raw)
