"""YAML configuration file loader."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import ValidationError
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from infra_reconciler.config.interpolation import (
    InterpolationError,
    Scope,
    interpolate,
    interpolate_address,
)
from infra_reconciler.config.schema import (
    Config,
    EngineSettings,
    ProviderConfig,
    ResourceDeclaration,
)
from infra_reconciler.resources.refs import collect_refs, decode_refs, is_address
from infra_reconciler.resources.spec import ResourceSpec

logger = logging.getLogger(__name__)

VARIABLE_ENV_PREFIX = "RECONCILER_VAR_"


class ConfigError(Exception):
    """Raised for configuration loading / validation errors."""


def _read_dotenv(config_dir: Path) -> tuple[Path | None, dict[str, str | None]]:
    env_file = config_dir / ".env"
    if not env_file.is_file():
        return None, {}
    return env_file, dotenv_values(env_file, encoding="utf-8-sig")


def _settings(cls: type[Any], raw: Any, section: str, env_file: Path | None) -> Any:
    """Build a settings model from its YAML section, env vars and ``.env``.

    Priority (highest wins): YAML value > env var > ``.env`` file.
    """
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError(f"'{section}' must be a mapping")
    explicit = {k: v for k, v in raw.items() if v is not None}
    try:
        return cls(_env_file=env_file, _env_file_encoding="utf-8-sig", **explicit)
    except ValidationError as exc:
        raise ConfigError(f"Invalid '{section}' settings: {exc}") from exc


def _parse_env_value(env_key: str, raw: str) -> Any:
    """Parse an override as a YAML scalar or flow collection (``3``, ``[a, b]``)."""
    if not raw.strip():
        return raw
    try:
        return YAML(typ="safe").load(raw)
    except YAMLError as exc:
        raise ConfigError(f"Invalid value for {env_key}: {exc}") from exc


def _resolve_variables(
    declared: dict[str, Any], dotenv_vals: dict[str, str | None]
) -> dict[str, Any]:
    """Resolve variable values.

    Priority (highest wins): env var > ``.env`` file > default in YAML.
    A variable declared without a default must be set from the environment.
    """
    resolved: dict[str, Any] = {}
    for name, default in declared.items():
        env_key = f"{VARIABLE_ENV_PREFIX}{name}"
        raw = os.environ.get(env_key)
        if raw is None:
            raw = dotenv_vals.get(env_key)
        value = _parse_env_value(env_key, raw) if raw is not None else default
        if value is None:
            raise ConfigError(f"Variable '{name}' has no value; give it a default or set {env_key}")
        resolved[name] = value
    return resolved


def _resolve_count(decl: ResourceDeclaration, scope: Scope) -> int | None:
    if decl.count is None:
        return None
    count = interpolate(decl.count, scope) if isinstance(decl.count, str) else decl.count
    if isinstance(count, str) and count.strip().isdigit():
        count = int(count)
    if isinstance(count, bool) or not isinstance(count, int) or count < 0:
        raise ConfigError(
            f"{decl.type}.{decl.name}: count must be a non-negative integer, got {count!r}"
        )
    return count


def _expand(decl: ResourceDeclaration, variables: dict[str, Any]) -> list[ResourceSpec]:
    """Turn one declaration into one spec, or ``count`` indexed specs."""
    label = f"{decl.type}.{decl.name}"
    try:
        count = _resolve_count(decl, Scope(variables))
        indexes: list[int | None] = [None] if count is None else list(range(count))
        specs: list[ResourceSpec] = []
        for index in indexes:
            scope = Scope(variables, count_index=index)
            depends_on = [interpolate_address(d, scope) for d in decl.depends_on]
            for dep in depends_on:
                if not is_address(dep):
                    raise ConfigError(f"{label}: invalid depends_on entry '{dep}'")
            specs.append(
                ResourceSpec(
                    resource_type=decl.type,
                    name=decl.name,
                    index=index,
                    attributes=interpolate(decl.attributes, scope),
                    depends_on=depends_on,
                    lifecycle=decl.lifecycle,
                )
            )
    except InterpolationError as exc:
        raise ConfigError(f"{label}: {exc}") from exc
    except ValidationError as exc:
        raise ConfigError(f"{label}: {exc}") from exc
    return specs


def _validate_unique_declarations(declarations: list[ResourceDeclaration]) -> list[str]:
    """Check that no two ``resources:`` entries share a type and name."""
    seen: dict[str, int] = {}
    errors: list[str] = []
    for position, decl in enumerate(declarations, start=1):
        label = f"{decl.type}.{decl.name}"
        if label in seen:
            errors.append(f"Duplicate resource '{label}': entries {seen[label]} and {position}")
        else:
            seen[label] = position
    return errors


def _resolve_outputs(
    outputs: dict[str, Any], variables: dict[str, Any], addresses: set[str]
) -> dict[str, Any]:
    try:
        resolved = interpolate(outputs, Scope(variables))
    except InterpolationError as exc:
        raise ConfigError(f"outputs: {exc}") from exc
    for ref in collect_refs(decode_refs(resolved)):
        if ref.address not in addresses:
            raise ConfigError(f"outputs: reference '{ref}' points at an undeclared resource")
    return resolved


def load_config(path: Path | str) -> Config:
    """Load a YAML configuration file and return a ``Config`` object.

    Raises:
        ConfigError: On YAML parse errors, missing sections, or validation failures.
    """
    path = Path(path)

    try:
        raw = YAML(typ="safe").load(path)
    except Exception as exc:
        raise ConfigError(f"Failed to read {path}: {exc}") from exc
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{path}: top level must be a mapping")

    config_dir = path.parent
    env_file, dotenv_vals = _read_dotenv(config_dir)

    raw["provider"] = _settings(ProviderConfig, raw.get("provider"), "provider", env_file)
    raw["engine"] = _settings(EngineSettings, raw.get("engine"), "engine", env_file)
    try:
        config = Config.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(str(exc)) from exc

    config.config_dir = config_dir
    if not config.state_path.is_absolute():
        config.state_path = config_dir / config.state_path

    errors = _validate_unique_declarations(config.resources)
    if errors:
        raise ConfigError("\n".join(errors))

    variables = _resolve_variables(config.variables, dotenv_vals)
    specs: list[ResourceSpec] = []
    for decl in config.resources:
        specs.extend(_expand(decl, variables))
    config._specs = specs
    config._resolved_outputs = _resolve_outputs(
        config.outputs, variables, {s.address for s in specs}
    )

    logger.info(
        "Loaded config from %s (%d declarations, %d resources)",
        path,
        len(config.resources),
        len(specs),
    )
    return config
