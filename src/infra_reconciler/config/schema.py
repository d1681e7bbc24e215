"""Configuration models for YAML-based reconciliation."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, PrivateAttr
from pydantic_settings import BaseSettings, SettingsConfigDict

from infra_reconciler.resources.spec import Lifecycle, ResourceSpec  # noqa: TC001


class ProviderConfig(BaseSettings):
    """AWS provider connection settings.

    Fields can be set via YAML (constructor kwargs) or environment variables
    with the ``RECONCILER_AWS_`` prefix.  Constructor kwargs take precedence.

    Credentials are never part of the configuration; boto3 resolves them from
    its usual chain (environment, shared config, instance profile).
    """

    model_config = SettingsConfigDict(env_prefix="RECONCILER_AWS_", extra="ignore")

    region: str | None = None
    profile: str | None = None
    endpoint_url: str | None = None
    poll_interval: float = Field(default=5.0, gt=0)
    poll_timeout: float = Field(default=600.0, gt=0)


class EngineSettings(BaseSettings):
    """Apply tuning knobs (``RECONCILER_PARALLELISM``, ``RECONCILER_MAX_ATTEMPTS``, ...)."""

    model_config = SettingsConfigDict(env_prefix="RECONCILER_", extra="ignore")

    parallelism: int = Field(default=10, ge=1)
    max_attempts: int = Field(default=5, ge=1)
    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)


def _none_to_list(v: Any) -> Any:
    return v if v is not None else []


def _none_to_dict(v: Any) -> Any:
    return v if v is not None else {}


class ResourceDeclaration(BaseModel):
    """One ``resources:`` entry, before variable interpolation and ``count`` expansion."""

    model_config = ConfigDict(extra="forbid")

    type: str
    name: str
    count: int | str | None = None
    attributes: Annotated[dict[str, Any], BeforeValidator(_none_to_dict)] = {}
    depends_on: Annotated[list[str], BeforeValidator(_none_to_list)] = []
    lifecycle: Lifecycle = Field(default_factory=Lifecycle)


class Config(BaseModel):
    """Reconciliation configuration, validated directly from the YAML structure."""

    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    engine: EngineSettings = Field(default_factory=EngineSettings)
    state_path: Path = Path(".reconciler-state.json")
    variables: Annotated[dict[str, Any], BeforeValidator(_none_to_dict)] = {}
    resources: Annotated[list[ResourceDeclaration], BeforeValidator(_none_to_list)] = []
    outputs: Annotated[dict[str, Any], BeforeValidator(_none_to_dict)] = {}
    config_dir: Path = Path()

    _specs: list[ResourceSpec] = PrivateAttr(default_factory=list)
    _resolved_outputs: dict[str, Any] = PrivateAttr(default_factory=dict)

    @property
    def specs(self) -> list[ResourceSpec]:
        """Resolved resource specs: variables substituted, ``count`` expanded."""
        return list(self._specs)

    @property
    def resolved_outputs(self) -> dict[str, Any]:
        """Output expressions with variables substituted (refs still textual)."""
        return dict(self._resolved_outputs)
