"""Application configuration handling."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import BaseModel, Field, field_validator

from ledger_deploy.core.errors import ConfigurationError

ENV_PREFIX = "LDEP_"
DEFAULT_CONFIG_PATH = Path("~/.config/ledger-deploy/config.yaml")

DEFAULT_CONTENT_URL = "https://ordfs.network"
DEFAULT_INDEXER_URL = "https://ordinals.1sat.app"
DEFAULT_MANIFEST_PATH = Path("deployment-manifest.json")

KNOWN_PROTOCOLS = ("gorilla-pool",)

_YAML_KEY_MAP: Mapping[tuple[str, ...], str] = {
    ("services", "content_url"): "content_url",
    ("services", "indexer_url"): "indexer_url",
    ("services", "protocol"): "protocol",
    ("deploy", "fee_rate"): "fee_rate",
    ("deploy", "build_dir"): "build_dir",
    ("deploy", "manifest_path"): "manifest_path",
    ("deploy", "project_name"): "project_name",
    ("chunking", "threshold"): "chunk_threshold",
    ("chunking", "size"): "chunk_size",
    ("chunking", "batch_size"): "chunk_batch_size",
    ("retry", "max_attempts"): "retry_max_attempts",
    ("retry", "initial_delay"): "retry_initial_delay",
    ("retry", "max_delay"): "retry_max_delay",
    ("logging", "level"): "log_level",
    ("logging", "json"): "log_json",
}


class RetryPolicy(BaseModel):
    """Exponential backoff parameters for transient publish failures."""

    max_attempts: int = Field(default=5, ge=1)
    initial_delay: float = Field(default=2.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1)


class Settings(BaseModel):
    """Runtime configuration loaded from YAML file and environment variables."""

    content_url: str = DEFAULT_CONTENT_URL
    indexer_url: str = DEFAULT_INDEXER_URL
    protocol: str = "gorilla-pool"
    fee_rate: float = 1.0
    build_dir: Path = Path("./dist")
    manifest_path: Path = DEFAULT_MANIFEST_PATH
    project_name: str | None = None
    funding_key: str | None = None
    chunk_threshold: int = 5 * 1024 * 1024
    chunk_size: int = 10 * 1024 * 1024
    chunk_batch_size: int = 10
    retry_max_attempts: int = 5
    retry_initial_delay: float = 2.0
    retry_max_delay: float = 30.0
    dry_run_delay: float = 0.1
    log_level: str = "INFO"
    log_json: bool = False

    model_config = {
        "validate_assignment": True,
        "extra": "ignore",
    }

    @field_validator("build_dir", "manifest_path", mode="before")
    @classmethod
    def _expand_path(cls, value: Any) -> Path:
        if isinstance(value, Path):
            return value.expanduser()
        if isinstance(value, str):
            return Path(value).expanduser()
        raise TypeError("path settings must be a path or string")

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            initial_delay=self.retry_initial_delay,
            max_delay=self.retry_max_delay,
        )

    @classmethod
    def from_yaml(cls, path: Path | None = None) -> "Settings":
        """Load YAML config and overlay env vars; fall back to defaults."""
        config_path = cls._resolve_config_path(path)
        data: dict[str, Any] = {}
        if config_path and config_path.exists():
            with config_path.open("r", encoding="utf-8") as fh:
                raw = yaml.safe_load(fh) or {}
            data.update(_flatten_yaml(raw))
        data.update(_load_env_overrides())
        return cls(**data)

    @staticmethod
    def _resolve_config_path(path: Path | None) -> Path | None:
        if path is not None:
            return path.expanduser()
        env_path = os.environ.get(f"{ENV_PREFIX}CONFIG")
        if env_path:
            return Path(env_path).expanduser()
        resolved_default = DEFAULT_CONFIG_PATH.expanduser()
        return resolved_default if resolved_default.exists() else None


class DeploymentConfig(BaseModel):
    """Everything one deployment run needs, enumerated at the orchestrator boundary."""

    build_dir: Path
    funding_key: str | None = None
    fee_rate: float = 1.0
    dry_run: bool = False
    version: str
    version_description: str = ""
    version_origin: str | None = None
    content_url: str = DEFAULT_CONTENT_URL
    indexer_url: str = DEFAULT_INDEXER_URL
    protocol: str = "gorilla-pool"
    project_name: str | None = None
    manifest_path: Path = DEFAULT_MANIFEST_PATH
    entry_point: str = "index.html"
    chunk_threshold: int = Field(default=5 * 1024 * 1024, gt=0)
    chunk_size: int = Field(default=10 * 1024 * 1024, gt=0)
    chunk_batch_size: int = Field(default=10, ge=1)
    chunking_enabled: bool = True
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    dry_run_delay: float = Field(default=0.1, ge=0)

    model_config = {"extra": "forbid"}

    @field_validator("build_dir", "manifest_path", mode="before")
    @classmethod
    def _expand_path(cls, value: Any) -> Path:
        if isinstance(value, Path):
            return value.expanduser()
        if isinstance(value, str):
            return Path(value).expanduser()
        raise TypeError("path fields must be a path or string")

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> "DeploymentConfig":
        """Seed a deployment config from settings, letting explicit values win."""
        data: dict[str, Any] = {
            "build_dir": settings.build_dir,
            "funding_key": settings.funding_key,
            "fee_rate": settings.fee_rate,
            "content_url": settings.content_url,
            "indexer_url": settings.indexer_url,
            "protocol": settings.protocol,
            "project_name": settings.project_name,
            "manifest_path": settings.manifest_path,
            "chunk_threshold": settings.chunk_threshold,
            "chunk_size": settings.chunk_size,
            "chunk_batch_size": settings.chunk_batch_size,
            "retry": settings.retry_policy,
            "dry_run_delay": settings.dry_run_delay,
        }
        data.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**data)

    def validate_for_run(self) -> None:
        """Raise ConfigurationError for anything that must be fixed before touching the network."""
        if not self.build_dir.exists():
            raise ConfigurationError(f"Build directory not found: {self.build_dir}")
        if not self.build_dir.is_dir():
            raise ConfigurationError(f"Build path is not a directory: {self.build_dir}")
        if not self.dry_run and not self.funding_key:
            raise ConfigurationError("A funding key is required unless running in dry-run mode")
        if self.fee_rate <= 0:
            raise ConfigurationError(f"Fee rate must be positive, got {self.fee_rate}")
        if self.protocol not in KNOWN_PROTOCOLS:
            raise ConfigurationError(
                f"Unknown indexer protocol '{self.protocol}' (expected one of {', '.join(KNOWN_PROTOCOLS)})"
            )
        if not self.version.strip():
            raise ConfigurationError("A version tag is required")


def _flatten_yaml(raw: Mapping[str, Any], prefix: tuple[str, ...] = ()) -> dict[str, Any]:
    """Flatten nested YAML configuration to Settings field names."""
    flat: dict[str, Any] = {}
    for key, value in raw.items():
        next_prefix = prefix + (key,)
        if isinstance(value, Mapping):
            flat.update(_flatten_yaml(value, prefix=next_prefix))
        else:
            mapped_key = _YAML_KEY_MAP.get(next_prefix)
            if mapped_key:
                flat[mapped_key] = value
            elif key in Settings.model_fields:
                flat[key] = value
    return flat


def _load_env_overrides() -> dict[str, Any]:
    """Map environment variables with LDEP_ prefix into Settings fields."""
    overrides: dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        field_name = key[len(ENV_PREFIX) :].lower()
        if field_name in Settings.model_fields:
            overrides[field_name] = value
    return overrides


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Cached settings accessor."""
    return Settings.from_yaml()


__all__ = [
    "DeploymentConfig",
    "KNOWN_PROTOCOLS",
    "RetryPolicy",
    "Settings",
    "get_settings",
]
