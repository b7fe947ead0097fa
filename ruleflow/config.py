from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from ruleflow.logging import get_logger

logger = get_logger(__name__)

# Bounds applied to user-supplied settings
MAX_EXECUTOR_WORKERS = 16
MAX_REFERENCE_DEPTH_CAP = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the rule execution engine."""

    rules_root: str = env_field(
        "/srv/ruleflow/rules",
        "RULES_ROOT",
        description="Base directory that Excel file references are resolved against",
    )
    versions_seed_path: str | None = env_field(
        None,
        "VERSIONS_SEED_PATH",
        description="Optional JSON file of rule versions loaded into the memory store at startup",
    )
    node_timeout_seconds: float | None = env_field(
        30.0,
        "NODE_TIMEOUT_SECONDS",
        description="Per-node execution timeout; unset or 0 disables the limit",
    )
    max_round_factor: int = env_field(
        2,
        "MAX_ROUND_FACTOR",
        description="A flow may run at most max_round_factor x node count rounds",
    )
    max_reference_depth: int = env_field(
        8,
        "MAX_REFERENCE_DEPTH",
        description="Maximum nesting of reference-mode nodes and nested flows",
    )
    executor_workers: int = env_field(8, "EXECUTOR_WORKERS")
    max_expression_length: int = env_field(2000, "MAX_EXPRESSION_LENGTH")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    test_mode: bool = env_field(False, "TEST_MODE")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("node_timeout_seconds", mode="before")
    @classmethod
    def _normalize_timeout(cls, value: Any) -> Any:
        if value in (None, ""):
            return None
        if float(value) <= 0:
            return None
        return value

    @field_validator("executor_workers")
    @classmethod
    def _bound_workers(cls, value: int) -> int:
        return min(max(1, value), MAX_EXECUTOR_WORKERS)

    @field_validator("max_round_factor")
    @classmethod
    def _validate_round_factor(cls, value: int) -> int:
        if value < 1:
            raise ValueError("max_round_factor must be at least 1")
        return value

    @field_validator("max_reference_depth")
    @classmethod
    def _bound_reference_depth(cls, value: int) -> int:
        if value < 1:
            raise ValueError("max_reference_depth must be at least 1")
        if value > MAX_REFERENCE_DEPTH_CAP:
            logger.warning(
                "max_reference_depth_capped",
                requested=value,
                cap=MAX_REFERENCE_DEPTH_CAP,
            )
            return MAX_REFERENCE_DEPTH_CAP
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
