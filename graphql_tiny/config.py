from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from graphql_tiny.api.retry import DEFAULT_RETRY_RULES, RetryRule, parse_retry_rule, parse_retry_rules

TOKEN_ENV = "SHOPIFY_TOKEN"
SHOP_ENV = "SHOPIFY_DOMAIN"


class ConfigError(Exception):
    """Raised when configuration cannot be loaded or validated."""


class RetryConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    enabled: bool = Field(default=True)
    rules: tuple[str, ...] = Field(default=DEFAULT_RETRY_RULES)
    max_attempts: int = Field(default=10, ge=1)
    base_delay_s: float = Field(default=1.0, ge=0)
    max_delay_s: float = Field(default=60.0, ge=0)
    multiplier: float = Field(default=2.0, gt=0)
    jitter: bool = Field(default=True)

    @field_validator("rules", mode="before")
    @classmethod
    def _validate_rules(cls, value: Any) -> tuple[str, ...]:
        if isinstance(value, (str, int)):
            value = [value]
        if not isinstance(value, (list, tuple)):
            raise ValueError("rules must be a list")
        normalized = []
        for item in value:
            # Raises ValueError for rules that cannot be matched
            parse_retry_rule(item)
            normalized.append(str(item).strip())
        return tuple(normalized)

    def retry_rules(self) -> frozenset[RetryRule]:
        if not self.enabled:
            return frozenset()
        return parse_retry_rules(self.rules)

    @property
    def attempt_budget(self) -> int:
        return self.max_attempts if self.enabled else 1


class ClientConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    shop: str
    token: str
    api_version: str | None = Field(default=None)
    timeout_s: float = Field(default=30, gt=0)
    debug: bool = Field(default=False)
    retry: RetryConfig = Field(default_factory=RetryConfig)


class ObsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    log_jsonl: bool = Field(default=True)
    log_level: str = Field(default="INFO")

    @field_validator("log_level")
    @classmethod
    def _validate_level(cls, value: str) -> str:
        level = value.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid log level: {value}")
        return level


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    client: ClientConfig
    obs: ObsConfig = Field(default_factory=ObsConfig)


@dataclass(frozen=True)
class LoadedConfig:
    config: AppConfig
    raw: dict[str, Any]


def _apply_env_defaults(payload: dict[str, Any]) -> dict[str, Any]:
    client = payload.get("client")
    if client is None:
        client = {}
    if not isinstance(client, dict):
        return payload

    client = dict(client)
    if "token" not in client and os.environ.get(TOKEN_ENV):
        client["token"] = os.environ[TOKEN_ENV]
    if "shop" not in client and os.environ.get(SHOP_ENV):
        client["shop"] = os.environ[SHOP_ENV]
    return {**payload, "client": client}


def load_config(path: Path) -> LoadedConfig:
    if not path.exists():
        raise ConfigError(f"Config not found: {path}")

    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML: {exc}") from exc

    if not isinstance(payload, dict):
        raise ConfigError("Config root must be a mapping")

    try:
        config = AppConfig.model_validate(_apply_env_defaults(payload))
    except ValidationError as exc:
        raise ConfigError(str(exc)) from exc

    return LoadedConfig(config=config, raw=payload)
