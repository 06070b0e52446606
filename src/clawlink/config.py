from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

from clawlink.constants import (
    DEFAULT_CLIENT_ID,
    DEFAULT_CLIENT_MODE,
    DEFAULT_CLIENT_PLATFORM,
    DEFAULT_CLIENT_VERSION,
    DEFAULT_HISTORY_LIMIT,
    DEFAULT_KEY_PATH,
    DEFAULT_LOCALE,
    DEFAULT_PORT,
    DEFAULT_RECONNECT_DELAY_SECONDS,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    DEFAULT_ROLE,
    DEFAULT_SCOPES,
    DEFAULT_TOKEN_PATH,
    DEFAULT_USER_AGENT,
)
from clawlink.gateway.handshake import ClientSettings


class ConfigError(ValueError):
    pass


def _require_yaml() -> Any:
    try:
        import yaml  # type: ignore
    except Exception as exc:  # pragma: no cover
        raise ConfigError(
            "PyYAML is required to load config. Install project deps (see pyproject.toml)."
        ) from exc
    return yaml


def _as_dict(value: Any, *, where: str) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, dict):
        return value
    raise ConfigError(f"Expected mapping at {where}, got {type(value).__name__}")


def _as_list(value: Any, *, where: str) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    raise ConfigError(f"Expected list at {where}, got {type(value).__name__}")


def _as_str(value: Any, *, where: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected string at {where}, got {type(value).__name__}")


def _as_int(value: Any, *, where: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"Expected int at {where}, got bool")
    if isinstance(value, int):
        return value
    raise ConfigError(f"Expected int at {where}, got {type(value).__name__}")


def _as_float(value: Any, *, where: str) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    raise ConfigError(f"Expected number at {where}, got {type(value).__name__}")


def _as_bool(value: Any, *, where: str) -> bool:
    if isinstance(value, bool):
        return value
    raise ConfigError(f"Expected bool at {where}, got {type(value).__name__}")


@dataclass(frozen=True)
class GatewayConfig:
    host: str
    port: int
    token_env: str
    tls: bool

    @staticmethod
    def from_dict(d: Mapping[str, Any]) -> "GatewayConfig":
        return GatewayConfig(
            host=_as_str(d.get("host"), where="gateway.host"),
            port=_as_int(d.get("port", DEFAULT_PORT), where="gateway.port"),
            token_env=_as_str(d.get("token_env"), where="gateway.token_env"),
            tls=_as_bool(d.get("tls", False), where="gateway.tls"),
        )

    def token(self) -> Optional[str]:
        return os.getenv(self.token_env) or None


@dataclass(frozen=True)
class ClientConfig:
    id: str
    version: str
    platform: str
    mode: str
    role: str
    scopes: tuple[str, ...]
    locale: str
    user_agent: str

    @staticmethod
    def from_dict(d: Mapping[str, Any]) -> "ClientConfig":
        scopes_raw = d.get("scopes")
        if scopes_raw is None:
            scopes = DEFAULT_SCOPES
        else:
            scopes = tuple(
                _as_str(x, where="client.scopes[]")
                for x in _as_list(scopes_raw, where="client.scopes")
            )
        return ClientConfig(
            id=_as_str(d.get("id", DEFAULT_CLIENT_ID), where="client.id"),
            version=_as_str(d.get("version", DEFAULT_CLIENT_VERSION), where="client.version"),
            platform=_as_str(d.get("platform", DEFAULT_CLIENT_PLATFORM), where="client.platform"),
            mode=_as_str(d.get("mode", DEFAULT_CLIENT_MODE), where="client.mode"),
            role=_as_str(d.get("role", DEFAULT_ROLE), where="client.role"),
            scopes=scopes,
            locale=_as_str(d.get("locale", DEFAULT_LOCALE), where="client.locale"),
            user_agent=_as_str(d.get("user_agent", DEFAULT_USER_AGENT), where="client.user_agent"),
        )

    def settings(self) -> ClientSettings:
        return ClientSettings(
            client_id=self.id,
            version=self.version,
            platform=self.platform,
            mode=self.mode,
            role=self.role,
            scopes=self.scopes,
            locale=self.locale,
            user_agent=self.user_agent,
        )


@dataclass(frozen=True)
class IdentityConfig:
    key_path: str
    token_path: str

    @staticmethod
    def from_dict(d: Mapping[str, Any]) -> "IdentityConfig":
        return IdentityConfig(
            key_path=_as_str(d.get("key_path", DEFAULT_KEY_PATH), where="identity.key_path"),
            token_path=_as_str(d.get("token_path", DEFAULT_TOKEN_PATH), where="identity.token_path"),
        )


@dataclass(frozen=True)
class TimingConfig:
    request_timeout_seconds: float
    reconnect_delay_seconds: float
    history_limit: int

    @staticmethod
    def from_dict(d: Mapping[str, Any]) -> "TimingConfig":
        return TimingConfig(
            request_timeout_seconds=_as_float(
                d.get("request_timeout_seconds", DEFAULT_REQUEST_TIMEOUT_SECONDS),
                where="timing.request_timeout_seconds",
            ),
            reconnect_delay_seconds=_as_float(
                d.get("reconnect_delay_seconds", DEFAULT_RECONNECT_DELAY_SECONDS),
                where="timing.reconnect_delay_seconds",
            ),
            history_limit=_as_int(
                d.get("history_limit", DEFAULT_HISTORY_LIMIT), where="timing.history_limit"
            ),
        )


@dataclass(frozen=True)
class Config:
    gateway: GatewayConfig
    client: ClientConfig
    identity: IdentityConfig
    timing: TimingConfig


def config_from_dict(raw: Mapping[str, Any]) -> Config:
    return Config(
        gateway=GatewayConfig.from_dict(_as_dict(raw.get("gateway"), where="gateway")),
        client=ClientConfig.from_dict(_as_dict(raw.get("client"), where="client")),
        identity=IdentityConfig.from_dict(_as_dict(raw.get("identity"), where="identity")),
        timing=TimingConfig.from_dict(_as_dict(raw.get("timing"), where="timing")),
    )


def load_config(path: Path) -> Config:
    yaml = _require_yaml()
    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    if raw is None:
        raise ConfigError("Config file is empty")
    if not isinstance(raw, dict):
        raise ConfigError("Top-level config must be a mapping")
    return config_from_dict(raw)


def validate_config(cfg: Config, *, require_token: bool = True) -> list[str]:
    errors: list[str] = []

    if not cfg.gateway.host.strip():
        errors.append("gateway.host must be non-empty")
    if not (0 < cfg.gateway.port < 65536):
        errors.append("gateway.port must be between 1 and 65535")
    if require_token and not os.getenv(cfg.gateway.token_env):
        errors.append(f"Env var {cfg.gateway.token_env} is not set (gateway.token_env)")

    if not cfg.client.scopes:
        errors.append("client.scopes must be non-empty")
    for field_name in ("id", "mode", "role"):
        value = getattr(cfg.client, field_name)
        if not value:
            errors.append(f"client.{field_name} must be non-empty")
        elif "|" in value:
            errors.append(f"client.{field_name} must not contain '|'")
    if any("," in s or "|" in s for s in cfg.client.scopes):
        errors.append("client.scopes entries must not contain ',' or '|'")

    if cfg.timing.request_timeout_seconds <= 0:
        errors.append("timing.request_timeout_seconds must be > 0")
    if cfg.timing.reconnect_delay_seconds <= 0:
        errors.append("timing.reconnect_delay_seconds must be > 0")
    if cfg.timing.history_limit < 1:
        errors.append("timing.history_limit must be >= 1")

    return errors
