"""Configuration loader for socialcast.

Loads YAML config files with environment variable overrides.
All env vars use the SOCIALCAST_ prefix.

Per-platform client credentials are a tagged union: each platform name
under ``platforms:`` selects exactly one client config class carrying
only the fields that platform's driver needs.
"""

from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, ClassVar, Union

import yaml

from socialcast.capabilities import Platform
from socialcast.resilience import GuardConfig

ENV_PREFIX = "SOCIALCAST_"


@dataclass
class TwitterClientConfig:
    platform: ClassVar[Platform] = Platform.TWITTER
    client_id: str = ""
    client_secret: str = ""
    scopes: list[str] = field(
        default_factory=lambda: ["tweet.read", "tweet.write", "users.read", "offline.access"],
    )


@dataclass
class LinkedInClientConfig:
    platform: ClassVar[Platform] = Platform.LINKEDIN
    client_id: str = ""
    client_secret: str = ""
    scopes: list[str] = field(
        default_factory=lambda: ["openid", "profile", "w_member_social"],
    )
    api_version: str = "202401"


PlatformClientConfig = Union[TwitterClientConfig, LinkedInClientConfig]

CLIENT_CONFIG_TYPES: dict[Platform, type] = {
    Platform.TWITTER: TwitterClientConfig,
    Platform.LINKEDIN: LinkedInClientConfig,
}


@dataclass
class SocialcastConfig:
    """Unified configuration for the orchestrator, dispatcher and drivers."""
    platforms: dict[Platform, PlatformClientConfig] = field(default_factory=dict)
    data_dir: str = ""
    live_mode: bool = False
    http_timeout: float = 30.0
    dispatch_interval: float = 60.0
    dispatch_batch_size: int = 50
    dispatch_workers: int = 4
    stale_after: float = 900.0
    auto_retry_stale: bool = False
    resilience: GuardConfig = field(default_factory=GuardConfig)
    log_level: str = "INFO"

    def data_path(self, name: str) -> Path | None:
        """Path of a store file under data_dir, or None for in-memory stores."""
        if not self.data_dir:
            return None
        return Path(self.data_dir) / name


def parse_platform_config(name: str, raw: dict[str, Any] | None) -> PlatformClientConfig:
    """Select and build the client config variant for ``name``."""
    try:
        platform = Platform(name)
    except ValueError:
        raise ValueError(f"Unknown platform in config: {name!r}") from None
    cls = CLIENT_CONFIG_TYPES.get(platform)
    if cls is None:
        raise ValueError(f"No driver available for platform {name!r}")

    raw = dict(raw or {})
    prefix = f"{platform.value.upper()}_"
    raw["client_id"] = _env_or(prefix + "CLIENT_ID", raw.get("client_id", ""))
    raw["client_secret"] = _env_or(prefix + "CLIENT_SECRET", raw.get("client_secret", ""))
    known = {f.name for f in dataclasses.fields(cls)}
    unknown = set(raw) - known
    if unknown:
        raise ValueError(f"Unknown {name} config keys: {', '.join(sorted(unknown))}")
    return cls(**raw)


def parse_resilience_config(raw: dict[str, Any] | None) -> GuardConfig:
    raw = dict(raw or {})
    known = {f.name for f in dataclasses.fields(GuardConfig)}
    unknown = set(raw) - known
    if unknown:
        raise ValueError(f"Unknown resilience config keys: {', '.join(sorted(unknown))}")
    return GuardConfig(**raw)


def load_config(path: Path | None = None) -> SocialcastConfig:
    """Load config from YAML file with env var overrides.

    Env vars override YAML values. Mapping:
      SOCIALCAST_<PLATFORM>_CLIENT_ID → platforms.<platform>.client_id
      SOCIALCAST_<PLATFORM>_CLIENT_SECRET → platforms.<platform>.client_secret
      SOCIALCAST_DATA_DIR → data_dir
      SOCIALCAST_LIVE_MODE → live_mode
      SOCIALCAST_HTTP_TIMEOUT → http_timeout
      SOCIALCAST_DISPATCH_INTERVAL → dispatcher.interval
      SOCIALCAST_LOG_LEVEL → log_level
    """
    raw: dict[str, Any] = {}
    if path and path.exists():
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raw = {}

    dispatcher = raw.get("dispatcher", {}) or {}
    platforms_raw = raw.get("platforms", {}) or {}

    # A platform configured only through env vars still gets a client config.
    for platform in CLIENT_CONFIG_TYPES:
        if os.environ.get(f"{ENV_PREFIX}{platform.value.upper()}_CLIENT_ID"):
            platforms_raw.setdefault(platform.value, {})

    return SocialcastConfig(
        platforms={
            Platform(name): parse_platform_config(name, section)
            for name, section in platforms_raw.items()
        },
        data_dir=_env_or("DATA_DIR", raw.get("data_dir", "")),
        live_mode=_env_bool("LIVE_MODE", raw.get("live_mode", False)),
        http_timeout=_env_float("HTTP_TIMEOUT", raw.get("http_timeout", 30.0)),
        dispatch_interval=_env_float("DISPATCH_INTERVAL", dispatcher.get("interval", 60.0)),
        dispatch_batch_size=int(dispatcher.get("batch_size", 50)),
        dispatch_workers=int(dispatcher.get("workers", 4)),
        stale_after=float(dispatcher.get("stale_after", 900.0)),
        auto_retry_stale=bool(dispatcher.get("auto_retry_stale", False)),
        resilience=parse_resilience_config(raw.get("resilience")),
        log_level=_env_or("LOG_LEVEL", raw.get("log_level", "INFO")),
    )


def _env_or(suffix: str, default: str) -> str:
    return os.environ.get(f"{ENV_PREFIX}{suffix}", default)


def _env_bool(suffix: str, default: bool) -> bool:
    val = os.environ.get(f"{ENV_PREFIX}{suffix}")
    if val is None:
        return default
    return val.lower() in ("true", "1", "yes")


def _env_float(suffix: str, default: float) -> float:
    val = os.environ.get(f"{ENV_PREFIX}{suffix}")
    if val is None:
        return float(default)
    try:
        return float(val)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{suffix} must be a number, got {val!r}") from None
