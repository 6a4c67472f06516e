"""
Configuration loader for the reminder engine.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./reminders.db"              # postgresql:// | mysql:// | sqlite://
    store_backend: str = "sql"                         # "sql" | "memory"
    pool_size: int = 5                                 # server databases only
    busy_timeout_seconds: float = 30.0                 # SQLite: wait this long for the write lock


@dataclass
class ScannerConfig:
    claim_timeout_seconds: int = 900        # claimed longer than this → abandoned
    concurrency: int = 5                    # max concurrent dispatches per scan
    backoff_base_seconds: int = 3600        # first re-check delay for unreachable owners
    backoff_max_seconds: int = 604800       # cap on the re-check delay (7 days)
    trigger_token: str = ""                 # shared secret for the trigger endpoint


@dataclass
class ChannelConfig:
    access_token: str = ""                  # empty → mock mode
    api_base: str = "https://api.line.me"
    timeout_seconds: float = 10.0
    rate_per_second: float = 50.0
    burst: int = 50
    rate_limit_wait_seconds: float = 10.0   # longer than this → send reported as rate limited
    breaker_failure_threshold: int = 5      # consecutive failures that open the circuit
    breaker_recovery_seconds: float = 60.0  # open → half_open after this long


@dataclass
class Settings:
    app_name: str = "ExpiryReminder"
    debug: bool = False
    timezone: str = "Asia/Tokyo"
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    scanner: ScannerConfig = field(default_factory=ScannerConfig)
    channel: ChannelConfig = field(default_factory=ChannelConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "REMINDER_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.timezone = raw.get("timezone", settings.timezone)

        if "database" in raw:
            db = raw["database"]
            settings.database = DatabaseConfig(
                url=db.get("url", settings.database.url),
                store_backend=db.get("store_backend", settings.database.store_backend),
                pool_size=int(db.get("pool_size", settings.database.pool_size)),
                busy_timeout_seconds=float(db.get("busy_timeout_seconds", settings.database.busy_timeout_seconds)),
            )

        if "scanner" in raw:
            sc = raw["scanner"]
            defaults = ScannerConfig()
            settings.scanner = ScannerConfig(
                claim_timeout_seconds=int(sc.get("claim_timeout_seconds", defaults.claim_timeout_seconds)),
                concurrency=int(sc.get("concurrency", defaults.concurrency)),
                backoff_base_seconds=int(sc.get("backoff_base_seconds", defaults.backoff_base_seconds)),
                backoff_max_seconds=int(sc.get("backoff_max_seconds", defaults.backoff_max_seconds)),
                trigger_token=sc.get("trigger_token", "") or "",
            )

        if "channel" in raw:
            ch = raw["channel"]
            defaults = ChannelConfig()
            settings.channel = ChannelConfig(
                access_token=ch.get("access_token", "") or "",
                api_base=ch.get("api_base", defaults.api_base),
                timeout_seconds=float(ch.get("timeout_seconds", defaults.timeout_seconds)),
                rate_per_second=float(ch.get("rate_per_second", defaults.rate_per_second)),
                burst=int(ch.get("burst", defaults.burst)),
                rate_limit_wait_seconds=float(ch.get("rate_limit_wait_seconds", defaults.rate_limit_wait_seconds)),
                breaker_failure_threshold=int(ch.get("breaker_failure_threshold", defaults.breaker_failure_threshold)),
                breaker_recovery_seconds=float(ch.get("breaker_recovery_seconds", defaults.breaker_recovery_seconds)),
            )

        # Unresolved ${VAR} placeholders mean "not configured"
        if settings.channel.access_token.startswith("${"):
            settings.channel.access_token = ""
        if settings.scanner.trigger_token.startswith("${"):
            settings.scanner.trigger_token = ""

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (for testing)."""
    global _settings
    _settings = None
