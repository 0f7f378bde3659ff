"""Configuration loading, validation, and defaults."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import yaml

from .types import (
    AccountsConfig,
    GuardConfig,
    ProxyConfig,
    RecoveryConfig,
    RefreshConfig,
    SignatureCacheConfig,
)

CONFIG_FILENAMES = [
    "antigravity-guard.yaml",
    "antigravity-guard.yml",
    "antigravity-guard.json",
]


def _discover_config() -> Path | None:
    """Search CWD then parent dirs up to home for a config file."""
    cwd = Path.cwd()
    home = Path.home()
    search = cwd
    while True:
        for name in CONFIG_FILENAMES:
            candidate = search / name
            if candidate.is_file():
                return candidate
        if search == home or search == search.parent:
            break
        search = search.parent
    return None


def _build_config(raw: dict[str, Any]) -> GuardConfig:
    """Build a GuardConfig from a raw dict."""
    # Recovery flags live at the top level
    recovery = RecoveryConfig(
        session_recovery=bool(raw.get("session_recovery", True)),
        auto_resume=bool(raw.get("auto_resume", True)),
        resume_text=str(raw.get("resume_text", "continue")),
    )

    cache_raw = raw.get("signature_cache", {}) or {}
    signature_cache = SignatureCacheConfig(
        enabled=bool(cache_raw.get("enabled", True)),
        memory_ttl_seconds=int(cache_raw.get("memory_ttl_seconds", 3600)),
        disk_ttl_seconds=int(cache_raw.get("disk_ttl_seconds", 172_800)),
        write_interval_seconds=int(cache_raw.get("write_interval_seconds", 60)),
        cleanup_interval_seconds=int(cache_raw.get("cleanup_interval_seconds", 1800)),
        path=cache_raw.get("path"),
    )

    accounts_raw = raw.get("accounts", {}) or {}
    accounts = AccountsConfig(path=accounts_raw.get("path"))

    refresh_raw = raw.get("refresh", {}) or {}
    refresh = RefreshConfig(
        check_interval_seconds=int(refresh_raw.get("check_interval_seconds", 300)),
        proactive_window_seconds=int(refresh_raw.get("proactive_window_seconds", 1800)),
        token_url=refresh_raw.get("token_url", RefreshConfig.token_url),
        client_id=refresh_raw.get("client_id", ""),
        client_secret=refresh_raw.get("client_secret", ""),
        timeout_seconds=float(refresh_raw.get("timeout_seconds", 30.0)),
    )

    proxy_raw = raw.get("proxy", {}) or {}
    proxy = ProxyConfig(
        host=proxy_raw.get("host", "127.0.0.1"),
        port=int(proxy_raw.get("port", 5858)),
    )

    return GuardConfig(
        version=str(raw.get("version", "1.0")),
        recovery=recovery,
        signature_cache=signature_cache,
        accounts=accounts,
        refresh=refresh,
        proxy=proxy,
    )


def validate_config(config: GuardConfig) -> list[str]:
    """Validate a config. Returns list of error strings (empty = valid)."""
    errors: list[str] = []

    cache = config.signature_cache
    if cache.memory_ttl_seconds <= 0:
        errors.append("signature_cache.memory_ttl_seconds must be > 0")
    if cache.disk_ttl_seconds < cache.memory_ttl_seconds:
        errors.append(
            f"disk_ttl_seconds ({cache.disk_ttl_seconds}) must be >= "
            f"memory_ttl_seconds ({cache.memory_ttl_seconds})"
        )
    if cache.write_interval_seconds <= 0:
        errors.append("signature_cache.write_interval_seconds must be > 0")
    if cache.cleanup_interval_seconds <= 0:
        errors.append("signature_cache.cleanup_interval_seconds must be > 0")

    if config.refresh.check_interval_seconds <= 0:
        errors.append("refresh.check_interval_seconds must be > 0")
    if config.refresh.proactive_window_seconds < 0:
        errors.append("refresh.proactive_window_seconds must be >= 0")

    if config.recovery.auto_resume and not config.recovery.resume_text.strip():
        errors.append("resume_text must not be empty when auto_resume is enabled")

    if not (0 < config.proxy.port < 65536):
        errors.append(f"proxy.port out of range: {config.proxy.port}")

    return errors


def load_config(
    config_path: str | Path | None = None,
    config_dict: dict | None = None,
) -> GuardConfig:
    """Load config from dict, explicit path, or auto-discover."""
    if config_dict is not None:
        return _build_config(config_dict)

    if config_path is not None:
        path = Path(config_path)
    else:
        path = _discover_config()

    if path is None:
        # Return defaults
        return _build_config({})

    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")

    text = path.read_text()
    if path.suffix == ".json":
        raw = json.loads(text)
    else:
        raw = yaml.safe_load(text) or {}

    return _build_config(raw)
