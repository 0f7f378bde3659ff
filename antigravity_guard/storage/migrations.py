"""Versioned credential-store schema and its forward migrations.

Each schema version is its own dataclass carrying an explicit ``version``
tag.  ``parse_storage`` dispatches on that tag only; every migration is a
pure, total function of (older storage, now_ms).

v1: single ``isRateLimited`` flag + ``rateLimitResetTime``
v2: per-family ``rateLimitResetTimes`` with ``claude`` and ``gemini``
v3: ``gemini`` split into ``gemini-antigravity`` and ``gemini-cli``
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Literal, Union

from ..types import (
    AccountMetadata,
    AccountStorage,
    StorageError,
    StorageFormatError,
)


@dataclass
class AccountMetadataV1:
    refresh_token: str
    added_at: int
    last_used: int
    email: str | None = None
    project_id: str | None = None
    managed_project_id: str | None = None
    is_rate_limited: bool = False
    rate_limit_reset_time: int | None = None
    last_switch_reason: str | None = None


@dataclass
class AccountStorageV1:
    accounts: list[AccountMetadataV1] = field(default_factory=list)
    active_index: int = 0
    version: Literal[1] = 1


@dataclass
class AccountMetadataV2:
    refresh_token: str
    added_at: int
    last_used: int
    email: str | None = None
    project_id: str | None = None
    managed_project_id: str | None = None
    last_switch_reason: str | None = None
    rate_limit_reset_times: dict[str, int] = field(default_factory=dict)


@dataclass
class AccountStorageV2:
    accounts: list[AccountMetadataV2] = field(default_factory=list)
    active_index: int = 0
    version: Literal[2] = 2


AnyAccountStorage = Union[AccountStorageV1, AccountStorageV2, AccountStorage]

CURRENT_VERSION = 3
_SWITCH_REASONS = ("rate-limit", "initial", "rotation")


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def _int(value, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)) and math.isfinite(value):
        return int(value)
    return default


def _reason(value) -> str | None:
    return value if value in _SWITCH_REASONS else None


def _times(raw) -> dict[str, int]:
    if not isinstance(raw, dict):
        return {}
    return {
        k: int(v) for k, v in raw.items()
        if isinstance(v, (int, float)) and not isinstance(v, bool) and math.isfinite(v)
    }


def _common(raw: dict) -> dict:
    return {
        "refresh_token": str(raw.get("refreshToken", "")),
        "added_at": _int(raw.get("addedAt")),
        "last_used": _int(raw.get("lastUsed")),
        "email": raw.get("email"),
        "project_id": raw.get("projectId"),
        "managed_project_id": raw.get("managedProjectId"),
        "last_switch_reason": _reason(raw.get("lastSwitchReason")),
    }


def parse_storage(raw) -> AnyAccountStorage:
    """Decode a raw JSON object into the tagged schema for its version."""
    if not isinstance(raw, dict) or not isinstance(raw.get("accounts"), list):
        raise StorageFormatError("accounts is not a list", StorageError.MALFORMED)

    version = raw.get("version")
    accounts = [a for a in raw["accounts"] if isinstance(a, dict)]
    active_index = raw.get("activeIndex", 0)

    if version == 1:
        return AccountStorageV1(
            accounts=[
                AccountMetadataV1(
                    **_common(a),
                    is_rate_limited=bool(a.get("isRateLimited", False)),
                    rate_limit_reset_time=(
                        _int(a["rateLimitResetTime"])
                        if a.get("rateLimitResetTime") is not None else None
                    ),
                )
                for a in accounts
            ],
            active_index=active_index,
        )
    if version == 2:
        return AccountStorageV2(
            accounts=[
                AccountMetadataV2(
                    **_common(a),
                    rate_limit_reset_times=_times(a.get("rateLimitResetTimes")),
                )
                for a in accounts
            ],
            active_index=active_index,
        )
    if version == 3:
        by_family = raw.get("activeIndexByFamily")
        return AccountStorage(
            accounts=[
                AccountMetadata(
                    **_common(a),
                    rate_limit_reset_times=_times(a.get("rateLimitResetTimes")),
                )
                for a in accounts
            ],
            active_index=active_index,
            active_index_by_family=dict(by_family) if isinstance(by_family, dict) else {},
        )

    raise StorageFormatError(
        f"Unknown account storage version: {version!r}",
        StorageError.UNKNOWN_VERSION,
    )


def storage_to_dict(storage: AccountStorage) -> dict:
    """Serialize the current schema using the on-disk camelCase keys."""
    accounts = []
    for acc in storage.accounts:
        out: dict = {"refreshToken": acc.refresh_token}
        if acc.email is not None:
            out["email"] = acc.email
        if acc.project_id is not None:
            out["projectId"] = acc.project_id
        if acc.managed_project_id is not None:
            out["managedProjectId"] = acc.managed_project_id
        out["addedAt"] = acc.added_at
        out["lastUsed"] = acc.last_used
        if acc.last_switch_reason is not None:
            out["lastSwitchReason"] = acc.last_switch_reason
        if acc.rate_limit_reset_times:
            out["rateLimitResetTimes"] = dict(acc.rate_limit_reset_times)
        accounts.append(out)

    data: dict = {
        "version": CURRENT_VERSION,
        "accounts": accounts,
        "activeIndex": storage.active_index,
    }
    if storage.active_index_by_family:
        data["activeIndexByFamily"] = dict(storage.active_index_by_family)
    return data


# ---------------------------------------------------------------------------
# Migrations
# ---------------------------------------------------------------------------

def migrate_v1_to_v2(v1: AccountStorageV1, now_ms: int) -> AccountStorageV2:
    accounts = []
    for acc in v1.accounts:
        times: dict[str, int] = {}
        reset = acc.rate_limit_reset_time
        if acc.is_rate_limited and reset is not None and reset > now_ms:
            times = {"claude": reset, "gemini": reset}
        accounts.append(AccountMetadataV2(
            refresh_token=acc.refresh_token,
            added_at=acc.added_at,
            last_used=acc.last_used,
            email=acc.email,
            project_id=acc.project_id,
            managed_project_id=acc.managed_project_id,
            last_switch_reason=acc.last_switch_reason,
            rate_limit_reset_times=times,
        ))
    return AccountStorageV2(accounts=accounts, active_index=v1.active_index)


def migrate_v2_to_v3(v2: AccountStorageV2, now_ms: int) -> AccountStorage:
    accounts = []
    for acc in v2.accounts:
        old = acc.rate_limit_reset_times
        times: dict[str, int] = {}
        claude = old.get("claude")
        if claude is not None and claude > now_ms:
            times["claude"] = claude
        gemini = old.get("gemini")
        if gemini is not None and gemini > now_ms:
            # The old limit covered both header styles at the time of the split
            times["gemini-antigravity"] = gemini
            times["gemini-cli"] = gemini
        accounts.append(AccountMetadata(
            refresh_token=acc.refresh_token,
            added_at=acc.added_at,
            last_used=acc.last_used,
            email=acc.email,
            project_id=acc.project_id,
            managed_project_id=acc.managed_project_id,
            last_switch_reason=acc.last_switch_reason,
            rate_limit_reset_times=times,
        ))
    return AccountStorage(accounts=accounts, active_index=v2.active_index)


def migrate(storage: AnyAccountStorage, now_ms: int) -> AccountStorage:
    """Walk *storage* forward one version at a time to the current schema."""
    if storage.version == 1:
        storage = migrate_v1_to_v2(storage, now_ms)
    if storage.version == 2:
        storage = migrate_v2_to_v3(storage, now_ms)
    return storage
