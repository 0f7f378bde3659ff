"""All dataclasses, enums, Protocols, and error types for antigravity-guard."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Literal, Protocol, runtime_checkable


# ---------------------------------------------------------------------------
# Families & quota axes
# ---------------------------------------------------------------------------

ModelFamily = Literal["claude", "gemini"]
HeaderStyle = Literal["antigravity", "gemini-cli"]
QuotaKey = Literal["claude", "gemini-antigravity", "gemini-cli"]
SwitchReason = Literal["rate-limit", "initial", "rotation"]

MODEL_FAMILIES: tuple[str, ...] = ("claude", "gemini")
HEADER_STYLES: tuple[str, ...] = ("antigravity", "gemini-cli")
QUOTA_KEYS: tuple[str, ...] = ("claude", "gemini-antigravity", "gemini-cli")


def quota_key(family: str, header_style: str = "antigravity") -> str:
    """Map a model family + header style onto its rate-limit axis."""
    if family == "claude":
        return "claude"
    return f"gemini-{header_style}"


# ---------------------------------------------------------------------------
# Signature cache
# ---------------------------------------------------------------------------

@dataclass
class CacheEntry:
    value: str  # the signature; an entry without one is never stored
    timestamp: int  # epoch ms of the write that created it
    thinking_text: str | None = None
    text_preview: str | None = None
    tool_ids: list[str] | None = None


@dataclass
class ThinkingCacheData:
    """Full thinking content with signature, used for post-corruption recovery."""
    text: str
    signature: str
    tool_ids: list[str] | None = None


@dataclass
class CacheStats:
    memory_hits: int = 0
    disk_hits: int = 0
    misses: int = 0
    writes: int = 0
    memory_entries: int = 0
    dirty: bool = False
    disk_enabled: bool = False


class CacheError(Enum):
    NOT_FOUND = "not_found"
    READ_FAILED = "read_failed"
    PARSE_FAILED = "parse_failed"
    VERSION_MISMATCH = "version_mismatch"
    WRITE_FAILED = "write_failed"
    DISABLED = "disabled"


@dataclass
class CacheResult:
    """Outcome of a cache disk operation. Never raised, only inspected."""
    ok: bool
    error: CacheError | None = None
    detail: str = ""
    loaded: int = 0
    expired: int = 0


# ---------------------------------------------------------------------------
# Credential store (schema v3 is current)
# ---------------------------------------------------------------------------

ACCOUNT_STORAGE_VERSION = 3


@dataclass
class AccountMetadata:
    refresh_token: str
    added_at: int
    last_used: int
    email: str | None = None
    project_id: str | None = None
    managed_project_id: str | None = None
    last_switch_reason: SwitchReason | None = None
    rate_limit_reset_times: dict[str, int] = field(default_factory=dict)

    @property
    def identity(self) -> str:
        return self.email or f"account-{self.added_at}"


@dataclass
class AccountStorage:
    accounts: list[AccountMetadata] = field(default_factory=list)
    active_index: int = 0
    active_index_by_family: dict[str, int] = field(default_factory=dict)
    version: Literal[3] = 3


class StorageError(Enum):
    NOT_FOUND = "not_found"
    READ_FAILED = "read_failed"
    PARSE_FAILED = "parse_failed"
    MALFORMED = "malformed"
    UNKNOWN_VERSION = "unknown_version"
    WRITE_FAILED = "write_failed"


@dataclass
class StorageResult:
    """Outcome of reading the credential store file."""
    storage: AccountStorage | None = None
    error: StorageError | None = None
    detail: str = ""
    source_version: int | None = None

    @property
    def ok(self) -> bool:
        return self.storage is not None


@dataclass
class AccessToken:
    access_token: str
    expires_at: int  # epoch ms

    def expires_within(self, now_ms: int, window_ms: int = 0) -> bool:
        return self.expires_at - now_ms <= window_ms


@dataclass
class AuthorizedCredential:
    """Resolved credential + header material for the next outbound call."""
    account: AccountMetadata
    access_token: str
    headers: dict[str, str] = field(default_factory=dict)
    quota_key: str = "claude"


# ---------------------------------------------------------------------------
# Tool pairing
# ---------------------------------------------------------------------------

@dataclass
class RepairReport:
    id_matches: int = 0
    name_matches: int = 0
    unknown_tagged: int = 0
    placeholders: int = 0
    removed: int = 0
    relocated: int = 0
    duplicates_dropped: int = 0
    changed: bool = False


# ---------------------------------------------------------------------------
# Crash recovery
# ---------------------------------------------------------------------------

class RecoveryState(str, Enum):
    HEALTHY = "healthy"
    DETECTING = "detecting"
    REPAIRING = "repairing"
    TRUNCATED = "truncated"
    RESUMING = "resuming"


class CorruptionKind(str, Enum):
    TOOL_RESULT_MISSING = "tool_result_missing"
    THINKING_BLOCK_ORDER = "thinking_block_order"
    THINKING_DISABLED_VIOLATION = "thinking_disabled_violation"
    UNKNOWN = "unknown"


@dataclass
class CorruptionSignal:
    """A 'session error' event reported by the host."""
    session_id: str
    error: str | dict
    model: str | None = None


@dataclass
class RecoverySession:
    session_id: str
    state: RecoveryState = RecoveryState.HEALTHY
    last_known_good_turn_index: int = -1
    pending_resume: bool = False
    kind: CorruptionKind | None = None
    coalesced_signals: int = 0


@dataclass
class RecoveryOutcome:
    session_id: str
    handled: bool
    state: RecoveryState
    kind: CorruptionKind | None = None
    messages: list[dict] = field(default_factory=list)
    resume_message: dict | None = None
    report: RepairReport | None = None
    truncated_from: int | None = None
    coalesced: bool = False
    transitions: list[RecoveryState] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class AccountsExhaustedError(Exception):
    """No credential is eligible for a quota axis right now."""

    def __init__(
        self,
        family: str,
        quota: str,
        reset_at_ms: int | None,
        now_ms: int,
    ) -> None:
        self.family = family
        self.quota_key = quota
        self.reset_at_ms = reset_at_ms
        self.wait_ms = max(0, reset_at_ms - now_ms) if reset_at_ms is not None else None
        if self.wait_ms is not None:
            msg = f"All accounts rate-limited for {quota}; retry in {self.wait_ms / 1000:.1f}s"
        else:
            msg = f"No accounts configured for {quota}"
        super().__init__(msg)


class TokenRefreshError(Exception):
    def __init__(self, message: str, account: str = "", status_code: int | None = None):
        super().__init__(message)
        self.account = account
        self.status_code = status_code


class UnknownAccountError(LookupError):
    """A report named an account that is not in the credential store."""

    def __init__(self, account: str):
        super().__init__(f"Unknown account: {account}")
        self.account = account


class RepairEscalationError(Exception):
    """Tool-pairing repair could not produce a valid sequence."""

    def __init__(self, message: str, orphaned_ids: list[str] | None = None):
        super().__init__(message)
        self.orphaned_ids = orphaned_ids or []


class StorageFormatError(Exception):
    def __init__(self, message: str, reason: StorageError):
        super().__init__(message)
        self.reason = reason


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------

@runtime_checkable
class TokenRefresher(Protocol):
    async def refresh(self, account: AccountMetadata) -> AccessToken: ...


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass
class SignatureCacheConfig:
    enabled: bool = True
    memory_ttl_seconds: int = 3600
    disk_ttl_seconds: int = 172_800
    write_interval_seconds: int = 60
    cleanup_interval_seconds: int = 1800
    path: str | None = None


@dataclass
class AccountsConfig:
    path: str | None = None


@dataclass
class RefreshConfig:
    check_interval_seconds: int = 300
    proactive_window_seconds: int = 1800
    token_url: str = "https://oauth2.googleapis.com/token"
    client_id: str = ""
    client_secret: str = ""
    timeout_seconds: float = 30.0


@dataclass
class RecoveryConfig:
    session_recovery: bool = True
    auto_resume: bool = True
    resume_text: str = "continue"


@dataclass
class ProxyConfig:
    host: str = "127.0.0.1"
    port: int = 5858


@dataclass
class GuardConfig:
    version: str = "1.0"
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
    signature_cache: SignatureCacheConfig = field(default_factory=SignatureCacheConfig)
    accounts: AccountsConfig = field(default_factory=AccountsConfig)
    refresh: RefreshConfig = field(default_factory=RefreshConfig)
    proxy: ProxyConfig = field(default_factory=ProxyConfig)
