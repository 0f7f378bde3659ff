"""antigravity-guard: session consistency and recovery for multi-account LLM proxies."""

from .config import load_config
from .engine import SessionGuard
from .types import (
    AccountsExhaustedError,
    AuthorizedCredential,
    CorruptionKind,
    CorruptionSignal,
    GuardConfig,
    RecoveryOutcome,
    RecoveryState,
    RepairReport,
)

__version__ = "0.1.0"

__all__ = [
    "SessionGuard",
    "load_config",
    "AccountsExhaustedError",
    "AuthorizedCredential",
    "CorruptionKind",
    "CorruptionSignal",
    "GuardConfig",
    "RecoveryOutcome",
    "RecoveryState",
    "RepairReport",
]
