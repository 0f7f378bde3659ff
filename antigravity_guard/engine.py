"""SessionGuard: main orchestrator wiring all components together."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable

from .cache.signature_cache import SignatureCache
from .config import load_config
from .core.auth import OAuthTokenRefresher, build_auth_headers
from .core.recovery import SessionRecovery
from .core.refresh_queue import RefreshQueue
from .core.rotator import AccountRotator
from .core.tool_pairing import repair_tool_pairing
from .proxy.metrics import GuardMetrics
from .storage.accounts import default_accounts_path
from .types import (
    AccountMetadata,
    AccountsExhaustedError,
    AuthorizedCredential,
    CorruptionSignal,
    GuardConfig,
    RecoveryOutcome,
    RecoveryState,
    RepairReport,
    ThinkingCacheData,
    TokenRefresher,
    UnknownAccountError,
    quota_key,
)

logger = logging.getLogger(__name__)


class SessionGuard:
    """One instance of each consistency component, shared by a proxy process.

    Usage:
        guard = SessionGuard(load_config())
        await guard.start()
        cred = await guard.authorize("claude")
        ...
        await guard.shutdown()
    """

    def __init__(
        self,
        config: GuardConfig | None = None,
        config_path: str | None = None,
        clock: Callable[[], float] | None = None,
        refresher: TokenRefresher | None = None,
        cache_path: str | Path | None = None,
        accounts_path: str | Path | None = None,
        on_resume: Callable | None = None,
    ) -> None:
        self.config = config or load_config(config_path=config_path)
        self._clock = clock
        self.metrics = GuardMetrics()

        self.cache = SignatureCache(
            self.config.signature_cache, path=cache_path, clock=clock,
        )

        if accounts_path is None:
            accounts_path = self.config.accounts.path
        path = Path(accounts_path).expanduser() if accounts_path else default_accounts_path()
        self.rotator = AccountRotator.from_disk(path, clock=clock)

        self.refresher = refresher or OAuthTokenRefresher(self.config.refresh, clock=clock)
        self.refresh_queue = RefreshQueue(
            self.rotator,
            self.refresher,
            self.config.refresh,
            clock=clock,
            metrics=self.metrics,
        )
        self.recovery = SessionRecovery(
            self.config.recovery,
            metrics=self.metrics,
            on_resume=on_resume,
        )
        self._started = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._started:
            return
        self.cache.start()
        if self.rotator.accounts:
            self.refresh_queue.start()
        self._started = True
        logger.info(
            "Session guard started: %d account(s), signature cache %s",
            len(self.rotator.accounts),
            "enabled" if self.cache.enabled else "disabled",
        )

    async def shutdown(self) -> None:
        await self.refresh_queue.stop()
        await self.cache.shutdown()
        await self.rotator.save()
        self._started = False

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    async def authorize(
        self, family: str, header_style: str = "antigravity",
    ) -> AuthorizedCredential:
        """Resolve the credential and header material for the next outbound call.

        Raises AccountsExhaustedError when every account is limited on this
        quota axis, and TokenRefreshError only when the selected account has
        no unexpired token and renewal fails.
        """
        try:
            account = self.rotator.select(family, header_style)
        except AccountsExhaustedError as e:
            self.metrics.record({
                "type": "exhausted",
                "family": family,
                "quota_key": e.quota_key,
                "wait_ms": e.wait_ms or 0,
            })
            raise
        token = await self.refresh_queue.get_token(account)
        await self.rotator.save()
        return AuthorizedCredential(
            account=account,
            access_token=token.access_token,
            headers=build_auth_headers(account, token.access_token, header_style),
            quota_key=quota_key(family, header_style),
        )

    async def report_rate_limit(
        self,
        account: AccountMetadata | str,
        family: str,
        header_style: str = "antigravity",
        retry_after_ms: int = 60_000,
    ) -> AccountMetadata | None:
        """Record an upstream 429 and return the account that takes over.

        Returns None when every account is limited on the quota axis.  Raises
        UnknownAccountError when *account* is not in the store.
        """
        if not self.rotator.has_account(account):
            raise UnknownAccountError(account if isinstance(account, str) else account.identity)
        nxt = self.rotator.mark_rate_limited(account, family, header_style, retry_after_ms)
        self.metrics.record({
            "type": "rate_limit",
            "account": account if isinstance(account, str) else account.identity,
            "quota_key": quota_key(family, header_style),
            "retry_after_ms": retry_after_ms,
            "switched_to": nxt.identity if nxt is not None else None,
        })
        await self.rotator.save()
        return nxt

    # ------------------------------------------------------------------
    # Signatures
    # ------------------------------------------------------------------

    def remember_signature(
        self,
        session_id: str,
        model: str,
        signature: str,
        thinking_text: str | None = None,
        tool_ids: list[str] | None = None,
    ) -> None:
        key = SignatureCache.make_key(session_id, model)
        if thinking_text:
            self.cache.store_thinking(key, thinking_text, signature, tool_ids)
        else:
            self.cache.store(key, signature)

    def verify_signature(self, session_id: str, model: str, signature: str) -> bool:
        return self.cache.is_signature_valid(SignatureCache.make_key(session_id, model), signature)

    def recall_thinking(self, session_id: str, model: str) -> ThinkingCacheData | None:
        return self.cache.retrieve_thinking(SignatureCache.make_key(session_id, model))

    # ------------------------------------------------------------------
    # Messages & recovery
    # ------------------------------------------------------------------

    def repair_messages(self, messages: list[dict]) -> tuple[list[dict], RepairReport]:
        repaired, report = repair_tool_pairing(messages)
        if report.changed:
            self.metrics.record({
                "type": "repair",
                "placeholders": report.placeholders,
                "removed": report.removed,
                "unknown_tagged": report.unknown_tagged,
            })
        return repaired, report

    async def handle_session_error(
        self,
        session_id: str,
        error: str | dict,
        messages: list[dict],
        model: str | None = None,
    ) -> RecoveryOutcome:
        signal = CorruptionSignal(session_id=session_id, error=error, model=model)
        return await self.recovery.handle_session_error(signal, messages)

    def complete_turn(self, session_id: str) -> RecoveryState:
        return self.recovery.complete_turn(session_id)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def account_summary(self) -> list[dict]:
        storage = self.rotator.storage
        active = set(storage.active_index_by_family.values())
        return [
            {
                "identity": acc.identity,
                "email": acc.email,
                "last_used": acc.last_used,
                "last_switch_reason": acc.last_switch_reason,
                "rate_limit_reset_times": dict(acc.rate_limit_reset_times),
                "active": idx in active,
            }
            for idx, acc in enumerate(storage.accounts)
        ]

    def status(self) -> dict:
        stats = self.cache.stats()
        return {
            "metrics": self.metrics.snapshot(),
            "cache": {
                "enabled": stats.disk_enabled,
                "memory_entries": stats.memory_entries,
                "memory_hits": stats.memory_hits,
                "disk_hits": stats.disk_hits,
                "misses": stats.misses,
                "writes": stats.writes,
                "dirty": stats.dirty,
            },
            "accounts": self.account_summary(),
            "active_index_by_family": dict(self.rotator.storage.active_index_by_family),
            "refresh_in_flight": self.refresh_queue.in_flight,
            "sessions": {
                s.session_id: s.state.value for s in self.recovery.sessions()
            },
        }
