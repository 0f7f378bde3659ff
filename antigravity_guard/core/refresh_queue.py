"""RefreshQueue: proactive, serialized access-token renewal.

A periodic check enqueues every account whose access token expires within
the proactive window.  One worker drains the queue, so at most one renewal
is in flight; a second request for an account that is already queued or
renewing gets the same future.  Requests keep using the last valid token
while its renewal runs.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Callable

from ..storage.helpers import now_ms
from ..types import AccessToken, AccountMetadata, RefreshConfig, TokenRefreshError, TokenRefresher
from .periodic import PeriodicTask
from .rotator import AccountRotator

logger = logging.getLogger(__name__)


def _consume_exception(fut: asyncio.Future) -> None:
    # Proactive renewals often have no awaiter; mark failures as retrieved
    if not fut.cancelled():
        fut.exception()


class RefreshQueue:
    def __init__(
        self,
        rotator: AccountRotator,
        refresher: TokenRefresher,
        config: RefreshConfig | None = None,
        clock: Callable[[], float] | None = None,
        metrics=None,
    ) -> None:
        self.rotator = rotator
        self.refresher = refresher
        self.config = config or RefreshConfig()
        self.metrics = metrics
        self._clock = clock
        self._tokens: dict[str, AccessToken] = {}
        self._pending: dict[str, asyncio.Future] = {}
        self._queue: asyncio.Queue[AccountMetadata] | None = None
        self._worker: asyncio.Task | None = None
        self._checker: PeriodicTask | None = None
        self.failures: dict[str, int] = {}

    @property
    def window_ms(self) -> int:
        return self.config.proactive_window_seconds * 1000

    @property
    def in_flight(self) -> int:
        return len(self._pending)

    def cached_token(self, account: AccountMetadata) -> AccessToken | None:
        return self._tokens.get(account.identity)

    def set_token(self, account: AccountMetadata, token: AccessToken) -> None:
        self._tokens[account.identity] = token

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> PeriodicTask:
        """Run one check now, then every ``check_interval_seconds``."""
        self._ensure_worker()
        self.check()
        if self._checker is None:
            self._checker = PeriodicTask(
                "token-refresh-check",
                self.config.check_interval_seconds,
                self.check,
            ).start()
        return self._checker

    async def stop(self) -> None:
        if self._checker is not None:
            await self._checker.stop()
            self._checker = None
        worker, self._worker = self._worker, None
        if worker is not None and not worker.done():
            worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await worker
        for fut in self._pending.values():
            if not fut.done():
                fut.cancel()
        self._pending.clear()
        self._queue = None

    def _ensure_worker(self) -> None:
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(
                self._drain(), name="token-refresh-worker",
            )

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def needs_refresh(self, account: AccountMetadata, now: int | None = None) -> bool:
        token = self._tokens.get(account.identity)
        if token is None:
            return True
        return token.expires_within(now if now is not None else now_ms(self._clock), self.window_ms)

    def check(self) -> int:
        """Enqueue renewals for tokens inside the proactive window."""
        now = now_ms(self._clock)
        enqueued = 0
        for account in list(self.rotator.accounts):
            if account.identity in self._pending:
                continue
            if self.needs_refresh(account, now):
                self.request_refresh(account)
                enqueued += 1
        if enqueued:
            logger.debug("Token refresh check: %d renewal(s) queued", enqueued)
        return enqueued

    def request_refresh(self, account: AccountMetadata) -> asyncio.Future:
        """Queue a renewal, or join the one already queued/in flight."""
        key = account.identity
        existing = self._pending.get(key)
        if existing is not None and not existing.done():
            return existing

        self._ensure_worker()
        fut = asyncio.get_running_loop().create_future()
        fut.add_done_callback(_consume_exception)
        self._pending[key] = fut
        self._queue.put_nowait(account)
        return fut

    async def _drain(self) -> None:
        queue = self._queue
        while True:
            account = await queue.get()
            key = account.identity
            fut = self._pending.get(key)
            previous_refresh_token = account.refresh_token
            try:
                token = await self.refresher.refresh(account)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.failures[key] = self.failures.get(key, 0) + 1
                logger.warning(
                    "Token refresh failed for %s (attempt %d), retrying next interval: %s",
                    key, self.failures[key], e,
                )
                self._record("refresh_failed", key, error=str(e))
                if fut is not None and not fut.done():
                    fut.set_exception(
                        e if isinstance(e, TokenRefreshError)
                        else TokenRefreshError(str(e), account=key)
                    )
            else:
                self._tokens[key] = token
                self.failures.pop(key, None)
                logger.info("Refreshed access token for %s", key)
                self._record("refresh", key)
                if account.refresh_token != previous_refresh_token:
                    logger.info("Refresh token rotated for %s; saving account storage", key)
                    await self.rotator.save()
                if fut is not None and not fut.done():
                    fut.set_result(token)
            finally:
                if self._pending.get(key) is fut:
                    self._pending.pop(key, None)
                queue.task_done()

    # ------------------------------------------------------------------
    # Request path
    # ------------------------------------------------------------------

    async def get_token(self, account: AccountMetadata) -> AccessToken:
        """Return a usable token, waiting on renewal only if it has expired."""
        token = self._tokens.get(account.identity)
        if token is not None and not token.expires_within(now_ms(self._clock)):
            return token
        fut = self.request_refresh(account)
        # Shield so a cancelled request does not cancel the shared renewal
        return await asyncio.shield(fut)

    def _record(self, event_type: str, account: str, **extra) -> None:
        if self.metrics is not None:
            self.metrics.record({"type": event_type, "account": account, **extra})
