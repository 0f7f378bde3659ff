"""AccountRotator: per-quota rate-limit tracking and least-recently-used selection."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Callable

from ..storage.accounts import default_accounts_path, load_accounts, normalize_indices
from ..storage.helpers import atomic_write_json, now_ms
from ..storage.migrations import storage_to_dict
from ..types import (
    AccountMetadata,
    AccountsExhaustedError,
    AccountStorage,
    quota_key,
)

logger = logging.getLogger(__name__)


class AccountRotator:
    """Choose which credential serves the next request for a model family.

    Each quota key (``claude``, ``gemini-antigravity``, ``gemini-cli``) is an
    independent axis: an account can be limited on one and healthy on the
    others.  Rotation is not serialized against concurrent rate-limit
    reports; the last completed decision is what ``active_index_by_family``
    shows.
    """

    def __init__(
        self,
        storage: AccountStorage | None = None,
        path: str | Path | None = None,
        clock: Callable[[], float] | None = None,
        persist: bool = True,
    ) -> None:
        self.storage = normalize_indices(storage or AccountStorage())
        self.path = Path(path) if path is not None else None
        self.persist = persist and self.path is not None
        self._clock = clock

    @classmethod
    def from_disk(
        cls,
        path: str | Path | None = None,
        clock: Callable[[], float] | None = None,
    ) -> "AccountRotator":
        path = Path(path) if path is not None else default_accounts_path()
        storage = load_accounts(path, now_ms=now_ms(clock))
        return cls(storage=storage, path=path, clock=clock)

    @property
    def accounts(self) -> list[AccountMetadata]:
        return self.storage.accounts

    def _now(self) -> int:
        return now_ms(self._clock)

    # ------------------------------------------------------------------
    # Eligibility
    # ------------------------------------------------------------------

    def is_eligible(
        self,
        account: AccountMetadata,
        family: str,
        header_style: str = "antigravity",
        now: int | None = None,
    ) -> bool:
        key = quota_key(family, header_style)
        reset = account.rate_limit_reset_times.get(key)
        if reset is None:
            return True
        if reset <= (now if now is not None else self._now()):
            # Past-dated limit: drop it so the record stays tidy
            del account.rate_limit_reset_times[key]
            return True
        return False

    def eligible_accounts(
        self, family: str, header_style: str = "antigravity",
    ) -> list[AccountMetadata]:
        now = self._now()
        return [a for a in self.accounts if self.is_eligible(a, family, header_style, now)]

    def next_reset_at(self, family: str, header_style: str = "antigravity") -> int | None:
        """Earliest future reset instant for this quota axis, if any."""
        key = quota_key(family, header_style)
        now = self._now()
        future = []
        for acc in self.accounts:
            reset = acc.rate_limit_reset_times.get(key)
            if reset is not None and reset > now:
                future.append(reset)
        return min(future) if future else None

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def select(self, family: str, header_style: str = "antigravity") -> AccountMetadata:
        """Pick the least recently used eligible account.

        Raises AccountsExhaustedError (with the nearest reset instant) when
        no account is eligible.
        """
        now = self._now()
        candidates = [
            (acc.last_used, idx)
            for idx, acc in enumerate(self.accounts)
            if self.is_eligible(acc, family, header_style, now)
        ]
        if not candidates:
            raise AccountsExhaustedError(
                family,
                quota_key(family, header_style),
                self.next_reset_at(family, header_style),
                now,
            )

        _, idx = min(candidates)
        account = self.accounts[idx]
        previous = self.storage.active_index_by_family.get(family)
        if previous is None:
            account.last_switch_reason = "initial"
        elif previous != idx:
            account.last_switch_reason = "rotation"
            logger.info(
                "Rotated %s account: %s -> %s",
                family, self._label(previous), account.identity,
            )

        account.last_used = now
        self.storage.active_index_by_family[family] = idx
        self.storage.active_index = idx
        return account

    def active_account(self, family: str) -> AccountMetadata | None:
        idx = self.storage.active_index_by_family.get(family)
        if idx is None or not (0 <= idx < len(self.accounts)):
            return None
        return self.accounts[idx]

    def mark_rate_limited(
        self,
        account: AccountMetadata | str,
        family: str,
        header_style: str = "antigravity",
        retry_after_ms: int = 60_000,
    ) -> AccountMetadata | None:
        """Record a rate limit on one quota axis and advance to the next candidate.

        Returns the newly active account, or None when every account is
        limited on this axis.
        """
        idx = self._index_of(account)
        if idx is None:
            logger.warning("Rate limit reported for unknown account %s", account)
            return None

        now = self._now()
        key = quota_key(family, header_style)
        limited = self.accounts[idx]
        reset_at = now + max(0, int(retry_after_ms))
        existing = limited.rate_limit_reset_times.get(key, 0)
        limited.rate_limit_reset_times[key] = max(existing, reset_at)
        logger.info(
            "Account %s rate-limited on %s for %.1fs",
            limited.identity, key, (limited.rate_limit_reset_times[key] - now) / 1000,
        )

        n = len(self.accounts)
        for step in range(1, n + 1):
            j = (idx + step) % n
            candidate = self.accounts[j]
            if j != idx and self.is_eligible(candidate, family, header_style, now):
                self.storage.active_index_by_family[family] = j
                self.storage.active_index = j
                candidate.last_switch_reason = "rate-limit"
                logger.info("Switched %s to account %s (rate-limit)", family, candidate.identity)
                return candidate

        logger.warning("All accounts rate-limited on %s", key)
        return None

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def add_account(
        self,
        refresh_token: str,
        email: str | None = None,
        project_id: str | None = None,
        managed_project_id: str | None = None,
    ) -> AccountMetadata:
        now = self._now()
        if email is not None:
            for acc in self.accounts:
                if acc.email == email:
                    acc.refresh_token = refresh_token
                    if project_id is not None:
                        acc.project_id = project_id
                    return acc
        account = AccountMetadata(
            refresh_token=refresh_token,
            added_at=now,
            last_used=0,
            email=email,
            project_id=project_id,
            managed_project_id=managed_project_id,
        )
        self.accounts.append(account)
        return account

    def remove_account(self, account: AccountMetadata | str) -> bool:
        idx = self._index_of(account)
        if idx is None:
            return False
        del self.accounts[idx]
        # Indices after the removed slot shift down by one
        by_family = {}
        for family, active in self.storage.active_index_by_family.items():
            by_family[family] = active - 1 if active > idx else active
        self.storage.active_index_by_family = by_family
        if self.storage.active_index > idx:
            self.storage.active_index -= 1
        normalize_indices(self.storage)
        return True

    def get(self, identity: str) -> AccountMetadata | None:
        idx = self._index_of(identity)
        return self.accounts[idx] if idx is not None else None

    def has_account(self, account: AccountMetadata | str) -> bool:
        return self._index_of(account) is not None

    def _index_of(self, account: AccountMetadata | str) -> int | None:
        for idx, acc in enumerate(self.accounts):
            if isinstance(account, str):
                if account in (acc.email, acc.identity, acc.refresh_token):
                    return idx
            elif acc is account:
                return idx
        return None

    def _label(self, idx: int) -> str:
        if 0 <= idx < len(self.accounts):
            return self.accounts[idx].identity
        return f"#{idx}"

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def save(self) -> bool:
        """Persist the store. Failures are logged, never raised.

        The payload is built on the event loop so rotation decisions made
        while the file is being written cannot interleave with serialization.
        """
        if not self.persist:
            return False
        payload = storage_to_dict(self.storage)
        path = self.path or default_accounts_path()
        try:
            await asyncio.to_thread(atomic_write_json, path, payload)
            return True
        except OSError as e:
            logger.warning("Failed to save account storage: %s", e)
            return False
