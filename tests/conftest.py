"""Shared fixtures for antigravity-guard tests."""

from __future__ import annotations

import asyncio

import pytest

from antigravity_guard.types import (
    AccessToken,
    AccountMetadata,
    AccountStorage,
    RefreshConfig,
    SignatureCacheConfig,
)


class FakeClock:
    """Injectable seconds clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    @property
    def ms(self) -> int:
        return int(self.now * 1000)


class FakeRefresher:
    """TokenRefresher double that counts calls and can be made to fail or block."""

    def __init__(self, clock: FakeClock, lifetime_s: int = 3600) -> None:
        self.clock = clock
        self.lifetime_s = lifetime_s
        self.calls: list[str] = []
        self.fail_with: Exception | None = None
        self.gate: asyncio.Event | None = None
        self.active = 0
        self.max_active = 0

    async def refresh(self, account: AccountMetadata) -> AccessToken:
        self.calls.append(account.identity)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0)
            if self.fail_with is not None:
                raise self.fail_with
            return AccessToken(
                access_token=f"tok-{account.identity}-{len(self.calls)}",
                expires_at=int((self.clock() + self.lifetime_s) * 1000),
            )
        finally:
            self.active -= 1


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def refresher(clock) -> FakeRefresher:
    return FakeRefresher(clock)


@pytest.fixture
def cache_config() -> SignatureCacheConfig:
    return SignatureCacheConfig(
        enabled=True,
        memory_ttl_seconds=60,
        disk_ttl_seconds=600,
        write_interval_seconds=1,
        cleanup_interval_seconds=1,
    )


@pytest.fixture
def refresh_config() -> RefreshConfig:
    return RefreshConfig(check_interval_seconds=300, proactive_window_seconds=1800)


@pytest.fixture
def cache_path(tmp_path):
    return tmp_path / "antigravity-signature-cache.json"


@pytest.fixture
def accounts_path(tmp_path):
    return tmp_path / "antigravity-accounts.json"


@pytest.fixture
def two_accounts() -> AccountStorage:
    return AccountStorage(accounts=[
        AccountMetadata(refresh_token="rt-a", added_at=1, last_used=0, email="a@example.com"),
        AccountMetadata(refresh_token="rt-b", added_at=2, last_used=0, email="b@example.com"),
    ])


@pytest.fixture(autouse=True)
def _isolated_config_dir(tmp_path, monkeypatch):
    """Keep default store paths inside the test's tmp dir."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    monkeypatch.setenv("APPDATA", str(tmp_path / "appdata"))
