"""OAuth refresh-token exchange and outbound header material."""

from __future__ import annotations

import logging
import time
from typing import Callable

import httpx

from ..types import AccessToken, AccountMetadata, RefreshConfig, TokenRefreshError

logger = logging.getLogger(__name__)

DEFAULT_EXPIRES_IN = 3600

STYLE_HEADERS: dict[str, dict[str, str]] = {
    "antigravity": {
        "User-Agent": "antigravity/1.11.5 windows/amd64",
        "X-Goog-Api-Client": "google-cloud-sdk vscode_cloudshelleditor/0.1",
    },
    "gemini-cli": {
        "User-Agent": "google-api-nodejs-client/9.15.1",
        "X-Goog-Api-Client": "gl-node/22.17.0",
    },
}


def build_auth_headers(
    account: AccountMetadata,
    access_token: str,
    header_style: str = "antigravity",
) -> dict[str, str]:
    headers = {"Authorization": f"Bearer {access_token}"}
    headers.update(STYLE_HEADERS.get(header_style, {}))
    project = account.managed_project_id or account.project_id
    if project:
        headers["x-goog-user-project"] = project
    return headers


class OAuthTokenRefresher:
    """Exchange an account's refresh token for a fresh access token."""

    def __init__(
        self,
        config: RefreshConfig,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.config = config
        self._client = client
        self._clock = clock or time.time

    async def refresh(self, account: AccountMetadata) -> AccessToken:
        data = {
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
            "refresh_token": account.refresh_token,
            "grant_type": "refresh_token",
        }
        try:
            if self._client is not None:
                resp = await self._client.post(self.config.token_url, data=data)
            else:
                async with httpx.AsyncClient(timeout=self.config.timeout_seconds) as client:
                    resp = await client.post(self.config.token_url, data=data)
        except httpx.HTTPError as e:
            raise TokenRefreshError(
                f"Token refresh request failed: {e}", account=account.identity,
            ) from e

        if resp.status_code != 200:
            raise TokenRefreshError(
                f"Token refresh returned {resp.status_code}: {resp.text[:200]}",
                account=account.identity,
                status_code=resp.status_code,
            )

        try:
            tokens = resp.json()
        except ValueError as e:
            raise TokenRefreshError(
                "Token refresh returned invalid JSON", account=account.identity,
            ) from e
        if not tokens.get("access_token"):
            raise TokenRefreshError(
                "Token refresh response has no access_token", account=account.identity,
            )

        # Google may rotate the refresh token; keep the record current
        if tokens.get("refresh_token"):
            account.refresh_token = tokens["refresh_token"]

        expires_in = int(tokens.get("expires_in", DEFAULT_EXPIRES_IN))
        return AccessToken(
            access_token=tokens["access_token"],
            expires_at=int((self._clock() + expires_in) * 1000),
        )
