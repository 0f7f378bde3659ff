"""HTTP surface for a translating proxy: credentials, signatures, repair, recovery.

The proxy that speaks to the upstream API calls these endpoints around each
outbound request; this process owns the caches and the credential store.
"""

from __future__ import annotations

import json
import logging
import math
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..config import load_config
from ..types import (
    HEADER_STYLES,
    MODEL_FAMILIES,
    AccountsExhaustedError,
    GuardConfig,
    RecoveryOutcome,
    RepairEscalationError,
    TokenRefreshError,
    UnknownAccountError,
)

if TYPE_CHECKING:
    from ..engine import SessionGuard

logger = logging.getLogger(__name__)


async def _json_body(request: Request) -> dict | None:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return body if isinstance(body, dict) else None


def _bad_request(message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=400)


def _check_family(family: str, style: str) -> JSONResponse | None:
    if family not in MODEL_FAMILIES:
        return _bad_request(f"Unknown model family: {family}")
    if style not in HEADER_STYLES:
        return _bad_request(f"Unknown header style: {style}")
    return None


def _outcome_to_dict(outcome: RecoveryOutcome) -> dict:
    report = outcome.report
    return {
        "session_id": outcome.session_id,
        "handled": outcome.handled,
        "state": outcome.state.value,
        "kind": outcome.kind.value if outcome.kind else None,
        "coalesced": outcome.coalesced,
        "transitions": [s.value for s in outcome.transitions],
        "truncated_from": outcome.truncated_from,
        "resume_message": outcome.resume_message,
        "messages": outcome.messages,
        "report": vars(report) if report is not None else None,
    }


def register_guard_routes(app: FastAPI, guard: SessionGuard) -> None:
    """Attach the guard endpoints to *app*."""

    @app.get("/health")
    async def health():
        return JSONResponse({"status": "ok", "accounts": len(guard.rotator.accounts)})

    # -----------------------------------------------------------------------
    # Credentials
    # -----------------------------------------------------------------------

    @app.post("/v1/credentials/{family}")
    async def authorize(family: str, request: Request):
        """Resolve the credential for the next outbound call."""
        body = await _json_body(request) or {}
        style = body.get("header_style", "antigravity")
        invalid = _check_family(family, style)
        if invalid is not None:
            return invalid

        try:
            cred = await guard.authorize(family, style)
        except AccountsExhaustedError as e:
            payload = {
                "error": str(e),
                "quota_key": e.quota_key,
                "retry_after_ms": e.wait_ms,
                "reset_at_ms": e.reset_at_ms,
            }
            headers = {}
            if e.wait_ms is not None:
                headers["Retry-After"] = str(max(1, math.ceil(e.wait_ms / 1000)))
            return JSONResponse(payload, status_code=429, headers=headers)
        except TokenRefreshError as e:
            logger.warning("Credential request failed: %s", e)
            return JSONResponse(
                {"error": str(e), "account": e.account}, status_code=502,
            )

        return JSONResponse({
            "account": cred.account.identity,
            "email": cred.account.email,
            "quota_key": cred.quota_key,
            "access_token": cred.access_token,
            "headers": cred.headers,
            "switch_reason": cred.account.last_switch_reason,
        })

    @app.post("/v1/credentials/{family}/rate-limit")
    async def rate_limit(family: str, request: Request):
        """Record an upstream 429 for one account on one quota axis."""
        body = await _json_body(request)
        if body is None or not body.get("account"):
            return _bad_request("Missing 'account' field")
        style = body.get("header_style", "antigravity")
        invalid = _check_family(family, style)
        if invalid is not None:
            return invalid
        try:
            retry_after_ms = int(body.get("retry_after_ms", 60_000))
        except (TypeError, ValueError):
            return _bad_request("retry_after_ms must be an integer")

        try:
            nxt = await guard.report_rate_limit(body["account"], family, style, retry_after_ms)
        except UnknownAccountError as e:
            return JSONResponse({"error": str(e), "account": e.account}, status_code=404)
        return JSONResponse({
            "switched_to": nxt.identity if nxt is not None else None,
            "exhausted": nxt is None,
            "next_reset_at_ms": guard.rotator.next_reset_at(family, style),
        })

    # -----------------------------------------------------------------------
    # Signatures
    # -----------------------------------------------------------------------

    @app.post("/v1/signatures")
    async def remember_signature(request: Request):
        body = await _json_body(request)
        if body is None:
            return _bad_request("Expected a JSON object")
        session_id = body.get("session_id")
        model = body.get("model")
        signature = body.get("signature")
        if not session_id or not model or not signature:
            return _bad_request("session_id, model and signature are required")
        guard.remember_signature(
            session_id,
            model,
            signature,
            thinking_text=body.get("thinking_text"),
            tool_ids=body.get("tool_ids"),
        )
        return JSONResponse({"stored": guard.cache.enabled})

    @app.get("/v1/signatures/{session_id}/{model}")
    async def verify_signature(session_id: str, model: str, signature: str = ""):
        """Validity verdict for *signature*, or the cached value when none is given."""
        if signature:
            return JSONResponse({"valid": guard.verify_signature(session_id, model, signature)})
        thinking = guard.recall_thinking(session_id, model)
        if thinking is not None:
            return JSONResponse({
                "signature": thinking.signature,
                "thinking_text": thinking.text,
                "tool_ids": thinking.tool_ids,
            })
        cached = guard.cache.retrieve(guard.cache.make_key(session_id, model))
        if cached is None:
            return JSONResponse({"error": "not cached"}, status_code=404)
        return JSONResponse({"signature": cached})

    # -----------------------------------------------------------------------
    # Messages & recovery
    # -----------------------------------------------------------------------

    @app.post("/v1/messages/repair")
    async def repair(request: Request):
        body = await _json_body(request)
        if body is None or not isinstance(body.get("messages"), list):
            return _bad_request("Expected {'messages': [...]}")
        try:
            messages, report = guard.repair_messages(body["messages"])
        except RepairEscalationError as e:
            return JSONResponse(
                {"error": str(e), "orphaned_ids": e.orphaned_ids}, status_code=422,
            )
        return JSONResponse({"messages": messages, "report": vars(report)})

    @app.post("/v1/sessions/{session_id}/error")
    async def session_error(session_id: str, request: Request):
        body = await _json_body(request)
        if body is None or "error" not in body:
            return _bad_request("Missing 'error' field")
        messages = body.get("messages") or []
        if not isinstance(messages, list):
            return _bad_request("'messages' must be a list")
        outcome = await guard.handle_session_error(
            session_id, body["error"], messages, model=body.get("model"),
        )
        return JSONResponse(_outcome_to_dict(outcome))

    @app.post("/v1/sessions/{session_id}/complete")
    async def session_complete(session_id: str):
        state = guard.complete_turn(session_id)
        return JSONResponse({"session_id": session_id, "state": state.value})

    @app.get("/v1/status")
    async def status():
        return JSONResponse(guard.status())


def create_app(
    config: GuardConfig | None = None,
    config_path: str | None = None,
    *,
    guard: SessionGuard | None = None,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        config: Parsed configuration (takes precedence over *config_path*).
        config_path: Path to an antigravity-guard config file.
        guard: Reuse an existing guard (tests, embedding).
    """
    if guard is None:
        from ..engine import SessionGuard

        guard = SessionGuard(config or load_config(config_path=config_path))

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        await guard.start()
        yield
        await guard.shutdown()

    app = FastAPI(title="antigravity-guard", lifespan=lifespan)
    app.state.guard = guard
    register_guard_routes(app, guard)
    return app
