"""SessionRecovery: per-session crash-recovery state machine.

States advance HEALTHY -> DETECTING -> REPAIRING -> RESUMING -> HEALTHY.
Corruption that cannot be repaired in place (thinking-block order, unknown
errors, or a repair that escalates) takes the TRUNCATED branch before
RESUMING.  Signals that
arrive while a session is already recovering are coalesced into the
in-progress attempt.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from typing import Callable

from ..types import (
    CorruptionKind,
    CorruptionSignal,
    RecoveryConfig,
    RecoveryOutcome,
    RecoverySession,
    RecoveryState,
    RepairEscalationError,
    RepairReport,
)
from .tool_pairing import (
    cancellation_result,
    has_tool_use,
    repair_tool_pairing,
    strip_thinking_blocks,
    turn_start_index,
)

logger = logging.getLogger(__name__)

TOOL_COMPLETED_TEXT = "[Tool execution completed.]"
THINKING_REMOVED_TEXT = "[Thinking removed]"
STUCK_SIGNAL_WARNING = 3


def _error_text(error: str | dict) -> str:
    if isinstance(error, dict):
        try:
            return json.dumps(error).lower()
        except (TypeError, ValueError):
            return str(error).lower()
    return str(error or "").lower()


def classify_error(error: str | dict) -> CorruptionKind:
    """Map a provider error onto the corruption kind it indicates."""
    text = _error_text(error)
    if "tool_use" in text and "tool_result" in text:
        return CorruptionKind.TOOL_RESULT_MISSING
    if "thinking is disabled" in text and "cannot contain" in text:
        return CorruptionKind.THINKING_DISABLED_VIOLATION
    if "thinking" in text and (
        "first block" in text
        or "must start with" in text
        or "preceeding" in text
        or "preceding" in text
        or ("expected" in text and "found" in text)
    ):
        return CorruptionKind.THINKING_BLOCK_ORDER
    return CorruptionKind.UNKNOWN


def _close_dangling_tool_uses(messages: list[dict]) -> list[dict]:
    """Answer tool_use blocks left without a following result message."""
    out: list[dict] = []
    for idx, msg in enumerate(messages):
        out.append(msg)
        if not has_tool_use(msg):
            continue
        nxt = messages[idx + 1] if idx + 1 < len(messages) else None
        if nxt is not None and nxt.get("role") == "user":
            continue
        out.append({
            "role": "user",
            "content": [
                cancellation_result(b.get("id") or "")
                for b in msg["content"]
                if isinstance(b, dict) and b.get("type") == "tool_use"
            ],
        })
    return out


def truncate_to_last_good_turn(messages: list[dict]) -> tuple[list[dict], int]:
    """Neutralise the latest turn so the history ends in a consistent state.

    The prefix before the turn is kept verbatim.  Within the turn thinking
    blocks are dropped, unanswered tool calls get cancellation results, and
    a trailing tool-result message is closed with a short assistant note.
    Returns the new list and the index the turn started at.
    """
    start = turn_start_index(messages)
    prefix = [dict(m) for m in messages[:start]]
    turn = strip_thinking_blocks(
        [dict(m) for m in messages[start:]], placeholder=THINKING_REMOVED_TEXT,
    )
    turn = _close_dangling_tool_uses(turn)
    result = prefix + turn
    if result and result[-1].get("role") == "user" and start < len(result):
        last = result[-1]
        if isinstance(last.get("content"), list) and any(
            isinstance(b, dict) and b.get("type") == "tool_result" for b in last["content"]
        ):
            result.append({
                "role": "assistant",
                "content": [{"type": "text", "text": TOOL_COMPLETED_TEXT}],
            })
    return result, start


def _append_user_turn(messages: list[dict], turn: dict) -> list[dict]:
    """Append a user turn, folding it into a trailing user message."""
    if messages and messages[-1].get("role") == "user":
        last = messages[-1]
        content = last.get("content")
        if not isinstance(content, list):
            content = [{"type": "text", "text": content}] if content else []
        return messages[:-1] + [{**last, "content": content + list(turn["content"])}]
    return messages + [turn]


class SessionRecovery:
    """Drive one recovery attempt per session at a time."""

    def __init__(
        self,
        config: RecoveryConfig | None = None,
        metrics=None,
        on_resume: Callable | None = None,
        repair: Callable[[list[dict]], tuple[list[dict], RepairReport]] = repair_tool_pairing,
    ) -> None:
        self.config = config or RecoveryConfig()
        self.metrics = metrics
        self.on_resume = on_resume
        self._repair = repair
        self._sessions: dict[str, RecoverySession] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def session(self, session_id: str) -> RecoverySession:
        sess = self._sessions.get(session_id)
        if sess is None:
            sess = RecoverySession(session_id=session_id)
            self._sessions[session_id] = sess
        return sess

    def state(self, session_id: str) -> RecoveryState:
        sess = self._sessions.get(session_id)
        return sess.state if sess is not None else RecoveryState.HEALTHY

    def sessions(self) -> list[RecoverySession]:
        return list(self._sessions.values())

    def reset(self, session_id: str) -> None:
        """Drop all recovery state for *session_id*, returning it to HEALTHY.

        This is the way out for a session left in RESUMING when the host never
        reports completion of the resumed turn.
        """
        self._sessions.pop(session_id, None)
        self._locks.pop(session_id, None)

    def _set_state(self, sess: RecoverySession, state: RecoveryState, trail: list) -> None:
        logger.debug("Session %s: %s -> %s", sess.session_id, sess.state.value, state.value)
        sess.state = state
        trail.append(state)

    async def handle_session_error(
        self,
        signal: CorruptionSignal,
        messages: list[dict],
    ) -> RecoveryOutcome:
        """Run one recovery attempt for *signal* against the session history."""
        if not self.config.session_recovery:
            return RecoveryOutcome(
                session_id=signal.session_id,
                handled=False,
                state=RecoveryState.HEALTHY,
                messages=list(messages),
            )

        sess = self.session(signal.session_id)
        if sess.state != RecoveryState.HEALTHY:
            sess.coalesced_signals += 1
            level = logging.INFO
            if sess.coalesced_signals >= STUCK_SIGNAL_WARNING:
                level = logging.WARNING
            logger.log(
                level,
                "Session %s already recovering (%s); coalesced signal #%d."
                " Call complete_turn() or reset() if the resumed turn never finished",
                sess.session_id, sess.state.value, sess.coalesced_signals,
            )
            return RecoveryOutcome(
                session_id=sess.session_id,
                handled=True,
                state=sess.state,
                kind=sess.kind,
                messages=list(messages),
                coalesced=True,
            )

        lock = self._locks.setdefault(sess.session_id, asyncio.Lock())
        async with lock:
            return await self._recover(sess, signal, messages)

    async def _recover(
        self,
        sess: RecoverySession,
        signal: CorruptionSignal,
        messages: list[dict],
    ) -> RecoveryOutcome:
        trail: list[RecoveryState] = []
        kind = classify_error(signal.error)
        sess.kind = kind
        sess.coalesced_signals = 0
        self._set_state(sess, RecoveryState.DETECTING, trail)
        logger.warning(
            "Session %s: corruption detected (%s)%s",
            sess.session_id, kind.value, f" on {signal.model}" if signal.model else "",
        )

        outcome = RecoveryOutcome(
            session_id=sess.session_id, handled=True, state=sess.state, kind=kind,
        )
        current = list(messages)
        truncate = kind in (CorruptionKind.THINKING_BLOCK_ORDER, CorruptionKind.UNKNOWN)

        if kind == CorruptionKind.TOOL_RESULT_MISSING:
            self._set_state(sess, RecoveryState.REPAIRING, trail)
            try:
                current, outcome.report = self._repair(current)
            except RepairEscalationError as e:
                logger.warning(
                    "Session %s: repair escalated (%s); truncating", sess.session_id, e,
                )
                truncate = True
        elif kind == CorruptionKind.THINKING_DISABLED_VIOLATION:
            self._set_state(sess, RecoveryState.REPAIRING, trail)
            current = strip_thinking_blocks(
                current, start=turn_start_index(current), placeholder=THINKING_REMOVED_TEXT,
            )

        if truncate:
            self._set_state(sess, RecoveryState.TRUNCATED, trail)
            current, start = truncate_to_last_good_turn(current)
            sess.last_known_good_turn_index = start - 1
            outcome.truncated_from = start
        else:
            sess.last_known_good_turn_index = len(current) - 1

        self._set_state(sess, RecoveryState.RESUMING, trail)
        if self.config.auto_resume:
            resume = {
                "role": "user",
                "content": [{"type": "text", "text": self.config.resume_text}],
            }
            current = _append_user_turn(current, resume)
            outcome.resume_message = resume
            sess.pending_resume = True
            await self._notify_resume(sess, resume)
        else:
            sess.pending_resume = False
            self._set_state(sess, RecoveryState.HEALTHY, trail)

        outcome.messages = current
        outcome.state = sess.state
        outcome.transitions = trail
        self._record(sess, kind, trail)
        return outcome

    async def _notify_resume(self, sess: RecoverySession, message: dict) -> None:
        if self.on_resume is None:
            return
        try:
            result = self.on_resume(sess.session_id, message)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error("Session %s: resume callback failed: %s", sess.session_id, e)

    def complete_turn(self, session_id: str) -> RecoveryState:
        """Mark the resumed turn as delivered; the session returns to HEALTHY."""
        sess = self._sessions.get(session_id)
        if sess is None:
            return RecoveryState.HEALTHY
        if sess.state == RecoveryState.RESUMING:
            logger.info("Session %s recovered", session_id)
            self.reset(session_id)
            return RecoveryState.HEALTHY
        return sess.state

    def _record(self, sess: RecoverySession, kind: CorruptionKind, trail: list) -> None:
        if self.metrics is not None:
            self.metrics.record({
                "type": "recovery",
                "session_id": sess.session_id,
                "kind": kind.value,
                "transitions": [s.value for s in trail],
            })
