"""Tool-pairing repair: every tool_use gets its tool_result in the next message.

Pure functions over Anthropic-format message lists.  The repair escalates
through three strategies, each applied to the full sequence because an
orphan can originate many messages back (e.g. after external compaction):

1. Reconciliation: results are matched to invocations by exact id, then by
   tool name, and otherwise tagged to a synthetic ``unknown_function``
   invocation.  Matched results are moved to the front of the user message
   that immediately follows their invocation.
2. Placeholder injection: invocations still without a result receive a
   cancellation result.
3. Nuclear removal: invocations that a validation pass still rejects are
   deleted, together with any result referencing them.

Running the repair on its own output is a no-op.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass

from ..types import RepairEscalationError, RepairReport

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Operation cancelled"
UNKNOWN_TOOL_NAME = "unknown_function"
THINKING_TYPES = ("thinking", "redacted_thinking")


def _blocks(msg: dict) -> list:
    content = msg.get("content")
    return content if isinstance(content, list) else []


def _is_type(block, block_type: str) -> bool:
    return isinstance(block, dict) and block.get("type") == block_type


def has_tool_use(msg: dict) -> bool:
    return msg.get("role") == "assistant" and any(_is_type(b, "tool_use") for b in _blocks(msg))


def is_tool_result_message(msg: dict) -> bool:
    """A user message made only of tool_result blocks (part of a tool loop)."""
    blocks = _blocks(msg)
    return (
        msg.get("role") == "user"
        and bool(blocks)
        and all(_is_type(b, "tool_result") for b in blocks)
    )


def turn_start_index(messages: list[dict]) -> int:
    """Index of the first message of the latest assistant turn.

    A turn starts after the last user message that is not purely tool
    results.  Returns 0 when there is no such user message.
    """
    for idx in range(len(messages) - 1, -1, -1):
        msg = messages[idx]
        if msg.get("role") == "user" and not is_tool_result_message(msg):
            return idx + 1
    return 0


def cancellation_result(tool_use_id: str) -> dict:
    return {
        "type": "tool_result",
        "tool_use_id": tool_use_id,
        "content": CANCELLED_MESSAGE,
        "is_error": True,
    }


def strip_thinking_blocks(
    messages: list[dict], start: int = 0, placeholder: str | None = None,
) -> list[dict]:
    """Remove thinking and redacted_thinking blocks from assistant messages.

    Only messages at index >= *start* are touched.  An assistant message left
    with no content is dropped, or given a text block when *placeholder* is set.
    """
    out: list[dict] = []
    for idx, msg in enumerate(messages):
        content = msg.get("content")
        if idx < start or msg.get("role") != "assistant" or not isinstance(content, list):
            out.append(msg)
            continue
        filtered = [b for b in content
                    if not (isinstance(b, dict) and b.get("type") in THINKING_TYPES)]
        if len(filtered) == len(content):
            out.append(msg)
        elif filtered:
            out.append({**msg, "content": filtered})
        elif placeholder:
            out.append({**msg, "content": [{"type": "text", "text": placeholder}]})
    return out


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

@dataclass
class _Issue:
    msg_index: int
    block_index: int
    tool_use_id: str
    reason: str


def _find_issues(messages: list[dict]) -> list[_Issue]:
    """Invocations without a valid result in the immediately following message."""
    issues: list[_Issue] = []
    seen_ids: set[str] = set()
    for m_idx, msg in enumerate(messages):
        if msg.get("role") != "assistant":
            continue
        nxt = messages[m_idx + 1] if m_idx + 1 < len(messages) else None
        result_ids: list[str] = []
        if nxt is not None and nxt.get("role") == "user":
            result_ids = [
                b.get("tool_use_id") for b in _blocks(nxt) if _is_type(b, "tool_result")
            ]
        for b_idx, block in enumerate(_blocks(msg)):
            if not _is_type(block, "tool_use"):
                continue
            tid = block.get("id")
            if not isinstance(tid, str) or not tid:
                issues.append(_Issue(m_idx, b_idx, "", "missing id"))
                continue
            if tid in seen_ids:
                issues.append(_Issue(m_idx, b_idx, tid, "duplicate id"))
                continue
            seen_ids.add(tid)
            if tid not in result_ids:
                issues.append(_Issue(m_idx, b_idx, tid, "no adjacent result"))
    return issues


def find_orphaned_tool_uses(messages: list[dict]) -> list[str]:
    """Ids of tool_use blocks lacking a valid adjacent tool_result."""
    return [issue.tool_use_id for issue in _find_issues(messages)]


def validate_tool_pairing(messages: list[dict]) -> bool:
    return not _find_issues(messages) and not _orphaned_results(messages)


def _orphaned_results(messages: list[dict]) -> list[tuple[int, int]]:
    """Positions of tool_result blocks that no preceding invocation accounts for."""
    positions: list[tuple[int, int]] = []
    for m_idx, msg in enumerate(messages):
        if msg.get("role") != "user":
            continue
        prev = messages[m_idx - 1] if m_idx > 0 else None
        budget: dict[str, int] = {}
        if prev is not None and prev.get("role") == "assistant":
            for block in _blocks(prev):
                if _is_type(block, "tool_use") and block.get("id"):
                    budget[block["id"]] = budget.get(block["id"], 0) + 1
        for b_idx, block in enumerate(_blocks(msg)):
            if not _is_type(block, "tool_result"):
                continue
            tid = block.get("tool_use_id")
            if budget.get(tid, 0) > 0:
                budget[tid] -= 1
            else:
                positions.append((m_idx, b_idx))
    return positions


# ---------------------------------------------------------------------------
# Strategy 1 + 2: reconciliation and placeholder injection
# ---------------------------------------------------------------------------

@dataclass
class _Invocation:
    message: dict
    block: dict
    result: dict | None = None

    @property
    def id(self) -> str:
        tid = self.block.get("id")
        return tid if isinstance(tid, str) else ""

    @property
    def name(self) -> str:
        return self.block.get("name") or ""


def _reconcile(messages: list[dict], report: RepairReport) -> list[dict]:
    invocations: list[_Invocation] = []
    results: list[tuple[dict, dict, int]] = []  # (block, source message, source index)
    work: list[dict] = []

    for m_idx, msg in enumerate(messages):
        if msg.get("role") == "assistant":
            for block in _blocks(msg):
                if _is_type(block, "tool_use"):
                    invocations.append(_Invocation(msg, block))
        elif msg.get("role") == "user" and isinstance(msg.get("content"), list):
            kept = []
            for block in msg["content"]:
                if _is_type(block, "tool_result"):
                    results.append((block, msg, m_idx))
                else:
                    kept.append(block)
            msg["_had_results"] = len(kept) != len(msg["content"])
            msg["content"] = kept
        work.append(msg)

    # Pass A: exact id
    by_id: dict[str, list[_Invocation]] = {}
    for inv in invocations:
        by_id.setdefault(inv.id, []).append(inv)
    matched_ids: set[str] = set()
    unmatched: list[tuple[dict, dict, int]] = []
    for block, src, m_idx in results:
        tid = block.get("tool_use_id") or ""
        candidate = next((i for i in by_id.get(tid, []) if i.result is None), None)
        if candidate is not None:
            candidate.result = block
            block["_source"] = id(src)
            matched_ids.add(tid)
            report.id_matches += 1
        elif tid and tid in matched_ids:
            report.duplicates_dropped += 1
            logger.warning("Tool pairing: dropped duplicate tool_result for id=%s", tid)
        else:
            unmatched.append((block, src, m_idx))

    # Pass B: tool name among still-pending invocations
    leftovers: list[tuple[dict, dict, int]] = []
    for block, src, m_idx in unmatched:
        name = block.get("name")
        candidate = None
        if name:
            candidate = next(
                (i for i in invocations if i.result is None and i.name == name), None,
            )
        if candidate is not None:
            logger.info(
                "Tool pairing: matched result %r to call %r by name %r",
                block.get("tool_use_id"), candidate.id, name,
            )
            block["tool_use_id"] = candidate.id
            block["_source"] = id(src)
            candidate.result = block
            report.name_matches += 1
        else:
            leftovers.append((block, src, m_idx))

    # Pass C: tag remaining results against a synthetic unknown invocation
    known_ids = {inv.id for inv in invocations}
    for n, (block, src, m_idx) in enumerate(leftovers):
        tid = block.get("tool_use_id")
        if not isinstance(tid, str) or not tid or tid in known_ids:
            tid = f"toolu_unknown_{n}"
            block["tool_use_id"] = tid
        known_ids.add(tid)
        synthetic = {"type": "tool_use", "id": tid, "name": UNKNOWN_TOOL_NAME, "input": {}}
        host = _preceding_assistant(work, src)
        if host is None:
            host = {"role": "assistant", "content": []}
            work.insert(_position(work, src), host)
        if not isinstance(host.get("content"), list):
            host["content"] = [{"type": "text", "text": host.get("content") or ""}]
        host["content"].append(synthetic)
        inv = _Invocation(host, synthetic, result=block)
        block["_source"] = id(src)
        invocations.append(inv)
        report.unknown_tagged += 1
        logger.info("Tool pairing: tagged orphan tool_result %s to %s", tid, UNKNOWN_TOOL_NAME)

    # Strategy 2: cancellation placeholders
    for inv in invocations:
        if inv.result is None:
            inv.result = cancellation_result(inv.id)
            report.placeholders += 1
            logger.info("Tool pairing: injected cancellation result for %s", inv.id or "<no id>")

    return _rebuild(work, invocations, report)


def _position(work: list[dict], msg: dict) -> int:
    return next(n for n, m in enumerate(work) if m is msg)


def _preceding_assistant(work: list[dict], msg: dict) -> dict | None:
    for candidate in reversed(work[: _position(work, msg)]):
        if candidate.get("role") == "assistant":
            return candidate
    return None


def _rebuild(work: list[dict], invocations: list[_Invocation], report: RepairReport) -> list[dict]:
    by_message: dict[int, list[_Invocation]] = {}
    for inv in invocations:
        by_message.setdefault(id(inv.message), []).append(inv)

    out: list[dict] = []
    i = 0
    while i < len(work):
        msg = work[i]
        out.append(msg)
        invs = by_message.get(id(msg))
        if invs:
            # Results in invocation order
            order = {id(b): n for n, b in enumerate(_blocks(msg))}
            invs.sort(key=lambda inv: order.get(id(inv.block), 0))
            results = [inv.result for inv in invs]
            nxt = work[i + 1] if i + 1 < len(work) else None
            if nxt is not None and nxt.get("role") == "user":
                content = nxt.get("content")
                if not isinstance(content, list):
                    content = [{"type": "text", "text": content}] if content else []
                nxt["content"] = results + content
                target = nxt
            else:
                target = {"role": "user", "content": results}
                out.append(target)
            for result in results:
                if result.get("_source") not in (None, id(target)):
                    report.relocated += 1
            if target is nxt:
                out.append(nxt)
                i += 1
        i += 1

    cleaned: list[dict] = []
    for msg in out:
        had_results = msg.pop("_had_results", False)
        for block in _blocks(msg):
            if isinstance(block, dict):
                block.pop("_source", None)
        if had_results and msg.get("content") == []:
            continue  # only held results that moved elsewhere
        cleaned.append(msg)
    return cleaned


# ---------------------------------------------------------------------------
# Strategy 3: nuclear removal
# ---------------------------------------------------------------------------

def _nuclear_remove(messages: list[dict], report: RepairReport) -> list[dict]:
    issues = _find_issues(messages)
    if not issues and not _orphaned_results(messages):
        return messages

    doomed: dict[int, set[int]] = {}
    for issue in issues:
        doomed.setdefault(issue.msg_index, set()).add(issue.block_index)
    if issues:
        logger.warning(
            "Tool pairing: NUCLEAR removal of %d tool_use block(s) with no valid result: %s",
            len(issues),
            [f"{i.tool_use_id or '<no id>'} ({i.reason})" for i in issues],
        )
        report.removed += len(issues)

    stripped: list[dict] = []
    for m_idx, msg in enumerate(messages):
        drop = doomed.get(m_idx)
        if drop:
            msg = {**msg, "content": [b for n, b in enumerate(_blocks(msg)) if n not in drop]}
        stripped.append(msg)

    # Results that now point at nothing go with their invocations
    orphans = _orphaned_results(stripped)
    if orphans:
        gone: dict[int, set[int]] = {}
        for m_idx, b_idx in orphans:
            gone.setdefault(m_idx, set()).add(b_idx)
        for m_idx, drop in gone.items():
            msg = stripped[m_idx]
            stripped[m_idx] = {
                **msg, "content": [b for n, b in enumerate(_blocks(msg)) if n not in drop],
            }
        if not issues:
            report.removed += len(orphans)
        logger.warning("Tool pairing: NUCLEAR removal of %d orphaned tool_result block(s)", len(orphans))

    return [m for m in stripped if not (isinstance(m.get("content"), list) and not m["content"])]


def repair_tool_pairing(messages: list[dict]) -> tuple[list[dict], RepairReport]:
    """Repair orphaned tool invocations. The input list is not modified.

    Raises RepairEscalationError if the sequence is still invalid after
    nuclear removal.
    """
    report = RepairReport()
    if not any(_blocks(m) for m in messages):
        return copy.deepcopy(messages), report

    repaired = _reconcile(copy.deepcopy(messages), report)
    repaired = _nuclear_remove(repaired, report)

    remaining = find_orphaned_tool_uses(repaired)
    if remaining or _orphaned_results(repaired):
        raise RepairEscalationError(
            f"Tool pairing still invalid after removal: {remaining}",
            orphaned_ids=remaining,
        )

    report.changed = repaired != messages
    return repaired, report
