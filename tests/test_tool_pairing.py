"""Tests for antigravity_guard.core.tool_pairing."""

from __future__ import annotations

import copy
from unittest.mock import patch

import pytest

from antigravity_guard.core.tool_pairing import (
    CANCELLED_MESSAGE,
    UNKNOWN_TOOL_NAME,
    find_orphaned_tool_uses,
    is_tool_result_message,
    repair_tool_pairing,
    strip_thinking_blocks,
    turn_start_index,
    validate_tool_pairing,
)
from antigravity_guard.types import RepairEscalationError


def user(content):
    return {"role": "user", "content": content}


def assistant(*blocks):
    return {"role": "assistant", "content": list(blocks)}


def text(t):
    return {"type": "text", "text": t}


def tool_use(tid, name="read_file"):
    return {"type": "tool_use", "id": tid, "name": name, "input": {"path": "a.py"}}


def tool_result(tid, content="ok", **extra):
    return {"type": "tool_result", "tool_use_id": tid, "content": content, **extra}


def thinking(t="hmm"):
    return {"type": "thinking", "thinking": t, "signature": "sig"}


# A grab-bag of broken and healthy conversations
TURNS = {
    "healthy": [
        user("read a.py"),
        assistant(text("sure"), tool_use("t1")),
        user([tool_result("t1")]),
        assistant(text("done")),
    ],
    "dangling_at_end": [
        user("read a.py"),
        assistant(tool_use("t1"), tool_use("t2")),
    ],
    "result_one_message_late": [
        user("go"),
        assistant(tool_use("t1")),
        assistant(text("still thinking")),
        user([tool_result("t1"), text("and then?")]),
    ],
    "renamed_result": [
        user("go"),
        assistant(tool_use("t1", name="grep")),
        user([tool_result("call_9", name="grep")]),
    ],
    "orphan_result": [
        user("go"),
        assistant(text("no tools here")),
        user([tool_result("ghost"), text("hello")]),
    ],
    "orphan_result_first": [
        user([tool_result("ghost")]),
        assistant(text("hi")),
    ],
    "duplicate_results": [
        user("go"),
        assistant(tool_use("t1")),
        user([tool_result("t1", "first"), tool_result("t1", "second")]),
    ],
    "duplicate_invocation_ids": [
        user("go"),
        assistant(tool_use("t1")),
        user([tool_result("t1")]),
        assistant(tool_use("t1")),
        user([tool_result("t1")]),
    ],
    "missing_id": [
        user("go"),
        assistant(text("calling"), {"type": "tool_use", "name": "x", "input": {}}),
        user("next question"),
    ],
    "compacted_history": [
        user("start"),
        assistant(tool_use("a1"), tool_use("a2")),
        user([tool_result("a2")]),
        assistant(text("summary of earlier work")),
        user("continue"),
        assistant(tool_use("b1", name="write_file")),
        user([tool_result("zzz", name="write_file"), tool_result("a1")]),
    ],
    "string_user_after_call": [
        user("go"),
        assistant(tool_use("t1")),
        user("never mind"),
    ],
}


# ---------------------------------------------------------------------------
# Properties
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("name", sorted(TURNS))
def test_repair_is_idempotent(name):
    once, _ = repair_tool_pairing(TURNS[name])
    twice, report = repair_tool_pairing(once)
    assert twice == once
    assert report.changed is False


@pytest.mark.parametrize("name", sorted(TURNS))
def test_every_invocation_has_adjacent_result(name):
    repaired, _ = repair_tool_pairing(TURNS[name])
    assert validate_tool_pairing(repaired)
    for idx, msg in enumerate(repaired):
        if msg["role"] != "assistant" or not isinstance(msg["content"], list):
            continue
        for block in msg["content"]:
            if block.get("type") == "tool_use":
                nxt = repaired[idx + 1]
                assert nxt["role"] == "user"
                assert block["id"] in [
                    b.get("tool_use_id") for b in nxt["content"] if b.get("type") == "tool_result"
                ]


@pytest.mark.parametrize("name", sorted(TURNS))
def test_input_not_mutated(name):
    original = copy.deepcopy(TURNS[name])
    repair_tool_pairing(TURNS[name])
    assert TURNS[name] == original


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


class TestPlaceholders:
    def test_dangling_call_gets_cancellation(self):
        messages = [user("read it"), assistant(text("ok"), tool_use("tc-1"))]
        repaired, report = repair_tool_pairing(messages)
        assert repaired[-1] == user([{
            "type": "tool_result",
            "tool_use_id": "tc-1",
            "content": CANCELLED_MESSAGE,
            "is_error": True,
        }])
        assert report.placeholders == 1
        assert report.changed

    def test_placeholders_in_invocation_order(self):
        repaired, _ = repair_tool_pairing(TURNS["dangling_at_end"])
        ids = [b["tool_use_id"] for b in repaired[-1]["content"]]
        assert ids == ["t1", "t2"]

    def test_string_user_message_keeps_its_text(self):
        repaired, _ = repair_tool_pairing(TURNS["string_user_after_call"])
        assert repaired[2]["content"] == [
            {"type": "tool_result", "tool_use_id": "t1", "content": CANCELLED_MESSAGE, "is_error": True},
            text("never mind"),
        ]


class TestReconciliation:
    def test_healthy_unchanged(self):
        repaired, report = repair_tool_pairing(TURNS["healthy"])
        assert repaired == TURNS["healthy"]
        assert report.changed is False
        assert report.id_matches == 1

    def test_late_result_relocated(self):
        repaired, report = repair_tool_pairing(TURNS["result_one_message_late"])
        assert report.relocated == 1
        assert repaired[2] == user([tool_result("t1")])
        assert repaired[3]["role"] == "assistant"
        assert repaired[4] == user([text("and then?")])

    def test_match_by_name(self):
        repaired, report = repair_tool_pairing(TURNS["renamed_result"])
        assert report.name_matches == 1
        assert repaired[2]["content"][0]["tool_use_id"] == "t1"

    def test_orphan_tagged_to_unknown_function(self):
        repaired, report = repair_tool_pairing(TURNS["orphan_result"])
        assert report.unknown_tagged == 1
        synthetic = repaired[1]["content"][-1]
        assert synthetic == {
            "type": "tool_use", "id": "ghost", "name": UNKNOWN_TOOL_NAME, "input": {},
        }
        assert repaired[2]["content"][0]["tool_use_id"] == "ghost"
        assert repaired[2]["content"][1] == text("hello")

    def test_orphan_without_preceding_assistant(self):
        repaired, report = repair_tool_pairing(TURNS["orphan_result_first"])
        assert report.unknown_tagged == 1
        assert repaired[0]["role"] == "assistant"
        assert repaired[0]["content"][0]["name"] == UNKNOWN_TOOL_NAME
        assert repaired[1] == user([tool_result("ghost")])

    def test_duplicate_result_keeps_first(self):
        repaired, report = repair_tool_pairing(TURNS["duplicate_results"])
        assert report.duplicates_dropped == 1
        assert repaired[2] == user([tool_result("t1", "first")])

    def test_orphans_far_back_are_repaired(self):
        repaired, report = repair_tool_pairing(TURNS["compacted_history"])
        # a1's result was stranded after b1 and moves back next to its call
        assert [b["tool_use_id"] for b in repaired[2]["content"]] == ["a1", "a2"]
        assert repaired[-1]["content"][0]["tool_use_id"] == "b1"
        assert report.name_matches == 1
        assert report.relocated == 1


class TestNuclearRemoval:
    def test_missing_id_removed(self, caplog):
        with caplog.at_level("WARNING"):
            repaired, report = repair_tool_pairing(TURNS["missing_id"])
        assert report.removed == 1
        assert repaired == [
            user("go"),
            assistant(text("calling")),
            user([text("next question")]),
        ]
        assert "NUCLEAR" in caplog.text

    def test_duplicate_invocation_id_removed(self):
        repaired, report = repair_tool_pairing(TURNS["duplicate_invocation_ids"])
        assert report.removed == 1
        assert repaired == TURNS["duplicate_invocation_ids"][:3]

    def test_escalation_when_still_invalid(self):
        with patch(
            "antigravity_guard.core.tool_pairing._nuclear_remove",
            side_effect=lambda messages, report: messages,
        ):
            with pytest.raises(RepairEscalationError):
                repair_tool_pairing(TURNS["missing_id"])


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestHelpers:
    def test_find_orphaned_tool_uses(self):
        assert find_orphaned_tool_uses(TURNS["dangling_at_end"]) == ["t1", "t2"]
        assert find_orphaned_tool_uses(TURNS["healthy"]) == []

    def test_validate_flags_orphan_results(self):
        assert not validate_tool_pairing(TURNS["orphan_result"])
        assert validate_tool_pairing(TURNS["healthy"])

    def test_is_tool_result_message(self):
        assert is_tool_result_message(user([tool_result("t1")]))
        assert not is_tool_result_message(user([tool_result("t1"), text("x")]))
        assert not is_tool_result_message(user("plain"))

    def test_turn_start_index(self):
        messages = [
            user("first"),
            assistant(text("a")),
            user("second"),
            assistant(tool_use("t1")),
            user([tool_result("t1")]),
            assistant(text("b")),
        ]
        assert turn_start_index(messages) == 3
        assert turn_start_index([assistant(text("x"))]) == 0

    def test_strip_thinking_from_start(self):
        messages = [
            user("q"),
            assistant(thinking(), text("a")),
            user("q2"),
            assistant(thinking(), {"type": "redacted_thinking", "data": "x"}, text("b")),
            assistant(thinking()),
        ]
        stripped = strip_thinking_blocks(messages, start=2)
        assert stripped[1] == messages[1]
        assert stripped[3] == assistant(text("b"))
        assert len(stripped) == 4

    def test_strip_thinking_placeholder(self):
        stripped = strip_thinking_blocks([assistant(thinking())], placeholder="[removed]")
        assert stripped == [assistant(text("[removed]"))]
