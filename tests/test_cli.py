"""Tests for the antigravity-guard command line."""

from __future__ import annotations

import json

import pytest

from antigravity_guard.cli.main import main
from antigravity_guard.storage.accounts import save_accounts


@pytest.fixture(autouse=True)
def _no_discovered_config(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))


class TestAccounts:
    def test_list(self, two_accounts, accounts_path, capsys):
        two_accounts.accounts[0].rate_limit_reset_times["claude"] = 4_000_000_000_000
        two_accounts.active_index_by_family = {"claude": 1}
        save_accounts(two_accounts, accounts_path)
        main(["accounts", "--path", str(accounts_path), "list"])
        out = capsys.readouterr().out
        assert "a@example.com" in out
        assert "b@example.com" in out
        assert "claude" in out
        assert "Active: claude=#1" in out

    def test_list_missing_store(self, tmp_path, capsys):
        main(["accounts", "--path", str(tmp_path / "none.json"), "list"])
        assert "No accounts stored" in capsys.readouterr().out

    def test_list_corrupt_store(self, accounts_path, capsys):
        accounts_path.write_text("not json")
        with pytest.raises(SystemExit) as exc:
            main(["accounts", "--path", str(accounts_path), "list"])
        assert exc.value.code == 1
        assert "parse" in capsys.readouterr().err.lower()

    def test_clear_requires_yes(self, two_accounts, accounts_path):
        save_accounts(two_accounts, accounts_path)
        with pytest.raises(SystemExit):
            main(["accounts", "--path", str(accounts_path), "clear"])
        assert accounts_path.exists()
        main(["accounts", "--path", str(accounts_path), "clear", "--yes"])
        assert not accounts_path.exists()


class TestRepair:
    def test_repair_to_output_file(self, tmp_path, capsys):
        src = tmp_path / "conv.json"
        dst = tmp_path / "fixed.json"
        src.write_text(json.dumps({"model": "m", "messages": [
            {"role": "user", "content": "go"},
            {"role": "assistant", "content": [
                {"type": "tool_use", "id": "t1", "name": "bash", "input": {}},
            ]},
        ]}))
        main(["repair", str(src), "-o", str(dst)])
        fixed = json.loads(dst.read_text())
        assert fixed["model"] == "m"
        assert fixed["messages"][-1]["content"][0]["tool_use_id"] == "t1"
        assert "placeholders=1" in capsys.readouterr().err

    def test_repair_plain_list_to_stdout(self, tmp_path, capsys):
        src = tmp_path / "conv.json"
        src.write_text(json.dumps([{"role": "user", "content": "hi"}]))
        main(["repair", str(src)])
        captured = capsys.readouterr()
        assert json.loads(captured.out) == [{"role": "user", "content": "hi"}]
        assert "changed=False" in captured.err

    def test_repair_missing_file(self, tmp_path):
        with pytest.raises(SystemExit) as exc:
            main(["repair", str(tmp_path / "nope.json")])
        assert exc.value.code == 1


class TestConfigValidate:
    def test_valid(self, tmp_path, capsys):
        cfg = tmp_path / "guard.yaml"
        cfg.write_text("auto_resume: true\nresume_text: keep going\n")
        main(["-c", str(cfg), "config", "validate"])
        out = capsys.readouterr().out
        assert "Config is valid." in out
        assert "'keep going'" in out

    def test_invalid(self, tmp_path, capsys):
        cfg = tmp_path / "guard.yaml"
        cfg.write_text("proxy:\n  port: 0\n")
        with pytest.raises(SystemExit):
            main(["-c", str(cfg), "config", "validate"])
        assert "proxy.port out of range" in capsys.readouterr().out


def test_cache_stats(tmp_path, capsys):
    cfg = tmp_path / "guard.yaml"
    cfg.write_text(f"signature_cache:\n  path: {tmp_path / 'cache.json'}\n")
    main(["-c", str(cfg), "cache", "stats"])
    out = capsys.readouterr().out
    assert "cache.json" in out
    assert "Loaded entries: 0" in out


def test_no_command_prints_help():
    with pytest.raises(SystemExit) as exc:
        main([])
    assert exc.value.code == 1
