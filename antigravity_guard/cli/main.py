"""CLI: antigravity-guard serve, accounts, cache stats, repair, config validate."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

from ..config import load_config, validate_config
from ..storage.accounts import clear_accounts, default_accounts_path, read_accounts
from ..storage.helpers import now_ms
from ..types import StorageError


def _accounts_path(args, config) -> Path:
    if getattr(args, "path", None):
        return Path(args.path)
    if config.accounts.path:
        return Path(config.accounts.path).expanduser()
    return default_accounts_path()


def _fmt_ms(ms: int | None) -> str:
    if not ms:
        return "never"
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def cmd_serve(args):
    """Start the HTTP service."""
    import uvicorn

    from ..proxy.server import create_app

    config = load_config(args.config)
    host = args.host or config.proxy.host
    port = args.port or config.proxy.port

    app = create_app(config)
    print(f"antigravity-guard on {host}:{port}")
    uvicorn.run(
        app, host=host, port=port, log_level="info",
        timeout_graceful_shutdown=2,
    )


def cmd_accounts_list(args):
    """Show stored accounts and their per-quota rate limits."""
    config = load_config(args.config)
    path = _accounts_path(args, config)
    result = read_accounts(path, now_ms=now_ms())

    if not result.ok:
        if result.error is StorageError.NOT_FOUND:
            print(f"No accounts stored at {path}")
            return
        print(f"Account store unreadable ({result.error.value}): {result.detail}", file=sys.stderr)
        sys.exit(1)

    storage = result.storage
    if result.source_version != storage.version:
        print(f"(stored as v{result.source_version}, shown migrated to v{storage.version})")
    if not storage.accounts:
        print("No accounts configured.")
        return

    now = now_ms()
    active = storage.active_index_by_family
    print(f"{'#':>2}  {'Account':<32} {'Last used':<20} {'Reason':<10} Limits")
    print("-" * 90)
    for idx, acc in enumerate(storage.accounts):
        families = [f for f, i in active.items() if i == idx]
        marker = "*" if families else " "
        limits = ", ".join(
            f"{key} {max(0, reset - now) / 1000:.0f}s"
            for key, reset in sorted(acc.rate_limit_reset_times.items())
            if reset > now
        ) or "-"
        print(
            f"{idx:>2}{marker} {acc.identity:<32} {_fmt_ms(acc.last_used):<20} "
            f"{acc.last_switch_reason or '-':<10} {limits}"
        )
    if active:
        print()
        print("Active: " + ", ".join(f"{f}=#{i}" for f, i in sorted(active.items())))


def cmd_accounts_clear(args):
    """Delete the credential store file."""
    config = load_config(args.config)
    path = _accounts_path(args, config)
    if not args.yes:
        print(f"Refusing to delete {path} without --yes", file=sys.stderr)
        sys.exit(1)
    clear_accounts(path)
    print(f"Cleared {path}")


def cmd_cache_stats(args):
    """Show signature cache file contents and statistics."""
    from ..cache.signature_cache import SignatureCache

    config = load_config(args.config)
    cache = SignatureCache(config.signature_cache)
    stats = cache.stats()

    print(f"Cache file:     {cache.path}")
    print(f"Enabled:        {stats.disk_enabled}")
    print(f"Memory TTL:     {config.signature_cache.memory_ttl_seconds}s")
    print(f"Disk TTL:       {config.signature_cache.disk_ttl_seconds}s")
    print(f"Loaded entries: {stats.memory_entries}")

    if cache.path.is_file():
        try:
            data = json.loads(cache.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            print(f"Stored stats:   unreadable ({e})")
            return
        stored = data.get("statistics", {}) if isinstance(data, dict) else {}
        print(f"Memory hits:    {stored.get('memory_hits', 0)}")
        print(f"Disk hits:      {stored.get('disk_hits', 0)}")
        print(f"Misses:         {stored.get('misses', 0)}")
        print(f"Writes:         {stored.get('writes', 0)}")
        print(f"Last write:     {_fmt_ms(stored.get('last_write'))}")


def cmd_repair(args):
    """Repair tool pairing in a JSON message list."""
    from ..core.tool_pairing import repair_tool_pairing
    from ..types import RepairEscalationError

    path = Path(args.file)
    if not path.is_file():
        print(f"File not found: {path}", file=sys.stderr)
        sys.exit(1)

    data = json.loads(path.read_text(encoding="utf-8"))
    wrapped = isinstance(data, dict)
    messages = data.get("messages", []) if wrapped else data
    if not isinstance(messages, list):
        print("Expected a list of messages or {\"messages\": [...]}", file=sys.stderr)
        sys.exit(1)

    try:
        repaired, report = repair_tool_pairing(messages)
    except RepairEscalationError as e:
        print(f"Repair failed: {e}", file=sys.stderr)
        sys.exit(2)

    output = {**data, "messages": repaired} if wrapped else repaired
    text = json.dumps(output, indent=2)
    if args.output:
        Path(args.output).write_text(text + "\n", encoding="utf-8")
    else:
        print(text)

    print(
        f"id={report.id_matches} name={report.name_matches} unknown={report.unknown_tagged} "
        f"placeholders={report.placeholders} removed={report.removed} "
        f"relocated={report.relocated} changed={report.changed}",
        file=sys.stderr,
    )


def cmd_config_validate(args):
    """Validate config file."""
    try:
        config = load_config(args.config)
    except Exception as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(1)

    errors = validate_config(config)
    if errors:
        print("Config validation errors:")
        for err in errors:
            print(f"  - {err}")
        sys.exit(1)
    else:
        print("Config is valid.")
        print(f"  Session recovery: {config.recovery.session_recovery}")
        print(f"  Auto resume: {config.recovery.auto_resume} ({config.recovery.resume_text!r})")
        print(
            f"  Signature cache: {'on' if config.signature_cache.enabled else 'off'} "
            f"(memory {config.signature_cache.memory_ttl_seconds}s, "
            f"disk {config.signature_cache.disk_ttl_seconds}s)"
        )
        print(f"  Refresh window: {config.refresh.proactive_window_seconds}s")


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(
        prog="antigravity-guard",
        description="Session consistency and recovery for multi-account LLM proxies",
    )
    parser.add_argument("--config", "-c", help="Path to config file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Start the HTTP service")
    serve_parser.add_argument("--port", "-p", type=int, default=None)
    serve_parser.add_argument("--host", default=None)

    # accounts
    accounts_parser = subparsers.add_parser("accounts", help="Inspect the credential store")
    accounts_parser.add_argument("--path", help="Credential store file")
    accounts_sub = accounts_parser.add_subparsers(dest="accounts_action")
    accounts_sub.add_parser("list", help="List accounts and rate limits")
    clear_parser = accounts_sub.add_parser("clear", help="Delete the credential store")
    clear_parser.add_argument("--yes", action="store_true", help="Confirm deletion")

    # cache
    cache_parser = subparsers.add_parser("cache", help="Signature cache operations")
    cache_sub = cache_parser.add_subparsers(dest="cache_action")
    cache_sub.add_parser("stats", help="Show cache statistics")

    # repair
    repair_parser = subparsers.add_parser("repair", help="Repair tool pairing in a message file")
    repair_parser.add_argument("file", help="JSON file with messages")
    repair_parser.add_argument("--output", "-o", help="Write result here instead of stdout")

    # config validate
    config_parser = subparsers.add_parser("config", help="Config operations")
    config_sub = config_parser.add_subparsers(dest="config_command")
    config_sub.add_parser("validate", help="Validate config file")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "accounts":
        if args.accounts_action == "clear":
            cmd_accounts_clear(args)
        else:
            cmd_accounts_list(args)
    elif args.command == "cache":
        cmd_cache_stats(args)
    elif args.command == "repair":
        cmd_repair(args)
    elif args.command == "config":
        if args.config_command == "validate":
            cmd_config_validate(args)
        else:
            config_parser.print_help()
            sys.exit(1)


if __name__ == "__main__":
    main()
