"""Operator CLI — serve, run a single cycle, authorize, manage rules, read the log.

Usage:
    mailrelay serve
    mailrelay run-once
    mailrelay auth
    mailrelay rules list
    mailrelay rules add <keyword> <target-email> [--disabled]
    mailrelay rules enable|disable|delete <rule-id>
    mailrelay logs [--message ID] [--limit N]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from mailrelay.config import AppConfig
from mailrelay.db.connection import init_db
from mailrelay.db.models import AuditRepository, RuleRepository
from mailrelay.errors import StoreError

logger = logging.getLogger(__name__)


def _load_config(args: argparse.Namespace) -> AppConfig:
    return AppConfig.from_yaml(Path(args.config) if args.config else None)


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    from mailrelay.main import create_app

    config = _load_config(args)
    uvicorn.run(
        create_app(config),
        host=config.server.host,
        port=config.server.port,
        log_level=config.server.log_level,
    )
    return 0


def cmd_run_once(args: argparse.Namespace) -> int:
    from mailrelay.main import build_runner

    config = _load_config(args)
    logging.basicConfig(
        level=getattr(logging, config.server.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    runner = build_runner(config, init_db(config))
    try:
        summary = asyncio.run(runner.run_cycle())
    finally:
        runner.source.close()

    print(json.dumps(summary.to_dict(), indent=2))
    return 1 if summary.fetch_error or summary.aborted else 0


def cmd_auth(args: argparse.Namespace) -> int:
    from mailrelay.gmail.auth import GmailAuth

    config = _load_config(args)
    GmailAuth(config).get_credentials(interactive=True)
    print(f"Credentials stored in {config.auth.token_file}")
    return 0


def cmd_rules(args: argparse.Namespace) -> int:
    config = _load_config(args)
    rules = RuleRepository(init_db(config))

    if args.rules_command == "list":
        all_rules = rules.list_all()
        if not all_rules:
            print("No rules configured.")
        for rule in all_rules:
            state = "enabled" if rule.enabled else "disabled"
            print(f"  [{rule.id}] {rule.key} -> {rule.target_address} ({state})")
        return 0

    if args.rules_command == "add":
        try:
            rule_id = rules.create(args.keyword, args.target, enabled=not args.disabled)
        except StoreError as e:
            print(f"Failed to add rule {args.keyword!r}: {e}", file=sys.stderr)
            return 1
        print(f"Added rule {rule_id}: {args.keyword} -> {args.target}")
        return 0

    if args.rules_command in ("enable", "disable"):
        changed = rules.set_enabled(args.rule_id, args.rules_command == "enable")
        verb = f"{args.rules_command}d"
    else:
        changed = rules.delete(args.rule_id)
        verb = "deleted"

    if not changed:
        print(f"Rule {args.rule_id} not found", file=sys.stderr)
        return 1
    print(f"Rule {args.rule_id} {verb}")
    return 0


def cmd_logs(args: argparse.Namespace) -> int:
    config = _load_config(args)
    audit = AuditRepository(init_db(config))
    entries = audit.get_by_message(args.message) if args.message else audit.get_recent(args.limit)

    for entry in entries:
        rule = entry.rule_key or "-"
        detail = f" {entry.detail}" if entry.detail else ""
        print(f"{entry.created_at} {entry.outcome.value:<8} {entry.message_id} rule={rule}{detail}")
    if not entries:
        print("No log entries.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mailrelay", description="Keyword-routed email relay")
    parser.add_argument("--config", help="Path to app.yml (default: config/app.yml)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("serve", help="Run the HTTP server and scheduler").set_defaults(func=cmd_serve)
    sub.add_parser("run-once", help="Run a single relay cycle and exit").set_defaults(
        func=cmd_run_once
    )
    sub.add_parser("auth", help="Run the OAuth consent flow").set_defaults(func=cmd_auth)

    rules = sub.add_parser("rules", help="Manage forwarding rules")
    rules.set_defaults(func=cmd_rules)
    rules_sub = rules.add_subparsers(dest="rules_command", required=True)
    rules_sub.add_parser("list", help="List all rules")
    add = rules_sub.add_parser("add", help="Add a rule")
    add.add_argument("keyword")
    add.add_argument("target")
    add.add_argument("--disabled", action="store_true", help="Create the rule disabled")
    for name in ("enable", "disable", "delete"):
        rules_sub.add_parser(name, help=f"{name.capitalize()} a rule").add_argument(
            "rule_id", type=int
        )

    logs = sub.add_parser("logs", help="Show the forward audit log")
    logs.add_argument("--message", help="Only entries for this message id")
    logs.add_argument("--limit", type=int, default=50)
    logs.set_defaults(func=cmd_logs)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
