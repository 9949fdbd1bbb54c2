"""Kindness pool CLI: inspect parameters, verify audit logs, simulate a day.

Usage:
    python -m kindness_pool.cli params
    python -m kindness_pool.cli verify-log data/events.jsonl
    python -m kindness_pool.cli simulate --contributors 4 --receivers 3 --reject 1
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

from kindness_pool.access import Role, RoleRegistry
from kindness_pool.config import PARAMS_FILENAME, PoolConfig
from kindness_pool.distribution.transport import InMemoryTransport
from kindness_pool.persistence.event_log import EventLog
from kindness_pool.service import PoolService
from kindness_pool.timing import TimePolicy


DEFAULT_CONFIG = Path(__file__).resolve().parents[2] / "config"

_ADMIN = "admin"
_DISTRIBUTOR = "distributor"


def _load_config(config_dir: Path) -> PoolConfig:
    """Config from <config_dir>/pool_params.json, or defaults if absent."""
    if (config_dir / PARAMS_FILENAME).exists():
        return PoolConfig.from_config_dir(config_dir)
    return PoolConfig()


def cmd_params(args: argparse.Namespace) -> int:
    try:
        config = _load_config(args.config)
    except ValueError as e:
        print(f"Invalid config: {e}", file=sys.stderr)
        return 1
    print(json.dumps(config.to_dict(), indent=2))
    return 0


def cmd_verify_log(args: argparse.Namespace) -> int:
    path: Path = args.path
    if not path.exists():
        print(f"No such file: {path}", file=sys.stderr)
        return 1
    try:
        log = EventLog(storage_path=path)
    except (ValueError, KeyError) as e:
        print(f"Integrity failure: {e}", file=sys.stderr)
        return 1
    print(json.dumps({"event_count": log.count, "by_kind": log.counts_by_kind()}, indent=2))
    return 0


def cmd_simulate(args: argparse.Namespace) -> int:
    config = _load_config(args.config)
    amount = Decimal(args.amount)
    # Fixed clock: noon on an arbitrary day, advanced by hand.
    clock = {"now": datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)}
    time_policy = TimePolicy(config, clock=lambda: clock["now"])

    roles = RoleRegistry(admin=_ADMIN)
    roles.grant(Role.DISTRIBUTOR, _DISTRIBUTOR)
    transport = InMemoryTransport()
    event_log = EventLog(storage_path=args.log) if args.log else None
    service = PoolService(
        config, roles,
        transport=transport,
        time_policy=time_policy,
        event_log=event_log,
    )

    failures: list[str] = []
    for i in range(args.contributors):
        result = service.contribute(f"giver-{i + 1}", amount)
        failures.extend(result.errors)

    receivers = [f"receiver-{i + 1}" for i in range(args.receivers)]
    for receiver in receivers:
        failures.extend(service.enter_receiver_pool(receiver).errors)
    for receiver in receivers[:args.reject]:
        transport.reject(receiver)

    # Jump into tonight's window.
    clock["now"] = clock["now"] + timedelta(hours=11, minutes=30)
    result = service.start_distribution(_DISTRIBUTOR)
    while result.success and not result.data["finalized"]:
        result = service.continue_distribution(_DISTRIBUTOR)
    failures.extend(result.errors)

    summary = {
        "status": service.status(),
        "balances": {r: transport.balance_of(r) for r in receivers},
        "failed_transfers": [
            {"receiver": f.receiver, "amount": f.amount, "retry_count": f.retry_count}
            for f in service.failed_transfers()
        ],
        "errors": failures,
    }
    print(json.dumps(summary, indent=2, default=str))
    return 0 if not failures else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kindness-pool",
        description="Kindness pool: daily contribution pool CLI",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG,
        help="Path to config directory (default: config/)",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Log to stderr at DEBUG level",
    )
    sub = parser.add_subparsers(dest="command")

    # params
    sub.add_parser("params", help="Show the loaded pool parameters")

    # verify-log
    p_verify = sub.add_parser("verify-log", help="Verify a JSONL event log")
    p_verify.add_argument("path", type=Path, help="Path to the event log")

    # simulate
    p_sim = sub.add_parser("simulate", help="Run one in-memory day end to end")
    p_sim.add_argument("--contributors", type=int, default=3, help="Number of givers")
    p_sim.add_argument("--receivers", type=int, default=3, help="Number of receivers")
    p_sim.add_argument("--amount", default="0.1", help="Contribution per giver (Decimal)")
    p_sim.add_argument(
        "--reject", type=int, default=0,
        help="How many receivers refuse their payout",
    )
    p_sim.add_argument("--log", type=Path, help="Append events to this JSONL file")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, stream=sys.stderr)

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "params": cmd_params,
        "verify-log": cmd_verify_log,
        "simulate": cmd_simulate,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
