"""CLI entry point for the client-side save pipeline."""

from __future__ import annotations

import argparse
import asyncio
import json
from dataclasses import asdict
from typing import Any, Sequence

from .api_client import SaveApiClient
from .config import ClientConfig
from .health_monitor import HealthMonitor
from .logging import setup_logging
from .models import SaveIntent
from .save_pipeline import SavePipeline
from .save_queue import DurableSaveQueue


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="progress-sync-client",
        description="Submit quest progress saves and manage the local save queue.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    submit = sub.add_parser("submit", help="Save a user's full completed-quest set.")
    submit.add_argument("--user-id", required=True, help="User whose progress is saved.")
    submit.add_argument(
        "--item",
        action="append",
        default=[],
        help="Completed quest id (repeatable). Omit to save an empty set.",
    )

    sub.add_parser("status", help="Probe the server once and print the health state.")
    sub.add_parser("flush", help="Replay queued saves now (manual retry).")
    sub.add_parser("queue", help="List queued saves.")

    discard = sub.add_parser("discard", help="Drop a user's queued save.")
    discard.add_argument("--user-id", required=True)
    return parser


async def _run(args: argparse.Namespace, config: ClientConfig) -> int:
    queue = DurableSaveQueue(config.queue_path)
    if args.command == "queue":
        _print({"entries": [e.to_record() for e in queue.entries()]})
        return 0

    async with SaveApiClient(
        config.api_url,
        save_timeout=config.save_timeout_seconds,
        probe_timeout=config.probe_timeout_seconds,
    ) as client:
        monitor = HealthMonitor(client, interval_seconds=config.probe_interval_seconds)
        pipeline = SavePipeline(client, queue, monitor)

        if args.command == "discard":
            _print({"discarded": pipeline.discard_queued(args.user_id)})
            return 0

        state = await monitor.probe()
        await pipeline.wait_for_drain()
        if args.command == "status":
            _print({"health": state.value, "queued": len(queue)})
            return 0

        if args.command == "flush":
            acknowledged = await pipeline.retry_queued()
            _print({"acknowledged": acknowledged, "remaining": len(queue)})
            return 0 if not len(queue) else 1

        result = await pipeline.submit(
            SaveIntent(user_id=args.user_id, completed_item_ids=tuple(args.item))
        )
        _print({
            "accepted": result.accepted,
            "reason": result.reason,
            "outcome": asdict(result.outcome) if result.outcome else None,
            "state": pipeline.state(args.user_id).value,
        })
        return 0 if result.outcome is not None and result.outcome.success else 1


def _print(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def main(argv: Sequence[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)
    config = ClientConfig.from_env()
    setup_logging(config.log_format)
    raise SystemExit(asyncio.run(_run(args, config)))


if __name__ == "__main__":
    main()
