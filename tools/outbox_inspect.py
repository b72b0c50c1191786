#!/usr/bin/env python3
"""
Inspect and repair the check-in outbox.

  python tools/outbox_inspect.py stats
  python tools/outbox_inspect.py dead --limit 20
  python tools/outbox_inspect.py requeue [EVENT_ID]

The database path comes from ``--db`` or ``CHECKIN_OUTBOX_DB_PATH``.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import List

from dotenv import load_dotenv

from checkin_edge.events.outbox import Outbox, load_outbox_settings


def parse_args(argv: List[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Check-in outbox inspection")
    parser.add_argument("--db", type=str, default=None, help="Outbox database path")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("stats", help="Row counts per status")
    dead = sub.add_parser("dead", help="List dead-lettered events")
    dead.add_argument("--limit", type=int, default=50)
    requeue = sub.add_parser("requeue", help="Move dead events back to pending")
    requeue.add_argument("event_id", nargs="?", default=None)
    return parser.parse_args(argv)


def main(argv: List[str] | None = None) -> int:
    load_dotenv()
    args = parse_args(argv if argv is not None else sys.argv[1:])
    settings = load_outbox_settings()
    db_path = Path(args.db) if args.db else settings.db_path
    if not db_path.exists():
        print(f"Outbox database {db_path} not found", file=sys.stderr)
        return 1
    outbox = Outbox(db_path, max_queue=settings.max_queue, max_attempts=settings.max_attempts)
    try:
        if args.command == "stats":
            print(json.dumps(outbox.stats(), indent=2))
        elif args.command == "dead":
            print(json.dumps(outbox.dead_letters(limit=args.limit), indent=2))
        elif args.command == "requeue":
            count = outbox.requeue_dead(args.event_id)
            print(f"Requeued {count} event(s)")
    finally:
        outbox.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
