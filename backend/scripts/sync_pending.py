"""CLI helper for pushing a station's pending entries to the sync gateway and pulling the rest."""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Any, Dict, List

from skitimer_core import EntryStore, RecentRacesRegistry, SyncClient, TimerConfig


def _format_push(stats: Dict[str, Any]) -> str:
    lines = [f"Push: {stats.get('synced', 0)} synced, {stats.get('remaining', 0)} remaining"]
    for item in stats.get("errors", []) or []:
        lines.append(f"  - {item}")
    if stats.get("retryAfter"):
        lines.append(f"  rate limited, retry in {stats['retryAfter']}s")
    return "\n".join(lines)


def _format_pull(stats: Dict[str, Any]) -> str:
    if stats.get("deleted"):
        return "Pull: race was deleted by an administrator"
    line = f"Pull: {stats.get('added', 0)} added, {stats.get('removed', 0)} removed"
    if stats.get("notModified"):
        line += " (not modified)"
    if stats.get("fromCache"):
        line += " (offline, cached state)"
    if stats.get("error"):
        line += f"\n  - {stats['error']}"
    return line


def main(argv: List[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--race", help="Race id to sync (defaults to SKITIMER_RACE_ID)")
    parser.add_argument("--force", action="store_true", help="Ignore retry backoff")
    parser.add_argument("--push-only", action="store_true", help="Skip pulling remote entries")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)

    try:
        config = TimerConfig.from_env()
        if args.race:
            config.switch_race(args.race)
    except (ValueError, RuntimeError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    try:
        store = EntryStore(config)
        client = SyncClient(config, store, RecentRacesRegistry(config))

        push = client.push_pending(force=args.force)
        print(_format_push(push))

        errors: List[str] = [str(item) for item in push.get("errors", []) or []]
        if not args.push_only:
            pull = client.pull()
            print()
            print(_format_pull(pull))
            if pull.get("error"):
                errors.append(str(pull["error"]))
    finally:
        config.close()

    return 1 if errors else 0


if __name__ == "__main__":
    raise SystemExit(main())
