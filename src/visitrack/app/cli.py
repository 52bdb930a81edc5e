from __future__ import annotations

import argparse
import json
import sys
from dataclasses import asdict
from datetime import datetime

from visitrack.app.runner import live, reap, report
from visitrack.core.types import ensure_utc


def _iso(value: str) -> datetime:
    try:
        return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"not an ISO 8601 timestamp: {value!r}") from e


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="visitrack")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_report = sub.add_parser("report", help="Print the analytics report as JSON")
    p_report.add_argument("--config", default="config/visitrack.yaml")
    p_report.add_argument("--start", type=_iso, default=None)
    p_report.add_argument("--end", type=_iso, default=None)

    p_live = sub.add_parser("live", help="Print visitors currently live")
    p_live.add_argument("--config", default="config/visitrack.yaml")

    p_reap = sub.add_parser("reap", help="Deactivate idle and delete expired live visitors")
    p_reap.add_argument("--config", default="config/visitrack.yaml")
    p_reap.add_argument("--watch", action="store_true", help="Keep sweeping on an interval")
    p_reap.add_argument("--until", type=float, default=None, help="Stop watching after N seconds")

    args = parser.parse_args(argv)

    if args.cmd == "report":
        print(json.dumps(report(args.config, args.start, args.end), indent=2))
        return 0

    if args.cmd == "live":
        print(json.dumps(live(args.config), indent=2, default=str))
        return 0

    if args.cmd == "reap":
        result = reap(args.config, watch=args.watch, until=args.until)
        print(json.dumps(asdict(result)))
        return 0

    return 1


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
