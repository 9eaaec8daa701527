from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timezone
import json
import sys

from notiflow.persistence.db import SessionLocal, dispose_engine
from notiflow.services.notifications.rollup import deliverability_metrics


def _parse_ts(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _build_parser() -> argparse.ArgumentParser:
    # Keep reports scoped to one tenant to avoid accidental cross-tenant operator exposure.
    parser = argparse.ArgumentParser(description="Print deliverability totals for a tenant")
    parser.add_argument("--tenant", required=True, help="Tenant identifier")
    parser.add_argument("--school", default=None, help="Restrict to one school")
    parser.add_argument("--channel", default=None, choices=["email", "sms", "push"])
    parser.add_argument("--start", type=_parse_ts, default=None, help="ISO-8601 lower bound")
    parser.add_argument("--end", type=_parse_ts, default=None, help="ISO-8601 upper bound")
    return parser


async def _report(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        metrics = await deliverability_metrics(
            session=session,
            tenant_id=args.tenant,
            school_id=args.school,
            start=args.start,
            end=args.end,
            channel=args.channel,
        )
    await dispose_engine()
    print(json.dumps(metrics, indent=2, sort_keys=True))
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_report(args))
    except Exception as exc:  # noqa: BLE001 - show full operator-facing error context.
        print(f"deliverability_report failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
