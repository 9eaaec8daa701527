from __future__ import annotations

import argparse
import asyncio
import json
import sys

from notiflow.core.logging import configure_logging
from notiflow.persistence.db import SessionLocal, dispose_engine
from notiflow.services.notifications.messages import publish_enqueue_request
from notiflow.services.notifications.scheduler import enqueue_message


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Fan a notification message out to its recipients")
    parser.add_argument("message_id", help="Notification message identifier")
    parser.add_argument(
        "--via-worker",
        action="store_true",
        help="Publish an enqueue job to the arq worker instead of fanning out inline",
    )
    return parser


async def _enqueue(args: argparse.Namespace) -> int:
    if args.via_worker:
        published = await publish_enqueue_request(args.message_id)
        print(json.dumps({"message_id": args.message_id, "published": published}))
        return 0 if published else 1
    async with SessionLocal() as session:
        result = await enqueue_message(session=session, message_id=args.message_id)
    await dispose_engine()
    print(json.dumps({"message_id": args.message_id, **result}))
    return 1 if result["status"] == "missing" else 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_enqueue(args))
    except Exception as exc:  # noqa: BLE001 - show full operator-facing error context.
        print(f"enqueue_message failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
