"""Command line entry point.

Usage:
    python -m stacks_alert_pipeline init-db
    python -m stacks_alert_pipeline ingest payload1.json [payload2.json ...]
    python -m stacks_alert_pipeline retry --grace-minutes 5
    python -m stacks_alert_pipeline replay [--limit 50] [PAYLOAD_ID ...]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from datetime import timedelta
from pathlib import Path

from stacks_alert_pipeline.config import get_settings
from stacks_alert_pipeline.pipeline import PayloadProcessingError, Pipeline

logger = logging.getLogger(__name__)


async def _init_db(pipeline: Pipeline) -> int:
    await pipeline.init_schema()
    logger.info("Database schema created")
    return 0


async def _ingest(pipeline: Pipeline, files: list[Path]) -> int:
    failures = 0
    for path in files:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            result = await pipeline.process_json(data, source=str(path))
        except (OSError, ValueError) as e:
            logger.error("Cannot read payload %s: %s", path, e)
            failures += 1
            continue
        except PayloadProcessingError as e:
            logger.error("Payload %s was not processed: %s", path, e)
            failures += 1
            continue
        logger.info(
            "%s: %d applied, %d restored, %d duplicate, %d rolled back, %d notification(s)",
            path.name,
            result.applied_blocks,
            result.restored_blocks,
            result.duplicate_blocks,
            result.rolled_back_blocks,
            len(result.notifications),
        )
    return 1 if failures else 0


async def _retry(pipeline: Pipeline, grace_minutes: float) -> int:
    summary = await pipeline.retry_pending(grace=timedelta(minutes=grace_minutes))
    logger.info(
        "Retry finished: %d sent, %d failed, %d dead-lettered, %d skipped",
        summary.sent,
        summary.failed,
        summary.dead_lettered,
        summary.skipped,
    )
    return 0


async def _replay(pipeline: Pipeline, payload_ids: list[int], limit: int) -> int:
    if not payload_ids:
        payload_ids = [p.id for p in await pipeline.list_failed_payloads(limit=limit)]
        logger.info("%d failed payload(s) found", len(payload_ids))

    failures = 0
    for payload_id in payload_ids:
        try:
            result = await pipeline.replay_payload(payload_id)
        except (ValueError, PayloadProcessingError) as e:
            logger.error("Payload %d was not replayed: %s", payload_id, e)
            failures += 1
            continue
        logger.info(
            "Payload %d: %d applied, %d duplicate, %d rolled back, %d notification(s)",
            payload_id,
            result.applied_blocks,
            result.duplicate_blocks,
            result.rolled_back_blocks,
            len(result.notifications),
        )
    return 1 if failures else 0


async def _run(args: argparse.Namespace) -> int:
    async with Pipeline(dry_run=args.dry_run or None) as pipeline:
        if args.command == "init-db":
            return await _init_db(pipeline)
        if args.command == "ingest":
            return await _ingest(pipeline, args.files)
        if args.command == "replay":
            return await _replay(pipeline, args.payload_ids, args.limit)
        return await _retry(pipeline, args.grace_minutes)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stacks-alert-pipeline",
        description="Ingest Stacks block payloads, match alert rules and deliver notifications",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Log notifications instead of delivering them",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create the database schema")

    ingest = subparsers.add_parser("ingest", help="Process payload JSON files")
    ingest.add_argument("files", nargs="+", type=Path, help="Payload files, processed in order")

    retry = subparsers.add_parser("retry", help="Re-drive undelivered notifications")
    retry.add_argument(
        "--grace-minutes",
        type=float,
        default=5.0,
        help="Only retry notifications triggered at least this long ago (default: 5)",
    )

    replay = subparsers.add_parser("replay", help="Re-process archived payloads that failed")
    replay.add_argument("payload_ids", nargs="*", type=int, help="Archived payload ids (default: every FAILED payload)")
    replay.add_argument(
        "--limit",
        type=int,
        default=100,
        help="Maximum number of payloads to replay when no ids are given (default: 100)",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.debug("Settings: %s", settings.redacted_summary())
    return asyncio.run(_run(args))


if __name__ == "__main__":
    sys.exit(main())
