"""CLI entry point for the analytics ingestion runner."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from typing import List, Optional, Sequence

from analytics_ingest.bootstrap import IngestionService, build_service
from analytics_ingest.errors import PipelineNotFoundError

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Analytics ingestion runner (telemetry -> derived analytics)")
    p.add_argument("--once", action="store_true", help="run a single tick per pipeline and exit")
    p.add_argument(
        "--pipeline",
        action="append",
        dest="pipelines",
        metavar="NAME",
        help="restrict to this pipeline (repeatable); default is every registered pipeline",
    )
    p.add_argument("--ensure-schema", action="store_true", help="create missing tables before running")
    p.add_argument("--log-level", default="INFO")
    return p


async def run_once(service: IngestionService, names: Optional[Sequence[str]] = None) -> int:
    """One tick per selected pipeline, sequentially. Returns the number of failures."""
    orchestrator = service.orchestrator
    selected: List[str] = list(names) if names else [p.name for p in orchestrator.pipelines]
    failures = 0
    for name in selected:
        try:
            await orchestrator.run_pipeline(name)
        except PipelineNotFoundError as e:
            logger.error("cli_unknown_pipeline %s", e)
            failures += 1
        except Exception as e:
            logger.error("cli_pipeline_failed pipeline=%s err=%s", name, e)
            failures += 1
    return failures


async def run_forever(service: IngestionService, stop_event: Optional[asyncio.Event] = None) -> None:
    stop_event = stop_event or asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Windows / non-main thread: Ctrl+C still raises KeyboardInterrupt
            pass

    await service.orchestrator.start()
    logger.info("Analytics ingestion runner started pipelines=%d", len(service.orchestrator.pipelines))
    try:
        await stop_event.wait()
    finally:
        await service.orchestrator.stop()
        logger.info("Analytics ingestion runner stopped")


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler()],
    )

    service = build_service(create_schema=bool(args.ensure_schema))
    try:
        if args.once:
            failures = asyncio.run(run_once(service, args.pipelines))
            return 1 if failures else 0

        if args.pipelines:
            logger.warning("--pipeline is only honoured together with --once; scheduling all pipelines")
        try:
            asyncio.run(run_forever(service))
        except KeyboardInterrupt:
            logger.info("Interrupted")
        return 0
    finally:
        service.close()


if __name__ == "__main__":
    raise SystemExit(main())
