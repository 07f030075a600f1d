"""Runtime entrypoint for the workflow scheduler worker."""
from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from contextlib import suppress

from agenda.app.core.bootstrap import build_container
from agenda.app.core.constants import AUTO_CREATE_SCHEMA
from agenda.app.core.db import init_db
from agenda.app.core.logger import setup_logging
import agenda.config as cfg

logger = setup_logging()


async def run_once() -> int:
    container = build_container()
    try:
        result = await container.scheduler.process_scheduled_workflows()
    finally:
        await container.aclose()
    logger.info("Sweep finished: processed=%d errors=%d", result.processed, len(result.errors))
    for err in result.errors:
        logger.warning(err)
    return 0 if result.success else 1


async def main() -> None:
    if AUTO_CREATE_SCHEMA:
        logger.info("[bootstrap] Creating schema from metadata")
        await init_db()

    from agenda.app.workers.workflow_scheduler import start_workflow_scheduler

    container = build_container()
    interval = int(cfg.get_setting("workflow_sweep_interval_seconds", 600))
    stop_scheduler = await start_workflow_scheduler(container.scheduler, interval)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop_event.set)

    logger.info("Worker running (sweep interval=%ss)", interval)
    try:
        await stop_event.wait()
    finally:
        logger.info("Shutting down worker")
        await stop_scheduler()
        await container.aclose()


def cli() -> None:
    parser = argparse.ArgumentParser(description="Agenda workflow worker")
    parser.add_argument("--once", action="store_true", help="run a single sweep and exit (for external cron)")
    args = parser.parse_args()
    if args.once:
        sys.exit(asyncio.run(run_once()))
    with suppress(KeyboardInterrupt):
        asyncio.run(main())


if __name__ == "__main__":
    cli()
