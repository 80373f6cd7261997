"""
Recurring top-up worker.

Scans for due schedules on a fixed interval and runs the resulting run jobs.
"""
import asyncio
import signal
from typing import Any, Optional

import structlog

from topup_fulfillment.config import get_settings
from topup_fulfillment.core.job_queue import Job
from topup_fulfillment.core.recurring import RecurringRunner, RecurringRunResult, RecurringScanner
from topup_fulfillment.monitoring.logging import bind_worker_context, setup_logging
from topup_fulfillment.services import build_services
from topup_fulfillment.workers.job_loop import JobLoop

logger = structlog.get_logger(__name__)


def make_run_handler(runner: RecurringRunner) -> Any:
    async def handle(job: Job) -> RecurringRunResult:
        return await runner.run(job.data["schedule_id"], due_at_ms=job.data.get("due_at_ms"))

    return handle


async def scan_periodically(
    scanner: RecurringScanner, interval_seconds: float, is_running: Any
) -> None:
    """Run the scanner every ``interval_seconds`` until ``is_running()`` is False."""
    while is_running():
        try:
            await scanner.scan()
        except Exception as e:
            logger.error("recurring_scan_failed", error=str(e))

        waited = 0.0
        while waited < interval_seconds and is_running():
            step = min(1.0, interval_seconds - waited)
            await asyncio.sleep(step)
            waited += step


async def start_recurring_worker(
    scan_interval: Optional[int] = None, concurrency: Optional[int] = None
) -> None:
    """
    Start the recurring scanner and run-job loop.

    Runs until SIGINT/SIGTERM.
    """
    settings = get_settings()
    setup_logging(settings)
    services = build_services(settings)
    bind_worker_context("recurring", services.recurring_queue.name)

    interval = scan_interval or settings.recurring_scan_interval_seconds
    run_loop = JobLoop(
        services.recurring_queue,
        make_run_handler(services.recurring_runner),
        concurrency=concurrency or settings.recurring_run_concurrency,
        poll_interval_seconds=settings.topup_worker_poll_interval,
        # A run is an authorization followed by a full tick
        stalled_after_ms=int(
            (settings.stripe_call_budget_seconds + settings.tick_budget_seconds) * 2 * 1000
        ),
    )

    logger.info(
        "recurring_worker_starting",
        scan_interval_seconds=interval,
        concurrency=run_loop.concurrency,
    )

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("recurring_worker_shutdown_signal_received", signal=sig)
        run_loop.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    run_loop.running = True
    try:
        await asyncio.gather(
            scan_periodically(services.recurring_scanner, interval, lambda: run_loop.running),
            run_loop.run_forever(),
        )
    finally:
        await services.aclose()
        logger.info("recurring_worker_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Recurring top-up worker")
    parser.add_argument(
        "--scan-interval", type=int, default=None, help="Seconds between due-schedule scans"
    )
    parser.add_argument("--concurrency", type=int, default=None, help="Parallel runs")
    args = parser.parse_args()

    asyncio.run(start_recurring_worker(scan_interval=args.scan_interval, concurrency=args.concurrency))


if __name__ == "__main__":
    main()
