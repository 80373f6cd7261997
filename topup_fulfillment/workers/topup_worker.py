"""
Top-up retry worker.

Runs scheduled delivery retries as they become due.
"""
import asyncio
import signal
from typing import Any, Optional

import structlog

from topup_fulfillment.config import get_settings
from topup_fulfillment.core.fulfillment import FulfillmentOrchestrator, TickOutcome
from topup_fulfillment.core.job_queue import Job
from topup_fulfillment.monitoring.logging import bind_worker_context, setup_logging
from topup_fulfillment.services import Services, build_services
from topup_fulfillment.workers.job_loop import JobLoop

logger = structlog.get_logger(__name__)


def make_topup_handler(orchestrator: FulfillmentOrchestrator) -> Any:
    """Build the job handler that turns a retry job into one tick."""

    async def handle(job: Job) -> TickOutcome:
        data = job.data
        return await orchestrator.run_tick(
            data["order_id"],
            data["order_line_id"],
            try_number=int(data.get("try", 1)),
            payment_provider=data.get("payment_provider") or "stripe",
            payment_ref=data.get("payment_provider_ref"),
        )

    return handle


def build_topup_loop(services: Services, concurrency: Optional[int] = None) -> JobLoop:
    settings = services.settings
    return JobLoop(
        services.topup_queue,
        make_topup_handler(services.orchestrator),
        concurrency=concurrency or settings.topup_worker_concurrency,
        poll_interval_seconds=settings.topup_worker_poll_interval,
        stalled_after_ms=settings.attempt_lock_ttl_seconds * 2 * 1000,
    )


async def start_topup_worker(concurrency: Optional[int] = None) -> None:
    """
    Start the top-up retry worker.

    Runs until SIGINT/SIGTERM.
    """
    settings = get_settings()
    setup_logging(settings)
    services = build_services(settings)
    loop = build_topup_loop(services, concurrency)
    bind_worker_context("topup", services.topup_queue.name)

    logger.info("topup_worker_starting", concurrency=loop.concurrency)

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("topup_worker_shutdown_signal_received", signal=sig)
        loop.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await loop.run_forever()
    finally:
        await services.aclose()
        logger.info("topup_worker_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Top-up retry worker")
    parser.add_argument(
        "--concurrency", type=int, default=None, help="Parallel delivery ticks"
    )
    args = parser.parse_args()

    asyncio.run(start_topup_worker(concurrency=args.concurrency))


if __name__ == "__main__":
    main()
