"""Core fulfillment logic."""
from .attempt_lock import AttemptLock
from .fulfillment import FulfillmentOrchestrator, TickOutcome, TickResult
from .job_queue import RedisJobQueue
from .recurring import RecurringRunner, RecurringScanner
from .retry_scheduler import RetryScheduler

__all__ = [
    "AttemptLock",
    "FulfillmentOrchestrator",
    "RecurringRunner",
    "RecurringScanner",
    "RedisJobQueue",
    "RetryScheduler",
    "TickOutcome",
    "TickResult",
]
