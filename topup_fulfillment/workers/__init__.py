"""Background workers for retries and recurring top-ups."""
from .recurring_worker import start_recurring_worker
from .topup_worker import start_topup_worker

__all__ = ["start_recurring_worker", "start_topup_worker"]
