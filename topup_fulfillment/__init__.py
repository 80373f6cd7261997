"""Top-up fulfillment and retry pipeline."""

__version__ = "1.0.0"
