"""Configuration package for the top-up fulfillment pipeline."""
from .settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
