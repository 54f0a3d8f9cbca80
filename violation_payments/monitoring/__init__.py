"""Monitoring and observability package."""
from .logging import setup_logging
from . import metrics

__all__ = ["metrics", "setup_logging"]
