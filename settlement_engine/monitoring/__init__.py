"""Monitoring and observability package."""
from . import metrics
from .logging import bind_run_context, setup_logging

__all__ = ["bind_run_context", "metrics", "setup_logging"]
