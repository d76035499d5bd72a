"""Utility helpers shared by the driver and its command line."""

from .logging import get_log_path, setup_logging

__all__ = ["setup_logging", "get_log_path"]
