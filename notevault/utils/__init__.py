"""Shared utilities"""

from notevault.utils.structured_logging import JSONFormatter, setup_logging

__all__ = ["JSONFormatter", "setup_logging"]
