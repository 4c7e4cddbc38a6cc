"""
Loguru setup shared by the CLI and any service embedding the workflow.
"""

import sys

from loguru import logger

from .config import settings


def setup_logging(level: str | None = None, json_logs: bool | None = None):
    """
    Replace loguru's default sink with a single configured stderr sink.

    Args:
        level: Minimum level (defaults to LOG_LEVEL)
        json_logs: Emit one JSON object per line (defaults to LOG_JSON)

    Returns:
        The configured loguru logger
    """
    logger.remove()
    logger.add(
        sys.stderr,
        level=(level or settings.log_level).upper(),
        serialize=settings.log_json if json_logs is None else json_logs,
        backtrace=False,
        diagnose=False,
    )
    return logger
