"""Structured JSON logging shared by every snaptree module.

Events are rendered one JSON object per line. Values bound with
:func:`structlog.contextvars.bind_contextvars` (the pipeline binds ``stage``
while a stage runs) are merged into every event logged in the same context.
File bodies never reach the log: keys that carry loaded content are masked
before rendering.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from collections.abc import MutableMapping
    from pathlib import Path

LEVEL_ENV = "SNAPTREE_LOG_LEVEL"
CONTENT_KEYS = frozenset({"content", "text", "line"})

_LOGGING_CONFIGURED = False


def _level(value: int | str | None) -> int:
    if value is None:
        value = os.environ.get(LEVEL_ENV, "INFO")
    if isinstance(value, int):
        return value
    resolved = logging.getLevelName(value.strip().upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def mask_content(_: Any, __: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:  # noqa: ANN401
    """Replace file bodies with their length so that logs cannot leak secrets."""
    for key in CONTENT_KEYS.intersection(event_dict):
        value = event_dict[key]
        if isinstance(value, str):
            event_dict[key] = f"<{len(value)} chars>"
    return event_dict


def setup_logging(filename: str | Path | None = None, level: int | str | None = None) -> structlog.BoundLogger:
    """Configure stdlib logging and structlog once per process.

    Args:
        filename: Optional path to a log file. If None, logs are written to stderr.
        level: Minimum level, as a number or a name; defaults to ``$SNAPTREE_LOG_LEVEL`` or INFO.

    Returns:
        The ``snaptree`` logger.
    """
    global _LOGGING_CONFIGURED  # noqa: PLW0603
    if not _LOGGING_CONFIGURED:
        threshold = _level(level)
        handler: logging.Handler = (
            logging.FileHandler(str(filename), encoding="utf-8") if filename else logging.StreamHandler(sys.stderr)
        )
        logging.basicConfig(level=threshold, handlers=[handler], format="%(message)s")
        structlog.configure(
            processors=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.TimeStamper(fmt="iso", utc=True),
                structlog.processors.add_log_level,
                mask_content,
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(sort_keys=True),
            ],
            wrapper_class=structlog.make_filtering_bound_logger(threshold),
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )
        _LOGGING_CONFIGURED = True

    return structlog.get_logger("snaptree")


logger = setup_logging()
