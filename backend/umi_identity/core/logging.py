"""Centralized logging configuration using Loguru for the application.

This module configures Loguru and installs an intercept handler so code
that uses the standard library ``logging`` is routed through Loguru. The
log level can be adjusted via the ``LOG_LEVEL`` environment variable.

Every record carries a ``request_id`` extra. Request handling binds it with
``logger.contextualize`` (see :func:`request_context`) so failures deep in
the persistence layer can be correlated with the HTTP request that caused
them.
"""

import logging
import os
import sys
import uuid
from contextlib import contextmanager

from loguru import logger

# NOTE: Allow overriding of log level via environment for runtime control
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Remove any previously configured handlers to avoid duplicate logs
logger.remove()
logger.configure(extra={"request_id": "-"})

logger.add(
    sys.stdout,
    level=LOG_LEVEL,
    format=(
        "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level} | {extra[request_id]} | "
        "{name} | {message}"
    ),
    backtrace=True,
    diagnose=False,
)


class InterceptHandler(logging.Handler):
    """Handler to route stdlib logging records into Loguru.

    This preserves caller information so Loguru logs reflect the originating
    module/line rather than the interception point.
    """

    def emit(
        self, record: logging.LogRecord
    ) -> None:  # pragma: no cover - simple routing
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # NOTE: Walk frames to skip logging internals and find original caller
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(
            level, "{}", record.getMessage()
        )


@contextmanager
def request_context(request_id: str | None = None):
    """Bind a correlation id to every log record emitted inside the block.

    Yields:
        str: The request id in effect (generated when none was supplied).
    """
    request_id = request_id or uuid.uuid4().hex
    with logger.contextualize(request_id=request_id):
        yield request_id


logging.basicConfig(handlers=[InterceptHandler()], level=LOG_LEVEL)

for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "sqlalchemy.engine"):
    logging.getLogger(name).handlers = [InterceptHandler()]
    logging.getLogger(name).propagate = False

logging.getLogger("uvicorn").setLevel(LOG_LEVEL)

# Usage: from core.logging import logger
