import logging
from typing import Any

import structlog

STEP_START = "step-start"
INFO = "info"
WARN = "warn"
ERROR = "error"


def configure_logging(level: int | str = logging.INFO, json_output: bool = True) -> None:
    """Configure structlog/standard logging bridge."""

    timestamper = structlog.processors.TimeStamper(fmt="iso", utc=True)
    renderer: Any = (
        structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            timestamper,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(level=level, format="%(message)s")


def bind_context(**kwargs: Any) -> structlog.stdlib.BoundLogger:
    """Bind contextual fields for downstream logs."""

    logger = structlog.get_logger()
    return logger.bind(**kwargs)


class StepEvents:
    """Emits the step-start/info/warn/error events of a provisioning run.

    Every event carries an ``event_kind`` field so downstream log consumers can
    follow the run step by step without parsing event names.
    """

    def __init__(self, log: Any | None = None) -> None:
        self._log = log if log is not None else structlog.get_logger()

    def bind(self, **kwargs: Any) -> "StepEvents":
        return StepEvents(self._log.bind(**kwargs))

    def step_start(self, event: str, **fields: Any) -> None:
        self._log.info(event, event_kind=STEP_START, **fields)

    def info(self, event: str, **fields: Any) -> None:
        self._log.info(event, event_kind=INFO, **fields)

    def warn(self, event: str, **fields: Any) -> None:
        self._log.warning(event, event_kind=WARN, **fields)

    def error(self, event: str, **fields: Any) -> None:
        self._log.error(event, event_kind=ERROR, **fields)
