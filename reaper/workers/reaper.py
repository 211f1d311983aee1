"""Reaper worker: reclaim containers of sessions whose shadow marker expired."""

import signal
import sys

import structlog

from reaper.config import settings
from reaper.service import ReaperService

logger = structlog.get_logger()


def configure_logging(debug: bool) -> None:
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
    )


def main() -> None:
    configure_logging(settings.debug)
    service = ReaperService(settings)

    def _request_stop(signum, frame) -> None:
        logger.info("shutdown_requested", signal=signal.Signals(signum).name)
        service.request_stop()

    signal.signal(signal.SIGTERM, _request_stop)
    signal.signal(signal.SIGINT, _request_stop)

    sys.exit(service.run())


if __name__ == "__main__":
    main()
