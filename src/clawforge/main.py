"""Entry point for the clawforge provisioning API."""

import logging
import sys

import structlog

from clawforge.config import settings


def configure_logging(level: str | None = None, json_logs: bool | None = None) -> None:
    """Configure structured logging.

    Console rendering on a TTY, JSON lines otherwise unless ``json_logs`` says so.
    """
    level_name = (level or settings.log_level).upper()
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level_name)
    if json_logs is None:
        json_logs = not sys.stderr.isatty()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def run_server(host: str | None = None, port: int | None = None) -> None:
    """Run the HTTP API.

    Args:
        host: Host to bind to (defaults to settings.server_host)
        port: Port to listen on (defaults to settings.server_port)
    """
    import uvicorn

    from clawforge import __version__
    from clawforge.api.app import create_app

    configure_logging()
    log = structlog.get_logger()

    host = host or settings.server_host
    port = port or settings.server_port

    log.info(
        "Starting clawforge API",
        version=__version__,
        environment=settings.environment,
        host=host,
        port=port,
    )
    uvicorn.run(create_app(), host=host, port=port, log_config=None)


def main() -> None:
    """Main entry point for the server script."""
    run_server()


if __name__ == "__main__":
    main()
