"""Command line entry point: ``etag-watch``."""

import argparse
import sys
from typing import List, Optional

import structlog
import uvicorn

from ..config import ConfigError, check_startup_requirements, load_config
from ..logging_setup import configure_logging
from .app import create_app


logger = structlog.get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="etag-watch", description="Watch a URL's ETag and push changes to subscribers.")
    parser.add_argument("--config", help="Path to YAML config (default: $WATCH_CONFIG or config/watch.yaml)")
    parser.add_argument("--log-level", help="Override logging level")
    parser.add_argument("--host", help="Bind address")
    parser.add_argument("--port", type=int, help="Bind port")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point with argument handling."""
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    if args.log_level:
        config.logging.level = args.log_level
    if args.host:
        config.server.host = args.host
    if args.port:
        config.server.port = args.port

    configure_logging(config.logging)

    try:
        check_startup_requirements(config)
    except ConfigError as e:
        logger.error("Refusing to start", error=str(e))
        return 2

    logger.info("Starting watcher web server", host=config.server.host, port=config.server.port)
    uvicorn.run(
        create_app(config),
        host=config.server.host,
        port=config.server.port,
        log_level=config.logging.level.lower(),
        timeout_graceful_shutdown=int(config.server.shutdown_grace_seconds) or None,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
