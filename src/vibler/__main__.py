"""
Entry point for running the Vibler service.

Usage:
    # Run with config.yaml from the working directory
    python -m vibler

    # Custom config file and port
    python -m vibler --config /etc/vibler/config.yaml --port 9000

    # Validate configuration and exit
    python -m vibler --check-config
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from aiohttp import web
from dotenv import load_dotenv

from vibler.api.app import create_app
from vibler.config import load_config
from vibler.errors.exceptions import ConfigurationError
from vibler.logging.setup import setup_logging
from vibler.logging.utilities import get_logger, log_exception

# Placeholder logger until setup_logging() is called in main()
logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Run the Vibler API service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to YAML config file (default: ./config.yaml)",
    )

    parser.add_argument(
        "--host",
        default=None,
        help="Bind address (overrides config)",
    )

    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Bind port (overrides config)",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Console logging level (overrides config)",
    )

    parser.add_argument(
        "--log-dir",
        type=Path,
        default=None,
        help="Directory for log files (overrides config)",
    )

    parser.add_argument(
        "--check-config",
        action="store_true",
        help="Validate configuration and exit",
    )

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point.

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    global logger

    # Load environment variables from .env file
    load_dotenv()

    args = parse_args(argv)

    overrides: dict = {}
    if args.host:
        overrides.setdefault("server", {})["host"] = args.host
    if args.port:
        overrides.setdefault("server", {})["port"] = args.port
    if args.log_level:
        overrides.setdefault("logging", {})["level"] = args.log_level
    if args.log_dir:
        overrides.setdefault("logging", {})["log_dir"] = str(args.log_dir)

    config = load_config(args.config, overrides)

    setup_logging(
        name="vibler",
        log_dir=Path(config.logging.log_dir),
        json_format=config.logging.json_format,
        console_level=config.logging.level_value,
        log_to_file=config.logging.log_to_file and not args.check_config,
    )

    # Re-get logger after setup to use new handlers
    logger = get_logger(__name__)

    errors = config.validate()
    if errors:
        for error in errors:
            logger.error(f"Configuration error: {error}")
        return 1

    if args.check_config:
        logger.info("Configuration is valid")
        return 0

    try:
        app = create_app(config)
    except ConfigurationError as e:
        log_exception(logger, e, "Failed to create application", include_traceback=False)
        return 1

    logger.info(
        f"Starting Vibler API on {config.server.host}:{config.server.port} "
        f"(environment={config.environment})"
    )
    web.run_app(app, host=config.server.host, port=config.server.port, print=None)
    logger.info("Vibler API stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
