"""Run the license service: ``python -m iap_license`` or ``iap-license``."""

import argparse
import os
import sys
from typing import Optional, Sequence

import uvicorn

from iap_license import __version__
from iap_license.config import Config, ConfigurationError
from iap_license.logging_config import configure_logging, get_logger

logger = get_logger(__name__)

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="iap-license",
        description="Purchase verification, scan quota and bearer tokens for Google Play purchases",
    )
    parser.add_argument("--config", default=os.getenv("CONFIG_PATH", "config/license.yaml"),
                        help="license.yaml to load (env CONFIG_PATH)")
    parser.add_argument("--host", default=os.getenv("HOST", "0.0.0.0"), help="Bind address (env HOST)")
    parser.add_argument("--port", type=int, default=int(os.getenv("PORT", "8080")), help="Bind port (env PORT)")
    parser.add_argument("--log-level", choices=LOG_LEVELS, default=os.getenv("LOG_LEVEL", "INFO").upper())
    parser.add_argument("--log-format", choices=["json", "console"], default=os.getenv("LOG_FORMAT", "json"))
    parser.add_argument("--reload", action="store_true",
                        default=os.getenv("RELOAD", "false").lower() == "true",
                        help="Restart on code changes (development only)")
    parser.add_argument("--check-config", action="store_true",
                        help="Validate the configuration and exit")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(log_level=args.log_level, json_format=args.log_format == "json")

    # Fail before binding the port rather than inside the app factory
    try:
        config = Config(args.config)
    except ConfigurationError as e:
        logger.error("configuration_invalid", config_path=args.config, error=str(e))
        sys.exit(2)

    logger.info(
        "configuration_loaded",
        config_path=str(config.config_path),
        package_name=config.package_name,
        products=len(config.products),
        storage_backend=config.storage.backend,
        debug=config.service.debug,
    )
    if args.check_config:
        return

    # create_app runs inside uvicorn and reads these
    os.environ["CONFIG_PATH"] = args.config
    os.environ["LOG_LEVEL"] = args.log_level
    os.environ["LOG_FORMAT"] = args.log_format

    logger.info("server_starting", version=__version__, host=args.host, port=args.port, reload=args.reload)
    try:
        uvicorn.run(
            "iap_license.main:create_app",
            factory=True,
            host=args.host,
            port=args.port,
            log_level=args.log_level.lower(),
            reload=args.reload,
            access_log=False,  # RequestLoggingMiddleware logs every request
        )
    except KeyboardInterrupt:
        logger.info("server_interrupted")


if __name__ == "__main__":
    main()
