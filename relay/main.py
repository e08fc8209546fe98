"""Main application entry point for the media relay."""

import argparse
import asyncio
import logging
import signal
import sys
from datetime import datetime
from pathlib import Path

import structlog

from relay import __version__
from relay.config import RelayConfig, SystemSettings
from relay.core.errors import BindError, ConfigError
from relay.core.transcoder import sox_available
from relay.server import RelayServer


def setup_logging(system: SystemSettings) -> None:
    """Configure structured logging with optional file output."""
    log_level = getattr(logging, system.log_level.upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    log_file = None
    if system.log_dir:
        log_dir = Path(system.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_file = log_dir / f"vapi-relay_{timestamp}.log"
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(
        format="%(message)s",
        level=log_level,
        handlers=handlers,
        force=True
    )

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if system.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if log_file is not None:
        structlog.get_logger(__name__).info(f"Logging to file: {log_file}")


def check_prerequisites(config: RelayConfig) -> None:
    """Validate everything that must hold before the socket is opened.

    Raises:
        ConfigError: If credentials are missing or sox is required but absent
    """
    config.validate_credentials()

    if config.audio.transcoder == "sox" and not sox_available():
        raise ConfigError("SoX is not installed; install it or use AUDIO_TRANSCODER=soxr")


async def main(config: RelayConfig) -> None:
    """Run the relay until SIGINT/SIGTERM."""
    logger = structlog.get_logger(__name__)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            logger.warning("Signal handler not supported", signal=sig.name)

    server = RelayServer(config)
    try:
        await server.start()
        logger.info("Bridging telephony <-> assistant, waiting for connections...")
        await stop_event.wait()
        logger.info("Shutdown signal received")
    finally:
        await server.shutdown()


def build_parser() -> argparse.ArgumentParser:
    """Build the command line parser."""
    parser = argparse.ArgumentParser(
        description="Media relay: bridges telephony WebSocket audio to a voice assistant"
    )
    parser.add_argument("--host", help="Listening address (RELAY_HOST)")
    parser.add_argument("--port", type=int, help="Listening port (PORT)")
    parser.add_argument("--log-level", help="Log level (LOG_LEVEL)")
    parser.add_argument(
        "--log-format",
        choices=["console", "json"],
        help="Log renderer (LOG_FORMAT)"
    )
    parser.add_argument(
        "--transcoder",
        choices=["soxr", "sox"],
        help="Resampling backend (AUDIO_TRANSCODER)"
    )
    parser.add_argument(
        "--pending-policy",
        choices=["drop", "buffer"],
        help="Caller audio handling before the assistant is ready (AUDIO_PENDING_POLICY)"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}"
    )
    return parser


def apply_overrides(config: RelayConfig, args: argparse.Namespace) -> RelayConfig:
    """Apply command line overrides on top of environment settings."""
    server = {k: v for k, v in (("host", args.host), ("port", args.port)) if v is not None}
    system = {
        k: v for k, v in (("log_level", args.log_level), ("log_format", args.log_format))
        if v is not None
    }
    audio = {
        k: v for k, v in (("transcoder", args.transcoder), ("pending_policy", args.pending_policy))
        if v is not None
    }
    # Rebuild rather than model_copy so overrides go through validation
    return RelayConfig(
        vapi=config.vapi,
        server=type(config.server)(**{**config.server.model_dump(), **server}),
        audio=type(config.audio)(**{**config.audio.model_dump(), **audio}),
        system=type(config.system)(**{**config.system.model_dump(), **system}),
    )


def cli() -> None:
    """CLI entry point."""
    args = build_parser().parse_args()

    try:
        config = apply_overrides(RelayConfig.load(), args)
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config.system)
    logger = structlog.get_logger(__name__)
    logger.info("Media relay starting", version=__version__)

    try:
        check_prerequisites(config)
    except ConfigError as e:
        logger.error("Invalid configuration", error=str(e))
        sys.exit(1)

    try:
        asyncio.run(main(config))
    except BindError as e:
        logger.error("Cannot start relay", error=str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Shutdown complete")
        sys.exit(0)
    except Exception as e:
        logger.error("Fatal error", error=str(e), exc_info=True)
        sys.exit(1)

    logger.info("Shutdown complete")


if __name__ == "__main__":
    cli()
