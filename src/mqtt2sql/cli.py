"""Command line entry point."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
from collections.abc import Sequence

from mqtt2sql import __version__
from mqtt2sql._redact import redact_for_log
from mqtt2sql.config import BridgeConfig
from mqtt2sql.exceptions import Mqtt2SqlError
from mqtt2sql.pipeline import BridgeErrorSignal, PipelineOrchestrator

_LOG = logging.getLogger("mqtt2sql")

DEFAULT_CONFIG = "mqtt2sql.ini"


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="mqtt2sql",
        description="Subscribes to a MQTT broker and stores sensor values in a SQL database.",
    )
    parser.add_argument(
        "-c",
        "--config",
        default=DEFAULT_CONFIG,
        help=f"Path to the config file (default: {DEFAULT_CONFIG})",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Log level (default: INFO, or DEBUG with --verbose)",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def _print_signal(error: BridgeErrorSignal) -> None:
    print(error.message, file=sys.stderr)


async def _run(config: BridgeConfig) -> int:
    orchestrator = PipelineOrchestrator(config, on_error=_print_signal)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not available on Windows event loops.
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, orchestrator.request_stop)
    return await orchestrator.run()


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    level = args.log_level or ("DEBUG" if args.verbose else "INFO")
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = BridgeConfig.from_ini(args.config)
        _LOG.debug("Configuration loaded: %s", redact_for_log(config))
        return asyncio.run(_run(config))
    except Mqtt2SqlError as exc:
        print(exc, file=sys.stderr)
        return exc.exit_code or 1
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
