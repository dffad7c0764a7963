"""Standalone runner: start the core binary and keep it running.

Usage:
    lc-core-harness [--ready-pattern REGEX] [--timeout-ms N] [--quiet] [-- ARGS...]

The binary is launched with the same configuration the tests use, its output
is shown live (unless --quiet), and it is stopped on Ctrl+C / SIGTERM.
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import signal
import sys
from collections.abc import Sequence

from .config import Config, get_config
from .errors import HarnessError
from .harness import launch_core
from .runtime.readiness import DEFAULT_READINESS_PATTERN
from .runtime.supervisor import IS_WINDOWS

__all__ = ["main", "run_core", "build_parser", "configure_logging"]

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lc-core-harness",
        description="Launch the lc-core binary and supervise it until interrupted.",
    )
    parser.add_argument(
        "--ready-pattern",
        default=DEFAULT_READINESS_PATTERN,
        help="regex marking readiness in the output",
    )
    parser.add_argument(
        "--timeout-ms",
        type=int,
        default=None,
        help="readiness timeout (default: LC_CORE_SPAWN_TIMEOUT_MS or 10000)",
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="buffer the core output instead of showing it",
    )
    parser.add_argument("args", nargs="*", help="arguments passed to the binary (after --)")
    return parser


def configure_logging(config: Config) -> None:
    """Send harness logs to stderr; third-party loggers stay at WARNING."""
    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(
        logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    )
    logging.basicConfig(
        level=logging.WARNING,
        handlers=[stderr_handler],
    )
    log_level = logging.DEBUG if config.debug_mode else logging.INFO
    logging.getLogger("lc_core_harness").setLevel(log_level)


def _exit_status(code: int | None) -> int:
    if code is None:
        return 0
    # asyncio reports signal deaths as negative codes
    return 128 - code if code < 0 else code


async def run_core(
    config: Config,
    *,
    args: Sequence[str] = (),
    ready_pattern: str = DEFAULT_READINESS_PATTERN,
    timeout_ms: int | None = None,
) -> int:
    """Run the core until it exits or a stop signal arrives.

    Returns:
        0 when stopped on request, otherwise the core's exit status
    """
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    installed: list[int] = []

    if not IS_WINDOWS:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)
            installed.append(sig)

    try:
        async with launch_core(
            config,
            args=args,
            ready_pattern=ready_pattern,
            timeout_ms=timeout_ms,
        ) as handle:
            logger.info(f"Core pid={handle.pid} running, press Ctrl+C to stop")

            exit_task = asyncio.create_task(handle.process.wait())
            stop_task = asyncio.create_task(stop.wait())
            done, pending = await asyncio.wait(
                {exit_task, stop_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

            if stop_task in done:
                logger.info("Stop requested, shutting down core")
            else:
                logger.warning(f"Core pid={handle.pid} exited on its own")

        if handle.stop_requested:
            return 0
        return _exit_status(handle.exit_code)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


def main(argv: Sequence[str] | None = None) -> int:
    """Console entry point."""
    options = build_parser().parse_args(argv)
    config = get_config()
    if not options.quiet:
        config = dataclasses.replace(config, display_log=True)

    configure_logging(config)
    logger.debug(f"Configuration: {config!r}")

    try:
        return asyncio.run(
            run_core(
                config,
                args=options.args,
                ready_pattern=options.ready_pattern,
                timeout_ms=options.timeout_ms,
            )
        )
    except HarnessError as e:
        logger.error(f"Harness error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
