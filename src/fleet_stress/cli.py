"""
Command-line interface for fleet-stress.

Runs one bot fleet against a backend until a threshold stops it, the run
duration expires, or SIGINT/SIGTERM arrives, then prints a run summary.

Examples:
    fleet-stress --capacity 200 --spawn-rate 5
    fleet-stress --server tcp://10.0.0.5:5555 --pattern grid --duration 300
    fleet-stress --dry-run --control-port 8800 --log-level-console DEBUG
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
import tomllib
from functools import partial
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import Any

from loguru import logger

from .config import (
    ConfigurationError,
    DefaultConfigError,
    FleetConfig,
    create_config_from_args,
)
from .control_api import create_control_server
from .fleet import FleetController
from .logging_utils import configure_logging
from .metrics import FleetMetrics, summarize_history
from .movement import MovementPattern
from .resources import ResourceUsageProvider, create_resource_provider
from .scheduler import PeriodicTask
from .session import SessionClient, create_session_client


def get_version() -> str:
    try:
        return version("fleet-stress")
    except PackageNotFoundError:
        return "unknown"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fleet-stress",
        description="Bot fleet load generator for multiplayer backends",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --capacity 200 --spawn-rate 5
  %(prog)s --server tcp://10.0.0.5:5555 --pattern grid --duration 300
  %(prog)s --dry-run --control-port 8800
        """,
    )
    parser.add_argument("--config", type=Path, help="TOML configuration file")

    session = parser.add_argument_group("session")
    session.add_argument("--server", help="Backend address (e.g. tcp://localhost:5555)")
    session.add_argument("--module", help="Backend module name sent with every frame")
    session.add_argument(
        "--dry-run",
        action="store_true",
        help="Use an in-process loopback backend instead of the network",
    )

    fleet = parser.add_argument_group("fleet")
    fleet.add_argument("--capacity", type=int, help="Maximum number of bots")
    fleet.add_argument("--spawn-rate", type=int, help="Bots spawned per control tick")
    fleet.add_argument("--tick-frequency", type=float, help="Bot updates per second (Hz)")
    fleet.add_argument(
        "--pattern",
        choices=[p.value for p in MovementPattern],
        help="Movement pattern for all bots",
    )
    fleet.add_argument(
        "--latency-probe",
        type=float,
        help="Seconds between latency probes per bot (0 disables)",
    )
    fleet.add_argument(
        "--duration", type=float, help="Run for this many seconds (0 runs until stopped)"
    )

    thresholds = parser.add_argument_group("thresholds")
    thresholds.add_argument("--max-latency", type=float, help="Maximum average latency (ms)")
    thresholds.add_argument("--min-tick-rate", type=float, help="Minimum average tick rate (Hz)")
    thresholds.add_argument("--max-memory", type=float, help="Maximum memory usage (MB)")

    resources = parser.add_argument_group("resource usage")
    resources.add_argument(
        "--resource-source", choices=["none", "psutil"], help="Where memory/CPU figures come from"
    )
    resources.add_argument(
        "--backend-pid", type=int, help="Process to observe with psutil (0 = whole host)"
    )

    parser.add_argument(
        "--control-port", type=int, help="Serve the HTTP control API on this port (0 disables)"
    )

    logging_group = parser.add_argument_group("logging")
    logging_group.add_argument("--log-dir", type=Path, help="Directory for the JSON log file")
    logging_group.add_argument(
        "--log-level-console",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Console log level",
    )
    logging_group.add_argument(
        "--log-json-console", action="store_true", help="Emit console logs as JSON"
    )
    logging_group.add_argument("--log-rotation", help="loguru rotation rule (e.g. '10 MB')")
    logging_group.add_argument("--log-retention", help="loguru retention rule (e.g. '20')")

    parser.add_argument(
        "-V",
        "--version",
        action="version",
        version=f"%(prog)s {get_version()}",
        help="Show version and exit",
    )
    return parser


def _retention_rule(value: str | None) -> str | int | None:
    """loguru reads an int as a file count and a string as a duration."""
    if value is not None and value.strip().isdigit():
        return int(value)
    return value


def format_status(metrics: FleetMetrics, capacity: int) -> str:
    patterns = ", ".join(f"{name}={count}" for name, count in metrics.active_patterns.items())
    return (
        f"Bots {metrics.total_bots}/{capacity} | "
        f"latency {metrics.average_latency_ms:.1f} ms | "
        f"tick rate {metrics.average_tick_rate:.1f} Hz | "
        f"memory {metrics.memory_usage_mb:.1f} MB | "
        f"cpu {metrics.cpu_usage_percent:.1f}% | "
        f"errors {metrics.total_errors} | {patterns}"
    )


def log_status(controller: FleetController) -> None:
    logger.info(format_status(controller.metrics(), controller.capacity))


def log_summary(summary: dict[str, Any]) -> None:
    logger.info("=" * 80)
    logger.info("Run summary")
    logger.info("=" * 80)
    logger.info(f"  Samples: {summary['samples']}")
    logger.info(f"  Duration: {summary['duration_seconds']:.1f}s")
    logger.info(f"  Peak bots: {summary['peak_bots']}")
    logger.info(f"  Max average latency: {summary['max_latency_ms']:.1f} ms")
    logger.info(f"  Min average tick rate: {summary['min_tick_rate']:.1f} Hz")
    logger.info(f"  Peak memory: {summary['peak_memory_mb']:.1f} MB")
    logger.info(f"  Peak CPU: {summary['peak_cpu_percent']:.1f}%")
    logger.info(f"  Errors: {summary['total_errors']}")
    logger.info("=" * 80)


async def run_fleet(
    config: FleetConfig,
    dry_run: bool = False,
    session_client: SessionClient | None = None,
    resource_provider: ResourceUsageProvider | None = None,
) -> dict[str, Any]:
    """Run one fleet to completion and return the run summary.

    Without the control API the run ends when the fleet stops. With it, a
    stopped fleet can be restarted over HTTP, so only a signal or the run
    duration ends the run.
    """
    owns_client = session_client is None
    if session_client is None:
        session_client = create_session_client(
            config.server_address,
            config.module_name,
            config.connect_timeout,
            config.invoke_timeout,
            dry_run=dry_run,
        )
    if resource_provider is None:
        resource_provider = create_resource_provider(config.resource_source, config.backend_pid)

    controller = FleetController(session_client, config, resource_provider)
    shutdown = asyncio.Event()

    def request_shutdown(reason: str) -> None:
        logger.info(f"Shutting down ({reason})")
        shutdown.set()

    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_shutdown, f"received {sig.name}")
        except (NotImplementedError, RuntimeError) as e:
            logger.debug(f"Cannot install handler for {sig.name}: {e}")
        else:
            installed.append(sig)

    server = None
    server_task = None
    if config.control_port:
        server = create_control_server(controller, config.control_host, config.control_port)
        server_task = asyncio.create_task(server.serve(), name="control-api")
        logger.info(f"Control API on http://{config.control_host}:{config.control_port}")
    else:
        controller.on_stopped.add_listener(lambda reason: shutdown.set())

    status = PeriodicTask(
        config.status_log_interval, partial(log_status, controller), name="status-log"
    )
    try:
        controller.start()
        status.start()
        try:
            await asyncio.wait_for(shutdown.wait(), config.run_duration or None)
        except asyncio.TimeoutError:
            logger.info(f"Run duration of {config.run_duration:g}s reached")
    finally:
        status.cancel()
        controller.stop(reason="run finished")
        if server is not None and server_task is not None:
            server.should_exit = True
            await asyncio.gather(server_task, return_exceptions=True)
        for sig in installed:
            loop.remove_signal_handler(sig)
        if owns_client:
            session_client.close()

    return summarize_history(controller.history())


def main(argv: list[str] | None = None) -> int:
    """Parse arguments, configure logging and run the fleet. Returns the exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config, overrides = create_config_from_args(args)
    except ConfigurationError as e:
        print("ERROR: Invalid configuration:", file=sys.stderr)
        for error in e.errors:
            print(f"  - {error}", file=sys.stderr)
        return 1
    except (DefaultConfigError, FileNotFoundError, tomllib.TOMLDecodeError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    configure_logging(
        log_dir=Path(config.log_dir) if config.log_dir else None,
        console_level=config.log_level_console,
        console_json=config.log_json_console,
        rotation=config.log_rotation,
        retention=_retention_rule(config.log_retention),
    )

    logger.info("=" * 80)
    logger.info("fleet-stress starting")
    logger.info("=" * 80)
    logger.info(f"  Version: {get_version()}")
    logger.info(f"  Backend: {'loopback (dry run)' if args.dry_run else config.server_address}")
    logger.info(f"  Capacity: {config.capacity} bots, {config.spawn_rate} per tick")
    logger.info(f"  Tick frequency: {config.tick_frequency:g} Hz")
    logger.info(f"  Pattern: {config.default_pattern}")
    logger.info(
        f"  Thresholds: latency <= {config.max_latency_ms:g} ms, "
        f"tick rate >= {config.min_tick_rate:g} Hz, memory <= {config.max_memory_mb:g} MB"
    )
    for override in overrides:
        logger.info(
            f"  Config override: {override.key} = {override.new_value!r} "
            f"(default {override.default_value!r})"
        )
    logger.info("=" * 80)

    try:
        summary = asyncio.run(run_fleet(config, dry_run=args.dry_run))
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except Exception:
        logger.exception("Unexpected error")
        return 1

    log_summary(summary)
    return 0


def cli_main() -> None:
    """
    Main CLI entry point for the fleet-stress command.

    This function is referenced in pyproject.toml as the console script entry point.
    """
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        sys.exit(0)


if __name__ == "__main__":
    cli_main()
