"""
fleet-stress

Simulates a fleet of concurrent bot clients against a multiplayer backend,
aggregates their behavior into fleet-wide health metrics and stops the load
test automatically when performance thresholds are breached.

Main Classes:
    FleetController: owns the bots, spawns them at a controlled rate and
        enforces thresholds
    Bot: one simulated client with its own session and tick loop
    MovementSimulator: per-tick random/circle/grid input generator

Examples:
    # Run via CLI (after installation)
    fleet-stress --capacity 50 --dry-run

    # Use programmatically (inside a running event loop)
    from fleet_stress import FleetController, LoopbackSessionClient, load_default_config
    controller = FleetController(LoopbackSessionClient(), load_default_config())
    controller.start()
    await controller.spawn_bot()
    print(controller.metrics())
"""

from .bot import Bot, BotState
from .config import ConfigurationError, FleetConfig, load_default_config
from .errors import (
    BotExistsError,
    CapacityError,
    FleetError,
    InvocationError,
    SessionConnectionError,
)
from .fleet import FleetController
from .metrics import BotMetrics, FleetMetrics, summarize_history
from .movement import InputSample, MovementPattern, MovementSimulator, Vector3
from .session import LoopbackSessionClient, Session, SessionClient, ZmqSessionClient

# Export public API
__all__ = [
    # Fleet
    "FleetController",
    "Bot",
    "BotState",
    # Movement
    "MovementSimulator",
    "MovementPattern",
    "InputSample",
    "Vector3",
    # Metrics
    "BotMetrics",
    "FleetMetrics",
    "summarize_history",
    # Sessions
    "Session",
    "SessionClient",
    "ZmqSessionClient",
    "LoopbackSessionClient",
    # Configuration
    "FleetConfig",
    "load_default_config",
    # Errors
    "FleetError",
    "SessionConnectionError",
    "InvocationError",
    "CapacityError",
    "BotExistsError",
    "ConfigurationError",
]

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("fleet-stress")
except PackageNotFoundError:
    __version__ = "unknown"
