"""
Exception types shared across the fleet.

Per-bot failures (connect, invoke) are contained at the bot/spawn boundary
and never abort the controller's control loop.
"""


class FleetError(Exception):
    """Base class for fleet-stress errors."""


class SessionConnectionError(FleetError):
    """Raised when a session to the backend could not be established."""


class InvocationError(FleetError):
    """Raised when a remote call could not be delivered (e.g. session closed)."""


class CapacityError(FleetError):
    """Raised when a spawn is requested while the fleet is at capacity."""


class BotExistsError(FleetError):
    """Raised when a spawn reuses the id of an owned or connecting bot."""
