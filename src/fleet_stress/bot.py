"""
A single simulated client: one session, one movement simulator, one tick gate.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Callable
from enum import Enum
from typing import Any

from .errors import InvocationError
from .metrics import BotMetrics, UpdateStats
from .movement import (
    InputSample,
    MovementPattern,
    MovementSimulator,
    PatternState,
    Vector3,
)
from .session import Session, SessionClient

REGISTER_PROCEDURE = "register_player"
UPDATE_PROCEDURE = "update_player_input"
DEFAULT_CHARACTER_CLASS = "Wizard"

# Delta passed to the simulator after a long stall
MAX_DELTA_TIME = 0.25


class BotState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class Bot:
    """Represents a single simulated client.

    A bot starts disconnected, becomes connected once its session is open and
    the registration call went through, and only ticks while connected.
    Metrics are written by the bot alone; readers get ``metrics_snapshot()``.
    """

    def __init__(
        self,
        bot_id: str,
        session_client: SessionClient,
        tick_frequency: float = 60.0,
        pattern: MovementPattern = MovementPattern.RANDOM,
        simulator: MovementSimulator | None = None,
        clock: Callable[[], float] = time.perf_counter,
        rng: random.Random | None = None,
    ):
        if tick_frequency <= 0:
            raise ValueError(f"tick_frequency must be positive, got {tick_frequency}")
        self.bot_id = bot_id
        self.session_client = session_client
        self.tick_frequency = tick_frequency
        self.simulator = simulator or MovementSimulator()
        self.clock = clock
        self.rng = rng or random.Random()
        self.logger = logging.getLogger(f"Bot-{bot_id[-8:]}")

        self._pattern = MovementPattern.parse(pattern)
        self._pattern_state = PatternState()
        self.position = Vector3()
        self.rotation = Vector3()
        self.input = InputSample()

        self.state = BotState.DISCONNECTED
        self.session: Session | None = None
        self._stats = UpdateStats()
        self._last_tick: float | None = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def pattern(self) -> MovementPattern:
        return self._pattern

    @property
    def pattern_state(self) -> PatternState:
        return self._pattern_state

    @property
    def identity(self) -> str | None:
        return self.session.identity if self.session else None

    @property
    def is_connected(self) -> bool:
        return self.state is BotState.CONNECTED

    @property
    def tick_interval(self) -> float:
        return 1.0 / self.tick_frequency

    @property
    def display_name(self) -> str:
        return f"Bot_{self.bot_id[:6]}"

    @property
    def consecutive_failures(self) -> int:
        return self._stats.consecutive_failures

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open a session and register the player.

        On any failure (including cancellation) the session is released and
        the bot is left disconnected with no partial state.
        """
        if self.state is not BotState.DISCONNECTED:
            raise RuntimeError(f"Bot {self.bot_id} is already {self.state.value}")

        self.state = BotState.CONNECTING
        session: Session | None = None
        try:
            session = await self.session_client.connect()
            await self.session_client.invoke(
                session,
                REGISTER_PROCEDURE,
                self.display_name,
                DEFAULT_CHARACTER_CLASS,
                self._random_color(),
            )
        except (Exception, asyncio.CancelledError):
            if session is not None:
                self.session_client.disconnect(session)
            self.state = BotState.DISCONNECTED
            raise

        self.session = session
        self.input = InputSample()
        self._last_tick = None
        self.state = BotState.CONNECTED
        self.logger.debug(f"Connected as {session.identity}")

    def disconnect(self) -> None:
        """Release the session. Safe to call more than once."""
        session, self.session = self.session, None
        self.state = BotState.DISCONNECTED
        if session is not None:
            self.session_client.disconnect(session)
            self.logger.debug("Disconnected")

    def _random_color(self) -> dict[str, float]:
        return {"r": self.rng.random(), "g": self.rng.random(), "b": self.rng.random()}

    # ------------------------------------------------------------------
    # Simulation
    # ------------------------------------------------------------------

    def set_pattern(self, pattern: MovementPattern | str) -> None:
        """Switch pattern; the pattern-local state carries over as is."""
        self._pattern = MovementPattern.parse(pattern)

    def is_due(self, now: float) -> bool:
        if self._last_tick is None:
            return True
        return now >= self._last_tick + self.tick_interval

    async def tick(self, now: float | None = None) -> bool:
        """Run one update if connected and due.

        Returns:
            True when the update was executed (even if the remote call failed).
        """
        if not self.is_connected:
            return False
        if now is None:
            now = self.clock()
        if not self.is_due(now):
            return False

        delta_time = 0.0 if self._last_tick is None else now - self._last_tick
        self._last_tick = now
        started = self.clock()
        try:
            step = self.simulator.step(
                self._pattern,
                self._pattern_state,
                self.position,
                self.rotation,
                self.input,
                min(delta_time, MAX_DELTA_TIME),
            )
            self.input = step.input
            self.position = step.position
            self.rotation = step.rotation
            await self._send_update()
        except InvocationError as e:
            self._stats.record_failure()
            if self._stats.consecutive_failures == 1:
                self.logger.warning(f"Update failed: {e}")
            else:
                self.logger.debug(
                    f"Update failed ({self._stats.consecutive_failures} in a row): {e}"
                )
        else:
            self._stats.record_success()
        finally:
            self._stats.record_update((self.clock() - started) * 1000.0)
        return True

    async def _send_update(self) -> None:
        session = self.session
        if session is None:
            raise InvocationError(f"Bot {self.bot_id} has no session")
        await self.session_client.invoke(
            session,
            UPDATE_PROCEDURE,
            self.input.to_dict(),
            self.position.to_dict(),
            self.rotation.to_dict(),
            "moving" if self.input.forward else "idle",
        )

    async def probe_latency(self) -> float | None:
        """Measure one round trip; returns None when it cannot be measured."""
        session = self.session
        if session is None or not self.session_client.supports_ping:
            return None
        try:
            latency_ms = await self.session_client.ping(session)
        except InvocationError as e:
            self.logger.debug(f"Latency probe failed: {e}")
            return None
        self._stats.record_latency(latency_ms)
        return latency_ms

    def metrics_snapshot(self) -> BotMetrics:
        return self._stats.snapshot()

    def describe(self) -> dict[str, Any]:
        """Summary for control surfaces."""
        metrics = self.metrics_snapshot()
        return {
            "bot_id": self.bot_id,
            "identity": self.identity,
            "state": self.state.value,
            "pattern": self._pattern.value,
            "position": self.position.to_dict(),
            "latency_ms": metrics.latency_ms,
            "update_count": metrics.update_count,
            "average_update_ms": metrics.average_update_ms,
            "error_count": metrics.error_count,
        }
