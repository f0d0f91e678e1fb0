"""
Fleet controller: owns the bots, spawns them at a controlled rate, aggregates
their metrics on a fixed control tick and stops the fleet on threshold breach.

Everything runs on one asyncio event loop. The bot collection is only
written here; each bot's metrics are only written by that bot.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import replace
from functools import partial
from statistics import fmean
from typing import Any

from .bot import Bot
from .config import ConfigurationError, FleetConfig, validate_config
from .errors import BotExistsError, CapacityError
from .events import FleetEvents
from .metrics import FleetMetrics, pattern_counts
from .movement import MovementPattern, MovementSettings, MovementSimulator
from .resources import NullResourceUsage, ResourceUsage, ResourceUsageProvider
from .scheduler import PeriodicTask
from .session import SessionClient

logger = logging.getLogger(__name__)


def _require_positive(name: str, value: Any, integral: bool = True) -> None:
    kinds = (int,) if integral else (int, float)
    if isinstance(value, bool) or not isinstance(value, kinds) or value <= 0:
        expected = "a positive integer" if integral else "a positive number"
        raise ConfigurationError([f"{name} must be {expected}, got {value!r}"])


class FleetController:
    """Main orchestrator for the bot fleet.

    Events live on ``events`` (see ``FleetEvents``) and are also reachable as
    ``on_metrics_updated``, ``on_threshold_breached`` and ``on_stopped``.
    """

    def __init__(
        self,
        session_client: SessionClient,
        config: FleetConfig,
        resource_provider: ResourceUsageProvider | None = None,
        clock: Callable[[], float] = time.monotonic,
        simulator: MovementSimulator | None = None,
    ):
        errors = validate_config(config)
        if errors:
            raise ConfigurationError(errors)

        self.session_client = session_client
        self.config = config
        self.resource_provider = resource_provider or NullResourceUsage()
        self.clock = clock
        self.simulator = simulator or MovementSimulator(
            MovementSettings(
                circle_radius=config.circle_radius,
                grid_size=config.grid_size,
                grid_cell_size=config.grid_cell_size,
                move_speed=config.move_speed,
            )
        )

        self._capacity = config.capacity
        self._spawn_rate = config.spawn_rate
        self._tick_frequency = float(config.tick_frequency)
        self._default_pattern = MovementPattern.parse(config.default_pattern)

        self._bots: dict[str, Bot] = {}
        self._bot_timers: dict[str, list[PeriodicTask]] = {}
        self._pending: set[str] = set()
        self._spawn_tasks: set[asyncio.Task] = set()
        self._control_task: PeriodicTask | None = None
        self._running = False
        self._generation = 0  # bumped by stop(); work started before a stop compares against it
        self._stopped = asyncio.Event()
        self._stopped.set()

        self._metrics = FleetMetrics()
        self._history: deque[FleetMetrics] = deque(maxlen=config.history_size)
        self._last_usage = ResourceUsage()
        self._retired_errors = 0
        self._spawn_failures = 0

        self.events = FleetEvents()
        self.on_metrics_updated = self.events.metrics_updated
        self.on_threshold_breached = self.events.threshold_breached
        self.on_stopped = self.events.stopped

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def spawn_rate(self) -> int:
        return self._spawn_rate

    @property
    def tick_frequency(self) -> float:
        return self._tick_frequency

    @property
    def default_pattern(self) -> MovementPattern:
        return self._default_pattern

    @property
    def bot_ids(self) -> list[str]:
        return list(self._bots)

    @property
    def pending_spawns(self) -> int:
        return len(self._pending)

    def __len__(self) -> int:
        return len(self._bots)

    def __contains__(self, bot_id: object) -> bool:
        return bot_id in self._bots

    def get_bot(self, bot_id: str) -> Bot | None:
        return self._bots.get(bot_id)

    # ------------------------------------------------------------------
    # Start / stop
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Begin the control tick. Must be called from the running event loop."""
        if self._running:
            logger.debug("Fleet already running")
            return

        self._running = True
        self._stopped.clear()
        self._history.clear()
        self._last_usage = ResourceUsage()
        self._retired_errors = 0
        self._spawn_failures = 0
        self._metrics = replace(FleetMetrics(), timestamp=self.clock())
        self._refresh_population()

        self._control_task = PeriodicTask(
            self.config.control_interval, self.control_tick, name="fleet-control"
        ).start()
        logger.info(
            f"Fleet started: capacity={self._capacity}, spawn_rate={self._spawn_rate}/tick, "
            f"tick_frequency={self._tick_frequency:g} Hz, pattern={self._default_pattern.value}"
        )

    def stop(self, reason: str = "requested") -> None:
        """Cancel every timer, disconnect every bot and zero the aggregates.

        Safe to call at any time and any number of times. Spawns still
        connecting are cancelled; any that complete anyway are discarded.
        """
        was_running = self._running
        self._running = False
        self._generation += 1

        if self._control_task is not None:
            self._control_task.cancel()
            self._control_task = None

        for task in list(self._spawn_tasks):
            task.cancel()
        self._spawn_tasks.clear()
        self._pending.clear()

        bot_count = len(self._bots)
        for bot_id in list(self._bots):
            self._remove_bot(bot_id)

        self._metrics = replace(FleetMetrics(), timestamp=self.clock())

        if was_running:
            logger.info(f"Fleet stopped ({reason}); disconnected {bot_count} bots")
            self._stopped.set()
            self.on_stopped.invoke(reason)
        elif bot_count:
            logger.info(f"Disconnected {bot_count} bots")

    async def wait_stopped(self) -> None:
        """Wait until a running fleet stops."""
        await self._stopped.wait()

    # ------------------------------------------------------------------
    # Spawning
    # ------------------------------------------------------------------

    async def spawn_bot(self, bot_id: str | None = None) -> Bot | None:
        """Connect one new bot and add it to the fleet.

        Returns:
            The bot, or None if the fleet was stopped while it was connecting.

        Raises:
            CapacityError: The fleet (owned plus connecting bots) is full.
            BotExistsError: ``bot_id`` is already in use.
            SessionConnectionError: The bot's session could not be opened.
        """
        bot_id = self._reserve_slot(bot_id)
        return await self._complete_spawn(bot_id)

    def _reserve_slot(self, bot_id: str | None) -> str:
        if bot_id is None:
            bot_id = uuid.uuid4().hex
        if bot_id in self._bots or bot_id in self._pending:
            raise BotExistsError(f"Bot {bot_id} already exists")
        if len(self._bots) + len(self._pending) >= self._capacity:
            raise CapacityError(f"Fleet is at capacity ({self._capacity})")
        self._pending.add(bot_id)
        return bot_id

    async def _complete_spawn(self, bot_id: str) -> Bot | None:
        generation = self._generation
        bot = Bot(
            bot_id,
            self.session_client,
            tick_frequency=self._tick_frequency,
            pattern=self._default_pattern,
            simulator=self.simulator,
        )
        try:
            await bot.connect()
        except Exception:
            if generation == self._generation:
                self._spawn_failures += 1
            raise
        finally:
            self._pending.discard(bot_id)

        if generation != self._generation:
            logger.info(f"Fleet stopped while bot {bot_id[:8]} was connecting; discarding it")
            bot.disconnect()
            return None

        bot.set_pattern(self._default_pattern)
        self._register(bot)
        return bot

    async def _spawn_in_background(self, bot_id: str) -> None:
        try:
            await self._complete_spawn(bot_id)
        except Exception as e:
            logger.warning(f"Failed to spawn bot {bot_id[:8]}: {e}")

    def _spawn_batch(self) -> int:
        available = self._capacity - len(self._bots) - len(self._pending)
        count = max(0, min(self._spawn_rate, available))
        for _ in range(count):
            bot_id = self._reserve_slot(None)
            task = asyncio.get_running_loop().create_task(
                self._spawn_in_background(bot_id), name=f"spawn-{bot_id[:8]}"
            )
            self._spawn_tasks.add(task)
            task.add_done_callback(self._spawn_tasks.discard)
        return count

    def _register(self, bot: Bot) -> None:
        timers = [
            PeriodicTask(
                bot.tick_interval,
                partial(self._drive_bot, bot),
                name=f"bot-{bot.bot_id[:8]}",
                pass_time=True,
            ).start()
        ]
        interval = self.config.latency_probe_interval
        if interval > 0 and self.session_client.supports_ping:
            timers.append(
                PeriodicTask(
                    interval, bot.probe_latency, name=f"probe-{bot.bot_id[:8]}"
                ).start()
            )
        self._bots[bot.bot_id] = bot
        self._bot_timers[bot.bot_id] = timers
        self._refresh_population()
        logger.info(
            f"Spawned bot {bot.bot_id[:8]} as {bot.identity} "
            f"({len(self._bots)}/{self._capacity}, pattern {bot.pattern.value})"
        )

    async def _drive_bot(self, bot: Bot, now: float) -> None:
        await bot.tick(now)
        if bot.consecutive_failures >= self.config.max_bot_failures:
            logger.warning(
                f"Bot {bot.bot_id[:8]} failed {bot.consecutive_failures} updates in a row; despawning"
            )
            self.despawn_bot(bot.bot_id)

    # ------------------------------------------------------------------
    # Despawning
    # ------------------------------------------------------------------

    def despawn_bot(self, bot_id: str) -> bool:
        """Disconnect and remove a bot. Unknown ids are ignored."""
        if not self._remove_bot(bot_id):
            return False
        self._refresh_population()
        logger.info(f"Despawned bot {bot_id[:8]} ({len(self._bots)}/{self._capacity})")
        return True

    def _remove_bot(self, bot_id: str) -> bool:
        bot = self._bots.pop(bot_id, None)
        if bot is None:
            return False
        for timer in self._bot_timers.pop(bot_id, ()):
            timer.cancel()
        self._retired_errors += bot.metrics_snapshot().error_count
        bot.disconnect()
        return True

    # ------------------------------------------------------------------
    # Runtime configuration
    # ------------------------------------------------------------------

    def set_pattern(self, pattern: MovementPattern | str) -> None:
        """Make ``pattern`` the default and switch every owned bot to it."""
        try:
            pattern = MovementPattern.parse(pattern)
        except ValueError as e:
            raise ConfigurationError([str(e)]) from e
        self._default_pattern = pattern
        for bot in self._bots.values():
            bot.set_pattern(pattern)
        self._refresh_population()
        logger.info(f"Movement pattern set to {pattern.value} for {len(self._bots)} bots")

    def set_capacity(self, capacity: int) -> None:
        """Change the bot limit. Bots above a lowered limit are kept."""
        _require_positive("capacity", capacity)
        self._capacity = capacity
        logger.info(f"Capacity set to {capacity}")

    def set_spawn_rate(self, spawn_rate: int) -> None:
        _require_positive("spawn_rate", spawn_rate)
        self._spawn_rate = spawn_rate
        logger.info(f"Spawn rate set to {spawn_rate} bots per control tick")

    def set_tick_frequency(self, tick_frequency: float) -> None:
        """Change the update rate used for bots spawned from now on."""
        _require_positive("tick_frequency", tick_frequency, integral=False)
        self._tick_frequency = float(tick_frequency)
        logger.info(f"Tick frequency for new bots set to {tick_frequency:g} Hz")

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def metrics(self) -> FleetMetrics:
        return self._metrics.copy()

    def history(self) -> list[FleetMetrics]:
        """Retained snapshots, oldest first."""
        return list(self._history)

    def describe(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "bots": len(self._bots),
            "pending_spawns": len(self._pending),
            "capacity": self._capacity,
            "spawn_rate": self._spawn_rate,
            "tick_frequency": self._tick_frequency,
            "pattern": self._default_pattern.value,
        }

    def _refresh_population(self) -> None:
        self._metrics = replace(
            self._metrics,
            total_bots=len(self._bots),
            active_patterns=pattern_counts(bot.pattern for bot in self._bots.values()),
        )

    def _total_errors(self) -> int:
        current = sum(bot.metrics_snapshot().error_count for bot in self._bots.values())
        return self._retired_errors + self._spawn_failures + current

    async def control_tick(self) -> None:
        """Spawn the next batch, aggregate metrics and enforce thresholds."""
        if not self._running:
            return
        generation = self._generation
        self._spawn_batch()
        await self._aggregate(generation)

    async def _aggregate(self, generation: int) -> None:
        usage = await self._sample_resources()
        if generation != self._generation:
            return

        # No awaits below: every figure describes the same set of bots
        snapshots = [bot.metrics_snapshot() for bot in self._bots.values()]
        latencies = [m.latency_ms for m in snapshots if m.latency_ms is not None]
        rates = [m.tick_rate for m in snapshots if m.tick_rate is not None]

        previous = self._metrics
        snapshot = FleetMetrics(
            total_bots=len(self._bots),
            average_latency_ms=fmean(latencies) if latencies else previous.average_latency_ms,
            average_tick_rate=fmean(rates) if rates else previous.average_tick_rate,
            memory_usage_mb=usage.memory_mb,
            cpu_usage_percent=usage.cpu_percent,
            total_errors=self._total_errors(),
            active_patterns=pattern_counts(bot.pattern for bot in self._bots.values()),
            timestamp=self.clock(),
        )
        self._metrics = snapshot
        self._history.append(snapshot)
        self.on_metrics_updated.invoke(snapshot.copy())

        self._check_thresholds(
            snapshot, latency_measured=bool(latencies), rate_measured=bool(rates)
        )

    async def _sample_resources(self) -> ResourceUsage:
        try:
            usage = self.resource_provider.sample()
            if inspect.isawaitable(usage):
                usage = await usage
        except Exception as e:
            logger.warning(f"Resource usage unavailable, keeping last known values: {e}")
            return self._last_usage
        self._last_usage = usage
        return usage

    def _check_thresholds(
        self,
        metrics: FleetMetrics,
        latency_measured: bool = True,
        rate_measured: bool = True,
    ) -> bool:
        """Stop the fleet once if any threshold is breached.

        A limit of 0 disables the maximum checks; metrics no bot has measured
        yet are not checked.
        """
        config = self.config
        breaches: list[tuple[str, float, float]] = []
        if (
            latency_measured
            and config.max_latency_ms > 0
            and metrics.average_latency_ms > config.max_latency_ms
        ):
            breaches.append(("latency_ms", metrics.average_latency_ms, config.max_latency_ms))
        if rate_measured and metrics.average_tick_rate < config.min_tick_rate:
            breaches.append(("tick_rate", metrics.average_tick_rate, config.min_tick_rate))
        if config.max_memory_mb > 0 and metrics.memory_usage_mb > config.max_memory_mb:
            breaches.append(("memory_mb", metrics.memory_usage_mb, config.max_memory_mb))

        if not breaches:
            return False

        for name, value, limit in breaches:
            logger.warning(f"Threshold breached: {name} {value:.1f} (limit {limit:g})")
            self.on_threshold_breached.invoke(name, value, limit)
        self.stop(reason="threshold breached: " + ", ".join(name for name, _, _ in breaches))
        return True
