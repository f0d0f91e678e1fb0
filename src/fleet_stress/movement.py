"""
Movement simulation for fleet bots.

Every bot owns a ``PatternState`` record and asks a ``MovementSimulator`` for
the next input sample on each tick. Patterns only exist to produce plausible
input load against the backend; they are not a physics model, and directional
flag combinations are never validated against real movement semantics.

Architecture:
    - Movement strategies: one class per pattern (random, circle, grid)
    - Strategy factory: maps a ``MovementPattern`` to its strategy class
    - MovementSimulator: dispatches a step to the strategy for the pattern
"""

from __future__ import annotations

import math
import random
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

TAU = 2 * math.pi


# ============================================================================
# Data Structures and Enums
# ============================================================================


class MovementPattern(Enum):
    """Available movement patterns for simulated bots."""

    RANDOM = "random"
    CIRCLE = "circle"
    GRID = "grid"

    @classmethod
    def parse(cls, value: Any) -> MovementPattern:
        """Accept a pattern or its name ("random", "circle", "grid")."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            choices = ", ".join(p.value for p in cls)
            raise ValueError(
                f"Unknown movement pattern: {value!r} (expected one of {choices})"
            ) from None


@dataclass
class Vector3:
    """3D vector for position and rotation."""

    x: float = 0.0
    y: float = 0.0
    z: float = 0.0

    def to_dict(self) -> dict[str, float]:
        """Convert to the dictionary format sent over the wire."""
        return {"x": self.x, "y": self.y, "z": self.z}

    def copy(self) -> Vector3:
        return Vector3(self.x, self.y, self.z)


@dataclass(frozen=True)
class InputSample:
    """Intent flags sent to the backend, plus a per-connection sequence number."""

    forward: bool = False
    backward: bool = False
    left: bool = False
    right: bool = False
    sprint: bool = False
    jump: bool = False
    primary_action: bool = False
    secondary_action: bool = False
    sequence: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "forward": self.forward,
            "backward": self.backward,
            "left": self.left,
            "right": self.right,
            "sprint": self.sprint,
            "jump": self.jump,
            "primaryAction": self.primary_action,
            "secondaryAction": self.secondary_action,
            "sequence": self.sequence,
        }


@dataclass
class PatternState:
    """Per-bot pattern state. Kept across pattern switches."""

    circle_angle: float = 0.0
    grid_column: int = 0
    grid_row: int = 0
    last_randomized: float | None = None


@dataclass
class MovementSettings:
    """Tunables shared by the movement strategies."""

    circle_radius: float = 5.0
    grid_size: int = 10
    grid_cell_size: float = 2.0
    move_speed: float = 2.0  # units per second
    sprint_multiplier: float = 1.5


@dataclass(frozen=True)
class MovementStep:
    """Result of one simulation tick."""

    input: InputSample
    position: Vector3 = field(default_factory=Vector3)
    rotation: Vector3 = field(default_factory=Vector3)


# ============================================================================
# Movement Strategy Pattern
# ============================================================================


class MovementStrategy(ABC):
    """Abstract base class for movement strategies."""

    def __init__(
        self,
        settings: MovementSettings,
        clock: Callable[[], float],
        rng: random.Random,
    ):
        self.settings = settings
        self.clock = clock
        self.rng = rng

    @abstractmethod
    def step(
        self,
        state: PatternState,
        position: Vector3,
        rotation: Vector3,
        current: InputSample,
        delta_time: float,
    ) -> MovementStep:
        """Advance the pattern by one tick."""


class RandomMovement(MovementStrategy):
    """Re-rolls the directional and sprint flags at most once per interval."""

    CHANGE_INTERVAL = 2.0  # seconds
    DIRECTION_PROBABILITY = 0.5
    SPRINT_PROBABILITY = 0.3

    def step(self, state, position, rotation, current, delta_time):
        now = self.clock()
        if (
            state.last_randomized is None
            or now - state.last_randomized >= self.CHANGE_INTERVAL
        ):
            roll = self.rng.random
            current = replace(
                current,
                forward=roll() < self.DIRECTION_PROBABILITY,
                backward=roll() < self.DIRECTION_PROBABILITY,
                left=roll() < self.DIRECTION_PROBABILITY,
                right=roll() < self.DIRECTION_PROBABILITY,
                sprint=roll() < self.SPRINT_PROBABILITY,
                sequence=current.sequence + 1,
            )
            state.last_randomized = now

        return MovementStep(
            input=current,
            position=self._walk(position, rotation.y, current, delta_time),
            rotation=rotation.copy(),
        )

    def _walk(
        self, position: Vector3, yaw: float, sample: InputSample, delta_time: float
    ) -> Vector3:
        """Dead-reckon the position from the held flags in the bot's local frame."""
        forward_axis = int(sample.forward) - int(sample.backward)
        right_axis = int(sample.right) - int(sample.left)
        if not forward_axis and not right_axis:
            return position.copy()

        dx = forward_axis * math.sin(yaw) + right_axis * math.cos(yaw)
        dz = forward_axis * math.cos(yaw) - right_axis * math.sin(yaw)
        length = math.hypot(dx, dz)

        speed = self.settings.move_speed
        if sample.sprint:
            speed *= self.settings.sprint_multiplier
        distance = speed * delta_time
        return Vector3(
            position.x + dx / length * distance,
            position.y,
            position.z + dz / length * distance,
        )


class CircleMovement(MovementStrategy):
    """Walks a circle around the origin with coarse left/right steering."""

    ANGLE_STEP = 0.02  # radians per tick

    def step(self, state, position, rotation, current, delta_time):
        state.circle_angle += self.ANGLE_STEP
        angle = state.circle_angle
        radius = self.settings.circle_radius

        # First half-turn steers left, second half-turn steers right
        first_half = angle % TAU < math.pi
        sample = replace(
            current,
            forward=True,
            backward=False,
            left=first_half,
            right=not first_half,
            sprint=False,
            sequence=current.sequence + 1,
        )
        return MovementStep(
            input=sample,
            position=Vector3(math.cos(angle) * radius, position.y, math.sin(angle) * radius),
            rotation=Vector3(rotation.x, angle + math.pi / 2, rotation.z),
        )


class GridMovement(MovementStrategy):
    """Sweeps an N x N grid of cells centered on the origin."""

    ARRIVAL_TOLERANCE = 0.1

    def target(self, state: PatternState) -> tuple[float, float]:
        """World x/z of the cell under the grid cursor."""
        cell = self.settings.grid_cell_size
        offset = self.settings.grid_size * cell / 2
        return state.grid_column * cell - offset, state.grid_row * cell - offset

    def advance(self, state: PatternState) -> None:
        size = self.settings.grid_size
        state.grid_column += 1
        if state.grid_column >= size:
            state.grid_column = 0
            state.grid_row += 1
            if state.grid_row >= size:
                state.grid_row = 0

    def step(self, state, position, rotation, current, delta_time):
        target_x, target_z = self.target(state)
        if (
            abs(position.x - target_x) < self.ARRIVAL_TOLERANCE
            and abs(position.z - target_z) < self.ARRIVAL_TOLERANCE
        ):
            self.advance(state)
            target_x, target_z = self.target(state)

        dx = target_x - position.x
        dz = target_z - position.z
        sample = replace(
            current,
            forward=True,
            backward=False,
            left=False,
            right=False,
            sprint=False,
            sequence=current.sequence + 1,
        )
        return MovementStep(
            input=sample,
            position=self._move_towards(position, dx, dz, delta_time),
            rotation=Vector3(rotation.x, math.atan2(dx, dz), rotation.z),
        )

    def _move_towards(
        self, position: Vector3, dx: float, dz: float, delta_time: float
    ) -> Vector3:
        distance = math.hypot(dx, dz)
        travel = self.settings.move_speed * delta_time
        if distance == 0 or travel <= 0:
            return position.copy()
        ratio = min(travel / distance, 1.0)
        return Vector3(position.x + dx * ratio, position.y, position.z + dz * ratio)


# ============================================================================
# Movement Strategy Factory
# ============================================================================


class MovementStrategyFactory:
    """Factory for creating movement strategies."""

    _strategies: dict[MovementPattern, type[MovementStrategy]] = {
        MovementPattern.RANDOM: RandomMovement,
        MovementPattern.CIRCLE: CircleMovement,
        MovementPattern.GRID: GridMovement,
    }

    @classmethod
    def create(
        cls,
        pattern: MovementPattern,
        settings: MovementSettings,
        clock: Callable[[], float],
        rng: random.Random,
    ) -> MovementStrategy:
        """Create a movement strategy for the given pattern."""
        strategy_class = cls._strategies.get(pattern)
        if not strategy_class:
            raise ValueError(f"Unknown movement pattern: {pattern}")
        return strategy_class(settings, clock, rng)


class MovementSimulator:
    """Produces the next input/position/orientation sample for a bot.

    The only wall-clock dependency is the random pattern's re-roll timer, which
    reads ``clock``; pass a fake clock and a seeded ``rng`` for determinism.
    """

    def __init__(
        self,
        settings: MovementSettings | None = None,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
    ):
        self.settings = settings or MovementSettings()
        rng = rng or random.Random()
        self._strategies = {
            pattern: MovementStrategyFactory.create(pattern, self.settings, clock, rng)
            for pattern in MovementPattern
        }

    def step(
        self,
        pattern: MovementPattern,
        state: PatternState,
        position: Vector3,
        rotation: Vector3,
        current: InputSample,
        delta_time: float = 0.0,
    ) -> MovementStep:
        return self._strategies[pattern].step(
            state, position, rotation, current, delta_time
        )
