"""Tests for the movement simulator and its patterns."""

import math
import random

import pytest

from fleet_stress.movement import (
    GridMovement,
    InputSample,
    MovementPattern,
    MovementSettings,
    MovementSimulator,
    PatternState,
    Vector3,
)


def _run(simulator, pattern, ticks, delta_time=1 / 60, state=None, position=None):
    state = state or PatternState()
    position = position or Vector3()
    rotation = Vector3()
    sample = InputSample()
    steps = []
    for _ in range(ticks):
        step = simulator.step(pattern, state, position, rotation, sample, delta_time)
        sample, position, rotation = step.input, step.position, step.rotation
        steps.append(step)
    return state, steps


class TestMovementPattern:
    def test_parse_accepts_names_and_members(self):
        assert MovementPattern.parse("circle") is MovementPattern.CIRCLE
        assert MovementPattern.parse(" GRID ") is MovementPattern.GRID
        assert MovementPattern.parse(MovementPattern.RANDOM) is MovementPattern.RANDOM

    def test_parse_rejects_unknown(self):
        with pytest.raises(ValueError, match="Unknown movement pattern"):
            MovementPattern.parse("zigzag")


class TestCircleMovement:
    def test_yaw_after_k_ticks(self):
        """After k ticks from angle 0 the yaw is 0.02k + pi/2."""
        simulator = MovementSimulator()
        state, steps = _run(simulator, MovementPattern.CIRCLE, 25)

        assert state.circle_angle == pytest.approx(0.02 * 25)
        assert steps[-1].rotation.y == pytest.approx(0.02 * 25 + math.pi / 2)

    def test_position_follows_circle(self):
        simulator = MovementSimulator(MovementSettings(circle_radius=5.0))
        _, steps = _run(simulator, MovementPattern.CIRCLE, 10)

        position = steps[-1].position
        assert position.x == pytest.approx(5.0 * math.cos(0.2))
        assert position.z == pytest.approx(5.0 * math.sin(0.2))

    def test_steering_flips_after_half_turn(self):
        simulator = MovementSimulator()
        state = PatternState(circle_angle=math.pi - 0.01)
        _, steps = _run(simulator, MovementPattern.CIRCLE, 1, state=state)
        assert steps[0].input.right and not steps[0].input.left

        state = PatternState(circle_angle=0.0)
        _, steps = _run(simulator, MovementPattern.CIRCLE, 1, state=state)
        assert steps[0].input.left and not steps[0].input.right
        assert steps[0].input.forward and not steps[0].input.backward

    def test_sequence_increments_every_tick(self):
        simulator = MovementSimulator()
        _, steps = _run(simulator, MovementPattern.CIRCLE, 50)
        sequences = [step.input.sequence for step in steps]
        assert sequences == list(range(1, 51))


class TestGridMovement:
    def test_first_target(self):
        """Cursor (0,0), cell 2, size 10 targets (-10, -10)."""
        strategy = GridMovement(MovementSettings(), lambda: 0.0, random.Random(0))
        assert strategy.target(PatternState()) == (-10.0, -10.0)

    def test_cursor_advances_after_convergence(self):
        simulator = MovementSimulator(MovementSettings(move_speed=10.0))
        state = PatternState()
        position, rotation, sample = Vector3(), Vector3(), InputSample()
        for _ in range(30):
            step = simulator.step(
                MovementPattern.GRID, state, position, rotation, sample, 0.1
            )
            position, rotation, sample = step.position, step.rotation, step.input
            if state.grid_column:
                break

        assert (state.grid_column, state.grid_row) == (1, 0)
        assert position.x == pytest.approx(-10.0 + 1.0, abs=1.0)

    def test_cursor_wraps(self):
        settings = MovementSettings()
        strategy = GridMovement(settings, lambda: 0.0, random.Random(0))
        state = PatternState(grid_column=9, grid_row=9)
        strategy.advance(state)
        assert (state.grid_column, state.grid_row) == (0, 0)

        state = PatternState(grid_column=9, grid_row=3)
        strategy.advance(state)
        assert (state.grid_column, state.grid_row) == (0, 4)

    def test_yaw_points_at_target(self):
        simulator = MovementSimulator()
        position = Vector3(0.0, 0.0, 0.0)
        state = PatternState()
        step = simulator.step(
            MovementPattern.GRID, state, position, Vector3(), InputSample(), 0.0
        )
        assert step.rotation.y == pytest.approx(math.atan2(-10.0, -10.0))
        assert step.input.forward
        assert not (step.input.backward or step.input.left or step.input.right)

    def test_sequence_strictly_increases(self):
        simulator = MovementSimulator()
        _, steps = _run(simulator, MovementPattern.GRID, 30)
        sequences = [step.input.sequence for step in steps]
        assert all(b > a for a, b in zip(sequences, sequences[1:]))


class TestRandomMovement:
    def test_rerolls_at_most_every_two_seconds(self, fake_clock):
        simulator = MovementSimulator(clock=fake_clock, rng=random.Random(7))
        state = PatternState()
        sample = InputSample()

        step = simulator.step(
            MovementPattern.RANDOM, state, Vector3(), Vector3(), sample, 0.0
        )
        assert step.input.sequence == 1

        fake_clock.advance(1.9)
        held = simulator.step(
            MovementPattern.RANDOM, state, Vector3(), Vector3(), step.input, 0.0
        )
        assert held.input == step.input

        fake_clock.advance(0.2)
        rerolled = simulator.step(
            MovementPattern.RANDOM, state, Vector3(), Vector3(), held.input, 0.0
        )
        assert rerolled.input.sequence == 2
        assert state.last_randomized == pytest.approx(2.1)

    def test_flag_probabilities(self, fake_clock):
        simulator = MovementSimulator(clock=fake_clock, rng=random.Random(42))
        state = PatternState()
        sample = InputSample()
        forward = sprint = 0
        trials = 2000
        for _ in range(trials):
            sample = simulator.step(
                MovementPattern.RANDOM, state, Vector3(), Vector3(), sample, 0.0
            ).input
            forward += sample.forward
            sprint += sample.sprint
            fake_clock.advance(2.0)

        assert forward / trials == pytest.approx(0.5, abs=0.05)
        assert sprint / trials == pytest.approx(0.3, abs=0.05)


class TestPatternSwitching:
    def test_state_survives_pattern_switch(self):
        simulator = MovementSimulator()
        state, _ = _run(simulator, MovementPattern.CIRCLE, 10)
        angle = state.circle_angle

        _run(simulator, MovementPattern.GRID, 5, state=state)
        state, _ = _run(simulator, MovementPattern.CIRCLE, 1, state=state)
        assert state.circle_angle == pytest.approx(angle + 0.02)


def test_input_sample_wire_format():
    sample = InputSample(forward=True, primary_action=True, sequence=3)
    data = sample.to_dict()
    assert data["forward"] is True
    assert data["primaryAction"] is True
    assert data["secondaryAction"] is False
    assert data["sequence"] == 3
