"""Tests for arena.py: body integration, stun timer, rewards and facing."""

import numpy as np
import pytest

from arena import (
    ArenaBody,
    Facing,
    RewardAccumulator,
    StunController,
    facing_from_velocity,
    safe_unit,
)


class TestArenaBody:

    def test_starts_at_spawn_and_at_rest(self):
        body = ArenaBody((1.0, -2.0), max_speed=5.0)
        assert np.allclose(body.position, [1.0, -2.0])
        assert np.allclose(body.velocity, [0.0, 0.0])

    @pytest.mark.parametrize("seed", range(10))
    def test_apply_force_never_exceeds_max_speed(self, seed):
        rng = np.random.default_rng(seed)
        body = ArenaBody((0.0, 0.0), max_speed=5.0)
        for _ in range(200):
            force = rng.normal(size=2) * rng.choice([0.0, 1.0, 50.0, 1e6])
            body.apply_force(force, 0.02)
            assert body.speed <= 5.0 + 1e-9

    @pytest.mark.parametrize("seed", range(10))
    def test_velocity_target_never_exceeds_max_speed(self, seed):
        rng = np.random.default_rng(seed)
        body = ArenaBody((0.0, 0.0), max_speed=4.5)
        for _ in range(200):
            target = rng.normal(size=2) * rng.choice([0.0, 3.0, 1e4])
            body.apply_velocity_target(target, accel=rng.uniform(0.0, 200.0), dt=0.02)
            assert body.speed <= 4.5 + 1e-9

    def test_zero_force_keeps_body_still(self):
        body = ArenaBody((0.0, 0.0), max_speed=5.0)
        body.apply_force((0.0, 0.0), 0.02)
        body.step(0.02)
        assert np.all(np.isfinite(body.velocity))
        assert np.allclose(body.position, [0.0, 0.0])

    def test_apply_force_integrates_with_mass(self):
        body = ArenaBody((0.0, 0.0), max_speed=100.0, mass=2.0)
        body.apply_force((10.0, 0.0), 0.1)
        assert np.allclose(body.velocity, [0.5, 0.0])

    def test_velocity_target_lerp_factor_is_clipped(self):
        body = ArenaBody((0.0, 0.0), max_speed=10.0)
        body.apply_velocity_target((4.0, 0.0), accel=15.0, dt=0.02)
        assert np.allclose(body.velocity, [1.2, 0.0])
        body.apply_velocity_target((4.0, 0.0), accel=1000.0, dt=0.02)
        assert np.allclose(body.velocity, [4.0, 0.0])

    def test_step_moves_by_velocity(self):
        body = ArenaBody((0.0, 0.0), max_speed=5.0)
        body.velocity = np.array([2.0, -1.0])
        body.step(0.5)
        assert np.allclose(body.position, [1.0, -0.5])

    def test_step_applies_damping(self):
        body = ArenaBody((0.0, 0.0), max_speed=5.0, linear_damping=2.0)
        body.velocity = np.array([1.04, 0.0])
        body.step(0.02)
        assert body.velocity[0] == pytest.approx(1.0)

    def test_wall_impulse_replaces_velocity_and_clamps(self):
        body = ArenaBody((0.0, 0.0), max_speed=5.0)
        body.velocity = np.array([4.0, 3.0])
        body.on_wall_contact((-1.0, 0.0), impulse_scale=10.0)
        assert np.allclose(body.velocity, [-5.0, 0.0])

    def test_wall_reflect_dampens_velocity(self):
        body = ArenaBody((0.0, 0.0), max_speed=5.0)
        body.velocity = np.array([3.0, 1.0])
        body.on_wall_contact((-1.0, 0.0), impulse_scale=0.0, dampening=0.5, mode="reflect")
        assert np.allclose(body.velocity, [-1.5, -0.5])

    def test_unknown_wall_response_raises(self):
        body = ArenaBody((0.0, 0.0), max_speed=5.0)
        with pytest.raises(ValueError):
            body.on_wall_contact((1.0, 0.0), 1.0, mode="sticky")

    def test_invalid_max_speed_raises(self):
        with pytest.raises(ValueError):
            ArenaBody((0.0, 0.0), max_speed=0.0)

    def test_reset_returns_to_spawn(self):
        body = ArenaBody((1.0, 1.0), max_speed=5.0)
        body.apply_force((100.0, 0.0), 0.1)
        body.step(1.0)
        body.reset()
        assert np.allclose(body.position, [1.0, 1.0])
        assert np.allclose(body.velocity, [0.0, 0.0])


class TestSafeUnit:

    def test_normalises(self):
        assert np.allclose(safe_unit(np.array([3.0, 4.0])), [0.6, 0.8])

    def test_tiny_vectors_become_zero(self):
        assert np.allclose(safe_unit(np.array([1e-9, 0.0])), [0.0, 0.0])


class TestStunController:

    def test_starts_idle(self):
        stun = StunController()
        assert stun.active is False
        assert stun.remaining == 0.0

    @pytest.mark.parametrize("duration,dt", [(1.0, 0.02), (2.0, 1 / 50), (0.5, 0.3), (0.05, 0.05)])
    def test_returns_to_idle_exactly_once(self, duration, dt):
        stun = StunController()
        stun.trigger(duration)
        assert stun.active
        releases = 0
        elapsed = 0.0
        while elapsed < duration + 3 * dt:
            releases += int(stun.tick(dt))
            elapsed += dt
        assert releases == 1
        assert stun.active is False
        assert stun.remaining == 0.0

    def test_still_active_before_duration(self):
        stun = StunController()
        stun.trigger(1.0)
        for _ in range(49):
            stun.tick(0.02)
        assert stun.active
        assert stun.remaining > 0.0
        assert stun.tick(0.02) is True
        assert not stun.active

    @pytest.mark.parametrize("duration", [0.0, -1.0])
    def test_non_positive_duration_stays_idle(self, duration):
        stun = StunController()
        stun.trigger(duration)
        assert stun.active is False
        assert stun.remaining == 0.0

    def test_retrigger_restarts_timer(self):
        stun = StunController()
        stun.trigger(1.0)
        stun.tick(0.6)
        stun.trigger(1.0)
        assert stun.remaining == pytest.approx(1.0)

    def test_tick_while_idle_is_noop(self):
        stun = StunController()
        assert stun.tick(0.02) is False
        assert stun.remaining == 0.0


class TestRewardAccumulator:

    @pytest.mark.parametrize("seed", range(5))
    def test_take_and_reset_returns_sum(self, seed):
        rng = np.random.default_rng(seed)
        deltas = rng.normal(scale=10.0, size=500)
        acc = RewardAccumulator()
        running = 0.0
        for delta in deltas:
            acc.add(delta)
            running += delta
        assert acc.take_and_reset() == pytest.approx(running)
        assert acc.total == 0.0
        assert acc.take_and_reset() == 0.0

    def test_take_tick_returns_delta_since_last_tick(self):
        acc = RewardAccumulator()
        acc.add(1.0)
        acc.add(0.5, "band")
        assert acc.take_tick() == pytest.approx(1.5)
        acc.add(-0.25)
        assert acc.take_tick() == pytest.approx(-0.25)
        assert acc.total == pytest.approx(1.25)

    def test_breakdown_tracks_components(self):
        acc = RewardAccumulator()
        acc.add(1.0, "terminal")
        acc.add(0.1, "tick")
        acc.add(0.1, "tick")
        assert acc.breakdown == {"terminal": 1.0, "tick": pytest.approx(0.2)}
        acc.take_and_reset()
        assert acc.breakdown == {}


class TestFacing:

    @pytest.mark.parametrize(
        "velocity,expected",
        [
            ((1.0, 0.0), Facing.RIGHT),
            ((-1.0, 0.0), Facing.LEFT),
            ((0.0, 1.0), Facing.UP),
            ((0.0, -1.0), Facing.DOWN),
            ((1.0, 1.0), Facing.UP_RIGHT),
            ((-1.0, 1.0), Facing.UP_LEFT),
            ((1.0, -0.8), Facing.DOWN_RIGHT),
            ((-1.0, -0.6), Facing.DOWN_LEFT),
            ((1.0, 0.4), Facing.RIGHT),
            ((0.3, -1.0), Facing.DOWN),
        ],
    )
    def test_eight_way_buckets(self, velocity, expected):
        assert facing_from_velocity(velocity) is expected

    def test_slow_velocity_keeps_previous(self):
        assert facing_from_velocity((0.05, 0.0), Facing.LEFT) is Facing.LEFT
        assert facing_from_velocity((0.0, 0.0)) is None
