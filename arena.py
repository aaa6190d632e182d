"""Rigid-body, stun and reward primitives shared by both arena agents.

The helpers here know nothing about chasers or evaders.  :class:`ArenaBody`
integrates a point mass in the plane, :class:`StunController` gates action
input after a wall hit and :class:`RewardAccumulator` collects the reward
terms that fire during a tick.  :mod:`pursuit_evasion` composes them into
agents.
"""

from __future__ import annotations

from enum import Enum

import numpy as np

# Vectors shorter than this are treated as zero when normalising.
DIRECTION_EPS = 1e-6
# Stun timers within this margin of zero count as expired.
STUN_EPS = 1e-9


def as_vector(value) -> np.ndarray:
    """Return ``value`` as a float64 2-vector."""
    vec = np.asarray(value, dtype=np.float64).reshape(-1)
    if vec.shape != (2,):
        raise ValueError(f"expected a 2D vector, got shape {vec.shape}")
    return vec.copy()


def safe_unit(vec: np.ndarray) -> np.ndarray:
    """Return the unit vector of ``vec`` or zeros below :data:`DIRECTION_EPS`."""
    norm = float(np.linalg.norm(vec))
    if norm < DIRECTION_EPS:
        return np.zeros(2, dtype=np.float64)
    return vec / norm


class ArenaBody:
    """Point mass with a speed limit.

    Two integration modes are offered: :meth:`apply_force` accumulates
    velocity like a thruster while :meth:`apply_velocity_target` eases the
    velocity toward a commanded value. Every method that changes the velocity
    finishes with :meth:`clamp_speed` so ``|velocity| <= max_speed`` holds
    after each call.
    """

    def __init__(
        self,
        position,
        max_speed: float,
        mass: float = 1.0,
        linear_damping: float = 0.0,
    ) -> None:
        if max_speed <= 0.0:
            raise ValueError("max_speed must be positive")
        if mass <= 0.0:
            raise ValueError("mass must be positive")
        self.spawn = as_vector(position)
        self.position = self.spawn.copy()
        self.velocity = np.zeros(2, dtype=np.float64)
        self.max_speed = float(max_speed)
        self.mass = float(mass)
        self.linear_damping = float(linear_damping)

    @property
    def speed(self) -> float:
        return float(np.linalg.norm(self.velocity))

    def reset(self, position=None) -> None:
        """Move back to the spawn point (or ``position``) and stop."""
        if position is not None:
            self.spawn = as_vector(position)
        self.position = self.spawn.copy()
        self.velocity = np.zeros(2, dtype=np.float64)

    def clamp_speed(self) -> None:
        speed = self.speed
        if speed > self.max_speed:
            self.velocity = self.velocity / speed * self.max_speed

    def apply_force(self, force, dt: float) -> None:
        """Integrate ``force`` over ``dt`` and clamp the resulting speed."""
        self.velocity = self.velocity + as_vector(force) / self.mass * dt
        self.clamp_speed()

    def apply_velocity_target(self, target, accel: float, dt: float) -> None:
        """Blend the velocity toward ``target`` by ``clip(accel * dt, 0, 1)``."""
        t = float(np.clip(accel * dt, 0.0, 1.0))
        self.velocity = self.velocity + (as_vector(target) - self.velocity) * t
        self.clamp_speed()

    def step(self, dt: float) -> None:
        """Apply damping and move by one time step."""
        if self.linear_damping > 0.0:
            self.velocity = self.velocity / (1.0 + self.linear_damping * dt)
        self.position = self.position + self.velocity * dt

    def on_wall_contact(
        self,
        normal,
        impulse_scale: float,
        dampening: float = 0.5,
        mode: str = "impulse",
    ) -> None:
        """Respond to hitting a wall with contact ``normal``.

        ``"impulse"`` stops the body and pushes it off along the normal, which
        is how solid walls behave. ``"reflect"`` bounces the current velocity
        back scaled by ``dampening``, which suits trigger zones that have no
        physical response of their own.
        """
        if mode == "impulse":
            self.velocity = safe_unit(as_vector(normal)) * impulse_scale / self.mass
        elif mode == "reflect":
            self.velocity = -self.velocity * dampening
        else:
            raise ValueError(f"Unknown wall response '{mode}'")
        self.clamp_speed()


class StunController:
    """Countdown that locks out action input.

    ``remaining > 0`` exactly while ``active`` is set.
    """

    def __init__(self) -> None:
        self.active = False
        self.remaining = 0.0

    def reset(self) -> None:
        self.active = False
        self.remaining = 0.0

    def trigger(self, duration: float) -> None:
        """Start (or restart) a stun lasting ``duration`` seconds."""
        if duration <= 0.0:
            self.reset()
            return
        self.active = True
        self.remaining = float(duration)

    def tick(self, dt: float) -> bool:
        """Advance the timer; return ``True`` on the tick the stun wears off."""
        if not self.active:
            return False
        self.remaining -= dt
        if self.remaining <= STUN_EPS:
            self.reset()
            return True
        return False


class RewardAccumulator:
    """Additive reward bookkeeping for one agent and one episode."""

    def __init__(self) -> None:
        self.total = 0.0
        self._tick = 0.0
        self.breakdown: dict[str, float] = {}

    def add(self, delta: float, component: str = "shaping") -> None:
        delta = float(delta)
        self.total += delta
        self._tick += delta
        self.breakdown[component] = self.breakdown.get(component, 0.0) + delta

    def take_tick(self) -> float:
        """Return the reward earned since the previous call."""
        value, self._tick = self._tick, 0.0
        return value

    def take_and_reset(self) -> float:
        """Return the episode total and clear everything."""
        value = self.total
        self.total = 0.0
        self._tick = 0.0
        self.breakdown = {}
        return value


class Facing(str, Enum):
    UP = "up"
    DOWN = "down"
    LEFT = "left"
    RIGHT = "right"
    UP_LEFT = "up_left"
    UP_RIGHT = "up_right"
    DOWN_LEFT = "down_left"
    DOWN_RIGHT = "down_right"


def facing_from_velocity(
    velocity,
    previous: Facing | None = None,
    *,
    min_speed: float = 0.1,
    diagonal_threshold: float = 0.5,
) -> Facing | None:
    """Bucket ``velocity`` into one of eight directions.

    Slow bodies keep ``previous`` so sprites do not flicker when idle. A
    heading counts as diagonal when the smaller component is more than
    ``diagonal_threshold`` of the larger one.
    """
    vel = as_vector(velocity)
    if float(np.linalg.norm(vel)) < min_speed:
        return previous
    vx, vy = float(vel[0]), float(vel[1])
    abs_x, abs_y = abs(vx), abs(vy)

    if abs_x > 0.01 and abs_y > 0.01:
        ratio = min(abs_x, abs_y) / max(abs_x, abs_y)
        if ratio > diagonal_threshold:
            if vy > 0:
                return Facing.UP_RIGHT if vx > 0 else Facing.UP_LEFT
            return Facing.DOWN_RIGHT if vx > 0 else Facing.DOWN_LEFT

    if abs_x > abs_y:
        return Facing.RIGHT if vx > 0 else Facing.LEFT
    return Facing.UP if vy > 0 else Facing.DOWN
