"""Pursuit-evasion episode simulation for a 2D arena.

A chaser tries to touch an evader before the episode clock runs out. The
episode advances in fixed ticks: the driver hands over both raw action
vectors together with the collision events its physics layer observed, and
:meth:`PursuitEpisode.advance` returns the per-agent rewards for that tick
and, once the episode is over, its :class:`EpisodeOutcome`.

All tuning values (forces, penalties, shaping bands, who profits from a
timeout) live in the YAML files next to this module and are loaded with
:func:`load_config`.
"""

from __future__ import annotations

import copy
import logging
import math
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, Optional

import numpy as np
import yaml

from arena import (
    ArenaBody,
    Facing,
    RewardAccumulator,
    StunController,
    as_vector,
    facing_from_velocity,
    safe_unit,
)

logger = logging.getLogger(__name__)

CONFIG_FILES = ("chaser.yaml", "evader.yaml", "env.yaml", "scenes.yaml")
# Tolerance when comparing the accumulated clock against the time limit.
TIME_EPS = 1e-9

AGENT_NAMES = ("chaser", "evader")


def load_config(path: str | None = None) -> dict:
    """Load configuration parameters.

    When ``path`` is ``None`` the function reads ``chaser.yaml``,
    ``evader.yaml``, ``env.yaml`` and ``scenes.yaml`` located next to this
    file and merges them into a single dictionary. If ``path`` points to a
    directory the same file names are loaded from that directory. Supplying a
    path to a specific YAML file returns its contents directly. Files that do
    not exist are skipped; the dataclass defaults cover anything missing.
    """

    if path is None:
        base = os.path.dirname(os.path.abspath(__file__))
    elif os.path.isdir(path):
        base = path
    else:
        with open(path, "r", encoding="utf-8") as fh:
            return yaml.safe_load(fh) or {}

    cfg: dict = {}
    for name in CONFIG_FILES:
        fp = os.path.join(base, name)
        if os.path.exists(fp):
            with open(fp, "r", encoding="utf-8") as fh:
                part = yaml.safe_load(fh) or {}
            cfg.update(part)
    return cfg


def merge_config(base: dict, overrides: dict) -> dict:
    """Return a copy of ``base`` with ``overrides`` merged in recursively.

    Nested dictionaries are merged key by key; every other value in
    ``overrides`` replaces the one in ``base``.
    """

    merged = copy.deepcopy(base)
    for key, value in (overrides or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass
class DistanceBand:
    """Flat reward paid every tick while ``low <= distance < high``."""

    low: float = 0.0
    high: float = math.inf
    reward: float = 0.0

    def contains(self, distance: float) -> bool:
        return self.low <= distance < self.high


@dataclass
class ShapingConfig:
    """Per-tick shaping terms for one agent."""

    tick_reward: float = 0.0
    distance_weight: float = 0.0
    bands: list[DistanceBand] = field(default_factory=list)
    progress_weight: float = 0.0
    alignment_weight: float = 0.0
    sprint_distance: float = 0.0
    sprint_speed: float = 0.0
    sprint_bonus: float = 0.0

    @classmethod
    def from_dict(cls, cfg: dict | None) -> ShapingConfig:
        cfg = dict(cfg or {})
        bands = [DistanceBand(**band) for band in cfg.pop("bands", None) or []]
        return cls(bands=bands, **cfg)


@dataclass
class AgentConfig:
    """Physical and reward parameters for one side of the episode.

    ``movement`` selects the integration mode: ``"force"`` pushes the body
    with ``move_force`` per unit of action while ``"velocity"`` eases toward
    ``action * max_speed`` at rate ``acceleration``. ``observation`` names the
    layout in :data:`OBSERVATION_LAYOUTS`.
    """

    spawn: tuple[float, float] = (0.0, 0.0)
    movement: str = "force"
    move_force: float = 20.0
    acceleration: float = 15.0
    max_speed: float = 5.0
    mass: float = 1.0
    linear_damping: float = 0.0
    radius: float = 0.5
    observation: str = "chaser"
    wall_response: str = "impulse"
    wall_impulse: float = 10.0
    wall_dampening: float = 0.5
    wall_penalty: float = -2.0
    wall_stay_penalty: float = -1.0
    stun_duration: float = 1.0
    capture_reward: float = 0.0
    capture_time_bonus: float = 0.0
    timeout_reward: float = 0.0
    shaping: ShapingConfig = field(default_factory=ShapingConfig)

    def __post_init__(self) -> None:
        self.spawn = tuple(float(v) for v in self.spawn)
        if self.movement not in ("force", "velocity"):
            raise ValueError(f"Unknown movement mode '{self.movement}'")
        if self.observation not in OBSERVATION_LAYOUTS:
            raise ValueError(f"Unknown observation layout '{self.observation}'")
        if self.wall_response not in ("impulse", "reflect"):
            raise ValueError(f"Unknown wall response '{self.wall_response}'")

    @classmethod
    def from_dict(cls, cfg: dict) -> AgentConfig:
        cfg = dict(cfg)
        shaping = ShapingConfig.from_dict(cfg.pop("shaping", None))
        return cls(shaping=shaping, **cfg)


# Defaults mirror the shipped YAML so the simulator works without it.
DEFAULT_CHASER = {
    "spawn": [-5.0, 0.0],
    "movement": "force",
    "move_force": 20.0,
    "max_speed": 5.0,
    "linear_damping": 2.0,
    "observation": "chaser",
    "wall_impulse": 10.0,
    "wall_penalty": -2.0,
    "wall_stay_penalty": -1.0,
    "stun_duration": 1.0,
    "capture_reward": 20.0,
    "capture_time_bonus": 10.0,
    "timeout_reward": -10.0,
    "shaping": {
        "tick_reward": -0.001,
        "distance_weight": 0.1,
        "bands": [
            {"low": 0.0, "high": 2.0, "reward": 0.5},
            {"low": 2.0, "high": 4.0, "reward": 0.1},
            {"low": 8.0, "reward": -0.1},
        ],
    },
}

DEFAULT_EVADER = {
    "spawn": [5.0, 0.0],
    "movement": "velocity",
    "acceleration": 15.0,
    "max_speed": 4.5,
    "linear_damping": 5.0,
    "observation": "evader",
    "wall_impulse": 3.0,
    "wall_penalty": -10.0,
    "wall_stay_penalty": -2.0,
    "stun_duration": 2.0,
    "capture_reward": -15.0,
    "timeout_reward": 10.0,
    "shaping": {
        "tick_reward": 0.01,
        "progress_weight": 1.0,
        "sprint_distance": 3.0,
        "sprint_speed": 2.0,
        "sprint_bonus": 0.005,
    },
}


@dataclass
class EpisodeConfig:
    """Episode-wide settings.

    ``timeout_outcome`` decides how an expired clock is reported:
    ``"evader_survived"`` credits the evader, ``"chaser_timed_out"`` only
    records the chaser's failure. The rewards paid on timeout come from each
    agent's ``timeout_reward``. A side set to ``None`` is absent.
    """

    time_step: float = 0.02
    max_episode_time: float = 30.0
    arena_size: float = 10.0
    arena_half_extent: float = 6.0
    timeout_outcome: str = "evader_survived"
    chaser: Optional[AgentConfig] = field(
        default_factory=lambda: AgentConfig.from_dict(DEFAULT_CHASER)
    )
    evader: Optional[AgentConfig] = field(
        default_factory=lambda: AgentConfig.from_dict(DEFAULT_EVADER)
    )

    def __post_init__(self) -> None:
        if self.timeout_outcome not in ("evader_survived", "chaser_timed_out"):
            raise ValueError(f"Unknown timeout outcome '{self.timeout_outcome}'")
        if self.max_episode_time <= 0.0:
            raise ValueError("max_episode_time must be positive")
        if self.arena_size <= 0.0:
            raise ValueError("arena_size must be positive")

    @classmethod
    def from_dict(cls, cfg: dict) -> EpisodeConfig:
        """Build the episode config from a merged :func:`load_config` dict."""
        env_cfg = dict(cfg.get("env") or {})
        agents = {}
        for name, defaults in (("chaser", DEFAULT_CHASER), ("evader", DEFAULT_EVADER)):
            if name in cfg and cfg[name] is None:
                agents[name] = None
            else:
                agents[name] = AgentConfig.from_dict(
                    merge_config(defaults, cfg.get(name) or {})
                )
        return cls(**env_cfg, **agents)


# ---------------------------------------------------------------------------
# Tick inputs and outputs
# ---------------------------------------------------------------------------


class CollisionKind(str, Enum):
    OPPONENT = "opponent"
    WALL = "wall"
    WALL_STAY = "wall_stay"


@dataclass(frozen=True)
class CollisionEvent:
    """Contact reported by the physics layer for one agent during a tick."""

    agent: str
    kind: CollisionKind
    normal: tuple[float, float] = (0.0, 0.0)


class EpisodeOutcome(str, Enum):
    CHASER_CAUGHT_EVADER = "chaser_caught_evader"
    EVADER_SURVIVED_TIMEOUT = "evader_survived_timeout"
    CHASER_TIMED_OUT = "chaser_timed_out"

    @property
    def chaser_won(self) -> bool:
        return self is EpisodeOutcome.CHASER_CAUGHT_EVADER


TIMEOUT_OUTCOMES = {
    "evader_survived": EpisodeOutcome.EVADER_SURVIVED_TIMEOUT,
    "chaser_timed_out": EpisodeOutcome.CHASER_TIMED_OUT,
}


@dataclass(frozen=True)
class StepResult:
    chaser_reward: float
    evader_reward: float
    terminal: Optional[EpisodeOutcome]
    chaser_facing: Optional[Facing]
    evader_facing: Optional[Facing]
    time_remaining: float
    distance: Optional[float]


# ---------------------------------------------------------------------------
# Observations
# ---------------------------------------------------------------------------


def _chaser_observation(agent: Agent, opponent: Agent | None, episode: PursuitEpisode) -> list[float]:
    # direction (2), distance (1), own velocity (2), opponent velocity (2)
    if opponent is None:
        return [0.0] * 7
    arena = episode.cfg.arena_size
    offset = opponent.body.position - agent.body.position
    direction = safe_unit(offset)
    own_vel = agent.body.velocity / agent.body.max_speed
    opp_vel = opponent.body.velocity / opponent.body.max_speed
    return [
        direction[0],
        direction[1],
        float(np.linalg.norm(offset)) / arena,
        own_vel[0],
        own_vel[1],
        opp_vel[0],
        opp_vel[1],
    ]


def _evader_observation(agent: Agent, opponent: Agent | None, episode: PursuitEpisode) -> list[float]:
    arena = episode.cfg.arena_size
    speed = agent.body.max_speed
    obs = [
        agent.body.position[0] / arena,
        agent.body.position[1] / arena,
        agent.body.velocity[0] / speed,
        agent.body.velocity[1] / speed,
    ]
    if opponent is None:
        obs.extend([0.0] * 9)
    else:
        offset = opponent.body.position - agent.body.position
        away = -safe_unit(offset)
        opp_vel = opponent.body.velocity / speed
        rel_vel = (agent.body.velocity - opponent.body.velocity) / speed
        obs.extend([
            offset[0] / arena,
            offset[1] / arena,
            float(np.linalg.norm(offset)) / arena,
            away[0],
            away[1],
            opp_vel[0],
            opp_vel[1],
            rel_vel[0],
            rel_vel[1],
        ])
    obs.append(episode.time_remaining / episode.cfg.max_episode_time)
    # two reserved slots keep the declared 16-float layout
    obs.extend([0.0, 0.0])
    return obs


ObservationFn = Callable[["Agent", Optional["Agent"], "PursuitEpisode"], list]

OBSERVATION_LAYOUTS: dict[str, tuple[int, ObservationFn]] = {
    "chaser": (7, _chaser_observation),
    "evader": (16, _evader_observation),
}


# ---------------------------------------------------------------------------
# Agents and episode
# ---------------------------------------------------------------------------


class Agent:
    """One side of the episode: body, stun timer and reward bookkeeping."""

    def __init__(self, name: str, cfg: AgentConfig) -> None:
        self.name = name
        self.cfg = cfg
        self.body = ArenaBody(cfg.spawn, cfg.max_speed, cfg.mass, cfg.linear_damping)
        self.stun = StunController()
        self.rewards = RewardAccumulator()
        self.facing: Facing | None = None
        self.prev_distance: float | None = None

    @property
    def obs_dim(self) -> int:
        return OBSERVATION_LAYOUTS[self.cfg.observation][0]

    @property
    def pursues(self) -> bool:
        return self.name == "chaser"

    def reset(self) -> None:
        self.body.reset()
        self.stun.reset()
        self.rewards.take_and_reset()
        self.facing = None
        self.prev_distance = None

    def act(self, action, dt: float) -> None:
        """Apply a raw action vector, clipped to ``[-1, 1]`` per axis."""
        if action is None:
            move = np.zeros(2, dtype=np.float64)
        else:
            move = np.clip(as_vector(action), -1.0, 1.0)
        if self.cfg.movement == "force":
            self.body.apply_force(move * self.cfg.move_force, dt)
        else:
            norm = float(np.linalg.norm(move))
            if norm > 1.0:
                move = move / norm
            self.body.apply_velocity_target(
                move * self.cfg.max_speed, self.cfg.acceleration, dt
            )


class PursuitEpisode:
    """State machine for one chaser/evader episode.

    The episode is ``Running`` from :meth:`reset` until a capture or the
    time limit produces an :class:`EpisodeOutcome`; after that
    :meth:`advance` refuses to run until the next :meth:`reset`.
    """

    def __init__(self, cfg: EpisodeConfig) -> None:
        if cfg.chaser is None and cfg.evader is None:
            raise ValueError("An episode needs at least one agent")
        self.cfg = cfg
        self.chaser = Agent("chaser", cfg.chaser) if cfg.chaser is not None else None
        self.evader = Agent("evader", cfg.evader) if cfg.evader is not None else None
        self.reset()

    @property
    def agents(self) -> dict[str, Agent]:
        return {
            name: agent
            for name, agent in (("chaser", self.chaser), ("evader", self.evader))
            if agent is not None
        }

    def opponent(self, agent: Agent) -> Agent | None:
        return self.evader if agent is self.chaser else self.chaser

    @property
    def terminated(self) -> bool:
        return self.outcome is not None

    @property
    def time_remaining(self) -> float:
        return max(0.0, self.cfg.max_episode_time - self.elapsed)

    def distance(self) -> float | None:
        """Distance between the agents or ``None`` when one is absent."""
        if self.chaser is None or self.evader is None:
            return None
        return float(np.linalg.norm(self.evader.body.position - self.chaser.body.position))

    def reset(self) -> dict[str, np.ndarray]:
        """Put both agents back on their spawn points and restart the clock."""
        self.elapsed = 0.0
        self.steps = 0
        self.outcome: EpisodeOutcome | None = None
        for agent in self.agents.values():
            agent.reset()
        dist = self.distance()
        for agent in self.agents.values():
            agent.prev_distance = dist
        self.start_distance = dist
        self.min_distance = dist
        return self.observations()

    # -- tick --------------------------------------------------------------

    def advance(
        self,
        dt: float,
        chaser_action=None,
        evader_action=None,
        collisions: Iterable[CollisionEvent] = (),
    ) -> StepResult:
        """Advance the episode by ``dt`` seconds.

        Parameters
        ----------
        dt : float
            Length of the tick in seconds.
        chaser_action, evader_action : array-like or None
            Raw 2-component actions; ``None`` means no input. Actions for an
            absent agent are ignored.
        collisions : iterable of CollisionEvent
            Contacts the physics layer observed during this tick.
        """

        if self.terminated:
            raise RuntimeError("advance() called on a terminated episode; call reset() first")
        if dt <= 0.0:
            raise ValueError("dt must be positive")

        self.elapsed += dt
        self.steps += 1

        if self.elapsed >= self.cfg.max_episode_time - TIME_EPS:
            for agent in self.agents.values():
                agent.rewards.add(agent.cfg.timeout_reward, "terminal")
            self._finish(TIMEOUT_OUTCOMES[self.cfg.timeout_outcome])
            return self._result()

        actions = {"chaser": chaser_action, "evader": evader_action}
        stunned = {}
        for name, agent in self.agents.items():
            stunned[name] = agent.stun.active
            if agent.stun.active:
                agent.stun.tick(dt)
            else:
                agent.act(actions[name], dt)
            agent.body.step(dt)

        for event in collisions:
            if self._apply_collision(event):
                return self._result()

        dist = self.distance()
        if dist is not None:
            self.min_distance = min(self.min_distance, dist)
        for name, agent in self.agents.items():
            if not stunned[name]:
                self._shape(agent, dist)
            agent.prev_distance = dist
        return self._result()

    def _apply_collision(self, event: CollisionEvent) -> bool:
        """Handle one contact; return ``True`` when it ended the episode."""
        agent = self.agents.get(event.agent)
        if agent is None:
            return False
        kind = CollisionKind(event.kind)
        cfg = agent.cfg
        if kind is CollisionKind.OPPONENT:
            if self.opponent(agent) is None:
                return False
            self._capture()
            return True
        if kind is CollisionKind.WALL:
            agent.body.on_wall_contact(
                event.normal, cfg.wall_impulse, cfg.wall_dampening, cfg.wall_response
            )
            agent.rewards.add(cfg.wall_penalty, "wall")
            agent.stun.trigger(cfg.stun_duration)
            logger.debug("%s hit a wall at t=%.2f", agent.name, self.elapsed)
        else:
            agent.rewards.add(cfg.wall_stay_penalty, "wall")
        return False

    def _capture(self) -> None:
        time_left = max(0.0, 1.0 - self.elapsed / self.cfg.max_episode_time)
        for agent in self.agents.values():
            agent.rewards.add(agent.cfg.capture_reward, "terminal")
            if agent.cfg.capture_time_bonus:
                agent.rewards.add(agent.cfg.capture_time_bonus * time_left, "terminal")
        self._finish(EpisodeOutcome.CHASER_CAUGHT_EVADER)

    def _shape(self, agent: Agent, dist: float | None) -> None:
        """Add the continuous shaping terms for a free (not stunned) agent."""
        shaping = agent.cfg.shaping
        if shaping.tick_reward:
            agent.rewards.add(shaping.tick_reward, "tick")
        opponent = self.opponent(agent)
        if opponent is None or dist is None:
            return

        arena = self.cfg.arena_size
        if shaping.distance_weight:
            closeness = (arena - dist) / arena if agent.pursues else dist / arena
            agent.rewards.add(shaping.distance_weight * closeness, "distance")
        for band in shaping.bands:
            if band.contains(dist):
                agent.rewards.add(band.reward, "band")
        if shaping.progress_weight and agent.prev_distance is not None:
            change = agent.prev_distance - dist if agent.pursues else dist - agent.prev_distance
            if change > 0.0:
                agent.rewards.add(shaping.progress_weight * change, "progress")
        if shaping.alignment_weight:
            los = safe_unit(opponent.body.position - agent.body.position)
            if not agent.pursues:
                los = -los
            heading = safe_unit(agent.body.velocity)
            agent.rewards.add(shaping.alignment_weight * float(np.dot(heading, los)), "alignment")
        if (
            shaping.sprint_bonus
            and dist < shaping.sprint_distance
            and agent.body.speed > shaping.sprint_speed
        ):
            agent.rewards.add(shaping.sprint_bonus, "sprint")

    def _finish(self, outcome: EpisodeOutcome) -> None:
        self.outcome = outcome
        logger.debug(
            "Episode finished after %d steps (%.2fs): %s",
            self.steps,
            self.elapsed,
            outcome.value,
        )

    def _result(self) -> StepResult:
        for agent in self.agents.values():
            agent.facing = facing_from_velocity(agent.body.velocity, agent.facing)
        rewards = {
            name: agent.rewards.take_tick() for name, agent in self.agents.items()
        }
        return StepResult(
            chaser_reward=rewards.get("chaser", 0.0),
            evader_reward=rewards.get("evader", 0.0),
            terminal=self.outcome,
            chaser_facing=self.chaser.facing if self.chaser is not None else None,
            evader_facing=self.evader.facing if self.evader is not None else None,
            time_remaining=self.time_remaining,
            distance=self.distance(),
        )

    # -- observations ------------------------------------------------------

    def observe(self, name: str) -> np.ndarray:
        """Observation vector for ``name``; zeros when that agent is absent."""
        cfg = getattr(self.cfg, name)
        agent = self.agents.get(name)
        if agent is None:
            layout = cfg.observation if cfg is not None else name
            return np.zeros(OBSERVATION_LAYOUTS[layout][0], dtype=np.float32)
        _, build = OBSERVATION_LAYOUTS[agent.cfg.observation]
        obs = build(agent, self.opponent(agent), self)
        return np.asarray(obs, dtype=np.float32)

    def observations(self) -> dict[str, np.ndarray]:
        return {name: self.observe(name) for name in AGENT_NAMES}

    def summary(self) -> dict:
        """Episode statistics for logging once the episode is over."""
        info = {
            "episode_steps": self.steps,
            "elapsed": float(self.elapsed),
            "outcome": self.outcome.value if self.outcome is not None else None,
            "reward_totals": {
                name: float(agent.rewards.total) for name, agent in self.agents.items()
            },
            "reward_breakdown": {
                name: {k: float(v) for k, v in agent.rewards.breakdown.items()}
                for name, agent in self.agents.items()
            },
        }
        if self.min_distance is not None:
            info["start_distance"] = float(self.start_distance)
            info["min_distance"] = float(self.min_distance)
            info["final_distance"] = float(self.distance())
        return info


def make_episode(cfg: dict | None = None) -> PursuitEpisode:
    """Create a :class:`PursuitEpisode` from a :func:`load_config` dict."""
    if cfg is None:
        cfg = load_config()
    return PursuitEpisode(EpisodeConfig.from_dict(cfg))


def main():
    """Run one episode with random actions to demonstrate the simulator."""
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s: %(message)s")
    episode = make_episode()
    dt = episode.cfg.time_step
    result = None
    while not episode.terminated:
        result = episode.advance(
            dt,
            np.random.uniform(-1.0, 1.0, size=2),
            np.random.uniform(-1.0, 1.0, size=2),
        )
    info = episode.summary()
    logger.info(
        "Episode finished after %d steps: %s (final rewards %.2f / %.2f)",
        info["episode_steps"],
        info["outcome"],
        result.chaser_reward,
        result.evader_reward,
    )


if __name__ == '__main__':
    main()
