"""Gymnasium wrappers around :class:`pursuit_evasion.PursuitEpisode`.

The episode itself only consumes collision events. :class:`ArenaWalls`
produces them for a square arena centred on the origin so the simulator can be
trained without an external physics engine. :class:`PursuitEvasionEnv`
exposes both agents through ``Dict`` spaces and :class:`SingleAgentEnv`
exposes one side while a scripted policy drives the other.
"""

from __future__ import annotations

import copy
import logging
from typing import Callable

import gymnasium as gym
import numpy as np

from arena import safe_unit
from pursuit_evasion import (
    AGENT_NAMES,
    CollisionEvent,
    CollisionKind,
    EpisodeConfig,
    PursuitEpisode,
)
from scene_rotation import SceneProgressionStore

logger = logging.getLogger(__name__)

Policy = Callable[[PursuitEpisode, str], np.ndarray]


class ArenaWalls:
    """Contact detection for an axis-aligned square arena.

    A wall contact is reported as ``WALL`` on the first tick a body touches
    the boundary and as ``WALL_STAY`` on every following tick it stays in
    contact. Normals point back into the arena. Overlapping agents produce a
    single ``OPPONENT`` event for the chaser.
    """

    def __init__(self, half_extent: float) -> None:
        if half_extent <= 0.0:
            raise ValueError("half_extent must be positive")
        self.half_extent = float(half_extent)
        self._touching: dict[str, bool] = {}

    def reset(self) -> None:
        self._touching.clear()

    def wall_normal(self, position, radius: float) -> np.ndarray | None:
        """Inward normal of the wall(s) touched at ``position`` or ``None``."""
        normal = np.zeros(2, dtype=np.float64)
        for axis in range(2):
            if position[axis] + radius >= self.half_extent:
                normal[axis] -= 1.0
            elif position[axis] - radius <= -self.half_extent:
                normal[axis] += 1.0
        if not normal.any():
            return None
        return safe_unit(normal)

    def contacts(self, episode: PursuitEpisode) -> list[CollisionEvent]:
        events = []
        for name, agent in episode.agents.items():
            normal = self.wall_normal(agent.body.position, agent.cfg.radius)
            if normal is None:
                self._touching[name] = False
                continue
            kind = CollisionKind.WALL_STAY if self._touching.get(name) else CollisionKind.WALL
            self._touching[name] = True
            events.append(CollisionEvent(name, kind, (float(normal[0]), float(normal[1]))))

        dist = episode.distance()
        if dist is not None and dist <= episode.chaser.cfg.radius + episode.evader.cfg.radius:
            normal = safe_unit(episode.chaser.body.position - episode.evader.body.position)
            events.append(
                CollisionEvent("chaser", CollisionKind.OPPONENT, (float(normal[0]), float(normal[1])))
            )
        return events


# ---------------------------------------------------------------------------
# Scripted policies
# ---------------------------------------------------------------------------


def _opponent_offset(episode: PursuitEpisode, name: str) -> np.ndarray | None:
    agent = episode.agents.get(name)
    if agent is None:
        return None
    opponent = episode.opponent(agent)
    if opponent is None:
        return None
    return opponent.body.position - agent.body.position


def idle_policy(episode: PursuitEpisode, name: str) -> np.ndarray:
    """Never move."""
    return np.zeros(2, dtype=np.float32)


def chase_policy(episode: PursuitEpisode, name: str) -> np.ndarray:
    """Head straight for the opponent at full input."""
    offset = _opponent_offset(episode, name)
    if offset is None:
        return np.zeros(2, dtype=np.float32)
    return safe_unit(offset).astype(np.float32)


def flee_policy(episode: PursuitEpisode, name: str) -> np.ndarray:
    """Run away from the opponent while steering off the walls.

    The pull toward the centre grows as the agent nears the boundary so a
    fleeing agent slides along the walls instead of pinning itself in a
    corner.
    """
    offset = _opponent_offset(episode, name)
    if offset is None:
        return np.zeros(2, dtype=np.float32)
    position = episode.agents[name].body.position
    half_extent = episode.cfg.arena_half_extent
    edge = float(np.max(np.abs(position))) / half_extent
    centre_pull = safe_unit(-position) * max(0.0, edge - 0.5) * 2.0
    return safe_unit(safe_unit(-offset) + centre_pull).astype(np.float32)


POLICIES: dict[str, Policy] = {
    "idle": idle_policy,
    "chase": chase_policy,
    "flee": flee_policy,
}


def get_policy(name: str) -> Policy:
    try:
        return POLICIES[name]
    except KeyError:
        raise ValueError(f"Unknown policy '{name}'") from None


# ---------------------------------------------------------------------------
# Environments
# ---------------------------------------------------------------------------


class PursuitEvasionEnv(gym.Env):
    """Gym-compatible 2D pursuit-evasion environment.

    Actions and observations are dictionaries keyed by ``'chaser'`` and
    ``'evader'``. Actions are two floats in ``[-1, 1]``; observations follow
    the layouts in :data:`pursuit_evasion.OBSERVATION_LAYOUTS`. Episodes
    terminate on capture or when the episode clock runs out; ``truncated`` is
    always ``False`` because the time limit is part of the game.

    When a :class:`~scene_rotation.SceneProgressionStore` is supplied every
    finished episode is recorded there and a scene change rebuilds the
    simulator with the new scene's overrides on the next :meth:`reset`.
    """

    metadata = {"render_modes": []}

    def __init__(self, cfg: dict, store: SceneProgressionStore | None = None):
        super().__init__()
        self.base_cfg = copy.deepcopy(cfg)
        self.store = store
        self._build()

        self.observation_space = gym.spaces.Dict({
            name: gym.spaces.Box(
                low=-np.inf,
                high=np.inf,
                shape=self.episode.observe(name).shape,
                dtype=np.float32,
            )
            for name in AGENT_NAMES
        })
        self.action_space = gym.spaces.Dict({
            name: gym.spaces.Box(low=-1.0, high=1.0, shape=(2,), dtype=np.float32)
            for name in AGENT_NAMES
        })

    def _build(self) -> None:
        cfg = self.store.scene_config(self.base_cfg) if self.store is not None else self.base_cfg
        self.episode = PursuitEpisode(EpisodeConfig.from_dict(cfg))
        self.walls = ArenaWalls(self.episode.cfg.arena_half_extent)
        self.dt = float(self.episode.cfg.time_step)
        self._rebuild = False

    def reset(self, *, seed=None, options=None):
        """Reset the episode and return the observation dictionary."""
        super().reset(seed=seed)
        if self._rebuild:
            self._build()
        obs = self.episode.reset()
        self.walls.reset()
        info = {}
        if self.store is not None:
            info["scene"] = self.store.scene.name
        return obs, info

    def step(self, action: dict):
        """Advance one tick.

        Parameters
        ----------
        action : dict
            Dictionary with ``'chaser'`` and ``'evader'`` keys mapping to
            their action arrays. Missing keys mean no input.
        """

        events = self.walls.contacts(self.episode)
        result = self.episode.advance(
            self.dt, action.get("chaser"), action.get("evader"), events
        )
        obs = self.episode.observations()
        reward = {"chaser": result.chaser_reward, "evader": result.evader_reward}
        terminated = result.terminal is not None
        info = {
            "time_remaining": result.time_remaining,
            "facing": {"chaser": result.chaser_facing, "evader": result.evader_facing},
        }
        if terminated:
            info.update(self.episode.summary())
            if self.store is not None:
                update = self.store.record_episode_end(result.terminal)
                info["scene_changed"] = update.scene_changed
                info["scene_index"] = update.record.current_scene_index
                self._rebuild = update.scene_changed
        return obs, reward, terminated, False, info


class SingleAgentEnv(gym.Env):
    """Environment exposing one side. The other follows ``opponent_policy``."""

    def __init__(
        self,
        cfg: dict,
        role: str = "chaser",
        opponent_policy: Policy = flee_policy,
        store: SceneProgressionStore | None = None,
    ):
        super().__init__()
        if role not in AGENT_NAMES:
            raise ValueError(f"Unknown role '{role}'")
        self.env = PursuitEvasionEnv(cfg, store=store)
        self.role = role
        self.other = "evader" if role == "chaser" else "chaser"
        self.opponent_policy = opponent_policy
        self.observation_space = self.env.observation_space[role]
        self.action_space = self.env.action_space[role]

    def reset(self, *, seed=None, options=None):
        obs, info = self.env.reset(seed=seed, options=options)
        return obs[self.role], info

    def step(self, action: np.ndarray):
        """Step with ``action`` for the exposed side while the other side follows its policy."""
        other_action = self.opponent_policy(self.env.episode, self.other)
        obs, reward, terminated, truncated, info = self.env.step(
            {self.role: action, self.other: other_action}
        )
        return obs[self.role], float(reward[self.role]), terminated, truncated, info
