"""Run chaser/evader episodes and keep the scene rotation up to date.

This is the composition root: it loads the YAML configuration, creates the
:class:`~scene_rotation.SceneProgressionStore`, hands it to the environment
and plays episodes with either scripted policies or trained networks. Episode
outcomes are logged in batches and, when ``--log-dir`` is given, written to
TensorBoard.

Example
-------
```bash
python run_arena.py --episodes 50 --evader-policy flee --log-dir runs/arena
python run_arena.py --chaser-checkpoint chaser.pt --episodes 10
python run_arena.py --reset
```
"""

from __future__ import annotations

import argparse
import logging
from collections import Counter
from dataclasses import dataclass

import numpy as np
import torch
import torch.nn as nn
from torch.utils.tensorboard import SummaryWriter

from arena_env import Policy, PursuitEvasionEnv, get_policy
from pursuit_evasion import AGENT_NAMES, PursuitEpisode, load_config
from scene_rotation import RotationConfig, SceneProgressionStore

logger = logging.getLogger(__name__)


@dataclass
class RunConfig:
    """Settings for a batch of episodes."""

    episodes: int = 10
    chaser_policy: str = "chase"
    evader_policy: str = "flee"
    chaser_checkpoint: str | None = None
    evader_checkpoint: str | None = None
    hidden_size: int = 64
    activation: str = "tanh"
    batch_size: int = 20
    log_dir: str | None = None


def _make_mlp(
    input_dim: int,
    output_dim: int,
    hidden_size: int = 64,
    activation: str = "relu",
) -> nn.Sequential:
    """Utility to build a simple two-layer MLP with configurable width."""

    acts = {
        "relu": nn.ReLU,
        "tanh": nn.Tanh,
        "leaky_relu": nn.LeakyReLU,
    }
    act_cls = acts.get(activation, nn.ReLU)
    return nn.Sequential(
        nn.Linear(input_dim, hidden_size),
        act_cls(),
        nn.Linear(hidden_size, hidden_size),
        act_cls(),
        nn.Linear(hidden_size, output_dim),
    )


class PolicyNetwork(nn.Module):
    """MLP mapping one agent's observation to a 2D action in ``[-1, 1]``."""

    def __init__(self, obs_dim: int, hidden_size: int = 64, activation: str = "tanh") -> None:
        super().__init__()
        self.net = _make_mlp(obs_dim, 2, hidden_size, activation)

    def forward(self, x: torch.Tensor) -> torch.Tensor:  # noqa: D401
        return torch.tanh(self.net(x))


class NetworkPolicy:
    """Adapter letting a :class:`PolicyNetwork` act inside an episode."""

    def __init__(self, model: PolicyNetwork, device: torch.device) -> None:
        self.model = model
        self.device = device

    def __call__(self, episode: PursuitEpisode, name: str) -> np.ndarray:
        obs = torch.tensor(episode.observe(name), dtype=torch.float32, device=self.device)
        with torch.no_grad():
            action = self.model(obs.unsqueeze(0)).squeeze(0)
        return action.cpu().numpy()


def load_network_policy(
    path: str, obs_dim: int, hidden_size: int, activation: str
) -> NetworkPolicy:
    """Load weights saved with ``torch.save(model.state_dict(), path)``."""
    device = torch.device("cuda" if torch.cuda.is_available() else "cpu")
    model = PolicyNetwork(obs_dim, hidden_size=hidden_size, activation=activation)
    state = torch.load(path, map_location=device)
    model.load_state_dict(state)
    model.to(device)
    model.eval()
    logger.info("Loaded policy weights from %s", path)
    return NetworkPolicy(model, device)


def build_policies(cfg: RunConfig, env: PursuitEvasionEnv) -> dict[str, Policy]:
    policies = {}
    for name in AGENT_NAMES:
        checkpoint = getattr(cfg, f"{name}_checkpoint")
        if checkpoint:
            obs_dim = env.observation_space[name].shape[0]
            policies[name] = load_network_policy(
                checkpoint, obs_dim, cfg.hidden_size, cfg.activation
            )
        else:
            policies[name] = get_policy(getattr(cfg, f"{name}_policy"))
    return policies


def _log_batch_stats(
    batch_index: int,
    episodes: int,
    outcomes: Counter[str],
    avg_rewards: dict[str, float],
    avg_duration: float,
) -> None:
    """Log aggregate statistics for a completed batch of episodes."""

    if episodes == 0:
        return
    outcome_summary = " ".join(
        f"{name}:{count}" for name, count in sorted(outcomes.items())
    )
    logging.info(
        "Batch %d (%d episodes): outcomes=%s chaser_reward=%.2f evader_reward=%.2f avg_steps=%.1f",
        batch_index,
        episodes,
        outcome_summary or "none",
        avg_rewards.get("chaser", 0.0),
        avg_rewards.get("evader", 0.0),
        avg_duration,
    )


def run(cfg: RunConfig, env_cfg: dict, store: SceneProgressionStore) -> Counter[str]:
    """Play ``cfg.episodes`` episodes and return the outcome counts."""

    env = PursuitEvasionEnv(env_cfg, store=store)
    policies = build_policies(cfg, env)
    writer = SummaryWriter(log_dir=cfg.log_dir) if cfg.log_dir else None

    outcomes: Counter[str] = Counter()
    batch_outcomes: Counter[str] = Counter()
    batch_rewards = {name: 0.0 for name in AGENT_NAMES}
    batch_steps = 0.0
    batch_count = 0
    batch_index = 0
    for ep in range(cfg.episodes):
        _, reset_info = env.reset()
        totals = {name: 0.0 for name in AGENT_NAMES}
        info: dict = {}
        done = False
        while not done:
            actions = {name: policies[name](env.episode, name) for name in AGENT_NAMES}
            _, reward, done, _, info = env.step(actions)
            for name in AGENT_NAMES:
                totals[name] += reward[name]

        outcome = info.get("outcome", "unknown")
        outcomes[outcome] += 1
        batch_outcomes[outcome] += 1
        for name in AGENT_NAMES:
            batch_rewards[name] += totals[name]
        batch_steps += info.get("episode_steps", 0)
        batch_count += 1

        if info.get("scene_changed"):
            logger.info(
                "Episode %d: scene changed to '%s'",
                ep + 1,
                store.config.scenes[info["scene_index"]].name,
            )
        if writer:
            step = store.record.total_episodes
            writer.add_scalar("episode/chaser_reward", totals["chaser"], step)
            writer.add_scalar("episode/evader_reward", totals["evader"], step)
            writer.add_scalar("episode/steps", info.get("episode_steps", 0), step)
            writer.add_scalar("episode/capture", 1.0 if outcome == "chaser_caught_evader" else 0.0, step)
            writer.add_scalar("episode/scene_index", store.scene_index, step)
            if "min_distance" in info:
                writer.add_scalar("episode/min_distance", info["min_distance"], step)
            for name, parts in info.get("reward_breakdown", {}).items():
                for key, val in parts.items():
                    writer.add_scalar(f"reward/{name}_{key}", val, step)
            writer.add_scalar("totals/chaser_wins", store.record.chaser_wins, step)
            writer.add_scalar("totals/evader_wins", store.record.evader_wins, step)

        if batch_count >= max(cfg.batch_size, 1):
            batch_index += 1
            _log_batch_stats(
                batch_index,
                batch_count,
                batch_outcomes,
                {name: total / batch_count for name, total in batch_rewards.items()},
                batch_steps / batch_count,
            )
            batch_outcomes.clear()
            batch_rewards = {name: 0.0 for name in AGENT_NAMES}
            batch_steps = 0.0
            batch_count = 0

    if batch_count:
        batch_index += 1
        _log_batch_stats(
            batch_index,
            batch_count,
            batch_outcomes,
            {name: total / batch_count for name, total in batch_rewards.items()},
            batch_steps / batch_count,
        )
    if writer:
        writer.close()
    record = store.record
    logger.info(
        "Totals: episodes=%d scene='%s' (%d/%d in scene) chaser_wins=%d evader_wins=%d",
        record.total_episodes,
        store.scene.name,
        store.episodes_in_scene,
        store.config.episodes_per_scene,
        record.chaser_wins,
        record.evader_wins,
    )
    return outcomes


def main(argv: list[str] | None = None) -> None:
    """Entry point for command line execution."""

    parser = argparse.ArgumentParser(description="Play pursuit-evasion episodes")
    parser.add_argument(
        "--config", type=str, default=None, help="YAML file or directory with the YAML files"
    )
    parser.add_argument("--episodes", type=int, default=None, help="number of episodes to play")
    parser.add_argument(
        "--chaser-policy", type=str, default=None, choices=["idle", "chase", "flee"],
        help="scripted chaser behaviour",
    )
    parser.add_argument(
        "--evader-policy", type=str, default=None, choices=["idle", "chase", "flee"],
        help="scripted evader behaviour",
    )
    parser.add_argument("--chaser-checkpoint", type=str, default=None, help="chaser policy weights")
    parser.add_argument("--evader-checkpoint", type=str, default=None, help="evader policy weights")
    parser.add_argument(
        "--mode", type=str, default=None, choices=["progressive", "fixed"],
        help="scene rotation policy override",
    )
    parser.add_argument("--state-path", type=str, default=None, help="scene rotation record file")
    parser.add_argument(
        "--reset", action="store_true", help="zero the persisted episode counters and exit"
    )
    parser.add_argument("--log-dir", type=str, default=None, help="TensorBoard directory")
    parser.add_argument("--seed", type=int, default=None, help="seed for numpy and torch")
    args = parser.parse_args(argv)

    full_cfg = load_config(args.config)
    rot_cfg = dict(full_cfg.get("scene_rotation") or {})
    if args.mode is not None:
        rot_cfg["mode"] = args.mode
    store = SceneProgressionStore(RotationConfig.from_dict(rot_cfg), path=args.state_path)
    if args.reset:
        store.reset()
        return

    run_cfg = RunConfig(**full_cfg.get("run", {}))
    for key in (
        "episodes",
        "chaser_policy",
        "evader_policy",
        "chaser_checkpoint",
        "evader_checkpoint",
        "log_dir",
    ):
        value = getattr(args, key)
        if value is not None:
            setattr(run_cfg, key, value)
    if args.seed is not None:
        np.random.seed(args.seed)
        torch.manual_seed(args.seed)

    store.startup()
    outcomes = run(run_cfg, full_cfg, store)
    logger.info("Finished %d episodes: %s", sum(outcomes.values()), dict(outcomes))


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s: %(message)s")
    main()
