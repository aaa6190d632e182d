"""Tests for the episode driver and its command line."""

import os

import torch
import yaml

from run_arena import PolicyNetwork, RunConfig, main, run
from scene_rotation import RotationConfig, SceneProgressionStore


def make_store(tmp_path):
    return SceneProgressionStore(RotationConfig(), path=str(tmp_path / "state.yaml"))


class TestPolicyNetwork:

    def test_actions_are_bounded(self):
        model = PolicyNetwork(16, hidden_size=8)
        out = model(torch.randn(5, 16) * 100.0)
        assert out.shape == (5, 2)
        assert torch.all(out.abs() <= 1.0)


class TestRun:

    def test_scripted_capture(self, tmp_path):
        store = make_store(tmp_path)
        cfg = RunConfig(episodes=3, chaser_policy="chase", evader_policy="idle", batch_size=2)
        outcomes = run(cfg, {}, store)
        assert outcomes == {"chaser_caught_evader": 3}
        assert store.record.total_episodes == 3
        assert store.record.chaser_wins == 3

    def test_network_checkpoint(self, tmp_path):
        path = tmp_path / "chaser.pt"
        torch.save(PolicyNetwork(7, hidden_size=16).state_dict(), path)
        store = make_store(tmp_path)
        cfg = RunConfig(
            episodes=1, chaser_checkpoint=str(path), evader_policy="idle", hidden_size=16
        )
        outcomes = run(cfg, {"env": {"max_episode_time": 1.0}}, store)
        assert sum(outcomes.values()) == 1

    def test_tensorboard_logging(self, tmp_path):
        log_dir = tmp_path / "tb"
        cfg = RunConfig(
            episodes=1, chaser_policy="chase", evader_policy="idle", log_dir=str(log_dir)
        )
        run(cfg, {}, make_store(tmp_path))
        assert any(name.startswith("events.out.tfevents") for name in os.listdir(log_dir))


class TestMain:

    def test_reset_flag_zeroes_record(self, tmp_path):
        path = tmp_path / "state.yaml"
        path.write_text(
            "total_episodes: 40\ncurrent_scene_index: 0\nchaser_wins: 10\nevader_wins: 30\n"
        )
        main(["--reset", "--state-path", str(path)])
        assert yaml.safe_load(path.read_text()) == {
            "total_episodes": 0,
            "current_scene_index": 0,
            "chaser_wins": 0,
            "evader_wins": 0,
        }

    def test_plays_episodes(self, tmp_path):
        path = tmp_path / "state.yaml"
        main([
            "--episodes", "2",
            "--chaser-policy", "chase",
            "--evader-policy", "idle",
            "--state-path", str(path),
            "--seed", "0",
        ])
        record = yaml.safe_load(path.read_text())
        assert record["total_episodes"] == 2
        assert record["chaser_wins"] == 2
