"""Persistent scene rotation for long training runs.

Training cycles through an ordered list of arena scenes. The counters that
decide which scene is active survive process restarts in a small YAML file.
Two policies are supported:

* ``"progressive"``: the scene index follows the episode count,
  ``min(total_episodes // episodes_per_scene, len(scenes) - 1)``.
* ``"fixed"``: stay on ``fixed_scene_index`` no matter how many episodes
  have been played.

The store is an ordinary object created by the driver and handed to whatever
needs to report episode ends; there is no global instance.

Example
-------
```python
from pursuit_evasion import load_config
from scene_rotation import RotationConfig, SceneProgressionStore

cfg = load_config()
store = SceneProgressionStore(RotationConfig.from_dict(cfg.get("scene_rotation", {})))
store.startup()
update = store.record_episode_end(outcome)
if update.scene_changed:
    load_scene(store.scene)
```
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Optional

import yaml

from pursuit_evasion import EpisodeOutcome, merge_config

logger = logging.getLogger(__name__)

STATE_FILE = "scene_rotation.yaml"
RECORD_FIELDS = ("total_episodes", "current_scene_index", "chaser_wins", "evader_wins")

DEFAULT_SCENES = ("Scene 1", "Scene 2", "Scene 3", "Scene 4", "Scene 5", "Scene Last")


def default_state_path() -> str:
    """Location of the rotation record when none is configured."""
    home = os.environ.get(
        "PURSUIT_ARENA_HOME", os.path.join(os.path.expanduser("~"), ".pursuit_arena")
    )
    return os.path.join(home, STATE_FILE)


class RotationMode(str, Enum):
    PROGRESSIVE = "progressive"
    FIXED = "fixed"


@dataclass
class Scene:
    """Named arena configuration; ``overrides`` are merged onto the base config."""

    name: str
    overrides: dict = field(default_factory=dict)


@dataclass
class RotationConfig:
    """Scene list and rotation policy."""

    scenes: list[Scene] = field(
        default_factory=lambda: [Scene(name) for name in DEFAULT_SCENES]
    )
    mode: RotationMode = RotationMode.PROGRESSIVE
    fixed_scene_index: int = 0
    episodes_per_scene: int = 200
    save_path: Optional[str] = None

    def __post_init__(self) -> None:
        self.mode = RotationMode(self.mode)
        if self.episodes_per_scene < 1:
            raise ValueError("episodes_per_scene must be at least 1")

    @classmethod
    def from_dict(cls, cfg: dict | None) -> RotationConfig:
        """Build from the ``scene_rotation`` section of :func:`load_config`.

        Scenes may be given as plain names or as mappings with ``name`` and
        optional ``overrides``.
        """
        cfg = dict(cfg or {})
        if "scenes" in cfg:
            scenes = []
            for entry in cfg.pop("scenes") or []:
                if isinstance(entry, str):
                    scenes.append(Scene(entry))
                else:
                    scenes.append(Scene(entry["name"], dict(entry.get("overrides") or {})))
            cfg["scenes"] = scenes
        return cls(**cfg)

    @property
    def scene_count(self) -> int:
        return len(self.scenes)

    def clamp_index(self, index: int) -> int:
        return min(max(int(index), 0), self.scene_count - 1)

    def target_index(self, total_episodes: int) -> int:
        """Scene index the progressive policy assigns to ``total_episodes``."""
        return min(total_episodes // self.episodes_per_scene, self.scene_count - 1)


@dataclass(frozen=True)
class SceneRotationRecord:
    """Counters persisted between runs."""

    total_episodes: int = 0
    current_scene_index: int = 0
    chaser_wins: int = 0
    evader_wins: int = 0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data) -> SceneRotationRecord:
        """Validate a loaded payload; raise ``ValueError`` if it is unusable."""
        if not isinstance(data, dict):
            raise ValueError(f"expected a mapping, got {type(data).__name__}")
        values = {}
        for key in RECORD_FIELDS:
            if key not in data:
                raise ValueError(f"missing field '{key}'")
            value = data[key]
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"field '{key}' is not an integer: {value!r}")
            if value < 0:
                raise ValueError(f"field '{key}' is negative: {value}")
            values[key] = value
        return cls(**values)


@dataclass(frozen=True)
class ProgressionUpdate:
    record: SceneRotationRecord
    scene_changed: bool = False
    new_scene_index: Optional[int] = None


def record_episode_end(
    record: SceneRotationRecord, outcome: EpisodeOutcome, config: RotationConfig
) -> ProgressionUpdate:
    """Count one finished episode and work out whether the scene changes.

    Captures are chaser wins; both kinds of timeout are evader wins. The
    function does not guard against being called twice for the same episode.
    """

    outcome = EpisodeOutcome(outcome)
    total = record.total_episodes + 1
    updated = replace(
        record,
        total_episodes=total,
        chaser_wins=record.chaser_wins + (1 if outcome.chaser_won else 0),
        evader_wins=record.evader_wins + (0 if outcome.chaser_won else 1),
    )
    if config.mode is RotationMode.FIXED:
        return ProgressionUpdate(updated)

    target = config.target_index(total)
    if target == record.current_scene_index:
        return ProgressionUpdate(updated)
    return ProgressionUpdate(
        replace(updated, current_scene_index=target), True, target
    )


class SceneProgressionStore:
    """Owner of the :class:`SceneRotationRecord` and its file.

    The in-memory record is authoritative: a failed save is logged and the
    run continues. Mutating calls are serialised with a lock so parallel
    episode workers can share one store.
    """

    def __init__(self, config: RotationConfig, path: str | None = None) -> None:
        if config.scene_count == 0:
            raise ValueError("Scene rotation needs at least one scene")
        self.config = config
        self.path = path or config.save_path or default_state_path()
        self._lock = threading.Lock()
        self._record = self.load()

    @property
    def record(self) -> SceneRotationRecord:
        """Immutable snapshot of the current counters."""
        return self._record

    @property
    def scene_index(self) -> int:
        return self._record.current_scene_index

    @property
    def scene(self) -> Scene:
        return self.config.scenes[self._record.current_scene_index]

    @property
    def episodes_in_scene(self) -> int:
        return self._record.total_episodes % self.config.episodes_per_scene

    def load(self) -> SceneRotationRecord:
        """Read the persisted record, falling back to a fresh one."""
        if not os.path.exists(self.path):
            logger.info("Scene rotation: no saved data at %s, starting fresh", self.path)
            return SceneRotationRecord()
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                data = yaml.safe_load(fh)
            record = SceneRotationRecord.from_dict(data)
        except (OSError, yaml.YAMLError, ValueError) as exc:
            logger.warning(
                "Failed to load scene rotation data from %s: %s. Starting fresh.",
                self.path,
                exc,
            )
            return SceneRotationRecord()

        index = self.config.clamp_index(record.current_scene_index)
        if index != record.current_scene_index:
            logger.warning(
                "Scene index %d out of range for %d scenes, using %d",
                record.current_scene_index,
                self.config.scene_count,
                index,
            )
            record = replace(record, current_scene_index=index)
        logger.info(
            "Scene rotation: loaded total_episodes=%d scene_index=%d",
            record.total_episodes,
            record.current_scene_index,
        )
        return record

    def save(self, record: SceneRotationRecord | None = None) -> bool:
        """Persist ``record`` (or the current one) and make it current.

        The scene index is clamped into range before the record is adopted.
        Returns ``False`` if the write failed; the record is adopted anyway.
        """
        with self._lock:
            if record is not None:
                index = self.config.clamp_index(record.current_scene_index)
                self._record = replace(record, current_scene_index=index)
            return self._write(self._record)

    def _write(self, record: SceneRotationRecord) -> bool:
        directory = os.path.dirname(os.path.abspath(self.path))
        tmp_path = None
        try:
            os.makedirs(directory, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w", encoding="utf-8", dir=directory, suffix=".tmp", delete=False
            ) as fh:
                tmp_path = fh.name
                yaml.safe_dump(record.to_dict(), fh, sort_keys=False)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            logger.error("Failed to save scene rotation data to %s: %s", self.path, exc)
            if tmp_path is not None and os.path.exists(tmp_path):
                os.remove(tmp_path)
            return False
        logger.debug(
            "Scene rotation: saved total_episodes=%d scene_index=%d",
            record.total_episodes,
            record.current_scene_index,
        )
        return True

    def startup(self) -> ProgressionUpdate:
        """Pick the scene to load when the process starts."""
        with self._lock:
            if self.config.mode is RotationMode.FIXED:
                target = self.config.clamp_index(self.config.fixed_scene_index)
                logger.info("Scene rotation: fixed mode, locked to scene index %d", target)
            else:
                target = self.config.target_index(self._record.total_episodes)
            changed = target != self._record.current_scene_index
            if changed:
                self._record = replace(self._record, current_scene_index=target)
                self._write(self._record)
            logger.info(
                "Scene rotation: using scene '%s' for episode %d",
                self.config.scenes[target].name,
                self._record.total_episodes,
            )
            return ProgressionUpdate(self._record, changed, target if changed else None)

    def record_episode_end(self, outcome: EpisodeOutcome) -> ProgressionUpdate:
        """Count a finished episode, persist it and report scene changes.

        Call exactly once per episode; the store does not deduplicate.
        """
        with self._lock:
            update = record_episode_end(self._record, outcome, self.config)
            self._record = update.record
            self._write(self._record)
            if update.scene_changed:
                logger.info(
                    "Episode %d completed. Switching to scene '%s'",
                    update.record.total_episodes,
                    self.config.scenes[update.new_scene_index].name,
                )
            return update

    def reset(self) -> SceneRotationRecord:
        """Zero every counter and persist immediately."""
        with self._lock:
            self._record = SceneRotationRecord()
            self._write(self._record)
            logger.info("Scene rotation: episode count reset to 0")
            return self._record

    def scene_config(self, base_cfg: dict) -> dict:
        """Return a copy of ``base_cfg`` with the active scene's overrides."""
        return merge_config(base_cfg, self.scene.overrides)
