"""
Experience replay buffer for the navlearn RL agent.

Stores agent experiences (state, action, reward, next_state, done) and
supports both uniform random sampling and prioritised sampling (where
experiences with larger priority -- initially ``|reward|`` -- are sampled
more frequently).

The buffer has a fixed capacity.  Once full, new experiences overwrite
slots in round-robin order starting from slot 0; eviction is not
reward-aware.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Mapping

import numpy as np

from navlearn.config import ReplayConfig
from navlearn.rl.actions import Action, ActionLike, action_key
from navlearn.rl.state import State, StateLike
from navlearn.utils.logging import get_logger

logger = get_logger(__name__)

PRIORITY_EPSILON = 0.01


def _now_ms() -> int:
    return int(time.time() * 1000)


def _state_to_json(state: StateLike | None) -> Any:
    if isinstance(state, State):
        return state.to_dict()
    return state


def _state_from_json(data: Any) -> StateLike | None:
    if isinstance(data, Mapping):
        return State.from_dict(data)
    return data


@dataclass
class Experience:
    """A single RL experience tuple recorded during agent operation.

    Attributes:
        state: The state the agent saw before acting.
        action: The action the agent selected.
        reward: The scalar reward received after the action.
        next_state: The state after the action was executed.
        done: Whether the episode terminated after this step.
        timestamp: When this experience was recorded (epoch ms).
        priority: Sampling priority, ``|reward| + 0.01`` unless given.
    """

    state: StateLike
    action: ActionLike
    reward: float
    next_state: StateLike | None
    done: bool = False
    timestamp: int = field(default_factory=_now_ms)
    priority: float | None = None

    def __post_init__(self) -> None:
        if self.priority is None:
            self.priority = abs(self.reward) + PRIORITY_EPSILON

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dictionary (JSON-safe)."""
        return {
            "state": _state_to_json(self.state),
            "action": action_key(self.action),
            "reward": self.reward,
            "next_state": _state_to_json(self.next_state),
            "done": self.done,
            "timestamp": self.timestamp,
            "priority": self.priority,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Experience":
        """Deserialize from a plain dictionary."""
        action = data["action"]
        if isinstance(action, str):
            action = Action.from_key(action)
        elif isinstance(action, Mapping):
            action = Action.from_dict(action)
        return cls(
            state=_state_from_json(data.get("state")),
            action=action,
            reward=float(data.get("reward", 0.0)),
            next_state=_state_from_json(data.get("next_state", data.get("nextState"))),
            done=bool(data.get("done", False)),
            timestamp=int(data.get("timestamp") or _now_ms()),
            priority=data.get("priority"),
        )


class ExperienceReplay:
    """Fixed-size experience replay buffer with uniform and prioritised sampling.

    Usage::

        replay = ExperienceReplay(ReplayConfig(max_size=10_000))
        replay.add(experience)
        batch = replay.sample(32)
    """

    def __init__(
        self,
        config: ReplayConfig | Mapping[str, Any] | None = None,
        seed: int | None = None,
    ) -> None:
        if config is None:
            config = ReplayConfig()
        elif not isinstance(config, ReplayConfig):
            config = ReplayConfig.model_validate(dict(config))
        self.config = config
        self._rng = np.random.default_rng(seed)

        self.buffer: list[Experience] = []
        self.priorities: list[float] = []
        self.position = 0
        self.total_added = 0

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    def add(self, experience: Experience) -> None:
        """Store an experience in the buffer.

        While under capacity the experience is appended.  At capacity it
        overwrites the slot under the write cursor, which then advances
        modulo ``max_size``.
        """
        priority = abs(experience.reward) + PRIORITY_EPSILON
        experience.priority = priority

        if len(self.buffer) < self.config.max_size:
            self.buffer.append(experience)
            self.priorities.append(priority)
        else:
            self.buffer[self.position] = experience
            self.priorities[self.position] = priority
            self.position = (self.position + 1) % self.config.max_size
        self.total_added += 1

    def sample(self, batch_size: int | None = None) -> list[Experience]:
        """Sample a batch of experiences.

        Returns the whole buffer when it holds no more than *batch_size*
        experiences, and an empty list when it is empty or *batch_size* is 0.
        """
        _, batch = self.sample_with_indices(batch_size)
        return batch

    def sample_with_indices(
        self, batch_size: int | None = None
    ) -> tuple[list[int], list[Experience]]:
        """Like :meth:`sample` but also return the buffer slot of each pick.

        The indices can be fed back to :meth:`update_priorities`.
        """
        size = self.config.batch_size if batch_size is None else batch_size
        n = len(self.buffer)

        if n == 0 or size <= 0:
            return [], []
        if n <= size:
            indices = list(range(n))
        elif self.config.use_priority:
            indices = self._priority_indices(size)
        else:
            indices = self._uniform_indices(size)

        return indices, [self.buffer[i] for i in indices]

    def update_priorities(self, indices: list[int], priorities: list[float]) -> None:
        """Overwrite the priorities of the given buffer slots.

        Out-of-range indices are ignored.
        """
        for idx, priority in zip(indices, priorities):
            if 0 <= idx < len(self.priorities):
                self.priorities[idx] = float(priority)
                self.buffer[idx].priority = float(priority)

    # ---- queries ------------------------------------------------------

    def get_by_reward_range(self, min_reward: float, max_reward: float) -> list[Experience]:
        return [e for e in self.buffer if min_reward <= e.reward <= max_reward]

    def get_by_action(self, action: ActionLike) -> list[Experience]:
        key = action_key(action)
        return [e for e in self.buffer if action_key(e.action) == key]

    def get_recent(self, count: int) -> list[Experience]:
        """Return the *count* most recently added experiences, oldest first."""
        if count <= 0:
            return []
        ordered = self._chronological()
        return ordered[-count:]

    def get_successful(self, min_reward: float = 5.0) -> list[Experience]:
        return [e for e in self.buffer if e.reward >= min_reward]

    def get_failed(self, max_reward: float = -3.0) -> list[Experience]:
        return [e for e in self.buffer if e.reward <= max_reward]

    def size(self) -> int:
        """Return the number of experiences currently in the buffer."""
        return len(self.buffer)

    def __len__(self) -> int:
        return len(self.buffer)

    def clear(self) -> None:
        """Remove all experiences from the buffer."""
        self.buffer = []
        self.priorities = []
        self.position = 0

    def get_stats(self) -> dict[str, Any]:
        """Return summary statistics about the buffer contents.

        Returns:
            Dictionary with keys ``size``, ``max_size``, ``utilization_pct``,
            ``total_reward``, ``avg_reward``, ``reward_std``, ``reward_min``,
            ``reward_max``, ``reward_distribution`` (histogram-like breakdown
            of reward ranges), ``action_distribution`` (count per action) and
            ``success_rate`` (share of positive rewards).
        """
        if not self.buffer:
            return {
                "size": 0,
                "max_size": self.config.max_size,
                "utilization_pct": 0.0,
                "total_reward": 0.0,
                "avg_reward": 0.0,
                "reward_std": 0.0,
                "reward_min": 0.0,
                "reward_max": 0.0,
                "reward_distribution": {},
                "action_distribution": {},
                "success_rate": 0.0,
            }

        rewards = np.array([e.reward for e in self.buffer], dtype=float)
        n = len(rewards)

        buckets = {
            "failed (<= -3.0)": int(np.sum(rewards <= -3.0)),
            "negative (-3.0 to 0)": int(np.sum((rewards > -3.0) & (rewards < 0))),
            "zero (0)": int(np.sum(rewards == 0)),
            "positive (0 to 5.0)": int(np.sum((rewards > 0) & (rewards < 5.0))),
            "successful (>= 5.0)": int(np.sum(rewards >= 5.0)),
        }

        actions: dict[str, int] = {}
        for e in self.buffer:
            key = action_key(e.action)
            actions[key] = actions.get(key, 0) + 1

        return {
            "size": n,
            "max_size": self.config.max_size,
            "utilization_pct": round(n / self.config.max_size * 100.0, 2),
            "total_reward": float(rewards.sum()),
            "avg_reward": round(float(rewards.mean()), 6),
            "reward_std": round(float(rewards.std()), 6),
            "reward_min": float(rewards.min()),
            "reward_max": float(rewards.max()),
            "reward_distribution": buckets,
            "action_distribution": actions,
            "success_rate": float(np.sum(rewards > 0)) / n,
        }

    # ---- persistence --------------------------------------------------

    def export(self) -> dict[str, Any]:
        """Export buffer contents, priorities, cursor and config."""
        return {
            "buffer": [e.to_dict() for e in self.buffer],
            "priorities": list(self.priorities),
            "position": self.position,
            "config": self.config.model_dump(),
            "timestamp": _now_ms(),
        }

    def import_data(self, data: Mapping[str, Any]) -> None:
        """Restore the buffer from :meth:`export` output.

        Missing parts fall back to empty/default values with a warning.
        """
        if data.get("config"):
            self.config = self.config.model_copy(update=dict(data["config"]))

        raw_buffer = data.get("buffer")
        if raw_buffer is None:
            logger.warning("replay_import_missing_field", field="buffer")
            raw_buffer = []

        experiences: list[Experience] = []
        for item in raw_buffer:
            try:
                experiences.append(
                    item if isinstance(item, Experience) else Experience.from_dict(item)
                )
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("replay_import_bad_experience", error=str(exc))

        experiences = experiences[: self.config.max_size]
        priorities = list(data.get("priorities") or [])
        if len(priorities) != len(experiences):
            if priorities:
                logger.warning(
                    "replay_import_priority_mismatch",
                    experiences=len(experiences),
                    priorities=len(priorities),
                )
            priorities = [e.priority for e in experiences]

        self.buffer = experiences
        self.priorities = [float(p) for p in priorities]
        position = int(data.get("position") or 0)
        self.position = position if 0 <= position < self.config.max_size else 0

        logger.info("replay_imported", experiences=len(self.buffer))

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _priority_indices(self, size: int) -> list[int]:
        """Independent priority-proportional draws (with replacement)."""
        weights = np.asarray(self.priorities, dtype=float) ** self.config.priority_alpha
        total = weights.sum()
        if total <= 0 or not np.isfinite(total):
            return self._uniform_indices(size)
        picks = self._rng.choice(len(self.buffer), size=size, replace=True, p=weights / total)
        return [int(i) for i in picks]

    def _uniform_indices(self, size: int) -> list[int]:
        """Uniform draws without replacement."""
        picks = self._rng.choice(len(self.buffer), size=size, replace=False)
        return [int(i) for i in picks]

    def _chronological(self) -> list[Experience]:
        """Buffer contents ordered from oldest to newest write."""
        if len(self.buffer) < self.config.max_size:
            return list(self.buffer)
        return self.buffer[self.position:] + self.buffer[: self.position]
