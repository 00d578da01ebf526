"""
Tabular Q-learning for the navlearn RL agent.

Q-values live in a single dict keyed by ``(state_key, action_key)``; a
per-state index of known actions keeps ``max_a Q(s, a)`` cheap.  Actions
are selected epsilon-greedily with ties between maximal actions broken
uniformly at random.
"""

from __future__ import annotations

import random
import time
from typing import Any, Iterable, Mapping, Sequence

from navlearn.config import QLearningConfig
from navlearn.rl.actions import Action, ActionLike, action_key
from navlearn.rl.state import StateLike, state_key
from navlearn.utils.logging import get_logger

logger = get_logger(__name__)

QKey = tuple[str, str]


class QLearning:
    """Tabular action-value estimator with epsilon-greedy selection.

    Usage::

        q = QLearning(QLearningConfig(learning_rate=0.1))
        action = q.choose_action(state, ["click", "scroll"])
        q.update(state, action, reward, next_state, done)

    The exploration rate decays multiplicatively once per finished episode
    (:meth:`decay_exploration`) and never drops below ``exploration_min``.
    """

    def __init__(
        self,
        config: QLearningConfig | Mapping[str, Any] | None = None,
        seed: int | None = None,
    ):
        if config is None:
            config = QLearningConfig()
        elif not isinstance(config, QLearningConfig):
            config = QLearningConfig.model_validate(dict(config))
        self.config = config
        self.exploration_rate: float = config.exploration_rate

        self._rng = random.Random(seed)
        self.q_table: dict[QKey, float] = {}
        # state_key -> {action_key: action}, in insertion order
        self._state_actions: dict[str, dict[str, ActionLike]] = {}

    # ------------------------------------------------------------------
    # Action selection
    # ------------------------------------------------------------------

    def choose_action(
        self, state: StateLike, valid_actions: Sequence[ActionLike] | None = None
    ) -> ActionLike | None:
        """Pick an action epsilon-greedily among *valid_actions*.

        ``valid_actions=None`` means the configured default action space.
        Returns ``None`` when there is nothing to choose from.
        """
        actions = list(self.config.action_space if valid_actions is None else valid_actions)
        if not actions:
            return None

        if self._rng.random() < self.exploration_rate:
            return self._rng.choice(actions)

        key = state_key(state)
        return self._argmax(key, actions)

    def get_best_action(self, state: StateLike) -> ActionLike | None:
        """Return the greedy action among those known for *state*."""
        key = state_key(state)
        known = self._state_actions.get(key)
        if not known:
            return None
        return self._argmax(key, list(known.values()))

    # ------------------------------------------------------------------
    # Learning
    # ------------------------------------------------------------------

    def update(
        self,
        state: StateLike,
        action: ActionLike,
        reward: float,
        next_state: StateLike | None,
        done: bool = False,
    ) -> float:
        """Apply one Bellman update and return the TD error.

        ``Q(s,a) += lr * (reward + gamma * max_a' Q(s',a') * (1 - done) - Q(s,a))``
        where the max runs over actions known for ``s'`` (0 if none).
        """
        key = state_key(state)
        a_key = action_key(action)
        current = self.q_table.get((key, a_key), 0.0)

        max_next = 0.0
        if not done and next_state is not None:
            max_next = self._max_q(state_key(next_state))

        target = reward + self.config.discount_factor * max_next
        td_error = target - current
        self._set(key, action, current + self.config.learning_rate * td_error)
        return td_error

    def batch_update(self, batch: Iterable[Any]) -> list[float]:
        """Apply :meth:`update` to every experience in sampled order.

        Later updates in the batch build on earlier ones.  Returns the TD
        error of each update.
        """
        errors = []
        for exp in batch:
            errors.append(
                self.update(exp.state, exp.action, exp.reward, exp.next_state, exp.done)
            )
        return errors

    def decay_exploration(self) -> float:
        """Decay epsilon once, floored at ``exploration_min``."""
        self.exploration_rate = max(
            self.config.exploration_min,
            self.exploration_rate * self.config.exploration_decay,
        )
        return self.exploration_rate

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_q_value(self, state: StateLike, action: ActionLike) -> float:
        return self.q_table.get((state_key(state), action_key(action)), 0.0)

    def get_state_values(self, state: StateLike) -> dict[str, float]:
        """Return ``{action_key: Q}`` for every action known in *state*."""
        key = state_key(state)
        return {a: self.q_table[(key, a)] for a in self._state_actions.get(key, {})}

    def get_state_stats(self, state: StateLike) -> dict[str, Any] | None:
        values = self.get_state_values(state)
        if not values:
            return None
        q = list(values.values())
        return {
            "count": len(q),
            "mean": sum(q) / len(q),
            "max": max(q),
            "min": min(q),
            "actions": [{"action": a, "value": v} for a, v in values.items()],
        }

    def get_size(self) -> int:
        """Number of states with at least one learned Q-value."""
        return len(self._state_actions)

    def get_entry_count(self) -> int:
        """Number of learned state-action pairs."""
        return len(self.q_table)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load_table(self, entries: Mapping[QKey, float]) -> None:
        """Replace the table with ``{(state_key, action_key): value}`` entries."""
        self.q_table = {}
        self._state_actions = {}
        for (s_key, a_key), value in entries.items():
            self._set(s_key, Action.from_key(a_key), float(value))

    def export(self) -> dict[str, Any]:
        """Export the table as ``{state_key: {action_key: value}}`` plus config."""
        table: dict[str, dict[str, float]] = {}
        for (s_key, a_key), value in self.q_table.items():
            table.setdefault(s_key, {})[a_key] = value
        return {
            "q_table": table,
            "exploration_rate": self.exploration_rate,
            "config": self.config.model_dump(),
            "timestamp": int(time.time() * 1000),
        }

    def import_data(self, data: Mapping[str, Any]) -> None:
        """Restore the table from :meth:`export` output.

        Missing parts fall back to empty/default values with a warning.
        """
        if data.get("config"):
            self.config = self.config.model_copy(update=dict(data["config"]))

        table = data.get("q_table")
        if table is None:
            logger.warning("q_import_missing_field", field="q_table")
            table = {}

        entries: dict[QKey, float] = {}
        for s_key, actions in table.items():
            if not isinstance(actions, Mapping):
                logger.warning("q_import_bad_state", state_key=s_key)
                continue
            for a_key, value in actions.items():
                entries[(s_key, a_key)] = float(value)
        self.load_table(entries)

        self.exploration_rate = float(
            data.get("exploration_rate", self.config.exploration_rate)
        )
        logger.info("q_table_imported", states=self.get_size(), entries=len(self.q_table))

    def reset(self) -> None:
        """Clear all learned values and restore the initial exploration rate."""
        self.q_table = {}
        self._state_actions = {}
        self.exploration_rate = self.config.exploration_rate

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _set(self, s_key: str, action: ActionLike, value: float) -> None:
        a_key = action_key(action)
        self.q_table[(s_key, a_key)] = value
        self._state_actions.setdefault(s_key, {})[a_key] = action

    def _max_q(self, s_key: str) -> float:
        known = self._state_actions.get(s_key)
        if not known:
            return 0.0
        return max(self.q_table[(s_key, a)] for a in known)

    def _argmax(self, s_key: str, actions: list[ActionLike]) -> ActionLike:
        values = [self.q_table.get((s_key, action_key(a)), 0.0) for a in actions]
        best = max(values)
        best_actions = [a for a, v in zip(actions, values) if v == best]
        return self._rng.choice(best_actions)
