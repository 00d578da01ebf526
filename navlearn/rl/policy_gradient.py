"""
Tabular policy-gradient learner (REINFORCE and actor-critic).

The policy is a per-state categorical distribution over action keys.
Transitions are collected into an episode buffer during an episode and
applied in one pass when the episode ends:

* :meth:`PolicyGradient.update_reinforce` moves each visited action's
  probability by ``learning_rate * G_t``.
* :meth:`PolicyGradient.update_actor_critic` moves it by
  ``learning_rate * A_t`` where ``A_t`` is the one-step TD advantage
  against a tabular state-value baseline, and trains that baseline.

After every adjustment the probability is clamped to
``[min_probability, 1]`` and the state's distribution is renormalised to
sum to 1.
"""

from __future__ import annotations

import math
import random
import time
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from navlearn.config import PolicyConfig
from navlearn.rl.actions import Action, ActionLike, action_key
from navlearn.rl.state import StateLike, state_key
from navlearn.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class Transition:
    """One step recorded in the current episode buffer."""

    state: StateLike
    action: ActionLike
    reward: float
    next_state: StateLike | None
    done: bool
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))


class PolicyGradient:
    """Tabular stochastic policy with a state-value baseline."""

    def __init__(
        self,
        config: PolicyConfig | Mapping[str, Any] | None = None,
        seed: int | None = None,
    ):
        if config is None:
            config = PolicyConfig()
        elif not isinstance(config, PolicyConfig):
            config = PolicyConfig.model_validate(dict(config))
        self.config = config

        self._rng = random.Random(seed)
        self.policy: dict[str, dict[str, float]] = {}
        self.value_function: dict[str, float] = {}
        self.episode_buffer: list[Transition] = []
        self._actions: dict[str, ActionLike] = {}

    # ------------------------------------------------------------------
    # Acting
    # ------------------------------------------------------------------

    def sample_action(
        self, state: StateLike, valid_actions: Sequence[ActionLike] | None = None
    ) -> ActionLike | None:
        """Draw an action from the state's distribution restricted to *valid_actions*.

        Unseen states, and states whose stored mass over *valid_actions*
        is zero, sample uniformly.  Returns ``None`` for an empty action list.
        """
        actions = list(self.config.action_space if valid_actions is None else valid_actions)
        if not actions:
            return None

        dist = self.policy.get(state_key(state))
        if dist is None:
            return self._rng.choice(actions)

        weights = [dist.get(action_key(a), 0.0) for a in actions]
        if sum(weights) <= 0:
            return self._rng.choice(actions)
        return self._rng.choices(actions, weights=weights, k=1)[0]

    def store_transition(
        self,
        state: StateLike,
        action: ActionLike,
        reward: float,
        next_state: StateLike | None,
        done: bool = False,
    ) -> None:
        """Append a step to the episode buffer; tables are not touched."""
        self.episode_buffer.append(Transition(state, action, reward, next_state, done))

    # ------------------------------------------------------------------
    # Episode-end updates
    # ------------------------------------------------------------------

    def calculate_returns(self) -> list[float]:
        """Discounted return ``G_t`` for every step of the episode buffer."""
        returns: list[float] = []
        g = 0.0
        for transition in reversed(self.episode_buffer):
            g = transition.reward + self.config.gamma * g
            returns.append(g)
        returns.reverse()
        return returns

    def update_reinforce(self) -> None:
        """Apply a REINFORCE update for the buffered episode and clear it."""
        if not self.episode_buffer:
            return

        returns = self.calculate_returns()
        for transition, g in zip(self.episode_buffer, returns):
            self._adjust(state_key(transition.state), transition.action, g)

        logger.debug("reinforce_update", steps=len(self.episode_buffer), first_return=returns[0])
        self.episode_buffer = []

    def update_actor_critic(self) -> None:
        """Apply a one-step actor-critic update for the buffered episode and clear it."""
        if not self.episode_buffer:
            return

        gamma = self.config.gamma
        for t in self.episode_buffer:
            s_key = state_key(t.state)
            next_value = 0.0
            if not t.done and t.next_state is not None:
                next_value = self.value_function.get(state_key(t.next_state), 0.0)

            value = self.value_function.get(s_key, 0.0)
            target = t.reward + gamma * next_value
            advantage = target - value

            self.value_function[s_key] = value + self.config.critic_learning_rate * advantage
            self._adjust(s_key, t.action, advantage)

        logger.debug("actor_critic_update", steps=len(self.episode_buffer))
        self.episode_buffer = []

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_policy(self, state: StateLike) -> dict[str, float]:
        """Return the action distribution for *state*.

        Unseen states report a uniform distribution over the configured
        action space without storing it.
        """
        dist = self.policy.get(state_key(state))
        if dist is not None:
            return dict(dist)
        space = self.config.action_space
        if not space:
            return {}
        return {a: 1.0 / len(space) for a in space}

    def get_value(self, state: StateLike) -> float:
        return self.value_function.get(state_key(state), 0.0)

    def calculate_entropy(self, state: StateLike) -> float:
        return -sum(p * math.log(p) for p in self.get_policy(state).values() if p > 0)

    def get_best_action(self, state: StateLike) -> ActionLike | None:
        dist = self.policy.get(state_key(state))
        if not dist:
            return None
        best = max(dist, key=dist.get)
        return self._actions.get(best, best)

    def get_policy_stats(self, state: StateLike) -> dict[str, Any]:
        dist = self.get_policy(state)
        ranked = sorted(dist.items(), key=lambda item: item[1], reverse=True)
        return {
            "distribution": dict(ranked),
            "best_action": ranked[0][0] if ranked else None,
            "entropy": self.calculate_entropy(state),
            "value": self.get_value(state),
        }

    def get_size(self) -> int:
        """Number of states with a stored distribution."""
        return len(self.policy)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load_tables(
        self,
        policies: Mapping[tuple[str, str], float],
        values: Mapping[str, float],
    ) -> None:
        """Replace the policy and value tables with stored rows."""
        self.policy = {}
        self._actions = {}
        for (s_key, a_key), prob in policies.items():
            self.policy.setdefault(s_key, {})[a_key] = float(prob)
            self._actions.setdefault(a_key, Action.from_key(a_key))
        self.value_function = {k: float(v) for k, v in values.items()}

    def export(self) -> dict[str, Any]:
        return {
            "policy": {k: dict(v) for k, v in self.policy.items()},
            "value_function": dict(self.value_function),
            "config": self.config.model_dump(),
            "timestamp": int(time.time() * 1000),
        }

    def import_data(self, data: Mapping[str, Any]) -> None:
        """Restore tables from :meth:`export` output, tolerating missing parts."""
        if data.get("config"):
            self.config = self.config.model_copy(update=dict(data["config"]))

        policy = data.get("policy")
        if policy is None:
            logger.warning("policy_import_missing_field", field="policy")
            policy = {}
        values = data.get("value_function", data.get("valueFunction"))
        if values is None:
            logger.warning("policy_import_missing_field", field="value_function")
            values = {}

        entries: dict[tuple[str, str], float] = {}
        for s_key, dist in policy.items():
            if not isinstance(dist, Mapping):
                logger.warning("policy_import_bad_state", state_key=s_key)
                continue
            for a_key, prob in dist.items():
                entries[(s_key, a_key)] = float(prob)
        self.load_tables(entries, values)
        self.episode_buffer = []
        logger.info("policy_imported", states=len(self.policy))

    def reset(self) -> None:
        self.policy = {}
        self.value_function = {}
        self.episode_buffer = []
        self._actions = {}

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _distribution(self, s_key: str, action: ActionLike) -> dict[str, float]:
        """Return the stored distribution for *s_key*, creating it if needed.

        New states start uniform over the action space plus *action*; an
        action not yet in an existing distribution joins at ``min_probability``.
        """
        a_key = action_key(action)
        self._actions.setdefault(a_key, action)

        dist = self.policy.get(s_key)
        if dist is None:
            keys = list(dict.fromkeys([*self.config.action_space, a_key]))
            dist = {k: 1.0 / len(keys) for k in keys}
            self.policy[s_key] = dist
        elif a_key not in dist:
            dist[a_key] = self.config.min_probability
            self._normalize(dist)
        return dist

    def _adjust(self, s_key: str, action: ActionLike, signal: float) -> None:
        dist = self._distribution(s_key, action)
        a_key = action_key(action)
        prob = dist[a_key] + self.config.learning_rate * signal
        dist[a_key] = min(1.0, max(self.config.min_probability, prob))
        self._normalize(dist)

    @staticmethod
    def _normalize(dist: dict[str, float]) -> None:
        total = sum(dist.values())
        if total <= 0:
            return
        for k in dist:
            dist[k] /= total
