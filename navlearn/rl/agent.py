"""
Reinforcement learning agent for web and mobile UI automation.

:class:`ReinforcementAgent` wires state encoding, reward calculation,
Q-learning, the policy-gradient learner and experience replay into one
choose -> observe -> learn loop, and checkpoints the learned tables to a
:class:`~navlearn.rl.persistence.PersistenceBackend`.

The agent is a single-threaded state machine: ``choose_action`` and
``learn`` must be called in lockstep with the environment, never
concurrently on one instance.  Only persistence I/O is awaited, always
under ``persistence_timeout``; a failed or timed-out save or load is
reported to the observer and learning carries on from memory.
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from navlearn.config import AgentConfig, settings
from navlearn.rl.actions import ActionLike
from navlearn.rl.observers import LearningObserver, LoggingObserver
from navlearn.rl.persistence import (
    LearningDatabase,
    NullBackend,
    PersistenceBackend,
    PersistenceError,
)
from navlearn.rl.policy_gradient import PolicyGradient
from navlearn.rl.q_learning import QLearning
from navlearn.rl.replay_buffer import Experience, ExperienceReplay
from navlearn.rl.rewards import Outcome, RewardSystem
from navlearn.rl.state import State, StateLike, StateRepresentation
from navlearn.utils.logging import get_logger

logger = get_logger(__name__)

Q_ALGORITHMS = ("qlearning", "hybrid")
POLICY_ALGORITHMS = ("policy", "hybrid")


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class LearningSession:
    """One automation run, recorded in the learning store."""

    type: str
    platform: str
    goal: str | None = None
    id: int | None = None
    total_steps: int = 0
    total_reward: float = 0.0
    success: bool | None = None
    started_at: int = field(default_factory=_now_ms)
    ended_at: int | None = None


class ReinforcementAgent:
    """Online learner that picks UI actions and improves from rewards.

    Usage::

        agent = ReinforcementAgent(AgentConfig(algorithm="hybrid"))
        await agent.initialize()

        state = agent.create_state(observation)
        action = agent.choose_action(state, ["click", "scroll"])
        ...  # execute the action, observe the outcome
        reward = agent.calculate_reward(outcome)
        await agent.learn(state, action, reward, next_state, done)

        await agent.close()
    """

    def __init__(
        self,
        config: AgentConfig | Mapping[str, Any] | None = None,
        backend: PersistenceBackend | None = None,
        observer: LearningObserver | None = None,
    ):
        if config is None:
            config = settings.agent.model_copy(deep=True)
        elif not isinstance(config, AgentConfig):
            config = AgentConfig.model_validate(dict(config))
        self.config = config

        seed = config.seed
        self.q_learning = QLearning(config.q_learning, seed=seed)
        self.policy_gradient = PolicyGradient(
            config.policy, seed=None if seed is None else seed + 1
        )
        self.experience_replay = ExperienceReplay(
            config.replay, seed=None if seed is None else seed + 2
        )
        self.reward_system = RewardSystem(config.reward)
        self.state_representation = StateRepresentation(config.platform)
        self._rng = random.Random(seed)

        if backend is None:
            backend = (
                LearningDatabase(config.database_url, echo=config.database_echo)
                if config.enable_database
                else NullBackend()
            )
        self.backend = backend
        self.observer = observer or LoggingObserver()

        self.current_state: StateLike | None = None
        self.episode_rewards: list[float] = []
        self.step_count = 0
        self.episode_count = 0
        self.last_save_step = 0
        self.session: LearningSession | None = None
        # replay.total_added at the last successful save
        self._saved_experiences = 0

    @property
    def algorithm(self) -> str:
        return self.config.algorithm

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Open the persistence backend and load previously learned tables.

        Raises :class:`PersistenceError` when persistence is enabled and the
        backend cannot be opened.
        """
        try:
            await self.backend.initialize()
        except PersistenceError as exc:
            logger.error("agent_initialize_failed", error=str(exc))
            raise

        if self.backend.enabled:
            await self.load()

        logger.info(
            "agent_initialized",
            algorithm=self.algorithm,
            platform=self.config.platform,
            persistence=self.backend.enabled,
        )

    async def close(self) -> None:
        """Save a final checkpoint and release the backend."""
        await self.save()
        try:
            await self.backend.close()
        except PersistenceError as exc:
            self.observer.on_persistence_error("close", exc)

    # ------------------------------------------------------------------
    # Acting
    # ------------------------------------------------------------------

    def create_state(self, raw: Mapping[str, Any]) -> State:
        return self.state_representation.create_state(raw)

    def choose_action(
        self, state: StateLike, valid_actions: Sequence[ActionLike] | None = None
    ) -> ActionLike | None:
        """Select an action with the configured algorithm.

        In hybrid mode Q-learning decides with probability
        ``hybrid_q_ratio`` and the policy decides otherwise.  Returns
        ``None`` when *valid_actions* is empty.
        """
        if self.algorithm == "policy":
            return self.policy_gradient.sample_action(state, valid_actions)
        if self.algorithm == "hybrid" and self._rng.random() >= self.config.hybrid_q_ratio:
            return self.policy_gradient.sample_action(state, valid_actions)
        return self.q_learning.choose_action(state, valid_actions)

    def calculate_reward(self, outcome: Outcome | Mapping[str, Any]) -> float:
        return self.reward_system.calculate_reward(outcome)

    # ------------------------------------------------------------------
    # Learning
    # ------------------------------------------------------------------

    async def learn(
        self,
        state: StateLike,
        action: ActionLike,
        reward: float,
        next_state: StateLike | None,
        done: bool = False,
    ) -> None:
        """Record one transition and run any learning it triggers."""
        self.experience_replay.add(Experience(state, action, reward, next_state, done))

        if self.algorithm in POLICY_ALGORITHMS:
            self.policy_gradient.store_transition(state, action, reward, next_state, done)
        if self.algorithm in Q_ALGORITHMS:
            self.q_learning.update(state, action, reward, next_state, done)

        self.step_count += 1
        self.episode_rewards.append(reward)
        if self.session is not None:
            self.session.total_steps += 1
            self.session.total_reward += reward

        if self.step_count % self.config.update_frequency == 0:
            self.batch_learn()

        if done:
            self.end_episode()

        if self.step_count - self.last_save_step >= self.config.save_frequency:
            await self.save()
            self.last_save_step = self.step_count

        self.current_state = next_state

    def batch_learn(self) -> int:
        """Replay a sampled batch through Q-learning; returns the batch size."""
        batch = self.experience_replay.sample(self.config.batch_size)
        if not batch:
            return 0
        if self.algorithm in Q_ALGORITHMS:
            self.q_learning.batch_update(batch)
        return len(batch)

    def end_episode(self) -> None:
        """Apply the episode-end policy update and reset episode tracking."""
        self.episode_count += 1

        if self.algorithm == "policy":
            self.policy_gradient.update_reinforce()
        elif self.algorithm == "hybrid":
            self.policy_gradient.update_actor_critic()
        self.q_learning.decay_exploration()

        total_reward = sum(self.episode_rewards)
        steps = len(self.episode_rewards)
        self.episode_rewards = []
        self.observer.on_episode_end(self.episode_count, total_reward, steps)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_best_action(self, state: StateLike) -> ActionLike | None:
        if self.algorithm == "qlearning":
            return self.q_learning.get_best_action(state)
        return self.policy_gradient.get_best_action(state)

    def get_q_value(self, state: StateLike, action: ActionLike) -> float:
        return self.q_learning.get_q_value(state, action)

    def get_policy(self, state: StateLike) -> dict[str, float]:
        return self.policy_gradient.get_policy(state)

    def get_stats(self) -> dict[str, Any]:
        return {
            "algorithm": self.algorithm,
            "total_steps": self.step_count,
            "episodes": self.episode_count,
            "q_table_size": self.q_learning.get_size(),
            "q_entries": self.q_learning.get_entry_count(),
            "policy_states": self.policy_gradient.get_size(),
            "experience_buffer_size": self.experience_replay.size(),
            "reward_stats": self.reward_system.get_stats(),
            "experience_stats": self.experience_replay.get_stats(),
            "exploration_rate": self.q_learning.exploration_rate,
            "persistence_enabled": self.backend.enabled,
        }

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def save(self) -> bool:
        """Checkpoint the learned tables; returns ``False`` if nothing was saved."""
        if not self.backend.enabled:
            return False
        try:
            summary = await asyncio.wait_for(
                self._write_checkpoint(), timeout=self.config.persistence_timeout
            )
        except (PersistenceError, asyncio.TimeoutError) as exc:
            self.observer.on_persistence_error("save", exc)
            return False
        self.observer.on_checkpoint(self.step_count, summary)
        return True

    async def load(self) -> bool:
        """Load tables and the best stored experiences from the backend."""
        if not self.backend.enabled:
            return False
        try:
            counts = await asyncio.wait_for(
                self._read_checkpoint(), timeout=self.config.persistence_timeout
            )
        except (PersistenceError, asyncio.TimeoutError) as exc:
            self.observer.on_persistence_error("load", exc)
            return False
        logger.info("learning_state_loaded", **counts)
        return True

    async def start_session(
        self, goal: str | None = None, session_type: str = "automation"
    ) -> LearningSession:
        """Begin tracking a session; its steps and rewards accumulate from now."""
        self.session = LearningSession(
            type=session_type, platform=self.config.platform, goal=goal
        )
        if self.backend.enabled:
            try:
                self.session.id = await asyncio.wait_for(
                    self.backend.start_session(session_type, self.config.platform, goal),
                    timeout=self.config.persistence_timeout,
                )
            except (PersistenceError, asyncio.TimeoutError) as exc:
                self.observer.on_persistence_error("start_session", exc)
        return self.session

    async def end_session(self, success: bool) -> LearningSession | None:
        session = self.session
        if session is None:
            return None
        session.success = success
        session.ended_at = _now_ms()
        self.session = None

        if self.backend.enabled and session.id is not None:
            try:
                await asyncio.wait_for(
                    self.backend.end_session(
                        session.id, session.total_steps, session.total_reward, success
                    ),
                    timeout=self.config.persistence_timeout,
                )
            except (PersistenceError, asyncio.TimeoutError) as exc:
                self.observer.on_persistence_error("end_session", exc)
        return session

    def export(self) -> dict[str, Any]:
        """Snapshot every learning component."""
        return {
            "q_learning": self.q_learning.export(),
            "policy": self.policy_gradient.export(),
            "experiences": self.experience_replay.export(),
            "stats": self.get_stats(),
            "timestamp": _now_ms(),
        }

    def import_snapshot(self, data: Mapping[str, Any]) -> None:
        """Restore components from :meth:`export` output.

        A missing section leaves that component empty and logs a warning.
        """
        if not isinstance(data, Mapping):
            logger.warning("snapshot_invalid", type=type(data).__name__)
            return

        sections = (
            ("q_learning", self.q_learning),
            ("policy", self.policy_gradient),
            ("experiences", self.experience_replay),
        )
        for name, component in sections:
            section = data.get(name)
            if isinstance(section, Mapping):
                component.import_data(section)
            else:
                logger.warning("snapshot_missing_section", section=name)
                component.import_data({})
        logger.info("snapshot_imported")

    def reset(self) -> None:
        """Forget everything learned and restart the counters."""
        self.q_learning.reset()
        self.policy_gradient.reset()
        self.experience_replay.clear()
        self.reward_system.reset()
        self.episode_rewards = []
        self.step_count = 0
        self.episode_count = 0
        self.last_save_step = 0
        self.current_state = None
        self._saved_experiences = self.experience_replay.total_added

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _write_checkpoint(self) -> dict[str, int]:
        summary: dict[str, int] = {}
        if self.algorithm in Q_ALGORITHMS:
            summary["q_values"] = await self.backend.save_q_table(self.q_learning.q_table)
        if self.algorithm in POLICY_ALGORITHMS:
            entries = {
                (s_key, a_key): prob
                for s_key, dist in self.policy_gradient.policy.items()
                for a_key, prob in dist.items()
            }
            summary["policies"] = await self.backend.save_policies(entries)
            summary["state_values"] = await self.backend.save_value_function(
                self.policy_gradient.value_function
            )

        total_added = self.experience_replay.total_added
        pending = min(
            total_added - self._saved_experiences,
            self.experience_replay.size(),
            self.config.checkpoint_experience_limit,
        )
        summary["experiences"] = await self.backend.save_experiences(
            self.experience_replay.get_recent(pending)
        )
        self._saved_experiences = total_added
        return summary

    async def _read_checkpoint(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        if self.algorithm in Q_ALGORITHMS:
            q_table = await self.backend.load_q_table()
            if q_table:
                self.q_learning.load_table(q_table)
            counts["q_states"] = self.q_learning.get_size()
        if self.algorithm in POLICY_ALGORITHMS:
            policies = await self.backend.load_policies()
            values = await self.backend.load_value_function()
            if policies or values:
                self.policy_gradient.load_tables(policies, values)
            counts["policy_states"] = self.policy_gradient.get_size()

        experiences = await self.backend.load_successful_experiences(
            self.config.startup_min_reward, self.config.startup_experience_limit
        )
        for exp in experiences:
            self.experience_replay.add(exp)
        self._saved_experiences = self.experience_replay.total_added
        counts["experiences"] = len(experiences)
        return counts
