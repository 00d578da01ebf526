"""Reinforcement learning core for navlearn.

This package provides the online learning loop that lets a UI automation
driver improve its action choices from experience.  Key components:

- :class:`StateRepresentation` -- Encodes web/mobile observations into discrete states.
- :class:`RewardSystem` -- Turns action outcomes into scalar rewards.
- :class:`QLearning` -- Tabular epsilon-greedy Q-learning.
- :class:`PolicyGradient` -- Tabular REINFORCE / actor-critic policy.
- :class:`ExperienceReplay` -- Fixed-size replay buffer with prioritised sampling.
- :class:`ReinforcementAgent` -- Orchestrates learning and checkpointing.
- :class:`LearningDatabase` -- SQLAlchemy-backed learning store.
"""

from navlearn.rl.actions import Action, action_key
from navlearn.rl.agent import LearningSession, ReinforcementAgent
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
from navlearn.rl.state import State, StateRepresentation, state_key

__all__ = [
    "Action",
    "action_key",
    "State",
    "StateRepresentation",
    "state_key",
    "Outcome",
    "RewardSystem",
    "QLearning",
    "PolicyGradient",
    "Experience",
    "ExperienceReplay",
    "ReinforcementAgent",
    "LearningSession",
    "LearningObserver",
    "LoggingObserver",
    "PersistenceBackend",
    "PersistenceError",
    "NullBackend",
    "LearningDatabase",
]
