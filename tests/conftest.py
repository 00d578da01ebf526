"""
Pytest configuration and shared fixtures for navlearn tests.
"""

import asyncio
from typing import Any

import pytest

from navlearn.config import AgentConfig
from navlearn.rl.observers import LearningObserver
from navlearn.rl.persistence import NullBackend, PersistenceError
from navlearn.rl.state import State


# =============================================================================
# States
# =============================================================================

@pytest.fixture
def make_state():
    """Factory for web states of a given type and element count."""

    def _make(page_type: str = "HOME", element_count: int = 10, **kwargs: Any) -> State:
        return State(platform="web", type=page_type, element_count=element_count, **kwargs)

    return _make


@pytest.fixture
def db_url(tmp_path):
    """URL of a fresh SQLite learning database in a temp directory."""
    return f"sqlite+aiosqlite:///{tmp_path / 'learning_memory.db'}"


@pytest.fixture
def memory_config():
    """Agent config with persistence disabled and a fixed seed."""
    return AgentConfig(enable_database=False, seed=7)


# =============================================================================
# Observers and backends
# =============================================================================

class RecordingObserver(LearningObserver):
    """Observer that keeps every event it receives."""

    def __init__(self):
        self.episodes: list[tuple[int, float, int]] = []
        self.checkpoints: list[tuple[int, dict]] = []
        self.errors: list[tuple[str, BaseException]] = []

    def on_episode_end(self, episode, total_reward, steps):
        self.episodes.append((episode, total_reward, steps))

    def on_checkpoint(self, step, summary):
        self.checkpoints.append((step, summary))

    def on_persistence_error(self, operation, error):
        self.errors.append((operation, error))


class RecordingBackend(NullBackend):
    """Enabled in-memory backend that records what the agent writes."""

    enabled = True

    def __init__(self):
        self.q_tables: list[dict] = []
        self.experience_batches: list[list] = []

    async def save_q_table(self, entries):
        self.q_tables.append(dict(entries))
        return len(entries)

    async def save_experiences(self, experiences):
        self.experience_batches.append(list(experiences))
        return len(experiences)


class UnavailableBackend(RecordingBackend):
    """Backend whose store cannot be opened."""

    async def initialize(self):
        raise PersistenceError("connection refused")


class FailingSaveBackend(RecordingBackend):
    """Backend that opens fine but fails every table write."""

    async def save_q_table(self, entries):
        raise PersistenceError("disk full")


class SlowBackend(RecordingBackend):
    """Backend whose writes never finish within a short timeout."""

    async def save_q_table(self, entries):
        await asyncio.sleep(5)
        return len(entries)


@pytest.fixture
def observer():
    return RecordingObserver()
