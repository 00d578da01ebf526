"""Callback interface for agent lifecycle events.

Callers subclass :class:`LearningObserver` and override the hooks they
care about; every hook defaults to a no-op.  :class:`LoggingObserver` is
what the agent uses when no observer is supplied.
"""

from __future__ import annotations

from typing import Any

from navlearn.utils.logging import get_logger

logger = get_logger(__name__)


class LearningObserver:
    """Receives episode, checkpoint and persistence-failure notifications."""

    def on_episode_end(self, episode: int, total_reward: float, steps: int) -> None:
        """Called after each finished episode."""

    def on_checkpoint(self, step: int, summary: dict[str, Any]) -> None:
        """Called after a successful save with the sizes that were written."""

    def on_persistence_error(self, operation: str, error: BaseException) -> None:
        """Called when a save or load fails or times out.

        The agent keeps running on its in-memory tables afterwards.
        """


class LoggingObserver(LearningObserver):
    """Observer that forwards every event to the structured logger."""

    def on_episode_end(self, episode: int, total_reward: float, steps: int) -> None:
        logger.info("episode_complete", episode=episode, total_reward=total_reward, steps=steps)

    def on_checkpoint(self, step: int, summary: dict[str, Any]) -> None:
        logger.info("checkpoint_saved", step=step, **summary)

    def on_persistence_error(self, operation: str, error: BaseException) -> None:
        logger.error(
            "persistence_failed",
            operation=operation,
            error=str(error) or type(error).__name__,
        )
