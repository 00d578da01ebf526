"""Learning-store models for the navlearn agent.

Tabular values are keyed by ``state_key`` (the canonical state JSON) and
``action`` (the canonical action key).  Timestamps are epoch milliseconds
so that rows stay interchangeable with data written by earlier agents.
"""

from typing import Optional

from sqlalchemy import BigInteger, Boolean, Float, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from navlearn.models.base import Base


class QValue(Base):
    """Learned action value ``Q(state, action)``."""

    __tablename__ = "q_values"
    __table_args__ = (
        UniqueConstraint("state_key", "action", name="uq_q_values_state_action"),
        Index("idx_q_values_state", "state_key"),
    )

    state_key: Mapped[str] = mapped_column(Text, nullable=False)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    q_value: Mapped[float] = mapped_column(Float, nullable=False)
    update_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    last_updated: Mapped[int] = mapped_column(BigInteger, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<QValue(state_key={self.state_key!r}, action={self.action!r}, "
            f"q_value={self.q_value!r})>"
        )


class PolicyEntry(Base):
    """Probability of an action in a state's policy distribution."""

    __tablename__ = "policies"
    __table_args__ = (
        UniqueConstraint("state_key", "action", name="uq_policies_state_action"),
        Index("idx_policies_state", "state_key"),
    )

    state_key: Mapped[str] = mapped_column(Text, nullable=False)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    probability: Mapped[float] = mapped_column(Float, nullable=False)
    last_updated: Mapped[int] = mapped_column(BigInteger, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<PolicyEntry(state_key={self.state_key!r}, action={self.action!r}, "
            f"probability={self.probability!r})>"
        )


class StateValue(Base):
    """Critic baseline ``V(state)``."""

    __tablename__ = "value_function"

    state_key: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    value: Mapped[float] = mapped_column(Float, nullable=False)
    last_updated: Mapped[int] = mapped_column(BigInteger, nullable=False)


class ExperienceRecord(Base):
    """An append-only experience tuple (s, a, r, s', done).

    ``state`` and ``next_state`` hold JSON text.
    """

    __tablename__ = "experiences"
    __table_args__ = (
        Index("idx_experiences_timestamp", "timestamp"),
        Index("idx_experiences_reward", "reward"),
    )

    state: Mapped[str] = mapped_column(Text, nullable=False)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    reward: Mapped[float] = mapped_column(Float, nullable=False)
    next_state: Mapped[str] = mapped_column(Text, nullable=False)
    done: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    priority: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<ExperienceRecord(id={self.id!r}, action={self.action!r}, "
            f"reward={self.reward!r})>"
        )


class LearningSessionRecord(Base):
    """Summary of one automation run."""

    __tablename__ = "learning_sessions"

    session_type: Mapped[str] = mapped_column(String(64), nullable=False)
    platform: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    goal: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    total_steps: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    total_reward: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    success: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    started_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    ended_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<LearningSessionRecord(id={self.id!r}, session_type={self.session_type!r}, "
            f"total_reward={self.total_reward!r})>"
        )


class StateRepresentationRecord(Base):
    """De-duplicated cache of observed states."""

    __tablename__ = "state_representations"

    state_key: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    state_data: Mapped[str] = mapped_column(Text, nullable=False)
    occurrence_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    last_seen: Mapped[int] = mapped_column(BigInteger, nullable=False)
