"""
Persistence backends for the navlearn RL agent.

The learning store is a set of upsertable relations keyed by
``(state_key, action)``; conflicts overwrite the stored value, bump the
update counter where there is one, and refresh the timestamp (last
writer wins).  Experiences are append-only.

Two backends are provided:

* :class:`NullBackend` -- memory-only operation, used when persistence is
  disabled by configuration.
* :class:`LearningDatabase` -- SQLAlchemy async store (SQLite through
  ``aiosqlite`` by default, PostgreSQL through ``asyncpg``).
"""

from __future__ import annotations

import json
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from navlearn.models.base import create_engine, create_session_factory, init_db
from navlearn.models.learning import (
    ExperienceRecord,
    LearningSessionRecord,
    PolicyEntry,
    QValue,
    StateRepresentationRecord,
    StateValue,
)
from navlearn.rl.actions import action_key
from navlearn.rl.replay_buffer import Experience
from navlearn.utils.logging import get_logger

logger = get_logger(__name__)

TableKey = tuple[str, str]

# Rows per multi-row INSERT; keeps well under SQLite's bound-parameter limit.
_CHUNK_SIZE = 500


class PersistenceError(Exception):
    """Raised when the learning store cannot be opened, read or written."""


def _now_ms() -> int:
    return int(time.time() * 1000)


def _chunks(rows: list[dict[str, Any]]) -> Iterable[list[dict[str, Any]]]:
    for i in range(0, len(rows), _CHUNK_SIZE):
        yield rows[i:i + _CHUNK_SIZE]


class PersistenceBackend(ABC):
    """Storage contract used by :class:`~navlearn.rl.agent.ReinforcementAgent`."""

    #: ``False`` for backends that never store anything.
    enabled: bool = True

    @abstractmethod
    async def initialize(self) -> None:
        """Open the store.  Raises :class:`PersistenceError` on failure."""

    @abstractmethod
    async def save_q_table(self, entries: Mapping[TableKey, float]) -> int:
        """Upsert all Q-values in one transaction; returns the row count."""

    @abstractmethod
    async def load_q_table(self) -> dict[TableKey, float]:
        ...

    @abstractmethod
    async def save_policies(self, entries: Mapping[TableKey, float]) -> int:
        ...

    @abstractmethod
    async def load_policies(self) -> dict[TableKey, float]:
        ...

    @abstractmethod
    async def save_value_function(self, values: Mapping[str, float]) -> int:
        ...

    @abstractmethod
    async def load_value_function(self) -> dict[str, float]:
        ...

    @abstractmethod
    async def save_experiences(self, experiences: Sequence[Experience]) -> int:
        """Append experiences; returns the number written."""

    @abstractmethod
    async def load_successful_experiences(
        self, min_reward: float = 5.0, limit: int = 500
    ) -> list[Experience]:
        """Highest-reward experiences first."""

    @abstractmethod
    async def load_recent_experiences(self, limit: int = 1000) -> list[Experience]:
        """Newest experiences first."""

    @abstractmethod
    async def start_session(
        self, session_type: str, platform: str | None, goal: str | None
    ) -> int | None:
        """Record the start of a session and return its id."""

    @abstractmethod
    async def end_session(
        self, session_id: int, total_steps: int, total_reward: float, success: bool
    ) -> None:
        ...

    @abstractmethod
    async def record_state(self, state_key: str, state_data: Mapping[str, Any]) -> None:
        ...

    @abstractmethod
    async def get_statistics(self) -> dict[str, Any]:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


class NullBackend(PersistenceBackend):
    """Backend that stores nothing; every read returns empty data."""

    enabled = False

    async def initialize(self) -> None:
        logger.info("persistence_disabled")

    async def save_q_table(self, entries: Mapping[TableKey, float]) -> int:
        return 0

    async def load_q_table(self) -> dict[TableKey, float]:
        return {}

    async def save_policies(self, entries: Mapping[TableKey, float]) -> int:
        return 0

    async def load_policies(self) -> dict[TableKey, float]:
        return {}

    async def save_value_function(self, values: Mapping[str, float]) -> int:
        return 0

    async def load_value_function(self) -> dict[str, float]:
        return {}

    async def save_experiences(self, experiences: Sequence[Experience]) -> int:
        return 0

    async def load_successful_experiences(
        self, min_reward: float = 5.0, limit: int = 500
    ) -> list[Experience]:
        return []

    async def load_recent_experiences(self, limit: int = 1000) -> list[Experience]:
        return []

    async def start_session(
        self, session_type: str, platform: str | None, goal: str | None
    ) -> int | None:
        return None

    async def end_session(
        self, session_id: int, total_steps: int, total_reward: float, success: bool
    ) -> None:
        return None

    async def record_state(self, state_key: str, state_data: Mapping[str, Any]) -> None:
        return None

    async def get_statistics(self) -> dict[str, Any]:
        return {}

    async def close(self) -> None:
        return None


class LearningDatabase(PersistenceBackend):
    """SQLAlchemy-backed learning store.

    Usage::

        db = LearningDatabase("sqlite+aiosqlite:///learning_memory.db")
        await db.initialize()
        await db.save_q_table({("state", "click"): 1.5})
        table = await db.load_q_table()
        await db.close()

    Bulk ``save_*`` calls write the whole table in a single transaction.
    Single-row upserts (:meth:`save_q_value`, :meth:`save_policy`) each run
    in their own transaction so that concurrent writers sharing the store
    never lose a committed row.
    """

    def __init__(self, url: str, echo: bool = False, retries: int = 3, retry_delay: float = 0.5):
        self.url = url
        self.echo = echo
        self.retries = retries
        self.retry_delay = retry_delay
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        try:
            engine = create_engine(self.url, echo=self.echo)
        except Exception as exc:
            raise PersistenceError(f"invalid learning database URL: {exc}") from exc
        try:
            await init_db(engine, retries=self.retries, delay=self.retry_delay)
        except Exception as exc:
            await engine.dispose()
            raise PersistenceError(f"could not initialize learning database: {exc}") from exc
        self._engine = engine
        self._session_factory = create_session_factory(engine)

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("learning_database_closed")

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    # ------------------------------------------------------------------
    # Q-values
    # ------------------------------------------------------------------

    async def save_q_value(self, state_key: str, action: Any, value: float) -> None:
        """Upsert one Q-value in its own transaction."""
        rows = [self._q_row(state_key, action_key(action), value, _now_ms())]
        async with self._transaction("save_q_value") as session:
            await session.execute(self._q_upsert(rows))

    async def get_q_value(self, state_key: str, action: Any) -> float | None:
        async with self._transaction("get_q_value") as session:
            result = await session.execute(
                select(QValue.q_value).where(
                    QValue.state_key == state_key, QValue.action == action_key(action)
                )
            )
            return result.scalar_one_or_none()

    async def get_state_q_values(self, state_key: str) -> dict[str, float]:
        async with self._transaction("get_state_q_values") as session:
            result = await session.execute(
                select(QValue.action, QValue.q_value).where(QValue.state_key == state_key)
            )
            return {action: value for action, value in result.all()}

    async def save_q_table(self, entries: Mapping[TableKey, float]) -> int:
        now = _now_ms()
        rows = [self._q_row(s, a, v, now) for (s, a), v in entries.items()]
        if not rows:
            return 0
        async with self._transaction("save_q_table") as session:
            for chunk in _chunks(rows):
                await session.execute(self._q_upsert(chunk))
        logger.debug("q_table_saved", rows=len(rows))
        return len(rows)

    async def load_q_table(self) -> dict[TableKey, float]:
        async with self._transaction("load_q_table") as session:
            result = await session.execute(
                select(QValue.state_key, QValue.action, QValue.q_value)
            )
            return {(s, a): v for s, a, v in result.all()}

    # ------------------------------------------------------------------
    # Policies and state values
    # ------------------------------------------------------------------

    async def save_policy(self, state_key: str, action: Any, probability: float) -> None:
        """Upsert one policy probability in its own transaction."""
        rows = [self._policy_row(state_key, action_key(action), probability, _now_ms())]
        async with self._transaction("save_policy") as session:
            await session.execute(self._policy_upsert(rows))

    async def save_policies(self, entries: Mapping[TableKey, float]) -> int:
        now = _now_ms()
        rows = [self._policy_row(s, a, p, now) for (s, a), p in entries.items()]
        if not rows:
            return 0
        async with self._transaction("save_policies") as session:
            for chunk in _chunks(rows):
                await session.execute(self._policy_upsert(chunk))
        return len(rows)

    async def load_policies(self) -> dict[TableKey, float]:
        async with self._transaction("load_policies") as session:
            result = await session.execute(
                select(PolicyEntry.state_key, PolicyEntry.action, PolicyEntry.probability)
            )
            return {(s, a): p for s, a, p in result.all()}

    async def get_state_policy(self, state_key: str) -> dict[str, float]:
        async with self._transaction("get_state_policy") as session:
            result = await session.execute(
                select(PolicyEntry.action, PolicyEntry.probability).where(
                    PolicyEntry.state_key == state_key
                )
            )
            return {action: prob for action, prob in result.all()}

    async def save_value_function(self, values: Mapping[str, float]) -> int:
        now = _now_ms()
        rows = [
            {"state_key": s, "value": float(v), "last_updated": now}
            for s, v in values.items()
        ]
        if not rows:
            return 0
        async with self._transaction("save_value_function") as session:
            for chunk in _chunks(rows):
                stmt = self._insert(StateValue).values(chunk)
                stmt = stmt.on_conflict_do_update(
                    index_elements=["state_key"],
                    set_={
                        "value": stmt.excluded.value,
                        "last_updated": stmt.excluded.last_updated,
                    },
                )
                await session.execute(stmt)
        return len(rows)

    async def load_value_function(self) -> dict[str, float]:
        async with self._transaction("load_value_function") as session:
            result = await session.execute(select(StateValue.state_key, StateValue.value))
            return {s: v for s, v in result.all()}

    # ------------------------------------------------------------------
    # Experiences
    # ------------------------------------------------------------------

    async def save_experiences(self, experiences: Sequence[Experience]) -> int:
        if not experiences:
            return 0
        records = [self._experience_record(e) for e in experiences]
        async with self._transaction("save_experiences") as session:
            session.add_all(records)
        return len(records)

    async def save_experience(self, experience: Experience) -> None:
        await self.save_experiences([experience])

    async def load_successful_experiences(
        self, min_reward: float = 5.0, limit: int = 500
    ) -> list[Experience]:
        async with self._transaction("load_successful_experiences") as session:
            result = await session.execute(
                select(ExperienceRecord)
                .where(ExperienceRecord.reward >= min_reward)
                .order_by(ExperienceRecord.reward.desc())
                .limit(limit)
            )
            return self._to_experiences(result.scalars().all())

    async def load_recent_experiences(self, limit: int = 1000) -> list[Experience]:
        async with self._transaction("load_recent_experiences") as session:
            result = await session.execute(
                select(ExperienceRecord)
                .order_by(ExperienceRecord.timestamp.desc(), ExperienceRecord.id.desc())
                .limit(limit)
            )
            return self._to_experiences(result.scalars().all())

    async def clean_old_experiences(self, days_old: int = 30) -> int:
        """Delete negative-reward experiences older than *days_old* days.

        Non-negative experiences are kept regardless of age.
        """
        cutoff = _now_ms() - days_old * 24 * 60 * 60 * 1000
        async with self._transaction("clean_old_experiences") as session:
            result = await session.execute(
                delete(ExperienceRecord).where(
                    ExperienceRecord.timestamp < cutoff, ExperienceRecord.reward < 0
                )
            )
            removed = result.rowcount or 0
        logger.info("old_experiences_cleaned", removed=removed, days_old=days_old)
        return removed

    # ------------------------------------------------------------------
    # Sessions and state cache
    # ------------------------------------------------------------------

    async def start_session(
        self, session_type: str, platform: str | None, goal: str | None
    ) -> int | None:
        record = LearningSessionRecord(
            session_type=session_type,
            platform=platform,
            goal=goal,
            started_at=_now_ms(),
        )
        async with self._transaction("start_session") as session:
            session.add(record)
            await session.flush()
            return record.id

    async def end_session(
        self, session_id: int, total_steps: int, total_reward: float, success: bool
    ) -> None:
        async with self._transaction("end_session") as session:
            await session.execute(
                update(LearningSessionRecord)
                .where(LearningSessionRecord.id == session_id)
                .values(
                    total_steps=total_steps,
                    total_reward=total_reward,
                    success=success,
                    ended_at=_now_ms(),
                )
            )

    async def record_state(self, state_key: str, state_data: Mapping[str, Any]) -> None:
        """Insert a state into the cache or bump its occurrence count."""
        stmt = self._insert(StateRepresentationRecord).values(
            state_key=state_key,
            state_data=json.dumps(dict(state_data), default=str),
            occurrence_count=1,
            last_seen=_now_ms(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["state_key"],
            set_={
                "state_data": stmt.excluded.state_data,
                "occurrence_count": StateRepresentationRecord.occurrence_count + 1,
                "last_seen": stmt.excluded.last_seen,
            },
        )
        async with self._transaction("record_state") as session:
            await session.execute(stmt)

    async def get_state_record(self, state_key: str) -> dict[str, Any] | None:
        async with self._transaction("get_state_record") as session:
            record = (
                await session.execute(
                    select(StateRepresentationRecord).where(
                        StateRepresentationRecord.state_key == state_key
                    )
                )
            ).scalar_one_or_none()
            if record is None:
                return None
            return {
                "state_key": record.state_key,
                "state_data": json.loads(record.state_data),
                "occurrence_count": record.occurrence_count,
                "last_seen": record.last_seen,
            }

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def get_statistics(self) -> dict[str, Any]:
        async with self._transaction("get_statistics") as session:
            q_total, q_avg = (
                await session.execute(
                    select(func.count(QValue.id), func.avg(QValue.update_count))
                )
            ).one()
            policy_states = (
                await session.execute(select(func.count(func.distinct(PolicyEntry.state_key))))
            ).scalar_one()
            exp_total, exp_avg, exp_max, exp_min = (
                await session.execute(
                    select(
                        func.count(ExperienceRecord.id),
                        func.avg(ExperienceRecord.reward),
                        func.max(ExperienceRecord.reward),
                        func.min(ExperienceRecord.reward),
                    )
                )
            ).one()
            sess_total, sess_avg, sess_ok = (
                await session.execute(
                    select(
                        func.count(LearningSessionRecord.id),
                        func.avg(LearningSessionRecord.total_reward),
                        func.coalesce(
                            func.sum(case((LearningSessionRecord.success.is_(True), 1), else_=0)),
                            0,
                        ),
                    ).where(LearningSessionRecord.ended_at.is_not(None))
                )
            ).one()

        return {
            "q_values": {"total": q_total, "avg_updates": q_avg},
            "policies": {"states": policy_states},
            "experiences": {
                "total": exp_total,
                "avg_reward": exp_avg,
                "max_reward": exp_max,
                "min_reward": exp_min,
            },
            "sessions": {"total": sess_total, "avg_reward": sess_avg, "successful": sess_ok},
        }

    async def export_all(self) -> dict[str, Any]:
        """Dump tables, recent experiences and statistics as plain data."""
        q_table: dict[str, dict[str, float]] = {}
        for (s, a), v in (await self.load_q_table()).items():
            q_table.setdefault(s, {})[a] = v
        policies: dict[str, dict[str, float]] = {}
        for (s, a), p in (await self.load_policies()).items():
            policies.setdefault(s, {})[a] = p

        return {
            "q_table": q_table,
            "policies": policies,
            "value_function": await self.load_value_function(),
            "experiences": [e.to_dict() for e in await self.load_recent_experiences(5000)],
            "statistics": await self.get_statistics(),
            "timestamp": _now_ms(),
        }

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[AsyncSession]:
        """Yield a session inside a transaction, wrapping database errors."""
        if self._session_factory is None:
            raise PersistenceError(f"{operation}: learning database is not initialized")
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as exc:
            raise PersistenceError(f"{operation} failed: {exc}") from exc

    def _insert(self, model: type) -> Any:
        if self._engine is None:
            raise PersistenceError("learning database is not initialized")
        if self._engine.dialect.name == "postgresql":
            return pg_insert(model)
        return sqlite_insert(model)

    @staticmethod
    def _q_row(state_key: str, action: str, value: float, now: int) -> dict[str, Any]:
        return {
            "state_key": state_key,
            "action": action,
            "q_value": float(value),
            "update_count": 1,
            "last_updated": now,
        }

    @staticmethod
    def _policy_row(state_key: str, action: str, prob: float, now: int) -> dict[str, Any]:
        return {
            "state_key": state_key,
            "action": action,
            "probability": float(prob),
            "last_updated": now,
        }

    def _q_upsert(self, rows: list[dict[str, Any]]) -> Any:
        stmt = self._insert(QValue).values(rows)
        return stmt.on_conflict_do_update(
            index_elements=["state_key", "action"],
            set_={
                "q_value": stmt.excluded.q_value,
                "update_count": QValue.update_count + 1,
                "last_updated": stmt.excluded.last_updated,
            },
        )

    def _policy_upsert(self, rows: list[dict[str, Any]]) -> Any:
        stmt = self._insert(PolicyEntry).values(rows)
        return stmt.on_conflict_do_update(
            index_elements=["state_key", "action"],
            set_={
                "probability": stmt.excluded.probability,
                "last_updated": stmt.excluded.last_updated,
            },
        )

    @staticmethod
    def _experience_record(exp: Experience) -> ExperienceRecord:
        data = exp.to_dict()
        return ExperienceRecord(
            state=json.dumps(data["state"], default=str),
            action=data["action"],
            reward=float(exp.reward),
            next_state=json.dumps(data["next_state"], default=str),
            done=bool(exp.done),
            priority=float(exp.priority or 1.0),
            timestamp=int(exp.timestamp),
        )

    def _to_experiences(self, records: Iterable[ExperienceRecord]) -> list[Experience]:
        """Decode stored rows, skipping any that no longer parse."""
        experiences = []
        for record in records:
            try:
                experiences.append(self._to_experience(record))
            except (ValueError, TypeError, KeyError) as exc:
                logger.warning("experience_row_skipped", record_id=record.id, error=str(exc))
        return experiences

    @staticmethod
    def _to_experience(record: ExperienceRecord) -> Experience:
        return Experience.from_dict(
            {
                "state": json.loads(record.state),
                "action": record.action,
                "reward": record.reward,
                "next_state": json.loads(record.next_state),
                "done": record.done,
                "timestamp": record.timestamp,
                "priority": record.priority,
            }
        )
