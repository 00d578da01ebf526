"""
Tests for the persistence backends, run against a temporary SQLite store.
"""

import time

import pytest
import pytest_asyncio
from sqlalchemy import update

from navlearn.models.learning import ExperienceRecord
from navlearn.rl.actions import Action
from navlearn.rl.persistence import LearningDatabase, NullBackend, PersistenceError
from navlearn.rl.replay_buffer import Experience
from navlearn.rl.state import State


@pytest_asyncio.fixture
async def db(db_url):
    database = LearningDatabase(db_url, retries=1)
    await database.initialize()
    yield database
    await database.close()


def now_ms() -> int:
    return int(time.time() * 1000)


# =============================================================================
# Lifecycle
# =============================================================================

class TestLifecycle:

    @pytest.mark.asyncio
    async def test_unreachable_store_raises(self, tmp_path):
        url = f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'nested' / 'learning.db'}"
        database = LearningDatabase(url, retries=2, retry_delay=0.01)
        with pytest.raises(PersistenceError):
            await database.initialize()
        assert not database.is_open

    @pytest.mark.asyncio
    async def test_use_before_initialize(self, db_url):
        with pytest.raises(PersistenceError):
            await LearningDatabase(db_url).load_q_table()

    def test_statement_before_initialize(self, db_url):
        with pytest.raises(PersistenceError):
            LearningDatabase(db_url)._q_upsert([])

    @pytest.mark.asyncio
    async def test_reopen_keeps_data(self, db_url):
        first = LearningDatabase(db_url)
        await first.initialize()
        await first.save_q_table({("s", "click"): 1.5})
        await first.close()

        second = LearningDatabase(db_url)
        await second.initialize()
        assert await second.load_q_table() == {("s", "click"): 1.5}
        await second.close()


# =============================================================================
# Tabular relations
# =============================================================================

class TestTables:

    @pytest.mark.asyncio
    async def test_q_table_upsert_overwrites(self, db):
        await db.save_q_table({("s", "click"): 1.0, ("s", "scroll"): -1.0})
        await db.save_q_table({("s", "click"): 2.0})

        assert await db.load_q_table() == {("s", "click"): 2.0, ("s", "scroll"): -1.0}
        stats = await db.get_statistics()
        assert stats["q_values"]["total"] == 2
        assert stats["q_values"]["avg_updates"] == pytest.approx(1.5)

    @pytest.mark.asyncio
    async def test_single_q_value(self, db):
        submit = Action.create("click", target="#submit")
        await db.save_q_value("s", submit, 4.0)
        await db.save_q_value("s", "scroll", 1.0)

        assert await db.get_q_value("s", submit) == 4.0
        assert await db.get_q_value("s", "missing") is None
        assert await db.get_state_q_values("s") == {submit.key: 4.0, "scroll": 1.0}

    @pytest.mark.asyncio
    async def test_large_table_is_chunked(self, db):
        entries = {(f"s{i}", "click"): float(i) for i in range(1200)}
        assert await db.save_q_table(entries) == 1200
        assert len(await db.load_q_table()) == 1200

    @pytest.mark.asyncio
    async def test_policies_and_values(self, db):
        await db.save_policies({("s", "click"): 0.7, ("s", "scroll"): 0.3})
        await db.save_policy("s", "click", 0.9)
        await db.save_value_function({"s": 2.5})
        await db.save_value_function({"s": 3.0})

        assert await db.load_policies() == {("s", "click"): 0.9, ("s", "scroll"): 0.3}
        assert await db.load_value_function() == {"s": 3.0}

    @pytest.mark.asyncio
    async def test_single_state_policy(self, db):
        submit = Action.create("click", target="#submit")
        await db.save_policies({("s", submit.key): 0.6, ("s", "scroll"): 0.4, ("t", "tap"): 1.0})
        await db.save_policy("s", "scroll", 0.5)

        assert await db.get_state_policy("s") == {submit.key: 0.6, "scroll": 0.5}
        assert await db.get_state_policy("missing") == {}

    @pytest.mark.asyncio
    async def test_empty_saves(self, db):
        assert await db.save_q_table({}) == 0
        assert await db.save_policies({}) == 0
        assert await db.save_value_function({}) == 0
        assert await db.save_experiences([]) == 0


# =============================================================================
# Experiences
# =============================================================================

class TestExperiences:

    @pytest.mark.asyncio
    async def test_successful_are_highest_first(self, db):
        await db.save_experiences([
            Experience("s", "click", 6.0, "s2", False),
            Experience("s", "click", 12.0, "s2", True),
            Experience("s", "scroll", -3.0, "s2", False),
        ])
        loaded = await db.load_successful_experiences(min_reward=5.0, limit=10)
        assert [e.reward for e in loaded] == [12.0, 6.0]
        assert loaded[0].done is True

    @pytest.mark.asyncio
    async def test_recent_are_newest_first(self, db):
        base = now_ms()
        for i in range(3):
            await db.save_experience(Experience("s", "click", float(i), "s2", timestamp=base + i))
        loaded = await db.load_recent_experiences(limit=2)
        assert [e.reward for e in loaded] == [2.0, 1.0]

    @pytest.mark.asyncio
    async def test_state_objects_round_trip(self, db):
        state = State(platform="web", type="LOGIN", element_count=12, has_form=True)
        action = Action.create("type", target="#user", text="alice")
        await db.save_experience(Experience(state, action, 8.0, None, True))

        (loaded,) = await db.load_successful_experiences()
        assert loaded.state.key == state.key
        assert loaded.action == action
        assert loaded.next_state is None

    @pytest.mark.asyncio
    async def test_undecodable_rows_are_skipped(self, db):
        await db.save_experiences([
            Experience("s", "click", 9.0, "s2"),
            Experience("s", "click", 7.0, "s2"),
        ])
        async with db._transaction("corrupt") as session:
            await session.execute(
                update(ExperienceRecord)
                .where(ExperienceRecord.reward == 9.0)
                .values(next_state="{broken")
            )

        assert [e.reward for e in await db.load_successful_experiences()] == [7.0]
        assert [e.reward for e in await db.load_recent_experiences()] == [7.0]

    @pytest.mark.asyncio
    async def test_clean_removes_only_old_negative(self, db):
        old = now_ms() - 40 * 24 * 60 * 60 * 1000
        await db.save_experiences([
            Experience("s", "click", -5.0, "s2", timestamp=old),
            Experience("s", "click", 5.0, "s2", timestamp=old),
            Experience("s", "click", -5.0, "s2"),
        ])
        assert await db.clean_old_experiences(days_old=30) == 1
        rewards = sorted(e.reward for e in await db.load_recent_experiences())
        assert rewards == [-5.0, 5.0]


# =============================================================================
# Sessions, state cache, reporting
# =============================================================================

class TestSessionsAndReporting:

    @pytest.mark.asyncio
    async def test_session_lifecycle(self, db):
        session_id = await db.start_session("automation", "web", "log in")
        assert isinstance(session_id, int)
        unfinished = await db.start_session("automation", "web", "search")

        await db.end_session(session_id, total_steps=7, total_reward=12.5, success=True)
        stats = await db.get_statistics()
        assert stats["sessions"]["total"] == 1
        assert stats["sessions"]["successful"] == 1
        assert stats["sessions"]["avg_reward"] == 12.5
        assert unfinished != session_id

    @pytest.mark.asyncio
    async def test_record_state_counts_occurrences(self, db):
        state = State(platform="web", type="HOME")
        await db.record_state(state.key, state.to_dict())
        await db.record_state(state.key, state.to_dict())

        record = await db.get_state_record(state.key)
        assert record["occurrence_count"] == 2
        assert record["state_data"]["type"] == "HOME"
        assert await db.get_state_record("missing") is None

    @pytest.mark.asyncio
    async def test_export_all(self, db):
        await db.save_q_table({("s", "click"): 1.0})
        await db.save_policies({("s", "click"): 1.0})
        await db.save_experience(Experience("s", "click", 1.0, "s2"))

        data = await db.export_all()
        assert data["q_table"] == {"s": {"click": 1.0}}
        assert data["policies"] == {"s": {"click": 1.0}}
        assert len(data["experiences"]) == 1
        assert data["statistics"]["experiences"]["total"] == 1


# =============================================================================
# NullBackend
# =============================================================================

class TestNullBackend:

    @pytest.mark.asyncio
    async def test_stores_nothing(self):
        backend = NullBackend()
        await backend.initialize()
        assert backend.enabled is False
        assert await backend.save_q_table({("s", "a"): 1.0}) == 0
        assert await backend.load_q_table() == {}
        assert await backend.load_successful_experiences() == []
        assert await backend.start_session("automation", "web", None) is None
        await backend.close()
