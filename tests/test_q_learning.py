"""
Tests for tabular Q-learning: Bellman updates, convergence, epsilon-greedy
selection, exploration decay and import/export.
"""

from collections import Counter

import pytest

from navlearn.config import QLearningConfig
from navlearn.rl.actions import Action
from navlearn.rl.q_learning import QLearning
from navlearn.rl.replay_buffer import Experience


def greedy(**overrides) -> QLearning:
    return QLearning(QLearningConfig(exploration_rate=0.0, **overrides), seed=11)


# =============================================================================
# Updates
# =============================================================================

class TestUpdate:

    def test_converges_to_discounted_sum(self):
        """Constant reward r in a self-loop converges to r / (1 - gamma)."""
        q = greedy(learning_rate=0.1, discount_factor=0.9)
        for _ in range(2000):
            q.update("s", "a", 1.0, "s", False)
        assert q.get_q_value("s", "a") == pytest.approx(10.0, abs=1e-3)

    def test_terminal_ignores_next_state(self):
        q = greedy(learning_rate=0.5)
        q.update("s2", "a", 100.0, None, True)
        q.update("s", "a", 2.0, "s2", True)
        assert q.get_q_value("s", "a") == 1.0

    def test_max_over_known_actions_only(self):
        """An unseen action in s' does not count as a zero estimate."""
        q = greedy(learning_rate=1.0, discount_factor=1.0)
        q.update("s2", "a", -5.0, None, True)
        q.update("s1", "a", 0.0, "s2", False)
        assert q.get_q_value("s1", "a") == -5.0

    def test_unknown_pair_defaults_to_zero(self):
        assert greedy().get_q_value("nowhere", "click") == 0.0

    def test_batch_update_applies_in_order(self):
        q = greedy(learning_rate=1.0, discount_factor=0.5)
        batch = [
            Experience("s2", "a", 4.0, None, True),
            Experience("s1", "a", 0.0, "s2", False),
        ]
        errors = q.batch_update(batch)
        assert errors == [4.0, 2.0]
        assert q.get_q_value("s1", "a") == 2.0

    def test_sizes(self):
        q = greedy()
        q.update("s1", "click", 1.0, "s2")
        q.update("s1", "scroll", 1.0, "s2")
        q.update("s2", "click", 1.0, "s3")
        assert q.get_size() == 2
        assert q.get_entry_count() == 3
        assert q.get_state_stats("s1")["count"] == 2
        assert q.get_state_stats("unknown") is None


# =============================================================================
# Action selection
# =============================================================================

class TestChooseAction:

    def test_greedy_is_deterministic(self):
        q = greedy()
        q.update("s", "click", 5.0, None, True)
        choices = {q.choose_action("s", ["scroll", "click", "type"]) for _ in range(20)}
        assert choices == {"click"}

    def test_ties_are_broken_randomly(self):
        q = greedy()
        counts = Counter(q.choose_action("s", ["click", "scroll"]) for _ in range(200))
        assert set(counts) == {"click", "scroll"}

    def test_unknown_actions_count_as_zero(self):
        q = greedy(learning_rate=1.0)
        q.update("s", "click", -1.0, None, True)
        assert q.choose_action("s", ["click", "scroll"]) == "scroll"

    def test_empty_valid_actions(self):
        assert greedy().choose_action("s", []) is None

    def test_default_action_space(self):
        q = QLearning(QLearningConfig(exploration_rate=1.0, action_space=["tap", "swipe"]), seed=5)
        assert {q.choose_action("s") for _ in range(50)} == {"tap", "swipe"}

    def test_exploration_stays_within_valid_actions(self):
        q = QLearning(QLearningConfig(exploration_rate=1.0), seed=5)
        q.update("s", "navigate", 50.0, None, True)
        assert {q.choose_action("s", ["click", "scroll"]) for _ in range(50)} <= {"click", "scroll"}

    def test_best_action(self):
        q = greedy()
        submit = Action.create("click", target="#submit")
        q.update("s", submit, 3.0, None, True)
        q.update("s", "scroll", 1.0, None, True)
        assert q.get_best_action("s") == submit
        assert q.get_best_action("unknown") is None


# =============================================================================
# Exploration schedule
# =============================================================================

class TestExploration:

    def test_decay_floors_at_minimum(self):
        q = QLearning(QLearningConfig(exploration_rate=0.3, exploration_decay=0.5, exploration_min=0.05))
        assert q.decay_exploration() == pytest.approx(0.15)
        for _ in range(10):
            q.decay_exploration()
        assert q.exploration_rate == 0.05

    def test_reset_restores_initial_rate(self):
        q = QLearning(QLearningConfig(exploration_rate=0.3, exploration_decay=0.5))
        q.update("s", "a", 1.0, None, True)
        q.decay_exploration()
        q.reset()
        assert q.exploration_rate == 0.3
        assert q.get_size() == 0


# =============================================================================
# Import / export
# =============================================================================

class TestImportExport:

    def test_export_then_import(self):
        source = greedy()
        source.update("s", Action.create("type", target="#q", text="x"), 2.0, None, True)
        source.update("s", "click", 1.0, None, True)
        data = source.export()
        assert set(data["q_table"]["s"]) == {"click", Action.create("type", target="#q", text="x").key}

        target = QLearning()
        target.import_data(data)
        assert target.get_q_value("s", "click") == source.get_q_value("s", "click")
        assert target.get_best_action("s") == Action.create("type", target="#q", text="x")
        assert target.exploration_rate == 0.0

    def test_missing_table_imports_empty(self):
        q = greedy()
        q.update("s", "a", 1.0, None, True)
        q.import_data({})
        assert q.get_size() == 0

    def test_bad_state_entry_is_skipped(self):
        q = QLearning()
        q.import_data({"q_table": {"good": {"click": 1.0}, "bad": 3}})
        assert q.get_size() == 1
        assert q.get_q_value("good", "click") == 1.0
