"""
Tests for RewardSystem: base reward precedence, transitions, efficiency,
action modifiers, goal and shaping rewards, and statistics.
"""

import pytest

from navlearn.config import RewardConfig
from navlearn.rl.actions import Action
from navlearn.rl.rewards import Outcome, RewardSystem


@pytest.fixture
def rewards():
    return RewardSystem()


# =============================================================================
# Step rewards
# =============================================================================

class TestCalculateReward:
    """Tests for RewardSystem.calculate_reward."""

    def test_login_to_home_scenario(self, rewards):
        """Completed goal + forward transition + fast action = 10 + 3 + 2."""
        reward = rewards.calculate_reward({
            "success": True,
            "goalProgress": "complete",
            "stateChange": {"from": "LOGIN", "to": "HOME"},
            "timeTaken": 500,
        })
        assert reward == 15.0

    def test_default_ordering(self, rewards):
        complete = rewards.calculate_reward({"success": True, "goalProgress": "complete"})
        progress = rewards.calculate_reward({"success": True, "goalProgress": "progress"})
        neutral = rewards.calculate_reward({"success": True})
        failure = rewards.calculate_reward({"success": False})
        error = rewards.calculate_reward({"error": "x"})
        timeout = rewards.calculate_reward({"timeout": True})

        assert complete > progress > neutral > failure
        assert failure > error
        assert failure > timeout

    def test_timeout_takes_precedence_over_error(self, rewards):
        assert rewards.calculate_reward({"error": "boom", "timeout": True}) == -8.0

    def test_error_takes_precedence_over_success(self, rewards):
        assert rewards.calculate_reward({"success": True, "error": "boom"}) == -10.0

    def test_efficiency_requires_success(self, rewards):
        assert rewards.calculate_reward({"success": False, "timeTaken": 100}) == -5.0

    def test_slow_action_gets_no_bonus(self, rewards):
        assert rewards.calculate_reward({"success": True, "timeTaken": 2500}) == 0.0

    def test_stuck_penalty(self, rewards):
        assert rewards.calculate_reward({"success": True, "isStuck": True}) == -3.0

    def test_backward_transition(self, rewards):
        outcome = {"success": True, "stateChange": {"from": "HOME", "to": "LOGIN"}}
        assert rewards.calculate_reward(outcome) == -2.0

    def test_unknown_type_counts_as_level_zero(self, rewards):
        assert rewards.evaluate_state_change({"from": "SPLASH", "to": "LOGIN"}) == 3.0
        assert rewards.evaluate_state_change({"from": "LIST", "to": "SEARCH"}) == 0.0

    def test_outcome_dataclass_accepted(self, rewards):
        assert rewards.calculate_reward(Outcome(success=True, goal_progress="progress")) == 5.0

    def test_custom_config(self):
        system = RewardSystem(RewardConfig(success_reward=20.0))
        assert system.calculate_reward({"success": True, "goalProgress": "complete"}) == 20.0


# =============================================================================
# Action modifiers
# =============================================================================

class TestActionModifier:

    def test_unproductive_scroll(self, rewards):
        assert rewards.calculate_reward({"action": "scroll", "success": True}) == -0.5

    def test_structured_type_action(self, rewards):
        outcome = {
            "action": Action.create("type", target="#q", text="shoes"),
            "success": True,
            "inputAccepted": True,
        }
        assert rewards.calculate_reward(outcome) == 1.5

    def test_navigate_changed_page(self, rewards):
        assert rewards.calculate_reward({"action": "navigate", "success": True, "pageChanged": True}) == 2.0

    def test_wait_without_content(self, rewards):
        assert rewards.calculate_reward({"action": "wait", "success": True}) == -1.0


# =============================================================================
# Goal and shaping rewards
# =============================================================================

class TestGoalReward:

    def test_failed_goal(self, rewards):
        assert rewards.calculate_goal_reward({"goalAchieved": False}) == -10.0

    def test_efficient_goal(self, rewards):
        reward = rewards.calculate_goal_reward({
            "goalAchieved": True,
            "stepsCount": 5,
            "optimalSteps": 5,
            "timeElapsed": 10_000,
        })
        assert reward == 31.0

    def test_goal_reward_never_negative(self, rewards):
        reward = rewards.calculate_goal_reward({
            "goalAchieved": True,
            "stepsCount": 50,
            "optimalSteps": 5,
            "timeElapsed": 200_000,
            "errorsCount": 10,
        })
        assert reward == 0.0

    def test_shaping_reward(self, rewards):
        progress = {"currentStep": 2, "totalSteps": 4, "distanceToGoal": 3, "previousDistance": 5}
        assert rewards.get_shaping_reward(progress) == 2.0

    def test_shaping_moving_away(self, rewards):
        assert rewards.get_shaping_reward({"distanceToGoal": 6, "previousDistance": 5}) == -0.5


# =============================================================================
# Action quality, breakdown and stats
# =============================================================================

class TestHelpers:

    def test_appropriate_actions(self, rewards):
        assert "type" in rewards.get_appropriate_actions("LOGIN")
        assert rewards.get_appropriate_actions("UNKNOWN") == ["click", "tap", "scroll"]

    def test_action_quality(self, rewards):
        context = {"screenType": "LOGIN", "availableElements": ["#submit"], "previousAction": "type"}
        assert rewards.evaluate_action_quality("click", context) == pytest.approx(0.9)
        assert rewards.evaluate_action_quality("type", context) == pytest.approx(0.6)

    def test_breakdown_sums_to_total(self, rewards):
        breakdown = rewards.get_reward_breakdown({
            "success": True,
            "goalProgress": "complete",
            "stateChange": {"from": "LOGIN", "to": "HOME"},
            "timeTaken": 500,
        })
        assert breakdown["total"] == sum(breakdown["components"].values()) == 15.0
        assert breakdown["components"]["state_change"] == 3.0
        assert rewards.get_stats() is None

    def test_stats(self, rewards):
        assert rewards.get_stats() is None
        rewards.calculate_reward({"success": True, "goalProgress": "complete"})
        rewards.calculate_reward({"success": False})

        stats = rewards.get_stats()
        assert stats["total_actions"] == 2
        assert stats["positive_actions"] == 1
        assert stats["negative_actions"] == 1
        assert stats["average_reward"] == 2.5

        rewards.reset()
        assert rewards.get_stats() is None
