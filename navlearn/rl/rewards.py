"""
Reward functions for the navlearn RL agent.

After every executed action the caller describes what happened in an
:class:`Outcome`; the :class:`RewardSystem` turns it into a scalar reward.
Rewards are composed of several additive components so that the overall
incentive structure can be tuned independently per component:

* **Base term** -- exactly one of timeout / error / failure / goal
  complete / goal progress / neutral, evaluated in that precedence.
* **State transition** -- moving forward in the app flow (e.g. LOGIN to
  HOME) is rewarded, moving backwards is penalised.
* **Stuck penalty** and **efficiency bonus** for fast successful actions.
* **Action modifier** -- a small per-action-type adjustment (a scroll that
  revealed nothing is wasteful, a navigation that changed page is good).

Episode-terminal rewards (:meth:`RewardSystem.calculate_goal_reward`) and
shaping rewards for intermediate progress are computed separately.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, fields
from typing import Any, Mapping

from navlearn.config import RewardConfig
from navlearn.rl.actions import ActionLike, action_type
from navlearn.utils.logging import get_logger

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# App-flow progression and action appropriateness
# ---------------------------------------------------------------------------

PROGRESSION_LEVELS: dict[str, int] = {
    "LOGIN": 1,
    "REGISTRATION": 1,
    "HOME": 2,
    "LIST": 3,
    "FORM": 3,
    "SEARCH": 3,
    "DETAIL": 4,
}

FORWARD_TRANSITION_REWARD = 3.0
BACKWARD_TRANSITION_PENALTY = -2.0

APPROPRIATE_ACTIONS: dict[str, list[str]] = {
    "LOGIN": ["type", "click", "tap"],
    "REGISTRATION": ["type", "click", "tap", "scroll"],
    "HOME": ["click", "tap", "scroll", "swipe"],
    "LIST": ["click", "tap", "scroll", "swipe"],
    "DETAIL": ["click", "tap", "scroll", "longPress"],
    "FORM": ["type", "click", "tap", "scroll"],
    "SEARCH": ["type", "click", "tap"],
    "WEBVIEW": ["click", "type", "scroll", "navigate"],
}
_FALLBACK_ACTIONS = ["click", "tap", "scroll"]


# ---------------------------------------------------------------------------
# Outcome descriptors
# ---------------------------------------------------------------------------

# camelCase names used by the environment drivers -> field names
_OUTCOME_ALIASES = {
    "stateChange": "state_change",
    "goalProgress": "goal_progress",
    "timeTaken": "time_taken",
    "isStuck": "is_stuck",
    "elementVisible": "element_visible",
    "inputAccepted": "input_accepted",
    "newContentRevealed": "new_content_revealed",
    "contentLoaded": "content_loaded",
    "pageChanged": "page_changed",
    "contextMenuAppeared": "context_menu_appeared",
    "goalAchieved": "goal_achieved",
    "stepsCount": "steps_count",
    "timeElapsed": "time_elapsed",
    "errorsCount": "errors_count",
    "optimalSteps": "optimal_steps",
    "currentStep": "current_step",
    "totalSteps": "total_steps",
    "distanceToGoal": "distance_to_goal",
    "previousDistance": "previous_distance",
}


def _from_mapping(cls, data: Mapping[str, Any]):
    names = {f.name for f in fields(cls)}
    kwargs = {}
    for key, value in data.items():
        name = _OUTCOME_ALIASES.get(key, key)
        if name in names:
            kwargs[name] = value
    return cls(**kwargs)


@dataclass
class Outcome:
    """What happened after a single action was executed.

    Attributes:
        action: The action (or action type) that was executed.
        success: Whether the action completed successfully.
        error: Error message, if the action raised one.
        timeout: Whether the action timed out.
        goal_progress: ``"complete"``, ``"progress"`` or ``None``.
        state_change: ``{"from": <type>, "to": <type>}`` page/screen types.
        time_taken: Action duration in milliseconds.
        is_stuck: Whether the agent is detected to be going in circles.
        element_visible / input_accepted / new_content_revealed /
        content_loaded / page_changed / context_menu_appeared:
            Action-specific observations used by the action modifier.
    """

    action: ActionLike | None = None
    success: bool = False
    error: str | None = None
    timeout: bool = False
    goal_progress: str | None = None
    state_change: dict[str, Any] | None = None
    time_taken: float | None = None
    is_stuck: bool = False
    element_visible: bool = False
    input_accepted: bool = False
    new_content_revealed: bool = False
    content_loaded: bool = False
    page_changed: bool = False
    context_menu_appeared: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Outcome":
        """Build an outcome from a snake_case or camelCase dict."""
        return _from_mapping(cls, data)


@dataclass
class GoalOutcome:
    """Episode-level outcome used for the terminal reward."""

    goal_achieved: bool = False
    steps_count: int = 0
    time_elapsed: float | None = None  # milliseconds
    errors_count: int = 0
    optimal_steps: int | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "GoalOutcome":
        return _from_mapping(cls, data)


@dataclass
class ShapingProgress:
    """Intermediate progress signal used for reward shaping."""

    current_step: int = 0
    total_steps: int = 0
    distance_to_goal: float | None = None
    previous_distance: float | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ShapingProgress":
        return _from_mapping(cls, data)


# ---------------------------------------------------------------------------
# Reward breakdown dataclass
# ---------------------------------------------------------------------------

@dataclass
class RewardBreakdown:
    """Itemised breakdown of a reward signal.

    Attributes:
        total: The final scalar reward (sum of all components).
        components: Mapping from component name to its contribution.
    """

    total: float = 0.0
    components: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"total": self.total, "components": self.components}


# ---------------------------------------------------------------------------
# RewardSystem
# ---------------------------------------------------------------------------

class RewardSystem:
    """Computes step, episode and shaping rewards from action outcomes.

    Usage::

        rewards = RewardSystem()
        reward = rewards.calculate_reward({"success": True, "goalProgress": "complete"})
        breakdown = rewards.get_reward_breakdown(outcome)

    Every call to :meth:`calculate_reward` is recorded in an internal
    history that feeds :meth:`get_stats`.
    """

    def __init__(self, config: RewardConfig | Mapping[str, Any] | None = None):
        if config is None:
            config = RewardConfig()
        elif not isinstance(config, RewardConfig):
            config = RewardConfig.model_validate(dict(config))
        self.config = config
        self.action_history: list[dict[str, Any]] = []

    # ---- public interface -------------------------------------------------

    def calculate_reward(self, outcome: Outcome | Mapping[str, Any]) -> float:
        """Return the scalar reward for a single action outcome."""
        outcome = self._coerce(outcome)
        breakdown = self._compute_breakdown(outcome)

        self.action_history.append({
            "action": action_type(outcome.action),
            "reward": breakdown.total,
            "timestamp": int(time.time() * 1000),
        })
        return breakdown.total

    def get_reward_breakdown(self, outcome: Outcome | Mapping[str, Any]) -> dict[str, Any]:
        """Return an itemised reward breakdown as a plain dict.

        Unlike :meth:`calculate_reward` this does not touch the history.
        """
        return self._compute_breakdown(self._coerce(outcome)).to_dict()

    def evaluate_state_change(self, state_change: Mapping[str, Any] | None) -> float:
        """Reward forward movement through the app flow, penalise regression.

        Types missing from the progression ranking count as level 0.
        """
        if not state_change:
            return 0.0
        from_level = PROGRESSION_LEVELS.get(state_change.get("from"), 0)
        to_level = PROGRESSION_LEVELS.get(state_change.get("to"), 0)

        if to_level > from_level:
            return FORWARD_TRANSITION_REWARD
        if to_level < from_level:
            return BACKWARD_TRANSITION_PENALTY
        return 0.0

    def get_action_modifier(self, outcome: Outcome) -> float:
        """Return the action-type-specific reward adjustment."""
        kind = action_type(outcome.action)

        if kind in ("click", "tap"):
            return 1.0 if outcome.success and outcome.element_visible else 0.0
        if kind == "type":
            return 1.5 if outcome.success and outcome.input_accepted else 0.0
        if kind in ("scroll", "swipe"):
            return 1.0 if outcome.new_content_revealed else -0.5
        if kind == "wait":
            return 0.5 if outcome.content_loaded else -1.0
        if kind == "navigate":
            return 2.0 if outcome.page_changed else 0.0
        if kind == "longPress":
            return 1.5 if outcome.context_menu_appeared else 0.0
        return 0.0

    def calculate_goal_reward(self, outcome: GoalOutcome | Mapping[str, Any]) -> float:
        """Return the terminal reward of an episode.

        A failed goal gets the error penalty.  A reached goal gets twice the
        success reward, adjusted for step efficiency, elapsed time and
        errors, and is never negative.
        """
        if not isinstance(outcome, GoalOutcome):
            outcome = GoalOutcome.from_dict(outcome)

        if not outcome.goal_achieved:
            return self.config.error_penalty

        reward = self.config.success_reward * 2

        if outcome.optimal_steps:
            if outcome.steps_count <= outcome.optimal_steps:
                reward += self.config.efficiency_bonus * 3
            else:
                reward -= (outcome.steps_count - outcome.optimal_steps) * 0.5

        if outcome.time_elapsed is not None:
            if outcome.time_elapsed < 30_000:
                reward += 5.0
            elif outcome.time_elapsed > 120_000:
                reward -= 3.0

        reward -= (outcome.errors_count or 0) * 2.0

        return max(reward, 0.0)

    def get_shaping_reward(self, progress: ShapingProgress | Mapping[str, Any]) -> float:
        """Return an intermediate shaping reward for progress towards the goal."""
        if not isinstance(progress, ShapingProgress):
            progress = ShapingProgress.from_dict(progress)

        reward = 0.0
        if progress.total_steps > 0:
            reward += (progress.current_step / progress.total_steps) * 2.0

        if progress.previous_distance is not None and progress.distance_to_goal is not None:
            if progress.distance_to_goal < progress.previous_distance:
                reward += 1.0
            elif progress.distance_to_goal > progress.previous_distance:
                reward -= 0.5

        return reward

    def evaluate_action_quality(self, action: ActionLike, context: Mapping[str, Any]) -> float:
        """Score how sensible *action* is in *context*, around a 0.5 baseline.

        *context* may carry ``screenType``, ``availableElements`` and
        ``previousAction``.
        """
        kind = action_type(action)
        screen_type = context.get("screenType", context.get("screen_type"))
        available = context.get("availableElements", context.get("available_elements"))
        previous = context.get("previousAction", context.get("previous_action"))

        quality = 0.5
        if kind in self.get_appropriate_actions(screen_type):
            quality += 0.2
        if previous is not None and action_type(previous) == kind:
            quality -= 0.1
        if kind in ("click", "tap"):
            quality += 0.2 if available else -0.3
        return quality

    @staticmethod
    def get_appropriate_actions(screen_type: str | None) -> list[str]:
        """Return the action types that usually make sense on *screen_type*."""
        return list(APPROPRIATE_ACTIONS.get(screen_type or "", _FALLBACK_ACTIONS))

    def get_stats(self) -> dict[str, Any] | None:
        """Return reward statistics over the history, or ``None`` if empty."""
        if not self.action_history:
            return None

        rewards = [entry["reward"] for entry in self.action_history]
        total = sum(rewards)
        return {
            "total_reward": total,
            "average_reward": total / len(rewards),
            "max_reward": max(rewards),
            "min_reward": min(rewards),
            "positive_actions": sum(1 for r in rewards if r > 0),
            "negative_actions": sum(1 for r in rewards if r < 0),
            "total_actions": len(rewards),
        }

    def reset(self) -> None:
        """Clear the reward history."""
        self.action_history = []

    # ---- internal ---------------------------------------------------------

    @staticmethod
    def _coerce(outcome: Outcome | Mapping[str, Any]) -> Outcome:
        if isinstance(outcome, Outcome):
            return outcome
        return Outcome.from_dict(outcome)

    def _base_reward(self, outcome: Outcome) -> tuple[str, float]:
        cfg = self.config
        if outcome.timeout:
            return "timeout", cfg.timeout_penalty
        if outcome.error:
            return "error", cfg.error_penalty
        if not outcome.success:
            return "failure", cfg.failure_penalty
        if outcome.goal_progress == "complete":
            return "goal_complete", cfg.success_reward
        if outcome.goal_progress == "progress":
            return "goal_progress", cfg.progress_reward
        return "neutral", cfg.neutral_reward

    def _compute_breakdown(self, outcome: Outcome) -> RewardBreakdown:
        base_name, base_value = self._base_reward(outcome)
        components = {f"base_{base_name}": base_value}

        components["state_change"] = self.evaluate_state_change(outcome.state_change)
        components["stuck"] = self.config.stuck_penalty if outcome.is_stuck else 0.0

        efficient = (
            outcome.success
            and outcome.time_taken is not None
            and outcome.time_taken < self.config.efficiency_threshold_ms
        )
        components["efficiency"] = self.config.efficiency_bonus if efficient else 0.0
        components["action_modifier"] = self.get_action_modifier(outcome)

        total = sum(components.values())
        logger.debug("reward_computed", base=base_name, total=total)
        return RewardBreakdown(total=total, components=components)
