"""
Action definitions for the navlearn RL agent.

An action is whatever the environment driver can execute: a bare action
type (``"click"``) or a structured :class:`Action` carrying a target
selector and parameters.  The learning core treats actions as opaque
values compared by identity; tables and the persistence layer index them
by a canonical string produced by :func:`action_key`.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Union

from navlearn.config import DEFAULT_ACTIONS

__all__ = [
    "Action",
    "ActionLike",
    "DEFAULT_ACTIONS",
    "action_key",
    "action_type",
]


@dataclass(frozen=True)
class Action:
    """A structured action to be executed by the environment driver.

    Attributes:
        type: The action identifier (``click``, ``type``, ``scroll`` ...).
        target: Optional element reference (selector, element id, label).
        params: Action-specific arguments stored as a sorted tuple of
            ``(name, value)`` pairs so that the action stays hashable.
    """

    type: str
    target: str | None = None
    params: tuple[tuple[str, Any], ...] = ()

    @classmethod
    def create(cls, type: str, target: str | None = None, **params: Any) -> "Action":
        """Build an action from keyword parameters."""
        return cls(type=type, target=target, params=tuple(sorted(params.items())))

    @property
    def key(self) -> str:
        """Canonical string used to index this action in learning tables."""
        if self.target is None and not self.params:
            return self.type
        return json.dumps(
            {"type": self.type, "target": self.target, "params": dict(self.params)},
            sort_keys=True,
            separators=(",", ":"),
            default=str,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dictionary (JSON-safe)."""
        return {"type": self.type, "target": self.target, "params": dict(self.params)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Action":
        """Deserialize from a plain dictionary."""
        return cls.create(data["type"], data.get("target"), **(data.get("params") or {}))

    @classmethod
    def from_key(cls, key: str) -> "ActionLike":
        """Rebuild an action from its canonical key.

        Keys of parameterless actions are returned as plain strings, which
        is how the drivers and the stored learning data refer to them.
        """
        if key.startswith("{"):
            try:
                return cls.from_dict(json.loads(key))
            except (ValueError, KeyError, TypeError):
                return key
        return key


ActionLike = Union[str, Action]


def action_key(action: ActionLike) -> str:
    """Return the canonical table key of *action*."""
    if isinstance(action, Action):
        return action.key
    return str(action)


def action_type(action: ActionLike | None) -> str | None:
    """Return the action type of *action* (``None`` passes through)."""
    if action is None:
        return None
    if isinstance(action, Action):
        return action.type
    if isinstance(action, dict):
        return action.get("type")
    return str(action)
