"""
State representation for the navlearn RL agent.

The environment driver hands over raw page or screen observations; the
:class:`StateRepresentation` converts them into a canonical
:class:`State` that only keeps the features the learning tables care
about, and derives a compact *state key* used to index those tables.

Generalisation conventions used throughout:
* Element counts are bucketed to the nearest lower multiple of 10 in the
  state key, so that small layout differences map to the same entry.
* Page/screen type and platform are kept exact.
* Boolean flags are kept exact; a flag the observation did not report is
  ``None`` and is left out of the key.
* Missing values default to ``"unknown"`` / 0.
"""

from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Mapping, Union
from urllib.parse import urlparse

from bs4 import BeautifulSoup

SUPPORTED_PLATFORMS = ("web", "android", "ios")

INTERACTIVE_TAGS = frozenset({"button", "a", "input", "textarea", "select"})
LIST_TAGS = frozenset({"li", "article"})
MOBILE_INPUT_TYPES = ("TextField", "EditText")

# Sizes of the element samples kept in ``raw_features``
_MAX_ELEMENTS = 20
_MAX_INTERACTIONS = 15
_MAX_TEXT = 50


@dataclass(frozen=True)
class State:
    """A canonical, generalised observation of one page or screen.

    Attributes:
        platform: ``web``, ``android`` or ``ios``.
        type: Page/screen classification (``LOGIN``, ``HOME``, ``LIST`` ...).
        element_count: Number of elements on the page/screen.
        interactive_element_count: Number of elements a user can act on.
        has_modal: Whether a modal/dialog/popup is showing (``None`` when
            the observation did not say).
        has_form: Whether the page carries form inputs (``None`` for
            mobile screens, which do not report it).
        navigation_flags: Mobile navigation chrome (tab bar, nav bar, back
            button).
        raw_features: Pass-through observation details (url, load state,
            viewport, first elements ...) that are not part of the key.
        timestamp: Creation time in epoch milliseconds.
    """

    platform: str
    type: str = "unknown"
    element_count: int = 0
    interactive_element_count: int = 0
    has_modal: bool | None = False
    has_form: bool | None = False
    navigation_flags: dict[str, bool] = field(default_factory=dict)
    raw_features: dict[str, Any] = field(default_factory=dict)
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))

    @property
    def url(self) -> str | None:
        return self.raw_features.get("url")

    @property
    def key(self) -> str:
        return StateRepresentation.create_state_key(self)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dictionary (JSON-safe)."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "State":
        """Deserialize from a plain dictionary.

        Accepts both the snake_case layout produced by :meth:`to_dict` and
        the camelCase layout used by the stored learning data of the
        browser drivers (``pageType``/``screenType``, ``elementCount`` ...).
        """
        known = {f.name for f in fields(cls)}
        if "platform" in data and known.issuperset(data.keys()):
            return cls(**dict(data))

        state_type = data.get("type") or data.get("pageType") or data.get("screenType")
        return cls(
            platform=data.get("platform", "unknown"),
            type=state_type or "unknown",
            element_count=int(data.get("element_count", data.get("elementCount", 0)) or 0),
            interactive_element_count=int(
                data.get(
                    "interactive_element_count",
                    data.get("interactiveElements", data.get("interactiveElementCount", 0)),
                )
                or 0
            ),
            has_modal=data.get("has_modal", data.get("hasModal")),
            has_form=data.get("has_form", data.get("hasForm")),
            navigation_flags=dict(data.get("navigation_flags") or {}),
            raw_features=dict(data.get("raw_features") or {}),
            timestamp=int(data.get("timestamp") or time.time() * 1000),
        )


StateLike = Union[State, str, Mapping[str, Any]]


def state_key(state: StateLike) -> str:
    """Return the table key of *state*.

    Strings are assumed to already be state keys and are returned as is.
    """
    if isinstance(state, str):
        return state
    if isinstance(state, State):
        return StateRepresentation.create_state_key(state)
    return StateRepresentation.create_state_key(State.from_dict(state))


class StateRepresentation:
    """Converts raw environment observations into :class:`State` objects.

    Usage::

        rep = StateRepresentation("web")
        state = rep.create_state({"url": url, "title": title, "dom": html})
        key = rep.create_state_key(state)

    The representation is stateless apart from the platform it was created
    for; all methods are pure functions of their inputs.
    """

    def __init__(self, platform: str = "web"):
        self.platform = platform.lower()

    # ==================================================================
    # State creation
    # ==================================================================

    def create_state(self, raw: Mapping[str, Any]) -> State:
        """Create a :class:`State` from a raw observation.

        Raises:
            ValueError: If the representation's platform is not supported.
        """
        if self.platform not in SUPPORTED_PLATFORMS:
            raise ValueError(f"Unsupported platform: {self.platform}")
        if self.platform == "web":
            return self.create_web_state(raw)
        return self.create_mobile_state(raw)

    def create_web_state(self, raw: Mapping[str, Any]) -> State:
        """Create a state from a browser observation.

        Expected keys: ``url``, ``title``, ``dom`` (serialised HTML or a
        pre-extracted element list), ``screenshot``, ``viewport``,
        ``loadState``.  All are optional.
        """
        url = raw.get("url")
        title = raw.get("title") or ""

        elements = self.extract_web_elements(raw.get("dom"))
        page_type = self.classify_web_page(url, title, elements)
        interactions = self.extract_web_interactions(elements)

        return State(
            platform="web",
            type=page_type,
            element_count=len(elements),
            interactive_element_count=len(interactions),
            has_modal=self.detect_web_modal(elements),
            has_form=any(i["tag"] in ("input", "textarea") for i in interactions),
            raw_features={
                "url": self.normalize_url(url),
                "title": title,
                "load_state": raw.get("loadState"),
                "viewport": raw.get("viewport"),
                "elements": elements[:_MAX_ELEMENTS],
                "interactions": interactions[:_MAX_INTERACTIONS],
            },
        )

    def create_mobile_state(self, raw: Mapping[str, Any]) -> State:
        """Create a state from a mobile screen observation.

        The screen type and navigation context are supplied by the mobile
        state detector rather than inferred here.
        """
        elements = list(raw.get("elements") or [])
        interactions = self.extract_mobile_interactions(elements)
        nav = raw.get("navigationContext") or {}

        return State(
            platform=self.platform,
            type=raw.get("screenType") or "unknown",
            element_count=len(elements),
            interactive_element_count=len(interactions),
            has_modal=raw.get("hasModal"),
            has_form=None,
            navigation_flags={
                "has_tab_bar": bool(nav.get("hasTabBar", False)),
                "has_nav_bar": bool(nav.get("hasNavBar", False)),
                "has_back_button": bool(nav.get("hasBackButton", False)),
            },
            raw_features={
                "screen_size": raw.get("screenSize"),
                "app_state": raw.get("appState"),
                "elements": elements[:_MAX_ELEMENTS],
                "interactions": interactions[:_MAX_INTERACTIONS],
            },
        )

    # ==================================================================
    # Element extraction
    # ==================================================================

    @staticmethod
    def extract_web_elements(dom: Any) -> list[dict[str, Any]]:
        """Extract ``{tag, id, text}`` records from a serialised DOM.

        A list of element dicts (already extracted by the perception
        layer) is normalised and passed through.
        """
        if not dom:
            return []

        if isinstance(dom, list):
            return [
                {
                    "tag": str(el.get("tag", "")).lower(),
                    "id": el.get("id"),
                    "text": str(el.get("text") or "").strip()[:_MAX_TEXT],
                }
                for el in dom
                if isinstance(el, Mapping)
            ]

        soup = BeautifulSoup(dom, "html.parser")
        elements: list[dict[str, Any]] = []
        for tag in soup.find_all(True):
            own_text = " ".join(
                s.strip() for s in tag.find_all(string=True, recursive=False) if s.strip()
            )
            elements.append({
                "tag": tag.name.lower(),
                "id": tag.get("id"),
                "text": own_text[:_MAX_TEXT],
            })
        return elements

    @staticmethod
    def extract_web_interactions(elements: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Return the elements a user can interact with."""
        return [el for el in elements if el.get("tag", "").lower() in INTERACTIVE_TAGS]

    @staticmethod
    def extract_mobile_interactions(elements: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Return clickable elements and buttons/text fields of a screen."""
        interactions = []
        for el in elements:
            el_type = el.get("type") or ""
            if (
                el.get("isClickable")
                or "Button" in el_type
                or any(t in el_type for t in MOBILE_INPUT_TYPES)
            ):
                interactions.append(el)
        return interactions

    # ==================================================================
    # Classification
    # ==================================================================

    @staticmethod
    def classify_web_page(
        url: str | None, title: str, elements: list[dict[str, Any]]
    ) -> str:
        """Classify a web page by ordered heuristic rules.

        The first matching rule wins: LOGIN, REGISTRATION, SEARCH, DETAIL,
        FORM, LIST, HOME, and GENERAL as the fallback.
        """
        text = " ".join([title or ""] + [el.get("text") or "" for el in elements]).lower()
        url_lower = (url or "").lower()

        if "login" in text or "sign in" in text or "authentication" in text:
            return "LOGIN"

        if (
            "register" in text
            or "registration" in text
            or "sign up" in text
            or "create account" in text
        ):
            return "REGISTRATION"

        if "search" in url_lower or "search" in text:
            return "SEARCH"

        if "product" in text or "details" in text or "description" in text:
            return "DETAIL"

        input_count = sum(1 for el in elements if el.get("tag") in ("input", "textarea"))
        if input_count >= 3:
            return "FORM"

        list_count = sum(1 for el in elements if el.get("tag") in LIST_TAGS)
        if list_count > 5:
            return "LIST"

        path = urlparse(url).path if url and "://" in url else (url or "")
        if url and path in ("", "/"):
            return "HOME"
        if "home" in text or "dashboard" in text:
            return "HOME"

        return "GENERAL"

    @staticmethod
    def detect_web_modal(elements: list[dict[str, Any]]) -> bool:
        """Return ``True`` if any element text mentions a modal/dialog/popup."""
        for el in elements:
            text = (el.get("text") or "").lower()
            if "modal" in text or "dialog" in text or "popup" in text:
                return True
        return False

    @staticmethod
    def normalize_url(url: str | None) -> str:
        """Reduce *url* to ``host + path`` (query string and fragment dropped)."""
        if not url:
            return "unknown"
        parsed = urlparse(url)
        if not parsed.netloc:
            return url
        return f"{parsed.hostname}{parsed.path}"

    # ==================================================================
    # Keys, similarity, features
    # ==================================================================

    @staticmethod
    def create_state_key(state: State) -> str:
        """Build the bucketed lookup key of *state*.

        Two states that share platform, type, modal/form flags and the same
        element-count bucket (floored to 10) always produce the same key.
        """
        key: dict[str, Any] = {
            "platform": state.platform,
            "type": state.type or "unknown",
            "elementCount": (int(state.element_count or 0) // 10) * 10,
        }
        if state.has_modal is not None:
            key["hasModal"] = bool(state.has_modal)
        if state.has_form is not None:
            key["hasForm"] = bool(state.has_form)
        return json.dumps(key, separators=(",", ":"))

    @staticmethod
    def calculate_similarity(state1: State, state2: State) -> float:
        """Return a similarity score in [0, 1] between two states.

        Averages five equally weighted features: platform match, type match,
        element count closeness (linear falloff over 10), interactive
        element closeness (linear falloff over 5) and modal match.  A feature
        neither state reports is left out of the average.
        """
        score = 0.0
        total = 0

        def compare(a: Any, b: Any, closeness) -> None:
            nonlocal score, total
            if a is None and b is None:
                return
            total += 1
            score += closeness(a, b)

        def exact(a: Any, b: Any) -> float:
            return 1.0 if a == b else 0.0

        def within(tolerance: float):
            def _closeness(a: Any, b: Any) -> float:
                diff = abs((a or 0) - (b or 0))
                return 1.0 - diff / tolerance if diff < tolerance else 0.0
            return _closeness

        compare(state1.platform, state2.platform, exact)
        compare(state1.type, state2.type, exact)
        compare(state1.element_count, state2.element_count, within(10.0))
        compare(
            state1.interactive_element_count,
            state2.interactive_element_count,
            within(5.0),
        )
        compare(state1.has_modal, state2.has_modal, exact)

        if total == 0:
            return 0.0
        return score / total

    @staticmethod
    def extract_features(state: State) -> dict[str, Any]:
        """Return the flat feature dict used for analysis and export."""
        flags = state.navigation_flags or {}
        return {
            "platform": state.platform,
            "type": state.type,
            "elementCount": state.element_count,
            "interactiveElements": state.interactive_element_count,
            "hasModal": 1 if state.has_modal else 0,
            "hasForm": 1 if state.has_form else 0,
            "hasNavigation": 1 if any(flags.values()) else 0,
        }
