"""
Tests for state representation: page classification, element extraction,
state keys, similarity and (de)serialisation.
"""

import json
import math

import pytest

from navlearn.rl.state import State, StateRepresentation, state_key


LOGIN_DOM = (
    '<form id="login"><input id="user"><input id="pass" type="password">'
    "<button>Sign in</button></form>"
)


@pytest.fixture
def web():
    return StateRepresentation("web")


@pytest.fixture
def android():
    return StateRepresentation("android")


# =============================================================================
# Web state creation
# =============================================================================

class TestWebState:
    """Tests for StateRepresentation.create_web_state."""

    def test_login_page(self, web):
        """A sign-in form is classified as LOGIN with a form flag."""
        state = web.create_state({"url": "https://example.com/login", "title": "Login", "dom": LOGIN_DOM})
        assert state.platform == "web"
        assert state.type == "LOGIN"
        assert state.element_count == 4
        assert state.interactive_element_count == 3
        assert state.has_form is True
        assert state.has_modal is False

    def test_registration_precedes_search(self, web):
        """Registration wording wins over a search URL."""
        state = web.create_state({
            "url": "https://example.com/search",
            "title": "Create account",
            "dom": "<div>Join us</div>",
        })
        assert state.type == "REGISTRATION"

    def test_search_from_url(self, web):
        state = web.create_state({"url": "https://example.com/search?q=shoes", "title": "Results"})
        assert state.type == "SEARCH"

    def test_detail_page(self, web):
        state = web.create_state({
            "url": "https://shop.example.com/p/42",
            "title": "Blue shoe",
            "dom": "<h1>Product description</h1>",
        })
        assert state.type == "DETAIL"

    def test_form_needs_three_inputs(self, web):
        dom = "<input><input><textarea></textarea><button>Send</button>"
        state = web.create_state({"url": "https://example.com/contact", "title": "Contact", "dom": dom})
        assert state.type == "FORM"

    def test_list_needs_more_than_five_items(self, web):
        six = "<ul>" + "<li>x</li>" * 6 + "</ul>"
        five = "<ul>" + "<li>x</li>" * 5 + "</ul>"
        url = "https://example.com/items"
        assert web.create_state({"url": url, "title": "Items", "dom": six}).type == "LIST"
        assert web.create_state({"url": url, "title": "Items", "dom": five}).type == "GENERAL"

    def test_root_path_is_home(self, web):
        state = web.create_state({"url": "https://example.com/", "title": "Welcome"})
        assert state.type == "HOME"

    def test_dashboard_text_is_home(self, web):
        state = web.create_state({"url": "https://example.com/app", "title": "Dashboard"})
        assert state.type == "HOME"

    def test_general_fallback(self, web):
        state = web.create_state({"url": "https://example.com/about", "title": "About us", "dom": "<p>hi</p>"})
        assert state.type == "GENERAL"

    def test_modal_detected_from_text(self, web):
        state = web.create_state({"url": "https://example.com/about", "dom": "<div>Cookie popup</div>"})
        assert state.has_modal is True

    def test_missing_everything(self, web):
        """An empty observation still yields a valid state."""
        state = web.create_state({})
        assert state.type == "GENERAL"
        assert state.element_count == 0
        assert state.raw_features["url"] == "unknown"

    def test_unsupported_platform(self):
        with pytest.raises(ValueError):
            StateRepresentation("desktop").create_state({})


# =============================================================================
# Element extraction
# =============================================================================

class TestElementExtraction:
    """Tests for DOM and mobile element extraction."""

    def test_own_text_only(self):
        """Each element keeps its own text, not that of its children."""
        elements = StateRepresentation.extract_web_elements('<div id="a">Hello <span>World</span></div>')
        assert elements == [
            {"tag": "div", "id": "a", "text": "Hello"},
            {"tag": "span", "id": None, "text": "World"},
        ]

    def test_text_truncated(self):
        elements = StateRepresentation.extract_web_elements("<p>" + "x" * 80 + "</p>")
        assert len(elements[0]["text"]) == 50

    def test_pre_extracted_list(self):
        elements = StateRepresentation.extract_web_elements([{"tag": "BUTTON", "text": " Go "}])
        assert elements == [{"tag": "button", "id": None, "text": "Go"}]

    def test_mobile_interactions(self):
        elements = [
            {"type": "Button"},
            {"type": "TextView"},
            {"type": "EditText"},
            {"type": "View", "isClickable": True},
        ]
        assert len(StateRepresentation.extract_mobile_interactions(elements)) == 3


# =============================================================================
# Mobile state creation
# =============================================================================

class TestMobileState:

    def test_mobile_state(self, android):
        state = android.create_state({
            "screenType": "HOME",
            "elements": [{"type": "Button"}, {"type": "TextView"}],
            "navigationContext": {"hasTabBar": True},
            "hasModal": False,
        })
        assert state.platform == "android"
        assert state.type == "HOME"
        assert state.interactive_element_count == 1
        assert state.has_form is None
        assert state.navigation_flags == {
            "has_tab_bar": True,
            "has_nav_bar": False,
            "has_back_button": False,
        }

    def test_mobile_key_omits_form_flag(self, android):
        state = android.create_state({"screenType": "LIST", "hasModal": True})
        assert json.loads(state.key) == {
            "platform": "android",
            "type": "LIST",
            "elementCount": 0,
            "hasModal": True,
        }


# =============================================================================
# State keys
# =============================================================================

class TestStateKey:

    def test_exact_format(self):
        state = State(platform="web", type="LOGIN", element_count=12, has_modal=False, has_form=True)
        assert state.key == '{"platform":"web","type":"LOGIN","elementCount":10,"hasModal":false,"hasForm":true}'

    def test_bucketing(self, make_state):
        """Element counts in the same bucket of 10 share a key."""
        assert make_state(element_count=12).key == make_state(element_count=18).key
        assert make_state(element_count=12).key != make_state(element_count=21).key

    def test_type_and_flags_are_exact(self, make_state):
        assert make_state("HOME").key != make_state("LIST").key
        assert make_state(has_modal=True).key != make_state(has_modal=False).key

    def test_state_key_accepts_strings_and_dicts(self):
        camel = {"platform": "web", "pageType": "LOGIN", "elementCount": 12, "hasModal": False, "hasForm": True}
        expected = State(platform="web", type="LOGIN", element_count=12, has_modal=False, has_form=True).key
        assert state_key(camel) == expected
        assert state_key(expected) == expected

    def test_dict_round_trip_keeps_key(self, web):
        state = web.create_state({"url": "https://example.com/login", "title": "Login", "dom": LOGIN_DOM})
        assert State.from_dict(state.to_dict()).key == state.key


# =============================================================================
# Similarity, features, URLs
# =============================================================================

class TestSimilarity:

    def test_identical_states(self, make_state):
        assert StateRepresentation.calculate_similarity(make_state(), make_state()) == 1.0

    def test_linear_falloff(self, make_state):
        a = make_state(element_count=10)
        b = make_state(element_count=15)
        # element count closeness 0.5, the other four features match
        assert StateRepresentation.calculate_similarity(a, b) == pytest.approx(4.5 / 5)

    def test_missing_modal_on_both_sides_is_skipped(self):
        a = State(platform="ios", type="HOME", has_modal=None, has_form=None)
        b = State(platform="ios", type="LIST", has_modal=None, has_form=None)
        assert StateRepresentation.calculate_similarity(a, b) == pytest.approx(3 / 4)

    def test_features(self):
        state = State(
            platform="android",
            type="HOME",
            element_count=7,
            interactive_element_count=2,
            has_modal=True,
            has_form=None,
            navigation_flags={"has_tab_bar": False, "has_back_button": True},
        )
        features = StateRepresentation.extract_features(state)
        assert features["hasModal"] == 1
        assert features["hasForm"] == 0
        assert features["hasNavigation"] == 1
        assert features["interactiveElements"] == 2

    def test_normalize_url(self):
        assert StateRepresentation.normalize_url("https://example.com/path?q=1#x") == "example.com/path"
        assert StateRepresentation.normalize_url(None) == "unknown"

    def test_similarity_bounds(self, make_state):
        score = StateRepresentation.calculate_similarity(
            make_state("LOGIN", 0, has_modal=True), State(platform="ios", type="LIST", element_count=90)
        )
        assert 0.0 <= score <= 1.0
        assert not math.isnan(score)
