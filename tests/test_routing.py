"""
Unit tests for routing decisions.

Tests threshold behavior, project creation and project kind overrides.
"""

import pytest

from kroniq_guard.config.loader import RoutingConfig
from kroniq_guard.core.intent import Intent, IntentKind
from kroniq_guard.core.routing import (
    RoutingAction,
    RoutingContext,
    decide_routing,
    project_name_for,
    should_auto_route,
    should_show_confirmation,
)


def intent(kind, confidence):
    return Intent(kind=kind, confidence=confidence, reasoning="test")


NO_PROJECT = RoutingContext()


class TestThresholds:
    """Test the confirm and auto-route predicates."""

    @pytest.mark.parametrize("confidence,confirm,auto", [
        (0.49, False, False),
        (0.5, True, False),
        (0.79, True, False),
        (0.8, False, True),
        (1.0, False, True),
    ])
    def test_bands(self, confidence, confirm, auto):
        i = intent(IntentKind.IMAGE, confidence)
        assert should_show_confirmation(i) is confirm
        assert should_auto_route(i) is auto

    def test_chat_never_confirms_or_routes(self):
        i = intent(IntentKind.CHAT, 0.9)
        assert not should_show_confirmation(i)
        assert not should_auto_route(i)

    def test_custom_thresholds(self):
        thresholds = RoutingConfig(confirm_min=0.3, auto_route_min=0.6)
        assert should_auto_route(intent(IntentKind.VIDEO, 0.6), thresholds)
        assert should_show_confirmation(intent(IntentKind.VIDEO, 0.3), thresholds)


class TestDecideRouting:
    """Test routing outcomes."""

    def test_chat_runs_inline(self):
        decision = decide_routing(intent(IntentKind.CHAT, 1.0), NO_PROJECT)
        assert decision.action is RoutingAction.EXECUTE_INLINE
        assert decision.target_kind is IntentKind.CHAT
        assert decision.requires_new_project

    def test_clear_request_auto_routes(self):
        decision = decide_routing(intent(IntentKind.SLIDES, 1.0), NO_PROJECT)
        assert decision.action is RoutingAction.EXECUTE_INLINE
        assert decision.target_kind is IntentKind.SLIDES
        assert decision.requires_new_project

    def test_ambiguous_request_without_project_confirms(self):
        decision = decide_routing(intent(IntentKind.IMAGE, 0.6), NO_PROJECT)
        assert decision.action is RoutingAction.CONFIRM_WITH_USER
        assert decision.target_kind is IntentKind.IMAGE
        assert decision.requires_new_project

    def test_ambiguous_request_in_project_runs_inline(self):
        context = RoutingContext(has_active_project=True, active_project_kind=IntentKind.IMAGE)
        decision = decide_routing(intent(IntentKind.IMAGE, 0.6), context)
        assert decision.action is RoutingAction.EXECUTE_INLINE
        assert not decision.requires_new_project
        assert not decision.overrides_project_kind

    def test_previous_confirmation_skips_dialog(self):
        context = RoutingContext(user_confirmed_previously=True)
        decision = decide_routing(intent(IntentKind.MUSIC, 0.6), context)
        assert decision.action is RoutingAction.EXECUTE_INLINE

    def test_low_confidence_falls_back_to_chat(self):
        decision = decide_routing(intent(IntentKind.VIDEO, 0.2), NO_PROJECT)
        assert decision.action is RoutingAction.FALLBACK_CHAT
        assert decision.target_kind is IntentKind.CHAT

    def test_latest_intent_overrides_project_kind(self):
        """Test a new kind inside an open project still runs."""
        context = RoutingContext(has_active_project=True, active_project_kind=IntentKind.CHAT)
        decision = decide_routing(intent(IntentKind.IMAGE, 1.0), context)
        assert decision.action is RoutingAction.EXECUTE_INLINE
        assert decision.target_kind is IntentKind.IMAGE
        assert not decision.requires_new_project
        assert decision.overrides_project_kind


class TestProjectName:
    """Test project titles from first messages."""

    def test_short_message(self):
        assert project_name_for("draw a cat.") == "Draw a cat"

    def test_long_message_truncated(self):
        name = project_name_for("x" * 60)
        assert name == "X" + "x" * 39 + "..."

    def test_empty_message(self):
        assert project_name_for("") == "New Chat"
        assert project_name_for(None) == "New Chat"
