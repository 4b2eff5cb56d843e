"""
Routing decisions for classified intents.

Decides whether a message runs inline, needs an explicit confirmation
dialog first, or falls back to plain chat, and whether a new project has
to be created before anything runs.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from kroniq_guard.config.loader import RoutingConfig
from .intent import Intent, IntentKind


class RoutingAction(Enum):
    EXECUTE_INLINE = "execute_inline"
    CONFIRM_WITH_USER = "confirm_with_user"
    FALLBACK_CHAT = "fallback_chat"


@dataclass(frozen=True)
class RoutingContext:
    """What the UI knows about the current conversation."""
    has_active_project: bool = False
    active_project_kind: Optional[IntentKind] = None
    user_confirmed_previously: bool = False


@dataclass(frozen=True)
class RoutingDecision:
    action: RoutingAction
    target_kind: IntentKind
    requires_new_project: bool
    # True when the latest intent replaces the active project's kind
    overrides_project_kind: bool = False
    reason: str = ""


DEFAULT_THRESHOLDS = RoutingConfig()


def should_show_confirmation(intent: Intent, thresholds: RoutingConfig = DEFAULT_THRESHOLDS) -> bool:
    """Ambiguous but plausible generation request."""
    return (
        intent.kind.is_generation
        and thresholds.confirm_min <= intent.confidence < thresholds.auto_route_min
    )


def should_auto_route(intent: Intent, thresholds: RoutingConfig = DEFAULT_THRESHOLDS) -> bool:
    """Unambiguous generation request."""
    return intent.kind.is_generation and intent.confidence >= thresholds.auto_route_min


def decide_routing(intent: Intent, context: RoutingContext,
                   thresholds: RoutingConfig = DEFAULT_THRESHOLDS) -> RoutingDecision:
    """Route a classified intent.

    When a project of a different kind is already open, the newly detected
    kind still runs inline: the user's latest request wins over the
    project's original type.
    """
    needs_project = not context.has_active_project

    if intent.kind is IntentKind.CHAT:
        return RoutingDecision(
            action=RoutingAction.EXECUTE_INLINE,
            target_kind=IntentKind.CHAT,
            requires_new_project=needs_project,
            reason="Chat message",
        )

    overrides = (
        context.has_active_project
        and context.active_project_kind is not None
        and context.active_project_kind is not intent.kind
    )

    if should_auto_route(intent, thresholds) or (
        context.user_confirmed_previously
        and intent.confidence >= thresholds.confirm_min
    ):
        return RoutingDecision(
            action=RoutingAction.EXECUTE_INLINE,
            target_kind=intent.kind,
            requires_new_project=needs_project,
            overrides_project_kind=overrides,
            reason=f"Clear {intent.kind.value} request",
        )

    if should_show_confirmation(intent, thresholds):
        if needs_project:
            return RoutingDecision(
                action=RoutingAction.CONFIRM_WITH_USER,
                target_kind=intent.kind,
                requires_new_project=True,
                reason=f"Ambiguous {intent.kind.value} request",
            )
        # inside an open project an ambiguous request runs without a dialog
        return RoutingDecision(
            action=RoutingAction.EXECUTE_INLINE,
            target_kind=intent.kind,
            requires_new_project=False,
            overrides_project_kind=overrides,
            reason=f"Ambiguous {intent.kind.value} request in open project",
        )

    return RoutingDecision(
        action=RoutingAction.FALLBACK_CHAT,
        target_kind=IntentKind.CHAT,
        requires_new_project=needs_project,
        reason=f"Low confidence {intent.kind.value} request",
    )


def project_name_for(message: str, max_length: int = 40) -> str:
    """Project title derived from the first message."""
    name = (message or "")[:max_length].strip()
    name = re.sub(r"[.!?,;:]$", "", name)
    if len(message or "") > max_length:
        name += "..."
    if not name:
        return "New Chat"
    return name[0].upper() + name[1:]
