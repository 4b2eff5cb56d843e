"""
Keyword intent classification.

Maps free text to the medium a user is asking for. Rules are evaluated in
a fixed priority order and the first kind with a matching pattern wins:

    voice > video > music > slides > image > code

Chat is the default. The order is a product rule (a message mentioning a
video and its soundtrack is a video request), so RULES must never be
re-sorted.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Pattern, Tuple


class IntentKind(Enum):
    """What a message is asking for."""
    CHAT = "chat"
    IMAGE = "image"
    VIDEO = "video"
    MUSIC = "music"
    VOICE = "voice"
    SLIDES = "slides"
    CODE = "code"

    @property
    def is_generation(self) -> bool:
        return self is not IntentKind.CHAT


STUDIO_NAMES = {
    IntentKind.CHAT: "Chat Studio",
    IntentKind.IMAGE: "Image Studio",
    IntentKind.VIDEO: "Video Studio",
    IntentKind.MUSIC: "Music Studio",
    IntentKind.VOICE: "Voice Studio",
    IntentKind.SLIDES: "PPT Studio",
    IntentKind.CODE: "Code Studio",
}


@dataclass(frozen=True)
class Intent:
    """Classifier output."""
    kind: IntentKind
    confidence: float
    reasoning: str
    prompt: str = ""

    @property
    def suggested_studio(self) -> str:
        return STUDIO_NAMES[self.kind]


@dataclass(frozen=True)
class IntentRule:
    """Patterns that identify one kind. Any match claims the message."""
    kind: IntentKind
    patterns: Tuple[Pattern[str], ...]
    strip: Optional[Pattern[str]] = None

    def matches(self, text: str) -> Optional[str]:
        """Return the matching pattern source, or None."""
        for pattern in self.patterns:
            if pattern.search(text):
                return pattern.pattern
        return None


def _rx(pattern: str) -> Pattern[str]:
    return re.compile(pattern, re.IGNORECASE)


RULES: Tuple[IntentRule, ...] = (
    IntentRule(
        IntentKind.VOICE,
        (
            _rx(r"\b(generate|create|make|produce|convert)\b.*\b(voice|voiceover|speech|audio|narration|speak|say)\b"),
            _rx(r"\b(voice|voiceover|speech|audio|narration) (of|for|saying|speaking)\b"),
            _rx(r"\b(say|speak|narrate)\b.*[\"'](.+)[\"']"),
            _rx(r"\b(say|speak|narrate)\b.*\bin\s+(an?\s+)?(\w+\s+){0,3}(voice|tone|accent)\b"),
        ),
        strip=_rx(r"^(generate|create|make|produce|convert)\s+(an?\s+)?(voice|voiceover|speech|audio|narration)\s+(of|for|saying|speaking)?\s*"),
    ),
    IntentRule(
        IntentKind.VIDEO,
        (
            _rx(r"\b(generate|create|make|show|render|produce)\b.*\b(video|clip|animation|footage|movie)\b"),
            _rx(r"\b(video|clip|animation) (of|about|showing|with|depicting)\b"),
        ),
        strip=_rx(r"^(generate|create|make|show|render|produce)\s+(an?\s+)?(video|clip|animation|footage|movie)\s+(of|about|showing|with|depicting)?\s*"),
    ),
    IntentRule(
        IntentKind.MUSIC,
        (
            _rx(r"\b(generate|create|make|compose|produce|write)\b.*\b(music|song|track|tune|beat|melody|soundtrack|audio|composition)\b"),
            _rx(r"\b(music|song|track|tune) (about|for|with|depicting)\b"),
        ),
        strip=_rx(r"^(generate|create|make|compose|produce|write)\s+(an?\s+)?(music|song|track|tune|beat|melody|soundtrack|audio|composition)\s+(about|for|with|depicting)?\s*"),
    ),
    IntentRule(
        IntentKind.SLIDES,
        (
            _rx(r"\b(generate|create|make|build|design|produce|prepare)\b.*\b(ppt|powerpoint|presentation|slides?|slideshow|deck)\b"),
            _rx(r"\b(presentation|slides?|ppt|powerpoint|slideshow|deck) (on|about|for|regarding|covering)\b"),
            _rx(r"\b(make|need|want|create|build)\s+(an?\s+)?(presentation|slides?|ppt|powerpoint|slideshow)"),
        ),
    ),
    IntentRule(
        IntentKind.IMAGE,
        (
            _rx(r"\b(generate|create|make|draw|design|show|paint|illustrate|render)\b.*\b(image|picture|photo|illustration|artwork|art|painting|drawing|graphic)\b"),
            _rx(r"\b(image|picture|photo|illustration) (of|about|showing|with|depicting)\b"),
        ),
        strip=_rx(r"^(generate|create|make|draw|design|show|paint|illustrate|render)\s+(an?\s+)?(image|picture|photo|illustration|artwork|art|painting|drawing|graphic)\s+(of|about|showing|with|depicting)?\s*"),
    ),
    IntentRule(
        IntentKind.CODE,
        (
            _rx(r"\b(write|create|build|generate|implement|fix|debug|refactor)\b.*\b(code|function|script|program|class|api|component|app|website)\b"),
            _rx(r"```"),
        ),
    ),
)


def classify_intent(text: Optional[str]) -> Intent:
    """Classify a message. Total: any input yields an Intent, never raises.

    Confidence is 1.0 for a keyword match and for the chat default; there
    is no graded scoring.
    """
    if not isinstance(text, str):
        text = "" if text is None else str(text)
    message = text.strip()
    if not message:
        return Intent(IntentKind.CHAT, 1.0, "Empty message defaults to chat", "")

    for rule in RULES:
        matched = rule.matches(message)
        if matched is not None:
            return Intent(
                kind=rule.kind,
                confidence=1.0,
                reasoning=f"Matched {rule.kind.value} keywords",
                prompt=extract_prompt(rule, message),
            )

    return Intent(IntentKind.CHAT, 1.0, "No generation keywords found", message)


def extract_prompt(rule: IntentRule, message: str) -> str:
    """Strip the leading command phrase ("create an image of") from a message.

    Quoted text in a say/speak request is the prompt itself.
    """
    if rule.kind is IntentKind.VOICE:
        quoted = re.search(r"\b(say|speak|narrate)\b.*[\"'](.+)[\"']", message, re.IGNORECASE)
        if quoted:
            return quoted.group(2)
    if rule.strip is None:
        return message
    cleaned = rule.strip.sub("", message, count=1).strip()
    return cleaned or message
