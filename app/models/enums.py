"""
Closed enums for channel, conversation status and sentiment.

Each enum owns a single DISPLAY table (label / icon / color) so the dashboard
never switches on raw strings.
"""

from __future__ import annotations

from enum import Enum
from typing import NamedTuple


class Display(NamedTuple):
    label: str
    icon: str
    color: str


# =============================================================================
# CHANNEL
# =============================================================================


class ChannelKind(str, Enum):
    WEB = "web"
    WHATSAPP = "whatsapp"
    SLACK = "slack"
    EMAIL = "email"
    API = "api"
    WEBHOOK = "webhook"
    VOICE = "voice"
    OTHER = "other"

    @classmethod
    def parse(cls, value: str | None) -> ChannelKind:
        """Map a stored channel string onto the closed set. Unknown → OTHER."""
        if not value:
            return cls.OTHER
        key = value.strip().lower()
        key = _CHANNEL_ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            return cls.OTHER


_CHANNEL_ALIASES = {
    "webchat": "web",
    "web_chat": "web",
    "widget": "web",
    "phone": "voice",
}

CHANNEL_DISPLAY: dict[ChannelKind, Display] = {
    ChannelKind.WEB: Display("Web Chat", "message-square", "#3b82f6"),
    ChannelKind.WHATSAPP: Display("WhatsApp", "phone", "#10b981"),
    ChannelKind.SLACK: Display("Slack", "slack", "#8b5cf6"),
    ChannelKind.EMAIL: Display("Email", "mail", "#f59e0b"),
    ChannelKind.API: Display("API", "code", "#06b6d4"),
    ChannelKind.WEBHOOK: Display("Webhook", "webhook", "#64748b"),
    ChannelKind.VOICE: Display("Voice", "mic", "#ef4444"),
    ChannelKind.OTHER: Display("Other", "circle", "#94a3b8"),
}


# =============================================================================
# CONVERSATION STATUS
# =============================================================================


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ESCALATED = "escalated"

    @classmethod
    def parse(cls, value: str | None) -> ConversationStatus | None:
        if not value:
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


STATUS_DISPLAY: dict[ConversationStatus, Display] = {
    ConversationStatus.ACTIVE: Display("Active", "activity", "#3b82f6"),
    ConversationStatus.COMPLETED: Display("Completed", "check-circle", "#10b981"),
    ConversationStatus.ESCALATED: Display("Escalated", "alert-circle", "#ef4444"),
}


# =============================================================================
# SENTIMENT
# =============================================================================


class Sentiment(str, Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"

    @classmethod
    def parse(cls, value: str | None) -> Sentiment | None:
        if not value:
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None

    @classmethod
    def from_score(cls, score: float) -> Sentiment:
        """Bucket a polarity score in [-1, 1]."""
        if score > 0.1:
            return cls.POSITIVE
        if score > -0.1:
            return cls.NEUTRAL
        return cls.NEGATIVE


SENTIMENT_DISPLAY: dict[Sentiment, Display] = {
    Sentiment.POSITIVE: Display("Positive", "smile", "#10b981"),
    Sentiment.NEUTRAL: Display("Neutral", "meh", "#94a3b8"),
    Sentiment.NEGATIVE: Display("Negative", "frown", "#ef4444"),
}


def display_tables() -> dict[str, dict[str, dict[str, str]]]:
    """All display tables keyed by enum value, for the dashboard client."""
    return {
        "channels": {k.value: v._asdict() for k, v in CHANNEL_DISPLAY.items()},
        "statuses": {k.value: v._asdict() for k, v in STATUS_DISPLAY.items()},
        "sentiments": {k.value: v._asdict() for k, v in SENTIMENT_DISPLAY.items()},
    }
