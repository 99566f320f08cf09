"""
Analytics Models — Pydantic view models for the analytics dashboard.

Every rate/percentage field is a fraction in [0, 1].
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Generic, Literal, TypeVar

from pydantic import BaseModel, Field

from app.models.enums import ChannelKind, Sentiment

T = TypeVar("T")

Granularity = Literal["minute", "hour", "day"]

# =============================================================================
# WINDOW
# =============================================================================


class DateRange(BaseModel):
    """Resolved [start, end) interval plus its time-series bucketing."""

    start: datetime
    end: datetime
    period: str
    granularity: Granularity
    points: int
    bucket_seconds: float
    label_format: str = Field(default="%b %d", exclude=True)

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    @property
    def bucket_width(self) -> timedelta:
        return timedelta(seconds=self.bucket_seconds)


# =============================================================================
# SUMMARY
# =============================================================================


class SentimentBucket(BaseModel):
    sentiment: Sentiment
    count: int


class ConversationMetrics(BaseModel):
    """Tenant-scoped conversation summary for the KPI cards."""

    total: int
    active: int
    completed: int
    escalated: int
    avg_response_time_ms: float | None  # None when nothing was answered in-window
    avg_duration_seconds: float | None
    satisfaction_score: float | None  # 1–5 mean, None when unrated
    resolution_rate: float  # completed / total, 0.0 when total == 0
    sentiments: list[SentimentBucket] = Field(default_factory=list)


# =============================================================================
# AGENTS
# =============================================================================


class IntentShare(BaseModel):
    intent: str
    count: int
    percentage: float  # 0.0–1.0


class ChannelShare(BaseModel):
    channel: ChannelKind
    count: int
    percentage: float  # 0.0–1.0


class AgentPerformance(BaseModel):
    """Per-agent performance record."""

    agent_id: str
    agent_name: str
    total_conversations: int
    success_rate: float
    uptime: float | None  # None when no health samples were reported
    avg_response_time_ms: float | None
    satisfaction_score: float | None
    error_rate: float
    last_active: datetime | None = None
    top_intents: list[IntentShare] = Field(default_factory=list)
    channel_distribution: list[ChannelShare] = Field(default_factory=list)


# =============================================================================
# CHANNELS
# =============================================================================


class ChannelAnalytics(BaseModel):
    """Per-channel breakdown."""

    channel: ChannelKind
    total_conversations: int
    total_messages: int
    unique_users: int
    uptime: float | None
    avg_response_time_ms: float | None
    error_rate: float  # 0.0–1.0


class UserEngagement(BaseModel):
    """Visitor activity across the conversations in a window."""

    total_users: int
    active_users: int  # users with a conversation still open
    new_users: int  # exactly one conversation in the window
    returning_users: int  # two or more conversations in the window
    avg_session_duration_seconds: float | None


# =============================================================================
# TIME SERIES
# =============================================================================


class TimeSeriesPoint(BaseModel):
    timestamp: datetime  # bucket start
    label: str
    value: float | None  # None = no data (rate/time metrics only)


class TimeSeriesData(BaseModel):
    metric: str
    period: str
    granularity: Granularity
    points: list[TimeSeriesPoint]


# =============================================================================
# REAL TIME
# =============================================================================


class RealTimeMetrics(BaseModel):
    """Live snapshot, written only by the real-time feed."""

    active_conversations: int
    active_users: int
    response_time_ms: float | None
    system_load: float | None  # 0.0–1.0
    error_rate: float  # 0.0–1.0
    throughput: float  # messages per minute
    last_updated: datetime


class FeedUpdate(BaseModel):
    """One delivery from the real-time feed."""

    tenant_id: str
    generation: int
    status: Literal["live", "degraded"]
    metrics: RealTimeMetrics | None = None
    error: str | None = None


# =============================================================================
# DASHBOARD VIEW
# =============================================================================


class SectionError(BaseModel):
    kind: str
    message: str
    retryable: bool = True


class Section(BaseModel, Generic[T]):
    """One dashboard slot: data on success, an explicit error otherwise."""

    data: T | None = None
    error: SectionError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class DashboardView(BaseModel):
    """Everything the dashboard renders for one (period, agent filter) load."""

    request_id: int
    period: str
    agent_filter: str | None
    window: DateRange
    loaded_at: datetime
    metrics: Section[ConversationMetrics]
    agents: Section[list[AgentPerformance]]
    channels: Section[list[ChannelAnalytics]]
    conversation_trend: Section[TimeSeriesData]
    response_time_trend: Section[TimeSeriesData]
    engagement: Section[UserEngagement]
