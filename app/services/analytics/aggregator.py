"""
Metrics Aggregator — summary, per-agent and per-channel breakdowns.

Operations:
  compute_metrics(ctx, window, agent_filter)            → ConversationMetrics
  compute_agent_performance(ctx, window, agent_filter)  → list[AgentPerformance]
  compute_channel_analytics(ctx, window, agent_filter)  → list[ChannelAnalytics]
  compute_user_engagement(ctx, window, agent_filter)    → UserEngagement

All reads are tenant-scoped and read-only. Independent queries within one
operation run concurrently via asyncio.gather. A specific agent filter is
verified against the tenant before any data query is issued.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter, defaultdict
from datetime import datetime
from typing import Any, Iterable, Iterator

from app.config import settings
from app.models.analytics import (
    AgentPerformance,
    ChannelAnalytics,
    ChannelShare,
    ConversationMetrics,
    DateRange,
    IntentShare,
    SentimentBucket,
    UserEngagement,
)
from app.models.enums import ChannelKind, ConversationStatus, Sentiment
from app.models.tenant import TenantContext
from app.services.analytics.scope import (
    AgentScope,
    agent_query_filter,
    fetch,
    resolve_agent_scope,
)
from app.services.analytics.store import EntityKind, Row, parse_timestamp

logger = logging.getLogger(__name__)

# Roles that answer a visitor message
RESPONDER_ROLES = {"agent", "assistant", "human"}


# =============================================================================
# SHARED HELPERS
# =============================================================================


def mean(values: Iterable[float]) -> float | None:
    items = list(values)
    if not items:
        return None
    return sum(items) / len(items)


def ratio(part: int, whole: int) -> float:
    """part / whole as a 0–1 fraction, 0.0 when whole is 0."""
    if whole <= 0:
        return 0.0
    return round(part / whole, 4)


def _round(value: float | None, digits: int = 1) -> float | None:
    return None if value is None else round(value, digits)


def iter_responses(messages: Iterable[Row]) -> Iterator[tuple[str, datetime, float]]:
    """Yield (conversation_id, response_at, latency_ms) for every answered turn.

    A latency runs from the first unanswered user message to the next
    responder message in the same conversation.
    """
    by_conversation: dict[str, list[tuple[datetime, str]]] = defaultdict(list)
    for msg in messages:
        ts = parse_timestamp(msg.get("created_at"))
        if ts is None or not msg.get("conversation_id"):
            continue
        by_conversation[str(msg["conversation_id"])].append((ts, msg.get("role") or ""))

    for conv_id, items in by_conversation.items():
        items.sort(key=lambda item: item[0])
        pending: datetime | None = None
        for ts, role in items:
            if role == "user":
                if pending is None:
                    pending = ts
            elif role in RESPONDER_ROLES and pending is not None:
                yield conv_id, ts, (ts - pending).total_seconds() * 1000
                pending = None


def response_latencies(messages: Iterable[Row]) -> dict[str, list[float]]:
    """Per-conversation response latencies in milliseconds."""
    latencies: dict[str, list[float]] = defaultdict(list)
    for conv_id, _, latency in iter_responses(messages):
        latencies[conv_id].append(latency)
    return dict(latencies)


def avg_response_time(
    latencies: dict[str, list[float]], conversation_ids: set[str] | None = None
) -> float | None:
    """Mean of per-conversation mean latencies; unanswered conversations excluded."""
    per_conversation = [
        sum(values) / len(values)
        for conv_id, values in latencies.items()
        if values and (conversation_ids is None or conv_id in conversation_ids)
    ]
    return _round(mean(per_conversation))


def is_escalated(conv: Row) -> bool:
    return (
        ConversationStatus.parse(conv.get("status")) == ConversationStatus.ESCALATED
        or bool(conv.get("escalation_requested"))
    )


def _duration_seconds(conv: Row) -> float | None:
    if conv.get("resolution_time") is not None:
        try:
            return float(conv["resolution_time"])
        except (TypeError, ValueError):
            return None
    created = parse_timestamp(conv.get("created_at"))
    ended = parse_timestamp(conv.get("ended_at"))
    if created and ended and ended >= created:
        return (ended - created).total_seconds()
    return None


def _satisfaction(convs: Iterable[Row]) -> float | None:
    scores: list[float] = []
    for conv in convs:
        score = conv.get("satisfaction_score")
        if score is None:
            continue
        try:
            scores.append(float(score))
        except (TypeError, ValueError):
            continue
    return _round(mean(scores), 2)


# =============================================================================
# SUMMARY
# =============================================================================


def summarize_conversations(
    conversations: list[Row], messages: list[Row]
) -> ConversationMetrics:
    """Pure aggregation over already-fetched rows."""
    total = len(conversations)
    statuses = [ConversationStatus.parse(c.get("status")) for c in conversations]
    active = sum(1 for s in statuses if s == ConversationStatus.ACTIVE)
    completed = sum(1 for s in statuses if s == ConversationStatus.COMPLETED)
    escalated = sum(1 for c in conversations if is_escalated(c))

    conv_ids = {str(c["id"]) for c in conversations}
    durations = [d for d in (_duration_seconds(c) for c in conversations) if d is not None]

    sentiment_counts = Counter(
        s for s in (Sentiment.parse(c.get("sentiment")) for c in conversations) if s
    )

    return ConversationMetrics(
        total=total,
        active=active,
        completed=completed,
        escalated=escalated,
        avg_response_time_ms=avg_response_time(response_latencies(messages), conv_ids),
        avg_duration_seconds=_round(mean(durations)),
        satisfaction_score=_satisfaction(conversations),
        resolution_rate=ratio(completed, total),
        sentiments=[
            SentimentBucket(sentiment=s, count=sentiment_counts[s])
            for s in Sentiment
            if sentiment_counts[s]
        ],
    )


async def compute_metrics(
    ctx: TenantContext,
    window: DateRange,
    agent_filter: str | AgentScope | None = None,
) -> ConversationMetrics:
    """Conversation summary for the tenant (optionally one agent) in ``window``."""
    scope = await resolve_agent_scope(ctx, agent_filter)
    query_filter = agent_query_filter(scope.agent_id)

    conversations, messages = await asyncio.gather(
        fetch(ctx, EntityKind.CONVERSATIONS, query_filter, window),
        fetch(ctx, EntityKind.MESSAGES, query_filter, window),
    )

    metrics = summarize_conversations(conversations, messages)
    logger.debug(
        "Analytics: metrics tenant=%s period=%s total=%d",
        ctx.tenant_id, window.period, metrics.total,
    )
    return metrics


# =============================================================================
# AGENTS
# =============================================================================


def _top_intents(convs: list[Row], limit: int) -> list[IntentShare]:
    counts = Counter(str(c["intent"]) for c in convs if c.get("intent"))
    labelled = sum(counts.values())
    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))[:limit]
    return [
        IntentShare(intent=intent, count=count, percentage=ratio(count, labelled))
        for intent, count in ranked
    ]


def _channel_distribution(convs: list[Row]) -> list[ChannelShare]:
    counts = Counter(ChannelKind.parse(c.get("channel")) for c in convs)
    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0].value))
    return [
        ChannelShare(channel=channel, count=count, percentage=ratio(count, len(convs)))
        for channel, count in ranked
    ]


def _last_active(agent: Row, messages: list[Row]) -> datetime | None:
    candidates = [parse_timestamp(agent.get("last_active"))]
    candidates.extend(parse_timestamp(m.get("created_at")) for m in messages)
    known = [c for c in candidates if c is not None]
    return max(known) if known else None


async def compute_agent_performance(
    ctx: TenantContext,
    window: DateRange,
    agent_filter: str | AgentScope | None = None,
) -> list[AgentPerformance]:
    """One record per agent in scope, busiest first."""
    scope = await resolve_agent_scope(ctx, agent_filter)
    query_filter = agent_query_filter(scope.agent_id)

    agents, conversations, messages, health = await asyncio.gather(
        fetch(ctx, EntityKind.AGENTS, query_filter),
        fetch(ctx, EntityKind.CONVERSATIONS, query_filter, window),
        fetch(ctx, EntityKind.MESSAGES, query_filter, window),
        fetch(ctx, EntityKind.AGENT_HEALTH, query_filter, window),
    )

    convs_by_agent: dict[str, list[Row]] = defaultdict(list)
    for conv in conversations:
        convs_by_agent[str(conv.get("agent_id"))].append(conv)
    msgs_by_agent: dict[str, list[Row]] = defaultdict(list)
    for msg in messages:
        msgs_by_agent[str(msg.get("agent_id"))].append(msg)
    uptime_by_agent: dict[str, list[float]] = defaultdict(list)
    for sample in health:
        if sample.get("uptime") is not None:
            uptime_by_agent[str(sample.get("agent_id"))].append(float(sample["uptime"]))

    limit = settings.analytics_top_intents
    records: list[AgentPerformance] = []
    for agent in agents:
        agent_id = str(agent["id"])
        convs = convs_by_agent.get(agent_id, [])
        msgs = msgs_by_agent.get(agent_id, [])
        completed = sum(
            1
            for c in convs
            if ConversationStatus.parse(c.get("status")) == ConversationStatus.COMPLETED
        )
        failed = sum(1 for m in msgs if m.get("failed"))

        records.append(
            AgentPerformance(
                agent_id=agent_id,
                agent_name=agent.get("name") or agent_id,
                total_conversations=len(convs),
                success_rate=ratio(completed, len(convs)),
                uptime=_round(mean(uptime_by_agent.get(agent_id, [])), 4),
                avg_response_time_ms=avg_response_time(
                    response_latencies(msgs), {str(c["id"]) for c in convs}
                ),
                satisfaction_score=_satisfaction(convs),
                error_rate=ratio(failed, len(msgs)),
                last_active=_last_active(agent, msgs),
                top_intents=_top_intents(convs, limit),
                channel_distribution=_channel_distribution(convs),
            )
        )

    records.sort(key=lambda r: (-r.total_conversations, r.agent_name))
    return records


# =============================================================================
# CHANNELS
# =============================================================================


def _user_key(row: Row, fallback_id: Any) -> str:
    customer = row.get("customer_id")
    return str(customer) if customer else f"anon:{fallback_id}"


async def compute_channel_analytics(
    ctx: TenantContext,
    window: DateRange,
    agent_filter: str | AgentScope | None = None,
) -> list[ChannelAnalytics]:
    """One record per channel observed in ``window``."""
    scope = await resolve_agent_scope(ctx, agent_filter)
    query_filter = agent_query_filter(scope.agent_id)

    conversations, messages, health = await asyncio.gather(
        fetch(ctx, EntityKind.CONVERSATIONS, query_filter, window),
        fetch(ctx, EntityKind.MESSAGES, query_filter, window),
        fetch(ctx, EntityKind.CHANNEL_HEALTH, {}, window),
    )

    convs_by_channel: dict[ChannelKind, list[Row]] = defaultdict(list)
    for conv in conversations:
        convs_by_channel[ChannelKind.parse(conv.get("channel"))].append(conv)
    msgs_by_channel: dict[ChannelKind, list[Row]] = defaultdict(list)
    for msg in messages:
        msgs_by_channel[ChannelKind.parse(msg.get("channel"))].append(msg)
    uptime_by_channel: dict[ChannelKind, list[float]] = defaultdict(list)
    for sample in health:
        if sample.get("uptime") is not None:
            uptime_by_channel[ChannelKind.parse(sample.get("channel"))].append(
                float(sample["uptime"])
            )

    records: list[ChannelAnalytics] = []
    for channel in set(convs_by_channel) | set(msgs_by_channel):
        convs = convs_by_channel.get(channel, [])
        msgs = msgs_by_channel.get(channel, [])
        users = {_user_key(c, c["id"]) for c in convs}
        users.update(_user_key(m, m.get("conversation_id")) for m in msgs)
        failed = sum(1 for m in msgs if m.get("failed"))

        records.append(
            ChannelAnalytics(
                channel=channel,
                total_conversations=len(convs),
                total_messages=len(msgs),
                unique_users=len(users),
                uptime=_round(mean(uptime_by_channel.get(channel, [])), 4),
                avg_response_time_ms=avg_response_time(response_latencies(msgs)),
                error_rate=ratio(failed, len(msgs)),
            )
        )

    records.sort(key=lambda r: (-r.total_messages, r.channel.value))
    return records


# =============================================================================
# ENGAGEMENT
# =============================================================================


def summarize_engagement(conversations: list[Row]) -> UserEngagement:
    """Per-visitor rollup of conversation rows.

    Visitors are keyed by ``customer_id``; anonymous conversations count as
    one visitor each. "Returning" means two or more conversations in the
    window, every other visitor is "new".
    """
    per_user: Counter[str] = Counter()
    open_users: set[str] = set()
    for conv in conversations:
        key = _user_key(conv, conv.get("id"))
        per_user[key] += 1
        if ConversationStatus.parse(conv.get("status")) == ConversationStatus.ACTIVE:
            open_users.add(key)

    returning = sum(1 for count in per_user.values() if count > 1)
    durations = [d for d in (_duration_seconds(c) for c in conversations) if d is not None]

    return UserEngagement(
        total_users=len(per_user),
        active_users=len(open_users),
        new_users=len(per_user) - returning,
        returning_users=returning,
        avg_session_duration_seconds=_round(mean(durations)),
    )


async def compute_user_engagement(
    ctx: TenantContext,
    window: DateRange,
    agent_filter: str | AgentScope | None = None,
) -> UserEngagement:
    """Visitor counts and session length for the tenant in ``window``."""
    scope = await resolve_agent_scope(ctx, agent_filter)
    conversations = await fetch(
        ctx, EntityKind.CONVERSATIONS, agent_query_filter(scope.agent_id), window
    )
    engagement = summarize_engagement(conversations)
    logger.debug(
        "Analytics: engagement tenant=%s period=%s users=%d",
        ctx.tenant_id, window.period, engagement.total_users,
    )
    return engagement
