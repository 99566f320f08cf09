"""
Export Encoder — serialize a loaded DashboardView for download.

Only encodes the view it is given; it never re-queries, so the file always
matches what the operator had on screen.

  csv  → text/csv, one "# section" block per aggregate
  json → application/json, the view model plus exported_at
"""

from __future__ import annotations

import csv
import io
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable

from app.models.analytics import DashboardView, Section
from app.services.analytics.errors import ValidationError

logger = logging.getLogger(__name__)

MEDIA_TYPES = {
    "csv": "text/csv",
    "json": "application/json",
}


@dataclass(frozen=True)
class ExportArtifact:
    content: bytes
    media_type: str
    filename: str

    @property
    def content_disposition(self) -> str:
        return f'attachment; filename="{self.filename}"'


# Characters that could trigger CSV formula injection
_CSV_INJECTION_CHARS = {"=", "+", "-", "@", "\t", "\r"}


def _sanitize_csv(value: str) -> str:
    """Sanitize a cell value to prevent CSV injection.

    Prefixes cells starting with dangerous characters with a single quote.
    """
    if value and value[0] in _CSV_INJECTION_CHARS:
        return f"'{value}"
    return value


def _cell(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        value = str(value.value)
    if isinstance(value, str):
        return _sanitize_csv(value)
    return value


def _write_section(
    writer: Any,
    name: str,
    section: Section[Any],
    header: list[str],
    rows: Iterable[list[Any]],
) -> None:
    writer.writerow([f"# {name}"])
    if section.error is not None:
        writer.writerow([f"# {name} unavailable: {_sanitize_csv(section.error.message)}"])
    else:
        writer.writerow(header)
        for row in rows:
            writer.writerow([_cell(v) for v in row])
    writer.writerow([])


def _encode_csv(view: DashboardView) -> bytes:
    output = io.StringIO()
    writer = csv.writer(output)

    writer.writerow(["# window"])
    writer.writerow(["period", "agent_filter", "start", "end", "loaded_at"])
    writer.writerow(
        [
            _cell(view.period),
            _cell(view.agent_filter or "all"),
            _cell(view.window.start),
            _cell(view.window.end),
            _cell(view.loaded_at),
        ]
    )
    writer.writerow([])

    metrics = view.metrics.data
    _write_section(
        writer,
        "conversation_metrics",
        view.metrics,
        [
            "total", "active", "completed", "escalated", "avg_response_time_ms",
            "avg_duration_seconds", "satisfaction_score", "resolution_rate",
        ],
        []
        if metrics is None
        else [
            [
                metrics.total, metrics.active, metrics.completed, metrics.escalated,
                metrics.avg_response_time_ms, metrics.avg_duration_seconds,
                metrics.satisfaction_score, metrics.resolution_rate,
            ]
        ],
    )

    _write_section(
        writer,
        "agent_performance",
        view.agents,
        [
            "agent_id", "agent_name", "total_conversations", "success_rate", "uptime",
            "avg_response_time_ms", "satisfaction_score", "error_rate", "last_active",
            "top_intents",
        ],
        [
            [
                a.agent_id, a.agent_name, a.total_conversations, a.success_rate,
                a.uptime, a.avg_response_time_ms, a.satisfaction_score, a.error_rate,
                a.last_active,
                "; ".join(f"{i.intent}:{i.percentage:.2f}" for i in a.top_intents),
            ]
            for a in view.agents.data or []
        ],
    )

    _write_section(
        writer,
        "channel_analytics",
        view.channels,
        [
            "channel", "total_conversations", "total_messages", "unique_users",
            "uptime", "avg_response_time_ms", "error_rate",
        ],
        [
            [
                c.channel, c.total_conversations, c.total_messages, c.unique_users,
                c.uptime, c.avg_response_time_ms, c.error_rate,
            ]
            for c in view.channels.data or []
        ],
    )

    engagement = view.engagement.data
    _write_section(
        writer,
        "user_engagement",
        view.engagement,
        [
            "total_users", "active_users", "new_users", "returning_users",
            "avg_session_duration_seconds",
        ],
        []
        if engagement is None
        else [
            [
                engagement.total_users, engagement.active_users, engagement.new_users,
                engagement.returning_users, engagement.avg_session_duration_seconds,
            ]
        ],
    )

    return output.getvalue().encode("utf-8")


def _encode_json(view: DashboardView, exported_at: datetime) -> bytes:
    payload = view.model_dump(mode="json")
    payload["exported_at"] = exported_at.isoformat()
    return json.dumps(payload, indent=2).encode("utf-8")


def export_analytics(
    view: DashboardView,
    format: str,
    exported_at: datetime | None = None,
) -> ExportArtifact:
    """Encode ``view`` as a downloadable artifact."""
    fmt = (format or "").strip().lower()
    if fmt not in MEDIA_TYPES:
        raise ValidationError(
            f"Unsupported export format {format!r}. Must be one of: {', '.join(MEDIA_TYPES)}",
            details={"format": format},
        )

    exported_at = exported_at or datetime.now(timezone.utc)
    content = _encode_csv(view) if fmt == "csv" else _encode_json(view, exported_at)

    logger.info(
        "Analytics: exported %s (%d bytes, period=%s)", fmt, len(content), view.period
    )
    return ExportArtifact(
        content=content,
        media_type=MEDIA_TYPES[fmt],
        filename=f"analytics-{exported_at.strftime('%Y-%m-%d')}.{fmt}",
    )
