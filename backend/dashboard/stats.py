"""Pure aggregation helpers behind the dashboard summary cards."""
from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Iterable, Mapping, Optional

from .models import CallVolume, DashboardStats

RISK_SCORES = {"low": 1, "medium": 2, "high": 3}


def average_risk_label(risk_levels: Iterable[Optional[str]]) -> str:
    """Average the known risk levels and map the mean back to a label.

    Unknown or missing levels are ignored; no known level yields "N/A".
    """
    scores = [RISK_SCORES[level] for level in risk_levels if level in RISK_SCORES]
    mean = sum(scores) / len(scores) if scores else 0.0
    if mean >= 2.5:
        return "high"
    if mean >= 1.5:
        return "medium"
    if mean > 0:
        return "low"
    return "N/A"


def summarize(num_calls: Optional[int], reports: Iterable[Mapping]) -> DashboardStats:
    reports = list(reports)
    return DashboardStats(
        num_calls=num_calls or 0,
        num_escalated=sum(1 for r in reports if r.get("escalate")),
        avg_risk=average_risk_label(r.get("risk_level") for r in reports),
    )


def volume_days(today: date, days: int = 7) -> list[str]:
    """ISO day labels, oldest first, ending with `today`."""
    return [(today - timedelta(days=offset)).isoformat() for offset in range(days - 1, -1, -1)]


def call_volume(calls: Iterable[Mapping], today: date, days: int = 7) -> CallVolume:
    labels = volume_days(today, days)
    counts = dict.fromkeys(labels, 0)
    for call in calls:
        day = str(call.get("call_time") or "")[:10]
        if day in counts:
            counts[day] += 1
    return CallVolume(labels=labels, data=[counts[label] for label in labels])


def patients_without_recent_calls(patients: Iterable[Mapping], recent_calls: Iterable[Mapping]) -> list[Mapping]:
    called = {str(c.get("patient_id")) for c in recent_calls if c.get("patient_id") is not None}
    return [p for p in patients if str(p.get("id")) not in called]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def days_ago_iso(now: datetime, days: int = 7) -> str:
    return (now - timedelta(days=days)).isoformat()


__all__ = [
    "RISK_SCORES",
    "average_risk_label",
    "call_volume",
    "days_ago_iso",
    "patients_without_recent_calls",
    "summarize",
    "utc_now",
    "volume_days",
]
