from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Literal, Mapping, Optional

from acs_dashboard.schemas.dashboard import DashboardUsage
from acs_dashboard.services.normalize import utcnow

logger = logging.getLogger("acs.dashboard.services.usage_stats")

UsageRange = Literal["24h", "7d", "30d", "1y"]

RANGE_WINDOWS: Dict[str, timedelta] = {
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "1y": timedelta(days=365),
}

BUCKET_FORMATS: Dict[str, str] = {
    "24h": "%Y-%m-%d %H:00",
    "7d": "%Y-%m-%d",
    "30d": "%Y-%m-%d",
    "1y": "%Y-%m",
}

TOP_THREADS = 5


def normalize_range(time_range: Optional[str]) -> str:
    return time_range if time_range in RANGE_WINDOWS else "1y"


def _timestamp_ms(invocation: Mapping[str, Any]) -> Optional[float]:
    value = invocation.get("timestamp")
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _tokens(invocation: Mapping[str, Any], key: str) -> int:
    try:
        return int(invocation.get(key) or 0)
    except (TypeError, ValueError):
        return 0


def _conversation_url(thread_id: Optional[str]) -> Optional[str]:
    return f"/dashboard/conversations/{thread_id}" if thread_id else None


def usage_from_invocations(invocations: List[Mapping[str, Any]]) -> DashboardUsage:
    """
    Dashboard usage counters derived from invocation rows.

    Each invocation is one generated email; active days are distinct UTC
    days with at least one invocation. Logins are not recorded upstream.
    """
    days = set()
    for inv in invocations:
        ts = _timestamp_ms(inv)
        if ts is None:
            continue
        try:
            days.add(datetime.fromtimestamp(ts / 1000, tz=timezone.utc).date())
        except (OverflowError, OSError, ValueError):
            logger.warning("Skipping invocation with bad timestamp: %r", inv.get("timestamp"))
    return DashboardUsage(emails_sent=len(invocations), logins=0, active_days=len(days))


def summarize_invocations(
    invocations: List[Mapping[str, Any]],
    time_range: Optional[str] = "1y",
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Roll LCP invocation rows up into the usage page payload.

    Totals cover every invocation; per-thread and per-period stats only the
    selected window. Timestamps are epoch milliseconds.
    """
    time_range = normalize_range(time_range)
    now = now or utcnow()
    from_ms = (now - RANGE_WINDOWS[time_range]).timestamp() * 1000
    bucket_format = BUCKET_FORMATS[time_range]

    total_input = sum(_tokens(inv, "input_tokens") for inv in invocations)
    total_output = sum(_tokens(inv, "output_tokens") for inv in invocations)

    in_window = []
    for inv in invocations:
        ts = _timestamp_ms(inv)
        if ts is not None and ts >= from_ms:
            in_window.append((ts, inv))

    by_thread: Dict[Any, Dict[str, Any]] = {}
    by_time: Dict[str, Dict[str, Any]] = {}

    for ts, inv in in_window:
        thread_id = inv.get("conversation_id")

        thread_row = by_thread.setdefault(
            thread_id,
            {
                "threadId": thread_id,
                "threadName": thread_id or "Unnamed Thread",
                "invocations": 0,
                "inputTokens": 0,
                "outputTokens": 0,
                "conversationUrl": _conversation_url(thread_id),
                "timestamp": inv.get("timestamp"),
                "isSelected": False,
            },
        )
        thread_row["invocations"] += 1
        thread_row["inputTokens"] += _tokens(inv, "input_tokens")
        thread_row["outputTokens"] += _tokens(inv, "output_tokens")

        time_key = datetime.fromtimestamp(ts / 1000, tz=timezone.utc).strftime(bucket_format)
        bucket = by_time.setdefault(
            time_key,
            {"timeKey": time_key, "totalInvocations": 0, "conversations": {}},
        )
        bucket["totalInvocations"] += 1
        conversation_row = bucket["conversations"].setdefault(
            thread_id,
            {
                "threadId": thread_id,
                "threadName": thread_id or "Unnamed Thread",
                "invocations": 0,
                "conversationUrl": _conversation_url(thread_id),
            },
        )
        conversation_row["invocations"] += 1

    thread_stats = sorted(by_thread.values(), key=lambda row: row["invocations"], reverse=True)
    time_stats = [
        {
            "timeKey": bucket["timeKey"],
            "totalInvocations": bucket["totalInvocations"],
            "conversations": list(bucket["conversations"].values()),
        }
        for bucket in sorted(by_time.values(), key=lambda b: b["timeKey"])
    ]

    logger.debug(
        "Summarized %d invocations (%d in %s window)",
        len(invocations),
        len(in_window),
        time_range,
    )
    return {
        "totalInvocations": len(invocations),
        "totalInputTokens": total_input,
        "totalOutputTokens": total_output,
        "invocations": list(invocations),
        "conversationsByThread": thread_stats[:TOP_THREADS],
        "timeStats": time_stats,
    }
