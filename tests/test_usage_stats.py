from datetime import timedelta

import pytest

from acs_dashboard.services.usage_stats import (
    TOP_THREADS,
    normalize_range,
    summarize_invocations,
    usage_from_invocations,
)
from conftest import NOW


def _ms(dt):
    return int(dt.timestamp() * 1000)


def _invocation(conversation_id, when, input_tokens=100, output_tokens=50):
    return {
        "conversation_id": conversation_id,
        "timestamp": _ms(when),
        "input_tokens": input_tokens,
        "output_tokens": output_tokens,
    }


@pytest.mark.parametrize("value,expected", [("24h", "24h"), ("7d", "7d"), ("90d", "1y"), (None, "1y")])
def test_normalize_range(value, expected):
    assert normalize_range(value) == expected


class TestSummarizeInvocations:
    def test_totals_cover_everything(self):
        invocations = [
            _invocation("conv-1", NOW - timedelta(hours=1)),
            _invocation("conv-1", NOW - timedelta(days=3)),
            _invocation("conv-2", NOW - timedelta(days=400), input_tokens=7, output_tokens="3"),
        ]

        stats = summarize_invocations(invocations, "24h", NOW)

        assert stats["totalInvocations"] == 3
        assert stats["totalInputTokens"] == 207
        assert stats["totalOutputTokens"] == 103
        assert stats["invocations"] == invocations

    def test_window_limits_thread_and_time_stats(self):
        invocations = [
            _invocation("conv-1", NOW - timedelta(hours=1)),
            _invocation("conv-1", NOW - timedelta(hours=2)),
            _invocation("conv-2", NOW - timedelta(days=3)),
        ]

        stats = summarize_invocations(invocations, "24h", NOW)

        assert [row["threadId"] for row in stats["conversationsByThread"]] == ["conv-1"]
        row = stats["conversationsByThread"][0]
        assert row["invocations"] == 2
        assert row["inputTokens"] == 200
        assert row["conversationUrl"] == "/dashboard/conversations/conv-1"

    def test_hourly_buckets_for_24h(self):
        invocations = [
            _invocation("conv-1", NOW - timedelta(hours=1)),
            _invocation("conv-2", NOW - timedelta(hours=1, minutes=20)),
        ]

        stats = summarize_invocations(invocations, "24h", NOW)

        assert [b["timeKey"] for b in stats["timeStats"]] == ["2024-06-15 10:00", "2024-06-15 11:00"]
        assert stats["timeStats"][1]["totalInvocations"] == 1

    def test_monthly_buckets_sorted_for_1y(self):
        invocations = [
            _invocation("conv-1", NOW - timedelta(days=40)),
            _invocation("conv-1", NOW - timedelta(days=1)),
            _invocation("conv-2", NOW - timedelta(days=2)),
        ]

        stats = summarize_invocations(invocations, "1y", NOW)

        assert [b["timeKey"] for b in stats["timeStats"]] == ["2024-05", "2024-06"]
        june = stats["timeStats"][1]
        assert june["totalInvocations"] == 2
        assert {c["threadId"] for c in june["conversations"]} == {"conv-1", "conv-2"}

    def test_top_threads_capped(self):
        invocations = [
            _invocation(f"conv-{i}", NOW - timedelta(hours=1)) for i in range(TOP_THREADS + 3)
        ]
        stats = summarize_invocations(invocations, "7d", NOW)
        assert len(stats["conversationsByThread"]) == TOP_THREADS

    def test_string_and_bad_timestamps(self):
        invocations = [
            {"conversation_id": "conv-1", "timestamp": str(_ms(NOW - timedelta(hours=1)))},
            {"conversation_id": "conv-2", "timestamp": "yesterday"},
            {"conversation_id": None, "timestamp": _ms(NOW - timedelta(hours=2))},
        ]

        stats = summarize_invocations(invocations, "24h", NOW)

        names = sorted(row["threadName"] for row in stats["conversationsByThread"])
        assert names == ["Unnamed Thread", "conv-1"]

    def test_empty(self):
        stats = summarize_invocations([], "30d", NOW)
        assert stats["totalInvocations"] == 0
        assert stats["timeStats"] == []


class TestUsageFromInvocations:
    def test_counts_emails_and_active_days(self):
        usage = usage_from_invocations(
            [
                _invocation("conv-1", NOW),
                _invocation("conv-1", NOW - timedelta(hours=2)),
                _invocation("conv-2", NOW - timedelta(days=2)),
                {"conversation_id": "conv-3"},
            ]
        )

        assert usage.emails_sent == 4
        assert usage.active_days == 2
        assert usage.logins == 0
