from datetime import datetime, timedelta, timezone

import pytest

from acs_dashboard.schemas.dashboard import DashboardUsage, TrendData
from acs_dashboard.services.dashboard import (
    calculate_average_response_time,
    calculate_dashboard_metrics,
    calculate_monthly_growth,
    calculate_trends,
    calculate_usage_stats,
    categorize_leads,
    filter_conversations_by_date_range,
    filter_conversations_by_search,
    format_currency,
    format_duration,
    format_percentage,
    format_trend_change,
    generate_analytics,
    group_conversations_by_status,
    percent_of,
    should_show_trend,
    sort_conversations,
)
from acs_dashboard.services.normalize import process_threads_response
from conftest import NOW, make_item, make_raw_message


def _conversations(*items):
    return process_threads_response(list(items), NOW)


def _ids(conversations):
    return [c.conversation_id for c in conversations]


@pytest.fixture
def pipeline():
    return _conversations(
        make_item(
            "alpha",
            messages=[
                make_raw_message("alpha", "2024-06-14T10:00:00Z"),
                make_raw_message("alpha", "2024-06-14T10:30:00Z", message_type="outbound-email"),
            ],
            source_name="Alice Adams",
            created_at="2024-06-14T09:00:00Z",
            priority="high",
        ),
        make_item(
            "bravo",
            messages=[
                make_raw_message("bravo", "2024-06-12T10:00:00Z"),
                make_raw_message("bravo", "2024-06-12T11:30:00Z", message_type="outbound-email"),
            ],
            source_name="Bob Brown",
            created_at="2024-05-20T09:00:00Z",
            completed="true",
            priority="low",
            location="Austin",
        ),
        make_item(
            "charlie",
            messages=[make_raw_message("charlie", "2024-06-13T10:00:00Z", body="Looking for a condo")],
            source_name="Carol Chen",
            created_at="2024-06-02T09:00:00Z",
            spam="true",
            flag="true",
        ),
    )


class TestResponseTime:
    def test_average_over_inbound_outbound_pairs(self, pipeline):
        # 30 min and 90 min replies.
        assert calculate_average_response_time(pipeline) == 60

    def test_no_pairs(self):
        conversations = _conversations(make_item("solo"))
        assert calculate_average_response_time(conversations) == 0


class TestMonthlyGrowth:
    def test_growth_vs_last_month(self, pipeline):
        # Two created in June, one in May.
        assert calculate_monthly_growth(pipeline, NOW) == 100

    def test_no_history(self):
        conversations = _conversations(make_item("new", created_at="2024-06-03T00:00:00Z"))
        assert calculate_monthly_growth(conversations, NOW) == 100
        assert calculate_monthly_growth([], NOW) == 0

    def test_decline(self):
        conversations = _conversations(
            make_item("a", created_at="2024-05-03T00:00:00Z"),
            make_item("b", created_at="2024-05-04T00:00:00Z"),
            make_item("c", created_at="2024-06-04T00:00:00Z"),
        )
        assert calculate_monthly_growth(conversations, NOW) == -50


class TestDashboardMetrics:
    def test_headline_numbers(self, pipeline):
        metrics = calculate_dashboard_metrics(pipeline, DashboardUsage(), NOW)

        assert metrics.total_conversations == 3
        assert metrics.total_leads == 3
        assert metrics.active_conversations == 2
        assert metrics.conversion_rate == 33
        assert metrics.average_response_time == 60
        assert metrics.total_revenue == 0

    def test_empty(self):
        metrics = calculate_dashboard_metrics([], DashboardUsage(), NOW)
        assert metrics.conversion_rate == 0

    def test_percent_rounds_half_up(self):
        assert percent_of(1, 8) == 13
        assert percent_of(0, 0) == 0


class TestUsageStats:
    def test_derived_rates(self):
        stats = calculate_usage_stats(DashboardUsage(emails_sent=25, logins=10, active_days=4))
        assert stats.average_emails_per_day == 6
        assert stats.engagement_rate == 40

    def test_zero_division_guard(self):
        stats = calculate_usage_stats(DashboardUsage())
        assert stats.average_emails_per_day == 0
        assert stats.engagement_rate == 0


class TestAnalytics:
    def test_chart_shapes(self, pipeline):
        analytics = generate_analytics(pipeline, NOW)

        trend = analytics.conversation_trend
        assert len(trend.labels) == 7
        assert trend.labels[-1] == "Jun 15"
        # alpha created yesterday.
        assert trend.datasets[0].data[5] == 1

        assert len(analytics.response_time_trend.labels) == 30
        assert analytics.conversion_funnel.labels == ["Total Leads", "Active", "Completed"]
        assert analytics.conversion_funnel.datasets[0].data == [3, 2, 1]

    def test_lead_sources(self, pipeline):
        sources = generate_analytics(pipeline, NOW).lead_source_breakdown
        assert sources.labels == ["Alice Adams", "Carol Chen", "Bob Brown"]
        assert sources.datasets[0].data == [1, 1, 1]


class TestCategorizeLeads:
    def test_highest_score_picks_band(self):
        conversations = _conversations(
            make_item(
                "a",
                messages=[
                    make_raw_message("a", ev_score="15"),
                    make_raw_message("a", "2024-06-14T11:00:00Z", ev_score="85"),
                ],
            ),
            make_item("b", messages=[make_raw_message("b", ev_score="45")]),
            make_item("c", messages=[make_raw_message("c", ev_score="130")]),
            make_item("d", messages=[make_raw_message("d")]),
        )

        stages = categorize_leads(conversations)

        assert [s.name for s in stages] == ["Closed", "Offer Stage", "Toured", "Engaged", "Contacted"]
        counts = {s.name: s.leads for s in stages}
        assert counts == {"Closed": 2, "Offer Stage": 0, "Toured": 1, "Engaged": 0, "Contacted": 0}

    def test_band_edges(self):
        conversations = _conversations(
            make_item("a", messages=[make_raw_message("a", ev_score="19")]),
            make_item("b", messages=[make_raw_message("b", ev_score="20")]),
            make_item("c", messages=[make_raw_message("c", ev_score="0")]),
        )
        counts = {s.name: s.leads for s in categorize_leads(conversations)}
        assert counts["Contacted"] == 2
        assert counts["Engaged"] == 1


class TestFiltering:
    def test_date_range_is_inclusive(self, pipeline):
        start = datetime(2024, 6, 2, 9, tzinfo=timezone.utc)
        end = datetime(2024, 6, 14, 9, tzinfo=timezone.utc)
        assert _ids(filter_conversations_by_date_range(pipeline, start, end)) == ["alpha", "charlie"]

    def test_search_matches_contact_and_messages(self, pipeline):
        assert _ids(filter_conversations_by_search(pipeline, "austin")) == ["bravo"]
        assert _ids(filter_conversations_by_search(pipeline, "CONDO")) == ["charlie"]
        assert _ids(filter_conversations_by_search(pipeline, "  ")) == _ids(pipeline)

    def test_group_by_status(self, pipeline):
        groups = group_conversations_by_status(pipeline)
        assert _ids(groups["active"]) == ["alpha", "charlie"]
        assert _ids(groups["completed"]) == ["bravo"]
        assert _ids(groups["spam"]) == ["charlie"]
        assert _ids(groups["flagged"]) == ["charlie"]


class TestSorting:
    def test_by_date(self, pipeline):
        assert _ids(sort_conversations(pipeline, "date", "desc")) == ["alpha", "charlie", "bravo"]
        assert _ids(sort_conversations(pipeline, "date", "asc")) == ["bravo", "charlie", "alpha"]

    def test_by_name(self, pipeline):
        assert _ids(sort_conversations(pipeline, "name", "asc")) == ["alpha", "bravo", "charlie"]

    def test_by_status(self, pipeline):
        assert _ids(sort_conversations(pipeline, "status", "desc"))[0] == "bravo"

    def test_by_priority_low_ranks_below_normal(self, pipeline):
        assert _ids(sort_conversations(pipeline, "priority", "desc")) == ["alpha", "charlie", "bravo"]


class TestTrends:
    def test_windows_compared(self, pipeline):
        start = datetime(2024, 6, 1, tzinfo=timezone.utc)
        end = datetime(2024, 6, 15, tzinfo=timezone.utc)

        trends = calculate_trends(pipeline, start, end)

        total = trends["total_conversations"]
        assert total.current == 2
        assert total.previous == 1
        assert total.change_percent == 100
        assert total.direction == "up"
        assert trends["new_conversations"] == total

    def test_no_previous_is_stable(self):
        trend = calculate_trends([], NOW - timedelta(days=7), NOW)["total_conversations"]
        assert trend.direction == "stable"
        assert trend.change_percent == 0


class TestFormatting:
    def _trend(self, change_percent):
        return TrendData(current=0, previous=0, change=0, change_percent=change_percent, direction="stable")

    def test_trend_change_sign(self):
        assert format_trend_change(self._trend(12.4)) == "+12%"
        assert format_trend_change(self._trend(-7.6)) == "-8%"
        assert format_trend_change(None) == ""

    def test_should_show_trend(self):
        assert should_show_trend(self._trend(0.5)) is False
        assert should_show_trend(self._trend(-1)) is True
        assert should_show_trend(None) is False

    def test_currency_percentage_duration(self):
        assert format_currency(1234.5) == "$1,234.50"
        assert format_currency(-20) == "-$20.00"
        assert format_percentage(42) == "42%"
        assert format_duration(45) == "45m"
        assert format_duration(120) == "2h"
        assert format_duration(135) == "2h 15m"
