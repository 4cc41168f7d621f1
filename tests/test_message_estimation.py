"""
Unit tests for message volume estimation.
"""

import math

import pytest

from mule_consumption_analyzer import MonitoringData, estimate_messages


def monitoring(**kwargs) -> MonitoringData:
    kwargs.setdefault("period_days", 30)
    return MonitoringData(**kwargs)


class TestEstimateMessages:
    """Tests for the three-tier message estimator."""

    def test_no_monitoring_data(self):
        result = estimate_messages(None, 30)
        assert (result.estimated_daily_messages, result.estimated_monthly_messages) == (0, 0)
        assert result.confidence == "none"
        assert result.source == "No monitoring data available"

    def test_all_tiers_absent(self):
        """Present but empty monitoring data yields confidence none."""
        result = estimate_messages(monitoring(flow_metrics=[], message_data={}, resource_data={}), 30)
        assert result.estimated_daily_messages == 0
        assert result.estimated_monthly_messages == 0
        assert result.confidence == "none"

    def test_flow_level_metrics(self):
        """3000 flow messages over 30 days is 100 per day."""
        data = monitoring(flow_metrics=[
            {"name": "a", "messageCount": {"count": 1000}},
            {"name": "b", "messageCount": {"count": 2000}},
            {"name": "c"},
            {"name": "d", "messageCount": {"count": "n/a"}},
        ])
        result = estimate_messages(data, 30)
        assert result.estimated_daily_messages == 100
        assert result.estimated_monthly_messages == 3000
        assert result.confidence == "high"
        assert result.source == "Flow-level message metrics"

    def test_application_level_metrics(self):
        data = monitoring(
            flow_metrics=[{"name": "a"}],
            message_data={"messageCount": {"count": 450}},
            resource_data={"cpu": {"average": 12}},
        )
        result = estimate_messages(data, 30)
        assert result.estimated_daily_messages == 15
        assert result.estimated_monthly_messages == 450
        assert result.confidence == "medium"

    def test_cpu_heuristic(self):
        data = monitoring(message_data={"messageCount": {}}, resource_data={"cpu": {"average": 2.5}})
        result = estimate_messages(data, 30)
        assert result.estimated_daily_messages == 250
        assert result.estimated_monthly_messages == 7500
        assert result.confidence == "low"
        assert result.source == "CPU usage heuristic"

    def test_zero_flow_messages_fall_through_to_next_tier(self):
        data = monitoring(
            flow_metrics=[{"messageCount": {"count": 0}}],
            message_data={"messageCount": {"count": 60}},
        )
        result = estimate_messages(data, 30)
        assert result.confidence == "medium"
        assert result.estimated_daily_messages == 2

    def test_monthly_uses_unrounded_daily(self):
        """Monthly is round(daily * 30), not rounded daily * 30."""
        data = monitoring(message_data={"messageCount": {"count": 10}})
        result = estimate_messages(data, 7)
        assert result.estimated_daily_messages == 1
        assert result.estimated_monthly_messages == 43

    def test_period_defaults_to_monitoring_window(self):
        data = monitoring(period_days=10, message_data={"messageCount": {"count": 100}})
        assert estimate_messages(data).estimated_daily_messages == 10

    def test_boolean_counts_are_ignored(self):
        data = monitoring(message_data={"messageCount": {"count": True}})
        assert estimate_messages(data, 30).confidence == "none"

    def test_non_positive_period_rejected(self):
        with pytest.raises(ValueError):
            estimate_messages(monitoring(), 0)

    @pytest.mark.parametrize("data,raw_daily", [
        (monitoring(flow_metrics=[{"messageCount": {"count": 17}}]), 17 / 30),
        (monitoring(flow_metrics=[{"messageCount": {"count": 45}}]), 45 / 30),
        (monitoring(message_data={"messageCount": {"count": 123456}}), 123456 / 30),
        (monitoring(message_data={"messageCount": {"count": 5}}), 5 / 30),
        (monitoring(resource_data={"cpu": {"average": 0.37}}), 0.37 * 100),
        (monitoring(), 0),
    ])
    def test_monthly_is_rounded_raw_daily_times_thirty(self, data, raw_daily):
        """Both figures round half-up from the unrounded daily rate."""
        result = estimate_messages(data, 30)
        assert result.estimated_daily_messages == math.floor(raw_daily + 0.5)
        assert result.estimated_monthly_messages == math.floor(raw_daily * 30 + 0.5)
        if result.confidence == "none":
            assert result.estimated_daily_messages == 0
            assert result.estimated_monthly_messages == 0

