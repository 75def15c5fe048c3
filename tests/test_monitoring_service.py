"""
Tests for in-process client metrics
"""

from evote_client.services.monitoring_service import (
    HISTOGRAM_WINDOW,
    MetricsCollector,
    MonitoringService,
)


def test_histograms_keep_recent_window():
    collector = MetricsCollector()
    for i in range(HISTOGRAM_WINDOW + 500):
        collector.record_timing("request.elections", float(i))

    summary = collector.get_metrics()["histograms"]["request.elections"]

    assert summary["count"] == HISTOGRAM_WINDOW == 1000
    assert summary["min"] == 500.0
    assert summary["max"] == float(HISTOGRAM_WINDOW + 499)
    assert not hasattr(collector, "timeseries")


def test_reset():
    collector = MetricsCollector()
    collector.increment("request.elections.200")
    collector.record_timing("request.elections", 12.5)

    collector.reset()

    assert collector.get_metrics() == {"counters": {}, "histograms": {}}


def test_drift_report_only_shape_counters():
    monitoring = MonitoringService()
    monitoring.record_request("receipt", 4.0, "200")
    monitoring.record_shape_variance("session", "sessionID")
    monitoring.record_shape_mismatch("receipt", "status")
    monitoring.record_shape_mismatch("receipt", "status")

    assert monitoring.get_drift_report() == {
        "shape_variance.session.sessionID": 1,
        "shape_mismatch.receipt.status": 2,
    }
