from datetime import datetime, timedelta

import pytest

from sqlgateway.events import EventBus, EventType, QueryExecutedEvent
from sqlgateway.performance.alerts import AlertSeverity, AlertType, PerformanceAlert
from sqlgateway.performance.models import (
    ConnectionPoolSnapshot,
    HealthStatus,
    PerformanceMetric,
    QuerySnapshot,
    SystemSnapshot,
)
from sqlgateway.performance.policies import (
    ConnectionPoolPolicy,
    EventDispatcher,
    QueryPerformancePolicy,
    QuerySeverity,
)
from sqlgateway.performance.reporter import PerformanceReporter

NOW = datetime(2024, 3, 1, 12, 0, 0)


def _metric(minutes_ago, cpu=10.0, memory=20.0, query_time=5.0, count=0, connections=1, utilization=10.0):
    return PerformanceMetric(
        connection_pool=ConnectionPoolSnapshot(total=connections, active=1, idle=connections - 1, max_size=10,
                                               utilization=utilization),
        queries=QuerySnapshot(count=count, average_time=query_time),
        system=SystemSnapshot(cpu_percent=cpu, memory_percent=memory, disk_percent=30.0),
        timestamp=NOW - timedelta(minutes=minutes_ago),
    )


def test_report_filters_by_period():
    metrics = [
        _metric(180, cpu=99.0, count=1),
        _metric(40, cpu=20.0, count=5, connections=3),
        _metric(10, cpu=40.0, count=9, connections=2),
    ]
    old_alert = PerformanceAlert(AlertType.HIGH_CPU_USAGE, AlertSeverity.CRITICAL, "old",
                                 created_at=NOW - timedelta(hours=3))

    report = PerformanceReporter().generate_report(metrics, [old_alert], period="1h", now=NOW)

    assert report.summary.sample_count == 2
    assert report.summary.average_cpu_usage == 30.0
    assert report.summary.total_queries == 9
    assert report.summary.peak_connections == 3
    assert report.alerts == []
    assert report.health == HealthStatus.HEALTHY
    assert report.recommendations == ["Database performance is within acceptable parameters"]

    day = PerformanceReporter().generate_report(metrics, [old_alert], period="24h", now=NOW)
    assert day.summary.sample_count == 3
    assert day.to_dict()["alerts"] == {"total": 1, "active": 1, "critical": 1}
    assert day.recommendations[0] == "CRITICAL: 1 critical issue(s) require immediate attention"


def test_report_rejects_unknown_period():
    with pytest.raises(ValueError, match="Unsupported report period"):
        PerformanceReporter().generate_report([], [], period="30d")


def test_empty_report():
    report = PerformanceReporter().generate_report([], [], period="7d", now=NOW)
    data = report.to_dict()

    assert data["summary"]["sample_count"] == 0
    assert data["health"] == "healthy"
    assert data["trends"]["cpu"] == "insufficient data"


def test_report_recommendations_follow_thresholds():
    metrics = [_metric(5, cpu=85.0, memory=90.0, query_time=1500.0, count=3)]
    report = PerformanceReporter().generate_report(metrics, [], now=NOW)

    assert "Consider optimizing slow queries or adding database indexes" in report.recommendations
    assert any("High CPU usage" in item for item in report.recommendations)
    assert any("High memory usage" in item for item in report.recommendations)
    assert report.health == HealthStatus.WARNING


def test_trend_analysis():
    reporter = PerformanceReporter()
    metrics = [
        _metric(40, cpu=10.0, memory=50.0, query_time=100.0),
        _metric(30, cpu=10.0, memory=50.0, query_time=100.0),
        _metric(20, cpu=30.0, memory=52.0, query_time=50.0),
        _metric(10, cpu=30.0, memory=52.0, query_time=50.0),
    ]
    trends = reporter.analyze_trends(metrics)

    assert trends["cpu"] == "increasing"
    assert trends["memory"] == "stable"
    assert trends["query_time"] == "decreasing"
    assert trends["connection_pool"] == "stable"
    assert reporter.analyze_trends(metrics[:1])["cpu"] == "insufficient data"


def test_connection_pool_summary_thresholds():
    reporter = PerformanceReporter()

    assert reporter.get_connection_pool_summary(None)["status"] == "warning"
    assert reporter.get_connection_pool_summary(_metric(0, utilization=75.0))["status"] == "healthy"
    assert reporter.get_connection_pool_summary(_metric(0, utilization=76.0))["status"] == "warning"
    assert reporter.get_connection_pool_summary(_metric(0, utilization=91.0))["status"] == "critical"


def _executed(execution_time, sql="SELECT * FROM orders", row_count=10):
    return QueryExecutedEvent(query_id="q1", sql=sql, execution_time=execution_time, row_count=row_count)


def test_query_policy():
    policy = QueryPerformancePolicy()

    assert policy.get_severity(_executed(1000.0)) == QuerySeverity.NORMAL
    assert policy.get_severity(_executed(1000.1)) == QuerySeverity.SLOW
    assert policy.get_severity(_executed(5001.0)) == QuerySeverity.CRITICAL
    assert policy.get_recommendations(_executed(10.0)) == []

    recommendations = policy.get_recommendations(
        _executed(2000.0, sql="SELECT * FROM orders WHERE name LIKE '%x'", row_count=5000)
    )
    assert len(recommendations) == 4

    update = policy.get_recommendations(_executed(2000.0, sql="UPDATE orders SET total = 0", row_count=1))
    assert "Add a WHERE clause to limit the rows being modified" in update


def test_pool_policy():
    policy = ConnectionPoolPolicy()
    busy = ConnectionPoolSnapshot(total=10, active=10, idle=0, max_size=10, utilization=100.0)
    quiet = ConnectionPoolSnapshot(total=5, active=1, idle=4, max_size=10, utilization=10.0)

    assert policy.evaluate(busy)
    assert policy.get_health_status(busy) == HealthStatus.CRITICAL
    assert "Increase the maximum pool size immediately" in policy.get_recommendations(busy)
    assert len(policy.get_recommendations(busy)) == 4

    assert not policy.evaluate(quiet)
    assert policy.get_health_status(quiet) == HealthStatus.HEALTHY
    assert policy.get_recommendations(quiet) == []


@pytest.mark.asyncio
async def test_dispatcher_publishes_slow_queries():
    bus = EventBus()
    slow = []
    bus.subscribe(EventType.QUERY_SLOW, slow.append)
    dispatcher = EventDispatcher(bus)

    await bus.publish(_executed(50.0))
    await bus.publish(_executed(6000.0))

    assert len(slow) == 1
    assert slow[0].is_critical
    assert slow[0].threshold == 1000.0
    assert slow[0].recommendations

    dispatcher.close()
    await bus.publish(_executed(6000.0))
    assert len(slow) == 1
