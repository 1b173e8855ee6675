"""Tests for the anomaly log."""

from exposure_refinement.anomalies import AnomalyKind, AnomalyLog, report


def test_record_and_query() -> None:
    log = AnomalyLog()
    log.record(AnomalyKind.EXACT_CONFLICT, "conflict", 50, 60, bucket="medium")
    log.record(AnomalyKind.NEGATIVE_DIFFERENCE, "negative")

    assert len(log) == 2
    assert [e.kind for e in log.of_kind(AnomalyKind.EXACT_CONFLICT)] == [AnomalyKind.EXACT_CONFLICT]
    event = log.events[0]
    assert (event.left, event.right) == ("50", "60")
    assert event.context == {"bucket": "medium"}


def test_bound_views_share_events() -> None:
    log = AnomalyLog()
    view = log.bind(user_name="Bob").bind(pass_index=1)

    view.record(AnomalyKind.INCONSISTENT_BOUND, "below bound", bucket="low")

    assert len(log) == 1
    assert log.events[0].context == {"user_name": "Bob", "pass_index": 1, "bucket": "low"}


def test_events_is_a_snapshot() -> None:
    log = AnomalyLog()
    snapshot = log.events
    log.record(AnomalyKind.EXACT_CONFLICT, "conflict")
    assert snapshot == []


def test_clear() -> None:
    log = AnomalyLog()
    log.record(AnomalyKind.EXACT_CONFLICT, "conflict")
    log.clear()
    assert not log
    assert list(log) == []


def test_report_without_log_does_not_raise() -> None:
    report(None, AnomalyKind.EXACT_CONFLICT, "conflict", 1, 2)


def test_report_with_log_records() -> None:
    log = AnomalyLog()
    report(log, AnomalyKind.BELOW_LOWER_BOUND, "too small", 5, 10, field="duration")
    assert log.events[0].context["field"] == "duration"
