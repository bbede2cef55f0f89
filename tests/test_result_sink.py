from unittest.mock import MagicMock

import pytest
import requests
from sqlalchemy.exc import OperationalError

from dispatcher.constant import SubmissionStatus
from dispatcher.events import (
    EVENT_FIELD_NAMES,
    StatusEvent,
    WebhookEventPublisher,
)
from dispatcher.exception import (
    InvalidTransitionError,
    StorageError,
    SubmissionIdNotFoundError,
)
from dispatcher.result_factory import (
    JudgeReport,
    make_internal_error_report,
    make_report,
)
from dispatcher.result_sink import ResultSink
from runner.submission import TestOutcome


@pytest.fixture
def sid(submissions):
    return submissions.create(1, 1, 'python', 'print()').id


def test_record_persists_report(sink, submissions, publisher, sid):
    event = sink.record(
        JudgeReport(
            submission_id=sid,
            status=SubmissionStatus.ACCEPTED,
            score=100,
            tests_passed=2,
            tests_total=2,
            execution_time=12,
            memory_used=3400,
        ))
    record = submissions.get(sid)
    assert record.status == record.verdict == 'Accepted'
    assert record.score == 100
    assert record.test_cases_passed == 2
    assert record.execution_time == 12
    assert record.memory_used == 3400
    assert record.judged_at is not None
    assert publisher.events == [event]
    assert event.to_wire()['execTime'] == 12


def test_first_verdict_wins(sink, submissions, publisher, sid):
    sink.record(JudgeReport(sid, SubmissionStatus.WRONG_ANSWER, tests_total=1))
    assert sink.record(JudgeReport(sid, SubmissionStatus.ACCEPTED)) is None
    assert submissions.get(sid).status == SubmissionStatus.WRONG_ANSWER
    assert len(publisher.events) == 1
    assert submissions.problem_statistics(1) == {
        'total_submissions': 1,
        'accepted_submissions': 0,
    }


def test_reject_in_flight_report(sink, sid):
    with pytest.raises(InvalidTransitionError):
        sink.record(JudgeReport(sid, SubmissionStatus.JUDGING))


def test_unknown_submission(sink):
    with pytest.raises(SubmissionIdNotFoundError):
        sink.record(JudgeReport(404, SubmissionStatus.ACCEPTED))


def test_publisher_failure_keeps_result(db, scorer, submissions, sid, caplog):
    publisher = MagicMock()
    publisher.publish.side_effect = requests.exceptions.ConnectionError('down')
    sink = ResultSink(db, scorer, publisher)
    event = sink.record(JudgeReport(sid, SubmissionStatus.ACCEPTED))
    assert event is not None
    assert submissions.get(sid).status == SubmissionStatus.ACCEPTED
    assert 'status event not delivered' in caplog.text


def test_storage_failure_raises(db, scorer, publisher, sid, monkeypatch):
    sink = ResultSink(db, scorer, publisher)

    def broken(session, problem_id, accepted):
        raise OperationalError('UPDATE', {}, Exception('disk I/O error'))

    monkeypatch.setattr('dispatcher.result_sink.update_statistics', broken)
    with pytest.raises(StorageError):
        sink.record(JudgeReport(sid, SubmissionStatus.ACCEPTED))
    assert publisher.events == []


def test_flagged_report_is_logged(sink, sid, caplog):
    sink.record(make_internal_error_report(sid, 'sandbox unavailable'))
    assert 'submission needs attention' in caplog.text


def test_make_report_runtime_error():
    outcomes = [
        TestOutcome(1, SubmissionStatus.ACCEPTED, duration=5, points=1),
        TestOutcome(2, SubmissionStatus.RUNTIME_ERROR, stderr='Segmentation fault',
                    exit_code=-11, duration=3),
    ]
    report = make_report(9, outcomes, tests_total=5, full_points=5)
    assert report.status == SubmissionStatus.RUNTIME_ERROR
    assert report.tests_passed == 1
    assert report.score == 0
    assert report.error_message == \
        'test case 2: exit code -11\nSegmentation fault'


def test_make_report_error_is_bounded():
    outcomes = [
        TestOutcome(1, SubmissionStatus.RUNTIME_ERROR, stderr='x' * 10000,
                    exit_code=1),
    ]
    report = make_report(9, outcomes, tests_total=1, full_points=1,
                         max_error_length=100)
    assert len(report.error_message) == 100


def test_event_wire_names():
    event = StatusEvent(
        submission_id=1,
        status='Accepted',
        verdict='Accepted',
        execution_time_ms=10,
        memory_kb=2048,
        score=100,
        tests_passed=3,
        tests_total=3,
    )
    assert set(event.to_wire()) == set(EVENT_FIELD_NAMES.values())
    assert event.to_wire()['submissionId'] == 1


def test_webhook_publisher(monkeypatch):
    calls = []

    def fake_put(url, json, timeout):
        calls.append((url, json))
        resp = MagicMock(status_code=200, text='ok')
        return resp

    monkeypatch.setattr('dispatcher.events.requests.put', fake_put)
    publisher = WebhookEventPublisher('http://web:8080', 'secret')
    publisher.publish(
        StatusEvent.from_report(JudgeReport(5, SubmissionStatus.ACCEPTED)))
    url, payload = calls[0]
    assert url == 'http://web:8080/submission/5/complete'
    assert payload['token'] == 'secret'
    assert payload['status'] == 'Accepted'


def test_webhook_publisher_raises_on_error_status(monkeypatch):
    resp = MagicMock(status_code=500, text='boom')
    resp.raise_for_status.side_effect = requests.exceptions.HTTPError('500')
    monkeypatch.setattr('dispatcher.events.requests.put',
                        lambda *args, **kwargs: resp)
    publisher = WebhookEventPublisher('http://web:8080', 'secret')
    with pytest.raises(requests.exceptions.HTTPError):
        publisher.publish(
            StatusEvent.from_report(JudgeReport(5, SubmissionStatus.ACCEPTED)))
