import pytest

from dispatcher.constant import RunStatus, SubmissionStatus
from dispatcher.exception import (
    MalformedJobError,
    SubmissionIdNotFoundError,
    TestDataError,
)
from dispatcher.models import TestCase
from dispatcher.worker import SubmissionWorker
from runner.sandbox import Result
from tests.helpers import FakeSandbox, make_job, seed_cases


def _submit(submissions, problem_id=1, user_id=1):
    return submissions.create(
        user_id=user_id,
        problem_id=problem_id,
        language='python',
        code='print(input())',
    ).id


def test_all_cases_pass(worker, db, submissions, sandbox):
    refs = seed_cases(db, 1, [(str(i), str(i), 10) for i in range(3)])
    sid = _submit(submissions)
    report = worker.judge(make_job(sid, 1, refs))
    assert report.status == SubmissionStatus.ACCEPTED
    assert report.score == 30
    assert report.tests_passed == report.tests_total == 3
    assert sandbox.runs == ['0', '1', '2']
    # the terminal status is written by the result sink
    assert submissions.get(sid).status == SubmissionStatus.JUDGING


def test_binary_stops_at_first_failure(worker, db, submissions, sandbox):
    cases = [(str(i), str(i), 1) for i in range(10)]
    cases[2] = ('2', 'not what it prints', 1)
    refs = seed_cases(db, 1, cases)
    sid = _submit(submissions)
    report = worker.judge(make_job(sid, 1, refs))
    assert report.status == SubmissionStatus.WRONG_ANSWER
    assert report.tests_passed == 2
    assert report.tests_total == 10
    assert report.score == 0
    assert len(sandbox.runs) == 3


def test_cases_run_in_ascending_id(worker, db, submissions, sandbox):
    refs = seed_cases(db, 1, [('a', 'a', 1), ('b', 'b', 1), ('c', 'c', 1)])
    sid = _submit(submissions)
    worker.judge(make_job(sid, 1, list(reversed(refs))))
    assert sandbox.runs == ['a', 'b', 'c']


def test_partial_sums_passed_weights(db, submissions, worker, sandbox):
    refs = seed_cases(db, 1, [('1', '1', 20), ('2', 'x', 30), ('3', '3', 50)])
    sid = _submit(submissions)
    report = worker.judge(make_job(sid, 1, refs, grading_mode='partial'))
    assert report.status == SubmissionStatus.WRONG_ANSWER
    assert report.score == 70
    assert report.tests_passed == 2
    assert len(sandbox.runs) == 3


def test_runtime_error_message(worker, db, submissions, sandbox):
    sandbox.behaviour = lambda stdin: Result(
        RunStatus.EXITED,
        stderr='ZeroDivisionError: division by zero',
        exit_code=1,
    )
    refs = seed_cases(db, 1, [('1', '1', 1)])
    sid = _submit(submissions)
    report = worker.judge(make_job(sid, 1, refs))
    assert report.status == SubmissionStatus.RUNTIME_ERROR
    assert f'test case {refs[0]}: exit code 1' in report.error_message
    assert 'ZeroDivisionError' in report.error_message


def test_time_and_memory_are_maxima(worker, db, submissions, sandbox):
    usage = {'1': (10, 3000), '2': (40, 1000)}
    sandbox.behaviour = lambda stdin: Result(
        RunStatus.EXITED,
        stdout=stdin,
        duration=usage[stdin][0],
        mem_usage=usage[stdin][1],
    )
    refs = seed_cases(db, 1, [('1', '1', 1), ('2', '2', 1)])
    sid = _submit(submissions)
    report = worker.judge(make_job(sid, 1, refs))
    assert report.execution_time == 40
    assert report.memory_used == 3000


def test_compile_error(db, submissions, test_cases, tmp_path):
    sandbox = FakeSandbox(compile_result=Result(
        RunStatus.EXITED,
        stderr="main.c:1:1: error: expected ';'",
        exit_code=1,
    ))
    worker = SubmissionWorker(
        submissions=submissions,
        test_cases=test_cases,
        sandbox=sandbox,
        languages={
            'c': {
                'source': 'main.c',
                'compile': ['gcc', 'main.c'],
                'run': ['./main'],
            },
        },
        working_dir=tmp_path / 'submissions',
    )
    refs = seed_cases(db, 1, [('1', '1', 1), ('2', '2', 1)])
    sid = submissions.create(1, 1, 'c', 'int main(){').id
    report = worker.judge(make_job(sid, 1, refs, language='c'))
    assert report.status == SubmissionStatus.COMPILE_ERROR
    assert "expected ';'" in report.error_message
    assert report.tests_passed == 0
    assert report.tests_total == 2
    assert sandbox.runs == []
    assert not (tmp_path / 'submissions' / str(sid)).exists()


def test_skip_already_judged(worker, db, submissions, sink, sandbox):
    refs = seed_cases(db, 1, [('1', '1', 1)])
    sid = _submit(submissions)
    sink.record(worker.judge(make_job(sid, 1, refs)))
    sandbox.runs.clear()
    assert worker.judge(make_job(sid, 1, refs)) is None
    assert sandbox.runs == []


def test_restart_interrupted_judging(worker, db, submissions):
    refs = seed_cases(db, 1, [('1', '1', 1)])
    sid = _submit(submissions)
    submissions.mark_in_flight(sid, SubmissionStatus.JUDGING)
    report = worker.judge(make_job(sid, 1, refs))
    assert report.status == SubmissionStatus.ACCEPTED


def test_missing_test_case(worker, db, submissions):
    refs = seed_cases(db, 1, [('1', '1', 1)])
    sid = _submit(submissions)
    with pytest.raises(MalformedJobError):
        worker.judge(make_job(sid, 1, refs + [refs[0] + 100]))
    # nothing started yet
    assert submissions.get(sid).status == SubmissionStatus.PENDING


def test_case_of_other_problem(worker, db, submissions):
    refs = seed_cases(db, 2, [('1', '1', 1)])
    sid = _submit(submissions)
    with pytest.raises(MalformedJobError):
        worker.judge(make_job(sid, 1, refs))


def test_unknown_submission(worker, db):
    refs = seed_cases(db, 1, [('1', '1', 1)])
    with pytest.raises(SubmissionIdNotFoundError):
        worker.judge(make_job(404, 1, refs))


def test_unreadable_expected_output(worker, db, submissions, sandbox):
    with db.session_scope() as session:
        case = TestCase(problem_id=1, input_data='1', expected_output=None)
        session.add(case)
        session.flush()
        case_id = case.id
    sid = _submit(submissions)
    with pytest.raises(TestDataError):
        worker.judge(make_job(sid, 1, [case_id]))
    assert sandbox.runs == []
