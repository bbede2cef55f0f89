from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from dispatcher.constant import RunStatus
from dispatcher.database import Database
from dispatcher.meta import JudgeJob
from dispatcher.models import Contest, ContestProblem, TestCase
from runner.sandbox import Result


class FakeSandbox:
    '''
    Stand-in for the sandbox backends. By default every run echoes its
    stdin back with exit code 0.
    '''

    def __init__(
        self,
        behaviour: Optional[Callable[[str], Result]] = None,
        compile_result: Optional[Result] = None,
    ):
        self.behaviour = behaviour or (
            lambda stdin: Result(RunStatus.EXITED, stdout=stdin))
        self.compile_result = compile_result or Result(RunStatus.EXITED)
        self.runs: List[str] = []
        self.compiles = 0

    def compile(self, command, build_dir, **kwargs):
        self.compiles += 1
        return self.compile_result

    def run(self, command, build_dir, stdin, time_limit, mem_limit,
            image=None):
        self.runs.append(stdin)
        return self.behaviour(stdin)


def seed_cases(
    db: Database,
    problem_id: int,
    cases: List[Tuple[str, str, int]],
) -> List[int]:
    '''Insert (input, expected output, points) rows, return their ids.'''
    with db.session_scope() as session:
        rows = [
            TestCase(
                problem_id=problem_id,
                input_data=input_data,
                expected_output=expected,
                points=points,
            ) for input_data, expected, points in cases
        ]
        session.add_all(rows)
        session.flush()
        return [row.id for row in rows]


def seed_contest(
    db: Database,
    start: datetime,
    duration: timedelta = timedelta(hours=5),
    problems: Optional[dict] = None,
) -> int:
    '''Create a contest; `problems` maps problem id to points.'''
    with db.session_scope() as session:
        contest = Contest(title='weekly', start_time=start, end_time=start + duration)
        session.add(contest)
        session.flush()
        for position, (problem_id, points) in enumerate(
            (problems or {}).items()):
            session.add(
                ContestProblem(
                    contest_id=contest.id,
                    problem_id=problem_id,
                    points=points,
                    position=position,
                ))
        return contest.id


def make_job(submission_id: int, problem_id: int, refs: List[int],
             **kwargs) -> JudgeJob:
    payload = {
        'submission_id': submission_id,
        'problem_id': problem_id,
        'language': 'python',
        'source_code': 'print(input())',
        'time_limit_ms': 1000,
        'memory_limit_mb': 256,
        'test_case_refs': refs,
    }
    payload.update(kwargs)
    return JudgeJob.model_validate(payload)


class FakeClock:

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now
