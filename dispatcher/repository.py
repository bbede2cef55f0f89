from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .constant import SubmissionStatus
from .database import Database
from .exception import (
    InvalidTransitionError,
    MalformedJobError,
    SubmissionIdNotFoundError,
    TestDataError,
)
from .models import ProblemStatistics, Submission, TestCase
from .utils import logger, utcnow


@dataclass(frozen=True)
class CaseData:
    id: int
    input_data: str
    expected_output: str
    points: int = 1


class TestCaseRepository:
    '''Read-only access to the test cases of a problem.'''
    __test__ = False

    def __init__(self, db: Database):
        self.db = db

    def missing(self, problem_id: int, refs: List[int]) -> List[int]:
        '''References that are not test cases of the problem.'''
        with self.db.session_scope() as session:
            found = set(
                session.scalars(
                    select(TestCase.id).where(
                        TestCase.problem_id == problem_id,
                        TestCase.id.in_(refs),
                    )).all())
        return sorted(set(refs) - found)

    def load(self, problem_id: int, refs: List[int]) -> List[CaseData]:
        '''
        Load the referenced test cases in ascending id order.
        A reference to a missing case makes the job malformed; an
        unreadable expected output is a test data fault.
        '''
        with self.db.session_scope() as session:
            rows = session.scalars(
                select(TestCase).where(
                    TestCase.problem_id == problem_id,
                    TestCase.id.in_(refs),
                ).order_by(TestCase.id)).all()
        found = {row.id for row in rows}
        missing = sorted(set(refs) - found)
        if missing:
            raise MalformedJobError(
                f'test cases {missing} not found for problem {problem_id}')
        cases = []
        for row in rows:
            if row.expected_output is None:
                raise TestDataError(
                    f'expected output of test case {row.id} is unreadable')
            cases.append(
                CaseData(
                    id=row.id,
                    input_data=row.input_data or '',
                    expected_output=row.expected_output,
                    points=row.points,
                ))
        return cases


class SubmissionRepository:

    def __init__(self, db: Database):
        self.db = db

    def create(
        self,
        user_id: int,
        problem_id: int,
        language: str,
        code: str,
        contest_id: Optional[int] = None,
        submitted_at: Optional[datetime] = None,
    ) -> Submission:
        with self.db.session_scope() as session:
            submission = Submission(
                user_id=user_id,
                problem_id=problem_id,
                contest_id=contest_id,
                language=language,
                code=code,
                status=SubmissionStatus.PENDING.value,
                submitted_at=submitted_at or utcnow(),
            )
            session.add(submission)
            session.flush()
            return submission

    def get(self, submission_id: int) -> Optional[Submission]:
        with self.db.session_scope() as session:
            return session.get(Submission, submission_id)

    def mark_in_flight(self, submission_id: int,
                       status: SubmissionStatus) -> Submission:
        '''
        Record a Compiling/Judging state. Earlier in-flight state of the
        same submission (from a crashed delivery) is overwritten.
        '''
        if status.is_terminal:
            raise InvalidTransitionError(
                f'{status.value} is not an in-flight status')
        with self.db.session_scope() as session:
            submission = session.get(Submission, submission_id)
            if submission is None:
                raise SubmissionIdNotFoundError(
                    f'submission {submission_id} not found')
            if submission.current_status.is_terminal:
                raise InvalidTransitionError(
                    f'submission {submission_id} is already '
                    f'{submission.status}')
            submission.status = status.value
            submission.verdict = None
            submission.judged_at = None
            submission.score = 0
            submission.test_cases_passed = 0
            submission.total_test_cases = 0
            submission.execution_time = None
            submission.memory_used = None
            submission.error_message = None
            return submission

    def user_problem_status(self, user_id: int, problem_id: int) -> dict:
        with self.db.session_scope() as session:
            terminal = Submission.judged_at.is_not(None)
            base = select(Submission).where(
                Submission.user_id == user_id,
                Submission.problem_id == problem_id,
            )
            total = session.scalar(
                select(func.count()).select_from(base.subquery()))
            accepted = session.scalar(
                select(func.count()).select_from(
                    base.where(Submission.status ==
                               SubmissionStatus.ACCEPTED.value).subquery()))
            best_score = session.scalar(
                select(func.max(Submission.score)).where(
                    Submission.user_id == user_id,
                    Submission.problem_id == problem_id,
                    terminal,
                ))
            best_time = session.scalar(
                select(func.min(Submission.execution_time)).where(
                    Submission.user_id == user_id,
                    Submission.problem_id == problem_id,
                    Submission.status == SubmissionStatus.ACCEPTED.value,
                ))
        return {
            'total_attempts': total or 0,
            'accepted_attempts': accepted or 0,
            'best_score': best_score or 0,
            'best_time': best_time,
        }

    def problem_statistics(self, problem_id: int) -> dict:
        with self.db.session_scope() as session:
            stats = session.get(ProblemStatistics, problem_id)
            if stats is None:
                return {'total_submissions': 0, 'accepted_submissions': 0}
            return {
                'total_submissions': stats.total_submissions,
                'accepted_submissions': stats.accepted_submissions,
            }


def update_statistics(session: Session, problem_id: int, accepted: bool):
    '''Count one judged submission, incremented in the database.'''
    increment = (update(ProblemStatistics).where(
        ProblemStatistics.problem_id == problem_id).values(
            total_submissions=ProblemStatistics.total_submissions + 1,
            accepted_submissions=ProblemStatistics.accepted_submissions +
            int(accepted),
        ).execution_options(synchronize_session=False))
    if session.execute(increment).rowcount == 0:
        try:
            with session.begin_nested():
                session.add(
                    ProblemStatistics(
                        problem_id=problem_id,
                        total_submissions=1,
                        accepted_submissions=int(accepted),
                    ))
        except IntegrityError:
            # another sink created the row first
            session.execute(increment)
    logger().debug(f'problem statistics updated [problem={problem_id}]')
