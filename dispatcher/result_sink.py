from contextlib import nullcontext
from typing import Optional

from sqlalchemy import update

from .constant import IN_FLIGHT_STATUSES, SubmissionStatus
from .database import Database
from .events import EventPublisher, StatusEvent
from .exception import InvalidTransitionError, SubmissionIdNotFoundError
from .models import Submission
from .repository import update_statistics
from .result_factory import JudgeReport
from .scorer import ContestScorer
from .utils import logger, utcnow


class ResultSink:
    '''
    Persist terminal verdicts and announce them.

    The submission record, problem statistics and contest standings are
    written in one transaction; for contest submissions it commits while
    holding the contest's scoring lock. The status event is emitted after
    the commit and its failures never undo the persisted result.
    '''

    def __init__(
        self,
        db: Database,
        scorer: ContestScorer,
        publisher: EventPublisher,
    ):
        self.db = db
        self.scorer = scorer
        self.publisher = publisher

    def record(self, report: JudgeReport) -> Optional[StatusEvent]:
        if not report.status.is_terminal:
            raise InvalidTransitionError(
                f'{report.status.value} is not a terminal status')
        with self.db.session_scope() as session:
            submission = session.get(Submission, report.submission_id)
            if submission is None:
                raise SubmissionIdNotFoundError(
                    f'submission {report.submission_id} not found')
            contest_id = submission.contest_id
        lock = (self.scorer.lock(contest_id)
                if contest_id is not None else nullcontext())
        with lock:
            with self.db.session_scope() as session:
                # only one terminal write can match an in-flight row
                written = session.execute(
                    update(Submission).where(
                        Submission.id == report.submission_id,
                        Submission.status.in_(
                            [s.value for s in IN_FLIGHT_STATUSES]),
                    ).values(**self._terminal_values(report)).
                    execution_options(synchronize_session=False)).rowcount
                submission = session.get(Submission, report.submission_id)
                if not written:
                    logger().info(
                        f'submission already judged, keep the first verdict '
                        f'[id={submission.id}, status={submission.status}]')
                    return None
                update_statistics(session, submission.problem_id,
                                  report.status == SubmissionStatus.ACCEPTED)
                session.flush()
                self.scorer.apply(session, submission)
        if report.flagged:
            logger().error(f'submission needs attention [id={report.submission_id}]: '
                           f'{report.error_message}')
        logger().info(f'submission judged [id={report.submission_id}, '
                      f'status={report.status.code}, score={report.score}, '
                      f'passed={report.tests_passed}/{report.tests_total}]')
        event = StatusEvent.from_report(report)
        self.emit(event)
        return event

    def emit(self, event: StatusEvent):
        try:
            self.publisher.publish(event)
        except Exception as e:
            logger().warning(f'status event not delivered '
                             f'[id={event.submission_id}]: {e}')

    @staticmethod
    def _terminal_values(report: JudgeReport) -> dict:
        return {
            'status': report.status.value,
            'verdict': report.status.value,
            'score': report.score,
            'test_cases_passed': report.tests_passed,
            'total_test_cases': report.tests_total,
            'execution_time': report.execution_time,
            'memory_used': report.memory_used,
            'error_message': report.error_message,
            'judged_at': utcnow(),
        }
