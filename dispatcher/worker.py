from pathlib import Path
from typing import Optional

from runner.submission import SubmissionRunner
from . import file_manager
from .constant import ALLOWED_TRANSITIONS, GradingMode, SubmissionStatus
from .exception import InvalidTransitionError, SubmissionIdNotFoundError
from .meta import JudgeJob
from .repository import SubmissionRepository, TestCaseRepository
from .result_factory import (
    JudgeReport,
    make_compile_error_report,
    make_report,
)
from .utils import logger


class SubmissionWorker:
    '''
    Judge one submission from start to finish:
    Pending -> Compiling -> Judging -> terminal status.

    Infrastructure faults propagate to the caller, which decides whether
    the job is retried. The returned report is not persisted here.
    '''

    def __init__(
        self,
        submissions: SubmissionRepository,
        test_cases: TestCaseRepository,
        sandbox,
        languages: dict,
        working_dir: str | Path,
        max_error_length: int = 4096,
    ):
        self.submissions = submissions
        self.test_cases = test_cases
        self.sandbox = sandbox
        self.languages = languages
        self.working_dir = Path(working_dir)
        self.max_error_length = max_error_length

    def supports(self, lang: str) -> bool:
        return bool(self.languages.get(lang, {}).get('run'))

    def _transition(
        self,
        submission_id: int,
        current: SubmissionStatus,
        new: SubmissionStatus,
    ) -> SubmissionStatus:
        if new not in ALLOWED_TRANSITIONS.get(current, ()):
            raise InvalidTransitionError(
                f'{current.value} -> {new.value} [id={submission_id}]')
        if not new.is_terminal:
            self.submissions.mark_in_flight(submission_id, new)
        logger().debug(
            f'{current.code} -> {new.code} [id={submission_id}]')
        return new

    def judge(self, job: JudgeJob) -> Optional[JudgeReport]:
        '''
        Returns None when the submission already has a terminal verdict,
        e.g. the job was redelivered after its result was stored.
        '''
        submission_id = job.submission_id
        record = self.submissions.get(submission_id)
        if record is None:
            raise SubmissionIdNotFoundError(
                f'submission {submission_id} not found')
        status = record.current_status
        if status.is_terminal:
            logger().info(f'skip judged submission [id={submission_id}, '
                          f'status={status.code}]')
            return None
        if status != SubmissionStatus.PENDING:
            logger().warning(f'restart interrupted judging '
                             f'[id={submission_id}, status={status.code}]')
            status = SubmissionStatus.PENDING
        cases = self.test_cases.load(job.problem_id, job.sorted_refs())
        runner = SubmissionRunner(
            submission_id=submission_id,
            lang=job.language,
            profile=self.languages.get(job.language),
            sandbox=self.sandbox,
            working_dir=self.working_dir,
            max_error_length=self.max_error_length,
        )
        status = self._transition(submission_id, status,
                                  SubmissionStatus.COMPILING)
        runner.prepare(job.source_code)
        logger().info(f'start compiling [id={submission_id}]')
        compiled = runner.compile()
        if not compiled.ok:
            self._transition(submission_id, status,
                             SubmissionStatus.COMPILE_ERROR)
            file_manager.clean_data(self.working_dir, submission_id)
            return make_compile_error_report(
                submission_id,
                compiled.message,
                tests_total=len(cases),
            )
        status = self._transition(submission_id, status,
                                  SubmissionStatus.JUDGING)
        outcomes = []
        for case in cases:
            outcome = runner.run(
                case,
                time_limit=job.time_limit_ms,
                mem_limit=job.memory_limit_kb,
                policy=job.comparison,
                allow_nonzero_exit=job.allow_nonzero_exit,
            )
            logger().info(f'finish case [id={submission_id}, '
                          f'case={case.id}, status={outcome.status.code}]')
            outcomes.append(outcome)
            if not outcome.passed and job.grading_mode == GradingMode.BINARY:
                break
        report = make_report(
            submission_id,
            outcomes,
            tests_total=len(cases),
            full_points=sum(case.points for case in cases),
            grading_mode=job.grading_mode,
            max_error_length=self.max_error_length,
        )
        self._transition(submission_id, status, report.status)
        file_manager.clean_data(self.working_dir, submission_id)
        return report
