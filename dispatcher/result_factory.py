"""
Factory functions for the judge report of a submission.

This module provides consistent report structures for:
- Judged submissions (aggregated from per-test-case outcomes)
- Compile errors
- Internal errors (malformed jobs, exhausted retries)
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, List, Optional

from .constant import GradingMode, SubmissionStatus
from .utils import truncate

if TYPE_CHECKING:
    from runner.submission import TestOutcome


@dataclass
class JudgeReport:
    submission_id: int
    status: SubmissionStatus
    score: int = 0
    tests_passed: int = 0
    tests_total: int = 0
    execution_time: Optional[int] = None  # ms
    memory_used: Optional[int] = None  # KB
    error_message: Optional[str] = None
    outcomes: List['TestOutcome'] = field(default_factory=list)
    # set when an operator has to look at the submission
    flagged: bool = False


def make_report(
    submission_id: int,
    outcomes: List['TestOutcome'],
    tests_total: int,
    full_points: int,
    grading_mode: GradingMode = GradingMode.BINARY,
    max_error_length: int = 4096,
) -> JudgeReport:
    """
    Aggregate test case outcomes (in execution order) into a report.

    Args:
        submission_id: Submission the outcomes belong to
        outcomes: Outcomes in ascending test case id; in binary mode the
            list ends at the first failing case
        tests_total: Number of test cases of the problem
        full_points: Sum of the weights of all test cases
        grading_mode: binary (all or nothing) or partial (sum of weights)
        max_error_length: Bound of the error message

    Returns:
        JudgeReport with a terminal status
    """
    passed = [o for o in outcomes if o.passed]
    failed = next((o for o in outcomes if not o.passed), None)
    status = SubmissionStatus.ACCEPTED
    error_message = None
    if failed is not None or len(outcomes) < tests_total:
        status = failed.status if failed else SubmissionStatus.INTERNAL_ERROR
    if failed is not None and failed.status == SubmissionStatus.RUNTIME_ERROR:
        error_message = truncate(
            f'test case {failed.case_id}: exit code {failed.exit_code}\n'
            f'{failed.stderr}',
            max_error_length,
        )
    if grading_mode == GradingMode.PARTIAL:
        score = sum(o.points for o in passed)
    else:
        score = full_points if status == SubmissionStatus.ACCEPTED else 0
    return JudgeReport(
        submission_id=submission_id,
        status=status,
        score=score,
        tests_passed=len(passed),
        tests_total=tests_total,
        execution_time=max((o.duration for o in outcomes), default=0),
        memory_used=max((o.mem_usage for o in outcomes), default=0),
        error_message=error_message,
        outcomes=list(outcomes),
    )


def make_compile_error_report(
    submission_id: int,
    message: str,
    tests_total: int,
) -> JudgeReport:
    return JudgeReport(
        submission_id=submission_id,
        status=SubmissionStatus.COMPILE_ERROR,
        tests_total=tests_total,
        error_message=message,
    )


def make_internal_error_report(
    submission_id: int,
    message: str,
    tests_total: int = 0,
    flagged: bool = True,
    max_error_length: int = 4096,
) -> JudgeReport:
    return JudgeReport(
        submission_id=submission_id,
        status=SubmissionStatus.INTERNAL_ERROR,
        tests_total=tests_total,
        error_message=truncate(message, max_error_length),
        flagged=flagged,
    )
