import math
from typing import List, Optional

from dispatcher.constant import ComparisonMode, RunStatus, SubmissionStatus
from dispatcher.meta import Comparison


def normalize(s: str) -> List[str]:
    # strip trailing space for each line
    ss = [line.rstrip() for line in s.splitlines()]
    # strip redundant new line
    while len(ss) and ss[-1] == '':
        del ss[-1]
    return ss


def _to_float(token: str) -> Optional[float]:
    try:
        return float(token)
    except ValueError:
        return None


def _tokens_match(expected: str, actual: str, policy: Comparison) -> bool:
    if expected == actual:
        return True
    a, b = _to_float(expected), _to_float(actual)
    if a is None or b is None:
        return False
    if math.isnan(a) or math.isnan(b):
        return math.isnan(a) and math.isnan(b)
    return math.isclose(
        a,
        b,
        rel_tol=policy.rel_tolerance,
        abs_tol=policy.abs_tolerance,
    )


def outputs_match(
    expected: str,
    actual: str,
    policy: Optional[Comparison] = None,
) -> bool:
    '''
    Compare a program's stdout with the expected output.

    exact: equal after `normalize`.
    tolerance: equal token count, numeric tokens compared with the
        policy's absolute/relative tolerance, other tokens exactly.
    '''
    policy = policy or Comparison()
    if policy.mode == ComparisonMode.EXACT:
        return normalize(actual) == normalize(expected)
    expected_tokens = expected.split()
    actual_tokens = actual.split()
    if len(expected_tokens) != len(actual_tokens):
        return False
    return all(
        _tokens_match(e, a, policy)
        for e, a in zip(expected_tokens, actual_tokens))


def classify(
    result,
    expected: str,
    policy: Optional[Comparison] = None,
    allow_nonzero_exit: bool = False,
) -> SubmissionStatus:
    if result.status == RunStatus.TIME_LIMIT:
        return SubmissionStatus.TIME_LIMIT_EXCEEDED
    if result.status == RunStatus.MEMORY_LIMIT:
        return SubmissionStatus.MEMORY_LIMIT_EXCEEDED
    if result.exit_code != 0 and not allow_nonzero_exit:
        return SubmissionStatus.RUNTIME_ERROR
    if outputs_match(expected, result.stdout, policy):
        return SubmissionStatus.ACCEPTED
    return SubmissionStatus.WRONG_ANSWER
