from enum import Enum


class SubmissionStatus(str, Enum):
    PENDING = 'Pending'
    COMPILING = 'Compiling'
    JUDGING = 'Judging'
    ACCEPTED = 'Accepted'
    WRONG_ANSWER = 'WrongAnswer'
    TIME_LIMIT_EXCEEDED = 'TimeLimitExceeded'
    MEMORY_LIMIT_EXCEEDED = 'MemoryLimitExceeded'
    RUNTIME_ERROR = 'RuntimeError'
    COMPILE_ERROR = 'CompileError'
    INTERNAL_ERROR = 'InternalError'

    @property
    def is_terminal(self) -> bool:
        return self not in IN_FLIGHT_STATUSES

    @property
    def code(self) -> str:
        return STATUS_CODES[self]


IN_FLIGHT_STATUSES = frozenset({
    SubmissionStatus.PENDING,
    SubmissionStatus.COMPILING,
    SubmissionStatus.JUDGING,
})

# short codes used in log lines
STATUS_CODES = {
    SubmissionStatus.PENDING: 'PD',
    SubmissionStatus.COMPILING: 'CP',
    SubmissionStatus.JUDGING: 'JG',
    SubmissionStatus.ACCEPTED: 'AC',
    SubmissionStatus.WRONG_ANSWER: 'WA',
    SubmissionStatus.TIME_LIMIT_EXCEEDED: 'TLE',
    SubmissionStatus.MEMORY_LIMIT_EXCEEDED: 'MLE',
    SubmissionStatus.RUNTIME_ERROR: 'RE',
    SubmissionStatus.COMPILE_ERROR: 'CE',
    SubmissionStatus.INTERNAL_ERROR: 'JE',
}

# verdicts a contestant is charged a wrong attempt for
FAILED_ATTEMPT_STATUSES = frozenset({
    SubmissionStatus.WRONG_ANSWER,
    SubmissionStatus.TIME_LIMIT_EXCEEDED,
    SubmissionStatus.MEMORY_LIMIT_EXCEEDED,
    SubmissionStatus.RUNTIME_ERROR,
})

ALLOWED_TRANSITIONS = {
    SubmissionStatus.PENDING: frozenset({
        SubmissionStatus.COMPILING,
        SubmissionStatus.INTERNAL_ERROR,
    }),
    SubmissionStatus.COMPILING: frozenset({
        SubmissionStatus.JUDGING,
        SubmissionStatus.COMPILE_ERROR,
        SubmissionStatus.INTERNAL_ERROR,
    }),
    SubmissionStatus.JUDGING: frozenset({
        SubmissionStatus.ACCEPTED,
        SubmissionStatus.WRONG_ANSWER,
        SubmissionStatus.TIME_LIMIT_EXCEEDED,
        SubmissionStatus.MEMORY_LIMIT_EXCEEDED,
        SubmissionStatus.RUNTIME_ERROR,
        SubmissionStatus.INTERNAL_ERROR,
    }),
}


class GradingMode(str, Enum):
    # stop at the first failing test case
    BINARY = 'binary'
    # run every test case and sum the weights of the passed ones
    PARTIAL = 'partial'


class ComparisonMode(str, Enum):
    EXACT = 'exact'
    TOLERANCE = 'tolerance'


class RunStatus(str, Enum):
    EXITED = 'Exited'
    TIME_LIMIT = 'TimeLimit'
    MEMORY_LIMIT = 'MemoryLimit'
