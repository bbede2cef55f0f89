__all__ = [
    'JudgeError',
    'InfrastructureError',
    'SandboxError',
    'TestDataError',
    'StorageError',
    'QueueError',
    'MalformedJobError',
    'InvalidTransitionError',
    'SubmissionIdNotFoundError',
    'DuplicatedSubmissionIdError',
    'QueueFullError',
]


class JudgeError(Exception):
    pass


class InfrastructureError(JudgeError):
    '''
    A fault of the judging machinery, not of the submitted program.
    Jobs failing with it are retried before being marked InternalError.
    '''


class SandboxError(InfrastructureError):
    pass


class TestDataError(InfrastructureError):
    __test__ = False


class StorageError(InfrastructureError):
    pass


class QueueError(InfrastructureError):
    pass


class MalformedJobError(JudgeError):
    pass


class InvalidTransitionError(JudgeError):
    pass


class SubmissionIdNotFoundError(JudgeError):
    pass


class DuplicatedSubmissionIdError(JudgeError):
    pass


class QueueFullError(JudgeError):
    pass
