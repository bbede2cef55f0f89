import threading
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import List, Optional

import requests

from .result_factory import JudgeReport
from .utils import logger

# field names of the status event on the backend's wire format
EVENT_FIELD_NAMES = {
    'submission_id': 'submissionId',
    'status': 'status',
    'verdict': 'verdict',
    'execution_time_ms': 'execTime',
    'memory_kb': 'memoryUsage',
    'score': 'score',
    'tests_passed': 'testsPassed',
    'tests_total': 'testsTotal',
    'error_message': 'errorMessage',
}


@dataclass(frozen=True)
class StatusEvent:
    submission_id: int
    status: str
    verdict: Optional[str]
    execution_time_ms: Optional[int]
    memory_kb: Optional[int]
    score: int
    tests_passed: int
    tests_total: int
    error_message: Optional[str] = None

    @classmethod
    def from_report(cls, report: JudgeReport) -> 'StatusEvent':
        return cls(
            submission_id=report.submission_id,
            status=report.status.value,
            verdict=report.status.value,
            execution_time_ms=report.execution_time,
            memory_kb=report.memory_used,
            score=report.score,
            tests_passed=report.tests_passed,
            tests_total=report.tests_total,
            error_message=report.error_message,
        )

    def to_wire(self) -> dict:
        return {
            EVENT_FIELD_NAMES[k]: v
            for k, v in asdict(self).items()
        }


class EventPublisher(ABC):

    @abstractmethod
    def publish(self, event: StatusEvent) -> None:
        ...


class MemoryEventPublisher(EventPublisher):
    '''Keep events in memory, for tests and local runs.'''

    def __init__(self):
        self.lock = threading.Lock()
        self.events: List[StatusEvent] = []

    def publish(self, event: StatusEvent) -> None:
        with self.lock:
            self.events.append(event)

    def for_submission(self, submission_id: int) -> List[StatusEvent]:
        with self.lock:
            return [e for e in self.events if e.submission_id == submission_id]


class LoggingEventPublisher(EventPublisher):

    def publish(self, event: StatusEvent) -> None:
        logger().info(f'submission finished [id={event.submission_id}, '
                      f'status={event.status}, score={event.score}]')


class WebhookEventPublisher(EventPublisher):
    '''
    PUT the event to the web backend. Raises on transport errors and
    non-2xx responses; the result sink treats both as best effort.
    '''

    def __init__(self, backend_api: str, token: str, timeout: float = 10):
        self.backend_api = backend_api
        self.token = token
        self.timeout = timeout

    def publish(self, event: StatusEvent) -> None:
        payload = event.to_wire()
        payload['token'] = self.token
        url = f'{self.backend_api}/submission/{event.submission_id}/complete'
        logger().info(f'send to BE [submission_id={event.submission_id}]')
        resp = requests.put(url, json=payload, timeout=self.timeout)
        logger().debug(f'get BE response: [{resp.status_code}] {resp.text}')
        resp.raise_for_status()
