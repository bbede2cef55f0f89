import sys
import pytest
from dispatcher.database import Database
from dispatcher.dispatcher import Dispatcher
from dispatcher.events import MemoryEventPublisher
from dispatcher.job_queue import MemoryJobQueue
from dispatcher.repository import SubmissionRepository, TestCaseRepository
from dispatcher.result_sink import ResultSink
from dispatcher.scorer import ContestScorer
from dispatcher.worker import SubmissionWorker
from tests.helpers import FakeSandbox

PYTHON_LANGUAGES = {
    'python': {
        'image': 'noj-py3',
        'source': 'main.py',
        'compile': None,
        'run': [sys.executable, 'main.py'],
    },
}

TEST_DISPATCHER_CONFIG = {
    'QUEUE_SIZE': 16,
    'MAX_WORKER_COUNT': 2,
    'MAX_ATTEMPTS': 3,
    'BACKOFF_BASE': 0.0,
    'BACKOFF_MAX': 0.0,
    'VISIBILITY_TIMEOUT': 300.0,
    'POLL_INTERVAL': 0.01,
    'PENALTY_PER_WRONG': 20,
}


@pytest.fixture
def db(tmp_path):
    database = Database(f'sqlite:///{tmp_path / "judge.db"}')
    yield database
    database.dispose()


@pytest.fixture
def submissions(db):
    return SubmissionRepository(db)


@pytest.fixture
def test_cases(db):
    return TestCaseRepository(db)


@pytest.fixture
def publisher():
    return MemoryEventPublisher()


@pytest.fixture
def scorer(db):
    return ContestScorer(db, penalty_per_wrong=20)


@pytest.fixture
def sink(db, scorer, publisher):
    return ResultSink(db, scorer, publisher)


@pytest.fixture
def sandbox():
    return FakeSandbox()


@pytest.fixture
def worker(submissions, test_cases, sandbox, tmp_path):
    return SubmissionWorker(
        submissions=submissions,
        test_cases=test_cases,
        sandbox=sandbox,
        languages=PYTHON_LANGUAGES,
        working_dir=tmp_path / 'submissions',
    )


@pytest.fixture
def job_queue():
    return MemoryJobQueue(max_size=16, visibility_timeout=300)


@pytest.fixture
def judge_dispatcher(job_queue, worker, sink, tmp_path):
    # create a dispatcher in test config
    d = Dispatcher(
        queue=job_queue,
        worker=worker,
        sink=sink,
        dispatcher_config=dict(TEST_DISPATCHER_CONFIG),
        backup_dir=tmp_path / 'submissions.bk',
    )
    yield d
    # ensure we stop the dispatcher after every function call
    d.stop()
    d.wait_idle(timeout=10)
