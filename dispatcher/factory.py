"""
Build the judge pipeline from configuration.

Every component receives its collaborators here; nothing else in the
package reaches for process-wide instances.
"""
from pathlib import Path
from typing import Optional

from runner.path_utils import PathTranslator
from runner.process_sandbox import ProcessSandbox
from runner.sandbox import Sandbox
from . import config
from .database import Database
from .dispatcher import Dispatcher
from .events import (
    EventPublisher,
    LoggingEventPublisher,
    MemoryEventPublisher,
    WebhookEventPublisher,
)
from .job_queue import JobQueue, MemoryJobQueue, RedisJobQueue
from .repository import SubmissionRepository, TestCaseRepository
from .result_sink import ResultSink
from .scorer import ContestScorer
from .utils import get_redis_client, logger
from .worker import SubmissionWorker


def build_sandbox(submission_cfg: dict):
    backend = submission_cfg['sandbox_backend']
    if backend == 'process':
        return ProcessSandbox(
            scratch_root=Path(submission_cfg['working_dir']) / '.scratch',
            wall_overhead_ms=submission_cfg['wall_overhead_ms'],
            max_output_bytes=submission_cfg['max_output_bytes'],
            isolate_network=submission_cfg['isolate_network'],
        )
    if backend == 'docker':
        return Sandbox(
            docker_url=submission_cfg['docker_url'],
            scratch_root=Path(submission_cfg['working_dir']) / '.scratch',
            wall_overhead_ms=submission_cfg['wall_overhead_ms'],
            pids_limit=submission_cfg['pids_limit'],
            max_output_bytes=submission_cfg['max_output_bytes'],
            usage_wrapper=submission_cfg['usage_wrapper'],
            translator=PathTranslator(submission_cfg),
        )
    raise ValueError(f'unknown sandbox backend {backend!r}')


def build_queue(dispatcher_cfg: dict, backend: Optional[str] = None) -> JobQueue:
    backend = backend or config.get_queue_backend()
    if backend == 'memory':
        return MemoryJobQueue(
            max_size=dispatcher_cfg['QUEUE_SIZE'],
            visibility_timeout=dispatcher_cfg['VISIBILITY_TIMEOUT'],
        )
    if backend == 'redis':
        return RedisJobQueue(
            client=get_redis_client(),
            max_size=dispatcher_cfg['QUEUE_SIZE'],
            visibility_timeout=dispatcher_cfg['VISIBILITY_TIMEOUT'],
        )
    raise ValueError(f'unknown queue backend {backend!r}')


def build_publisher(backend: Optional[str] = None) -> EventPublisher:
    backend = backend or config.get_event_backend()
    if backend == 'webhook':
        return WebhookEventPublisher(config.BACKEND_API, config.SANDBOX_TOKEN)
    if backend == 'log':
        return LoggingEventPublisher()
    if backend == 'memory':
        return MemoryEventPublisher()
    raise ValueError(f'unknown event backend {backend!r}')


def build_dispatcher(
    dispatcher_config: Optional[str | Path] = None,
    submission_config: Optional[str | Path] = None,
    db: Optional[Database] = None,
) -> Dispatcher:
    dispatcher_cfg = config.get_dispatcher_config(dispatcher_config)
    submission_cfg = config.get_submission_config(submission_config)
    db = db or Database(config.get_database_url())
    redis_client = (get_redis_client()
                    if config.get_scoring_lock_backend() == 'redis' else None)
    scorer = ContestScorer(
        db,
        penalty_per_wrong=dispatcher_cfg['PENALTY_PER_WRONG'],
        redis_client=redis_client,
    )
    submissions = SubmissionRepository(db)
    worker = SubmissionWorker(
        submissions=submissions,
        test_cases=TestCaseRepository(db),
        sandbox=build_sandbox(submission_cfg),
        languages=submission_cfg['languages'],
        working_dir=submission_cfg['working_dir'],
        max_error_length=submission_cfg['max_error_length'],
    )
    sink = ResultSink(db, scorer, build_publisher())
    logger().info(f'build dispatcher [workers={dispatcher_cfg["MAX_WORKER_COUNT"]}, '
                  f'sandbox={submission_cfg["sandbox_backend"]}]')
    return Dispatcher(
        queue=build_queue(dispatcher_cfg),
        worker=worker,
        sink=sink,
        dispatcher_config=dispatcher_cfg,
    )
