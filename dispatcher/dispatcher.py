import threading
import time
from pathlib import Path
from typing import Dict, Optional

from pydantic import ValidationError

from . import config, file_manager
from .exception import *
from .job_queue import Delivery, JobQueue
from .meta import JudgeJob
from .result_factory import make_internal_error_report
from .result_sink import ResultSink
from .utils import logger
from .worker import SubmissionWorker


class Dispatcher(threading.Thread):
    '''
    Feed queued jobs to a fixed pool of worker threads.

    A job is acknowledged only after its result is persisted. Jobs failing
    on infrastructure are released with exponential backoff and recorded
    as InternalError once their attempts are used up.
    '''

    def __init__(
        self,
        queue: JobQueue,
        worker: SubmissionWorker,
        sink: ResultSink,
        dispatcher_config: Optional[str | Path | dict] = None,
        backup_dir: Optional[str | Path] = None,
    ):
        super().__init__(name='dispatcher')
        cfg = (dispatcher_config if isinstance(dispatcher_config, dict) else
               config.get_dispatcher_config(dispatcher_config))
        self.do_run = True
        self.queue = queue
        self.worker = worker
        self.sink = sink
        self.backup_dir = Path(backup_dir or config.SUBMISSION_BACKUP_DIR)
        self.MAX_TASK_COUNT = cfg['QUEUE_SIZE']
        self.MAX_WORKER_COUNT = cfg['MAX_WORKER_COUNT']
        self.MAX_ATTEMPTS = cfg['MAX_ATTEMPTS']
        self.BACKOFF_BASE = cfg['BACKOFF_BASE']
        self.BACKOFF_MAX = cfg['BACKOFF_MAX']
        self.POLL_INTERVAL = cfg['POLL_INTERVAL']
        # manage workers
        self.worker_count_lock = threading.Lock()
        self.worker_count = 0
        self.running: Dict[str, threading.Thread] = {}

    def inc_worker(self):
        with self.worker_count_lock:
            self.worker_count += 1

    def dec_worker(self):
        with self.worker_count_lock:
            self.worker_count -= 1

    def backoff(self, attempts: int) -> float:
        return min(self.BACKOFF_BASE * 2**max(attempts - 1, 0),
                   self.BACKOFF_MAX)

    def handle(self, job: JudgeJob) -> str:
        logger().info(f'receive submission [id={job.submission_id}]')
        return self.queue.put(job.model_dump(mode='json'))

    def run(self):
        self.do_run = True
        logger().debug('start dispatcher loop')
        while True:
            # end the loop
            if not self.do_run:
                logger().debug('exit dispatcher loop')
                break
            try:
                self.poll()
            except QueueError as e:
                logger().error(f'job queue unavailable: {e}')
                time.sleep(self.POLL_INTERVAL)

    def stop(self):
        self.do_run = False

    def poll(self, timeout: Optional[float] = None) -> Optional[threading.Thread]:
        '''
        Start at most one job. Returns its worker thread, or None when
        no slot is free, the queue is empty or the job was rejected.
        '''
        self.queue.requeue_expired()
        # no free slot, jobs wait in the queue
        if self.worker_count >= self.MAX_WORKER_COUNT:
            time.sleep(self.POLL_INTERVAL if timeout is None else timeout)
            return None
        delivery = self.queue.reserve(
            timeout=self.POLL_INTERVAL if timeout is None else timeout)
        if delivery is None:
            return None
        if delivery.key in self.running:
            # visibility ran out under a live worker, whose verdict stands
            logger().warning(f'job is still being judged, hold the '
                             f'redelivery [id={delivery.key}]')
            self.queue.release(delivery, self.queue.visibility_timeout)
            return None
        job = self.validate(delivery)
        if job is None:
            return None
        if delivery.attempts > 1:
            logger().info(f'redelivered job [id={delivery.key}, '
                          f'attempt={delivery.attempts}]')
        self.inc_worker()
        thread = threading.Thread(
            target=self.process,
            args=(delivery, job),
            name=f'judge-{delivery.key}',
        )
        self.running[delivery.key] = thread
        thread.start()
        return thread

    def wait_idle(self, timeout: Optional[float] = None):
        for thread in list(self.running.values()):
            thread.join(timeout)

    def validate(self, delivery: Delivery) -> Optional[JudgeJob]:
        try:
            if delivery.payload is None:
                raise MalformedJobError('payload is not a JSON object')
            job = JudgeJob.model_validate(delivery.payload)
            if str(job.submission_id) != delivery.key:
                raise MalformedJobError('submission id does not match')
            if not self.worker.supports(job.language):
                raise MalformedJobError(
                    f'unsupported language {job.language!r}')
            if self.worker.submissions.get(job.submission_id) is None:
                raise MalformedJobError(
                    f'submission {job.submission_id} not found')
            missing = self.worker.test_cases.missing(job.problem_id,
                                                     job.test_case_refs)
            if missing:
                raise MalformedJobError(
                    f'test cases {missing} not found for problem '
                    f'{job.problem_id}')
        except (ValidationError, MalformedJobError) as e:
            self.reject(delivery, str(e))
            return None
        except StorageError as e:
            logger().error(f'cannot validate job [id={delivery.key}]: {e}')
            self.queue.release(delivery, self.backoff(delivery.attempts))
            return None
        return job

    def reject(self, delivery: Delivery, reason: str):
        logger().warning(f'malformed job [id={delivery.key}]: {reason}')
        report = make_internal_error_report(
            int(delivery.key),
            f'malformed job: {reason}',
            max_error_length=self.worker.max_error_length,
        )
        try:
            self.sink.record(report)
        except SubmissionIdNotFoundError:
            logger().error(
                f'drop job of unknown submission [id={delivery.key}]')
        except InfrastructureError as e:
            logger().error(f'cannot record malformed job [id={delivery.key}]: {e}')
            self.queue.release(delivery, self.backoff(delivery.attempts))
            return
        self.queue.ack(delivery)

    def keep_alive(self, delivery: Delivery, done: threading.Event):
        '''Hold the job in flight until `done` is set.'''
        interval = max(self.queue.visibility_timeout / 3, self.POLL_INTERVAL)
        while not done.wait(interval):
            try:
                if not self.queue.extend(delivery):
                    if not done.is_set():
                        logger().warning(
                            f'job was handed out again [id={delivery.key}]')
                    return
            except QueueError as e:
                logger().error(
                    f'cannot extend job visibility [id={delivery.key}]: {e}')

    def process(self, delivery: Delivery, job: JudgeJob):
        submission_id = job.submission_id
        done = threading.Event()
        threading.Thread(
            target=self.keep_alive,
            args=(delivery, done),
            name=f'keep-alive-{delivery.key}',
            daemon=True,
        ).start()
        try:
            try:
                report = self.worker.judge(job)
            except (MalformedJobError, SubmissionIdNotFoundError) as e:
                self.reject(delivery, str(e))
                return
            except InfrastructureError as e:
                self.retry(delivery, job, e)
                return
            except Exception as e:
                logger().exception(
                    f'unexpected judge failure [id={submission_id}]')
                self.retry(delivery, job, e)
                return
            if report is not None:
                try:
                    self.sink.record(report)
                except InfrastructureError as e:
                    self.retry(delivery, job, e)
                    return
            if not self.queue.ack(delivery):
                logger().warning(
                    f'stale delivery acknowledged [id={submission_id}]')
        except QueueError as e:
            # left in flight, the visibility timeout hands it out again
            logger().error(f'job queue unavailable [id={submission_id}]: {e}')
        finally:
            done.set()
            if self.running.get(delivery.key) is threading.current_thread():
                del self.running[delivery.key]
            self.dec_worker()

    def retry(self, delivery: Delivery, job: JudgeJob, error: Exception):
        submission_id = job.submission_id
        if delivery.attempts < self.MAX_ATTEMPTS:
            delay = self.backoff(delivery.attempts)
            logger().warning(
                f'infrastructure error, retry in {delay:.1f}s '
                f'[id={submission_id}, attempt={delivery.attempts}/'
                f'{self.MAX_ATTEMPTS}]: {error}')
            self.queue.release(delivery, delay)
            return
        logger().error(f'give up after {delivery.attempts} attempts '
                       f'[id={submission_id}]: {error}')
        report = make_internal_error_report(
            submission_id,
            f'judge failed after {delivery.attempts} attempts: {error}',
            tests_total=len(job.test_case_refs),
            max_error_length=self.worker.max_error_length,
        )
        try:
            self.sink.record(report)
        except InfrastructureError as e:
            # never acknowledge an unrecorded result
            logger().critical(
                f'cannot record internal error [id={submission_id}]: {e}')
            self.queue.release(delivery, self.BACKOFF_MAX)
            return
        file_manager.backup_data(self.worker.working_dir, self.backup_dir,
                                 submission_id)
        self.queue.ack(delivery)

    def status(self) -> dict:
        return {
            'queueSize': self.queue.size(),
            'inFlight': self.queue.in_flight(),
            'maxTaskCount': self.MAX_TASK_COUNT,
            'workerCount': self.worker_count,
            'maxWorkerCount': self.MAX_WORKER_COUNT,
            'submissions': sorted(self.running.keys()),
            'running': self.do_run,
        }
