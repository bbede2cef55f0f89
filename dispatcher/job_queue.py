"""
At-least-once job queue keyed by submission id.

A reserved job stays in flight until it is acknowledged. A job that is
neither acknowledged nor released before its visibility timeout becomes
visible again and is redelivered with an incremented attempt count.
"""
import json
import threading
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, Optional, Tuple

import redis

from .exception import (
    DuplicatedSubmissionIdError,
    MalformedJobError,
    QueueError,
    QueueFullError,
)
from .utils import logger

__all__ = [
    'Delivery',
    'JobQueue',
    'MemoryJobQueue',
    'RedisJobQueue',
]


@dataclass(frozen=True)
class Delivery:
    key: str
    # raw message, validated by the consumer; None if it was not JSON
    payload: Optional[dict]
    attempts: int
    receipt: str


def _job_key(payload: dict) -> str:
    try:
        return str(int(payload['submission_id']))
    except (KeyError, TypeError, ValueError):
        raise MalformedJobError('job has no usable submission id') from None


class JobQueue(ABC):
    visibility_timeout: float

    @abstractmethod
    def put(self, payload: dict) -> str:
        '''Enqueue a job, raise if its submission is already queued.'''

    @abstractmethod
    def reserve(self, timeout: float = 0) -> Optional[Delivery]:
        ...

    @abstractmethod
    def ack(self, delivery: Delivery) -> bool:
        '''Remove a finished job. False if the delivery is stale.'''

    @abstractmethod
    def release(self, delivery: Delivery, delay: float = 0) -> bool:
        '''Make an in-flight job visible again after `delay` seconds.'''

    @abstractmethod
    def extend(self, delivery: Delivery) -> bool:
        '''
        Push the visibility deadline of a job still being worked on a
        full timeout ahead. False if the delivery is stale.
        '''

    @abstractmethod
    def requeue_expired(self) -> int:
        ...

    @abstractmethod
    def size(self) -> int:
        ...

    @abstractmethod
    def in_flight(self) -> int:
        ...


class MemoryJobQueue(JobQueue):
    '''In-process queue, lost on restart. For tests and single-node use.'''

    def __init__(
        self,
        max_size: int = 0,
        visibility_timeout: float = 300,
        clock: Callable[[], float] = time.time,
    ):
        self.max_size = max_size
        self.visibility_timeout = visibility_timeout
        self.clock = clock
        self.cond = threading.Condition()
        # key -> time it becomes visible
        self.ready: Dict[str, float] = {}
        # key -> (receipt, visibility deadline)
        self.inflight: Dict[str, Tuple[str, float]] = {}
        self.payloads: Dict[str, dict] = {}
        self.attempts: Dict[str, int] = {}

    def put(self, payload: dict) -> str:
        key = _job_key(payload)
        with self.cond:
            if key in self.payloads:
                raise DuplicatedSubmissionIdError(
                    f'submission {key} is already queued')
            if self.max_size and len(self.payloads) >= self.max_size:
                raise QueueFullError('task queue is full now')
            self.payloads[key] = payload
            self.ready[key] = self.clock()
            self.cond.notify()
        return key

    def _requeue_expired_locked(self) -> int:
        now = self.clock()
        expired = [k for k, (_, dl) in self.inflight.items() if dl <= now]
        for key in expired:
            del self.inflight[key]
            self.ready[key] = now
            logger().warning(f'job visibility timed out, redeliver [id={key}]')
        return len(expired)

    def _next_ready_locked(self) -> Optional[str]:
        now = self.clock()
        visible = [(at, k) for k, at in self.ready.items() if at <= now]
        if not visible:
            return None
        # insertion order breaks ties
        return min(visible, key=lambda v: v[0])[1]

    def reserve(self, timeout: float = 0) -> Optional[Delivery]:
        end = time.monotonic() + timeout
        with self.cond:
            while True:
                self._requeue_expired_locked()
                key = self._next_ready_locked()
                if key is not None:
                    break
                remaining = end - time.monotonic()
                if remaining <= 0:
                    return None
                self.cond.wait(min(remaining, 0.05))
            del self.ready[key]
            self.attempts[key] = self.attempts.get(key, 0) + 1
            receipt = uuid.uuid4().hex
            self.inflight[key] = (receipt,
                                  self.clock() + self.visibility_timeout)
            return Delivery(
                key=key,
                payload=self.payloads.get(key),
                attempts=self.attempts[key],
                receipt=receipt,
            )

    def _owns(self, delivery: Delivery) -> bool:
        current = self.inflight.get(delivery.key)
        return current is not None and current[0] == delivery.receipt

    def ack(self, delivery: Delivery) -> bool:
        with self.cond:
            if not self._owns(delivery):
                return False
            del self.inflight[delivery.key]
            self.payloads.pop(delivery.key, None)
            self.attempts.pop(delivery.key, None)
            return True

    def release(self, delivery: Delivery, delay: float = 0) -> bool:
        with self.cond:
            if not self._owns(delivery):
                return False
            del self.inflight[delivery.key]
            self.ready[delivery.key] = self.clock() + delay
            self.cond.notify()
            return True

    def extend(self, delivery: Delivery) -> bool:
        with self.cond:
            if not self._owns(delivery):
                return False
            self.inflight[delivery.key] = (
                delivery.receipt,
                self.clock() + self.visibility_timeout,
            )
            return True

    def requeue_expired(self) -> int:
        with self.cond:
            count = self._requeue_expired_locked()
            if count:
                self.cond.notify_all()
            return count

    def size(self) -> int:
        with self.cond:
            return len(self.ready)

    def in_flight(self) -> int:
        with self.cond:
            return len(self.inflight)


def _s(value) -> Optional[str]:
    if isinstance(value, bytes):
        return value.decode()
    return value


@contextmanager
def _redis_errors() -> Iterator[None]:
    try:
        yield
    except redis.exceptions.RedisError as e:
        raise QueueError(f'redis error: {e}') from e


class RedisJobQueue(JobQueue):
    '''
    Durable queue on redis.

    ready      sorted set, member = submission id, score = visible at
    inflight   sorted set, member = submission id, score = visibility deadline
    payload    hash, submission id -> job JSON
    attempts   hash, submission id -> delivery count
    receipt    hash, submission id -> receipt of the current delivery
    '''

    def __init__(
        self,
        client: redis.Redis,
        prefix: str = 'judge-queue',
        max_size: int = 0,
        visibility_timeout: float = 300,
        poll_interval: float = 0.2,
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.max_size = max_size
        self.visibility_timeout = visibility_timeout
        self.poll_interval = poll_interval
        self.clock = clock
        self.ready_key = f'{prefix}:ready'
        self.inflight_key = f'{prefix}:inflight'
        self.payload_key = f'{prefix}:payload'
        self.attempts_key = f'{prefix}:attempts'
        self.receipt_key = f'{prefix}:receipt'

    def put(self, payload: dict) -> str:
        key = _job_key(payload)
        data = json.dumps(payload)
        with _redis_errors(), self.client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(self.payload_key)
                    if pipe.hexists(self.payload_key, key):
                        raise DuplicatedSubmissionIdError(
                            f'submission {key} is already queued')
                    if self.max_size and pipe.hlen(
                            self.payload_key) >= self.max_size:
                        raise QueueFullError('task queue is full now')
                    pipe.multi()
                    pipe.hset(self.payload_key, key, data)
                    pipe.zadd(self.ready_key, {key: self.clock()})
                    pipe.execute()
                    return key
                except redis.WatchError:
                    continue

    def _try_reserve(self) -> Optional[Delivery]:
        with self.client.pipeline() as pipe:
            while True:
                try:
                    now = self.clock()
                    pipe.watch(self.ready_key)
                    keys = pipe.zrangebyscore(self.ready_key,
                                              '-inf',
                                              now,
                                              start=0,
                                              num=1)
                    if not keys:
                        return None
                    key = _s(keys[0])
                    raw = pipe.hget(self.payload_key, key)
                    receipt = uuid.uuid4().hex
                    pipe.multi()
                    pipe.zrem(self.ready_key, key)
                    pipe.zadd(self.inflight_key,
                              {key: now + self.visibility_timeout})
                    pipe.hincrby(self.attempts_key, key, 1)
                    pipe.hset(self.receipt_key, key, receipt)
                    _, _, attempts, _ = pipe.execute()
                    break
                except redis.WatchError:
                    continue
        try:
            payload = json.loads(raw) if raw is not None else None
        except json.JSONDecodeError:
            payload = None
        return Delivery(
            key=key,
            payload=payload if isinstance(payload, dict) else None,
            attempts=int(attempts),
            receipt=receipt,
        )

    def reserve(self, timeout: float = 0) -> Optional[Delivery]:
        end = time.monotonic() + timeout
        with _redis_errors():
            while True:
                self.requeue_expired()
                delivery = self._try_reserve()
                remaining = end - time.monotonic()
                if delivery is not None or remaining <= 0:
                    return delivery
                time.sleep(min(self.poll_interval, remaining))

    def _finish(self, delivery: Delivery, requeue_at: Optional[float]):
        with _redis_errors(), self.client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(self.receipt_key)
                    current = _s(pipe.hget(self.receipt_key, delivery.key))
                    if current != delivery.receipt:
                        return False
                    pipe.multi()
                    pipe.zrem(self.inflight_key, delivery.key)
                    pipe.hdel(self.receipt_key, delivery.key)
                    if requeue_at is None:
                        pipe.hdel(self.payload_key, delivery.key)
                        pipe.hdel(self.attempts_key, delivery.key)
                    else:
                        pipe.zadd(self.ready_key, {delivery.key: requeue_at})
                    pipe.execute()
                    return True
                except redis.WatchError:
                    continue

    def ack(self, delivery: Delivery) -> bool:
        return self._finish(delivery, None)

    def release(self, delivery: Delivery, delay: float = 0) -> bool:
        return self._finish(delivery, self.clock() + delay)

    def extend(self, delivery: Delivery) -> bool:
        with _redis_errors(), self.client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(self.receipt_key, self.inflight_key)
                    current = _s(pipe.hget(self.receipt_key, delivery.key))
                    if current != delivery.receipt:
                        return False
                    pipe.multi()
                    pipe.zadd(
                        self.inflight_key,
                        {delivery.key: self.clock() + self.visibility_timeout},
                        xx=True,
                    )
                    pipe.execute()
                    return True
                except redis.WatchError:
                    continue

    def requeue_expired(self) -> int:
        count = 0
        with _redis_errors():
            now = self.clock()
            expired = self.client.zrangebyscore(self.inflight_key, '-inf',
                                                now)
            for member in expired:
                key = _s(member)
                with self.client.pipeline() as pipe:
                    try:
                        pipe.watch(self.inflight_key)
                        deadline = pipe.zscore(self.inflight_key, key)
                        if deadline is None or deadline > now:
                            continue
                        pipe.multi()
                        pipe.zrem(self.inflight_key, key)
                        pipe.hdel(self.receipt_key, key)
                        pipe.zadd(self.ready_key, {key: now})
                        pipe.execute()
                    except redis.WatchError:
                        # someone else finished or reclaimed it
                        continue
                count += 1
                logger().warning(
                    f'job visibility timed out, redeliver [id={key}]')
        return count

    def size(self) -> int:
        with _redis_errors():
            return self.client.zcard(self.ready_key)

    def in_flight(self) -> int:
        with _redis_errors():
            return self.client.zcard(self.inflight_key)
