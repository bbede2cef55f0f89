import threading

import fakeredis
import pytest

from dispatcher.exception import (
    DuplicatedSubmissionIdError,
    MalformedJobError,
    QueueError,
    QueueFullError,
)
from dispatcher.job_queue import MemoryJobQueue, RedisJobQueue
from tests.helpers import FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(params=['memory', 'redis'])
def queue(request, clock):
    if request.param == 'memory':
        return MemoryJobQueue(max_size=3, visibility_timeout=30, clock=clock)
    return RedisJobQueue(
        client=fakeredis.FakeRedis(server=fakeredis.FakeServer()),
        prefix='test-queue',
        max_size=3,
        visibility_timeout=30,
        poll_interval=0.01,
        clock=clock,
    )


def _job(submission_id):
    return {'submission_id': submission_id, 'problem_id': 1}


def test_put_reserve_ack(queue):
    assert queue.put(_job(1)) == '1'
    assert queue.size() == 1
    delivery = queue.reserve()
    assert delivery.key == '1'
    assert delivery.payload == _job(1)
    assert delivery.attempts == 1
    assert queue.size() == 0
    assert queue.in_flight() == 1
    assert queue.ack(delivery)
    assert queue.in_flight() == 0
    assert queue.reserve() is None


def test_fifo_order(queue, clock):
    for sid in (3, 1, 2):
        queue.put(_job(sid))
        clock.now += 1
    keys = []
    while (delivery := queue.reserve()) is not None:
        keys.append(delivery.key)
    assert keys == ['3', '1', '2']


def test_duplicate_submission(queue):
    queue.put(_job(1))
    with pytest.raises(DuplicatedSubmissionIdError):
        queue.put(_job(1))
    delivery = queue.reserve()
    # still counted while in flight
    with pytest.raises(DuplicatedSubmissionIdError):
        queue.put(_job(1))
    queue.ack(delivery)
    queue.put(_job(1))


def test_queue_full(queue):
    for sid in range(3):
        queue.put(_job(sid))
    with pytest.raises(QueueFullError):
        queue.put(_job(99))


@pytest.mark.parametrize('payload', [{}, {'submission_id': 'abc'}])
def test_put_without_submission_id(queue, payload):
    with pytest.raises(MalformedJobError):
        queue.put(payload)


def test_visibility_timeout_redelivers(queue, clock):
    queue.put(_job(1))
    first = queue.reserve()
    clock.now += 29
    assert queue.reserve() is None
    clock.now += 2
    second = queue.reserve()
    assert second.key == '1'
    assert second.attempts == 2
    assert second.receipt != first.receipt
    # the crashed consumer cannot acknowledge any more
    assert not queue.ack(first)
    assert queue.in_flight() == 1
    assert queue.ack(second)


def test_extend_keeps_job_in_flight(queue, clock):
    queue.put(_job(1))
    delivery = queue.reserve()
    clock.now += 20
    assert queue.extend(delivery)
    clock.now += 20
    assert queue.requeue_expired() == 0
    assert queue.reserve() is None
    clock.now += 11
    again = queue.reserve()
    assert again.attempts == 2
    # a stale delivery cannot take the job back
    assert not queue.extend(delivery)
    assert queue.ack(again)


def test_release_with_delay(queue, clock):
    queue.put(_job(1))
    delivery = queue.reserve()
    assert queue.release(delivery, delay=10)
    assert queue.reserve() is None
    clock.now += 10
    again = queue.reserve()
    assert again.attempts == 2
    assert not queue.release(delivery)


def test_requeue_expired(queue, clock):
    queue.put(_job(1))
    queue.put(_job(2))
    queue.reserve()
    queue.reserve()
    clock.now += 31
    assert queue.requeue_expired() == 2
    assert queue.size() == 2
    assert queue.in_flight() == 0


def test_reserve_waits_for_put(clock):
    queue = MemoryJobQueue(clock=clock)
    timer = threading.Timer(0.05, queue.put, args=(_job(1), ))
    timer.start()
    delivery = queue.reserve(timeout=2)
    timer.join()
    assert delivery is not None
    assert delivery.key == '1'


def test_redis_unreadable_payload(clock):
    client = fakeredis.FakeRedis(server=fakeredis.FakeServer())
    queue = RedisJobQueue(client=client, prefix='q', clock=clock)
    queue.put(_job(1))
    client.hset('q:payload', '1', 'not json')
    delivery = queue.reserve()
    assert delivery.key == '1'
    assert delivery.payload is None


def test_redis_survives_new_client_object(clock):
    server = fakeredis.FakeServer()
    RedisJobQueue(client=fakeredis.FakeRedis(server=server),
                  clock=clock).put(_job(1))
    queue = RedisJobQueue(client=fakeredis.FakeRedis(server=server),
                          clock=clock)
    assert queue.reserve().key == '1'


def test_redis_error_is_queue_error(clock):
    server = fakeredis.FakeServer()
    server.connected = False
    queue = RedisJobQueue(client=fakeredis.FakeRedis(server=server),
                          clock=clock)
    with pytest.raises(QueueError):
        queue.put(_job(1))
    with pytest.raises(QueueError):
        queue.size()
