import asyncio

import asyncpg
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError, ResponseError, TimeoutError as RedisTimeoutError

from fakes import FakeRedis
from ingestor.app.broker import RedisQueue
from ingestor.app.models import Payment, encode
from ingestor.app.worker import DIVERTED, DROPPED, INSERTED, process_one, worker_loop


def body(user_id, payment_id, amount):
    return encode(Payment(user_id=user_id, payment_id=payment_id, deposit_amount=amount))


def drained_queue(redis_client=None):
    drained = asyncio.Event()
    client = redis_client or FakeRedis()
    client.drained = drained
    return RedisQueue(client, key="payments", poll_timeout=0.01), drained


@pytest.mark.asyncio
async def test_new_payment_is_inserted(db, store):
    await db.connect()
    assert await process_one(db, body(1, 1, 10)) == INSERTED
    assert store.rows("payment_events") == [(1, 1, 10)]
    assert store.rows("skipped_messages") == []


@pytest.mark.asyncio
async def test_duplicate_payment_is_diverted_with_same_values(db, store):
    await db.connect()
    await process_one(db, body(1, 1, 10))
    assert await process_one(db, body(1, 1, 10)) == DIVERTED
    assert store.rows("payment_events") == [(1, 1, 10)]
    assert store.rows("skipped_messages") == [(1, 1, 10)]


@pytest.mark.asyncio
async def test_second_divert_of_same_id_is_dropped(db, store):
    await db.connect()
    for _ in range(2):
        await process_one(db, body(1, 1, 10))
    assert await process_one(db, body(1, 1, 10)) == DROPPED
    assert store.rows("skipped_messages") == [(1, 1, 10)]


@pytest.mark.asyncio
async def test_undecodable_message_is_dropped(db, store):
    await db.connect()
    raw = b'{"user_id": "invalid", "payment_id": 10, "deposit_amount": 50}'
    assert await process_one(db, raw) == DROPPED
    assert store.rows("payment_events") == []


@pytest.mark.asyncio
async def test_other_store_error_drops_record_from_both_tables(db, store):
    await db.connect()
    store.fail_on["payment_events"] = asyncpg.DeadlockDetectedError("deadlock detected")
    assert await process_one(db, body(1, 1, 10)) == DROPPED
    assert store.rows("payment_events") == []
    assert store.rows("skipped_messages") == []


@pytest.mark.asyncio
async def test_failed_divert_is_dropped(db, store):
    await db.connect()
    await process_one(db, body(1, 1, 10))
    store.fail_on["skipped_messages"] = asyncpg.DiskFullError("could not extend file")
    assert await process_one(db, body(1, 1, 10)) == DROPPED
    assert store.rows("skipped_messages") == []


@pytest.mark.asyncio
async def test_reference_batch_with_duplicate(db, store):
    await db.connect()
    q, drained = drained_queue()
    for b in (body(1, 1, 10), body(1, 2, 20), body(2, 3, 20), body(1, 1, 10)):
        await q.publish(b)

    tally = await asyncio.wait_for(worker_loop("t", q, db, drained), timeout=5)

    assert tally == {INSERTED: 3, DIVERTED: 1}
    assert sorted(store.rows("payment_events")) == [(1, 1, 10), (1, 2, 20), (2, 3, 20)]
    assert store.rows("skipped_messages") == [(1, 1, 10)]


@pytest.mark.asyncio
async def test_bad_message_does_not_block_later_ones(db, store):
    await db.connect()
    q, drained = drained_queue()
    await q.publish(b"garbage")
    await q.publish(body(5, 50, 500))

    tally = await asyncio.wait_for(worker_loop("t", q, db, drained), timeout=5)

    assert tally == {DROPPED: 1, INSERTED: 1}
    assert store.rows("payment_events") == [(5, 50, 500)]


@pytest.mark.asyncio
async def test_loop_stops_on_stop_event(db, queue):
    await db.connect()
    stop = asyncio.Event()
    task = asyncio.create_task(worker_loop("t", queue, db, stop))
    await queue.publish(body(1, 1, 10))
    await asyncio.sleep(0.05)
    stop.set()
    tally = await asyncio.wait_for(task, timeout=5)
    assert tally[INSERTED] == 1


@pytest.mark.asyncio
async def test_unexpected_error_does_not_stop_loop(db, store, monkeypatch):
    await db.connect()
    q, drained = drained_queue()
    await q.publish(body(1, 1, 10))
    await q.publish(body(1, 2, 20))

    real_insert = db.insert_primary
    calls = []

    async def flaky_insert(payment):
        calls.append(payment.payment_id)
        if len(calls) == 1:
            raise RuntimeError("bug")
        await real_insert(payment)

    monkeypatch.setattr(db, "insert_primary", flaky_insert)
    tally = await asyncio.wait_for(worker_loop("t", q, db, drained), timeout=5)

    assert calls == [1, 2]
    assert tally == {INSERTED: 1}
    assert store.rows("payment_events") == [(1, 2, 20)]


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [
    RedisTimeoutError("Timeout reading from socket"),
    RedisConnectionError("Connection reset by peer"),
    ResponseError("LOADING Redis is loading the dataset in memory"),
])
async def test_broker_read_error_does_not_end_consumption(db, store, error):
    await db.connect()
    client = FakeRedis()
    client.read_errors.append(error)
    q, drained = drained_queue(client)
    await q.publish(body(1, 1, 10))

    tally = await asyncio.wait_for(worker_loop("t", q, db, drained), timeout=5)

    assert tally == {INSERTED: 1}
    assert store.rows("payment_events") == [(1, 1, 10)]
    assert client.reads >= 2


@pytest.mark.asyncio
async def test_broker_outage_keeps_polling_until_stopped(db, queue, fake_redis):
    await db.connect()
    for _ in range(5):
        fake_redis.read_errors.append(RedisConnectionError("Connection refused"))
    stop = asyncio.Event()
    task = asyncio.create_task(worker_loop("t", queue, db, stop))

    await asyncio.sleep(0.1)
    assert not task.done()

    await queue.publish(body(2, 20, 200))
    await asyncio.sleep(0.1)
    stop.set()
    tally = await asyncio.wait_for(task, timeout=5)
    assert tally == {INSERTED: 1}
