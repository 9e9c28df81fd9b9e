import asyncio
import logging
from collections import Counter

from .broker import RedisQueue
from .db import DB, DuplicateKeyError, StoreError
from .models import DecodeError, decode

logger = logging.getLogger("ingestor.worker")

INSERTED = "inserted"
DIVERTED = "diverted"
DROPPED = "dropped"


async def process_one(db: DB, raw: bytes) -> str:
    """
    Return: 'inserted' | 'diverted' | 'dropped'
    """
    try:
        payment = decode(raw)
    except DecodeError as exc:
        logger.warning("failed to decode message, dropped: %s", exc)
        return DROPPED

    try:
        await db.insert_primary(payment)
    except DuplicateKeyError:
        try:
            await db.insert_secondary(payment)
        except StoreError as exc:
            logger.error("failed to insert into skipped_messages, dropped %s: %s", payment, exc)
            return DROPPED
        logger.info("duplicate payment_id=%s moved to skipped_messages: %s", payment.payment_id, payment)
        return DIVERTED
    except StoreError as exc:
        logger.error("failed to insert into payment_events, dropped %s: %s", payment, exc)
        return DROPPED

    logger.info("inserted payment: %s", payment)
    return INSERTED


async def worker_loop(name: str, queue: RedisQueue, db: DB, stop_event: asyncio.Event) -> Counter:
    tally: Counter = Counter()
    async for raw in queue.messages(stop_event):
        try:
            status = await process_one(db, raw)
        except Exception:
            logger.exception("worker=%s failed to process message", name)
            continue
        tally[status] += 1
        logger.debug("worker=%s status=%s", name, status)
    logger.info("worker=%s stopped, processed=%s", name, dict(tally))
    return tally
