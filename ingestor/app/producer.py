import logging
from typing import Iterable

from redis.exceptions import RedisError

from .broker import RedisQueue
from .models import Payment, encode

logger = logging.getLogger("ingestor.producer")

SEED_BATCH = (
    Payment(user_id=1, payment_id=1, deposit_amount=10),
    Payment(user_id=1, payment_id=2, deposit_amount=20),
    Payment(user_id=2, payment_id=3, deposit_amount=20),
)


async def publish_record(queue: RedisQueue, payment: Payment) -> bool:
    try:
        await queue.publish(encode(payment))
    except (RedisError, OSError) as exc:
        logger.error("failed to publish payment_id=%s: %s", payment.payment_id, exc)
        return False
    logger.info("published %s", payment)
    return True


async def publish_seed(queue: RedisQueue, batch: Iterable[Payment] = SEED_BATCH) -> int:
    """Publish every payment in ``batch``; returns how many made it onto the queue."""
    published = 0
    for payment in batch:
        if await publish_record(queue, payment):
            published += 1
    logger.info("seed batch done, published=%d queue=%s", published, queue.key)
    return published
