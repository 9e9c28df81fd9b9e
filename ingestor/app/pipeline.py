import asyncio
import logging
from collections import Counter
from typing import Optional

from .broker import RedisQueue
from .db import DB
from .producer import SEED_BATCH, publish_record, publish_seed
from .settings import PUBLISH_DUPLICATE_PROBE, PUBLISH_SEED, PURGE_QUEUE_ON_START, SHUTDOWN_GRACE
from .worker import worker_loop

logger = logging.getLogger("ingestor.pipeline")


class Pipeline:
    """
    Owns the store and broker handles and the consumer task.

    start() brings the store and broker up (any failure there is fatal),
    publishes the seed batch, then starts the consumer. stop() asks the
    consumer to finish and releases both connections.
    """

    def __init__(
        self,
        db: DB,
        queue: RedisQueue,
        purge_on_start: bool = PURGE_QUEUE_ON_START,
        publish_seed_batch: bool = PUBLISH_SEED,
        duplicate_probe: bool = PUBLISH_DUPLICATE_PROBE,
        shutdown_grace: float = SHUTDOWN_GRACE,
    ):
        self.db = db
        self.queue = queue
        self._purge_on_start = purge_on_start
        self._publish_seed_batch = publish_seed_batch
        self._duplicate_probe = duplicate_probe
        self._shutdown_grace = shutdown_grace
        self._stop = asyncio.Event()
        self._consumer: Optional[asyncio.Task] = None
        self.ready = False

    async def start(self) -> None:
        await self.db.connect()
        try:
            await self.db.init_schema()
            await self.queue.ping()

            if self._purge_on_start:
                await self.queue.purge()

            if self._publish_seed_batch:
                producer = asyncio.create_task(publish_seed(self.queue), name="producer")
                await producer
                logger.info("initial messages published")
        except BaseException:
            await self.queue.close()
            await self.db.close()
            raise

        self._consumer = asyncio.create_task(
            worker_loop("consumer", self.queue, self.db, self._stop), name="consumer"
        )
        self._consumer.add_done_callback(self._consumer_finished)
        logger.info("consumer started")

        if self._duplicate_probe:
            if await publish_record(self.queue, SEED_BATCH[0]):
                logger.info("duplicate message published for testing")

        self.ready = not self._consumer.done()

    def _consumer_finished(self, task: asyncio.Task) -> None:
        self.ready = False
        if task.cancelled():
            logger.warning("consumer cancelled")
        elif task.exception() is not None:
            logger.error("consumer exited with error: %r", task.exception())
        elif not self._stop.is_set():
            logger.error("consumer exited before stop was requested")

    async def stop(self) -> Optional[Counter]:
        self.ready = False
        self._stop.set()
        tally = None
        try:
            if self._consumer is not None:
                done, _ = await asyncio.wait({self._consumer}, timeout=self._shutdown_grace)
                if not done:
                    logger.warning("consumer did not stop within %.1fs, cancelling", self._shutdown_grace)
                    self._consumer.cancel()
                elif not self._consumer.cancelled() and self._consumer.exception() is None:
                    tally = self._consumer.result()
                self._consumer = None
        finally:
            await self.queue.close()
            await self.db.close()
        logger.info("pipeline stopped")
        return tally
