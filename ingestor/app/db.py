import asyncio
import logging
import re
from typing import Any, Dict, List, Optional

import asyncpg
from tenacity import AsyncRetrying, RetryCallState, stop_after_attempt, wait_fixed

from .models import Payment
from .settings import DB_MAX_ATTEMPTS, DB_POOL_MAX, DB_RETRY_DELAY

logger = logging.getLogger("ingestor.db")

DDL = """
CREATE TABLE IF NOT EXISTS payment_events (
  user_id INT,
  payment_id INT PRIMARY KEY,
  deposit_amount INT
);

CREATE TABLE IF NOT EXISTS skipped_messages (
  user_id INT,
  payment_id INT PRIMARY KEY,
  deposit_amount INT
);
"""

PING = "SELECT 1;"

INSERT_PAYMENT = """
INSERT INTO payment_events (user_id, payment_id, deposit_amount)
VALUES ($1, $2, $3);
"""

INSERT_SKIPPED = """
INSERT INTO skipped_messages (user_id, payment_id, deposit_amount)
VALUES ($1, $2, $3);
"""

SELECT_PAYMENTS = """
SELECT user_id, payment_id, deposit_amount
FROM payment_events
ORDER BY payment_id DESC
LIMIT $1;
"""

SELECT_SKIPPED = """
SELECT user_id, payment_id, deposit_amount
FROM skipped_messages
ORDER BY payment_id DESC
LIMIT $1;
"""

UNIQUE_VIOLATION = "23505"
_DUPLICATE_TEXT = re.compile(r"duplicate key value|unique constraint|23505", re.IGNORECASE)

# failures of a single statement; anything else is a bug and propagates
_DRIVER_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)


class StoreError(Exception):
    """A store operation failed."""


class DuplicateKeyError(StoreError):
    """The payment_id is already present in the target table."""


class StoreUnavailableError(StoreError):
    """The store could not be reached within the retry budget."""


def is_duplicate_key_error(exc: BaseException) -> bool:
    """
    Classify a driver error as a uniqueness violation.

    asyncpg raises a dedicated exception type; other drivers expose the
    SQLSTATE as ``sqlstate`` or ``pgcode``. When neither is present the
    message text is matched instead.
    """
    if isinstance(exc, asyncpg.UniqueViolationError):
        return True
    code = getattr(exc, "sqlstate", None) or getattr(exc, "pgcode", None)
    if code:
        return code == UNIQUE_VIOLATION
    return bool(_DUPLICATE_TEXT.search(str(exc)))


class DB:
    def __init__(
        self,
        dsn: str,
        max_attempts: int = DB_MAX_ATTEMPTS,
        retry_delay: float = DB_RETRY_DELAY,
        max_size: int = DB_POOL_MAX,
    ):
        self._dsn = dsn
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay
        self._max_size = max_size
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self) -> None:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_fixed(self._retry_delay),
            before_sleep=self._log_failed_attempt,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await self._open_and_ping()
        except Exception as exc:
            logger.error(
                "postgres connection failed (attempt %d/%d): %s",
                self._max_attempts, self._max_attempts, exc,
            )
            raise StoreUnavailableError(
                f"postgres unreachable after {self._max_attempts} attempts"
            ) from exc
        logger.info("connected to postgres")

    async def _open_and_ping(self) -> None:
        pool = await asyncpg.create_pool(dsn=self._dsn, min_size=1, max_size=self._max_size)
        try:
            async with pool.acquire() as conn:
                await conn.fetchval(PING)
        except BaseException:
            await pool.close()
            raise
        self.pool = pool

    def _log_failed_attempt(self, state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        logger.warning(
            "postgres connection failed (attempt %d/%d): %s",
            state.attempt_number, self._max_attempts, exc,
        )

    async def close(self) -> None:
        if self.pool:
            await self.pool.close()
            self.pool = None

    async def init_schema(self) -> None:
        assert self.pool
        async with self.pool.acquire() as conn:
            await conn.execute(DDL)
        logger.info("tables ensured: payment_events, skipped_messages")

    async def insert_primary(self, payment: Payment) -> None:
        assert self.pool
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(INSERT_PAYMENT, *payment.as_row())
        except _DRIVER_ERRORS as exc:
            if is_duplicate_key_error(exc):
                raise DuplicateKeyError(f"payment_id={payment.payment_id} already stored") from exc
            raise StoreError(f"insert into payment_events failed: {exc}") from exc

    async def insert_secondary(self, payment: Payment) -> None:
        assert self.pool
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(INSERT_SKIPPED, *payment.as_row())
        except _DRIVER_ERRORS as exc:
            raise StoreError(f"insert into skipped_messages failed: {exc}") from exc

    async def fetch_payments(self, limit: int = 1000) -> List[Dict[str, Any]]:
        return await self._fetch(SELECT_PAYMENTS, limit)

    async def fetch_skipped(self, limit: int = 1000) -> List[Dict[str, Any]]:
        return await self._fetch(SELECT_SKIPPED, limit)

    async def _fetch(self, query: str, limit: int) -> List[Dict[str, Any]]:
        assert self.pool
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, limit)
        return [dict(r) for r in rows]
