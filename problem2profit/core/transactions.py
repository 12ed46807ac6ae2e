"""
Transaction runner with conflict retry and an operation-level timeout.

Every multi-document mutation in the core services goes through
``TransactionRunner.run``. The unit of work receives a session inside
``session.begin()``; it either commits as a whole or rolls back as a whole.
Write contention is mapped to ``TransactionConflictError`` and the whole unit
of work is retried with exponential backoff.
"""
import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

import structlog
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from problem2profit.config import get_settings
from problem2profit.core.exceptions import OperationTimeoutError, TransactionConflictError
from problem2profit.database.connection import get_session_factory
from problem2profit.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# serialization_failure, deadlock_detected
CONTENTION_SQLSTATES = {"40001", "40P01"}


def is_contention_error(error: DBAPIError) -> bool:
    """
    Check whether a driver error means another transaction got in the way.

    Args:
        error: SQLAlchemy-wrapped driver error

    Returns:
        bool: True for serialization failures, deadlocks and SQLite locks
    """
    original = error.orig
    sqlstate = getattr(original, "pgcode", None) or getattr(original, "sqlstate", None)
    if sqlstate in CONTENTION_SQLSTATES:
        return True
    return "database is locked" in str(original)


class TransactionRunner:
    """
    Runs units of work atomically.

    Features:
    - One session and one transaction per attempt
    - Retry of the whole unit of work on write contention
    - Operation-level timeout surfaced as a retryable error
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        max_attempts: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
        base_delay_seconds: Optional[float] = None,
    ):
        """
        Initialize transaction runner.

        Args:
            session_factory: Optional session factory (uses the global one if not provided)
            max_attempts: Attempts before a conflict is surfaced
            timeout_seconds: Operation-level timeout across all attempts
            base_delay_seconds: Base delay for the retry backoff
        """
        settings = get_settings()
        self._session_factory = session_factory
        self.max_attempts = max_attempts or settings.transaction_max_attempts
        self.timeout_seconds = timeout_seconds or settings.transaction_timeout_seconds
        self.base_delay_seconds = (
            base_delay_seconds
            if base_delay_seconds is not None
            else settings.transaction_retry_base_delay
        )

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        """Session factory, resolved lazily so tests can inject their own."""
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    async def _run_once(
        self, work: Callable[[AsyncSession], Awaitable[T]], operation: str
    ) -> T:
        async with self.session_factory() as session:
            try:
                async with session.begin():
                    return await work(session)
            except StaleDataError as e:
                raise TransactionConflictError(operation, str(e)) from e
            except DBAPIError as e:
                if is_contention_error(e):
                    raise TransactionConflictError(operation, str(e.orig)) from e
                raise

    async def _run_with_retries(
        self, work: Callable[[AsyncSession], Awaitable[T]], operation: str
    ) -> T:
        def _before_sleep(retry_state: RetryCallState) -> None:
            metrics.record_transaction_retry(operation)
            logger.warning(
                "transaction_conflict_retrying",
                operation=operation,
                attempt=retry_state.attempt_number,
            )

        retrying = AsyncRetrying(
            retry=retry_if_exception_type(TransactionConflictError),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.base_delay_seconds, max=2),
            before_sleep=_before_sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                result = await self._run_once(work, operation)
        return result

    async def run(
        self, work: Callable[[AsyncSession], Awaitable[T]], operation: str
    ) -> T:
        """
        Run a unit of work in one atomic transaction.

        Args:
            work: Async callable receiving the transaction's session
            operation: Operation name for logs and metrics

        Returns:
            T: Whatever the unit of work returns

        Raises:
            TransactionConflictError: Contention persisted past max attempts
            OperationTimeoutError: The operation exceeded the timeout
        """
        try:
            return await asyncio.wait_for(
                self._run_with_retries(work, operation), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError as e:
            metrics.record_transaction_failure(operation, "timeout")
            logger.error(
                "transaction_timed_out",
                operation=operation,
                timeout_seconds=self.timeout_seconds,
            )
            raise OperationTimeoutError(operation, self.timeout_seconds) from e
        except TransactionConflictError:
            metrics.record_transaction_failure(operation, "conflict")
            logger.error(
                "transaction_conflict_exhausted",
                operation=operation,
                max_attempts=self.max_attempts,
            )
            raise
