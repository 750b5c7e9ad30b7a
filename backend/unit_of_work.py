"""
Unit of Work
Runs one core operation as a single atomic transaction.

- the whole operation either commits or rolls back
- it is bounded by OPERATION_TIMEOUT_SECONDS (OperationTimeout)
- serialization failures / deadlocks reported by the database retry the
  whole attempt (tenacity), never a partial one
- post-commit hooks run strictly after a successful commit, one by one,
  and a failing hook is logged and never turns into a failed operation
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_random

from config import settings
from exceptions import DomainError, OperationTimeout, PersistenceError

logger = logging.getLogger(__name__)

# PostgreSQL: serialization_failure, deadlock_detected
SERIALIZATION_SQLSTATES = {"40001", "40P01"}


class SerializationConflict(Exception):
    """Internal signal: the database asked us to retry the transaction."""


def is_serialization_failure(exc: DBAPIError) -> bool:
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return code in SERIALIZATION_SQLSTATES


class UnitOfWork:
    """
    Usage:

        async def work(uow):
            ...
            uow.after_commit("send receipt", notifier.send, payment.id)
            return payment

        payment = await UnitOfWork(db).run(work, label="approve payment 12")
    """

    def __init__(
        self,
        db: AsyncSession,
        timeout: Optional[float] = None,
        attempts: Optional[int] = None
    ):
        self.db = db
        self.timeout = timeout if timeout is not None else settings.OPERATION_TIMEOUT_SECONDS
        self.attempts = attempts or settings.SERIALIZATION_RETRY_ATTEMPTS
        self._hooks: list[tuple[str, Callable[..., Awaitable[Any]], tuple, dict]] = []

    def after_commit(self, name: str, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> None:
        """Register a fire-and-forget effect to run once the transaction has committed."""
        self._hooks.append((name, func, args, kwargs))

    async def run(self, work: Callable[["UnitOfWork"], Awaitable[Any]], label: str = "operation") -> Any:
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(SerializationConflict),
            stop=stop_after_attempt(self.attempts),
            wait=wait_random(0.05, 0.25),
            reraise=True,
            before_sleep=lambda retry_state: logger.warning(
                f"Serialization conflict during {label} "
                f"(attempt {retry_state.attempt_number}), retrying..."
            )
        )

        try:
            async for attempt in retrying:
                with attempt:
                    result = await self._attempt(work, label)
        except SerializationConflict as e:
            logger.error(f"Giving up on {label} after {self.attempts} conflicting attempts")
            raise PersistenceError("Too many concurrent updates, please try again") from e

        await self._run_hooks(label)
        return result

    async def _attempt(self, work, label: str) -> Any:
        # Hooks registered by an aborted attempt must never run
        self._hooks = []
        try:
            result = await asyncio.wait_for(work(self), timeout=self.timeout)
            await self.db.commit()
            return result
        except DomainError as e:
            await self._rollback(label)
            logger.warning(f"{label} rejected: {e.code} - {e.reason}")
            raise
        except asyncio.TimeoutError as e:
            await self._rollback(label)
            logger.warning(f"{label} timed out after {self.timeout}s")
            raise OperationTimeout() from e
        except DBAPIError as e:
            await self._rollback(label)
            if is_serialization_failure(e):
                raise SerializationConflict(str(e)) from e
            logger.error(f"Database error during {label}: {e}", exc_info=True)
            raise PersistenceError() from e
        except SQLAlchemyError as e:
            await self._rollback(label)
            logger.error(f"Database error during {label}: {e}", exc_info=True)
            raise PersistenceError() from e
        except BaseException:
            await self._rollback(label)
            raise

    async def _rollback(self, label: str) -> None:
        try:
            await self.db.rollback()
        except Exception:
            # Keep the first error; the rollback failure is only logged
            logger.error(f"Rollback failed during {label}", exc_info=True)

    async def _run_hooks(self, label: str) -> None:
        hooks, self._hooks = self._hooks, []
        for name, func, args, kwargs in hooks:
            try:
                await func(*args, **kwargs)
            except Exception:
                logger.error(f"Post-commit hook '{name}' failed after {label}", exc_info=True)
                if self.db.in_transaction():
                    await self._rollback(f"hook '{name}'")
