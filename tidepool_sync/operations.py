"""
Operation results, cancellation tokens and handles.

Every sync operation completes with exactly one OperationResult holding
either a value or an error. Operations scheduled with
``TidepoolClient.submit`` return an OperationHandle immediately.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from .exceptions import OperationCancelledError, TidepoolSyncError, UnexpectedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class OperationResult(Generic[T]):
    """Outcome of one sync operation: a value or an error, never both."""

    operation: str
    value: T | None = None
    error: TidepoolSyncError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the value, raising the error if the operation failed."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]

    @classmethod
    def success(cls, operation: str, value: T) -> OperationResult[T]:
        return cls(operation=operation, value=value)

    @classmethod
    def failure(cls, operation: str, error: TidepoolSyncError) -> OperationResult[T]:
        return cls(operation=operation, error=error)


class CancellationToken:
    """Cooperative cancellation flag.

    Operations check it before sending, after receiving and before
    committing. Once a commit has happened it is not undone.
    """

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self, operation: str, stage: str) -> None:
        if self._cancelled:
            raise OperationCancelledError(operation, stage)


class OperationHandle(Generic[T]):
    """Handle to a scheduled operation."""

    def __init__(
        self,
        operation: str,
        task: asyncio.Task[OperationResult[T]],
        token: CancellationToken,
    ):
        self.operation = operation
        self.task = task
        self.token = token

    def cancel(self) -> None:
        """Request cancellation. Has no effect on work already committed."""
        self.token.cancel()
        self.task.cancel()

    def done(self) -> bool:
        return self.task.done()

    def _result_of(self, task: asyncio.Task[OperationResult[T]]) -> OperationResult[T]:
        if task.cancelled():
            return OperationResult.failure(
                self.operation, OperationCancelledError(self.operation, "before completion")
            )
        error = task.exception()
        if error is None:
            return task.result()
        if not isinstance(error, TidepoolSyncError):
            error = UnexpectedError(self.operation, error)
        return OperationResult.failure(self.operation, error)

    async def result(self) -> OperationResult[T]:
        """Wait for the operation and return its result."""
        try:
            await self.task
        except asyncio.CancelledError:
            if not self.task.cancelled():
                raise
        except Exception:
            pass  # folded into the result below
        return self._result_of(self.task)

    def add_done_callback(self, callback: Callable[[OperationResult[T]], Any]) -> None:
        """Invoke ``callback`` exactly once with the result when the operation finishes."""

        def _deliver(task: asyncio.Task[OperationResult[T]]) -> None:
            try:
                callback(self._result_of(task))
            except Exception:
                logger.exception(f"Completion callback for {self.operation} failed")

        self.task.add_done_callback(_deliver)
