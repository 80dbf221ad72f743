"""Ordered log of mutations waiting for remote confirmation.

Operations are replayed strictly in sequence order and leave the queue only
once their remote call succeeds. The first failure of any kind stops a flush,
so a later operation never runs ahead of an earlier one.
"""

import bisect
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable

from ..models import PendingOperation
from ..remote.base import OfflineError

logger = logging.getLogger(__name__)

OperationExecutor = Callable[[PendingOperation, str], Awaitable[None]]


class FlushStatus(Enum):
    """Outcome of a flush attempt."""

    SUCCESS = "success"
    OFFLINE = "offline"  # Stopped at an operation that hit connectivity loss
    FAILED = "failed"  # Stopped at an operation the backend rejected
    BUSY = "busy"  # Another flush was already running


@dataclass
class FlushResult:
    status: FlushStatus
    flushed: int = 0
    remaining: int = 0
    error: str | None = None
    failed_kind: str | None = None  # Kind of the operation the flush stopped at
    timestamp: datetime | None = None


class OfflineQueue:
    """FIFO of pending operations ordered by mutation sequence number."""

    def __init__(
        self,
        executor: OperationExecutor,
        on_change: Callable[[list[PendingOperation]], None] | None = None,
    ):
        """Initialize the queue.

        Args:
            executor: Runs one operation against the backend for a user.
            on_change: Called with the current contents after every change,
                used to persist the queue.
        """
        self._executor = executor
        self._on_change = on_change
        self._ops: list[PendingOperation] = []
        self._flushing = False
        self.last_error: str | None = None

    def __len__(self) -> int:
        return len(self._ops)

    def __bool__(self) -> bool:
        return bool(self._ops)

    @property
    def pending(self) -> list[PendingOperation]:
        return list(self._ops)

    @property
    def is_flushing(self) -> bool:
        return self._flushing

    def _changed(self) -> None:
        if self._on_change:
            self._on_change(self.pending)

    def enqueue(self, operation: PendingOperation) -> None:
        """Append an operation, keeping sequence order."""
        seqs = [op.seq for op in self._ops]
        self._ops.insert(bisect.bisect_right(seqs, operation.seq), operation)
        logger.info(
            f"Queued {operation.kind.value} (seq={operation.seq}), "
            f"{len(self._ops)} pending"
        )
        self._changed()

    def load(self, operations: list[PendingOperation]) -> None:
        """Replace contents with previously persisted operations."""
        self._ops = sorted(operations, key=lambda op: op.seq)

    def clear(self) -> None:
        self._ops.clear()
        self.last_error = None
        self._changed()

    async def flush(self, user_id: str) -> FlushResult:
        """Replay queued operations in order until one fails.

        Args:
            user_id: Owner the operations are replayed for.

        Returns:
            FlushResult describing how far the replay got.
        """
        if self._flushing:
            return FlushResult(status=FlushStatus.BUSY, remaining=len(self._ops))

        self._flushing = True
        flushed = 0
        try:
            while self._ops:
                operation = self._ops[0]
                try:
                    await self._executor(operation, user_id)
                except OfflineError as e:
                    logger.info(
                        f"Flush paused at {operation.kind.value} (seq={operation.seq}): {e}"
                    )
                    return FlushResult(
                        status=FlushStatus.OFFLINE,
                        flushed=flushed,
                        remaining=len(self._ops),
                        error=str(e),
                        failed_kind=operation.kind.value,
                    )
                except Exception as e:
                    self.last_error = f"{operation.kind.value}: {e}"
                    logger.error(
                        f"Flush stopped at {operation.kind.value} (seq={operation.seq}): {e}"
                    )
                    return FlushResult(
                        status=FlushStatus.FAILED,
                        flushed=flushed,
                        remaining=len(self._ops),
                        error=str(e),
                        failed_kind=operation.kind.value,
                    )

                # Head may only leave once confirmed; clear() may have run meanwhile
                if self._ops and self._ops[0] is operation:
                    self._ops.pop(0)
                flushed += 1
                self._changed()
        finally:
            self._flushing = False

        self.last_error = None
        if flushed:
            logger.info(f"Flushed {flushed} queued operations")
        return FlushResult(
            status=FlushStatus.SUCCESS,
            flushed=flushed,
            remaining=0,
            timestamp=datetime.now(),
        )
