from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Base class for ledger failures that callers must handle."""


class LedgerStorageError(LedgerError):
    """
    A storage transaction could not commit.
    The session has been rolled back; every ledger write is safe to retry.
    """


class PlanAssignmentOverlapError(LedgerError):
    def __init__(self, affiliate_id: Any, conflicting_assignment_id: Any):
        super().__init__(
            f"Plan assignment for affiliate {affiliate_id} overlaps assignment {conflicting_assignment_id}"
        )
        self.affiliate_id = affiliate_id
        self.conflicting_assignment_id = conflicting_assignment_id


class InvalidStateTransition(LedgerError):
    def __init__(self, entity: str, current: str, target: str):
        super().__init__(f"{entity} cannot move from {current} to {target}")
        self.entity = entity
        self.current = current
        self.target = target


@asynccontextmanager
async def storage_guard(db: AsyncSession, operation: str, **context: Any) -> AsyncIterator[None]:
    """
    Roll back and re-raise SQLAlchemy failures as LedgerStorageError.
    Never swallows: the caller decides whether to retry.
    """
    try:
        yield
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("Ledger storage failure during %s", operation, extra={"ledger": context})
        raise LedgerStorageError(f"{operation} failed") from exc
