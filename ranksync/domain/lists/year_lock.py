"""Year lock rules.

A locked year freezes its main lists: their items cannot be written, their
main flag cannot be set or unset, and they cannot be moved to another year.
Non-main lists of a locked year stay editable.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from ranksync.core.errors import YearLockedError
from ranksync.database.db_manager import YearLock, db

logger = logging.getLogger(__name__)


def is_year_locked(year: Optional[int]) -> bool:
    if not year:
        return False
    try:
        row = db.session.get(YearLock, int(year))
    except SQLAlchemyError:
        # Lock lookups never block writes on a storage hiccup.
        logger.error("Error checking year lock status", extra={"year": year}, exc_info=True)
        return False
    return bool(row and row.locked)


def validate_year_not_locked(year: Optional[int], operation: str) -> None:
    if year and is_year_locked(year):
        raise YearLockedError(
            f"Cannot {operation}: Year {year} is locked",
            details={"year": year, "year_locked": True},
        )


def validate_main_list_not_locked(year: Optional[int], is_main: bool, operation: str) -> None:
    if not year or not is_main:
        return
    if is_year_locked(year):
        raise YearLockedError(
            f"Cannot {operation}: Main list for year {year} is locked",
            details={"year": year, "year_locked": True},
        )


def set_year_locked(year: int, locked: bool) -> YearLock:
    row = db.session.get(YearLock, int(year))
    if row is None:
        row = YearLock(year=int(year))
        db.session.add(row)
    row.locked = bool(locked)
    row.locked_at = datetime.utcnow() if locked else None
    db.session.commit()
    logger.info("Year %s %s", year, "locked" if locked else "unlocked", extra={"year": year})
    return row


__all__ = [
    "is_year_locked",
    "set_year_locked",
    "validate_main_list_not_locked",
    "validate_year_not_locked",
]
