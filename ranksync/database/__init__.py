"""Durable store: SQLAlchemy models and initialization."""

from .db_manager import (
    ENTRY_FIELDS,
    ListEntry,
    ListGroup,
    RankedList,
    User,
    YearAggregate,
    YearLock,
    db,
    ensure_system_user,
    get_system_user_id,
    initialize_database,
)

__all__ = [
    "ENTRY_FIELDS",
    "ListEntry",
    "ListGroup",
    "RankedList",
    "User",
    "YearAggregate",
    "YearLock",
    "db",
    "ensure_system_user",
    "get_system_user_id",
    "initialize_database",
]
