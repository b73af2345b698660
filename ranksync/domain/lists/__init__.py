from .aggregates import AggregateRecomputer, compute_year_aggregate
from .service import ListService, WriteResult
from .year_lock import is_year_locked, set_year_locked

__all__ = [
    "AggregateRecomputer",
    "ListService",
    "WriteResult",
    "compute_year_aggregate",
    "is_year_locked",
    "set_year_locked",
]
