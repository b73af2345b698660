#!/usr/bin/env python
"""
Year-level aggregate recomputation.

Writes to a year's main list schedule a recompute here and return at once;
worker threads rebuild the combined ranking of all users' main lists for that
year inside the Flask app context. Scheduling the same year twice before a
worker picks it up collapses into one recompute.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from queue import Empty, Queue
from typing import Dict, List, Optional, Set

from ranksync.database.db_manager import RankedList, YearAggregate, db
from ranksync.observability.metrics import record_aggregate_recompute

logger = logging.getLogger(__name__)

# Points awarded by 1-based rank; ranks beyond 40 score nothing.
POSITION_POINTS = {
    1: 60, 2: 54, 3: 50, 4: 46, 5: 43, 6: 40, 7: 38, 8: 36, 9: 34, 10: 32,
    11: 30, 12: 28, 13: 26, 14: 24, 15: 22, 16: 20, 17: 18, 18: 16, 19: 14, 20: 12,
    21: 11, 22: 10, 23: 9, 24: 8, 25: 7, 26: 6, 27: 5, 28: 4, 29: 3, 30: 2,
    31: 2, 32: 2, 33: 2, 34: 2, 35: 2, 36: 1, 37: 1, 38: 1, 39: 1, 40: 1,
}


def position_points(rank: int) -> int:
    return POSITION_POINTS.get(rank, 0)


def compute_year_aggregate(year: int) -> YearAggregate:
    """Rebuild and persist the aggregate for ``year``."""
    main_lists = RankedList.query.filter_by(year=year, is_main=True).all()
    albums: Dict[str, dict] = {}

    for ranked in main_lists:
        for entry in ranked.entries:
            rank = entry.position + 1
            album = albums.setdefault(
                entry.identity,
                {
                    "identity": entry.identity,
                    "artist": entry.artist,
                    "title": entry.title,
                    "release_date": entry.release_date,
                    "country": entry.country,
                    "genres": list(entry.genres or []),
                    "cover_image": entry.cover_image,
                    "total_points": 0,
                    "voter_count": 0,
                    "positions": [],
                },
            )
            album["total_points"] += position_points(rank)
            album["voter_count"] += 1
            album["positions"].append(rank)

    ranked_albums: List[dict] = []
    for album in albums.values():
        positions = album.pop("positions")
        album["average_position"] = round(sum(positions) / len(positions), 2)
        album["highest_position"] = min(positions)
        album["lowest_position"] = max(positions)
        ranked_albums.append(album)
    ranked_albums.sort(key=lambda a: (-a["total_points"], -a["voter_count"], a["identity"]))
    for index, album in enumerate(ranked_albums):
        album["rank"] = index + 1

    row = db.session.get(YearAggregate, year)
    if row is None:
        row = YearAggregate(year=year)
        db.session.add(row)
    row.data = ranked_albums
    row.participant_count = len({ranked.user_id for ranked in main_lists})
    row.computed_at = datetime.utcnow()
    db.session.commit()
    return row


class AggregateRecomputer:
    def __init__(self, logger=None, workers: int = 1, flask_app=None):
        self.logger = logger or logging.getLogger(__name__)
        self.workers = max(1, workers)
        self.flask_app = flask_app
        self._queue: Queue[int] = Queue()
        self._pending: Set[int] = set()
        self._active = 0
        self._cond = threading.Condition()
        self._shutdown = False
        self._threads: list[threading.Thread] = []

        for i in range(self.workers):
            t = threading.Thread(target=self._worker, name=f"aggregate-worker-{i+1}", daemon=True)
            t.start()
            self._threads.append(t)

    def schedule(self, year: Optional[int]) -> bool:
        """Queue a recompute for ``year``; returns False when nothing was queued."""
        if not year:
            return False
        with self._cond:
            if self._shutdown or year in self._pending:
                return False
            self._pending.add(year)
            self._queue.put(year)
        self.logger.debug("Scheduled aggregate recompute for %s", year)
        return True

    def pending_years(self) -> Set[int]:
        with self._cond:
            return set(self._pending)

    def qsize(self) -> int:
        return self._queue.qsize()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no recompute is queued or running."""
        with self._cond:
            return self._cond.wait_for(lambda: not self._pending and self._active == 0, timeout=timeout)

    def shutdown(self) -> None:
        with self._cond:
            self._shutdown = True
            self._cond.notify_all()

    def _run(self, year: int) -> None:
        if self.flask_app is not None:
            with self.flask_app.app_context():
                try:
                    compute_year_aggregate(year)
                finally:
                    db.session.remove()
        else:
            compute_year_aggregate(year)

    def _worker(self) -> None:
        while True:
            with self._cond:
                if self._shutdown:
                    return
            try:
                year = self._queue.get(timeout=0.5)
            except Empty:
                continue
            with self._cond:
                self._pending.discard(year)
                self._active += 1
            try:
                self._run(year)
                record_aggregate_recompute("success")
                self.logger.info("Recomputed aggregate for year %s", year)
            except Exception:
                record_aggregate_recompute("failure")
                self.logger.exception("Aggregate recompute failed for year %s", year)
            finally:
                with self._cond:
                    self._active -= 1
                    self._cond.notify_all()
                self._queue.task_done()


__all__ = ["AggregateRecomputer", "POSITION_POINTS", "compute_year_aggregate", "position_points"]
