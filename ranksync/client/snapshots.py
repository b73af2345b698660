#!/usr/bin/env python
"""
Snapshot tracking for echo detection.

After a successful save the client records the identity order it wrote along
with the content of every entry. When the server pushes that same state back
moments later, the snapshot together with the "recent local save" token lets
the channel recognize the push as its own echo.

The token is one-shot and only honoured for ``LOCAL_SAVE_GRACE_PERIOD``
seconds; an echo that never arrives must not hide a later foreign change.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

from ranksync.core.identity import ENTRY_FIELDS, identity_of
from .storage import KeyValueStorage, MemoryStorage

logger = logging.getLogger(__name__)

KEY_PREFIX = "list-snapshot-"
LOCAL_SAVE_GRACE_PERIOD = 5.0


def snapshot(items: Iterable) -> List[str]:
    """Identity order of ``items``; entries without an identity are skipped."""
    result = []
    for entry in items or ():
        key = identity_of(entry)
        if key:
            result.append(key)
    return result


def fingerprint(items: Iterable) -> List[tuple]:
    """Identity plus every entry field, in order. Equal fingerprints mean equal lists."""
    return [
        (identity_of(entry),) + tuple(repr(entry.get(name)) for name in ENTRY_FIELDS)
        for entry in items or ()
    ]


class SnapshotTracker:
    def __init__(
        self,
        storage: Optional[KeyValueStorage] = None,
        *,
        grace_period: float = LOCAL_SAVE_GRACE_PERIOD,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.storage = storage if storage is not None else MemoryStorage()
        self.grace_period = grace_period
        self.clock = clock
        self._recent: Dict[str, float] = {}
        self._saved: Dict[str, List[tuple]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def key_for(list_id: str) -> str:
        return f"{KEY_PREFIX}{list_id}"

    def save_snapshot(self, list_id: Optional[str], identities: List[str]) -> None:
        if not list_id:
            return
        try:
            self.storage.set(self.key_for(list_id), json.dumps(list(identities)))
        except OSError as exc:
            logger.warning("Could not save snapshot for list %s: %s", list_id, exc)

    def load_snapshot(self, list_id: Optional[str]) -> Optional[List[str]]:
        if not list_id:
            return None
        try:
            raw = self.storage.get(self.key_for(list_id))
        except OSError as exc:
            logger.warning("Could not read snapshot for list %s: %s", list_id, exc)
            return None
        if raw is None:
            return None
        try:
            value = json.loads(raw)
        except ValueError:
            logger.warning("Discarding corrupt snapshot for list %s", list_id)
            return None
        if not isinstance(value, list):
            logger.warning("Discarding corrupt snapshot for list %s", list_id)
            return None
        return [str(v) for v in value]

    def clear_snapshot(self, list_id: Optional[str]) -> None:
        if not list_id:
            return
        try:
            self.storage.remove(self.key_for(list_id))
        except OSError as exc:
            logger.warning("Could not clear snapshot for list %s: %s", list_id, exc)
        with self._lock:
            self._recent.pop(list_id, None)
            self._saved.pop(list_id, None)

    def mark_local_save(self, list_id: Optional[str], items: Optional[List[Dict[str, Any]]] = None) -> None:
        """Arm the token. ``items`` is the content just written, if known."""
        if not list_id:
            return
        with self._lock:
            self._recent[list_id] = self.clock()
            if items is not None:
                self._saved[list_id] = fingerprint(items)
            else:
                self._saved.pop(list_id, None)

    def _fresh(self, marked: Optional[float]) -> bool:
        return marked is not None and self.clock() - marked < self.grace_period

    def was_recent_local_save(self, list_id: Optional[str]) -> bool:
        """Consume the token: True once within the grace period after ``mark_local_save``."""
        if not list_id:
            return False
        with self._lock:
            return self._fresh(self._recent.pop(list_id, None))

    def has_pending_local_save(self, list_id: Optional[str]) -> bool:
        if not list_id:
            return False
        with self._lock:
            return self._fresh(self._recent.get(list_id))

    def matches_last_save(self, list_id: Optional[str], items: List[Dict[str, Any]]) -> bool:
        """True when ``items`` has the saved identity order and, if recorded, the saved content."""
        if snapshot(items) != self.load_snapshot(list_id):
            return False
        with self._lock:
            saved = self._saved.get(list_id)
        return saved is None or saved == fingerprint(items)


__all__ = ["KEY_PREFIX", "LOCAL_SAVE_GRACE_PERIOD", "SnapshotTracker", "fingerprint", "snapshot"]
