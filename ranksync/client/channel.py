#!/usr/bin/env python
"""
Push subscription channel for the list currently on screen.

Holds at most one event stream. Pushed list states are debounced, checked
against the client's own recent save to drop self-echoes, and otherwise
written into the local store. An ``apply_items`` hook, when given, takes over
that write so pending local edits can be merged on top of the pushed state.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from ranksync.core.errors import CorruptMessageError, ListSyncError
from .pipeline import default_timer_factory
from .snapshots import SnapshotTracker, fingerprint
from .store import LocalListStore

logger = logging.getLogger(__name__)

PUSH_DEBOUNCE = 0.1

ITEM_EVENTS = ("updated", "reordered", "replaced", "created", "message")


class PushSubscriptionChannel:
    def __init__(
        self,
        transport,
        store: LocalListStore,
        snapshots: SnapshotTracker,
        *,
        apply_items: Optional[Callable[[str, List[Dict[str, Any]]], Any]] = None,
        on_reconciled: Optional[Callable[[str, List[Dict[str, Any]]], None]] = None,
        on_render: Optional[Callable[[str], None]] = None,
        on_deleted: Optional[Callable[[str], None]] = None,
        timer_factory: Callable = default_timer_factory,
        debounce: float = PUSH_DEBOUNCE,
    ) -> None:
        self.transport = transport
        self.store = store
        self.snapshots = snapshots
        self.apply_items = apply_items
        self.on_reconciled = on_reconciled
        self.on_render = on_render
        self.on_deleted = on_deleted
        self.timer_factory = timer_factory
        self.debounce = debounce

        self._lock = threading.RLock()
        self._list_id: Optional[str] = None
        self._stream = None
        self._generation = 0
        self._socket_id: Optional[str] = None
        self._latest: Dict[str, Dict[str, Any]] = {}
        self._timers: Dict[str, Any] = {}

    @property
    def list_id(self) -> Optional[str]:
        with self._lock:
            return self._list_id

    @property
    def socket_id(self) -> Optional[str]:
        with self._lock:
            return self._socket_id

    # ------------------------------------------------------------------
    # subscription lifecycle
    # ------------------------------------------------------------------

    def subscribe(self, list_id: str) -> bool:
        """Open the stream for ``list_id``; returns False when it is already open."""
        list_id = str(list_id)
        with self._lock:
            if self._list_id == list_id and self._stream is not None and not self._stream.closed:
                return False
            self._close_locked()
            self._generation += 1
            generation = self._generation
            self._list_id = list_id

        def on_event(event: Optional[str], data: str) -> None:
            with self._lock:
                if generation != self._generation:
                    return
            self.handle_message(list_id, event, data)

        def on_error(exc: Exception) -> None:
            logger.warning("Push stream for list %s lost: %s", list_id, exc, extra={"list_id": list_id})

        try:
            stream = self.transport.open_event_stream(list_id, on_event, on_error)
        except ListSyncError:
            logger.warning("Could not subscribe to list %s", list_id, exc_info=True)
            with self._lock:
                if generation == self._generation:
                    self._list_id = None
            raise

        with self._lock:
            if generation != self._generation:
                stream.close()
                return False
            self._stream = stream
        logger.debug("Subscribed to list %s", list_id)
        return True

    def unsubscribe(self) -> None:
        with self._lock:
            self._generation += 1
            self._close_locked()
            self._list_id = None

    def _close_locked(self) -> None:
        if self._stream is not None:
            self._stream.close()
            self._stream = None
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._latest.clear()
        self._socket_id = None

    # ------------------------------------------------------------------
    # inbound messages
    # ------------------------------------------------------------------

    def handle_message(self, list_id: str, event: Optional[str], data: Any) -> None:
        try:
            payload = json.loads(data) if isinstance(data, (str, bytes)) else data
            if not isinstance(payload, dict):
                raise CorruptMessageError("Push payload is not an object")
        except (ValueError, CorruptMessageError) as exc:
            logger.warning(
                "Dropping corrupt push message for list %s: %s", list_id, exc, extra={"list_id": list_id}
            )
            return

        kind = event or payload.get("kind") or "message"
        try:
            self._dispatch(list_id, kind, payload)
        except Exception:
            # Runs on the stream reader thread; keep it alive for the next event.
            logger.exception("Failed to handle %s push for list %s", kind, list_id, extra={"list_id": list_id})

    def _dispatch(self, list_id: str, kind: str, payload: Dict[str, Any]) -> None:
        if kind == "heartbeat":
            return
        if kind == "hello":
            with self._lock:
                self._socket_id = payload.get("socket_id")
            return
        if kind == "deleted":
            self._handle_deleted(list_id)
            return
        if kind == "metadata":
            self.store.update_metadata(list_id, payload.get("list") or payload)
            if self.store.current_list_id == list_id and self.on_render is not None:
                self.on_render(list_id)
            return
        if kind not in ITEM_EVENTS:
            logger.debug("Ignoring push event %s for list %s", kind, list_id)
            return
        if not isinstance(payload.get("items"), list):
            logger.warning(
                "Dropping corrupt push message for list %s: no items", list_id, extra={"list_id": list_id}
            )
            return

        with self._lock:
            self._latest[list_id] = payload
            previous = self._timers.pop(list_id, None)
            if previous is not None:
                previous.cancel()
            timer = self.timer_factory(self.debounce, lambda: self.flush(list_id))
            self._timers[list_id] = timer
        timer.start()

    def flush(self, list_id: str) -> bool:
        """Reconcile the latest buffered push for ``list_id``; True if applied."""
        with self._lock:
            self._timers.pop(list_id, None)
            payload = self._latest.pop(list_id, None)
        if payload is None:
            return False
        try:
            return self._reconcile(list_id, payload)
        except Exception:
            logger.exception("Failed to apply pushed change to list %s", list_id, extra={"list_id": list_id})
            return False

    def _reconcile(self, list_id: str, payload: Dict[str, Any]) -> bool:
        items = payload["items"]
        own_save = self.snapshots.was_recent_local_save(list_id)

        if self.store.is_data_loaded(list_id) and fingerprint(self.store.items(list_id)) == fingerprint(items):
            logger.debug("Push for list %s matches local state, skipping", list_id)
            return False
        if own_save and self.snapshots.matches_last_save(list_id, items):
            logger.debug("Push for list %s is our own save, skipping", list_id)
            return False

        if self.apply_items is not None:
            self.apply_items(list_id, items)
        else:
            self.store.set_items(list_id, items)
        meta = payload.get("list")
        if isinstance(meta, dict):
            self.store.update_metadata(list_id, meta)
        logger.info("Applied pushed change to list %s", list_id, extra={"list_id": list_id})
        if self.on_reconciled is not None:
            self.on_reconciled(list_id, items)
        if self.store.current_list_id == list_id and self.on_render is not None:
            self.on_render(list_id)
        return True

    def _handle_deleted(self, list_id: str) -> None:
        with self._lock:
            timer = self._timers.pop(list_id, None)
            if timer is not None:
                timer.cancel()
            self._latest.pop(list_id, None)
        was_current = self.store.current_list_id == list_id
        self.store.remove(list_id)
        self.snapshots.clear_snapshot(list_id)
        logger.info("List %s was deleted elsewhere", list_id, extra={"list_id": list_id})
        if self.on_deleted is not None:
            self.on_deleted(list_id)
        if was_current and self.on_render is not None:
            self.on_render(list_id)


__all__ = ["PushSubscriptionChannel", "PUSH_DEBOUNCE"]
