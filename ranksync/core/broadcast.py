#!/usr/bin/env python
"""
Per-list publish/subscribe router for list change notifications.

Each SSE connection registers one subscription (socket) for a single list.
A write fans its change out to every subscriber of that list except the
connection that made the write, identified by the socket id the client
sends back with its request.
"""

from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from queue import Empty, Queue
from typing import Any, Dict, Iterator, Optional

from ranksync.observability.metrics import (
    record_broadcast_delivery,
    record_broadcast_failure,
    update_subscriber_gauge,
)

logger = logging.getLogger(__name__)


def format_sse(data: Dict[str, Any], event: Optional[str] = None) -> str:
    payload = json.dumps(data, ensure_ascii=False)
    prefix = f"event: {event}\n" if event else ""
    return f"{prefix}data: {payload}\n\n"


@dataclass
class Subscription:
    socket_id: str
    user_id: int
    list_id: str
    queue: Queue = field(default_factory=Queue)
    closed: bool = False

    def deliver(self, event: dict) -> None:
        if self.closed:
            raise RuntimeError(f"subscription {self.socket_id} is closed")
        self.queue.put(event)


class ListBroadcaster:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._subscribers: Dict[str, Subscription] = {}

    def register(self, user_id: int, list_id: str) -> Subscription:
        sub = Subscription(socket_id=uuid.uuid4().hex, user_id=user_id, list_id=str(list_id))
        with self._lock:
            self._subscribers[sub.socket_id] = sub
            update_subscriber_gauge(len(self._subscribers))
        logger.info("List subscriber connected", extra={"socket_id": sub.socket_id, "list_id": sub.list_id})
        return sub

    def unregister(self, socket_id: str) -> None:
        with self._lock:
            sub = self._subscribers.pop(socket_id, None)
            update_subscriber_gauge(len(self._subscribers))
        if sub is not None:
            sub.closed = True
            logger.info("List subscriber disconnected", extra={"socket_id": socket_id, "list_id": sub.list_id})

    def subscriber_count(self, list_id: Optional[str] = None) -> int:
        with self._lock:
            if list_id is None:
                return len(self._subscribers)
            return sum(1 for sub in self._subscribers.values() if sub.list_id == str(list_id))

    def broadcast(
        self,
        list_id: str,
        change_kind: str,
        origin_socket_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Deliver a change to every subscriber of ``list_id`` except the origin.

        Returns the number of subscribers that received the event.
        """
        event: Dict[str, Any] = dict(payload or {})
        event["kind"] = change_kind
        event["list_id"] = str(list_id)
        event.setdefault("updated_at", datetime.now(timezone.utc).isoformat())

        with self._lock:
            targets = [
                sub
                for sub in self._subscribers.values()
                if sub.list_id == str(list_id) and sub.socket_id != origin_socket_id
            ]

        delivered = 0
        for sub in targets:
            try:
                sub.deliver(event)
                delivered += 1
            except Exception:
                record_broadcast_failure()
                logger.warning(
                    "Failed to deliver list event to subscriber",
                    extra={"socket_id": sub.socket_id, "list_id": sub.list_id},
                    exc_info=True,
                )
        record_broadcast_delivery(delivered)
        logger.debug(
            "Broadcast %s for list %s to %d subscriber(s)", change_kind, list_id, delivered
        )
        return delivered

    def subscribe(self, user_id: int, list_id: str, heartbeat_seconds: int = 15) -> Iterator[str]:
        """Return an iterator yielding SSE-formatted chunks for one list.

        The first chunk is a ``hello`` event carrying the socket id the client
        must echo back on its writes.
        """
        sub = self.register(user_id, list_id)
        last_beat = time.time()
        try:
            yield format_sse({"socket_id": sub.socket_id, "list_id": sub.list_id}, event="hello")
            while True:
                try:
                    ev = sub.queue.get(timeout=1.0)
                    yield format_sse(ev)
                except Empty:
                    now = time.time()
                    if now - last_beat >= heartbeat_seconds:
                        last_beat = now
                        yield "event: heartbeat\n" + f"data: {{\"ts\": {int(now)} }}\n\n"
        finally:
            self.unregister(sub.socket_id)


__all__ = ["ListBroadcaster", "Subscription", "format_sse"]
