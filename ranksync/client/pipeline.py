#!/usr/bin/env python
"""
Debounced mutation pipeline.

Local edits are applied to the store immediately and the ``on_change`` hook
fires before any network traffic. The write to the server is debounced per
list: every edit resets the list's timer, and when it fires the pipeline
diffs the last confirmed items against the current ones and sends a single
reorder or incremental write.

At most one write per list is in flight. A timer that fires while a write is
outstanding marks the list for a rerun, which is sent as soon as the first
write completes.

A pushed server state that lands while a change is pending or in flight
becomes the new baseline, and the local delta is replayed on top of it with
``merge_local_changes`` so neither side's edits are lost.
"""

from __future__ import annotations

import copy
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from ranksync.core.errors import EntryNotFoundError, ListSyncError, ValidationError
from ranksync.core.identity import ENTRY_FIELDS, find_by_identity, identity_of
from .snapshots import SnapshotTracker, fingerprint, snapshot
from .store import LocalListStore

logger = logging.getLogger(__name__)

REORDER_DELAY = 0.3
EDIT_DELAY = 0.3
IMMEDIATE_DELAY = 0.0


def default_timer_factory(delay: float, fn: Callable[[], None]):
    timer = threading.Timer(delay, fn)
    timer.daemon = True
    return timer


@dataclass
class PendingMutation:
    list_id: str
    kind: str
    delay: float
    timer: Any


@dataclass
class Write:
    """A computed server write: either a full order or a delta."""

    kind: str  # "reorder" | "incremental"
    order: Optional[List[str]] = None
    added: Optional[List[Dict[str, Any]]] = None
    removed: Optional[List[str]] = None
    updated: Optional[List[Dict[str, Any]]] = None


def _entry_payload(entry: Dict[str, Any]) -> Dict[str, Any]:
    return {name: entry.get(name) for name in ENTRY_FIELDS if entry.get(name) is not None}


def compute_write(base: List[Dict[str, Any]], current: List[Dict[str, Any]]) -> Optional[Write]:
    """Diff confirmed items against current items; ``None`` when nothing changed."""
    base_ids = [identity_of(e) for e in base]
    cur_ids = [identity_of(e) for e in current]
    base_by_id = {key: entry for key, entry in zip(base_ids, base)}
    cur_set = set(cur_ids)

    removed = [key for key in base_ids if key not in cur_set]
    patches: Dict[str, Dict[str, Any]] = {}
    added: List[Dict[str, Any]] = []
    for index, (key, entry) in enumerate(zip(cur_ids, current)):
        previous = base_by_id.get(key)
        if previous is None:
            payload = _entry_payload(entry)
            payload["position"] = index
            added.append(payload)
            continue
        patch = {
            name: entry.get(name)
            for name in ENTRY_FIELDS
            if entry.get(name) != previous.get(name)
        }
        if patch:
            patches[key] = patch

    if not removed and not added and not patches:
        if cur_ids == base_ids:
            return None
        return Write(kind="reorder", order=cur_ids)

    # Order the server ends up with before any position is applied.
    expected = [key for key in base_ids if key in cur_set] + [
        key for key in cur_ids if key not in base_by_id
    ]
    if expected != cur_ids:
        for index, key in enumerate(cur_ids):
            if key in base_by_id:
                patches.setdefault(key, {})["position"] = index
    else:
        for payload in added:
            payload.pop("position", None)

    updated = [{"identity": key, "patch": patch} for key, patch in patches.items()]
    return Write(kind="incremental", added=added, removed=removed, updated=updated)


def _position(items: List[Dict[str, Any]], key: str) -> Optional[int]:
    for index, entry in enumerate(items):
        if identity_of(entry) == key:
            return index
    return None


def merge_local_changes(
    base: List[Dict[str, Any]],
    current: List[Dict[str, Any]],
    remote: List[Dict[str, Any]],
) -> List[Dict[str, Any]]:
    """Replay the local delta ``base -> current`` onto ``remote``.

    Removals, additions and field edits made locally win over the remote
    state for the entries they touch. A local reorder re-sorts the entries
    both sides know about; entries only the remote has keep their slots.
    """
    base_ids = [identity_of(e) for e in base]
    cur_ids = [identity_of(e) for e in current]
    base_by_id = {key: entry for key, entry in zip(base_ids, base)}
    cur_set = set(cur_ids)
    dropped = {key for key in base_ids if key not in cur_set}

    result = [copy.deepcopy(e) for e in remote if identity_of(e) not in dropped]

    for index, (key, entry) in enumerate(zip(cur_ids, current)):
        previous = base_by_id.get(key)
        at = _position(result, key)
        if previous is None:
            if at is not None:
                continue
            insert_at = len(result)
            for after in cur_ids[index + 1 :]:
                found = _position(result, after)
                if found is not None:
                    insert_at = found
                    break
            result.insert(insert_at, copy.deepcopy(entry))
            continue
        if at is None:
            # Removed remotely; the remote removal stands.
            continue
        for name in ENTRY_FIELDS:
            if entry.get(name) != previous.get(name):
                result[at][name] = copy.deepcopy(entry.get(name))

    kept_base = [key for key in base_ids if key in cur_set]
    kept_cur = [key for key in cur_ids if key in base_by_id]
    if kept_base != kept_cur:
        rank = {key: index for index, key in enumerate(cur_ids)}
        ours = sorted((e for e in result if identity_of(e) in rank), key=lambda e: rank[identity_of(e)])
        slots = iter(ours)
        result = [next(slots) if identity_of(e) in rank else e for e in result]
    return result


class MutationPipeline:
    def __init__(
        self,
        store: LocalListStore,
        transport,
        snapshots: SnapshotTracker,
        *,
        on_change: Optional[Callable[[str, List[Dict[str, Any]]], None]] = None,
        on_error: Optional[Callable[[str, Exception], None]] = None,
        socket_id: Optional[Callable[[], Optional[str]]] = None,
        timer_factory: Callable = default_timer_factory,
        reorder_delay: float = REORDER_DELAY,
        edit_delay: float = EDIT_DELAY,
        immediate_delay: float = IMMEDIATE_DELAY,
    ) -> None:
        self.store = store
        self.transport = transport
        self.snapshots = snapshots
        self.on_change = on_change
        self.on_error = on_error
        self.socket_id = socket_id or (lambda: None)
        self.timer_factory = timer_factory
        self.reorder_delay = reorder_delay
        self.edit_delay = edit_delay
        self.immediate_delay = immediate_delay

        self._lock = threading.RLock()
        self._base: Dict[str, List[Dict[str, Any]]] = {}
        self._pending: Dict[str, PendingMutation] = {}
        # list id -> (base the write was computed from, items it carried)
        self._in_flight: Dict[str, Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]] = {}
        self._rerun: Set[str] = set()
        self._rebased: Set[str] = set()

    # ------------------------------------------------------------------
    # local mutations
    # ------------------------------------------------------------------

    def _begin(self, list_id: str) -> List[Dict[str, Any]]:
        if not self.store.is_data_loaded(list_id):
            raise ValidationError(
                "List items have not been fetched yet",
                code="list_not_loaded",
                details={"list_id": list_id},
            )
        items = self.store.items(list_id)
        self._base.setdefault(list_id, copy.deepcopy(items))
        return items

    def _commit_local(self, list_id: str, items: List[Dict[str, Any]], kind: str, delay: float) -> None:
        self.store.set_items(list_id, items)
        if self.on_change is not None:
            self.on_change(list_id, copy.deepcopy(items))
        self._schedule(list_id, kind, delay)

    def apply_reorder(self, list_id: str, from_index: int, to_index: int) -> bool:
        """Move one entry. Returns False (and writes nothing) for a no-op move."""
        if from_index == to_index:
            return False
        with self._lock:
            items = self._begin(list_id)
            size = len(items)
            if not (0 <= from_index < size) or not (0 <= to_index < size):
                raise ValidationError(
                    "Reorder index out of range",
                    code="invalid_index",
                    details={"from": from_index, "to": to_index, "size": size},
                )
            items.insert(to_index, items.pop(from_index))
            self._commit_local(list_id, items, "reorder", self.reorder_delay)
        return True

    def apply_add(self, list_id: str, entry: Dict[str, Any], position: Optional[int] = None) -> int:
        """Insert ``entry`` (at the end by default); returns its index."""
        key = identity_of(entry)
        if not key:
            raise ValidationError("Entry needs an artist or a title", code="invalid_entry")
        with self._lock:
            items = self._begin(list_id)
            if find_by_identity(items, key) is not None:
                raise ValidationError(
                    "Entry is already in this list",
                    code="duplicate_entry",
                    details={"identity": key},
                )
            index = len(items) if position is None else min(max(int(position), 0), len(items))
            items.insert(index, dict(entry))
            self._commit_local(list_id, items, "add", self.immediate_delay)
        return index

    def apply_remove(self, list_id: str, identity: str) -> Dict[str, Any]:
        with self._lock:
            items = self._begin(list_id)
            found = find_by_identity(items, identity)
            if found is None:
                raise EntryNotFoundError("Entry not found", details={"identity": identity})
            entry, index = found
            del items[index]
            self._commit_local(list_id, items, "remove", self.immediate_delay)
        return entry

    def apply_field_edit(self, list_id: str, identity: str, field: str, value: Any) -> str:
        """Set one field of the entry with ``identity``; returns its (possibly new) identity."""
        if field not in ENTRY_FIELDS:
            raise ValidationError(f"Field '{field}' cannot be edited", code="invalid_field")
        with self._lock:
            items = self._begin(list_id)
            found = find_by_identity(items, identity)
            if found is None:
                raise EntryNotFoundError("Entry not found", details={"identity": identity})
            entry, index = found
            edited = dict(entry)
            edited[field] = value
            new_identity = identity_of(edited)
            if not new_identity:
                raise ValidationError("Entry needs an artist or a title", code="invalid_entry")
            if new_identity != identity and find_by_identity(items, new_identity) is not None:
                raise ValidationError(
                    "Entry is already in this list",
                    code="duplicate_entry",
                    details={"identity": new_identity},
                )
            if "identity" in edited:
                edited["identity"] = new_identity
            items[index] = edited
            self._commit_local(list_id, items, "edit", self.edit_delay)
        return new_identity

    # ------------------------------------------------------------------
    # timers
    # ------------------------------------------------------------------

    def _schedule(self, list_id: str, kind: str, delay: float) -> None:
        with self._lock:
            previous = self._pending.pop(list_id, None)
            if previous is not None:
                previous.timer.cancel()
            timer = self.timer_factory(delay, lambda: self._fire(list_id))
            self._pending[list_id] = PendingMutation(list_id=list_id, kind=kind, delay=delay, timer=timer)
        timer.start()

    def pending(self, list_id: str) -> Optional[PendingMutation]:
        with self._lock:
            return self._pending.get(list_id)

    def is_in_flight(self, list_id: str) -> bool:
        with self._lock:
            return list_id in self._in_flight

    def flush(self, list_id: str) -> None:
        """Send the pending write for ``list_id`` now instead of waiting."""
        with self._lock:
            pending = self._pending.get(list_id)
            if pending is None:
                return
            pending.timer.cancel()
        self._fire(list_id)

    def cancel_all(self) -> None:
        with self._lock:
            for pending in self._pending.values():
                pending.timer.cancel()
            self._pending.clear()
            self._rerun.clear()

    def rebase(self, list_id: str, items: List[Dict[str, Any]]) -> None:
        """Adopt ``items`` as the server-confirmed state for future diffs."""
        with self._lock:
            self._base[list_id] = copy.deepcopy(list(items or []))
            if list_id in self._in_flight:
                self._rebased.add(list_id)

    def apply_remote(self, list_id: str, items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Take a pushed server state for ``list_id``; returns what the store now holds.

        With no local change outstanding the pushed items replace the local
        ones. Otherwise the unsent local delta is replayed on top of them and
        the pending timer, if any, sends it against the new baseline.
        """
        remote = copy.deepcopy(list(items or []))
        with self._lock:
            base = self._base.get(list_id)
            dirty = base is not None and (
                list_id in self._pending or list_id in self._in_flight or list_id in self._rerun
            )
            merged = merge_local_changes(base, self.store.items(list_id), remote) if dirty else remote
            self.rebase(list_id, remote)
            self.store.set_items(list_id, merged)
        if dirty:
            logger.info(
                "Merged pushed change into unsent edits for list %s",
                list_id,
                extra={"list_id": list_id},
            )
        return copy.deepcopy(merged)

    def forget(self, list_id: str) -> None:
        with self._lock:
            pending = self._pending.pop(list_id, None)
            if pending is not None:
                pending.timer.cancel()
            self._base.pop(list_id, None)
            self._rerun.discard(list_id)
            self._rebased.discard(list_id)

    # ------------------------------------------------------------------
    # network
    # ------------------------------------------------------------------

    def _fire(self, list_id: str) -> None:
        with self._lock:
            self._pending.pop(list_id, None)
            if list_id in self._in_flight:
                self._rerun.add(list_id)
                return
            current = self.store.items(list_id)
            base = self._base.get(list_id, [])
            write = compute_write(base, current)
            if write is None:
                return
            self._in_flight[list_id] = (copy.deepcopy(base), current)

        try:
            response = self._send(list_id, write)
        except ListSyncError as exc:
            self._rollback(list_id, exc)
            return
        except Exception as exc:  # unexpected transport failure
            logger.exception("Unexpected error writing list %s", list_id)
            self._rollback(list_id, exc)
            return

        self._confirm(list_id, response)

    def _send(self, list_id: str, write: Write) -> Dict[str, Any]:
        socket_id = self.socket_id()
        if write.kind == "reorder":
            logger.debug("Sending reorder for list %s (%d entries)", list_id, len(write.order or []))
            return self.transport.reorder(list_id, write.order, socket_id=socket_id)
        logger.debug(
            "Sending incremental update for list %s (+%d -%d ~%d)",
            list_id,
            len(write.added or []),
            len(write.removed or []),
            len(write.updated or []),
        )
        return self.transport.incremental_update(
            list_id,
            added=write.added,
            removed=write.removed,
            updated=write.updated,
            socket_id=socket_id,
        )

    def _confirm(self, list_id: str, response: Optional[Dict[str, Any]]) -> None:
        response = response or {}
        server_list = response.get("list") if isinstance(response.get("list"), dict) else None
        server_items = server_list.get("items") if server_list is not None else None
        if not isinstance(server_items, list):
            server_items = None
        diverged = bool(response.get("duplicates") or response.get("missing"))
        rerun = False
        changed = None
        with self._lock:
            sent_base, sent = self._in_flight.pop(list_id)
            newer = list_id in self._pending or list_id in self._rerun
            confirmed = sent
            if list_id in self._rebased:
                # A push moved the baseline while the write was out.
                self._rebased.discard(list_id)
                remote = self._base.get(list_id, [])
                applied = merge_local_changes(sent_base, sent, remote)
                if server_items is None or fingerprint(applied) == fingerprint(remote):
                    confirmed = applied
                else:
                    confirmed = server_items
                current = self.store.items(list_id)
                local = merge_local_changes(remote, current, confirmed) if newer else copy.deepcopy(confirmed)
                if fingerprint(local) != fingerprint(current):
                    self.store.set_items(list_id, local)
                    changed = local
            elif diverged and server_items is not None:
                confirmed = server_items
                if not newer:
                    self.store.set_items(list_id, confirmed)
                    changed = confirmed
            self._base[list_id] = copy.deepcopy(confirmed)
            self.snapshots.mark_local_save(list_id, confirmed)
            self.snapshots.save_snapshot(list_id, snapshot(confirmed))
            if list_id in self._rerun:
                self._rerun.discard(list_id)
                rerun = True
        if changed is not None and self.on_change is not None:
            self.on_change(list_id, copy.deepcopy(changed))
        if diverged:
            logger.info(
                "Server skipped part of the write for list %s",
                list_id,
                extra={"list_id": list_id},
            )
        if rerun:
            self._schedule(list_id, "rerun", self.immediate_delay)

    def _rollback(self, list_id: str, exc: Exception) -> None:
        with self._lock:
            self._in_flight.pop(list_id, None)
            self._rerun.discard(list_id)
            self._rebased.discard(list_id)
            pending = self._pending.pop(list_id, None)
            if pending is not None:
                pending.timer.cancel()
            base = copy.deepcopy(self._base.get(list_id, []))
            self.store.set_items(list_id, base)
        logger.warning("Write for list %s failed, local changes rolled back: %s", list_id, exc)
        if self.on_change is not None:
            self.on_change(list_id, copy.deepcopy(base))
        if self.on_error is not None:
            self.on_error(list_id, exc)


__all__ = [
    "MutationPipeline",
    "PendingMutation",
    "Write",
    "compute_write",
    "default_timer_factory",
    "merge_local_changes",
]
