"""Client facade: one store, one pipeline and one push channel per user session."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from ranksync.core.errors import EntryNotFoundError
from ranksync.core.identity import ContextState, find_duplicates, resolve_context
from .channel import PUSH_DEBOUNCE, PushSubscriptionChannel
from .pipeline import (
    EDIT_DELAY,
    IMMEDIATE_DELAY,
    REORDER_DELAY,
    MutationPipeline,
    default_timer_factory,
)
from .snapshots import SnapshotTracker, snapshot
from .storage import KeyValueStorage
from .store import LocalListStore

logger = logging.getLogger(__name__)


class ListSession:
    def __init__(
        self,
        transport,
        *,
        storage: Optional[KeyValueStorage] = None,
        on_change: Optional[Callable[[str, List[Dict[str, Any]]], None]] = None,
        on_render: Optional[Callable[[str], None]] = None,
        on_error: Optional[Callable[[str, Exception], None]] = None,
        timer_factory: Callable = default_timer_factory,
        reorder_delay: float = REORDER_DELAY,
        edit_delay: float = EDIT_DELAY,
        immediate_delay: float = IMMEDIATE_DELAY,
        push_debounce: float = PUSH_DEBOUNCE,
    ) -> None:
        self.transport = transport
        self.store = LocalListStore()
        self.snapshots = SnapshotTracker(storage)
        self.pipeline = MutationPipeline(
            self.store,
            transport,
            self.snapshots,
            on_change=on_change,
            on_error=on_error,
            socket_id=lambda: self.channel.socket_id,
            timer_factory=timer_factory,
            reorder_delay=reorder_delay,
            edit_delay=edit_delay,
            immediate_delay=immediate_delay,
        )
        self.channel = PushSubscriptionChannel(
            transport,
            self.store,
            self.snapshots,
            apply_items=self.pipeline.apply_remote,
            on_render=on_render,
            on_deleted=self._on_deleted,
            timer_factory=timer_factory,
            debounce=push_debounce,
        )

    @classmethod
    def from_config(cls, transport, config, **kwargs) -> "ListSession":
        """Build a session using the debounce windows from a ``Config``-like object."""
        kwargs.setdefault("reorder_delay", getattr(config, "REORDER_DEBOUNCE_MS", 300) / 1000.0)
        kwargs.setdefault("edit_delay", getattr(config, "EDIT_DEBOUNCE_MS", 300) / 1000.0)
        kwargs.setdefault("push_debounce", getattr(config, "PUSH_DEBOUNCE_MS", 100) / 1000.0)
        return cls(transport, **kwargs)

    # callbacks -------------------------------------------------------------

    def _on_deleted(self, list_id: str) -> None:
        self.pipeline.forget(list_id)
        if self.channel.list_id == list_id:
            self.channel.unsubscribe()

    # lifecycle -------------------------------------------------------------

    def load(self) -> List[str]:
        """Fetch list metadata and (re)initialize the store; returns list ids."""
        self.store.init(self.transport.fetch_lists())
        return self.store.list_ids()

    def open_list(self, list_id: str) -> List[Dict[str, Any]]:
        """Display ``list_id``: fetch its items if needed and subscribe to pushes."""
        list_id = self._ensure_loaded(list_id)
        self.store.set_current(list_id)
        self.channel.subscribe(list_id)
        return self.store.items(list_id)

    def _ensure_loaded(self, list_id: str) -> str:
        list_id = str(list_id)
        if not self.store.is_data_loaded(list_id):
            payload = self.transport.fetch_list(list_id)
            self.store.load_metadata(payload)
            self.pipeline.rebase(list_id, payload.get("items") or [])
        return list_id

    def close_list(self) -> None:
        self.channel.unsubscribe()
        self.store.set_current(None)

    def close(self) -> None:
        self.pipeline.cancel_all()
        self.channel.unsubscribe()
        self.store.reset()

    # list lifecycle ----------------------------------------------------------

    def create_list(self, name: str, *, year: Optional[int] = None, group_id: Optional[int] = None) -> str:
        payload = self.transport.create_list(name, year=year, group_id=group_id, socket_id=self.channel.socket_id)
        created = payload.get("list", payload)
        self.store.load_metadata(created)
        self.pipeline.rebase(created["id"], created.get("items") or [])
        return created["id"]

    def delete_list(self, list_id: str) -> None:
        self.pipeline.forget(list_id)
        self.transport.delete_list(list_id, socket_id=self.channel.socket_id)
        if self.channel.list_id == list_id:
            self.channel.unsubscribe()
        self.store.remove(list_id)
        self.snapshots.clear_snapshot(list_id)

    def update_metadata(self, list_id: str, **patch: Any) -> Dict[str, Any]:
        payload = self.transport.patch_metadata(list_id, patch, socket_id=self.channel.socket_id)
        updated = payload.get("list", payload)
        self.store.update_metadata(list_id, updated)
        return updated

    def set_main(self, list_id: str, is_main: bool = True) -> Dict[str, Any]:
        payload = self.transport.set_main(list_id, is_main, socket_id=self.channel.socket_id)
        updated = payload.get("list", payload)
        self.store.update_metadata(list_id, updated)
        for other_id in payload.get("previous_main_ids") or []:
            self.store.update_metadata(other_id, {"is_main": False})
        return updated

    def import_items(self, list_id: str, entries: List[Dict[str, Any]]) -> List[str]:
        """Bulk import: replace every entry; returns identities dropped as duplicates."""
        repeated = find_duplicates(entries)
        if repeated:
            logger.info(
                "Import for list %s repeats %d entries, the server keeps the first of each",
                list_id,
                len(repeated),
                extra={"list_id": list_id},
            )
        self.pipeline.flush(list_id)
        payload = self.transport.replace_items(list_id, entries, socket_id=self.channel.socket_id)
        items = payload.get("list", {}).get("items", [])
        self.store.set_items(list_id, items)
        self.pipeline.rebase(list_id, items)
        self.snapshots.mark_local_save(list_id, items)
        self.snapshots.save_snapshot(list_id, snapshot(items))
        return payload.get("duplicates", [])

    # entry mutations -----------------------------------------------------

    def reorder(self, list_id: str, from_index: int, to_index: int) -> bool:
        return self.pipeline.apply_reorder(self._ensure_loaded(list_id), from_index, to_index)

    def add(self, list_id: str, entry: Dict[str, Any], position: Optional[int] = None) -> int:
        return self.pipeline.apply_add(self._ensure_loaded(list_id), entry, position)

    def remove(self, list_id: str, identity: str) -> Dict[str, Any]:
        return self.pipeline.apply_remove(self._ensure_loaded(list_id), identity)

    def edit(self, list_id: str, identity: str, field: str, value: Any) -> str:
        return self.pipeline.apply_field_edit(self._ensure_loaded(list_id), identity, field, value)

    def capture_context(self, list_id: str, index: int) -> ContextState:
        return ContextState.capture(list_id, self.store.items(list_id), index)

    def resolve(self, context: ContextState):
        """Re-validate a context against current items; raises when the entry is gone."""
        found = resolve_context(self.store.items(context.list_id), context)
        if found is None:
            raise EntryNotFoundError(
                "Entry no longer exists",
                details={"identity": context.identity, "list_id": context.list_id},
            )
        return found

    def move_context(self, context: ContextState, to_index: int) -> bool:
        _, index = self.resolve(context)
        return self.reorder(context.list_id, index, to_index)

    def remove_context(self, context: ContextState) -> Dict[str, Any]:
        self.resolve(context)
        return self.remove(context.list_id, context.identity)

    def edit_context(self, context: ContextState, field: str, value: Any) -> str:
        self.resolve(context)
        return self.edit(context.list_id, context.identity, field, value)


__all__ = ["ListSession"]
