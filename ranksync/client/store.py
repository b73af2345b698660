"""
In-memory mirror of the user's lists on one client.

Only the mutation pipeline and channel reconciliation write items here. A
list registered from metadata alone has ``items_loaded`` False, which is how
"not fetched yet" stays distinguishable from "fetched and empty".
"""

from __future__ import annotations

import copy
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

_METADATA_FIELDS = ("name", "year", "group_id", "is_main", "updated_at")


@dataclass
class ListState:
    id: str
    name: str = ""
    year: Optional[int] = None
    group_id: Optional[int] = None
    is_main: bool = False
    updated_at: Optional[str] = None
    items: List[Dict[str, Any]] = field(default_factory=list)
    items_loaded: bool = False

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ListState":
        state = cls(id=str(payload["id"]))
        state.apply_metadata(payload)
        if isinstance(payload.get("items"), list):
            state.items = copy.deepcopy(payload["items"])
            state.items_loaded = True
        return state

    def apply_metadata(self, patch: Dict[str, Any]) -> None:
        for name in _METADATA_FIELDS:
            if name in patch:
                setattr(self, name, patch[name])
        if "groupId" in patch:
            self.group_id = patch["groupId"]
        if "isMain" in patch:
            self.is_main = bool(patch["isMain"])


class LocalListStore:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._lists: Dict[str, ListState] = {}
        self._current: Optional[str] = None

    # lifecycle -----------------------------------------------------------

    def init(self, lists_metadata: Optional[Iterable[Dict[str, Any]]] = None) -> None:
        with self._lock:
            self._lists = {}
            self._current = None
            for payload in lists_metadata or ():
                state = ListState.from_payload(payload)
                self._lists[state.id] = state

    def reset(self) -> None:
        with self._lock:
            self._lists.clear()
            self._current = None

    # reads ---------------------------------------------------------------

    def get(self, list_id: str) -> Optional[ListState]:
        with self._lock:
            state = self._lists.get(str(list_id))
            return copy.deepcopy(state) if state is not None else None

    def items(self, list_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            state = self._lists.get(str(list_id))
            return copy.deepcopy(state.items) if state is not None else []

    def is_data_loaded(self, list_id: str) -> bool:
        with self._lock:
            state = self._lists.get(str(list_id))
            return bool(state and state.items_loaded)

    def find_list_by_name(self, name: str, group_id: Optional[int] = None) -> Optional[ListState]:
        with self._lock:
            for state in self._lists.values():
                if state.name == name and (group_id is None or state.group_id == group_id):
                    return copy.deepcopy(state)
        return None

    def list_ids(self) -> List[str]:
        with self._lock:
            return list(self._lists)

    @property
    def current_list_id(self) -> Optional[str]:
        with self._lock:
            return self._current

    def set_current(self, list_id: Optional[str]) -> None:
        with self._lock:
            self._current = str(list_id) if list_id is not None else None

    # writes --------------------------------------------------------------

    def load_metadata(self, payload: Dict[str, Any]) -> ListState:
        """Register or refresh a list from a metadata payload, keeping its items."""
        with self._lock:
            list_id = str(payload["id"])
            state = self._lists.get(list_id)
            if state is None:
                state = ListState.from_payload(payload)
                self._lists[list_id] = state
            else:
                state.apply_metadata(payload)
                if isinstance(payload.get("items"), list):
                    state.items = copy.deepcopy(payload["items"])
                    state.items_loaded = True
            return copy.deepcopy(state)

    def set_items(self, list_id: str, items: Optional[Iterable[Dict[str, Any]]]) -> None:
        with self._lock:
            key = str(list_id)
            state = self._lists.get(key)
            if state is None:
                state = ListState(id=key)
                self._lists[key] = state
            state.items = copy.deepcopy(list(items or []))
            state.items_loaded = True

    def update_metadata(self, list_id: str, patch: Dict[str, Any]) -> None:
        with self._lock:
            state = self._lists.get(str(list_id))
            if state is None:
                logger.debug("Metadata update for unknown list %s ignored", list_id)
                return
            state.apply_metadata(patch or {})

    def remove(self, list_id: str) -> None:
        with self._lock:
            self._lists.pop(str(list_id), None)
            if self._current == str(list_id):
                self._current = None


__all__ = ["ListState", "LocalListStore"]
