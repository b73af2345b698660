#!/usr/bin/env python
"""
Authoritative list operations against the durable store.

Every write runs in one transaction, invalidates the cached read views of the
list it touched and, when that list is (or was) the main list of a year,
schedules a recompute of the year aggregate before returning. Broadcasting
the change is left to the caller, after the write has committed.
"""

from __future__ import annotations

import copy
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from sqlalchemy import func

from ranksync.core.errors import (
    DuplicateNameError,
    ListNotFoundError,
    NotFoundError,
    ValidationError,
)
from ranksync.core.identity import identity_of
from ranksync.database.db_manager import (
    ENTRY_FIELDS,
    UNCATEGORIZED_GROUP,
    ListEntry,
    ListGroup,
    RankedList,
    db,
)
from ranksync.observability.metrics import record_duplicates, record_list_write
from ranksync.utils.cache import MISSING, TTLCache
from .year_lock import (
    set_year_locked,
    validate_main_list_not_locked,
    validate_year_not_locked,
)

logger = logging.getLogger(__name__)

_UNSET: Any = object()

_FIELD_ALIASES = {
    "album": "title",
    "releaseDate": "release_date",
    "trackPick": "track_pick",
    "primary_track": "track_pick",
    "coverImage": "cover_image",
    "comments": "comment",
}


@dataclass
class WriteResult:
    list: Dict[str, Any]
    change_count: int = 0
    added: List[str] = field(default_factory=list)
    duplicates: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    previous_main_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "list": self.list,
            "change_count": self.change_count,
            "added": self.added,
            "duplicates": self.duplicates,
            "missing": self.missing,
        }


def _clean_text(value: Any, limit: int = 255) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text[:limit] if text else None


def _clean_genres(value: Any) -> List[str]:
    if not value:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    return [piece.strip() for piece in str(value).split(",") if piece.strip()]


def clean_entry_fields(payload: Dict[str, Any], *, partial: bool = False) -> Dict[str, Any]:
    """Map a client entry payload onto entry columns.

    With ``partial`` only the keys present in ``payload`` are returned, which
    is what a field patch needs.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Entry must be an object", code="invalid_entry")
    normalized: Dict[str, Any] = {}
    for key, value in payload.items():
        name = _FIELD_ALIASES.get(key, key)
        if name in ENTRY_FIELDS:
            normalized[name] = value

    cleaned: Dict[str, Any] = {}
    for name in ENTRY_FIELDS:
        if partial and name not in normalized:
            continue
        value = normalized.get(name)
        if name == "genres":
            cleaned[name] = _clean_genres(value)
        elif name == "comment":
            cleaned[name] = _clean_text(value, limit=10000)
        elif name in ("artist", "title"):
            cleaned[name] = _clean_text(value) or ""
        else:
            cleaned[name] = _clean_text(value, limit=500)
    return cleaned


def _build_entry(payload: Dict[str, Any]) -> ListEntry:
    fields = clean_entry_fields(payload)
    identity = identity_of(fields)
    if not identity:
        raise ValidationError("Entry needs an artist or a title", code="invalid_entry")
    return ListEntry(identity=identity, **fields)


def _renumber(entries: Sequence[ListEntry]) -> None:
    for index, entry in enumerate(entries):
        if entry.position != index:
            entry.position = index


def _validate_year(year: Any) -> Optional[int]:
    if year is None:
        return None
    try:
        value = int(year)
    except (TypeError, ValueError):
        raise ValidationError("Year must be a number", code="invalid_year")
    if value < 1000 or value > 9999:
        raise ValidationError("Year must be between 1000 and 9999", code="invalid_year")
    return value


class ListService:
    def __init__(self, *, cache: Optional[TTLCache] = None, recomputer=None) -> None:
        self.cache = cache or TTLCache(maxsize=512, ttl=60)
        self.recomputer = recomputer

    # ------------------------------------------------------------------
    # internal helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _transaction(self) -> Iterator[Any]:
        try:
            yield db.session
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

    def _owned_list(self, list_id: str, user_id: int) -> RankedList:
        ranked = RankedList.query.filter_by(id=str(list_id), user_id=user_id).first()
        if ranked is None:
            raise ListNotFoundError("List not found", details={"list_id": list_id})
        return ranked

    def _owned_group(self, group_id: Any, user_id: int) -> ListGroup:
        try:
            gid = int(group_id)
        except (TypeError, ValueError):
            raise ValidationError("Invalid group", code="invalid_group")
        group = ListGroup.query.filter_by(id=gid, user_id=user_id).first()
        if group is None:
            raise ValidationError("Invalid group", code="invalid_group")
        return group

    def _find_or_create_group(self, user_id: int, year: Optional[int]) -> ListGroup:
        name = str(year) if year is not None else UNCATEGORIZED_GROUP
        group = ListGroup.query.filter_by(user_id=user_id, name=name).first()
        if group is not None:
            return group
        next_order = (
            db.session.query(func.coalesce(func.max(ListGroup.sort_order), -1))
            .filter(ListGroup.user_id == user_id)
            .scalar()
        ) + 1
        group = ListGroup(user_id=user_id, name=name, year=year, sort_order=next_order)
        db.session.add(group)
        db.session.flush()
        return group

    def _delete_group_if_empty(self, group: Optional[ListGroup]) -> None:
        if group is None or not group.is_auto:
            return
        remaining = RankedList.query.filter_by(group_id=group.id).count()
        if remaining == 0:
            db.session.delete(group)

    def _ensure_unique_name(self, user_id: int, name: str, group_id: Optional[int], exclude_id: Optional[str] = None) -> None:
        query = RankedList.query.filter_by(user_id=user_id, name=name, group_id=group_id)
        if exclude_id is not None:
            query = query.filter(RankedList.id != exclude_id)
        if query.first() is not None:
            raise DuplicateNameError("A list with this name already exists in this category")

    def _invalidate(self, user_id: int, list_id: Optional[str] = None) -> None:
        if list_id is not None:
            self.cache.invalidate((user_id, str(list_id)))
        self.cache.invalidate(("index", user_id))

    def _schedule_recompute(self, *years: Optional[int]) -> None:
        if self.recomputer is None:
            return
        for year in {y for y in years if y}:
            self.recomputer.schedule(year)

    def _finish_write(self, ranked: RankedList, kind: str, *, years: Iterable[Optional[int]] = ()) -> Dict[str, Any]:
        self._invalidate(ranked.user_id, ranked.id)
        recompute = set(years)
        if ranked.is_main:
            recompute.add(ranked.year)
        self._schedule_recompute(*recompute)
        record_list_write(kind)
        return ranked.to_dict(include_items=True)

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    def get_list(self, list_id: str, user_id: int) -> Dict[str, Any]:
        key = (user_id, str(list_id))
        cached = self.cache.get(key)
        if cached is not MISSING:
            return copy.deepcopy(cached)
        view = self._owned_list(list_id, user_id).to_dict(include_items=True)
        self.cache.set(key, view)
        return copy.deepcopy(view)

    def list_lists(self, user_id: int) -> List[Dict[str, Any]]:
        key = ("index", user_id)
        cached = self.cache.get(key)
        if cached is not MISSING:
            return copy.deepcopy(cached)
        rows = (
            RankedList.query.outerjoin(ListGroup, RankedList.group_id == ListGroup.id)
            .filter(RankedList.user_id == user_id)
            .order_by(ListGroup.sort_order, RankedList.sort_order, RankedList.created_at)
            .all()
        )
        view = [ranked.to_dict() for ranked in rows]
        self.cache.set(key, view)
        return copy.deepcopy(view)

    # ------------------------------------------------------------------
    # list lifecycle
    # ------------------------------------------------------------------

    def create_list(
        self,
        user_id: int,
        name: Any,
        *,
        year: Any = None,
        group_id: Any = None,
        entries: Optional[Sequence[Dict[str, Any]]] = None,
    ) -> WriteResult:
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("List name is required", code="name_required")
        trimmed = name.strip()

        with self._transaction():
            if group_id is not None:
                group = self._owned_group(group_id, user_id)
                list_year = group.year
            else:
                list_year = _validate_year(year)
                group = self._find_or_create_group(user_id, list_year)

            self._ensure_unique_name(user_id, trimmed, group.id)
            next_order = (
                db.session.query(func.coalesce(func.max(RankedList.sort_order), -1))
                .filter(RankedList.group_id == group.id)
                .scalar()
            ) + 1
            ranked = RankedList(
                user_id=user_id,
                name=trimmed,
                year=list_year,
                group_id=group.id,
                is_main=False,
                sort_order=next_order,
            )
            db.session.add(ranked)
            duplicates = self._fill_entries(ranked, entries or [])
            db.session.flush()

        logger.info(
            "List created",
            extra={"list_id": ranked.id, "user_id": user_id, "year": list_year},
        )
        view = self._finish_write(ranked, "create")
        return WriteResult(list=view, change_count=len(ranked.entries), duplicates=duplicates)

    def delete_list(self, list_id: str, user_id: int) -> Dict[str, Any]:
        with self._transaction():
            ranked = self._owned_list(list_id, user_id)
            if ranked.is_main:
                raise ValidationError(
                    "Cannot delete main list. Unset main status first.",
                    code="main_list_delete",
                )
            group = ranked.group
            summary = ranked.to_dict()
            db.session.delete(ranked)
            db.session.flush()
            self._delete_group_if_empty(group)

        self._invalidate(user_id, list_id)
        record_list_write("delete")
        logger.info("List deleted", extra={"list_id": list_id, "user_id": user_id})
        return summary

    # ------------------------------------------------------------------
    # item writes
    # ------------------------------------------------------------------

    def _fill_entries(self, ranked: RankedList, payloads: Sequence[Dict[str, Any]]) -> List[str]:
        if not isinstance(payloads, (list, tuple)):
            raise ValidationError("Entries must be an array", code="invalid_payload")
        seen = set()
        duplicates: List[str] = []
        position = 0
        for payload in payloads:
            entry = _build_entry(payload)
            if entry.identity in seen:
                duplicates.append(entry.identity)
                continue
            seen.add(entry.identity)
            entry.position = position
            position += 1
            ranked.entries.append(entry)
        return duplicates

    def replace_items(self, list_id: str, user_id: int, entries: Sequence[Dict[str, Any]]) -> WriteResult:
        """Delete every entry and recreate from ``entries`` (bulk import only).

        This is last-writer-wins: a concurrent edit from another client is
        discarded.
        """
        with self._transaction():
            ranked = self._owned_list(list_id, user_id)
            validate_main_list_not_locked(ranked.year, ranked.is_main, "modify list items")
            ranked.entries.clear()
            db.session.flush()
            duplicates = self._fill_entries(ranked, entries)
            ranked.updated_at = datetime.utcnow()

        if duplicates:
            logger.info("Full replace dropped duplicate entries", extra={"list_id": ranked.id})
        view = self._finish_write(ranked, "replace")
        return WriteResult(list=view, change_count=len(ranked.entries), duplicates=duplicates)

    def reorder(self, list_id: str, user_id: int, order: Sequence[Any]) -> WriteResult:
        """Reposition existing entries; content is untouched.

        ``order`` holds identities or current positions. Entries not mentioned
        keep their relative order after the mentioned ones.
        """
        if not isinstance(order, (list, tuple)) or not order:
            raise ValidationError("Order must be a non-empty array", code="invalid_payload")

        with self._transaction():
            ranked = self._owned_list(list_id, user_id)
            validate_main_list_not_locked(ranked.year, ranked.is_main, "reorder list items")
            current = list(ranked.entries)

            by_identity: Dict[str, List[ListEntry]] = {}
            for entry in current:
                by_identity.setdefault(entry.identity, []).append(entry)

            picked: List[ListEntry] = []
            picked_ids = set()
            unknown: List[Any] = []
            for token in order:
                entry = None
                if isinstance(token, bool):
                    unknown.append(token)
                    continue
                if isinstance(token, int):
                    if 0 <= token < len(current):
                        entry = current[token]
                elif isinstance(token, str):
                    candidates = [e for e in by_identity.get(token, []) if id(e) not in picked_ids]
                    entry = candidates[0] if candidates else None
                if entry is None or id(entry) in picked_ids:
                    unknown.append(token)
                    continue
                picked.append(entry)
                picked_ids.add(id(entry))

            if unknown:
                raise ValidationError(
                    "Order references unknown entries",
                    code="unknown_entries",
                    details={"entries": unknown},
                )

            remainder = [entry for entry in current if id(entry) not in picked_ids]
            new_order = picked + remainder
            moved = sum(1 for index, entry in enumerate(new_order) if entry.position != index)
            _renumber(new_order)
            ranked.updated_at = datetime.utcnow()

        logger.info("List reordered", extra={"list_id": ranked.id, "user_id": user_id})
        view = self._finish_write(ranked, "reorder")
        return WriteResult(list=view, change_count=moved)

    def incremental_update(
        self,
        list_id: str,
        user_id: int,
        *,
        added: Optional[Sequence[Dict[str, Any]]] = None,
        removed: Optional[Sequence[str]] = None,
        updated: Optional[Sequence[Dict[str, Any]]] = None,
    ) -> WriteResult:
        """Apply a diff: removals, then additions, then updates, in one transaction.

        An added entry whose identity is already in the list (or earlier in the
        same batch) is reported in ``duplicates`` and not inserted. An update
        naming an identity that no longer exists is reported in ``missing``.
        """
        for name, value in (("added", added), ("removed", removed), ("updated", updated)):
            if value is not None and not isinstance(value, (list, tuple)):
                raise ValidationError(f"'{name}' must be an array", code="invalid_payload")

        result_added: List[str] = []
        duplicates: List[str] = []
        missing: List[str] = []
        change_count = 0

        with self._transaction():
            ranked = self._owned_list(list_id, user_id)
            validate_main_list_not_locked(ranked.year, ranked.is_main, "modify list items")
            ordered = list(ranked.entries)

            doomed = {identity for identity in (removed or []) if isinstance(identity, str) and identity}
            if doomed:
                keep = []
                for entry in ordered:
                    if entry.identity in doomed:
                        ranked.entries.remove(entry)
                        change_count += 1
                    else:
                        keep.append(entry)
                ordered = keep

            existing = {entry.identity for entry in ordered}
            placements = []
            for payload in added or []:
                entry = _build_entry(payload)
                if entry.identity in existing:
                    duplicates.append(entry.identity)
                    continue
                existing.add(entry.identity)
                ranked.entries.append(entry)
                position = payload.get("position") if isinstance(payload, dict) else None
                placements.append((entry, position))
                result_added.append(entry.identity)
                change_count += 1
            for entry, _ in placements:
                ordered.append(entry)

            moves = []
            for change in updated or []:
                if not isinstance(change, dict) or not isinstance(change.get("identity"), str):
                    raise ValidationError("Each update needs an identity", code="invalid_payload")
                identity = change["identity"]
                patch = change.get("patch") or {}
                if not isinstance(patch, dict):
                    raise ValidationError("Update patch must be an object", code="invalid_payload")
                target = next((e for e in ordered if e.identity == identity), None)
                if target is None:
                    missing.append(identity)
                    continue
                fields = clean_entry_fields(patch, partial=True)
                if fields:
                    candidate = {name: getattr(target, name) for name in ENTRY_FIELDS}
                    candidate.update(fields)
                    new_identity = identity_of(candidate)
                    if not new_identity:
                        raise ValidationError("Entry needs an artist or a title", code="invalid_entry")
                    if new_identity != target.identity and new_identity in existing:
                        duplicates.append(new_identity)
                        continue
                    for name, value in fields.items():
                        setattr(target, name, value)
                    if new_identity != target.identity:
                        existing.discard(target.identity)
                        existing.add(new_identity)
                        target.identity = new_identity
                    target.updated_at = datetime.utcnow()
                position = patch.get("position", change.get("position"))
                if position is not None:
                    moves.append((target, position))
                change_count += 1

            for entry, position in placements:
                if position is not None:
                    moves.append((entry, position))
            for entry, position in sorted(moves, key=lambda m: _as_index(m[1])):
                ordered.remove(entry)
                ordered.insert(min(max(_as_index(position), 0), len(ordered)), entry)

            _renumber(ordered)
            ranked.updated_at = datetime.utcnow()

        record_duplicates(len(duplicates))
        logger.info(
            "List incrementally updated",
            extra={"list_id": ranked.id, "user_id": user_id},
        )
        view = self._finish_write(ranked, "incremental")
        return WriteResult(
            list=view,
            change_count=change_count,
            added=result_added,
            duplicates=duplicates,
            missing=missing,
        )

    # ------------------------------------------------------------------
    # metadata writes
    # ------------------------------------------------------------------

    def update_metadata(
        self,
        list_id: str,
        user_id: int,
        *,
        name: Any = _UNSET,
        year: Any = _UNSET,
        group_id: Any = _UNSET,
    ) -> WriteResult:
        """Rename, change year or move a list to another group."""
        if name is _UNSET and year is _UNSET and group_id is _UNSET:
            raise ValidationError("No updates provided", code="no_updates")

        with self._transaction():
            ranked = self._owned_list(list_id, user_id)
            old_year = ranked.year
            was_main = ranked.is_main
            old_group = ranked.group
            target_group = old_group
            target_year = old_year

            if group_id is not _UNSET:
                if group_id is None:
                    raise ValidationError("Lists must belong to a category", code="invalid_group")
                target_group = self._owned_group(group_id, user_id)
                target_year = target_group.year
            elif year is not _UNSET:
                target_year = _validate_year(year)
                if target_year != old_year:
                    target_group = self._find_or_create_group(user_id, target_year)

            validate_main_list_not_locked(old_year, was_main, "update list")
            if target_year != old_year:
                validate_main_list_not_locked(target_year, was_main, "update list")

            target_name = ranked.name
            if name is not _UNSET:
                if not isinstance(name, str) or not name.strip():
                    raise ValidationError("List name cannot be empty", code="name_required")
                target_name = name.strip()

            target_group_id = target_group.id if target_group is not None else None
            if target_name != ranked.name or target_group_id != ranked.group_id:
                self._ensure_unique_name(user_id, target_name, target_group_id, exclude_id=ranked.id)

            ranked.name = target_name
            ranked.group_id = target_group_id
            ranked.year = target_year
            if target_year != old_year and was_main:
                # Main status belongs to a year; a list moved out of it gives it up.
                ranked.is_main = False
            ranked.updated_at = datetime.utcnow()
            db.session.flush()
            if old_group is not None and old_group is not target_group:
                self._delete_group_if_empty(old_group)

        logger.info("List metadata updated", extra={"list_id": ranked.id, "user_id": user_id})
        years = [old_year] if was_main else []
        view = self._finish_write(ranked, "metadata", years=years)
        return WriteResult(list=view, change_count=1)

    def set_main(self, list_id: str, user_id: int, is_main: bool) -> WriteResult:
        """Mark (or unmark) a list as the official list of its year."""
        previous: List[str] = []
        with self._transaction():
            ranked = self._owned_list(list_id, user_id)
            year = ranked.year
            validate_year_not_locked(year, "change main status")
            if is_main:
                if not year:
                    raise ValidationError(
                        "List must be assigned to a year to be marked as main",
                        code="year_required",
                    )
                others = RankedList.query.filter(
                    RankedList.user_id == user_id,
                    RankedList.year == year,
                    RankedList.is_main.is_(True),
                    RankedList.id != ranked.id,
                ).all()
                for other in others:
                    other.is_main = False
                    other.updated_at = datetime.utcnow()
                    previous.append(other.id)
            ranked.is_main = bool(is_main)
            ranked.updated_at = datetime.utcnow()

        for other_id in previous:
            self._invalidate(user_id, other_id)
        view = self._finish_write(ranked, "main", years=[ranked.year])
        logger.info("List main status changed", extra={"list_id": ranked.id, "user_id": user_id})
        return WriteResult(list=view, change_count=1 + len(previous), previous_main_ids=previous)

    # ------------------------------------------------------------------
    # year locks
    # ------------------------------------------------------------------

    def lock_year(self, year: Any) -> Dict[str, Any]:
        return set_year_locked(_validate_year(year), True).to_dict()

    def unlock_year(self, year: Any) -> Dict[str, Any]:
        return set_year_locked(_validate_year(year), False).to_dict()


def _as_index(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError("Position must be an integer", code="invalid_position")


__all__ = ["ListService", "WriteResult", "clean_entry_fields"]
