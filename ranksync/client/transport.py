"""HTTP transport for the list API and its SSE change stream."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import requests

from ranksync.core.errors import TransientNetworkError, error_from_payload

logger = logging.getLogger(__name__)

SOCKET_HEADER = "X-Socket-ID"
DEFAULT_TIMEOUT = 10.0


def parse_sse_lines(lines: Iterable[str]) -> Iterable[Tuple[Optional[str], str]]:
    """Group ``text/event-stream`` lines into ``(event, data)`` pairs."""
    event: Optional[str] = None
    data: List[str] = []
    for line in lines:
        if line is None:
            continue
        if line == "":
            if data:
                yield event, "\n".join(data)
            event, data = None, []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            event = value
        elif name == "data":
            data.append(value)
    if data:
        yield event, "\n".join(data)


class EventStream:
    """Reads one SSE response on a daemon thread and hands events to a callback."""

    def __init__(
        self,
        response: requests.Response,
        on_event: Callable[[Optional[str], str], None],
        on_error: Optional[Callable[[Exception], None]] = None,
        name: str = "list-event-stream",
    ) -> None:
        self.response = response
        self.on_event = on_event
        self.on_error = on_error
        self._closed = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def start(self) -> "EventStream":
        self._thread.start()
        return self

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        try:
            self.response.close()
        except requests.RequestException:
            logger.debug("Error closing event stream", exc_info=True)

    def _run(self) -> None:
        try:
            lines = self.response.iter_lines(decode_unicode=True)
            for event, data in parse_sse_lines(lines):
                if self._closed.is_set():
                    break
                self.on_event(event, data)
        except (requests.RequestException, AttributeError, ValueError) as exc:
            self._report(exc, "Event stream disconnected: %s")
        else:
            self._report(requests.ConnectionError("Event stream closed by server"), "Event stream ended: %s")
        finally:
            self._closed.set()

    def _report(self, exc: Exception, message: str) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        logger.warning(message, exc)
        if self.on_error is not None:
            self.on_error(exc)


class ListApiClient:
    def __init__(self, base_url: str, session: Optional[requests.Session] = None, timeout: float = DEFAULT_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        socket_id: Optional[str] = None,
    ) -> Any:
        headers = {SOCKET_HEADER: socket_id} if socket_id else None
        try:
            resp = self.session.request(method, self._url(path), json=json, headers=headers, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise TransientNetworkError(f"Could not reach server: {exc}") from exc
        except requests.RequestException as exc:
            raise TransientNetworkError(f"Request failed: {exc}") from exc

        if resp.status_code >= 400:
            try:
                payload = resp.json()
            except ValueError:
                payload = None
            raise error_from_payload(resp.status_code, payload)
        if resp.status_code == 204 or not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as exc:
            raise TransientNetworkError("Server returned a non-JSON response") from exc

    # reads
    def fetch_lists(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/api/lists").get("lists", [])

    def fetch_list(self, list_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/api/lists/{list_id}")

    # writes
    def create_list(self, name: str, *, year: Optional[int] = None, group_id: Optional[int] = None,
                    entries: Optional[List[Dict[str, Any]]] = None, socket_id: Optional[str] = None) -> Dict[str, Any]:
        body: Dict[str, Any] = {"name": name}
        if year is not None:
            body["year"] = year
        if group_id is not None:
            body["group_id"] = group_id
        if entries:
            body["items"] = entries
        return self._request("POST", "/api/lists", json=body, socket_id=socket_id)

    def replace_items(self, list_id: str, entries: List[Dict[str, Any]], socket_id: Optional[str] = None) -> Dict[str, Any]:
        return self._request("PUT", f"/api/lists/{list_id}/items", json={"items": entries}, socket_id=socket_id)

    def reorder(self, list_id: str, order: List[Any], socket_id: Optional[str] = None) -> Dict[str, Any]:
        return self._request("PUT", f"/api/lists/{list_id}/reorder", json={"order": order}, socket_id=socket_id)

    def incremental_update(
        self,
        list_id: str,
        *,
        added: Optional[List[Dict[str, Any]]] = None,
        removed: Optional[List[str]] = None,
        updated: Optional[List[Dict[str, Any]]] = None,
        socket_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        body = {"added": added or [], "removed": removed or [], "updated": updated or []}
        return self._request("PATCH", f"/api/lists/{list_id}/items", json=body, socket_id=socket_id)

    def patch_metadata(self, list_id: str, patch: Dict[str, Any], socket_id: Optional[str] = None) -> Dict[str, Any]:
        return self._request("PATCH", f"/api/lists/{list_id}", json=patch, socket_id=socket_id)

    def set_main(self, list_id: str, is_main: bool = True, socket_id: Optional[str] = None) -> Dict[str, Any]:
        return self._request("POST", f"/api/lists/{list_id}/main", json={"is_main": is_main}, socket_id=socket_id)

    def delete_list(self, list_id: str, socket_id: Optional[str] = None) -> Dict[str, Any]:
        return self._request("DELETE", f"/api/lists/{list_id}", socket_id=socket_id)

    # push
    def open_event_stream(
        self,
        list_id: str,
        on_event: Callable[[Optional[str], str], None],
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> EventStream:
        try:
            resp = self.session.get(
                self._url(f"/api/lists/{list_id}/events"),
                headers={"Accept": "text/event-stream"},
                stream=True,
                timeout=(self.timeout, None),
            )
        except requests.RequestException as exc:
            raise TransientNetworkError(f"Could not subscribe to list {list_id}: {exc}") from exc
        if resp.status_code >= 400:
            try:
                payload = resp.json()
            except ValueError:
                payload = None
            resp.close()
            raise error_from_payload(resp.status_code, payload)
        return EventStream(resp, on_event, on_error, name=f"list-events-{list_id}").start()


__all__ = ["EventStream", "ListApiClient", "SOCKET_HEADER", "parse_sse_lines"]
