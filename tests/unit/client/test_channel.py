import json

import pytest

from ranksync.client.channel import PushSubscriptionChannel
from ranksync.client.snapshots import SnapshotTracker, snapshot
from ranksync.client.store import LocalListStore
from ranksync.core.errors import TransientNetworkError
from ranksync.core.identity import identity_of
from tests.support.fakes import FakeTransport, ManualClock, album

A = album("Artist A", "Album A")
B = album("Artist B", "Album B")
C = album("Artist C", "Album C")


def _push(items, kind="updated", **extra):
    body = {"kind": kind, "list_id": "L", "items": items}
    body.update(extra)
    return json.dumps(body)


class Harness:
    def __init__(self, items):
        self.clock = ManualClock()
        self.transport = FakeTransport({"L": {"items": items}, "M": {"items": []}})
        self.store = LocalListStore()
        self.store.init([{"id": "L", "name": "Main"}, {"id": "M", "name": "Other"}])
        self.store.set_items("L", items)
        self.store.set_current("L")
        self.snapshots = SnapshotTracker()
        self.reconciled = []
        self.rendered = []
        self.deleted = []
        self.channel = PushSubscriptionChannel(
            self.transport,
            self.store,
            self.snapshots,
            on_reconciled=lambda list_id, items: self.reconciled.append((list_id, items)),
            on_render=self.rendered.append,
            on_deleted=self.deleted.append,
            timer_factory=self.clock,
        )

    @property
    def stream(self):
        return self.transport.streams[-1]

    def order(self, list_id="L"):
        return [identity_of(e) for e in self.store.items(list_id)]


@pytest.mark.unit
def test_subscribe_opens_one_stream_and_replaces_previous():
    h = Harness([A])
    assert h.channel.subscribe("L") is True
    assert h.channel.subscribe("L") is False
    assert len(h.transport.streams) == 1

    first = h.stream
    assert h.channel.subscribe("M") is True
    assert first.closed is True
    assert h.channel.list_id == "M"

    h.channel.unsubscribe()
    assert h.stream.closed is True
    assert h.channel.list_id is None


@pytest.mark.unit
def test_hello_event_sets_socket_id():
    h = Harness([A])
    h.channel.subscribe("L")
    h.stream.push(json.dumps({"socket_id": "abc", "list_id": "L"}), event="hello")
    assert h.channel.socket_id == "abc"


@pytest.mark.unit
def test_corrupt_message_is_dropped_and_channel_stays_open(caplog):
    h = Harness([A])
    h.channel.subscribe("L")
    h.stream.push("{not json")
    h.stream.push("[1, 2]")
    assert h.clock.timers == []
    assert "corrupt push message" in caplog.text

    h.stream.push(_push([B, A]))
    h.clock.run_all()
    assert h.order() == [identity_of(B), identity_of(A)]
    assert h.stream.closed is False


@pytest.mark.unit
def test_burst_is_debounced_to_latest_payload():
    h = Harness([A])
    h.channel.subscribe("L")
    h.stream.push(_push([A, B]))
    h.stream.push(_push([A, B, C]))
    h.stream.push(_push([C, B, A]))

    assert len(h.clock.live()) == 1
    assert h.clock.live()[0].delay == pytest.approx(0.1)
    h.clock.run_all()

    assert len(h.reconciled) == 1
    assert h.order() == [identity_of(C), identity_of(B), identity_of(A)]
    assert h.rendered == ["L"]


@pytest.mark.unit
def test_push_equal_to_current_state_is_skipped():
    h = Harness([C, A, B])
    h.snapshots.mark_local_save("L")
    h.snapshots.save_snapshot("L", snapshot([C, A, B]))
    h.channel.subscribe("L")

    h.stream.push(_push([C, A, B], kind="reordered"))
    h.clock.run_all()

    assert h.reconciled == []
    assert h.rendered == []
    assert h.snapshots.was_recent_local_save("L") is False


@pytest.mark.unit
def test_own_echo_matching_snapshot_is_skipped_once():
    # The client saved [C, A, B] and has already moved on locally.
    h = Harness([A, C, B])
    h.snapshots.mark_local_save("L")
    h.snapshots.save_snapshot("L", snapshot([C, A, B]))
    h.channel.subscribe("L")

    h.stream.push(_push([C, A, B]))
    h.clock.run_all()
    assert h.reconciled == []
    assert h.order() == [identity_of(A), identity_of(C), identity_of(B)]

    # Token consumed: the same state pushed again is a real foreign change.
    h.stream.push(_push([C, A, B]))
    h.clock.run_all()
    assert len(h.reconciled) == 1
    assert h.order() == [identity_of(C), identity_of(A), identity_of(B)]


@pytest.mark.unit
def test_render_only_for_displayed_list():
    h = Harness([A])
    h.store.set_current("M")
    h.channel.subscribe("L")
    h.stream.push(_push([A, B]))
    h.clock.run_all()
    assert len(h.reconciled) == 1
    assert h.rendered == []


@pytest.mark.unit
def test_metadata_and_deleted_events():
    h = Harness([A])
    h.snapshots.save_snapshot("L", snapshot([A]))
    h.channel.subscribe("L")

    h.stream.push(json.dumps({"kind": "metadata", "list": {"name": "Renamed", "is_main": True}}))
    assert h.store.get("L").name == "Renamed"
    assert h.store.get("L").is_main is True

    h.stream.push(json.dumps({"kind": "deleted", "list_id": "L"}))
    assert h.store.get("L") is None
    assert h.snapshots.load_snapshot("L") is None
    assert h.deleted == ["L"]
    assert "L" in h.rendered


@pytest.mark.unit
def test_events_from_replaced_stream_are_ignored():
    h = Harness([A])
    h.channel.subscribe("L")
    old = h.stream
    h.channel.subscribe("M")

    old.push(_push([B]))
    assert h.clock.timers == []
    assert h.order() == [identity_of(A)]


@pytest.mark.unit
def test_subscribe_failure_propagates():
    h = Harness([A])
    h.transport.fail_with = TransientNetworkError("offline")
    with pytest.raises(TransientNetworkError):
        h.channel.subscribe("L")
    assert h.channel.list_id is None


@pytest.mark.unit
def test_heartbeat_is_ignored():
    h = Harness([A])
    h.channel.subscribe("L")
    h.stream.push('{"ts": 1}', event="heartbeat")
    assert h.clock.timers == []


@pytest.mark.unit
def test_foreign_edit_after_unechoed_save_is_applied():
    # Our save of [A, B] never echoed back; a foreign comment edit keeps the order.
    h = Harness([A, B])
    h.snapshots.save_snapshot("L", snapshot([A, B]))
    h.snapshots.mark_local_save("L", [A, B])
    h.channel.subscribe("L")

    h.stream.push(_push([dict(A, comment="theirs"), B]))
    h.clock.run_all()

    assert len(h.reconciled) == 1
    assert h.store.items("L")[0]["comment"] == "theirs"


@pytest.mark.unit
def test_stale_local_save_token_does_not_hide_foreign_change():
    now = [0.0]
    h = Harness([A, C, B])
    h.snapshots.clock = lambda: now[0]
    h.snapshots.mark_local_save("L")
    h.snapshots.save_snapshot("L", snapshot([C, A, B]))
    h.channel.subscribe("L")

    now[0] += 60.0
    h.stream.push(_push([C, A, B]))
    h.clock.run_all()

    assert len(h.reconciled) == 1
    assert h.order() == [identity_of(C), identity_of(A), identity_of(B)]


@pytest.mark.unit
def test_failing_render_callback_keeps_channel_alive(caplog):
    h = Harness([A])

    def broken_render(list_id):
        raise RuntimeError("view gone")

    h.channel.on_render = broken_render
    h.channel.subscribe("L")

    h.stream.push(json.dumps({"kind": "metadata", "list": {"name": "Renamed"}}))
    assert h.store.get("L").name == "Renamed"

    h.stream.push(_push([B, A]))
    assert h.channel.flush("L") is False
    assert h.order() == [identity_of(B), identity_of(A)]
    assert "view gone" in caplog.text

    # Still listening.
    h.stream.push(json.dumps({"kind": "hello", "socket_id": "s-2"}))
    assert h.channel.socket_id == "s-2"


@pytest.mark.unit
def test_apply_items_hook_replaces_direct_store_write():
    h = Harness([A])
    seen = []

    def apply_items(list_id, items):
        seen.append([identity_of(e) for e in items])
        h.store.set_items(list_id, items + [C])

    h.channel.apply_items = apply_items
    h.channel.subscribe("L")
    h.stream.push(_push([B]))
    h.clock.run_all()

    assert seen == [[identity_of(B)]]
    assert h.order() == [identity_of(B), identity_of(C)]
