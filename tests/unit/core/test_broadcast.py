import json

import pytest


def _event(chunk):
    lines = [line for line in chunk.strip().splitlines() if line.startswith("data: ")]
    return json.loads(lines[0][len("data: "):])


@pytest.mark.unit
def test_broadcast_skips_origin_socket():
    from ranksync.core.broadcast import ListBroadcaster

    router = ListBroadcaster()
    a = router.register(1, "L")
    b = router.register(2, "L")
    other_list = router.register(2, "M")

    delivered = router.broadcast("L", "reordered", origin_socket_id=a.socket_id, payload={"items": [1, 2]})

    assert delivered == 1
    assert a.queue.empty()
    assert other_list.queue.empty()
    event = b.queue.get_nowait()
    assert event["kind"] == "reordered"
    assert event["list_id"] == "L"
    assert event["items"] == [1, 2]
    assert "updated_at" in event


@pytest.mark.unit
def test_broadcast_without_origin_reaches_everyone():
    from ranksync.core.broadcast import ListBroadcaster

    router = ListBroadcaster()
    subs = [router.register(1, "L") for _ in range(3)]
    assert router.broadcast("L", "metadata") == 3
    assert all(not s.queue.empty() for s in subs)


@pytest.mark.unit
def test_failed_delivery_does_not_abort_others():
    from ranksync.core.broadcast import ListBroadcaster

    router = ListBroadcaster()
    first = router.register(1, "L")
    broken = router.register(1, "L")
    last = router.register(1, "L")

    def boom(event):
        raise RuntimeError("socket gone")

    broken.deliver = boom

    assert router.broadcast("L", "updated") == 2
    assert not first.queue.empty()
    assert not last.queue.empty()


@pytest.mark.unit
def test_subscribe_yields_hello_then_events_and_cleans_up():
    from ranksync.core.broadcast import ListBroadcaster

    router = ListBroadcaster()
    gen = router.subscribe(7, "L")

    hello = next(gen)
    assert hello.startswith("event: hello\n")
    socket_id = _event(hello)["socket_id"]
    assert router.subscriber_count("L") == 1

    router.broadcast("L", "updated", payload={"items": []})
    chunk = next(gen)
    assert chunk.startswith("data: ")
    assert _event(chunk)["kind"] == "updated"

    # Writes carrying this socket id are not echoed back.
    assert router.broadcast("L", "updated", origin_socket_id=socket_id) == 0

    gen.close()
    assert router.subscriber_count("L") == 0
    assert router.subscriber_count() == 0


@pytest.mark.unit
def test_heartbeat_when_idle(monkeypatch):
    import ranksync.core.broadcast as broadcast

    router = broadcast.ListBroadcaster()

    def fake_get(self, timeout=1.0):
        raise broadcast.Empty()

    monkeypatch.setattr(broadcast.Queue, "get", fake_get, raising=True)

    times = iter([0, 20, 40])

    def fake_time():
        try:
            return next(times)
        except StopIteration:
            return 40

    monkeypatch.setattr(broadcast.time, "time", staticmethod(fake_time), raising=True)

    gen = router.subscribe(1, "L", heartbeat_seconds=15)
    next(gen)  # hello
    chunk = next(gen)
    assert chunk.startswith("event: heartbeat")
    gen.close()


@pytest.mark.unit
def test_format_sse_with_and_without_event_name():
    from ranksync.core.broadcast import format_sse

    assert format_sse({"a": 1}) == 'data: {"a": 1}\n\n'
    assert format_sse({"a": 1}, event="hello").startswith("event: hello\ndata: ")
