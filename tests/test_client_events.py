from __future__ import annotations

import asyncio
import json
import threading

import pytest

from bridge.client_events import ClientHub


async def _next_frame(session) -> dict:
    return json.loads(await asyncio.wait_for(session.outbox.get(), timeout=1))


def test_broadcast_without_browsers_is_a_no_op():
    hub = ClientHub()

    assert hub.broadcast("sample", "dips=0") == 0
    assert hub.client_count == 0
    assert hub.peers() == []


def test_broadcast_rejects_blank_event_name():
    hub = ClientHub()
    with pytest.raises(ValueError):
        hub.broadcast("", {"text": "x"})


def test_every_browser_receives_each_frame():
    async def runner():
        hub = ClientHub()
        first = await hub.connect("10.0.0.1")
        second = await hub.connect("10.0.0.2")
        assert hub.client_count == 2
        assert hub.peers() == ["10.0.0.1", "10.0.0.2"]

        assert hub.broadcast("motion", {"text": "MOTION", "timestamp": 1}) == 2

        for session in (first, second):
            assert await _next_frame(session) == {
                "event": "motion",
                "data": {"text": "MOTION", "timestamp": 1},
            }

        hub.disconnect(first)
        assert hub.client_count == 1
        hub.broadcast("sample", "after")
        assert await _next_frame(second) == {"event": "sample", "data": "after"}
        await asyncio.sleep(0)
        assert first.outbox.empty()

    asyncio.run(runner())


def test_new_browser_only_sees_later_frames():
    async def runner():
        hub = ClientHub()
        early = await hub.connect("early")
        hub.broadcast("sample", "before")

        late = await hub.connect("late")
        hub.broadcast("sample", "after")

        assert (await _next_frame(early))["data"] == "before"
        assert (await _next_frame(late))["data"] == "after"
        assert late.outbox.empty()

    asyncio.run(runner())


def test_full_outbox_drops_oldest_frame():
    async def runner():
        hub = ClientHub(max_queue_size=2)
        session = await hub.connect("slow")

        for text in ("a", "b", "c"):
            hub.broadcast("sample", text)
        await asyncio.sleep(0.01)

        received = [json.loads(session.outbox.get_nowait())["data"] for _ in range(2)]
        assert received == ["b", "c"]
        assert session.dropped == 1

    asyncio.run(runner())


def test_broadcast_from_another_thread_is_delivered_on_loop():
    async def runner():
        hub = ClientHub()
        session = await hub.connect("browser")

        worker = threading.Thread(target=hub.broadcast, args=("sample", "from-thread"))
        worker.start()
        worker.join()

        assert await _next_frame(session) == {"event": "sample", "data": "from-thread"}

    asyncio.run(runner())


def test_frame_is_encoded_at_broadcast_time():
    async def runner():
        hub = ClientHub()
        session = await hub.connect("browser")
        payload = {"deleted": ["a.mp4"]}

        hub.broadcast("clips_pruned", payload)
        payload["deleted"].append("b.mp4")

        assert (await _next_frame(session))["data"] == {"deleted": ["a.mp4"]}

    asyncio.run(runner())


def test_invalid_queue_size_is_rejected():
    with pytest.raises(ValueError):
        ClientHub(max_queue_size=0)
