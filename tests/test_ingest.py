from __future__ import annotations

import asyncio
import unittest
from typing import Any

from masto_vision.config_schema import AppConfig, MastodonConfig, PollingConfig
from masto_vision.errors import IngestionError, MastodonError
from masto_vision.ingest import NotificationDispatcher, run_ingestion, run_poll_loop, run_stream_loop
from masto_vision.mastodon_client import StreamEvent
from masto_vision.orchestrator import HandleResult
from masto_vision.post import UpdateNotification

OWNER = "1"


def _status(post_id: str, *, author_id: str = OWNER) -> dict[str, Any]:
    return {
        "id": post_id,
        "account": {"id": author_id},
        "content": "<p>hi</p>",
        "media_attachments": [{"id": "A", "type": "image", "url": "https://files.example/a.png"}],
    }


class _Recorder:
    def __init__(self, delay: float = 0.0) -> None:
        self.handled: list[UpdateNotification] = []
        self._delay = delay

    async def handle(self, notification: UpdateNotification) -> HandleResult:
        if self._delay:
            await asyncio.sleep(self._delay)
        self.handled.append(notification)
        return HandleResult(post_id=notification.post_id, status="noop")


class _FakeStream:
    """Each entry is one connection: a list of events, or an exception to raise."""

    def __init__(self, connections: list[Any], *, stop: asyncio.Event) -> None:
        self._connections = list(connections)
        self._stop = stop
        self.opened = 0

    async def _events(self, entry: Any):
        if isinstance(entry, BaseException):
            raise entry
        for event in entry:
            yield event

    def stream_user(self):
        self.opened += 1
        entry = self._connections.pop(0)
        if not self._connections:
            self._stop.set()
        return self._events(entry)


class _BlockingStream:
    def __init__(self) -> None:
        self.opened = 0

    async def _events(self):
        await asyncio.Event().wait()
        yield StreamEvent(name="update", payload={})

    def stream_user(self):
        self.opened += 1
        return self._events()


class _FakePoll:
    def __init__(self, pages: list[Any], *, stop: asyncio.Event | None = None) -> None:
        self._pages = list(pages)
        self._stop = stop
        self.calls: list[tuple[str, int]] = []

    async def fetch_recent(self, owner_id: str, limit: int) -> list[dict[str, Any]]:
        self.calls.append((owner_id, limit))
        page = self._pages.pop(0) if self._pages else []
        if not self._pages and self._stop is not None:
            self._stop.set()
        if isinstance(page, BaseException):
            raise page
        return page


class TestIngestion(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.sleeps: list[float] = []

    async def _sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)

    async def test_stream_forwards_own_updates_and_reconnects(self) -> None:
        recorder = _Recorder()
        dispatcher = NotificationDispatcher(recorder.handle)
        stop = asyncio.Event()
        stream = _FakeStream(
            [
                [
                    StreamEvent(name="update", payload=_status("10")),
                    StreamEvent(name="notification", payload="{}"),
                    StreamEvent(name="update", payload=_status("11", author_id="999")),
                ],
                MastodonError("stream dropped"),
                [StreamEvent(name="status.update", payload=_status("12"))],
            ],
            stop=stop,
        )

        await run_stream_loop(
            stream,
            dispatcher,
            owner_id=OWNER,
            mastodon_cfg=MastodonConfig(base_url="https://m.example", reconnect_delay_seconds=2),
            default_language="en",
            sleep_fn=self._sleep,
            stop=stop,
        )
        await dispatcher.drain()

        self.assertEqual(stream.opened, 3)
        self.assertEqual(sorted(n.post_id for n in recorder.handled), ["10", "12"])
        self.assertTrue(all(n.source == "stream" for n in recorder.handled))
        self.assertEqual(self.sleeps, [2.0, 2.0, 2.0])

    async def test_poll_uses_initial_then_regular_limit(self) -> None:
        recorder = _Recorder()
        dispatcher = NotificationDispatcher(recorder.handle)
        stop = asyncio.Event()
        poll = _FakePoll([[_status("3"), _status("2", author_id="999")], [_status("3")]], stop=stop)
        cfg = PollingConfig(
            initial_delay_seconds=30,
            interval_seconds=300,
            initial_statuses=40,
            statuses=10,
            pace_seconds=1,
        )

        await run_poll_loop(
            poll,
            dispatcher,
            owner_id=OWNER,
            polling_cfg=cfg,
            default_language="en",
            sleep_fn=self._sleep,
            stop=stop,
        )
        await dispatcher.drain()

        self.assertEqual(poll.calls, [(OWNER, 40), (OWNER, 10)])
        self.assertEqual([n.post_id for n in recorder.handled], ["3", "3"])
        self.assertEqual(self.sleeps, [30.0, 1.0, 1.0, 300.0, 1.0, 300.0])

    async def test_poll_failure_is_fatal_and_drains_in_flight_work(self) -> None:
        recorder = _Recorder(delay=0.05)
        dispatcher = NotificationDispatcher(recorder.handle)
        config = AppConfig(
            mastodon=MastodonConfig(base_url="https://m.example"),
            polling=PollingConfig(initial_delay_seconds=0, interval_seconds=0, pace_seconds=0),
        )
        poll = _FakePoll([[_status("42")], MastodonError("HTTP 500", status_code=500)])
        stream = _BlockingStream()

        with self.assertRaises(IngestionError) as ctx:
            await run_ingestion(
                config,
                stream_source=stream,
                poll_source=poll,
                dispatcher=dispatcher,
                owner_id=OWNER,
                sleep_fn=self._sleep,
            )

        self.assertIn("poll", str(ctx.exception))
        self.assertEqual([n.post_id for n in recorder.handled], ["42"])
        self.assertEqual(dispatcher.in_flight, 0)

    async def test_polling_disabled_runs_stream_only(self) -> None:
        recorder = _Recorder()
        dispatcher = NotificationDispatcher(recorder.handle)
        config = AppConfig(
            mastodon=MastodonConfig(base_url="https://m.example"),
            polling=PollingConfig(enabled=False),
        )
        poll = _FakePoll([])
        stream = _BlockingStream()

        with self.assertRaises(asyncio.TimeoutError):
            await asyncio.wait_for(
                run_ingestion(
                    config,
                    stream_source=stream,
                    poll_source=poll,
                    dispatcher=dispatcher,
                    owner_id=OWNER,
                    sleep_fn=self._sleep,
                ),
                timeout=0.1,
            )

        self.assertEqual(stream.opened, 1)
        self.assertEqual(poll.calls, [])

    async def test_stop_event_shuts_down_cleanly_after_drain(self) -> None:
        recorder = _Recorder(delay=0.1)
        dispatcher = NotificationDispatcher(recorder.handle)
        config = AppConfig(
            mastodon=MastodonConfig(base_url="https://m.example"),
            polling=PollingConfig(enabled=False),
        )
        stream = _BlockingStream()
        stop = asyncio.Event()

        dispatcher.submit(UpdateNotification(post_id="7", author_id=OWNER, language="en"))
        asyncio.get_running_loop().call_later(0.02, stop.set)

        await asyncio.wait_for(
            run_ingestion(
                config,
                stream_source=stream,
                poll_source=_FakePoll([]),
                dispatcher=dispatcher,
                owner_id=OWNER,
                sleep_fn=self._sleep,
                stop=stop,
            ),
            timeout=1.0,
        )

        self.assertEqual(stream.opened, 1)
        self.assertEqual([n.post_id for n in recorder.handled], ["7"])
        self.assertEqual(dispatcher.in_flight, 0)

    async def test_dispatcher_does_not_block_producer(self) -> None:
        recorder = _Recorder(delay=0.05)
        dispatcher = NotificationDispatcher(recorder.handle)

        for i in range(3):
            dispatcher.submit(UpdateNotification(post_id=str(i), author_id=OWNER, language="en"))

        self.assertEqual(dispatcher.in_flight, 3)
        self.assertEqual(recorder.handled, [])

        await dispatcher.drain()
        self.assertEqual(dispatcher.in_flight, 0)
        self.assertEqual(len(recorder.handled), 3)


if __name__ == "__main__":
    unittest.main()
