from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Awaitable, Callable, Protocol

from .config_schema import AppConfig, MastodonConfig, PollingConfig
from .errors import IngestionError
from .mastodon_client import STATUS_EVENTS, StreamEvent
from .normalize import notification_from_status
from .orchestrator import HandleResult
from .post import UpdateNotification
from .retry import SleepFn
from .run_log import RunLogger


class StreamSource(Protocol):
    def stream_user(self) -> AsyncIterator[StreamEvent]: ...


class PollSource(Protocol):
    async def fetch_recent(self, owner_id: str, limit: int) -> list[dict[str, Any]]: ...


HandleFn = Callable[[UpdateNotification], Awaitable[HandleResult]]


class NotificationDispatcher:
    """
    Runs one orchestration task per notification so producers never wait on them.

    Tasks are tracked until they finish; drain() waits for whatever is in flight.
    """

    def __init__(self, handle: HandleFn, *, logger: RunLogger | None = None) -> None:
        self._handle = handle
        self._log = logger or RunLogger()
        self._tasks: set[asyncio.Task[HandleResult]] = set()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def submit(self, notification: UpdateNotification) -> asyncio.Task[HandleResult]:
        task = asyncio.create_task(
            self._handle(notification),
            name=f"update:{notification.post_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        while self._tasks:
            pending = list(self._tasks)
            self._log.info("dispatcher_draining", in_flight=len(pending))
            await asyncio.gather(*pending, return_exceptions=True)


async def run_stream_loop(
    source: StreamSource,
    dispatcher: NotificationDispatcher,
    *,
    owner_id: str,
    mastodon_cfg: MastodonConfig,
    default_language: str,
    logger: RunLogger | None = None,
    sleep_fn: SleepFn | None = None,
    stop: asyncio.Event | None = None,
) -> None:
    """
    Consume the user stream, reconnecting after errors or disconnects.

    Runs until cancelled, or until ``stop`` is set (checked before each connection).
    """
    log = logger or RunLogger()
    sleeper = sleep_fn or asyncio.sleep
    attempt = 0

    while stop is None or not stop.is_set():
        attempt += 1
        received = 0
        log.info("stream_connecting", attempt=attempt)

        try:
            async for event in source.stream_user():
                received += 1
                if event.name not in STATUS_EVENTS or not isinstance(event.payload, dict):
                    log.debug("stream_event_ignored", event_name=event.name)
                    continue

                notification = notification_from_status(
                    event.payload,
                    default_language=default_language,
                    source="stream",
                )
                if notification is None or notification.author_id != owner_id:
                    continue

                dispatcher.submit(notification)
            log.warning("stream_ended", attempt=attempt, events=received)
        except Exception as e:
            log.exception("stream_failed", exc=e, attempt=attempt, events=received)

        if received:
            attempt = 0

        delay = float(mastodon_cfg.reconnect_delay_seconds)
        if delay > 0:
            await sleeper(delay)


async def run_poll_loop(
    source: PollSource,
    dispatcher: NotificationDispatcher,
    *,
    owner_id: str,
    polling_cfg: PollingConfig,
    default_language: str,
    logger: RunLogger | None = None,
    sleep_fn: SleepFn | None = None,
    stop: asyncio.Event | None = None,
) -> None:
    """
    Re-scan the account's latest statuses on a fixed interval.

    The first cycle looks further back (initial_statuses) to catch up on a backlog.
    Fetch failures propagate. Runs until cancelled, or until ``stop`` is set
    (checked before each cycle).
    """
    log = logger or RunLogger()
    sleeper = sleep_fn or asyncio.sleep

    if polling_cfg.initial_delay_seconds > 0:
        await sleeper(float(polling_cfg.initial_delay_seconds))

    cycle = 0
    while stop is None or not stop.is_set():
        limit = polling_cfg.initial_statuses if cycle == 0 else polling_cfg.statuses
        cycle += 1

        statuses = await source.fetch_recent(owner_id, limit)
        log.info("poll_cycle", cycle=cycle, limit=limit, fetched=len(statuses))

        for status in statuses:
            notification = notification_from_status(
                status,
                default_language=default_language,
                source="poll",
            )
            if notification is not None and notification.author_id == owner_id:
                dispatcher.submit(notification)
            if polling_cfg.pace_seconds > 0:
                await sleeper(float(polling_cfg.pace_seconds))

        if polling_cfg.interval_seconds > 0:
            await sleeper(float(polling_cfg.interval_seconds))


async def run_ingestion(
    config: AppConfig,
    *,
    stream_source: StreamSource,
    poll_source: PollSource,
    dispatcher: NotificationDispatcher,
    owner_id: str,
    logger: RunLogger | None = None,
    sleep_fn: SleepFn | None = None,
    stop: asyncio.Event | None = None,
) -> None:
    """
    Supervise the stream and poll loops for the lifetime of the process.

    Both are expected to run forever. Whichever ends first (returning or raising)
    stops the other, in-flight orchestrations are drained, and IngestionError is
    raised. Setting ``stop`` shuts both loops down the same way but returns
    normally once the drain completes.
    """
    log = logger or RunLogger()
    default_language = config.captioning.default_language

    tasks: dict[asyncio.Task[None], str] = {}
    tasks[
        asyncio.create_task(
            run_stream_loop(
                stream_source,
                dispatcher,
                owner_id=owner_id,
                mastodon_cfg=config.mastodon,
                default_language=default_language,
                logger=log,
                sleep_fn=sleep_fn,
                stop=stop,
            ),
            name="stream",
        )
    ] = "stream"

    if config.polling.enabled:
        tasks[
            asyncio.create_task(
                run_poll_loop(
                    poll_source,
                    dispatcher,
                    owner_id=owner_id,
                    polling_cfg=config.polling,
                    default_language=default_language,
                    logger=log,
                    sleep_fn=sleep_fn,
                    stop=stop,
                ),
                name="poll",
            )
        ] = "poll"
    else:
        log.info("polling_disabled")

    log.info("ingestion_started", owner_id=owner_id, loops=sorted(tasks.values()))

    waiters: set[asyncio.Task[Any]] = set(tasks)
    if stop is not None:
        waiters.add(asyncio.create_task(stop.wait(), name="stop"))

    try:
        done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in waiters:
            if not task.done():
                task.cancel()
        await asyncio.gather(*waiters, return_exceptions=True)
        await dispatcher.drain()

    if stop is not None and stop.is_set():
        log.info("ingestion_stopped", owner_id=owner_id)
        return

    finished = next(t for t in done if t in tasks)
    name = tasks[finished]
    exc = finished.exception()
    if exc is not None:
        log.exception("ingestion_loop_failed", exc=exc, loop=name)
        raise IngestionError(f"{name} loop failed: {exc}") from exc

    log.error("ingestion_loop_stopped", loop=name)
    raise IngestionError(f"{name} loop stopped unexpectedly")
