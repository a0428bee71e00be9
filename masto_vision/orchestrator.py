from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Mapping, Protocol, Sequence

from .captioner import is_retryable_caption_exception
from .config_schema import AppConfig, DonePolicy
from .dedupe import ProcessedPostStore
from .patch import build_status_patch, described_media_ids
from .post import Attachment, UpdateNotification
from .retry import RetryConfig, SleepFn, call_with_retries, logging_on_retry
from .run_log import RunLogger


class Captioner(Protocol):
    async def caption(self, image_url: str, lang_code: str, context_text: str) -> str: ...


class AccountAPI(Protocol):
    async def get_status_json(self, status_id: str) -> str: ...

    async def put_status(self, status_id: str, payload: Mapping[str, Any]) -> None: ...


@dataclass(frozen=True)
class HandleResult:
    """
    Terminal state of one notification.

    status is one of: not_owner, already_done, in_flight, noop, aborted_fetch,
    aborted_write, written (write succeeded but the post stays open under the
    fully_resolved policy), done, failed.

    superseded counts images that were described by someone else while their
    caption was being generated; those captions are dropped, never written.
    """

    post_id: str
    status: str
    qualifying: int = 0
    captioned: int = 0
    superseded: int = 0
    marked_done: bool = False

    @property
    def fully_resolved(self) -> bool:
        return self.qualifying > 0 and self.captioned + self.superseded == self.qualifying


class UpdateOrchestrator:
    """
    Turns one UpdateNotification into at most one status edit.

    Each image without a description is captioned concurrently with its own retry
    budget. Once every caption task has finished, the status is fetched, patched and
    written back, and the post id is recorded in the store according to the done
    policy.
    """

    def __init__(
        self,
        *,
        store: ProcessedPostStore,
        captioner: Captioner,
        account: AccountAPI,
        owner_id: str,
        caption_retry: RetryConfig | None = None,
        done_policy: DonePolicy = "on_write",
        logger: RunLogger | None = None,
        sleep_fn: SleepFn | None = None,
    ) -> None:
        if done_policy not in ("on_write", "fully_resolved"):
            raise ValueError(f"Unknown done policy: {done_policy!r}")

        self._store = store
        self._captioner = captioner
        self._account = account
        self._owner_id = str(owner_id)
        self._caption_retry = caption_retry or RetryConfig()
        self._done_policy = done_policy
        self._log = logger or RunLogger()
        self._on_retry = logging_on_retry(self._log)
        self._sleep_fn = sleep_fn
        self._in_flight: set[str] = set()

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        store: ProcessedPostStore,
        captioner: Captioner,
        account: AccountAPI,
        owner_id: str,
        logger: RunLogger | None = None,
    ) -> "UpdateOrchestrator":
        return cls(
            store=store,
            captioner=captioner,
            account=account,
            owner_id=owner_id,
            caption_retry=RetryConfig(
                max_attempts=config.captioning.max_attempts,
                delay_seconds=config.captioning.backoff_seconds,
            ),
            done_policy=config.captioning.done_policy,
            logger=logger,
        )

    @property
    def owner_id(self) -> str:
        return self._owner_id

    async def handle(self, notification: UpdateNotification) -> HandleResult:
        """Never raises (except on cancellation); failures end up in the log."""
        post_id = notification.post_id
        if post_id in self._in_flight:
            self._log.debug("update_skipped_in_flight", post_id=post_id, source=notification.source)
            return HandleResult(post_id=post_id, status="in_flight")

        self._in_flight.add(post_id)
        try:
            return await self._handle(notification)
        except Exception as e:
            self._log.exception("update_failed", exc=e, post_id=post_id, source=notification.source)
            return HandleResult(post_id=post_id, status="failed")
        finally:
            self._in_flight.discard(post_id)

    async def _handle(self, notification: UpdateNotification) -> HandleResult:
        post_id = notification.post_id

        if notification.author_id != self._owner_id:
            self._log.debug("update_skipped_not_owner", post_id=post_id, author_id=notification.author_id)
            return HandleResult(post_id=post_id, status="not_owner")

        if self._store.contains(post_id):
            self._log.debug("update_skipped_already_done", post_id=post_id, source=notification.source)
            return HandleResult(post_id=post_id, status="already_done")

        qualifying = [a for a in notification.attachments if a.needs_caption]
        if not qualifying:
            self._log.debug("update_noop", post_id=post_id, source=notification.source, qualifying=0)
            return HandleResult(post_id=post_id, status="noop")

        self._log.info(
            "update_received",
            post_id=post_id,
            source=notification.source,
            attachments=len(notification.attachments),
            qualifying=len(qualifying),
        )

        outcomes = await asyncio.gather(
            *(self._caption_attachment(notification, a) for a in qualifying)
        )
        captions = {
            a.attachment_id: text
            for a, text in zip(qualifying, outcomes)
            if text is not None
        }

        if not captions:
            self._log.info("update_noop", post_id=post_id, qualifying=len(qualifying))
            return HandleResult(post_id=post_id, status="noop", qualifying=len(qualifying))

        return await self._write_captions(post_id, captions, qualifying=qualifying)

    async def _caption_attachment(
        self, notification: UpdateNotification, attachment: Attachment
    ) -> str | None:
        url = (attachment.url or "").strip()
        if not url:
            self._log.warning(
                "caption_skipped_missing_url",
                post_id=notification.post_id,
                attachment_id=attachment.attachment_id,
            )
            return None

        async def _attempt() -> str:
            return await self._captioner.caption(url, notification.language, notification.content)

        try:
            text = await call_with_retries(
                _attempt,
                cfg=self._caption_retry,
                is_retryable=is_retryable_caption_exception,
                operation=f"caption:{notification.post_id}/{attachment.attachment_id}",
                on_retry=self._on_retry,
                sleep_fn=self._sleep_fn,
                context_url=url,
            )
        except Exception as e:
            self._log.warning(
                "caption_exhausted",
                url=url,
                post_id=notification.post_id,
                attachment_id=attachment.attachment_id,
                attempts=self._caption_retry.max_attempts,
                error_type=type(e).__name__,
                error_message=str(e),
            )
            return None

        text = (text or "").strip()
        if not text:
            self._log.warning(
                "caption_blank",
                url=url,
                post_id=notification.post_id,
                attachment_id=attachment.attachment_id,
            )
            return None

        self._log.debug(
            "caption_received",
            url=url,
            post_id=notification.post_id,
            attachment_id=attachment.attachment_id,
            caption=text,
        )
        return text

    async def _write_captions(
        self,
        post_id: str,
        captions: dict[str, str],
        *,
        qualifying: Sequence[Attachment],
    ) -> HandleResult:
        try:
            raw_post = await self._account.get_status_json(post_id)
        except Exception as e:
            self._log.exception("status_fetch_failed", exc=e, post_id=post_id)
            return HandleResult(
                post_id=post_id,
                status="aborted_fetch",
                qualifying=len(qualifying),
                captioned=len(captions),
            )

        # Descriptions added since the notification was taken win over ours.
        described = described_media_ids(raw_post)
        superseded = sorted(m for m in captions if m in described)
        if superseded:
            self._log.info("captions_superseded", post_id=post_id, attachment_ids=superseded)
            captions = {m: text for m, text in captions.items() if m not in described}

        counts = {
            "qualifying": len(qualifying),
            "captioned": len(captions),
            "superseded": len(superseded),
        }
        if not captions:
            self._log.info("update_noop", post_id=post_id, **counts)
            return HandleResult(post_id=post_id, status="noop", **counts)

        payload = build_status_patch(raw_post, captions)
        self._log.debug("status_patch_built", post_id=post_id, payload=payload)

        try:
            await self._account.put_status(post_id, payload)
        except Exception as e:
            self._log.exception("status_write_failed", exc=e, post_id=post_id)
            return HandleResult(post_id=post_id, status="aborted_write", **counts)

        fully_resolved = len(captions) + len(superseded) == len(qualifying)
        if self._done_policy == "fully_resolved" and not fully_resolved:
            self._log.warning("status_written_partial", post_id=post_id, **counts)
            return HandleResult(post_id=post_id, status="written", **counts)

        marked = self._store.mark_done(post_id)
        if marked:
            self._store.persist()

        self._log.info(
            "status_updated",
            post_id=post_id,
            fully_resolved=fully_resolved,
            marked_done=marked,
            **counts,
        )
        return HandleResult(post_id=post_id, status="done", marked_done=marked, **counts)
