from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Mapping

import httpx

from .config_schema import MastodonConfig
from .errors import MastodonError
from .retry import OnRetryFn, RetryConfig, SleepFn, call_with_retries

STATUS_EVENTS = frozenset({"update", "status.update"})


@dataclass(frozen=True)
class StreamEvent:
    name: str
    payload: Any


def _parse_retry_after(response: httpx.Response) -> float | None:
    val = response.headers.get("retry-after")
    if val is None:
        return None
    try:
        return float(val.strip())
    except ValueError:
        return None


def is_retryable_mastodon_exception(exc: BaseException) -> tuple[bool, float | None, str | None]:
    """
    Account API retry policy: transport failures and every non-2xx answer are retried;
    the reason records which one it was so the log can tell them apart.
    """
    if isinstance(exc, MastodonError):
        code = exc.status_code
        retry_after = exc.retry_after
        if code is None:
            return True, retry_after, "network_error"
        return True, retry_after, f"http_{code}"

    if isinstance(exc, (httpx.TransportError, ConnectionError, TimeoutError)):
        return True, None, "network_error"

    return False, None, None


def _raise_for_status(response: httpx.Response, *, operation: str) -> None:
    if response.is_success:
        return

    body = (response.text or "").strip()
    if len(body) > 500:
        body = body[:499] + "…"
    raise MastodonError(
        f"{operation} returned HTTP {response.status_code}: {body}",
        status_code=response.status_code,
        retry_after=_parse_retry_after(response),
    )


async def _iter_sse_events(lines: AsyncIterator[str]) -> AsyncIterator[StreamEvent]:
    """
    Parse a Server-Sent-Events line stream into named events.

    Comment lines (Mastodon's ``:thump`` heartbeats) are skipped. Status payloads are
    decoded from JSON; other payloads are passed through as text.
    """
    name: str | None = None
    data_lines: list[str] = []

    async for raw in lines:
        line = raw.rstrip("\r")

        if not line:
            if name is not None or data_lines:
                event_name = name or "message"
                data = "\n".join(data_lines)
                payload: Any = data
                if event_name in STATUS_EVENTS:
                    try:
                        payload = json.loads(data)
                    except ValueError:
                        payload = None
                yield StreamEvent(name=event_name, payload=payload)
            name = None
            data_lines = []
            continue

        if line.startswith(":"):
            continue

        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if field == "event":
            name = value.strip()
        elif field == "data":
            data_lines.append(value)


class MastodonClient:
    """
    Thin async wrapper around the handful of Mastodon REST and streaming endpoints
    the bot needs. GET/PUT calls retry with the configured fixed backoff.
    """

    def __init__(
        self,
        access_token: str,
        *,
        mastodon_cfg: MastodonConfig,
        client: httpx.AsyncClient | None = None,
        retry: RetryConfig | None = None,
        on_retry: OnRetryFn | None = None,
        sleep_fn: SleepFn | None = None,
    ) -> None:
        token = (access_token or "").strip()
        if not token:
            raise ValueError("access_token must be a non-empty string")

        self._cfg = mastodon_cfg
        self._retry = retry or RetryConfig(
            max_attempts=mastodon_cfg.max_attempts,
            delay_seconds=mastodon_cfg.backoff_seconds,
        )
        self._on_retry = on_retry
        self._sleep_fn = sleep_fn
        self._http = client or httpx.AsyncClient(
            base_url=mastodon_cfg.base_url,
            timeout=httpx.Timeout(mastodon_cfg.request_timeout_seconds),
            follow_redirects=True,
        )
        self._headers = {"Authorization": f"Bearer {token}"}

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "MastodonClient":
        return self

    async def __aexit__(self, exc_type: object, exc: object, tb: object) -> None:
        await self.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        params: Mapping[str, Any] | None = None,
        json_body: Any = None,
    ) -> httpx.Response:
        try:
            response = await self._http.request(
                method,
                path,
                params=params,
                json=json_body,
                headers=self._headers,
            )
        except httpx.HTTPError as e:
            raise MastodonError(f"{operation} failed: {e}") from e

        _raise_for_status(response, operation=operation)
        return response

    async def _request_with_retries(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        params: Mapping[str, Any] | None = None,
        json_body: Any = None,
    ) -> httpx.Response:
        async def _do_call() -> httpx.Response:
            return await self._request(
                method, path, operation=operation, params=params, json_body=json_body
            )

        return await call_with_retries(
            _do_call,
            cfg=self._retry,
            is_retryable=is_retryable_mastodon_exception,
            operation=operation,
            on_retry=self._on_retry,
            sleep_fn=self._sleep_fn,
            context_url=f"{self._cfg.base_url}{path}",
        )

    async def verify_identity(self) -> str:
        response = await self._request_with_retries(
            "GET",
            "/api/v1/accounts/verify_credentials",
            operation="mastodon.verify_credentials",
        )
        try:
            account = response.json()
        except ValueError as e:
            raise MastodonError(f"verify_credentials returned invalid JSON: {e}") from e

        account_id = account.get("id") if isinstance(account, dict) else None
        if isinstance(account_id, int) and not isinstance(account_id, bool):
            account_id = str(account_id)
        if not isinstance(account_id, str) or not account_id.strip():
            raise MastodonError("verify_credentials response did not include an account id")
        return account_id.strip()

    async def get_status_json(self, status_id: str) -> str:
        response = await self._request_with_retries(
            "GET",
            f"/api/v1/statuses/{status_id}",
            operation="mastodon.get_status",
        )
        return response.text

    async def put_status(self, status_id: str, payload: Mapping[str, Any]) -> None:
        await self._request_with_retries(
            "PUT",
            f"/api/v1/statuses/{status_id}",
            operation="mastodon.put_status",
            json_body=dict(payload),
        )

    async def set_media_description(self, media_id: str, description: str) -> bool:
        """
        Update a media attachment's description directly.

        Mastodon only honors this for media that is not attached to a status yet,
        so it is not used for published posts; kept for unattached uploads.
        """
        try:
            response = await self._http.put(
                f"/api/v1/media/{media_id}",
                json={"description": description},
                headers=self._headers,
            )
        except httpx.HTTPError:
            return False
        return response.is_success

    async def fetch_recent(self, owner_id: str, limit: int) -> list[dict[str, Any]]:
        """Most recent statuses of the account, newest first."""
        response = await self._request_with_retries(
            "GET",
            f"/api/v1/accounts/{owner_id}/statuses",
            operation="mastodon.account_statuses",
            params={"limit": int(limit)},
        )
        try:
            data = response.json()
        except ValueError as e:
            raise MastodonError(f"account statuses returned invalid JSON: {e}") from e

        if not isinstance(data, list):
            raise MastodonError("account statuses response is not a list")
        return [item for item in data if isinstance(item, dict)]

    async def stream_user(self) -> AsyncIterator[StreamEvent]:
        """
        Yield events from the user stream until the connection ends.

        Errors surface as MastodonError; reconnecting is the caller's job.
        """
        timeout = httpx.Timeout(self._cfg.request_timeout_seconds, read=None)
        try:
            async with self._http.stream(
                "GET",
                "/api/v1/streaming/user",
                headers={**self._headers, "Accept": "text/event-stream"},
                timeout=timeout,
            ) as response:
                if not response.is_success:
                    await response.aread()
                    _raise_for_status(response, operation="mastodon.stream_user")

                async for event in _iter_sse_events(response.aiter_lines()):
                    yield event
        except httpx.HTTPError as e:
            raise MastodonError(f"mastodon.stream_user failed: {e}") from e
