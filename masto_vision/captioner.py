from __future__ import annotations

from typing import Any, Protocol

from openai import APIConnectionError, APIStatusError, APITimeoutError, AsyncOpenAI, OpenAIError

from .config_schema import OpenAIConfig
from .errors import (
    CaptionError,
    CaptionMalformedError,
    CaptionRemoteError,
    CaptionStatusError,
    CaptionTransportError,
)
from .normalize import html_to_text


class _CompletionsAPI(Protocol):
    async def create(self, **kwargs: Any) -> Any: ...


class _ChatAPI(Protocol):
    completions: _CompletionsAPI


class _OpenAIClient(Protocol):
    chat: _ChatAPI


_SYSTEM_INSTRUCTIONS = """\
You are a helpful assistant. Describe the attached image in short sentences for people \
who are blind or visually impaired. The description is used as the image's alt text.

- Write in the language given by the user message.
- Describe what is visible; do not guess names of people unless the post text states them.
- Transcribe short visible text verbatim.
- Use the post text only as context; do not repeat it.
- Reply with the description only, no preamble.
"""

_MAX_CONTEXT_CHARS = 2000


def _build_user_text(lang_code: str, context_text: str) -> str:
    context = html_to_text(context_text)
    if len(context) > _MAX_CONTEXT_CHARS:
        context = context[: _MAX_CONTEXT_CHARS - 1] + "…"

    lines = [f"Language: {lang_code}"]
    if context:
        lines.append(f"Post text: {context}")
    return "\n".join(lines)


def _get(obj: Any, key: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


def _extract_error_payload(response: Any) -> str | None:
    err = _get(response, "error")
    if not err:
        return None
    message = _get(err, "message")
    if isinstance(message, str) and message.strip():
        return message.strip()
    return str(err)


def _extract_caption(response: Any) -> str:
    choices = _get(response, "choices")
    if not isinstance(choices, (list, tuple)) or not choices:
        raise CaptionMalformedError("Caption response did not include any choices")

    message = _get(choices[0], "message")
    if message is None:
        raise CaptionMalformedError("Caption response choice did not include a message")

    content = _get(message, "content")
    if not isinstance(content, str):
        raise CaptionMalformedError("Caption response message content is not text")

    return content


def is_retryable_caption_exception(exc: BaseException) -> tuple[bool, float | None, str | None]:
    """Every captioning failure is worth another attempt; the reason is its kind."""
    if isinstance(exc, CaptionError):
        return True, None, exc.kind
    return True, None, type(exc).__name__


class OpenAICaptioner:
    """
    One chat-completions call per image, no internal retries.

    Returns the raw caption text (possibly blank) or raises a CaptionError subclass.
    """

    def __init__(
        self,
        api_key: str,
        *,
        openai_cfg: OpenAIConfig,
        client: _OpenAIClient | None = None,
    ) -> None:
        key = (api_key or "").strip()
        if not key:
            raise ValueError("api_key must be a non-empty string")

        self._cfg = openai_cfg
        if client is not None:
            self._client: _OpenAIClient = client
        else:
            # Retries are owned by the orchestrator.
            self._client = AsyncOpenAI(api_key=key, base_url=openai_cfg.base_url, max_retries=0)

    async def caption(self, image_url: str, lang_code: str, context_text: str) -> str:
        url = (image_url or "").strip()
        if not url:
            raise ValueError("image_url must be non-empty")

        try:
            response = await self._client.chat.completions.create(
                model=self._cfg.model,
                max_tokens=self._cfg.max_output_tokens,
                messages=[
                    {"role": "system", "content": _SYSTEM_INSTRUCTIONS},
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": _build_user_text(lang_code, context_text)},
                            {"type": "image_url", "image_url": {"url": url}},
                        ],
                    },
                ],
            )
        except (APIConnectionError, APITimeoutError) as e:
            raise CaptionTransportError(f"Caption request failed ({self._cfg.model}): {e}") from e
        except APIStatusError as e:
            raise CaptionStatusError(
                f"Caption service returned HTTP {e.status_code} ({self._cfg.model}): {e}",
                status_code=e.status_code,
            ) from e
        except OpenAIError as e:
            raise CaptionMalformedError(f"Caption response could not be read ({self._cfg.model}): {e}") from e

        remote_error = _extract_error_payload(response)
        if remote_error is not None:
            raise CaptionRemoteError(f"Caption service reported an error ({self._cfg.model}): {remote_error}")

        return _extract_caption(response)
