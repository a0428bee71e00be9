from __future__ import annotations

import re
from typing import Any, Mapping

from bs4 import BeautifulSoup

from .post import Attachment, UpdateNotification

_BR_RE = re.compile(r"<br\s*/?>", re.IGNORECASE)
_PARAGRAPH_BREAK_RE = re.compile(r"</p>\s*<p(\s[^>]*)?>", re.IGNORECASE)


def _coerce_str(value: Any) -> str | None:
    if isinstance(value, str):
        s = value.strip()
        return s if s else None
    return None


def coerce_id(value: Any) -> str | None:
    if isinstance(value, str):
        v = value.strip()
        return v if v else None
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return None


def html_to_text(html: str | None) -> str:
    """
    Turn rendered status HTML back into the plain text Mastodon accepts on write.

    Line-break tags become newlines, paragraph boundaries become blank lines,
    remaining tags are stripped and entities are unescaped.
    """
    value = html or ""
    if not value.strip():
        return ""

    value = _PARAGRAPH_BREAK_RE.sub("\n\n", value)
    value = _BR_RE.sub("\n", value)
    text = BeautifulSoup(value, "html.parser").get_text()
    return text.strip()


def attachment_from_item(item: Mapping[str, Any]) -> Attachment | None:
    attachment_id = coerce_id(item.get("id"))
    if not attachment_id:
        return None

    url = (
        _coerce_str(item.get("url"))
        or _coerce_str(item.get("remote_url"))
        or _coerce_str(item.get("preview_url"))
    )

    description = item.get("description")
    return Attachment(
        attachment_id=attachment_id,
        kind=_coerce_str(item.get("type")),
        description=description if isinstance(description, str) else None,
        url=url,
    )


def notification_from_status(
    status: Mapping[str, Any],
    *,
    default_language: str,
    source: str,
) -> UpdateNotification | None:
    """
    Best-effort extraction of an UpdateNotification from a Mastodon status.

    Returns None for reblogs and for statuses missing their own id or author id.
    """
    if isinstance(status.get("reblog"), Mapping):
        return None

    post_id = coerce_id(status.get("id"))
    account = status.get("account")
    author_id = coerce_id(account.get("id")) if isinstance(account, Mapping) else None
    if not post_id or not author_id:
        return None

    attachments: list[Attachment] = []
    media = status.get("media_attachments")
    if isinstance(media, list):
        for item in media:
            if not isinstance(item, Mapping):
                continue
            attachment = attachment_from_item(item)
            if attachment is not None:
                attachments.append(attachment)

    content = status.get("content")
    return UpdateNotification(
        post_id=post_id,
        author_id=author_id,
        language=_coerce_str(status.get("language")) or default_language,
        content=content if isinstance(content, str) else "",
        attachments=tuple(attachments),
        source=source,
    )
