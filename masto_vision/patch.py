from __future__ import annotations

import copy
import json
from typing import Any, Mapping

from .normalize import attachment_from_item, coerce_id, html_to_text


def _as_document(raw_post: str | bytes | Mapping[str, Any]) -> dict[str, Any]:
    if isinstance(raw_post, Mapping):
        return dict(raw_post)

    try:
        data = json.loads(raw_post)
    except (TypeError, ValueError):
        return {}

    return data if isinstance(data, dict) else {}


def described_media_ids(raw_post: str | bytes | Mapping[str, Any]) -> set[str]:
    """Ids of attachments on the fetched status that already carry a description."""
    media = _as_document(raw_post).get("media_attachments")
    described: set[str] = set()
    for item in media if isinstance(media, list) else []:
        if not isinstance(item, Mapping):
            continue
        attachment = attachment_from_item(item)
        if attachment is not None and attachment.has_description:
            described.add(attachment.attachment_id)
    return described


def build_status_patch(
    raw_post: str | bytes | Mapping[str, Any],
    captions: Mapping[str, str],
) -> dict[str, Any]:
    """
    Build the PUT /api/v1/statuses/:id body that writes new image descriptions.

    Mastodon renders status content as HTML on read but expects plain text on
    write, so the text is converted back. Every attachment still on the status
    stays in media_ids (the edit endpoint drops anything not listed); the ones in
    ``captions`` get their description replaced. Polls cannot be edited alongside
    media and are always sent as null. Missing fields degrade to neutral values.
    """
    doc = _as_document(raw_post)

    content = doc.get("content")
    status_text = html_to_text(content if isinstance(content, str) else "")

    media_ids: list[str] = []
    media_attributes: list[dict[str, Any]] = []

    media = doc.get("media_attachments")
    for item in media if isinstance(media, list) else []:
        if not isinstance(item, Mapping):
            continue
        media_id = coerce_id(item.get("id"))
        if not media_id:
            continue

        record = copy.deepcopy(dict(item))
        record["id"] = media_id
        if media_id in captions:
            record["description"] = captions[media_id]

        media_ids.append(media_id)
        media_attributes.append(record)

    return {
        "status": status_text,
        "in_reply_to_id": doc.get("in_reply_to_id"),
        "media_ids": media_ids,
        "media_attributes": media_attributes,
        "sensitive": doc.get("sensitive"),
        "spoiler_text": doc.get("spoiler_text"),
        "visibility": doc.get("visibility"),
        "poll": None,
        "language": doc.get("language"),
    }
