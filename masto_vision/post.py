from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

IMAGE_KIND = "image"


@dataclass(frozen=True)
class Attachment:
    """One media item on a status, as far as captioning cares."""

    attachment_id: str
    kind: str | None = None
    description: str | None = None
    url: str | None = None

    @property
    def is_image(self) -> bool:
        return (self.kind or "").strip().casefold() == IMAGE_KIND

    @property
    def has_description(self) -> bool:
        return bool((self.description or "").strip())

    @property
    def needs_caption(self) -> bool:
        return self.is_image and not self.has_description


@dataclass(frozen=True)
class UpdateNotification:
    """A status that may need attention, from the live stream or a poll."""

    post_id: str
    author_id: str
    language: str
    content: str = ""
    attachments: Sequence[Attachment] = ()
    source: str = "unknown"
