from __future__ import annotations


class ConfigError(RuntimeError):
    """Raised when configuration is missing or invalid."""


class StateError(RuntimeError):
    """Raised when the processed-posts file cannot be read or written."""


class MastodonError(RuntimeError):
    """Raised when a Mastodon API call fails."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


class CaptionError(RuntimeError):
    """Raised when a single captioning attempt fails."""

    kind = "caption_error"


class CaptionTransportError(CaptionError):
    kind = "transport"


class CaptionStatusError(CaptionError):
    kind = "http_status"

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class CaptionMalformedError(CaptionError):
    kind = "malformed_response"


class CaptionRemoteError(CaptionError):
    kind = "remote_error"


class IngestionError(RuntimeError):
    """Raised when one of the long-running ingestion loops stops."""
