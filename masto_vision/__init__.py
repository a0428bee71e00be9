from __future__ import annotations

from .config import config_sha256, load_config, resolve_runtime_secrets
from .config_schema import AppConfig
from .dedupe import ProcessedPostStore
from .errors import CaptionError, ConfigError, MastodonError, StateError
from .orchestrator import HandleResult, UpdateOrchestrator
from .patch import build_status_patch

__all__ = [
    "AppConfig",
    "CaptionError",
    "ConfigError",
    "HandleResult",
    "MastodonError",
    "ProcessedPostStore",
    "StateError",
    "UpdateOrchestrator",
    "build_status_patch",
    "config_sha256",
    "load_config",
    "resolve_runtime_secrets",
]
