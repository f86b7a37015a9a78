from __future__ import annotations

from .config import config_sha256, load_config
from .config_schema import AppConfig
from .content_ref import resolve_content_ref
from .errors import (
    ConfigError,
    InvalidArgument,
    InvalidFact,
    InvalidLike,
    InvalidReference,
    StoreUnavailable,
    WriteConflict,
)
from .index import TasteIndex
from .models import ApplyOutcome, EventId, PostLiked, PostMinted

__all__ = [
    "AppConfig",
    "ApplyOutcome",
    "ConfigError",
    "EventId",
    "InvalidArgument",
    "InvalidFact",
    "InvalidLike",
    "InvalidReference",
    "PostLiked",
    "PostMinted",
    "StoreUnavailable",
    "TasteIndex",
    "WriteConflict",
    "config_sha256",
    "load_config",
    "resolve_content_ref",
]
