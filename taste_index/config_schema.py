from __future__ import annotations

import re
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.-]*$")
_CATEGORY_RE = re.compile(r"^[a-z][a-z0-9_-]*$")


def _normalize_categories(values: list[str]) -> list[str]:
    out: list[str] = []
    seen: set[str] = set()

    for item in values:
        cat = (item or "").strip().casefold()
        if not cat:
            continue
        if not _CATEGORY_RE.fullmatch(cat):
            raise ValueError(f"invalid category name: {item!r}")
        if cat in seen:
            continue
        seen.add(cat)
        out.append(cat)

    if not out:
        raise ValueError("must contain at least one category")
    return out


PositiveInt = Annotated[int, Field(ge=1)]
NonNegativeInt = Annotated[int, Field(ge=0)]


class StoreConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    path: str = "taste_index.sqlite"
    busy_timeout_ms: NonNegativeInt = 5000

    @field_validator("path")
    @classmethod
    def _path_must_be_non_empty(cls, v: str) -> str:
        p = (v or "").strip()
        if not p:
            raise ValueError("must be non-empty")
        return p


class ContentConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    scheme: str = "ipfs"
    gateway: str = "https://gateway.pinata.cloud/ipfs/"

    @field_validator("scheme")
    @classmethod
    def _scheme_must_be_valid(cls, v: str) -> str:
        s = (v or "").strip().lower()
        if not _SCHEME_RE.fullmatch(s):
            raise ValueError("must be a valid URI scheme name")
        return s


class PostsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    categories: list[str] = Field(default_factory=lambda: ["cook", "taste"])
    max_caption_chars: PositiveInt = 500
    rating_min: int = 1
    rating_max: int = 5

    @field_validator("categories")
    @classmethod
    def _normalize(cls, v: list[str]) -> list[str]:
        return _normalize_categories(v)

    @model_validator(mode="after")
    def _rating_range_must_be_ordered(self) -> "PostsConfig":
        if self.rating_max < self.rating_min:
            raise ValueError("rating_max must be >= rating_min")
        return self


class ProfilesConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    max_display_name_chars: PositiveInt = 50


class LeaderboardConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    recent_window_seconds: PositiveInt = 7 * 24 * 60 * 60
    default_limit: PositiveInt = 10


class RetrySettings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    max_attempts: PositiveInt = 5
    base_delay_seconds: float = Field(0.05, ge=0.0)
    max_delay_seconds: float = Field(2.0, ge=0.0)
    jitter_ratio: float = Field(0.25, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _max_delay_must_cover_base(self) -> "RetrySettings":
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        return self


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    store: StoreConfig = Field(default_factory=StoreConfig)
    content: ContentConfig = Field(default_factory=ContentConfig)
    posts: PostsConfig = Field(default_factory=PostsConfig)
    profiles: ProfilesConfig = Field(default_factory=ProfilesConfig)
    leaderboard: LeaderboardConfig = Field(default_factory=LeaderboardConfig)
    retry: RetrySettings = Field(default_factory=RetrySettings)
