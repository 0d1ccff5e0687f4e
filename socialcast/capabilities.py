"""Static per-platform limits and the content rules derived from them.

Everything here is pure and in-memory: it is consulted synchronously
before any network work, so it must never block or raise for bad
content. Validation problems are returned as a list of messages.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from socialcast.models import PostContent


class Platform(Enum):
    LINKEDIN = "linkedin"
    TWITTER = "twitter"
    FACEBOOK = "facebook"
    INSTAGRAM = "instagram"
    YOUTUBE = "youtube"
    WHATSAPP = "whatsapp"


MB = 1024 * 1024

_IMAGES = ("image/jpeg", "image/png", "image/gif")


@dataclass(frozen=True)
class PlatformCapabilities:
    max_text_length: int
    max_media_size: int  # bytes
    supported_media_types: tuple[str, ...]
    posts_per_hour: int
    posts_per_day: int
    can_schedule: bool = True
    can_get_analytics: bool = True
    line_break_style: str = "single"  # "single" or "double"
    mention_placement: str = "prefix"  # "prefix" or "suffix"

    def supports_media_type(self, mime_type: str) -> bool:
        return mime_type in self.supported_media_types


PLATFORM_CAPABILITIES: dict[Platform, PlatformCapabilities] = {
    Platform.LINKEDIN: PlatformCapabilities(
        max_text_length=3000,
        max_media_size=100 * MB,
        supported_media_types=_IMAGES + ("video/mp4",),
        posts_per_hour=100,
        posts_per_day=500,
        line_break_style="double",
    ),
    Platform.TWITTER: PlatformCapabilities(
        max_text_length=280,
        max_media_size=5 * MB,
        supported_media_types=_IMAGES + ("video/mp4",),
        posts_per_hour=50,
        posts_per_day=300,
    ),
    Platform.FACEBOOK: PlatformCapabilities(
        max_text_length=63206,
        max_media_size=25 * MB,
        supported_media_types=_IMAGES + ("video/mp4",),
        posts_per_hour=200,
        posts_per_day=1000,
    ),
    Platform.INSTAGRAM: PlatformCapabilities(
        max_text_length=2200,
        max_media_size=100 * MB,
        supported_media_types=("image/jpeg", "image/png", "video/mp4"),
        posts_per_hour=25,
        posts_per_day=100,
        mention_placement="suffix",
    ),
    Platform.YOUTUBE: PlatformCapabilities(
        max_text_length=5000,
        max_media_size=256 * MB,
        supported_media_types=("video/mp4", "video/avi", "video/quicktime"),
        posts_per_hour=6,
        posts_per_day=100,
        mention_placement="suffix",
    ),
    Platform.WHATSAPP: PlatformCapabilities(
        max_text_length=4096,
        max_media_size=16 * MB,
        supported_media_types=("image/jpeg", "image/png", "video/mp4", "audio/mpeg"),
        posts_per_hour=1000,
        posts_per_day=10000,
        can_schedule=False,
        can_get_analytics=False,
    ),
}


@dataclass(frozen=True)
class PostingRecommendations:
    max_hashtags: int
    max_mentions: int
    preferred_content_length: int
    best_media_types: tuple[str, ...]


RECOMMENDATIONS: dict[Platform, PostingRecommendations] = {
    Platform.LINKEDIN: PostingRecommendations(5, 3, 1500, ("image/jpeg", "image/png", "video/mp4")),
    Platform.TWITTER: PostingRecommendations(3, 2, 240, _IMAGES),
    Platform.FACEBOOK: PostingRecommendations(3, 5, 500, ("image/jpeg", "video/mp4")),
    Platform.INSTAGRAM: PostingRecommendations(10, 5, 300, ("image/jpeg", "video/mp4")),
    Platform.YOUTUBE: PostingRecommendations(5, 2, 1000, ("video/mp4",)),
    Platform.WHATSAPP: PostingRecommendations(0, 10, 500, ("image/jpeg", "video/mp4", "audio/mpeg")),
}

# (weekday, hour) pairs in UTC; Monday is 0.
OPTIMAL_POSTING_SLOTS: dict[Platform, tuple[tuple[int, int], ...]] = {
    Platform.LINKEDIN: ((1, 9), (2, 12), (3, 15)),
    Platform.TWITTER: ((1, 9), (2, 12), (4, 15)),
    Platform.FACEBOOK: ((1, 9), (2, 13), (3, 15)),
    Platform.INSTAGRAM: ((1, 11), (4, 14), (5, 17)),
}


@dataclass
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)


@dataclass
class RateLimitDecision:
    allowed: bool
    reason: str | None = None


_SINGLE_NEWLINE = re.compile(r"(?<!\n)\n(?!\n)")


def _tags(values: Iterable[str], prefix: str) -> list[str]:
    seen: list[str] = []
    for value in values:
        cleaned = value.strip().lstrip(prefix)
        if cleaned and cleaned not in seen:
            seen.append(cleaned)
    return [f"{prefix}{v}" for v in seen]


def truncate(text: str, limit: int) -> str:
    """Cut text to at most ``limit`` characters, ending in an ellipsis."""
    if len(text) <= limit:
        return text
    if limit <= 3:
        return "." * limit
    # Reserve space for ellipsis
    trunc_at = text.rfind(" ", 0, limit - 3)
    if trunc_at <= 0:
        trunc_at = limit - 3
    return text[:trunc_at].rstrip() + "..."


class PlatformCapabilityRegistry:
    """Per-platform limits plus validation, formatting and rate checks."""

    def __init__(
        self,
        capabilities: dict[Platform, PlatformCapabilities] | None = None,
    ) -> None:
        self._capabilities = dict(capabilities or PLATFORM_CAPABILITIES)

    def capabilities(self, platform: Platform) -> PlatformCapabilities:
        return self._capabilities[platform]

    def validate(self, platform: Platform, content: PostContent) -> ValidationResult:
        caps = self.capabilities(platform)
        errors: list[str] = []

        if len(content.text) > caps.max_text_length:
            errors.append(
                f"Text exceeds maximum length of {caps.max_text_length} characters"
            )

        for item in content.media:
            if item.size > caps.max_media_size:
                errors.append(
                    f"Media file {item.label} exceeds maximum size of {caps.max_media_size} bytes"
                )
            if not caps.supports_media_type(item.mime_type):
                errors.append(f"Media type {item.mime_type} is not supported")

        return ValidationResult(valid=not errors, errors=errors)

    def format(self, platform: Platform, content: PostContent) -> str:
        """Render content the way the platform expects it.

        Mentions go before or after the body per platform convention,
        hashtags always trail after a blank line. Over-long results are
        truncated at a word boundary as a last resort.
        """
        caps = self.capabilities(platform)
        body = content.text.strip()
        if caps.line_break_style == "double":
            body = _SINGLE_NEWLINE.sub("\n\n", body)

        mentions = " ".join(_tags(content.mentions, "@"))
        hashtags = " ".join(_tags(content.hashtags, "#"))

        parts: list[str] = []
        if mentions and caps.mention_placement == "prefix":
            parts.append(mentions)
        parts.append(body)
        trailer = " ".join(p for p in (
            mentions if caps.mention_placement == "suffix" else "",
            hashtags,
        ) if p)
        if trailer:
            parts.append(trailer)

        text = "\n\n".join(p for p in parts if p)
        return truncate(text, caps.max_text_length)

    def check_rate_limit(
        self,
        platform: Platform,
        posts_last_hour: int,
        posts_last_day: int,
    ) -> RateLimitDecision:
        caps = self.capabilities(platform)
        if posts_last_hour >= caps.posts_per_hour:
            return RateLimitDecision(
                False, f"Rate limit exceeded: {caps.posts_per_hour} posts per hour",
            )
        if posts_last_day >= caps.posts_per_day:
            return RateLimitDecision(
                False, f"Rate limit exceeded: {caps.posts_per_day} posts per day",
            )
        return RateLimitDecision(True)

    def recommendations(self, platform: Platform) -> PostingRecommendations:
        return RECOMMENDATIONS[platform]

    def suggest_posting_time(self, platforms: Iterable[Platform], now: datetime) -> datetime:
        """Next optimal slot across the given platforms within a week."""
        slots = [s for p in platforms for s in OPTIMAL_POSTING_SLOTS.get(p, ())]
        start = now.replace(minute=0, second=0, microsecond=0)
        candidates: list[datetime] = []
        for offset in range(8):
            day = start + timedelta(days=offset)
            for weekday, hour in slots:
                if day.weekday() == weekday:
                    candidate = day.replace(hour=hour)
                    if candidate > now:
                        candidates.append(candidate)
        if candidates:
            return min(candidates)
        return (start + timedelta(days=1)).replace(hour=10)
