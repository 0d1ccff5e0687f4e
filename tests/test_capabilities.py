"""Tests for the capabilities module."""

from datetime import datetime, timezone

import pytest
from socialcast.capabilities import (
    MB,
    Platform,
    PlatformCapabilityRegistry,
    truncate,
)
from socialcast.models import MediaAttachment, PostContent


@pytest.fixture
def registry():
    return PlatformCapabilityRegistry()


def _image(name="photo.png", mime="image/png", size=1024):
    return MediaAttachment(url=f"https://cdn.test/{name}", mime_type=mime, size=size, filename=name)


class TestCapabilities:
    def test_twitter_limits(self, registry):
        caps = registry.capabilities(Platform.TWITTER)
        assert caps.max_text_length == 280
        assert caps.max_media_size == 5 * MB
        assert caps.posts_per_hour == 50
        assert caps.posts_per_day == 300

    def test_every_platform_has_capabilities(self, registry):
        for platform in Platform:
            assert registry.capabilities(platform).max_text_length > 0

    def test_supports_media_type(self, registry):
        caps = registry.capabilities(Platform.YOUTUBE)
        assert caps.supports_media_type("video/mp4")
        assert not caps.supports_media_type("image/png")


class TestValidate:
    def test_valid_content(self, registry):
        result = registry.validate(Platform.TWITTER, PostContent(text="hello", media=[_image()]))
        assert result.valid is True
        assert result.errors == []

    def test_text_too_long(self, registry):
        result = registry.validate(Platform.TWITTER, PostContent(text="x" * 281))
        assert result.valid is False
        assert result.errors == ["Text exceeds maximum length of 280 characters"]

    def test_text_at_limit_is_valid(self, registry):
        assert registry.validate(Platform.TWITTER, PostContent(text="x" * 280)).valid

    def test_media_too_large(self, registry):
        media = [_image("big.png", size=6 * MB)]
        result = registry.validate(Platform.TWITTER, PostContent(text="hi", media=media))
        assert result.errors == [f"Media file big.png exceeds maximum size of {5 * MB} bytes"]

    def test_unsupported_media_type(self, registry):
        media = [_image("doc.pdf", mime="application/pdf")]
        result = registry.validate(Platform.LINKEDIN, PostContent(text="hi", media=media))
        assert result.errors == ["Media type application/pdf is not supported"]

    def test_errors_accumulate(self, registry):
        media = [_image("big.pdf", mime="application/pdf", size=10 * MB)]
        result = registry.validate(Platform.TWITTER, PostContent(text="x" * 300, media=media))
        assert len(result.errors) == 3


class TestFormat:
    def test_mentions_before_and_hashtags_after(self, registry):
        content = PostContent(text="Hello world", hashtags=["#launch", "launch", "news"],
                              mentions=["@alice"])
        assert registry.format(Platform.TWITTER, content) == "@alice\n\nHello world\n\n#launch #news"

    def test_plain_text_unchanged(self, registry):
        assert registry.format(Platform.TWITTER, PostContent(text="just text")) == "just text"

    def test_linkedin_doubles_line_breaks(self, registry):
        content = PostContent(text="line one\nline two\n\nline three")
        assert registry.format(Platform.LINKEDIN, content) == "line one\n\nline two\n\nline three"

    def test_twitter_keeps_single_line_breaks(self, registry):
        content = PostContent(text="line one\nline two")
        assert registry.format(Platform.TWITTER, content) == "line one\nline two"

    def test_suffix_mentions(self, registry):
        content = PostContent(text="Hi", hashtags=["x"], mentions=["bob"])
        assert registry.format(Platform.INSTAGRAM, content) == "Hi\n\n@bob #x"

    def test_truncates_to_limit_with_ellipsis(self, registry):
        content = PostContent(text="word " * 100)
        text = registry.format(Platform.TWITTER, content)
        assert len(text) <= 280
        assert text.endswith("...")


class TestTruncate:
    def test_short_text_untouched(self):
        assert truncate("abc", 10) == "abc"

    def test_breaks_on_word_boundary(self):
        assert truncate("hello brave new world", 15) == "hello brave..."

    def test_no_spaces(self):
        result = truncate("x" * 50, 20)
        assert result == "x" * 17 + "..."

    def test_tiny_limit(self):
        assert truncate("abcdef", 2) == ".."


class TestRateLimit:
    def test_allowed(self, registry):
        decision = registry.check_rate_limit(Platform.TWITTER, 49, 299)
        assert decision.allowed is True
        assert decision.reason is None

    def test_hourly_ceiling(self, registry):
        decision = registry.check_rate_limit(Platform.TWITTER, 50, 50)
        assert decision.allowed is False
        assert decision.reason == "Rate limit exceeded: 50 posts per hour"

    def test_daily_ceiling(self, registry):
        decision = registry.check_rate_limit(Platform.TWITTER, 0, 300)
        assert decision.reason == "Rate limit exceeded: 300 posts per day"


class TestRecommendations:
    def test_recommendations(self, registry):
        recs = registry.recommendations(Platform.TWITTER)
        assert recs.max_hashtags == 3
        assert recs.preferred_content_length == 240

    def test_next_slot(self, registry):
        monday = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
        when = registry.suggest_posting_time([Platform.TWITTER, Platform.LINKEDIN], monday)
        assert when == datetime(2026, 3, 3, 9, 0, tzinfo=timezone.utc)

    def test_skips_past_slot(self, registry):
        tuesday = datetime(2026, 3, 3, 9, 30, tzinfo=timezone.utc)
        when = registry.suggest_posting_time([Platform.TWITTER], tuesday)
        assert when == datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc)

    def test_falls_back_to_tomorrow_morning(self, registry):
        monday = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
        when = registry.suggest_posting_time([Platform.YOUTUBE], monday)
        assert when == datetime(2026, 3, 3, 10, 0, tzinfo=timezone.utc)
