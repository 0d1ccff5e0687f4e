"""X/Twitter driver (OAuth 2.0 with PKCE, API v2).

Follows the same live/mock pattern as linkedin.py. In mock mode, tokens
and tweets are fabricated locally without API calls.
"""

from __future__ import annotations

import base64
import logging
import time
from datetime import timedelta
from typing import Any, Callable

from socialcast.capabilities import Platform
from socialcast.config import TwitterClientConfig
from socialcast.driver import (
    DEFAULT_TIMEOUT,
    AuthConfig,
    DateRange,
    HttpDriver,
    PlatformAPIError,
    PostReceipt,
    tokens_from_response,
)
from socialcast.models import AccountInfo, MediaAttachment, OAuthTokens, new_id, utcnow

logger = logging.getLogger(__name__)

AUTH_URL = "https://twitter.com/i/oauth2/authorize"
TOKEN_URL = "https://api.twitter.com/2/oauth2/token"
REVOKE_URL = "https://api.twitter.com/2/oauth2/revoke"
API_URL = "https://api.twitter.com/2"
UPLOAD_URL = "https://upload.twitter.com/1.1/media/upload.json"

MOCK_TOKEN_LIFETIME = timedelta(hours=2)
UPLOAD_CHUNK_SIZE = 4 * 1024 * 1024
MAX_STATUS_CHECKS = 30


class TwitterDriver(HttpDriver):
    """Publishes tweets on behalf of a connected account."""

    platform = Platform.TWITTER

    def __init__(
        self,
        config: TwitterClientConfig,
        live: bool = False,
        timeout: float = DEFAULT_TIMEOUT,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(live=live, timeout=timeout)
        self.config = config
        self._sleep = sleep

    def get_auth_config(self) -> AuthConfig:
        return AuthConfig(
            client_id=self.config.client_id,
            client_secret=self.config.client_secret,
            scopes=list(self.config.scopes),
            auth_url=AUTH_URL,
            token_url=TOKEN_URL,
            revoke_url=REVOKE_URL,
            pkce=True,
        )

    def _basic_auth(self) -> dict[str, str]:
        raw = f"{self.config.client_id}:{self.config.client_secret}".encode("utf-8")
        return {"Authorization": f"Basic {base64.b64encode(raw).decode('ascii')}"}

    def _bearer(self, access_token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {access_token}"}

    def _mock_tokens(self, seed: str) -> OAuthTokens:
        return OAuthTokens(
            access_token=f"mock-twitter-access-{seed}",
            refresh_token=f"mock-twitter-refresh-{seed}",
            expires_at=utcnow() + MOCK_TOKEN_LIFETIME,
            scopes=list(self.config.scopes),
        )

    def exchange_code_for_tokens(
        self, code: str, redirect_uri: str, code_verifier: str | None = None,
    ) -> OAuthTokens:
        if not self._live:
            return self._mock_tokens(code)
        if not code_verifier:
            raise PlatformAPIError(self.platform, "twitter token exchange requires a PKCE code verifier", status=400)
        data = self._request(
            "POST", TOKEN_URL,
            form={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "client_id": self.config.client_id,
                "code_verifier": code_verifier,
            },
            headers=self._basic_auth(),
        )
        return tokens_from_response(data)

    def refresh_tokens(self, refresh_token: str) -> OAuthTokens:
        if not self._live:
            return self._mock_tokens(new_id()[:8])
        data = self._request(
            "POST", TOKEN_URL,
            form={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self.config.client_id,
            },
            headers=self._basic_auth(),
        )
        return tokens_from_response(data, fallback_refresh=refresh_token)

    def revoke_tokens(self, access_token: str) -> None:
        if not self._live:
            return
        self._request(
            "POST", REVOKE_URL,
            form={
                "token": access_token,
                "token_type_hint": "access_token",
                "client_id": self.config.client_id,
            },
            headers=self._basic_auth(),
        )

    def get_user_info(self, access_token: str) -> AccountInfo:
        if not self._live:
            return AccountInfo(id="mock-twitter-user", username="mockuser", display_name="Mock User",
                               profile_url="https://twitter.com/mockuser")
        data = self._request(
            "GET", f"{API_URL}/users/me",
            params={"user.fields": "id,name,username,profile_image_url"},
            headers=self._bearer(access_token),
        )
        user = data.get("data") or {}
        if "id" not in user:
            raise PlatformAPIError(self.platform, f"twitter user lookup returned no user: {data}")
        return AccountInfo(
            id=user["id"],
            username=user.get("username", ""),
            display_name=user.get("name", ""),
            profile_url=f"https://twitter.com/{user.get('username', '')}",
            profile_image_url=user.get("profile_image_url", ""),
        )

    def _upload_media(self, access_token: str, item: MediaAttachment) -> str:
        """Download the attachment and upload its bytes; returns the media id.

        Images go up in one request. Video and GIFs use the chunked
        INIT / APPEND / FINALIZE sequence, then wait out server-side
        processing before the id can be attached to a tweet.
        """
        raw = self._fetch(item.url)
        headers = self._bearer(access_token)
        if item.kind == "image" and item.mime_type != "image/gif":
            data = self._request(
                "POST", UPLOAD_URL,
                form={"media_category": "tweet_image",
                      "media_data": base64.b64encode(raw).decode("ascii")},
                headers=headers,
            )
            return self._media_id(data, item)

        is_gif = item.kind == "gif" or item.mime_type == "image/gif"
        category = "tweet_gif" if is_gif else "tweet_video"
        init = self._request(
            "POST", UPLOAD_URL,
            form={"command": "INIT", "total_bytes": str(len(raw)),
                  "media_type": item.mime_type, "media_category": category},
            headers=headers,
        )
        media_id = self._media_id(init, item)
        for index, start in enumerate(range(0, len(raw), UPLOAD_CHUNK_SIZE)):
            chunk = raw[start:start + UPLOAD_CHUNK_SIZE]
            self._request(
                "POST", UPLOAD_URL,
                form={"command": "APPEND", "media_id": media_id, "segment_index": str(index),
                      "media_data": base64.b64encode(chunk).decode("ascii")},
                headers=headers,
            )
        done = self._request(
            "POST", UPLOAD_URL,
            form={"command": "FINALIZE", "media_id": media_id},
            headers=headers,
        )
        self._await_processing(access_token, media_id, done.get("processing_info"), item)
        return media_id

    def _await_processing(
        self,
        access_token: str,
        media_id: str,
        info: dict[str, Any] | None,
        item: MediaAttachment,
    ) -> None:
        for _ in range(MAX_STATUS_CHECKS):
            if self._processed(info, item):
                return
            self._sleep(float(info.get("check_after_secs", 1)))
            data = self._request(
                "GET", UPLOAD_URL,
                params={"command": "STATUS", "media_id": media_id},
                headers=self._bearer(access_token),
            )
            info = data.get("processing_info")
        if not self._processed(info, item):
            raise PlatformAPIError(self.platform, f"twitter is still processing {item.label}")

    def _processed(self, info: dict[str, Any] | None, item: MediaAttachment) -> bool:
        if not info or info.get("state") == "succeeded":
            return True
        if info.get("state") == "failed":
            reason = (info.get("error") or {}).get("message", "processing failed")
            raise PlatformAPIError(
                self.platform, f"twitter could not process {item.label}: {reason}", status=400,
            )
        return False

    def _media_id(self, data: dict[str, Any], item: MediaAttachment) -> str:
        media_id = data.get("media_id_string")
        if not media_id:
            raise PlatformAPIError(self.platform, f"twitter media upload returned no id for {item.label}")
        return media_id

    def post(
        self, access_token: str, content: str, media: list[MediaAttachment],
    ) -> PostReceipt:
        if not self._live:
            tweet_id = f"mock-tweet-{len(self._posted) + 1}"
            self._record({"id": tweet_id, "text": content, "media": [m.url for m in media]})
            return PostReceipt(id=tweet_id, url=f"https://twitter.com/i/web/status/{tweet_id}")

        payload: dict[str, Any] = {"text": content}
        media_ids = [self._upload_media(access_token, m) for m in media[:4]]
        if media_ids:
            payload["media"] = {"media_ids": media_ids}

        data = self._request(
            "POST", f"{API_URL}/tweets",
            json_body=payload,
            headers=self._bearer(access_token),
        )
        tweet = data.get("data") or {}
        if "id" not in tweet:
            raise PlatformAPIError(self.platform, f"twitter post returned no tweet id: {data}")
        self._record(tweet)
        return PostReceipt(id=tweet["id"], url=f"https://twitter.com/i/web/status/{tweet['id']}")

    def get_analytics(
        self,
        access_token: str,
        post_id: str | None = None,
        date_range: DateRange | None = None,
    ) -> dict[str, Any]:
        if not self._live:
            return {"post_id": post_id, "likes": 0, "retweets": 0, "replies": 0, "impressions": 0}

        if post_id:
            data = self._request(
                "GET", f"{API_URL}/tweets/{post_id}",
                params={"tweet.fields": "public_metrics"},
                headers=self._bearer(access_token),
            )
            metrics = (data.get("data") or {}).get("public_metrics", {})
            return {
                "post_id": post_id,
                "likes": metrics.get("like_count", 0),
                "retweets": metrics.get("retweet_count", 0),
                "replies": metrics.get("reply_count", 0),
                "impressions": metrics.get("impression_count", 0),
            }

        data = self._request(
            "GET", f"{API_URL}/users/me",
            params={"user.fields": "public_metrics"},
            headers=self._bearer(access_token),
        )
        metrics = (data.get("data") or {}).get("public_metrics", {})
        result = {
            "followers": metrics.get("followers_count", 0),
            "following": metrics.get("following_count", 0),
            "tweets": metrics.get("tweet_count", 0),
        }
        if date_range:
            result["start"] = date_range.start.isoformat()
            result["end"] = date_range.end.isoformat()
        return result
