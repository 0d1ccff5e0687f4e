"""LinkedIn driver (OAuth 2.0 authorization code, UGC posts API).

Follows the same live/mock pattern as twitter.py. LinkedIn issues no
refresh token to most apps, so expired credentials usually need a new
handshake.
"""

from __future__ import annotations

import logging
import urllib.parse
from datetime import timedelta
from typing import Any

from socialcast.capabilities import Platform
from socialcast.config import LinkedInClientConfig
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

AUTH_URL = "https://www.linkedin.com/oauth/v2/authorization"
TOKEN_URL = "https://www.linkedin.com/oauth/v2/accessToken"
REVOKE_URL = "https://www.linkedin.com/oauth/v2/revoke"
API_URL = "https://api.linkedin.com/v2"

MOCK_TOKEN_LIFETIME = timedelta(days=60)


class LinkedInDriver(HttpDriver):
    """Shares posts to a member's LinkedIn feed."""

    platform = Platform.LINKEDIN

    def __init__(
        self,
        config: LinkedInClientConfig,
        live: bool = False,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        super().__init__(live=live, timeout=timeout)
        self.config = config
        self._member_ids: dict[str, str] = {}

    def get_auth_config(self) -> AuthConfig:
        return AuthConfig(
            client_id=self.config.client_id,
            client_secret=self.config.client_secret,
            scopes=list(self.config.scopes),
            auth_url=AUTH_URL,
            token_url=TOKEN_URL,
            revoke_url=REVOKE_URL,
            pkce=False,
        )

    def _headers(self, access_token: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "X-Restli-Protocol-Version": "2.0.0",
            "LinkedIn-Version": self.config.api_version,
        }

    def exchange_code_for_tokens(
        self, code: str, redirect_uri: str, code_verifier: str | None = None,
    ) -> OAuthTokens:
        if not self._live:
            return OAuthTokens(
                access_token=f"mock-linkedin-access-{code}",
                expires_at=utcnow() + MOCK_TOKEN_LIFETIME,
                scopes=list(self.config.scopes),
            )
        data = self._request(
            "POST", TOKEN_URL,
            form={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
            },
        )
        return tokens_from_response(data)

    def refresh_tokens(self, refresh_token: str) -> OAuthTokens:
        if not self._live:
            return OAuthTokens(
                access_token=f"mock-linkedin-access-{new_id()[:8]}",
                refresh_token=refresh_token,
                expires_at=utcnow() + MOCK_TOKEN_LIFETIME,
                scopes=list(self.config.scopes),
            )
        data = self._request(
            "POST", TOKEN_URL,
            form={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
            },
        )
        return tokens_from_response(data, fallback_refresh=refresh_token)

    def revoke_tokens(self, access_token: str) -> None:
        if not self._live:
            return
        self._request(
            "POST", REVOKE_URL,
            form={
                "token": access_token,
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
            },
        )

    def get_user_info(self, access_token: str) -> AccountInfo:
        if not self._live:
            return AccountInfo(id="mock-linkedin-member", username="mock-linkedin-member",
                               display_name="Mock Member")
        data = self._request("GET", f"{API_URL}/userinfo", headers=self._headers(access_token))
        member_id = data.get("sub")
        if not member_id:
            raise PlatformAPIError(self.platform, f"linkedin userinfo returned no member id: {data}")
        self._member_ids[access_token] = member_id
        return AccountInfo(
            id=member_id,
            # LinkedIn has no public usernames
            username=member_id,
            display_name=data.get("name", ""),
            profile_image_url=data.get("picture", ""),
        )

    def _author_urn(self, access_token: str) -> str:
        member_id = self._member_ids.get(access_token)
        if member_id is None:
            member_id = self.get_user_info(access_token).id
        return f"urn:li:person:{member_id}"

    def post(
        self, access_token: str, content: str, media: list[MediaAttachment],
    ) -> PostReceipt:
        if not self._live:
            urn = f"urn:li:share:mock-{len(self._posted) + 1}"
            self._record({"id": urn, "text": content, "media": [m.url for m in media]})
            return PostReceipt(id=urn, url=f"https://www.linkedin.com/feed/update/{urn}")

        share: dict[str, Any] = {
            "shareCommentary": {"text": content},
            "shareMediaCategory": "NONE",
        }
        # One media item per share; the first supported one wins.
        if media:
            first = media[0]
            share["shareMediaCategory"] = "VIDEO" if first.kind == "video" else "IMAGE"
            share["media"] = [{
                "status": "READY",
                "originalUrl": first.url,
                "description": {"text": first.alt or first.label},
            }]

        payload = {
            "author": self._author_urn(access_token),
            "lifecycleState": "PUBLISHED",
            "specificContent": {"com.linkedin.ugc.ShareContent": share},
            "visibility": {"com.linkedin.ugc.MemberNetworkVisibility": "PUBLIC"},
        }
        data = self._request(
            "POST", f"{API_URL}/ugcPosts",
            json_body=payload,
            headers=self._headers(access_token),
        )
        urn = data.get("id")
        if not urn:
            raise PlatformAPIError(self.platform, f"linkedin post returned no id: {data}")
        self._record(data)
        return PostReceipt(id=urn, url=f"https://www.linkedin.com/feed/update/{urn}")

    def get_analytics(
        self,
        access_token: str,
        post_id: str | None = None,
        date_range: DateRange | None = None,
    ) -> dict[str, Any]:
        if not post_id:
            # Account-level analytics require organization access.
            return {"message": "Account analytics require organization access"}
        if not self._live:
            return {"post_id": post_id, "likes": 0, "comments": 0}

        encoded = urllib.parse.quote(post_id, safe="")
        data = self._request(
            "GET", f"{API_URL}/socialActions/{encoded}",
            headers=self._headers(access_token),
        )
        return {
            "post_id": post_id,
            "likes": (data.get("likesSummary") or {}).get("totalLikes", 0),
            "comments": (data.get("commentsSummary") or {}).get("aggregatedTotalComments", 0),
        }
