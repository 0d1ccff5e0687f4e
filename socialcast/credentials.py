"""OAuth handshakes and token upkeep for platform connections.

``CredentialManager.ensure_valid_token`` is the single choke point every
publish and analytics call passes through. It refreshes expired tokens
transparently and downgrades a credential to EXPIRED when that fails.

Two concurrent callers for the same (owner, platform) may both refresh;
the redundant refresh is tolerated because the providers in scope hand
back a usable token either way. Pass ``single_flight=True`` to serialize
refreshes per (owner, platform) instead.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import secrets
import threading
import urllib.parse
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Mapping

from socialcast.capabilities import Platform
from socialcast.driver import PlatformDriver
from socialcast.models import (
    AccountInfo,
    CredentialStatus,
    OAuthTokens,
    PlatformCredential,
    utcnow,
)
from socialcast.store import CredentialStore

logger = logging.getLogger(__name__)


class PlatformNotConfiguredError(KeyError):
    """Raised when no driver is registered for a platform."""

    def __init__(self, platform: Platform) -> None:
        self.platform = platform
        super().__init__(f"Platform {platform.value} not configured")

    def __str__(self) -> str:
        return self.args[0]


@dataclass
class AuthUrl:
    url: str
    state: str
    code_verifier: str | None = None


@dataclass
class AuthResult:
    success: bool
    tokens: OAuthTokens | None = None
    account_info: AccountInfo | None = None
    error: str | None = None


def pkce_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


class CredentialManager:
    """Authorization URLs, OAuth callbacks and always-fresh access tokens."""

    def __init__(
        self,
        store: CredentialStore,
        drivers: Mapping[Platform, PlatformDriver],
        now: Callable[[], datetime] | None = None,
        single_flight: bool = False,
    ) -> None:
        self._store = store
        self._drivers = dict(drivers)
        self._now = now or utcnow
        self._single_flight = single_flight
        self._refresh_locks: dict[tuple[str, Platform], threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    def driver(self, platform: Platform) -> PlatformDriver:
        driver = self._drivers.get(platform)
        if driver is None:
            raise PlatformNotConfiguredError(platform)
        return driver

    @property
    def configured_platforms(self) -> list[Platform]:
        return list(self._drivers)

    # --- OAuth handshake ---

    def generate_auth_url(
        self,
        platform: Platform,
        redirect_uri: str,
        scopes: list[str] | None = None,
        state: str | None = None,
    ) -> AuthUrl:
        config = self.driver(platform).get_auth_config()
        state = state or secrets.token_urlsafe(24)
        params = {
            "client_id": config.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "state": state,
            "scope": " ".join(scopes or config.scopes),
        }
        verifier: str | None = None
        if config.pkce:
            verifier = secrets.token_urlsafe(48)
            params["code_challenge"] = pkce_challenge(verifier)
            params["code_challenge_method"] = "S256"
        params.update(config.extra_params)

        url = f"{config.auth_url}?{urllib.parse.urlencode(params)}"
        return AuthUrl(url=url, state=state, code_verifier=verifier)

    def complete_auth(
        self,
        platform: Platform,
        code: str,
        state: str,
        redirect_uri: str,
        code_verifier: str | None = None,
    ) -> AuthResult:
        """Exchange an authorization code and fetch the account behind it.

        Platform-side failures come back as ``AuthResult(success=False)``;
        only an unconfigured platform raises.
        """
        driver = self.driver(platform)
        try:
            tokens = driver.exchange_code_for_tokens(code, redirect_uri, code_verifier)
            account = driver.get_user_info(tokens.access_token)
        except Exception as exc:
            logger.warning("OAuth callback for %s failed (state=%s): %s", platform.value, state, exc)
            return AuthResult(success=False, error=str(exc) or exc.__class__.__name__)
        return AuthResult(success=True, tokens=tokens, account_info=account)

    def store_credential(
        self,
        owner_id: str,
        tenant_id: str,
        platform: Platform,
        tokens: OAuthTokens,
        account_info: AccountInfo,
    ) -> PlatformCredential:
        """Persist a fresh connection, retiring any older connected one."""
        for old in self._store.find(owner_id, platform, [CredentialStatus.CONNECTED]):
            old.status = CredentialStatus.DISCONNECTED
            self._store.save(old)

        now = self._now()
        credential = PlatformCredential(
            owner_id=owner_id,
            tenant_id=tenant_id,
            platform=platform,
            tokens=tokens,
            status=CredentialStatus.CONNECTED,
            account_id=account_info.id,
            account_username=account_info.username,
            account_display_name=account_info.display_name,
            scopes=list(tokens.scopes),
            last_connected_at=now,
            created_at=now,
            updated_at=now,
        )
        self._store.insert(credential)
        logger.info("Connected %s account %s for owner %s",
                    platform.value, account_info.username, owner_id)
        return credential

    def connect(
        self,
        owner_id: str,
        tenant_id: str,
        platform: Platform,
        code: str,
        state: str,
        redirect_uri: str,
        code_verifier: str | None = None,
    ) -> AuthResult:
        """complete_auth followed by store_credential on success."""
        result = self.complete_auth(platform, code, state, redirect_uri, code_verifier)
        if result.success and result.tokens and result.account_info:
            self.store_credential(owner_id, tenant_id, platform, result.tokens, result.account_info)
        return result

    # --- token upkeep ---

    def _refresh_lock(self, owner_id: str, platform: Platform) -> threading.Lock:
        with self._locks_guard:
            return self._refresh_locks[(owner_id, platform)]

    def ensure_valid_token(self, owner_id: str, platform: Platform) -> OAuthTokens | None:
        """Return usable tokens for (owner, platform), refreshing if expired.

        Returns None when there is no connected credential, or when the
        token is expired and cannot be refreshed (the credential is then
        marked EXPIRED).
        """
        if not self._single_flight:
            return self._ensure_valid_token(owner_id, platform)
        with self._refresh_lock(owner_id, platform):
            return self._ensure_valid_token(owner_id, platform)

    def _ensure_valid_token(self, owner_id: str, platform: Platform) -> OAuthTokens | None:
        credential = self._store.connected(owner_id, platform)
        if credential is None:
            return None

        tokens = credential.tokens
        if not tokens.is_expired(self._now()):
            return tokens

        if tokens.refresh_token:
            try:
                fresh = self.driver(platform).refresh_tokens(tokens.refresh_token)
            except PlatformNotConfiguredError:
                raise
            except Exception as exc:
                logger.warning("Token refresh for %s/%s failed: %s", owner_id, platform.value, exc)
                self._mark_expired(credential, f"Refresh failed: {exc}")
                return None
            if not fresh.refresh_token:
                fresh.refresh_token = tokens.refresh_token
            credential.tokens = fresh
            credential.scopes = list(fresh.scopes) or credential.scopes
            credential.last_error = ""
            self._store.save(credential)
            logger.info("Refreshed %s token for owner %s", platform.value, owner_id)
            return fresh

        self._mark_expired(credential, "Token expired and no refresh token is available")
        return None

    def _mark_expired(self, credential: PlatformCredential, reason: str) -> None:
        credential.status = CredentialStatus.EXPIRED
        credential.last_error = reason
        self._store.save(credential)

    def disconnect(self, owner_id: str, platform: Platform, revoke: bool = True) -> None:
        """Mark the connection disconnected, optionally revoking at the platform.

        Revocation failures are logged and never stop the disconnect.
        """
        credential = self._store.connected(owner_id, platform)
        if credential is None:
            credential = self._store.latest(owner_id, platform)
        if credential is None:
            return

        if revoke and credential.status == CredentialStatus.CONNECTED:
            try:
                self.driver(platform).revoke_tokens(credential.tokens.access_token)
            except PlatformNotConfiguredError:
                raise
            except Exception as exc:
                logger.warning("Token revocation for %s/%s failed: %s",
                               owner_id, platform.value, exc)

        credential.status = CredentialStatus.DISCONNECTED
        self._store.save(credential)
        logger.info("Disconnected %s for owner %s", platform.value, owner_id)

    # --- lookups ---

    def get_credential(self, owner_id: str, platform: Platform) -> PlatformCredential | None:
        """The connected credential, else the most recently updated one."""
        return self._store.connected(owner_id, platform) or self._store.latest(owner_id, platform)

    def get_auth_status(self, owner_id: str, platform: Platform) -> CredentialStatus:
        credential = self._store.connected(owner_id, platform) or self._store.latest(owner_id, platform)
        if credential is None:
            return CredentialStatus.DISCONNECTED
        if credential.status == CredentialStatus.CONNECTED and credential.tokens.is_expired(self._now()):
            return CredentialStatus.EXPIRED
        return credential.status

    def connected_platforms(self, owner_id: str) -> list[Platform]:
        creds = self._store.for_owner(owner_id, CredentialStatus.CONNECTED)
        return sorted({c.platform for c in creds}, key=lambda p: p.value)
