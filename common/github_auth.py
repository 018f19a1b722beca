"""
GitHub App installation tokens.

An installation token is minted by signing a short-lived app JWT with the
App's private key and exchanging it for an installation-scoped token. Tokens
are cached per installation until shortly before they expire.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Dict, Optional

from github import Auth, GithubException, GithubIntegration

from common.errors import ExternalServiceError, ExternalTimeoutError, GitHubAuthError

logger = logging.getLogger(__name__)

# App JWT: backdated 60s, valid for 10 minutes.
APP_JWT_ISSUED_AT = -60
APP_JWT_EXPIRY = 600


@dataclass
class CachedToken:
    value: str
    expires_at: float  # epoch seconds, refresh margin already subtracted


class TokenCache:
    """
    Process-wide installation-token cache.

    Each key has its own lock so that concurrent jobs for the same
    installation trigger a single refresh; the loser of the race reuses the
    winner's token.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._entries: Dict[str, CachedToken] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._clock = clock

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def get(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry and entry.expires_at > self._clock():
            return entry.value
        return None

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    async def get_or_refresh(
        self,
        key: str,
        refresher: Callable[[], Awaitable[CachedToken]],
    ) -> str:
        cached = self.get(key)
        if cached is not None:
            return cached

        async with self._lock_for(key):
            # Another coroutine may have refreshed while we waited.
            cached = self.get(key)
            if cached is not None:
                return cached
            entry = await refresher()
            self._entries[key] = entry
            return entry.value


class InstallationTokenProvider:
    """Mint and cache installation access tokens for a GitHub App."""

    def __init__(
        self,
        app_id: str,
        private_key: str,
        cache: Optional[TokenCache] = None,
        refresh_margin: int = 60,
        timeout: float = 30.0,
        base_url: str = "https://api.github.com",
    ):
        if not app_id:
            raise ValueError("GitHub App ID not provided")
        try:
            self.app_id = int(app_id)
        except ValueError:
            raise ValueError(f"GitHub App ID must be an integer, got: {app_id}")
        if not private_key:
            raise ValueError("GitHub private key not provided")

        self._private_key = private_key
        self._cache = cache or TokenCache()
        self._refresh_margin = refresh_margin
        self._timeout = timeout
        self._base_url = base_url

    def _mint_app_auth(self) -> Auth.AppAuth:
        """Build the app credential and sign a JWT once to fail fast on a bad key."""
        app_auth = Auth.AppAuth(
            self.app_id,
            self._private_key,
            jwt_expiry=APP_JWT_EXPIRY,
            jwt_issued_at=APP_JWT_ISSUED_AT,
        )
        try:
            app_auth.create_jwt()
        except Exception as exc:
            raise GitHubAuthError(
                f"Failed to sign GitHub App JWT for app {self.app_id}: {exc}"
            ) from exc
        return app_auth

    def _exchange(self, app_auth: Auth.AppAuth, installation_id: int) -> tuple[str, datetime]:
        integration = GithubIntegration(auth=app_auth, base_url=self._base_url, timeout=int(self._timeout))
        try:
            authorization = integration.get_access_token(installation_id)
        except GithubException as exc:
            if exc.status in (401, 403, 404):
                raise GitHubAuthError(
                    f"GitHub rejected the app credential for installation {installation_id} "
                    f"(status {exc.status}): {exc.data}"
                ) from exc
            raise ExternalServiceError(
                f"Installation token exchange failed for {installation_id} (status {exc.status})"
            ) from exc
        return authorization.token, authorization.expires_at

    async def _refresh(self, installation_id: int) -> CachedToken:
        app_auth = self._mint_app_auth()
        try:
            token, expires_at = await asyncio.wait_for(
                asyncio.to_thread(self._exchange, app_auth, installation_id),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ExternalTimeoutError(
                f"Installation token exchange for {installation_id} timed out after {self._timeout}s"
            ) from exc

        logger.info("Installation token fetched for installation %s", installation_id)
        return CachedToken(value=token, expires_at=expires_at.timestamp() - self._refresh_margin)

    async def find_installation_id(self, owner: str, repo: str) -> int:
        """Look up the installation for a repository when the webhook did not carry one."""
        app_auth = self._mint_app_auth()

        def _lookup() -> int:
            integration = GithubIntegration(auth=app_auth, base_url=self._base_url, timeout=int(self._timeout))
            try:
                return integration.get_repo_installation(owner, repo).id
            except GithubException as exc:
                raise GitHubAuthError(
                    f"GitHub App is not installed on {owner}/{repo} (status {exc.status})"
                ) from exc

        try:
            return await asyncio.wait_for(asyncio.to_thread(_lookup), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise ExternalTimeoutError(f"Installation lookup for {owner}/{repo} timed out") from exc

    def invalidate(self, installation_id: int) -> None:
        """Forget the cached token of an installation, e.g. after GitHub answered 401."""
        self._cache.invalidate(str(installation_id))
        logger.info("Installation token dropped for installation %s", installation_id)

    async def get_token(self, installation_id: int) -> str:
        """Return a valid installation token, minting a new one when needed.

        Raises:
            GitHubAuthError: the key is invalid or GitHub rejected the credential.
            ExternalTimeoutError: the exchange did not answer in time.
        """
        try:
            return await self._cache.get_or_refresh(
                str(installation_id),
                lambda: self._refresh(installation_id),
            )
        except GitHubAuthError:
            logger.error("GitHub App auth failed for installation %s", installation_id)
            raise
