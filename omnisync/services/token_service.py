"""
Token Service for integration credential lifecycle management.
Handles proactive refresh, out-of-band rotation, refresh serialization and
cleanup of credentials whose grant has been revoked.
"""

import asyncio

import httpx

from omnisync.config import settings
from omnisync.db.helpers import DatabaseError
from omnisync.infrastructure.observability.logging import get_logger
from omnisync.models.domain.credential_domain import IntegrationCredential
from omnisync.repositories.credential_repository import CredentialRepository
from omnisync.services.google_oauth_service import GoogleOAuthError, GoogleOAuthService
from omnisync.services.infrastructure.encryption_service import EncryptionError

logger = get_logger(__name__)


class TokenServiceError(Exception):
    """Custom exception for token service operations."""

    def __init__(self, message: str, user_id: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.message = message
        self.user_id = user_id
        self.recoverable = recoverable


class AuthError(TokenServiceError):
    """
    No usable credential for a (user, service) pair.

    permanent=True means the user has to reconnect; the credential row has
    already been removed when this is raised for a revoked grant.
    """

    def __init__(
        self,
        message: str,
        user_id: str | None = None,
        service: str | None = None,
        permanent: bool = False,
        reason: str | None = None,
    ):
        super().__init__(message, user_id=user_id, recoverable=not permanent)
        self.service = service
        self.permanent = permanent
        self.reason = reason


class TokenLifecycleManager:
    """
    Owns OAuth credential state for the sync pipeline.

    Credentials expiring within the refresh threshold are refreshed before
    use. Refreshes for the same (user, service) are serialized by a lock.
    Persisting a refreshed credential never blocks the caller: writes are
    scheduled as background tasks and the last write wins. Once a grant is
    revoked, writes still pending for that key are dropped.
    """

    def __init__(
        self,
        repository=CredentialRepository,
        oauth_service: GoogleOAuthService | None = None,
        threshold_minutes: int | None = None,
    ):
        self._repository = repository
        self._oauth = oauth_service or GoogleOAuthService()
        self._threshold_minutes = (
            threshold_minutes
            if threshold_minutes is not None
            else settings.TOKEN_REFRESH_THRESHOLD_MINUTES
        )
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._latest: dict[tuple[str, str], IntegrationCredential] = {}
        self._pending_writes: set[asyncio.Task] = set()
        self._revoked: set[tuple[str, str]] = set()

    def _lock_for(self, key: tuple[str, str]) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def get_valid_credential(self, user_id: str, service: str) -> IntegrationCredential:
        """
        Return a credential that is good for at least the refresh threshold.

        Raises:
            AuthError: not connected, grant revoked (permanent) or refresh
                currently impossible (retryable)
        """
        credential = await self._load(user_id, service)

        if not credential.needs_refresh(buffer_minutes=self._threshold_minutes):
            return credential

        async with self._lock_for(credential.key):
            # Another coroutine may have refreshed while we waited on the lock
            latest = self._latest.get(credential.key)
            if latest and not latest.needs_refresh(buffer_minutes=self._threshold_minutes):
                return latest

            logger.info(
                "Refreshing credential before sync",
                user_id=user_id,
                service=service,
                expiry_date=credential.expiry_date.isoformat() if credential.expiry_date else None,
            )
            refreshed = await self._refresh(credential)
            self.record_rotation(refreshed)
            return refreshed

    async def refresh_credential(self, credential: IntegrationCredential) -> IntegrationCredential:
        """
        Refresh a credential the provider just rejected.

        The new credential is returned, not persisted: the caller hands it
        back through record_rotation once it has been used successfully.
        """
        async with self._lock_for(credential.key):
            latest = self._latest.get(credential.key)
            if (
                latest
                and latest.access_token != credential.access_token
                and not latest.needs_refresh(buffer_minutes=self._threshold_minutes)
            ):
                return latest

            return await self._refresh(credential)

    def record_rotation(self, credential: IntegrationCredential) -> None:
        """Remember a rotated credential and persist it in the background."""
        self._latest[credential.key] = credential

        task = asyncio.create_task(self._persist(credential))
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)

    async def drain(self) -> None:
        """Wait for every scheduled credential write to finish."""
        while self._pending_writes:
            await asyncio.gather(*list(self._pending_writes))

    async def _load(self, user_id: str, service: str) -> IntegrationCredential:
        try:
            credential = await self._repository.get(user_id, service)
        except (DatabaseError, EncryptionError) as e:
            logger.error(
                "Failed to load integration credential",
                user_id=user_id,
                service=service,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise AuthError(
                f"Could not load {service} credential: {e}",
                user_id=user_id,
                service=service,
                reason="credential_unavailable",
            ) from e

        if credential is None:
            raise AuthError(
                f"Google {service} is not connected",
                user_id=user_id,
                service=service,
                permanent=True,
                reason="not_connected",
            )

        self._revoked.discard(credential.key)

        # A rotation from this process may not have reached the database yet
        cached = self._latest.get(credential.key)
        if cached and cached.expiry_date and credential.expiry_date:
            if cached.expiry_date > credential.expiry_date:
                return cached

        return credential

    async def _refresh(self, credential: IntegrationCredential) -> IntegrationCredential:
        user_id, service = credential.key

        if not credential.refresh_token:
            logger.warning("No refresh token available", user_id=user_id, service=service)
            await self._invalidate(user_id, service)
            raise AuthError(
                "No refresh token available - re-authentication required",
                user_id=user_id,
                service=service,
                permanent=True,
                reason="missing_refresh_token",
            )

        try:
            token_response = await self._oauth.refresh_access_token(credential.refresh_token)

        except GoogleOAuthError as e:
            if e.is_permanent:
                logger.warning(
                    "Refresh grant revoked - removing credential",
                    user_id=user_id,
                    service=service,
                    error_code=e.error_code,
                )
                await self._invalidate(user_id, service)
                raise AuthError(
                    str(e), user_id=user_id, service=service, permanent=True, reason=e.error_code
                ) from e

            logger.error(
                "Google OAuth error during token refresh",
                user_id=user_id,
                service=service,
                error=str(e),
                error_code=e.error_code,
                status_code=e.status_code,
            )
            raise AuthError(
                str(e),
                user_id=user_id,
                service=service,
                reason=e.error_code or "refresh_failed",
            ) from e

        except httpx.RequestError as e:
            logger.error(
                "Network error during token refresh",
                user_id=user_id,
                service=service,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise AuthError(
                f"Network error during token refresh: {e}",
                user_id=user_id,
                service=service,
                reason="network_error",
            ) from e

        logger.info(
            "Token refresh successful",
            user_id=user_id,
            service=service,
            new_expires_at=(
                token_response.expires_at.isoformat() if token_response.expires_at else None
            ),
        )

        return credential.model_copy(
            update={
                "access_token": token_response.access_token,
                "refresh_token": token_response.refresh_token or credential.refresh_token,
                "expiry_date": token_response.expires_at,
            }
        )

    async def _invalidate(self, user_id: str, service: str) -> None:
        self._revoked.add((user_id, service))
        self._latest.pop((user_id, service), None)
        try:
            await self._repository.delete(user_id, service)
        except DatabaseError as e:
            logger.error(
                "Failed to delete revoked credential",
                user_id=user_id,
                service=service,
                error=str(e),
            )

    async def _persist(self, credential: IntegrationCredential) -> None:
        if credential.key in self._revoked:
            logger.info(
                "Skipping write for revoked credential",
                user_id=credential.user_id,
                service=credential.service,
            )
            return

        try:
            await self._repository.save(credential)
        except Exception as e:
            logger.warning(
                "Failed to persist refreshed credential",
                user_id=credential.user_id,
                service=credential.service,
                error=str(e),
                error_type=type(e).__name__,
            )
