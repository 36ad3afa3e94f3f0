"""
Persistence for Google integration credentials (user_integrations).

Tokens are encrypted with Fernet on the way in and decrypted on the way
out; callers only ever see IntegrationCredential.
"""

from omnisync.db.helpers import execute_query, fetch_one, with_db_retry
from omnisync.infrastructure.observability.logging import get_logger
from omnisync.models.domain.credential_domain import IntegrationCredential
from omnisync.services.infrastructure.encryption_service import (
    decrypt_credential_tokens,
    encrypt_credential_tokens,
)

logger = get_logger(__name__)


class CredentialRepository:
    """Read, rotate and remove rows in user_integrations."""

    @classmethod
    @with_db_retry(max_retries=3, base_delay=0.1)
    async def get(cls, user_id: str, service: str) -> IntegrationCredential | None:
        query = """
            SELECT access_token, refresh_token, expiry_date
            FROM user_integrations
            WHERE user_id = %s
              AND provider = 'google'
              AND service = %s
        """

        row = await fetch_one(query, (user_id, service))
        if not row:
            return None

        access_token, refresh_token = decrypt_credential_tokens(
            encrypted_access=row["access_token"],
            encrypted_refresh=row.get("refresh_token"),
        )

        return IntegrationCredential(
            user_id=user_id,
            service=service,
            access_token=access_token,
            refresh_token=refresh_token,
            expiry_date=row.get("expiry_date"),
        )

    @classmethod
    @with_db_retry(max_retries=3, base_delay=0.1)
    async def save(cls, credential: IntegrationCredential) -> bool:
        """
        Store rotated tokens on the existing row.

        Never inserts: a row deleted after a revoked grant stays deleted.
        Returns False when there is no row to update.
        """
        encrypted_access, encrypted_refresh = encrypt_credential_tokens(
            access_token=credential.access_token,
            refresh_token=credential.refresh_token,
        )

        query = """
            UPDATE user_integrations
            SET access_token = %s,
                refresh_token = COALESCE(%s, refresh_token),
                expiry_date = %s,
                updated_at = NOW()
            WHERE user_id = %s
              AND provider = 'google'
              AND service = %s
        """

        affected_rows = await execute_query(
            query,
            (
                encrypted_access,
                encrypted_refresh,
                credential.expiry_date,
                credential.user_id,
                credential.service,
            ),
        )

        if not affected_rows:
            logger.info(
                "Integration credential gone, rotation not stored",
                user_id=credential.user_id,
                service=credential.service,
            )

        return affected_rows > 0

    @classmethod
    @with_db_retry(max_retries=3, base_delay=0.1)
    async def delete(cls, user_id: str, service: str) -> bool:
        query = """
            DELETE FROM user_integrations
            WHERE user_id = %s
              AND provider = 'google'
              AND service = %s
        """

        affected_rows = await execute_query(query, (user_id, service))

        if affected_rows:
            logger.info("Integration credential deleted", user_id=user_id, service=service)

        return affected_rows > 0
