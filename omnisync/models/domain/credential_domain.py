# models/domain/credential_domain.py
"""
Integration credential domain model (decrypted form of a user_integrations row).
"""

from datetime import UTC, datetime, timedelta
from typing import Literal

from pydantic import BaseModel

GoogleService = Literal["gmail", "calendar"]


class IntegrationCredential(BaseModel):
    """OAuth credential for one (user, service) pair. Tokens are decrypted."""

    user_id: str
    provider: Literal["google"] = "google"
    service: GoogleService
    access_token: str
    refresh_token: str | None = None
    expiry_date: datetime | None = None

    def needs_refresh(self, buffer_minutes: int = 5) -> bool:
        """Check if token expires within the buffer window."""
        if not self.expiry_date:
            return False
        buffer_time = datetime.now(UTC) + timedelta(minutes=buffer_minutes)
        return buffer_time >= self.expiry_date

    @property
    def key(self) -> tuple[str, str]:
        return (self.user_id, self.service)
