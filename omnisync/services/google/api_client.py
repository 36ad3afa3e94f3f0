"""
Low-level Google API client shared by the Gmail and Calendar sources.

Every call is authorized with an IntegrationCredential and returns
(data, rotated_credential). A 401 triggers one refresh through the token
manager and one replay; the new credential comes back as the second
element so the caller can record the rotation.
"""

import asyncio
from typing import Any

import httpx

from omnisync.config import settings
from omnisync.infrastructure.observability.logging import get_logger
from omnisync.models.domain.credential_domain import IntegrationCredential
from omnisync.services.google.rate_limiter import (
    RETRY_STATUS_CODES,
    GoogleApiRateLimiter,
    backoff_delay,
)

logger = get_logger(__name__)


class GoogleApiError(Exception):
    """Custom exception for Google REST API errors."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int | None = None,
        response_data: dict | None = None,
    ):
        super().__init__(message)
        self.error_code = error_code
        self.status_code = status_code
        self.response_data = response_data or {}

    @property
    def retryable(self) -> bool:
        return self.status_code is None or self.status_code in RETRY_STATUS_CODES


class GoogleApiClient:
    """
    Authorized httpx client for Google REST endpoints.

    max_retries applies to 429/5xx and network errors only. Item fetches
    pass 0 so a flaky item is counted as an error instead of stalling its
    wave.
    """

    def __init__(
        self,
        token_manager,
        rate_limiter: GoogleApiRateLimiter | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float | None = None,
        sleep=asyncio.sleep,
    ):
        self._token_manager = token_manager
        self._rate_limiter = rate_limiter or GoogleApiRateLimiter()
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout or settings.GOOGLE_REQUEST_TIMEOUT),
            limits=httpx.Limits(max_keepalive_connections=20, max_connections=50),
            transport=transport,
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    def _get_auth_headers(self, access_token: str) -> dict:
        return {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
        }

    async def get_json(
        self,
        credential: IntegrationCredential,
        url: str,
        params: dict[str, Any] | None = None,
        *,
        max_retries: int = 0,
        operation: str = "request",
    ) -> tuple[dict, IntegrationCredential | None]:
        """
        GET a Google endpoint as the credential's user.

        Returns:
            (parsed JSON body, rotated credential or None)

        Raises:
            GoogleApiError: non-success response after retries
            AuthError: the 401 refresh failed
        """
        current = credential
        rotated: IntegrationCredential | None = None
        attempt = 0

        while True:
            await self._rate_limiter.acquire(current.user_id, current.service)

            try:
                response = await self._client.get(
                    url, params=params, headers=self._get_auth_headers(current.access_token)
                )
            except httpx.RequestError as e:
                if attempt < max_retries:
                    attempt += 1
                    delay = backoff_delay(attempt)
                    logger.warning(
                        "Google API request error, retrying",
                        operation=operation,
                        attempt=attempt,
                        delay=round(delay, 2),
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    await self._sleep(delay)
                    continue
                raise GoogleApiError(f"Network error during {operation}: {e}") from e

            if response.status_code == 401 and rotated is None:
                logger.info(
                    "Access token rejected, refreshing",
                    operation=operation,
                    user_id=current.user_id,
                    service=current.service,
                )
                current = await self._token_manager.refresh_credential(current)
                rotated = current
                continue

            if response.status_code in RETRY_STATUS_CODES and attempt < max_retries:
                attempt += 1
                delay = backoff_delay(attempt, response.status_code)
                logger.warning(
                    "Google API transient status",
                    operation=operation,
                    status_code=response.status_code,
                    attempt=attempt,
                    delay=round(delay, 2),
                )
                await self._sleep(delay)
                continue

            return self._handle_api_response(response, operation), rotated

    def _handle_api_response(self, response: httpx.Response, operation: str) -> dict:
        """
        Handle and validate a Google API response.

        Raises:
            GoogleApiError: If response contains errors
        """
        if response.is_success:
            try:
                return response.json() if response.content else {}
            except ValueError as e:
                raise GoogleApiError(
                    f"Invalid response format: {e}", status_code=response.status_code
                ) from e

        try:
            error_data = response.json() if response.content else {}
        except ValueError:
            raise GoogleApiError(
                f"Google API error (HTTP {response.status_code})",
                status_code=response.status_code,
            ) from None

        error_info = error_data.get("error", {}) if isinstance(error_data, dict) else {}
        if isinstance(error_info, str):
            error_info = {"status": error_info}

        error_code = str(error_info.get("status") or error_info.get("code") or "unknown")
        error_message = error_info.get("message", "Unknown Google API error")

        logger.debug(
            f"Google API {operation} failed",
            status_code=response.status_code,
            error_code=error_code,
            error_message=error_message,
        )

        raise GoogleApiError(
            f"Google API {operation} failed: {error_message}",
            error_code=error_code,
            status_code=response.status_code,
            response_data=error_data,
        )
