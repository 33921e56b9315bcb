"""OAuth token refresh for rotated accounts.

The rotation engine only needs "refresh a credential given its refresh
token"; the authorization-code flow that produced the token lives elsewhere.
"""

import os
from dataclasses import dataclass, field
from typing import Any

import httpx
from structlog import get_logger
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from account_rotator.core.timeutils import now_ms
from account_rotator.exceptions import TokenRefreshError
from account_rotator.rotation.constants import (
    DEFAULT_HTTP_TIMEOUT_SECONDS,
    DEFAULT_TOKEN_EXPIRY_SECONDS,
)


logger = get_logger(__name__)

DEFAULT_TOKEN_URL = "https://oauth2.googleapis.com/token"
MAX_TRANSPORT_RETRIES = 3


@dataclass
class OAuthConfig:
    """OAuth client configuration; client id and secret default to the environment."""

    token_url: str = DEFAULT_TOKEN_URL
    client_id: str = field(default_factory=lambda: os.environ.get("OAUTH_CLIENT_ID", ""))
    client_secret: str = field(
        default_factory=lambda: os.environ.get("OAUTH_CLIENT_SECRET", "")
    )
    timeout: float = DEFAULT_HTTP_TIMEOUT_SECONDS


@dataclass(frozen=True)
class RefreshedCredentials:
    """Token material returned by a refresh."""

    access_token: str
    refresh_token: str
    expires_at: int  # Unix timestamp in milliseconds


def _handle_error_response(response: httpx.Response) -> None:
    """Raise TokenRefreshError for a non-200 token response."""
    error_text = response.text[:500]
    logger.error(
        "oauth_token_refresh_failed",
        status=response.status_code,
        error=error_text,
    )
    raise TokenRefreshError(
        f"Token refresh failed: {error_text}",
        status_code=response.status_code,
        response_text=error_text,
    )


def parse_token_response(
    data: dict[str, Any], refresh_token: str, now: int | None = None
) -> RefreshedCredentials:
    """Build refreshed credentials from a token endpoint response.

    The original refresh token is kept when the response does not rotate it.
    """
    if now is None:
        now = now_ms()
    access_token = data.get("access_token")
    if not isinstance(access_token, str) or not access_token:
        raise TokenRefreshError("Token response is missing access_token")

    expires_in = data.get("expires_in") or DEFAULT_TOKEN_EXPIRY_SECONDS
    try:
        expires_at = now + int(expires_in) * 1000
    except (TypeError, ValueError) as e:
        raise TokenRefreshError(
            f"Token response has invalid expires_in: {expires_in!r}"
        ) from e

    new_refresh_token = data.get("refresh_token") or refresh_token
    if not isinstance(new_refresh_token, str):
        raise TokenRefreshError("Token response has invalid refresh_token")

    return RefreshedCredentials(
        access_token=access_token,
        refresh_token=new_refresh_token,
        expires_at=expires_at,
    )


class OAuthRefreshProvider:
    """Refreshes tokens against an OAuth token endpoint.

    Transport errors are retried with exponential backoff; HTTP error
    responses are not, since a rejected refresh token will not recover.
    Every failure, including malformed responses, surfaces as
    ``TokenRefreshError``.
    """

    def __init__(
        self,
        config: OAuthConfig | None = None,
        client: httpx.AsyncClient | None = None,
        max_attempts: int = MAX_TRANSPORT_RETRIES,
    ):
        self.config = config or OAuthConfig()
        self._client = client
        self.max_attempts = max_attempts

    async def _post(self, client: httpx.AsyncClient, refresh_token: str) -> httpx.Response:
        return await client.post(
            self.config.token_url,
            data={
                "refresh_token": refresh_token,
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
                "grant_type": "refresh_token",
            },
            headers={"Accept": "application/json"},
            timeout=self.config.timeout,
        )

    async def _request(self, refresh_token: str) -> httpx.Response:
        if self._client is not None:
            return await self._post(self._client, refresh_token)
        async with httpx.AsyncClient() as client:
            return await self._post(client, refresh_token)

    async def refresh(self, refresh_token: str) -> RefreshedCredentials:
        """Exchange a refresh token for a new access token.

        Raises:
            TokenRefreshError: If the refresh fails
        """

        def before_sleep_log(retry_state: Any) -> None:
            logger.warning(
                "token_refresh_retry",
                attempt=retry_state.attempt_number,
                max_attempts=self.max_attempts,
                error=str(retry_state.outcome.exception())
                if retry_state.outcome
                else None,
            )

        try:
            async for attempt in AsyncRetrying(
                wait=wait_exponential(multiplier=1, min=1, max=10),
                stop=stop_after_attempt(self.max_attempts),
                retry=retry_if_exception_type(httpx.TransportError),
                before_sleep=before_sleep_log,
            ):
                with attempt:
                    response = await self._request(refresh_token)
        except RetryError as e:
            last = e.last_attempt.exception()
            raise TokenRefreshError(f"Token refresh request failed: {last}") from last
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise TokenRefreshError(f"Token refresh request failed: {e}") from e

        if response.status_code != 200:
            _handle_error_response(response)

        try:
            data = response.json()
        except (ValueError, httpx.DecodingError) as e:
            raise TokenRefreshError("Token response is not valid JSON") from e

        if not isinstance(data, dict):
            raise TokenRefreshError("Token response is not a JSON object")

        refreshed = parse_token_response(data, refresh_token)
        logger.info(
            "token_refresh_success",
            expires_at=refreshed.expires_at,
        )
        return refreshed
