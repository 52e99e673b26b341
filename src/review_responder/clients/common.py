"""
Pieces shared by the platform review clients: the error taxonomy, response
classification and an authenticated HTTP transport.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from review_responder.auth.providers import AuthProvider
from review_responder.logging import get_logger
from review_responder.models import Credential
from review_responder.resilience import (
    AUTH_RETRY_POLICY,
    RetryExhaustedError,
    RetryPolicy,
    retry_with_backoff,
)

logger = get_logger(__name__)

DEFAULT_MAX_PAGES = 20
DEFAULT_TIMEOUT_SECONDS = 30.0


class ClientError(Exception):
    """Base class for review client failures."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class TransientError(ClientError):
    """Network failure, 5xx or exhausted authentication. Safe to retry."""


class RejectedError(ClientError):
    """4xx from the platform or local validation failure. Do not retry as-is."""


def validate_response_text(text: str, max_length: int) -> None:
    """
    Check a reply before it goes anywhere near the network.

    Raises:
        RejectedError: Empty text or longer than the platform allows
    """
    if not text or not text.strip():
        raise RejectedError("Response text is empty")
    if len(text) > max_length:
        raise RejectedError(
            f"Response is {len(text)} characters; the limit is {max_length}"
        )


def error_reason(response: httpx.Response) -> str:
    """Best-effort human readable reason from a platform error body."""
    try:
        payload = response.json()
    except ValueError:
        return response.text[:300] or response.reason_phrase

    if isinstance(payload, dict):
        # App Store Connect: {"errors": [{"title", "detail"}]}
        errors = payload.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            first = errors[0]
            return str(first.get("detail") or first.get("title") or first)
        # Google APIs: {"error": {"message"}}
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return payload.get("error_description") or error

    return response.text[:300] or response.reason_phrase


def raise_for_status(response: httpx.Response, action: str) -> None:
    """
    Map an HTTP status onto the client error taxonomy.

    Raises:
        RejectedError: 4xx
        TransientError: 5xx (and anything else that is not 2xx)
    """
    if response.is_success:
        return

    status = response.status_code
    reason = error_reason(response)
    message = f"{action} failed with HTTP {status}: {reason}"

    if 400 <= status < 500:
        raise RejectedError(message, status_code=status)
    raise TransientError(message, status_code=status)


def parse_json(response: httpx.Response, action: str) -> Dict[str, Any]:
    """Decode a JSON object body; a malformed body is a transient fault."""
    try:
        payload = response.json()
    except ValueError as e:
        raise TransientError(f"{action} returned invalid JSON: {e}", response.status_code)
    if not isinstance(payload, dict):
        raise TransientError(f"{action} returned unexpected JSON", response.status_code)
    return payload


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into an aware UTC datetime."""
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class BearerTransport:
    """
    httpx wrapper that attaches the provider's bearer token.

    Token acquisition is retried with backoff. A 401 drops the cached token
    and the request is repeated once with a fresh one.
    """

    def __init__(
        self,
        auth: AuthProvider,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        auth_retry_policy: RetryPolicy = AUTH_RETRY_POLICY,
    ):
        self.auth = auth
        self.auth_retry_policy = auth_retry_policy
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout_seconds)

    async def token(self) -> Credential:
        try:
            return await retry_with_backoff(
                self.auth.get_token,
                policy=self.auth_retry_policy,
            )
        except RetryExhaustedError as e:
            logger.error("Authentication failed", attempts=e.attempts, error=str(e.last_error))
            raise TransientError(f"Authentication failed: {e.last_error}") from e

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        response = await self._send(method, url, **kwargs)

        if response.status_code == 401:
            logger.info("Bearer token rejected, refreshing", url=url)
            self.auth.invalidate()
            response = await self._send(method, url, **kwargs)

        return response

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        credential = await self.token()
        headers = {
            "Authorization": f"Bearer {credential.token}",
            "Accept": "application/json",
        }
        try:
            return await self._http.request(method, url, headers=headers, **kwargs)
        except httpx.TransportError as e:
            logger.warning("Request failed", method=method, url=url, error=str(e))
            raise TransientError(f"{method} {url} failed: {e}") from e

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()
        await self.auth.aclose()
