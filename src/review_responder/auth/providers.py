"""
Bearer token providers for the two review platforms.

KeyJwtAuth mints App Store Connect tokens locally from the .p8 key.
ServiceAccountAuth exchanges a signed assertion for a Google OAuth2 access
token. Both share the TokenCache single-flight refresh but nothing else.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import httpx
import jwt

from review_responder.auth.credentials import ServiceAccount, SigningKey
from review_responder.logging import get_logger
from review_responder.models import TOKEN_EXPIRY_SKEW, Credential, utc_now

logger = get_logger(__name__)

APP_STORE_AUDIENCE = "appstoreconnect-v1"
APP_STORE_TOKEN_LIFETIME = timedelta(minutes=20)

GOOGLE_PLAY_SCOPE = "https://www.googleapis.com/auth/androidpublisher"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"
ASSERTION_LIFETIME = timedelta(hours=1)
DEFAULT_EXPIRES_IN = 3600

Clock = Callable[[], datetime]


class AuthError(Exception):
    """Raised when a bearer token cannot be minted or exchanged."""


class TokenExchangeError(AuthError):
    """Raised when the OAuth2 token endpoint refuses or cannot be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        self.status_code = status_code
        self.body = body
        detail = f" (HTTP {status_code})" if status_code is not None else ""
        super().__init__(f"{message}{detail}")


def _from_timestamp(seconds: int) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


class TokenCache:
    """
    Cached credential with single-flight refresh.

    Concurrent callers that find the cache stale all await the same mint.
    A failed mint is delivered to every caller waiting on it and is not
    cached; the next call starts a new mint.
    """

    def __init__(
        self,
        name: str,
        skew: timedelta = TOKEN_EXPIRY_SKEW,
        clock: Clock = utc_now,
    ):
        self.name = name
        self.skew = skew
        self._clock = clock
        self._credential: Optional[Credential] = None
        self._inflight: Optional["asyncio.Future[Credential]"] = None
        self.refresh_count = 0

    @property
    def credential(self) -> Optional[Credential]:
        return self._credential

    def _usable(self) -> Optional[Credential]:
        credential = self._credential
        if credential and credential.is_usable(self._clock(), self.skew):
            return credential
        return None

    async def get(self, mint: Callable[[], Awaitable[Credential]]) -> Credential:
        credential = self._usable()
        if credential:
            return credential

        if self._inflight is None:
            self.refresh_count += 1
            logger.debug("Token refresh started", provider=self.name, refresh=self.refresh_count)
            self._inflight = asyncio.ensure_future(self._refresh(mint))

        # shield: a cancelled caller must not cancel the refresh others await
        return await asyncio.shield(self._inflight)

    async def _refresh(self, mint: Callable[[], Awaitable[Credential]]) -> Credential:
        try:
            credential = await mint()
            if not credential.is_usable(self._clock(), self.skew):
                logger.warning(
                    "Minted token expires within skew",
                    provider=self.name,
                    expires_at=credential.expires_at.isoformat(),
                )
                raise AuthError(
                    f"Token for {self.name} expires at {credential.expires_at.isoformat()}, "
                    f"inside the {int(self.skew.total_seconds())}s safety margin"
                )
            self._credential = credential
            logger.info(
                "Token refreshed",
                provider=self.name,
                expires_at=credential.expires_at.isoformat(),
            )
            return credential
        finally:
            self._inflight = None

    def invalidate(self) -> None:
        """Drop the cached credential so the next call mints again."""
        self._credential = None


class KeyJwtAuth:
    """
    App Store Connect token provider.

    Tokens are self-issued JWTs (ES256 for .p8 keys), so refreshing needs no network round
    trip. Each mint uses a fresh ``iat``.
    """

    def __init__(
        self,
        signing_key: SigningKey,
        key_id: str,
        issuer_id: str,
        audience: str = APP_STORE_AUDIENCE,
        lifetime: timedelta = APP_STORE_TOKEN_LIFETIME,
        clock: Clock = utc_now,
    ):
        self.signing_key = signing_key
        self.key_id = key_id
        self.issuer_id = issuer_id
        self.audience = audience
        self.lifetime = lifetime
        self._clock = clock
        self._cache = TokenCache("app_store", clock=clock)

    @property
    def refresh_count(self) -> int:
        return self._cache.refresh_count

    async def get_token(self) -> Credential:
        return await self._cache.get(self._mint)

    def invalidate(self) -> None:
        self._cache.invalidate()

    async def aclose(self) -> None:
        return None

    def build_claims(self, issued_at: datetime) -> Dict[str, Any]:
        iat = int(issued_at.timestamp())
        return {
            "iss": self.issuer_id,
            "iat": iat,
            "exp": iat + int(self.lifetime.total_seconds()),
            "aud": self.audience,
        }

    async def _mint(self) -> Credential:
        claims = self.build_claims(self._clock())
        try:
            token = jwt.encode(
                claims,
                self.signing_key.key,
                algorithm=self.signing_key.algorithm,
                headers={"kid": self.key_id, "typ": "JWT"},
            )
        except (jwt.PyJWTError, ValueError, TypeError) as e:
            raise AuthError(f"Failed to sign App Store Connect token: {e}") from e

        return Credential(token=token, expires_at=_from_timestamp(claims["exp"]))


class ServiceAccountAuth:
    """
    Google Play token provider.

    Exchanges an RS256 assertion for an access token at the account's token
    URI. Does not retry; callers own the retry policy.
    """

    def __init__(
        self,
        account: ServiceAccount,
        http_client: Optional[httpx.AsyncClient] = None,
        scope: str = GOOGLE_PLAY_SCOPE,
        timeout_seconds: float = 30.0,
        clock: Clock = utc_now,
    ):
        self.account = account
        self.scope = scope
        self._clock = clock
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout_seconds)
        self._cache = TokenCache("google_play", clock=clock)

    @property
    def refresh_count(self) -> int:
        return self._cache.refresh_count

    async def get_token(self) -> Credential:
        return await self._cache.get(self._mint)

    def invalidate(self) -> None:
        self._cache.invalidate()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    def build_assertion(self, issued_at: datetime) -> str:
        iat = int(issued_at.timestamp())
        claims = {
            "iss": self.account.client_email,
            "scope": self.scope,
            "aud": self.account.token_uri,
            "iat": iat,
            "exp": iat + int(ASSERTION_LIFETIME.total_seconds()),
        }
        headers = {"typ": "JWT"}
        if self.account.private_key_id:
            headers["kid"] = self.account.private_key_id
        try:
            return jwt.encode(
                claims,
                self.account.signing_key.key,
                algorithm="RS256",
                headers=headers,
            )
        except (jwt.PyJWTError, ValueError, TypeError) as e:
            raise AuthError(f"Failed to sign service account assertion: {e}") from e

    async def _mint(self) -> Credential:
        now = self._clock()
        assertion = self.build_assertion(now)

        try:
            response = await self._http.post(
                self.account.token_uri,
                data={"grant_type": JWT_BEARER_GRANT, "assertion": assertion},
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            logger.warning("Token exchange request failed", error=str(e))
            raise TokenExchangeError(f"Token exchange request failed: {e}") from e

        if not response.is_success:
            body = response.text[:500]
            logger.warning(
                "Token exchange rejected",
                status=response.status_code,
                body=body,
            )
            raise TokenExchangeError(
                "Token exchange failed",
                status_code=response.status_code,
                body=body,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise TokenExchangeError(
                "Token endpoint returned invalid JSON",
                status_code=response.status_code,
                body=response.text[:500],
            ) from e

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not access_token:
            raise TokenExchangeError(
                "Token endpoint response has no access_token",
                status_code=response.status_code,
            )

        expires_in = payload.get("expires_in")
        if expires_in is None:
            expires_in = DEFAULT_EXPIRES_IN
        try:
            expires_in = int(expires_in)
        except (TypeError, ValueError) as e:
            raise TokenExchangeError(
                f"Token endpoint returned invalid expires_in: {expires_in!r}",
                status_code=response.status_code,
            ) from e
        return Credential(token=access_token, expires_at=now + timedelta(seconds=expires_in))


AuthProvider = Union[KeyJwtAuth, ServiceAccountAuth]
