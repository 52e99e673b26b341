"""
Tests for bearer token providers.
"""

import asyncio
from datetime import timedelta
from urllib.parse import parse_qs

import httpx
import jwt
import pytest

from review_responder.auth import (
    AuthError,
    KeyJwtAuth,
    ServiceAccountAuth,
    TokenExchangeError,
    load_private_key,
    load_service_account,
)
from review_responder.auth.providers import APP_STORE_AUDIENCE, JWT_BEARER_GRANT


def run_async(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _decode(token: str, public_key, algorithm: str, audience: str) -> dict:
    return jwt.decode(
        token,
        public_key,
        algorithms=[algorithm],
        audience=audience,
        options={"verify_exp": False, "verify_iat": False},
    )


@pytest.fixture
def app_store_auth(ec_pem, clock):
    return KeyJwtAuth(
        signing_key=load_private_key(ec_pem),
        key_id="KEY123",
        issuer_id="issuer-uuid",
        clock=clock,
    )


class TestKeyJwtAuth:
    """Tests for App Store Connect token minting."""

    def test_token_claims_and_header(self, app_store_auth, ec_key, clock):
        """Test claims, kid header and 20 minute lifetime."""
        credential = run_async(app_store_auth.get_token())

        header = jwt.get_unverified_header(credential.token)
        assert header["alg"] == "ES256"
        assert header["kid"] == "KEY123"
        assert header["typ"] == "JWT"

        claims = _decode(credential.token, ec_key.public_key(), "ES256", APP_STORE_AUDIENCE)
        iat = int(clock.now.timestamp())
        assert claims["iss"] == "issuer-uuid"
        assert claims["aud"] == "appstoreconnect-v1"
        assert claims["iat"] == iat
        assert claims["exp"] == iat + 20 * 60
        assert credential.expires_at.timestamp() == claims["exp"]

    def test_cached_until_skew(self, app_store_auth, clock):
        """Test the same token is reused until 60s before expiry."""
        first = run_async(app_store_auth.get_token())
        clock.advance(minutes=18, seconds=59)
        second = run_async(app_store_auth.get_token())

        assert second.token == first.token
        assert app_store_auth.refresh_count == 1

    def test_lifetime_inside_skew_rejected(self, ec_pem, clock):
        """Test a token that would already be stale is never returned."""
        auth = KeyJwtAuth(
            signing_key=load_private_key(ec_pem),
            key_id="KEY123",
            issuer_id="issuer-uuid",
            lifetime=timedelta(seconds=30),
            clock=clock,
        )

        with pytest.raises(AuthError, match="safety margin"):
            run_async(auth.get_token())

    def test_refresh_uses_fresh_iat(self, app_store_auth, ec_key, clock):
        """Test a stale token is re-minted with a new iat."""
        first = run_async(app_store_auth.get_token())
        clock.advance(minutes=19)
        second = run_async(app_store_auth.get_token())

        assert second.token != first.token
        assert app_store_auth.refresh_count == 2
        claims = _decode(second.token, ec_key.public_key(), "ES256", APP_STORE_AUDIENCE)
        assert claims["iat"] == int(clock.now.timestamp())

    def test_concurrent_callers_mint_once(self, app_store_auth):
        """Test single-flight refresh with many concurrent callers."""
        async def scenario():
            return await asyncio.gather(*(app_store_auth.get_token() for _ in range(10)))

        credentials = run_async(scenario())

        assert app_store_auth.refresh_count == 1
        assert len({c.token for c in credentials}) == 1

    def test_invalidate_forces_mint(self, app_store_auth):
        """Test invalidate drops the cached token."""
        run_async(app_store_auth.get_token())
        app_store_auth.invalidate()
        run_async(app_store_auth.get_token())
        assert app_store_auth.refresh_count == 2

    def test_rsa_key_signs_rs256(self, rsa_pem, clock):
        """Test the algorithm follows the key type."""
        auth = KeyJwtAuth(load_private_key(rsa_pem), "KEY", "issuer", clock=clock)
        credential = run_async(auth.get_token())
        assert jwt.get_unverified_header(credential.token)["alg"] == "RS256"

    def test_credential_repr_masks_token(self, app_store_auth):
        """Test the bearer token never shows up in repr."""
        credential = run_async(app_store_auth.get_token())
        assert credential.token not in repr(credential)


class TokenEndpoint:
    """MockTransport handler standing in for the OAuth2 token endpoint."""

    def __init__(self, status_code=200, payload=None, delay=0.0, error=None):
        self.status_code = status_code
        self.payload = payload if payload is not None else {
            "access_token": "ya29.test-token",
            "expires_in": 3599,
            "token_type": "Bearer",
        }
        self.delay = delay
        self.error = error
        self.requests = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return httpx.Response(self.status_code, json=self.payload)


def _play_auth(service_account_json, endpoint, clock) -> ServiceAccountAuth:
    return ServiceAccountAuth(
        load_service_account(service_account_json),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(endpoint)),
        clock=clock,
    )


class TestServiceAccountAuth:
    """Tests for the Google OAuth2 JWT-bearer exchange."""

    def test_exchange(self, service_account_json, rsa_key, clock):
        """Test the assertion posted and the credential returned."""
        endpoint = TokenEndpoint()
        auth = _play_auth(service_account_json, endpoint, clock)

        credential = run_async(auth.get_token())

        assert credential.token == "ya29.test-token"
        assert (credential.expires_at - clock.now).total_seconds() == 3599

        request = endpoint.requests[0]
        assert str(request.url) == "https://oauth2.googleapis.com/token"
        form = parse_qs(request.content.decode())
        assert form["grant_type"] == [JWT_BEARER_GRANT]

        assertion = form["assertion"][0]
        assert jwt.get_unverified_header(assertion)["kid"] == "abc123"
        claims = _decode(
            assertion,
            rsa_key.public_key(),
            "RS256",
            "https://oauth2.googleapis.com/token",
        )
        assert claims["iss"] == "responder@demo-project.iam.gserviceaccount.com"
        assert claims["scope"] == "https://www.googleapis.com/auth/androidpublisher"

    def test_missing_expires_in_defaults(self, service_account_json, clock):
        """Test an hour is assumed when expires_in is absent."""
        endpoint = TokenEndpoint(payload={"access_token": "tok"})
        credential = run_async(_play_auth(service_account_json, endpoint, clock).get_token())
        assert (credential.expires_at - clock.now).total_seconds() == 3600

    def test_rejected_exchange(self, service_account_json, clock):
        """Test a 4xx carries status and body."""
        endpoint = TokenEndpoint(status_code=400, payload={"error": "invalid_grant"})
        auth = _play_auth(service_account_json, endpoint, clock)

        with pytest.raises(TokenExchangeError) as exc_info:
            run_async(auth.get_token())

        assert exc_info.value.status_code == 400
        assert "invalid_grant" in exc_info.value.body

    def test_transport_failure(self, service_account_json, clock):
        """Test a connection error surfaces without a status."""
        endpoint = TokenEndpoint(error=httpx.ConnectError("connection refused"))
        auth = _play_auth(service_account_json, endpoint, clock)

        with pytest.raises(TokenExchangeError) as exc_info:
            run_async(auth.get_token())

        assert exc_info.value.status_code is None

    def test_missing_access_token(self, service_account_json, clock):
        """Test a 200 without access_token is an error."""
        endpoint = TokenEndpoint(payload={"token_type": "Bearer"})
        with pytest.raises(TokenExchangeError, match="access_token"):
            run_async(_play_auth(service_account_json, endpoint, clock).get_token())

    def test_zero_expires_in_is_not_defaulted(self, service_account_json, clock):
        """Test expires_in of 0 is taken literally and never handed out."""
        endpoint = TokenEndpoint(payload={"access_token": "tok", "expires_in": 0})
        auth = _play_auth(service_account_json, endpoint, clock)

        with pytest.raises(AuthError, match="safety margin"):
            run_async(auth.get_token())
        assert auth._cache.credential is None

    def test_short_lived_token_rejected(self, service_account_json, clock):
        """Test a token expiring inside the skew window is not used or cached."""
        endpoint = TokenEndpoint(payload={"access_token": "tok", "expires_in": 30})
        auth = _play_auth(service_account_json, endpoint, clock)

        async def scenario():
            with pytest.raises(AuthError):
                await auth.get_token()
            endpoint.payload = {"access_token": "long", "expires_in": 3600}
            return await auth.get_token()

        credential = run_async(scenario())

        assert credential.token == "long"
        assert len(endpoint.requests) == 2

    def test_invalid_expires_in(self, service_account_json, clock):
        endpoint = TokenEndpoint(payload={"access_token": "tok", "expires_in": "soon"})
        with pytest.raises(TokenExchangeError, match="expires_in"):
            run_async(_play_auth(service_account_json, endpoint, clock).get_token())

    def test_failure_not_cached(self, service_account_json, clock):
        """Test the next call exchanges again after a failure."""
        endpoint = TokenEndpoint(status_code=503, payload={"error": "unavailable"})
        auth = _play_auth(service_account_json, endpoint, clock)

        async def scenario():
            with pytest.raises(TokenExchangeError):
                await auth.get_token()
            endpoint.status_code = 200
            endpoint.payload = {"access_token": "second", "expires_in": 3600}
            return await auth.get_token()

        credential = run_async(scenario())

        assert credential.token == "second"
        assert len(endpoint.requests) == 2
        assert auth.refresh_count == 2

    def test_concurrent_callers_exchange_once(self, service_account_json, clock):
        """Test one network exchange serves all concurrent callers."""
        endpoint = TokenEndpoint(delay=0.01)
        auth = _play_auth(service_account_json, endpoint, clock)

        async def scenario():
            return await asyncio.gather(*(auth.get_token() for _ in range(8)))

        credentials = run_async(scenario())

        assert len(endpoint.requests) == 1
        assert {c.token for c in credentials} == {"ya29.test-token"}

    def test_concurrent_failure_reaches_every_caller(self, service_account_json, clock):
        """Test a failed exchange is delivered to all waiters."""
        endpoint = TokenEndpoint(status_code=500, payload={"error": "boom"}, delay=0.01)
        auth = _play_auth(service_account_json, endpoint, clock)

        async def scenario():
            return await asyncio.gather(
                *(auth.get_token() for _ in range(5)),
                return_exceptions=True,
            )

        results = run_async(scenario())

        assert len(endpoint.requests) == 1
        assert all(isinstance(r, TokenExchangeError) for r in results)

    def test_token_refreshed_after_expiry(self, service_account_json, clock):
        """Test an expired token triggers a new exchange."""
        endpoint = TokenEndpoint()
        auth = _play_auth(service_account_json, endpoint, clock)

        run_async(auth.get_token())
        clock.advance(seconds=3599 - 59)
        run_async(auth.get_token())

        assert len(endpoint.requests) == 2
