"""
Pytest configuration and fixtures.
"""

import json
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from review_responder.models import ExistingResponse, Platform, Review


def _pem(key, fmt) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=fmt,
        encryption_algorithm=serialization.NoEncryption(),
    )


class FakeClock:
    """Settable UTC clock for token expiry tests."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture(scope="session")
def temp_dir():
    """Session-scoped temporary directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def temp_file(temp_dir):
    """Create a temporary file."""
    def _create(name: str, content="") -> Path:
        path = temp_dir / name
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            path.write_bytes(content)
        else:
            path.write_text(content)
        return path
    return _create


@pytest.fixture(scope="session")
def ec_key():
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture(scope="session")
def ec_pem(ec_key) -> bytes:
    """P-256 key in PKCS#8, the format of an App Store Connect .p8 file."""
    return _pem(ec_key, serialization.PrivateFormat.PKCS8)


@pytest.fixture(scope="session")
def ec_sec1_pem(ec_key) -> bytes:
    return _pem(ec_key, serialization.PrivateFormat.TraditionalOpenSSL)


@pytest.fixture(scope="session")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def rsa_pem(rsa_key) -> bytes:
    """RSA key in PKCS#1."""
    return _pem(rsa_key, serialization.PrivateFormat.TraditionalOpenSSL)


@pytest.fixture(scope="session")
def rsa_pkcs8_pem(rsa_key) -> bytes:
    return _pem(rsa_key, serialization.PrivateFormat.PKCS8)


@pytest.fixture(scope="session")
def p384_pem() -> bytes:
    return _pem(ec.generate_private_key(ec.SECP384R1()), serialization.PrivateFormat.PKCS8)


@pytest.fixture
def service_account_document(rsa_pkcs8_pem) -> dict:
    return {
        "type": "service_account",
        "project_id": "demo-project",
        "private_key_id": "abc123",
        "private_key": rsa_pkcs8_pem.decode("ascii"),
        "client_email": "responder@demo-project.iam.gserviceaccount.com",
        "token_uri": "https://oauth2.googleapis.com/token",
    }


@pytest.fixture
def service_account_json(service_account_document) -> bytes:
    return json.dumps(service_account_document).encode("utf-8")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_review():
    """Factory for review snapshots."""
    def _make(
        review_id: str = "r1",
        rating: int = 4,
        title: str = "Nice",
        body: str = "Works well",
        platform: Platform = Platform.IOS,
        existing_response: Optional[ExistingResponse] = None,
        day: int = 1,
    ) -> Review:
        return Review(
            id=review_id,
            rating=rating,
            title=title,
            body=body,
            author="Alex",
            locale="USA",
            submitted_at=datetime(2024, 5, day, 9, 30, tzinfo=timezone.utc),
            platform=platform,
            existing_response=existing_response,
        )
    return _make
