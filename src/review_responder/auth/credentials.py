"""
Credential material: private keys and service-account documents.

Parses externally supplied secrets into validated in-memory keys. Nothing in
here logs key material; reprs are masked.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.serialization import load_pem_private_key

from review_responder.logging import get_logger

logger = get_logger(__name__)

PrivateKey = Union[ec.EllipticCurvePrivateKey, rsa.RSAPrivateKey]

SERVICE_ACCOUNT_REQUIRED_FIELDS = ("client_email", "private_key", "token_uri")


class CredentialFormatError(Exception):
    """Raised when secret material cannot be parsed or is unsupported."""

    def __init__(self, message: str, source: Optional[str] = None):
        self.message = message
        self.source = source
        super().__init__(f"{message} ({source})" if source else message)


@dataclass(frozen=True)
class SigningKey:
    """A private key together with the JWS algorithm it signs with."""

    key: PrivateKey = field(repr=False)
    algorithm: str

    @property
    def key_type(self) -> str:
        return "EC" if self.algorithm == "ES256" else "RSA"


@dataclass(frozen=True)
class ServiceAccount:
    """Validated Google service-account document."""

    client_email: str
    token_uri: str
    signing_key: SigningKey = field(repr=False)
    private_key_id: Optional[str] = None
    project_id: Optional[str] = None


def load_private_key(pem: Union[bytes, str], source: Optional[str] = None) -> SigningKey:
    """
    Parse a PEM private key.

    Accepts PKCS#1 (``RSA PRIVATE KEY``), PKCS#8 (``PRIVATE KEY``) and SEC1
    (``EC PRIVATE KEY``) encodings. P-256 keys sign with ES256, RSA keys with
    RS256.

    Args:
        pem: PEM text or bytes
        source: Where the key came from, for error messages only

    Returns:
        SigningKey

    Raises:
        CredentialFormatError: Unparseable PEM or unsupported key algorithm
    """
    if isinstance(pem, str):
        pem = pem.encode("utf-8")

    if b"-----BEGIN" not in pem:
        raise CredentialFormatError("Private key is not PEM encoded", source)

    try:
        key = load_pem_private_key(pem, password=None)
    except TypeError:
        raise CredentialFormatError("Encrypted private keys are not supported", source)
    except UnsupportedAlgorithm as e:
        raise CredentialFormatError(f"Unsupported key algorithm: {e}", source)
    except ValueError as e:
        raise CredentialFormatError(f"Unparseable private key: {e}", source)

    if isinstance(key, ec.EllipticCurvePrivateKey):
        if not isinstance(key.curve, ec.SECP256R1):
            raise CredentialFormatError(
                f"Unsupported key algorithm: EC curve {key.curve.name} (expected P-256)",
                source,
            )
        return SigningKey(key=key, algorithm="ES256")

    if isinstance(key, rsa.RSAPrivateKey):
        return SigningKey(key=key, algorithm="RS256")

    raise CredentialFormatError(
        f"Unsupported key algorithm: {type(key).__name__}", source
    )


def load_service_account(data: Union[bytes, str], source: Optional[str] = None) -> ServiceAccount:
    """
    Parse a Google service-account JSON document.

    Raises:
        CredentialFormatError: Malformed JSON, missing fields or a bad key
    """
    try:
        document: Any = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise CredentialFormatError(f"Service account is not valid JSON: {e}", source)

    if not isinstance(document, dict):
        raise CredentialFormatError("Service account must be a JSON object", source)

    missing = [
        name for name in SERVICE_ACCOUNT_REQUIRED_FIELDS
        if not isinstance(document.get(name), str) or not document[name].strip()
    ]
    if missing:
        raise CredentialFormatError(
            f"Service account is missing required fields: {', '.join(missing)}",
            source,
        )

    signing_key = load_private_key(document["private_key"], source)
    if signing_key.algorithm != "RS256":
        raise CredentialFormatError("Service account key must be RSA", source)

    account = ServiceAccount(
        client_email=document["client_email"],
        token_uri=document["token_uri"],
        signing_key=signing_key,
        private_key_id=document.get("private_key_id") or None,
        project_id=document.get("project_id") or None,
    )

    logger.debug(
        "Service account loaded",
        client_email=account.client_email,
        project_id=account.project_id,
    )

    return account


def _read_bytes(path: Union[str, Path]) -> bytes:
    try:
        return Path(path).expanduser().read_bytes()
    except OSError as e:
        raise CredentialFormatError(f"Cannot read credential file: {e.strerror}", str(path))


def read_private_key(path: Union[str, Path]) -> SigningKey:
    """Load a PEM private key from disk."""
    return load_private_key(_read_bytes(path), source=str(path))


def read_service_account(path: Union[str, Path]) -> ServiceAccount:
    """Load a service-account JSON document from disk."""
    return load_service_account(_read_bytes(path), source=str(path))
