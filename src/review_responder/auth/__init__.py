"""
Auth module - credential parsing and bearer token providers.
"""
from review_responder.auth.credentials import (
    CredentialFormatError,
    ServiceAccount,
    SigningKey,
    load_private_key,
    load_service_account,
    read_private_key,
    read_service_account,
)
from review_responder.auth.providers import (
    AuthError,
    AuthProvider,
    KeyJwtAuth,
    ServiceAccountAuth,
    TokenCache,
    TokenExchangeError,
)

__all__ = [
    "AuthError",
    "AuthProvider",
    "CredentialFormatError",
    "KeyJwtAuth",
    "ServiceAccount",
    "ServiceAccountAuth",
    "SigningKey",
    "TokenCache",
    "TokenExchangeError",
    "load_private_key",
    "load_service_account",
    "read_private_key",
    "read_service_account",
]
