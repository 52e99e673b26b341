"""
Review clients - one per platform behind the same interface.

Both clients expose ``platform``, ``max_response_length``,
``list_reviews()``, ``submit_response(review_id, text)`` and ``aclose()``.
"""
from typing import Optional, Union

import httpx

from review_responder.auth.credentials import read_private_key, read_service_account
from review_responder.auth.providers import KeyJwtAuth, ServiceAccountAuth
from review_responder.clients.app_store import AppStoreClient
from review_responder.clients.common import (
    ClientError,
    RejectedError,
    TransientError,
    validate_response_text,
)
from review_responder.clients.google_play import GooglePlayClient
from review_responder.config import ClientConfig, PlatformConfig
from review_responder.logging import get_logger
from review_responder.models import Platform

logger = get_logger(__name__)

ReviewClient = Union[AppStoreClient, GooglePlayClient]


def build_client(
    platform_config: PlatformConfig,
    client_config: Optional[ClientConfig] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> ReviewClient:
    """
    Build the client and auth provider for the configured platform.

    Credential files are read here, so a malformed key fails at startup.

    Raises:
        CredentialFormatError: If the key or service account cannot be parsed
    """
    client_config = client_config or ClientConfig()
    paging: dict = {}
    if client_config.page_size:
        paging["page_size"] = client_config.page_size

    if platform_config.platform == Platform.IOS:
        auth = KeyJwtAuth(
            signing_key=read_private_key(platform_config.private_key_path),
            key_id=platform_config.key_id,
            issuer_id=platform_config.issuer_id,
        )
        client: ReviewClient = AppStoreClient(
            auth,
            app_id=platform_config.app_id,
            http_client=http_client,
            max_pages=client_config.max_pages,
            timeout_seconds=client_config.timeout_seconds,
            **paging,
        )
    else:
        auth = ServiceAccountAuth(
            read_service_account(platform_config.service_account_path),
            http_client=http_client,
            timeout_seconds=client_config.timeout_seconds,
        )
        client = GooglePlayClient(
            auth,
            package_name=platform_config.app_id,
            http_client=http_client,
            max_pages=client_config.max_pages,
            timeout_seconds=client_config.timeout_seconds,
            **paging,
        )

    logger.info(
        "Review client ready",
        platform=platform_config.platform.value,
        app_id=platform_config.app_id,
    )
    return client


__all__ = [
    "AppStoreClient",
    "ClientError",
    "GooglePlayClient",
    "RejectedError",
    "ReviewClient",
    "TransientError",
    "build_client",
    "validate_response_text",
]
