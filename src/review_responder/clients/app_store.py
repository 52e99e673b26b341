"""
App Store Connect customer reviews client.
"""

from typing import Any, Dict, List, Optional

import httpx

from review_responder.auth.providers import KeyJwtAuth
from review_responder.clients.common import (
    DEFAULT_MAX_PAGES,
    DEFAULT_TIMEOUT_SECONDS,
    BearerTransport,
    parse_json,
    parse_timestamp,
    raise_for_status,
    validate_response_text,
)
from review_responder.logging import get_logger
from review_responder.models import (
    ExistingResponse,
    Platform,
    ResponseState,
    Review,
)
from review_responder.resilience import AUTH_RETRY_POLICY, RetryPolicy

logger = get_logger(__name__)

APP_STORE_API_BASE = "https://api.appstoreconnect.apple.com/v1"
APP_STORE_MAX_RESPONSE_LENGTH = 5970
APP_STORE_PAGE_SIZE = 200


def _parse_response_resource(resource: Dict[str, Any]) -> Optional[ExistingResponse]:
    attributes = resource.get("attributes") or {}
    body = attributes.get("responseBody")
    if not body:
        return None
    state = (
        ResponseState.PUBLISHED
        if attributes.get("state") == "PUBLISHED"
        else ResponseState.PENDING
    )
    return ExistingResponse(
        body=body,
        last_modified=parse_timestamp(attributes.get("lastModifiedDate")),
        state=state,
    )


def parse_reviews_payload(payload: Dict[str, Any]) -> List[Review]:
    """
    Normalize one ``customerReviews`` page.

    Replies come from the ``included`` array when the request asked for
    ``include=response``. Items that cannot be normalized are skipped.
    """
    responses: Dict[str, ExistingResponse] = {}
    for resource in payload.get("included") or []:
        if resource.get("type") != "customerReviewResponses":
            continue
        parsed = _parse_response_resource(resource)
        if parsed and resource.get("id"):
            responses[resource["id"]] = parsed

    reviews = []
    for item in payload.get("data") or []:
        attributes = item.get("attributes") or {}
        submitted_at = parse_timestamp(attributes.get("createdDate"))
        review_id = item.get("id")
        rating = attributes.get("rating")
        if (
            not review_id
            or submitted_at is None
            or not isinstance(rating, int)
            or not 1 <= rating <= 5
        ):
            logger.warning("Skipping malformed App Store review", review_id=review_id)
            continue

        relationship = ((item.get("relationships") or {}).get("response") or {}).get("data")
        existing = None
        if isinstance(relationship, dict):
            existing = responses.get(relationship.get("id", ""))

        reviews.append(
            Review(
                id=review_id,
                rating=rating,
                title=attributes.get("title") or "",
                body=attributes.get("body") or "",
                author=attributes.get("reviewerNickname") or "Anonymous",
                locale=attributes.get("territory") or "",
                submitted_at=submitted_at,
                platform=Platform.IOS,
                existing_response=existing,
            )
        )

    return reviews


def build_response_body(review_id: str, text: str) -> Dict[str, Any]:
    """Request body for ``POST /customerReviewResponses``."""
    return {
        "data": {
            "type": "customerReviewResponses",
            "attributes": {"responseBody": text},
            "relationships": {
                "review": {
                    "data": {"type": "customerReviews", "id": review_id},
                },
            },
        },
    }


class AppStoreClient:
    """Lists and answers customer reviews through the App Store Connect API."""

    platform = Platform.IOS
    max_response_length = APP_STORE_MAX_RESPONSE_LENGTH

    def __init__(
        self,
        auth: KeyJwtAuth,
        app_id: str,
        http_client: Optional[httpx.AsyncClient] = None,
        base_url: str = APP_STORE_API_BASE,
        page_size: int = APP_STORE_PAGE_SIZE,
        max_pages: int = DEFAULT_MAX_PAGES,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        auth_retry_policy: RetryPolicy = AUTH_RETRY_POLICY,
    ):
        if max_pages < 1:
            raise ValueError(f"max_pages must be at least 1, got {max_pages}")
        self.app_id = app_id
        self.base_url = base_url.rstrip("/")
        self.page_size = page_size
        self.max_pages = max_pages
        self._transport = BearerTransport(
            auth,
            http_client=http_client,
            timeout_seconds=timeout_seconds,
            auth_retry_policy=auth_retry_policy,
        )

    async def list_reviews(self) -> List[Review]:
        url = f"{self.base_url}/apps/{self.app_id}/customerReviews"
        params: Optional[Dict[str, str]] = {
            "limit": str(self.page_size),
            "sort": "-createdDate",
            "include": "response",
        }
        reviews: List[Review] = []

        for page in range(self.max_pages):
            response = await self._transport.request("GET", url, params=params)
            raise_for_status(response, "List reviews")
            payload = parse_json(response, "List reviews")
            reviews.extend(parse_reviews_payload(payload))

            next_url = (payload.get("links") or {}).get("next")
            if not next_url:
                break
            # links.next already carries the cursor and query
            url, params = next_url, None
        else:
            logger.warning("Pagination limit reached", platform="ios", max_pages=self.max_pages)

        logger.info("Reviews fetched", platform="ios", count=len(reviews), pages=page + 1)
        return reviews

    async def submit_response(self, review_id: str, text: str) -> None:
        validate_response_text(text, self.max_response_length)

        response = await self._transport.request(
            "POST",
            f"{self.base_url}/customerReviewResponses",
            json=build_response_body(review_id, text),
        )
        raise_for_status(response, "Submit response")

        logger.info("Response submitted", platform="ios", review_id=review_id, length=len(text))

    async def aclose(self) -> None:
        await self._transport.aclose()
