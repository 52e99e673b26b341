"""
Google Play Developer API reviews client.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx

from review_responder.auth.providers import ServiceAccountAuth
from review_responder.clients.common import (
    DEFAULT_MAX_PAGES,
    DEFAULT_TIMEOUT_SECONDS,
    BearerTransport,
    parse_json,
    raise_for_status,
    validate_response_text,
)
from review_responder.logging import get_logger
from review_responder.models import ExistingResponse, Platform, Review
from review_responder.resilience import AUTH_RETRY_POLICY, RetryPolicy

logger = get_logger(__name__)

GOOGLE_PLAY_API_BASE = "https://androidpublisher.googleapis.com/androidpublisher/v3"
GOOGLE_PLAY_MAX_RESPONSE_LENGTH = 350
GOOGLE_PLAY_PAGE_SIZE = 100


def parse_play_timestamp(value: Any) -> Optional[datetime]:
    """Parse a protobuf ``Timestamp`` JSON object (``{"seconds", "nanos"}``)."""
    if not isinstance(value, dict) or "seconds" not in value:
        return None
    try:
        seconds = int(value["seconds"])
        nanos = int(value.get("nanos") or 0)
    except (TypeError, ValueError):
        return None
    return datetime.fromtimestamp(seconds + nanos / 1e9, tz=timezone.utc)


def split_title(text: str) -> Tuple[str, str]:
    """Google Play joins title and body with a tab when a title exists."""
    title, separator, body = text.partition("\t")
    if not separator:
        return "", text.strip()
    return title.strip(), body.strip()


def parse_play_review(item: Dict[str, Any]) -> Optional[Review]:
    """Normalize one entry of the ``reviews`` array."""
    user_comment = None
    developer_comment = None
    for comment in item.get("comments") or []:
        if "userComment" in comment:
            user_comment = comment["userComment"]
        elif "developerComment" in comment:
            developer_comment = comment["developerComment"]

    review_id = item.get("reviewId")
    if not review_id or not isinstance(user_comment, dict):
        return None

    submitted_at = parse_play_timestamp(user_comment.get("lastModified"))
    try:
        rating = int(user_comment.get("starRating"))
    except (TypeError, ValueError):
        return None
    if submitted_at is None or not 1 <= rating <= 5:
        return None

    title, body = split_title(user_comment.get("text") or "")

    existing = None
    if isinstance(developer_comment, dict) and developer_comment.get("text"):
        existing = ExistingResponse(
            body=developer_comment["text"],
            last_modified=parse_play_timestamp(developer_comment.get("lastModified")),
        )

    return Review(
        id=review_id,
        rating=rating,
        title=title,
        body=body,
        author=item.get("authorName") or "Anonymous",
        locale=user_comment.get("reviewerLanguage") or "",
        submitted_at=submitted_at,
        platform=Platform.ANDROID,
        existing_response=existing,
    )


def parse_reviews_payload(payload: Dict[str, Any]) -> List[Review]:
    """Normalize one ``reviews.list`` page, skipping malformed entries."""
    reviews = []
    for item in payload.get("reviews") or []:
        review = parse_play_review(item)
        if review is None:
            logger.warning("Skipping malformed Google Play review", review_id=item.get("reviewId"))
            continue
        reviews.append(review)
    return reviews


class GooglePlayClient:
    """Lists and answers reviews through the Android Publisher API."""

    platform = Platform.ANDROID
    max_response_length = GOOGLE_PLAY_MAX_RESPONSE_LENGTH

    def __init__(
        self,
        auth: ServiceAccountAuth,
        package_name: str,
        http_client: Optional[httpx.AsyncClient] = None,
        base_url: str = GOOGLE_PLAY_API_BASE,
        page_size: int = GOOGLE_PLAY_PAGE_SIZE,
        max_pages: int = DEFAULT_MAX_PAGES,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        auth_retry_policy: RetryPolicy = AUTH_RETRY_POLICY,
    ):
        if max_pages < 1:
            raise ValueError(f"max_pages must be at least 1, got {max_pages}")
        self.package_name = package_name
        self.base_url = base_url.rstrip("/")
        self.page_size = page_size
        self.max_pages = max_pages
        self._transport = BearerTransport(
            auth,
            http_client=http_client,
            timeout_seconds=timeout_seconds,
            auth_retry_policy=auth_retry_policy,
        )

    @property
    def _reviews_url(self) -> str:
        return f"{self.base_url}/applications/{self.package_name}/reviews"

    async def list_reviews(self) -> List[Review]:
        reviews: List[Review] = []
        page_token: Optional[str] = None

        for page in range(self.max_pages):
            params = {"maxResults": str(self.page_size)}
            if page_token:
                params["token"] = page_token

            response = await self._transport.request("GET", self._reviews_url, params=params)
            raise_for_status(response, "List reviews")
            payload = parse_json(response, "List reviews")
            reviews.extend(parse_reviews_payload(payload))

            page_token = (payload.get("tokenPagination") or {}).get("nextPageToken")
            if not page_token:
                break
        else:
            logger.warning("Pagination limit reached", platform="android", max_pages=self.max_pages)

        logger.info("Reviews fetched", platform="android", count=len(reviews), pages=page + 1)
        return reviews

    async def submit_response(self, review_id: str, text: str) -> None:
        validate_response_text(text, self.max_response_length)

        response = await self._transport.request(
            "POST",
            f"{self._reviews_url}/{review_id}:reply",
            json={"replyText": text},
        )
        raise_for_status(response, "Submit response")

        logger.info("Response submitted", platform="android", review_id=review_id, length=len(text))

    async def aclose(self) -> None:
        await self._transport.aclose()
