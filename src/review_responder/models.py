"""
Review data model shared by every platform.

Platform payloads are normalized into these shapes at the client boundary so
nothing above the clients branches on platform.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Tuple


TOKEN_EXPIRY_SKEW = timedelta(seconds=60)


def utc_now() -> datetime:
    """Get current UTC time."""
    return datetime.now(timezone.utc)


class Platform(str, Enum):
    """Review platforms."""

    IOS = "ios"
    ANDROID = "android"

    @property
    def display_name(self) -> str:
        return "App Store" if self is Platform.IOS else "Google Play"


class ResponseState(str, Enum):
    """Publication state of a reply already on the platform."""

    PUBLISHED = "published"
    PENDING = "pending"


class WorkflowState(str, Enum):
    """Reply workflow states for one review."""

    IDLE = "idle"
    DRAFTING = "drafting"
    PENDING_APPROVAL = "pending_approval"
    SUBMITTING = "submitting"
    SENT = "sent"
    FAILED = "failed"


ReviewKey = Tuple[Platform, str]


@dataclass(frozen=True)
class ExistingResponse:
    """A developer reply already present on the platform."""

    body: str
    last_modified: Optional[datetime] = None
    state: ResponseState = ResponseState.PUBLISHED


@dataclass(frozen=True)
class Review:
    """Immutable snapshot of a customer review."""

    id: str
    rating: int
    title: str
    body: str
    author: str
    locale: str
    submitted_at: datetime
    platform: Platform
    existing_response: Optional[ExistingResponse] = None

    @property
    def key(self) -> ReviewKey:
        """Identity of the review. Never shared across platforms."""
        return (self.platform, self.id)

    @property
    def text(self) -> str:
        """Title and body joined for display and prompting."""
        if self.title and self.body:
            return f"{self.title}\n{self.body}"
        return self.title or self.body


@dataclass(frozen=True)
class Credential:
    """Bearer token with a bounded validity window."""

    token: str
    expires_at: datetime

    def is_usable(self, now: datetime, skew: timedelta = TOKEN_EXPIRY_SKEW) -> bool:
        """False once ``now`` is within ``skew`` of expiry."""
        return now < self.expires_at - skew

    def __repr__(self) -> str:
        return f"Credential(token='***', expires_at={self.expires_at.isoformat()})"


@dataclass
class ReviewRecord:
    """Store entry: a review plus its local reply state."""

    review: Review
    draft_text: Optional[str] = None
    workflow_state: WorkflowState = WorkflowState.IDLE
    last_error: Optional[str] = None
    status_message: Optional[str] = None

    @property
    def key(self) -> ReviewKey:
        return self.review.key
