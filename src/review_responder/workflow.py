"""
Reply workflow state machine.

Per review::

    IDLE/SENT/FAILED --start_draft--> DRAFTING --submit_for_approval--> PENDING_APPROVAL
    PENDING_APPROVAL --approve--> SUBMITTING --> SENT | PENDING_APPROVAL | FAILED
    PENDING_APPROVAL --reject--> DRAFTING
    DRAFTING/PENDING_APPROVAL --cancel_draft--> IDLE

``client.submit_response`` is only ever called from ``approve``.
"""

from typing import Awaitable, Callable, Optional, Set

from review_responder.clients import RejectedError, ReviewClient, TransientError
from review_responder.logging import get_logger
from review_responder.models import Review, ReviewKey, ReviewRecord, WorkflowState
from review_responder.replier import AiError
from review_responder.store import ReviewStore

logger = get_logger(__name__)

ReplyGenerator = Callable[[Review], Awaitable[str]]

SUBMITTED_MESSAGE = "Response submitted"


class WorkflowError(Exception):
    """Base class for workflow command failures."""


class InvalidTransitionError(WorkflowError):
    """Raised when an operation is not valid from the current state."""

    def __init__(self, action: str, state: WorkflowState):
        self.action = action
        self.state = state
        super().__init__(f"Cannot {action} while {state.value.replace('_', ' ')}")


class EmptyDraftError(WorkflowError):
    """Raised when submitting a blank draft for approval."""

    def __init__(self):
        super().__init__("Draft is empty")


class ReviewBusyError(WorkflowError):
    """Raised when a review already has a network operation in flight."""

    def __init__(self, key: ReviewKey):
        self.key = key
        super().__init__("Another operation is already in progress for this review")


class ResponseWorkflow:
    """
    Drives the draft/approval lifecycle of each review.

    All record mutation goes through ``ReviewStore.update``. At most one
    network operation (AI drafting or submission) runs per review.
    """

    def __init__(
        self,
        store: ReviewStore,
        client: ReviewClient,
        reply_generator: Optional[ReplyGenerator] = None,
    ):
        self.store = store
        self.client = client
        self.reply_generator = reply_generator
        self._in_flight: Set[ReviewKey] = set()

    @property
    def busy(self) -> bool:
        """True while any review has a network operation in flight."""
        return bool(self._in_flight)

    def is_busy(self, key: ReviewKey) -> bool:
        return key in self._in_flight

    def _require(self, key: ReviewKey, action: str, *allowed: WorkflowState) -> ReviewRecord:
        record = self.store.get(key)
        if record.workflow_state not in allowed:
            raise InvalidTransitionError(action, record.workflow_state)
        return record

    def _claim(self, key: ReviewKey) -> None:
        if key in self._in_flight:
            raise ReviewBusyError(key)
        self._in_flight.add(key)

    def start_draft(self, key: ReviewKey) -> ReviewRecord:
        """Open the draft editor. Re-entering from FAILED keeps the failed draft."""
        record = self.store.get(key)
        if record.workflow_state == WorkflowState.DRAFTING:
            return record
        record = self._require(
            key,
            "start a draft",
            WorkflowState.IDLE,
            WorkflowState.SENT,
            WorkflowState.FAILED,
        )
        if self.is_busy(key):
            raise ReviewBusyError(key)

        draft = record.draft_text if record.workflow_state == WorkflowState.FAILED else ""
        logger.debug("Draft started", review_id=record.review.id, previous=record.workflow_state.value)
        return self.store.update(
            key,
            workflow_state=WorkflowState.DRAFTING,
            draft_text=draft,
            last_error=None,
            status_message=None,
        )

    def edit_draft(self, key: ReviewKey, text: str) -> ReviewRecord:
        """Replace the draft text."""
        self._require(key, "edit the draft", WorkflowState.DRAFTING)
        if self.is_busy(key):
            raise ReviewBusyError(key)
        return self.store.update(key, draft_text=text, last_error=None)

    def begin_ai_draft(self, key: ReviewKey) -> ReviewRecord:
        """
        Validate and claim the review for AI drafting.

        The caller must follow up with ``finish_ai_draft``.

        Raises:
            InvalidTransitionError: Outside IDLE/DRAFTING
            ReviewBusyError: Another operation is in flight for the review
            WorkflowError: No reply generator is configured
        """
        self._require(
            key,
            "generate an AI draft",
            WorkflowState.IDLE,
            WorkflowState.DRAFTING,
        )
        if self.reply_generator is None:
            raise WorkflowError("AI drafting is not configured (set GEMINI_API_KEY)")
        self._claim(key)
        return self.store.update(key, last_error=None, status_message="Generating AI draft...")

    async def finish_ai_draft(self, key: ReviewKey) -> ReviewRecord:
        """
        Run the reply generator for a claimed review.

        On success the record enters DRAFTING with the generated text. An
        ``AiError`` leaves the state as it was and is recorded in
        ``last_error``.
        """
        review = self.store.get(key).review
        logger.info("AI draft requested", review_id=review.id, platform=review.platform.value)
        try:
            reply = await self.reply_generator(review)
        except AiError as e:
            logger.warning("AI draft failed", review_id=review.id, error=str(e))
            return self.store.update(key, last_error=f"AI draft failed: {e}", status_message=None)
        except Exception:
            self.store.update(key, status_message=None)
            raise
        finally:
            self._in_flight.discard(key)

        return self.store.update(
            key,
            workflow_state=WorkflowState.DRAFTING,
            draft_text=reply,
            last_error=None,
            status_message=None,
        )

    async def request_ai_draft(self, key: ReviewKey) -> ReviewRecord:
        """Generate an AI draft for the review."""
        self.begin_ai_draft(key)
        return await self.finish_ai_draft(key)

    def submit_for_approval(self, key: ReviewKey) -> ReviewRecord:
        """Move a non-empty draft to PENDING_APPROVAL."""
        record = self._require(key, "submit for approval", WorkflowState.DRAFTING)
        if self.is_busy(key):
            raise ReviewBusyError(key)
        if not (record.draft_text or "").strip():
            raise EmptyDraftError()
        return self.store.update(key, workflow_state=WorkflowState.PENDING_APPROVAL, last_error=None)

    def begin_approval(self, key: ReviewKey) -> ReviewRecord:
        """
        Record the operator's approval: PENDING_APPROVAL -> SUBMITTING.

        The caller must follow up with ``finish_approval``.
        """
        self._require(key, "approve", WorkflowState.PENDING_APPROVAL)
        self._claim(key)
        return self.store.update(
            key,
            workflow_state=WorkflowState.SUBMITTING,
            last_error=None,
            status_message=None,
        )

    async def finish_approval(self, key: ReviewKey) -> ReviewRecord:
        """Submit an approved draft and settle the record's state."""
        record = self.store.get(key)
        if record.workflow_state != WorkflowState.SUBMITTING or not self.is_busy(key):
            raise InvalidTransitionError("submit", record.workflow_state)

        review = record.review
        try:
            await self.client.submit_response(review.id, record.draft_text or "")
        except TransientError as e:
            logger.warning("Submission failed, retry possible", review_id=review.id, error=str(e))
            return self.store.update(
                key,
                workflow_state=WorkflowState.PENDING_APPROVAL,
                last_error=str(e),
            )
        except RejectedError as e:
            logger.warning(
                "Submission rejected",
                review_id=review.id,
                status_code=e.status_code,
                error=str(e),
            )
            return self.store.update(key, workflow_state=WorkflowState.FAILED, last_error=str(e))
        except Exception:
            self.store.update(key, workflow_state=WorkflowState.PENDING_APPROVAL)
            raise
        finally:
            self._in_flight.discard(key)

        logger.info("Response submitted", review_id=review.id, platform=review.platform.value)
        return self.store.update(
            key,
            workflow_state=WorkflowState.SENT,
            last_error=None,
            status_message=SUBMITTED_MESSAGE,
        )

    async def approve(self, key: ReviewKey) -> ReviewRecord:
        """Approve and submit the pending draft."""
        self.begin_approval(key)
        return await self.finish_approval(key)

    def reject(self, key: ReviewKey) -> ReviewRecord:
        """Send a pending draft back to editing."""
        self._require(key, "reject", WorkflowState.PENDING_APPROVAL)
        return self.store.update(key, workflow_state=WorkflowState.DRAFTING)

    def cancel_draft(self, key: ReviewKey) -> ReviewRecord:
        """Discard the draft and return to IDLE."""
        self._require(
            key,
            "cancel the draft",
            WorkflowState.DRAFTING,
            WorkflowState.PENDING_APPROVAL,
        )
        if self.is_busy(key):
            raise ReviewBusyError(key)
        return self.store.update(
            key,
            workflow_state=WorkflowState.IDLE,
            draft_text=None,
            last_error=None,
        )
