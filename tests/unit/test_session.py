"""
Tests for the session controller.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from review_responder.clients import TransientError
from review_responder.models import ExistingResponse, Platform, WorkflowState
from review_responder.session import (
    ChangeKind,
    Command,
    CommandType,
    SessionBusyError,
    SessionController,
)
from review_responder.store import ReviewStore
from review_responder.workflow import ResponseWorkflow


def run_async(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


@pytest.fixture
def reviews(make_review):
    return [
        make_review("R1", rating=5, body="Love it", day=3),
        make_review(
            "R2",
            rating=2,
            body="Crashes",
            day=2,
            existing_response=ExistingResponse(body="We're on it"),
        ),
    ]


@pytest.fixture
def client(reviews):
    client = AsyncMock()
    client.max_response_length = 5970
    client.list_reviews.return_value = reviews
    return client


@pytest.fixture
def generator():
    return AsyncMock(return_value="Thank you so much!")


@pytest.fixture
def controller(client, generator):
    store = ReviewStore()
    workflow = ResponseWorkflow(store, client, reply_generator=generator)
    return SessionController(store, client, workflow)


class TestNavigation:
    """Tests for navigation commands."""

    def test_empty_store(self, controller):
        """Test navigation on an empty list changes nothing."""
        changes = controller.dispatch(Command(CommandType.NAVIGATE_DOWN))
        assert not changes.changed
        assert controller.store.selection is None

    def test_navigation(self, controller):
        """Test up/down report SELECTION only when it moves."""
        run_async(controller.start())

        changes = controller.dispatch(Command(CommandType.NAVIGATE_DOWN))
        assert ChangeKind.SELECTION in changes
        assert controller.store.selection == 1

        assert not controller.dispatch(Command(CommandType.NAVIGATE_DOWN)).changed
        assert ChangeKind.SELECTION in controller.dispatch(Command(CommandType.NAVIGATE_UP))

    def test_select_requires_index(self, controller):
        """Test SELECT without an index is reported."""
        changes = controller.dispatch(Command(CommandType.SELECT))
        assert changes.error

    def test_command_without_selection(self, controller):
        """Test review commands report a missing selection."""
        changes = controller.dispatch(Command(CommandType.START_DRAFT))
        assert changes.error == "No review selected"


class TestRefresh:
    """Tests for refresh."""

    def test_start_loads_reviews(self, controller):
        """Test the initial load."""
        changes = run_async(controller.start())

        assert ChangeKind.REVIEW_LIST in changes
        assert ChangeKind.SELECTION in changes
        assert len(controller.store) == 2
        assert controller.store.selection == 0

    def test_refresh_failure_sets_session_error(self, controller, client):
        """Test a failed fetch is captured, not raised."""
        client.list_reviews.side_effect = TransientError("HTTP 503")

        changes = run_async(controller.refresh())

        assert ChangeKind.ERROR in changes
        assert "503" in controller.last_error
        assert not controller.refreshing

    def test_refresh_success_clears_error(self, controller, client, reviews):
        """Test a later successful refresh clears the session error."""
        client.list_reviews.side_effect = [TransientError("down"), reviews]

        run_async(controller.refresh())
        changes = run_async(controller.refresh())

        assert controller.last_error is None
        assert ChangeKind.ERROR in changes

    def test_dispatched_refresh_notifies_listener(self, controller):
        """Test REFRESH runs in the background and reports through subscribe."""
        received = []
        controller.subscribe(received.append)

        async def scenario():
            changes = controller.dispatch(Command(CommandType.REFRESH))
            assert changes.pending
            assert controller.refreshing
            second = controller.dispatch(Command(CommandType.REFRESH))
            assert "already in progress" in second.error
            await controller.drain()

        run_async(scenario())

        assert len(received) == 1
        assert ChangeKind.REVIEW_LIST in received[0]

    def test_refresh_rejected_while_submitting(self, controller, client):
        """Test refresh is busy while an approval is in flight."""
        run_async(controller.start())

        async def scenario():
            release = asyncio.Event()

            async def slow_submit(review_id, text):
                await release.wait()

            client.submit_response.side_effect = slow_submit
            controller.dispatch(Command(CommandType.START_DRAFT))
            controller.dispatch(Command(CommandType.EDIT_DRAFT, text="Thanks"))
            controller.dispatch(Command(CommandType.SUBMIT))
            controller.dispatch(Command(CommandType.APPROVE))

            changes = controller.dispatch(Command(CommandType.REFRESH))
            with pytest.raises(SessionBusyError):
                await controller.refresh()

            release.set()
            await controller.drain()
            return changes

        changes = run_async(scenario())

        assert ChangeKind.ERROR in changes
        assert "in progress" in changes.error
        client.list_reviews.assert_awaited_once()

    def test_refresh_preserves_drafts(self, controller, client, reviews, make_review):
        """Test a refresh keeps reply state for surviving reviews."""
        run_async(controller.start())
        controller.dispatch(Command(CommandType.START_DRAFT))
        controller.dispatch(Command(CommandType.EDIT_DRAFT, text="Half written"))

        client.list_reviews.return_value = [make_review("R0", day=4)] + reviews
        run_async(controller.refresh())

        record = controller.store.get((Platform.IOS, "R1"))
        assert record.draft_text == "Half written"
        assert record.workflow_state == WorkflowState.DRAFTING
        assert controller.store.selected is record


class TestWorkflowCommands:
    """Tests for workflow commands through dispatch."""

    def test_errors_are_captured(self, controller):
        """Test an invalid transition is reported, not raised."""
        run_async(controller.start())

        changes = controller.dispatch(Command(CommandType.APPROVE))

        assert ChangeKind.ERROR in changes
        assert "Cannot approve" in changes.error
        assert controller.store.selected.last_error == changes.error
        assert not changes.pending

    def test_empty_draft_reported(self, controller):
        """Test EmptyDraftError surfaces in the ChangeSet."""
        run_async(controller.start())
        controller.dispatch(Command(CommandType.START_DRAFT))

        changes = controller.dispatch(Command(CommandType.SUBMIT))

        assert changes.error == "Draft is empty"
        assert controller.store.selected.workflow_state == WorkflowState.DRAFTING

    def test_edit_reports_draft_text(self, controller):
        """Test EDIT_DRAFT reports DRAFT_TEXT."""
        run_async(controller.start())
        changes = controller.dispatch(Command(CommandType.START_DRAFT))
        assert ChangeKind.WORKFLOW_STATE in changes

        changes = controller.dispatch(Command(CommandType.EDIT_DRAFT, text="Hi"))
        assert changes.changes == {ChangeKind.DRAFT_TEXT}

    def test_explicit_key(self, controller):
        """Test commands can target a review other than the selection."""
        run_async(controller.start())
        key = (Platform.IOS, "R2")

        controller.dispatch(Command(CommandType.START_DRAFT, key=key))

        assert controller.store.get(key).workflow_state == WorkflowState.DRAFTING
        assert controller.store.selected.workflow_state == WorkflowState.IDLE

    def test_unknown_key(self, controller):
        """Test a vanished review is reported."""
        run_async(controller.start())
        changes = controller.dispatch(Command(CommandType.START_DRAFT, key=(Platform.IOS, "gone")))
        assert "no longer available" in changes.error

    def test_transient_submission_failure(self, controller, client):
        """Test a failed submission returns to approval with the error."""
        run_async(controller.start())
        client.submit_response.side_effect = TransientError("timeout")
        received = []
        controller.subscribe(received.append)

        async def scenario():
            controller.dispatch(Command(CommandType.START_DRAFT))
            controller.dispatch(Command(CommandType.EDIT_DRAFT, text="Thanks"))
            controller.dispatch(Command(CommandType.SUBMIT))
            controller.dispatch(Command(CommandType.APPROVE))
            await controller.drain()

        run_async(scenario())

        record = controller.store.selected
        assert record.workflow_state == WorkflowState.PENDING_APPROVAL
        assert record.last_error == "timeout"
        assert ChangeKind.ERROR in received[-1]

    def test_unsubscribe(self, controller):
        """Test unsubscribed listeners are not called."""
        received = []
        unsubscribe = controller.subscribe(received.append)
        unsubscribe()

        async def scenario():
            controller.dispatch(Command(CommandType.REFRESH))
            await controller.drain()

        run_async(scenario())
        assert received == []


class TestReplyScenario:
    """End-to-end: AI draft, approval and submission for one review."""

    def test_ai_draft_submit_approve(self, controller, client, generator):
        """Test R1 is answered while R2 keeps its pre-existing response."""
        received = []
        controller.subscribe(received.append)
        r1 = (Platform.IOS, "R1")
        r2 = (Platform.IOS, "R2")

        async def scenario():
            await controller.start()
            assert controller.store.selected.key == r1

            changes = controller.dispatch(Command(CommandType.REQUEST_AI_DRAFT))
            assert changes.pending
            await controller.drain()
            assert ChangeKind.DRAFT_TEXT in received[-1]
            assert ChangeKind.WORKFLOW_STATE in received[-1]

            record = controller.store.get(r1)
            assert record.workflow_state == WorkflowState.DRAFTING
            assert record.draft_text == "Thank you so much!"

            changes = controller.dispatch(Command(CommandType.SUBMIT))
            assert ChangeKind.WORKFLOW_STATE in changes
            client.submit_response.assert_not_called()

            changes = controller.dispatch(Command(CommandType.APPROVE))
            assert changes.pending
            assert record.workflow_state == WorkflowState.SUBMITTING

            duplicate = controller.dispatch(Command(CommandType.APPROVE))
            assert duplicate.error
            assert not duplicate.pending

            await controller.drain()

        run_async(scenario())

        client.submit_response.assert_awaited_once_with("R1", "Thank you so much!")
        sent = controller.store.get(r1)
        assert sent.workflow_state == WorkflowState.SENT
        assert sent.status_message == "Response submitted"
        assert ChangeKind.WORKFLOW_STATE in received[-1]

        untouched = controller.store.get(r2)
        assert untouched.workflow_state == WorkflowState.IDLE
        assert untouched.review.existing_response.body == "We're on it"
