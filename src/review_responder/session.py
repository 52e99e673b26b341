"""
Interactive session controller.

The terminal front end turns key presses into ``Command`` values and hands them
to ``SessionController.dispatch``. Every dispatch returns a ``ChangeSet`` naming
what changed, so the front end redraws from the store instead of tracking state
of its own. Network operations run as background tasks; their outcome reaches
subscribers as a further ``ChangeSet``.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Set

from review_responder.clients import ClientError, ReviewClient
from review_responder.logging import get_logger
from review_responder.models import ReviewKey, ReviewRecord
from review_responder.store import ReviewStore, UnknownReviewError
from review_responder.workflow import ResponseWorkflow, WorkflowError

logger = get_logger(__name__)


class CommandType(str, Enum):
    """Operator commands."""

    NAVIGATE_UP = "navigate_up"
    NAVIGATE_DOWN = "navigate_down"
    SELECT = "select"
    REFRESH = "refresh"
    START_DRAFT = "start_draft"
    EDIT_DRAFT = "edit_draft"
    REQUEST_AI_DRAFT = "request_ai_draft"
    SUBMIT = "submit"
    APPROVE = "approve"
    REJECT = "reject"
    CANCEL_DRAFT = "cancel_draft"


@dataclass(frozen=True)
class Command:
    """
    One operator command.

    ``key`` targets a specific review; the selected review is used when it is
    omitted. ``index`` is the target of SELECT and ``text`` the new draft for
    EDIT_DRAFT.
    """

    type: CommandType
    key: Optional[ReviewKey] = None
    index: Optional[int] = None
    text: Optional[str] = None


class ChangeKind(str, Enum):
    """Parts of the view a command can change."""

    SELECTION = "selection"
    REVIEW_LIST = "review_list"
    DRAFT_TEXT = "draft_text"
    WORKFLOW_STATE = "workflow_state"
    ERROR = "error"


@dataclass
class ChangeSet:
    """Outcome of a command, or of a background operation finishing."""

    changes: Set[ChangeKind] = field(default_factory=set)
    pending: bool = False
    error: Optional[str] = None
    key: Optional[ReviewKey] = None

    def __contains__(self, kind: object) -> bool:
        return kind in self.changes

    @property
    def changed(self) -> bool:
        return bool(self.changes) or self.pending

    @classmethod
    def failure(cls, message: str, key: Optional[ReviewKey] = None) -> "ChangeSet":
        return cls(changes={ChangeKind.ERROR}, error=message, key=key)


class SessionBusyError(Exception):
    """Raised when a refresh overlaps another network operation."""


class NoSelectionError(Exception):
    """Raised when a review command has no target."""


Listener = Callable[[ChangeSet], None]


def _snapshot(record: ReviewRecord) -> tuple:
    return (record.draft_text, record.workflow_state, record.last_error, record.status_message)


def _record_changes(before: tuple, record: ReviewRecord) -> Set[ChangeKind]:
    draft, state, error, status = before
    changes: Set[ChangeKind] = set()
    if record.draft_text != draft:
        changes.add(ChangeKind.DRAFT_TEXT)
    if record.workflow_state != state or record.status_message != status:
        changes.add(ChangeKind.WORKFLOW_STATE)
    if record.last_error != error:
        changes.add(ChangeKind.ERROR)
    return changes


class SessionController:
    """
    Single entry point for the interactive loop.

    Owns the background tasks started by REFRESH, REQUEST_AI_DRAFT and
    APPROVE. A refresh is rejected while any review operation is in flight,
    and review operations are rejected while a refresh runs.
    """

    def __init__(self, store: ReviewStore, client: ReviewClient, workflow: ResponseWorkflow):
        self.store = store
        self.client = client
        self.workflow = workflow
        self.last_error: Optional[str] = None
        self._listeners: List[Listener] = []
        self._tasks: Set[asyncio.Task] = set()
        self._refreshing = False

    @property
    def refreshing(self) -> bool:
        return self._refreshing

    @property
    def busy(self) -> bool:
        return self._refreshing or self.workflow.busy

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener for background outcomes. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, changes: ChangeSet) -> None:
        for listener in list(self._listeners):
            try:
                listener(changes)
            except Exception as e:
                logger.error("Session listener error", error=str(e))

    async def start(self) -> ChangeSet:
        """Initial load."""
        return await self.refresh()

    async def refresh(self) -> ChangeSet:
        """
        Fetch reviews and merge them into the store.

        Raises:
            SessionBusyError: If a refresh or review operation is in flight
        """
        self._begin_refresh()
        return await self._run_refresh()

    async def drain(self) -> None:
        """Wait for every background operation to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def dispatch(self, command: Command) -> ChangeSet:
        """Apply one command. Never raises for workflow or busy errors."""
        handler = self._handlers.get(command.type)
        if handler is None:
            return ChangeSet.failure(f"Unknown command: {command.type}")

        try:
            return handler(self, command)
        except SessionBusyError as e:
            return ChangeSet.failure(str(e), key=command.key)
        except NoSelectionError:
            return ChangeSet.failure("No review selected")
        except UnknownReviewError:
            return ChangeSet.failure("Review is no longer available", key=command.key)

    # Navigation

    def _navigate(self, delta: int) -> ChangeSet:
        if self.store.move_selection(delta):
            return ChangeSet(changes={ChangeKind.SELECTION})
        return ChangeSet()

    def _on_up(self, command: Command) -> ChangeSet:
        return self._navigate(-1)

    def _on_down(self, command: Command) -> ChangeSet:
        return self._navigate(1)

    def _on_select(self, command: Command) -> ChangeSet:
        if command.index is None:
            return ChangeSet.failure("SELECT needs an index")
        if self.store.select(command.index):
            return ChangeSet(changes={ChangeKind.SELECTION})
        return ChangeSet()

    # Refresh

    def _begin_refresh(self) -> None:
        if self._refreshing:
            raise SessionBusyError("A refresh is already in progress")
        if self.workflow.busy:
            raise SessionBusyError("Cannot refresh while a review operation is in progress")
        self._refreshing = True

    async def _run_refresh(self) -> ChangeSet:
        previous_selection = self.store.selection
        try:
            reviews = await self.client.list_reviews()
        except ClientError as e:
            logger.warning("Review refresh failed", error=str(e), status_code=e.status_code)
            self.last_error = f"Refresh failed: {e}"
            return ChangeSet.failure(self.last_error)
        finally:
            self._refreshing = False

        changes: Set[ChangeKind] = set()
        if self.store.replace_all(reviews):
            changes.add(ChangeKind.REVIEW_LIST)
        if self.store.selection != previous_selection:
            changes.add(ChangeKind.SELECTION)
        if self.last_error is not None:
            self.last_error = None
            changes.add(ChangeKind.ERROR)

        logger.info("Reviews loaded", count=len(self.store))
        return ChangeSet(changes=changes)

    def _on_refresh(self, command: Command) -> ChangeSet:
        self._begin_refresh()
        self._spawn(self._run_refresh(), key=None)
        return ChangeSet(pending=True)

    # Workflow

    def _target(self, command: Command) -> ReviewKey:
        if command.key is not None:
            return command.key
        selected = self.store.selected
        if selected is None:
            raise NoSelectionError()
        return selected.key

    def _apply(self, key: ReviewKey, operation: Callable[[], object]) -> ChangeSet:
        record = self.store.get(key)
        before = _snapshot(record)
        try:
            operation()
        except WorkflowError as e:
            self.store.update(key, last_error=str(e))
            changes = _record_changes(before, record)
            changes.add(ChangeKind.ERROR)
            return ChangeSet(changes=changes, error=str(e), key=key)
        return ChangeSet(changes=_record_changes(before, record), key=key)

    def _on_start_draft(self, command: Command) -> ChangeSet:
        key = self._target(command)
        return self._apply(key, lambda: self.workflow.start_draft(key))

    def _on_edit_draft(self, command: Command) -> ChangeSet:
        key = self._target(command)
        return self._apply(key, lambda: self.workflow.edit_draft(key, command.text or ""))

    def _on_submit(self, command: Command) -> ChangeSet:
        key = self._target(command)
        return self._apply(key, lambda: self.workflow.submit_for_approval(key))

    def _on_reject(self, command: Command) -> ChangeSet:
        key = self._target(command)
        return self._apply(key, lambda: self.workflow.reject(key))

    def _on_cancel(self, command: Command) -> ChangeSet:
        key = self._target(command)
        return self._apply(key, lambda: self.workflow.cancel_draft(key))

    def _start_network_operation(
        self,
        key: ReviewKey,
        begin: Callable[[ReviewKey], object],
        finish: Callable[[ReviewKey], Awaitable[object]],
    ) -> ChangeSet:
        if self._refreshing:
            raise SessionBusyError("Wait for the refresh to finish")

        changes = self._apply(key, lambda: begin(key))
        if changes.error is not None:
            return changes

        record = self.store.get(key)
        before = _snapshot(record)

        async def run() -> ChangeSet:
            await finish(key)
            return ChangeSet(changes=_record_changes(before, record), key=key)

        self._spawn(run(), key=key)
        changes.pending = True
        return changes

    def _on_ai_draft(self, command: Command) -> ChangeSet:
        key = self._target(command)
        return self._start_network_operation(
            key, self.workflow.begin_ai_draft, self.workflow.finish_ai_draft
        )

    def _on_approve(self, command: Command) -> ChangeSet:
        key = self._target(command)
        return self._start_network_operation(
            key, self.workflow.begin_approval, self.workflow.finish_approval
        )

    # Background tasks

    def _spawn(self, operation: Awaitable[ChangeSet], key: Optional[ReviewKey]) -> None:
        task = asyncio.ensure_future(self._settle(operation, key))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _settle(self, operation: Awaitable[ChangeSet], key: Optional[ReviewKey]) -> None:
        try:
            changes = await operation
        except Exception as e:
            logger.error("Background operation failed", error=str(e), error_type=type(e).__name__)
            message = f"Unexpected error: {e}"
            if key is not None and key in self.store:
                self.store.update(key, last_error=message)
            else:
                self.last_error = message
            changes = ChangeSet(
                changes={ChangeKind.ERROR, ChangeKind.WORKFLOW_STATE},
                error=message,
                key=key,
            )
        self._publish(changes)

    _handlers = {
        CommandType.NAVIGATE_UP: _on_up,
        CommandType.NAVIGATE_DOWN: _on_down,
        CommandType.SELECT: _on_select,
        CommandType.REFRESH: _on_refresh,
        CommandType.START_DRAFT: _on_start_draft,
        CommandType.EDIT_DRAFT: _on_edit_draft,
        CommandType.REQUEST_AI_DRAFT: _on_ai_draft,
        CommandType.SUBMIT: _on_submit,
        CommandType.APPROVE: _on_approve,
        CommandType.REJECT: _on_reject,
        CommandType.CANCEL_DRAFT: _on_cancel,
    }
