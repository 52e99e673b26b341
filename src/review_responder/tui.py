"""
Terminal User Interface using Rich.

Input is read a line at a time off the event loop so background operations
keep running while the operator types.
"""

import asyncio
from typing import Optional

from rich.console import Console
from rich.layout import Layout
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from review_responder.logging import get_logger
from review_responder.models import Platform, ResponseState, ReviewRecord, WorkflowState
from review_responder.session import ChangeSet, Command, CommandType, SessionController

logger = get_logger(__name__)

KEY_COMMANDS = {
    "k": CommandType.NAVIGATE_UP,
    "j": CommandType.NAVIGATE_DOWN,
    "r": CommandType.REFRESH,
    "a": CommandType.REQUEST_AI_DRAFT,
    "s": CommandType.SUBMIT,
    "y": CommandType.APPROVE,
    "n": CommandType.REJECT,
    "x": CommandType.CANCEL_DRAFT,
}


def format_stars(rating: int) -> str:
    rating = max(0, min(rating, 5))
    color = "green" if rating >= 4 else "yellow" if rating == 3 else "red"
    return f"[{color}]{'★' * rating}{'☆' * (5 - rating)}[/{color}]"


def format_workflow_state(state: WorkflowState) -> str:
    """Badge for the local reply state. IDLE has no badge."""
    formats = {
        WorkflowState.IDLE: "",
        WorkflowState.DRAFTING: "[cyan]✏️ DRAFT[/cyan]",
        WorkflowState.PENDING_APPROVAL: "[bold yellow]⏸️ APPROVE?[/bold yellow]",
        WorkflowState.SUBMITTING: "[yellow]⏳ SENDING[/yellow]",
        WorkflowState.SENT: "[bold green]✅ SENT[/bold green]",
        WorkflowState.FAILED: "[bold red]❌ FAILED[/bold red]",
    }
    return formats.get(state, state.value.upper())


def format_response_badge(record: ReviewRecord) -> str:
    """Badge for a reply already present on the platform before this session."""
    existing = record.review.existing_response
    if existing is None:
        return "[dim]-[/dim]"
    if existing.state == ResponseState.PENDING:
        return "[magenta]reply pending[/magenta]"
    return "[blue]replied[/blue]"


class ReviewTUI:
    """Terminal User Interface for reviewing and answering reviews."""

    def __init__(
        self,
        controller: SessionController,
        platform: Platform,
        app_id: str,
        console: Optional[Console] = None,
    ):
        """
        Initialize the TUI.

        Args:
            controller: Session controller driving the store and workflow
            platform: Platform shown in the header
            app_id: App identifier shown in the header
            console: Rich console (a new one when omitted)
        """
        self.controller = controller
        self.platform = platform
        self.app_id = app_id
        self.console = console or Console()

        self._running = False
        self._message: Optional[str] = None
        self._unsubscribe = None

    def make_header(self) -> Panel:
        """Create header panel."""
        store = self.controller.store

        if self.controller.refreshing:
            status = "[yellow]⏳ Refreshing...[/yellow]"
        elif self.controller.last_error:
            status = f"[red]{escape(self.controller.last_error)}[/red]"
        else:
            status = f"[dim]{len(store)} reviews[/dim]"

        title = Text.from_markup(
            f"[bold white]REVIEW RESPONDER[/bold white]"
            f"  [green]{self.platform.display_name}[/green]"
            f"  [dim]{self.app_id}[/dim]"
            f"  {status}"
        )
        return Panel(title, style="blue")

    def make_review_table(self) -> Table:
        """Create the review list."""
        store = self.controller.store

        table = Table(show_header=True, box=None, padding=(0, 1), expand=True)
        table.add_column("#", style="dim", width=4)
        table.add_column("Rating", width=7)
        table.add_column("Author", ratio=1, no_wrap=True)
        table.add_column("Date", width=10)
        table.add_column("Reply", width=13)
        table.add_column("State", width=12)

        for position, record in enumerate(store.records):
            review = record.review
            marker = "▶" if position == store.selection else " "
            table.add_row(
                f"{marker}{position + 1}",
                format_stars(review.rating),
                escape(review.author) or "Anonymous",
                review.submitted_at.strftime("%Y-%m-%d"),
                format_response_badge(record),
                format_workflow_state(record.workflow_state),
                style="reverse" if position == store.selection else None,
            )

        return table

    def make_detail_panel(self) -> Panel:
        """Create the detail panel for the selected review."""
        record = self.controller.store.selected
        if record is None:
            return Panel("[dim]No reviews[/dim]", title="Review", border_style="dim")

        review = record.review
        lines = [
            f"{format_stars(review.rating)}  [bold]{escape(review.title) or '(no title)'}[/bold]",
            f"[dim]{escape(review.author) or 'Anonymous'} · {review.locale or '-'} · "
            f"{review.submitted_at.strftime('%Y-%m-%d %H:%M')}[/dim]",
            "",
            escape(review.body) or "[dim](no review text)[/dim]",
        ]

        existing = review.existing_response
        if existing is not None:
            state = "pending publication" if existing.state == ResponseState.PENDING else "published"
            lines.append(f"\n[bold blue]Developer response ({state}):[/bold blue]")
            lines.append(f"[blue]{escape(existing.body)}[/blue]")

        if record.workflow_state == WorkflowState.SENT:
            lines.append("\n[bold green]Your response (sent this session):[/bold green]")
            lines.append(f"[green]{escape(record.draft_text or '')}[/green]")
        elif record.draft_text is not None and record.workflow_state != WorkflowState.IDLE:
            limit = self.controller.client.max_response_length
            count = len(record.draft_text)
            count_style = "red" if count > limit else "dim"
            lines.append(
                f"\n[bold]Draft[/bold] {format_workflow_state(record.workflow_state)} "
                f"[{count_style}]{count}/{limit}[/{count_style}]"
            )
            lines.append(escape(record.draft_text) or "[dim](empty)[/dim]")

        if record.status_message:
            lines.append(f"\n[yellow]{escape(record.status_message)}[/yellow]")
        if record.last_error:
            lines.append(f"\n[bold red]Error:[/bold red] [red]{escape(record.last_error)}[/red]")

        return Panel(
            Text.from_markup("\n".join(lines)),
            title=f"Review {review.id}",
            border_style="green",
        )

    def make_controls_panel(self) -> Panel:
        """Create keyboard controls panel for the selected review's state."""
        record = self.controller.store.selected
        state = record.workflow_state if record else None

        if state == WorkflowState.PENDING_APPROVAL:
            controls = [
                "[bold green][Y]es, send[/bold green]",
                "[bold][N]o, keep editing[/bold]",
                "[X] cancel",
            ]
        elif state == WorkflowState.DRAFTING:
            controls = ["[E]dit text", "[A]I draft", "[S]ubmit for approval", "[X] cancel"]
        elif state == WorkflowState.SUBMITTING:
            controls = ["[yellow]Sending...[/yellow]"]
        else:
            controls = ["[J]/[K] move", "[E]dit reply", "[A]I draft", "[R]efresh"]
        controls.append("[bold red][Q]uit[/bold red]")

        if self._message:
            controls.append(f"[red]{escape(self._message)}[/red]")

        return Panel("  ".join(controls), title="Controls", border_style="dim")

    def make_layout(self) -> Layout:
        """Create the full TUI layout."""
        layout = Layout()

        layout.split_column(
            Layout(name="header", size=3),
            Layout(name="body"),
            Layout(name="controls", size=3),
        )
        layout["body"].split_row(
            Layout(name="list", ratio=1),
            Layout(name="detail", ratio=1),
        )

        layout["header"].update(self.make_header())
        layout["list"].update(Panel(self.make_review_table(), title="Reviews", border_style="blue"))
        layout["detail"].update(self.make_detail_panel())
        layout["controls"].update(self.make_controls_panel())

        return layout

    def redraw(self) -> None:
        self.console.clear()
        self.console.print(self.make_layout(), height=max(self.console.size.height - 2, 10))

    def _on_change(self, changes: ChangeSet) -> None:
        if changes.error:
            self._message = changes.error
        if self._running:
            self.redraw()
            self.console.print("> ", end="")

    def _apply(self, command: Command) -> None:
        changes = self.controller.dispatch(command)
        self._message = changes.error

    async def _read_line(self, prompt: str = "> ") -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.console.input, prompt)

    async def handle_input(self, line: str) -> None:
        """Map one line of input to commands."""
        key = line.strip()
        if not key:
            return

        if key.isdigit():
            self._apply(Command(CommandType.SELECT, index=int(key) - 1))
            return

        key = key.lower()
        if key == "q":
            self._running = False
        elif key == "e":
            self._apply(Command(CommandType.START_DRAFT))
            record = self.controller.store.selected
            if record is None or record.workflow_state != WorkflowState.DRAFTING:
                return
            text = await self._read_line("Reply text (blank keeps current): ")
            if text.strip():
                self._apply(Command(CommandType.EDIT_DRAFT, key=record.key, text=text.strip()))
        elif key in KEY_COMMANDS:
            self._apply(Command(KEY_COMMANDS[key]))
        else:
            self._message = f"Unknown key: {key}"

    async def run(self) -> None:
        """Run the input loop until the operator quits."""
        self._running = True
        self._unsubscribe = self.controller.subscribe(self._on_change)
        logger.info("TUI started")

        try:
            while self._running:
                self.redraw()
                try:
                    line = await self._read_line()
                except EOFError:
                    break
                await self.handle_input(line)

            if self.controller.workflow.busy:
                self.console.print("[yellow]Waiting for in-flight operations...[/yellow]")
            await self.controller.drain()

        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("TUI interrupted")

        finally:
            self._running = False
            if self._unsubscribe:
                self._unsubscribe()
            logger.info("TUI stopped")

    def print_summary(self) -> None:
        """Print a final summary after the TUI closes."""
        records = self.controller.store.records
        sent = sum(1 for r in records if r.workflow_state == WorkflowState.SENT)
        failed = sum(1 for r in records if r.workflow_state == WorkflowState.FAILED)
        pending = sum(
            1 for r in records
            if r.workflow_state in (WorkflowState.DRAFTING, WorkflowState.PENDING_APPROVAL)
        )

        self.console.print()
        self.console.print("[bold]Session Summary[/bold]")
        self.console.print(f"  Reviews loaded: {len(records)}")
        self.console.print(f"  Responses sent: [green]{sent}[/green]")
        if failed:
            self.console.print(f"  Rejected: [red]{failed}[/red]")
        if pending:
            self.console.print(f"  Unsent drafts discarded: [yellow]{pending}[/yellow]")
        self.console.print()
