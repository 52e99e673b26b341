"""
CLI interface using Click.
"""

import asyncio
import sys
from typing import Any, Callable, Dict, List, NoReturn, Optional, Tuple

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from review_responder import __version__
from review_responder.auth import CredentialFormatError
from review_responder.clients import ClientError, ReviewClient, build_client
from review_responder.clients.app_store import APP_STORE_MAX_RESPONSE_LENGTH
from review_responder.clients.google_play import GOOGLE_PLAY_MAX_RESPONSE_LENGTH
from review_responder.config import (
    ConfigurationError,
    EnvironmentSettings,
    PlatformConfig,
    ResponderConfig,
    load_config,
)
from review_responder.logging import get_logger, setup_logging
from review_responder.models import Platform, Review
from review_responder.replier import AiError, GeminiReplyGenerator
from review_responder.session import SessionController
from review_responder.store import ReviewStore
from review_responder.tui import ReviewTUI, format_stars
from review_responder.workflow import ResponseWorkflow

console = Console()
logger = get_logger(__name__)

SAMPLE_REVIEW = (
    "Great app overall, but it crashes every time I try to export my data. "
    "Please fix this!"
)


def credential_options(func: Callable) -> Callable:
    """Platform selection and credential options shared by commands."""
    options = [
        click.option("--ios/--android", "ios", default=True, help="Review platform (default: iOS)"),
        click.option("--app-id", help="App Store app ID or Google Play package name"),
        click.option("--key-id", help="App Store Connect API key ID"),
        click.option("--issuer-id", help="App Store Connect issuer ID"),
        click.option("--private-key", type=click.Path(), help="App Store Connect private key (.p8)"),
        click.option("--service-account", type=click.Path(), help="Google Play service account JSON"),
        click.option("--config", "-c", type=click.Path(), help="Path to config file"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _resolve(
    ios: bool,
    app_id: Optional[str],
    key_id: Optional[str],
    issuer_id: Optional[str],
    private_key: Optional[str],
    service_account: Optional[str],
    config: Optional[str],
) -> Tuple[PlatformConfig, ResponderConfig]:
    platform = Platform.IOS if ios else Platform.ANDROID
    overrides: Dict[str, Any] = {
        "app_id": app_id,
        "key_id": key_id,
        "issuer_id": issuer_id,
        "private_key_path": private_key,
        "service_account_path": service_account,
    }
    try:
        return PlatformConfig.resolve(platform, overrides), load_config(config)
    except ConfigurationError as e:
        _fail(str(e))


def _build(platform_config: PlatformConfig, responder_config: ResponderConfig) -> ReviewClient:
    try:
        return build_client(platform_config, responder_config.client)
    except CredentialFormatError as e:
        _fail(f"Invalid credentials: {e}")


def _fail(message: str) -> NoReturn:
    console.print(f"[red]{escape(message)}[/red]")
    sys.exit(1)


def _make_generator(
    responder_config: ResponderConfig,
    api_key: Optional[str],
    max_length: int,
) -> GeminiReplyGenerator:
    ai = responder_config.ai
    return GeminiReplyGenerator(
        api_key=api_key,
        model=ai.model,
        timeout_seconds=ai.timeout_seconds,
        max_retries=ai.max_retries,
        keywords=ai.keywords,
        support_email=ai.support_email,
        custom_prompt=ai.custom_prompt,
        supporting_info=ai.supporting_info,
        max_length=max_length,
    )


@click.group(invoke_without_command=True)
@click.option("--version", is_flag=True, help="Show version and exit")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.pass_context
def main(ctx: click.Context, version: bool, verbose: bool) -> None:
    """Review Responder - answer App Store and Google Play reviews from the terminal."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose

    if verbose:
        setup_logging(level="DEBUG")
    else:
        setup_logging(level="INFO")

    if version:
        console.print(f"review-responder v{__version__}")
        sys.exit(0)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


@main.command()
@credential_options
@click.option("--log-file", type=click.Path(), help="Log file (default from config)")
@click.pass_context
def run(
    ctx: click.Context,
    ios: bool,
    app_id: Optional[str],
    key_id: Optional[str],
    issuer_id: Optional[str],
    private_key: Optional[str],
    service_account: Optional[str],
    config: Optional[str],
    log_file: Optional[str],
) -> None:
    """Browse reviews and send approved responses."""
    platform_config, responder_config = _resolve(
        ios, app_id, key_id, issuer_id, private_key, service_account, config
    )

    # the screen belongs to the TUI, so logs go to a file only
    log_path = log_file or str(responder_config.ui.log_path)
    setup_logging(
        level="DEBUG" if ctx.obj.get("verbose") else "INFO",
        log_file=log_path,
        console=False,
    )
    logger.info(
        "Starting session",
        platform=platform_config.platform.value,
        app_id=platform_config.app_id,
    )

    client = _build(platform_config, responder_config)
    generator = _make_generator(
        responder_config,
        platform_config.gemini_api_key,
        client.max_response_length,
    )
    if not generator.available:
        console.print("[yellow]GEMINI_API_KEY not set; AI drafting is disabled[/yellow]")

    store = ReviewStore()
    workflow = ResponseWorkflow(
        store,
        client,
        reply_generator=generator.draft_for if generator.available else None,
    )
    controller = SessionController(store, client, workflow)
    tui = ReviewTUI(controller, platform_config.platform, platform_config.app_id, console=console)

    try:
        asyncio.run(_run_session(controller, client, tui))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        tui.print_summary()
        console.print(f"[dim]Log: {log_path}[/dim]")


async def _run_session(controller: SessionController, client: ReviewClient, tui: ReviewTUI) -> None:
    try:
        with console.status("Loading reviews..."):
            await controller.start()
        await tui.run()
    finally:
        await client.aclose()


@main.command()
@credential_options
def check(
    ios: bool,
    app_id: Optional[str],
    key_id: Optional[str],
    issuer_id: Optional[str],
    private_key: Optional[str],
    service_account: Optional[str],
    config: Optional[str],
) -> None:
    """Verify credentials by fetching reviews once."""
    platform_config, responder_config = _resolve(
        ios, app_id, key_id, issuer_id, private_key, service_account, config
    )
    client = _build(platform_config, responder_config)

    console.print(
        f"[bold]Checking {platform_config.platform.display_name}[/bold] "
        f"for [cyan]{platform_config.app_id}[/cyan]..."
    )

    try:
        reviews = asyncio.run(_fetch_once(client))
    except ClientError as e:
        _fail(f"✗ Fetch failed: {e}")

    console.print(f"[green]✓ Authenticated, {len(reviews)} reviews fetched[/green]")
    if not reviews:
        return

    table = Table(title="Latest Reviews")
    table.add_column("Date", style="dim")
    table.add_column("Rating")
    table.add_column("Author")
    table.add_column("Review", max_width=60)
    table.add_column("Replied")

    for review in reviews[:10]:
        text = review.text.replace("\n", " ")
        if len(text) > 60:
            text = text[:60] + "..."
        table.add_row(
            review.submitted_at.strftime("%Y-%m-%d"),
            format_stars(review.rating),
            escape(review.author) or "Anonymous",
            escape(text),
            "[green]yes[/green]" if review.existing_response else "[dim]no[/dim]",
        )

    console.print(table)

    replied = sum(1 for r in reviews if r.existing_response)
    console.print(f"\n{replied}/{len(reviews)} reviews already have a response")


async def _fetch_once(client: ReviewClient) -> List[Review]:
    try:
        return await client.list_reviews()
    finally:
        await client.aclose()


@main.command()
@click.option("--text", "-t", "review_text", default=SAMPLE_REVIEW, help="Review text to answer")
@click.option("--rating", "-r", type=click.IntRange(1, 5), default=3, help="Star rating (1-5)")
@click.option("--ios/--android", "ios", default=True, help="Platform whose length limit applies")
@click.option("--config", "-c", type=click.Path(), help="Path to config file")
def draft(review_text: str, rating: int, ios: bool, config: Optional[str]) -> None:
    """Generate one AI reply without touching any store."""
    try:
        responder_config = load_config(config)
    except ConfigurationError as e:
        _fail(str(e))

    max_length = APP_STORE_MAX_RESPONSE_LENGTH if ios else GOOGLE_PLAY_MAX_RESPONSE_LENGTH
    generator = _make_generator(
        responder_config,
        EnvironmentSettings().gemini_api_key,
        max_length,
    )
    if not generator.available:
        _fail("GEMINI_API_KEY not set")

    console.print(Panel(escape(review_text), title=f"Review {'★' * rating}", border_style="blue"))

    try:
        with console.status(f"Asking {responder_config.ai.model}..."):
            reply = asyncio.run(
                generator.generate_reply(
                    review_text,
                    rating,
                    keywords=responder_config.ai.keywords,
                    support_email=responder_config.ai.support_email,
                    custom_prompt=responder_config.ai.custom_prompt,
                    supporting_info=responder_config.ai.supporting_info,
                )
            )
    except AiError as e:
        _fail(f"✗ {e}")

    over = len(reply) > max_length
    console.print(Panel(escape(reply), title="Reply", border_style="red" if over else "green"))
    console.print(
        f"[{'red' if over else 'dim'}]{len(reply)}/{max_length} characters[/{'red' if over else 'dim'}]"
    )


if __name__ == "__main__":
    main()
