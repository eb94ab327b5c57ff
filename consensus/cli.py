"""Click CLI: config loading, client selection, turns, retries, and the gateway server."""

import asyncio
import base64
import logging
import mimetypes
import signal
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import NoReturn

import click
import uvicorn
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from config.config_loader import AppConfig, load_config
from consensus.client import ChatClient, GatewayClient, LocalGatewayClient
from consensus.gateway import Gateway
from consensus.healthcheck import ping_targets, run_health_checks
from consensus.models import Attachment, Conversation, Turn
from consensus.orchestrator import Orchestrator
from consensus.output import ConsoleRenderer, print_synthesis, save_to_file
from consensus.providers.base import ProviderError
from consensus.server import create_app
from consensus.store import ConversationStore
from consensus.titles import fallback_title

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

_IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg", ".gif", ".webp"}


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )
    # Upstream SDKs log every request at INFO
    for noisy in ("httpx", "httpcore", "openai", "anthropic", "google_genai"):
        logging.getLogger(noisy).setLevel(logging.DEBUG if verbose else logging.WARNING)


def _fail(message: str) -> NoReturn:
    console.print(f"[bold red]Error:[/bold red] {message}")
    sys.exit(1)


def _load_attachment(path: Path) -> Attachment:
    """Text files are inlined; images become data URLs."""
    mime_type = mimetypes.guess_type(path.name)[0]
    if path.suffix.lower() in _IMAGE_SUFFIXES:
        encoded = base64.b64encode(path.read_bytes()).decode("ascii")
        mime_type = mime_type or "image/png"
        return Attachment(path.name, f"data:{mime_type};base64,{encoded}", category="image", mime_type=mime_type)
    return Attachment(path.name, path.read_text(encoding="utf-8", errors="replace"), mime_type=mime_type)


def _build_client(config: AppConfig, gateway_url: str | None, api_key: str | None) -> ChatClient:
    """HTTP client when a gateway URL is set, otherwise an in-process gateway."""
    if gateway_url:
        logger.info("Using gateway at %s", gateway_url)
        return GatewayClient(gateway_url, client_api_key=api_key)
    gateway = Gateway(config)
    if not gateway.adapters and not api_key:
        _fail("No providers available. Check API keys in .env or pass --api-key.")
    return LocalGatewayClient(gateway, client_api_key=api_key)


def _check_providers(config: AppConfig) -> None:
    """Run health checks, print results, and ask whether to continue on failures."""
    targets = ping_targets(config)
    if not targets:
        return
    console.print("\n[bold]Checking providers...[/bold]")
    # Own gateway: SDK clients stay bound to the loop they were first used on
    results = asyncio.run(run_health_checks(LocalGatewayClient(Gateway(config)), targets))

    failed = []
    for name in sorted(results):
        ok, err = results[name]
        if ok:
            console.print(f"  [green]OK  [/green] {name}")
        else:
            short_err = err.splitlines()[0][:120] if err else "unknown error"
            console.print(f"  [red]FAIL[/red] {name}: {short_err}")
            failed.append(name)

    if not failed:
        console.print()
        return
    if len(failed) == len(results):
        _fail("No providers passed the health check.")
    console.print(f"\n[yellow]{len(failed)} provider(s) failed:[/yellow] {', '.join(failed)}")
    if not click.confirm("Continue anyway? Models on failed providers will error.", default=True):
        sys.exit(0)
    console.print()


async def _drive(
    orchestrator: Orchestrator,
    client: ChatClient,
    command: Callable[[], Awaitable[Turn]],
) -> Turn:
    """Run one orchestrator command with Ctrl-C wired to cancel()."""
    loop = asyncio.get_running_loop()
    handler_installed = False
    try:
        loop.add_signal_handler(signal.SIGINT, orchestrator.cancel)
        handler_installed = True
    except NotImplementedError:
        logger.debug("Signal handlers unsupported here; Ctrl-C will abort instead of cancel")

    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            TimeElapsedColumn(),
            console=console,
            transient=True,
        ) as progress:
            progress.add_task("Running...", total=None)
            turn = await command()
        await orchestrator.wait_background()
        return turn
    finally:
        if handler_installed:
            loop.remove_signal_handler(signal.SIGINT)
        await client.aclose()


def _finish(ctx: click.Context, conversation: Conversation, turn: Turn, save: bool) -> None:
    config: AppConfig = ctx.obj["config"]
    print_synthesis(turn)
    if save:
        path = save_to_file(conversation, config.defaults.output_dir)
        console.print(f"\n[dim]Saved to: {path}[/dim]")
    console.print(f"[dim]Conversation: {conversation.id}[/dim]")


@click.group()
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False), default=None,
              help="Path to settings.yaml (default: bundled config)")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, config_path: str | None) -> None:
    """Consensus -- multi-model debate and ensemble answers.

    \b
    Examples:
      consensus ask "Should we use REST or GraphQL?"
      consensus ask "Monorepo vs polyrepo?" --mode direct
      consensus ask "SQL or NoSQL?" --models openai:gpt-4o,anthropic:claude-3-5-sonnet-latest
      consensus retry <conversation-id> --round 2 --stream 1
      consensus serve --port 3001
    """
    # Reconfigure stdout/stderr to UTF-8 on Windows so model responses containing
    # Unicode chars don't crash the ANSI render path.
    if sys.platform == "win32":
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
        if hasattr(sys.stderr, "reconfigure"):
            sys.stderr.reconfigure(encoding="utf-8", errors="replace")

    load_dotenv()
    _setup_logging(verbose)

    try:
        config = load_config(Path(config_path)) if config_path else load_config()
    except (FileNotFoundError, KeyError, ValueError) as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        sys.exit(1)

    ctx.ensure_object(dict)
    ctx.obj["config"] = config


@cli.command()
@click.argument("prompt", required=False)
@click.option("--file", "prompt_file", type=click.Path(exists=True, dir_okay=False), help="Read the prompt from a file")
@click.option("--mode", type=click.Choice(["debate", "direct", "parallel"]), default=None,
              help="debate (default), direct (ensemble vote) or parallel (no synthesis)")
@click.option("--models", default=None, help="Comma-separated model ids")
@click.option("--rounds", default=None, type=click.IntRange(min=1), help="Max debate rounds (default: from config)")
@click.option("--synthesizer", default=None, help="Model that writes the final answer")
@click.option("--judge", default=None, help="Model used for convergence checks and ensemble votes")
@click.option("--web-search", is_flag=True, help="Run a web search before the models answer")
@click.option("--attach", "attach_paths", multiple=True, type=click.Path(exists=True, dir_okay=False),
              help="Attach a text or image file (repeatable)")
@click.option("--conversation", "conversation_id", default=None, help="Continue an existing conversation")
@click.option("--gateway", "gateway_url", default=None, help="Gateway URL (default: in-process gateway)")
@click.option("--api-key", envvar="CONSENSUS_CLIENT_API_KEY", default=None, help="Aggregator key sent with each request")
@click.option("--no-save", is_flag=True, help="Do not write a markdown transcript")
@click.option("--skip-health-check", is_flag=True, default=False, help="Skip the API connectivity check at startup")
@click.pass_context
def ask(
    ctx: click.Context,
    prompt: str | None,
    prompt_file: str | None,
    mode: str | None,
    models: str | None,
    rounds: int | None,
    synthesizer: str | None,
    judge: str | None,
    web_search: bool,
    attach_paths: tuple[str, ...],
    conversation_id: str | None,
    gateway_url: str | None,
    api_key: str | None,
    no_save: bool,
    skip_health_check: bool,
) -> None:
    """Ask the panel a question and stream the result."""
    config: AppConfig = ctx.obj["config"]

    if prompt_file:
        prompt = Path(prompt_file).read_text(encoding="utf-8").strip()
    if not prompt:
        _fail("Provide a PROMPT argument or --file.")

    store = ConversationStore(config.defaults.conversations_file)
    if conversation_id:
        conversation = store.get(conversation_id)
        if conversation is None:
            _fail(f"Conversation not found: {conversation_id}")
    else:
        conversation = Conversation(title=fallback_title(prompt).title)

    gateway_url = gateway_url or config.defaults.gateway_url
    client = _build_client(config, gateway_url, api_key)
    if not skip_health_check and not gateway_url:
        _check_providers(config)

    model_list = [m.strip() for m in models.split(",") if m.strip()] if models else None
    attachments = [_load_attachment(Path(p)) for p in attach_paths]
    orchestrator = Orchestrator(
        client, conversation, config, store=store, synthesizer=synthesizer, judge=judge, max_rounds=rounds
    )
    renderer = ConsoleRenderer(console)
    orchestrator.subscribe(renderer)

    turn = asyncio.run(
        _drive(
            orchestrator,
            client,
            lambda: orchestrator.start(
                prompt, mode=mode, models=model_list, attachments=attachments, web_search=web_search
            ),
        )
    )
    _finish(ctx, conversation, turn, save=not no_save)


@cli.command()
@click.argument("conversation_id")
@click.option("--round", "round_number", type=click.IntRange(min=1), default=None, help="Round to retry (1-based)")
@click.option("--stream", "stream_number", type=click.IntRange(min=1), default=None,
              help="Single stream to retry within --round (1-based)")
@click.option("--all", "rerun_all", is_flag=True, help="Re-run every stream of --round, not only failed ones")
@click.option("--synthesis", "synthesis_only", is_flag=True, help="Only re-run the synthesis")
@click.option("--gateway", "gateway_url", default=None, help="Gateway URL (default: in-process gateway)")
@click.option("--api-key", envvar="CONSENSUS_CLIENT_API_KEY", default=None, help="Aggregator key sent with each request")
@click.option("--no-save", is_flag=True, help="Do not write a markdown transcript")
@click.pass_context
def retry(
    ctx: click.Context,
    conversation_id: str,
    round_number: int | None,
    stream_number: int | None,
    rerun_all: bool,
    synthesis_only: bool,
    gateway_url: str | None,
    api_key: str | None,
    no_save: bool,
) -> None:
    """Retry the last turn of a conversation from a checkpoint.

    Without --round or --synthesis the whole turn runs again.
    """
    config: AppConfig = ctx.obj["config"]
    if stream_number is not None and round_number is None:
        _fail("--stream needs --round.")

    store = ConversationStore(config.defaults.conversations_file)
    conversation = store.get(conversation_id)
    if conversation is None or not conversation.turns:
        _fail(f"Conversation not found or empty: {conversation_id}")

    client = _build_client(config, gateway_url or config.defaults.gateway_url, api_key)
    orchestrator = Orchestrator(client, conversation, config, store=store)
    renderer = ConsoleRenderer(console)
    orchestrator.subscribe(renderer)

    if synthesis_only:
        command = orchestrator.retry_synthesis
    elif round_number is None:
        command = orchestrator.retry_turn
    elif stream_number is not None:
        command = lambda: orchestrator.retry_stream(round_number - 1, stream_number - 1)  # noqa: E731
    else:
        command = lambda: orchestrator.retry_round(round_number - 1, rerun_all=rerun_all)  # noqa: E731

    try:
        turn = asyncio.run(_drive(orchestrator, client, command))
    except (IndexError, ValueError) as exc:
        _fail(str(exc))
    _finish(ctx, conversation, turn, save=not no_save)


@cli.command()
@click.option("--host", default=None, help="Bind address (default: from config)")
@click.option("--port", default=None, type=int, help="Port (default: from config)")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None) -> None:
    """Serve the provider gateway over HTTP."""
    config: AppConfig = ctx.obj["config"]
    app = create_app(config)
    host = host or config.server.host
    port = port or config.server.port
    console.print(f"[bold cyan]Consensus gateway[/bold cyan] on http://{host}:{port}")
    uvicorn.run(app, host=host, port=port, log_config=None)


@cli.command()
@click.pass_context
def check(ctx: click.Context) -> None:
    """Ping every configured provider."""
    config: AppConfig = ctx.obj["config"]
    targets = ping_targets(config)
    if not targets:
        _fail("No providers with both an API key and a ping_model.")
    # Own gateway: SDK clients stay bound to the loop they were first used on
    results = asyncio.run(run_health_checks(LocalGatewayClient(Gateway(config)), targets))
    for name in sorted(results):
        ok, err = results[name]
        status = "[green]OK  [/green]" if ok else "[red]FAIL[/red]"
        console.print(f"  {status} {name}" + ("" if ok else f": {err.splitlines()[0][:120] if err else 'unknown error'}"))
    if not all(ok for ok, _ in results.values()):
        sys.exit(1)


@cli.command()
@click.option("--query", "-q", default="", help="Substring to match in id, name or description")
@click.option("--provider", default="", help="Vendor prefix, e.g. anthropic")
@click.option("--limit", default=50, type=int, help="Maximum rows")
@click.option("--api-key", envvar="CONSENSUS_CLIENT_API_KEY", default=None, help="Aggregator key for the catalog")
@click.pass_context
def models(ctx: click.Context, query: str, provider: str, limit: int, api_key: str | None) -> None:
    """Search the aggregator's model catalog."""
    config: AppConfig = ctx.obj["config"]
    gateway = Gateway(config)
    try:
        data, total = asyncio.run(gateway.search_models(query=query, provider=provider, limit=limit, client_api_key=api_key))
    except ProviderError as exc:
        _fail(exc.message)

    table = Table(title=f"{len(data)} of {total} models")
    table.add_column("id")
    table.add_column("name")
    table.add_column("context", justify="right")
    for model in data:
        table.add_row(str(model.get("id", "")), str(model.get("name", "")), str(model.get("context_length") or ""))
    console.print(table)


@cli.command("list")
@click.pass_context
def list_conversations(ctx: click.Context) -> None:
    """List saved conversations, newest first."""
    config: AppConfig = ctx.obj["config"]
    store = ConversationStore(config.defaults.conversations_file)
    conversations = store.list_conversations()
    if not conversations:
        click.echo("No conversations.")
        return
    table = Table()
    table.add_column("id")
    table.add_column("title")
    table.add_column("turns", justify="right")
    for conversation in conversations:
        table.add_row(conversation.id, conversation.title, str(len(conversation.turns)))
    console.print(table)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
