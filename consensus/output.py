"""Rich console rendering of orchestrator events and markdown transcript save."""

import logging
import re
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.text import Text

from consensus.models import Conversation, Round, Stream, Turn, Usage
from consensus.orchestrator import OrchestratorEvent
from consensus.targets import display_name

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

_STATUS_STYLES = {
    "complete": "green",
    "error": "red",
    "streaming": "yellow",
    "pending": "dim",
}


def _slug(text: str, max_len: int = 40) -> str:
    """Convert text to a filename-safe slug."""
    slug = re.sub(r"[^\w\s-]", "", text.lower())
    slug = re.sub(r"[\s_-]+", "-", slug).strip("-")
    return slug[:max_len]


def format_token_count(count: int | None) -> str:
    """1234 -> '1.2k', 2500000 -> '2.5M'."""
    if count is None:
        return "-"
    if count >= 1_000_000:
        return f"{count / 1_000_000:.1f}M"
    if count >= 1_000:
        return f"{count / 1_000:.1f}k"
    return str(count)


def format_duration(duration_ms: int | None) -> str:
    if duration_ms is None:
        return "-"
    if duration_ms < 1000:
        return f"{duration_ms}ms"
    seconds = duration_ms / 1000
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, rest = divmod(int(seconds), 60)
    return f"{minutes}m {rest}s"


def _usage_line(usage: Usage | None, duration_ms: int | None) -> str:
    parts = [format_duration(duration_ms)]
    if usage is not None:
        parts.append(f"{format_token_count(usage.total_tokens)} tokens")
        if usage.reasoning_tokens:
            parts.append(f"{format_token_count(usage.reasoning_tokens)} reasoning")
        if usage.cost is not None:
            parts.append(f"${usage.cost:.4f}")
    return " | ".join(parts)


def _response_preview(stream: Stream, words: int = 50) -> str:
    """Return first N words of a response."""
    all_words = stream.content.split()
    preview = " ".join(all_words[:words])
    if len(all_words) > words:
        preview += "..."
    return preview


def print_round_summary(rnd: Round) -> None:
    """Print a brief summary of a round's streams to the console."""
    console.print(Rule(f"[bold cyan]Round {rnd.round_number}: {rnd.label}[/bold cyan]"))
    for stream in rnd.streams:
        style = _STATUS_STYLES.get(stream.status, "dim")
        if stream.status == "complete":
            body = escape(_response_preview(stream))
            if stream.carried_forward:
                body = f"[italic]{stream.error}[/italic]\n\n{body}"
        else:
            body = f"[{style}]{stream.error or stream.status}[/{style}]"
        console.print(
            Panel(
                body,
                title=f"[bold]{display_name(stream.model)}[/bold] ({stream.model})",
                subtitle=_usage_line(stream.usage, stream.duration_ms),
                border_style=style,
            )
        )
    check = rnd.convergence_check
    if check is not None and check.converged is not None:
        verdict = "[green]converged[/green]" if check.converged else "[yellow]not converged[/yellow]"
        console.print(Text.from_markup(f"Convergence: {verdict} - {check.reason}"))


def print_synthesis(turn: Turn) -> None:
    """Print the turn's synthesis (or why there is none) using Rich markdown."""
    synthesis = turn.synthesis
    meta = turn.debate_metadata
    console.print(Rule("[bold green]Synthesis[/bold green]"))
    console.print(
        Text(
            f"Synthesized by: {synthesis.model} | "
            f"Mode: {turn.mode} | "
            f"Rounds: {meta.total_rounds} | "
            f"Ended: {meta.termination_reason or 'unknown'} | "
            f"{_usage_line(synthesis.usage, synthesis.duration_ms)}",
            style="dim",
        )
    )
    if turn.ensemble_result is not None and turn.ensemble_result.confidence is not None:
        console.print(Text(f"Ensemble confidence: {turn.ensemble_result.confidence}/100", style="dim"))
    if synthesis.status == "complete":
        console.print(Markdown(synthesis.content))
    elif synthesis.status == "error":
        console.print(f"[bold red]Synthesis failed:[/bold red] {synthesis.error}")


class ConsoleRenderer:
    """Orchestrator subscriber that prints progress lines and finished rounds."""

    def __init__(self, out: Console | None = None, show_rounds: bool = True) -> None:
        self._console = out or console
        self._show_rounds = show_rounds

    def __call__(self, event: OrchestratorEvent) -> None:
        data = event.data
        if event.type == "turn_started":
            mode = escape(f"[{data.get('mode')}]")
            self._console.print(f"\n[bold cyan]Consensus[/bold cyan] {mode} {len(data.get('models', []))} models")
        elif event.type == "web_search":
            result = data["result"]
            if result.status == "searching":
                self._console.print(f"[dim]Searching the web with {result.model}...[/dim]")
            elif result.status == "error":
                self._console.print(f"[yellow]Web search failed:[/yellow] {escape(str(result.error))}")
        elif event.type == "stream_complete":
            label = "carried forward" if data.get("carried_forward") else "done"
            self._console.print(f"  [green]OK[/green] round {event.round_index + 1} stream {event.stream_index + 1} {label}")
        elif event.type == "stream_error":
            self._console.print(
                f"  [red]FAIL[/red] round {event.round_index + 1} stream {event.stream_index + 1}: {escape(str(data.get('error')))}"
            )
        elif event.type == "round_status" and data.get("status") in ("complete", "error"):
            if self._show_rounds and data.get("round") is not None:
                print_round_summary(data["round"])
        elif event.type == "convergence" and data["check"].converged is None:
            self._console.print("[dim]Checking convergence...[/dim]")
        elif event.type == "ensemble" and data["result"].status == "analyzing":
            self._console.print("[dim]Judge is analyzing the answers...[/dim]")
        elif event.type == "synthesis_started":
            self._console.print(f"[dim]Synthesizing with {data.get('model')}...[/dim]")
        elif event.type == "cancel_requested":
            self._console.print("[yellow]Cancelling...[/yellow]")
        elif event.type == "title":
            self._console.print(f"[dim]Title: {data.get('title')}[/dim]")


def _stream_block(stream: Stream, heading: str = "####") -> list[str]:
    lines = [f"{heading} {display_name(stream.model)} ({stream.model})", ""]
    if stream.status == "complete":
        if stream.carried_forward:
            lines += [f"*{stream.error}*", ""]
        lines.append(stream.content)
    else:
        lines.append(f"*{stream.status}: {stream.error or 'no response'}*")
    lines += ["", f"*{_usage_line(stream.usage, stream.duration_ms)}*", ""]
    return lines


def turn_to_markdown(turn: Turn) -> list[str]:
    meta = turn.debate_metadata
    lines: list[str] = [
        f"## {turn.user_prompt[:80]}",
        "",
        f"**Mode:** {turn.mode}",
        f"**Rounds:** {meta.total_rounds}",
        f"**Converged:** {'yes' if meta.converged else 'no'}",
        f"**Ended:** {meta.termination_reason or 'unknown'}",
        "",
    ]
    if turn.web_search_result is not None and turn.web_search_result.content:
        lines += [f"### Web search ({turn.web_search_result.model})", "", turn.web_search_result.content, ""]

    for rnd in turn.rounds:
        lines += [f"### Round {rnd.round_number}: {rnd.label}", ""]
        for stream in rnd.streams:
            lines += _stream_block(stream)
        check = rnd.convergence_check
        if check is not None and check.converged is not None:
            lines += [f"**Convergence:** {'converged' if check.converged else 'not converged'} - {check.reason}", ""]

    vote = turn.ensemble_result
    if vote is not None:
        lines += [f"### Ensemble analysis (confidence {vote.confidence}/100)", ""]
        lines += [f"- Outlier {o.model}: {o.reason}" for o in vote.outliers]
        lines += [f"- Weight {model}: {weight:.2f}" for model, weight in vote.model_weights.items()]
        lines.append("")

    synthesis = turn.synthesis
    if synthesis.status == "complete":
        lines += [f"### Synthesis (by {synthesis.model})", "", synthesis.content, ""]
    elif synthesis.status == "error":
        lines += [f"### Synthesis (by {synthesis.model})", "", f"*Failed: {synthesis.error}*", ""]
    return lines


def save_to_file(conversation: Conversation, output_dir: Path, slug_override: str | None = None) -> Path:
    """Save the conversation transcript as a markdown file.

    Args:
        conversation: The conversation to write, all turns included.
        output_dir: Directory to save the file in.
        slug_override: If provided, use this as the filename stem instead of
            deriving one from the title or first prompt.

    Returns:
        Path to the saved file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    first_prompt = conversation.turns[0].user_prompt if conversation.turns else conversation.title
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    slug = slug_override if slug_override is not None else _slug(first_prompt) or "conversation"
    filepath = output_dir / f"{timestamp}_{slug}.md"

    lines: list[str] = [
        f"# {conversation.title}",
        "",
        f"**Date:** {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        f"**Conversation:** {conversation.id}",
        f"**Turns:** {len(conversation.turns)}",
    ]
    if conversation.description:
        lines.append(f"**Description:** {conversation.description}")
    lines += ["", "---", ""]
    for turn in conversation.turns:
        lines += turn_to_markdown(turn)
        lines += ["---", ""]

    filepath.write_text("\n".join(lines), encoding="utf-8")
    logger.info("Transcript saved to: %s", filepath)
    return filepath
