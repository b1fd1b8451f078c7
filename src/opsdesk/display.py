# display.py
# All terminal output for the opsdesk agent.
#
# This module owns presentation entirely. harness.py never formats strings for
# the terminal; it calls named functions here. Swap this file to change the UI.
#
# Colour language:
#   cyan    routing and loop events
#   blue    model calls and responses
#   yellow  nudges and ceilings
#   green   success / confirmed
#   red     failures and halts
#   magenta operation invocations

import json

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.text import Text
from rich.tree import Tree

from opsdesk.models import AgentResult, Failure, LoopState, Outcome, Principal

console = Console()

_STATE_STYLE = {
    LoopState.AWAITING_MODEL: "blue",
    LoopState.MODEL_REQUESTS_OPERATIONS: "cyan",
    LoopState.EXECUTING: "magenta",
    LoopState.MODEL_RETURNS_TEXT: "blue",
    LoopState.DONE: "green",
    LoopState.EXHAUSTED: "yellow",
    LoopState.FAILED: "red",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: str, max_len: int = 120) -> str:
    value = value.replace("\n", " ")
    if len(value) > max_len:
        value = value[:max_len] + "…"
    return escape(value)


def _outcome_mark(outcome: Outcome) -> str:
    if isinstance(outcome, Failure):
        return f"[bold red]✗ {escape(outcome.error)}[/bold red]"
    return "[bold green]✓[/bold green]"


# ---------------------------------------------------------------------------
# Request entry
# ---------------------------------------------------------------------------


def banner(model: str, principal: Principal, operation_count: int) -> None:
    console.print()
    console.print(
        Panel.fit(
            "[bold cyan]opsdesk agent[/bold cyan]\n"
            "[dim]Natural-language requests over the business operations registry[/dim]\n\n"
            f"[dim]Model     :[/dim] [white]{model}[/white]\n"
            f"[dim]Principal :[/dim] [white]{escape(principal.display_name)}[/white] [dim]({principal.role})[/dim]\n"
            f"[dim]Operations:[/dim] [white]{operation_count}[/white]",
            border_style="cyan",
            padding=(1, 4),
        )
    )


def request_received(request_id: str, prompt: str) -> None:
    console.print()
    console.print(Rule(f"[cyan]NEW REQUEST {request_id}[/cyan]", style="cyan"))
    console.print(
        Panel(
            f"[white]{escape(prompt)}[/white]",
            title=_label("USER", "cyan"),
            border_style="cyan",
            padding=(0, 2),
        )
    )


# ---------------------------------------------------------------------------
# Loop
# ---------------------------------------------------------------------------


def round_start(round_no: int, max_rounds: int, message_count: int) -> None:
    console.print()
    console.print(
        _label("LOOP", "blue"),
        f"[blue] Round {round_no}/{max_rounds}: calling model with {message_count} message(s)…[/blue]",
    )


def operations_requested(names: list[str]) -> None:
    console.print(
        _label("MODEL", "cyan"),
        f"[cyan] requested {len(names)} operation(s):[/cyan] [bold white]{escape(', '.join(names))}[/bold white]",
    )


def operation_outcome(name: str, parameters: dict | None, outcome: Outcome) -> None:
    args = json.dumps(parameters) if parameters is not None else "<undecodable>"
    console.print(f"  [magenta]Invoke[/magenta]   [bold white]{escape(name)}[/bold white]  [dim]{_mono(args, 80)}[/dim]")
    console.print(f"  [magenta]Outcome[/magenta]  {_outcome_mark(outcome)}  [white]{_mono(outcome.message, 140)}[/white]")


def nudge() -> None:
    console.print(
        _label("LOOP", "yellow"),
        "[yellow] Model returned no text and no operations; nudging.[/yellow]",
    )


# ---------------------------------------------------------------------------
# Exits
# ---------------------------------------------------------------------------


def final_result(result: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[white]{escape(result)}[/white]",
            title=_label("RESULT", "green"),
            border_style="green",
            padding=(1, 2),
        )
    )
    console.print()


def exhausted(max_rounds: int, message: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold yellow]Round ceiling of {max_rounds} reached.[/bold yellow]\n\n[white]{escape(message)}[/white]",
            title=_label("EXHAUSTED", "yellow"),
            border_style="yellow",
            padding=(0, 2),
        )
    )
    console.print()


def halt(reason: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold white]{escape(reason)}[/bold white]",
            title=_label("HALT", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )
    console.print()


# ---------------------------------------------------------------------------
# Trace
# ---------------------------------------------------------------------------


def trace_tree(result: AgentResult) -> None:
    """Render a finished run as a round -> state -> operation tree."""
    style = _STATE_STYLE.get(result.state, "white")
    graph = Tree(
        f"[bold]Request {result.request_id}[/bold]  [{style}]{result.state.value}[/{style}] "
        f"[dim]after {result.rounds} round(s)[/dim]"
    )
    rounds: dict[int, Tree] = {}
    for record in result.trace:
        node = rounds.get(record.round)
        if node is None:
            node = rounds[record.round] = graph.add(f"[bold cyan]Round {record.round}[/bold cyan]")
        state_style = _STATE_STYLE.get(record.state, "white")
        if record.operation:
            mark = _outcome_mark(record.outcome) if record.outcome is not None else ""
            node.add(f"[magenta]{escape(record.operation)}[/magenta] {mark} [dim]{_mono(record.detail, 80)}[/dim]")
        else:
            node.add(f"[{state_style}]{record.state.value}[/{state_style}] [dim]{_mono(record.detail, 80)}[/dim]")

    console.print()
    console.print(graph)

