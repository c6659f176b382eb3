"""Progress and diagnostics on stderr, rendered with Rich.

Stdout carries the one JSON document the caller parses, so nothing in this
module may write there. Callers only invoke these in verbose mode.
"""

from rich.console import Console
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Rebuild the stderr console for --color / --no-color."""
    global _console
    if no_color:
        _console = Console(stderr=True, no_color=True)
    elif color:
        _console = Console(stderr=True, force_terminal=True)
    else:
        _console = Console(stderr=True)


def _line(*parts: tuple[str, str]) -> None:
    text = Text()
    for chunk, style in parts:
        text.append(chunk, style=style)
    _console.print(text)


def thread_banner(thread_id: str, *, resumed: bool, message_count: int) -> None:
    verb = "Resuming" if resumed else "Opening"
    _console.print(
        Rule(f"{verb} thread {thread_id} · message #{message_count}", style="blue")
    )


def model_reply(turn: int, elapsed: float, finish_reason: str) -> None:
    style = "green" if finish_reason == "stop" else "yellow"
    _line(
        (f"  turn {turn}: ", "bold"),
        (f"model replied after {elapsed:.1f}s ({finish_reason})", style),
    )


def answered(turns: int) -> None:
    noun = "turn" if turns == 1 else "turns"
    _line((f"  ✓ answer received after {turns} {noun}", "bold green"))


def tool_started(name: str, args_json: str) -> None:
    _line(("  → ", "cyan"), (name, "bold cyan"))
    for arg_line in args_json.splitlines():
        _line((f"      {arg_line}", "dim"))


def tool_finished(name: str, elapsed: float, output: str) -> None:
    """Report a tool's outcome; outputs starting with 'error:' are shown as failures."""
    if output.startswith("error:"):
        _line((f"  ✗ {name} ", "bold red"), (output, "red"))
        return
    first = output.splitlines()[0] if output else "(empty)"
    _line((f"  ← {name} ", "cyan"), (f"{elapsed:.2f}s ", "dim"), (first, "dim"))


def note(msg: str) -> None:
    _line((f"  {msg}", "dim"))


def token_count(label: str, tokens: int) -> None:
    _line((f"  {label}: ", "dim"), (f"~{tokens:,} tokens", "dim bold"))


def warn(msg: str) -> None:
    _line(("  ! ", "bold yellow"), (msg, "yellow"))


def fail(msg: str) -> None:
    _line(("consult failed: ", "bold red"), (msg, "red"))
