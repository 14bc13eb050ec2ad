"""ANSI-formatted terminal output using Rich.

Diagnostics go to stderr; final answers go to stdout.
"""

import logging

from rich.console import Console
from rich.logging import RichHandler
from rich.markdown import Markdown
from rich.markup import escape
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)
_out = Console()


def init(*, color: bool = False, no_color: bool = False, debug: bool = False) -> None:
    """Reconfigure the module-level consoles from CLI flags.

    Call once at startup, before any output. With `debug`, library log
    records are routed through a RichHandler on stderr.
    """
    global _console, _out
    kwargs: dict = {}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(stderr=True, **kwargs)
    _out = Console(**kwargs)

    if debug:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            datefmt="[%X]",
            handlers=[RichHandler(console=_console, rich_tracebacks=True)],
            force=True,
        )
        # litellm and httpx are very chatty at DEBUG
        for name in ("LiteLLM", "httpx", "httpcore"):
            logging.getLogger(name).setLevel(logging.INFO)


# -- Round structure ---------------------------------------------------------


def round_header(n: int, max_n: int, token_est: int) -> None:
    title = f"Round {n}/{max_n} (~{token_est} tokens)"
    _console.print(Rule(title, style="cyan"))


def llm_timing(elapsed: float, finish_reason: str) -> None:
    style = "green" if finish_reason == "stop" else "yellow"
    text = Text()
    text.append(f"  Model responded in {elapsed:.1f}s", style=style)
    text.append(f"  finish_reason={escape(str(finish_reason))}", style=style)
    _console.print(text)


def llm_spinner(label: str = "Thinking"):
    """Return a Rich Status context manager that spins on stderr."""
    return _console.status(f"  {label}", spinner="dots")


def completion(rounds: int, outcome: str) -> None:
    if outcome == "ok":
        _console.print(
            Text(f"  ✓ Agent finished: {rounds} rounds", style="bold green")
        )
    else:
        _console.print(
            Text(f"  Agent finished: {rounds} rounds, outcome={outcome}", style="bold red")
        )


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, args_json: str) -> None:
    header = Text()
    header.append("  ▶ ", style="bold magenta")
    header.append(name, style="bold magenta")
    _console.print(header)
    if args_json:
        for line in args_json.splitlines():
            _console.print(Text(f"    {line}", style="dim"))


def tool_result(name: str, elapsed: float, preview: str) -> None:
    header = Text()
    header.append(f"  ✓ {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if preview:
        _console.print(Text(f"    {preview}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  ✗ {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


# -- Assistant text ----------------------------------------------------------


def assistant_text(text: str) -> None:
    line = Text()
    line.append("  [assistant] ", style="blue")
    line.append(text)
    _console.print(line)


def answer(text: str) -> None:
    """Print a final answer to stdout, as Markdown when attached to a terminal."""
    if _out.is_terminal:
        _out.print(Markdown(text))
    else:
        _out.print(text, markup=False, highlight=False, soft_wrap=True)


# -- Diagnostics -------------------------------------------------------------


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def compressed(before: int, after: int) -> None:
    line = Text()
    line.append("  ↻ History compressed: ", style="yellow")
    line.append(f"~{before} -> ~{after} tokens", style="dim")
    _console.print(line)


def warning(msg: str) -> None:
    line = Text()
    line.append("  ⚠ Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def failure(msg: str) -> None:
    """A turn that ended without an answer; `msg` is shown as-is."""
    _console.print(Text(msg, style="bold red"))


def label(text: str) -> None:
    _console.print(Text(text, style="bold blue"))


def repl_banner() -> None:
    _console.print(
        Text(
            "Interactive mode. Type /help for commands, /exit or Ctrl-D to quit.",
            style="dim",
        )
    )
