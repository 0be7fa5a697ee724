"""ANSI-formatted stderr output using Rich."""

from rich.console import Console
from rich.markup import escape
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output.
    """
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


# -- Iteration structure -----------------------------------------------------


def iteration_header(n: int, max_n: int, turns: int) -> None:
    title = f"Iteration {n}/{max_n} ({turns} turns in history)"
    _console.print(Rule(title, style="cyan"))


def llm_timing(elapsed: float, finish_reason: str) -> None:
    style = "green" if finish_reason == "stop" else "yellow"
    text = Text()
    text.append(f"  Model responded in {elapsed:.1f}s", style=style)
    text.append(f"  finish_reason={escape(str(finish_reason))}", style=style)
    _console.print(text)


def llm_spinner(label: str = "Waiting for model"):
    """Return a Rich Status context manager that spins on stderr."""
    return _console.status(f"  {label}", spinner="dots")


def completion(iterations: int, outcome: str) -> None:
    if outcome == "ok":
        _console.print(
            Text(f"  ✓ Agent finished: {iterations} iterations", style="bold green")
        )
    else:
        _console.print(
            Text(
                f"  Agent finished: {iterations} iterations, exit={outcome}",
                style="bold red",
            )
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


def confirm_request(name: str, args_json: str) -> None:
    line = Text()
    line.append("  ⚠ Action requires confirmation: ", style="bold yellow")
    line.append(name, style="bold")
    _console.print(line)
    for arg_line in args_json.splitlines():
        _console.print(Text(f"    {arg_line}", style="yellow"))


def tool_denied(name: str) -> None:
    _console.print(Text(f"  ✗ {name} cancelled by user", style="yellow"))


def limit_reached(iterations: int) -> None:
    line = Text()
    line.append("  ⚠ Iteration limit: ", style="bold yellow")
    line.append(f"the agent has run {iterations} iterations.", style="yellow")
    _console.print(line)


# -- Assistant text ----------------------------------------------------------


def assistant_text(text: str) -> None:
    line = Text()
    line.append("  [assistant] ", style="blue")
    line.append(text)
    _console.print(line)


# -- Diagnostics -------------------------------------------------------------


def model_info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


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


def repl_banner() -> None:
    _console.print(
        Text(
            "Agent ready. Ask me to explore files. Type /help for commands, "
            "/exit or Ctrl-D to quit.",
            style="dim",
        )
    )
