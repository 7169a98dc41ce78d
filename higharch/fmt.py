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


# -- Working directory -------------------------------------------------------


def cwd_header(cwd: str, provider: str, listing: str) -> None:
    _console.print(Rule(f"{escape(cwd)} ({escape(provider)})", style="cyan"))
    if listing:
        _console.print(Text(listing.rstrip("\n"), style="dim"))


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, command: str) -> None:
    header = Text()
    header.append("  \u25b6 ", style="bold magenta")
    header.append(name, style="bold magenta")
    if command:
        header.append(f"  {command}", style="dim")
    _console.print(header)


def tool_result(name: str, preview: str) -> None:
    _console.print(Text(f"  \u2713 {name}", style="green"))
    if preview:
        for line in preview.splitlines()[:10]:
            _console.print(Text(f"    {line}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  \u2717 {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


# -- Approval ----------------------------------------------------------------


def approval_request(command: str, timeout: float) -> None:
    _console.print(Text("  \u26a0 Command requires approval:", style="bold yellow"))
    _console.print(Text(f"    {command}", style="bold"))
    _console.print(
        Text(
            f"    Answer y to run it; anything else cancels. Auto-denied in {timeout:g}s.",
            style="green",
        )
    )


def approval_timed_out(command: str) -> None:
    warning(f"no answer for {command!r}, approval denied")


# -- Diagnostics -------------------------------------------------------------


def model_info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  \u26a0 Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def repl_banner() -> None:
    _console.print(Text("Interactive mode. Type /exit or Ctrl-D to quit.", style="dim"))
