"""Tests for the fmt module (ANSI-formatted output helpers)."""

from io import StringIO

from rich.console import Console

from higharch import fmt


def _capture(func, *args, **kwargs):
    """Call a fmt function with a captured console and return plain-text output."""
    buf = StringIO()
    old = fmt._console
    fmt._console = Console(file=buf, no_color=True, width=120)
    try:
        func(*args, **kwargs)
    finally:
        fmt._console = old
    return buf.getvalue()


class TestCwdHeader:
    def test_path_provider_and_listing(self):
        out = _capture(fmt.cwd_header, "/home/me/Downloads", "echo", "a.txt\nb.txt\n")
        assert "/home/me/Downloads (echo)" in out
        assert "a.txt" in out
        assert "b.txt" in out

    def test_empty_listing(self):
        out = _capture(fmt.cwd_header, "/tmp", "openai", "")
        assert "/tmp (openai)" in out


class TestToolCall:
    def test_basic(self):
        out = _capture(fmt.tool_call, "exec", "mkdir photos")
        assert "exec" in out
        assert "mkdir photos" in out

    def test_empty_command(self):
        out = _capture(fmt.tool_call, "ls", "")
        assert "ls" in out


class TestToolResult:
    def test_preview_capped_at_ten_lines(self):
        preview = "\n".join(f"line{i}" for i in range(20))
        out = _capture(fmt.tool_result, "ls", preview)
        assert "line9" in out
        assert "line10" not in out

    def test_error(self):
        out = _capture(fmt.tool_error, "exec", "User denied approval")
        assert "exec" in out
        assert "User denied approval" in out


class TestApproval:
    def test_request(self):
        out = _capture(fmt.approval_request, "mv a b", 60.0)
        assert "requires approval" in out
        assert "mv a b" in out
        assert "60s" in out

    def test_timed_out(self):
        out = _capture(fmt.approval_timed_out, "mv a b")
        assert "'mv a b'" in out
        assert "denied" in out


class TestDiagnostics:
    def test_error(self):
        assert "Error: boom" in _capture(fmt.error, "boom")

    def test_warning(self):
        assert "Warning: careful" in _capture(fmt.warning, "careful")


class TestMarkupEscaping:
    def test_brackets_in_command(self):
        out = _capture(fmt.tool_call, "exec", "mv [draft].txt final.txt")
        assert "[draft].txt" in out

    def test_brackets_in_cwd(self):
        out = _capture(fmt.cwd_header, "/tmp/[x]", "echo", "")
        assert "/tmp/[x]" in out

    def test_brackets_in_error(self):
        assert "[bold]" in _capture(fmt.error, "[bold]")


class TestInit:
    def test_no_color(self):
        old = fmt._console
        try:
            fmt.init(no_color=True)
            assert fmt._console.no_color is True
        finally:
            fmt._console = old

    def test_color_forces_terminal(self):
        old = fmt._console
        try:
            fmt.init(color=True)
            assert fmt._console.is_terminal is True
        finally:
            fmt._console = old
