"""Shell command execution with timeout enforcement."""

import asyncio
import logging
import os
import signal
import subprocess
import sys

from .tools import ToolExecutionResult

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 30.0
TERMINATE_GRACE = 5.0  # seconds between SIGTERM and SIGKILL
MAX_OUTPUT = 1 * 1024 * 1024  # 1MB per stream; the rest is drained and dropped
COMPLETED_OUTPUT = "Command completed successfully"

_KILL_WAIT_TIMEOUT = 5  # seconds to wait for process to die after SIGKILL
_READER_DRAIN_TIMEOUT = 2


class _OutputBuffer:
    def __init__(self, limit: int = MAX_OUTPUT):
        self.limit = limit
        self.chunks: list[bytes] = []
        self.total = 0
        self.truncated = False

    def append(self, chunk: bytes) -> None:
        if self.truncated:
            return  # keep draining to prevent pipe backpressure
        remaining = self.limit - self.total
        self.chunks.append(chunk[:remaining])
        self.total += len(self.chunks[-1])
        if self.total >= self.limit:
            self.truncated = True

    def text(self) -> str:
        out = b"".join(self.chunks).decode("utf-8", errors="replace")
        if self.truncated:
            out += "\n[output truncated at 1MB]"
        return out


async def _drain(stream, buf: _OutputBuffer) -> None:
    try:
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                break
            buf.append(chunk)
    except (OSError, ValueError):
        pass  # pipe closed/broken after kill


def _signal_group(proc, sig) -> None:
    """Send sig to the process group of proc (POSIX) or to proc itself."""
    if sys.platform != "win32":
        try:
            os.killpg(proc.pid, sig)
            return
        except OSError:
            pass  # group already gone
    try:
        proc.send_signal(sig)
    except (OSError, ProcessLookupError):
        pass  # already exited


def _force_kill(proc) -> None:
    if sys.platform != "win32":
        _signal_group(proc, signal.SIGKILL)
        return
    # taskkill /T kills the entire process tree rooted at the PID
    try:
        subprocess.run(
            ["taskkill", "/T", "/F", "/PID", str(proc.pid)],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            timeout=5,
        )
    except (OSError, subprocess.TimeoutExpired):
        pass  # best-effort
    try:
        proc.kill()
    except (OSError, ProcessLookupError):
        pass


class CommandExecutor:
    """Runs one shell command per call and reports a ToolExecutionResult.

    The command runs through the platform shell with stdin closed, in the
    current working directory (or ``cwd`` when given). On POSIX each
    command gets its own session so a timeout can take down the whole
    process tree.
    """

    def __init__(
        self,
        *,
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
        grace: float = TERMINATE_GRACE,
        shell: str | None = None,
        cwd: str | None = None,
    ):
        self.timeout = timeout
        self.grace = grace
        self.shell = shell
        self.cwd = cwd

    def shell_argv(self, command: str) -> list[str]:
        if sys.platform == "win32":
            return [self.shell or "cmd.exe", "/c", command]
        return [self.shell or "/bin/sh", "-c", command]

    async def run(self, command: str, timeout: float | None = None) -> ToolExecutionResult:
        if timeout is None:
            timeout = self.timeout

        popen_kwargs: dict = dict(
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self.cwd or os.getcwd(),
        )
        if sys.platform != "win32":
            popen_kwargs["start_new_session"] = True

        try:
            proc = await asyncio.create_subprocess_exec(
                *self.shell_argv(command), **popen_kwargs
            )
        except OSError as e:
            return ToolExecutionResult(
                success=False, output="", error=f"process error: {e}"
            )

        logger.debug("spawned pid %d for %r", proc.pid, command)
        stdout = _OutputBuffer()
        stderr = _OutputBuffer()
        readers = [
            asyncio.ensure_future(_drain(proc.stdout, stdout)),
            asyncio.ensure_future(_drain(proc.stderr, stderr)),
        ]

        timed_out = False
        try:
            await asyncio.wait_for(proc.wait(), timeout)
        except asyncio.TimeoutError:
            timed_out = True
            await self._terminate(proc)
        except asyncio.CancelledError:
            _force_kill(proc)
            for task in readers:
                task.cancel()
            raise

        _, unfinished = await asyncio.wait(readers, timeout=_READER_DRAIN_TIMEOUT)
        for task in unfinished:
            task.cancel()

        if timed_out:
            return ToolExecutionResult(
                success=False,
                output=stdout.text(),
                error=f"timed out after {timeout:g}s",
            )
        if proc.returncode == 0:
            return ToolExecutionResult(
                success=True, output=stdout.text() or COMPLETED_OUTPUT
            )
        return ToolExecutionResult(
            success=False,
            output=stdout.text(),
            error=f"exit code {proc.returncode}: {stderr.text()}",
        )

    async def _terminate(self, proc) -> None:
        """SIGTERM the process group, then SIGKILL whatever is left after the grace period."""
        if sys.platform != "win32":
            _signal_group(proc, signal.SIGTERM)
        else:
            try:
                proc.terminate()
            except (OSError, ProcessLookupError):
                pass
        try:
            await asyncio.wait_for(proc.wait(), self.grace)
        except asyncio.TimeoutError:
            logger.debug("pid %d ignored SIGTERM, killing", proc.pid)
            _force_kill(proc)
            try:
                await asyncio.wait_for(proc.wait(), _KILL_WAIT_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning("pid %d did not exit after SIGKILL", proc.pid)
                return
        # The shell may have exited on SIGTERM while children kept running.
        if sys.platform != "win32":
            _signal_group(proc, signal.SIGKILL)
