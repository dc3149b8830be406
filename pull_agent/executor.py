"""
External command execution with timeouts and live output.

All git and docker compose invocations go through CommandExecutor.run so that
every external call has a deadline and its output reaches the event bus while
the command is still running.
"""

import asyncio
import logging
import shlex
import time
from typing import List, Optional, Sequence

from pydantic import BaseModel, Field

from pull_agent.events import EventBus
from pull_agent.exceptions import CommandError, CommandFailedError, CommandTimeoutError

logger = logging.getLogger(__name__)

# Output kept per stream for error messages
MAX_CAPTURED_BYTES = 256 * 1024

READ_CHUNK_BYTES = 64 * 1024

# Longer lines are split before publishing
MAX_LINE_BYTES = 64 * 1024


class CommandResult(BaseModel):
    """Outcome of a finished external command."""

    command: str = Field(..., description="Command line as a shell-quoted string")
    returncode: int = Field(..., description="Process exit status")
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandExecutor:
    """Runs external processes on behalf of the agent."""

    def __init__(self, event_bus: Optional[EventBus] = None, default_cwd: Optional[str] = None):
        self.event_bus = event_bus
        self.default_cwd = default_cwd

    async def run(
        self,
        args: Sequence[str],
        timeout: float,
        cwd: Optional[str] = None,
        check: bool = True,
        stream_output: bool = False,
    ) -> CommandResult:
        """
        Run a command and wait for it to finish.

        Args:
            args: Program and arguments (no shell involved)
            timeout: Seconds before the process is killed
            cwd: Working directory, defaults to the executor's default
            check: Raise CommandFailedError on a non-zero exit status
            stream_output: Publish each output line to the event bus

        Returns:
            CommandResult with captured output

        Raises:
            CommandTimeoutError: If the command exceeded its timeout
            CommandFailedError: If check is set and the command failed
            CommandError: If the program could not be started
        """
        command = shlex.join(args)
        workdir = cwd or self.default_cwd
        logger.debug(f"Running: {command} (cwd={workdir}, timeout={timeout:g}s)")
        started = time.monotonic()

        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                cwd=workdir,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError, NotADirectoryError) as e:
            raise CommandError(f"Cannot start {args[0]}: {e}", command=command)

        stdout_lines: List[str] = []
        stderr_lines: List[str] = []

        try:
            await asyncio.wait_for(
                asyncio.gather(
                    self._read_stream(process.stdout, stdout_lines, "stdout", stream_output),
                    self._read_stream(process.stderr, stderr_lines, "stderr", stream_output),
                    process.wait(),
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            await self._kill(process)
            logger.error(f"Command timed out after {timeout:g}s: {command}")
            raise CommandTimeoutError(command, timeout)
        except asyncio.CancelledError:
            await self._kill(process)
            raise
        except Exception as e:
            await self._kill(process)
            logger.error(f"Reading output of {command} failed: {e}")
            raise CommandError(f"Reading output of {args[0]} failed: {e}", command=command)

        result = CommandResult(
            command=command,
            returncode=process.returncode if process.returncode is not None else -1,
            stdout="".join(stdout_lines),
            stderr="".join(stderr_lines),
            duration_ms=int((time.monotonic() - started) * 1000),
        )

        if result.ok:
            logger.debug(f"Command succeeded in {result.duration_ms}ms: {command}")
        else:
            logger.warning(f"Command exited with {result.returncode}: {command}")
            if check:
                raise CommandFailedError(command, result.returncode, result.stderr)

        return result

    async def _read_stream(
        self,
        stream: Optional[asyncio.StreamReader],
        sink: List[str],
        name: str,
        publish: bool,
    ) -> None:
        if stream is None:
            return
        captured = 0
        pending = b""
        while True:
            chunk = await stream.read(READ_CHUNK_BYTES)
            if not chunk:
                break
            pending += chunk
            *lines, pending = pending.split(b"\n")
            for raw in lines:
                captured = self._emit(raw, sink, captured, name, publish, newline=True)
            if len(pending) > MAX_LINE_BYTES:
                captured = self._emit(pending, sink, captured, name, publish, newline=False)
                pending = b""
        if pending:
            self._emit(pending, sink, captured, name, publish, newline=False)

    def _emit(
        self, raw: bytes, sink: List[str], captured: int, name: str, publish: bool, newline: bool
    ) -> int:
        line = raw.decode(errors="replace")
        if captured < MAX_CAPTURED_BYTES:
            sink.append(line + "\n" if newline else line)
            captured += len(raw) + int(newline)
        if publish and self.event_bus is not None:
            self.event_bus.publish("output", {"stream": name, "line": line})
        return captured

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=5)
        except asyncio.TimeoutError:
            logger.warning(f"Process {process.pid} did not exit after kill")
