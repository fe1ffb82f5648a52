"""External command execution.

Runs a program as an async subprocess with timeout enforcement, output
streaming, and structured result capture. Quality-gate checks, the git
adapter and the implementation agent all execute through CommandRunner.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple, Union

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Result of one command execution.

    Attributes:
        success: True when the command exited with code 0.
        exit_code: Process exit code (-1 for timeout/OS errors).
        stdout: Captured standard output.
        stderr: Captured standard error.
        duration_seconds: Wall-clock execution time.
        timed_out: True when the command was killed for exceeding its timeout.
    """

    success: bool
    exit_code: int
    stdout: str
    stderr: str
    duration_seconds: float
    timed_out: bool = False

    @property
    def output(self) -> str:
        """Combined stdout and stderr, in that order."""
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


class CommandRunner:
    """Executes external commands as async subprocesses.

    Streams output line-by-line to Python logging and an optional
    callback, enforces a timeout, and returns a structured result. A
    command that cannot be started or that times out is reported as a
    failed CommandResult rather than an exception.

    Attributes:
        timeout_seconds: Default maximum execution time per command.
    """

    def __init__(self, timeout_seconds: float = 600):
        self.timeout_seconds = timeout_seconds

    async def run(
        self,
        argv: Sequence[str],
        cwd: Optional[Union[str, Path]] = None,
        log_callback: Optional[Callable[[str], None]] = None,
        timeout_seconds: Optional[float] = None,
    ) -> CommandResult:
        """Execute a command and wait for it to finish.

        Args:
            argv: Program and arguments; no shell is involved.
            cwd: Working directory for the process.
            log_callback: Optional function called with each output line.
            timeout_seconds: Overrides the runner's default timeout.

        Returns:
            CommandResult with exit code, captured output, and duration.
        """
        if not argv:
            raise ValueError("argv cannot be empty")

        timeout = timeout_seconds if timeout_seconds is not None else self.timeout_seconds
        start_time = time.monotonic()
        process: Optional[asyncio.subprocess.Process] = None

        try:
            process = await self._start_process(argv, cwd)
            stdout, stderr = await self._collect_output_with_timeout(
                process, log_callback, timeout
            )
            exit_code = process.returncode or 0
        except asyncio.TimeoutError:
            return await self._handle_timeout(argv, process, start_time, timeout)
        except OSError as exc:
            return self._handle_os_error(argv, exc, start_time)

        duration = time.monotonic() - start_time
        return self._build_result(argv, exit_code, stdout, stderr, duration)

    async def _start_process(
        self,
        argv: Sequence[str],
        cwd: Optional[Union[str, Path]],
    ) -> asyncio.subprocess.Process:
        logger.info(
            "Starting command",
            extra={
                "program": argv[0],
                "argc": len(argv),
                "cwd": str(cwd) if cwd else None,
            },
        )

        return await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd) if cwd else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

    async def _collect_output_with_timeout(
        self,
        process: asyncio.subprocess.Process,
        log_callback: Optional[Callable[[str], None]],
        timeout: float,
    ) -> Tuple[str, str]:
        """Stream and collect process output within the timeout window.

        Raises:
            asyncio.TimeoutError: If the process exceeds the timeout.
        """
        stdout_lines: List[str] = []
        stderr_lines: List[str] = []

        async def stream_stdout():
            async for line in self._read_stream(process.stdout):
                stdout_lines.append(line)
                self._emit_line("stdout", line, log_callback)

        async def stream_stderr():
            async for line in self._read_stream(process.stderr):
                stderr_lines.append(line)
                self._emit_line("stderr", line, log_callback)

        async def gather_streams():
            await asyncio.gather(stream_stdout(), stream_stderr())
            await process.wait()

        await asyncio.wait_for(gather_streams(), timeout=timeout)

        return "\n".join(stdout_lines), "\n".join(stderr_lines)

    async def _read_stream(self, stream: Optional[asyncio.StreamReader]):
        if stream is None:
            return

        while True:
            raw_line = await stream.readline()
            if not raw_line:
                break
            yield raw_line.decode("utf-8", errors="replace").rstrip("\n")

    def _emit_line(
        self,
        stream_name: str,
        line: str,
        log_callback: Optional[Callable[[str], None]],
    ) -> None:
        logger.debug("command %s: %s", stream_name, line)
        if log_callback is not None:
            log_callback(f"[{stream_name}] {line}")

    async def _handle_timeout(
        self,
        argv: Sequence[str],
        process: Optional[asyncio.subprocess.Process],
        start_time: float,
        timeout: float,
    ) -> CommandResult:
        """Kill and reap the process and return a timeout failure result."""
        if process is not None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
        duration = time.monotonic() - start_time
        logger.error("%s timed out after %ss", argv[0], timeout)
        return CommandResult(
            success=False,
            exit_code=-1,
            stdout="",
            stderr=f"Process timed out after {timeout}s",
            duration_seconds=duration,
            timed_out=True,
        )

    def _handle_os_error(
        self,
        argv: Sequence[str],
        exc: OSError,
        start_time: float,
    ) -> CommandResult:
        """Return a failure result for OS-level errors (e.g., missing binary)."""
        duration = time.monotonic() - start_time
        logger.error("Failed to start %s: %s", argv[0], exc)
        return CommandResult(
            success=False,
            exit_code=-1,
            stdout="",
            stderr=f"Failed to start {argv[0]}: {exc}",
            duration_seconds=duration,
        )

    def _build_result(
        self,
        argv: Sequence[str],
        exit_code: int,
        stdout: str,
        stderr: str,
        duration: float,
    ) -> CommandResult:
        is_success = exit_code == 0

        if is_success:
            logger.info("%s completed successfully in %.1fs", argv[0], duration)
        else:
            logger.warning(
                "%s failed with exit code %d in %.1fs",
                argv[0],
                exit_code,
                duration,
            )

        return CommandResult(
            success=is_success,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            duration_seconds=duration,
        )
