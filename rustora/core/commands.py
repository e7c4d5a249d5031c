"""
Rustora - System Commands

Spawn external tools, optionally through the graphical elevation helper,
and stream both of their output pipes line by line.

Copyright (c) 2025 Christopher Dorrell. Licensed under GPL-3.0.
"""

import os
import queue
import shlex
import shutil
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from .logger import get_logger, is_debug_enabled

log = get_logger('rustora.commands')

# How often the drain loop wakes up to look at the cancel token
POLL_INTERVAL = 0.05

# Seconds a cancelled child gets between SIGTERM and SIGKILL
DEFAULT_GRACE = 1.5

# pkexec exit codes for a dismissed or refused authentication dialog
AUTH_CANCELLED_CODES = (126, 127)

# Variables the elevation helper needs to draw its password prompt
DISPLAY_VARIABLES = ('DISPLAY', 'WAYLAND_DISPLAY', 'XAUTHORITY')

STDERR_PREFIX = '[stderr] '


class StreamTag(Enum):
    """Which pipe a transcript line came from."""
    OUT = "out"
    ERR = "err"


class TerminatedBy(Enum):
    """How a streamed run ended."""
    EXITED = "exited"
    SPAWN_FAILURE = "spawn-failure"
    IO_FAILURE = "io-failure"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class TranscriptLine:
    """One line of child output with its origin stream."""
    stream: StreamTag
    text: str

    def render(self) -> str:
        if self.stream is StreamTag.ERR:
            return STDERR_PREFIX + self.text
        return self.text


class CancelToken:
    """Thread-safe cancellation flag shared by a job and its child processes."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)


@dataclass(frozen=True)
class ExecRequest:
    """Immutable description of one child process to run."""
    program: str
    args: tuple = ()
    env: dict = field(default_factory=dict)
    elevated: bool = False
    cancel: Optional[CancelToken] = None
    cwd: Optional[str] = None

    @property
    def argv(self) -> list[str]:
        return [self.program, *self.args]

    def describe(self) -> str:
        return shlex.join(self.argv)


def display_environment() -> dict:
    """Display-server variables from the launching environment."""
    return {name: os.environ[name] for name in DISPLAY_VARIABLES if name in os.environ}


def elevate(request: ExecRequest, helper: str = 'pkexec') -> ExecRequest:
    """
    Wrap a request so it runs through the graphical elevation helper.

    The display identifier is passed along so the helper can show its prompt.
    """
    env = display_environment()
    env.update(request.env)
    return ExecRequest(
        program=helper,
        args=(request.program, *request.args),
        env=env,
        elevated=True,
        cancel=request.cancel,
        cwd=request.cwd
    )


def make_request(
    argv: list[str],
    elevated: bool = False,
    helper: str = 'pkexec',
    cancel: Optional[CancelToken] = None,
    env: Optional[dict] = None
) -> ExecRequest:
    """Build an ExecRequest from an argv list."""
    request = ExecRequest(
        program=argv[0],
        args=tuple(argv[1:]),
        env=dict(env or {}),
        cancel=cancel
    )
    if elevated:
        return elevate(request, helper)
    return request


@dataclass
class RunResult:
    """Everything observable about one streamed child process."""
    argv: list[str]
    transcript: list[TranscriptLine]
    exit_code: Optional[int]
    terminated_by: TerminatedBy
    error: str = ''
    elevated: bool = False
    pid: Optional[int] = None

    @property
    def success(self) -> bool:
        return self.terminated_by is TerminatedBy.EXITED and self.exit_code == 0

    @property
    def auth_cancelled(self) -> bool:
        """The elevation helper was dismissed or refused."""
        return (
            self.elevated
            and self.terminated_by is TerminatedBy.EXITED
            and self.exit_code in AUTH_CANCELLED_CODES
        )

    @property
    def output(self) -> str:
        return '\n'.join(line.render() for line in self.transcript)


LineSink = Callable[[StreamTag, str], None]

_EOF = object()


def _decode(raw: bytes) -> str:
    if raw.endswith(b'\n'):
        raw = raw[:-1]
    return raw.decode('utf-8', 'surrogateescape')


def _pump(pipe, tag: StreamTag, events: queue.Queue):
    """Reader thread body: push every line of one pipe onto the shared queue."""
    try:
        for raw in iter(pipe.readline, b''):
            events.put((tag, _decode(raw)))
    except (OSError, ValueError) as e:
        events.put((tag, e))
        return
    finally:
        try:
            pipe.close()
        except OSError:
            pass
    events.put((tag, _EOF))


def _signal_group(process: subprocess.Popen, sig: int):
    """Signal the child's process group, falling back to the child alone."""
    try:
        os.killpg(process.pid, sig)
    except (ProcessLookupError, PermissionError):
        try:
            process.send_signal(sig)
        except ProcessLookupError:
            pass


def _reap(process: subprocess.Popen, cancel: Optional[CancelToken], grace: float) -> tuple[int, bool]:
    """Wait for the child, honouring cancellation. Returns (exit_code, cancelled)."""
    terminated_at = None
    while True:
        try:
            return process.wait(timeout=POLL_INTERVAL), terminated_at is not None
        except subprocess.TimeoutExpired:
            pass
        if cancel is None or not cancel.cancelled:
            continue
        if terminated_at is None:
            log.info("Cancelling pid %d", process.pid)
            _signal_group(process, signal.SIGTERM)
            terminated_at = time.monotonic()
        elif time.monotonic() - terminated_at >= grace:
            log.warning("pid %d ignored SIGTERM, killing", process.pid)
            _signal_group(process, signal.SIGKILL)


def run(
    request: ExecRequest,
    on_line: Optional[LineSink] = None,
    grace: float = DEFAULT_GRACE
) -> RunResult:
    """
    Run a child process and stream both of its output pipes.

    stdout and stderr are drained concurrently by two reader threads feeding
    one queue, so a child that fills either pipe can never block the other.
    Every line goes to on_line(tag, text) and into the returned transcript.
    A non-zero exit is not an error here; the caller decides what it means.

    Args:
        request: What to run
        on_line: Optional callback invoked once per line, in arrival order
        grace: Seconds between terminate and kill after cancellation

    Returns:
        RunResult with the transcript, exit code and how the run ended
    """
    argv = request.argv
    run_env = os.environ.copy()
    run_env.update(request.env)

    log.debug("Spawning: %s", request.describe())
    try:
        process = subprocess.Popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=run_env,
            cwd=request.cwd,
            start_new_session=True
        )
    except FileNotFoundError:
        return _spawn_failure(request, f'Command not found: {argv[0]}')
    except PermissionError:
        return _spawn_failure(request, f'Permission denied: {argv[0]}')
    except (OSError, ValueError) as e:
        return _spawn_failure(request, str(e))

    cancel = request.cancel
    transcript: list[TranscriptLine] = []
    events: queue.Queue = queue.Queue()
    for pipe, tag in ((process.stdout, StreamTag.OUT), (process.stderr, StreamTag.ERR)):
        threading.Thread(target=_pump, args=(pipe, tag, events), daemon=True).start()

    open_streams = 2
    io_error: Optional[Exception] = None
    deadline = None
    # Mirror child output into the log only when something records debug
    trace = is_debug_enabled()

    try:
        while open_streams:
            if deadline is None and cancel is not None and cancel.cancelled:
                log.info("Cancellation requested for %s", argv[0])
                _signal_group(process, signal.SIGTERM)
                deadline = time.monotonic() + grace

            timeout = POLL_INTERVAL
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    # Pipes may be held open by a child that ignores SIGTERM
                    _signal_group(process, signal.SIGKILL)
                    break
                timeout = min(timeout, remaining)

            try:
                tag, payload = events.get(timeout=timeout)
            except queue.Empty:
                continue

            if payload is _EOF:
                open_streams -= 1
            elif isinstance(payload, Exception):
                log.error("Read error on %s of %s: %s", tag.value, argv[0], payload)
                io_error = payload
                open_streams -= 1
            else:
                transcript.append(TranscriptLine(tag, payload))
                if trace:
                    log.debug("%s %s| %s", argv[0], tag.value, payload)
                if on_line:
                    on_line(tag, payload)

        exit_code, reaped_cancelled = _reap(process, cancel, grace)
    finally:
        if process.poll() is None:
            _signal_group(process, signal.SIGKILL)
            process.wait()

    if deadline is not None or reaped_cancelled:
        terminated_by = TerminatedBy.CANCELLED
    elif io_error is not None:
        terminated_by = TerminatedBy.IO_FAILURE
        exit_code = None
    else:
        terminated_by = TerminatedBy.EXITED

    log.debug("%s finished: %s (exit code %s)", argv[0], terminated_by.value, exit_code)
    return RunResult(
        argv=argv,
        transcript=transcript,
        exit_code=exit_code,
        terminated_by=terminated_by,
        error=str(io_error) if io_error is not None else '',
        elevated=request.elevated,
        pid=process.pid
    )


def _spawn_failure(request: ExecRequest, message: str) -> RunResult:
    log.error("Could not start %s: %s", request.argv[0], message)
    return RunResult(
        argv=request.argv,
        transcript=[],
        exit_code=None,
        terminated_by=TerminatedBy.SPAWN_FAILURE,
        error=message,
        elevated=request.elevated
    )


# =============================================================================
# One-shot queries
# =============================================================================

class CommandStatus(Enum):
    """Command execution status."""
    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"


@dataclass
class CommandResult:
    """Result of a captured, non-streaming command."""
    status: CommandStatus
    return_code: int
    stdout: str
    stderr: str
    command: list[str]

    @property
    def success(self) -> bool:
        return self.status == CommandStatus.SUCCESS and self.return_code == 0

    @property
    def output(self) -> str:
        """Combined stdout and stderr."""
        return f"{self.stdout}\n{self.stderr}".strip()


def command_exists(cmd: str) -> bool:
    """Check if a command exists in PATH."""
    return shutil.which(cmd) is not None


def capture(
    command: list[str],
    timeout: Optional[int] = None,
    env: Optional[dict] = None,
    cwd: Optional[str] = None
) -> CommandResult:
    """
    Run a short query command and capture its output.

    Used for rpm/dnf/flatpak lookups that do not need live streaming.

    Args:
        command: List of command and arguments
        timeout: Timeout in seconds (None for no timeout)
        env: Environment variables (merged with current env)
        cwd: Working directory

    Returns:
        CommandResult with status and output
    """
    run_env = os.environ.copy()
    if env:
        run_env.update(env)

    try:
        result = subprocess.run(
            command,
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
            errors='replace',
            timeout=timeout,
            env=run_env,
            cwd=cwd
        )
    except subprocess.TimeoutExpired:
        return CommandResult(
            status=CommandStatus.TIMEOUT,
            return_code=-1,
            stdout='',
            stderr=f'Command timed out after {timeout} seconds',
            command=command
        )
    except FileNotFoundError:
        return CommandResult(
            status=CommandStatus.FAILED,
            return_code=-1,
            stdout='',
            stderr=f'Command not found: {command[0]}',
            command=command
        )
    except OSError as e:
        return CommandResult(
            status=CommandStatus.FAILED,
            return_code=-1,
            stdout='',
            stderr=str(e),
            command=command
        )

    status = CommandStatus.SUCCESS if result.returncode == 0 else CommandStatus.FAILED
    return CommandResult(
        status=status,
        return_code=result.returncode,
        stdout=result.stdout,
        stderr=result.stderr,
        command=command
    )
