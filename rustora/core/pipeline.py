"""
Rustora - Pipeline Coordinator

Runs jobs against a JobSession: single commands, sequences of commands,
the runtime download/extract/install pipeline and the driver pipeline.
Each function blocks until the job is over; call them from a worker
thread (see packages.start_job).

Copyright (c) 2025 Christopher Dorrell. Licensed under GPL-3.0.
"""

import dataclasses
import os
import shutil
import tempfile
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Callable, Optional

from .. import __version__
from . import archive, commands, joblog
from .commands import ExecRequest, RunResult, StreamTag, TerminatedBy
from .config import CoreSettings, launcher_destination, load_settings
from .logger import get_logger
from .progress import ERROR_INDICATORS, ProgressHeuristic
from .session import FailureReason, ItemStatus, JobSession

log = get_logger('rustora.pipeline')

# Exit-0 output containing these is still a failure
DEFENSIVE_ERROR_WORDS = ('error', 'failed', 'nothing provides')

# Non-zero exits the user considers success
SUCCESS_DESPITE_EXIT = ('already installed', 'nothing to do')

RUNTIME_WEIGHTS = {'acquire': 0.4, 'extract': 0.2, 'install': 0.4}

DOWNLOAD_CHUNK = 64 * 1024


class StageError(Exception):
    """A pipeline stage failed; the remaining stages are skipped."""

    def __init__(self, stage: str, message: str, reason: FailureReason = FailureReason.STAGE_FAILED):
        super().__init__(message)
        self.stage = stage
        self.reason = reason


class StageTracker:
    """Per-stage progress fractions folded into one weighted session progress."""

    def __init__(self, session: JobSession, weights: dict[str, float]):
        self.session = session
        self.weights = dict(weights)
        self.fractions = {name: 0.0 for name in weights}

    @classmethod
    def uniform(cls, session: JobSession, names: list[str]) -> 'StageTracker':
        share = 1.0 / len(names) if names else 1.0
        return cls(session, {name: share for name in names})

    @property
    def total(self) -> float:
        return sum(self.weights[name] * self.fractions[name] for name in self.weights)

    def update(self, stage: str, fraction: float):
        self.fractions[stage] = min(1.0, max(self.fractions[stage], fraction))
        self.session.set_progress(self.total)

    def complete(self, stage: str):
        log.debug("Stage %s complete", stage)
        self.update(stage, 1.0)


def line_sink(session: JobSession, heuristic: Optional[ProgressHeuristic] = None):
    """Callback for commands.run that feeds the transcript and the heuristic."""
    def on_line(tag: StreamTag, text: str):
        if session.append_line(text, tag) and heuristic is not None:
            heuristic.observe(text, tag, session)
    return on_line


def _contains_any(result: RunResult, words: tuple) -> bool:
    for line in result.transcript:
        lowered = line.text.lower()
        if any(word in lowered for word in words):
            return True
    return False


def evaluate(result: RunResult, session: Optional[JobSession] = None) -> Optional[tuple[FailureReason, str]]:
    """
    Decide whether a finished command failed.

    Returns None on success, otherwise (reason, message). The exit code is
    authoritative except for the two output checks: error words on a zero
    exit mean failure, and an "already installed" note turns a non-zero
    exit into success. That note only counts when no line reports an error
    and, given a session, none of its items has failed.
    """
    if result.terminated_by is TerminatedBy.CANCELLED:
        return FailureReason.CANCELLED, "Operation cancelled"
    if result.terminated_by is TerminatedBy.SPAWN_FAILURE:
        return FailureReason.SPAWN_FAILURE, result.error
    if result.terminated_by is TerminatedBy.IO_FAILURE:
        return FailureReason.IO_FAILURE, f"Lost output from {result.argv[0]}: {result.error}"
    if result.auth_cancelled:
        return FailureReason.AUTH_CANCELLED, "Authentication cancelled"

    if result.exit_code != 0:
        if _contains_any(result, SUCCESS_DESPITE_EXIT) and not _contains_any(result, ERROR_INDICATORS) \
                and not (session is not None and session.has_failed_items()):
            log.info("%s exited %s but reported nothing left to do", result.argv[0], result.exit_code)
            return None
        return FailureReason.TOOL_FAILED, f"Operation failed (exit code: {result.exit_code})"

    if _contains_any(result, DEFENSIVE_ERROR_WORDS):
        return FailureReason.TOOL_FAILED, "Operation failed (exit code: 0, errors reported in output)"
    return None


def _fail(session: JobSession, reason: FailureReason, message: str):
    if reason is FailureReason.SPAWN_FAILURE:
        session.append_line(message, StreamTag.ERR)
    elif reason in (FailureReason.TOOL_FAILED, FailureReason.STAGE_FAILED):
        session.prepend_line(message)
    log.warning("%s failed: %s", session.title, message)
    session.fail(reason, message)


def _finalize(session: JobSession, operation: Optional[str], target: str, write_log: bool):
    if write_log:
        joblog.write_session_log(session.snapshot(), operation or session.kind.value, target)


def abort_job(session: JobSession, reason: FailureReason, message: str,
              operation: str, target: str = "", write_log: bool = True):
    """Fail a job that never got to run a command, still writing its session log."""
    _fail(session, reason, message)
    _finalize(session, operation, target, write_log)


def _with_cancel(request: ExecRequest, session: JobSession) -> ExecRequest:
    if request.cancel is None:
        return dataclasses.replace(request, cancel=session.cancel_token)
    return request


def _check_cancel(session: JobSession, stage: str):
    if session.cancelled:
        raise StageError(stage, "Operation cancelled", FailureReason.CANCELLED)


def _remove_quietly(path: Optional[str]):
    if not path:
        return
    try:
        if os.path.isdir(path) and not os.path.islink(path):
            shutil.rmtree(path)
        elif os.path.lexists(path):
            os.remove(path)
    except OSError as e:
        log.debug("Could not remove %s: %s", path, e)


# =============================================================================
# Single-command and multi-command jobs
# =============================================================================

def run_command_job(
    session: JobSession,
    request: ExecRequest,
    heuristic: Optional[ProgressHeuristic] = None,
    operation: Optional[str] = None,
    target: str = "",
    write_log: bool = True,
    settings: Optional[CoreSettings] = None
) -> RunResult:
    """
    Run one command for a session and settle the session from its exit code.

    Every line goes through the heuristic for per-item progress; the exit
    code then decides the outcome. On success open items become succeeded,
    on failure items still in progress become failed.
    """
    settings = settings or load_settings()
    heuristic = heuristic if heuristic is not None else ProgressHeuristic()

    session.append_line(f"$ {request.describe()}")
    request = _with_cancel(request, session)

    result = commands.run(request, on_line=line_sink(session, heuristic), grace=settings.cancel_grace)

    failure = evaluate(result, session)
    if failure is None:
        session.resolve_open_items(ItemStatus.SUCCEEDED)
        session.finish("Operation completed successfully")
    else:
        _fail(session, *failure)

    _finalize(session, operation, target, write_log)
    return result


@dataclass
class Step:
    """One command of a multi-command job."""
    name: str
    request: ExecRequest
    title: str = ""
    fatal: bool = True


def _run_step(session: JobSession, step: Step, settings: CoreSettings):
    """Run one step; raise StageError if it failed and is fatal."""
    _check_cancel(session, step.name)
    session.set_progress_message(step.title or step.name)
    log.info("Stage %s: %s", step.name, step.request.describe())
    session.append_line(f"$ {step.request.describe()}")

    request = _with_cancel(step.request, session)
    result = commands.run(request, on_line=line_sink(session), grace=settings.cancel_grace)

    failure = evaluate(result, session)
    if failure is None:
        return
    reason, message = failure
    if not step.fatal and reason is not FailureReason.CANCELLED:
        log.warning("Optional stage %s failed: %s", step.name, message)
        session.append_line(f"{step.title or step.name} failed, continuing: {message}")
        return
    if reason is FailureReason.TOOL_FAILED:
        message = f"{step.title or step.name} failed (exit code: {result.exit_code})"
        reason = FailureReason.STAGE_FAILED
    raise StageError(step.name, message, reason)


def run_steps(
    session: JobSession,
    steps: list[Step],
    operation: Optional[str] = None,
    target: str = "",
    write_log: bool = True,
    settings: Optional[CoreSettings] = None,
    success_message: str = "Operation completed successfully"
) -> bool:
    """
    Run commands in order, aborting at the first fatal failure.

    Earlier steps are not rolled back. Progress is split evenly between the
    steps. The failing step's name is recorded as the session's failed stage.
    """
    settings = settings or load_settings()
    tracker = StageTracker.uniform(session, [step.name for step in steps])
    try:
        for step in steps:
            _run_step(session, step, settings)
            tracker.complete(step.name)
    except StageError as e:
        session.set_failed_stage(e.stage)
        _fail(session, e.reason, str(e))
        return False
    else:
        session.resolve_open_items(ItemStatus.SUCCEEDED)
        session.finish(success_message)
        return True
    finally:
        _finalize(session, operation, target, write_log)


# =============================================================================
# Driver pipeline
# =============================================================================

def script_path(tag: str) -> str:
    return os.path.join(tempfile.gettempdir(), f"rustora_{os.getpid()}_{tag}.sh")


def write_script(contents: str, tag: str) -> str:
    """Write a shell script to a process-unique temp path, mode 0755."""
    path = script_path(tag)
    with open(path, 'w', encoding='utf-8') as f:
        f.write(contents)
        if not contents.endswith('\n'):
            f.write('\n')
    os.chmod(path, 0o755)
    return path


def run_driver_pipeline(
    session: JobSession,
    script: str,
    post_install: bool,
    remove: bool = False,
    target: str = "",
    write_log: bool = True,
    settings: Optional[CoreSettings] = None
) -> bool:
    """
    Run a driver profile's script, then the kernel work it needs.

    With post_install the script is followed by the module rebuild and the
    initramfs regeneration, each a separate elevated command. Removal only
    runs the script.
    """
    settings = settings or load_settings()
    tag = 'remove' if remove else 'install'
    try:
        path = write_script(script, tag)
    except OSError as e:
        session.set_failed_stage('script')
        abort_job(session, FailureReason.IO_FAILURE, f"Failed to write driver script: {e}",
                  f"driver_{tag}", target, write_log)
        return False

    helper = settings.elevation_helper
    steps = [Step(
        'script',
        commands.make_request(['bash', path], elevated=True, helper=helper),
        title="Running driver removal script" if remove else "Running driver installation script"
    )]
    if post_install and not remove:
        steps.append(Step(
            'module-rebuild',
            commands.make_request(settings.module_rebuild_command, elevated=True, helper=helper),
            title="Rebuilding kernel modules"
        ))
        steps.append(Step(
            'initramfs-regen',
            commands.make_request(settings.initramfs_command, elevated=True, helper=helper),
            title="Regenerating initramfs"
        ))

    try:
        return run_steps(
            session, steps,
            operation=f"driver_{tag}",
            target=target,
            write_log=write_log,
            settings=settings,
            success_message="Driver removed successfully" if remove else "Driver installed successfully"
        )
    finally:
        _remove_quietly(path)


# =============================================================================
# Runtime acquisition: download -> extract -> install
# =============================================================================

def download(
    url: str,
    dest: str,
    progress: Optional[Callable[[float], None]] = None,
    cancel: Optional[commands.CancelToken] = None,
    timeout: float = 30.0
) -> int:
    """
    Stream an HTTP(S) download to dest, reporting the fraction received.

    Returns the number of bytes written.

    Raises:
        StageError: on any network or file error, or cancellation
    """
    req = urllib.request.Request(url, headers={'User-Agent': f'Rustora/{__version__}'})
    received = 0
    try:
        with urllib.request.urlopen(req, timeout=timeout) as response, open(dest, 'wb') as out:
            total = int(response.headers.get('Content-Length') or 0)
            while True:
                if cancel is not None and cancel.cancelled:
                    raise StageError('acquire', "Download cancelled", FailureReason.CANCELLED)
                chunk = response.read(DOWNLOAD_CHUNK)
                if not chunk:
                    break
                out.write(chunk)
                received += len(chunk)
                if progress and total:
                    progress(min(received / total, 1.0))
    except urllib.error.HTTPError as e:
        raise StageError('acquire', f"Download failed: HTTP {e.code} {e.reason}")
    except (urllib.error.URLError, OSError, ValueError) as e:
        raise StageError('acquire', f"Download failed: {e}")

    if total and received != total:
        raise StageError('acquire', f"Download incomplete: received {received} of {total} bytes")
    return received


def install_tree(source: str, destination: str, name: str,
                 progress: Optional[Callable[[float], None]] = None) -> str:
    """Copy an extracted tree to <destination>/<name>, replacing any previous copy."""
    target = os.path.join(destination, name)
    total = sum(len(files) for _, _, files in os.walk(source)) or 1
    copied = 0

    def copy(src, dst, *, follow_symlinks=True):
        nonlocal copied
        shutil.copy2(src, dst, follow_symlinks=follow_symlinks)
        copied += 1
        if progress:
            progress(copied / total)

    try:
        os.makedirs(destination, exist_ok=True)
        if os.path.lexists(target):
            log.info("Replacing existing %s", target)
            _remove_quietly(target)
        shutil.copytree(source, target, symlinks=True, copy_function=copy)
    except (OSError, shutil.Error) as e:
        raise StageError('install', f"Failed to install to {target}: {e}")
    return target


def valid_build_name(build: str) -> bool:
    """A build name must be a single path component."""
    if not build or build in (os.curdir, os.pardir) or '\0' in build:
        return False
    return os.sep not in build and not (os.altsep and os.altsep in build)


def archive_path(build: str) -> str:
    return os.path.join(tempfile.gettempdir(), f"rustora_{os.getpid()}_{build}.archive")


def staging_path(build: str) -> str:
    return os.path.join(os.path.expanduser('~'), '.tmp', build)


def acquire_runtime(
    session: JobSession,
    url: str,
    build: str,
    destination: Optional[str] = None,
    launcher: Optional[str] = None,
    write_log: bool = True,
    settings: Optional[CoreSettings] = None
) -> bool:
    """
    Download a compatibility runtime archive, unpack it and install it.

    Stages run in order (acquire 40%, extract 20%, install 40% of the
    progress bar); a failed or cancelled stage skips the rest. The temp
    archive and the staging directory are removed on every exit path.
    """
    settings = settings or load_settings()
    if not valid_build_name(build):
        session.set_item_status(build, ItemStatus.FAILED, "Invalid name")
        session.set_failed_stage('acquire')
        abort_job(session, FailureReason.STAGE_FAILED, f"Invalid build name: {build!r}",
                  'runtime_install', build, write_log)
        return False
    destination = destination or launcher_destination(launcher)
    cancel = session.cancel_token
    tracker = StageTracker(session, RUNTIME_WEIGHTS)
    temp_archive = archive_path(build)
    staging = staging_path(build)

    def extract_progress(fraction: float, message: str):
        tracker.update('extract', fraction)
        session.set_progress_message(message)

    session.set_item_status(build, ItemStatus.IN_PROGRESS, "Downloading")
    try:
        _check_cancel(session, 'acquire')
        session.set_progress_message(f"Downloading {build}...")
        session.append_line(f"Downloading {url}")
        size = download(url, temp_archive,
                        progress=lambda f: tracker.update('acquire', f),
                        cancel=cancel, timeout=settings.download_timeout)
        session.append_line(f"Downloaded {size} bytes")
        tracker.complete('acquire')

        _check_cancel(session, 'extract')
        session.set_item_status(build, ItemStatus.IN_PROGRESS, "Extracting")
        _remove_quietly(staging)
        try:
            descriptor = archive.probe(temp_archive, size)
            session.append_line(f"Extracting {descriptor.family.value} archive")
            extracted = archive.extract(descriptor, staging, extract_progress, cancel, settings.extract_tick)
        except archive.ExtractionCancelled as e:
            raise StageError('extract', str(e), FailureReason.CANCELLED)
        except archive.ExtractorFailedError as e:
            for line in e.result.transcript:
                session.append_line(line.text, line.stream)
            raise StageError('extract', str(e).splitlines()[0])
        except archive.ArchiveError as e:
            raise StageError('extract', str(e))
        except OSError as e:
            raise StageError('extract', f"Failed to extract to {staging}: {e}")
        _remove_quietly(temp_archive)
        tracker.complete('extract')

        _check_cancel(session, 'install')
        session.set_item_status(build, ItemStatus.IN_PROGRESS, "Installing")
        session.set_progress_message(f"Installing {build}...")
        installed = install_tree(extracted, destination, build,
                                 progress=lambda f: tracker.update('install', f))
        session.append_line(f"Installed to {installed}")
        tracker.complete('install')
    except StageError as e:
        session.set_failed_stage(e.stage)
        _fail(session, e.reason, str(e))
        return False
    else:
        session.set_item_status(build, ItemStatus.SUCCEEDED, "Installed")
        session.finish(f"{build} installed successfully")
        return True
    finally:
        _remove_quietly(temp_archive)
        _remove_quietly(staging)
        _finalize(session, 'runtime_install', build, write_log)
