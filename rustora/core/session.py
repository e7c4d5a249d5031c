"""
Rustora - Job Session

Per-dialog job state shared between the worker thread that runs the job
and the window that renders it.

Copyright (c) 2025 Christopher Dorrell. Licensed under GPL-3.0.
"""

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from .commands import CancelToken, StreamTag, TranscriptLine
from .logger import get_logger

log = get_logger('rustora.session')


class JobKind(Enum):
    """What a session is doing."""
    INSTALL = "install"
    REMOVE = "remove"
    UPDATE = "update"
    MAINTENANCE = "maintenance"
    RUNTIME_ACQUIRE = "runtime-acquire"
    DRIVER_INSTALL = "driver-install"


class ItemStatus(Enum):
    """Status of one work item."""
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_final(self) -> bool:
        return self in (ItemStatus.SUCCEEDED, ItemStatus.FAILED)


class JobState(Enum):
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"


class FailureReason(Enum):
    """Why a session ended in JobState.FAILED."""
    TOOL_FAILED = "tool-failed"
    SPAWN_FAILURE = "spawn-failure"
    AUTH_CANCELLED = "auth-cancelled"
    IO_FAILURE = "io-failure"
    CANCELLED = "cancelled"
    STAGE_FAILED = "stage-failed"


@dataclass
class WorkItem:
    """A named unit inside a job, usually a package name."""
    name: str
    status: ItemStatus = ItemStatus.PENDING
    message: str = ""


@dataclass(frozen=True)
class SessionSnapshot:
    """Consistent read-only copy of a session for one render tick."""
    kind: JobKind
    title: str
    items: tuple
    transcript: tuple
    message: str
    progress: float
    state: JobState
    reason: Optional[FailureReason]
    error: str
    failed_stage: Optional[str]
    completion_seen: bool

    @property
    def terminal(self) -> bool:
        return self.state is not JobState.RUNNING

    @property
    def succeeded(self) -> bool:
        return self.state is JobState.COMPLETE

    def status_map(self) -> dict:
        return {item.name: item.status for item in self.items}


class JobSession:
    """
    Single source of truth for one dialog.

    One worker thread produces; the view reads through snapshot(). A single
    lock guards every field, and snapshot() copies out under it so the lock
    is never held while rendering.

    Once terminal, the transcript is frozen and every item is final or was
    still pending when the job stopped. A succeeded item never changes again.
    """

    def __init__(self, kind: JobKind, items: Iterable[str] = (), title: str = ""):
        self.kind = kind
        self.title = title or kind.value
        self.cancel_token = CancelToken()
        self._lock = threading.Lock()
        self._items: dict[str, WorkItem] = {}
        for name in items:
            if name not in self._items:
                self._items[name] = WorkItem(name)
        self._transcript: list[TranscriptLine] = []
        self._message = ""
        self._progress = 0.0
        self._state = JobState.RUNNING
        self._reason: Optional[FailureReason] = None
        self._error = ""
        self._failed_stage: Optional[str] = None
        self._completion_seen = False

    # -- producer side -----------------------------------------------------

    def append_line(self, text: str, stream: StreamTag = StreamTag.OUT) -> bool:
        """Append a transcript line. Ignored once the session is terminal."""
        with self._lock:
            if self._state is not JobState.RUNNING:
                log.debug("Dropping line after finish: %s", text)
                return False
            self._transcript.append(TranscriptLine(stream, text))
            return True

    def prepend_line(self, text: str, stream: StreamTag = StreamTag.OUT):
        """Insert a summary line at the top of the transcript."""
        with self._lock:
            if self._state is JobState.RUNNING:
                self._transcript.insert(0, TranscriptLine(stream, text))

    def set_item_status(self, name: str, status: ItemStatus, message: Optional[str] = None) -> bool:
        """
        Move an item to a new status.

        Final statuses are sticky, so a late or spurious update can never
        pull a succeeded item back to in-progress. Returns True if changed.
        """
        with self._lock:
            item = self._items.get(name)
            if item is None or item.status.is_final:
                return False
            if item.status is ItemStatus.IN_PROGRESS and status is ItemStatus.PENDING:
                return False
            item.status = status
            if message is not None:
                item.message = message
            return True

    def resolve_open_items(self, status: ItemStatus) -> list[str]:
        """Give every pending/in-progress item a final status."""
        changed = []
        with self._lock:
            for item in self._items.values():
                if not item.status.is_final:
                    item.status = status
                    changed.append(item.name)
        return changed

    def fail_in_progress_items(self) -> list[str]:
        """Downgrade items still in progress to failed; pending ones stay pending."""
        changed = []
        with self._lock:
            for item in self._items.values():
                if item.status is ItemStatus.IN_PROGRESS:
                    item.status = ItemStatus.FAILED
                    changed.append(item.name)
        return changed

    def set_progress_message(self, message: str):
        with self._lock:
            if self._state is JobState.RUNNING:
                self._message = message

    def set_progress(self, fraction: float):
        with self._lock:
            if self._state is JobState.RUNNING:
                self._progress = min(1.0, max(0.0, fraction))

    def mark_completion_seen(self):
        with self._lock:
            self._completion_seen = True

    def set_failed_stage(self, stage: str):
        with self._lock:
            if self._failed_stage is None:
                self._failed_stage = stage

    def finish(self, message: str = ""):
        """Terminate successfully."""
        with self._lock:
            if self._state is not JobState.RUNNING:
                return
            self._state = JobState.COMPLETE
            self._progress = 1.0
            if message:
                self._message = message

    def fail(self, reason: FailureReason, error: str = ""):
        """Terminate with a failure reason. Items still in progress become failed."""
        with self._lock:
            if self._state is not JobState.RUNNING:
                return
            for item in self._items.values():
                if item.status is ItemStatus.IN_PROGRESS:
                    item.status = ItemStatus.FAILED
            self._state = JobState.FAILED
            self._reason = reason
            self._error = error
            self._message = error or reason.value

    def cancel(self):
        """Request cancellation; the worker notices at its next check."""
        log.info("Cancel requested for %s", self.title)
        self.cancel_token.cancel()

    # -- observer side -----------------------------------------------------

    @property
    def items(self) -> list[str]:
        with self._lock:
            return list(self._items)

    def has_item(self, name: str) -> bool:
        with self._lock:
            return name in self._items

    def item_status(self, name: str) -> Optional[ItemStatus]:
        with self._lock:
            item = self._items.get(name)
            return item.status if item else None

    def has_failed_items(self) -> bool:
        with self._lock:
            return any(item.status is ItemStatus.FAILED for item in self._items.values())

    @property
    def terminal(self) -> bool:
        with self._lock:
            return self._state is not JobState.RUNNING

    @property
    def cancelled(self) -> bool:
        return self.cancel_token.cancelled

    def snapshot(self) -> SessionSnapshot:
        with self._lock:
            return SessionSnapshot(
                kind=self.kind,
                title=self.title,
                items=tuple(WorkItem(i.name, i.status, i.message) for i in self._items.values()),
                transcript=tuple(self._transcript),
                message=self._message,
                progress=self._progress,
                state=self._state,
                reason=self._reason,
                error=self._error,
                failed_stage=self._failed_stage,
                completion_seen=self._completion_seen
            )


