"""
Rustora - Session Logs

Every finished job leaves a plain-text log in the hidden Rustora directory:
a short header block followed by the full transcript.

Copyright (c) 2025 Christopher Dorrell. Licensed under GPL-3.0.
"""

import os
from datetime import datetime
from typing import Optional

from .commands import STDERR_PREFIX, StreamTag, TranscriptLine
from .config import data_dir
from .logger import get_logger
from .session import SessionSnapshot

log = get_logger('rustora.joblog')

OUTPUT_MARKER = '--- Command Output ---'
END_MARKER = '--- End of Log ---'
TIMESTAMP_FORMAT = '%Y-%m-%d_%H-%M-%S'

# Undecodable bytes were carried through as surrogates; write them back unchanged
_ENCODING = dict(encoding='utf-8', errors='surrogateescape', newline='\n')


def log_dir() -> str:
    return data_dir()


def log_path(operation: str, when: Optional[datetime] = None) -> str:
    """<log_dir>/<operation>_<timestamp>.log"""
    when = when or datetime.now()
    safe_operation = operation.replace('/', '_').replace(' ', '_')
    return os.path.join(log_dir(), f"{safe_operation}_{when.strftime(TIMESTAMP_FORMAT)}.log")


def format_session_log(
    snapshot: SessionSnapshot,
    operation: str,
    target: str = "",
    when: Optional[datetime] = None
) -> str:
    when = when or datetime.now()
    lines = [
        f"=== Rustora {operation} Log ===",
        f"Timestamp: {when.strftime('%Y-%m-%d %H:%M:%S')}",
        f"Operation: {operation}",
        f"Target: {target}",
        f"Status: {'SUCCESS' if snapshot.succeeded else 'FAILED'}",
    ]
    if snapshot.reason is not None:
        lines.append(f"Reason: {snapshot.reason.value}")
    if snapshot.failed_stage:
        lines.append(f"Failed stage: {snapshot.failed_stage}")
    lines.append("")
    lines.append(OUTPUT_MARKER)
    lines.extend(line.render() for line in snapshot.transcript)
    lines.append(END_MARKER)
    return '\n'.join(lines) + '\n'


def write_session_log(
    snapshot: SessionSnapshot,
    operation: str,
    target: str = "",
    when: Optional[datetime] = None
) -> Optional[str]:
    """
    Write a session's transcript to disk.

    Best effort: failures are logged and None is returned, the dialog
    never hears about it.
    """
    when = when or datetime.now()
    path = log_path(operation, when)
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, 'w', **_ENCODING) as f:
            f.write(format_session_log(snapshot, operation, target, when))
    except OSError as e:
        log.error("Failed to write log file %s: %s", path, e)
        return None
    log.info("Log written to %s", path)
    return path


def parse_line(rendered: str) -> TranscriptLine:
    if rendered.startswith(STDERR_PREFIX):
        return TranscriptLine(StreamTag.ERR, rendered[len(STDERR_PREFIX):])
    return TranscriptLine(StreamTag.OUT, rendered)


def read_session_log(path: str) -> tuple[dict, list[TranscriptLine]]:
    """
    Read a session log back.

    Returns:
        (header fields, transcript lines with their stream tags restored)
    """
    with open(path, 'r', **_ENCODING) as f:
        content = f.read()

    # split('\n') rather than splitlines(): a transcript line may carry a bare \r
    rows = content.split('\n')
    if rows and rows[-1] == '':
        rows.pop()

    header = {}
    try:
        start = rows.index(OUTPUT_MARKER)
    except ValueError:
        raise ValueError(f"{path} is not a Rustora session log")
    for row in rows[:start]:
        key, sep, value = row.partition(': ')
        if sep:
            header[key] = value

    body = rows[start + 1:]
    if body and body[-1] == END_MARKER:
        body = body[:-1]
    else:
        log.warning("Session log %s is truncated", path)

    return header, [parse_line(row) for row in body]
