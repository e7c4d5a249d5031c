"""
Copyright (c) 2025 Christopher Dorrell. Licensed under GPL-3.0.
"""

from datetime import datetime

import pytest

from rustora.core import (
    FailureReason,
    JobKind,
    JobSession,
    StreamTag,
    make_request,
    read_session_log,
    run,
    write_session_log
)
from rustora.core.joblog import END_MARKER, OUTPUT_MARKER, format_session_log, log_path
from rustora.core.pipeline import line_sink

WHEN = datetime(2025, 3, 14, 15, 9, 26)


def _raw(lines) -> bytes:
    return b"\n".join(line.text.encode("utf-8", "surrogateescape") for line in lines)


def test_log_path_uses_hidden_dir(rustora_home) -> None:
    path = log_path("driver_install", WHEN)
    assert path == str(rustora_home / ".rustora" / "driver_install_2025-03-14_15-09-26.log")


def test_header_block() -> None:
    session = JobSession(JobKind.DRIVER_INSTALL)
    session.append_line("$ bash /tmp/rustora_1_install.sh")
    session.set_failed_stage("module-rebuild")
    session.fail(FailureReason.STAGE_FAILED, "Rebuilding kernel modules failed (exit code: 1)")

    text = format_session_log(session.snapshot(), "driver_install", "nvidia-driver", WHEN)
    rows = text.split("\n")

    assert rows[:8] == [
        "=== Rustora driver_install Log ===",
        "Timestamp: 2025-03-14 15:09:26",
        "Operation: driver_install",
        "Target: nvidia-driver",
        "Status: FAILED",
        "Reason: stage-failed",
        "Failed stage: module-rebuild",
        "",
    ]
    assert rows[8] == OUTPUT_MARKER
    assert rows[-2] == END_MARKER


def test_streamed_bytes_round_trip(make_tool) -> None:
    tool = make_tool("odd-output", """
        import sys
        sys.stdout.buffer.write(b"caf\\xe9 au lait\\n")
        sys.stdout.buffer.write(b"50%\\r75%\\r100%\\n")
        sys.stdout.buffer.write(b"  indented\\ttab\\n")
        sys.stdout.buffer.write(b"\\n")
        sys.stdout.flush()
        sys.stderr.buffer.write(b"warning: \\xff\\xfe\\n")
        sys.stderr.flush()
    """)
    session = JobSession(JobKind.INSTALL)
    run(make_request([tool]), on_line=line_sink(session))
    session.finish("Operation completed successfully")
    snapshot = session.snapshot()

    path = write_session_log(snapshot, "install", "odd-output", WHEN)
    header, lines = read_session_log(path)

    assert header["Status"] == "SUCCESS"
    assert header["Operation"] == "install"
    out = [line for line in lines if line.stream is StreamTag.OUT]
    err = [line for line in lines if line.stream is StreamTag.ERR]
    assert _raw(out) == b"caf\xe9 au lait\n50%\r75%\r100%\n  indented\ttab\n"
    assert _raw(err) == b"warning: \xff\xfe"


def test_round_trip_keeps_stream_tags() -> None:
    session = JobSession(JobKind.REMOVE)
    session.append_line("Removing: vim-9.0-1.fc40.x86_64")
    session.append_line("Error: could not remove", StreamTag.ERR)
    session.fail(FailureReason.TOOL_FAILED, "Operation failed (exit code: 1)")
    snapshot = session.snapshot()

    _, lines = read_session_log(write_session_log(snapshot, "remove", "vim", WHEN))

    assert lines == list(snapshot.transcript)


def test_write_failure_returns_none(monkeypatch, tmp_path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("file", encoding="utf-8")
    monkeypatch.setenv("RUSTORA_HOME", str(blocker / "logs"))
    session = JobSession(JobKind.INSTALL)
    session.finish()

    assert write_session_log(session.snapshot(), "install") is None


def test_read_rejects_other_files(tmp_path) -> None:
    path = tmp_path / "random.log"
    path.write_text("hello\nworld\n", encoding="utf-8")

    with pytest.raises(ValueError):
        read_session_log(str(path))
