"""
Copyright (c) 2025 Christopher Dorrell. Licensed under GPL-3.0.
"""

import logging

from rustora.core import get_logger, is_debug_enabled, make_request, run, setup_logging


def test_console_lines_carry_dialog_and_level(capsys) -> None:
    setup_logging(dialog="install-dialog")
    log = get_logger("pipeline")

    log.warning("disk almost full")
    log.info("starting")
    log.debug("not shown")

    assert capsys.readouterr().err.splitlines() == [
        "(install-dialog) [rustora.pipeline] Warning: disk almost full",
        "(install-dialog) [rustora.pipeline] starting",
    ]
    assert not is_debug_enabled()


def test_debug_from_environment(monkeypatch, capsys) -> None:
    monkeypatch.setenv("RUSTORA_DEBUG", "1")
    setup_logging()

    get_logger("rustora.archive").debug("magic bytes: 1f 8b")

    assert is_debug_enabled()
    assert capsys.readouterr().err == "[rustora.archive] magic bytes: 1f 8b\n"


def test_setup_replaces_handlers() -> None:
    setup_logging()
    setup_logging(verbose=True)

    assert len(logging.getLogger("rustora").handlers) == 1


def test_log_file_records_command_output(tmp_path, make_tool, capsys) -> None:
    path = tmp_path / "rustora.log"
    setup_logging(log_file=str(path))
    tool = make_tool("chatty", """
        print("hello from child")
    """)

    run(make_request([tool]))

    assert is_debug_enabled()
    text = path.read_text(encoding="utf-8")
    assert f"{tool} out| hello from child" in text
    assert "DEBUG" in text
    assert "hello from child" not in capsys.readouterr().err


def test_unopenable_log_file_is_a_warning(tmp_path, capsys) -> None:
    logger = setup_logging(log_file=str(tmp_path / "missing" / "rustora.log"))

    assert len(logger.handlers) == 1
    assert "Warning: Could not open log file" in capsys.readouterr().err
