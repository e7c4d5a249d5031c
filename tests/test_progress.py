"""
Copyright (c) 2025 Christopher Dorrell. Licensed under GPL-3.0.
"""

import pytest

from rustora.core import ItemStatus, JobKind, JobSession, ProgressHeuristic, StreamTag
from rustora.core.progress import base_name, resolve_item, strip_arch


def _feed(session: JobSession, lines, stream: StreamTag = StreamTag.OUT) -> None:
    heuristic = ProgressHeuristic()
    for line in lines:
        session.append_line(line, stream)
        heuristic.observe(line, stream, session)


def test_complete_resolves_items_never_mentioned() -> None:
    session = JobSession(JobKind.UPDATE, ["alpha", "beta", "gamma"])
    _feed(session, [
        "Installing: alpha-1.0-1.fc40.x86_64",
        "Installing: beta-1.0-1.fc40.x86_64",
        "Installed: alpha-1.0-1.fc40.x86_64",
        "Installed: beta-1.0-1.fc40.x86_64",
        "Complete!",
    ])
    snapshot = session.snapshot()

    assert snapshot.status_map() == {
        "alpha": ItemStatus.SUCCEEDED,
        "beta": ItemStatus.SUCCEEDED,
        "gamma": ItemStatus.SUCCEEDED,
    }
    assert snapshot.completion_seen
    # Only the coordinator ends a session
    assert not snapshot.terminal


def test_install_lines_drive_item_status() -> None:
    session = JobSession(JobKind.INSTALL, ["vim"])
    heuristic = ProgressHeuristic()

    heuristic.observe("Installing: vim-9.0-1.fc40.x86_64", StreamTag.OUT, session)
    assert session.item_status("vim") is ItemStatus.IN_PROGRESS
    assert session.snapshot().message == "Installing vim"

    heuristic.observe("Installed: vim-9.0-1.fc40.x86_64", StreamTag.OUT, session)
    assert session.item_status("vim") is ItemStatus.SUCCEEDED


def test_succeeded_never_regresses() -> None:
    session = JobSession(JobKind.INSTALL, ["vim"])
    _feed(session, [
        "Installed: vim-9.0-1.fc40.x86_64",
        "Installing: vim-9.0-1.fc40.x86_64",
        "Error: vim failed to do something",
        "Removing: vim-9.0-1.fc40.x86_64",
    ])

    assert session.item_status("vim") is ItemStatus.SUCCEEDED


def test_dnf4_counter_sets_progress() -> None:
    session = JobSession(JobKind.INSTALL, ["vim-enhanced", "vim-common"])
    heuristic = ProgressHeuristic()

    heuristic.observe("  Installing       : vim-enhanced-2:9.0-1.fc40.x86_64        1/2",
                      StreamTag.OUT, session)

    snapshot = session.snapshot()
    assert snapshot.status_map()["vim-enhanced"] is ItemStatus.IN_PROGRESS
    assert snapshot.status_map()["vim-common"] is ItemStatus.PENDING
    assert snapshot.progress == pytest.approx(0.5)


def test_counter_never_reports_full_progress() -> None:
    session = JobSession(JobKind.INSTALL, ["vim"])
    ProgressHeuristic().observe("  Installing : vim-9.0-1.fc40.x86_64  2/2", StreamTag.OUT, session)

    assert session.snapshot().progress < 1.0


def test_summary_section_marks_listed_packages() -> None:
    session = JobSession(JobKind.INSTALL, ["vim-enhanced", "vim-common", "git"])
    _feed(session, [
        "Installed:",
        "  vim-enhanced-2:9.0-1.fc40.x86_64   vim-common-2:9.0-1.fc40.x86_64",
        "",
        "Something else entirely",
    ])

    status = session.snapshot().status_map()
    assert status["vim-enhanced"] is ItemStatus.SUCCEEDED
    assert status["vim-common"] is ItemStatus.SUCCEEDED
    assert status["git"] is ItemStatus.PENDING


def test_error_goes_to_longest_matching_name() -> None:
    session = JobSession(JobKind.INSTALL, ["vim", "vim-enhanced"])
    _feed(session, ["Error: nothing provides libfoo needed by vim-enhanced-9.0-1.fc40.x86_64"],
          StreamTag.ERR)

    status = session.snapshot().status_map()
    assert status["vim-enhanced"] is ItemStatus.FAILED
    assert status["vim"] is ItemStatus.PENDING


def test_no_match_marks_item_failed() -> None:
    session = JobSession(JobKind.INSTALL, ["nopkg"])
    _feed(session, ["No match for argument: nopkg"], StreamTag.ERR)

    assert session.item_status("nopkg") is ItemStatus.FAILED


def test_already_installed_counts_as_success() -> None:
    session = JobSession(JobKind.INSTALL, ["vim", "git"])
    _feed(session, ["Package vim-9.0-1.fc40.x86_64 is already installed."])

    snapshot = session.snapshot()
    assert snapshot.status_map() == {"vim": ItemStatus.SUCCEEDED, "git": ItemStatus.PENDING}
    assert snapshot.items[0].message == "Already installed"


@pytest.mark.parametrize("line", [
    "Dependency resolver: nothing to complete",
    "Transaction incomplete",
    "Error: transaction check failed, operation not completed",
])
def test_lines_that_are_not_completion(line) -> None:
    session = JobSession(JobKind.UPDATE, ["vim"])
    _feed(session, [line])

    snapshot = session.snapshot()
    assert not snapshot.completion_seen
    assert snapshot.status_map()["vim"] is not ItemStatus.SUCCEEDED


def test_nothing_to_do_is_completion() -> None:
    session = JobSession(JobKind.UPDATE, ["vim"])
    _feed(session, ["Dependencies resolved.", "Nothing to do."])

    snapshot = session.snapshot()
    assert snapshot.completion_seen
    assert snapshot.status_map()["vim"] is ItemStatus.SUCCEEDED


def test_download_and_verify_messages() -> None:
    session = JobSession(JobKind.UPDATE)
    heuristic = ProgressHeuristic()

    heuristic.observe("Downloading Packages:", StreamTag.OUT, session)
    assert session.snapshot().message == "Downloading packages…"
    heuristic.observe("  Verifying        : vim-9.0-1.fc40.x86_64", StreamTag.OUT, session)
    assert session.snapshot().message == "Verifying packages…"


def test_unrecognised_lines_change_nothing() -> None:
    session = JobSession(JobKind.INSTALL, ["vim"])
    _feed(session, ["Last metadata expiration check: 0:12:01 ago.", "Transaction Summary"])

    snapshot = session.snapshot()
    assert snapshot.status_map()["vim"] is ItemStatus.PENDING
    assert snapshot.message == ""


@pytest.mark.parametrize("token,expected", [
    ("vim-9.0-1.fc40.x86_64", "vim"),
    ("vim-enhanced-2:9.0-1.fc40.x86_64", "vim-enhanced"),
    ("python3-gobject-3.46.0-1.fc40.noarch", "python3-gobject"),
    ("kernel", "kernel"),
])
def test_base_name(token, expected) -> None:
    assert base_name(token) == expected


def test_strip_arch_leaves_unknown_suffix() -> None:
    assert strip_arch("vim-9.0-1.fc40.x86_64") == "vim-9.0-1.fc40"
    assert strip_arch("org.gnome.Calculator") == "org.gnome.Calculator"


def test_resolve_item_prefers_exact_then_longest() -> None:
    names = ["vim", "vim-enhanced", "org.gnome.Calculator"]
    assert resolve_item("vim-enhanced-9.0-1.fc40.x86_64", names) == "vim-enhanced"
    assert resolve_item("vim-9.0-1.fc40.x86_64", names) == "vim"
    assert resolve_item("org.gnome.Calculator", names) == "org.gnome.Calculator"
    assert resolve_item("vimdiff-1.0", names) is None
