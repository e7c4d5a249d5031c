"""
Shared fixtures: fake system tools on disk and settings that point at them.

Copyright (c) 2025 Christopher Dorrell. Licensed under GPL-3.0.
"""

import functools
import logging
import stat
import sys
import textwrap
import threading
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path

import pytest

from rustora.core import CoreSettings, reset_profile_cache, reset_settings

# Stands in for pkexec: runs its arguments as-is, in place
FAKE_HELPER = """
import os
import sys
os.execvp(sys.argv[1], sys.argv[1:])
"""


def write_tool(directory: Path, name: str, body: str) -> Path:
    """Write an executable Python script that acts as a system tool."""
    path = directory / name
    path.write_text(f"#!{sys.executable}\n" + textwrap.dedent(body), encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture(autouse=True)
def rustora_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Keep settings, session logs and staging dirs inside the test's tmp dir."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("RUSTORA_HOME", str(home / ".rustora"))
    reset_settings()
    reset_profile_cache()
    yield home
    reset_settings()
    reset_profile_cache()
    # cli.main installs handlers bound to the captured stream or a tmp file
    logger = logging.getLogger("rustora")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def tool_dir(tmp_path: Path) -> Path:
    path = tmp_path / "bin"
    path.mkdir()
    return path


@pytest.fixture
def make_tool(tool_dir: Path):
    def factory(name: str, body: str) -> str:
        return str(write_tool(tool_dir, name, body))
    return factory


@pytest.fixture
def settings(tmp_path: Path, make_tool) -> CoreSettings:
    """Settings whose elevation helper just execs the wrapped command."""
    return CoreSettings(
        elevation_helper=make_tool("fake-pkexec", FAKE_HELPER),
        runtime_destination=str(tmp_path / "compat"),
        cancel_grace=0.3,
        extract_tick=0.02,
        download_timeout=10.0,
        profile_cache_dir=str(tmp_path / "cache")
    )


class QuietHandler(SimpleHTTPRequestHandler):
    def log_message(self, format, *args):
        pass


@pytest.fixture
def http_root(tmp_path: Path):
    """Serve a directory over HTTP on localhost. Yields (directory, base_url)."""
    root = tmp_path / "www"
    root.mkdir()
    handler = functools.partial(QuietHandler, directory=str(root))
    server = ThreadingHTTPServer(("127.0.0.1", 0), handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield root, f"http://127.0.0.1:{server.server_address[1]}"
    finally:
        server.shutdown()
        server.server_close()
