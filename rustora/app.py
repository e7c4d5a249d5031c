"""
Rustora - GTK4 Application

Hosts one JobWindow for the dialog subcommand this process was started
with. Each dialog is its own process, so the application is non-unique.

Copyright (c) 2025 Christopher Dorrell. Licensed under GPL-3.0.
"""

import sys

import gi

gi.require_version('Gtk', '4.0')
gi.require_version('Adw', '1')

from gi.repository import Adw, Gio

from . import __app_id__
from .core import get_logger, start_job
from .ui import JobWindow

log = get_logger('rustora.app')

APP_ID = __app_id__

# Seconds to let the worker finish its log after the window closes
SHUTDOWN_TIMEOUT = 5.0


class RustoraApp(Adw.Application):
    """Application running a single dialog job."""

    def __init__(self, job):
        super().__init__(
            application_id=APP_ID,
            flags=Gio.ApplicationFlags.NON_UNIQUE
        )

        self.job = job
        self.session = None
        self.worker = None
        self.window = None

        self.connect('activate', self.on_activate)
        self.connect('shutdown', self.on_shutdown)

    def on_activate(self, app):
        """Create the window and start the job."""
        if self.window is not None:
            self.window.present()
            return

        self.session = self.job.new_session()
        self.window = JobWindow(self, self.session)
        self.window.present()
        log.info("Starting %s", self.session.title)
        self.worker = start_job(self.session, self.job.runner)

    def on_shutdown(self, app):
        if self.session is not None and not self.session.terminal:
            self.session.cancel()
        if self.worker is not None:
            self.worker.join(timeout=SHUTDOWN_TIMEOUT)
            if self.worker.is_alive():
                log.warning("Job %s still running at exit", self.session.title)


def run_dialog(job) -> int:
    """Run the GUI for a dialog job. Returns the process exit code."""
    app = RustoraApp(job)
    # GApplication must not see the dialog arguments
    app.run([sys.argv[0]])
    return 0
