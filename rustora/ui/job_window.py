"""
Rustora - Job Window

The window every dialog subcommand opens: status line, progress bar,
monospace transcript and Cancel/Close buttons. It only reads the job's
session through snapshot(); the worker thread never touches a widget.

Copyright (c) 2025 Christopher Dorrell. Licensed under GPL-3.0.
"""

import gi

gi.require_version('Gtk', '4.0')
gi.require_version('Adw', '1')

from gi.repository import Gtk, Adw, GLib

from ..core import get_logger
from ..core.session import ItemStatus, JobSession

log = get_logger('rustora.ui')

# Render tick in milliseconds
REFRESH_INTERVAL = 100

STATUS_ICONS = {
    ItemStatus.PENDING: "content-loading-symbolic",
    ItemStatus.IN_PROGRESS: "emblem-synchronizing-symbolic",
    ItemStatus.SUCCEEDED: "emblem-ok-symbolic",
    ItemStatus.FAILED: "dialog-error-symbolic",
}


class JobWindow(Adw.ApplicationWindow):
    """Window showing the live state of one JobSession."""

    def __init__(self, app, session: JobSession):
        super().__init__(application=app)

        self.session = session
        self._shown_lines = 0
        self._item_rows = {}
        self._timer_id = None
        self._close_when_done = False

        self.set_title(session.title)
        self.set_default_size(720, 520)

        self._build_ui()
        self.connect("close-request", self._on_close_request)
        self._timer_id = GLib.timeout_add(REFRESH_INTERVAL, self._refresh)

    def _build_ui(self):
        """Build window UI."""
        toolbar_view = Adw.ToolbarView()
        self.set_content(toolbar_view)

        header = Adw.HeaderBar()
        header.set_show_end_title_buttons(False)
        toolbar_view.add_top_bar(header)

        self.cancel_btn = Gtk.Button(label="Cancel")
        self.cancel_btn.add_css_class("destructive-action")
        self.cancel_btn.connect("clicked", self._on_cancel)
        header.pack_start(self.cancel_btn)

        self.close_btn = Gtk.Button(label="Close")
        self.close_btn.set_sensitive(False)
        self.close_btn.connect("clicked", lambda b: self.close())
        header.pack_end(self.close_btn)

        content = Gtk.Box(orientation=Gtk.Orientation.VERTICAL, spacing=12)
        content.set_margin_top(20)
        content.set_margin_bottom(20)
        content.set_margin_start(20)
        content.set_margin_end(20)
        toolbar_view.set_content(content)

        self.status_label = Gtk.Label(label="Starting...")
        self.status_label.add_css_class("title-3")
        self.status_label.set_halign(Gtk.Align.START)
        self.status_label.set_wrap(True)
        content.append(self.status_label)

        self.progress = Gtk.ProgressBar()
        self.progress.set_show_text(True)
        content.append(self.progress)

        items = self.session.items
        if items:
            self.items_list = Gtk.ListBox()
            self.items_list.set_selection_mode(Gtk.SelectionMode.NONE)
            self.items_list.add_css_class("boxed-list")
            for name in items:
                row = Adw.ActionRow(title=name)
                icon = Gtk.Image.new_from_icon_name(STATUS_ICONS[ItemStatus.PENDING])
                row.add_suffix(icon)
                self.items_list.append(row)
                self._item_rows[name] = (row, icon)
            content.append(self.items_list)

        scrolled = Gtk.ScrolledWindow()
        scrolled.set_policy(Gtk.PolicyType.AUTOMATIC, Gtk.PolicyType.AUTOMATIC)
        scrolled.set_vexpand(True)
        scrolled.set_min_content_height(200)
        content.append(scrolled)
        self.scrolled = scrolled

        self.output_view = Gtk.TextView()
        self.output_view.set_editable(False)
        self.output_view.set_cursor_visible(False)
        self.output_view.set_monospace(True)
        self.output_view.set_wrap_mode(Gtk.WrapMode.WORD_CHAR)
        scrolled.set_child(self.output_view)

        self.output_buffer = self.output_view.get_buffer()

    def _append_output(self, lines: list[str]):
        end = self.output_buffer.get_end_iter()
        self.output_buffer.insert(end, ''.join(f"{line}\n" for line in lines))
        adjustment = self.scrolled.get_vadjustment()
        adjustment.set_value(adjustment.get_upper())

    def _refresh(self):
        """Render one snapshot. Returns False once the job is over."""
        snapshot = self.session.snapshot()

        transcript = snapshot.transcript
        if snapshot.terminal and self._shown_lines and len(transcript) > self._shown_lines:
            # A summary line may have been prepended at the end; redraw everything
            self.output_buffer.set_text('')
            self._shown_lines = 0
        if len(transcript) > self._shown_lines:
            new_lines = [line.render() for line in transcript[self._shown_lines:]]
            self._append_output(new_lines)
            self._shown_lines = len(transcript)

        for item in snapshot.items:
            row_icon = self._item_rows.get(item.name)
            if row_icon:
                row, icon = row_icon
                icon.set_from_icon_name(STATUS_ICONS[item.status])
                row.set_subtitle(GLib.markup_escape_text(item.message or item.status.value))

        if snapshot.message:
            self.status_label.set_text(snapshot.message)
        self.progress.set_fraction(snapshot.progress)

        if not snapshot.terminal:
            return True

        self._timer_id = None
        self.cancel_btn.set_sensitive(False)
        self.close_btn.set_sensitive(True)
        if snapshot.succeeded:
            self.status_label.add_css_class("success")
            self.progress.set_fraction(1.0)
        else:
            self.status_label.add_css_class("error")
            if snapshot.failed_stage:
                self.status_label.set_text(f"{snapshot.message} (stage: {snapshot.failed_stage})")
        if self._close_when_done:
            self.close()
        return False

    def _on_cancel(self, button):
        button.set_sensitive(False)
        self.status_label.set_text("Cancelling...")
        self.session.cancel()

    def _on_close_request(self, window):
        if not self.session.terminal:
            # Keep the window until the child is gone, then close
            self._close_when_done = True
            self._on_cancel(self.cancel_btn)
            return True
        if self._timer_id is not None:
            GLib.source_remove(self._timer_id)
            self._timer_id = None
        return False
