"""
Rustora - Progress Heuristic

Guesses per-package progress from dnf and flatpak output lines.

The guess is advisory. The exit code decides whether a job succeeded;
this only drives the status list and the progress text while it runs.

Copyright (c) 2025 Christopher Dorrell. Licensed under GPL-3.0.
"""

import re
from typing import Optional

from .commands import StreamTag
from .logger import get_logger
from .session import ItemStatus, JobSession

log = get_logger('rustora.progress')

ARCH_SUFFIXES = {
    'x86_64', 'noarch', 'i686', 'i386', 'aarch64', 'armv7hl',
    'ppc64le', 's390x', 'src',
}

# Action lines: "Installing: vim-9.0-1.fc40.x86_64" or dnf4's "  Installing   : ... 1/3"
_ACTION_RE = re.compile(
    r'^\s*(installing|upgrading|reinstalling|downgrading|removing|erasing|'
    r'installed|upgraded|reinstalled|downgraded|removed|erased)\s*:\s*(.*)$',
    re.IGNORECASE
)
_COUNTER_RE = re.compile(r'^(\d+)/(\d+)$')
_VERSION_RE = re.compile(r'^(.+?)-(?:\d+:)?\d')
_COMPLETE_RE = re.compile(r'\b(?:complete|completed|finished)\b|\bnothing to do\b', re.IGNORECASE)
_NOT_COMPLETE_RE = re.compile(r'nothing to complete|\bincomplete\b', re.IGNORECASE)

ERROR_INDICATORS = (
    'error', 'failed', 'cannot', 'nothing provides', 'conflict',
    'no match for argument', 'unable to find',
)

ALREADY_INSTALLED = 'already installed'

STARTED_ACTIONS = {
    'installing': 'Installing',
    'upgrading': 'Upgrading',
    'reinstalling': 'Reinstalling',
    'downgrading': 'Downgrading',
    'removing': 'Removing',
    'erasing': 'Removing',
}
FINISHED_ACTIONS = {'installed', 'upgraded', 'reinstalled', 'downgraded', 'removed', 'erased'}


def strip_arch(token: str) -> str:
    """Drop a trailing .arch suffix (vim-9.0-1.fc40.x86_64 -> vim-9.0-1.fc40)."""
    head, dot, tail = token.rpartition('.')
    if dot and tail in ARCH_SUFFIXES:
        return head
    return token


def base_name(token: str) -> str:
    """
    Package name without version, release and arch.

    The name ends before the first hyphen that is followed by a digit
    (an optional epoch like 2: is allowed), e.g. vim-enhanced-2:9.0-1 -> vim-enhanced.
    """
    token = strip_arch(token)
    match = _VERSION_RE.match(token)
    return match.group(1) if match else token


def mentions(line: str, name: str) -> Optional[re.Match]:
    """Find name in line as a whole package name, allowing a version suffix."""
    pattern = r'(?<![\w.+-])' + re.escape(name) + r'(?![\w+])(?!-(?!\d))'
    return re.search(pattern, line)


class ProgressHeuristic:
    """
    Classifies output lines and updates a JobSession.

    Rules, first match wins:
      installing:/upgrading:/removing:  item in progress
      installed:/upgraded:/removed:     item succeeded
      downloading                       top-line "Downloading packages..."
      verifying                         top-line "Verifying packages..."
      already installed                 mentioned items succeeded
      complete/finished/nothing to do   open items succeeded
      error words + a known item        that item failed
    Anything else only lands in the transcript.
    """

    def __init__(self):
        self._section: Optional[ItemStatus] = None

    def observe(self, line: str, stream: StreamTag, session: JobSession):
        if self._section is not None:
            if line[:1].isspace() and line.strip():
                for name in self._resolve_tokens(line.split(), session):
                    session.set_item_status(name, self._section)
                return
            self._section = None

        lowered = line.lower()

        match = _ACTION_RE.match(line)
        if match:
            self._observe_action(match.group(1).lower(), match.group(2), session)
            return

        if 'downloading' in lowered:
            session.set_progress_message("Downloading packages…")
            return

        if 'verifying' in lowered:
            session.set_progress_message("Verifying packages…")
            return

        if ALREADY_INSTALLED in lowered:
            for name in self._mentioned(line, session):
                session.set_item_status(name, ItemStatus.SUCCEEDED, "Already installed")
            return

        has_error = any(word in lowered for word in ERROR_INDICATORS)

        if _COMPLETE_RE.search(line) and not _NOT_COMPLETE_RE.search(line) and not has_error:
            session.mark_completion_seen()
            resolved = session.resolve_open_items(ItemStatus.SUCCEEDED)
            if resolved:
                log.debug("Completion line resolved: %s", ", ".join(resolved))
            session.set_progress_message("Complete")
            return

        if has_error:
            for name in self._mentioned(line, session):
                if session.set_item_status(name, ItemStatus.FAILED, line.strip()):
                    log.debug("Marked %s failed from %s output", name, stream.value)

    def _observe_action(self, action: str, remainder: str, session: JobSession):
        tokens = remainder.split()
        counter = None
        if tokens and _COUNTER_RE.match(tokens[-1]):
            counter = _COUNTER_RE.match(tokens.pop())

        if action in FINISHED_ACTIONS:
            if not tokens:
                self._section = ItemStatus.SUCCEEDED
                return
            for name in self._resolve_tokens(tokens, session):
                session.set_item_status(name, ItemStatus.SUCCEEDED)
        else:
            verb = STARTED_ACTIONS[action]
            for name in self._resolve_tokens(tokens[:1], session):
                message = f"{verb} {name}"
                if session.set_item_status(name, ItemStatus.IN_PROGRESS, message):
                    session.set_progress_message(message)

        if counter:
            current, total = int(counter.group(1)), int(counter.group(2))
            if total > 0:
                session.set_progress(min(current / total, 0.99))

    def _resolve_tokens(self, tokens: list[str], session: JobSession) -> list[str]:
        names = session.items
        found = []
        for token in tokens:
            name = resolve_item(token, names)
            if name and name not in found:
                found.append(name)
        return found

    def _mentioned(self, line: str, session: JobSession) -> list[str]:
        """
        Items named in a free-form line.

        A name that only matches inside the span of a longer matching name
        (vim inside vim-enhanced) is not counted.
        """
        spans = {}
        for name in session.items:
            match = mentions(line, name)
            if match:
                spans[name] = match.span()
        unambiguous = []
        for name, (start, end) in spans.items():
            inside_longer = any(
                other != name and o_start <= start and end <= o_end and (o_end - o_start) > (end - start)
                for other, (o_start, o_end) in spans.items()
            )
            if not inside_longer:
                unambiguous.append(name)
        return unambiguous


def resolve_item(token: str, names: list[str]) -> Optional[str]:
    """
    Match an output token like vim-9.0-1.fc40.x86_64 to a work item name.

    Exact base-name matches win; otherwise the longest item name that is a
    prefix of the token, ending at a '-', '.' or ':' boundary.
    """
    token = token.strip(',;')
    if not token:
        return None
    base = base_name(token)
    if base in names:
        return base
    stripped = strip_arch(token)
    if stripped in names:
        return stripped
    best = None
    for name in names:
        if not stripped.startswith(name):
            continue
        if len(stripped) > len(name) and stripped[len(name)] not in '-.:':
            continue
        if best is None or len(name) > len(best):
            best = name
    return best
