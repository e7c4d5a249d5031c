"""
Rustora - Dialog Dispatch

Every job dialog runs as a fresh Rustora process started with a dialog
subcommand. Structured arguments travel as URL-safe base64 JSON blobs so
whitespace and odd characters survive the command line.

Usage:
    rustora install-dialog vim git
    rustora update-dialog [PACKAGES_B64]
    rustora maintenance-dialog clean-package-cache
    rustora proton-install-dialog GE-Proton GE-Proton9-1 https://.../GE-Proton9-1.tar.gz
    rustora --headless remove-dialog vim

Copyright (c) 2025 Christopher Dorrell. Licensed under GPL-3.0.
"""

import argparse
import base64
import binascii
import json
import sys
import time
from dataclasses import dataclass, field, fields
from typing import Any, Callable, Optional

from . import __app_name__, __version__
from .core import (
    CoreSettings,
    DeviceInfo,
    DriverProfile,
    JobKind,
    JobSession,
    MaintenanceTask,
    PackageManager,
    get_logger,
    load_settings,
    rpm_item_name,
    setup_logging,
    start_job
)
from .core import hardware, pipeline

log = get_logger('rustora.cli')

# Headless render tick in seconds
HEADLESS_POLL = 0.1


def encode_arg(obj: Any) -> str:
    """JSON-encode a value and wrap it in URL-safe base64."""
    raw = json.dumps(obj, ensure_ascii=False).encode('utf-8')
    return base64.urlsafe_b64encode(raw).decode('ascii')


def decode_arg(text: str) -> Any:
    """
    Reverse encode_arg. Standard-alphabet and unpadded input is accepted.

    Raises:
        ValueError: not base64, not UTF-8 or not JSON
    """
    text = text.strip().replace('+', '-').replace('/', '_')
    text += '=' * (-len(text) % 4)
    try:
        raw = base64.urlsafe_b64decode(text.encode('ascii'))
        return json.loads(raw.decode('utf-8'))
    except (binascii.Error, UnicodeError, ValueError) as e:
        raise ValueError(f"Invalid encoded argument: {e}")


def dialog_argv(subcommand: str, *args: str) -> list[str]:
    """argv that relaunches Rustora as a dialog process."""
    return [sys.executable, '-m', 'rustora', subcommand, *args]


@dataclass
class DialogJob:
    """What a dialog subcommand asked for, ready to become a session."""
    kind: JobKind
    title: str
    target: str
    runner: Callable[[JobSession], Any]
    items: list[str] = field(default_factory=list)

    def new_session(self) -> JobSession:
        return JobSession(self.kind, self.items, self.title)


def _bad_argument(message: str):
    sys.stderr.write(f"rustora: error: {message}\n")
    raise SystemExit(2)


def _decode_list(text: Optional[str], what: str) -> list[str]:
    if not text:
        return []
    try:
        value = decode_arg(text)
    except ValueError as e:
        _bad_argument(f"{what}: {e}")
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        _bad_argument(f"{what}: expected a list of strings")
    return value


def _decode_object(text: str, what: str) -> dict:
    try:
        value = decode_arg(text)
    except ValueError as e:
        _bad_argument(f"{what}: {e}")
    if not isinstance(value, dict):
        _bad_argument(f"{what}: expected an object")
    return value


def _device_from(data: dict) -> DeviceInfo:
    known = {f.name for f in fields(DeviceInfo)}
    return DeviceInfo(**{k: v for k, v in data.items() if k in known})


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='rustora',
        description=f"{__app_name__} - package management dialogs for Fedora"
    )
    parser.add_argument('--version', action='version', version=f"{__app_name__} v{__version__}")
    parser.add_argument('--debug', action='store_true', help="Verbose logging (same as RUSTORA_DEBUG=1)")
    parser.add_argument('--log-file', metavar='PATH',
                        help="Also write a debug log, including command output, to PATH")
    parser.add_argument('--headless', action='store_true',
                        help="Run the job in the terminal instead of opening a window")

    sub = parser.add_subparsers(dest='command', metavar='COMMAND')

    p = sub.add_parser('install-dialog', help="Install packages")
    p.add_argument('packages', nargs='*')
    p.add_argument('--packages-b64')

    p = sub.add_parser('remove-dialog', help="Remove packages")
    p.add_argument('packages', nargs='*')
    p.add_argument('--packages-b64')

    p = sub.add_parser('update-dialog', help="Upgrade packages (all when none are given)")
    p.add_argument('packages_b64', nargs='?', metavar='PACKAGES_B64')

    p = sub.add_parser('rpm-dialog', help="Install a local RPM file")
    p.add_argument('rpm_file')

    p = sub.add_parser('flatpak-install-dialog', help="Install a flatpak")
    p.add_argument('application_id')
    p.add_argument('--remote')

    p = sub.add_parser('flatpak-remove-dialog', help="Uninstall flatpaks")
    p.add_argument('application_ids', nargs='+')

    p = sub.add_parser('flatpak-update-dialog', help="Update flatpaks (all when none are given)")
    p.add_argument('--packages-b64')

    p = sub.add_parser('maintenance-dialog', help="Run a maintenance task")
    p.add_argument('task', choices=[t.value for t in MaintenanceTask])

    p = sub.add_parser('kernel-install-dialog', help="Install a kernel with headers")
    p.add_argument('kernel_name')

    p = sub.add_parser('kernel-remove-dialog', help="Remove a kernel")
    p.add_argument('kernel_name')

    p = sub.add_parser('proton-install-dialog', help="Download and install a compatibility tool")
    p.add_argument('runner_title')
    p.add_argument('build_title')
    p.add_argument('download_url')
    p.add_argument('--launcher')
    p.add_argument('--destination')

    for name, help_text in (('device-install-dialog', "Install a driver profile"),
                            ('device-remove-dialog', "Remove a driver profile")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument('--profile-b64', required=True)
        p.add_argument('--device-b64', required=True)

    return parser


def build_job(args: argparse.Namespace, settings: Optional[CoreSettings] = None) -> DialogJob:
    """
    Turn parsed dialog arguments into a DialogJob.

    Invalid arguments print an error and raise SystemExit(2).
    """
    settings = settings or load_settings()
    manager = PackageManager(settings)
    command = args.command

    if command in ('install-dialog', 'remove-dialog'):
        names = list(args.packages) + _decode_list(args.packages_b64, '--packages-b64')
        if not names:
            _bad_argument(f"{command} needs at least one package")
        if command == 'install-dialog':
            return DialogJob(JobKind.INSTALL, "Install Packages", ' '.join(names),
                             lambda s: manager.install_packages(names, session=s), names)
        return DialogJob(JobKind.REMOVE, "Remove Packages", ' '.join(names),
                         lambda s: manager.remove_packages(names, session=s), names)

    if command == 'update-dialog':
        names = _decode_list(args.packages_b64, 'PACKAGES_B64')
        return DialogJob(JobKind.UPDATE, "System Update", ' '.join(names) or 'all',
                         lambda s: manager.update_packages(names, session=s), names)

    if command == 'rpm-dialog':
        path = args.rpm_file
        if not path.lower().endswith('.rpm'):
            _bad_argument(f"File is not an RPM file: {path}")
        job_items = [rpm_item_name(path)]
        return DialogJob(JobKind.INSTALL, f"Install {path}", path,
                         lambda s: manager.install_rpm(path, session=s), job_items)

    if command == 'flatpak-install-dialog':
        app_id, remote = args.application_id, args.remote
        return DialogJob(JobKind.INSTALL, f"Install {app_id}", app_id,
                         lambda s: manager.flatpak_install(app_id, remote, session=s), [app_id])

    if command == 'flatpak-remove-dialog':
        ids = list(args.application_ids)
        return DialogJob(JobKind.REMOVE, "Remove Flatpaks", ' '.join(ids),
                         lambda s: manager.flatpak_uninstall(ids, session=s), ids)

    if command == 'flatpak-update-dialog':
        ids = _decode_list(args.packages_b64, '--packages-b64')
        return DialogJob(JobKind.UPDATE, "Update Flatpaks", ' '.join(ids) or 'all',
                         lambda s: manager.flatpak_update(ids, session=s), ids)

    if command == 'maintenance-dialog':
        task = MaintenanceTask(args.task)
        return DialogJob(JobKind.MAINTENANCE, task.title, task.value,
                         lambda s: manager.maintenance(task, session=s))

    if command == 'kernel-install-dialog':
        kernel = args.kernel_name
        return DialogJob(JobKind.INSTALL, f"Install {kernel}", kernel,
                         lambda s: manager.install_kernel(kernel, session=s), [kernel])

    if command == 'kernel-remove-dialog':
        kernel = args.kernel_name
        return DialogJob(JobKind.REMOVE, f"Remove {kernel}", kernel,
                         lambda s: manager.remove_kernel(kernel, session=s), [kernel])

    if command == 'proton-install-dialog':
        build, url = args.build_title, args.download_url
        if not url.startswith(('http://', 'https://')):
            _bad_argument(f"Not an HTTP(S) URL: {url}")
        if not pipeline.valid_build_name(build):
            _bad_argument(f"Invalid build name: {build}")
        return DialogJob(
            JobKind.RUNTIME_ACQUIRE, f"Install {args.runner_title} {build}", build,
            lambda s: pipeline.acquire_runtime(s, url, build, destination=args.destination,
                                               launcher=args.launcher, settings=settings),
            [build]
        )

    if command in ('device-install-dialog', 'device-remove-dialog'):
        remove = command == 'device-remove-dialog'
        profile = DriverProfile.from_dict(_decode_object(args.profile_b64, '--profile-b64'))
        device = _device_from(_decode_object(args.device_b64, '--device-b64'))
        if not profile.codename:
            _bad_argument("profile has no codename")
        verb = "Remove" if remove else "Install"
        return DialogJob(
            JobKind.DRIVER_INSTALL, f"{verb} {profile.name or profile.codename}", profile.codename,
            lambda s: hardware.install_profile(s, profile, device, remove=remove, settings=settings),
            [profile.codename]
        )

    _bad_argument(f"unknown command: {command}")


def run_headless(job: DialogJob, out=None) -> int:
    """Run a job in the terminal, printing transcript lines as they arrive."""
    out = out or sys.stdout
    session = job.new_session()
    worker = start_job(session, job.runner)
    printed = []
    summary = []

    def flush_new(transcript):
        # A failure summary is prepended at the very end; print it once, last
        offset = 1 if printed and transcript and transcript[0] is not printed[0] else 0
        for line in transcript[len(printed) + offset:]:
            out.write(line.render() + "\n")
            printed.append(line)
        if offset and not summary:
            summary.append(transcript[0])
            out.write(transcript[0].render() + "\n")
        out.flush()

    try:
        while worker.is_alive():
            flush_new(session.snapshot().transcript)
            time.sleep(HEADLESS_POLL)
    except KeyboardInterrupt:
        session.cancel()
        worker.join()

    snapshot = session.snapshot()
    flush_new(snapshot.transcript)
    status = "SUCCESS" if snapshot.succeeded else "FAILED"
    out.write(f"{status}: {snapshot.message}\n")
    out.flush()
    return 0


def run_gui(job: DialogJob) -> int:
    try:
        import gi
        gi.require_version('Gtk', '4.0')
        gi.require_version('Adw', '1')
        from .app import run_dialog
    except (ImportError, ValueError) as e:
        log.error("GTK4/libadwaita not available: %s", e)
        sys.stderr.write("Install with: sudo dnf install gtk4 libadwaita python3-gobject\n"
                         "or run with --headless\n")
        return 1
    return run_dialog(job)


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point. Returns 0 on clean exit, 1 on bootstrap failure."""
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(verbose=args.debug, log_file=args.log_file, dialog=args.command)

    if args.command is None:
        parser.print_help()
        return 0

    job = build_job(args)
    log.debug("Dispatching %s: %s", args.command, job.target)
    if args.headless:
        return run_headless(job)
    return run_gui(job)

