"""
Rustora - Package Manager

dnf and flatpak operations. Jobs run through the pipeline coordinator and
report into a JobSession; queries are short captured commands.

Copyright (c) 2025 Christopher Dorrell. Licensed under GPL-3.0.
"""

import os
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from . import commands, pipeline
from .config import CoreSettings, UpdateSettings, load_settings
from .logger import get_logger
from .progress import base_name, strip_arch
from .session import FailureReason, JobKind, JobSession

log = get_logger('rustora.packages')

# dnf check-update exits 100 when updates are available
CHECK_UPDATE_AVAILABLE = 100

_CHECK_UPDATE_SKIP = ('Last metadata', 'Dependencies', 'Upgrade', 'Obsoleting')


class MaintenanceTask(Enum):
    """Routine system maintenance actions."""
    REBUILD_KERNEL_MODULES = "rebuild-kernel-modules"
    REGENERATE_INITRAMFS = "regenerate-initramfs"
    REMOVE_ORPHANED_PACKAGES = "remove-orphaned-packages"
    CLEAN_PACKAGE_CACHE = "clean-package-cache"

    @property
    def title(self) -> str:
        return {
            MaintenanceTask.REBUILD_KERNEL_MODULES: "Rebuild Kernel Modules",
            MaintenanceTask.REGENERATE_INITRAMFS: "Regenerate Initramfs",
            MaintenanceTask.REMOVE_ORPHANED_PACKAGES: "Remove Orphaned Packages",
            MaintenanceTask.CLEAN_PACKAGE_CACHE: "Clean Package Cache",
        }[self]


@dataclass
class UpdateInfo:
    """One pending update from dnf check-update."""
    name: str
    version: str
    repository: str


@dataclass
class PackageInfo:
    """Fields parsed from dnf info / flatpak info."""
    name: str = ""
    version: str = ""
    release: str = ""
    arch: str = ""
    summary: str = ""
    size: str = ""
    description: str = ""


def _parse_info(text: str) -> PackageInfo:
    """Parse "Key : value" blocks, continuing Description on ':'-only lines."""
    info = PackageInfo()
    in_description = False
    for raw in text.splitlines():
        key, sep, value = raw.partition(':')
        key, value = key.strip(), value.strip()
        if not sep:
            in_description = False
            continue
        if in_description and not key:
            info.description = f"{info.description} {value}".strip()
            continue
        in_description = False
        lowered = key.lower()
        if lowered in ('name', 'id', 'ref') and not info.name:
            info.name = value
        elif lowered == 'version' and not info.version:
            info.version = value
        elif lowered == 'release' and not info.release:
            info.release = value
        elif lowered in ('architecture', 'arch') and not info.arch:
            info.arch = value
        elif lowered in ('summary', 'subject') and not info.summary:
            info.summary = value
        elif lowered in ('installed size', 'installed') and value:
            info.size = value
        elif lowered in ('download size', 'size', 'download') and not info.size:
            info.size = value
        elif lowered == 'description' and not info.description:
            info.description = value
            in_description = True
    return info


def parse_check_update(text: str) -> list[UpdateInfo]:
    updates = []
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith(_CHECK_UPDATE_SKIP) or 'Matched fields:' in line:
            continue
        parts = line.split()
        if len(parts) >= 3:
            updates.append(UpdateInfo(strip_arch(parts[0]), parts[1], parts[2]))
    return updates


def rpm_item_name(path: str) -> str:
    """Work item name for a local .rpm: the package name from its file name."""
    filename = os.path.basename(path)
    return base_name(filename[:-4] if filename.lower().endswith(".rpm") else filename)


def kernel_headers_name(kernel: str) -> str:
    """kernel-6.9.1 -> kernel-headers-6.9.1, kernel-cachyos -> kernel-cachyos-headers."""
    if kernel == 'kernel':
        return 'kernel-headers'
    if kernel.startswith('kernel-') and kernel[len('kernel-'):][:1].isdigit():
        return kernel.replace('kernel-', 'kernel-headers-', 1)
    return f"{kernel}-headers"


class PackageManager:
    """dnf/flatpak operations for one set of core settings."""

    def __init__(self, settings: Optional[CoreSettings] = None):
        self.settings = settings or load_settings()

    @property
    def dnf(self) -> str:
        return self.settings.package_tool

    @property
    def flatpak(self) -> str:
        return self.settings.bundle_tool

    def _elevated(self, argv: list[str]) -> commands.ExecRequest:
        return commands.make_request(argv, elevated=True, helper=self.settings.elevation_helper)

    def _job(self, session: JobSession, request: commands.ExecRequest,
             operation: str, target: str, write_log: bool) -> JobSession:
        pipeline.run_command_job(
            session, request,
            operation=operation,
            target=target,
            write_log=write_log,
            settings=self.settings
        )
        return session

    # -- queries -----------------------------------------------------------

    def is_installed(self, package: str) -> bool:
        """Check if a package is installed."""
        return commands.capture(['rpm', '-q', package], timeout=30).success

    def search(self, query: str) -> list[tuple[str, str]]:
        """
        Search for packages matching a query.

        Returns:
            List of (package_name, description) tuples
        """
        results = []
        result = commands.capture([self.dnf, 'search', query], timeout=120)
        if result.success:
            for line in result.stdout.strip().split('\n'):
                if ' : ' in line:
                    name, desc = line.split(' : ', 1)
                    results.append((strip_arch(name.strip()), desc.strip()))
        return results

    def check_updates(self) -> list[UpdateInfo]:
        """List available updates. dnf exits 100 when there are some, 0 when none."""
        result = commands.capture([self.dnf, 'check-update', '--quiet'], timeout=300)
        if result.return_code not in (0, CHECK_UPDATE_AVAILABLE):
            log.warning("dnf check-update failed: %s", result.output)
            return []
        return parse_check_update(result.stdout)

    def package_info(self, package: str) -> Optional[PackageInfo]:
        result = commands.capture([self.dnf, 'info', package], timeout=60)
        if not result.success:
            return None
        return _parse_info(result.stdout)

    def flatpak_info(self, app_id: str, remote: Optional[str] = None) -> Optional[PackageInfo]:
        """Info for an installed app, or from a remote when one is given."""
        if remote:
            argv = [self.flatpak, 'remote-info', remote, app_id]
        else:
            argv = [self.flatpak, 'info', app_id]
        result = commands.capture(argv, timeout=60)
        if not result.success:
            return None
        info = _parse_info(result.stdout)
        info.name = info.name or app_id
        return info

    # -- jobs --------------------------------------------------------------

    def install_packages(self, names: list[str], session: Optional[JobSession] = None,
                         write_log: bool = True) -> JobSession:
        session = session or JobSession(JobKind.INSTALL, names, "Install Packages")
        request = self._elevated([self.dnf, 'install', '-y', '--assumeyes', *names])
        return self._job(session, request, 'install', ' '.join(names), write_log)

    def remove_packages(self, names: list[str], session: Optional[JobSession] = None,
                        write_log: bool = True) -> JobSession:
        session = session or JobSession(JobKind.REMOVE, names, "Remove Packages")
        request = self._elevated([self.dnf, 'remove', '-y', '--assumeyes', *names])
        return self._job(session, request, 'remove', ' '.join(names), write_log)

    def update_packages(self, names: Optional[list[str]] = None, session: Optional[JobSession] = None,
                        update_settings: Optional[UpdateSettings] = None,
                        write_log: bool = True) -> JobSession:
        """Upgrade the named packages, or everything when names is empty."""
        names = list(names or [])
        update_settings = update_settings or UpdateSettings.load()
        session = session or JobSession(JobKind.UPDATE, names, "System Update")
        argv = [self.dnf, 'upgrade', '-y', '--assumeyes', *update_settings.to_dnf_args(), *names]
        return self._job(session, self._elevated(argv), 'update', ' '.join(names) or 'all', write_log)

    def install_rpm(self, path: str, session: Optional[JobSession] = None,
                    write_log: bool = True) -> JobSession:
        """Install a local .rpm file."""
        session = session or JobSession(JobKind.INSTALL, [rpm_item_name(path)], f"Install {os.path.basename(path)}")
        request = self._elevated([self.dnf, 'install', '-y', '--assumeyes', '--nogpgcheck', path])
        return self._job(session, request, 'rpm_install', path, write_log)

    def install_kernel(self, kernel: str, session: Optional[JobSession] = None,
                       write_log: bool = True) -> JobSession:
        """Install a kernel, its headers if available, then regenerate the boot menu."""
        session = session or JobSession(JobKind.INSTALL, [kernel], f"Install {kernel}")
        headers = kernel_headers_name(kernel)
        steps = [
            pipeline.Step('kernel', self._elevated([self.dnf, 'install', '-y', '--assumeyes', kernel]),
                          title=f"Installing {kernel}"),
            pipeline.Step('headers', self._elevated([self.dnf, 'install', '-y', '--assumeyes', headers]),
                          title=f"Installing {headers}", fatal=False),
            pipeline.Step('boot-menu', self._elevated(self.settings.boot_menu_command),
                          title="Updating boot menu"),
        ]
        pipeline.run_steps(session, steps, operation='kernel_install', target=kernel,
                           write_log=write_log, settings=self.settings,
                           success_message=f"{kernel} installed successfully")
        return session

    def remove_kernel(self, kernel: str, session: Optional[JobSession] = None,
                      write_log: bool = True) -> JobSession:
        session = session or JobSession(JobKind.REMOVE, [kernel], f"Remove {kernel}")
        request = self._elevated([self.dnf, 'remove', '-y', '--assumeyes', kernel])
        return self._job(session, request, 'kernel_remove', kernel, write_log)

    def flatpak_install(self, app_id: str, remote: Optional[str] = None,
                        session: Optional[JobSession] = None, write_log: bool = True) -> JobSession:
        session = session or JobSession(JobKind.INSTALL, [app_id], f"Install {app_id}")
        argv = [self.flatpak, 'install', '-y', '--noninteractive', '--verbose']
        if remote:
            argv.append(remote)
        argv.append(app_id)
        return self._job(session, commands.make_request(argv), 'flatpak_install', app_id, write_log)

    def flatpak_uninstall(self, app_ids: list[str], session: Optional[JobSession] = None,
                          write_log: bool = True) -> JobSession:
        session = session or JobSession(JobKind.REMOVE, app_ids, "Remove Flatpaks")
        argv = [self.flatpak, 'uninstall', '-y', '--noninteractive', *app_ids]
        return self._job(session, commands.make_request(argv), 'flatpak_remove', ' '.join(app_ids), write_log)

    def flatpak_update(self, app_ids: Optional[list[str]] = None, session: Optional[JobSession] = None,
                       write_log: bool = True) -> JobSession:
        app_ids = list(app_ids or [])
        session = session or JobSession(JobKind.UPDATE, app_ids, "Update Flatpaks")
        argv = [self.flatpak, 'update', '--app', '-y', '--noninteractive', '--verbose', *app_ids]
        return self._job(session, commands.make_request(argv), 'flatpak_update',
                         ' '.join(app_ids) or 'all', write_log)

    def maintenance_argv(self, task: MaintenanceTask) -> list[str]:
        if task is MaintenanceTask.REBUILD_KERNEL_MODULES:
            return list(self.settings.module_rebuild_command)
        if task is MaintenanceTask.REGENERATE_INITRAMFS:
            return list(self.settings.initramfs_command)
        if task is MaintenanceTask.REMOVE_ORPHANED_PACKAGES:
            return [self.dnf, 'autoremove', '-y', '--assumeyes']
        return [self.dnf, 'clean', 'all']

    def maintenance(self, task: MaintenanceTask, session: Optional[JobSession] = None,
                    write_log: bool = True) -> JobSession:
        session = session or JobSession(JobKind.MAINTENANCE, title=task.title)
        request = self._elevated(self.maintenance_argv(task))
        return self._job(session, request, f"maintenance_{task.value}", task.value, write_log)


def start_job(session: JobSession, target: Callable[[JobSession], object]) -> threading.Thread:
    """
    Run a job on a daemon worker thread.

    target receives the session. If it raises, the session is failed so the
    window never waits forever on a job that died.
    """
    def worker():
        try:
            target(session)
        except Exception as e:
            log.exception("Job %s crashed", session.title)
            session.fail(FailureReason.IO_FAILURE, f"Internal error: {e}")

    thread = threading.Thread(target=worker, name=f"rustora-job-{session.kind.value}", daemon=True)
    thread.start()
    return thread


# Singleton instance
_package_manager: Optional[PackageManager] = None


def get_package_manager() -> PackageManager:
    """Get the package manager instance."""
    global _package_manager
    if _package_manager is None:
        _package_manager = PackageManager()
    return _package_manager
