"""
Hardware Profiles Module

Device descriptions and the driver profile database used by the device
dialogs. Profiles come from the cfhdb JSON documents, cached under the
Rustora cache directory on first use.

Copyright (c) 2025 Christopher Dorrell. Licensed under GPL-3.0.
"""

import json
import os
import tempfile
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Optional

from .. import __version__
from . import commands, pipeline
from .config import CoreSettings, load_settings
from .logger import get_logger
from .session import FailureReason, JobSession

log = get_logger('rustora.hardware')

PROFILE_KINDS = ('pci', 'usb')

# Vendor ids whose drivers are out-of-tree modules needing a rebuild
MODULE_REBUILD_VENDORS = {'10de'}

# cfhdb writes this for a profile without a script
_NO_SCRIPT = 'Option::is_none'


class ProfileError(Exception):
    """Profile database could not be loaded."""


@dataclass
class DeviceInfo:
    """A detected device, as handed to the device dialogs."""
    vendor_name: str = ""
    device_name: str = ""
    driver: str = ""
    driver_version: str = ""
    bus_id: str = ""
    vendor_id: str = ""
    device_id: str = ""
    class_id: str = ""
    repositories: list[str] = field(default_factory=list)


def needs_module_rebuild(device: DeviceInfo) -> bool:
    """NVIDIA hardware (by vendor id or bound driver) needs akmods + dracut after install."""
    return (
        device.vendor_id.lower() in MODULE_REBUILD_VENDORS
        or 'nvidia' in device.driver.lower()
    )


def _id_matches(wanted: list[str], value: str) -> bool:
    value = value.lower()
    return any(w == '*' or w.lower() == value for w in wanted)


@dataclass
class DriverProfile:
    """One driver profile from the cfhdb database."""
    codename: str
    name: str = ""
    icon_name: str = "package-x-generic"
    license: str = "unknown"
    class_ids: list[str] = field(default_factory=list)
    vendor_ids: list[str] = field(default_factory=list)
    device_ids: list[str] = field(default_factory=list)
    blacklisted_class_ids: list[str] = field(default_factory=list)
    blacklisted_vendor_ids: list[str] = field(default_factory=list)
    blacklisted_device_ids: list[str] = field(default_factory=list)
    packages: Optional[list[str]] = None
    check_script: str = "false"
    install_script: Optional[str] = None
    remove_script: Optional[str] = None
    experimental: bool = False
    removable: bool = False
    veiled: bool = False
    priority: int = 0

    @classmethod
    def from_dict(cls, data: dict) -> 'DriverProfile':
        def strings(key):
            value = data.get(key)
            if not isinstance(value, list):
                return []
            return [v for v in value if isinstance(v, str)]

        def script(key):
            value = data.get(key)
            if not isinstance(value, str) or value == _NO_SCRIPT:
                return None
            return value

        packages = data.get('packages')
        return cls(
            codename=data.get('codename') or "",
            name=data.get('i18n_desc') or data.get('codename') or "",
            icon_name=data.get('icon_name') or "package-x-generic",
            license=data.get('license') or "unknown",
            class_ids=strings('class_ids'),
            vendor_ids=strings('vendor_ids'),
            device_ids=strings('device_ids'),
            blacklisted_class_ids=strings('blacklisted_class_ids'),
            blacklisted_vendor_ids=strings('blacklisted_vendor_ids'),
            blacklisted_device_ids=strings('blacklisted_device_ids'),
            packages=strings('packages') if isinstance(packages, list) else None,
            check_script=data.get('check_script') or "false",
            install_script=script('install_script'),
            remove_script=script('remove_script'),
            experimental=bool(data.get('experimental', False)),
            removable=bool(data.get('removable', False)),
            veiled=bool(data.get('veiled', False)),
            priority=int(data.get('priority') or 0)
        )

    def matches(self, device: DeviceInfo) -> bool:
        """Whether this profile applies to a device."""
        if device.class_id and self.class_ids and not _id_matches(self.class_ids, device.class_id):
            return False
        if not _id_matches(self.vendor_ids, device.vendor_id):
            return False
        if not _id_matches(self.device_ids, device.device_id):
            return False
        if device.class_id and _id_matches(self.blacklisted_class_ids, device.class_id):
            return False
        if _id_matches(self.blacklisted_vendor_ids, device.vendor_id):
            return False
        if _id_matches(self.blacklisted_device_ids, device.device_id):
            return False
        return True


def parse_profiles(text: str) -> list[DriverProfile]:
    """Parse a cfhdb profile document, lowest priority value first."""
    try:
        document = json.loads(text)
    except ValueError as e:
        raise ProfileError(f"Failed to parse JSON: {e}")
    entries = document.get('profiles') if isinstance(document, dict) else None
    if not isinstance(entries, list):
        raise ProfileError("Profile document has no profiles list")
    profiles = [DriverProfile.from_dict(entry) for entry in entries if isinstance(entry, dict)]
    profiles.sort(key=lambda p: p.priority)
    return profiles


def profiles_for(device: DeviceInfo, profiles: list[DriverProfile]) -> list[DriverProfile]:
    return [p for p in profiles if not p.veiled and p.matches(device)]


def cache_path(kind: str, settings: Optional[CoreSettings] = None) -> str:
    settings = settings or load_settings()
    return os.path.join(settings.profile_cache_dir, f"{kind}.json")


def _fetch(url: str, timeout: float) -> str:
    req = urllib.request.Request(url, headers={'User-Agent': f'Rustora/{__version__}'})
    try:
        with urllib.request.urlopen(req, timeout=timeout) as response:
            return response.read().decode('utf-8')
    except (urllib.error.URLError, OSError, UnicodeDecodeError) as e:
        raise ProfileError(f"Failed to download profiles from {url}: {e}")


def _store(path: str, text: str, settings: CoreSettings) -> bool:
    """Write the profile cache, going through the elevation helper when needed."""
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            f.write(text)
        return True
    except OSError as e:
        log.debug("Direct write to %s failed (%s), elevating", path, e)

    temp_file = None
    try:
        fd, temp_file = tempfile.mkstemp(prefix='rustora_', suffix='.json')
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(text)
        request = commands.make_request(
            ['install', '-D', '-m', '0644', temp_file, path],
            elevated=True,
            helper=settings.elevation_helper
        )
        result = commands.run(request)
    except OSError as e:
        log.warning("Failed to stage profile cache for %s: %s", path, e)
        return False
    finally:
        if temp_file:
            try:
                os.remove(temp_file)
            except OSError:
                pass

    if result.auth_cancelled:
        log.warning("Authentication cancelled while caching %s", path)
        return False
    if not result.success:
        log.warning("Failed to cache profiles at %s: %s", path, result.error or result.output)
        return False
    return True


_profiles: dict[str, list[DriverProfile]] = {}


def load_profiles(kind: str, settings: Optional[CoreSettings] = None) -> list[DriverProfile]:
    """
    Get the driver profiles for 'pci' or 'usb' devices.

    Reads the cached document, downloading and caching it on a miss.
    The result is kept for the life of the process; see reset_profile_cache().

    Raises:
        ProfileError: unknown kind, download failure or malformed document
    """
    if kind not in PROFILE_KINDS:
        raise ProfileError(f"Unknown profile kind: {kind}")
    if kind in _profiles:
        return _profiles[kind]

    settings = settings or load_settings()
    path = cache_path(kind, settings)
    text = None
    try:
        with open(path, 'r', encoding='utf-8') as f:
            text = f.read()
        profiles = parse_profiles(text)
        log.debug("Loaded %d %s profiles from %s", len(profiles), kind, path)
    except (OSError, ProfileError) as e:
        log.info("No usable profile cache at %s (%s), downloading", path, e)
        url = settings.pci_profiles_url if kind == 'pci' else settings.usb_profiles_url
        text = _fetch(url, settings.download_timeout)
        profiles = parse_profiles(text)
        _store(path, text, settings)

    _profiles[kind] = profiles
    return profiles


def reset_profile_cache():
    """Forget the in-memory profiles so the next load rereads the cache file."""
    _profiles.clear()


def install_profile(
    session: JobSession,
    profile: DriverProfile,
    device: DeviceInfo,
    remove: bool = False,
    write_log: bool = True,
    settings: Optional[CoreSettings] = None
) -> bool:
    """Install (or remove) a driver profile for a device as a driver pipeline job."""
    script = profile.remove_script if remove else profile.install_script
    if not script:
        action = 'removal' if remove else 'installation'
        session.set_failed_stage('script')
        pipeline.abort_job(session, FailureReason.STAGE_FAILED,
                           f"Profile {profile.codename} has no {action} script",
                           'driver_remove' if remove else 'driver_install', profile.codename, write_log)
        return False

    post_install = needs_module_rebuild(device)
    if post_install and not remove:
        log.info("%s needs kernel module rebuild after install", device.device_name or device.bus_id)

    return pipeline.run_driver_pipeline(
        session,
        script,
        post_install=post_install,
        remove=remove,
        target=profile.codename,
        write_log=write_log,
        settings=settings
    )
