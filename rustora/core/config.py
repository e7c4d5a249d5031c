"""
Rustora - Configuration

JSON-backed settings stored in the hidden Rustora directory.
Missing or malformed files fall back to defaults.

Copyright (c) 2025 Christopher Dorrell. Licensed under GPL-3.0.
"""

import json
import os
from dataclasses import asdict, dataclass, field, fields
from typing import Optional

from .logger import get_logger

log = get_logger('rustora.config')


def data_dir() -> str:
    """Hidden per-user directory (~/.rustora, or $RUSTORA_HOME)."""
    override = os.environ.get('RUSTORA_HOME')
    if override:
        return override
    return os.path.join(os.path.expanduser('~'), '.rustora')


def _read_json(path: str) -> dict:
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except FileNotFoundError:
        return {}
    except (OSError, ValueError) as e:
        log.warning("Ignoring unreadable settings file %s: %s", path, e)
        return {}
    if not isinstance(data, dict):
        log.warning("Ignoring settings file %s: expected an object", path)
        return {}
    return data


def _write_json(path: str, data: dict) -> bool:
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)
        return True
    except OSError as e:
        log.error("Could not save settings to %s: %s", path, e)
        return False


def _known(cls, data: dict) -> dict:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


@dataclass
class UpdateSettings:
    """Extra flags passed to dnf upgrade."""
    allowerasing: bool = False
    skip_unavailable: bool = False
    allow_downgrade: bool = False
    security_only: bool = False
    bugfix_only: bool = False

    FILENAME = 'update_settings.json'

    def to_dnf_args(self) -> list[str]:
        args = []
        if self.allowerasing:
            args.append('--allowerasing')
        if self.skip_unavailable:
            args.append('--skip-unavailable')
        if self.allow_downgrade:
            args.append('--allow-downgrade')
        if self.security_only:
            args.append('--security')
        if self.bugfix_only:
            args.append('--bugfix')
        return args

    @classmethod
    def path(cls) -> str:
        return os.path.join(data_dir(), cls.FILENAME)

    @classmethod
    def load(cls) -> 'UpdateSettings':
        data = _read_json(cls.path())
        try:
            return cls(**_known(cls, data))
        except TypeError:
            return cls()

    def save(self) -> bool:
        return _write_json(self.path(), asdict(self))


def default_runtime_destination() -> str:
    """Steam compatibility tools directory, preferring one that already exists."""
    home = os.path.expanduser('~')
    candidates = [
        os.path.join(home, '.steam', 'root', 'compatibilitytools.d'),
        os.path.join(home, '.local', 'share', 'Steam', 'compatibilitytools.d'),
        os.path.join(home, '.steam', 'steam', 'compatibilitytools.d'),
    ]
    for path in candidates:
        if os.path.isdir(path):
            return path
    return candidates[1]


def launcher_destination(launcher: Optional[str] = None) -> str:
    """compatibilitytools.d for a game launcher; Steam when none is given."""
    if not launcher or launcher == 'Steam':
        return load_settings().runtime_destination
    return os.path.join(os.path.expanduser('~'), '.local', 'share', launcher, 'compatibilitytools.d')


@dataclass
class CoreSettings:
    """Tool names, paths and timings used by the job core."""
    elevation_helper: str = 'pkexec'
    package_tool: str = 'dnf'
    bundle_tool: str = 'flatpak'
    module_rebuild_command: list[str] = field(
        default_factory=lambda: ['akmods', '--force', '--rebuild'])
    initramfs_command: list[str] = field(
        default_factory=lambda: ['dracut', '-f', '--regenerate-all'])
    boot_menu_command: list[str] = field(
        default_factory=lambda: ['grub2-mkconfig', '-o', '/boot/grub2/grub.cfg'])
    runtime_destination: str = field(default_factory=default_runtime_destination)
    cancel_grace: float = 1.5
    extract_tick: float = 0.2
    download_timeout: float = 30.0
    profile_cache_dir: str = '/var/cache/rustora'
    pci_profiles_url: str = (
        'https://raw.githubusercontent.com/Nobara-Project/cfhdb/'
        'refs/heads/master/data/profiles/pci.json')
    usb_profiles_url: str = (
        'https://raw.githubusercontent.com/Nobara-Project/cfhdb/'
        'refs/heads/master/data/profiles/usb.json')

    FILENAME = 'settings.json'

    @classmethod
    def path(cls) -> str:
        return os.path.join(data_dir(), cls.FILENAME)

    @classmethod
    def load(cls) -> 'CoreSettings':
        data = _read_json(cls.path())
        try:
            return cls(**_known(cls, data))
        except TypeError as e:
            log.warning("Invalid settings in %s: %s", cls.path(), e)
            return cls()

    def save(self) -> bool:
        return _write_json(self.path(), asdict(self))


_settings: Optional[CoreSettings] = None


def load_settings() -> CoreSettings:
    """Get the process-wide settings instance."""
    global _settings
    if _settings is None:
        _settings = CoreSettings.load()
    return _settings


def reset_settings():
    """Drop the cached settings so the next load_settings() rereads the file."""
    global _settings
    _settings = None
