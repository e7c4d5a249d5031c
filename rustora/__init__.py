"""
Rustora

A GTK4/Libadwaita front-end for Fedora package management: dnf packages,
flatpaks, kernels, device drivers and system maintenance. All privileged
work runs through pkexec.

Copyright (c) 2025 Christopher Dorrell. Licensed under GPL-3.0.
"""

import os
from importlib.metadata import PackageNotFoundError, version as _dist_version

# Installed metadata first, then the VERSION file of a source checkout
_version_file = os.path.join(os.path.dirname(os.path.dirname(__file__)), 'VERSION')
try:
    __version__ = _dist_version('rustora')
except PackageNotFoundError:
    try:
        with open(_version_file, 'r') as f:
            __version__ = f.read().strip()
    except OSError:
        __version__ = "0.0.0"

# Parse version info
_version_parts = __version__.split('.')
__version_info__ = tuple(int(x) for x in _version_parts[:3]) if len(_version_parts) >= 3 else (0, 0, 0)

__author__ = "Christopher Dorrell"
__app_name__ = "Rustora"
__app_id__ = "org.rustora.Rustora"

__all__ = ['__version__', '__version_info__', '__app_name__', '__app_id__']
