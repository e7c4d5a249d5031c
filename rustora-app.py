#!/usr/bin/env python3
"""
Rustora - Main Entry Point

Runs a Rustora job dialog straight from a source checkout.

Copyright (c) 2025 Christopher Dorrell. Licensed under GPL-3.0.

Usage:
    ./rustora-app.py install-dialog vim    # Open a job dialog
    ./rustora-app.py --help                # Show help
    ./rustora-app.py --check               # Check tools and dependencies
"""

import sys
import os

# Add the script directory to path for imports
script_dir = os.path.dirname(os.path.abspath(__file__))
if script_dir not in sys.path:
    sys.path.insert(0, script_dir)

# External tools the job core calls, with the Fedora package providing each
SYSTEM_TOOLS = [
    ('pkexec', 'polkit'),
    ('dnf', 'dnf'),
    ('rpm', 'rpm'),
    ('flatpak', 'flatpak'),
    ('akmods', 'akmods'),
    ('dracut', 'dracut'),
    ('7z', 'p7zip-plugins'),
    ('unzip', 'unzip'),
]


def check_dependencies() -> list[str]:
    """Return a description of every missing dependency."""
    missing = []

    try:
        import gi
        gi.require_version('Gtk', '4.0')
        gi.require_version('Adw', '1')
        from gi.repository import Gtk, Adw
    except (ImportError, ValueError) as e:
        missing.append(f"GTK4/libadwaita: {e}  (sudo dnf install gtk4 libadwaita python3-gobject)")

    try:
        import zstandard
    except ImportError as e:
        missing.append(f"zstandard: {e}  (sudo dnf install python3-zstandard)")

    from rustora.core import command_exists
    for tool, package in SYSTEM_TOOLS:
        if not command_exists(tool):
            missing.append(f"{tool}  (sudo dnf install {package})")

    return missing


def main():
    """Main entry point."""
    if len(sys.argv) > 1 and sys.argv[1] == '--check':
        from rustora import __app_name__, __version__

        missing = check_dependencies()
        print(f"{__app_name__} v{__version__} - System Check")
        print("=" * 40)
        if not missing:
            print("All checks passed!")
            sys.exit(0)
        print("Missing dependencies:")
        for dep in missing:
            print(f"  - {dep}")
        sys.exit(1)

    from rustora.cli import main as cli_main
    sys.exit(cli_main())


if __name__ == "__main__":
    main()
