"""
Rustora - python -m rustora

Copyright (c) 2025 Christopher Dorrell. Licensed under GPL-3.0.
"""

import sys

from .cli import main

if __name__ == "__main__":
    sys.exit(main())
