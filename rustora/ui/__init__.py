"""
Rustora - UI Components

Copyright (c) 2025 Christopher Dorrell. Licensed under GPL-3.0.
"""

from .job_window import JobWindow

__all__ = ['JobWindow']
