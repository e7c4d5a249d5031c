"""
Rustora - Core Module

Privileged command execution, output streaming, progress tracking and
the job pipelines behind every Rustora dialog. Nothing here imports GTK.

Copyright (c) 2025 Christopher Dorrell. Licensed under GPL-3.0.
"""

from .commands import (
    StreamTag,
    TerminatedBy,
    TranscriptLine,
    CancelToken,
    ExecRequest,
    RunResult,
    CommandStatus,
    CommandResult,
    run,
    elevate,
    make_request,
    capture,
    command_exists
)

from .session import (
    JobKind,
    ItemStatus,
    JobState,
    FailureReason,
    WorkItem,
    SessionSnapshot,
    JobSession
)

from .progress import ProgressHeuristic

from .archive import (
    ArchiveFamily,
    ArchiveDescriptor,
    ArchiveError,
    UnsupportedFormatError,
    CorruptArchiveError,
    ExtractorNotInstalledError,
    ExtractorFailedError,
    probe,
    extract
)

from .pipeline import (
    StageError,
    StageTracker,
    Step,
    run_command_job,
    run_steps,
    run_driver_pipeline,
    acquire_runtime
)

from .packages import (
    MaintenanceTask,
    PackageManager,
    get_package_manager,
    rpm_item_name,
    start_job
)

from .hardware import (
    DeviceInfo,
    DriverProfile,
    ProfileError,
    needs_module_rebuild,
    load_profiles,
    reset_profile_cache,
    install_profile
)

from .config import (
    UpdateSettings,
    CoreSettings,
    load_settings,
    reset_settings
)

from .joblog import (
    write_session_log,
    read_session_log
)

from .logger import (
    setup_logging,
    get_logger,
    is_debug_enabled
)

__all__ = [
    # Commands
    'StreamTag', 'TerminatedBy', 'TranscriptLine', 'CancelToken', 'ExecRequest',
    'RunResult', 'CommandStatus', 'CommandResult', 'run', 'elevate', 'make_request',
    'capture', 'command_exists',
    # Session
    'JobKind', 'ItemStatus', 'JobState', 'FailureReason', 'WorkItem',
    'SessionSnapshot', 'JobSession',
    # Progress
    'ProgressHeuristic',
    # Archive
    'ArchiveFamily', 'ArchiveDescriptor', 'ArchiveError', 'UnsupportedFormatError',
    'CorruptArchiveError', 'ExtractorNotInstalledError', 'ExtractorFailedError',
    'probe', 'extract',
    # Pipeline
    'StageError', 'StageTracker', 'Step', 'run_command_job', 'run_steps',
    'run_driver_pipeline', 'acquire_runtime',
    # Packages
    'MaintenanceTask', 'PackageManager', 'get_package_manager', 'rpm_item_name', 'start_job',
    # Hardware
    'DeviceInfo', 'DriverProfile', 'ProfileError', 'needs_module_rebuild',
    'load_profiles', 'reset_profile_cache', 'install_profile',
    # Config
    'UpdateSettings', 'CoreSettings', 'load_settings', 'reset_settings',
    # Session logs
    'write_session_log', 'read_session_log',
    # Logging
    'setup_logging', 'get_logger', 'is_debug_enabled'
]
