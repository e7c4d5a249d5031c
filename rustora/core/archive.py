"""
Rustora - Archive Extraction

Validates a downloaded archive by its leading bytes and unpacks it into a
staging directory. Compressed tarballs are read with tarfile; 7z and zip
archives are handed to the system extractors.

Copyright (c) 2025 Christopher Dorrell. Licensed under GPL-3.0.
"""

import lzma
import os
import tarfile
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

import zstandard

from . import commands
from .commands import CancelToken, RunResult, TerminatedBy
from .logger import get_logger

log = get_logger('rustora.archive')

MIN_ARCHIVE_SIZE = 100
MAGIC_LENGTH = 6

# Coarse extraction progress: start, step per tick, ceiling before completion
RAMP_START = 0.10
RAMP_STEP = 0.05
RAMP_CEILING = 0.95

ProgressSink = Callable[[float, str], None]


class ArchiveFamily(Enum):
    """Compression family detected from the magic bytes."""
    GZIP = "gzip"
    ZSTD = "zstd"
    XZ = "xz"
    SEVEN_ZIP = "seven-zip"
    ZIP = "zip"

    @property
    def delegated(self) -> bool:
        """Extracted by an external tool rather than tarfile."""
        return self in (ArchiveFamily.SEVEN_ZIP, ArchiveFamily.ZIP)


class ValidationState(Enum):
    UNCHECKED = "unchecked"
    VALID = "valid"


@dataclass
class ArchiveDescriptor:
    """A downloaded archive and what probing found out about it."""
    path: str
    declared_size: Optional[int] = None
    family: Optional[ArchiveFamily] = None
    state: ValidationState = ValidationState.UNCHECKED
    magic: bytes = b''


def format_magic(data: bytes) -> str:
    return ' '.join(f'{byte:02x}' for byte in data)


class ArchiveError(Exception):
    """Base class for extraction failures."""


class UnsupportedFormatError(ArchiveError):
    def __init__(self, magic: bytes):
        self.magic = magic
        super().__init__(
            f"Unsupported archive format (magic bytes: {format_magic(magic)}). "
            "Expected gzip (.tar.gz), zstd (.tar.zst), xz (.tar.xz), 7z, or zip format."
        )


class CorruptArchiveError(ArchiveError):
    def __init__(self, message: str, magic: bytes = b''):
        self.magic = magic
        if magic:
            message = f"{message} (magic bytes: {format_magic(magic)})"
        super().__init__(message)


class ExtractorNotInstalledError(ArchiveError):
    def __init__(self, tool: str, package: str):
        self.tool = tool
        super().__init__(f"Failed to execute {tool}. Is {package} installed?")


class ExtractorFailedError(ArchiveError):
    def __init__(self, tool: str, result: RunResult):
        self.tool = tool
        self.result = result
        super().__init__(
            f"{tool} extraction failed (exit code: {result.exit_code}):\n{result.output}"
        )


class ExtractionCancelled(ArchiveError):
    def __init__(self):
        super().__init__("Extraction cancelled")


def detect_family(magic: bytes) -> Optional[ArchiveFamily]:
    """Classify the first bytes of a file."""
    if magic[:2] == b'\x1f\x8b':
        return ArchiveFamily.GZIP
    if magic[:4] == b'\x28\xb5\x2f\xfd':
        return ArchiveFamily.ZSTD
    if magic[:6] == b'\xfd\x37\x7a\x58\x5a\x00':
        return ArchiveFamily.XZ
    if magic[:6] == b'\x37\x7a\xbc\xaf\x27\x1c':
        return ArchiveFamily.SEVEN_ZIP
    if magic[:2] == b'PK' and len(magic) > 2 and magic[2] in (0x03, 0x05, 0x07):
        return ArchiveFamily.ZIP
    return None


def probe(path: str, declared_size: Optional[int] = None) -> ArchiveDescriptor:
    """
    Validate an archive on disk and detect its compression family.

    Raises:
        CorruptArchiveError: missing, truncated, or shorter than 100 bytes
        UnsupportedFormatError: leading bytes match no known family
    """
    try:
        size = os.path.getsize(path)
        with open(path, 'rb') as f:
            magic = f.read(MAGIC_LENGTH)
    except FileNotFoundError:
        raise CorruptArchiveError(f"Archive file does not exist: {path}")
    except OSError as e:
        raise CorruptArchiveError(f"Failed to open archive: {e}")

    log.debug("File magic bytes: %s", format_magic(magic))

    if declared_size and size != declared_size:
        raise CorruptArchiveError(
            f"Downloaded file size mismatch: expected {declared_size} bytes, got {size} bytes",
            magic
        )
    if size < MIN_ARCHIVE_SIZE:
        raise CorruptArchiveError(f"Archive file is too small to be valid ({size} bytes)", magic)

    family = detect_family(magic)
    if family is None:
        raise UnsupportedFormatError(magic)

    log.debug("Detected %s archive: %s", family.value, path)
    return ArchiveDescriptor(
        path=path,
        declared_size=declared_size or size,
        family=family,
        state=ValidationState.VALID,
        magic=magic
    )


def _members(tar: tarfile.TarFile, cancel: Optional[CancelToken]):
    for member in tar:
        if cancel is not None and cancel.cancelled:
            raise ExtractionCancelled()
        yield member


def _open_stream(descriptor: ArchiveDescriptor, raw):
    """Wrap the raw file in the right decompressor and a streaming tar reader."""
    if descriptor.family is ArchiveFamily.GZIP:
        return tarfile.open(fileobj=raw, mode='r|gz')
    if descriptor.family is ArchiveFamily.XZ:
        return tarfile.open(fileobj=raw, mode='r|xz')
    reader = zstandard.ZstdDecompressor().stream_reader(raw)
    return tarfile.open(fileobj=reader, mode='r|')


def _unpack_tar(descriptor: ArchiveDescriptor, staging_dir: str, cancel: Optional[CancelToken]):
    extract_kwargs = {'filter': 'data'} if hasattr(tarfile, 'data_filter') else {}
    try:
        with open(descriptor.path, 'rb') as raw:
            with _open_stream(descriptor, raw) as tar:
                tar.extractall(staging_dir, members=_members(tar, cancel), **extract_kwargs)
    except ExtractionCancelled:
        raise
    except (tarfile.TarError, EOFError, lzma.LZMAError, zstandard.ZstdError, OSError) as e:
        raise CorruptArchiveError(
            f"Failed to extract {descriptor.family.value} archive. Archive appears to be "
            f"corrupted or in an unsupported format. Original error: {e}",
            descriptor.magic
        )


def _seven_zip_tool() -> str:
    for name in ('7z', '7za', '7zz'):
        if commands.command_exists(name):
            return name
    return '7z'


def _unpack_delegated(descriptor: ArchiveDescriptor, staging_dir: str, cancel: Optional[CancelToken]):
    if descriptor.family is ArchiveFamily.SEVEN_ZIP:
        tool, package = _seven_zip_tool(), 'p7zip'
        argv = [tool, 'x', descriptor.path, f'-o{staging_dir}', '-y']
    else:
        tool, package = 'unzip', 'unzip'
        argv = [tool, '-q', '-o', descriptor.path, '-d', staging_dir]

    result = commands.run(commands.make_request(argv, cancel=cancel))
    if result.terminated_by is TerminatedBy.SPAWN_FAILURE:
        raise ExtractorNotInstalledError(tool, package)
    if result.terminated_by is TerminatedBy.CANCELLED:
        raise ExtractionCancelled()
    if not result.success:
        raise ExtractorFailedError(tool, result)


def find_top_level_dir(staging_dir: str) -> str:
    """The directory an archive unpacked into."""
    directories = sorted(
        entry.path for entry in os.scandir(staging_dir) if entry.is_dir(follow_symlinks=False)
    )
    if not directories:
        raise CorruptArchiveError("No directory found in archive")
    if len(directories) > 1:
        log.warning("Archive has %d top-level directories, using %s",
                    len(directories), directories[0])
    return directories[0]


def extract(
    descriptor: ArchiveDescriptor,
    staging_dir: str,
    progress_sink: Optional[ProgressSink] = None,
    cancel: Optional[CancelToken] = None,
    tick: float = 0.2
) -> str:
    """
    Unpack an archive into staging_dir and return its top-level directory.

    tarfile gives no useful progress, so while the worker runs the sink
    sees a ramp from 0.10 to 0.95, one step per tick, then 1.0 at the end.

    Raises:
        ArchiveError subclasses for every failure
    """
    if descriptor.state is not ValidationState.VALID:
        descriptor = probe(descriptor.path, descriptor.declared_size)

    def report(fraction: float, message: str):
        if progress_sink:
            progress_sink(fraction, message)

    os.makedirs(staging_dir, exist_ok=True)
    report(RAMP_START, "Opening archive...")

    unpack = _unpack_delegated if descriptor.family.delegated else _unpack_tar
    errors: list[BaseException] = []

    def work():
        try:
            unpack(descriptor, staging_dir, cancel)
        except ArchiveError as e:
            errors.append(e)

    worker = threading.Thread(target=work, daemon=True)
    worker.start()

    progress = RAMP_START
    while worker.is_alive():
        report(progress, f"Extracting... {progress * 100:.0f}%")
        worker.join(tick)
        progress = min(progress + RAMP_STEP, RAMP_CEILING)

    if errors:
        raise errors[0]

    extracted = find_top_level_dir(staging_dir)
    report(1.0, "Extraction complete")
    return extracted
