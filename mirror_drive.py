#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
mirror-drive: Streamed Mirroring Between Hierarchical File Drives
=================================================================

Computes and applies a minimal diff between two drives (key-value stores
that represent file trees) so that the destination ends up in the same
logical state as the source. Every operation is reported as it happens and
the tree is never materialized in memory.

Quick Start:
-----------
    >>> from mirror_drive import MirrorDrive
    >>> from drive_backends import LocalDrive, MemoryDrive
    >>>
    >>> src = LocalDrive("/srv/site")
    >>> dst = MemoryDrive()
    >>>
    >>> mirror = MirrorDrive(src, dst, include_equals=True)
    >>> for diff in mirror:
    ...     print(diff.op.value, diff.key, diff.bytes_added)
    >>>
    >>> print(mirror.count, mirror.bytes_added)

Key Features:
------------
    ✓ Pull-based diff sequence: no work is done until the next event is requested
    ✓ Prune pass (destination-authoritative) and sync pass (source-authoritative)
    ✓ Staged equality checks: symlink, executable bit, metadata, size, content
    ✓ Streaming content comparison that stops at the first differing byte
    ✓ Transform pipeline (zlib, lz4, zstd or custom filters) with idempotent reruns
    ✓ Prefix scoping, prefix rebase, filters, ignore rules, explicit entry lists
    ✓ Live progress monitors and background preloading for replicated drives

Pass Structure:
--------------
    INIT  -> wait for both drives, refuse read-only replicated destinations
    PRUNE -> remove destination entries missing from the source (prune=True)
    SYNC  -> add or change destination entries to match the source
    FLUSH -> commit staged mutations in one call (batch=True)
    DONE  -> terminal, the sequence is exhausted

CLI Usage:
---------
    $ mirror-drive ./site ./backup
    $ mirror-drive ./site ./backup --dry-run --stats
    $ mirror-drive ./site ./backup --prefix /docs --ignore /docs/.cache
    $ mirror-drive ./site ./archive --compress zstd
    $ mirror-drive --help

Copyright:
---------
    Python implementation: Alejandro Sanchez (2024-2026)
    License: GPLv3+
"""

from __future__ import annotations

__version__ = "1.2.0"
__author__ = "Alejandro Sanchez"
__email__ = "alesangreat@gmail.com"
__license__ = "GPL-3.0-or-later"
__copyright__ = "Copyright (C) 2024-2026 Alejandro Sanchez"

# Public API exports
__all__ = [
    # Main classes
    'MirrorDrive',
    'MirrorOptions',
    'Monitor',
    'Preloader',
    'EqualityOracle',
    'TransformPipeline',
    'TransformRule',

    # Data structures
    'BlobInfo',
    'DriveEntry',
    'DiffOp',
    'DiffEvent',
    'Counters',
    'MirrorState',
    'PrefixRebase',
    'MonitorStats',
    'DownloadStats',
    'UploadStats',

    # Drive capability contract
    'Drive',
    'WriteStream',
    'Batchable',
    'BlobAware',
    'PeerAware',

    # Exceptions
    'MirrorError',
    'ConfigurationError',
    'WritabilityError',
    'TransformError',
    'DriveIOError',

    # Configuration
    'Config',
    'Colors',

    # Streaming helpers
    'Speedometer',
    'CompressionType',
    'CompressionRegistry',
    'compress_filter',
    'decompress_filter',
    'map_filter',
    'stream_equals',
    'iter_file',

    # Enumeration helpers
    'normalize_key',
    'to_ignore_function',
    'enumerate_entries',
    'match_pairs',

    # Utility functions
    'format_size',
    'format_time',

    # CLI
    'create_parser',
    'main',
]

import os
import re
import sys
import time
import zlib
import logging
import argparse
import tempfile
import threading
import posixpath
import weakref
import dataclasses
from collections import deque
from enum import Enum
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import (
    Any, Callable, ClassVar, Deque, Dict, IO, Iterable, Iterator, List,
    Optional, Pattern, Protocol, Sequence, Tuple, Union, cast, runtime_checkable
)

# Required imports for the built-in compression filters
import lz4.frame  # type: ignore[import]
import zstandard  # type: ignore[import]

# Normalize untyped third-party imports to `Any` so strict type-checkers
# don't treat member access as Unknown.
_lz4_frame: Any = cast(Any, lz4.frame)
_zstandard: Any = cast(Any, zstandard)

# ============================================================================
# TYPE DEFINITIONS
# ============================================================================

# A filter consumes a stream of byte chunks and produces a stream of byte chunks.
Filter = Callable[[Iterable[bytes]], Iterable[bytes]]
FilterFactory = Callable[[str], Optional[Filter]]
KeyPredicate = Callable[[str], bool]
MetadataComparator = Callable[[Any, Any], bool]


# ============================================================================
# GLOBAL CONFIGURATION - Performance and behavior tuning
# ============================================================================

class Config:
    """
    Global configuration for mirror-drive behavior.

    Attributes:
        VERBOSE_LOGGING (bool): Enable verbose logging output
        USE_COLORS (bool): Enable colored terminal output (auto-detected)
        CHUNK_SIZE_STREAMING (int): Size of chunks when streaming content
        SPOOL_MAX_MEMORY (int): Transformed output kept in memory before
            spilling to a temporary file
        DEFAULT_MONITOR_INTERVAL (float): Seconds between monitor snapshots
        SPEEDOMETER_WINDOW (float): Sliding window of the rate estimators
        PROGRESS_CAP (float): Highest download progress reported while a
            pass is still running
        DEFAULT_BLOCK_SIZE (int): Block size of in-memory replicated cores

    Example:
        >>> Config.VERBOSE_LOGGING = True
        >>> Config.CHUNK_SIZE_STREAMING = 1024 * 1024
        >>> Config.reset_defaults()  # Reset all to defaults
    """
    # Streaming settings
    CHUNK_SIZE_STREAMING: ClassVar[int] = 64 * 1024
    SPOOL_MAX_MEMORY: ClassVar[int] = 1024 * 1024

    # UI settings
    USE_COLORS: ClassVar[bool] = True
    VERBOSE_LOGGING: ClassVar[bool] = False

    # Progress settings
    DEFAULT_MONITOR_INTERVAL: ClassVar[float] = 0.25
    SPEEDOMETER_WINDOW: ClassVar[float] = 5.0
    PROGRESS_CAP: ClassVar[float] = 0.99  # leave room in case the block estimate is short

    # Replicated core settings
    DEFAULT_BLOCK_SIZE: ClassVar[int] = 64 * 1024

    @classmethod
    def reset_defaults(cls) -> None:
        """Reset all configuration to default values."""
        defaults: Dict[str, object] = {
            "CHUNK_SIZE_STREAMING": 64 * 1024,
            "SPOOL_MAX_MEMORY": 1024 * 1024,
            "USE_COLORS": True,
            "VERBOSE_LOGGING": False,
            "DEFAULT_MONITOR_INTERVAL": 0.25,
            "SPEEDOMETER_WINDOW": 5.0,
            "PROGRESS_CAP": 0.99,
            "DEFAULT_BLOCK_SIZE": 64 * 1024,
        }
        for name, value in defaults.items():
            setattr(cls, name, value)


# ============================================================================
# LOGGING CONFIGURATION
# ============================================================================

# Keep stdout clean by default (tests, CLI pipes); -v raises the level.
_default_log_level = logging.INFO if Config.VERBOSE_LOGGING else logging.WARNING
logging.basicConfig(
    level=_default_log_level,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger('mirror-drive')
logger.setLevel(_default_log_level)


# ============================================================================
# TERMINAL COLORS
# ============================================================================

class Colors:
    """
    ANSI color codes for terminal output.

    Automatically disabled on non-TTY terminals (pipes, redirects) or when
    Config.USE_COLORS = False.

    Example:
        >>> print(Colors.success("Mirror completed"))
        ✓ Mirror completed
    """
    _RESET = '\033[0m'
    _BOLD = '\033[1m'
    _DIM = '\033[2m'
    _RED = '\033[91m'
    _GREEN = '\033[92m'
    _YELLOW = '\033[93m'
    _BLUE = '\033[94m'

    @classmethod
    def _is_enabled(cls) -> bool:
        """Check if colors should be enabled."""
        if not Config.USE_COLORS:
            return False
        return hasattr(sys.stdout, 'isatty') and sys.stdout.isatty()

    @classmethod
    def _wrap(cls, code: str, text: str) -> str:
        if cls._is_enabled():
            return f"{code}{text}{cls._RESET}"
        return text

    @classmethod
    def green(cls, text: str) -> str:
        return cls._wrap(cls._GREEN, text)

    @classmethod
    def red(cls, text: str) -> str:
        return cls._wrap(cls._RED, text)

    @classmethod
    def yellow(cls, text: str) -> str:
        return cls._wrap(cls._YELLOW, text)

    @classmethod
    def success(cls, text: str) -> str:
        """Format text as success (green with checkmark)."""
        if cls._is_enabled():
            return f"{cls._GREEN}✓{cls._RESET} {text}"
        return f"[OK] {text}"

    @classmethod
    def error(cls, text: str) -> str:
        """Format text as error (red with X)."""
        if cls._is_enabled():
            return f"{cls._RED}✗{cls._RESET} {text}"
        return f"[ERROR] {text}"

    @classmethod
    def warning(cls, text: str) -> str:
        """Format text as warning (yellow with !)."""
        if cls._is_enabled():
            return f"{cls._YELLOW}⚠{cls._RESET} {text}"
        return f"[WARN] {text}"

    @classmethod
    def info(cls, text: str) -> str:
        """Format text as info (blue with i)."""
        if cls._is_enabled():
            return f"{cls._BLUE}ℹ{cls._RESET} {text}"
        return f"[INFO] {text}"

    @classmethod
    def bold(cls, text: str) -> str:
        """Format text as bold."""
        return cls._wrap(cls._BOLD, text)

    @classmethod
    def dim(cls, text: str) -> str:
        """Format text as dim/muted."""
        return cls._wrap(cls._DIM, text)


# ============================================================================
# CUSTOM EXCEPTIONS - Hierarchical exception system
# ============================================================================

class MirrorError(Exception):
    """
    Base exception for all mirror-drive errors.

    Attributes:
        message: Human-readable error description
        code: Numeric error code (used as the CLI exit status)

    Example:
        >>> raise MirrorError("Operation failed", code=1)
    """
    def __init__(self, message: str, code: int = 1) -> None:
        super().__init__(message)
        self.message = message
        self.code = code

    def __str__(self) -> str:
        return self.message


class ConfigurationError(MirrorError):
    """
    Raised when mirror options are invalid.

    Detected while constructing the engine, or at first use for transform
    factories that return something that is not a filter.
    """
    def __init__(self, message: str) -> None:
        super().__init__(message, code=2)


class WritabilityError(MirrorError):
    """
    Raised when the destination is a read-only replicated drive.

    Always raised before any pass begins, so the destination is untouched.
    """
    def __init__(self, message: str) -> None:
        super().__init__(message, code=3)


class TransformError(MirrorError):
    """
    Raised when a transform filter fails mid-stream.

    The copy of the current key is aborted and the pass terminates. The
    original exception is available as ``__cause__``.
    """
    def __init__(self, message: str) -> None:
        super().__init__(message, code=4)


class DriveIOError(MirrorError):
    """
    Raised by drives for storage failures.

    This wraps OS-level errors (and missing keys on delete) with drive
    context. The engine propagates it verbatim.
    """
    def __init__(self, message: str) -> None:
        super().__init__(message, code=5)


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True)
class BlobInfo:
    """Content descriptor of a file entry."""
    byte_length: int
    block_offset: Optional[int] = None  # replicated drives only
    block_length: Optional[int] = None


@dataclass(frozen=True)
class DriveEntry:
    """
    A drive's view of one path.

    Exactly one of ``blob`` or ``linkname`` is set for a file or symlink.
    Both unset denotes a directory marker.
    """
    key: str
    blob: Optional[BlobInfo] = None
    executable: bool = False
    linkname: Optional[str] = None
    metadata: Any = None

    @property
    def is_symlink(self) -> bool:
        return self.linkname is not None

    @property
    def byte_length(self) -> int:
        return self.blob.byte_length if self.blob is not None else 0


class DiffOp(str, Enum):
    ADD = "add"
    CHANGE = "change"
    REMOVE = "remove"
    EQUAL = "equal"


@dataclass(frozen=True)
class DiffEvent:
    """
    One operation computed by the engine.

    ``bytes_removed`` is the destination's prior blob length and
    ``bytes_added`` the source's blob length (0 for symlinks and
    directories).
    """
    op: DiffOp
    key: str
    bytes_removed: int = 0
    bytes_added: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "op": self.op.value,
            "key": self.key,
            "bytes_removed": self.bytes_removed,
            "bytes_added": self.bytes_added,
        }


@dataclass
class Counters:
    """Operation counters of a mirror pass."""
    files: int = 0
    add: int = 0
    remove: int = 0
    change: int = 0

    def as_dict(self) -> Dict[str, int]:
        return dataclasses.asdict(self)


class MirrorState(Enum):
    INIT = "init"
    PRUNE = "prune"
    SYNC = "sync"
    FLUSH = "flush"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class DownloadStats:
    bytes: int
    blocks: int
    speed: float
    progress: float


@dataclass(frozen=True)
class UploadStats:
    bytes: int
    blocks: int
    speed: float


@dataclass(frozen=True)
class MonitorStats:
    """Immutable snapshot produced by a Monitor on every tick."""
    peers: int
    download: DownloadStats
    upload: UploadStats


# ============================================================================
# DRIVE CAPABILITY CONTRACT
# ============================================================================

class WriteStream(ABC):
    """
    Writable byte sink returned by ``Drive.create_write_stream``.

    Content becomes visible on ``close()``; ``abort()`` discards it. Used as
    a context manager the stream is closed on success and aborted when the
    block raises.

    Example:
        >>> with drive.create_write_stream("/a.txt") as ws:
        ...     ws.write(b"hello")
    """

    @abstractmethod
    def write(self, data: bytes) -> None:
        raise NotImplementedError

    @abstractmethod
    def close(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def abort(self) -> None:
        raise NotImplementedError

    def __enter__(self) -> 'WriteStream':
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        if exc_type is None:
            self.close()
        else:
            self.abort()


class Drive(ABC):
    """
    Capability contract every source and destination must satisfy.

    Keys are absolute, slash-separated paths. Optional capabilities are
    described by the ``Batchable``, ``BlobAware`` and ``PeerAware``
    protocols and queried when a mirror starts.
    """

    supports_metadata: bool = False

    @abstractmethod
    def ready(self) -> None:
        """Open the backing storage. Raises DriveIOError on failure."""
        raise NotImplementedError

    @abstractmethod
    def entry(self, key: str) -> Optional[DriveEntry]:
        raise NotImplementedError

    @abstractmethod
    def list(self, prefix: str = '/', ignore: Optional[KeyPredicate] = None) -> Iterable[Union[DriveEntry, str]]:
        """Lazily yield entries (or bare keys) nested under ``prefix``."""
        raise NotImplementedError

    @abstractmethod
    def create_read_stream(self, entry_or_key: Union[DriveEntry, str]) -> Iterable[bytes]:
        raise NotImplementedError

    @abstractmethod
    def create_write_stream(self, key: str, executable: bool = False, metadata: Any = None) -> WriteStream:
        raise NotImplementedError

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove ``key``. Raises DriveIOError if it does not exist."""
        raise NotImplementedError

    @abstractmethod
    def symlink(self, key: str, linkname: str) -> None:
        raise NotImplementedError

    def put(self, key: str, data: bytes, executable: bool = False, metadata: Any = None) -> None:
        """Write a whole blob in one call."""
        with self.create_write_stream(key, executable=executable, metadata=metadata) as ws:
            ws.write(data)

    def get(self, key: str) -> Optional[bytes]:
        """Read a whole blob, or None when ``key`` is not a file."""
        entry = self.entry(key)
        if entry is None or entry.blob is None:
            return None
        return b''.join(self.create_read_stream(entry))


@runtime_checkable
class Batchable(Protocol):
    """Drives that can stage mutations and commit them with ``flush()``."""
    def batch(self) -> Any: ...


@runtime_checkable
class BlobAware(Protocol):
    """Drives backed by a replicated block store (``get_blobs().core``)."""
    def get_blobs(self) -> Any: ...


@runtime_checkable
class PeerAware(Protocol):
    """Drives exposing ``core.writable`` and ``core.peers``."""
    core: Any


# ============================================================================
# UTILITY FUNCTIONS - Formatting and helpers
# ============================================================================

def format_size(size: int) -> str:
    """
    Format byte size in human-readable format.

    Example:
        >>> format_size(1234567890)
        '1.15 GB'
    """
    value: float = float(size)
    for unit in ('B', 'KB', 'MB', 'GB', 'TB'):
        if abs(value) < 1024.0:
            return f"{value:.2f} {unit}" if unit != 'B' else f"{int(value)} {unit}"
        value = value / 1024.0
    return f"{value:.2f} PB"


def format_time(seconds: float) -> str:
    """
    Format time duration in human-readable format.

    Example:
        >>> format_time(0.00123)
        '1.23ms'
    """
    if seconds < 0.001:
        return f"{seconds * 1000000:.0f}µs"
    elif seconds < 1.0:
        return f"{seconds * 1000:.2f}ms"
    elif seconds < 60:
        return f"{seconds:.2f}s"
    else:
        minutes = int(seconds // 60)
        secs = seconds % 60
        return f"{minutes}m {secs:.1f}s"


def normalize_key(key: str) -> str:
    """
    Resolve ``key`` to an absolute, normalized drive path.

    Example:
        >>> normalize_key("docs/../a.txt")
        '/a.txt'
    """
    resolved = posixpath.normpath(posixpath.join('/', key))
    if resolved.startswith('//'):
        resolved = '/' + resolved.lstrip('/')
    return resolved


def to_ignore_function(ignore: Union[KeyPredicate, str, Sequence[str]]) -> KeyPredicate:
    """
    Build an ignore predicate from a callable or a list of paths.

    A key is ignored when it equals one of the paths or is nested under it.
    """
    if callable(ignore):
        return ignore

    raw = [ignore] if isinstance(ignore, str) else list(ignore)
    paths = [normalize_key(p) for p in raw]

    def _ignored(key: str) -> bool:
        return any(key == path or key.startswith(path + '/') for path in paths)

    return _ignored


def iter_file(fh: IO[bytes], chunk_size: Optional[int] = None) -> Iterator[bytes]:
    """Yield chunks from a binary file object until EOF."""
    size = chunk_size or Config.CHUNK_SIZE_STREAMING
    while True:
        chunk = fh.read(size)
        if not chunk:
            break
        yield chunk


def _close_stream(stream: Any) -> None:
    close = getattr(stream, 'close', None)
    if close is not None:
        close()


def _identity(key: str) -> str:
    return key


def _weak_listener(method: Callable[[int, int], None]) -> Callable[[int, int], None]:
    """Wrap a bound transfer listener so the emitter does not own its object."""
    ref = weakref.WeakMethod(method)

    def listener(index: int, byte_length: int) -> None:
        target = ref()
        if target is not None:
            target(index, byte_length)

    return listener


# ============================================================================
# STREAM EQUALITY
# ============================================================================

def stream_equals(a: Iterable[bytes], b: Iterable[bytes]) -> bool:
    """
    Compare two chunked byte streams for identical content.

    Chunk boundaries may differ between the streams. Reading stops at the
    first differing byte and both streams are closed afterwards.

    Example:
        >>> stream_equals([b"ab", b"c"], [b"a", b"bc"])
        True
    """
    it_a = iter(a)
    it_b = iter(b)
    buf_a = memoryview(b'')
    buf_b = memoryview(b'')
    done_a = done_b = False

    try:
        while True:
            while not buf_a and not done_a:
                chunk = next(it_a, None)
                if chunk is None:
                    done_a = True
                else:
                    buf_a = memoryview(bytes(chunk))
            while not buf_b and not done_b:
                chunk = next(it_b, None)
                if chunk is None:
                    done_b = True
                else:
                    buf_b = memoryview(bytes(chunk))

            if not buf_a or not buf_b:
                return not buf_a and not buf_b

            n = min(len(buf_a), len(buf_b))
            if buf_a[:n] != buf_b[:n]:
                return False
            buf_a = buf_a[n:]
            buf_b = buf_b[n:]
    finally:
        _close_stream(it_a)
        _close_stream(it_b)


# ============================================================================
# ENTRY ENUMERATOR & PAIR MATCHER
# ============================================================================

def enumerate_entries(drive: Drive, prefix: str, ignore: Optional[KeyPredicate] = None) -> Iterator[DriveEntry]:
    """
    Lazily enumerate the entries of ``drive`` nested under ``prefix``.

    Bare keys returned by ``drive.list`` are resolved with ``drive.entry``;
    keys that vanished in between are skipped. ``ignore`` is applied here as
    well, so drives that do not honor it still produce a correct sequence.
    """
    for item in drive.list(prefix, ignore=ignore):
        key = item if isinstance(item, str) else item.key
        if ignore is not None and ignore(key):
            continue
        if isinstance(item, str):
            entry = drive.entry(key)
            if entry is None:
                continue
            yield entry
        else:
            yield item


def match_pairs(
    items: Iterable[Tuple[str, Optional[DriveEntry]]],
    other: Optional[Drive],
    to_other: Callable[[str], str] = _identity,
) -> Iterator[Tuple[str, Optional[DriveEntry], Optional[DriveEntry]]]:
    """
    Join an enumerated sequence against point lookups in ``other``.

    Yields ``(key, entry_a, entry_b)`` where ``entry_b`` is the exact-key
    lookup (after ``to_other``) in the opposite drive, or None.
    """
    for key, entry_a in items:
        entry_b = other.entry(to_other(key)) if other is not None else None
        yield key, entry_a, entry_b


# ============================================================================
# PREFIX SCOPING
# ============================================================================

@dataclass(frozen=True)
class PrefixRebase:
    """
    Mirror everything under ``from_`` on the source to ``to`` on the
    destination, keeping the relative structure.
    """
    from_: str
    to: str

    def __post_init__(self) -> None:
        object.__setattr__(self, 'from_', normalize_key(self.from_))
        object.__setattr__(self, 'to', normalize_key(self.to))

    def to_dst(self, key: str) -> str:
        return _rebase(key, self.from_, self.to)

    def to_src(self, key: str) -> str:
        return _rebase(key, self.to, self.from_)


def _rebase(key: str, old: str, new: str) -> str:
    if key == old:
        return new
    if old != '/' and not key.startswith(old + '/'):
        return key
    rest = key if old == '/' else key[len(old):]
    return (new.rstrip('/') + rest) or '/'


def _parse_prefix(prefix: Any) -> Tuple[List[str], Optional[PrefixRebase]]:
    if prefix is None:
        return ['/'], None
    if isinstance(prefix, str):
        return [normalize_key(prefix)], None
    if isinstance(prefix, PrefixRebase):
        return [prefix.from_], prefix
    if isinstance(prefix, dict):
        if 'from' not in prefix or 'to' not in prefix:
            raise ConfigurationError("prefix rebase requires 'from' and 'to'")
        rebase = PrefixRebase(prefix['from'], prefix['to'])
        return [rebase.from_], rebase
    if isinstance(prefix, (list, tuple)):
        if not prefix:
            raise ConfigurationError("prefix list must not be empty")
        if not all(isinstance(p, str) for p in prefix):
            raise ConfigurationError("prefix list must contain strings")
        return [normalize_key(p) for p in prefix], None
    raise ConfigurationError(f"Unsupported prefix: {prefix!r}")


# ============================================================================
# EQUALITY ORACLE
# ============================================================================

class EqualityOracle:
    """
    Decides whether a source entry and a destination entry already agree.

    Checks run in order and stop at the first decisive signal:

        1. destination absent          -> unequal
        2. either side a symlink       -> equal iff both link to the same name
        3. executable bit              -> must match
        4. metadata                    -> custom comparator or deep equality,
                                          ignored if a drive lacks metadata
        5. blob length                 -> unequal without reading content
        6. content                     -> streamed byte comparison

    Args:
        src: Source drive
        dst: Destination drive (used for capability checks)
        dst_handle: Handle used to read destination content (the batch
            handle in batch mode)
        metadata_equals: Optional ``(src_meta, dst_meta) -> bool``
    """

    def __init__(self, src: Drive, dst: Drive, dst_handle: Optional[Drive] = None,
                 metadata_equals: Optional[MetadataComparator] = None) -> None:
        self.src = src
        self.dst = dst
        self.dst_handle = dst_handle if dst_handle is not None else dst
        self.metadata_equals = metadata_equals

    def metadata_matches(self, src_entry: DriveEntry, dst_entry: DriveEntry) -> bool:
        if not getattr(self.src, 'supports_metadata', False) or not getattr(self.dst, 'supports_metadata', False):
            return True

        src_meta = src_entry.metadata
        dst_meta = dst_entry.metadata

        if self.metadata_equals is not None:
            return bool(self.metadata_equals(src_meta, dst_meta))

        if src_meta is None and dst_meta is None:
            return True
        if src_meta is None or dst_meta is None:
            return False
        return bool(src_meta == dst_meta)

    def attributes_check(self, src_entry: DriveEntry, dst_entry: Optional[DriveEntry]) -> Optional[bool]:
        """Stages 1-4, which never depend on the source content or its length."""
        if dst_entry is None:
            return False

        if src_entry.is_symlink or dst_entry.is_symlink:
            return src_entry.linkname == dst_entry.linkname

        if src_entry.executable != dst_entry.executable:
            return False

        if not self.metadata_matches(src_entry, dst_entry):
            return False

        return None

    def quick_check(self, src_entry: DriveEntry, dst_entry: Optional[DriveEntry],
                    src_length: Optional[int] = None) -> Optional[bool]:
        """
        Run every stage except the content comparison.

        Returns True or False when decisive, None when content must be read.
        ``src_length`` overrides the source blob length (transformed output).
        """
        verdict = self.attributes_check(src_entry, dst_entry)
        if verdict is not None or dst_entry is None:
            return verdict

        has_src_content = src_entry.blob is not None or src_length is not None
        if not has_src_content and dst_entry.blob is None:
            return True
        if not has_src_content or dst_entry.blob is None:
            return False

        length = src_entry.byte_length if src_length is None else src_length
        if length != dst_entry.byte_length:
            return False

        return None

    def same(self, src_entry: DriveEntry, dst_entry: Optional[DriveEntry]) -> bool:
        verdict = self.quick_check(src_entry, dst_entry)
        if verdict is not None:
            return verdict
        assert dst_entry is not None
        return stream_equals(
            self.src.create_read_stream(src_entry),
            self.dst_handle.create_read_stream(dst_entry),
        )

    def same_content(self, src_entry: DriveEntry, dst_entry: Optional[DriveEntry],
                     chunks: Iterable[bytes], length: int) -> bool:
        """Compare already-produced source content (e.g. transform output)."""
        verdict = self.quick_check(src_entry, dst_entry, src_length=length)
        if verdict is not None:
            return verdict
        assert dst_entry is not None
        return stream_equals(chunks, self.dst_handle.create_read_stream(dst_entry))


# ============================================================================
# COMPRESSION FILTERS - zlib, lz4 and zstd streaming codecs
# ============================================================================

class CompressionType(Enum):
    """Codecs available to the built-in transform filters."""
    ZLIB = "zlib"
    LZ4 = "lz4"
    ZSTD = "zstd"


class _StreamCodec:
    """Uniform ``feed()``/``finish()`` wrapper over streaming codec objects."""

    def __init__(self, obj: Any, method: str, header: bytes = b'') -> None:
        self._obj = obj
        self._method = getattr(obj, method)
        self._header = header

    def feed(self, data: bytes) -> bytes:
        out = self._method(data)
        if self._header:
            out = self._header + out
            self._header = b''
        return cast(bytes, out)

    def finish(self) -> bytes:
        flush = getattr(self._obj, 'flush', None)
        tail = cast(bytes, flush()) if flush is not None else b''
        if self._header:
            tail = self._header + tail
            self._header = b''
        return tail


class CompressionRegistry:
    """
    Registry of streaming compressors used by ``compress_filter`` and
    ``decompress_filter``.

    Supports zlib, lz4 (frame format) and zstandard.
    """

    @classmethod
    def get_compression_level(cls, comp_type: CompressionType) -> int:
        """Get default compression level for algorithm."""
        levels = {
            CompressionType.ZLIB: 6,
            CompressionType.LZ4: 1,  # lz4 uses 0-12, 1 is fast
            CompressionType.ZSTD: 3,  # zstd uses 1-22, 3 is balanced
        }
        return levels[comp_type]

    @classmethod
    def stream_compressor(cls, comp_type: CompressionType, level: Optional[int] = None) -> _StreamCodec:
        if level is None:
            level = cls.get_compression_level(comp_type)
        if comp_type == CompressionType.ZLIB:
            return _StreamCodec(zlib.compressobj(level), 'compress')
        elif comp_type == CompressionType.LZ4:
            compressor = _lz4_frame.LZ4FrameCompressor(compression_level=level)
            return _StreamCodec(compressor, 'compress', header=cast(bytes, compressor.begin()))
        elif comp_type == CompressionType.ZSTD:
            return _StreamCodec(_zstandard.ZstdCompressor(level=level).compressobj(), 'compress')
        raise ConfigurationError(f"Unsupported compression type: {comp_type}")

    @classmethod
    def stream_decompressor(cls, comp_type: CompressionType) -> _StreamCodec:
        if comp_type == CompressionType.ZLIB:
            return _StreamCodec(zlib.decompressobj(), 'decompress')
        elif comp_type == CompressionType.LZ4:
            return _StreamCodec(_lz4_frame.LZ4FrameDecompressor(), 'decompress')
        elif comp_type == CompressionType.ZSTD:
            return _StreamCodec(_zstandard.ZstdDecompressor().decompressobj(), 'decompress')
        raise ConfigurationError(f"Unsupported compression type: {comp_type}")


def _codec_filter(make_codec: Callable[[], _StreamCodec]) -> Filter:
    def _filter(chunks: Iterable[bytes]) -> Iterator[bytes]:
        codec = make_codec()
        for chunk in chunks:
            out = codec.feed(chunk)
            if out:
                yield out
        tail = codec.finish()
        if tail:
            yield tail
    return _filter


def compress_filter(comp_type: Union[CompressionType, str] = CompressionType.ZSTD,
                    level: Optional[int] = None) -> FilterFactory:
    """
    Transform factory that compresses every selected file.

    Example:
        >>> MirrorDrive(src, dst, transforms=[compress_filter("zstd")])
    """
    codec_type = CompressionType(comp_type)
    CompressionRegistry.stream_compressor(codec_type, level)  # validate eagerly

    def factory(key: str) -> Filter:
        return _codec_filter(lambda: CompressionRegistry.stream_compressor(codec_type, level))
    return factory


def decompress_filter(comp_type: Union[CompressionType, str] = CompressionType.ZSTD) -> FilterFactory:
    """Transform factory that decompresses every selected file."""
    codec_type = CompressionType(comp_type)

    def factory(key: str) -> Filter:
        return _codec_filter(lambda: CompressionRegistry.stream_decompressor(codec_type))
    return factory


def map_filter(fn: Callable[[bytes], bytes]) -> FilterFactory:
    """
    Transform factory applying ``fn`` to each chunk independently.

    Example:
        >>> MirrorDrive(src, dst, transforms=[map_filter(bytes.upper)])
    """
    def factory(key: str) -> Filter:
        def _filter(chunks: Iterable[bytes]) -> Iterator[bytes]:
            for chunk in chunks:
                yield fn(chunk)
        return _filter
    return factory


# ============================================================================
# TRANSFORM PIPELINE
# ============================================================================

@dataclass
class TransformRule:
    """
    A filter factory plus an optional key selector.

    ``test`` may be an exact key, a compiled regular expression (searched
    against the key) or a predicate. Without ``test`` the rule applies to
    every key.
    """
    transform: FilterFactory
    test: Union[None, str, Pattern[str], KeyPredicate] = None

    def matches(self, key: str) -> bool:
        if self.test is None:
            return True
        if isinstance(self.test, str):
            return key == self.test
        if isinstance(self.test, re.Pattern):
            return self.test.search(key) is not None
        return bool(self.test(key))


class TransformPipeline:
    """
    Ordered chain of byte-stream filters applied between reading source
    content and writing it to the destination.

    Items may be bare factories ``factory(key) -> filter | None``,
    ``TransformRule`` objects or ``{"test": ..., "transform": ...}`` dicts.
    A factory returning None is a no-op for that key.

    Raises:
        ConfigurationError: If an item is not callable or has an invalid test
    """

    def __init__(self, transforms: Optional[Sequence[Any]] = None) -> None:
        self.rules: List[TransformRule] = [self._coerce(item) for item in (transforms or [])]

    @staticmethod
    def _coerce(item: Any) -> TransformRule:
        if isinstance(item, TransformRule):
            rule = item
        elif isinstance(item, dict):
            rule = TransformRule(transform=item.get('transform'), test=item.get('test'))  # type: ignore[arg-type]
        elif callable(item):
            rule = TransformRule(transform=item)
        else:
            raise ConfigurationError("transformer must be a function")

        if not callable(rule.transform):
            raise ConfigurationError("transformer must be a function")
        if rule.test is not None and not isinstance(rule.test, (str, re.Pattern)) and not callable(rule.test):
            raise ConfigurationError("transform test must be a string, pattern or function")
        return rule

    def __len__(self) -> int:
        return len(self.rules)

    def __bool__(self) -> bool:
        return bool(self.rules)

    def resolve(self, key: str, entry: Optional[DriveEntry] = None) -> List[Filter]:
        """Return the filters selected for ``key`` (possibly empty)."""
        if entry is not None and entry.is_symlink:
            return []

        filters: List[Filter] = []
        for rule in self.rules:
            if not rule.matches(key):
                continue
            stage = rule.transform(key)
            if stage is None:
                continue
            if not callable(stage):
                raise ConfigurationError("transformer must return a filter")
            filters.append(stage)
        return filters

    def apply(self, key: str, chunks: Iterable[bytes], filters: Sequence[Filter]) -> Iterator[bytes]:
        """
        Run ``chunks`` through ``filters`` in order.

        Raises:
            TransformError: If a filter raises; drive errors pass through
        """
        stream: Iterable[bytes] = chunks
        try:
            for stage in filters:
                stream = stage(stream)
            for chunk in stream:
                if chunk:
                    yield bytes(chunk)
        except MirrorError:
            raise
        except Exception as exc:
            raise TransformError(f"transform failed for {key}: {exc}") from exc
        finally:
            _close_stream(stream)
            _close_stream(chunks)


# ============================================================================
# PROGRESS MONITORING
# ============================================================================

class Speedometer:
    """
    Sliding-window rate estimator.

    Call with a byte count to record a transfer; call without arguments to
    read the current rate in bytes per second.

    Example:
        >>> speed = Speedometer()
        >>> speed(4096)
        819.2
    """

    def __init__(self, window: Optional[float] = None) -> None:
        self.window = window or Config.SPEEDOMETER_WINDOW
        self._samples: Deque[Tuple[float, int]] = deque()
        self._total = 0
        self._lock = threading.Lock()

    def __call__(self, delta: int = 0) -> float:
        now = time.monotonic()
        with self._lock:
            if delta:
                self._samples.append((now, delta))
                self._total += delta
            cutoff = now - self.window
            while self._samples and self._samples[0][0] < cutoff:
                _, size = self._samples.popleft()
                self._total -= size
            return self._total / self.window


class Monitor:
    """
    Periodic observer of a mirror's progress and transfer rates.

    Registers into ``mirror.monitors`` and produces a first snapshot right
    away, then refreshes ``stats`` every ``interval`` seconds on a daemon
    thread and hands each snapshot to the update listeners.

    Detaching swaps the last monitor into the freed slot, so the remaining
    monitors keep valid indices.

    Only a weak reference to the mirror is held. A mirror abandoned
    mid-pass and garbage collected detaches its monitors, and a monitor
    whose mirror is gone stops its thread on the next tick.

    Example:
        >>> mon = mirror.monitor(interval=0.5, on_update=print)
        >>> mirror.done()          # monitors are detached when the pass ends
        >>> mon.destroyed
        True
    """

    def __init__(self, mirror: 'MirrorDrive', interval: Optional[float] = None,
                 on_update: Optional[Callable[[MonitorStats], None]] = None) -> None:
        self._mirror_ref = weakref.ref(mirror)
        self.interval = interval if interval is not None else Config.DEFAULT_MONITOR_INTERVAL
        self.stats: Optional[MonitorStats] = None
        self.index = -1
        self._update_listeners: List[Callable[[MonitorStats], None]] = []
        self._destroy_listeners: List[Callable[[], None]] = []
        self._stop = threading.Event()

        if on_update is not None:
            self._update_listeners.append(on_update)

        mirror._attach_monitor(self)
        self.update()  # populate latest stats

        self._thread = threading.Thread(target=self._run, name="mirror-drive-monitor", daemon=True)
        self._thread.start()

    @property
    def mirror(self) -> Optional['MirrorDrive']:
        return self._mirror_ref()

    @property
    def destroyed(self) -> bool:
        return self.index == -1

    def on_update(self, callback: Callable[[MonitorStats], None]) -> None:
        self._update_listeners.append(callback)

    def on_destroy(self, callback: Callable[[], None]) -> None:
        self._destroy_listeners.append(callback)

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            if self._mirror_ref() is None:
                self._detach(None)
                break
            self.update()

    def update(self) -> None:
        m = self._mirror_ref()
        if m is None or self.index == -1:
            return

        # Snapshots are replaced, never mutated.
        self.stats = MonitorStats(
            peers=len(m.peers),
            download=DownloadStats(
                bytes=m.downloaded_bytes,
                blocks=m.downloaded_blocks,
                speed=m.download_speed() if m.download_speed is not None else 0.0,
                progress=m.download_progress,
            ),
            upload=UploadStats(
                bytes=m.uploaded_bytes,
                blocks=m.uploaded_blocks,
                speed=m.upload_speed() if m.upload_speed is not None else 0.0,
            ),
        )

        for listener in list(self._update_listeners):
            try:
                listener(self.stats)
            except Exception:
                logger.warning("monitor update listener failed", exc_info=True)

    def destroy(self) -> None:
        self._detach(self._mirror_ref())

    def _detach(self, mirror: Optional['MirrorDrive']) -> None:
        if mirror is not None:
            if not mirror._detach_monitor(self):
                return
        elif self.index == -1:
            return
        else:
            self.index = -1

        self._stop.set()
        for listener in list(self._destroy_listeners):
            try:
                listener()
            except Exception:
                logger.warning("monitor destroy listener failed", exc_info=True)


class Preloader:
    """
    Best-effort background warm-up of replicated source content.

    Requests the block range of every source entry in scope without waiting
    for delivery, then estimates the total number of blocks to download
    from the ranges whose transfer context is known. Ranges without a
    context are left out, so the estimate is a lower bound.

    Failures are logged at DEBUG level and never reach the mirror pass.
    """

    def __init__(self, mirror: 'MirrorDrive') -> None:
        self.mirror = mirror
        self.thread: Optional[threading.Thread] = None

    def start(self) -> threading.Thread:
        self.thread = threading.Thread(target=self._run_quietly, name="mirror-drive-preload", daemon=True)
        self.thread.start()
        return self.thread

    def join(self, timeout: Optional[float] = None) -> None:
        if self.thread is not None:
            self.thread.join(timeout)

    def _run_quietly(self) -> None:
        try:
            self.run()
        except Exception:
            logger.debug("preload failed", exc_info=True)

    def entries(self) -> List[DriveEntry]:
        m = self.mirror
        return [
            entry for _, entry, _ in m._pairs(m.src, None, m.prefixes, _identity, _identity, _identity)
            if entry is not None
        ]

    def run(self, entries: Optional[Iterable[DriveEntry]] = None) -> int:
        """Request, estimate and wait for every range. Returns the estimate."""
        m = self.mirror
        blobs = m.src.get_blobs()
        ranges = []

        for entry in (entries if entries is not None else self.entries()):
            blob = entry.blob
            if blob is None or blob.block_offset is None or not blob.block_length:
                continue
            ranges.append(blobs.core.download(start=blob.block_offset, length=blob.block_length))

        estimate = m.downloaded_blocks
        for dl in ranges:
            context = getattr(dl, 'context', None)
            if context is None:
                continue
            estimate += context.end - context.start
        m.downloaded_blocks_estimate = estimate
        logger.debug("preload estimate: %d blocks in %d ranges", estimate, len(ranges))

        for dl in ranges:
            dl.done()
        return estimate


# ============================================================================
# MIRROR OPTIONS
# ============================================================================

@dataclass
class MirrorOptions:
    """
    Options of a mirror pass.

    Attributes:
        prefix: Path scope(s), or a ``PrefixRebase`` / ``{"from", "to"}`` pair
        dry_run: Compute events without mutating the destination
        prune: Remove destination entries absent from the source
        include_equals: Emit ``equal`` events
        filter: Key predicate applied in both passes (source-side keys)
        ignore: Predicate or path list excluded at enumeration
        metadata_equals: Custom metadata comparator
        batch: Stage destination mutations and flush once at the end
        entries: Explicit keys (source-side) replacing enumeration
        transforms: Filter factories / rules for the transform pipeline
        transform_pipeline: A prebuilt ``TransformPipeline``
        preload: Warm replicated source content in the background
        progress: Sample transfer rates even without a monitor
    """
    prefix: Any = '/'
    dry_run: bool = False
    prune: bool = True
    include_equals: bool = False
    filter: Optional[KeyPredicate] = None
    ignore: Union[None, KeyPredicate, str, Sequence[str]] = None
    metadata_equals: Optional[MetadataComparator] = None
    batch: bool = False
    entries: Optional[Sequence[Union[str, DriveEntry]]] = None
    transforms: Optional[Sequence[Any]] = None
    transform_pipeline: Optional[TransformPipeline] = None
    preload: bool = True
    progress: bool = False


# ============================================================================
# MIRROR ENGINE
# ============================================================================

class MirrorDrive:
    """
    Mirror engine: a single-pass, pull-based sequence of ``DiffEvent``.

    Iterating the engine runs the prune pass and then the sync pass,
    mutating the destination (unless ``dry_run``) as events are pulled.
    ``done()`` drains the sequence. A second pass needs a new instance.

    Args:
        src: Authoritative source drive
        dst: Destination drive
        options: ``MirrorOptions`` (keyword overrides are applied on top)

    Raises:
        ConfigurationError: On invalid options

    Example:
        >>> mirror = MirrorDrive(src, dst, prune=False, dry_run=True)
        >>> [d.key for d in mirror]
        ['/new.txt']
    """

    def __init__(self, src: Drive, dst: Drive, options: Optional[MirrorOptions] = None, **overrides: Any) -> None:
        opts = options if options is not None else MirrorOptions()
        if overrides:
            try:
                opts = dataclasses.replace(opts, **overrides)
            except TypeError as exc:
                raise ConfigurationError(f"Unknown mirror option: {exc}") from exc

        self.src = src
        self.dst = dst
        self.options = opts

        self.prefixes, self.rebase = _parse_prefix(opts.prefix)
        self.dry_run = bool(opts.dry_run)
        self.prune = opts.prune is not False
        self.preload = opts.preload is not False and isinstance(src, BlobAware)
        self.include_progress = bool(opts.progress) and isinstance(src, BlobAware)
        self.include_equals = bool(opts.include_equals)
        self.filter = opts.filter
        self.metadata_equals = opts.metadata_equals
        self.batch = bool(opts.batch)
        self.entries = list(opts.entries) if opts.entries is not None else None
        self.ignore = to_ignore_function(opts.ignore) if opts.ignore else None

        if self.filter is not None and not callable(self.filter):
            raise ConfigurationError("filter must be a function")
        if self.metadata_equals is not None and not callable(self.metadata_equals):
            raise ConfigurationError("metadata_equals must be a function")
        if self.batch and not isinstance(dst, Batchable):
            raise ConfigurationError("batch requires a destination with batch()")
        if opts.transform_pipeline is not None and opts.transforms:
            raise ConfigurationError("pass either transforms or transform_pipeline, not both")
        self.transforms = opts.transform_pipeline or TransformPipeline(opts.transforms)

        self.count = Counters()
        self.bytes_removed = 0
        self.bytes_added = 0
        self.state = MirrorState.INIT
        self.finished = False

        self.downloaded_blocks = 0
        self.downloaded_blocks_estimate = 0
        self.downloaded_bytes = 0
        self.download_speed: Optional[Speedometer] = Speedometer() if self.include_progress else None

        self.uploaded_blocks = 0
        self.uploaded_bytes = 0
        self.upload_speed: Optional[Speedometer] = Speedometer() if self.include_progress else None

        self.monitors: List[Monitor] = []
        self.preloader: Optional[Preloader] = None
        self._monitors_lock = threading.RLock()
        self._transfer_lock = threading.Lock()
        self._iterator = self._init()

    def __iter__(self) -> 'MirrorDrive':
        return self

    def __next__(self) -> DiffEvent:
        return next(self._iterator)

    def __enter__(self) -> 'MirrorDrive':
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    @property
    def peers(self) -> List[Any]:
        core = getattr(self.src, 'core', None)
        return list(getattr(core, 'peers', None) or [])

    @property
    def download_progress(self) -> float:
        if self.finished:
            return 1.0
        if not self.downloaded_blocks_estimate:
            return 0.0
        return min(Config.PROGRESS_CAP, self.downloaded_blocks / self.downloaded_blocks_estimate)

    def monitor(self, interval: Optional[float] = None,
                on_update: Optional[Callable[[MonitorStats], None]] = None) -> Monitor:
        """Attach a progress monitor; it is detached when the pass ends."""
        self.include_progress = isinstance(self.src, BlobAware)
        if self.download_speed is None:
            self.download_speed = Speedometer()
        if self.upload_speed is None:
            self.upload_speed = Speedometer()
        return Monitor(self, interval=interval, on_update=on_update)

    def done(self) -> Counters:
        """Drain the sequence, raising any terminal error."""
        for _ in self._iterator:
            pass
        return self.count

    def close(self) -> None:
        """Abandon the pass early, releasing monitors."""
        self._iterator.close()

    # -- monitor registry ---------------------------------------------------

    def _attach_monitor(self, monitor: Monitor) -> None:
        with self._monitors_lock:
            self.monitors.append(monitor)
            monitor.index = len(self.monitors) - 1

    def _detach_monitor(self, monitor: Monitor) -> bool:
        with self._monitors_lock:
            if monitor.index == -1:
                return False
            head = self.monitors.pop()
            if head is not monitor:
                self.monitors[monitor.index] = head
                head.index = monitor.index
            monitor.index = -1
            return True

    # -- transfer sampling --------------------------------------------------

    def _on_upload(self, index: int, byte_length: int) -> None:
        with self._transfer_lock:
            self.uploaded_blocks += 1
            self.uploaded_bytes += byte_length
        if self.upload_speed is not None:
            self.upload_speed(byte_length)

    def _on_download(self, index: int, byte_length: int) -> None:
        with self._transfer_lock:
            self.downloaded_blocks += 1
            self.downloaded_bytes += byte_length
        if self.download_speed is not None:
            self.download_speed(byte_length)

    # -- key mapping --------------------------------------------------------

    def _to_dst(self, key: str) -> str:
        return self.rebase.to_dst(key) if self.rebase is not None else key

    def _to_src(self, key: str) -> str:
        return self.rebase.to_src(key) if self.rebase is not None else key

    # -- passes -------------------------------------------------------------

    def _init(self) -> Iterator[DiffEvent]:
        try:
            yield from self._mirror()
        except Exception:
            self.state = MirrorState.ERROR
            raise
        finally:
            while self.monitors:
                self.monitors[-1]._detach(self)

    def _mirror(self) -> Iterator[DiffEvent]:
        self.src.ready()
        self.dst.ready()

        core = getattr(self.dst, 'core', None)
        if isinstance(self.dst, PeerAware) and core is not None and not getattr(core, 'writable', True):
            raise WritabilityError("Destination must be writable")

        blobs = self.src.get_blobs() if self.include_progress and isinstance(self.src, BlobAware) else None
        # The core must not keep an abandoned mirror alive.
        on_upload = _weak_listener(self._on_upload)
        on_download = _weak_listener(self._on_download)
        if blobs is not None:
            blobs.core.on('upload', on_upload)
            blobs.core.on('download', on_download)

        try:
            dst = self.dst.batch() if self.batch else self.dst
            oracle = EqualityOracle(self.src, self.dst, dst, self.metadata_equals)

            if self.preload:
                self.preloader = Preloader(self)
                self.preloader.start()

            if self.prune:
                self.state = MirrorState.PRUNE
                logger.info("prune pass started (dry_run=%s)", self.dry_run)
                yield from self._prune(dst)

            self.state = MirrorState.SYNC
            logger.info("sync pass started (dry_run=%s, transforms=%d)", self.dry_run, len(self.transforms))
            yield from self._sync(dst, oracle)

            if self.batch:
                self.state = MirrorState.FLUSH
                dst.flush()
        finally:
            if blobs is not None:
                blobs.core.off('upload', on_upload)
                blobs.core.off('download', on_download)

        self.finished = True
        self.state = MirrorState.DONE
        logger.info(
            "mirror finished: %s, %d bytes removed, %d bytes added",
            self.count, self.bytes_removed, self.bytes_added,
        )

    def _prune(self, dst: Drive) -> Iterator[DiffEvent]:
        scopes = [self.rebase.to] if self.rebase is not None else self.prefixes

        for key, dst_entry, src_entry in self._pairs(dst, self.src, scopes, self._to_src, self._to_src, self._to_dst):
            if dst_entry is None or src_entry is not None:
                continue

            size = dst_entry.byte_length
            self.count.remove += 1
            self.bytes_removed += size
            logger.debug("remove %s (%d bytes)", key, size)
            yield DiffEvent(DiffOp.REMOVE, key, bytes_removed=size, bytes_added=0)

            if not self.dry_run:
                dst.delete(key)
                logger.debug("removed %s", key)

    def _sync(self, dst: Drive, oracle: EqualityOracle) -> Iterator[DiffEvent]:
        for key, src_entry, dst_entry in self._pairs(self.src, dst, self.prefixes, self._to_dst, _identity, _identity):
            # With an explicit entry list the source entry may have vanished.
            if src_entry is None:
                continue

            self.count.files += 1
            dst_key = self._to_dst(key)
            filters = self.transforms.resolve(key, src_entry) if self.transforms else []
            spool: Optional[IO[bytes]] = None

            try:
                if filters:
                    # Only read the source when the attributes leave the verdict open.
                    verdict = oracle.attributes_check(src_entry, dst_entry)
                    if verdict is None:
                        spool, length = self._spool(
                            self.transforms.apply(key, self.src.create_read_stream(src_entry), filters)
                        )
                        verdict = oracle.same_content(src_entry, dst_entry, iter_file(spool), length)
                    same = verdict
                else:
                    same = oracle.same(src_entry, dst_entry)

                if same:
                    logger.debug("equal %s", dst_key)
                    if self.include_equals:
                        yield DiffEvent(DiffOp.EQUAL, dst_key, bytes_removed=0, bytes_added=0)
                    continue

                added = src_entry.byte_length
                if dst_entry is not None:
                    removed = dst_entry.byte_length
                    self.count.change += 1
                    self.bytes_removed += removed
                    self.bytes_added += added
                    logger.debug("change %s (-%d +%d bytes)", dst_key, removed, added)
                    yield DiffEvent(DiffOp.CHANGE, dst_key, bytes_removed=removed, bytes_added=added)
                else:
                    self.count.add += 1
                    self.bytes_added += added
                    logger.debug("add %s (+%d bytes)", dst_key, added)
                    yield DiffEvent(DiffOp.ADD, dst_key, bytes_removed=0, bytes_added=added)

                if self.dry_run:
                    continue

                if src_entry.linkname is not None:
                    dst.symlink(dst_key, src_entry.linkname)
                elif spool is not None:
                    spool.seek(0)
                    self._write(dst, dst_key, src_entry, iter_file(spool))
                elif filters:
                    self._write(dst, dst_key, src_entry, self.transforms.apply(
                        key, self.src.create_read_stream(src_entry), filters
                    ))
                else:
                    self._write(dst, dst_key, src_entry, self.src.create_read_stream(src_entry))
                logger.debug("wrote %s", dst_key)
            finally:
                if spool is not None:
                    spool.close()

    def _pairs(
        self,
        a: Drive,
        b: Optional[Drive],
        scopes: Sequence[str],
        to_other: Callable[[str], str],
        to_source: Callable[[str], str],
        from_source: Callable[[str], str],
    ) -> Iterator[Tuple[str, Optional[DriveEntry], Optional[DriveEntry]]]:
        """
        Enumerate drive ``a`` and pair each key with its lookup in ``b``.

        ``to_source`` maps keys of ``a`` into source space for the filter;
        ``from_source`` maps explicit (source-side) entry keys into ``a``.
        """
        def _keep(key: str) -> bool:
            return self.filter is None or bool(self.filter(to_source(key)))

        if self.entries is not None:
            def _explicit() -> Iterator[Tuple[str, Optional[DriveEntry]]]:
                for item in self.entries or []:
                    key = from_source(normalize_key(item if isinstance(item, str) else item.key))
                    if not _keep(key):
                        continue
                    yield key, a.entry(key)

            yield from match_pairs(_explicit(), b, to_other)
            return

        for scope in scopes:
            listed = (
                (entry.key, entry) for entry in enumerate_entries(a, scope, self.ignore)
                if _keep(entry.key)
            )
            yield from match_pairs(listed, b, to_other)

            # A file living exactly at the prefix path.
            if scope == '/' or not _keep(scope) or (self.ignore is not None and self.ignore(scope)):
                continue
            entry_a = a.entry(scope)
            entry_b = b.entry(to_other(scope)) if b is not None else None
            if entry_a is None and entry_b is None:
                continue
            yield scope, entry_a, entry_b

    @staticmethod
    def _spool(chunks: Iterable[bytes]) -> Tuple[IO[bytes], int]:
        spool = cast(IO[bytes], tempfile.SpooledTemporaryFile(max_size=Config.SPOOL_MAX_MEMORY))
        total = 0
        try:
            for chunk in chunks:
                spool.write(chunk)
                total += len(chunk)
        except BaseException:
            spool.close()
            raise
        spool.seek(0)
        return spool, total

    @staticmethod
    def _write(dst: Drive, key: str, src_entry: DriveEntry, chunks: Iterable[bytes]) -> None:
        try:
            with dst.create_write_stream(key, executable=src_entry.executable, metadata=src_entry.metadata) as ws:
                for chunk in chunks:
                    ws.write(chunk)
        finally:
            _close_stream(chunks)


# ============================================================================
# COMMAND-LINE INTERFACE
# ============================================================================

_OP_SYMBOLS = {
    DiffOp.ADD: '+',
    DiffOp.CHANGE: '~',
    DiffOp.REMOVE: '-',
    DiffOp.EQUAL: '=',
}


def create_parser() -> argparse.ArgumentParser:
    """Create the ``mirror-drive`` argument parser."""
    parser = argparse.ArgumentParser(
        prog='mirror-drive',
        description='Mirror a source directory into a destination directory.',
    )
    parser.add_argument('source', help='source directory')
    parser.add_argument('destination', help='destination directory (created if missing)')
    parser.add_argument('--version', action='version', version=f'mirror-drive {__version__}')
    parser.add_argument('--verbose', '-v', action='count', default=0,
                        help='increase verbosity (-v info, -vv debug)')
    parser.add_argument('--prefix', action='append', default=[], metavar='PATH',
                        help='only mirror entries under PATH (repeatable)')
    parser.add_argument('--ignore', action='append', default=[], metavar='PATH',
                        help='skip PATH and everything under it (repeatable)')
    parser.add_argument('--dry-run', '-n', action='store_true',
                        help='show what would change without writing')
    parser.add_argument('--no-prune', action='store_true',
                        help='keep destination entries missing from the source')
    parser.add_argument('--include-equals', action='store_true',
                        help='also print entries that are already equal')
    parser.add_argument('--batch', action='store_true',
                        help='stage all writes and apply them at the end')
    parser.add_argument('--compress', choices=[t.value for t in CompressionType],
                        help='compress file content on the way to the destination')
    parser.add_argument('--decompress', choices=[t.value for t in CompressionType],
                        help='decompress file content on the way to the destination')
    parser.add_argument('--stats', action='store_true', help='print a summary at the end')
    parser.add_argument('--progress', action='store_true', help='print monitor snapshots to stderr')
    return parser


def _format_diff(diff: DiffEvent) -> str:
    symbol = _OP_SYMBOLS[diff.op]
    if diff.op == DiffOp.ADD:
        return f"{Colors.green(symbol)} {diff.key} ({format_size(diff.bytes_added)})"
    if diff.op == DiffOp.REMOVE:
        return f"{Colors.red(symbol)} {diff.key} ({format_size(diff.bytes_removed)})"
    if diff.op == DiffOp.CHANGE:
        return (f"{Colors.yellow(symbol)} {diff.key} "
                f"({format_size(diff.bytes_removed)} -> {format_size(diff.bytes_added)})")
    return Colors.dim(f"{symbol} {diff.key}")


def _print_stats(mirror: MirrorDrive, elapsed: float) -> None:
    count = mirror.count
    print(f"\nNumber of files: {count.files:,}")
    print(f"Number of added files: {count.add:,}")
    print(f"Number of changed files: {count.change:,}")
    print(f"Number of removed files: {count.remove:,}")
    print(f"Bytes added: {format_size(mirror.bytes_added)}")
    print(f"Bytes removed: {format_size(mirror.bytes_removed)}")
    print(f"Time elapsed: {format_time(elapsed)}")


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    CLI entry point.

    Returns:
        Exit code (0 for success, ``MirrorError.code`` on failure)
    """
    from drive_backends import LocalDrive

    args = create_parser().parse_args(argv)

    if args.verbose >= 2:
        logger.setLevel(logging.DEBUG)
    elif args.verbose == 1:
        logger.setLevel(logging.INFO)

    if not os.path.isdir(args.source):
        print(Colors.error(f"Source is not a directory: {args.source}"), file=sys.stderr)
        return 1

    transforms: List[Any] = []
    if args.decompress:
        transforms.append(decompress_filter(args.decompress))
    if args.compress:
        transforms.append(compress_filter(args.compress))

    options = MirrorOptions(
        prefix=args.prefix or '/',
        ignore=args.ignore or None,
        dry_run=args.dry_run,
        prune=not args.no_prune,
        include_equals=args.include_equals,
        batch=args.batch,
        transforms=transforms or None,
    )

    start = time.perf_counter()
    try:
        mirror = MirrorDrive(LocalDrive(args.source, create=False), LocalDrive(args.destination), options)
        if args.progress:
            mirror.monitor(on_update=lambda stats: print(
                f"peers={stats.peers} download={format_size(stats.download.bytes)} "
                f"({stats.download.progress:.0%})", file=sys.stderr))
        for diff in mirror:
            print(_format_diff(diff))
    except MirrorError as e:
        print(Colors.error(f"Error: {e}"), file=sys.stderr)
        return e.code

    if args.stats:
        _print_stats(mirror, time.perf_counter() - start)
    return 0


# Entry point when run as script
if __name__ == "__main__":
    sys.exit(main())
