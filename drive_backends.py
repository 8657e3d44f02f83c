#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Drive backends for mirror-drive.

Provides concrete drives that satisfy the ``mirror_drive.Drive`` contract:

    - MemoryDrive: in-memory drive over a content-deduplicated block core,
      with read-only replicas that fetch blocks lazily from their origin
    - LocalDrive: a directory on the local file system
    - StagedBatch: staging handle that applies mutations on ``flush()``

Example:
    >>> from drive_backends import MemoryDrive
    >>> origin = MemoryDrive()
    >>> origin.put("/hello.txt", b"hello")
    >>> replica = origin.replica()
    >>> replica.get("/hello.txt")
    b'hello'
"""

from __future__ import annotations

import os
import stat
import tempfile
import threading
import posixpath
from dataclasses import dataclass
from typing import Any, Callable, Dict, IO, Iterator, List, MutableMapping, Optional, Tuple, Union, cast

# Content hashing for block deduplication
import xxhash  # type: ignore[import]

from mirror_drive import (
    BlobInfo,
    Config,
    Drive,
    DriveEntry,
    DriveIOError,
    WriteStream,
    iter_file,
    logger,
    normalize_key,
)

_xxhash: Any = xxhash

KeyPredicate = Callable[[str], bool]


def _is_under(key: str, prefix: str) -> bool:
    if prefix == '/':
        return key != '/'
    return key.startswith(prefix + '/')


def _key_of(entry_or_key: Union[DriveEntry, str]) -> str:
    if isinstance(entry_or_key, DriveEntry):
        return entry_or_key.key
    return normalize_key(entry_or_key)


# ============================================================================
# BLOCK CORE - Append-only block log with transfer notifications
# ============================================================================

@dataclass(frozen=True)
class DownloadContext:
    """Block span still missing locally when a range was requested."""
    start: int
    end: int


class DownloadRange:
    """
    Handle of a requested block range.

    ``context`` is None when nothing needs to be transferred.
    ``done()`` blocks until every block of the range is local.
    """

    def __init__(self, core: 'BlockCore', start: int, end: int, context: Optional[DownloadContext]) -> None:
        self.core = core
        self.start = start
        self.end = end
        self.context = context

    def done(self) -> None:
        for index in range(self.start, self.end):
            self.core.get(index)


class BlockCore:
    """
    Append-only log of fixed-size blocks.

    An origin core is writable and deduplicates appended blobs by their
    xxh3-128 digest. A replica core (``remote`` set) starts empty and
    fetches missing blocks from its origin on first read, emitting
    ``download`` on the replica and ``upload`` on the origin.

    Listeners registered with ``on(event, fn)`` receive
    ``fn(index, byte_length)``.
    """

    EVENTS = ('upload', 'download')

    def __init__(self, block_size: Optional[int] = None, remote: Optional['BlockCore'] = None) -> None:
        self.block_size = block_size or Config.DEFAULT_BLOCK_SIZE
        self.remote = remote
        self.writable = remote is None
        self.peers: List['BlockCore'] = [remote] if remote is not None else []
        self._blocks: Dict[int, bytes] = {}
        self._length = 0
        self._index: Dict[Tuple[str, int], Tuple[int, int]] = {}
        self._listeners: Dict[str, List[Callable[[int, int], None]]] = {name: [] for name in self.EVENTS}
        self._lock = threading.RLock()

    @property
    def length(self) -> int:
        return self.remote.length if self.remote is not None else self._length

    def on(self, event: str, listener: Callable[[int, int], None]) -> None:
        self._listeners[event].append(listener)

    def off(self, event: str, listener: Callable[[int, int], None]) -> None:
        if listener in self._listeners[event]:
            self._listeners[event].remove(listener)

    def _emit(self, event: str, index: int, byte_length: int) -> None:
        for listener in list(self._listeners[event]):
            listener(index, byte_length)

    def has(self, index: int) -> bool:
        with self._lock:
            return index in self._blocks

    def append_blob(self, data: bytes) -> Tuple[int, int]:
        """Store ``data`` as consecutive blocks. Returns ``(offset, count)``."""
        if not self.writable:
            raise DriveIOError("block core is not writable")

        digest = (_xxhash.xxh3_128(data).hexdigest(), len(data))
        with self._lock:
            known = self._index.get(digest)
            if known is not None:
                return known

            offset = self._length
            for pos in range(0, len(data), self.block_size):
                self._blocks[self._length] = data[pos:pos + self.block_size]
                self._length += 1

            span = (offset, self._length - offset)
            self._index[digest] = span
            return span

    def get(self, index: int) -> bytes:
        with self._lock:
            block = self._blocks.get(index)
        if block is not None:
            return block
        return self._fetch(index)

    def _fetch(self, index: int) -> bytes:
        if self.remote is None:
            raise DriveIOError(f"block {index} is not available")

        block = self.remote._serve(index)
        with self._lock:
            if index in self._blocks:
                return self._blocks[index]
            self._blocks[index] = block
        self._emit('download', index, len(block))
        return block

    def _serve(self, index: int) -> bytes:
        block = self.get(index)
        self._emit('upload', index, len(block))
        return block

    def download(self, start: int = 0, length: Optional[int] = None) -> DownloadRange:
        """Request blocks ``[start, start + length)`` without waiting."""
        end = self.length if length is None else start + length
        with self._lock:
            missing = [i for i in range(start, end) if i not in self._blocks]

        context = None
        if missing and self.remote is not None:
            context = DownloadContext(missing[0], missing[-1] + 1)
        return DownloadRange(self, start, end, context)


@dataclass
class Blobs:
    """Blob store handle returned by ``MemoryDrive.get_blobs()``."""
    core: BlockCore


# ============================================================================
# MEMORY DRIVE
# ============================================================================

class _MemoryWriteStream(WriteStream):

    def __init__(self, drive: 'MemoryDrive', key: str, executable: bool, metadata: Any) -> None:
        self.drive = drive
        self.key = key
        self.executable = executable
        self.metadata = metadata
        self._chunks: List[bytes] = []
        self._open = True

    def write(self, data: bytes) -> None:
        if not self._open:
            raise DriveIOError(f"write stream for {self.key} is closed")
        self._chunks.append(bytes(data))

    def close(self) -> None:
        if not self._open:
            return
        self._open = False
        self.drive._store(self.key, b''.join(self._chunks), self.executable, self.metadata)
        self._chunks = []

    def abort(self) -> None:
        self._open = False
        self._chunks = []


class MemoryDrive(Drive):
    """
    In-memory drive backed by a ``BlockCore``.

    Args:
        supports_metadata: Whether entries carry metadata
        block_size: Block size of the backing core
        core: Existing core to attach to (used by ``replica()``)
    """

    def __init__(self, supports_metadata: bool = True, block_size: Optional[int] = None,
                 core: Optional[BlockCore] = None) -> None:
        self.supports_metadata = supports_metadata
        self.core = core if core is not None else BlockCore(block_size)
        self._entries: Dict[str, DriveEntry] = {}
        self._lock = threading.RLock()

    def ready(self) -> None:
        return None

    def get_blobs(self) -> Blobs:
        return Blobs(self.core)

    def replica(self) -> 'MemoryDrive':
        """Read-only copy of the current tree that fetches blocks on demand."""
        clone = MemoryDrive(self.supports_metadata, core=BlockCore(self.core.block_size, remote=self.core))
        with self._lock:
            clone._entries = dict(self._entries)
        self.core.peers.append(clone.core)
        return clone

    def _check_writable(self) -> None:
        if not self.core.writable:
            raise DriveIOError("drive is not writable")

    def _store(self, key: str, data: bytes, executable: bool, metadata: Any) -> DriveEntry:
        self._check_writable()
        offset, count = self.core.append_blob(data)
        entry = DriveEntry(
            key=key,
            blob=BlobInfo(len(data), offset, count),
            executable=bool(executable),
            linkname=None,
            metadata=metadata if self.supports_metadata else None,
        )
        with self._lock:
            self._entries[key] = entry
        return entry

    def entry(self, key: str) -> Optional[DriveEntry]:
        with self._lock:
            return self._entries.get(normalize_key(key))

    def list(self, prefix: str = '/', ignore: Optional[KeyPredicate] = None) -> Iterator[DriveEntry]:
        prefix = normalize_key(prefix)
        with self._lock:
            keys = sorted(key for key in self._entries if _is_under(key, prefix))

        for key in keys:
            if ignore is not None and ignore(key):
                continue
            entry = self.entry(key)
            if entry is not None:
                yield entry

    def create_read_stream(self, entry_or_key: Union[DriveEntry, str]) -> Iterator[bytes]:
        key = _key_of(entry_or_key)
        entry = entry_or_key if isinstance(entry_or_key, DriveEntry) else self.entry(key)
        if entry is None:
            raise DriveIOError(f"{key}: no such entry")
        return self._read_blocks(entry.blob)

    def _read_blocks(self, blob: Optional[BlobInfo]) -> Iterator[bytes]:
        if blob is None or blob.block_offset is None or not blob.block_length:
            return
        for index in range(blob.block_offset, blob.block_offset + blob.block_length):
            yield self.core.get(index)

    def create_write_stream(self, key: str, executable: bool = False, metadata: Any = None) -> WriteStream:
        self._check_writable()
        return _MemoryWriteStream(self, normalize_key(key), executable, metadata)

    def delete(self, key: str) -> None:
        self._check_writable()
        key = normalize_key(key)
        with self._lock:
            if key not in self._entries:
                raise DriveIOError(f"{key}: no such entry")
            del self._entries[key]

    def symlink(self, key: str, linkname: str) -> None:
        self._check_writable()
        key = normalize_key(key)
        with self._lock:
            self._entries[key] = DriveEntry(key=key, linkname=linkname)

    def batch(self) -> 'StagedBatch':
        return StagedBatch(self, lock=self._lock)


# ============================================================================
# LOCAL DRIVE
# ============================================================================

_TEMP_PREFIX = '.mirror-drive-'


class _LocalWriteStream(WriteStream):
    """Writes to a temporary file that atomically replaces the target on close."""

    def __init__(self, drive: 'LocalDrive', key: str, executable: bool, metadata: Any) -> None:
        self.drive = drive
        self.key = key
        self.executable = executable
        self.metadata = metadata
        self.path = drive._path(key)

        parent = os.path.dirname(self.path)
        try:
            os.makedirs(parent, exist_ok=True)
            fd, self._tmp_path = tempfile.mkstemp(prefix=_TEMP_PREFIX, suffix='.tmp', dir=parent)
        except OSError as e:
            raise DriveIOError(f"cannot write {key}: {e}") from e
        self._fh: Optional[IO[bytes]] = os.fdopen(fd, 'wb')

    def write(self, data: bytes) -> None:
        if self._fh is None:
            raise DriveIOError(f"write stream for {self.key} is closed")
        try:
            self._fh.write(data)
        except OSError as e:
            raise DriveIOError(f"cannot write {self.key}: {e}") from e

    def close(self) -> None:
        if self._fh is None:
            return
        fh, self._fh = self._fh, None
        try:
            fh.close()
            os.chmod(self._tmp_path, 0o755 if self.executable else 0o644)
            os.replace(self._tmp_path, self.path)
        except OSError as e:
            self._discard()
            raise DriveIOError(f"cannot write {self.key}: {e}") from e
        self.drive._set_metadata(self.key, self.metadata)

    def abort(self) -> None:
        if self._fh is None:
            return
        fh, self._fh = self._fh, None
        fh.close()
        self._discard()

    def _discard(self) -> None:
        if os.path.exists(self._tmp_path):
            os.unlink(self._tmp_path)


class LocalDrive(Drive):
    """
    A directory on the local file system exposed as a drive.

    Regular files are file entries (executable when the owner-execute bit is
    set), symbolic links are symlink entries and directories are implicit.
    Metadata is kept in the optional ``metadata`` mapping keyed by drive key.

    Args:
        root: Directory backing the drive
        metadata: Mapping used to store entry metadata (None disables it)
        create: Allow a missing root; it is created on first write

    Raises:
        DriveIOError: From ``ready()`` when the root is unusable
    """

    def __init__(self, root: Union[str, 'os.PathLike[str]'], metadata: Optional[MutableMapping[str, Any]] = None,
                 create: bool = True) -> None:
        self.root = os.path.abspath(os.fspath(root))
        self.metadata = metadata
        self.supports_metadata = metadata is not None
        self.create = create

    def _path(self, key: str) -> str:
        parts = [part for part in normalize_key(key).split('/') if part]
        return os.path.join(self.root, *parts)

    def ready(self) -> None:
        if os.path.isdir(self.root):
            return
        if os.path.exists(self.root):
            raise DriveIOError(f"{self.root}: not a directory")
        if not self.create:
            raise DriveIOError(f"{self.root}: no such directory")

    def _get_metadata(self, key: str) -> Any:
        if self.metadata is None:
            return None
        return self.metadata.get(key)

    def _set_metadata(self, key: str, value: Any) -> None:
        if self.metadata is None:
            return
        if value is None:
            self.metadata.pop(key, None)
        else:
            self.metadata[key] = value

    def entry(self, key: str) -> Optional[DriveEntry]:
        key = normalize_key(key)
        path = self._path(key)
        try:
            st = os.lstat(path)
        except (FileNotFoundError, NotADirectoryError):
            return None
        except OSError as e:
            raise DriveIOError(f"cannot stat {key}: {e}") from e

        if stat.S_ISLNK(st.st_mode):
            try:
                linkname = os.readlink(path)
            except OSError as e:
                raise DriveIOError(f"cannot read link {key}: {e}") from e
            return DriveEntry(key=key, linkname=linkname)
        if stat.S_ISREG(st.st_mode):
            return DriveEntry(
                key=key,
                blob=BlobInfo(st.st_size),
                executable=bool(st.st_mode & stat.S_IXUSR),
                metadata=self._get_metadata(key),
            )
        return None

    def list(self, prefix: str = '/', ignore: Optional[KeyPredicate] = None) -> Iterator[DriveEntry]:
        prefix = normalize_key(prefix)
        top = self._path(prefix)
        if not os.path.isdir(top) or (prefix != '/' and os.path.islink(top)):
            return
        yield from self._walk(prefix, ignore)

    def _walk(self, directory: str, ignore: Optional[KeyPredicate]) -> Iterator[DriveEntry]:
        try:
            with os.scandir(self._path(directory)) as it:
                items = sorted(it, key=lambda item: item.name)
        except FileNotFoundError:
            return
        except OSError as e:
            raise DriveIOError(f"cannot list {directory}: {e}") from e

        for item in items:
            if item.name.startswith(_TEMP_PREFIX):
                continue
            key = posixpath.join(directory, item.name)
            if ignore is not None and ignore(key):
                continue
            if item.is_dir(follow_symlinks=False):
                yield from self._walk(key, ignore)
                continue
            entry = self.entry(key)
            if entry is not None:
                yield entry

    def create_read_stream(self, entry_or_key: Union[DriveEntry, str]) -> Iterator[bytes]:
        key = _key_of(entry_or_key)
        path = self._path(key)
        if not os.path.isfile(path):
            raise DriveIOError(f"cannot read {key}: no such file")
        return self._read_file(key, path)

    @staticmethod
    def _read_file(key: str, path: str) -> Iterator[bytes]:
        # Opened on first pull so an unstarted stream holds no descriptor.
        try:
            with open(path, 'rb') as fh:
                yield from iter_file(fh)
        except OSError as e:
            raise DriveIOError(f"cannot read {key}: {e}") from e

    def create_write_stream(self, key: str, executable: bool = False, metadata: Any = None) -> WriteStream:
        return _LocalWriteStream(self, normalize_key(key), executable, metadata)

    def delete(self, key: str) -> None:
        key = normalize_key(key)
        path = self._path(key)
        if not os.path.lexists(path):
            raise DriveIOError(f"{key}: no such entry")
        try:
            os.unlink(path)
        except OSError as e:
            raise DriveIOError(f"cannot delete {key}: {e}") from e
        self._set_metadata(key, None)
        self._prune_empty_parents(os.path.dirname(path))

    def _prune_empty_parents(self, directory: str) -> None:
        while directory != self.root and directory.startswith(self.root + os.sep):
            try:
                if os.listdir(directory):
                    break
                os.rmdir(directory)
            except OSError as e:
                raise DriveIOError(f"cannot remove directory {directory}: {e}") from e
            logger.debug("removed empty directory %s", directory)
            directory = os.path.dirname(directory)

    def symlink(self, key: str, linkname: str) -> None:
        key = normalize_key(key)
        path = self._path(key)
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            if os.path.lexists(path):
                if os.path.isdir(path) and not os.path.islink(path):
                    raise DriveIOError(f"cannot replace directory {key} with a symlink")
                os.unlink(path)
            os.symlink(linkname, path)
        except OSError as e:
            raise DriveIOError(f"cannot symlink {key}: {e}") from e
        self._set_metadata(key, None)

    def batch(self) -> 'StagedBatch':
        return StagedBatch(self)


# ============================================================================
# STAGED BATCH
# ============================================================================

@dataclass
class _Staged:
    entry: DriveEntry
    spool: Optional[IO[bytes]] = None


class _StagedWriteStream(WriteStream):

    def __init__(self, batch: 'StagedBatch', key: str, executable: bool, metadata: Any) -> None:
        self.batch = batch
        self.key = key
        self.executable = executable
        self.metadata = metadata
        self.size = 0
        self._spool: Optional[IO[bytes]] = cast(
            IO[bytes], tempfile.SpooledTemporaryFile(max_size=Config.SPOOL_MAX_MEMORY)
        )

    def write(self, data: bytes) -> None:
        if self._spool is None:
            raise DriveIOError(f"write stream for {self.key} is closed")
        self._spool.write(data)
        self.size += len(data)

    def close(self) -> None:
        if self._spool is None:
            return
        spool, self._spool = self._spool, None
        entry = DriveEntry(
            key=self.key,
            blob=BlobInfo(self.size),
            executable=bool(self.executable),
            metadata=self.metadata if self.batch.supports_metadata else None,
        )
        self.batch._stage('put', _Staged(entry, spool))

    def abort(self) -> None:
        if self._spool is None:
            return
        self._spool.close()
        self._spool = None


class StagedBatch(Drive):
    """
    Staging handle over a drive.

    Writes, deletes and symlinks are recorded in order and become visible
    through this handle immediately, while the underlying drive is only
    modified by ``flush()``. Staged content is spooled to temporary files
    past ``Config.SPOOL_MAX_MEMORY``.

    Args:
        drive: Drive receiving the mutations
        lock: Optional lock held for the whole flush
    """

    def __init__(self, drive: Drive, lock: Optional[Any] = None) -> None:
        self.drive = drive
        self.supports_metadata = getattr(drive, 'supports_metadata', False)
        self._lock = lock
        self._ops: List[Tuple[str, str, Optional[_Staged]]] = []
        self._overlay: Dict[str, Optional[_Staged]] = {}

    def __len__(self) -> int:
        return len(self._ops)

    def _stage(self, op: str, staged: _Staged) -> None:
        key = staged.entry.key
        self._ops.append((op, key, staged))
        self._overlay[key] = staged

    def ready(self) -> None:
        self.drive.ready()

    def entry(self, key: str) -> Optional[DriveEntry]:
        key = normalize_key(key)
        if key in self._overlay:
            staged = self._overlay[key]
            return staged.entry if staged is not None else None
        return self.drive.entry(key)

    def list(self, prefix: str = '/', ignore: Optional[KeyPredicate] = None) -> Iterator[DriveEntry]:
        prefix = normalize_key(prefix)
        emitted = set()

        for item in self.drive.list(prefix, ignore=ignore):
            key = item if isinstance(item, str) else item.key
            if key in self._overlay:
                emitted.add(key)
                staged = self._overlay[key]
                if staged is not None:
                    yield staged.entry
                continue
            entry = item if isinstance(item, DriveEntry) else self.drive.entry(key)
            if entry is not None:
                yield entry

        for key in sorted(self._overlay):
            staged = self._overlay[key]
            if key in emitted or staged is None or not _is_under(key, prefix):
                continue
            if ignore is not None and ignore(key):
                continue
            yield staged.entry

    def create_read_stream(self, entry_or_key: Union[DriveEntry, str]) -> Iterator[bytes]:
        key = _key_of(entry_or_key)
        if key not in self._overlay:
            return iter(self.drive.create_read_stream(entry_or_key))
        staged = self._overlay[key]
        if staged is None:
            raise DriveIOError(f"{key}: no such entry")
        return self._read_spool(staged.spool)

    @staticmethod
    def _read_spool(spool: Optional[IO[bytes]]) -> Iterator[bytes]:
        if spool is None:
            return
        spool.seek(0)
        yield from iter_file(spool)

    def create_write_stream(self, key: str, executable: bool = False, metadata: Any = None) -> WriteStream:
        return _StagedWriteStream(self, normalize_key(key), executable, metadata)

    def delete(self, key: str) -> None:
        key = normalize_key(key)
        if self.entry(key) is None:
            raise DriveIOError(f"{key}: no such entry")
        self._ops.append(('delete', key, None))
        self._overlay[key] = None

    def symlink(self, key: str, linkname: str) -> None:
        key = normalize_key(key)
        self._stage('symlink', _Staged(DriveEntry(key=key, linkname=linkname)))

    def flush(self) -> None:
        """Apply every staged mutation to the underlying drive, in order."""
        ops, self._ops = self._ops, []
        self._overlay = {}
        logger.debug("flushing %d staged operations", len(ops))

        if self._lock is not None:
            with self._lock:
                self._apply(ops)
        else:
            self._apply(ops)

    def _apply(self, ops: List[Tuple[str, str, Optional[_Staged]]]) -> None:
        try:
            for op, key, staged in ops:
                if op == 'delete':
                    self.drive.delete(key)
                elif op == 'symlink':
                    assert staged is not None and staged.entry.linkname is not None
                    self.drive.symlink(key, staged.entry.linkname)
                else:
                    assert staged is not None and staged.spool is not None
                    staged.spool.seek(0)
                    entry = staged.entry
                    with self.drive.create_write_stream(key, executable=entry.executable,
                                                        metadata=entry.metadata) as ws:
                        for chunk in iter_file(staged.spool):
                            ws.write(chunk)
        finally:
            for _, _, staged in ops:
                if staged is not None and staged.spool is not None:
                    staged.spool.close()
