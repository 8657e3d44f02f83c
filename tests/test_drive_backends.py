import os
import stat
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest import mock

from mirror_drive import Counters, DiffOp, DriveIOError, MirrorDrive
from drive_backends import BlockCore, LocalDrive, MemoryDrive, StagedBatch


def _write_file(path: Path, data: bytes, mode: int = 0o644) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    os.chmod(path, mode)


def _snapshot_tree(root: Path) -> dict[str, bytes]:
    snapshot: dict[str, bytes] = {}
    if not root.exists():
        return snapshot
    for p in sorted(root.rglob("*")):
        rel = str(p.relative_to(root))
        if p.is_symlink():
            snapshot[rel] = ("SYMLINK:" + os.readlink(p)).encode("utf-8")
        elif p.is_file():
            snapshot[rel] = p.read_bytes()
    return snapshot


class TestBlockCore(unittest.TestCase):

    def test_blocks_split_by_size(self):
        core = BlockCore(block_size=4)
        self.assertEqual(core.append_blob(b'abcdefghij'), (0, 3))
        self.assertEqual(core.get(2), b'ij')
        self.assertEqual(core.length, 3)

    def test_identical_blobs_are_deduplicated(self):
        core = BlockCore(block_size=4)
        first = core.append_blob(b'same content')
        second = core.append_blob(b'same content')
        self.assertEqual(first, second)
        self.assertEqual(core.length, 3)

    def test_empty_blob(self):
        core = BlockCore()
        self.assertEqual(core.append_blob(b''), (0, 0))

    def test_replica_fetches_lazily_with_events(self):
        origin = BlockCore(block_size=2)
        origin.append_blob(b'abcd')
        replica = BlockCore(block_size=2, remote=origin)
        uploads, downloads = [], []
        origin.on('upload', lambda index, size: uploads.append(index))
        replica.on('download', lambda index, size: downloads.append((index, size)))

        self.assertFalse(replica.has(1))
        self.assertEqual(replica.get(1), b'cd')
        self.assertEqual(replica.get(1), b'cd')

        self.assertEqual(downloads, [(1, 2)])
        self.assertEqual(uploads, [1])
        self.assertTrue(replica.has(1))
        self.assertFalse(replica.writable)

    def test_download_range_context(self):
        origin = BlockCore(block_size=2)
        origin.append_blob(b'abcdef')
        replica = BlockCore(block_size=2, remote=origin)
        replica.get(0)

        dl = replica.download(start=0, length=3)
        self.assertEqual((dl.context.start, dl.context.end), (1, 3))
        dl.done()
        self.assertIsNone(replica.download(start=0, length=3).context)
        self.assertIsNone(origin.download(start=0, length=3).context)

    def test_listener_removal(self):
        origin = BlockCore(block_size=2)
        origin.append_blob(b'ab')
        replica = BlockCore(remote=origin)
        calls = []
        listener = lambda index, size: calls.append(index)
        replica.on('download', listener)
        replica.off('download', listener)
        replica.get(0)
        self.assertEqual(calls, [])


class TestMemoryDrive(unittest.TestCase):

    def test_put_get_entry(self):
        drive = MemoryDrive()
        drive.put('docs/readme', b'hi', executable=True, metadata={'a': 1})

        entry = drive.entry('/docs/readme')
        self.assertEqual(entry.key, '/docs/readme')
        self.assertEqual(entry.byte_length, 2)
        self.assertTrue(entry.executable)
        self.assertEqual(entry.metadata, {'a': 1})
        self.assertEqual(drive.get('/docs/readme'), b'hi')
        self.assertIsNone(drive.get('/missing'))

    def test_metadata_dropped_without_support(self):
        drive = MemoryDrive(supports_metadata=False)
        drive.put('/a', b'1', metadata={'a': 1})
        self.assertIsNone(drive.entry('/a').metadata)

    def test_list_scoping_and_ignore(self):
        drive = MemoryDrive()
        for key in ('/a', '/dir/b', '/dir/sub/c', '/dirty'):
            drive.put(key, b'x')

        self.assertEqual([e.key for e in drive.list('/')], ['/a', '/dir/b', '/dir/sub/c', '/dirty'])
        self.assertEqual([e.key for e in drive.list('/dir')], ['/dir/b', '/dir/sub/c'])
        self.assertEqual([e.key for e in drive.list('/', ignore=lambda k: k.startswith('/dir/'))],
                         ['/a', '/dirty'])

    def test_delete(self):
        drive = MemoryDrive()
        drive.put('/a', b'1')
        drive.delete('/a')
        self.assertIsNone(drive.entry('/a'))
        with self.assertRaises(DriveIOError):
            drive.delete('/a')

    def test_write_stream_abort(self):
        drive = MemoryDrive()
        with self.assertRaises(RuntimeError):
            with drive.create_write_stream('/a') as ws:
                ws.write(b'partial')
                raise RuntimeError('interrupted')
        self.assertIsNone(drive.entry('/a'))

    def test_read_missing(self):
        with self.assertRaises(DriveIOError):
            MemoryDrive().create_read_stream('/nope')

    def test_replica_is_read_only_snapshot(self):
        origin = MemoryDrive()
        origin.put('/a', b'1')
        replica = origin.replica()
        origin.put('/b', b'2')

        self.assertEqual(replica.get('/a'), b'1')
        self.assertIsNone(replica.entry('/b'))
        self.assertIn(replica.core, origin.core.peers)
        with self.assertRaises(DriveIOError):
            replica.put('/c', b'3')


class TestStagedBatch(unittest.TestCase):

    def setUp(self):
        self.drive = MemoryDrive()
        self.drive.put('/keep', b'k')
        self.drive.put('/old', b'o')
        self.batch = self.drive.batch()

    def test_staged_changes_are_visible_through_batch_only(self):
        self.batch.put('/new', b'n', executable=True)
        self.batch.delete('/old')
        self.batch.symlink('/link', '/keep')

        self.assertEqual(self.batch.get('/new'), b'n')
        self.assertIsNone(self.batch.entry('/old'))
        self.assertEqual(self.batch.entry('/link').linkname, '/keep')
        self.assertEqual([e.key for e in self.batch.list('/')], ['/keep', '/link', '/new'])

        self.assertIsNone(self.drive.entry('/new'))
        self.assertEqual(self.drive.get('/old'), b'o')
        self.assertEqual(len(self.batch), 3)

    def test_flush_applies_in_order(self):
        self.batch.put('/tmp', b'scratch')
        self.batch.delete('/tmp')
        self.batch.put('/new', b'n', executable=True, metadata={'v': 1})
        self.batch.delete('/old')

        self.batch.flush()

        self.assertIsNone(self.drive.entry('/tmp'))
        self.assertIsNone(self.drive.entry('/old'))
        self.assertEqual(self.drive.get('/new'), b'n')
        self.assertTrue(self.drive.entry('/new').executable)
        self.assertEqual(self.drive.entry('/new').metadata, {'v': 1})
        self.assertEqual(len(self.batch), 0)

    def test_delete_missing(self):
        with self.assertRaises(DriveIOError):
            self.batch.delete('/missing')

    def test_batch_over_local_drive(self):
        with TemporaryDirectory() as td:
            drive = LocalDrive(td)
            batch = drive.batch()
            self.assertIsInstance(batch, StagedBatch)
            batch.put('/a/b.txt', b'data')
            self.assertFalse(os.path.exists(os.path.join(td, 'a', 'b.txt')))
            batch.flush()
            self.assertEqual(Path(td, 'a', 'b.txt').read_bytes(), b'data')


class TestLocalDrive(unittest.TestCase):

    def setUp(self):
        self._td = TemporaryDirectory()
        self.root = Path(self._td.name)
        _write_file(self.root / "a.txt", b"alpha")
        _write_file(self.root / "bin" / "run.sh", b"#!/bin/sh\n", mode=0o755)
        _write_file(self.root / "docs" / "deep" / "c.txt", b"charlie")
        os.symlink("a.txt", self.root / "link")
        self.drive = LocalDrive(self.root)

    def tearDown(self):
        self._td.cleanup()

    def test_entries(self):
        a = self.drive.entry('/a.txt')
        self.assertEqual(a.byte_length, 5)
        self.assertFalse(a.executable)
        self.assertTrue(self.drive.entry('/bin/run.sh').executable)
        self.assertEqual(self.drive.entry('/link').linkname, 'a.txt')
        self.assertIsNone(self.drive.entry('/docs'))
        self.assertIsNone(self.drive.entry('/missing'))

    def test_list(self):
        keys = [e.key for e in self.drive.list('/')]
        self.assertEqual(keys, ['/a.txt', '/bin/run.sh', '/docs/deep/c.txt', '/link'])
        self.assertEqual([e.key for e in self.drive.list('/docs')], ['/docs/deep/c.txt'])
        self.assertEqual([e.key for e in self.drive.list('/nowhere')], [])

    def test_list_ignore_prunes_directories(self):
        keys = [e.key for e in self.drive.list('/', ignore=lambda k: k == '/docs')]
        self.assertEqual(keys, ['/a.txt', '/bin/run.sh', '/link'])

    def test_write_is_atomic_and_sets_mode(self):
        with self.drive.create_write_stream('/new/file.sh', executable=True) as ws:
            ws.write(b'echo')
            self.assertFalse((self.root / "new" / "file.sh").exists())

        path = self.root / "new" / "file.sh"
        self.assertEqual(path.read_bytes(), b'echo')
        self.assertTrue(path.stat().st_mode & stat.S_IXUSR)
        self.assertEqual(os.listdir(self.root / "new"), ['file.sh'])

    def test_abort_leaves_nothing(self):
        ws = self.drive.create_write_stream('/a.txt')
        ws.write(b'garbage')
        ws.abort()
        self.assertEqual((self.root / "a.txt").read_bytes(), b'alpha')
        self.assertEqual(sorted(os.listdir(self.root)), ['a.txt', 'bin', 'docs', 'link'])

    def test_delete_prunes_empty_directories(self):
        self.drive.delete('/docs/deep/c.txt')
        self.assertFalse((self.root / "docs").exists())
        self.assertTrue(self.root.exists())
        with self.assertRaises(DriveIOError):
            self.drive.delete('/docs/deep/c.txt')

    def test_symlink_replaces_file(self):
        self.drive.symlink('/a.txt', '/elsewhere')
        self.assertEqual(os.readlink(self.root / "a.txt"), '/elsewhere')

    def test_metadata_mapping(self):
        meta = {}
        drive = LocalDrive(self.root, metadata=meta)
        self.assertTrue(drive.supports_metadata)
        drive.put('/m.txt', b'm', metadata={'owner': 'ana'})
        self.assertEqual(drive.entry('/m.txt').metadata, {'owner': 'ana'})
        drive.delete('/m.txt')
        self.assertEqual(meta, {})

    def test_ready(self):
        self.drive.ready()
        with self.assertRaises(DriveIOError):
            LocalDrive(self.root / "a.txt").ready()
        with self.assertRaises(DriveIOError):
            LocalDrive(self.root / "absent", create=False).ready()
        LocalDrive(self.root / "absent").ready()

    def test_read_stream(self):
        self.assertEqual(b''.join(self.drive.create_read_stream('/docs/deep/c.txt')), b'charlie')
        with self.assertRaises(DriveIOError):
            self.drive.create_read_stream('/missing')

    def test_read_stream_opens_file_on_first_pull(self):
        with mock.patch('builtins.open', wraps=open) as opened:
            stream = self.drive.create_read_stream('/a.txt')
            stream.close()
            opened.assert_not_called()

            self.assertEqual(b''.join(self.drive.create_read_stream('/a.txt')), b'alpha')
            opened.assert_called_once()

    def test_unreadable_link(self):
        with mock.patch('os.readlink', side_effect=PermissionError(13, 'Permission denied')):
            with self.assertRaises(DriveIOError):
                self.drive.entry('/link')

    def test_directory_cleanup_failure(self):
        with mock.patch('os.rmdir', side_effect=PermissionError(13, 'Permission denied')):
            with self.assertRaises(DriveIOError):
                self.drive.delete('/docs/deep/c.txt')
        self.assertFalse((self.root / "docs" / "deep" / "c.txt").exists())
        self.assertTrue((self.root / "docs" / "deep").is_dir())


class TestLocalMirror(unittest.TestCase):
    """Mirroring between memory and local directories"""

    def test_memory_to_local_and_back(self):
        src = MemoryDrive()
        src.put('/a.txt', b'alpha')
        src.put('/bin/run.sh', b'#!/bin/sh\n', executable=True)
        src.symlink('/link', 'a.txt')

        with TemporaryDirectory() as td:
            root = Path(td) / "out"
            local = LocalDrive(root)
            MirrorDrive(src, local).done()

            self.assertEqual(_snapshot_tree(root), {
                'a.txt': b'alpha',
                'bin/run.sh': b'#!/bin/sh\n',
                'link': b'SYMLINK:a.txt',
            })
            self.assertTrue((root / "bin" / "run.sh").stat().st_mode & stat.S_IXUSR)

            self.assertEqual(list(MirrorDrive(src, local)), [])
            self.assertEqual(list(MirrorDrive(local, src)), [])

    def test_local_prune_removes_empty_directories(self):
        with TemporaryDirectory() as td:
            src_root = Path(td) / "src"
            dst_root = Path(td) / "dst"
            _write_file(src_root / "keep.txt", b"k")
            _write_file(dst_root / "keep.txt", b"k")
            _write_file(dst_root / "old" / "nested" / "x.txt", b"x")

            m = MirrorDrive(LocalDrive(src_root), LocalDrive(dst_root))
            diffs = list(m)

            self.assertEqual([(d.op, d.key) for d in diffs], [(DiffOp.REMOVE, '/old/nested/x.txt')])
            self.assertEqual(m.count, Counters(files=1, add=0, remove=1, change=0))
            self.assertEqual(sorted(os.listdir(dst_root)), ['keep.txt'])


if __name__ == "__main__":
    unittest.main()
