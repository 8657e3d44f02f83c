#!/usr/bin/env python
"""
test_transforms.py - Transform Pipeline Tests
=============================================

Filters applied between source and destination: selection rules,
compression codecs, idempotent reruns and failure handling.
"""

import re
import zlib
import unittest

import lz4.frame
import zstandard

from mirror_drive import (
    CompressionRegistry,
    CompressionType,
    ConfigurationError,
    DiffOp,
    MirrorDrive,
    MirrorState,
    TransformError,
    TransformPipeline,
    TransformRule,
    compress_filter,
    decompress_filter,
    map_filter,
)
from drive_backends import MemoryDrive


def _zstd_decompress(data: bytes) -> bytes:
    return zstandard.ZstdDecompressor().decompressobj().decompress(data)


def _source() -> MemoryDrive:
    src = MemoryDrive()
    src.put('/notes.txt', b'hello transform pipeline ' * 40)
    src.put('/tool.sh', b'echo hi\n', executable=True)
    src.symlink('/latest', '/notes.txt')
    return src


class TestMapFilter(unittest.TestCase):

    def test_uppercase_all_files(self):
        src = _source()
        dst = MemoryDrive()

        diffs = list(MirrorDrive(src, dst, transforms=[map_filter(bytes.upper)]))

        self.assertEqual(len(diffs), 3)
        self.assertEqual(dst.get('/tool.sh'), b'ECHO HI\n')
        self.assertTrue(dst.entry('/tool.sh').executable)
        self.assertEqual(dst.entry('/latest').linkname, '/notes.txt')

    def test_events_report_source_size(self):
        src = _source()
        dst = MemoryDrive()

        diffs = list(MirrorDrive(src, dst, transforms=[map_filter(bytes.upper)]))
        tool = [d for d in diffs if d.key == '/tool.sh'][0]
        self.assertEqual(tool.bytes_added, 8)

    def test_rerun_with_transform_is_empty(self):
        src = _source()
        dst = MemoryDrive()
        MirrorDrive(src, dst, transforms=[map_filter(bytes.upper)]).done()

        self.assertEqual(list(MirrorDrive(src, dst, transforms=[map_filter(bytes.upper)])), [])

    def test_rerun_without_transform_reports_changes(self):
        src = _source()
        dst = MemoryDrive()
        MirrorDrive(src, dst, transforms=[map_filter(bytes.upper)]).done()

        diffs = list(MirrorDrive(src, dst))
        self.assertEqual(sorted(d.key for d in diffs), ['/notes.txt', '/tool.sh'])
        self.assertTrue(all(d.op == DiffOp.CHANGE for d in diffs))


class TestTransformReads(unittest.TestCase):
    """Source content is read only when the verdict depends on it"""

    def setUp(self):
        origin = MemoryDrive(block_size=4)
        origin.put('/big.txt', bytes(97 + i % 26 for i in range(400)))
        self.src = origin.replica()
        self.downloads = []
        self.src.core.on('download', lambda index, size: self.downloads.append(index))

    def test_dry_run_add_downloads_nothing(self):
        m = MirrorDrive(self.src, MemoryDrive(), dry_run=True, preload=False,
                        transforms=[map_filter(bytes.upper)])

        self.assertEqual([(d.op, d.key) for d in m], [(DiffOp.ADD, '/big.txt')])
        self.assertEqual(self.downloads, [])

    def test_dry_run_attribute_change_downloads_nothing(self):
        dst = MemoryDrive()
        dst.put('/big.txt', b'stale', executable=True)
        m = MirrorDrive(self.src, dst, dry_run=True, preload=False,
                        transforms=[map_filter(bytes.upper)])

        self.assertEqual([(d.op, d.key) for d in m], [(DiffOp.CHANGE, '/big.txt')])
        self.assertEqual(self.downloads, [])

    def test_add_streams_transformed_content(self):
        dst = MemoryDrive()
        MirrorDrive(self.src, dst, preload=False, transforms=[map_filter(bytes.upper)]).done()

        self.assertEqual(dst.get('/big.txt'), bytes(65 + i % 26 for i in range(400)))
        self.assertTrue(self.downloads)
        self.assertEqual(list(MirrorDrive(self.src, dst, preload=False,
                                          transforms=[map_filter(bytes.upper)])), [])


class TestCompressionFilters(unittest.TestCase):
    """compress_filter / decompress_filter for every codec"""

    def setUp(self):
        self.src = _source()
        self.original = self.src.get('/notes.txt')

    def test_zlib(self):
        dst = MemoryDrive()
        MirrorDrive(self.src, dst, transforms=[compress_filter('zlib')]).done()
        self.assertEqual(zlib.decompress(dst.get('/notes.txt')), self.original)

    def test_lz4(self):
        dst = MemoryDrive()
        MirrorDrive(self.src, dst, transforms=[compress_filter(CompressionType.LZ4)]).done()
        self.assertEqual(lz4.frame.decompress(dst.get('/notes.txt')), self.original)

    def test_zstd(self):
        dst = MemoryDrive()
        MirrorDrive(self.src, dst, transforms=[compress_filter('zstd')]).done()
        self.assertEqual(_zstd_decompress(dst.get('/notes.txt')), self.original)

    def test_compressed_output_is_smaller(self):
        dst = MemoryDrive()
        MirrorDrive(self.src, dst, transforms=[compress_filter('zstd')]).done()
        self.assertLess(dst.entry('/notes.txt').byte_length, len(self.original))

    def test_compressed_rerun_is_empty(self):
        dst = MemoryDrive()
        MirrorDrive(self.src, dst, transforms=[compress_filter('zlib')]).done()
        self.assertEqual(list(MirrorDrive(self.src, dst, transforms=[compress_filter('zlib')])), [])

    def test_compress_then_decompress_restores_content(self):
        packed = MemoryDrive()
        restored = MemoryDrive()
        MirrorDrive(self.src, packed, transforms=[compress_filter('lz4')]).done()
        MirrorDrive(packed, restored, transforms=[decompress_filter('lz4')]).done()

        self.assertEqual(list(MirrorDrive(self.src, restored)), [])

    def test_unknown_codec(self):
        with self.assertRaises(ValueError):
            compress_filter('brotli')

    def test_default_levels(self):
        self.assertEqual(CompressionRegistry.get_compression_level(CompressionType.ZLIB), 6)
        self.assertEqual(CompressionRegistry.get_compression_level(CompressionType.ZSTD), 3)


class TestTransformSelection(unittest.TestCase):
    """Rule tests: regex, exact key, predicate and no-op factories"""

    def test_regex_rule(self):
        src = _source()
        dst = MemoryDrive()
        rule = TransformRule(compress_filter('zlib'), test=re.compile(r'\.txt$'))

        MirrorDrive(src, dst, transforms=[rule]).done()

        self.assertEqual(zlib.decompress(dst.get('/notes.txt')), src.get('/notes.txt'))
        self.assertEqual(dst.get('/tool.sh'), b'echo hi\n')

    def test_exact_key_rule_from_dict(self):
        src = _source()
        dst = MemoryDrive()

        MirrorDrive(src, dst, transforms=[{'test': '/tool.sh', 'transform': map_filter(bytes.upper)}]).done()

        self.assertEqual(dst.get('/tool.sh'), b'ECHO HI\n')
        self.assertEqual(dst.get('/notes.txt'), src.get('/notes.txt'))

    def test_predicate_rule(self):
        rule = TransformRule(map_filter(bytes.upper), test=lambda key: key.startswith('/a'))
        self.assertTrue(rule.matches('/abc'))
        self.assertFalse(rule.matches('/b'))

    def test_factory_returning_none_copies_raw(self):
        src = _source()
        dst = MemoryDrive()

        MirrorDrive(src, dst, transforms=[lambda key: None]).done()
        self.assertEqual(dst.get('/tool.sh'), b'echo hi\n')

    def test_filters_run_in_order(self):
        def append(suffix):
            def factory(key):
                def _filter(chunks):
                    yield from chunks
                    yield suffix
                return _filter
            return factory

        src = MemoryDrive()
        src.put('/f', b'x')
        dst = MemoryDrive()
        MirrorDrive(src, dst, transforms=[append(b'1'), append(b'2')]).done()
        self.assertEqual(dst.get('/f'), b'x12')

    def test_resolve_skips_symlinks(self):
        src = _source()
        pipeline = TransformPipeline([map_filter(bytes.upper)])
        self.assertEqual(pipeline.resolve('/latest', src.entry('/latest')), [])
        self.assertEqual(len(pipeline.resolve('/tool.sh', src.entry('/tool.sh'))), 1)

    def test_prebuilt_pipeline(self):
        src = _source()
        dst = MemoryDrive()
        pipeline = TransformPipeline([map_filter(bytes.upper)])

        MirrorDrive(src, dst, transform_pipeline=pipeline).done()
        self.assertEqual(dst.get('/tool.sh'), b'ECHO HI\n')


class TestTransformErrors(unittest.TestCase):

    def test_non_callable_transform(self):
        with self.assertRaises(ConfigurationError):
            MirrorDrive(MemoryDrive(), MemoryDrive(), transforms=['gzip'])

    def test_invalid_test(self):
        with self.assertRaises(ConfigurationError):
            TransformPipeline([{'test': 5, 'transform': map_filter(bytes.upper)}])

    def test_pipeline_and_transforms_together(self):
        with self.assertRaises(ConfigurationError):
            MirrorDrive(MemoryDrive(), MemoryDrive(), transforms=[map_filter(bytes.upper)],
                        transform_pipeline=TransformPipeline())

    def test_factory_returning_non_filter(self):
        src = _source()
        m = MirrorDrive(src, MemoryDrive(), transforms=[lambda key: 'nope'])
        with self.assertRaises(ConfigurationError):
            m.done()

    def test_failing_filter_aborts_pass(self):
        def explode(key):
            def _filter(chunks):
                for chunk in chunks:
                    raise ValueError('corrupt input')
                    yield chunk
            return _filter

        src = _source()
        dst = MemoryDrive()
        m = MirrorDrive(src, dst, transforms=[{'test': '/notes.txt', 'transform': explode}])

        with self.assertRaises(TransformError) as ctx:
            m.done()

        self.assertIsInstance(ctx.exception.__cause__, ValueError)
        self.assertEqual(ctx.exception.code, 4)
        self.assertEqual(m.state, MirrorState.ERROR)
        self.assertIsNone(dst.entry('/notes.txt'))
        # Keys sorted before the failing one were already applied.
        self.assertEqual(dst.entry('/latest').linkname, '/notes.txt')


if __name__ == "__main__":
    unittest.main()
