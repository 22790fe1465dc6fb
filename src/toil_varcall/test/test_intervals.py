import logging
import os
import shutil
import tempfile
from unittest import TestCase

from toil_varcall.vc_common import IntervalFormatError
from toil_varcall.vc_intervals import Region, IntervalChunk, partition_intervals, split_into_chunks, \
    sort_chunks_by_duration, read_regions, region_runtime, chunk_duration, chunk_name, \
    MIN_CHUNK_SECONDS, LONGEST_REGION_SLACK, WEIGHTED, PLAIN

log = logging.getLogger(__name__)


class IntervalsTest(TestCase):
    """
    Partitioning region lists into chunks and ordering them for dispatch.
    """

    def setUp(self):
        self.workdir = tempfile.mkdtemp()
        self.chunk_dir = os.path.join(self.workdir, 'chunks')

    def tearDown(self):
        shutil.rmtree(self.workdir)

    def _write(self, name, lines):
        path = os.path.join(self.workdir, name)
        with open(path, 'w') as f:
            for line in lines:
                f.write(line + '\n')
        return path

    def _read(self, path):
        with open(path) as f:
            return f.read()

    def test_weighted_split(self):
        """ estimates 100, 700, 50 make chunks [100, 700] and [50] """
        path = self._write('regions.bed', ['chr1\t0\t1000\ta\t100',
                                           'chr1\t1000\t2000\tb\t700',
                                           'chr1\t2000\t3000\tc\t50'])
        chunks = partition_intervals(path, self.chunk_dir)

        self.assertEqual([len(c.regions) for c in chunks], [2, 1])
        self.assertEqual([c.name for c in chunks], ['chr1_1-2000', 'chr1_2001-3000'])
        self.assertEqual([c.index for c in chunks], [0, 1])
        self.assertEqual([chunk_duration(c) for c in chunks], [800, 50])

        # the original lines, estimate column and all, land in the chunk files
        self.assertEqual(self._read(chunks[0].path), 'chr1\t0\t1000\ta\t100\nchr1\t1000\t2000\tb\t700\n')
        self.assertEqual(self._read(chunks[1].path), 'chr1\t2000\t3000\tc\t50\n')
        self.assertEqual(os.path.dirname(chunks[0].path), self.chunk_dir)

    def test_computed_estimates(self):
        """ 3 column BED, and an empty column 5, fall back on length / throughput """
        path = self._write('regions.bed', ['chr1\t0\t5000',
                                           'chr1\t5000\t7000\tx\t'])
        shape, parsed = read_regions(path)
        self.assertEqual(shape, WEIGHTED)
        self.assertEqual([r for r, _ in parsed], [Region('chr1', 0, 5000, None), Region('chr1', 5000, 7000, None)])
        self.assertEqual([region_runtime(r) for r, _ in parsed], [5.0, 2.0])
        self.assertEqual([region_runtime(r, 500.0) for r, _ in parsed], [10.0, 4.0])

        chunks = partition_intervals(path, self.chunk_dir, 1000.0)
        self.assertEqual(len(chunks), 1)
        self.assertEqual(chunks[0].name, 'chr1_1-7000')

    def test_split_trigger(self):
        """ every chunk boundary, and only those, satisfies the split condition """
        estimates = [50, 400, 300, 900, 20, 20, 1200, 5, 640, 640, 100, 3000, 10, 10, 700, 80, 650, 30]
        regions = [Region('chr1', i * 100, (i + 1) * 100, float(t)) for i, t in enumerate(estimates)]
        bins = split_into_chunks(regions)

        # nothing lost, nothing reordered
        self.assertEqual([r for b in bins for r in b], regions)
        self.assertTrue(all(len(b) > 0 for b in bins))

        for i, b in enumerate(bins):
            chunk_time = 0
            longest = 0
            for j, region in enumerate(b):
                t = region.estimate
                if j > 0:
                    # adding this region did not trip the split
                    self.assertFalse(chunk_time > MIN_CHUNK_SECONDS and
                                     chunk_time + t > LONGEST_REGION_SLACK * longest)
                chunk_time += t
                longest = max(longest, t)
            if i + 1 < len(bins):
                t = bins[i + 1][0].estimate
                self.assertTrue(chunk_time > MIN_CHUNK_SECONDS and
                                chunk_time + t > LONGEST_REGION_SLACK * longest)

    def test_duration_preserved(self):
        estimates = [5, 610, 3, 3, 1000, 2, 700, 700, 1]
        path = self._write('regions.bed', ['chr1\t{}\t{}\tr\t{}'.format(i * 10, i * 10 + 10, t)
                                           for i, t in enumerate(estimates)])
        chunks = partition_intervals(path, self.chunk_dir)
        self.assertEqual(sum(chunk_duration(c) for c in chunks), sum(estimates))
        self.assertEqual(sum(d for _, d in sort_chunks_by_duration(chunks)), sum(estimates))

    def test_plain_regions(self):
        """ contig:start-end is 1-based, one region per chunk, written as BED """
        path = self._write('regions.list', ['chr2:101-200', 'chr2:201-5000', 'chrX:1-10'])
        shape, parsed = read_regions(path)
        self.assertEqual(shape, PLAIN)

        chunks = partition_intervals(path, self.chunk_dir)
        self.assertEqual([c.name for c in chunks], ['chr2_101-200', 'chr2_201-5000', 'chrX_1-10'])
        self.assertEqual(chunks[0].regions, (Region('chr2', 100, 200, None),))
        self.assertEqual(self._read(chunks[0].path), 'chr2\t100\t200\n')
        self.assertEqual(chunk_duration(chunks[1], 100.0), 48.0)

    def test_comments_and_blanks(self):
        path = self._write('regions.bed', ['# header', '', 'chr1\t10\t20\t.\t1', '   '])
        chunks = partition_intervals(path, self.chunk_dir)
        self.assertEqual(len(chunks), 1)
        self.assertEqual(chunks[0].regions, (Region('chr1', 10, 20, 1.0),))

    def test_malformed_intervals(self):
        bad_inputs = [
            ['chr1\t100'],
            ['chr1\tten\t20'],
            ['chr1\t10\t20\tr\tsoon'],
            ['chr1\t30\t20'],
            ['chr1:30-20'],
            ['chr1-10-20'],
            ['chr1:1-10', 'chr1\t10\t20'],
            ['chr1:1-10', 'chr1:1-10'],
            ['# nothing here', ''],
        ]
        for lines in bad_inputs:
            path = self._write('bad.bed', lines)
            with self.assertRaises(IntervalFormatError):
                partition_intervals(path, self.chunk_dir)
            # nothing was written before the error
            self.assertFalse(os.path.exists(self.chunk_dir))

    def test_chunk_name(self):
        regions = [Region('chr3', 99, 200, None), Region('chr3', 400, 900, None)]
        self.assertEqual(chunk_name(regions), 'chr3_100-900')

    def test_sort_longest_first(self):
        lines = {'a': 'chr1\t0\t10\ta\t5', 'b': 'chr1\t10\t20\tb\t900',
                 'c': 'chr1\t20\t30\tc\t5', 'd': 'chr1\t30\t40\td\t40'}
        chunks = []
        for i, name in enumerate('abcd'):
            chunk_path = self._write(name + '.bed', [lines[name]])
            chunks.append(IntervalChunk(name, i, (), chunk_path))

        ordered = sort_chunks_by_duration(chunks)
        self.assertEqual([(c.name, d) for c, d in ordered], [('b', 900), ('d', 40), ('a', 5), ('c', 5)])
        durations = [d for _, d in ordered]
        self.assertEqual(durations, sorted(durations, reverse=True))

    def test_sort_reads_chunk_files(self):
        """ the duration comes from the file, not the regions held in memory """
        chunk_path = self._write('x.bed', ['chr1\t0\t2000'])
        chunk = IntervalChunk('x', 0, (Region('chr1', 0, 10, 99999.0),), chunk_path)
        [(sorted_chunk, duration)] = sort_chunks_by_duration([chunk], 1000.0)
        self.assertEqual(duration, 2.0)
        self.assertEqual(sorted_chunk, chunk)

    def test_chunks_stay_on_one_contig(self):
        """ a contig change closes the open chunk even when it is short """
        path = self._write('regions.bed', ['chr1\t0\t100\ta\t10',
                                           'chr1\t100\t400\tb\t10',
                                           'chr2\t0\t500\tc\t10',
                                           'chr2\t500\t900\td\t10'])
        chunks = partition_intervals(path, self.chunk_dir)
        self.assertEqual([c.name for c in chunks], ['chr1_1-400', 'chr2_1-900'])
        for chunk in chunks:
            self.assertEqual(len(set(r.contig for r in chunk.regions)), 1)
