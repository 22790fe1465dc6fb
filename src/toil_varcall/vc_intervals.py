#!/usr/bin/env python3
"""
vc_intervals.py: split a region list into interval chunks of balanced
estimated runtime, and order the chunks longest first for dispatch.

Regions are held 0-based half-open (BED) from the moment they are read.
"""

import os, os.path, re
import logging
from collections import namedtuple

from toil_varcall.vc_common import IntervalFormatError, read_tsv_rows

logger = logging.getLogger(__name__)

# A chunk is closed once it holds more than this many seconds of work...
MIN_CHUNK_SECONDS = 600
# ...and the next region would push it past this multiple of its longest region
LONGEST_REGION_SLACK = 1.05

DEFAULT_NUCLEOTIDES_PER_SECOND = 1000.0

# estimate is None when the interval line did not carry one
Region = namedtuple('Region', ['contig', 'start', 'end', 'estimate'])

# regions is a tuple of Region, index is the chunk's position in coordinate order
IntervalChunk = namedtuple('IntervalChunk', ['name', 'index', 'regions', 'path'])

WEIGHTED = 'weighted'
PLAIN = 'plain'

_plain_region_re = re.compile(r'^(.+):(\d+)-(\d+)$')

def region_runtime(region, nucleotides_per_second=DEFAULT_NUCLEOTIDES_PER_SECOND):
    """ estimated seconds to process a region """
    if region.estimate is not None:
        return region.estimate
    return (region.end - region.start) / float(nucleotides_per_second)

def chunk_duration(chunk, nucleotides_per_second=DEFAULT_NUCLEOTIDES_PER_SECOND):
    return sum(region_runtime(r, nucleotides_per_second) for r in chunk.regions)

def _parse_int(value, what, path, line_no):
    try:
        return int(value)
    except ValueError:
        raise IntervalFormatError('{}:{}: non-numeric {} "{}"'.format(path, line_no, what, value))

def parse_weighted_line(toks, path, line_no):
    """
    Parse the columns of a BED line: contig, start, end[, name[, estimate]].
    Returns the Region.
    """
    if len(toks) < 3:
        raise IntervalFormatError('{}:{}: expected at least 3 tab-separated columns, found {}'.format(
            path, line_no, len(toks)))
    start = _parse_int(toks[1], 'start', path, line_no)
    end = _parse_int(toks[2], 'end', path, line_no)
    if end < start:
        raise IntervalFormatError('{}:{}: end {} before start {}'.format(path, line_no, end, start))
    estimate = None
    if len(toks) >= 5 and toks[4].strip():
        try:
            estimate = float(toks[4])
        except ValueError:
            raise IntervalFormatError('{}:{}: non-numeric runtime estimate "{}"'.format(
                path, line_no, toks[4]))
    return Region(toks[0], start, end, estimate)

def parse_plain_line(line, path, line_no):
    """
    Parse a 1-based closed contig:start-end line into a 0-based half-open Region
    """
    match = _plain_region_re.match(line.strip())
    if not match:
        raise IntervalFormatError('{}:{}: expected contig:start-end, found "{}"'.format(
            path, line_no, line.strip()))
    start = int(match.group(2))
    end = int(match.group(3))
    if end < start:
        raise IntervalFormatError('{}:{}: end {} before start {}'.format(path, line_no, end, start))
    return Region(match.group(1), start - 1, end, None)

def read_regions(intervals_path):
    """
    Read a region list.  The first line with a tab in it makes the whole file
    BED (weighted), otherwise every line must be contig:start-end (plain).

    Returns (shape, list of (Region, original line)).
    """
    shape = None
    regions = []
    for line_no, toks in read_tsv_rows(intervals_path):
        if shape is None:
            shape = WEIGHTED if len(toks) > 1 else PLAIN
        if shape == WEIGHTED:
            region = parse_weighted_line(toks, intervals_path, line_no)
        else:
            if len(toks) > 1:
                raise IntervalFormatError('{}:{}: tab-separated line in contig:start-end list'.format(
                    intervals_path, line_no))
            region = parse_plain_line(toks[0], intervals_path, line_no)
        regions.append((region, '\t'.join(toks)))

    if not regions:
        raise IntervalFormatError('{}: no regions found'.format(intervals_path))

    return shape, regions

def split_into_chunks(regions, nucleotides_per_second=DEFAULT_NUCLEOTIDES_PER_SECOND):
    """
    Greedily bin an already sorted sequence of Regions.  A new bin is opened
    when none is open, when the next region is on another contig, or when the
    open one holds more than MIN_CHUNK_SECONDS of work and adding the next
    region would take it past LONGEST_REGION_SLACK times the longest region
    it holds.  So a bin never spans two contigs.

    Returns a list of lists of the input items, in input order.
    """
    bins = []
    chunk_time = 0
    longest = 0
    for region in regions:
        t = region_runtime(region, nucleotides_per_second)
        if not bins or region.contig != bins[-1][-1].contig or \
           (chunk_time > MIN_CHUNK_SECONDS and chunk_time + t > LONGEST_REGION_SLACK * longest):
            bins.append([])
            chunk_time = 0
            longest = 0
        bins[-1].append(region)
        chunk_time += t
        longest = max(longest, t)
    return bins

def chunk_name(regions):
    """
    Deterministic chunk name from its first and last regions, 1-based:
    contig_start-end.  For a plain list this echoes the start it was given.
    """
    first, last = regions[0], regions[-1]
    return '{}_{}-{}'.format(first.contig, first.start + 1, last.end)

def _write_chunk_file(path, lines):
    with open(path, 'w') as chunk_file:
        for line in lines:
            chunk_file.write(line + '\n')

def partition_intervals(intervals_path, out_dir, nucleotides_per_second=DEFAULT_NUCLEOTIDES_PER_SECOND):
    """
    Split the region list into chunk BED files in out_dir.  Any malformed line
    raises IntervalFormatError before a single chunk is written.

    Returns a tuple of IntervalChunk in coordinate (input) order.
    """
    shape, parsed = read_regions(intervals_path)

    if shape == WEIGHTED:
        bins = split_into_chunks([region for region, _ in parsed], nucleotides_per_second)
        # keep the original line so the estimate column survives in the chunk file
        lines = [line for _, line in parsed]
    else:
        # no weights to batch on: one region per chunk
        bins = [[region] for region, _ in parsed]
        lines = ['{}\t{}\t{}'.format(r.contig, r.start, r.end) for r, _ in parsed]

    chunks = []
    chunk_lines = []
    seen = set()
    pos = 0
    for chunk_regions in bins:
        name = chunk_name(chunk_regions)
        if name in seen:
            raise IntervalFormatError('{}: more than one chunk named {}'.format(intervals_path, name))
        seen.add(name)
        chunks.append(IntervalChunk(name, len(chunks), tuple(chunk_regions),
                                    os.path.join(out_dir, name + '.bed')))
        chunk_lines.append(lines[pos:pos + len(chunk_regions)])
        pos += len(chunk_regions)

    if not os.path.isdir(out_dir):
        os.makedirs(out_dir)
    for chunk, lines in zip(chunks, chunk_lines):
        _write_chunk_file(chunk.path, lines)

    logger.info('Split {} {} regions from {} into {} chunks'.format(
        len(parsed), shape, intervals_path, len(chunks)))

    return tuple(chunks)

def read_chunk_file(chunk_path):
    """ Read the Regions back out of a chunk BED file """
    return tuple(parse_weighted_line(toks, chunk_path, line_no)
                 for line_no, toks in read_tsv_rows(chunk_path))

def sort_chunks_by_duration(chunks, nucleotides_per_second=DEFAULT_NUCLEOTIDES_PER_SECOND):
    """
    Order chunks longest first.  Durations are recomputed from what is in
    each chunk's file, not from the regions held in memory.  Ties keep their
    input order.

    Returns a list of (IntervalChunk, duration) pairs.
    """
    timed = []
    for chunk in chunks:
        persisted = chunk._replace(regions=read_chunk_file(chunk.path))
        timed.append((chunk, chunk_duration(persisted, nucleotides_per_second)))
    # sorted() is stable
    return sorted(timed, key=lambda x: -x[1])
