#!/usr/bin/env python3
"""
vc_scatter.py: join recalibration tables onto the samples and cross the
sample streams with the interval chunks, making one work item per
(caller, sample or normal/tumor pair, chunk).
"""

import logging
from collections import namedtuple
from enum import Enum

from toil_varcall.vc_common import UnknownCallerError
from toil_varcall.vc_samples import NORMAL, TUMOR

logger = logging.getLogger(__name__)

# Attached in place of a table when recalibration is off.  Callers that see it
# must not emit any recalibration step or flag.
NO_RECALIBRATION = 'NO_RECALIBRATION'

# the sample streams a caller can draw from
SINGLE = 'single'
UNION = 'union'
PAIR = 'pair'

# stream: one of the above.  roles: which roles a single-sample caller applies
# to (None for pairs).  families: the output families each work item makes, the
# raw/genomic one first where there is one.
CallerProfile = namedtuple('CallerProfile', ['stream', 'roles', 'families'])

class Caller(Enum):
    HAPLOTYPECALLER = 'haplotypecaller'
    STRELKA = 'strelka'
    MANTA = 'manta'
    MUTECT2 = 'mutect2'
    FREEBAYES = 'freebayes'

    @property
    def profile(self):
        return _caller_profiles[self]

    @property
    def paired(self):
        return self.profile.stream == PAIR

    @property
    def families(self):
        return self.profile.families

    def applies_to(self, record):
        """ is this single-sample caller run on the given record """
        return not self.paired and record.role in self.profile.roles

_caller_profiles = {
    Caller.HAPLOTYPECALLER: CallerProfile(SINGLE, (NORMAL, TUMOR), ('gvcf', 'vcf')),
    # germline calling is only meaningful on the diploid normal
    Caller.STRELKA: CallerProfile(SINGLE, (NORMAL,), ('genome', 'variants')),
    Caller.MANTA: CallerProfile(UNION, (NORMAL, TUMOR), ('sv',)),
    Caller.MUTECT2: CallerProfile(PAIR, None, ('vcf',)),
    Caller.FREEBAYES: CallerProfile(PAIR, None, ('vcf',)),
}

def caller_names():
    return [c.value for c in Caller]

def parse_callers(names):
    """
    Map caller names onto Callers, dropping repeats.  Any name we don't know
    raises UnknownCallerError.
    """
    callers = []
    for name in names:
        try:
            caller = Caller(name.lower())
        except ValueError:
            raise UnknownCallerError('Unknown caller "{}".  Choose from: {}'.format(
                name, ', '.join(caller_names())))
        if caller not in callers:
            callers.append(caller)
    return tuple(callers)

# key everything from one caller on one sample (or pair) is gathered under
GatherKey = namedtuple('GatherKey', ['caller', 'subject_id', 'normal_sample_id', 'tumor_sample_id'])

class WorkItem(namedtuple('WorkItem', ['caller', 'subject_id', 'normal_sample_id', 'tumor_sample_id',
                                       'chunk_id', 'chunk_index', 'chunk_file', 'samples'])):
    """
    One independent calling job.  samples holds the SampleRecord (or the
    normal and tumor SampleRecords, in that order) with recal tables attached.
    Single-sample items keep the sample in normal_sample_id.
    """
    __slots__ = ()

    @property
    def key(self):
        return GatherKey(self.caller, self.subject_id, self.normal_sample_id, self.tumor_sample_id)

# a sample (or pair) that was dropped from a caller, and why
ScatterSkip = namedtuple('ScatterSkip', ['caller', 'subject_id', 'sample_ids', 'reason'])

ScatterPlan = namedtuple('ScatterPlan', ['work_items', 'skips'])

def attach_recal_tables(records, recal_tables=None, recalibrate=True):
    """
    Join each record to its recalibration table by (subject, sample).  A table
    given in the manifest wins over one in recal_tables.  With recalibrate off
    every record gets NO_RECALIBRATION.

    Returns (attached records, records with no table), both tuples.
    """
    recal_tables = recal_tables or {}
    attached = []
    missing = []
    for record in records:
        if not recalibrate:
            attached.append(record._replace(recal_table=NO_RECALIBRATION))
        elif record.recal_table:
            attached.append(record)
        elif (record.subject_id, record.sample_id) in recal_tables:
            attached.append(record._replace(recal_table=recal_tables[(record.subject_id, record.sample_id)]))
        else:
            missing.append(record)
    return tuple(attached), tuple(missing)

def _caller_units(caller, streams, attached_by_sample, skips):
    """
    Yield the tuples of records a caller runs on: (sample,) or (normal, tumor).
    """
    if caller.paired:
        # every sample of a subject with nothing to pair it with
        paired_subjects = set(n.subject_id for n, _ in streams.pairs)
        for record in streams.union:
            if record.subject_id not in paired_subjects:
                skips.append(ScatterSkip(caller, record.subject_id, (record.sample_id,),
                                         'no normal/tumor pair in subject {}'.format(record.subject_id)))
        for normal, tumor in streams.pairs:
            lacking = [r.sample_id for r in (normal, tumor) if r.sample_id not in attached_by_sample]
            if lacking:
                skips.append(ScatterSkip(caller, normal.subject_id, (normal.sample_id, tumor.sample_id),
                                         'no recal table for {}'.format(', '.join(lacking))))
                continue
            yield (attached_by_sample[normal.sample_id], attached_by_sample[tumor.sample_id])
    else:
        if caller.profile.stream == SINGLE:
            records = streams.normal + streams.tumor
        else:
            records = streams.union
        for record in records:
            if not caller.applies_to(record):
                continue
            if record.sample_id not in attached_by_sample:
                skips.append(ScatterSkip(caller, record.subject_id, (record.sample_id,),
                                         'no recal table for {}'.format(record.sample_id)))
                continue
            yield (attached_by_sample[record.sample_id],)

def make_work_item(caller, unit, chunk):
    if caller.paired:
        normal, tumor = unit
        tumor_sample_id = tumor.sample_id
    else:
        normal = unit[0]
        tumor_sample_id = None
    return WorkItem(caller, normal.subject_id, normal.sample_id, tumor_sample_id,
                    chunk.name, chunk.index, chunk.path, tuple(unit))

def scatter_work_items(streams, sorted_chunks, callers, recal_tables=None, recalibrate=True):
    """
    Cross every caller's samples (or pairs) with every chunk.  sorted_chunks
    is the (IntervalChunk, duration) list from sort_chunks_by_duration, and
    work items come out in the same longest-first chunk order.

    Returns a ScatterPlan.
    """
    attached, missing = attach_recal_tables(streams.union, recal_tables, recalibrate)
    attached_by_sample = dict((r.sample_id, r) for r in attached)
    for record in missing:
        logger.warning('No recalibration table for subject {} sample {}, it will not be called'.format(
            record.subject_id, record.sample_id))

    skips = []
    units = [(caller, list(_caller_units(caller, streams, attached_by_sample, skips)))
             for caller in callers]

    for skip in skips:
        logger.warning('Skipping {} for {}: {}'.format(skip.caller.value, ' '.join(skip.sample_ids), skip.reason))

    work_items = []
    for chunk, _ in sorted_chunks:
        for caller, caller_units in units:
            for unit in caller_units:
                work_items.append(make_work_item(caller, unit, chunk))

    logger.info('Scattered {} work items over {} chunks'.format(len(work_items), len(sorted_chunks)))

    return ScatterPlan(tuple(work_items), tuple(skips))
