#!/usr/bin/env python3
"""
vc_samples.py: read the aligned sample manifest and build the sample
streams the callers consume: normals, tumors, normal/tumor pairs within a
subject, and the union of all samples.
"""

import logging
from collections import namedtuple, OrderedDict

from toil_varcall.vc_common import ManifestError, read_tsv_rows

logger = logging.getLogger(__name__)

NORMAL = 'normal'
TUMOR = 'tumor'

# bam, bai and recal_table are paths (or Toil file IDs once imported).
# recal_table is None until attach_recal_tables() has been run.
SampleRecord = namedtuple('SampleRecord', ['subject_id', 'role', 'sample_id', 'bam', 'bai', 'recal_table'])

# all four relations are tuples so any number of consumers can iterate them
SampleStreams = namedtuple('SampleStreams', ['normal', 'tumor', 'pairs', 'union'])

def role_from_status(status, path='manifest', line_no=0):
    """ status flag 0 is a normal sample, any other integer a tumor """
    try:
        flag = int(status)
    except ValueError:
        raise ManifestError('{}:{}: status flag must be an integer, found "{}"'.format(
            path, line_no, status))
    return NORMAL if flag == 0 else TUMOR

def read_manifest(manifest_path):
    """
    Read a manifest of aligned samples, one per line:
    subject  status  sample  bam  bai  [recal table]

    Returns a tuple of SampleRecord in file order.
    """
    records = []
    seen = {}
    for line_no, toks in read_tsv_rows(manifest_path):
        if len(toks) < 5:
            raise ManifestError('{}:{}: expected subject, status, sample, bam, bai[, recal table], '
                                'found {} columns'.format(manifest_path, line_no, len(toks)))
        subject_id, status, sample_id, bam, bai = [t.strip() for t in toks[:5]]
        recal_table = toks[5].strip() if len(toks) > 5 and toks[5].strip() else None
        if sample_id in seen:
            raise ManifestError('{}:{}: sample {} already listed on line {}'.format(
                manifest_path, line_no, sample_id, seen[sample_id]))
        seen[sample_id] = line_no
        records.append(SampleRecord(subject_id, role_from_status(status, manifest_path, line_no),
                                    sample_id, bam, bai, recal_table))

    if not records:
        raise ManifestError('{}: no samples found'.format(manifest_path))

    return tuple(records)

def read_recal_tables(recal_path):
    """
    Read a list of recalibration tables: subject  sample  table

    Returns a dict from (subject, sample) to table.
    """
    tables = {}
    for line_no, toks in read_tsv_rows(recal_path):
        if len(toks) < 3:
            raise ManifestError('{}:{}: expected subject, sample, recal table, found {} columns'.format(
                recal_path, line_no, len(toks)))
        key = (toks[0].strip(), toks[1].strip())
        if key in tables:
            raise ManifestError('{}:{}: second recal table for subject {} sample {}'.format(
                recal_path, line_no, key[0], key[1]))
        tables[key] = toks[2].strip()
    return tables

def split_by_role(records):
    """
    Partition records into (normals, tumors).  Every record lands in
    exactly one of the two.
    """
    normals = []
    tumors = []
    for record in records:
        if record.role == NORMAL:
            normals.append(record)
        elif record.role == TUMOR:
            tumors.append(record)
        else:
            raise ManifestError('sample {} has undefined role {}'.format(record.sample_id, record.role))
    return tuple(normals), tuple(tumors)

def pair_normals_with_tumors(normals, tumors):
    """
    Every normal of a subject with every tumor of the same subject, subjects
    in order of first appearance among the normals.  A subject missing either
    role contributes nothing.

    Returns a tuple of (normal, tumor) record pairs.
    """
    tumors_by_subject = OrderedDict()
    for tumor in tumors:
        tumors_by_subject.setdefault(tumor.subject_id, []).append(tumor)
    normals_by_subject = OrderedDict()
    for normal in normals:
        normals_by_subject.setdefault(normal.subject_id, []).append(normal)

    pairs = []
    for subject_id, subject_normals in normals_by_subject.items():
        for normal in subject_normals:
            for tumor in tumors_by_subject.get(subject_id, []):
                pairs.append((normal, tumor))
    return tuple(pairs)

def build_sample_streams(records):
    """
    Build the four relations callers draw their inputs from.  Subjects that
    can't be paired are simply absent from pairs, not treated as errors.
    """
    normals, tumors = split_by_role(records)
    pairs = pair_normals_with_tumors(normals, tumors)

    union = tuple(r for r in records if r.role in (NORMAL, TUMOR))
    logger.debug('{} normals, {} tumors, {} normal/tumor pairs'.format(len(normals), len(tumors), len(pairs)))

    return SampleStreams(normals, tumors, pairs, union)
