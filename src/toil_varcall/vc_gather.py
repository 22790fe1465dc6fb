#!/usr/bin/env python3
"""
vc_gather.py: collect the per-chunk VCFs of every (caller, sample or pair),
check that every chunk is accounted for, and concatenate them in chunk
coordinate order into one sorted, bgzipped, indexed VCF per output family.

A key with a failed or missing chunk is withheld entirely and reported; it
never holds up the other keys.
"""

import os, os.path
import logging
from collections import namedtuple, OrderedDict

from toil.job import Job
from toil.realtimeLogger import RealtimeLogger

from toil_varcall.vc_common import GatherError
from toil_varcall.vc_call import WorkFailure, output_label
from toil_varcall.vc_scatter import GatherKey

logger = logging.getLogger(__name__)

FAILED = 'failed'
INCOMPLETE = 'incomplete'

# suffix of the merged file for each output family
FAMILY_EXTENSIONS = {
    'gvcf': '.g.vcf.gz',
    'vcf': '.vcf.gz',
    'genome': '.genome.vcf.gz',
    'variants': '.vcf.gz',
    'sv': '.sv.vcf.gz',
}

class MergedOutput(namedtuple('MergedOutput', ['caller', 'subject_id', 'normal_sample_id', 'tumor_sample_id',
                                                 'family', 'name', 'vcf_id', 'tbi_id'])):
    __slots__ = ()

    @property
    def key(self):
        return GatherKey(self.caller, self.subject_id, self.normal_sample_id, self.tumor_sample_id)

# status is FAILED or INCOMPLETE, chunk_ids the chunks that failed or never arrived
GatherProblem = namedtuple('GatherProblem', ['key', 'status', 'chunk_ids', 'detail'])

GatherReport = namedtuple('GatherReport', ['merged', 'problems', 'report_id'])

def merged_name(key, family):
    return '{}_{}{}'.format(key.caller.value, output_label(key), FAMILY_EXTENSIONS[family])

class ArtifactCollector(object):
    """
    Accumulates ResultArtifacts and WorkFailures in whatever order they show
    up, and knows when a key has one artifact for every expected chunk in
    every one of its caller's families.
    """

    def __init__(self, expected_chunk_ids):
        self.expected_chunk_ids = tuple(expected_chunk_ids)
        self._expected = set(self.expected_chunk_ids)
        # key -> family -> chunk id -> artifact
        self._artifacts = OrderedDict()
        # key -> list of WorkFailure
        self._failures = OrderedDict()

    def expect(self, key):
        """ register a key up front, so it is reported even if nothing arrives for it """
        self._artifacts.setdefault(key, OrderedDict((f, {}) for f in key.caller.families))

    def add(self, result):
        if result.chunk_id not in self._expected:
            raise GatherError('{} output for unknown chunk {}'.format(output_label(result.key), result.chunk_id))
        self.expect(result.key)
        if isinstance(result, WorkFailure):
            self._failures.setdefault(result.key, []).append(result)
            return
        if result.family not in self._artifacts[result.key]:
            raise GatherError('{} made no {} output family'.format(result.caller.value, result.family))
        by_chunk = self._artifacts[result.key][result.family]
        if result.chunk_id in by_chunk:
            raise GatherError('{} {} output for chunk {} arrived twice'.format(
                output_label(result.key), result.family, result.chunk_id))
        by_chunk[result.chunk_id] = result

    def keys(self):
        return list(self._artifacts.keys())

    def failures(self, key):
        return list(self._failures.get(key, []))

    def missing(self, key):
        """ expected chunk ids absent from at least one family of the key, in expected order """
        families = self._artifacts.get(key, {})
        return [c for c in self.expected_chunk_ids
                if any(c not in families.get(f, {}) for f in key.caller.families)]

    def is_complete(self, key):
        return not self.failures(key) and not self.missing(key)

    def ordered(self, key, family):
        """ a complete family's artifacts in chunk coordinate order """
        if not self.is_complete(key):
            raise GatherError('{} is not complete'.format(output_label(key)))
        return sorted(self._artifacts[key][family].values(), key=lambda a: a.chunk_index)

def flatten_results(results):
    """ work item jobs each return a list; put them end to end """
    flat = []
    for result in results:
        flat.extend(result)
    return flat

def plan_gather(results, expected_chunk_ids, expected_keys=()):
    """
    Sort work item results into merges that can go ahead and problems.

    Returns (ready, problems) where ready is a list of (key, family, ordered
    artifacts) and problems a list of GatherProblem, one per withheld key.
    """
    collector = ArtifactCollector(expected_chunk_ids)
    for key in expected_keys:
        collector.expect(key)
    for result in results:
        collector.add(result)

    ready = []
    problems = []
    for key in collector.keys():
        failures = collector.failures(key)
        if failures:
            failures.sort(key=lambda f: f.chunk_index)
            chunk_ids = tuple(OrderedDict.fromkeys(f.chunk_id for f in failures))
            problems.append(GatherProblem(key, FAILED, chunk_ids,
                                          '; '.join('{}: {}'.format(f.chunk_id, f.message) for f in failures)))
            continue
        missing = collector.missing(key)
        if missing:
            problems.append(GatherProblem(key, INCOMPLETE, tuple(missing),
                                          'missing output for chunk(s) {}'.format(', '.join(missing))))
            continue
        for family in key.caller.families:
            ready.append((key, family, collector.ordered(key, family)))

    return ready, problems

def run_merge_vcfs(job, context, key, family, artifacts):
    """
    Concatenate one family of chunk VCFs, already in chunk coordinate order,
    then sort and index the result.  Returns a MergedOutput, or a FAILED
    GatherProblem if any of the tools failed, so the other merges still
    reach the report.
    """
    work_dir = job.fileStore.getLocalTempDir()

    vcf_names = []
    for i, artifact in enumerate(artifacts):
        vcf_name = 'chunk_{}.vcf.gz'.format(i)
        job.fileStore.readGlobalFile(artifact.vcf_id, os.path.join(work_dir, vcf_name))
        job.fileStore.readGlobalFile(artifact.tbi_id, os.path.join(work_dir, vcf_name + '.tbi'))
        vcf_names.append(vcf_name)

    out_name = merged_name(key, family)
    concat_name = 'concat.vcf.gz'

    try:
        # -a -D drops the records duplicated where neighbouring chunks overlap
        context.runner.call(job, ['bcftools', 'concat', '-a', '-D'] + vcf_names +
                            ['--output', concat_name, '--output-type', 'z'], work_dir=work_dir)
        context.runner.call(job, ['bcftools', 'sort', concat_name,
                                  '--output', out_name, '--output-type', 'z'], work_dir=work_dir)
        context.runner.call(job, ['tabix', '--force', '--preset', 'vcf', out_name], work_dir=work_dir)
    except Exception as e:
        RealtimeLogger.error('Merging {} failed: {}'.format(out_name, e))
        return GatherProblem(key, FAILED, (), 'merge of {} failed: {}'.format(out_name, e))

    out_path = os.path.join(work_dir, out_name)
    return MergedOutput(key.caller, key.subject_id, key.normal_sample_id, key.tumor_sample_id, family,
                        out_name, context.write_output_file(job, out_path),
                        context.write_output_file(job, out_path + '.tbi'))

def split_merge_results(merge_results, problems=()):
    """
    Separate what the merge jobs returned into merged outputs and problems.
    A key with a failed merge in any family loses its other families too.

    Returns (merged, problems), both lists.
    """
    problems = list(problems)
    failed_keys = set()
    for result in merge_results:
        if isinstance(result, GatherProblem):
            problems.append(result)
            failed_keys.add(result.key)
    merged = [r for r in merge_results if isinstance(r, MergedOutput) and r.key not in failed_keys]
    return merged, problems

def write_report(merged, problems, report_path, skips=()):
    """ one line per merged file, per withheld key and per sample (or pair) never scattered """
    with open(report_path, 'w') as report_file:
        report_file.write('#caller\tsubject\tnormal\ttumor\tstatus\tdetail\n')
        for output in merged:
            report_file.write('\t'.join([output.caller.value, output.subject_id, output.normal_sample_id,
                                         output.tumor_sample_id or '.', 'merged', output.name]) + '\n')
        for problem in problems:
            key = problem.key
            report_file.write('\t'.join([key.caller.value, key.subject_id, key.normal_sample_id,
                                         key.tumor_sample_id or '.', problem.status, problem.detail]) + '\n')
        for skip in skips:
            normal_id = skip.sample_ids[0]
            tumor_id = skip.sample_ids[1] if len(skip.sample_ids) > 1 else '.'
            report_file.write('\t'.join([skip.caller.value, skip.subject_id, normal_id, tumor_id,
                                         'skipped', skip.reason]) + '\n')

def run_report(job, context, merge_results, problems, skips=()):
    """
    Last job of the workflow.  Returns a GatherReport, with the report file
    only when write-report is on.
    """
    merged, problems = split_merge_results(merge_results, problems)
    report_id = None
    if context.config.write_report:
        report_path = os.path.join(job.fileStore.getLocalTempDir(), 'toil-varcall-report.tsv')
        write_report(merged, problems, report_path, skips)
        report_id = context.write_output_file(job, report_path)
    return GatherReport(tuple(merged), tuple(problems), report_id)

def run_gather(job, context, results, expected_chunk_ids, expected_keys=(), skips=()):
    """
    Toil follow-on of all the work item jobs.  Spawns a merge per complete
    (key, family) and a report job after them.
    """
    ready, problems = plan_gather(flatten_results(results), expected_chunk_ids, expected_keys)

    for problem in problems:
        RealtimeLogger.error('Withholding {} {}: {} ({})'.format(
            problem.key.caller.value, output_label(problem.key), problem.status, problem.detail))

    child_job = Job()
    job.addChild(child_job)

    merge_results = []
    for key, family, artifacts in ready:
        merge_job = child_job.addChildJobFn(run_merge_vcfs, context, key, family, artifacts,
                                            cores=context.config.merge_cores,
                                            memory=context.config.merge_mem,
                                            disk=context.config.merge_disk)
        merge_results.append(merge_job.rv())

    report_job = child_job.addFollowOnJobFn(run_report, context, merge_results, problems, skips,
                                            cores=context.config.misc_cores,
                                            memory=context.config.misc_mem,
                                            disk=context.config.misc_disk)
    return report_job.rv()
