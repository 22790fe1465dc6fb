#!/usr/bin/env python3
"""
vc_call.py: run one variant caller on one sample (or normal/tumor pair)
over one interval chunk.  Every work item is its own Toil job, and a tool
failure is handed back as a WorkFailure instead of failing the workflow, so
the gather can withhold just the sample it belongs to.
"""

import os, os.path
import logging
from collections import namedtuple

from toil.realtimeLogger import RealtimeLogger

from toil_varcall.vc_common import remove_ext
from toil_varcall.vc_samples import NORMAL
from toil_varcall.vc_scatter import Caller, GatherKey, NO_RECALIBRATION

logger = logging.getLogger(__name__)

# file IDs of the reference and known sites every caller gets.  known_sites
# and known_sites_tbi may be None.
Reference = namedtuple('Reference', ['fasta', 'fai', 'dict', 'known_sites', 'known_sites_tbi'])

class ResultArtifact(namedtuple('ResultArtifact', ['caller', 'subject_id', 'normal_sample_id', 'tumor_sample_id',
                                                   'chunk_id', 'chunk_index', 'family', 'vcf_id', 'tbi_id'])):
    """ one bgzipped, indexed VCF made by a work item """
    __slots__ = ()

    @property
    def key(self):
        return GatherKey(self.caller, self.subject_id, self.normal_sample_id, self.tumor_sample_id)

class WorkFailure(namedtuple('WorkFailure', ['caller', 'subject_id', 'normal_sample_id', 'tumor_sample_id',
                                             'chunk_id', 'chunk_index', 'message'])):
    __slots__ = ()

    @property
    def key(self):
        return GatherKey(self.caller, self.subject_id, self.normal_sample_id, self.tumor_sample_id)

def output_label(key):
    """ sample name, or tumor_vs_normal for a pair """
    if key.tumor_sample_id is not None:
        return '{}_vs_{}'.format(key.tumor_sample_id, key.normal_sample_id)
    return key.normal_sample_id

def _download_inputs(job, work_item, reference, work_dir):
    """
    Read everything the work item needs into work_dir.  Returns a dict of
    basenames: ref, known_sites (or None), bed, and per sample id a dict with
    bam and recal (None when recalibration is off).
    """
    def read(file_id, name):
        job.fileStore.readGlobalFile(file_id, os.path.join(work_dir, name))
        return name

    paths = {}
    paths['ref'] = read(reference.fasta, 'ref.fa')
    read(reference.fai, 'ref.fa.fai')
    read(reference.dict, 'ref.dict')
    paths['known_sites'] = None
    if reference.known_sites:
        paths['known_sites'] = read(reference.known_sites, 'known_sites.vcf.gz')
        read(reference.known_sites_tbi, 'known_sites.vcf.gz.tbi')

    paths['bed'] = read(work_item.chunk_file, '{}.bed'.format(work_item.chunk_id))

    for sample in work_item.samples:
        sample_paths = {'bam': read(sample.bam, '{}.bam'.format(sample.sample_id)), 'recal': None}
        read(sample.bai, '{}.bam.bai'.format(sample.sample_id))
        if sample.recal_table != NO_RECALIBRATION:
            sample_paths['recal'] = read(sample.recal_table, '{}.recal.table'.format(sample.sample_id))
        paths[sample.sample_id] = sample_paths

    return paths

def _recalibrated_bam(job, context, sample, paths, work_dir):
    """
    Apply the sample's recal table to the reads in the chunk.  With no table
    the original bam is used and no recalibration step is run at all.
    """
    sample_paths = paths[sample.sample_id]
    if sample_paths['recal'] is None:
        return sample_paths['bam']

    recal_bam = '{}.{}.recal.bam'.format(sample.sample_id, remove_ext(paths['bed']))
    context.runner.call(job, ['gatk', 'ApplyBQSR',
                              '-R', paths['ref'],
                              '-I', sample_paths['bam'],
                              '-L', paths['bed'],
                              '--bqsr-recal-file', sample_paths['recal'],
                              '-O', recal_bam], work_dir=work_dir)
    return recal_bam

def _call_regions(job, context, paths, work_dir):
    """ strelka and manta want their regions bgzipped and tabix indexed """
    bed_gz = paths['bed'] + '.gz'
    with open(os.path.join(work_dir, bed_gz), 'wb') as bed_gz_file:
        context.runner.call(job, ['bgzip', '-c', paths['bed']], work_dir=work_dir, outfile=bed_gz_file)
    context.runner.call(job, ['tabix', '-f', '-p', 'bed', bed_gz], work_dir=work_dir)
    return bed_gz

def call_haplotypecaller(job, context, work_item, paths, work_dir):
    sample = work_item.samples[0]
    bam = _recalibrated_bam(job, context, sample, paths, work_dir)
    prefix = '{}.{}'.format(sample.sample_id, work_item.chunk_id)
    known_opts = ['-D', paths['known_sites']] if paths['known_sites'] else []

    gvcf = prefix + '.g.vcf.gz'
    context.runner.call(job, ['gatk', 'HaplotypeCaller',
                              '-R', paths['ref'],
                              '-I', bam,
                              '-L', paths['bed'],
                              '-ERC', 'GVCF',
                              '-O', gvcf] + known_opts + context.config.haplotypecaller_opts,
                        work_dir=work_dir)

    vcf = prefix + '.vcf.gz'
    context.runner.call(job, ['gatk', 'GenotypeGVCFs',
                              '-R', paths['ref'],
                              '-V', gvcf,
                              '-L', paths['bed'],
                              '-O', vcf] + known_opts, work_dir=work_dir)

    return {'gvcf': gvcf, 'vcf': vcf}

def call_strelka(job, context, work_item, paths, work_dir):
    sample = work_item.samples[0]
    bam = _recalibrated_bam(job, context, sample, paths, work_dir)
    run_dir = 'strelka'
    context.runner.call(job, ['configureStrelkaGermlineWorkflow.py',
                              '--bam', bam,
                              '--referenceFasta', paths['ref'],
                              '--callRegions', _call_regions(job, context, paths, work_dir),
                              '--runDir', run_dir] + context.config.strelka_opts, work_dir=work_dir)
    context.runner.call(job, [os.path.join(run_dir, 'runWorkflow.py'), '-m', 'local', '-j', int(job.cores)],
                        work_dir=work_dir, tool_name='configureStrelkaGermlineWorkflow.py')

    variants_dir = os.path.join(run_dir, 'results', 'variants')
    return {'genome': os.path.join(variants_dir, 'genome.S1.vcf.gz'),
            'variants': os.path.join(variants_dir, 'variants.vcf.gz')}

def call_manta(job, context, work_item, paths, work_dir):
    sample = work_item.samples[0]
    bam = _recalibrated_bam(job, context, sample, paths, work_dir)
    run_dir = 'manta'
    # a normal is called as a diploid germline sample, anything else as a tumor
    bam_opt = '--bam' if sample.role == NORMAL else '--tumorBam'
    context.runner.call(job, ['configManta.py',
                              bam_opt, bam,
                              '--referenceFasta', paths['ref'],
                              '--callRegions', _call_regions(job, context, paths, work_dir),
                              '--runDir', run_dir] + context.config.manta_opts, work_dir=work_dir)
    context.runner.call(job, [os.path.join(run_dir, 'runWorkflow.py'), '-m', 'local', '-j', int(job.cores)],
                        work_dir=work_dir, tool_name='configManta.py')

    sv_vcf = 'diploidSV.vcf.gz' if sample.role == NORMAL else 'tumorSV.vcf.gz'
    return {'sv': os.path.join(run_dir, 'results', 'variants', sv_vcf)}

def call_mutect2(job, context, work_item, paths, work_dir):
    normal, tumor = work_item.samples
    normal_bam = _recalibrated_bam(job, context, normal, paths, work_dir)
    tumor_bam = _recalibrated_bam(job, context, tumor, paths, work_dir)

    vcf = '{}_vs_{}.{}.vcf.gz'.format(tumor.sample_id, normal.sample_id, work_item.chunk_id)
    context.runner.call(job, ['gatk', 'Mutect2',
                              '-R', paths['ref'],
                              '-I', tumor_bam, '-tumor', tumor.sample_id,
                              '-I', normal_bam, '-normal', normal.sample_id,
                              '-L', paths['bed'],
                              '-O', vcf] + context.config.mutect2_opts, work_dir=work_dir)
    return {'vcf': vcf}

def call_freebayes(job, context, work_item, paths, work_dir):
    normal, tumor = work_item.samples
    normal_bam = _recalibrated_bam(job, context, normal, paths, work_dir)
    tumor_bam = _recalibrated_bam(job, context, tumor, paths, work_dir)

    vcf = '{}_vs_{}.{}.vcf'.format(tumor.sample_id, normal.sample_id, work_item.chunk_id)
    fb_cmd = ['freebayes', '-f', paths['ref'], '-t', paths['bed']] + context.config.freebayes_opts
    fb_cmd += [tumor_bam, normal_bam]
    with open(os.path.join(work_dir, vcf), 'wb') as out_vcf:
        context.runner.call(job, fb_cmd, work_dir=work_dir, outfile=out_vcf)
    return {'vcf': vcf}

_invokers = {
    Caller.HAPLOTYPECALLER: call_haplotypecaller,
    Caller.STRELKA: call_strelka,
    Caller.MANTA: call_manta,
    Caller.MUTECT2: call_mutect2,
    Caller.FREEBAYES: call_freebayes,
}

def _index_vcf(job, context, vcf, work_dir):
    """ make sure a VCF is bgzipped and tabix indexed.  returns the .vcf.gz """
    if not vcf.endswith('.gz'):
        context.runner.call(job, ['bgzip', '-f', vcf], work_dir=work_dir)
        vcf += '.gz'
    if not os.path.isfile(os.path.join(work_dir, vcf + '.tbi')):
        context.runner.call(job, ['tabix', '-f', '-p', 'vcf', vcf], work_dir=work_dir)
    return vcf

def invoke(job, context, work_item, reference, work_dir):
    """
    Run the work item's caller and return a dict from output family to the
    local path of its bgzipped VCF (a .tbi sits next to each one).
    """
    paths = _download_inputs(job, work_item, reference, work_dir)
    outputs = _invokers[work_item.caller](job, context, work_item, paths, work_dir)

    if set(outputs.keys()) != set(work_item.caller.families):
        raise RuntimeError('{} made outputs {}, expected {}'.format(
            work_item.caller.value, sorted(outputs.keys()), list(work_item.caller.families)))

    indexed = {}
    for family, vcf in outputs.items():
        if not os.path.isfile(os.path.join(work_dir, vcf)):
            raise RuntimeError('{} did not write its {} output {}'.format(work_item.caller.value, family, vcf))
        indexed[family] = os.path.join(work_dir, _index_vcf(job, context, vcf, work_dir))
    return indexed

def run_work_item(job, context, work_item, reference):
    """
    Toil job for one work item.  Returns a list with a ResultArtifact per
    output family, or with a single WorkFailure if anything went wrong.
    Rerunning it just rewrites its own outputs.
    """
    work_dir = job.fileStore.getLocalTempDir()
    key = work_item.key
    RealtimeLogger.info('Calling {} on {} chunk {}'.format(
        work_item.caller.value, output_label(key), work_item.chunk_id))

    try:
        outputs = invoke(job, context, work_item, reference, work_dir)
        artifacts = []
        for family in work_item.caller.families:
            vcf_path = outputs[family]
            artifacts.append(ResultArtifact(work_item.caller, work_item.subject_id,
                                            work_item.normal_sample_id, work_item.tumor_sample_id,
                                            work_item.chunk_id, work_item.chunk_index, family,
                                            context.write_intermediate_file(job, vcf_path),
                                            context.write_intermediate_file(job, vcf_path + '.tbi')))
    except Exception as e:
        RealtimeLogger.error('{} failed on {} chunk {}: {}'.format(
            work_item.caller.value, output_label(key), work_item.chunk_id, e))
        return [WorkFailure(work_item.caller, work_item.subject_id, work_item.normal_sample_id,
                            work_item.tumor_sample_id, work_item.chunk_id, work_item.chunk_index, str(e))]

    return artifacts
