#!/usr/bin/env python3
"""
vc_toil.py: Run variant callers over many samples in parallel, one Toil job
per (caller, sample or normal/tumor pair, interval chunk), and merge the
chunk VCFs of each sample back together.
"""
import argparse, sys, os, os.path, shutil, tempfile, timeit
import logging
from collections import OrderedDict

from toil.job import Job
from toil.realtimeLogger import RealtimeLogger

from toil_varcall.vc_common import require, remove_ext, clean_toil_path, VarcallError, \
    add_common_parse_args, add_input_parse_args, add_container_tool_parse_args
from toil_varcall.vc_config import config_subparser, config_main, apply_config_file_args
from toil_varcall.vc_intervals import partition_intervals, sort_chunks_by_duration
from toil_varcall.vc_samples import read_manifest, read_recal_tables, build_sample_streams
from toil_varcall.vc_scatter import parse_callers, scatter_work_items, NO_RECALIBRATION
from toil_varcall.vc_call import Reference, run_work_item, output_label
from toil_varcall.vc_gather import run_gather
from toil_varcall.context import Context, write_info_to_outstore

logger = logging.getLogger(__name__)

def parse_args(args=None):
    """
    Takes in the command-line arguments list (args), and returns a nice argparse
    result with fields for all the options.
    """
    parser = argparse.ArgumentParser(prog='toil-varcall', description=main.__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter)
    subparsers = parser.add_subparsers(dest='command')

    # Config subparser
    parser_config = subparsers.add_parser('generate-config',
                                          help='Prints default config file')
    config_subparser(parser_config)

    # Chunk subparser
    parser_chunk = subparsers.add_parser('chunk', help='Split a region list into interval chunks')
    chunk_subparser(parser_chunk)

    # Plan subparser
    parser_plan = subparsers.add_parser('plan', help='Print the work items a run would dispatch')
    plan_subparser(parser_plan)

    # Run subparser
    parser_run = subparsers.add_parser('run', help='Runs the variant calling pipeline')
    pipeline_subparser(parser_run)

    return parser.parse_args(args)

def chunk_subparser(parser):
    parser.add_argument("--intervals", type=str, required=True,
                        help="region list: BED (optional runtime estimate in column 5) or contig:start-end lines")
    parser.add_argument("--out_dir", type=str, required=True,
                        help="directory to write the chunk BED files to")
    parser.add_argument("--nucleotides_per_second", type=float,
                        help="throughput used to estimate runtimes of regions without one")
    parser.add_argument("--out", type=argparse.FileType('w'), default=sys.stdout,
                        help="where to write the chunk table")
    add_common_parse_args(parser)

def plan_subparser(parser):
    add_input_parse_args(parser)
    parser.add_argument("--out", type=argparse.FileType('w'), default=sys.stdout,
                        help="where to write the work item table")
    add_common_parse_args(parser)

def pipeline_subparser(parser_run):

    # Add the Toil options so the job store is the first argument
    Job.Runner.addToilOptions(parser_run)

    parser_run.add_argument("out_store",
        help="output store.  All output written here. Path specified using same syntax as toil jobStore")
    parser_run.add_argument("--ref_fasta", type=str, required=True,
                        help="reference fasta the samples were aligned to")
    parser_run.add_argument("--ref_fai", type=str,
                        help="fasta index (default: <ref_fasta>.fai)")
    parser_run.add_argument("--ref_dict", type=str,
                        help="sequence dictionary (default: <ref_fasta> with .dict extension)")
    parser_run.add_argument("--known_sites", type=str,
                        help="bgzipped, tabix indexed VCF of known variant sites")

    add_input_parse_args(parser_run)
    add_common_parse_args(parser_run)
    add_container_tool_parse_args(parser_run)

def validate_run_options(options):
    """
    Throw an error if an invalid combination of options has been selected.
    """
    require(options.known_sites is None or options.known_sites.endswith('.vcf.gz'),
            '--known_sites must be a bgzipped .vcf.gz')
    require(not (options.recal_tables and options.no_recalibration),
            '--recal_tables cannot be used with --no_recalibration')
    # raises UnknownCallerError before anything gets dispatched
    parse_callers(options.callers)

def plan_scatter(options, chunk_dir):
    """
    Everything that happens before dispatch: partition the intervals into
    chunk_dir, sort the chunks, read the samples and scatter them.  Any input
    error is raised from here.

    Returns (sorted chunks, ScatterPlan).
    """
    callers = parse_callers(options.callers)
    chunks = partition_intervals(options.intervals, chunk_dir, options.nucleotides_per_second)
    sorted_chunks = sort_chunks_by_duration(chunks, options.nucleotides_per_second)

    streams = build_sample_streams(read_manifest(options.manifest))
    recal_tables = read_recal_tables(options.recal_tables) if options.recal_tables else None

    plan = scatter_work_items(streams, sorted_chunks, callers, recal_tables=recal_tables,
                              recalibrate=options.recalibrate)
    return sorted_chunks, plan

def chunk_main(options):
    """ partition only, printing the chunks longest first """
    chunks = partition_intervals(options.intervals, options.out_dir, options.nucleotides_per_second)
    options.out.write('#chunk\tindex\tregions\tseconds\tpath\n')
    for chunk, duration in sort_chunks_by_duration(chunks, options.nucleotides_per_second):
        options.out.write('{}\t{}\t{}\t{:.2f}\t{}\n'.format(
            chunk.name, chunk.index, len(chunk.regions), duration, chunk.path))

def plan_main(options):
    """ dry run: print every work item a run would dispatch, in dispatch order, then the skips """
    chunk_dir = tempfile.mkdtemp(prefix='toil-varcall-plan-')
    try:
        sorted_chunks, plan = plan_scatter(options, chunk_dir)
    finally:
        shutil.rmtree(chunk_dir)

    options.out.write('#caller\tsubject\tnormal\ttumor\tchunk\tindex\n')
    for work_item in plan.work_items:
        options.out.write('\t'.join([work_item.caller.value, work_item.subject_id, work_item.normal_sample_id,
                                     work_item.tumor_sample_id or '.', work_item.chunk_id,
                                     str(work_item.chunk_index)]) + '\n')
    for skip in plan.skips:
        options.out.write('# skipped {} {} {}: {}\n'.format(skip.caller.value, skip.subject_id,
                                                           ' '.join(skip.sample_ids), skip.reason))
    return plan

def import_work_items(toil, work_items):
    """
    Import the chunk BED and sample files of every work item into the job
    store, each distinct path once.  Returns the work items with paths
    swapped for file IDs.
    """
    imported = {}
    def load(path):
        if path not in imported:
            imported[path] = toil.importFile(clean_toil_path(path))
        return imported[path]

    loaded = []
    for work_item in work_items:
        samples = []
        for sample in work_item.samples:
            recal_table = sample.recal_table
            if recal_table != NO_RECALIBRATION:
                recal_table = load(recal_table)
            samples.append(sample._replace(bam=load(sample.bam), bai=load(sample.bai), recal_table=recal_table))
        loaded.append(work_item._replace(chunk_file=load(work_item.chunk_file), samples=tuple(samples)))
    return loaded

def import_reference(toil, options):
    fai = options.ref_fai or options.ref_fasta + '.fai'
    ref_dict = options.ref_dict or remove_ext(remove_ext(options.ref_fasta, '.gz'), None) + '.dict'
    known_sites = known_sites_tbi = None
    if options.known_sites:
        known_sites = toil.importFile(clean_toil_path(options.known_sites))
        known_sites_tbi = toil.importFile(clean_toil_path(options.known_sites + '.tbi'))
    return Reference(toil.importFile(clean_toil_path(options.ref_fasta)),
                     toil.importFile(clean_toil_path(fai)),
                     toil.importFile(clean_toil_path(ref_dict)),
                     known_sites, known_sites_tbi)

def run_all_calling(job, context, work_items, reference, expected_chunk_ids, expected_keys, skips):
    """
    Top level calling job.  Spawns one child per work item, in the order
    given (longest chunks first), and gathers after all of them.
    """
    RealtimeLogger.info('Dispatching {} work items over {} chunks'.format(
        len(work_items), len(expected_chunk_ids)))

    child_job = Job()
    job.addChild(child_job)

    results = []
    for work_item in work_items:
        results.append(child_job.addChildJobFn(run_work_item, context, work_item, reference,
                                               cores=context.config.calling_cores,
                                               memory=context.config.calling_mem,
                                               disk=context.config.calling_disk).rv())

    return child_job.addFollowOnJobFn(run_gather, context, results, expected_chunk_ids, expected_keys, skips,
                                      cores=context.config.misc_cores,
                                      memory=context.config.misc_mem,
                                      disk=context.config.misc_disk).rv()

def export_outputs(context, toil, report):
    """ copy the merged VCFs, their indexes and the report into the output store """
    for merged in report.merged:
        context.export_output_file(toil, merged.vcf_id, merged.name)
        context.export_output_file(toil, merged.tbi_id, merged.name + '.tbi')
    if report.report_id is not None:
        context.export_output_file(toil, report.report_id, 'toil-varcall-report.tsv')

def run_main(context, options):
    """
    Plan on the leader, then call and merge under Toil.  Returns the
    GatherReport.
    """
    validate_run_options(context.config)

    # How long did it take to run the entire pipeline, in seconds?
    run_time_pipeline = None

    # Mark when we start the pipeline
    start_time_pipeline = timeit.default_timer()

    chunk_dir = tempfile.mkdtemp(prefix='toil-varcall-chunks-')
    try:
        if not context.config.restart:
            # input errors stop us here, before the job store is even made
            sorted_chunks, plan = plan_scatter(context.config, chunk_dir)
            require(plan.work_items, 'Nothing to call: no work items for callers {}'.format(
                ' '.join(context.config.callers)))

        with context.get_toil(options.jobStore) as toil:
            if not toil.options.restart:

                start_time = timeit.default_timer()

                # Upload local files to the job store
                reference = import_reference(toil, context.config)
                work_items = import_work_items(toil, plan.work_items)

                end_time = timeit.default_timer()
                logger.info('Imported input files into Toil in {} seconds'.format(end_time - start_time))

                # chunk ids in coordinate order, and every key we expect to gather
                expected_chunk_ids = [c.name for c, _ in sorted(sorted_chunks, key=lambda x: x[0].index)]
                expected_keys = list(OrderedDict.fromkeys(w.key for w in work_items))

                root_job = Job.wrapJobFn(run_all_calling, context, work_items, reference,
                                         expected_chunk_ids, expected_keys, plan.skips,
                                         cores=context.config.misc_cores,
                                         memory=context.config.misc_mem,
                                         disk=context.config.misc_disk)

                # Init the outstore
                write_info_to_outstore(context, toil, sys.argv)

                # Run the job and store the returned report
                report = toil.start(root_job)
            else:
                report = toil.restart()

            export_outputs(context, toil, report)
    finally:
        shutil.rmtree(chunk_dir)

    for problem in report.problems:
        logger.error('Withheld {} {}: {} ({})'.format(
            problem.key.caller.value, output_label(problem.key), problem.status, problem.detail))

    end_time_pipeline = timeit.default_timer()
    run_time_pipeline = end_time_pipeline - start_time_pipeline

    print("All jobs completed. Merged {} outputs, withheld {} in {} seconds.".format(
        len(report.merged), len(report.problems), run_time_pipeline))

    return report

def main():
    """
    Toil variant calling pipeline

    Aligned samples are called with one or more variant callers, each caller
    run in parallel over interval chunks balanced by estimated runtime, and
    the chunk VCFs merged back into one VCF per caller and sample (or
    tumor/normal pair).

    General usage:
    1. Type "toil-varcall generate-config": Produce an editable config file.
    2. Type "toil-varcall chunk": Split a region list into interval chunk BED files.
    3. Type "toil-varcall plan": List the work items a run would dispatch, without running anything.
    4. Type "toil-varcall run": Call and merge.  Exits with status 1 if any
       caller/sample output had to be withheld.

    ================================================================================
    """

    args = parse_args(sys.argv[1:])

    if args.command is None:
        parse_args(['--help'])

    # Write out our config file that's necessary for all other subcommands
    if args.command == 'generate-config':
        config_main(args)
        return

    if args.command in ['chunk', 'plan']:
        # these never start Toil, so nothing else sets up logging for them
        logging.basicConfig(level=logging.INFO, format='%(levelname)s %(name)s: %(message)s')
        options = apply_config_file_args(args)
        if args.command == 'chunk':
            chunk_main(options)
        else:
            plan_main(options)
        return

    # Otherwise, we are going to run an actual Toil pipeline
    # Get a context so we can use the toil-varcall library
    context = Context(args.out_store, args)

    report = run_main(context, args)
    if report.problems:
        sys.exit(1)

if __name__ == "__main__" :
    try:
        main()
    except VarcallError as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)
