import os
import shutil
import tempfile
from argparse import Namespace
from unittest import TestCase

from toil_varcall.vc_samples import SampleRecord, NORMAL, TUMOR
from toil_varcall.vc_scatter import Caller, WorkItem, NO_RECALIBRATION
from toil_varcall.vc_call import Reference, ResultArtifact, WorkFailure, run_work_item, output_label


class FakeFileStore(object):
    """ reads write empty files, writes hand back the path as the file ID """

    def __init__(self, workdir):
        self.workdir = workdir

    def getLocalTempDir(self):
        return tempfile.mkdtemp(dir=self.workdir)

    def readGlobalFile(self, file_id, path):
        open(path, 'w').close()
        return path

    def writeGlobalFile(self, path):
        return path


class FakeJob(object):
    def __init__(self, workdir):
        self.fileStore = FakeFileStore(workdir)
        self.cores = 2


class RecordingRunner(object):
    """ stands in for ContainerRunner: records commands and touches the outputs they name """

    def __init__(self, fail_on=None):
        self.commands = []
        self.fail_on = fail_on

    def call(self, job, args, work_dir='.', outfile=None, errfile=None, check_output=False, tool_name=None):
        args = [str(a) for a in args]
        self.commands.append(args)
        if self.fail_on is not None and self.fail_on in args:
            raise RuntimeError('Command {} returned with non-zero exit status 1'.format(' '.join(args)))
        if '-O' in args:
            open(os.path.join(work_dir, args[args.index('-O') + 1]), 'w').close()
        if args[0] == 'tabix':
            open(os.path.join(work_dir, args[-1] + '.tbi'), 'w').close()


def make_context(runner):
    config = Namespace(haplotypecaller_opts=['--min-base-quality-score', '20'], mutect2_opts=[],
                       strelka_opts=[], manta_opts=[], freebayes_opts=[])
    return Namespace(runner=runner, config=config,
                     write_intermediate_file=lambda job, path: job.fileStore.writeGlobalFile(path))


class CallTest(TestCase):

    def setUp(self):
        self.workdir = tempfile.mkdtemp()
        self.job = FakeJob(self.workdir)
        self.reference = Reference('fa-id', 'fai-id', 'dict-id', None, None)

    def tearDown(self):
        shutil.rmtree(self.workdir)

    def _work_item(self, caller, recal_table):
        normal = SampleRecord('S1', NORMAL, 'N1', 'n1-bam', 'n1-bai', recal_table)
        tumor = SampleRecord('S1', TUMOR, 'T1', 't1-bam', 't1-bai', recal_table)
        if caller.paired:
            return WorkItem(caller, 'S1', 'N1', 'T1', 'chr1_1-100', 0, 'bed-id', (normal, tumor))
        return WorkItem(caller, 'S1', 'N1', None, 'chr1_1-100', 0, 'bed-id', (normal,))

    def test_haplotypecaller_artifacts(self):
        runner = RecordingRunner()
        work_item = self._work_item(Caller.HAPLOTYPECALLER, 'n1-table')
        results = run_work_item(self.job, make_context(runner), work_item, self.reference)

        self.assertEqual([r.family for r in results], ['gvcf', 'vcf'])
        for result in results:
            self.assertIsInstance(result, ResultArtifact)
            self.assertEqual(result.key, work_item.key)
            self.assertEqual(result.chunk_id, 'chr1_1-100')
            self.assertTrue(os.path.isfile(result.vcf_id))
            self.assertEqual(result.tbi_id, result.vcf_id + '.tbi')

        tools = [c[1] for c in runner.commands if c[0] == 'gatk']
        self.assertEqual(tools, ['ApplyBQSR', 'HaplotypeCaller', 'GenotypeGVCFs'])
        haplotypecaller = [c for c in runner.commands if c[:2] == ['gatk', 'HaplotypeCaller']][0]
        self.assertIn('N1.chr1_1-100.recal.bam', haplotypecaller)
        self.assertIn('--min-base-quality-score', haplotypecaller)

    def test_no_recalibration_step(self):
        runner = RecordingRunner()
        work_item = self._work_item(Caller.MUTECT2, NO_RECALIBRATION)
        results = run_work_item(self.job, make_context(runner), work_item, self.reference)

        self.assertEqual([r.family for r in results], ['vcf'])
        for command in runner.commands:
            self.assertNotIn('ApplyBQSR', command)
            self.assertNotIn('--bqsr-recal-file', command)
        mutect2 = [c for c in runner.commands if c[:2] == ['gatk', 'Mutect2']][0]
        self.assertEqual(mutect2[mutect2.index('-tumor') - 1], 'T1.bam')
        self.assertEqual(mutect2[mutect2.index('-normal') - 1], 'N1.bam')

    def test_tool_failure_returned(self):
        runner = RecordingRunner(fail_on='GenotypeGVCFs')
        work_item = self._work_item(Caller.HAPLOTYPECALLER, NO_RECALIBRATION)
        [result] = run_work_item(self.job, make_context(runner), work_item, self.reference)

        self.assertIsInstance(result, WorkFailure)
        self.assertEqual(result.key, work_item.key)
        self.assertEqual(result.chunk_id, 'chr1_1-100')
        self.assertIn('GenotypeGVCFs', result.message)

    def test_missing_output_is_failure(self):
        # strelka's workflow never writes anything under this runner
        runner = RecordingRunner()
        work_item = self._work_item(Caller.STRELKA, NO_RECALIBRATION)
        [result] = run_work_item(self.job, make_context(runner), work_item, self.reference)
        self.assertIsInstance(result, WorkFailure)
        self.assertIn('genome', result.message)

    def test_output_label(self):
        self.assertEqual(output_label(self._work_item(Caller.MUTECT2, None).key), 'T1_vs_N1')
        self.assertEqual(output_label(self._work_item(Caller.STRELKA, None).key), 'N1')
