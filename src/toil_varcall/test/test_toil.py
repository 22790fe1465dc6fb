import logging
import os
import shutil
import tempfile
from argparse import Namespace
from unittest import TestCase

import yaml

from toil_varcall.vc_common import VarcallError, UnknownCallerError, IntervalFormatError, \
    ContainerRunner, get_container_tool_map
from toil_varcall.vc_config import apply_config_file_args, generate_config, make_opts_list
from toil_varcall.vc_toil import parse_args, plan_main, chunk_main

log = logging.getLogger(__name__)


class ConfigTest(TestCase):

    def setUp(self):
        self.workdir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.workdir)

    def test_default_config_parses(self):
        parsed = yaml.safe_load(generate_config())
        self.assertEqual(parsed['nucleotides-per-second'], 1000.0)
        self.assertTrue(parsed['recalibrate'])
        self.assertIn('freebayes-opts', parsed)

    def test_command_line_overrides(self):
        args = Namespace(config=None, calling_cores=4, merge_mem=None, container=None,
                         haplotypecaller_opts='--foo 1 -t 3 --bar', no_recalibration=True)
        options = apply_config_file_args(args)
        self.assertEqual(options.calling_cores, 4)
        # None on the command line leaves the config value alone
        self.assertEqual(options.merge_mem, '2G')
        self.assertEqual(options.haplotypecaller_opts, ['--foo', '1', '--bar'])
        self.assertFalse(options.recalibrate)
        self.assertEqual(options.container, 'None')
        self.assertEqual(get_container_tool_map(options), {})

    def test_config_file(self):
        config_path = os.path.join(self.workdir, 'config.yaml')
        with open(config_path, 'w') as f:
            f.write(generate_config().replace("calling-mem: '4G'", "calling-mem: '16G'")
                    .replace('container: None', 'container: Docker'))
        options = apply_config_file_args(Namespace(config=config_path, calling_mem=None, gatk_docker=None))
        self.assertEqual(options.calling_mem, '16G')
        self.assertTrue(options.recalibrate)
        tool_map = get_container_tool_map(options)
        self.assertEqual(tool_map['gatk'], options.gatk_docker)
        self.assertEqual(tool_map['bgzip'], tool_map['tabix'])

    def test_missing_config_file(self):
        with self.assertRaises(VarcallError):
            apply_config_file_args(Namespace(config=os.path.join(self.workdir, 'nope.yaml')))

    def test_make_opts_list(self):
        self.assertEqual(make_opts_list(' -a  1 --threads 8 -b'), ['-a', '1', '-b'])

    def test_runner_without_containers(self):
        """ with no images every tool runs directly in the work dir """
        runner = ContainerRunner(get_container_tool_map(apply_config_file_args(Namespace(config=None))))
        out_path = os.path.join(self.workdir, 'out.txt')
        with open(out_path, 'wb') as out_file:
            runner.call(None, [['echo', 'chr1', 7], ['tr', 'c', 'C']], work_dir=self.workdir, outfile=out_file)
        with open(out_path) as out_file:
            self.assertEqual(out_file.read(), 'Chr1 7\n')
        self.assertEqual(runner.call(None, ['pwd'], work_dir=self.workdir, check_output=True).strip(),
                         os.path.realpath(self.workdir).encode())
        with self.assertRaises(RuntimeError):
            runner.call(None, ['false'], work_dir=self.workdir)


class CommandLineTest(TestCase):
    """
    Run the chunk and plan subcommands on small inputs.
    """

    def setUp(self):
        self.workdir = tempfile.mkdtemp()
        self.intervals = self._write('regions.bed', ['chr1\t0\t1000\ta\t100',
                                                     'chr1\t1000\t2000\tb\t700',
                                                     'chr1\t2000\t3000\tc\t50'])
        self.manifest = self._write('manifest.tsv', ['S1\t0\tN1\tn1.bam\tn1.bai',
                                                     'S1\t0\tN2\tn2.bam\tn2.bai',
                                                     'S1\t1\tT1\tt1.bam\tt1.bai',
                                                     'S2\t0\tN3\tn3.bam\tn3.bai'])
        self.out_path = os.path.join(self.workdir, 'out.tsv')

    def tearDown(self):
        shutil.rmtree(self.workdir)

    def _write(self, name, lines):
        path = os.path.join(self.workdir, name)
        with open(path, 'w') as f:
            for line in lines:
                f.write(line + '\n')
        return path

    def _run(self, main_fn, argv):
        options = apply_config_file_args(parse_args(argv))
        try:
            result = main_fn(options)
        finally:
            options.out.close()
        with open(self.out_path) as f:
            rows = [l.rstrip('\n').split('\t') for l in f if not l.startswith('#')]
        with open(self.out_path) as f:
            comments = [l.rstrip('\n') for l in f if l.startswith('# ')]
        return result, rows, comments

    def test_chunk(self):
        chunk_dir = os.path.join(self.workdir, 'chunks')
        _, rows, _ = self._run(chunk_main, ['chunk', '--intervals', self.intervals, '--out_dir', chunk_dir,
                                            '--out', self.out_path])
        self.assertEqual([r[:4] for r in rows], [['chr1_1-2000', '0', '2', '800.00'],
                                                 ['chr1_2001-3000', '1', '1', '50.00']])
        self.assertTrue(os.path.isfile(os.path.join(chunk_dir, 'chr1_1-2000.bed')))

    def test_plan(self):
        plan, rows, comments = self._run(plan_main, ['plan', '--intervals', self.intervals,
                                                     '--manifest', self.manifest,
                                                     '--callers', 'haplotypecaller', 'mutect2',
                                                     '--no_recalibration', '--out', self.out_path])
        # 4 samples + 2 pairs, over 2 chunks
        self.assertEqual(len(rows), 12)
        self.assertEqual(len(plan.work_items), 12)
        # S2 has only a normal
        self.assertEqual(len(comments), 1)
        self.assertIn('mutect2 S2 N3: no normal/tumor pair', comments[0])
        self.assertEqual(set(r[4] for r in rows[:6]), set(['chr1_1-2000']))
        pairs = sorted(set((r[2], r[3]) for r in rows if r[0] == 'mutect2'))
        self.assertEqual(pairs, [('N1', 'T1'), ('N2', 'T1')])

    def test_plan_skips_missing_tables(self):
        recal = self._write('recal.tsv', ['S1\tN1\tn1.table', 'S1\tT1\tt1.table'])
        plan, rows, comments = self._run(plan_main, ['plan', '--intervals', self.intervals,
                                                     '--manifest', self.manifest,
                                                     '--callers', 'mutect2',
                                                     '--recal_tables', recal, '--out', self.out_path])
        self.assertEqual(len(rows), 2)
        self.assertEqual(len(comments), 2)
        self.assertIn('N2 T1', '\n'.join(comments))
        self.assertIn('S2 N3', '\n'.join(comments))

    def test_plan_unknown_caller(self):
        with self.assertRaises(UnknownCallerError):
            self._run(plan_main, ['plan', '--intervals', self.intervals, '--manifest', self.manifest,
                                  '--callers', 'gatk3', '--out', self.out_path])

    def test_plan_bad_intervals(self):
        intervals = self._write('bad.bed', ['chr1\t20\t10'])
        with self.assertRaises(IntervalFormatError):
            self._run(plan_main, ['plan', '--intervals', intervals, '--manifest', self.manifest,
                                  '--out', self.out_path])
