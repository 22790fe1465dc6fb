#!/usr/bin/env python3
"""
vc_config.py: Default configuration values all here (and only here), as well as logic
for reading and generating config files.

"""

import argparse, sys, os, os.path
import textwrap
import yaml
from toil_varcall.vc_common import require

default_config = textwrap.dedent("""
# Toil variant calling configuration file (created by toil-varcall generate-config)
# This configuration file is formatted in YAML. Simply write the value (at least one space) after the colon.
# Edit the values in the configuration file and then rerun the pipeline: "toil-varcall run"
#
# URLs can take the form: "/", "s3://"
# Local inputs follow the URL convention: "/full/path/to/input.txt"
# S3 URLs follow the convention: "s3://bucket/directory/file.txt"
#
# Comments (beginning with #) do not need to be removed.
# Command-line options take priority over parameters in this file.
######################################################################################################################

###########################################
### Toil resource tuning                ###

# These parameters must be adjusted based on data and cluster size
# when running on anything other than single-machine mode

# The following parameters assign resources to small helper jobs that typically don't do
# do any computing outside of toil overhead.  Generally do not need to be changed.
misc-cores: 1
misc-mem: '1G'
misc-disk: '1G'

# Resources for *each* calling job.  There is one calling job per
# (caller, sample or tumor/normal pair, interval chunk)
calling-cores: 1
calling-mem: '4G'
calling-disk: '8G'

# Resources for concatenating the chunk VCFs of one sample (or pair)
merge-cores: 1
merge-mem: '2G'
merge-disk: '8G'

###########################################
### Arguments Shared Between Components ###
# Toggle container support.  Valid values are Docker / None
# (commenting out or Null values equivalent to None)
container: None

#############################
### Docker Tool Arguments ###

# Docker image to use for gatk
gatk-docker: 'broadinstitute/gatk:4.1.1.0'

# Docker image to use for freebayes
freebayes-docker: 'maxulysse/freebayes:1.2.5'

# Docker image to use for strelka
strelka-docker: 'quay.io/biocontainers/strelka:2.9.10--0'

# Docker image to use for manta
manta-docker: 'quay.io/biocontainers/manta:1.6.0--py27_0'

# Docker image to use for bcftools
bcftools-docker: 'quay.io/biocontainers/bcftools:1.9--h4da6232_0'

# Docker image to use for tabix
tabix-docker: 'lethalfang/tabix:1.7'

############################
### Interval Chunking    ###

# Throughput used to estimate the runtime of regions whose interval
# line has no precomputed estimate (column 5)
nucleotides-per-second: 1000.0

#########################
### Calling Arguments ###

# Apply base quality recalibration tables before calling.  If False,
# callers are run with no recalibration step at all
recalibrate: True

# Write a per-key summary of merged and withheld outputs to the output store
write-report: True

# Core arguments for each caller (do not include file names or threads)
haplotypecaller-opts: []
strelka-opts: []
manta-opts: []
mutect2-opts: []
freebayes-opts: ['--pooled-continuous', '--pooled-discrete', '--genotype-qualities', '--report-genotype-likelihood-max', '--allele-balance-priors-off', '--min-alternate-fraction', '0.03', '--min-repeat-entropy', '1', '--min-alternate-count', '2']

""")

def generate_config():
    return default_config

def make_opts_list(x_opts):
    opts_list = list([a for a in x_opts.split(' ') if len(a)])
    # get rid of any -t or --threads while we're at it
    for t in ['-t', '--threads']:
        if t in opts_list:
            pos = opts_list.index(t)
            del opts_list[pos:pos+2]
    return opts_list


def apply_config_file_args(args):
    """
    Merge args from the config file and the parser, giving priority to the parser.
    """

    # turn --*_opts from strings to lists to be consistent with config file
    for x_opts in ['haplotypecaller_opts', 'strelka_opts', 'manta_opts', 'mutect2_opts', 'freebayes_opts']:
        if x_opts in list(args.__dict__.keys()) and type(args.__dict__[x_opts]) is str:
            args.__dict__[x_opts] = make_opts_list(args.__dict__[x_opts])

    # If no config file given, we generate a default one
    if 'config' not in list(args.__dict__.keys()) or args.config is None:
        config = generate_config()
    else:
        require(os.path.exists(args.config), 'Config, {}, not found. Please run '
            '"toil-varcall generate-config > {}" to create.'.format(args.config, args.config))
        with open(args.config) as conf:
            config = conf.read()

    # Parse config
    parsed_config = {x.replace('-', '_'): y for x, y in list(yaml.safe_load(config).items())}
    options = argparse.Namespace(**parsed_config)

    # Add in options from the program arguments to the arguments in the config file
    #   program arguments that are also present in the config file will overwrite the
    #   arguments in the config file
    for args_key in args.__dict__:
        # Add in missing program arguments to config option list and
        # overwrite config options with corresponding options that are not None in program arguments
        if (args.__dict__[args_key] is not None) or (args_key not in list(options.__dict__.keys())):
            options.__dict__[args_key] = args.__dict__[args_key]

    # --no_recalibration is a store_true flag, so it only ever turns recalibration off
    if options.__dict__.get('no_recalibration'):
        options.recalibrate = False

    # YAML None and the string None both mean no container
    if options.container in [None, 'None']:
        options.container = 'None'

    return options

def config_subparser(parser):
    """
    Create a subparser for config.  Should pass in results of subparsers.add_parser()
    """

    parser.add_argument("--config", type=argparse.FileType('w'), default=sys.stdout,
        help="config file to write to")


def config_main(options):
    """ config just prints out a file """

    options.config.write(generate_config())
