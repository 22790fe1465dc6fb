#!/usr/bin/env python3
"""
Shared stuff between different modules in this package: errors, the
container runner, and the command line options everybody uses.
"""
import os, os.path, subprocess, timeit
import logging

from toil.realtimeLogger import RealtimeLogger
from toil.lib.docker import apiDockerCall

logger = logging.getLogger(__name__)

class VarcallError(Exception):
    """ Base class for errors raised by toil-varcall """

class IntervalFormatError(VarcallError):
    """ Unparsable region list.  Fatal for the whole run """

class ManifestError(VarcallError):
    """ Unparsable sample manifest or recalibration table list """

class UnknownCallerError(VarcallError):
    """ Caller name outside the supported set """

class GatherError(VarcallError):
    """ An artifact that does not belong to the gather it was handed to """

def require(expression, message):
    if not expression:
        raise VarcallError('\n\n' + message + '\n\n')

def add_container_tool_parse_args(parser):
    """ centralize shared container options and their defaults """

    parser.add_argument("--gatk_docker", type=str,
                        help="Docker image to use for gatk")
    parser.add_argument("--container", default=None, choices=['Docker', 'None'],
                        help="Container type used for running commands. Use None to "
                        " run locally on command line")

def add_common_parse_args(parser):
    """ centralize some shared io functions and their defaults """
    parser.add_argument('--config', default=None, type=str,
                        help='Config file.  Use toil-varcall generate-config to see defaults/create new file')

def add_input_parse_args(parser):
    """ inputs needed to plan the scatter, shared by plan and run """
    parser.add_argument("--intervals", type=str, required=True,
                        help="region list: BED (optional runtime estimate in column 5) or contig:start-end lines")
    parser.add_argument("--manifest", type=str, required=True,
                        help="TSV of subject, status, sample, bam, bai[, recal table]")
    parser.add_argument("--callers", nargs='+', default=['haplotypecaller'],
                        help="variant callers to run (separated by space)")
    parser.add_argument("--recal_tables", type=str,
                        help="TSV of subject, sample, recal table to join onto the manifest")
    parser.add_argument("--no_recalibration", action="store_true",
                        help="run callers without base quality recalibration")
    parser.add_argument("--nucleotides_per_second", type=float,
                        help="throughput used to estimate runtimes of regions without one")

def get_container_tool_map(options):
    """ convenience function to parse the above _container options into a dictionary """

    dmap = dict()
    if options.container == 'Docker':
        dmap["gatk"] = options.gatk_docker
        dmap["freebayes"] = options.freebayes_docker
        dmap["configureStrelkaGermlineWorkflow.py"] = options.strelka_docker
        dmap["configManta.py"] = options.manta_docker
        dmap["bcftools"] = options.bcftools_docker
        dmap["tabix"] = options.tabix_docker
        dmap["bgzip"] = options.tabix_docker

    return dmap

class ContainerRunner(object):
    """ Helper class to centralize container calling.  So we can toggle
Docker on and off in just one place. """
    def __init__(self, container_tool_map = {}):
        # this maps a command to its full docker name
        # example:  docker_tool_map['gatk'] = 'broadinstitute/gatk:4.1.1.0'
        self.docker_tool_map = container_tool_map

    def call(self, job, args, work_dir = '.' , outfile = None, errfile = None,
             check_output = False, tool_name=None):
        """ run a command.  decide to use docker based on whether
        its in the docker_tool_map.  args is either the usual argument list,
        or a list of lists (in the case of a chain of piped commands)  """
        # from here on, we assume our args is a list of lists
        if len(args) == 0 or len(args) > 0 and type(args[0]) is not list:
            args = [args]
        # convert everything to string
        for i in range(len(args)):
            args[i] = [str(x) for x in args[i]]
        name = tool_name if tool_name is not None else args[0][0]

        if name in self.docker_tool_map and self.docker_tool_map[name] and\
           self.docker_tool_map[name].lower() != 'none':
            return self.call_with_docker(job, args, work_dir, outfile, errfile, check_output, tool_name)
        else:
            return self.call_directly(args, work_dir, outfile, errfile, check_output)

    def call_with_docker(self, job, args, work_dir, outfile, errfile, check_output, tool_name):
        """ Thin wrapper for apiDockerCall that will use internal lookup to
        figure out the location of the docker file.  expect args as list of lists.
        if (toplevel) list has size > 1, then piping interface used """

        RealtimeLogger.info("Docker Run: {}".format(" | ".join(" ".join(x) for x in args)))
        start_time = timeit.default_timer()

        # we use the first argument to look up the tool in the docker map
        # but allow overriding of this with the tool_name parameter
        name = tool_name if tool_name is not None else args[0][0]
        tool = self.docker_tool_map[name]

        if len(args) == 1:
            # split off first argument as entrypoint (so we can be oblivious as to whether
            # that happens by default)
            entrypoint = args[0][0]
            parameters = args[0][1:]
        else:
            # piped commands go through bash -c
            entrypoint = None
            parameters = args

        volumes = {}
        if work_dir is not None:
            volumes[os.path.abspath(work_dir)] = {'bind': '/data', 'mode': 'rw'}

        ret = apiDockerCall(job, tool, parameters=parameters, volumes=volumes,
                            working_dir='/data', entrypoint=entrypoint,
                            environment={'TMPDIR': '.'},
                            stdout=outfile is not None or check_output is True,
                            stderr=False)

        if outfile is not None and ret:
            outfile.write(ret if isinstance(ret, bytes) else ret.encode())

        end_time = timeit.default_timer()
        run_time = end_time - start_time
        RealtimeLogger.info("Successfully docker ran {} in {} seconds.".format(
            " | ".join(" ".join(x) for x in args), run_time))

        if check_output is True:
            return ret

    def call_directly(self, args, work_dir, outfile, errfile, check_output):
        """ Just run the command without docker """

        RealtimeLogger.info("Run: {}".format(" | ".join(" ".join(x) for x in args)))
        start_time = timeit.default_timer()

        # gatk and the strelka/manta workflows honour TMPDIR, keep it in the work dir
        my_env = os.environ.copy()
        my_env['TMPDIR'] = '.'

        procs = []
        for i in range(len(args)):
            stdin = procs[i-1].stdout if i > 0 else None
            if i == len(args) - 1 and outfile is not None:
                stdout = outfile
            else:
                stdout = subprocess.PIPE

            procs.append(subprocess.Popen(args[i], stdout=stdout, stderr=errfile,
                                          stdin=stdin, cwd=work_dir, env=my_env))

        for p in procs[:-1]:
            p.stdout.close()

        output, errors = procs[-1].communicate()
        for i, proc in enumerate(procs):
            sts = proc.wait()
            if sts != 0:
                raise RuntimeError("Command {} returned with non-zero exit status {}".format(
                    " ".join(args[i]), sts))

        end_time = timeit.default_timer()
        run_time = end_time - start_time
        RealtimeLogger.info("Successfully ran {} in {} seconds.".format(
            " | ".join(" ".join(x) for x in args), run_time))

        if check_output:
            return output

def clean_toil_path(path):
    """ Try to make input path into something toil friendly """
    # local path
    if ':' not in path:
        return 'file://' + os.path.abspath(path)
    else:
        return path

def remove_ext(string, ext = None):
    """
    Strip a suffix from a string.  Case insensitive.  Removes the last
    extension when ext is not given.
    """
    if ext is None:
        return os.path.splitext(string)[0]
    if string.lower().endswith(ext.lower()):
        return string[:-len(ext)]
    return string

def read_tsv_rows(path):
    """
    Yield (line number, columns) for every non-blank line of a tab-separated
    file that isn't a # comment.
    """
    with open(path) as tsv_file:
        for line_no, line in enumerate(tsv_file, 1):
            line = line.rstrip('\r\n')
            if not line.strip() or line.startswith('#'):
                continue
            yield line_no, line.split('\t')
