#!/usr/bin/env python3
"""
context.py: Defines a toil-varcall context, which contains (and hides) all the config
file values, the output store location, and other things that need to be passed
around but that toil-varcall users shouldn't generally need to dinker with.

Instead of dropping the container runner into the command-line options
namespace, we keep them both in here.

"""

import tempfile
import datetime
import os
import os.path
from importlib.metadata import version, PackageNotFoundError

from argparse import Namespace

from toil.common import Toil
from toil.job import Job

from toil_varcall.vc_config import apply_config_file_args
from toil_varcall.vc_common import ContainerRunner, get_container_tool_map, clean_toil_path

def package_version():
    try:
        return version('toil-varcall')
    except PackageNotFoundError:
        return 'unknown'

def write_info_to_outstore(context, toil, argv):
    """ Writing to the output is still problematic.  So we write some options
    info into the output store first-thing to trigger errors before doing all
    the compute if possible. """

    with tempfile.NamedTemporaryFile(mode='w', suffix='.txt', delete=False) as f:
        now = datetime.datetime.now()
        if argv:
            f.write('{}\n\n'.format(' '.join(argv)))
        f.write('{}\ntoil-varcall version {}\nConfiguration:\n'.format(now, package_version()))

        for key, val in context.config.__dict__.items():
            f.write('{}: {}\n'.format(key, val))
    try:
        info_id = toil.importFile(clean_toil_path(f.name))
        context.export_output_file(toil, info_id, 'toil-varcall-{}.txt'.format(
            argv[1] if argv and len(argv) > 1 else 'info'))
    finally:
        os.unlink(f.name)

class Context(object):
    """
    Represents a toil-varcall context, necessary to use the library.
    """

    def __init__(self, out_store=None, overrides=Namespace()):
        """
        Make a new context, so we can run the library.

        Takes an optional Namespace of overrides for default toil-varcall and Toil
        configuration values.

        Overrides can also have a "config" key, in which case that config file
        will be loaded.

        """

        # Load configuration and apply overrides. If the overrides are from
        # command-line options, we might also get a bunch of tool-specific
        # fields.
        self.config = apply_config_file_args(overrides)

        # Make a container runner for running tools
        self.runner = ContainerRunner(container_tool_map=get_container_tool_map(self.config))

        if out_store is not None:
            # Make it an absolute URL while we're getting set up.
            if ':' not in out_store and not os.path.isdir(out_store):
                os.makedirs(out_store)
            self.out_store_string = clean_toil_path(out_store)
        else:
            # We don't want to use an out store
            self.out_store_string = None

    def get_toil(self, job_store):
        """
        Produce a new Toil object for running Toil jobs, using the configuration
        used when constructing this context, and the given job_store specifier.

        Needs to be used in a "with" statement to actually work.
        """

        # Get the default Toil options
        toil_options = Job.Runner.getDefaultOptions(job_store)

        for k, v in self.config.__dict__.items():
            # Blit over all the overrides, some of which will be relevant
            toil_options.__dict__[k] = v

        # Make the Toil object and return it.
        # It still needs to be entered as a context manager in order to be used.
        return Toil(toil_options)

    def get_out_store_url(self, name):
        """
        Return the URL a file with the given name is exported to, or None if
        there is no output store.
        """
        if self.out_store_string is None:
            return None
        return '{}/{}'.format(self.out_store_string.rstrip('/'), name)

    def write_intermediate_file(self, job, path):
        """
        Write the file at the given path to the given job's Toil FileStore.

        Returns the Toil file ID for the written file.
        """
        return job.fileStore.writeGlobalFile(path)

    def write_output_file(self, job, path):
        """
        Write a final output to the given job's Toil FileStore.  It is
        exported to the output store by the leader once the workflow is done,
        under the name the gather gave it.

        Returns the Toil file ID for the written file.
        """
        return job.fileStore.writeGlobalFile(path)

    def export_output_file(self, toil, file_id, name):
        """
        Copy a file out of the Toil job store into the output store, under the
        given name.  Returns the URL written to, None without an output store.
        """
        url = self.get_out_store_url(name)
        if url is not None:
            toil.exportFile(file_id, url)
        return url
