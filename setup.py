import sys
import os

# We can't import version.py because only one "version" module can ever be
# loaded in a Python process, and multiple setup.py scripts may have to run in
# the same process.
with open(os.path.join(os.path.dirname(os.path.realpath(__file__)), "version.py")) as version_file:
    exec(version_file.read())

from setuptools import find_packages, setup

kwargs = dict(
    name='toil-varcall',
    version=version,
    description="Toil-based parallel variant calling over interval chunks",
    python_requires='>=3.8',
    install_requires=[x + y for x, y in required_versions.items()],
    extras_require={'test': ['pytest']},
    package_dir={'': 'src'},
    packages=find_packages('src'),
    entry_points={
        'console_scripts': ['toil-varcall = toil_varcall.vc_toil:main']}
)

setup(**kwargs)


print("\n\n"
      "Thank you for installing the Toil variant calling pipeline! "
      "If you want to run this Toil-based pipeline on a cluster in a cloud, please install Toil "
      "with the appropriate extras. For example, To install AWS support, run "
      "\n\n"
      "pip install \'toil[aws]>=6.0.0\'"
      "\n\n"
      "Refer to Toil's documentation at http://toil.readthedocs.io/en/latest/installation.html "
      "for more information.")
