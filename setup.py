#!/usr/bin/env python
import re

from setuptools import setup

# Single source of truth for the version is formula_build/__init__.py
with open('formula_build/__init__.py') as f:
    version = re.search(r'^__version__ = "([^"]+)"', f.read(), re.M).group(1)

deps = ['requests', 'filelock', 'pyyaml', 'jinja2', 'beautifulsoup4', 'tqdm',
        'psutil', 'libarchive-c']

setup(
    name="formula-build",
    version=version,
    author="Anaconda, Inc.",
    license="BSD-3-Clause",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Operating System :: POSIX",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    python_requires='>=3.9',
    description="tools for building packages from formula recipes",
    long_description=open('README.rst').read(),
    packages=['formula_build', 'formula_build.cli', 'formula_build.os_utils'],
    entry_points={
        'console_scripts': ['formula-build = formula_build.cli.main_build:main',
                            'formula-render = formula_build.cli.main_render:main',
                            'formula-livecheck = formula_build.cli.main_livecheck:main',
                            ]},
    install_requires=deps,
    extras_require={
        'test': ['pytest'],
    },
    zip_safe=False,
)
