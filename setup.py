#!/usr/bin/env python

# Copyright New York University and the TUF contributors
# SPDX-License-Identifier: MIT OR Apache-2.0

"""
<Program Name>
  setup.py

<Purpose>
  BUILD SOURCE DISTRIBUTION

  The following shell command generates a tufzy source archive that can be
  distributed to other users.  The packaged source is saved to the 'dist'
  folder in the current directory.

  $ python -m build --sdist


  INSTALLATION OPTIONS

  # Installing from the root directory of the source tree.
  $ pip install .

  # Installing with the test requirements.
  $ pip install -e .[test]
"""

from setuptools import find_packages, setup

with open("README.md", encoding="utf-8") as file_object:
    long_description = file_object.read()


setup(
    name="tufzy",
    version="0.1.0",  # If updating version, also update it in tufzy/__init__.py
    description="TUF client backends for filesystem, tuf-on-ci git and OCI "
    "registry repositories",
    long_description=long_description,
    long_description_content_type="text/markdown",
    keywords="tuf update updater oci registry tuf-on-ci",
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "License :: OSI Approved :: Apache Software License",
        "Natural Language :: English",
        "Operating System :: OS Independent",
        "Programming Language :: Python",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: Implementation :: CPython",
        "Topic :: Security",
        "Topic :: Software Development",
    ],
    python_requires=">=3.9",
    install_requires=[
        "requests>=2.19.1",
        "securesystemslib[crypto]>=1.0",
        "tuf>=6.0",
    ],
    extras_require={
        "test": ["pytest"],
    },
    packages=find_packages(include=["tufzy", "tufzy.*"]),
    entry_points={
        "console_scripts": ["tufzy = tufzy.cli:main"],
    },
)
