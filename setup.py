# File: seqflow/setup.py
# Location: seqflow/setup.py
"""
Setup script for seqflow.

This file configures how the package is built, installed, and what
dependencies are required.
"""

import os
from setuptools import setup, find_packages

# Load version from version.py without importing the module
version = {}
with open(os.path.join("seqflow", "version.py")) as f:
    exec(f.read(), version)

# Read the README for the long description
this_dir = os.path.abspath(os.path.dirname(__file__))
with open(os.path.join(this_dir, "README.md"), encoding="utf-8") as f:
    long_description = f.read()

setup(
    name="seqflow",
    version=version["__version__"],
    description="Germline short-read variant calling as a reactive dataflow pipeline.",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.8",
    install_requires=[
        "pandas",
        "jinja2",
        "psutil",
        "PyYAML",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={"console_scripts": ["seqflow=seqflow.cli:main"]},
    include_package_data=True,
    package_data={"seqflow": ["config.json", "templates/*.html"]},
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: POSIX :: Linux",
    ],
)
