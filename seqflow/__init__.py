# File: seqflow/__init__.py
# Location: seqflow/seqflow/__init__.py

"""
seqflow Package.

This package runs a germline short-read variant calling workflow
(QC, alignment, sorting, indexing, variant calling and aggregated QC)
as a dataflow graph of external tools connected by channels.
"""

from .version import __version__
