"""Test mocks for seqflow tests."""

from .external_tools import ScriptedBackend
from .fixtures import make_descriptor, make_run_context, write_read_pairs

__all__ = [
    "ScriptedBackend",
    "make_descriptor",
    "make_run_context",
    "write_read_pairs",
]
