"""Shared pytest fixtures for all test modules."""

from pathlib import Path
from typing import Any, Dict

import pytest

from seqflow.config import load_config
from tests.mocks import ScriptedBackend, make_run_context, write_read_pairs


def pytest_configure(config):
    """Register the markers used by the test suite."""
    config.addinivalue_line("markers", "unit: fast tests of a single module")
    config.addinivalue_line("markers", "integration: tests running the whole workflow")


@pytest.fixture
def run_context(tmp_path):
    """RunContext with a 16 CPU / 128 GB / 240 h ceiling and queue size 4."""
    return make_run_context(tmp_path)


@pytest.fixture
def scripted_backend() -> ScriptedBackend:
    """Backend that succeeds for every instance and fabricates outputs."""
    return ScriptedBackend()


@pytest.fixture
def reads_pattern(tmp_path) -> str:
    """Paired-end reads for samples A and B."""
    return write_read_pairs(tmp_path / "reads", ["A", "B"])


@pytest.fixture
def reference_fasta(tmp_path) -> Path:
    """A small reference FASTA."""
    fasta = tmp_path / "ref" / "genome.fa"
    fasta.parent.mkdir(parents=True)
    fasta.write_text(">chr1\nACGTACGTACGT\n")
    return fasta


@pytest.fixture
def pipeline_config(tmp_path, reads_pattern, reference_fasta) -> Dict[str, Any]:
    """Default configuration pointing at the test reads and reference."""
    cfg = load_config()
    cfg.update(
        {
            "input": reads_pattern,
            "fasta": str(reference_fasta),
            "outdir": str(tmp_path / "results"),
            "work_dir": str(tmp_path / "work"),
            "max_cpus": 16,
            "max_memory": "128.GB",
            "max_time": "240.h",
            "queue_size": 4,
        }
    )
    return cfg
