"""Test fixtures and factory functions."""

from pathlib import Path
from typing import Iterable, Optional, Sequence

from seqflow.pipeline_core import (
    InputSpec,
    OutputSpec,
    ResourceRequest,
    RetryPolicy,
    RunContext,
    TaskDescriptor,
    Workspace,
)
from seqflow.pipeline_core.resources import GB, parse_duration
from seqflow.pipeline_core.task import always

CEILING = ResourceRequest(cpus=16, memory=128 * GB, time=parse_duration("240.h"))
BASE = ResourceRequest(cpus=2, memory=12 * GB, time=parse_duration("4.h"))


def make_descriptor(
    id: str,
    inputs: Sequence[InputSpec] = (),
    outputs: Optional[Sequence[OutputSpec]] = None,
    resources: ResourceRequest = BASE,
    retry: Optional[RetryPolicy] = None,
    ignore_errors: bool = False,
    when=always,
    script: str = "touch {{ prefix }}.out\n",
) -> TaskDescriptor:
    """Create a descriptor with one ``out`` output unless outputs are given.

    Parameters
    ----------
    id : str
        Task id, e.g. ``TEST:ALIGN``
    inputs : sequence of InputSpec
        Declared inputs
    outputs : sequence of OutputSpec, optional
        Declared outputs (default: ``out`` matching ``{{ prefix }}.out``)

    Returns
    -------
    TaskDescriptor
        Configured test descriptor
    """
    if outputs is None:
        outputs = [OutputSpec("out", "{{ prefix }}.out")]
    return TaskDescriptor(
        id=id,
        inputs=tuple(inputs),
        outputs=tuple(outputs),
        script=script,
        resources=resources,
        retry=retry or RetryPolicy(),
        ignore_errors=ignore_errors,
        when=when,
    )


def make_run_context(
    tmp_path: Path,
    queue_size: int = 4,
    error_strategy: str = "finish",
    ceiling: ResourceRequest = CEILING,
    **config,
) -> RunContext:
    """Create a RunContext writing below ``tmp_path``."""
    workspace = Workspace(tmp_path / "results", tmp_path / "work")
    config.setdefault("outdir", str(workspace.output_dir))
    return RunContext(
        config=config,
        workspace=workspace,
        ceiling=ceiling,
        queue_size=queue_size,
        error_strategy=error_strategy,
    )


def write_read_pairs(directory: Path, samples: Iterable[str], single_end: bool = False) -> str:
    """Create empty FASTQ files and return the matching input pattern."""
    directory.mkdir(parents=True, exist_ok=True)
    for sample in samples:
        if single_end:
            (directory / f"{sample}.fastq.gz").write_bytes(b"")
        else:
            for read in (1, 2):
                (directory / f"{sample}_{read}.fastq.gz").write_bytes(b"")
    if single_end:
        return str(directory / "*.fastq.gz")
    return str(directory / "*_{1,2}.fastq.gz")
