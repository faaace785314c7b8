"""
Task descriptors of the variant calling workflow.

Each function takes the run configuration and returns an immutable
:class:`~seqflow.pipeline_core.task.TaskDescriptor`; the workflow module wires
them into the pipeline graph.
"""

from .alignment import (
    bwa_index,
    bwa_mem,
    samtools_faidx,
    samtools_flagstat,
    samtools_index,
    samtools_sort,
)
from .common import label_resources, make_task, retry_policy, task_id, unless_set
from .qc import fastqc, multiqc
from .variants import bcftools_call, bcftools_stats

__all__ = [
    "bcftools_call",
    "bcftools_stats",
    "bwa_index",
    "bwa_mem",
    "fastqc",
    "label_resources",
    "make_task",
    "multiqc",
    "retry_policy",
    "samtools_faidx",
    "samtools_flagstat",
    "samtools_index",
    "samtools_sort",
    "task_id",
    "unless_set",
]
