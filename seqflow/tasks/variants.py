"""
Variant calling tasks: bcftools mpileup/call per sample and variant statistics.
"""

from typing import Any, Dict

from ..pipeline_core.task import InputMode, InputSpec, OutputSpec, TaskDescriptor
from .common import make_task, task_id, versions_block

BCFTOOLS_CONTAINER = "quay.io/biocontainers/bcftools:1.20--h8b25389_0"

_BCFTOOLS_VERSION = "bcftools --version 2>&1 | head -n1 | sed 's/^.*bcftools //; s/ .*$//'"

BCFTOOLS_CALL_SCRIPT = (
    """\
bcftools mpileup \\
    --fasta-ref {{ inputs.fasta }} \\
    --threads {{ task.cpus }} \\
    -Ou \\
    {{ inputs.bam }} \\
    | bcftools call \\
        {{ args }} \\
        --threads {{ task.cpus }} \\
        -mv \\
        -Oz \\
        -o {{ prefix }}.vcf.gz

bcftools index -t {{ prefix }}.vcf.gz

"""
    + versions_block({"bcftools": _BCFTOOLS_VERSION})
)

BCFTOOLS_STATS_SCRIPT = (
    """\
bcftools stats \\
    {{ args }} \\
    {{ inputs.vcf }} \\
    > {{ prefix }}.bcftools_stats.txt

"""
    + versions_block({"bcftools": _BCFTOOLS_VERSION})
)


def bcftools_call(config: Dict[str, Any]) -> TaskDescriptor:
    """
    Call variants for one sample.

    The sorted BAM and its index are joined on the sample id; the reference
    and its FASTA index are value inputs shared by every sample.
    """
    return make_task(
        config,
        task_id("CALL", "BCFTOOLS_CALL"),
        inputs=[
            InputSpec("bam"),
            InputSpec("bai"),
            InputSpec("fasta", InputMode.VALUE),
            InputSpec("fai", InputMode.VALUE),
        ],
        outputs=[
            OutputSpec("vcf", "{{ prefix }}.vcf.gz"),
            OutputSpec("tbi", "{{ prefix }}.vcf.gz.tbi"),
        ],
        script=BCFTOOLS_CALL_SCRIPT,
        labels=("process_medium", "error_retry"),
        container=BCFTOOLS_CONTAINER,
    )


def bcftools_stats(config: Dict[str, Any]) -> TaskDescriptor:
    return make_task(
        config,
        task_id("CALL", "BCFTOOLS_STATS"),
        inputs=[InputSpec("vcf")],
        outputs=[OutputSpec("stats", "{{ prefix }}.bcftools_stats.txt")],
        script=BCFTOOLS_STATS_SCRIPT,
        labels=("process_single",),
        container=BCFTOOLS_CONTAINER,
    )
