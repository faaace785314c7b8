"""
Reference preparation and read alignment tasks.

PREPARE_GENOME builds the BWA index and the FASTA index once per run; ALIGN
maps each sample with ``bwa mem`` and produces a coordinate sorted, indexed
BAM plus alignment statistics.
"""

from typing import Any, Dict

from ..pipeline_core.task import InputMode, InputSpec, OutputSpec, TaskDescriptor
from .common import make_task, task_id, versions_block

BWA_CONTAINER = "quay.io/biocontainers/bwa:0.7.18--he4a0461_0"
# bwa and samtools in one image for the mem | view pipe
BWA_MEM_CONTAINER = (
    "quay.io/biocontainers/mulled-v2-fe8faa35dbf6dc65a0f7f5d4ea12e31a79f73e40:"
    "1bd8542a8a0b42e0981337910954371d0230828e-0"
)
SAMTOOLS_CONTAINER = "quay.io/biocontainers/samtools:1.20--h50ea8bc_0"

_BWA_VERSION = "echo $(bwa 2>&1) | sed 's/^.*Version: //; s/Contact:.*$//'"
_SAMTOOLS_VERSION = "echo $(samtools --version 2>&1) | sed 's/^.*samtools //; s/Using.*$//'"

BWA_INDEX_SCRIPT = (
    """\
mkdir bwa
bwa index \\
    {{ args }} \\
    -p bwa/{{ inputs.fasta }} \\
    {{ inputs.fasta }}

"""
    + versions_block({"bwa": _BWA_VERSION})
)

SAMTOOLS_FAIDX_SCRIPT = (
    """\
samtools faidx {{ args }} {{ inputs.fasta }}

"""
    + versions_block({"samtools": _SAMTOOLS_VERSION})
)

BWA_MEM_SCRIPT = (
    """\
INDEX=$(find -L {{ inputs.index }}/ -name "*.amb" | sed 's/\\.amb$//')

bwa mem \\
    {{ args }} \\
    -R '@RG\\tID:{{ meta.id }}\\tSM:{{ meta.id }}\\tPL:ILLUMINA' \\
    -t {{ task.cpus }} \\
    $INDEX \\
    {{ inputs.reads }} \\
    | samtools view -@ {{ task.cpus }} -b -o {{ prefix }}.bam -

"""
    + versions_block({"bwa": _BWA_VERSION, "samtools": _SAMTOOLS_VERSION})
)

SAMTOOLS_SORT_SCRIPT = (
    """\
samtools sort \\
    {{ args }} \\
    -@ {{ task.cpus }} \\
    -T {{ prefix }}.sorted \\
    -o {{ prefix }}.sorted.bam \\
    {{ inputs.bam }}

"""
    + versions_block({"samtools": _SAMTOOLS_VERSION})
)

SAMTOOLS_INDEX_SCRIPT = (
    """\
samtools index -@ {{ task.cpus }} {{ args }} {{ inputs.bam }}

"""
    + versions_block({"samtools": _SAMTOOLS_VERSION})
)

SAMTOOLS_FLAGSTAT_SCRIPT = (
    """\
samtools flagstat \\
    --threads {{ task.cpus }} \\
    {{ inputs.bam }} \\
    > {{ prefix }}.flagstat

"""
    + versions_block({"samtools": _SAMTOOLS_VERSION})
)


def bwa_index(config: Dict[str, Any]) -> TaskDescriptor:
    """BWA index of the reference; published only with ``save_reference``."""
    return make_task(
        config,
        task_id("PREPARE_GENOME", "BWA_INDEX"),
        inputs=[InputSpec("fasta", InputMode.VALUE)],
        outputs=[OutputSpec("index", "bwa", publish=bool(config.get("save_reference")))],
        script=BWA_INDEX_SCRIPT,
        labels=("process_single", "process_long"),
        container=BWA_CONTAINER,
    )


def samtools_faidx(config: Dict[str, Any]) -> TaskDescriptor:
    """FASTA index of the reference, needed by the variant caller."""
    return make_task(
        config,
        task_id("PREPARE_GENOME", "SAMTOOLS_FAIDX"),
        inputs=[InputSpec("fasta", InputMode.VALUE)],
        outputs=[OutputSpec("fai", "*.fai", publish=bool(config.get("save_reference")))],
        script=SAMTOOLS_FAIDX_SCRIPT,
        labels=("process_single",),
        container=SAMTOOLS_CONTAINER,
    )


def bwa_mem(config: Dict[str, Any]) -> TaskDescriptor:
    """Align the reads of one sample; the BAM is an intermediate and not published."""
    return make_task(
        config,
        task_id("ALIGN", "BWA_MEM"),
        inputs=[InputSpec("reads"), InputSpec("index", InputMode.VALUE)],
        outputs=[OutputSpec("bam", "{{ prefix }}.bam", publish=False)],
        script=BWA_MEM_SCRIPT,
        labels=("process_high",),
        container=BWA_MEM_CONTAINER,
    )


def samtools_sort(config: Dict[str, Any]) -> TaskDescriptor:
    return make_task(
        config,
        task_id("ALIGN", "SAMTOOLS_SORT"),
        inputs=[InputSpec("bam")],
        outputs=[OutputSpec("bam", "{{ prefix }}.sorted.bam")],
        script=SAMTOOLS_SORT_SCRIPT,
        labels=("process_medium",),
        container=SAMTOOLS_CONTAINER,
    )


def samtools_index(config: Dict[str, Any]) -> TaskDescriptor:
    return make_task(
        config,
        task_id("ALIGN", "SAMTOOLS_INDEX"),
        inputs=[InputSpec("bam")],
        outputs=[OutputSpec("bai", "*.bai")],
        script=SAMTOOLS_INDEX_SCRIPT,
        labels=("process_low",),
        container=SAMTOOLS_CONTAINER,
    )


def samtools_flagstat(config: Dict[str, Any]) -> TaskDescriptor:
    """Alignment statistics for MultiQC; joins the BAM with its index per sample."""
    return make_task(
        config,
        task_id("ALIGN", "SAMTOOLS_FLAGSTAT"),
        inputs=[InputSpec("bam"), InputSpec("bai")],
        outputs=[OutputSpec("flagstat", "{{ prefix }}.flagstat")],
        script=SAMTOOLS_FLAGSTAT_SCRIPT,
        labels=("process_single",),
        container=SAMTOOLS_CONTAINER,
    )
