"""
Quality control tasks: FastQC on raw reads and the MultiQC aggregate report.
"""

from typing import Any, Dict

from ..pipeline_core.task import InputMode, InputSpec, OutputSpec, TaskDescriptor
from .common import make_task, task_id, unless_set, versions_block

FASTQC_CONTAINER = "quay.io/biocontainers/fastqc:0.12.1--hdfd78af_0"
MULTIQC_CONTAINER = "quay.io/biocontainers/multiqc:1.21--pyhdfd78af_0"

FASTQC_SCRIPT = (
    """\
fastqc \\
    {{ args }} \\
    --threads {{ task.cpus }} \\
    {{ inputs.reads }}

"""
    + versions_block({"fastqc": "fastqc --version | sed -e 's/FastQC v//g'"})
)

MULTIQC_SCRIPT = (
    """\
multiqc \\
    --force \\
    {{ args }} \\
    .

"""
    + versions_block({"multiqc": "multiqc --version | sed -e 's/multiqc, version //g'"})
)


def fastqc(config: Dict[str, Any]) -> TaskDescriptor:
    """FastQC on the raw reads of each sample; disabled by ``skip_fastqc``."""
    return make_task(
        config,
        task_id("FASTQC"),
        inputs=[InputSpec("reads")],
        outputs=[
            OutputSpec("html", "*_fastqc.html"),
            OutputSpec("zip", "*_fastqc.zip"),
        ],
        script=FASTQC_SCRIPT,
        labels=("process_medium",),
        when=unless_set("skip_fastqc"),
        container=FASTQC_CONTAINER,
    )


def multiqc(config: Dict[str, Any]) -> TaskDescriptor:
    """
    MultiQC over every QC file of the run.

    The ``files`` input collects the reports of all upstream QC tasks and fires
    once after every producer settled. Disabled by ``skip_multiqc``.
    """
    return make_task(
        config,
        task_id("MULTIQC"),
        inputs=[InputSpec("files", InputMode.COLLECT)],
        outputs=[
            OutputSpec("report", "multiqc_report.html"),
            OutputSpec("data", "multiqc_data", optional=True),
            OutputSpec("plots", "multiqc_plots", optional=True),
        ],
        script=MULTIQC_SCRIPT,
        labels=("process_single",),
        when=unless_set("skip_multiqc"),
        container=MULTIQC_CONTAINER,
    )
