# File: seqflow/workflow.py
# Location: seqflow/seqflow/workflow.py

"""
Run orchestrator for the germline variant calling workflow.

This module wires the task descriptors into the pipeline topology

    reads -> FASTQC -------------------------------------------------> MULTIQC
    reads -> BWA_MEM -> SAMTOOLS_SORT -> SAMTOOLS_INDEX                   ^
                             |                 |                          |
                             +--> SAMTOOLS_FLAGSTAT <-+-------------------+
                             +--> BCFTOOLS_CALL <-----+                   |
                                       |                                  |
                                       +--> BCFTOOLS_STATS ---------------+

with the reference prepared once (BWA_INDEX, SAMTOOLS_FAIDX) and shared by
every sample, and runs it with the configured execution backend.
"""

import logging
import platform
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import tasks
from .backends import ExecutionBackend, get_backend
from .pipeline_core.channel import Channel, from_file_pairs
from .pipeline_core.context import RunContext
from .pipeline_core.error_handling import PipelineFailedError
from .pipeline_core.graph import PipelineGraph
from .pipeline_core.runner import PipelineRunner, RunResult
from .reports import write_reports
from .validators import validate_config
from .version import __version__

logger = logging.getLogger("seqflow")

SOFTWARE_VERSIONS_FILENAME = "software_versions.yml"

FASTQC = tasks.task_id("FASTQC")
MULTIQC = tasks.task_id("MULTIQC")
BWA_INDEX = tasks.task_id("PREPARE_GENOME", "BWA_INDEX")
SAMTOOLS_FAIDX = tasks.task_id("PREPARE_GENOME", "SAMTOOLS_FAIDX")
BWA_MEM = tasks.task_id("ALIGN", "BWA_MEM")
SAMTOOLS_SORT = tasks.task_id("ALIGN", "SAMTOOLS_SORT")
SAMTOOLS_INDEX = tasks.task_id("ALIGN", "SAMTOOLS_INDEX")
SAMTOOLS_FLAGSTAT = tasks.task_id("ALIGN", "SAMTOOLS_FLAGSTAT")
BCFTOOLS_CALL = tasks.task_id("CALL", "BCFTOOLS_CALL")
BCFTOOLS_STATS = tasks.task_id("CALL", "BCFTOOLS_STATS")


def build_pipeline_graph(config: Dict[str, Any]) -> PipelineGraph:
    """
    Build the workflow graph for a configuration.

    Parameters
    ----------
    config : dict
        Merged run configuration; ``input`` and ``fasta`` must be set

    Returns
    -------
    PipelineGraph
        Graph with the ``reads`` and ``fasta`` sources (and ``bwa_index`` when
        a prebuilt index is configured) and every task of the workflow

    Raises
    ------
    ConfigurationError
        If the input pattern matches no complete sample
    """
    graph = PipelineGraph()

    size = 1 if config.get("single_end") else 2
    graph.add_source(from_file_pairs(config["input"], size=size, name="reads"))
    graph.add_source(Channel.value("fasta", Path(config["fasta"]).absolute()))

    for factory in (
        tasks.fastqc,
        tasks.samtools_faidx,
        tasks.bwa_mem,
        tasks.samtools_sort,
        tasks.samtools_index,
        tasks.samtools_flagstat,
        tasks.bcftools_call,
        tasks.bcftools_stats,
        tasks.multiqc,
    ):
        graph.add_task(factory(config))

    # reference preparation
    if config.get("bwa_index"):
        graph.add_source(Channel.value("bwa_index", Path(config["bwa_index"]).absolute()))
        graph.connect("bwa_index", f"{BWA_MEM}.index")
    else:
        graph.add_task(tasks.bwa_index(config))
        graph.connect("fasta", f"{BWA_INDEX}.fasta")
        graph.connect(f"{BWA_INDEX}.index", f"{BWA_MEM}.index")
    graph.connect("fasta", f"{SAMTOOLS_FAIDX}.fasta")

    # QC and alignment
    graph.connect("reads", f"{FASTQC}.reads")
    graph.connect("reads", f"{BWA_MEM}.reads")
    graph.connect(f"{BWA_MEM}.bam", f"{SAMTOOLS_SORT}.bam")
    graph.connect(f"{SAMTOOLS_SORT}.bam", f"{SAMTOOLS_INDEX}.bam")
    graph.connect(f"{SAMTOOLS_SORT}.bam", f"{SAMTOOLS_FLAGSTAT}.bam")
    graph.connect(f"{SAMTOOLS_INDEX}.bai", f"{SAMTOOLS_FLAGSTAT}.bai")

    # variant calling
    graph.connect(f"{SAMTOOLS_SORT}.bam", f"{BCFTOOLS_CALL}.bam")
    graph.connect(f"{SAMTOOLS_INDEX}.bai", f"{BCFTOOLS_CALL}.bai")
    graph.connect("fasta", f"{BCFTOOLS_CALL}.fasta")
    graph.connect(f"{SAMTOOLS_FAIDX}.fai", f"{BCFTOOLS_CALL}.fai")
    graph.connect(f"{BCFTOOLS_CALL}.vcf", f"{BCFTOOLS_STATS}.vcf")

    # aggregate QC
    graph.connect(f"{FASTQC}.zip", f"{MULTIQC}.files")
    graph.connect(f"{SAMTOOLS_FLAGSTAT}.flagstat", f"{MULTIQC}.files")
    graph.connect(f"{BCFTOOLS_STATS}.stats", f"{MULTIQC}.files")

    graph.validate()
    logger.debug(f"Pipeline graph built: {graph}")
    return graph


def plan_pipeline(config: Dict[str, Any]) -> List[List[str]]:
    """Validate the configuration and graph and return the execution levels."""
    validate_config(config)
    graph = build_pipeline_graph(config)
    return PipelineRunner(get_backend(config.get("backend", "local"))).dry_run(graph)


def write_software_versions(result: RunResult, context: RunContext) -> Path:
    """Write the aggregated ``software_versions.yml`` including the workflow itself."""
    path = context.workspace.get_report_path(SOFTWARE_VERSIONS_FILENAME)
    result.versions.write(
        path,
        extra={"Workflow": {"seqflow": __version__, "python": platform.python_version()}},
    )
    logger.info(f"Software versions written to {path}")
    return path


def run_pipeline(
    config: Dict[str, Any], backend: Optional[ExecutionBackend] = None
) -> RunResult:
    """
    Validate the configuration, run the workflow and write the reports.

    Reports are written whether the run succeeded or not; published outputs
    of succeeded instances are kept in both cases.

    Parameters
    ----------
    config : dict
        Merged run configuration
    backend : ExecutionBackend, optional
        Backend to use instead of the configured one

    Returns
    -------
    RunResult
        Final state of every task instance

    Raises
    ------
    ConfigurationError
        If the configuration is invalid; raised before any instance runs
    PipelineFailedError
        If at least one instance ended in an unresolved fatal failure
    """
    validate_config(config)
    graph = build_pipeline_graph(config)

    backend = backend or get_backend(config.get("backend", "local"))
    backend.check_available()
    backend.validate_tasks(graph.tasks.values())

    context = RunContext.from_config(config)
    logger.info(f"Pipeline configured with {len(graph.tasks)} tasks on the '{backend.name}' backend")
    logger.debug(f"Run context: {context}")

    runner = PipelineRunner(backend)
    result = runner.run(graph, context)

    write_reports(graph, result, context)
    write_software_versions(result, context)

    counts = ", ".join(f"{count} {status}" for status, count in sorted(result.status_counts().items()))
    if result.failed:
        logger.error(f"Pipeline failed ({counts})")
        raise PipelineFailedError(i.name for i in result.failed_instances)

    logger.info(f"Pipeline completed successfully! ({counts})")
    if config.get("cleanup"):
        context.workspace.cleanup()
    return result
