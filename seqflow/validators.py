# File: seqflow/validators.py
# Location: seqflow/seqflow/validators.py

"""
Validation module for seqflow.

This module provides functions to validate:
- Mandatory parameters (input, fasta, outdir)
- The reference FASTA and an optional prebuilt BWA index
- Scheduling settings (backend, error strategy, ceilings, retries)

These validations run before any task instance is submitted, so that a
misconfigured run fails with a ConfigurationError instead of partway through.
"""

import logging
from pathlib import Path
from typing import Any, Dict

from .backends import BACKENDS
from .pipeline_core.context import ERROR_STRATEGIES
from .pipeline_core.error_handling import (
    ConfigurationError,
    validate_file_exists,
    validate_output_directory,
)
from .pipeline_core.resources import parse_duration, parse_memory
from .pipeline_core.workspace import PUBLISH_MODES

logger = logging.getLogger("seqflow")

MANDATORY_PARAMETERS = ("input", "fasta", "outdir")


def validate_mandatory_parameters(config: Dict[str, Any]) -> None:
    """
    Validate that mandatory parameters (input, fasta, outdir) are provided.

    Parameters
    ----------
    config : dict
        Merged run configuration.

    Raises
    ------
    ConfigurationError
        If any of the mandatory parameters is missing.
    """
    for parameter in MANDATORY_PARAMETERS:
        if not config.get(parameter):
            raise ConfigurationError(
                f"'{parameter}' must be specified on the command line or in the "
                f"configuration file.",
                parameter,
            )


def validate_reference(config: Dict[str, Any]) -> None:
    """
    Validate the reference FASTA and, if given, the prebuilt BWA index directory.

    Raises
    ------
    ConfigurationError
        If the FASTA is missing or empty, or the index directory has no ``.amb`` file.
    """
    fasta = validate_file_exists(config["fasta"], "fasta")
    if fasta.stat().st_size == 0:
        raise ConfigurationError(f"Reference FASTA is empty: {fasta}", "fasta")

    index = config.get("bwa_index")
    if index:
        index_path = Path(index)
        if not index_path.is_dir():
            raise ConfigurationError(f"BWA index directory not found: {index_path}", "bwa_index")
        if not any(index_path.glob("*.amb")):
            raise ConfigurationError(
                f"BWA index directory {index_path} contains no '.amb' file", "bwa_index"
            )


def validate_run_settings(config: Dict[str, Any]) -> None:
    """
    Validate the scheduling and resource settings.

    Raises
    ------
    ConfigurationError
        On unknown backends, error strategies or publish modes, malformed
        memory/time values and negative counts.
    """
    backend = config.get("backend", "local")
    if backend not in BACKENDS:
        raise ConfigurationError(
            f"Unknown backend '{backend}', expected one of {sorted(BACKENDS)}", "backend"
        )

    strategy = config.get("error_strategy", "finish")
    if strategy not in ERROR_STRATEGIES:
        raise ConfigurationError(
            f"Unknown error strategy '{strategy}', expected one of {list(ERROR_STRATEGIES)}",
            "error_strategy",
        )

    mode = config.get("publish_dir_mode", "copy")
    if mode not in PUBLISH_MODES:
        raise ConfigurationError(
            f"Unknown publish mode '{mode}', expected one of {list(PUBLISH_MODES)}",
            "publish_dir_mode",
        )

    for key, parser in (("max_memory", parse_memory), ("max_time", parse_duration)):
        if config.get(key):
            try:
                parser(config[key])
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for '{key}': {e}", key)

    for key in ("max_cpus", "queue_size"):
        value = config.get(key)
        if value is not None and (not isinstance(value, int) or value < 1):
            raise ConfigurationError(f"'{key}' must be a positive integer, got {value!r}", key)

    max_retries = config.get("max_retries", 3)
    if not isinstance(max_retries, int) or max_retries < 0:
        raise ConfigurationError(
            f"'max_retries' must be a non-negative integer, got {max_retries!r}", "max_retries"
        )
    if not isinstance(config.get("max_errors", -1), int):
        raise ConfigurationError("'max_errors' must be an integer", "max_errors")


def validate_config(config: Dict[str, Any]) -> None:
    """Run every configuration check; the first problem found is raised."""
    validate_mandatory_parameters(config)
    validate_run_settings(config)
    validate_reference(config)
    validate_output_directory(config["outdir"])
    logger.debug("Configuration validated")
