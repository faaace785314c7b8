"""Command-line interface for seqflow."""

import argparse
import datetime
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import load_config
from .pipeline_core.error_handling import ConfigurationError, PipelineError, PipelineFailedError
from .version import __version__
from .workflow import plan_pipeline, run_pipeline

logger = logging.getLogger("seqflow")

LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
}


def create_parser() -> argparse.ArgumentParser:
    """Create and return the argument parser for the seqflow CLI."""
    parser = argparse.ArgumentParser(
        description="seqflow: germline short-read variant calling as a dataflow pipeline."
    )

    # General Options
    general_group = parser.add_argument_group("General Options")
    general_group.add_argument(
        "--version",
        action="version",
        version=f"seqflow {__version__}",
        help="Show the current version and exit",
    )
    general_group.add_argument(
        "--log-level",
        choices=list(LOG_LEVELS),
        default="INFO",
        help="Set the logging level",
    )
    general_group.add_argument(
        "--log-file", help="Path to a file to write logs to (in addition to stderr)."
    )
    general_group.add_argument(
        "-c",
        "--config",
        help="Path to a JSON configuration file merged over the defaults",
        default=None,
    )
    general_group.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate the configuration and print the execution plan without running tasks",
    )

    # Core Input/Output
    io_group = parser.add_argument_group("Core Input/Output")
    io_group.add_argument(
        "-i",
        "--input",
        help="Glob pattern of the read files, e.g. 'data/*_{1,2}.fastq.gz' (quote it)",
    )
    io_group.add_argument("-f", "--fasta", help="Reference genome FASTA")
    io_group.add_argument("--bwa-index", help="Directory with a prebuilt BWA index")
    io_group.add_argument("-o", "--outdir", help="Directory for published results")
    io_group.add_argument("-w", "--work-dir", help="Directory for task work directories")
    io_group.add_argument(
        "--single-end",
        action="store_true",
        default=None,
        help="Reads are single-end (one file per sample)",
    )
    io_group.add_argument(
        "--save-reference",
        action="store_true",
        default=None,
        help="Publish the generated reference indices",
    )
    io_group.add_argument(
        "--publish-dir-mode",
        choices=["copy", "symlink"],
        help="How outputs are published to the output directory",
    )
    io_group.add_argument(
        "--cleanup",
        action="store_true",
        default=None,
        help="Remove the work directory after a successful run",
    )

    # Workflow steps
    steps_group = parser.add_argument_group("Workflow Steps")
    steps_group.add_argument("--skip-fastqc", action="store_true", default=None, help="Skip FastQC")
    steps_group.add_argument("--skip-multiqc", action="store_true", default=None, help="Skip MultiQC")

    # Execution
    exec_group = parser.add_argument_group("Execution")
    exec_group.add_argument(
        "--backend",
        choices=["local", "docker", "singularity"],
        help="Execution backend for the task scripts",
    )
    exec_group.add_argument("--max-cpus", type=int, help="Maximum CPUs of a single task")
    exec_group.add_argument("--max-memory", help="Maximum memory of a single task, e.g. '128.GB'")
    exec_group.add_argument("--max-time", help="Maximum wall time of a single task, e.g. '240.h'")
    exec_group.add_argument(
        "--queue-size", type=int, help="Maximum number of concurrently running tasks"
    )
    exec_group.add_argument(
        "--error-strategy",
        choices=["finish", "terminate"],
        help="On a fatal task failure: let independent tasks finish, or terminate the run",
    )
    exec_group.add_argument(
        "--max-retries", type=int, help="Retries of a task killed for exceeding its resources"
    )
    return parser


def parse_args(args_list: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments.

    Parameters
    ----------
    args_list : list of str, optional
        Arguments to parse (default: sys.argv)

    Returns
    -------
    argparse.Namespace
        Parsed arguments
    """
    parser = create_parser()
    return parser.parse_args(args_list)


def configure_logging(log_level: str, log_file: Optional[str] = None) -> None:
    """Apply the log level to the seqflow logger and add an optional file handler."""
    logging.getLogger("seqflow").setLevel(LOG_LEVELS[log_level])

    if log_file:
        log_file_path = Path(log_file)
        log_file_path.parent.mkdir(parents=True, exist_ok=True)

        fh = logging.FileHandler(log_file)
        fh.setLevel(LOG_LEVELS[log_level])
        fh.setFormatter(
            logging.Formatter(
                "%(asctime)s [%(levelname)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
            )
        )
        logger.addHandler(fh)
        logger.debug(f"Logging to file enabled: {log_file}")


# CLI option -> configuration key; None values leave the configuration untouched
_OVERRIDES = (
    "input",
    "fasta",
    "bwa_index",
    "outdir",
    "work_dir",
    "single_end",
    "save_reference",
    "publish_dir_mode",
    "cleanup",
    "skip_fastqc",
    "skip_multiqc",
    "backend",
    "max_cpus",
    "max_memory",
    "max_time",
    "queue_size",
    "error_strategy",
    "max_retries",
)


def apply_overrides(cfg: Dict[str, Any], args: argparse.Namespace) -> Dict[str, Any]:
    """Copy every command line value that was given into the configuration."""
    for key in _OVERRIDES:
        value = getattr(args, key, None)
        if value is not None:
            cfg[key] = value
    return cfg


def main(argv: Optional[List[str]] = None) -> int:
    """Run main entry point for the seqflow CLI.

    Steps:
        1. Parse arguments.
        2. Configure logging and load config.
        3. Update configuration with CLI parameters.
        4. Validate the configuration (inside the workflow, before any task runs).
        5. Run the pipeline, or print the execution plan with --dry-run.

    Returns
    -------
    int
        0 on success, 1 on configuration errors or failed runs
    """
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )

    args = parse_args(argv)
    configure_logging(args.log_level, args.log_file)

    start_time = datetime.datetime.now()
    logger.info(f"seqflow {__version__} run started at {start_time.isoformat()}")
    logger.debug(f"CLI arguments: {args}")

    try:
        cfg = load_config(args.config)
    except (FileNotFoundError, ValueError) as e:
        logger.error(str(e))
        return 1
    cfg = apply_overrides(cfg, args)
    logger.debug(f"Configuration loaded: {cfg}")

    try:
        if args.dry_run:
            levels = plan_pipeline(cfg)
            print("Execution plan:")
            for i, level in enumerate(levels):
                print(f"  Level {i}: {', '.join(level)}")
            return 0
        run_pipeline(cfg)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1
    except PipelineFailedError as e:
        logger.error(str(e))
        return 1
    except PipelineError as e:
        logger.error(f"Pipeline error: {e}")
        return 1
    finally:
        elapsed = datetime.datetime.now() - start_time
        logger.info(f"Total runtime: {elapsed}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
