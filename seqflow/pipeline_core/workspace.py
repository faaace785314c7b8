"""
Workspace - Centralized file path management for pipeline runs.

This module provides the Workspace class that manages the output directory,
the per-instance work directories, input staging and publication of task
outputs.
"""

import hashlib
import logging
import os
import shutil
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional, Set

from .error_handling import retry_on_failure
from .provenance import VERSIONS_FILENAME
from .task import TaskDescriptor, TaskInstance

logger = logging.getLogger(__name__)

PUBLISH_MODES = ("copy", "symlink")

SCRIPT_NAME = ".command.sh"
STDOUT_NAME = ".command.out"
STDERR_NAME = ".command.err"
EXITCODE_NAME = ".exitcode"
CONTROL_FILES = frozenset({SCRIPT_NAME, STDOUT_NAME, STDERR_NAME, EXITCODE_NAME})


@retry_on_failure(max_attempts=3, delay=0.5, exceptions=(OSError,), logger=logger)
def _publish_path(source: Path, target: Path, mode: str) -> None:
    if target.is_symlink() or target.is_file():
        target.unlink()
    elif target.is_dir():
        shutil.rmtree(target)
    if mode == "symlink":
        os.symlink(source.resolve(), target)
    elif source.is_dir():
        shutil.copytree(source, target, symlinks=False)
    else:
        shutil.copy2(source, target)


class Workspace:
    """Manages all file paths for a pipeline run.

    Attributes
    ----------
    output_dir : Path
        Root directory of published results
    work_dir : Path
        Root directory of the per-instance work directories
    pipeline_info_dir : Path
        Directory for run-level reports
    publish_mode : str
        ``copy`` or ``symlink``
    timestamp : str
        Run timestamp, also salts the work directory hashes
    """

    def __init__(
        self,
        output_dir: Path,
        work_dir: Optional[Path] = None,
        publish_mode: str = "copy",
    ):
        """Initialize workspace with output and work directories.

        Parameters
        ----------
        output_dir : Path
            Root output directory
        work_dir : Path, optional
            Root of the work directories (default: ``work`` next to the output
            directory)
        publish_mode : str
            ``copy`` or ``symlink``
        """
        if publish_mode not in PUBLISH_MODES:
            raise ValueError(f"Unknown publish mode '{publish_mode}', expected one of {PUBLISH_MODES}")
        self.output_dir = Path(output_dir).absolute()
        self.work_dir = Path(work_dir).absolute() if work_dir else self.output_dir.parent / "work"
        self.publish_mode = publish_mode
        self.timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")

        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.work_dir.mkdir(parents=True, exist_ok=True)
        self.pipeline_info_dir = self.output_dir / "pipeline_info"

        logger.debug(f"Workspace initialized: output_dir={self.output_dir}")
        logger.debug(f"Work directory: {self.work_dir}")

    def instance_workdir(self, instance: TaskInstance) -> Path:
        """Create a fresh, hashed work directory for the current attempt.

        The layout follows ``<work_dir>/<2 hex chars>/<30 hex chars>``.
        """
        digest = hashlib.md5(
            "|".join(
                [
                    self.timestamp,
                    instance.descriptor.id,
                    instance.meta.id if instance.meta is not None else "",
                    str(instance.index),
                    str(instance.attempt),
                ]
            ).encode("utf-8")
        ).hexdigest()
        path = self.work_dir / digest[:2] / digest[2:]
        if path.exists():
            shutil.rmtree(path)
        path.mkdir(parents=True)
        return path

    def stage_inputs(self, instance: TaskInstance, workdir: Path) -> Set[str]:
        """Symlink every input file of the instance into its work directory.

        Returns
        -------
        set of str
            Names of the staged entries

        Raises
        ------
        ValueError
            If two different input files share a file name
        """
        staged = {}
        for source in instance.input_files():
            source = source.absolute()
            if source.name in staged:
                if staged[source.name] != source:
                    raise ValueError(
                        f"Input file name collision in {instance.name}: "
                        f"{staged[source.name]} and {source}"
                    )
                continue
            os.symlink(source, workdir / source.name)
            staged[source.name] = source
        logger.debug(f"Staged {len(staged)} input(s) for {instance.name} in {workdir}")
        return set(staged)

    def publish_dir(self, descriptor: TaskDescriptor) -> Path:
        """Directory receiving the published outputs of a descriptor."""
        return self.output_dir / descriptor.publish_dir_name

    def publish(self, descriptor: TaskDescriptor, paths: Iterable[Path]) -> List[Path]:
        """Publish output files of a task; ``versions.yml`` is never published.

        Parameters
        ----------
        descriptor : TaskDescriptor
            Producing task
        paths : iterable of Path
            Files or directories to publish

        Returns
        -------
        list of Path
            Published locations
        """
        published = []
        target_dir = self.publish_dir(descriptor)
        for source in paths:
            source = Path(source)
            if source.name == VERSIONS_FILENAME:
                continue
            target_dir.mkdir(parents=True, exist_ok=True)
            target = target_dir / source.name
            _publish_path(source, target, self.publish_mode)
            published.append(target)
        if published:
            logger.debug(f"Published {len(published)} file(s) to {target_dir}")
        return published

    def get_report_path(self, name: str) -> Path:
        """Path of a run-level report under ``pipeline_info``."""
        self.pipeline_info_dir.mkdir(parents=True, exist_ok=True)
        return self.pipeline_info_dir / name

    def cleanup(self) -> None:
        """Remove the work directory tree."""
        try:
            if self.work_dir.exists():
                shutil.rmtree(self.work_dir)
                logger.debug(f"Cleaned up work directory: {self.work_dir}")
        except OSError as e:
            logger.warning(f"Error during cleanup: {e}")

    def __repr__(self) -> str:
        """Return string representation of the workspace."""
        return f"Workspace(output_dir='{self.output_dir}', " f"work_dir='{self.work_dir}')"
