"""
Execution backend interface.

A backend runs the ``.command.sh`` script of a staged task instance to
completion with the instance's effective resource request and reports the exit
status and the files the script produced. The scheduler never depends on which
backend is selected.
"""

import logging
import shutil
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, List, Optional

from ..pipeline_core.error_handling import ToolNotFoundError
from ..pipeline_core.task import TaskDescriptor, TaskInstance
from ..pipeline_core.workspace import (  # noqa: F401
    CONTROL_FILES,
    EXITCODE_NAME,
    SCRIPT_NAME,
    STDERR_NAME,
    STDOUT_NAME,
)

if TYPE_CHECKING:
    from ..pipeline_core.context import RunContext

logger = logging.getLogger(__name__)


@dataclass
class ExecutionResult:
    """Outcome of running one task attempt.

    Attributes
    ----------
    exit_status : int
        Exit status of the script; signals are reported as 128 + signal number
    outputs : list of Path
        Entries the script created in its work directory
    started_at : float
        Epoch seconds when the process started
    completed_at : float
        Epoch seconds when the process exited
    native_id : str, optional
        Backend specific id (process id, container name)
    """

    exit_status: int
    outputs: List[Path] = field(default_factory=list)
    started_at: float = 0.0
    completed_at: float = 0.0
    native_id: Optional[str] = None

    @property
    def realtime(self) -> float:
        """Wall clock duration of the process in seconds."""
        return max(0.0, self.completed_at - self.started_at)


def collect_outputs(workdir: Path, exclude: Iterable[str] = ()) -> List[Path]:
    """List entries created in a work directory, skipping control files and staged inputs."""
    excluded = set(exclude) | CONTROL_FILES
    return sorted(p for p in Path(workdir).iterdir() if p.name not in excluded)


class ExecutionBackend(ABC):
    """Abstract base class for execution backends."""

    #: configuration name of the backend
    name: str = ""
    #: executables that must be on PATH for the backend to work
    required_executables: tuple = ()

    @abstractmethod
    def run(self, instance: TaskInstance, workdir: Path, context: "RunContext") -> ExecutionResult:
        """Run the staged script of an instance and wait for it to exit.

        Parameters
        ----------
        instance : TaskInstance
            Instance whose script was rendered to ``workdir/.command.sh``
        workdir : Path
            Staged work directory
        context : RunContext
            Run context

        Returns
        -------
        ExecutionResult
            Exit status and produced outputs
        """

    def terminate(self) -> None:
        """Kill every running process started by this backend."""

    def reset(self) -> None:
        """Prepare the backend for a new run; no-op by default."""

    def check_available(self) -> None:
        """Check that the backend executables are installed.

        Raises
        ------
        ToolNotFoundError
            If a required executable is not on PATH
        """
        for executable in self.required_executables:
            if not shutil.which(executable):
                raise ToolNotFoundError(executable)
            logger.debug(f"Found backend executable in PATH: {executable}")

    def validate_tasks(self, descriptors: Iterable[TaskDescriptor]) -> None:
        """Check that every task can run on this backend; no-op by default."""

    def _result(self, exit_status: int, instance: TaskInstance, workdir: Path, started: float,
                native_id: Optional[str] = None) -> ExecutionResult:
        completed = time.time()
        (Path(workdir) / EXITCODE_NAME).write_text(f"{exit_status}\n")
        outputs = collect_outputs(workdir, exclude=instance.staged) if exit_status == 0 else []
        return ExecutionResult(exit_status, outputs, started, completed, native_id)

    def __repr__(self) -> str:
        """Return string representation of the backend."""
        return f"{self.__class__.__name__}(name='{self.name}')"
