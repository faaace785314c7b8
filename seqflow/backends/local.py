"""
Local process backend: runs task scripts with bash on the current host.
"""

import logging
import os
import signal
import subprocess
import threading
import time
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List

from ..pipeline_core.resources import WALLTIME_EXIT_STATUS
from ..pipeline_core.task import TaskInstance
from .base import SCRIPT_NAME, STDERR_NAME, STDOUT_NAME, ExecutionBackend, ExecutionResult

if TYPE_CHECKING:
    from ..pipeline_core.context import RunContext

logger = logging.getLogger(__name__)


class LocalBackend(ExecutionBackend):
    """Run scripts as local bash processes.

    Each script runs in its own session, so that killing its process group
    also stops the tools it started. The wall time of the effective resource
    request is enforced by killing the group; such attempts report exit status
    140 so that they are retried with a longer time limit.
    """

    name = "local"
    required_executables = ("bash",)

    def __init__(self):
        self._processes: Dict[str, subprocess.Popen] = {}
        self._lock = threading.Lock()
        self._terminated = False

    def build_command(self, instance: TaskInstance, workdir: Path, context: "RunContext") -> List[str]:
        """Command line that runs the staged script."""
        return ["bash", "-ue", SCRIPT_NAME]

    def run(self, instance: TaskInstance, workdir: Path, context: "RunContext") -> ExecutionResult:
        """Run the script and wait for it, enforcing the wall time."""
        cmd = self.build_command(instance, workdir, context)
        timeout = instance.resources.time if instance.resources else None
        logger.debug(f"Running {instance.name}: {' '.join(cmd)} (cwd={workdir})")

        started = time.time()
        with open(workdir / STDOUT_NAME, "w") as out_f, open(workdir / STDERR_NAME, "w") as err_f:
            with self._lock:
                if self._terminated:
                    return self._result(128 + signal.SIGTERM, instance, workdir, started)
                proc = subprocess.Popen(
                    cmd, cwd=workdir, stdout=out_f, stderr=err_f, start_new_session=True
                )
                self._processes[instance.key] = proc
            try:
                exit_status = proc.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                logger.warning(
                    f"{instance.name} exceeded its wall time of {timeout}s, killing process {proc.pid}"
                )
                self._kill(instance, proc)
                proc.wait()
                exit_status = WALLTIME_EXIT_STATUS
            finally:
                with self._lock:
                    self._processes.pop(instance.key, None)

        if exit_status < 0:
            # killed by signal n -> shell convention 128 + n
            exit_status = 128 - exit_status
        return self._result(exit_status, instance, workdir, started, native_id=str(proc.pid))

    @staticmethod
    def _signal_group(proc: subprocess.Popen, sig: int) -> None:
        try:
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            logger.debug(f"Process group {proc.pid} already exited")

    def _kill(self, instance: TaskInstance, proc: subprocess.Popen) -> None:
        self._signal_group(proc, signal.SIGKILL)

    def reset(self) -> None:
        """Accept new runs after a terminated one."""
        with self._lock:
            self._terminated = False

    def terminate(self) -> None:
        """Kill every running process; later ``run`` calls fail immediately."""
        with self._lock:
            self._terminated = True
            running = list(self._processes.items())
        for key, proc in running:
            logger.info(f"Terminating process {proc.pid} ({key})")
            self._signal_group(proc, signal.SIGTERM)
