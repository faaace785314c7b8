"""
RunContext - explicit execution context of a pipeline run.

The context is passed to every scheduler and execution backend call. It
carries the configuration, the resource ceilings, the concurrency limit, the
error strategy and the workspace, and owns the one shared counter of the run:
the number of currently running task instances.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict

from .resources import ResourceRequest, detect_host_resources, parse_duration, parse_memory
from .workspace import Workspace

logger = logging.getLogger(__name__)

ERROR_STRATEGIES = ("finish", "terminate")


@dataclass
class RunContext:
    """Container for the configuration and shared state of one run.

    Attributes
    ----------
    config : Dict[str, Any]
        Merged configuration (defaults, config file, command line)
    workspace : Workspace
        Output, work and report paths
    ceiling : ResourceRequest
        Maximum resources any single task attempt may request
    queue_size : int
        Maximum number of concurrently running task instances
    error_strategy : str
        ``finish`` lets independent branches drain after a fatal failure,
        ``terminate`` cancels everything
    start_time : datetime
        Run start time
    """

    config: Dict[str, Any]
    workspace: Workspace
    ceiling: ResourceRequest
    queue_size: int = 4
    error_strategy: str = "finish"
    start_time: datetime = field(default_factory=datetime.now)

    _running: int = field(default=0, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __post_init__(self):
        """Validate scheduling settings."""
        if self.queue_size < 1:
            raise ValueError(f"queue_size must be at least 1, got {self.queue_size}")
        if self.error_strategy not in ERROR_STRATEGIES:
            raise ValueError(
                f"Unknown error strategy '{self.error_strategy}', expected one of {ERROR_STRATEGIES}"
            )

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "RunContext":
        """Build the context, workspace and ceilings from a merged configuration.

        Unset ceilings default to the resources of the current host.
        """
        host = None
        if not (config.get("max_cpus") and config.get("max_memory")):
            host = detect_host_resources()
        ceiling = ResourceRequest(
            cpus=int(config.get("max_cpus") or host.cpus),
            memory=parse_memory(config.get("max_memory") or host.memory),
            time=parse_duration(config.get("max_time") or "240.h"),
        )
        workspace = Workspace(
            Path(config["outdir"]),
            Path(config["work_dir"]) if config.get("work_dir") else None,
            publish_mode=config.get("publish_dir_mode", "copy"),
        )
        context = cls(
            config=config,
            workspace=workspace,
            ceiling=ceiling,
            queue_size=int(config.get("queue_size") or ceiling.cpus),
            error_strategy=config.get("error_strategy", "finish"),
        )
        logger.info(f"Resource ceiling per task: {ceiling}; queue size {context.queue_size}")
        return context

    @property
    def params(self) -> Dict[str, Any]:
        """Alias of ``config`` as seen by task templates and predicates."""
        return self.config

    @property
    def running(self) -> int:
        """Number of currently running task instances."""
        with self._lock:
            return self._running

    def acquire_slot(self) -> bool:
        """Reserve a slot for a new running instance.

        Returns
        -------
        bool
            False when the concurrency ceiling is reached
        """
        with self._lock:
            if self._running >= self.queue_size:
                return False
            self._running += 1
            return True

    def release_slot(self) -> None:
        """Release a slot reserved by :meth:`acquire_slot`."""
        with self._lock:
            if self._running <= 0:
                raise RuntimeError("release_slot called without a matching acquire_slot")
            self._running -= 1

    def __repr__(self) -> str:
        """Return string representation showing key state information."""
        return (
            f"RunContext("
            f"outdir={self.workspace.output_dir}, "
            f"queue_size={self.queue_size}, "
            f"error_strategy={self.error_strategy}, "
            f"running={self.running})"
        )
