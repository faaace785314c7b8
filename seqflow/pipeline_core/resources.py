"""
Resource and retry policy for task instances.

Everything here is a pure function of its arguments so that the escalation
and retry rules can be tested without a running scheduler:

- ``effective_resource`` scales a base request by the attempt number and
  clamps it to the configured ceiling
- ``classify_exit`` maps an exit status to an :class:`ErrorAction`
- :class:`RetryPolicy` turns an action into the final decision for an attempt
"""

import logging
import math
import os
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Union

import psutil

logger = logging.getLogger(__name__)

KB = 1024
MB = 1024**2
GB = 1024**3
TB = 1024**4

_MEMORY_UNITS = {"B": 1, "KB": KB, "MB": MB, "GB": GB, "TB": TB}
_DURATION_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600, "d": 86400}
_DURATION_TOKEN = re.compile(r"(\d+(?:\.\d+)?)\.?(ms|s|m|h|d)")

# Signals (128 + n: SIGINT..SIGTERM..SIGUSR2 and friends, incl. OOM kill 137,
# segfault 139, scheduler walltime kill 140) plus 104 for I/O or connection reset.
RETRYABLE_EXIT_CODES = frozenset(range(130, 146)) | frozenset({104})

# Exit status reported by the backends when the wall time ceiling was hit.
WALLTIME_EXIT_STATUS = 140


def parse_memory(value: Union[str, int, float]) -> int:
    """
    Parse a memory amount into bytes.

    Accepts plain numbers (bytes) and strings such as ``"12.GB"``, ``"12 GB"``,
    ``"512MB"`` or ``"1.5.TB"``.

    Parameters
    ----------
    value : str or int or float
        Memory amount

    Returns
    -------
    int
        Amount in bytes

    Raises
    ------
    ValueError
        If the value cannot be parsed
    """
    if isinstance(value, (int, float)):
        return int(value)
    text = str(value).strip().upper().replace(" ", "")
    match = re.fullmatch(r"(\d+(?:\.\d+)?)\.?([KMGT]?B)", text)
    if not match:
        raise ValueError(f"Invalid memory value: {value!r}")
    number, unit = match.groups()
    return int(float(number) * _MEMORY_UNITS[unit])


def parse_duration(value: Union[str, int, float]) -> int:
    """
    Parse a duration into seconds.

    Accepts plain numbers (seconds) and strings such as ``"4.h"``, ``"30m"``,
    ``"2d"`` or compound forms like ``"1h 30m"``.

    Raises
    ------
    ValueError
        If the value cannot be parsed
    """
    if isinstance(value, (int, float)):
        return int(value)
    text = str(value).strip().replace(" ", "")
    total = 0.0
    pos = 0
    for match in _DURATION_TOKEN.finditer(text):
        if match.start() != pos:
            break
        number, unit = match.groups()
        total += float(number) * _DURATION_UNITS[unit]
        pos = match.end()
    if pos == 0 or pos != len(text):
        raise ValueError(f"Invalid duration value: {value!r}")
    return int(total)


def format_memory(n_bytes: int) -> str:
    """Format a byte count the way memory directives are written ("36 GB")."""
    for unit in ("TB", "GB", "MB", "KB"):
        size = _MEMORY_UNITS[unit]
        if n_bytes >= size:
            value = n_bytes / size
            return f"{value:.0f} {unit}" if value == int(value) else f"{value:.1f} {unit}"
    return f"{n_bytes} B"


def format_duration(seconds: float) -> str:
    """Format seconds as e.g. ``"12h"``, ``"1h 30m"`` or ``"4.2s"``."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    seconds = int(seconds)
    days, rem = divmod(seconds, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, secs = divmod(rem, 60)
    parts = []
    for amount, unit in ((days, "d"), (hours, "h"), (minutes, "m"), (secs, "s")):
        if amount:
            parts.append(f"{amount}{unit}")
    return " ".join(parts)


@dataclass(frozen=True)
class ResourceRequest:
    """CPU count, memory (bytes) and wall time (seconds) for one task attempt."""

    cpus: int
    memory: int
    time: int

    def __post_init__(self):
        """Reject non-positive requests."""
        if self.cpus < 1 or self.memory <= 0 or self.time <= 0:
            raise ValueError(f"Resource request must be positive: {self}")

    @classmethod
    def from_config(cls, cfg: dict) -> "ResourceRequest":
        """Build from a config block with ``cpus``, ``memory`` and ``time`` keys."""
        return cls(
            cpus=int(cfg["cpus"]),
            memory=parse_memory(cfg["memory"]),
            time=parse_duration(cfg["time"]),
        )

    @property
    def memory_gb(self) -> int:
        """Memory in whole gigabytes, for tools that take ``-Xmx<N>g`` style flags."""
        return max(1, self.memory // GB)

    @property
    def memory_mb(self) -> int:
        """Memory in whole megabytes."""
        return max(1, self.memory // MB)

    def __str__(self) -> str:
        """Return a human-readable representation."""
        return (
            f"cpus={self.cpus}, memory={format_memory(self.memory)}, "
            f"time={format_duration(self.time)}"
        )


def effective_resource(
    attempt: int, base: ResourceRequest, ceiling: ResourceRequest
) -> ResourceRequest:
    """
    Compute the resource request for a given attempt.

    Every component is ``min(base * attempt, ceiling)``; the CPU count is
    rounded down and never drops below one.

    Parameters
    ----------
    attempt : int
        Attempt number, starting at 1
    base : ResourceRequest
        Request for the first attempt
    ceiling : ResourceRequest
        Global per-task maximum

    Returns
    -------
    ResourceRequest
        Effective request for this attempt
    """
    if attempt < 1:
        raise ValueError(f"Attempt numbers start at 1, got {attempt}")
    return ResourceRequest(
        cpus=max(1, math.floor(min(base.cpus * attempt, ceiling.cpus))),
        memory=min(base.memory * attempt, ceiling.memory),
        time=min(base.time * attempt, ceiling.time),
    )


class ErrorAction(str, Enum):
    """What to do with a failed attempt."""

    RETRY = "retry"
    FINISH = "finish"
    IGNORE = "ignore"


def classify_exit(exit_status: int, ignore_errors: bool = False) -> Optional[ErrorAction]:
    """
    Classify the exit status of a task attempt.

    Parameters
    ----------
    exit_status : int
        Exit status reported by the execution backend
    ignore_errors : bool
        Whether the task is labelled to ignore errors

    Returns
    -------
    ErrorAction or None
        None for a successful exit, IGNORE for any failure of an ignore-labelled
        task, RETRY for recognised resource exhaustion codes, FINISH otherwise
    """
    if exit_status == 0:
        return None
    if ignore_errors:
        return ErrorAction.IGNORE
    if exit_status in RETRYABLE_EXIT_CODES:
        return ErrorAction.RETRY
    return ErrorAction.FINISH


@dataclass(frozen=True)
class RetryPolicy:
    """Retry limits for one task descriptor.

    Attributes
    ----------
    max_retries : int
        Retries permitted beyond the first attempt
    max_errors : int
        Total retryable failures permitted across all instances of the task;
        a negative value means unlimited
    """

    max_retries: int = 3
    max_errors: int = -1

    def decide(self, action: ErrorAction, attempt: int, errors_so_far: int = 0) -> ErrorAction:
        """
        Turn a classified failure into the final decision for this attempt.

        Parameters
        ----------
        action : ErrorAction
            Result of :func:`classify_exit`
        attempt : int
            The attempt that just failed (1-based)
        errors_so_far : int
            Retryable failures already recorded for this task, this one included

        Returns
        -------
        ErrorAction
            RETRY only when the action is retryable and neither the per-instance
            attempt limit nor the task error budget is exceeded
        """
        if action is not ErrorAction.RETRY:
            return action
        if attempt > self.max_retries:
            return ErrorAction.FINISH
        if self.max_errors >= 0 and errors_so_far > self.max_errors:
            return ErrorAction.FINISH
        return ErrorAction.RETRY

    @property
    def max_attempts(self) -> int:
        """Total number of tries, the first attempt included."""
        return self.max_retries + 1


def _cgroup_memory_limit() -> Optional[int]:
    """Memory limit in bytes from cgroup v1/v2, or None."""
    for path in (
        "/sys/fs/cgroup/memory/memory.limit_in_bytes",  # cgroup v1
        "/sys/fs/cgroup/memory.max",  # cgroup v2
    ):
        try:
            if Path(path).exists():
                limit_str = Path(path).read_text().strip()
                if limit_str == "max":
                    continue
                limit_bytes = int(limit_str)
                if limit_bytes < (1 << 62):
                    return limit_bytes
        except (OSError, ValueError) as e:
            logger.debug(f"Could not read {path}: {e}")
    return None


def detect_host_resources(default_time: Union[str, int] = "240.h") -> ResourceRequest:
    """
    Detect the CPU count and memory of the current host.

    Used to default the resource ceilings when they are not configured. Memory
    comes from the cgroup limit when running in a container, else psutil.
    """
    cpus = psutil.cpu_count(logical=True) or os.cpu_count() or 1
    memory = _cgroup_memory_limit()
    source = "cgroup"
    if memory is None:
        memory = psutil.virtual_memory().total
        source = "psutil"
    logger.debug(f"Detected host resources: {cpus} CPUs, {format_memory(memory)} ({source})")
    return ResourceRequest(cpus=cpus, memory=memory, time=parse_duration(default_time))
