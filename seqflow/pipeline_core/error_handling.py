"""
Error taxonomy and error handling utilities for the pipeline core.

This module provides:
- Custom exception classes for configuration, graph and task failures
- A retry decorator for transient filesystem failures
- Validation helpers for input files and output directories
"""

import logging
import time
from functools import wraps
from pathlib import Path
from typing import Callable, Dict, Optional, Union

logger = logging.getLogger(__name__)


class PipelineError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(self, message: str, task: Optional[str] = None, details: Optional[Dict] = None):
        """Initialize pipeline error.

        Parameters
        ----------
        message : str
            Error message
        task : str, optional
            Task (descriptor id or instance name) where the error occurred
        details : dict, optional
            Additional error details
        """
        super().__init__(message)
        self.task = task
        self.details = details or {}


class ConfigurationError(PipelineError):
    """Raised before scheduling when required configuration is missing or invalid."""

    def __init__(self, message: str, parameter: Optional[str] = None):
        """Initialize configuration error."""
        super().__init__(message, None, {"parameter": parameter} if parameter else {})
        self.parameter = parameter


class GraphValidationError(PipelineError):
    """Raised when the task graph has cycles or dangling references."""


class ToolNotFoundError(PipelineError):
    """Raised when a required external executable is not found."""

    def __init__(self, tool: str, task: Optional[str] = None):
        """Initialize tool not found error."""
        message = f"Required tool '{tool}' not found in PATH"
        super().__init__(message, task, {"tool": tool})


class ToolFailure(PipelineError):
    """A task instance exited with a non-zero status outside the retryable set."""

    def __init__(self, task: str, exit_status: int, workdir: Optional[Union[str, Path]] = None):
        """Initialize tool failure."""
        message = f"Task '{task}' terminated with an error exit status ({exit_status})"
        super().__init__(
            message,
            task,
            {"exit_status": exit_status, "workdir": str(workdir) if workdir else None},
        )
        self.exit_status = exit_status

    def __reduce__(self):
        """Pickle with the original constructor arguments."""
        return (self.__class__, (self.task, self.exit_status, self.details.get("workdir")))


class ResourceExhaustion(ToolFailure):
    """A task instance was killed for exceeding a resource (memory, time, disk)."""

    def __init__(
        self,
        task: str,
        exit_status: int,
        workdir: Optional[Union[str, Path]] = None,
        attempt: int = 1,
    ):
        """Initialize resource exhaustion failure."""
        super().__init__(task, exit_status, workdir)
        self.attempt = attempt
        self.details["attempt"] = attempt

    def __reduce__(self):
        """Pickle with the original constructor arguments."""
        return (
            self.__class__,
            (self.task, self.exit_status, self.details.get("workdir"), self.attempt),
        )


class RetryExhausted(ResourceExhaustion):
    """Resource exhaustion recurred after the last permitted attempt."""

    def __str__(self) -> str:
        """Return message including the attempt count."""
        return (
            f"Task '{self.task}' exhausted its resources on attempt {self.attempt} "
            f"(exit status {self.exit_status}); no retries left"
        )


class MissingOutputError(PipelineError):
    """A task instance exited successfully but did not produce a declared output."""

    def __init__(self, task: str, output: str, pattern: str):
        """Initialize missing output error."""
        message = f"Missing output file(s) `{pattern}` expected by task '{task}' (output '{output}')"
        super().__init__(message, task, {"output": output, "pattern": pattern})


class TaskExecutionError(PipelineError):
    """Raised when a task instance fails for a reason other than its exit status."""

    def __init__(self, task_name: str, original_error: Exception):
        """Initialize task execution error."""
        message = f"Task '{task_name}' failed: {str(original_error)}"
        super().__init__(
            message,
            task_name,
            {
                "original_error": str(original_error),
                "error_type": type(original_error).__name__,
            },
        )
        self.original_error = original_error

    def __reduce__(self):
        """Custom pickling to handle multiprocessing correctly."""
        return (
            self.__class__,
            (self.task, self.original_error),
            self.__dict__,
        )


class PipelineFailedError(PipelineError):
    """Raised when a run finishes with at least one unresolved fatal failure."""

    def __init__(self, failed_tasks):
        """Initialize with the names of the failed task instances."""
        failed_tasks = list(failed_tasks)
        message = f"Pipeline failed: {len(failed_tasks)} task(s) failed: {', '.join(failed_tasks)}"
        super().__init__(message, None, {"failed_tasks": failed_tasks})
        self.failed_tasks = failed_tasks


def retry_on_failure(
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    exceptions: tuple = (Exception,),
    logger: Optional[logging.Logger] = None,
) -> Callable:
    """Decorator to retry function on failure with exponential backoff.

    Parameters
    ----------
    max_attempts : int
        Maximum number of attempts
    delay : float
        Initial delay between attempts in seconds
    backoff : float
        Backoff multiplier for delay
    exceptions : tuple
        Tuple of exceptions to catch
    logger : logging.Logger, optional
        Logger for retry messages

    Returns
    -------
    Callable
        Decorated function
    """

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            _logger = logger or logging.getLogger(func.__module__)
            current_delay = delay

            for attempt in range(max_attempts):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_attempts - 1:
                        _logger.error(f"Failed after {max_attempts} attempts: {e}")
                        raise

                    _logger.warning(
                        f"Attempt {attempt + 1} failed: {e}. "
                        f"Retrying in {current_delay:.1f} seconds..."
                    )
                    time.sleep(current_delay)
                    current_delay *= backoff

        return wrapper

    return decorator


def validate_file_exists(file_path: Union[str, Path], parameter: str) -> Path:
    """Validate that a configured file exists and is readable.

    Parameters
    ----------
    file_path : str or Path
        Path to validate
    parameter : str
        Configuration parameter the path came from, for error reporting

    Returns
    -------
    Path
        Validated path object

    Raises
    ------
    ConfigurationError
        If the file doesn't exist, is not a regular file or isn't readable
    """
    path = Path(file_path)

    if not path.exists():
        raise ConfigurationError(f"File given by '{parameter}' not found: {path}", parameter)

    if not path.is_file():
        raise ConfigurationError(f"'{parameter}' must point to a file: {path}", parameter)

    try:
        with open(path, "rb"):
            pass
    except PermissionError:
        raise ConfigurationError(f"Cannot read file given by '{parameter}': {path}", parameter)

    return path


def validate_output_directory(output_dir: Union[str, Path], create: bool = True) -> Path:
    """Validate output directory.

    Parameters
    ----------
    output_dir : str or Path
        Output directory path
    create : bool
        Whether to create directory if it doesn't exist

    Returns
    -------
    Path
        Validated directory path

    Raises
    ------
    ConfigurationError
        If the path is not a directory, cannot be created or written to
    """
    path = Path(output_dir)

    if path.exists():
        if not path.is_dir():
            raise ConfigurationError(f"Output path is not a directory: {path}", "outdir")
    elif create:
        try:
            path.mkdir(parents=True, exist_ok=True)
        except PermissionError:
            raise ConfigurationError(f"Cannot create directory: {path}", "outdir")
    else:
        raise ConfigurationError(f"Output directory does not exist: {path}", "outdir")

    # Check if writable
    test_file = path / ".write_test"
    try:
        test_file.touch()
        test_file.unlink()
    except PermissionError:
        raise ConfigurationError(f"Cannot write to directory: {path}", "outdir")

    return path
