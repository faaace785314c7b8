"""
Execution backends for task instances.

Exactly one backend is active per run, selected by the ``backend``
configuration value:

- ``local``: bash processes on the current host
- ``docker``: ``docker run`` with CPU and memory limits
- ``singularity``: ``singularity exec``
"""

from ..pipeline_core.error_handling import ConfigurationError
from .base import ExecutionBackend, ExecutionResult, collect_outputs
from .container import DockerBackend, SingularityBackend
from .local import LocalBackend

BACKENDS = {
    LocalBackend.name: LocalBackend,
    DockerBackend.name: DockerBackend,
    SingularityBackend.name: SingularityBackend,
}


def get_backend(name: str) -> ExecutionBackend:
    """Instantiate the backend registered under ``name``.

    Raises
    ------
    ConfigurationError
        If no backend has that name
    """
    try:
        return BACKENDS[name]()
    except KeyError:
        raise ConfigurationError(
            f"Unknown backend '{name}', expected one of {sorted(BACKENDS)}", "backend"
        )


__all__ = [
    "BACKENDS",
    "DockerBackend",
    "ExecutionBackend",
    "ExecutionResult",
    "LocalBackend",
    "SingularityBackend",
    "collect_outputs",
    "get_backend",
]
