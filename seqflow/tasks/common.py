"""
Shared helpers for building task descriptors from the run configuration.

Resources come from process labels (``process_single`` ... ``process_high``,
``process_long``, ``process_high_memory``); labels are applied in order and
later labels override single fields, so ``("process_medium", "process_long")``
keeps the medium CPU and memory request with the long wall time. The
``error_retry`` and ``error_ignore`` labels adjust the retry policy.
"""

import logging
from typing import Any, Callable, Dict, Optional, Sequence

from ..pipeline_core.error_handling import ConfigurationError
from ..pipeline_core.resources import ResourceRequest, RetryPolicy
from ..pipeline_core.task import InputSpec, OutputSpec, TaskDescriptor, always

logger = logging.getLogger(__name__)

ROOT = "SEQFLOW"

DEFAULT_LABEL = "process_single"
ERROR_RETRY_LABEL = "error_retry"
ERROR_IGNORE_LABEL = "error_ignore"
ERROR_RETRY_MAX_RETRIES = 2

# Writes the versions.yml every task script ends with. One line per tool, the
# command must print the bare version.
_VERSIONS_HEADER = 'cat <<END_VERSIONS > versions.yml\n"{{ task.process }}":\n'


def versions_block(tools: Dict[str, str]) -> str:
    """Shell snippet writing ``versions.yml`` for the given tool -> command map."""
    lines = [_VERSIONS_HEADER]
    for tool, command in tools.items():
        lines.append(f"    {tool}: $({command})\n")
    lines.append("END_VERSIONS\n")
    return "".join(lines)


def task_id(*parts: str) -> str:
    """Fully qualified task id below the workflow root."""
    return ":".join((ROOT,) + parts)


def label_resources(config: Dict[str, Any], labels: Sequence[str]) -> ResourceRequest:
    """
    Resolve the base resource request of a task from its labels.

    Parameters
    ----------
    config : dict
        Run configuration holding a ``labels`` block
    labels : sequence of str
        Task labels in order of increasing precedence

    Returns
    -------
    ResourceRequest
        Base request for the first attempt

    Raises
    ------
    ConfigurationError
        If the labels do not define cpus, memory and time
    """
    label_config = config.get("labels", {})
    merged = dict(label_config.get(DEFAULT_LABEL, {}))
    for label in labels:
        if label in label_config:
            merged.update(label_config[label])
    try:
        return ResourceRequest.from_config(merged)
    except (KeyError, ValueError) as e:
        raise ConfigurationError(
            f"Labels {list(labels)} do not define a valid resource request: {e}", "labels"
        )


def retry_policy(config: Dict[str, Any], labels: Sequence[str]) -> RetryPolicy:
    """Retry policy from the global settings and the ``error_retry`` label."""
    max_retries = int(config.get("max_retries", 3))
    if ERROR_RETRY_LABEL in labels:
        max_retries = ERROR_RETRY_MAX_RETRIES
    return RetryPolicy(max_retries=max_retries, max_errors=int(config.get("max_errors", -1)))


def make_task(
    config: Dict[str, Any],
    id: str,
    inputs: Sequence[InputSpec],
    outputs: Sequence[OutputSpec],
    script: str,
    labels: Sequence[str] = (DEFAULT_LABEL,),
    when: Callable = always,
    container: Optional[str] = None,
    prefix: str = "{{ meta.id }}",
) -> TaskDescriptor:
    """Build a descriptor with label derived resources and retry policy."""
    descriptor = TaskDescriptor(
        id=id,
        inputs=tuple(inputs),
        outputs=tuple(outputs),
        script=script,
        resources=label_resources(config, labels),
        retry=retry_policy(config, labels),
        ignore_errors=ERROR_IGNORE_LABEL in labels,
        when=when,
        container=container,
        labels=tuple(labels),
        prefix=prefix,
    )
    logger.debug(f"Defined task {descriptor.id}: {descriptor.resources}")
    return descriptor


def unless_set(key: str) -> Callable:
    """Activation predicate enabled unless the boolean config value ``key`` is set."""

    def predicate(context, meta) -> bool:
        return not context.config.get(key, False)

    predicate.__name__ = f"unless_{key}"
    return predicate
