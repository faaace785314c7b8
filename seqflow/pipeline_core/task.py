"""
Task descriptors and task instances.

A :class:`TaskDescriptor` is the static definition of one pipeline step: its
named inputs and outputs, base resources, retry policy, activation predicate
and script template. A :class:`TaskInstance` is one concrete execution of a
descriptor for one set of input items.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import SimpleNamespace
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Set, Tuple, Union

from jinja2 import Environment, StrictUndefined, TemplateError

from .channel import ChannelItem
from .meta import SampleMeta
from .resources import ResourceRequest, RetryPolicy, format_duration, format_memory

if TYPE_CHECKING:
    from .context import RunContext

logger = logging.getLogger(__name__)

_template_env = Environment(undefined=StrictUndefined, keep_trailing_newline=True)


class InputMode(str, Enum):
    """How a task input consumes its channel.

    EACH
        one item per instance; items of several EACH inputs are joined on the
        sample id
    VALUE
        the single item of a value channel, reused by every instance
    COLLECT
        every item of the channel at once, after all producers settled
    """

    EACH = "each"
    VALUE = "value"
    COLLECT = "collect"


@dataclass(frozen=True)
class InputSpec:
    """Declared input of a task."""

    name: str
    mode: InputMode = InputMode.EACH


@dataclass(frozen=True)
class OutputSpec:
    """Declared output of a task.

    Attributes
    ----------
    name : str
        Output name used when wiring edges
    pattern : str
        Jinja2 template rendering to a glob relative to the work directory
    optional : bool
        Whether the output may be missing after a successful run
    publish : bool
        Whether matched files are published to the output directory
    """

    name: str
    pattern: str
    optional: bool = False
    publish: bool = True


def always(context: "RunContext", meta: Optional[SampleMeta]) -> bool:
    """Default activation predicate: every instance is eligible."""
    return True


@dataclass(frozen=True)
class TaskDescriptor:
    """Static definition of one pipeline step.

    Attributes
    ----------
    id : str
        Fully qualified, colon separated id, e.g. ``SEQFLOW:ALIGN:BWA_MEM``
    inputs : tuple of InputSpec
        Declared inputs
    outputs : tuple of OutputSpec
        Declared outputs
    script : str
        Jinja2 template for the shell script
    resources : ResourceRequest
        Base resource request for the first attempt
    retry : RetryPolicy
        Retry limits
    ignore_errors : bool
        Whether any failure of this task is tolerated
    when : callable
        Activation predicate ``(context, meta) -> bool``
    container : str, optional
        Container image used by container backends
    labels : tuple of str
        Process labels the resources and retry policy were derived from
    prefix : str
        Jinja2 template for the output prefix of per-sample instances
    """

    id: str
    inputs: Tuple[InputSpec, ...]
    outputs: Tuple[OutputSpec, ...]
    script: str
    resources: ResourceRequest
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    ignore_errors: bool = False
    when: Callable[["RunContext", Optional[SampleMeta]], bool] = always
    container: Optional[str] = None
    labels: Tuple[str, ...] = ()
    prefix: str = "{{ meta.id }}"

    def __post_init__(self):
        """Validate names."""
        if not self.id or any(not part for part in self.id.split(":")):
            raise ValueError(f"Invalid task id: {self.id!r}")
        if "." in self.id:
            raise ValueError(f"Task id must not contain '.': {self.id!r}")
        for kind, specs in (("input", self.inputs), ("output", self.outputs)):
            names = [spec.name for spec in specs]
            if len(names) != len(set(names)):
                raise ValueError(f"Duplicate {kind} names in task '{self.id}': {names}")

    @property
    def name(self) -> str:
        """Final segment of the id, e.g. ``BWA_MEM``."""
        return self.id.split(":")[-1]

    @property
    def publish_dir_name(self) -> str:
        """Output subdirectory for published files."""
        return self.name.lower()

    @property
    def shared(self) -> bool:
        """True when the task runs once instead of once per sample."""
        return not any(spec.mode is InputMode.EACH for spec in self.inputs)

    def input(self, name: str) -> InputSpec:
        """Return the declared input with the given name."""
        for spec in self.inputs:
            if spec.name == name:
                return spec
        raise KeyError(f"Task '{self.id}' has no input '{name}'")

    def output(self, name: str) -> OutputSpec:
        """Return the declared output with the given name."""
        for spec in self.outputs:
            if spec.name == name:
                return spec
        raise KeyError(f"Task '{self.id}' has no output '{name}'")

    def __repr__(self) -> str:
        """Return string representation of the descriptor."""
        return f"TaskDescriptor(id='{self.id}', shared={self.shared})"


class TaskStatus(str, Enum):
    """Lifecycle status of a task instance."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED_RETRYABLE = "failed-retryable"
    FAILED_FATAL = "failed-fatal"
    IGNORED = "ignored"
    SKIPPED = "skipped"
    ABORTED = "aborted"


TERMINAL_STATUSES = frozenset(
    {
        TaskStatus.SUCCEEDED,
        TaskStatus.FAILED_FATAL,
        TaskStatus.IGNORED,
        TaskStatus.SKIPPED,
        TaskStatus.ABORTED,
    }
)

_TRANSITIONS = {
    TaskStatus.PENDING: {
        TaskStatus.RUNNING,
        TaskStatus.SKIPPED,
        TaskStatus.FAILED_FATAL,
        TaskStatus.ABORTED,
    },
    TaskStatus.RUNNING: {
        TaskStatus.SUCCEEDED,
        TaskStatus.FAILED_RETRYABLE,
        TaskStatus.FAILED_FATAL,
        TaskStatus.IGNORED,
        TaskStatus.ABORTED,
    },
    TaskStatus.FAILED_RETRYABLE: {TaskStatus.PENDING},
}


class StagedFiles(list):
    """List of staged file names that renders space separated in templates."""

    def __str__(self) -> str:
        return " ".join(self)


@dataclass(eq=False)
class TaskInstance:
    """One execution of a descriptor for one set of input items.

    Attributes
    ----------
    descriptor : TaskDescriptor
        The step being executed
    index : int
        1-based instance number within the descriptor
    meta : SampleMeta or None
        Labels of the triggering inputs; None for shared instances
    inputs : dict
        Input name -> ChannelItem (EACH/VALUE) or list of ChannelItem (COLLECT)
    attempt : int
        Current attempt, starting at 1
    resources : ResourceRequest, optional
        Effective request of the current attempt
    status : TaskStatus
        Current status
    """

    descriptor: TaskDescriptor
    index: int
    meta: Optional[SampleMeta]
    inputs: Dict[str, Union[ChannelItem, List[ChannelItem]]]
    attempt: int = 1
    resources: Optional[ResourceRequest] = None
    status: TaskStatus = TaskStatus.PENDING
    exit_status: Optional[int] = None
    workdir: Optional[Path] = None
    staged: Set[str] = field(default_factory=set)
    outputs: Dict[str, Any] = field(default_factory=dict)
    error: Optional[Exception] = None
    submitted_at: Optional[float] = None
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    @property
    def name(self) -> str:
        """Display name, e.g. ``SEQFLOW:ALIGN:BWA_MEM (sampleA)``."""
        if self.meta is not None:
            return f"{self.descriptor.id} ({self.meta.id})"
        return self.descriptor.id

    @property
    def key(self) -> str:
        """Unique key of the instance within a run."""
        return f"{self.descriptor.id}#{self.index}"

    @property
    def terminal(self) -> bool:
        """True when the instance reached a final status."""
        return self.status in TERMINAL_STATUSES

    def transition(self, status: TaskStatus) -> None:
        """Move to a new status, enforcing the instance state machine."""
        if status not in _TRANSITIONS.get(self.status, set()):
            raise RuntimeError(
                f"Invalid transition for {self.name}: {self.status.value} -> {status.value}"
            )
        logger.debug(f"{self.name} attempt {self.attempt}: {self.status.value} -> {status.value}")
        self.status = status
        now = time.time()
        if status is TaskStatus.RUNNING:
            self.submitted_at = now
        elif status in TERMINAL_STATUSES or status is TaskStatus.FAILED_RETRYABLE:
            self.completed_at = now

    def input_files(self) -> List[Path]:
        """All files referenced by the input items, in declaration order."""
        files = []
        for spec in self.descriptor.inputs:
            value = self.inputs.get(spec.name)
            items = value if isinstance(value, list) else [value] if value is not None else []
            for item in items:
                files.extend(item.files())
        return files

    def __repr__(self) -> str:
        """Return string representation of the instance."""
        return (
            f"TaskInstance(name='{self.name}', attempt={self.attempt}, "
            f"status={self.status.value})"
        )


def _staged_inputs(instance: TaskInstance) -> Dict[str, Any]:
    staged = {}
    for spec in instance.descriptor.inputs:
        value = instance.inputs.get(spec.name)
        items = value if isinstance(value, list) else [value] if value is not None else []
        staged[spec.name] = StagedFiles(f.name for item in items for f in item.files())
    return staged


def template_variables(instance: TaskInstance, context: "RunContext") -> Dict[str, Any]:
    """Variables available to script and output templates of an instance."""
    descriptor = instance.descriptor
    resources = instance.resources or descriptor.resources
    variables = {
        "meta": instance.meta,
        "params": context.config,
        "inputs": _staged_inputs(instance),
        "args": context.config.get("ext_args", {}).get(descriptor.name, ""),
        "task": SimpleNamespace(
            process=descriptor.id,
            name=instance.name,
            index=instance.index,
            attempt=instance.attempt,
            cpus=resources.cpus,
            memory=format_memory(resources.memory),
            memory_gb=resources.memory_gb,
            memory_mb=resources.memory_mb,
            time=format_duration(resources.time),
        ),
    }
    prefix_template = context.config.get("ext_prefix", {}).get(descriptor.name, descriptor.prefix)
    if instance.meta is not None:
        variables["prefix"] = _render(prefix_template, variables, descriptor, "prefix")
    else:
        variables["prefix"] = descriptor.publish_dir_name
    return variables


def _render(template: str, variables: Dict[str, Any], descriptor: TaskDescriptor, what: str) -> str:
    try:
        return _template_env.from_string(template).render(**variables)
    except TemplateError as e:
        raise ValueError(f"Cannot render {what} of task '{descriptor.id}': {e}") from e


def render_script(instance: TaskInstance, context: "RunContext") -> str:
    """Render the shell script of an instance."""
    variables = template_variables(instance, context)
    return _render(instance.descriptor.script, variables, instance.descriptor, "script")


def render_output_patterns(instance: TaskInstance, context: "RunContext") -> Dict[str, str]:
    """Render the output globs of an instance, keyed by output name."""
    variables = template_variables(instance, context)
    return {
        spec.name: _render(spec.pattern, variables, instance.descriptor, f"output '{spec.name}'")
        for spec in instance.descriptor.outputs
    }
