"""
PipelineRunner - Reactive scheduler for the task graph.

This module provides the PipelineRunner class that turns channel items into
task instances, submits them to the execution backend within the concurrency
ceiling, and reacts to their completion: outputs are routed downstream,
resource exhaustion is retried with escalated resources and fatal failures are
handled according to the error strategy of the run.
"""

import fnmatch
import logging
import time
from collections import defaultdict, deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Deque, Dict, List, Optional, Tuple

from .channel import Channel, ChannelItem, ChannelKind, QueueSubscription
from .error_handling import (
    GraphValidationError,
    MissingOutputError,
    PipelineError,
    RetryExhausted,
    TaskExecutionError,
    ToolFailure,
)
from .graph import PipelineGraph
from .meta import sample_id
from .provenance import VERSIONS_FILENAME, VersionsRecord
from .resources import ErrorAction, classify_exit, effective_resource, format_memory
from .task import (
    InputMode,
    TaskDescriptor,
    TaskInstance,
    TaskStatus,
    render_output_patterns,
    render_script,
)
from .workspace import SCRIPT_NAME

if TYPE_CHECKING:
    from ..backends.base import ExecutionBackend, ExecutionResult
    from .context import RunContext

logger = logging.getLogger(__name__)


@dataclass
class RunResult:
    """Outcome of a pipeline run.

    Attributes
    ----------
    instances : list of TaskInstance
        Every instance created during the run, in creation order
    versions : VersionsRecord
        Tool versions reported by succeeded instances
    trace : list of dict
        One row per attempt
    stalled : dict
        Task id -> sample ids whose inputs never completed a join
    undrained : dict
        Input channel name -> number of queued items no instance consumed
    terminated : bool
        True when a fatal failure stopped the run (``terminate`` strategy)
    duration : float
        Wall clock seconds of the run
    """

    instances: List[TaskInstance] = field(default_factory=list)
    versions: VersionsRecord = field(default_factory=VersionsRecord)
    trace: List[Dict[str, Any]] = field(default_factory=list)
    stalled: Dict[str, List[str]] = field(default_factory=dict)
    undrained: Dict[str, int] = field(default_factory=dict)
    terminated: bool = False
    duration: float = 0.0

    @property
    def failed_instances(self) -> List[TaskInstance]:
        """Instances that ended in an unresolved fatal failure."""
        return [i for i in self.instances if i.status is TaskStatus.FAILED_FATAL]

    @property
    def failed(self) -> bool:
        """True when the run must be reported as failed."""
        return bool(self.failed_instances)

    def status_counts(self) -> Dict[str, int]:
        """Number of instances per final status."""
        counts: Dict[str, int] = defaultdict(int)
        for instance in self.instances:
            counts[instance.status.value] += 1
        return dict(counts)

    def instances_of(self, task_id: str) -> List[TaskInstance]:
        """Instances of one task, in creation order."""
        return [i for i in self.instances if i.descriptor.id == task_id]


class _TaskState:
    """Scheduling state of one task descriptor."""

    def __init__(self, descriptor: TaskDescriptor):
        self.descriptor = descriptor
        self.channels: Dict[str, Channel] = {}
        self.subscriptions: Dict[str, QueueSubscription] = {}
        # EACH input -> sample id -> items waiting for the other inputs
        self.buffers: Dict[str, Dict[Optional[str], Deque[ChannelItem]]] = {}
        self.collected: Dict[str, List[ChannelItem]] = {}
        self.instances: List[TaskInstance] = []
        self.fired = False
        self.settled = False
        self.tainted = False
        self.errors = 0

    @property
    def each_inputs(self) -> List[str]:
        return [s.name for s in self.descriptor.inputs if s.mode is InputMode.EACH]


class PipelineRunner:
    """Executes a pipeline graph reactively with a bounded pool of workers.

    The runner owns the only scheduling thread. Channels, join buffers and
    instance states are touched on that thread exclusively; worker threads
    stage inputs, render the script and call the execution backend.

    Attributes
    ----------
    backend : ExecutionBackend
        Backend running the task scripts
    """

    def __init__(self, backend: "ExecutionBackend"):
        """Initialize the pipeline runner.

        Parameters
        ----------
        backend : ExecutionBackend
            Backend used for every task instance of the run
        """
        self.backend = backend
        self._execution_times: Dict[str, float] = {}
        self._reset()

    def _reset(self) -> None:
        self._states: Dict[str, _TaskState] = {}
        self._routes: Dict[str, List[Tuple[Optional[str], Channel]]] = defaultdict(list)
        self._order: List[str] = []
        self._pending: Deque[TaskInstance] = deque()
        self._futures: Dict[Future, TaskInstance] = {}
        self._stopping = False
        self._result = RunResult()
        self._trace_id = 0

    def run(self, graph: PipelineGraph, context: "RunContext") -> RunResult:
        """Execute all tasks of the graph until no further progress is possible.

        Parameters
        ----------
        graph : PipelineGraph
            Validated or unvalidated pipeline graph
        context : RunContext
            Run context shared with the backend

        Returns
        -------
        RunResult
            Final state of every instance, trace and versions

        Raises
        ------
        GraphValidationError
            If the graph is invalid
        """
        start_time = time.time()
        graph.validate()
        self._reset()
        self._execution_times = {}
        self.backend.reset()

        levels = graph.execution_levels()
        self._order = [node for level in levels for node in level if node in graph.tasks]
        logger.info(
            f"Starting pipeline execution with {len(graph.tasks)} tasks "
            f"({len(levels)} dependency levels, queue size {context.queue_size}, "
            f"error strategy '{context.error_strategy}')"
        )

        self._wire(graph)
        self._emit_sources(graph)

        with ThreadPoolExecutor(max_workers=context.queue_size, thread_name_prefix="seqflow") as executor:
            try:
                self._main_loop(executor, context)
            except KeyboardInterrupt:
                logger.error("Interrupted, terminating running tasks")
                self._terminate()
                raise

        self._result.stalled = self._find_stalled()
        self._result.undrained = self._find_undrained()
        self._result.duration = time.time() - start_time

        logger.info(f"Pipeline execution finished in {self._result.duration:.1f}s")
        self._log_execution_summary()
        return self._result

    # --- wiring -------------------------------------------------------------

    def _wire(self, graph: PipelineGraph) -> None:
        """Create one channel per task input and register its producers."""
        for task_id in self._order:
            descriptor = graph.tasks[task_id]
            state = _TaskState(descriptor)
            for spec in descriptor.inputs:
                kind = ChannelKind.VALUE if spec.mode is InputMode.VALUE else ChannelKind.QUEUE
                channel = Channel(f"{task_id}.{spec.name}", kind)
                for edge in graph.edges_into(task_id, spec.name):
                    channel.add_producer(edge.source)
                    self._routes[edge.source].append((edge.source_port, channel))
                state.channels[spec.name] = channel
                if spec.mode is InputMode.EACH:
                    state.subscriptions[spec.name] = channel.subscribe()
                    state.buffers[spec.name] = defaultdict(deque)
            self._states[task_id] = state

    def _emit_sources(self, graph: PipelineGraph) -> None:
        """Copy source channel items into every channel they feed."""
        for name, source in graph.sources.items():
            if not source.closed:
                raise GraphValidationError(f"Source channel '{name}' must be closed before the run")
            if source.kind is ChannelKind.VALUE:
                value = source.peek_value()
                items = [value] if value is not None else []
            else:
                items = list(source.subscribe())
            logger.debug(f"Source '{name}' provides {len(items)} item(s)")
            for channel in self._unique_channels(name):
                for item in items:
                    channel.emit(item)
                channel.settle(name)

    def _unique_channels(self, node: str) -> List[Channel]:
        seen: List[Channel] = []
        for _, channel in self._routes.get(node, []):
            if not any(channel is c for c in seen):
                seen.append(channel)
        return seen

    # --- main loop ----------------------------------------------------------

    def _main_loop(self, executor: ThreadPoolExecutor, context: "RunContext") -> None:
        while True:
            progressed = True
            while progressed:
                progressed = False
                if not self._stopping:
                    progressed |= self._form_instances(context)
                progressed |= self._settle_tasks()

            while self._pending and not self._stopping and context.acquire_slot():
                instance = self._pending.popleft()
                instance.transition(TaskStatus.RUNNING)
                logger.info(
                    f"Submitted {instance.name} (attempt {instance.attempt}, {instance.resources})"
                )
                future = executor.submit(self._execute, instance, context)
                self._futures[future] = instance

            if not self._futures:
                break

            done, _ = wait(list(self._futures), return_when=FIRST_COMPLETED)
            for future in done:
                instance = self._futures.pop(future)
                context.release_slot()
                self._handle_completion(instance, future, context)

    def _execute(self, instance: TaskInstance, context: "RunContext") -> "ExecutionResult":
        """Stage and run one attempt; runs on a worker thread."""
        workdir = context.workspace.instance_workdir(instance)
        instance.workdir = workdir
        instance.staged = context.workspace.stage_inputs(instance, workdir)
        (workdir / SCRIPT_NAME).write_text(render_script(instance, context))
        return self.backend.run(instance, workdir, context)

    # --- instance formation -------------------------------------------------

    def _form_instances(self, context: "RunContext") -> bool:
        formed = False
        for task_id in self._order:
            state = self._states[task_id]
            if state.settled:
                continue
            if state.descriptor.shared:
                formed |= self._form_shared(state, context)
            else:
                formed |= self._form_per_sample(state, context)
        return formed

    def _ready_inputs(self, state: _TaskState) -> Optional[Dict[str, Any]]:
        """Value and collected inputs of a task, or None while not available."""
        ready: Dict[str, Any] = {}
        for spec in state.descriptor.inputs:
            channel = state.channels[spec.name]
            if spec.mode is InputMode.VALUE:
                value = channel.peek_value()
                if value is None:
                    return None
                ready[spec.name] = value
            elif spec.mode is InputMode.COLLECT:
                if spec.name not in state.collected:
                    aggregated = next(channel.collect_all(), None)
                    if aggregated is None:
                        return None
                    state.collected[spec.name] = aggregated
                ready[spec.name] = state.collected[spec.name]
        return ready

    def _form_shared(self, state: _TaskState, context: "RunContext") -> bool:
        if state.fired:
            return False
        inputs = self._ready_inputs(state)
        if inputs is None:
            return False
        state.fired = True
        self._new_instance(state, None, inputs, context)
        return True

    def _form_per_sample(self, state: _TaskState, context: "RunContext") -> bool:
        each = state.each_inputs
        for name in each:
            for item in state.subscriptions[name]:
                state.buffers[name][sample_id(item.meta)].append(item)

        shared_inputs = self._ready_inputs(state)
        if shared_inputs is None:
            return False

        formed = False
        first = state.buffers[each[0]]
        for key in list(first):
            while all(state.buffers[name].get(key) for name in each):
                joined = {name: state.buffers[name][key].popleft() for name in each}
                inputs = dict(shared_inputs)
                inputs.update(joined)
                self._new_instance(state, joined[each[0]].meta, inputs, context)
                formed = True
            for name in each:
                if key in state.buffers[name] and not state.buffers[name][key]:
                    del state.buffers[name][key]
        return formed

    def _new_instance(self, state: _TaskState, meta, inputs: Dict[str, Any], context: "RunContext") -> None:
        descriptor = state.descriptor
        instance = TaskInstance(descriptor, len(state.instances) + 1, meta, inputs)
        instance.resources = effective_resource(1, descriptor.resources, context.ceiling)
        state.instances.append(instance)
        self._result.instances.append(instance)

        try:
            eligible = descriptor.when(context, meta)
        except Exception as e:
            instance.error = TaskExecutionError(instance.name, e)
            instance.transition(TaskStatus.FAILED_FATAL)
            logger.error(f"Activation check of {instance.name} failed: {e}")
            self._record_trace(instance)
            self._on_fatal(instance, context)
            return

        if not eligible:
            instance.transition(TaskStatus.SKIPPED)
            logger.info(f"Skipping {instance.name}: not enabled for this run")
            return
        self._pending.append(instance)

    # --- settlement ---------------------------------------------------------

    def _settle_tasks(self) -> bool:
        """Close the output channels of tasks that can produce nothing more."""
        settled = False
        for task_id in self._order:
            state = self._states[task_id]
            if state.settled:
                continue
            if not all(channel.closed for channel in state.channels.values()):
                continue
            if any(not subscription.exhausted for subscription in state.subscriptions.values()):
                continue
            if any(not instance.terminal for instance in state.instances):
                continue

            failed = (
                state.tainted
                or any(channel.failed for channel in state.channels.values())
                or any(i.status in (TaskStatus.FAILED_FATAL, TaskStatus.ABORTED) for i in state.instances)
            )
            state.settled = True
            settled = True
            for channel in self._unique_channels(task_id):
                channel.settle(task_id, failed=failed)
            logger.debug(
                f"Task {task_id} settled after {len(state.instances)} instance(s)"
                + (" with failures upstream or in its instances" if failed else "")
            )
        return settled

    def _find_undrained(self) -> Dict[str, int]:
        """Queue channels whose consumed count differs from their produced count."""
        undrained = {}
        for state in self._states.values():
            for channel in state.channels.values():
                if not channel.drained:
                    undrained[channel.name] = channel.produced - channel.consumed
        if undrained and not (self._result.failed or self._result.terminated):
            logger.warning(f"Run finished with unconsumed channel items: {undrained}")
        return undrained

    def _find_stalled(self) -> Dict[str, List[str]]:
        stalled = {}
        for task_id, state in self._states.items():
            waiting = sorted(
                {str(key) for buffer in state.buffers.values() for key, items in buffer.items() if items}
            )
            if waiting:
                stalled[task_id] = waiting
                logger.warning(
                    f"{task_id} never ran for sample(s) {', '.join(waiting)}: "
                    f"not every input was emitted for them"
                )
            elif not state.instances and not state.settled:
                logger.warning(f"{task_id} never ran: its inputs were never complete")
        return stalled

    # --- completion handling ------------------------------------------------

    def _handle_completion(self, instance: TaskInstance, future: Future, context: "RunContext") -> None:
        if future.cancelled():
            self._abort(instance)
            return

        try:
            result = future.result()
        except Exception as e:
            instance.error = e if isinstance(e, PipelineError) else TaskExecutionError(instance.name, e)
            instance.transition(TaskStatus.FAILED_FATAL)
            logger.error(f"{instance.name} could not be executed: {e}")
            self._record_trace(instance)
            self._on_fatal(instance, context)
            return

        instance.exit_status = result.exit_status
        instance.started_at = result.started_at
        task_id = instance.descriptor.id
        self._execution_times[task_id] = self._execution_times.get(task_id, 0.0) + result.realtime

        if self._stopping and result.exit_status != 0:
            self._abort(instance, result)
            return

        action = classify_exit(result.exit_status, instance.descriptor.ignore_errors)
        if action is None:
            self._complete(instance, result, context)
            return
        self._fail(instance, result, action, context)

    def _complete(self, instance: TaskInstance, result: "ExecutionResult", context: "RunContext") -> None:
        descriptor = instance.descriptor
        try:
            patterns = render_output_patterns(instance, context)
            relative = [(p, str(Path(p).relative_to(instance.workdir))) for p in result.outputs]
            for spec in descriptor.outputs:
                pattern = patterns[spec.name]
                matches = [p for p, rel in relative if fnmatch.fnmatch(rel, pattern)]
                if not matches:
                    if spec.optional:
                        continue
                    raise MissingOutputError(instance.name, spec.name, pattern)
                instance.outputs[spec.name] = matches[0] if len(matches) == 1 else tuple(matches)

            to_publish = []
            for spec in descriptor.outputs:
                if spec.publish and spec.name in instance.outputs:
                    value = instance.outputs[spec.name]
                    to_publish.extend(value if isinstance(value, tuple) else [value])
            context.workspace.publish(descriptor, to_publish)

            versions_file = instance.workdir / VERSIONS_FILENAME
            if versions_file.exists():
                self._result.versions.add_file(instance.key, versions_file)
        except (PipelineError, ValueError, OSError) as e:
            instance.error = e if isinstance(e, PipelineError) else TaskExecutionError(instance.name, e)
            instance.transition(TaskStatus.FAILED_FATAL)
            logger.error(f"{instance.name} failed after a successful exit: {instance.error}")
            self._record_trace(instance, result)
            self._on_fatal(instance, context)
            return

        instance.transition(TaskStatus.SUCCEEDED)
        self._record_trace(instance, result)
        logger.info(f"[{self._short_hash(instance)}] Completed {instance.name}")

        for port, channel in self._routes.get(descriptor.id, []):
            if port in instance.outputs:
                channel.emit(ChannelItem(instance.meta, instance.outputs[port]))

    def _fail(self, instance: TaskInstance, result: "ExecutionResult", action: ErrorAction,
              context: "RunContext") -> None:
        state = self._states[instance.descriptor.id]
        if action is ErrorAction.RETRY:
            state.errors += 1
        decision = instance.descriptor.retry.decide(action, instance.attempt, state.errors)

        if decision is ErrorAction.RETRY:
            instance.transition(TaskStatus.FAILED_RETRYABLE)
            self._record_trace(instance, result)
            instance.attempt += 1
            instance.resources = effective_resource(
                instance.attempt, instance.descriptor.resources, context.ceiling
            )
            logger.warning(
                f"{instance.name} terminated with exit status {result.exit_status}; "
                f"retrying as attempt {instance.attempt} with {instance.resources}"
            )
            instance.transition(TaskStatus.PENDING)
            self._pending.append(instance)
        elif decision is ErrorAction.IGNORE:
            instance.error = ToolFailure(instance.name, result.exit_status, instance.workdir)
            instance.transition(TaskStatus.IGNORED)
            self._record_trace(instance, result)
            logger.warning(f"{instance.error}; error ignored")
        else:
            if action is ErrorAction.RETRY:
                instance.error = RetryExhausted(
                    instance.name, result.exit_status, instance.workdir, instance.attempt
                )
            else:
                instance.error = ToolFailure(instance.name, result.exit_status, instance.workdir)
            instance.transition(TaskStatus.FAILED_FATAL)
            self._record_trace(instance, result)
            logger.error(f"{instance.error} (work dir: {instance.workdir})")
            self._on_fatal(instance, context)

    def _on_fatal(self, instance: TaskInstance, context: "RunContext") -> None:
        self._states[instance.descriptor.id].tainted = True
        if context.error_strategy == "terminate":
            if not self._stopping:
                logger.error(f"Terminating the run after the failure of {instance.name}")
                self._terminate()
        else:
            logger.info("Independent tasks continue until completion (error strategy 'finish')")

    def _terminate(self) -> None:
        self._stopping = True
        self._result.terminated = True
        for pending in self._pending:
            self._abort(pending)
        self._pending.clear()
        for future in self._futures:
            future.cancel()
        self.backend.terminate()

    def _abort(self, instance: TaskInstance, result: Optional["ExecutionResult"] = None) -> None:
        instance.transition(TaskStatus.ABORTED)
        self._record_trace(instance, result)
        logger.debug(f"Aborted {instance.name}")

    # --- trace and summary --------------------------------------------------

    @staticmethod
    def _short_hash(instance: TaskInstance) -> str:
        if instance.workdir is None:
            return "-"
        return f"{instance.workdir.parent.name}/{instance.workdir.name[:6]}"

    def _record_trace(self, instance: TaskInstance, result: Optional["ExecutionResult"] = None) -> None:
        self._trace_id += 1
        resources = instance.resources or instance.descriptor.resources
        self._result.trace.append(
            {
                "task_id": self._trace_id,
                "hash": self._short_hash(instance),
                "native_id": result.native_id if result else None,
                "process": instance.descriptor.id,
                "name": instance.name,
                "tag": instance.meta.id if instance.meta is not None else None,
                "status": instance.status.value,
                "exit": result.exit_status if result else instance.exit_status,
                "attempt": instance.attempt,
                "cpus": resources.cpus,
                "memory": format_memory(resources.memory),
                "time": resources.time,
                "submit": instance.submitted_at,
                "start": result.started_at if result else None,
                "complete": result.completed_at if result else instance.completed_at,
                "realtime": result.realtime if result else None,
                "workdir": str(instance.workdir) if instance.workdir else None,
            }
        )

    def _log_execution_summary(self) -> None:
        """Log the instance status counts and the run time per task."""
        logger.info("=" * 60)
        logger.info("Task Execution Summary")
        logger.info("=" * 60)

        for status, count in sorted(self._result.status_counts().items()):
            logger.info(f"{status:30s} {count:6d}")

        if self._execution_times:
            logger.info("-" * 60)
            sorted_times = sorted(self._execution_times.items(), key=lambda x: x[1], reverse=True)
            total_time = sum(self._execution_times.values())
            for task_id, elapsed in sorted_times:
                percentage = (elapsed / total_time) * 100 if total_time > 0 else 0
                logger.info(f"{task_id:40s} {elapsed:8.1f}s ({percentage:4.1f}%)")
            logger.info(f"{'Total task time:':40s} {total_time:8.1f}s")
        logger.info("=" * 60)

    def dry_run(self, graph: PipelineGraph) -> List[List[str]]:
        """Validate the graph and return its nodes grouped by execution level.

        Parameters
        ----------
        graph : PipelineGraph
            Graph to analyze

        Returns
        -------
        List[List[str]]
            Node names grouped by dependency level
        """
        graph.validate()
        return graph.execution_levels()
