"""
PipelineGraph - explicit construction of the task dependency graph.

Nodes are declared first (task descriptors and source channels), then edges
connect a named output of one node to a named input of another. Edge
references are checked as they are declared; :meth:`PipelineGraph.validate`
checks the finished graph for unconnected inputs, channel kind mismatches and
cycles.
"""

import logging
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Tuple

from .channel import Channel, ChannelKind
from .error_handling import GraphValidationError
from .task import InputMode, TaskDescriptor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Edge:
    """Connection from a node output to a task input.

    ``source_port`` is None when the source is a channel.
    """

    source: str
    source_port: Optional[str]
    target: str
    target_port: str

    def __str__(self) -> str:
        source = f"{self.source}.{self.source_port}" if self.source_port else self.source
        return f"{source} -> {self.target}.{self.target_port}"


class PipelineGraph:
    """Directed acyclic graph of task descriptors and source channels."""

    def __init__(self):
        """Initialize an empty graph."""
        self._tasks: Dict[str, TaskDescriptor] = {}
        self._sources: Dict[str, Channel] = {}
        self._edges: List[Edge] = []

    # --- declaration --------------------------------------------------------

    def add_task(self, descriptor: TaskDescriptor) -> TaskDescriptor:
        """Declare a task node."""
        if descriptor.id in self._tasks or descriptor.id in self._sources:
            raise GraphValidationError(f"Duplicate node '{descriptor.id}'", descriptor.id)
        self._tasks[descriptor.id] = descriptor
        logger.debug(f"Added task node '{descriptor.id}'")
        return descriptor

    def add_source(self, channel: Channel) -> Channel:
        """Declare a source channel node (input files, reference data)."""
        if channel.name in self._tasks or channel.name in self._sources:
            raise GraphValidationError(f"Duplicate node '{channel.name}'")
        if "." in channel.name:
            raise GraphValidationError(f"Source channel name must not contain '.': {channel.name}")
        self._sources[channel.name] = channel
        logger.debug(f"Added source node '{channel.name}' ({channel.kind.value})")
        return channel

    def connect(self, source: str, target: str) -> Edge:
        """Connect ``"<task id>.<output>"`` or ``"<source>"`` to ``"<task id>.<input>"``.

        Raises
        ------
        GraphValidationError
            If either end references an unknown node or port
        """
        source_node, source_port = self._split(source, allow_bare=True)
        target_node, target_port = self._split(target, allow_bare=False)

        if source_node in self._sources:
            if source_port is not None:
                raise GraphValidationError(f"Source channel '{source_node}' has no ports: {source}")
        elif source_node in self._tasks:
            if source_port is None:
                raise GraphValidationError(f"Missing output name in edge source '{source}'")
            try:
                self._tasks[source_node].output(source_port)
            except KeyError as e:
                raise GraphValidationError(str(e.args[0]), source_node)
        else:
            raise GraphValidationError(f"Unknown edge source '{source}'")

        if target_node not in self._tasks:
            raise GraphValidationError(f"Unknown edge target '{target}'")
        try:
            self._tasks[target_node].input(target_port)
        except KeyError as e:
            raise GraphValidationError(str(e.args[0]), target_node)

        edge = Edge(source_node, source_port, target_node, target_port)
        if edge in self._edges:
            raise GraphValidationError(f"Duplicate edge {edge}")
        self._edges.append(edge)
        logger.debug(f"Connected {edge}")
        return edge

    def _split(self, ref: str, allow_bare: bool) -> Tuple[str, Optional[str]]:
        if ref in self._sources:
            return ref, None
        node, sep, port = ref.rpartition(".")
        if not sep:
            if allow_bare:
                return ref, None
            raise GraphValidationError(f"Edge target must be '<task id>.<input>': {ref}")
        return node, port

    # --- queries ------------------------------------------------------------

    @property
    def tasks(self) -> Dict[str, TaskDescriptor]:
        """Task nodes by id."""
        return dict(self._tasks)

    @property
    def sources(self) -> Dict[str, Channel]:
        """Source channel nodes by name."""
        return dict(self._sources)

    @property
    def edges(self) -> List[Edge]:
        """All edges in declaration order."""
        return list(self._edges)

    def edges_into(self, task_id: str, port: Optional[str] = None) -> List[Edge]:
        """Edges feeding a task (optionally one input)."""
        return [
            e for e in self._edges if e.target == task_id and (port is None or e.target_port == port)
        ]

    def edges_from(self, node: str) -> List[Edge]:
        """Edges leaving a node."""
        return [e for e in self._edges if e.source == node]

    def output_kind(self, node: str) -> ChannelKind:
        """Kind of channel a node produces.

        Source channels keep their own kind; a task running once (no per-sample
        input) produces value channels, a per-sample task produces queues.
        """
        if node in self._sources:
            return self._sources[node].kind
        return ChannelKind.VALUE if self._tasks[node].shared else ChannelKind.QUEUE

    def dependencies(self) -> Dict[str, Set[str]]:
        """Upstream nodes of every node."""
        deps: Dict[str, Set[str]] = {name: set() for name in [*self._sources, *self._tasks]}
        for edge in self._edges:
            deps[edge.target].add(edge.source)
        return deps

    # --- validation ---------------------------------------------------------

    def validate(self) -> None:
        """Check the finished graph.

        Raises
        ------
        GraphValidationError
            On unconnected inputs, kind mismatches or cycles
        """
        if not self._tasks:
            raise GraphValidationError("Pipeline graph has no tasks")

        for task in self._tasks.values():
            for spec in task.inputs:
                edges = self.edges_into(task.id, spec.name)
                if not edges:
                    raise GraphValidationError(
                        f"Input '{spec.name}' of task '{task.id}' is not connected", task.id
                    )
                kinds = {self.output_kind(e.source) for e in edges}
                if spec.mode is InputMode.VALUE:
                    if len(edges) != 1 or kinds != {ChannelKind.VALUE}:
                        raise GraphValidationError(
                            f"Value input '{spec.name}' of task '{task.id}' must be fed by "
                            f"exactly one value channel",
                            task.id,
                        )
                elif spec.mode is InputMode.EACH and ChannelKind.VALUE in kinds:
                    raise GraphValidationError(
                        f"Per-sample input '{spec.name}' of task '{task.id}' is fed by a "
                        f"value channel; declare it as a value input",
                        task.id,
                    )

        self.execution_levels()

    def execution_levels(self) -> List[List[str]]:
        """Group nodes by dependency level (Kahn's algorithm).

        Nodes at the same level do not depend on each other.

        Raises
        ------
        GraphValidationError
            If the graph contains a cycle
        """
        dependencies = self.dependencies()

        # Build reverse dependency graph (who depends on each node)
        dependents = defaultdict(set)
        for node, deps in dependencies.items():
            for dep in deps:
                dependents[dep].add(node)

        in_degree = {node: len(deps) for node, deps in dependencies.items()}
        queue = deque(sorted(node for node, degree in in_degree.items() if degree == 0))

        levels = []
        processed = set()
        while queue:
            current_level = []
            for _ in range(len(queue)):
                node = queue.popleft()
                current_level.append(node)
                processed.add(node)
                for dependent in sorted(dependents[node]):
                    in_degree[dependent] -= 1
                    if in_degree[dependent] == 0:
                        queue.append(dependent)
            levels.append(current_level)

        if len(processed) != len(dependencies):
            unprocessed = sorted(set(dependencies) - processed)
            raise GraphValidationError(f"Circular dependency detected involving: {unprocessed}")

        return levels

    def to_dot(self) -> str:
        """Render the graph in Graphviz DOT format."""
        lines = ["digraph pipeline {", "    rankdir=TB;"]
        for name, channel in self._sources.items():
            lines.append(f'    "{name}" [shape=parallelogram, label="{name} ({channel.kind.value})"];')
        for task_id, task in self._tasks.items():
            lines.append(f'    "{task_id}" [shape=box, label="{task.name}"];')
        for edge in self._edges:
            label = edge.target_port if edge.source_port is None else f"{edge.source_port} -> {edge.target_port}"
            lines.append(f'    "{edge.source}" -> "{edge.target}" [label="{label}"];')
        lines.append("}")
        return "\n".join(lines) + "\n"

    def __repr__(self) -> str:
        """Return string representation of the graph."""
        return (
            f"PipelineGraph(tasks={len(self._tasks)}, sources={len(self._sources)}, "
            f"edges={len(self._edges)})"
        )
