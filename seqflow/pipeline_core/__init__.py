"""
Dataflow core of seqflow.

This package provides the abstractions the workflow is built from:
- Channel / ChannelItem: ordered conduits of labelled payloads
- SampleMeta: immutable per-sample labels
- TaskDescriptor / TaskInstance: static task definitions and their executions
- PipelineGraph: explicit graph construction and validation
- RunContext: configuration, resource ceilings and the running counter
- PipelineRunner: reactive scheduler with retry and error strategies
- Workspace: work directories, input staging and publication
"""

from .channel import Channel, ChannelItem, ChannelKind, from_file_pairs, group_file_pairs
from .context import RunContext
from .graph import Edge, PipelineGraph
from .meta import SampleMeta
from .provenance import VersionsRecord
from .resources import (
    ErrorAction,
    ResourceRequest,
    RetryPolicy,
    classify_exit,
    effective_resource,
    parse_duration,
    parse_memory,
)
from .runner import PipelineRunner, RunResult
from .task import InputMode, InputSpec, OutputSpec, TaskDescriptor, TaskInstance, TaskStatus
from .workspace import Workspace

__all__ = [
    "Channel",
    "ChannelItem",
    "ChannelKind",
    "Edge",
    "ErrorAction",
    "InputMode",
    "InputSpec",
    "OutputSpec",
    "PipelineGraph",
    "PipelineRunner",
    "ResourceRequest",
    "RetryPolicy",
    "RunContext",
    "RunResult",
    "SampleMeta",
    "TaskDescriptor",
    "TaskInstance",
    "TaskStatus",
    "VersionsRecord",
    "Workspace",
    "classify_exit",
    "effective_resource",
    "from_file_pairs",
    "group_file_pairs",
    "parse_duration",
    "parse_memory",
]
