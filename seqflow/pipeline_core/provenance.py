"""
Software version provenance.

Every task script writes a ``versions.yml`` file next to its outputs::

    "SEQFLOW:ALIGN:BWA_MEM":
        bwa: 0.7.17-r1188
        samtools: 1.17

The scheduler reads these files after each successful instance and merges
them into a :class:`VersionsRecord`, which is written once per run.
"""

import logging
from pathlib import Path
from typing import Dict, Mapping, Optional, Set, Union

import yaml

logger = logging.getLogger(__name__)

VERSIONS_FILENAME = "versions.yml"


def read_versions_file(path: Union[str, Path]) -> Dict[str, Dict[str, str]]:
    """
    Parse a ``versions.yml`` file.

    Parameters
    ----------
    path : str or Path
        File to read

    Returns
    -------
    dict
        Task id -> {tool: version}

    Raises
    ------
    ValueError
        If the file is not a mapping of task ids to tool/version mappings
    """
    with open(path, "r", encoding="utf-8") as f:
        try:
            # BaseLoader keeps "1.10" as a string instead of the float 1.1
            data = yaml.load(f, Loader=yaml.BaseLoader)
        except yaml.YAMLError as e:
            raise ValueError(f"Error parsing versions file {path}: {e}")

    if not isinstance(data, dict):
        raise ValueError(f"Versions file {path} must contain a mapping, got {type(data).__name__}")

    versions = {}
    for task_id, tools in data.items():
        if not isinstance(tools, dict) or not tools:
            raise ValueError(f"Versions file {path}: entry '{task_id}' has no tool versions")
        versions[str(task_id)] = {str(tool): str(version) for tool, version in tools.items()}
    return versions


class VersionsRecord:
    """Append-only record of tool versions per task id.

    Each task instance may contribute exactly once.
    """

    def __init__(self):
        self._versions: Dict[str, Dict[str, str]] = {}
        self._instances: Set[str] = set()

    def add(self, instance_key: str, versions: Mapping[str, Mapping[str, str]]) -> None:
        """
        Merge the versions reported by one task instance.

        Parameters
        ----------
        instance_key : str
            Unique key of the reporting instance
        versions : mapping
            Task id -> {tool: version}

        Raises
        ------
        ValueError
            If the instance already contributed
        """
        if instance_key in self._instances:
            raise ValueError(f"Versions for instance '{instance_key}' were already recorded")
        self._instances.add(instance_key)
        for task_id, tools in versions.items():
            recorded = self._versions.setdefault(task_id, {})
            for tool, version in tools.items():
                previous = recorded.get(tool)
                if previous is not None and previous != version:
                    logger.warning(
                        f"Task '{task_id}' reported {tool} {version}, previously {previous}"
                    )
                    continue
                recorded[tool] = version

    def add_file(self, instance_key: str, path: Union[str, Path]) -> None:
        """Read a ``versions.yml`` file and merge it."""
        self.add(instance_key, read_versions_file(path))

    def get(self, task_id: str) -> Optional[Dict[str, str]]:
        """Return the tool versions recorded for a task id."""
        tools = self._versions.get(task_id)
        return dict(tools) if tools is not None else None

    def as_dict(self) -> Dict[str, Dict[str, str]]:
        """Return a sorted deep copy of the record."""
        return {task: dict(sorted(tools.items())) for task, tools in sorted(self._versions.items())}

    def tools(self) -> Dict[str, str]:
        """Return a flat tool -> version mapping across all tasks."""
        flat = {}
        for tools in self._versions.values():
            flat.update(tools)
        return dict(sorted(flat.items()))

    def write(self, path: Union[str, Path], extra: Optional[Mapping[str, Mapping]] = None) -> Path:
        """Write the record as YAML, optionally with extra top-level entries."""
        data = self.as_dict()
        if extra:
            data.update({key: dict(value) for key, value in extra.items()})
        path = Path(path)
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
        return path

    def __len__(self) -> int:
        return len(self._versions)

    def __contains__(self, task_id: str) -> bool:
        return task_id in self._versions
