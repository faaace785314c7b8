"""
Container backends: run task scripts inside Docker or Singularity containers.

Both reuse the local process handling and only change the command line. The
work directory and the directories of every staged input are bind mounted at
their host paths so that staged symlinks resolve inside the container.
"""

import logging
import os
import subprocess
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, List

from ..pipeline_core.error_handling import ConfigurationError
from ..pipeline_core.task import TaskDescriptor, TaskInstance
from .base import SCRIPT_NAME
from .local import LocalBackend

if TYPE_CHECKING:
    from ..pipeline_core.context import RunContext

logger = logging.getLogger(__name__)


def container_mounts(instance: TaskInstance, workdir: Path, context: "RunContext") -> List[str]:
    """Host directories that must be visible inside the container."""
    mounts = {str(context.workspace.work_dir), str(Path(workdir))}
    for path in instance.input_files():
        mounts.add(str(Path(path).resolve().parent))
    # drop directories already covered by a parent mount
    ordered = sorted(mounts)
    return [m for m in ordered if not any(m != p and m.startswith(p.rstrip("/") + "/") for p in ordered)]


class ContainerBackend(LocalBackend):
    """Common behaviour of container backends."""

    def container_image(self, instance: TaskInstance, context: "RunContext") -> str:
        """Image for an instance: configured override first, then the task default."""
        descriptor = instance.descriptor
        image = context.config.get("containers", {}).get(descriptor.name) or descriptor.container
        if not image:
            raise ConfigurationError(
                f"Task '{descriptor.id}' has no container image for the {self.name} backend",
                "containers",
            )
        return image

    def validate_tasks(self, descriptors: Iterable[TaskDescriptor]) -> None:
        """Every task needs a default container image."""
        missing = [d.id for d in descriptors if not d.container]
        if missing:
            raise ConfigurationError(
                f"Tasks without container image for the {self.name} backend: {', '.join(missing)}",
                "containers",
            )


class DockerBackend(ContainerBackend):
    """Run scripts with ``docker run``, passing the CPU and memory limits."""

    name = "docker"
    required_executables = ("docker",)

    @staticmethod
    def container_name(instance: TaskInstance, workdir: Path) -> str:
        """Unique container name derived from the work directory hash."""
        return f"seqflow-{Path(workdir).parent.name}{Path(workdir).name}"

    def build_command(self, instance: TaskInstance, workdir: Path, context: "RunContext") -> List[str]:
        """``docker run`` command line for the instance."""
        resources = instance.resources or instance.descriptor.resources
        cmd = [
            "docker",
            "run",
            "--rm",
            "--name",
            self.container_name(instance, workdir),
            "--cpus",
            str(resources.cpus),
            "--memory",
            f"{resources.memory_mb}m",
            "-u",
            f"{os.getuid()}:{os.getgid()}",
        ]
        for mount in container_mounts(instance, workdir, context):
            cmd.extend(["-v", f"{mount}:{mount}"])
        cmd.extend(["-w", str(workdir)])
        cmd.extend(context.config.get("docker_run_options", []))
        cmd.extend([self.container_image(instance, context), "bash", "-ue", SCRIPT_NAME])
        return cmd

    def _kill(self, instance: TaskInstance, proc: subprocess.Popen) -> None:
        if instance.workdir is not None:
            name = self.container_name(instance, instance.workdir)
            subprocess.run(["docker", "kill", name], stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        super()._kill(instance, proc)


class SingularityBackend(ContainerBackend):
    """Run scripts with ``singularity exec``.

    Images given as registry references are pulled through the ``docker://``
    transport; paths to local ``.sif`` files and explicit URIs are used as is.
    """

    name = "singularity"
    required_executables = ("singularity",)

    @staticmethod
    def image_uri(image: str) -> str:
        """Normalise an image reference for singularity."""
        if "://" in image or image.endswith(".sif") or image.startswith("/"):
            return image
        return f"docker://{image}"

    def build_command(self, instance: TaskInstance, workdir: Path, context: "RunContext") -> List[str]:
        """``singularity exec`` command line for the instance."""
        cmd = ["singularity", "exec", "--no-home", "--pwd", str(workdir)]
        for mount in container_mounts(instance, workdir, context):
            cmd.extend(["-B", mount])
        cmd.extend(context.config.get("singularity_run_options", []))
        cmd.extend([self.image_uri(self.container_image(instance, context)), "bash", "-ue", SCRIPT_NAME])
        return cmd
