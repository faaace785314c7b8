"""Tests for the local bash backend."""

import os
import shutil
import threading
import time
from pathlib import Path

import pytest

from seqflow.backends import LocalBackend, get_backend
from seqflow.backends.base import EXITCODE_NAME, SCRIPT_NAME, STDERR_NAME, STDOUT_NAME
from seqflow.pipeline_core.channel import ChannelItem
from seqflow.pipeline_core.error_handling import ConfigurationError, ToolNotFoundError
from seqflow.pipeline_core.meta import SampleMeta
from seqflow.pipeline_core.resources import GB, ResourceRequest
from seqflow.pipeline_core.task import InputSpec, TaskInstance
from tests.mocks import make_descriptor, make_run_context

requires_bash = pytest.mark.skipif(shutil.which("bash") is None, reason="bash not available")


def _prepare(tmp_path, script, time_limit=60):
    context = make_run_context(tmp_path)
    reads = tmp_path / "A_1.fq"
    reads.write_text("@r\n")
    descriptor = make_descriptor("TEST:LOCAL", inputs=[InputSpec("reads")])
    instance = TaskInstance(descriptor, 1, SampleMeta("A"), {"reads": ChannelItem(SampleMeta("A"), reads)})
    instance.resources = ResourceRequest(1, GB, time_limit)
    workdir = context.workspace.instance_workdir(instance)
    instance.workdir = workdir
    instance.staged = context.workspace.stage_inputs(instance, workdir)
    (workdir / SCRIPT_NAME).write_text(script)
    return instance, workdir, context


def _process_gone(pid, timeout=5):
    """Wait until ``pid`` has exited; an unreaped zombie counts as exited."""
    stat = Path(f"/proc/{pid}/stat")
    deadline = time.time() + timeout
    while time.time() < deadline:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return True
        try:
            if stat.read_text().rsplit(")", 1)[1].split()[0] == "Z":
                return True
        except (OSError, IndexError):
            pass
        time.sleep(0.05)
    return False


@pytest.mark.unit
class TestLocalBackend:
    """Test running scripts as local processes."""

    @requires_bash
    def test_success_collects_outputs(self, tmp_path):
        instance, workdir, context = _prepare(tmp_path, "echo hello\ncat A_1.fq > A.out\necho oops >&2\n")

        result = LocalBackend().run(instance, workdir, context)

        assert result.exit_status == 0
        assert [p.name for p in result.outputs] == ["A.out"]
        assert (workdir / STDOUT_NAME).read_text() == "hello\n"
        assert (workdir / STDERR_NAME).read_text() == "oops\n"
        assert (workdir / EXITCODE_NAME).read_text() == "0\n"
        assert result.realtime >= 0
        assert result.native_id.isdigit()

    @requires_bash
    def test_failure_reports_exit_status(self, tmp_path):
        instance, workdir, context = _prepare(tmp_path, "touch partial.txt\nexit 3\n")

        result = LocalBackend().run(instance, workdir, context)

        assert result.exit_status == 3
        assert result.outputs == []

    @requires_bash
    def test_unset_variable_fails(self, tmp_path):
        instance, workdir, context = _prepare(tmp_path, "echo $UNDEFINED_SEQFLOW_VARIABLE\n")
        assert LocalBackend().run(instance, workdir, context).exit_status != 0

    @requires_bash
    def test_signal_mapped_to_128_plus_n(self, tmp_path):
        instance, workdir, context = _prepare(tmp_path, "kill -9 $$\n")
        assert LocalBackend().run(instance, workdir, context).exit_status == 137

    @requires_bash
    def test_wall_time_enforced(self, tmp_path):
        instance, workdir, context = _prepare(tmp_path, "sleep 30\n", time_limit=1)

        start = time.time()
        result = LocalBackend().run(instance, workdir, context)

        assert result.exit_status == 140
        assert time.time() - start < 20

    @requires_bash
    def test_wall_time_kills_background_children(self, tmp_path):
        instance, workdir, context = _prepare(
            tmp_path, "sleep 30 &\necho $! > child.pid\nwait\n", time_limit=1
        )

        result = LocalBackend().run(instance, workdir, context)

        assert result.exit_status == 140
        child = int((workdir / "child.pid").read_text())
        assert _process_gone(child)

    @requires_bash
    def test_terminate_kills_running_process(self, tmp_path):
        instance, workdir, context = _prepare(tmp_path, "sleep 30 &\necho $! > child.pid\nwait\n")
        backend = LocalBackend()
        results = []
        thread = threading.Thread(target=lambda: results.append(backend.run(instance, workdir, context)))

        thread.start()
        deadline = time.time() + 10
        while not (workdir / "child.pid").exists() and time.time() < deadline:
            time.sleep(0.01)
        time.sleep(0.1)
        backend.terminate()
        thread.join(timeout=20)

        assert results[0].exit_status == 143
        assert _process_gone(int((workdir / "child.pid").read_text()))
        # later runs fail immediately
        assert backend.run(instance, workdir, context).exit_status == 143

    @requires_bash
    def test_reset_accepts_runs_after_terminate(self, tmp_path):
        instance, workdir, context = _prepare(tmp_path, "true\n")
        backend = LocalBackend()
        backend.terminate()
        assert backend.run(instance, workdir, context).exit_status == 143

        backend.reset()

        assert backend.run(instance, workdir, context).exit_status == 0
        # later runs fail immediately
        assert backend.run(instance, workdir, context).exit_status == 143

    def test_check_available(self):
        backend = LocalBackend()
        backend.required_executables = ("definitely-not-a-real-tool-xyz",)
        with pytest.raises(ToolNotFoundError):
            backend.check_available()

    def test_get_backend(self):
        assert isinstance(get_backend("local"), LocalBackend)
        with pytest.raises(ConfigurationError, match="Unknown backend"):
            get_backend("slurm")
