"""Tests for task descriptors, instances and template rendering."""

from pathlib import Path

import pytest

from seqflow.pipeline_core.channel import ChannelItem
from seqflow.pipeline_core.meta import SampleMeta
from seqflow.pipeline_core.task import (
    InputMode,
    InputSpec,
    OutputSpec,
    TaskInstance,
    TaskStatus,
    render_output_patterns,
    render_script,
    template_variables,
)
from tests.mocks import make_descriptor, make_run_context


@pytest.fixture
def descriptor():
    return make_descriptor(
        "TEST:ALIGN:BWA_MEM",
        inputs=[InputSpec("reads"), InputSpec("index", InputMode.VALUE)],
        outputs=[OutputSpec("bam", "{{ prefix }}.bam")],
        script="bwa mem {{ args }} -t {{ task.cpus }} {{ inputs.index }} {{ inputs.reads }} > {{ prefix }}.bam\n",
    )


@pytest.fixture
def instance(descriptor):
    return TaskInstance(
        descriptor,
        1,
        SampleMeta("A"),
        {
            "reads": ChannelItem(SampleMeta("A"), (Path("/data/A_1.fq.gz"), Path("/data/A_2.fq.gz"))),
            "index": ChannelItem(None, Path("/work/ab/cdef/bwa")),
        },
    )


@pytest.mark.unit
class TestTaskDescriptor:
    """Test descriptor validation and properties."""

    def test_names(self, descriptor):
        assert descriptor.name == "BWA_MEM"
        assert descriptor.publish_dir_name == "bwa_mem"
        assert descriptor.shared is False
        assert descriptor.input("index").mode is InputMode.VALUE
        assert descriptor.output("bam").pattern == "{{ prefix }}.bam"

    def test_shared_without_each_inputs(self):
        descriptor = make_descriptor("TEST:INDEX", inputs=[InputSpec("fasta", InputMode.VALUE)])
        assert descriptor.shared is True

    def test_unknown_ports(self, descriptor):
        with pytest.raises(KeyError, match="no input 'bai'"):
            descriptor.input("bai")
        with pytest.raises(KeyError, match="no output 'vcf'"):
            descriptor.output("vcf")

    @pytest.mark.parametrize("bad_id", ["", "TEST::ALIGN", "TEST:ALIGN.X", ":ALIGN"])
    def test_invalid_ids(self, bad_id):
        with pytest.raises(ValueError, match="Task id|Invalid task id"):
            make_descriptor(bad_id)

    def test_duplicate_port_names(self):
        with pytest.raises(ValueError, match="Duplicate input names"):
            make_descriptor("TEST:X", inputs=[InputSpec("bam"), InputSpec("bam")])


@pytest.mark.unit
class TestTaskInstance:
    """Test the instance state machine."""

    def test_name_and_key(self, instance):
        assert instance.name == "TEST:ALIGN:BWA_MEM (A)"
        assert instance.key == "TEST:ALIGN:BWA_MEM#1"

    def test_happy_path(self, instance):
        instance.transition(TaskStatus.RUNNING)
        assert instance.submitted_at is not None
        instance.transition(TaskStatus.SUCCEEDED)
        assert instance.terminal
        assert instance.completed_at is not None

    def test_retry_cycle(self, instance):
        instance.transition(TaskStatus.RUNNING)
        instance.transition(TaskStatus.FAILED_RETRYABLE)
        assert not instance.terminal
        instance.transition(TaskStatus.PENDING)
        instance.transition(TaskStatus.RUNNING)
        instance.transition(TaskStatus.FAILED_FATAL)
        assert instance.terminal

    @pytest.mark.parametrize(
        "path",
        [
            [TaskStatus.SUCCEEDED],
            [TaskStatus.RUNNING, TaskStatus.SUCCEEDED, TaskStatus.RUNNING],
            [TaskStatus.SKIPPED, TaskStatus.RUNNING],
            [TaskStatus.RUNNING, TaskStatus.FAILED_RETRYABLE, TaskStatus.RUNNING],
        ],
    )
    def test_invalid_transitions(self, instance, path):
        with pytest.raises(RuntimeError, match="Invalid transition"):
            for status in path:
                instance.transition(status)

    def test_input_files_in_declaration_order(self, instance):
        assert [p.name for p in instance.input_files()] == ["A_1.fq.gz", "A_2.fq.gz", "bwa"]


@pytest.mark.unit
class TestTemplates:
    """Test script and output pattern rendering."""

    def test_render_script(self, tmp_path, instance):
        context = make_run_context(tmp_path, ext_args={"BWA_MEM": "-M"})
        instance.resources = instance.descriptor.resources

        script = render_script(instance, context)

        assert script == "bwa mem -M -t 2 bwa A_1.fq.gz A_2.fq.gz > A.bam\n"

    def test_ext_prefix_override(self, tmp_path, instance):
        context = make_run_context(tmp_path, ext_prefix={"BWA_MEM": "{{ meta.id }}.aligned"})

        patterns = render_output_patterns(instance, context)

        assert patterns == {"bam": "A.aligned.bam"}

    def test_shared_instance_prefix(self, tmp_path):
        descriptor = make_descriptor("TEST:PREPARE:BWA_INDEX", inputs=[InputSpec("fasta", InputMode.VALUE)])
        instance = TaskInstance(descriptor, 1, None, {"fasta": ChannelItem(None, Path("/ref/g.fa"))})

        variables = template_variables(instance, make_run_context(tmp_path))

        assert variables["prefix"] == "bwa_index"
        assert variables["meta"] is None
        assert str(variables["inputs"]["fasta"]) == "g.fa"

    def test_task_namespace(self, tmp_path, instance):
        instance.attempt = 2
        variables = template_variables(instance, make_run_context(tmp_path))

        assert variables["task"].process == "TEST:ALIGN:BWA_MEM"
        assert variables["task"].attempt == 2
        assert variables["task"].memory == "12 GB"
        assert variables["task"].memory_gb == 12
        assert variables["args"] == ""

    def test_undefined_variable_raises_value_error(self, tmp_path):
        descriptor = make_descriptor("TEST:BROKEN", script="echo {{ nothing.here }}\n")
        instance = TaskInstance(descriptor, 1, SampleMeta("A"), {})

        with pytest.raises(ValueError, match="Cannot render script of task 'TEST:BROKEN'"):
            render_script(instance, make_run_context(tmp_path))
