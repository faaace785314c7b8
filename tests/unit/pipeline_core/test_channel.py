"""Tests for channels and file pair discovery."""

from pathlib import Path

import pytest

from seqflow.pipeline_core.channel import (
    Channel,
    ChannelItem,
    ChannelKind,
    from_file_pairs,
    group_file_pairs,
)
from seqflow.pipeline_core.error_handling import ConfigurationError
from seqflow.pipeline_core.meta import SampleMeta
from tests.mocks import write_read_pairs


def _item(sample: str, name: str = "x.bam") -> ChannelItem:
    return ChannelItem(SampleMeta(sample), Path(name))


@pytest.mark.unit
class TestValueChannel:
    """Test value channels."""

    def test_value_is_closed_and_reusable(self):
        channel = Channel.value("fasta", Path("/ref/genome.fa"))

        assert channel.closed
        assert channel.kind is ChannelKind.VALUE
        first = list(channel.subscribe())
        second = list(channel.subscribe())
        assert first == second == [ChannelItem(None, Path("/ref/genome.fa"))]
        assert channel.peek_value().payload == Path("/ref/genome.fa")
        assert len(channel) == 1

    def test_peek_on_queue_raises(self):
        with pytest.raises(RuntimeError, match="not a value channel"):
            Channel("reads").peek_value()

    def test_collect_all_yields_value_once(self):
        channel = Channel.value("fasta", "genome.fa")
        assert list(channel.collect_all()) == [[ChannelItem(None, "genome.fa")]]
        assert list(channel.collect_all()) == []


@pytest.mark.unit
class TestQueueChannel:
    """Test queue channel delivery and lifecycle."""

    def test_items_delivered_once_in_order(self):
        channel = Channel("bams")
        channel.add_producer("ALIGN")
        subscription = channel.subscribe()

        channel.emit(_item("A"))
        channel.emit(_item("B"))
        assert [i.meta.id for i in subscription] == ["A", "B"]
        assert list(subscription) == []

        channel.emit(_item("C"))
        assert [i.meta.id for i in subscription] == ["C"]
        assert channel.drained
        assert not subscription.exhausted

        channel.settle("ALIGN")
        assert subscription.exhausted

    def test_second_subscription_raises(self):
        channel = Channel("bams")
        channel.subscribe()
        with pytest.raises(RuntimeError, match="already has a consumer"):
            channel.subscribe()

    def test_emit_after_close_raises(self):
        channel = Channel.of("reads", [_item("A")])
        with pytest.raises(RuntimeError, match="closed channel"):
            channel.emit(_item("B"))

    def test_emit_requires_channel_item(self):
        with pytest.raises(TypeError, match="ChannelItem"):
            Channel("reads").emit(Path("a.fq"))

    def test_settle_unknown_producer(self):
        channel = Channel("bams")
        with pytest.raises(ValueError, match="not a producer"):
            channel.settle("SORT")

    def test_item_files(self):
        pair = ChannelItem(SampleMeta("A"), ("a_1.fq", "a_2.fq"))
        assert pair.files() == [Path("a_1.fq"), Path("a_2.fq")]
        assert _item("A").files() == [Path("x.bam")]


@pytest.mark.unit
class TestCollectAll:
    """Test aggregation gating on producer settlement."""

    def test_fires_once_after_every_producer_settled(self):
        channel = Channel("qc_files")
        for producer in ("FASTQC", "FLAGSTAT", "STATS"):
            channel.add_producer(producer)

        channel.emit(_item("A", "a_fastqc.zip"))
        channel.settle("FASTQC")
        channel.emit(_item("A", "a.flagstat"))
        channel.settle("FLAGSTAT")
        assert list(channel.collect_all()) == []

        channel.emit(_item("A", "a.stats.txt"))
        channel.settle("STATS")
        collected = list(channel.collect_all())

        assert len(collected) == 1
        assert [i.payload.name for i in collected[0]] == ["a_fastqc.zip", "a.flagstat", "a.stats.txt"]
        assert list(channel.collect_all()) == []
        assert channel.drained

    def test_empty_but_settled_yields_empty_list(self):
        channel = Channel("qc_files")
        channel.add_producer("FASTQC")
        channel.settle("FASTQC")
        assert list(channel.collect_all()) == [[]]

    def test_failed_producer_blocks_collection(self):
        channel = Channel("qc_files")
        channel.add_producer("FASTQC")
        channel.add_producer("STATS")
        channel.emit(_item("A"))
        channel.settle("FASTQC")
        channel.settle("STATS", failed=True)

        assert channel.closed
        assert channel.failed
        assert list(channel.collect_all()) == []

    def test_add_producer_after_close_raises(self):
        channel = Channel.of("reads", [])
        with pytest.raises(RuntimeError, match="closed channel"):
            channel.add_producer("LATE")


@pytest.mark.unit
class TestFilePairs:
    """Test grouping of read files into samples."""

    def test_paired_files_grouped_by_sample(self, tmp_path):
        pattern = write_read_pairs(tmp_path, ["A", "B"])

        channel = from_file_pairs(pattern)
        items = list(channel.subscribe())

        assert channel.closed
        assert [item.meta.id for item in items] == ["A", "B"]
        a_files = [p.name for p in items[0].files()]
        assert a_files == ["A_1.fastq.gz", "A_2.fastq.gz"]
        assert items[0].meta.single_end is False
        assert all(p.is_absolute() for p in items[0].files())

    def test_no_match_raises_configuration_error(self, tmp_path):
        with pytest.raises(ConfigurationError) as exc_info:
            from_file_pairs(str(tmp_path / "*_{1,2}.fastq.gz"))
        assert exc_info.value.parameter == "input"

    def test_incomplete_pairs_are_skipped(self, tmp_path):
        write_read_pairs(tmp_path, ["A"])
        (tmp_path / "B_1.fastq.gz").write_bytes(b"")

        groups = group_file_pairs(str(tmp_path / "*_{1,2}.fastq.gz"))

        assert list(groups) == ["A"]

    def test_single_end(self, tmp_path):
        pattern = write_read_pairs(tmp_path, ["S1", "S2", "S3"], single_end=True)

        items = list(from_file_pairs(pattern, size=1).subscribe())

        assert [item.meta.id for item in items] == ["S1", "S2", "S3"]
        assert all(item.meta.single_end for item in items)
        assert all(len(item.files()) == 1 for item in items)

    def test_unrelated_files_ignored(self, tmp_path):
        write_read_pairs(tmp_path, ["A"])
        (tmp_path / "notes.txt").write_text("not reads")

        groups = group_file_pairs(str(tmp_path / "*_{1,2}.fastq.gz"))

        assert list(groups) == ["A"]

    def test_sample_directories(self, tmp_path):
        for sample in ("A", "B"):
            (tmp_path / sample).mkdir()
            for mate in (1, 2):
                (tmp_path / sample / f"reads_{mate}.fq").write_bytes(b"")

        groups = group_file_pairs(str(tmp_path / "*" / "reads_{1,2}.fq"))

        assert list(groups) == ["A", "B"]
        assert [f.name for f in groups["A"]] == ["reads_1.fq", "reads_2.fq"]
        assert all(f.parent.name == "B" for f in groups["B"])

    def test_repeated_wildcard_text_in_directory_and_name(self, tmp_path):
        (tmp_path / "S1").mkdir()
        for mate in (1, 2):
            (tmp_path / "S1" / f"S1_{mate}.fq").write_bytes(b"")

        groups = group_file_pairs(str(tmp_path / "*" / "*_{1,2}.fq"))

        assert list(groups) == ["S1"]

    def test_invalid_size(self, tmp_path):
        with pytest.raises(ValueError, match="at least 1"):
            from_file_pairs(str(tmp_path / "*.fq"), size=0)
