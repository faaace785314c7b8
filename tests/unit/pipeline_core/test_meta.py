"""Tests for SampleMeta."""

import pytest

from seqflow.pipeline_core.meta import SampleMeta, sample_id


@pytest.mark.unit
class TestSampleMeta:
    """Test the immutable per-sample label record."""

    def test_mapping_interface(self):
        meta = SampleMeta.create("A", single_end=True, lane=3, center="x")

        assert meta["id"] == "A"
        assert meta.single_end is True
        assert meta.lane == 3
        assert list(meta) == ["id", "single_end", "center", "lane"]
        assert len(meta) == 4
        assert dict(meta) == {"id": "A", "single_end": True, "center": "x", "lane": 3}

    def test_equality_ignores_attribute_order(self):
        first = SampleMeta.create("A", lane=1, center="x")
        second = SampleMeta.create("A", center="x", lane=1)

        assert first == second
        assert hash(first) == hash(second)

    def test_immutable(self):
        meta = SampleMeta("A")
        with pytest.raises(AttributeError):
            meta.id = "B"

    @pytest.mark.parametrize("bad_id", ["", "   ", None, 7])
    def test_invalid_id(self, bad_id):
        with pytest.raises(ValueError, match="non-empty string"):
            SampleMeta(bad_id)

    def test_non_scalar_attribute_rejected(self):
        with pytest.raises(ValueError, match="must be a scalar"):
            SampleMeta.create("A", lanes=[1, 2])

    def test_reserved_attribute_rejected(self):
        with pytest.raises(ValueError, match="Duplicate sample attribute"):
            SampleMeta("A", extra=(("id", "B"),))

    def test_unknown_attribute(self):
        meta = SampleMeta("A")
        with pytest.raises(KeyError):
            meta["lane"]
        with pytest.raises(AttributeError):
            meta.lane

    def test_sample_id_helper(self):
        assert sample_id(SampleMeta("A")) == "A"
        assert sample_id(None) is None
