"""Tests for configuration loading and merging."""

import json

import pytest

from seqflow.config import load_config, merge_config


@pytest.mark.unit
class TestLoadConfig:
    """Test the packaged defaults and user configuration files."""

    def test_defaults(self):
        config = load_config()

        assert config["outdir"] == "results"
        assert config["error_strategy"] == "finish"
        assert config["max_retries"] == 3
        assert config["max_time"] == "240.h"
        assert config["backend"] == "local"
        assert config["labels"]["process_medium"] == {"cpus": 6, "memory": "36.GB", "time": "8.h"}
        assert config["labels"]["process_long"] == {"time": "20.h"}
        assert config["ext_args"]["BWA_MEM"] == "-M"

    def test_user_file_merged_over_defaults(self, tmp_path):
        user = tmp_path / "seqflow.json"
        user.write_text(
            json.dumps(
                {
                    "max_retries": 1,
                    "labels": {"process_high": {"cpus": 32}},
                    "containers": {"BWA_MEM": "local/bwa:dev"},
                }
            )
        )

        config = load_config(str(user))

        assert config["max_retries"] == 1
        assert config["labels"]["process_high"] == {"cpus": 32, "memory": "72.GB", "time": "16.h"}
        assert config["labels"]["process_low"]["cpus"] == 2
        assert config["containers"] == {"BWA_MEM": "local/bwa:dev"}
        assert config["outdir"] == "results"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError, match="not found"):
            load_config(str(tmp_path / "missing.json"))

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{not json")
        with pytest.raises(ValueError, match="Error parsing JSON"):
            load_config(str(path))

    def test_non_object_json(self, tmp_path):
        path = tmp_path / "list.json"
        path.write_text("[1, 2]")
        with pytest.raises(ValueError, match="must contain a JSON object"):
            load_config(str(path))


@pytest.mark.unit
def test_merge_config_does_not_mutate_base():
    base = {"a": 1, "nested": {"x": 1, "y": 2}}

    merged = merge_config(base, {"nested": {"y": 3}, "b": [1]})

    assert merged == {"a": 1, "nested": {"x": 1, "y": 3}, "b": [1]}
    assert base == {"a": 1, "nested": {"x": 1, "y": 2}}
