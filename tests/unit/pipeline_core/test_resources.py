"""Tests for resource escalation and retry classification."""

from unittest.mock import patch

import pytest

from seqflow.pipeline_core.resources import (
    GB,
    MB,
    RETRYABLE_EXIT_CODES,
    ErrorAction,
    ResourceRequest,
    RetryPolicy,
    classify_exit,
    detect_host_resources,
    effective_resource,
    format_duration,
    format_memory,
    parse_duration,
    parse_memory,
)

HOUR = 3600

BASE = ResourceRequest(cpus=2, memory=12 * GB, time=4 * HOUR)
CEILING = ResourceRequest(cpus=16, memory=128 * GB, time=240 * HOUR)


@pytest.mark.unit
class TestParsing:
    """Test memory and duration parsing."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("12.GB", 12 * GB),
            ("12 GB", 12 * GB),
            ("512MB", 512 * MB),
            ("1.5.GB", int(1.5 * GB)),
            ("6.gb", 6 * GB),
            (1024, 1024),
        ],
    )
    def test_parse_memory(self, value, expected):
        assert parse_memory(value) == expected

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("4.h", 4 * HOUR),
            ("30m", 1800),
            ("2d", 2 * 86400),
            ("1h 30m", 5400),
            ("240.h", 240 * HOUR),
            (90, 90),
        ],
    )
    def test_parse_duration(self, value, expected):
        assert parse_duration(value) == expected

    @pytest.mark.parametrize("value", ["", "twelve GB", "12.XB", "-1.GB"])
    def test_invalid_memory(self, value):
        with pytest.raises(ValueError, match="Invalid memory value"):
            parse_memory(value)

    @pytest.mark.parametrize("value", ["", "4 hours", "h4", "4.h extra"])
    def test_invalid_duration(self, value):
        with pytest.raises(ValueError, match="Invalid duration value"):
            parse_duration(value)

    def test_formatting(self):
        assert format_memory(36 * GB) == "36 GB"
        assert format_memory(int(1.5 * GB)) == "1.5 GB"
        assert format_memory(100) == "100 B"
        assert format_duration(12 * HOUR) == "12h"
        assert format_duration(5400) == "1h 30m"
        assert format_duration(4.25) == "4.2s"


@pytest.mark.unit
class TestResourceRequest:
    """Test the resource request value type."""

    def test_from_config(self):
        request = ResourceRequest.from_config({"cpus": 6, "memory": "36.GB", "time": "8.h"})
        assert request == ResourceRequest(6, 36 * GB, 8 * HOUR)
        assert request.memory_gb == 36
        assert request.memory_mb == 36 * 1024

    @pytest.mark.parametrize("cpus,memory,time", [(0, GB, HOUR), (1, 0, HOUR), (1, GB, 0)])
    def test_rejects_non_positive(self, cpus, memory, time):
        with pytest.raises(ValueError, match="must be positive"):
            ResourceRequest(cpus, memory, time)

    def test_str(self):
        assert str(BASE) == "cpus=2, memory=12 GB, time=4h"


@pytest.mark.unit
class TestEffectiveResource:
    """Test attempt based resource escalation."""

    def test_first_attempt_is_base(self):
        assert effective_resource(1, BASE, CEILING) == BASE

    def test_second_attempt_doubles(self):
        assert effective_resource(2, BASE, CEILING) == ResourceRequest(4, 24 * GB, 8 * HOUR)

    def test_memory_and_cpus_clamped(self):
        # 20 * 4h = 80h stays below the 240h time ceiling
        result = effective_resource(20, BASE, CEILING)
        assert result == ResourceRequest(16, 128 * GB, 80 * HOUR)

    def test_every_component_clamped(self):
        assert effective_resource(100, BASE, CEILING) == CEILING

    def test_monotonic_and_bounded(self):
        previous = None
        for attempt in range(1, 80):
            result = effective_resource(attempt, BASE, CEILING)
            assert result.cpus <= CEILING.cpus
            assert result.memory <= CEILING.memory
            assert result.time <= CEILING.time
            if previous is not None:
                assert result.cpus >= previous.cpus
                assert result.memory >= previous.memory
                assert result.time >= previous.time
            previous = result

    def test_base_above_ceiling_is_clamped(self):
        big = ResourceRequest(64, 512 * GB, 300 * HOUR)
        assert effective_resource(1, big, CEILING) == CEILING

    def test_attempt_must_be_positive(self):
        with pytest.raises(ValueError, match="start at 1"):
            effective_resource(0, BASE, CEILING)


@pytest.mark.unit
class TestClassifyExit:
    """Test exit status classification."""

    def test_success(self):
        assert classify_exit(0) is None
        assert classify_exit(0, ignore_errors=True) is None

    @pytest.mark.parametrize("status", [130, 137, 139, 140, 143, 145, 104])
    def test_retryable(self, status):
        assert classify_exit(status) is ErrorAction.RETRY

    @pytest.mark.parametrize("status", [1, 2, 127, 129, 146, 255])
    def test_fatal(self, status):
        assert classify_exit(status) is ErrorAction.FINISH

    @pytest.mark.parametrize("status", [1, 137])
    def test_ignore_label_wins(self, status):
        assert classify_exit(status, ignore_errors=True) is ErrorAction.IGNORE

    def test_retryable_set(self):
        assert RETRYABLE_EXIT_CODES == frozenset(range(130, 146)) | {104}


@pytest.mark.unit
class TestRetryPolicy:
    """Test retry decisions."""

    def test_defaults(self):
        policy = RetryPolicy()
        assert policy.max_retries == 3
        assert policy.max_attempts == 4

    def test_retries_until_limit(self):
        policy = RetryPolicy(max_retries=2)
        assert policy.decide(ErrorAction.RETRY, attempt=1) is ErrorAction.RETRY
        assert policy.decide(ErrorAction.RETRY, attempt=2) is ErrorAction.RETRY
        assert policy.decide(ErrorAction.RETRY, attempt=3) is ErrorAction.FINISH

    def test_non_retryable_actions_pass_through(self):
        policy = RetryPolicy()
        assert policy.decide(ErrorAction.FINISH, attempt=1) is ErrorAction.FINISH
        assert policy.decide(ErrorAction.IGNORE, attempt=1) is ErrorAction.IGNORE

    def test_error_budget(self):
        policy = RetryPolicy(max_retries=5, max_errors=2)
        assert policy.decide(ErrorAction.RETRY, attempt=1, errors_so_far=2) is ErrorAction.RETRY
        assert policy.decide(ErrorAction.RETRY, attempt=1, errors_so_far=3) is ErrorAction.FINISH

    def test_no_retries(self):
        assert RetryPolicy(max_retries=0).decide(ErrorAction.RETRY, 1) is ErrorAction.FINISH


@pytest.mark.unit
class TestDetectHostResources:
    """Test host resource detection."""

    def test_uses_psutil_without_cgroup_limit(self):
        with patch("seqflow.pipeline_core.resources._cgroup_memory_limit", return_value=None), patch(
            "seqflow.pipeline_core.resources.psutil"
        ) as mock_psutil:
            mock_psutil.cpu_count.return_value = 8
            mock_psutil.virtual_memory.return_value.total = 64 * GB
            result = detect_host_resources("10.h")

        assert result == ResourceRequest(8, 64 * GB, 10 * HOUR)

    def test_prefers_cgroup_limit(self):
        with patch(
            "seqflow.pipeline_core.resources._cgroup_memory_limit", return_value=4 * GB
        ), patch("seqflow.pipeline_core.resources.psutil") as mock_psutil:
            mock_psutil.cpu_count.return_value = 2
            result = detect_host_resources()

        assert result.memory == 4 * GB
        assert result.time == 240 * HOUR
        mock_psutil.virtual_memory.assert_not_called()
