"""Tests for the schema registry, sample records and configuration."""

from __future__ import annotations

import pytest

from telemetry_collector.config import CollectorConfig
from telemetry_collector.schema import (
    REQUIRED_HARDWARE_FIELDS,
    MetricSample,
    ProcessSample,
    SchemaRegistry,
    format_timestamp,
)


class TestSchemaRegistry:
    def test_required_fields_first(self) -> None:
        registry = SchemaRegistry(REQUIRED_HARDWARE_FIELDS)
        assert registry.fields == ["timestamp", "cpu_usage_pct", "ram_used_mb"]

    def test_grows_in_observation_order(self) -> None:
        registry = SchemaRegistry(["a"])
        assert registry.observe(["b", "a", "c"]) == ["b", "c"]
        assert registry.observe(["c"]) == []
        assert registry.fields == ["a", "b", "c"]
        assert "b" in registry
        assert len(registry) == 3


class TestSamples:
    def test_timestamp_format(self) -> None:
        assert format_timestamp(1_700_000_000.25) == "2023-11-14T22:13:20.250+00:00"

    def test_metric_row_projection(self) -> None:
        sample = MetricSample(timestamp=0.0, fields={"cpu_usage_pct": 3.0, "extra": 1})
        assert sample.to_row(["timestamp", "cpu_usage_pct", "fan_rpm"]) == {
            "timestamp": "1970-01-01T00:00:00.000+00:00",
            "cpu_usage_pct": 3.0,
            "fan_rpm": None,
        }

    def test_process_row(self) -> None:
        sample = ProcessSample(0.0, "python", 1, 2.0, 3.0, 4.0, 5.0)
        row = sample.to_row()
        assert list(row) == list(ProcessSample.COLUMNS)
        assert row["gpu_shared_mb"] == 0.0


class TestCollectorConfig:
    def test_defaults(self, tmp_path) -> None:
        config = CollectorConfig(output_dir=str(tmp_path))
        assert config.output_dir == tmp_path
        assert config.duration == 0

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"output_format": "xml"},
            {"interval": 0},
            {"flush_interval": -1},
            {"duration": -5},
            {"poll_timeout": 0},
        ],
    )
    def test_rejects_invalid(self, tmp_path, kwargs) -> None:
        with pytest.raises(ValueError):
            CollectorConfig(output_dir=tmp_path, **kwargs)
