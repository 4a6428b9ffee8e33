"""Tests for argument parsing and exit codes."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from telemetry_collector import cli, collector
from telemetry_collector.session import HardwareSessionError


class TestParseArgs:
    def test_defaults(self) -> None:
        config = cli.parse_args([])
        assert config.output_dir == Path.cwd()
        assert config.duration == 0
        assert config.interval == 1.0
        assert config.flush_interval == 15.0
        assert config.output_format == "jsonl"
        assert config.collect_processes is True
        assert config.use_nvml is True
        assert config.poll_timeout is None

    def test_flags(self, tmp_path: Path) -> None:
        config = cli.parse_args(
            [
                "-o", str(tmp_path),
                "-d", "1.5",
                "-i", "0.5",
                "--flush-interval", "30",
                "-f", "csv",
                "--no-processes",
                "--no-nvml",
                "--poll-timeout", "2",
            ]
        )
        assert config.output_dir == tmp_path
        assert config.duration == 1.5
        assert config.interval == 0.5
        assert config.flush_interval == 30.0
        assert config.output_format == "csv"
        assert config.collect_processes is False
        assert config.use_nvml is False
        assert config.poll_timeout == 2.0

    def test_unknown_format_rejected(self) -> None:
        with pytest.raises(SystemExit):
            cli.parse_args(["-f", "parquet"])


class TestMain:
    def test_invalid_interval_exits_2(self, capsys: pytest.CaptureFixture[str]) -> None:
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["-i", "0"])
        assert exc_info.value.code == 2
        assert "interval must be positive" in capsys.readouterr().err

    def test_missing_cwd_exits_1(self, monkeypatch: pytest.MonkeyPatch) -> None:
        def gone() -> str:
            raise FileNotFoundError(2, "No such file or directory")

        monkeypatch.setattr(os, "getcwd", gone)
        with pytest.raises(SystemExit) as exc_info:
            cli.main([])
        assert exc_info.value.code == 1

    def test_session_failure_exits_1(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
    ) -> None:
        def fail(config) -> int:
            raise HardwareSessionError("no sensor backend could be opened")

        monkeypatch.setattr(collector, "run_collector", fail)
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["-o", str(tmp_path)])
        assert exc_info.value.code == 1
        assert "no sensor backend" in capsys.readouterr().err

    def test_success(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        seen = []
        monkeypatch.setattr(collector, "run_collector", lambda config: seen.append(config) or 0)
        cli.main(["-o", str(tmp_path), "--no-processes"])
        assert seen[0].collect_processes is False
