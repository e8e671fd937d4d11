"""Tests for the helix-router CLI."""

from __future__ import annotations

import json
from unittest.mock import patch

import pytest

from helix_router import cli
from helix_router.routing.providers import RouteTier
from helix_router.routing.stats import RoutingLogEntry


def _write_log(path, scores):
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w") as fh:
        for i, score in enumerate(scores):
            entry = RoutingLogEntry(
                timestamp="2026-01-01T00:00:00+00:00",
                request_id=f"hr_{i}",
                score=score,
                tier=RouteTier.PRO if score >= 75 else RouteTier.MID,
                model_used="m",
                task_type="other",
                confidence=0.9,
                tokens_in=1,
                tokens_out=1,
                total_latency_ms=100,
                evaluation_latency_ms=10,
                forwarding_latency_ms=90,
                cached=i % 2 == 1,
                prompt_hash="x",
            )
            fh.write(entry.to_json_line())


@pytest.fixture(autouse=True)
def _settings(settings):
    with patch("helix_router.cli.get_settings", return_value=settings):
        yield


class TestCli:
    def test_no_command_prints_help(self, capsys):
        assert cli.main([]) == 0
        assert "helix-router" in capsys.readouterr().out

    def test_stats_replays_log(self, settings, capsys):
        _write_log(settings.routing_log_path, [80, 40])

        assert cli.main(["stats", "--json"]) == 0

        stats = json.loads(capsys.readouterr().out)
        assert stats["totalRequests"] == 2
        assert stats["avgScore"] == 60
        assert stats["routeCounts"] == {"pro": 1, "mid": 1, "low": 0}
        assert stats["cacheHitRate"] == 50

    def test_stats_table(self, settings, capsys):
        _write_log(settings.routing_log_path, [50])

        assert cli.main(["stats"]) == 0
        assert "Total Requests: 1" in capsys.readouterr().out

    def test_stats_without_log(self, capsys):
        assert cli.main(["stats"]) == 1
        assert "No routing log" in capsys.readouterr().err

    def test_config_masks_keys(self, capsys):
        assert cli.main(["config"]) == 0

        out = capsys.readouterr().out
        assert "backend-pro" in out
        assert "sk-pro" not in out
        assert "PRO threshold: 75" in out

    def test_start_runs_uvicorn(self):
        with patch("helix_router.cli.uvicorn.run") as run:
            assert cli.main(["start", "--port", "9999"]) == 0

        _, kwargs = run.call_args
        assert run.call_args.args == ("helix_router.main:create_app",)
        assert kwargs["factory"] is True
        assert kwargs["port"] == 9999
        assert kwargs["host"] == "127.0.0.1"
