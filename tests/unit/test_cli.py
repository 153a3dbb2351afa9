"""Unit tests for clubhouse_sync.cli (in-memory store, CSV sources)."""

from __future__ import annotations

import json
import textwrap
from pathlib import Path

import pytest
from click.testing import CliRunner

from clubhouse_sync.cli import main


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    (tmp_path / "rankings.csv").write_text(
        "Rank,Name,Country\n1,Scottie Scheffler,USA\n2,Rory McIlroy,NIR\n3,Total Points,\n",
        encoding="utf-8",
    )
    p = tmp_path / "engine.yml"
    p.write_text(textwrap.dedent(f"""\
        report_dir: {tmp_path / "reports"}
        rejects_dir: {tmp_path / "rejects"}
        sources:
          - id: curated
            kind: ranking
            path: rankings.csv
    """), encoding="utf-8")
    return p


def _invoke(*args: str):
    return CliRunner().invoke(main, list(args), env={"CLUBHOUSE_SYNC_DB_DSN": ""})


class TestCli:
    def test_single_job(self, config_path):
        result = _invoke("--mode", "ranking_refresh", "--config", str(config_path))
        assert result.exit_code == 0, result.output
        assert "ranking_refresh finished: success" in result.output
        assert "created:        2" in result.output
        assert "skipped:        1" in result.output
        assert len(list((config_path.parent / "reports").glob("*.json"))) == 1

    def test_manual_update_runs_all_kinds_in_order(self, config_path):
        result = _invoke("--mode", "manual_update", "--config", str(config_path))
        assert result.exit_code == 0, result.output
        ranking = result.output.index("ranking_refresh finished")
        lifecycle = result.output.index("lifecycle_sweep finished")
        live = result.output.index("live_score_refresh finished")
        assert ranking < lifecycle < live

    def test_status_without_runs(self, config_path):
        result = _invoke("--mode", "status", "--config", str(config_path))
        assert result.exit_code == 0, result.output
        assert "ranking_refresh: never run" in result.output
        assert "active competitions: 0" in result.output

    def test_health_without_probe(self, config_path):
        result = _invoke("--mode", "health", "--config", str(config_path))
        assert result.exit_code == 0, result.output
        out = result.output
        payload = json.loads(out[out.index("{"):out.rindex("}") + 1])
        assert payload["status"] == "healthy"
        assert payload["entity_count"] == 0

    def test_invalid_config_exits_2(self, tmp_path):
        bad = tmp_path / "bad.yml"
        bad.write_text("matching:\n  fuzzy_threshold: 3\n", encoding="utf-8")
        result = _invoke("--mode", "status", "--config", str(bad))
        assert result.exit_code == 2
        assert "invalid config" in result.output

    def test_unknown_mode_rejected(self, config_path):
        result = _invoke("--mode", "odds_refresh", "--config", str(config_path))
        assert result.exit_code != 0

    def test_config_required_without_default(self, tmp_path, monkeypatch):
        monkeypatch.setattr("clubhouse_sync.cli.DEFAULT_CONFIG_PATH", tmp_path / "missing.yml")
        result = _invoke("--mode", "status")
        assert result.exit_code == 2
        assert "--config is required" in result.output
