"""Unit tests for mtr_etl.cli (pipeline stages mocked)."""

from __future__ import annotations

import json
from unittest.mock import MagicMock, patch

from click.testing import CliRunner

from mtr_etl.cli import main


def _fail_two(conn, settings, counters, progress_every=10):
    counters.processed = 3
    counters.errors = 2


def _ok(conn, settings, counters, progress_every=10):
    counters.processed = 5


class TestCli:
    @patch("mtr_etl.cli.connect", return_value=MagicMock())
    @patch("mtr_etl.cli.run_normalization", side_effect=_fail_two)
    def test_errors_exit_non_zero(self, run, _connect, tmp_path):
        result = CliRunner().invoke(main, [
            "--mode", "mtr_normalize", "--db-dsn", "dbname=x",
            "--run-id", "r1", "--reports-dir", str(tmp_path),
        ])
        assert result.exit_code == 1
        report = json.loads((tmp_path / "r1.json").read_text())
        assert report["mode"] == "mtr_normalize"
        assert report["counters"]["errors"] == 2

    @patch("mtr_etl.cli.connect", return_value=MagicMock())
    @patch("mtr_etl.cli.run_normalization", side_effect=_fail_two)
    def test_allow_errors(self, run, _connect, tmp_path):
        result = CliRunner().invoke(main, [
            "--mode", "mtr_normalize", "--db-dsn", "dbname=x",
            "--reports-dir", str(tmp_path), "--allow-errors",
        ])
        assert result.exit_code == 0

    @patch("mtr_etl.cli.connect", return_value=MagicMock())
    @patch("mtr_etl.cli.run_normalization", side_effect=_ok)
    def test_overrides_reach_stage(self, run, _connect, tmp_path):
        result = CliRunner().invoke(main, [
            "--mode", "mtr_normalize", "--db-dsn", "dbname=x",
            "--batch-size", "7", "--no-drain", "--reports-dir", str(tmp_path),
        ])
        assert result.exit_code == 0, result.output
        settings = run.call_args.args[1]
        assert settings.batch_size == 7
        assert settings.drain is False
        assert "Done." in result.output

    @patch("mtr_etl.cli.connect", return_value=MagicMock())
    @patch("mtr_etl.cli.run_setup")
    def test_setup_today(self, run, _connect, tmp_path):
        result = CliRunner().invoke(main, [
            "--mode", "mtr_setup", "--db-dsn", "dbname=x",
            "--today", "2024-02-01", "--reports-dir", str(tmp_path),
        ])
        assert result.exit_code == 0, result.output
        assert run.call_args.kwargs["today"].isoformat() == "2024-02-01"

    def test_dsn_from_environment(self, tmp_path):
        with patch("mtr_etl.cli.connect", return_value=MagicMock()), \
                patch("mtr_etl.cli.run_reference_load") as run:
            result = CliRunner().invoke(
                main,
                ["--mode", "ref_load", "--reports-dir", str(tmp_path)],
                env={"MTR_ETL_DB_DSN": "dbname=fromenv"},
            )
        assert result.exit_code == 0, result.output
        assert run.called

    def test_unknown_mode(self):
        result = CliRunner().invoke(main, ["--mode", "nope", "--db-dsn", "x"])
        assert result.exit_code != 0
