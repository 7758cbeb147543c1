"""
Tests for the command line entry point.
"""

import json
from datetime import date

import pytest

from arena.cli import build_parser, main


class TestParser:

    def test_backtest_arguments(self):
        args = build_parser().parse_args(
            ["backtest", "--start", "2024-01-01", "--end", "2024-01-31", "--interval", "60", "--no-tools"]
        )
        assert args.command == "backtest"
        assert args.start == date(2024, 1, 1)
        assert args.end == date(2024, 1, 31)
        assert args.interval == 60
        assert args.no_tools
        assert not args.no_enrich
        assert not args.keep_ledgers

    def test_invalid_date(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["backtest", "--start", "01/01/2024", "--end", "2024-01-31"])

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_serve_defaults(self):
        args = build_parser().parse_args(["serve"])
        assert args.host is None
        assert args.port is None
        assert not args.reload


class TestMain:

    def test_inverted_range_is_a_usage_error(self):
        with pytest.raises(SystemExit) as exc:
            main(["backtest", "--start", "2024-01-10", "--end", "2024-01-02"])
        assert exc.value.code == 2

    def test_seed(self, tmp_path, capsys):
        url = f"sqlite+aiosqlite:///{tmp_path / 'arena.db'}"

        assert main(["--database-url", url, "seed"]) == 0
        assert "Created 3 agents" in capsys.readouterr().out

        assert main(["--database-url", url, "seed"]) == 0
        assert "Created 0 agents" in capsys.readouterr().out

    def test_backtest(self, tmp_path, capsys):
        url = f"sqlite+aiosqlite:///{tmp_path / 'arena.db'}"

        code = main(["--database-url", url, "backtest", "--start", "2024-01-02", "--end", "2024-01-02"])

        assert code == 0
        report = json.loads(capsys.readouterr().out)
        assert report["status"] == "COMPLETED"
        assert report["summary"]["trading_days"] == 1
