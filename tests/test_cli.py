"""Tests for the listing-sync command line."""

from __future__ import annotations

import json
from unittest.mock import patch

import pytest

from conftest import FakeListingClient, make_listing
from listing_sync import cli
from listing_sync.config_schema import UnifiedConfig
from listing_sync.sync.engine import SyncEngine
from listing_sync.sync.models import RunState, RunStatus


@pytest.fixture
def run_cli(mock_config):
    """Invoke ``cli.main`` against an engine backed by a fake client."""
    client = FakeListingClient(
        pages={
            1: [make_listing("1", "Alpha"), make_listing("2", "Beta")],
            2: [make_listing("3", "Gamma")],
        },
        total=3,
    )
    from_config = SyncEngine.from_config

    def _build(config):
        return from_config(mock_config, client=client)

    def _run(*argv: str) -> int:
        with (
            patch(
                "listing_sync.cli.load_runtime_config",
                return_value=(mock_config, UnifiedConfig(), []),
            ),
            patch("listing_sync.cli.setup_logging"),
            patch.object(cli.SyncEngine, "from_config", side_effect=_build),
        ):
            return cli.main(list(argv))

    return _run


def _engine(mock_config) -> SyncEngine:
    return SyncEngine.from_config(mock_config, client=FakeListingClient())


class TestParser:
    def test_run_defaults(self):
        args = cli.build_parser().parse_args(["run", "import_all"])
        assert args.action == "import_all"
        assert args.init == "hard"
        assert not args.until_complete

    def test_unknown_action_rejected(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["run", "import_everything"])

    def test_params_from_args(self):
        args = cli.build_parser().parse_args(
            [
                "run",
                "sync_changed",
                "--init",
                "soft",
                "--date",
                "2026-10-01",
                "--phase",
                "import_changed",
            ]
        )
        params = cli._params(args)
        assert params.init_mode.value == "soft"
        assert params.date == "2026-10-01"
        assert params.phase.value == "import_changed"

    def test_resume_init_means_no_mode(self):
        args = cli.build_parser().parse_args(
            ["run", "import_all", "--init", "resume", "--page", "2"]
        )
        params = cli._params(args)
        assert params.init_mode is None
        assert params.page == 2


class TestCommands:
    def test_run_single_step(self, run_cli, capsys):
        code = run_cli("run", "import_all", "--json")

        assert code == cli.EXIT_OK
        data = json.loads(capsys.readouterr().out)
        assert data["outcome"] == "continue"
        assert data["next"] == {
            "action": "import_all",
            "phase": "import_pages",
            "page": 2,
        }

    def test_run_until_complete_reports_progress(self, run_cli, capsys):
        code = run_cli("run", "import_all", "--until-complete")

        assert code == cli.EXIT_OK
        captured = capsys.readouterr()
        assert "Outcome: complete" in captured.out
        assert "[1] import/update: 2/3" in captured.err
        assert "[2] import/update: 3/3" in captured.err

    def test_run_max_steps(self, run_cli, capsys):
        code = run_cli(
            "run", "import_all", "--until-complete", "--max-steps", "1", "--json"
        )

        assert code == cli.EXIT_OK
        assert json.loads(capsys.readouterr().out)["outcome"] == "continue"

    def test_failed_run_exit_code(self, run_cli, capsys):
        code = run_cli("run", "import_single", "--listing-id", "abc")

        assert code == cli.EXIT_FAILED
        assert "No or invalid listing ID given" in capsys.readouterr().out

    def test_resume_after_step(self, run_cli, capsys):
        run_cli("run", "import_all")
        capsys.readouterr()

        code = run_cli("resume", "--json")

        assert code == cli.EXIT_OK
        data = json.loads(capsys.readouterr().out)
        assert data["outcome"] == "complete"
        assert data["processed"] == 3

    def test_status_json(self, run_cli, capsys):
        code = run_cli("status", "--json")

        assert code == cli.EXIT_OK
        assert json.loads(capsys.readouterr().out)["status"] == "free"

    def test_force_cancel(self, run_cli, mock_config, capsys):
        engine = _engine(mock_config)
        engine.states.save(RunState(status=RunStatus.ERROR))
        engine.cache.close()
        engine.store.close()

        code = run_cli("cancel", "--force")

        assert code == cli.EXIT_OK
        assert "Status: free:canceled" in capsys.readouterr().out

    def test_purge_cache(self, run_cli, capsys):
        run_cli("run", "import_all", "--until-complete")
        capsys.readouterr()

        code = run_cli("purge-cache", "--json")

        assert code == cli.EXIT_OK
        data = json.loads(capsys.readouterr().out)
        assert data["deleted"] == 2
        assert data["outcome"] == "complete"

    def test_configuration_error(self, capsys):
        with patch(
            "listing_sync.cli.load_runtime_config",
            side_effect=ValueError("API URL not found"),
        ):
            code = cli.main(["status"])

        assert code == cli.EXIT_CONFIG
        assert "Configuration error: API URL not found" in capsys.readouterr().err

    def test_init_writes_config(self, tmp_path, capsys):
        target = tmp_path / "config.yml"
        with (
            patch("listing_sync.cli.ensure_config", return_value=target),
            patch("listing_sync.cli.setup_logging"),
        ):
            code = cli.main(["init"])

        assert code == cli.EXIT_OK
        assert str(target) in capsys.readouterr().out
