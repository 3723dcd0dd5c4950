"""Unit tests for the workloader CLI."""

from __future__ import annotations

import copy
import json
import logging
from collections.abc import Generator
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from typer.testing import CliRunner

from workloader import cli
from workloader.apply import EXIT_MAX_EXCEEDED
from workloader.csv_parser import write_csv

runner = CliRunner()

LABELS = [
    {"href": "/orgs/1/labels/1", "key": "role", "value": "test"},
    {"href": "/orgs/1/labels/2", "key": "role", "value": "prod"},
]

WORKLOADS = [
    {
        "href": "/orgs/1/workloads/1",
        "hostname": "db1",
        "labels": [{"href": "/orgs/1/labels/1"}],
        "ven": {"href": "/orgs/1/vens/1"},
        "enforcement_mode": "idle",
    },
    {
        "href": "/orgs/1/workloads/2",
        "hostname": "db2",
        "labels": [{"href": "/orgs/1/labels/1"}],
    },
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Point configuration at the environment and reset logging afterwards."""
    for name in ("API_USER", "API_KEY", "ORG", "PORT", "CONFIG_FILE"):
        monkeypatch.delenv(f"WORKLOADER_{name}", raising=False)
    monkeypatch.setenv("WORKLOADER_FQDN", "pce.test")
    yield
    logger = logging.getLogger("workloader")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def pce(mock_client: MagicMock, monkeypatch: pytest.MonkeyPatch) -> MagicMock:
    """Route CLI commands to the mock client."""
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=None)
    mock_client.list_labels = AsyncMock(return_value=copy.deepcopy(LABELS))
    mock_client.list_workloads = AsyncMock(return_value=copy.deepcopy(WORKLOADS))
    monkeypatch.setattr(cli, "_open_client", lambda settings: mock_client)
    return mock_client


def invoke(temp_dir: Path, *args: str) -> Any:
    """Run the CLI with the config and log files in temp_dir."""
    base = ["--config-file", str(temp_dir / "pce.json"), "--log-file", str(temp_dir / "workloader.log")]
    return runner.invoke(cli.app, [*base, *args])


class TestPCEAdd:
    """Test the pce-add command."""

    def test_pce_add_writes_config(self, temp_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test a PCE is stored and becomes the default."""
        monkeypatch.delenv("WORKLOADER_FQDN")

        result = invoke(
            temp_dir,
            "pce-add",
            "--name",
            "lab",
            "--fqdn",
            "pce.lab",
            "--org",
            "2",
            "--api-user",
            "api_1",
            "--api-key",
            "secret",
        )

        assert result.exit_code == 0, result.output
        data = json.loads((temp_dir / "pce.json").read_text())
        assert data["default_pce_name"] == "lab"
        assert data["pces"]["lab"]["org"] == 2
        assert data["pces"]["lab"]["api_key"] == "secret"

    def test_pce_add_stores_typed_key_over_environment(
        self, temp_dir: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test WORKLOADER_ variables do not replace the values given on the command line."""
        monkeypatch.setenv("WORKLOADER_API_KEY", "from-env")
        monkeypatch.setenv("WORKLOADER_ORG", "9")

        result = invoke(
            temp_dir, "pce-add", "--name", "lab", "--fqdn", "pce.lab", "--org", "2", "--api-key", "typed"
        )

        assert result.exit_code == 0, result.output
        stored = json.loads((temp_dir / "pce.json").read_text())["pces"]["lab"]
        assert stored["api_key"] == "typed"
        assert stored["org"] == 2
        assert stored["fqdn"] == "pce.lab"

    def test_missing_configuration_exits_1(self, temp_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test commands fail cleanly without a PCE."""
        monkeypatch.delenv("WORKLOADER_FQDN")

        result = invoke(temp_dir, "wkld-export")

        assert result.exit_code == 1


class TestWorkloadCommands:
    """Test wkld-export and wkld-import through the CLI."""

    def test_wkld_export(self, temp_dir: Path, pce: MagicMock) -> None:
        """Test export writes the output file."""
        output = temp_dir / "out.csv"

        result = invoke(temp_dir, "wkld-export", "--output-file", str(output))

        assert result.exit_code == 0, result.output
        assert output.read_text().startswith("hostname,name,role,app,env,loc")
        assert "started running wkld-export command" in (temp_dir / "workloader.log").read_text()

    def test_wkld_import_dry_run(self, temp_dir: Path, pce: MagicMock) -> None:
        """Test the default run changes nothing."""
        csv_file = write_csv(temp_dir / "in.csv", [["hostname", "role"], ["db1", "prod"]])

        result = invoke(temp_dir, "wkld-import", str(csv_file))

        assert result.exit_code == 0, result.output
        assert "--update-pce" in result.output
        pce.bulk_update_workloads.assert_not_called()

    def test_wkld_import_applies(self, temp_dir: Path, pce: MagicMock) -> None:
        """Test --update-pce --no-prompt applies the update."""
        csv_file = write_csv(temp_dir / "in.csv", [["hostname", "role"], ["db1", "prod"]])

        result = invoke(temp_dir, "--update-pce", "--no-prompt", "wkld-import", str(csv_file))

        assert result.exit_code == 0, result.output
        payload = pce.bulk_update_workloads.await_args.args[0]
        assert payload[0]["labels"] == [{"href": "/orgs/1/labels/2"}]

    def test_prompt_denied(self, temp_dir: Path, pce: MagicMock) -> None:
        """Test answering no leaves the PCE alone."""
        csv_file = write_csv(temp_dir / "in.csv", [["hostname", "role"], ["db1", "prod"]])
        base = ["--config-file", str(temp_dir / "pce.json"), "--log-file", str(temp_dir / "w.log")]

        result = runner.invoke(cli.app, [*base, "--update-pce", "wkld-import", str(csv_file)], input="no\n")

        assert result.exit_code == 0, result.output
        pce.bulk_update_workloads.assert_not_called()

    def test_max_update_exceeded_exits_100(self, temp_dir: Path, pce: MagicMock) -> None:
        """Test exceeding --max-update exits with the dedicated code."""
        csv_file = write_csv(
            temp_dir / "in.csv", [["hostname", "role"], ["db1", "prod"], ["db2", "prod"]]
        )

        result = invoke(
            temp_dir, "--update-pce", "--no-prompt", "wkld-import", str(csv_file), "--max-update", "1"
        )

        assert result.exit_code == EXIT_MAX_EXCEEDED
        pce.bulk_update_workloads.assert_not_called()

    def test_invalid_row_exits_1(self, temp_dir: Path, pce: MagicMock) -> None:
        """Test an invalid CSV value stops the command."""
        csv_file = write_csv(temp_dir / "in.csv", [["hostname", "enforcement"], ["db1", "strict"]])

        result = invoke(temp_dir, "wkld-import", str(csv_file), "--allow-enforcement-changes")

        assert result.exit_code == 1
        assert "csv line 2" in (temp_dir / "workloader.log").read_text()


class TestOtherCommands:
    """Test unpair and mode through the CLI."""

    def test_unpair_requires_selection(self, temp_dir: Path, pce: MagicMock) -> None:
        """Test unpair without labels, hours or href file fails."""
        result = invoke(temp_dir, "unpair", "--restore", "saved")

        assert result.exit_code == 1
        pce.unpair_workloads.assert_not_called()

    def test_mode_missing_header(self, temp_dir: Path, pce: MagicMock) -> None:
        """Test mode requires href and state columns."""
        csv_file = write_csv(temp_dir / "mode.csv", [["href"], ["/orgs/1/workloads/1"]])

        result = invoke(temp_dir, "mode", str(csv_file))

        assert result.exit_code == 1

    def test_mode_applies(self, temp_dir: Path, pce: MagicMock) -> None:
        """Test mode sends the new enforcement state."""
        csv_file = write_csv(temp_dir / "mode.csv", [["href", "state"], ["/orgs/1/workloads/1", "full"]])

        result = invoke(
            temp_dir,
            "--update-pce",
            "--no-prompt",
            "mode",
            str(csv_file),
            "--output-file",
            str(temp_dir / "report.csv"),
        )

        assert result.exit_code == 0, result.output
        pce.bulk_update_workloads.assert_awaited_once_with(
            [{"href": "/orgs/1/workloads/1", "enforcement_mode": "full"}]
        )


class TestPolicyObjectCommands:
    """Test label and IP list commands through the CLI."""

    def test_ipl_export(self, temp_dir: Path, pce: MagicMock) -> None:
        """Test ipl-export writes one row per IP list."""
        pce.list_ip_lists = AsyncMock(
            return_value=[{"href": "/orgs/1/sec_policy/draft/ip_lists/1", "name": "Lab", "ip_ranges": []}]
        )
        output = temp_dir / "ipl.csv"

        result = invoke(temp_dir, "ipl-export", "--output-file", str(output))

        assert result.exit_code == 0, result.output
        assert "Exported 1 ip lists" in result.output
        assert output.read_text().splitlines()[1].startswith("Lab,")

    def test_label_import_applies(self, temp_dir: Path, pce: MagicMock) -> None:
        """Test label-import renames a label in place."""
        csv_file = write_csv(
            temp_dir / "labels.csv",
            [["href", "key", "value"], ["/orgs/1/labels/1", "role", "staging"]],
        )

        result = invoke(temp_dir, "--update-pce", "--no-prompt", "label-import", str(csv_file))

        assert result.exit_code == 0, result.output
        pce.update_label.assert_awaited_once_with("/orgs/1/labels/1", {"value": "staging"})
        pce.create_label.assert_not_called()
