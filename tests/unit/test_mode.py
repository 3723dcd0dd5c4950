"""Unit tests for the mode command."""

from __future__ import annotations

import copy
from collections.abc import Callable
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from workloader.apply import ApplyDriver, ApplyState
from workloader.csv_parser import read_csv, write_csv
from workloader.headers import MissingHeaderError
from workloader.mode import OUTPUT_HEADERS, build_diff, current_mode, parse_targets, update_modes
from workloader.reconcile import ReconcileError
from workloader.repository import EntityRepository

W1 = "/orgs/1/workloads/w1"
W2 = "/orgs/1/workloads/w2"

WORKLOADS = [
    {
        "href": W1,
        "hostname": "web1",
        "enforcement_mode": "visibility_only",
        "visibility_level": "flow_summary",
        "ven": {"href": "/orgs/1/vens/1"},
    },
    {"href": W2, "hostname": "umwl1"},
]


@pytest.fixture
def repo() -> EntityRepository:
    """Create a repository with a managed and an unmanaged workload."""
    repo = EntityRepository()
    repo.add_workloads(copy.deepcopy(WORKLOADS))
    return repo


class TestCurrentMode:
    """Test the legacy state names."""

    @pytest.mark.parametrize(
        ("enforcement", "visibility", "expected"),
        [
            ("idle", None, "idle"),
            ("visibility_only", "flow_summary", "build"),
            ("selective", "flow_summary", "test"),
            ("full", "flow_off", "enforced-no"),
            ("full", "flow_drops", "enforced-low"),
            ("full", "flow_summary", "enforced-high"),
        ],
    )
    def test_current_mode(self, enforcement: str, visibility: str | None, expected: str) -> None:
        """Test each enforcement and visibility pair."""
        assert current_mode({"enforcement_mode": enforcement, "visibility_level": visibility}) == expected


class TestParseTargets:
    """Test CSV parsing for mode."""

    def test_parse(self) -> None:
        """Test states are lowercased with their line numbers."""
        targets = parse_targets([["href", "state"], [W1, "Enforced-Low"], [W2, "idle"]])

        assert targets == [(2, W1, "enforced-low"), (3, W2, "idle")]

    def test_invalid_state(self) -> None:
        """Test an unknown state is fatal."""
        with pytest.raises(ReconcileError) as exc_info:
            parse_targets([["href", "state"], [W1, "enforced"]])

        assert exc_info.value.line == 2

    def test_missing_state_header(self) -> None:
        """Test href and state are required."""
        with pytest.raises(MissingHeaderError):
            parse_targets([["href"], [W1]])

    def test_mode_alias(self) -> None:
        """Test a mode column is accepted as state."""
        assert parse_targets([["href", "mode"], [W1, "full"]]) == [(2, W1, "full")]


class TestBuildDiff:
    """Test build_diff."""

    def test_change_and_report(self, repo: EntityRepository) -> None:
        """Test a state change produces an update and a report row."""
        diff, report = build_diff(repo, [(2, W1, "enforced-low")])

        assert diff.updates[0].entity == {
            "href": W1,
            "enforcement_mode": "full",
            "visibility_level": "flow_drops",
        }
        row = dict(zip(OUTPUT_HEADERS, report[1], strict=True))
        assert row["current_mode"] == "build"
        assert row["target_mode"] == "enforced-low"

    def test_same_state_unchanged(self, repo: EntityRepository) -> None:
        """Test the current state is not an update."""
        diff, report = build_diff(repo, [(2, W1, "build")])

        assert diff.unchanged == 1
        assert len(report) == 1

    def test_enforcement_only_state_keeps_visibility(self, repo: EntityRepository) -> None:
        """Test new-style states leave visibility alone."""
        diff, _ = build_diff(repo, [(2, W1, "selective")])

        assert diff.updates[0].entity == {"href": W1, "enforcement_mode": "selective"}

    def test_unmanaged_and_unknown_skipped(self, repo: EntityRepository) -> None:
        """Test only managed workloads are changed."""
        diff, _ = build_diff(repo, [(2, W2, "full"), (3, "/orgs/1/workloads/nope", "full")])

        assert diff.skipped == 2
        assert not diff.has_changes


class TestUpdateModes:
    """Test the mode command flow."""

    @pytest.mark.asyncio
    async def test_update_modes(
        self,
        mock_client: MagicMock,
        temp_dir: Path,
        make_driver: Callable[..., ApplyDriver],
    ) -> None:
        """Test bulk update payloads and the change report."""
        mock_client.list_workloads = AsyncMock(return_value=copy.deepcopy(WORKLOADS))
        csv_file = write_csv(temp_dir / "mode.csv", [["href", "state"], [W1, "full"]])
        output = temp_dir / "mode-report.csv"

        state = await update_modes(mock_client, csv_file, make_driver(update_pce=True, no_prompt=True), output)

        assert state is ApplyState.COMPLETE
        mock_client.bulk_update_workloads.assert_awaited_once_with([{"href": W1, "enforcement_mode": "full"}])
        assert read_csv(output)[1][-1] == "full"
