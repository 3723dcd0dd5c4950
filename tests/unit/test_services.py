"""Unit tests for service export and import."""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from workloader.api_client import APIError
from workloader.apply import ApplyDriver, ApplyState
from workloader.csv_parser import write_csv
from workloader.reconcile import ReconcileError
from workloader.repository import EntityRepository
from workloader.services import (
    EXPORT_HEADERS,
    ServiceImporter,
    export_rows,
    format_port_entry,
    import_services,
    parse_port_entry,
    parse_port_range,
    parse_protocol,
    port_entry_key,
)

WEB = "/orgs/1/sec_policy/draft/services/2"

SERVICES = [
    {
        "href": "/orgs/1/sec_policy/draft/services/1",
        "name": "SSH",
        "description": "secure shell",
        "service_ports": [{"port": 22, "proto": 6}],
    },
    {
        "href": WEB,
        "name": "Web",
        "service_ports": [{"port": 80, "proto": 6}, {"port": 8080, "to_port": 8090, "proto": 6}],
    },
    {
        "href": "/orgs/1/sec_policy/draft/services/3",
        "name": "Print",
        "windows_services": [{"service_name": "Spooler"}],
    },
    {
        "href": "/orgs/1/sec_policy/draft/services/4",
        "name": "Ping",
        "service_ports": [{"proto": 1, "icmp_type": 8, "icmp_code": 0}],
    },
]


@pytest.fixture
def repo() -> EntityRepository:
    """Create a repository with a few services."""
    repo = EntityRepository()
    repo.add_services(copy.deepcopy(SERVICES))
    return repo


def csv_rows(*rows: dict[str, str]) -> list[list[str]]:
    return [list(EXPORT_HEADERS)] + [[row.get(h, "") for h in EXPORT_HEADERS] for row in rows]


class TestPortParsing:
    """Test port and protocol helpers."""

    def test_parse_protocol(self) -> None:
        """Test names and numbers."""
        assert parse_protocol("TCP") == 6
        assert parse_protocol("udp") == 17
        assert parse_protocol("1") == 1
        with pytest.raises(ValueError):
            parse_protocol("sctpish")

    def test_parse_port_range(self) -> None:
        """Test single ports and ranges."""
        assert parse_port_range("443") == (443, None)
        assert parse_port_range("8080-8090") == (8080, 8090)
        with pytest.raises(ValueError):
            parse_port_range("9000-8000")
        with pytest.raises(ValueError):
            parse_port_range("70000")

    def test_parse_port_entry(self) -> None:
        """Test rule service entries."""
        assert parse_port_entry("443 tcp") == {"port": 443, "proto": 6}
        assert parse_port_entry("5000-5010 UDP") == {"port": 5000, "to_port": 5010, "proto": 17}
        assert parse_port_entry("SSH") is None
        assert parse_port_entry("All Services") is None

    def test_parse_port_entry_numeric_protocol(self) -> None:
        """Test protocol numbers and bare protocol entries."""
        assert parse_port_entry("53 17") == {"port": 53, "proto": 17}
        assert parse_port_entry("1") == {"proto": 1}
        assert parse_port_entry("udp") == {"proto": 17}
        assert format_port_entry({"proto": 1}) == "1"
        assert parse_port_entry(format_port_entry({"port": 53, "proto": 17})) == {"port": 53, "proto": 17}

    def test_format_and_key(self) -> None:
        """Test formatting and the comparison key."""
        entry = {"port": 5000, "to_port": 5010, "proto": 17}

        assert format_port_entry(entry) == "5000-5010 udp"
        assert port_entry_key(entry) == "udp-5000-5010"
        assert port_entry_key({"port": 80, "proto": 6}) == "tcp-80-"


class TestExport:
    """Test svc-export rows."""

    def test_one_row_per_entry(self, repo: EntityRepository) -> None:
        """Test multi-port services span several rows."""
        rows = export_rows(repo)
        web_rows = [r for r in rows[1:] if r[1] == "Web"]

        assert len(rows) == 6
        assert [r[3] for r in web_rows] == ["80", "8080-8090"]
        assert all(r[4] == "tcp" for r in web_rows)

    def test_windows_service_row(self, repo: EntityRepository) -> None:
        """Test Windows services are flagged."""
        rows = export_rows(repo)
        print_row = dict(zip(rows[0], next(r for r in rows[1:] if r[1] == "Print"), strict=True))

        assert print_row["is_windows_service"] == "true"
        assert print_row["service_name"] == "Spooler"

    def test_export_then_import_is_unchanged(self, repo: EntityRepository) -> None:
        """Test importing an unmodified export produces no changes."""
        diff = ServiceImporter(repo).process(export_rows(repo))

        assert diff.updates == []
        assert diff.creates == []
        assert diff.unchanged == 4


class TestImport:
    """Test svc-import reconciliation."""

    def test_rows_grouped_by_name(self, repo: EntityRepository) -> None:
        """Test a new service built from several rows."""
        rows = csv_rows(
            {"name": "DNS", "ports": "53", "protocol": "udp"},
            {"name": "DNS", "ports": "53", "protocol": "tcp", "description": "name resolution"},
        )

        diff = ServiceImporter(repo).process(rows)

        entity = diff.creates[0].entity
        assert entity["name"] == "DNS"
        assert entity["description"] == "name resolution"
        assert entity["service_ports"] == [{"port": 53, "proto": 17}, {"port": 53, "proto": 6}]

    def test_port_change_replaces_entries(self, repo: EntityRepository) -> None:
        """Test a different entry set is an update."""
        rows = csv_rows({"href": WEB, "name": "Web", "ports": "443", "protocol": "tcp"})

        diff = ServiceImporter(repo).process(rows)

        assert diff.updates[0].entity["service_ports"] == [{"port": 443, "proto": 6}]

    def test_rename(self, repo: EntityRepository) -> None:
        """Test a new name for a known href is an update."""
        rows = csv_rows(
            {"href": WEB, "name": "HTTP", "ports": "80", "protocol": "tcp"},
            {"href": WEB, "name": "HTTP", "ports": "8080-8090", "protocol": "tcp"},
        )

        diff = ServiceImporter(repo).process(rows)

        assert diff.updates[0].entity["name"] == "HTTP"

    def test_unknown_href_is_fatal(self, repo: EntityRepository) -> None:
        """Test an href missing from the PCE stops the import."""
        rows = csv_rows(
            {"href": "/orgs/1/sec_policy/draft/services/404", "name": "Gone", "ports": "1", "protocol": "tcp"}
        )

        with pytest.raises(ReconcileError):
            ServiceImporter(repo).process(rows)

    def test_port_without_protocol_is_fatal(self, repo: EntityRepository) -> None:
        """Test a port needs a protocol."""
        with pytest.raises(ReconcileError) as exc_info:
            ServiceImporter(repo).process(csv_rows({"name": "X", "ports": "80"}))

        assert exc_info.value.line == 2

    def test_blank_name_is_fatal(self, repo: EntityRepository) -> None:
        """Test every row needs a name."""
        with pytest.raises(ReconcileError):
            ServiceImporter(repo).process(csv_rows({"ports": "80", "protocol": "tcp"}))

    def test_remove_value_in_description(self, repo: EntityRepository) -> None:
        """Test the remove value clears a description and is never stored."""
        rows = csv_rows(
            {
                "href": "/orgs/1/sec_policy/draft/services/1",
                "name": "SSH",
                "description": "CLEAR",
                "ports": "22",
                "protocol": "tcp",
            },
            {"name": "NTP", "description": "CLEAR", "ports": "123", "protocol": "udp"},
        )

        diff = ServiceImporter(repo, remove_value="CLEAR").process(rows)

        assert diff.updates[0].entity["description"] == ""
        assert "description" not in diff.creates[0].entity

    def test_duplicate_pce_names_warn(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test duplicate service names on the PCE are reported."""
        repo = EntityRepository()
        repo.add_services([{"href": "/s/1", "name": "Dup"}, {"href": "/s/2", "name": "Dup"}])

        with caplog.at_level(logging.WARNING):
            ServiceImporter(repo).process(csv_rows({"name": "Other", "ports": "1", "protocol": "tcp"}))

        assert "2 services named Dup" in caplog.text


class TestImportServices:
    """Test the svc-import command flow."""

    @pytest.mark.asyncio
    async def test_406_warns_and_continues(
        self,
        mock_client: MagicMock,
        temp_dir: Path,
        make_driver: Callable[..., ApplyDriver],
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """Test a rejected update is logged and the rest still applied."""
        mock_client.list_services = AsyncMock(return_value=copy.deepcopy(SERVICES))
        mock_client.update_service = AsyncMock(side_effect=APIError(406, "Name already in use"))
        csv_file = write_csv(
            temp_dir / "svc.csv",
            csv_rows(
                {"href": WEB, "name": "Web", "ports": "443", "protocol": "tcp"},
                {"name": "DNS", "ports": "53", "protocol": "udp"},
            ),
        )
        driver = make_driver(update_pce=True, no_prompt=True)

        with caplog.at_level(logging.WARNING):
            state = await import_services(mock_client, csv_file, driver, provision=True)

        assert state is ApplyState.COMPLETE
        assert "406 Not Acceptable" in caplog.text
        mock_client.create_service.assert_awaited_once()
        mock_client.provision.assert_awaited_once_with({"services": ["/orgs/1/sec_policy/draft/services/99"]}, "")

    @pytest.mark.asyncio
    async def test_other_api_errors_propagate(
        self,
        mock_client: MagicMock,
        temp_dir: Path,
        make_driver: Callable[..., ApplyDriver],
    ) -> None:
        """Test errors other than 406 abort the import."""
        mock_client.list_services = AsyncMock(return_value=copy.deepcopy(SERVICES))
        mock_client.update_service = AsyncMock(side_effect=APIError(500, "boom"))
        csv_file = write_csv(
            temp_dir / "svc.csv", csv_rows({"href": WEB, "name": "Web", "ports": "443", "protocol": "tcp"})
        )

        with pytest.raises(APIError):
            await import_services(mock_client, csv_file, make_driver(update_pce=True, no_prompt=True))

    @pytest.mark.asyncio
    async def test_remove_value_clears_description(
        self,
        mock_client: MagicMock,
        temp_dir: Path,
        make_driver: Callable[..., ApplyDriver],
    ) -> None:
        """Test --remove-value empties a service description."""
        mock_client.list_services = AsyncMock(return_value=copy.deepcopy(SERVICES))
        csv_file = write_csv(
            temp_dir / "svc.csv",
            csv_rows(
                {
                    "href": "/orgs/1/sec_policy/draft/services/1",
                    "name": "SSH",
                    "description": "CLEAR",
                    "ports": "22",
                    "protocol": "tcp",
                }
            ),
        )

        state = await import_services(
            mock_client, csv_file, make_driver(update_pce=True, no_prompt=True), remove_value="CLEAR"
        )

        assert state is ApplyState.COMPLETE
        href, body = mock_client.update_service.await_args.args
        assert href == "/orgs/1/sec_policy/draft/services/1"
        assert body["description"] == ""
