"""IP list export and import.

Each IP list is one CSV row. Included and excluded ranges live in separate
columns as ``;``-separated entries, each an address, a CIDR block or a
``from-to`` range. Rows are matched by href when one is given and by name
otherwise.
"""

from __future__ import annotations

import ipaddress
import logging
from pathlib import Path
from typing import Any

from workloader.api_client import APIError, PCEClient
from workloader.apply import ApplyDriver, ApplyState
from workloader.csv_parser import read_csv, write_csv
from workloader.diff import DiffAccumulator, DiffEntry
from workloader.headers import HeaderMap, map_headers
from workloader.reconcile import FieldChange, ReconcileError, reconcile_set_cell, reconcile_value
from workloader.repository import EntityRepository

logger = logging.getLogger(__name__)

EXPORT_HEADERS = [
    "name",
    "description",
    "include",
    "exclude",
    "fqdns",
    "external_data_set",
    "external_data_reference",
    "href",
]

EXTERNAL_FIELDS = ("external_data_set", "external_data_reference")


# =============================================================================
# Ranges
# =============================================================================


def format_range(ip_range: dict[str, Any]) -> str:
    """"from_ip" or "from_ip-to_ip"."""
    if ip_range.get("to_ip"):
        return f"{ip_range['from_ip']}-{ip_range['to_ip']}"
    return ip_range["from_ip"]


def parse_range(entry: str, exclusion: bool) -> dict[str, Any]:
    """Parse an include or exclude entry.

    Raises:
        ValueError: If either side is not an IP address (or CIDR block for
            a single entry).
    """
    from_ip, sep, to_ip = entry.replace(" ", "").partition("-")
    try:
        if sep:
            start = ipaddress.ip_address(from_ip)
            end = ipaddress.ip_address(to_ip)
            if start.version != end.version or end < start:
                raise ValueError(entry)
        else:
            ipaddress.ip_network(from_ip, strict=False)
    except ValueError:
        raise ValueError(f"invalid ip range '{entry}'") from None

    ip_range: dict[str, Any] = {"from_ip": from_ip, "exclusion": exclusion}
    if sep:
        ip_range["to_ip"] = to_ip
    return ip_range


def range_key(ip_range: dict[str, Any]) -> tuple[str, str, bool]:
    return ip_range["from_ip"], ip_range.get("to_ip") or "", bool(ip_range.get("exclusion"))


# =============================================================================
# Export
# =============================================================================


def export_rows(repo: EntityRepository) -> list[list[str]]:
    """Header row plus one row per IP list."""
    rows = [list(EXPORT_HEADERS)]
    for ip_list in sorted(repo.ip_lists.values(), key=lambda i: i.get("name") or ""):
        ranges = ip_list.get("ip_ranges") or []
        rows.append(
            [
                ip_list.get("name") or "",
                ip_list.get("description") or "",
                ";".join(format_range(r) for r in ranges if not r.get("exclusion")),
                ";".join(format_range(r) for r in ranges if r.get("exclusion")),
                ";".join(f["fqdn"] for f in ip_list.get("fqdns") or []),
                ip_list.get("external_data_set") or "",
                ip_list.get("external_data_reference") or "",
                ip_list["href"],
            ]
        )
    return rows


async def export_ip_lists(client: PCEClient, output_file: Path) -> int:
    """Export all draft IP lists. Returns the number written."""
    repo = EntityRepository()
    await repo.load(client, "ip_lists")
    rows = export_rows(repo)
    write_csv(output_file, rows)
    logger.info("exported %d ip lists to %s", len(rows) - 1, output_file)
    return len(rows) - 1


# =============================================================================
# Import
# =============================================================================


class IPListImporter:
    """Reconciles IP list rows against a repository snapshot."""

    def __init__(self, repo: EntityRepository, remove_value: str = "") -> None:
        self.repo = repo
        self.remove_value = remove_value
        self.diff = DiffAccumulator(allow_create=True)

    def process(self, rows: list[list[str]]) -> DiffAccumulator:
        """Reconcile all IP list rows.

        Raises:
            MissingHeaderError: If there is no name column.
            ReconcileError: If a range is invalid or a new IP list has no name.
        """
        headers = map_headers(rows[0], required=["name"])
        for line, row in enumerate(rows[1:], start=2):
            self._process_row(headers, row, line)
        return self.diff

    def _ranges(self, current: list[dict[str, Any]], cell: str, exclusion: bool, line: int) -> FieldChange:
        def resolve(entry: str) -> dict[str, Any]:
            try:
                return parse_range(entry, exclusion)
            except ValueError as e:
                raise ReconcileError(line, str(e)) from None

        return reconcile_set_cell(
            [r for r in current if bool(r.get("exclusion")) == exclusion],
            cell,
            resolve,
            self.remove_value,
            key=range_key,
        )

    def _process_row(self, headers: HeaderMap, row: list[str], line: int) -> None:
        href = headers.cell(row, "href")
        name = headers.cell(row, "name")

        existing = None
        if href:
            existing = self.repo.ip_lists.get(href)
            if existing is None:
                logger.warning("csv line %d - %s does not exist in the pce. skipping.", line, href)
                self.diff.skip()
                return
        elif name:
            existing = self.repo.ip_list_by_name(name)

        is_new = existing is None
        if is_new and not name:
            raise ReconcileError(line, "name is required for new ip lists")

        ip_list: dict[str, Any] = existing or {}
        ident = name or href
        entity: dict[str, Any] = {}
        changed = False

        def take(field: str, change: FieldChange) -> None:
            nonlocal changed
            if change.changed and not is_new:
                logger.info("csv line %d - %s - %s to be changed", line, ident, field)
            changed |= change.changed
            entity[field] = change.value

        take("name", reconcile_value(ip_list.get("name"), name))
        description = headers.cell(row, "description")
        take("description", reconcile_value(ip_list.get("description"), description, self.remove_value))

        current_ranges = [
            {k: v for k, v in r.items() if k in ("from_ip", "to_ip", "exclusion")}
            for r in ip_list.get("ip_ranges") or []
        ]
        include = self._ranges(current_ranges, headers.cell(row, "include"), False, line)
        exclude = self._ranges(current_ranges, headers.cell(row, "exclude"), True, line)
        take(
            "ip_ranges",
            FieldChange(changed=include.changed or exclude.changed, value=include.value + exclude.value),
        )

        take(
            "fqdns",
            reconcile_set_cell(
                [{"fqdn": f["fqdn"]} for f in ip_list.get("fqdns") or []],
                headers.cell(row, "fqdns"),
                lambda fqdn: {"fqdn": fqdn},
                self.remove_value,
                key=lambda f: f["fqdn"].lower(),
            ),
        )

        for field in EXTERNAL_FIELDS:
            take(field, reconcile_value(ip_list.get(field), headers.cell(row, field), self.remove_value))

        if is_new:
            # Blank optional fields are left off a new IP list
            entity = {k: v for k, v in entity.items() if v or k == "ip_ranges"}
            logger.info("csv line %d - %s does not exist and will be created", line, ident)
        else:
            entity["href"] = ip_list["href"]

        self.diff.add(DiffEntry(entity=entity, line=line, changed=changed, ident=ident), exists=not is_new)


async def import_ip_lists(
    client: PCEClient,
    csv_file: Path,
    driver: ApplyDriver,
    remove_value: str = "",
    provision: bool = False,
    provision_comment: str = "",
) -> ApplyState:
    """Run ipl-import end to end."""
    repo = EntityRepository()
    await repo.load(client, "ip_lists")

    diff = IPListImporter(repo, remove_value).process(read_csv(csv_file))
    touched: list[str] = []

    async def update(entries: list[DiffEntry]) -> None:
        for entry in entries:
            body = {k: v for k, v in entry.entity.items() if k != "href"}
            try:
                await client.update_ip_list(entry.entity["href"], body)
            except APIError as e:
                if e.status_code != 406:
                    raise
                logger.warning("csv line %d - %s - 406 Not Acceptable - %s", entry.line, entry.ident, e.message)
                continue
            touched.append(entry.entity["href"])
            logger.info("updated ip list %s - %s", entry.ident, entry.entity["href"])

    async def create(entries: list[DiffEntry]) -> None:
        for entry in entries:
            try:
                created = await client.create_ip_list(entry.entity)
            except APIError as e:
                if e.status_code != 406:
                    raise
                logger.warning("csv line %d - %s - 406 Not Acceptable - %s", entry.line, entry.ident, e.message)
                continue
            touched.append(created["href"])
            logger.info("created ip list %s - %s", entry.ident, created["href"])

    state = await driver.run(
        diff,
        update=update,
        create=create,
        update_noun="ip lists requiring updates",
        create_noun="ip lists to create",
    )

    if state is ApplyState.COMPLETE and provision and touched:
        await client.provision({"ip_lists": touched}, provision_comment)
        logger.info("provisioned %d ip lists", len(touched))

    return state
