"""Workload export and import.

``wkld-export`` writes one CSV row per workload. ``wkld-import`` reads the
same format back, matches each row to a workload, reconciles labels,
interfaces and attributes, and applies the result with bulk update and bulk
create calls. Unmanaged workloads are created only with ``--umwl``.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from workloader.api_client import PCEClient
from workloader.apply import ApplyDriver, ApplyState
from workloader.csv_parser import read_csv, write_csv
from workloader.diff import DiffAccumulator, DiffEntry
from workloader.headers import HeaderMap, map_headers
from workloader.reconcile import (
    ENFORCEMENT_MODES,
    VISIBILITY_FROM_API,
    VISIBILITY_TO_API,
    FieldChange,
    Interface,
    LabelResolver,
    ReconcileError,
    is_remove,
    reconcile_interfaces,
    reconcile_labels,
    reconcile_value,
    validate_public_ip,
)
from workloader.repository import EntityRepository, external_data_key

logger = logging.getLogger(__name__)

PLACEHOLDER_PREFIX = "wkld-import-temp"

MATCH_FIELDS = ("href", "hostname", "name", "external_data")

# Plain string attributes reconciled with the scalar policy
SCALAR_FIELDS = (
    "description",
    "os_id",
    "os_detail",
    "data_center",
    "external_data_set",
    "external_data_reference",
)

# Fields sent in bulk update payloads
UPDATE_FIELDS = (
    "hostname",
    "name",
    "labels",
    "public_ip",
    *SCALAR_FIELDS,
    "enforcement_mode",
    "visibility_level",
)

UNMANAGED = "unmanaged"


# =============================================================================
# Workload helpers
# =============================================================================


def is_managed(workload: dict[str, Any]) -> bool:
    """Whether a workload has a VEN."""
    if workload.get("ven"):
        return True
    return bool((workload.get("agent") or {}).get("href"))


def last_heartbeat(workload: dict[str, Any]) -> datetime | None:
    """Last VEN heartbeat of a managed workload, if known."""
    status = (workload.get("agent") or {}).get("status") or {}
    value = status.get("last_heartbeat_on") or (workload.get("ven") or {}).get("last_heartbeat_at")
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def label_value(repo: EntityRepository, workload: dict[str, Any], key: str) -> str:
    """Value of the workload's label for ``key``, or ""."""
    for ref in workload.get("labels") or []:
        label = repo.label(ref["href"])
        if label and label["key"] == key:
            return label["value"]
    return ""


# =============================================================================
# Export
# =============================================================================


def export_headers(label_keys: list[str], include_href: bool = True) -> list[str]:
    headers = ["hostname", "name", *label_keys, "interfaces", "public_ip", "description"]
    headers += ["enforcement", "visibility", "os_id", "os_detail", "data_center"]
    headers += ["external_data_set", "external_data_reference"]
    headers += ["online", "managed", "last_heartbeat_on"]
    if include_href:
        headers.append("href")
    return headers


def workload_row(
    repo: EntityRepository,
    workload: dict[str, Any],
    label_keys: list[str],
    include_href: bool = True,
) -> list[str]:
    """Build the export row for one workload."""
    managed = is_managed(workload)
    heartbeat = last_heartbeat(workload) if managed else None

    row = [workload.get("hostname") or "", workload.get("name") or ""]
    row += [label_value(repo, workload, key) for key in label_keys]
    row.append(";".join(str(Interface.from_api(i)) for i in workload.get("interfaces") or []))
    row.append(workload.get("public_ip") or "")
    row.append(workload.get("description") or "")
    if managed:
        row.append(workload.get("enforcement_mode") or "")
        level = workload.get("visibility_level") or ""
        row.append(VISIBILITY_FROM_API.get(level, level))
    else:
        row += [UNMANAGED, UNMANAGED]
    row += [workload.get(field) or "" for field in ("os_id", "os_detail", "data_center")]
    row.append(workload.get("external_data_set") or "")
    row.append(workload.get("external_data_reference") or "")
    row.append(str(bool(workload.get("online"))).lower())
    row.append(str(managed).lower())
    row.append(heartbeat.isoformat() if heartbeat else "")
    if include_href:
        row.append(workload["href"])
    return row


def export_rows(repo: EntityRepository, include_href: bool = True) -> list[list[str]]:
    """Header row plus one row per workload, sorted by hostname then name."""
    label_keys = repo.label_keys()
    workloads = sorted(
        repo.workloads.values(), key=lambda w: (w.get("hostname") or "", w.get("name") or "")
    )
    rows = [export_headers(label_keys, include_href)]
    rows += [workload_row(repo, w, label_keys, include_href) for w in workloads]
    return rows


async def export_workloads(client: PCEClient, output_file: Path, include_href: bool = True) -> int:
    """Export all workloads to a CSV file.

    Returns:
        Number of workloads written.
    """
    repo = EntityRepository()
    await repo.load(client, "label_dimensions", "labels", "workloads")
    rows = export_rows(repo, include_href)
    write_csv(output_file, rows)
    logger.info("exported %d workloads to %s", len(rows) - 1, output_file)
    return len(rows) - 1


# =============================================================================
# Import
# =============================================================================


@dataclass
class WorkloadImportOptions:
    """Options for wkld-import.

    Attributes:
        umwl: Create unmanaged workloads for rows that match nothing.
        remove_value: Cell value that clears a field.
        match: Column to match on. Chosen from the headers when empty.
        allow_enforcement_changes: Honor the enforcement and visibility columns.
        keep_all_pce_interfaces: Keep PCE interfaces missing from the CSV.
    """

    umwl: bool = False
    remove_value: str = ""
    match: str = ""
    allow_enforcement_changes: bool = False
    keep_all_pce_interfaces: bool = False


def select_match_field(headers: HeaderMap, match: str, umwl: bool) -> str:
    """Choose the column used to match rows to workloads.

    Raises:
        ReconcileError: If the match value is invalid or no column fits.
    """
    if match:
        if match not in MATCH_FIELDS:
            raise ReconcileError(
                1, "invalid match value. must be href, hostname, name, or external_data"
            )
        return match
    if "href" in headers and not umwl:
        logger.info("match column set to href because href header is present and --umwl is not set")
        return "href"
    for field in ("hostname", "name"):
        if field in headers:
            logger.info("match column set to %s", field)
            return field
    raise ReconcileError(1, "cannot set a match column based on provided headers")


class WorkloadImporter:
    """Reconciles workload CSV rows against a repository snapshot."""

    def __init__(self, repo: EntityRepository, options: WorkloadImportOptions) -> None:
        self.repo = repo
        self.options = options
        self.resolver = LabelResolver(repo, PLACEHOLDER_PREFIX)
        self.diff = DiffAccumulator(allow_create=options.umwl)
        self.headers: HeaderMap | None = None
        self.match_field = ""

    def process(self, rows: list[list[str]]) -> DiffAccumulator:
        """Reconcile all rows. Row 0 is the header row.

        Raises:
            MissingHeaderError: If no usable header is present.
            ReconcileError: On the first invalid row.
        """
        self.headers = map_headers(rows[0])
        self.match_field = select_match_field(self.headers, self.options.match, self.options.umwl)
        if self.match_field == "external_data":
            for field in ("external_data_set", "external_data_reference"):
                if field not in self.headers:
                    raise ReconcileError(1, f"matching on external_data requires a {field} column")

        for index, row in enumerate(rows[1:], start=2):
            self._process_row(row, index)

        self.diff.add_placeholders(self.resolver.to_create)
        return self.diff

    def _match_value(self, row: list[str]) -> str:
        assert self.headers is not None
        if self.match_field == "external_data":
            data_set = self.headers.cell(row, "external_data_set")
            reference = self.headers.cell(row, "external_data_reference")
            if not data_set and not reference:
                return ""
            return external_data_key(data_set, reference)
        return self.headers.cell(row, self.match_field)

    def _apply(
        self,
        workload: dict[str, Any],
        field: str,
        change: FieldChange,
        line: int,
        ident: str,
        is_new: bool,
    ) -> bool:
        if change.changed and not is_new:
            logger.info(
                "csv line %d - %s - %s to be changed from %s to %s",
                line,
                ident,
                field,
                workload.get(field) or "<empty>",
                change.value or "<empty>",
            )
        if change.changed:
            workload[field] = change.value
        return change.changed

    def _process_row(self, row: list[str], line: int) -> None:
        headers = self.headers
        assert headers is not None
        opts = self.options

        ident = self._match_value(row)
        if not ident:
            logger.warning("csv line %d - the match column cannot be blank. skipping", line)
            self.diff.skip()
            return

        existing = self.repo.find_workload(self.match_field, ident)
        if existing is None and not opts.umwl:
            logger.info(
                "csv line %d - %s is not a workload. include --umwl to create unmanaged workloads",
                line,
                ident,
            )
            self.diff.skip()
            return

        is_new = existing is None
        workload: dict[str, Any] = copy.deepcopy(existing) if existing else {}
        unmanaged = is_new or not is_managed(workload)
        changed = False

        for field in ("hostname", "name"):
            if field in headers and (is_new or self.match_field != field):
                change = reconcile_value(workload.get(field), headers.cell(row, field), opts.remove_value)
                changed |= self._apply(workload, field, change, line, ident, is_new)
        if is_new and not workload.get("name") and workload.get("hostname"):
            workload["name"] = workload["hostname"]

        label_change = reconcile_labels(
            workload.get("labels") or [],
            row,
            headers,
            self.repo.label_keys(),
            self.resolver,
            opts.remove_value,
            line,
            ident,
        )
        workload["labels"] = label_change.value
        changed |= label_change.changed

        if "interfaces" in headers and unmanaged:
            iface_change = reconcile_interfaces(
                workload.get("interfaces") or [],
                headers.cell(row, "interfaces"),
                opts.remove_value,
                line,
                opts.keep_all_pce_interfaces,
            )
            if iface_change.changed and not is_new:
                logger.info("csv line %d - %s - interfaces to be changed", line, ident)
            workload["interfaces"] = iface_change.value
            changed |= iface_change.changed

        if "public_ip" in headers:
            cell = headers.cell(row, "public_ip")
            if cell and not is_remove(cell, opts.remove_value):
                try:
                    cell = validate_public_ip(cell)
                except ValueError as e:
                    raise ReconcileError(line, str(e)) from None
            change = reconcile_value(workload.get("public_ip"), cell, opts.remove_value)
            changed |= self._apply(workload, "public_ip", change, line, ident, is_new)

        for field in SCALAR_FIELDS:
            if field in headers:
                change = reconcile_value(workload.get(field), headers.cell(row, field), opts.remove_value)
                changed |= self._apply(workload, field, change, line, ident, is_new)

        if opts.allow_enforcement_changes:
            changed |= self._reconcile_modes(workload, row, line, ident, is_new)

        if is_new and not workload.get("hostname") and not workload.get("name"):
            raise ReconcileError(line, "new unmanaged workloads require a hostname or name")

        entity = self._payload(workload, unmanaged, is_new)
        self.diff.add(DiffEntry(entity=entity, line=line, changed=changed, ident=ident), exists=not is_new)

    def _reconcile_modes(
        self, workload: dict[str, Any], row: list[str], line: int, ident: str, is_new: bool
    ) -> bool:
        headers = self.headers
        assert headers is not None
        changed = False

        mode = headers.cell(row, "enforcement").lower()
        if mode and mode != UNMANAGED:
            if mode not in ENFORCEMENT_MODES:
                raise ReconcileError(
                    line,
                    f"invalid enforcement '{mode}'. values must be blank, {', '.join(ENFORCEMENT_MODES)}",
                )
            change = reconcile_value(workload.get("enforcement_mode"), mode)
            changed |= self._apply(workload, "enforcement_mode", change, line, ident, is_new)

        visibility = headers.cell(row, "visibility").lower()
        if visibility and visibility != UNMANAGED:
            if visibility not in VISIBILITY_TO_API:
                raise ReconcileError(
                    line,
                    f"invalid visibility '{visibility}'. values must be blank, {', '.join(VISIBILITY_TO_API)}",
                )
            change = reconcile_value(workload.get("visibility_level"), VISIBILITY_TO_API[visibility])
            changed |= self._apply(workload, "visibility_level", change, line, ident, is_new)

        return changed

    def _payload(self, workload: dict[str, Any], unmanaged: bool, is_new: bool) -> dict[str, Any]:
        fields = [*UPDATE_FIELDS, "interfaces"] if unmanaged else list(UPDATE_FIELDS)
        payload = {
            field: workload[field]
            for field in fields
            if workload.get(field) is not None and not (is_new and workload[field] in ("", []))
        }
        if not is_new:
            payload["href"] = workload["href"]
        return payload


async def import_workloads(
    client: PCEClient,
    csv_file: Path,
    options: WorkloadImportOptions,
    driver: ApplyDriver,
) -> ApplyState:
    """Run wkld-import end to end."""
    repo = EntityRepository()
    await repo.load(client, "label_dimensions", "labels", "workloads")

    diff = WorkloadImporter(repo, options).process(read_csv(csv_file))

    async def update(entries: list[DiffEntry]) -> None:
        await client.bulk_update_workloads([e.entity for e in entries])

    async def create(entries: list[DiffEntry]) -> None:
        await client.bulk_create_workloads([e.entity for e in entries])

    return await driver.run(
        diff,
        create_label=client.create_label,
        update=update,
        create=create,
        update_noun="workloads requiring updates",
        create_noun="unmanaged workloads to create",
    )
