"""Service export and import, plus port/protocol parsing shared with rules.

A service is written as one CSV row per port entry. On import, rows with the
same name are grouped back into one service and its entries are compared
with the PCE service as a set.
"""

from __future__ import annotations

import copy
import logging
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from workloader.api_client import APIError, PCEClient
from workloader.apply import ApplyDriver, ApplyState
from workloader.csv_parser import read_csv, write_csv
from workloader.diff import DiffAccumulator, DiffEntry
from workloader.headers import HeaderMap, map_headers
from workloader.reconcile import ReconcileError, parse_bool, reconcile_set, reconcile_value
from workloader.repository import EntityRepository

logger = logging.getLogger(__name__)

PROTOCOLS: dict[str, int] = {"tcp": 6, "udp": 17}
PROTOCOL_NAMES: dict[int, str] = {v: k for k, v in PROTOCOLS.items()}

EXPORT_HEADERS = [
    "href",
    "name",
    "description",
    "ports",
    "protocol",
    "process_name",
    "service_name",
    "is_windows_service",
    "icmp_code",
    "icmp_type",
]

ENTRY_FIELDS = ("port", "to_port", "proto", "icmp_type", "icmp_code", "process_name", "service_name")


# =============================================================================
# Port and protocol parsing
# =============================================================================


def parse_protocol(value: str) -> int:
    """Parse "tcp", "udp" or a protocol number.

    Raises:
        ValueError: If the protocol is not recognized.
    """
    lowered = value.strip().lower()
    if lowered in PROTOCOLS:
        return PROTOCOLS[lowered]
    try:
        return int(lowered)
    except ValueError:
        raise ValueError(f"invalid protocol '{value}'") from None


def protocol_name(proto: int | None) -> str:
    if proto is None:
        return ""
    return PROTOCOL_NAMES.get(proto, str(proto))


def _port(value: str) -> int:
    port = int(value)
    if not 0 <= port <= 65535:
        raise ValueError(f"port {port} out of range")
    return port


def parse_port_range(value: str) -> tuple[int, int | None]:
    """Parse "80" or "8080-8090".

    Raises:
        ValueError: If either port is invalid or the range is reversed.
    """
    start, sep, end = value.replace(" ", "").partition("-")
    try:
        port = _port(start)
        to_port = _port(end) if sep else None
    except ValueError:
        raise ValueError(f"invalid port '{value}'") from None
    if to_port is not None and to_port < port:
        raise ValueError(f"invalid port range '{value}'")
    return port, to_port


def _is_protocol(value: str) -> bool:
    return value.isdigit() or value.lower() in PROTOCOLS


def parse_port_entry(value: str) -> dict[str, Any] | None:
    """Parse a rule service cell entry.

    Accepted forms are "port proto", "port-toport proto" and a bare
    protocol ("tcp", "1"). The protocol is a name or a protocol number.

    Returns:
        An ingress service dict, or None if the entry is not a port entry
        (it is then treated as a service name).

    Raises:
        ValueError: If the entry looks like a port entry but the ports are invalid.
    """
    parts = value.split()
    if len(parts) == 1 and _is_protocol(parts[0]):
        return {"proto": parse_protocol(parts[0])}
    if len(parts) != 2 or not parts[0][:1].isdigit() or not _is_protocol(parts[1]):
        return None
    port, to_port = parse_port_range(parts[0])
    entry: dict[str, Any] = {"port": port, "proto": parse_protocol(parts[1])}
    if to_port is not None:
        entry["to_port"] = to_port
    return entry


def format_port_entry(entry: dict[str, Any]) -> str:
    """Inverse of parse_port_entry."""
    ports = str(entry.get("port", ""))
    if entry.get("to_port") is not None:
        ports += f"-{entry['to_port']}"
    return f"{ports} {protocol_name(entry.get('proto'))}".strip()


def port_entry_key(entry: dict[str, Any]) -> str:
    """Comparison key for a port entry: "<proto>-<port>-<to_port>"."""
    to_port = entry.get("to_port")
    return f"{protocol_name(entry.get('proto'))}-{entry.get('port')}-{'' if to_port is None else to_port}"


# =============================================================================
# Export
# =============================================================================


def _entry_row(service: dict[str, Any], entry: dict[str, Any] | None, windows: bool) -> list[str]:
    entry = entry or {}
    ports = ""
    if entry.get("port") is not None:
        ports = str(entry["port"])
        if entry.get("to_port") is not None:
            ports += f"-{entry['to_port']}"

    def text(key: str) -> str:
        value = entry.get(key)
        return "" if value is None else str(value)

    return [
        service["href"],
        service.get("name") or "",
        service.get("description") or "",
        ports,
        protocol_name(entry.get("proto")),
        text("process_name"),
        text("service_name"),
        str(windows).lower(),
        text("icmp_code"),
        text("icmp_type"),
    ]


def export_rows(repo: EntityRepository) -> list[list[str]]:
    """Header row plus one row per service port entry."""
    rows = [list(EXPORT_HEADERS)]
    for service in sorted(repo.services.values(), key=lambda s: s.get("name") or ""):
        windows = bool(service.get("windows_services"))
        entries = service.get("windows_services") if windows else service.get("service_ports")
        if not entries:
            rows.append(_entry_row(service, None, windows))
            continue
        rows += [_entry_row(service, entry, windows) for entry in entries]
    return rows


async def export_services(client: PCEClient, output_file: Path) -> int:
    """Export all draft services. Returns the number of rows written."""
    repo = EntityRepository()
    await repo.load(client, "services")
    rows = export_rows(repo)
    write_csv(output_file, rows)
    logger.info("exported %d service entries to %s", len(rows) - 1, output_file)
    return len(rows) - 1


# =============================================================================
# Import
# =============================================================================


def entry_key(entry: dict[str, Any]) -> tuple[Any, ...]:
    return tuple(entry.get(f) or None for f in ENTRY_FIELDS)


def entry_from_row(headers: HeaderMap, row: list[str], line: int) -> tuple[dict[str, Any], bool]:
    """Build a service entry from one row.

    Returns:
        The entry (possibly empty) and whether it is a Windows service entry.

    Raises:
        ReconcileError: If a value is invalid or a port is missing its protocol.
    """
    entry: dict[str, Any] = {}
    try:
        ports = headers.cell(row, "ports")
        if ports:
            entry["port"], to_port = parse_port_range(ports)
            if to_port is not None:
                entry["to_port"] = to_port

        protocol = headers.cell(row, "protocol")
        if protocol:
            entry["proto"] = parse_protocol(protocol)
        elif "port" in entry:
            raise ValueError("protocol is required when port is provided")

        for field_name in ("icmp_code", "icmp_type"):
            value = headers.cell(row, field_name)
            if value:
                entry[field_name] = int(value)

        windows_cell = headers.cell(row, "is_windows_service")
        windows = parse_bool(windows_cell) if windows_cell else False
    except ValueError as e:
        raise ReconcileError(line, str(e)) from None

    for field_name in ("process_name", "service_name"):
        value = headers.cell(row, field_name)
        if value:
            entry[field_name] = value

    return entry, windows


@dataclass
class CSVService:
    """A service assembled from one or more CSV rows."""

    name: str
    href: str = ""
    description: str = ""
    windows: bool = False
    lines: list[int] = field(default_factory=list)
    entries: list[dict[str, Any]] = field(default_factory=list)


class ServiceImporter:
    """Groups service rows by name and diffs them against the PCE."""

    def __init__(self, repo: EntityRepository, remove_value: str = "") -> None:
        self.repo = repo
        self.remove_value = remove_value
        self.diff = DiffAccumulator(allow_create=True)

    def group_rows(self, rows: list[list[str]]) -> list[CSVService]:
        """Group data rows into services, keeping first-seen order.

        Raises:
            MissingHeaderError: If there is no name column.
            ReconcileError: If a row has a blank name or an invalid value.
        """
        headers = map_headers(rows[0], required=["name"])
        services: dict[str, CSVService] = {}

        for line, row in enumerate(rows[1:], start=2):
            name = headers.cell(row, "name")
            if not name:
                raise ReconcileError(line, "name required")

            svc = services.setdefault(name, CSVService(name=name))
            svc.lines.append(line)
            if not svc.href:
                svc.href = headers.cell(row, "href")
            if not svc.description:
                svc.description = headers.cell(row, "description")

            entry, windows = entry_from_row(headers, row, line)
            svc.windows = svc.windows or windows
            if entry:
                svc.entries.append(entry)

        return list(services.values())

    def process(self, rows: list[list[str]]) -> DiffAccumulator:
        """Reconcile all service rows.

        Raises:
            ReconcileError: If a service href does not exist on the PCE.
        """
        counts = Counter(s.get("name") for s in self.repo.services.values())
        for name, count in counts.items():
            if name and count > 1:
                logger.warning(
                    "the pce has %d services named %s. svc-import is not recommended unless service names are unique.",
                    count,
                    name,
                )

        for svc in self.group_rows(rows):
            self._process_service(svc)
        return self.diff

    def _process_service(self, svc: CSVService) -> None:
        line = svc.lines[0]
        entries_field = "windows_services" if svc.windows else "service_ports"

        if not svc.href:
            entity: dict[str, Any] = {"name": svc.name, entries_field: svc.entries}
            if svc.description and svc.description != self.remove_value:
                entity["description"] = svc.description
            logger.info("csv line %d - %s is a new service to be created", line, svc.name)
            self.diff.add(DiffEntry(entity=entity, line=line, changed=True, ident=svc.name), exists=False)
            return

        existing = self.repo.services.get(svc.href)
        if existing is None:
            raise ReconcileError(line, f"{svc.href} does not exist in the PCE")

        entity = {"href": svc.href, "name": existing.get("name")}
        changed = False

        if svc.name != existing.get("name"):
            logger.info("csv line %d - name to be changed from %s to %s", line, existing.get("name"), svc.name)
            entity["name"] = svc.name
            changed = True

        desc = reconcile_value(existing.get("description"), svc.description, self.remove_value)
        if desc.changed:
            logger.info("csv line %d - %s - description to be changed", line, svc.name)
            entity["description"] = desc.value
            changed = True

        current = [
            {k: v for k, v in e.items() if k in ENTRY_FIELDS}
            for e in copy.deepcopy(existing.get(entries_field) or [])
        ]
        entries = reconcile_set(current, svc.entries, key=entry_key)
        if entries.changed:
            logger.info("csv line %d - %s - service entries to be changed", line, svc.name)
        entity[entries_field] = entries.value
        changed |= entries.changed

        self.diff.add(DiffEntry(entity=entity, line=line, changed=changed, ident=svc.name), exists=True)


async def import_services(
    client: PCEClient,
    csv_file: Path,
    driver: ApplyDriver,
    provision: bool = False,
    provision_comment: str = "",
    remove_value: str = "",
) -> ApplyState:
    """Run svc-import end to end."""
    repo = EntityRepository()
    await repo.load(client, "services")

    diff = ServiceImporter(repo, remove_value).process(read_csv(csv_file))
    touched: list[str] = []

    async def update(entries: list[DiffEntry]) -> None:
        for entry in entries:
            body = {k: v for k, v in entry.entity.items() if k != "href"}
            try:
                await client.update_service(entry.entity["href"], body)
            except APIError as e:
                if e.status_code != 406:
                    raise
                logger.warning("csv line %d - %s - 406 Not Acceptable - %s", entry.line, entry.ident, e.message)
                continue
            touched.append(entry.entity["href"])
            logger.info("updated service %s - %s", entry.ident, entry.entity["href"])

    async def create(entries: list[DiffEntry]) -> None:
        for entry in entries:
            try:
                created = await client.create_service(entry.entity)
            except APIError as e:
                if e.status_code != 406:
                    raise
                logger.warning("csv line %d - %s - 406 Not Acceptable - %s", entry.line, entry.ident, e.message)
                continue
            touched.append(created["href"])
            logger.info("created service %s - %s", entry.ident, created["href"])

    state = await driver.run(
        diff,
        update=update,
        create=create,
        update_noun="services requiring updates",
        create_noun="services to create",
    )

    if state is ApplyState.COMPLETE and provision and touched:
        await client.provision({"services": touched}, provision_comment)
        logger.info("provisioned %d services", len(touched))

    return state
