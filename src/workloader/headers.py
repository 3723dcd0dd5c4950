"""CSV header mapping.

Maps the header row of an import CSV to canonical field names. Matching is
case-insensitive, treats spaces and dashes like underscores, and resolves
common aliases through a static synonym table. Headers that are not in the
table are kept under their normalized name so label dimension keys and extra
columns still work.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from workloader.csv_parser import CSVParserError

logger = logging.getLogger(__name__)

# Alias -> canonical field name
SYNONYMS: dict[str, str] = {
    # Workload identity
    "host": "hostname",
    "host_name": "hostname",
    "workload_hostname": "hostname",
    "workload_name": "name",
    "wkld_name": "name",
    "friendly_name": "name",
    # Labels
    "role_label": "role",
    "application": "app",
    "app_label": "app",
    "environment": "env",
    "env_label": "env",
    "location": "loc",
    "loc_label": "loc",
    # Network
    "interface": "interfaces",
    "ip": "interfaces",
    "ips": "interfaces",
    "ip_address": "interfaces",
    "ip_addresses": "interfaces",
    "public_ips": "public_ip",
    "publicip": "public_ip",
    # Workload attributes
    "os": "os_id",
    "operating_system": "os_id",
    "datacenter": "data_center",
    "external_dataset": "external_data_set",
    "ext_data_set": "external_data_set",
    "external_data_ref": "external_data_reference",
    "ext_data_ref": "external_data_reference",
    "ext_dataset": "external_data_set",
    "ext_dataset_ref": "external_data_reference",
    "enforcement_mode": "enforcement",
    "visibility_level": "visibility",
    # Policy objects
    "desc": "description",
    "fqdn": "fqdns",
    "member_label_values": "member_labels",
    "service": "services",
    "port": "ports",
    "proto": "protocol",
    "ruleset": "ruleset_name",
    "enabled_rule": "rule_enabled",
    "mode": "state",
}

# Legacy rule header prefixes and their replacements
LEGACY_RULE_PREFIXES: dict[str, str] = {
    "consumer_": "src_",
    "provider_": "dst_",
}


class MissingHeaderError(CSVParserError):
    """Raised when required headers are absent from the CSV."""

    def __init__(self, missing: Iterable[str]) -> None:
        self.missing = sorted(missing)
        super().__init__(f"Missing required header(s): {', '.join(self.missing)}")


def normalize_header(header: str) -> str:
    """Normalize a header for lookup.

    Examples:
        "Host Name" -> "host_name"
        " Public-IP " -> "public_ip"
    """
    return header.strip().lower().replace(" ", "_").replace("-", "_")


def canonical_field(header: str, rewrite_prefixes: dict[str, str] | None = None) -> str:
    """Return the canonical field name for a raw header."""
    name = normalize_header(header)
    for old, new in (rewrite_prefixes or {}).items():
        if name.startswith(old):
            name = new + name[len(old) :]
            break
    return SYNONYMS.get(name, name)


class HeaderMap:
    """Canonical field name -> column index for one CSV file."""

    def __init__(self, columns: dict[str, int]) -> None:
        self._columns = dict(columns)

    def __contains__(self, field: str) -> bool:
        return field in self._columns

    def __repr__(self) -> str:
        return f"HeaderMap({self._columns})"

    @property
    def fields(self) -> list[str]:
        """Mapped fields in column order."""
        return sorted(self._columns, key=self._columns.__getitem__)

    def index(self, field: str) -> int | None:
        return self._columns.get(field)

    def cell(self, row: Sequence[str], field: str) -> str:
        """Value of ``field`` in ``row``, or "" if the column is absent or the row is short."""
        col = self._columns.get(field)
        if col is None or col >= len(row):
            return ""
        return row[col].strip()


def map_headers(
    row0: Sequence[str],
    required: Iterable[str] = (),
    rewrite_prefixes: dict[str, str] | None = None,
) -> HeaderMap:
    """Map a header row to canonical fields.

    Args:
        row0: The first row of the CSV.
        required: Canonical fields that must be present.
        rewrite_prefixes: Header prefixes to rewrite before synonym lookup,
            such as the legacy ``consumer_``/``provider_`` rule headers.

    Returns:
        HeaderMap of canonical field to column index.

    Raises:
        MissingHeaderError: If any required field is missing.
    """
    columns: dict[str, int] = {}
    rewritten: list[str] = []

    for col, header in enumerate(row0):
        if not header.strip():
            continue
        normalized = normalize_header(header)
        field = canonical_field(header, rewrite_prefixes)
        if rewrite_prefixes and any(normalized.startswith(p) for p in rewrite_prefixes):
            rewritten.append(header)
        if field in columns:
            logger.warning(
                "duplicate header for %s in columns %d and %d - using column %d",
                field,
                columns[field] + 1,
                col + 1,
                columns[field] + 1,
            )
            continue
        columns[field] = col

    if rewritten:
        logger.warning(
            "headers %s are deprecated - use src_ and dst_ prefixes instead of consumer_ and provider_",
            ", ".join(rewritten),
        )

    missing = [field for field in required if field not in columns]
    if missing:
        raise MissingHeaderError(missing)

    logger.debug("mapped headers: %s", columns)
    return HeaderMap(columns)
