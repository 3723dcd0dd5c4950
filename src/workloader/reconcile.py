"""Field reconciliation between CSV cells and PCE objects.

Every import command compares the state a CSV row describes with the
current state of a PCE object one field at a time. The same policy applies
to every field:

- A blank cell keeps the current value.
- A cell equal to the remove value clears the field. This is a change only
  if the field was not already empty.
- Any other cell that differs from the current value is a change.

Set-valued fields (labels on a rule, IP lists, services, interfaces, ...)
are compared as sets. Any difference replaces the whole set with the CSV's.
"""

from __future__ import annotations

import ipaddress
import logging
from collections.abc import Callable, Hashable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from workloader.headers import HeaderMap
from workloader.repository import EntityRepository

logger = logging.getLogger(__name__)

DEFAULT_INTERFACE_NAME = "umwl"

TRUE_VALUES = frozenset(["1", "t", "true"])
FALSE_VALUES = frozenset(["0", "f", "false"])

ENFORCEMENT_MODES: tuple[str, ...] = ("idle", "visibility_only", "selective", "full")

# CSV visibility value -> PCE visibility_level
VISIBILITY_TO_API: dict[str, str] = {
    "blocked_allowed": "flow_summary",
    "blocked": "flow_drops",
    "off": "flow_off",
    "enhanced_data_collection": "enhanced_data_collection",
}
VISIBILITY_FROM_API: dict[str, str] = {v: k for k, v in VISIBILITY_TO_API.items()}


class ReconcileError(Exception):
    """Raised when a CSV row cannot be reconciled."""

    def __init__(self, line: int, message: str) -> None:
        self.line = line
        self.message = message
        super().__init__(f"csv line {line} - {message}")


@dataclass(frozen=True, slots=True)
class FieldChange:
    """Result of reconciling one field.

    Attributes:
        changed: Whether the CSV requires the field to change.
        value: The value the field should have after the import.
    """

    changed: bool
    value: Any

    @classmethod
    def keep(cls, value: Any) -> FieldChange:
        """Create a result that keeps the current value."""
        return cls(changed=False, value=value)

    @classmethod
    def to(cls, value: Any) -> FieldChange:
        """Create a result that changes the field to ``value``."""
        return cls(changed=True, value=value)


# =============================================================================
# Cell parsing
# =============================================================================


def split_cell(cell: str, sep: str = ";") -> list[str]:
    """Split a multi-value cell, dropping blanks.

    Examples:
        "a;b" -> ["a", "b"]
        "a; b;" -> ["a", "b"]
    """
    return [part.strip() for part in cell.split(sep) if part.strip()]


def parse_bool(value: str) -> bool:
    """Parse a strict boolean (true/false/t/f/1/0, any case).

    Raises:
        ValueError: If the value is not a boolean.
    """
    lowered = value.strip().lower()
    if lowered in TRUE_VALUES:
        return True
    if lowered in FALSE_VALUES:
        return False
    raise ValueError(f"invalid boolean value '{value}'")


def parse_key_value(cell: str) -> list[tuple[str, str]]:
    """Parse ``key:value;key:value`` cells.

    Raises:
        ValueError: If an entry has no ``:`` separator.
    """
    pairs = []
    for entry in split_cell(cell):
        key, sep, value = entry.partition(":")
        if not sep or not key.strip() or not value.strip():
            raise ValueError(f"'{entry}' is not in key:value format")
        pairs.append((key.strip(), value.strip()))
    return pairs


# =============================================================================
# Scalar and set reconciliation
# =============================================================================


def is_remove(cell: str, remove_value: str) -> bool:
    return bool(remove_value) and cell == remove_value


def reconcile_value(current: str | None, cell: str, remove_value: str = "") -> FieldChange:
    """Reconcile a scalar string field.

    Args:
        current: Current value on the PCE (None is treated as empty).
        cell: Raw CSV cell.
        remove_value: Sentinel that clears the field. Empty disables it.

    Returns:
        FieldChange with the value the field should end up with.
    """
    current = current or ""
    if cell == "":
        return FieldChange.keep(current)
    if is_remove(cell, remove_value):
        return FieldChange(changed=current != "", value="")
    if cell != current:
        return FieldChange.to(cell)
    return FieldChange.keep(current)


def reconcile_bool(current: bool | None, cell: str, line: int, field: str) -> FieldChange:
    """Reconcile a boolean field.

    Raises:
        ReconcileError: If the cell is not a valid boolean.
    """
    if cell == "":
        return FieldChange.keep(current)
    try:
        desired = parse_bool(cell)
    except ValueError as e:
        raise ReconcileError(line, f"{field}: {e}") from None
    # A missing flag on the PCE is false
    if desired != bool(current):
        return FieldChange.to(desired)
    return FieldChange.keep(current)


def _identity(item: Any) -> Hashable:
    return item


def reconcile_set(
    current: Iterable[Any],
    desired: Iterable[Any],
    key: Callable[[Any], Hashable] = _identity,
) -> FieldChange:
    """Reconcile a set-valued field.

    The desired items replace the current ones whenever the two sets differ.
    Duplicates in ``desired`` are dropped, keeping first occurrence order.

    Example:
        >>> reconcile_set(["A", "B"], ["B", "C"])
        FieldChange(changed=True, value=['B', 'C'])
    """
    current_keys = {key(item) for item in current}

    value = []
    seen: set[Hashable] = set()
    for item in desired:
        k = key(item)
        if k in seen:
            continue
        seen.add(k)
        value.append(item)

    return FieldChange(changed=bool(current_keys ^ seen), value=value)


def reconcile_set_cell(
    current: Sequence[Any],
    cell: str,
    resolve: Callable[[str], Any],
    remove_value: str = "",
    key: Callable[[Any], Hashable] = _identity,
) -> FieldChange:
    """Reconcile a ``;``-separated cell against a set-valued field.

    Args:
        current: Current items.
        cell: Raw CSV cell.
        resolve: Turns one cell entry into an item comparable with ``current``.
        remove_value: Sentinel that clears the set.
        key: Comparison key for items.
    """
    if cell == "":
        return FieldChange.keep(list(current))
    if is_remove(cell, remove_value):
        return FieldChange(changed=len(current) > 0, value=[])
    return reconcile_set(current, [resolve(entry) for entry in split_cell(cell)], key=key)


# =============================================================================
# Labels
# =============================================================================


def placeholder_href(prefix: str, key: str, value: str) -> str:
    """Placeholder href for a label that will be created during apply."""
    return f"{prefix}-{key}-{value}"


class LabelResolver:
    """Resolves label key/value pairs to hrefs, creating placeholders on demand.

    A placeholder is registered in the repository the first time a missing
    label is resolved, so every later resolution of the same pair returns
    the same href and ``to_create`` holds it exactly once.
    """

    def __init__(self, repo: EntityRepository, prefix: str, allow_create: bool = True) -> None:
        self.repo = repo
        self.prefix = prefix
        self.allow_create = allow_create
        self.to_create: dict[str, tuple[str, str]] = {}

    def resolve(self, key: str, value: str, line: int) -> str:
        """Return the href of label ``key:value``.

        Raises:
            ReconcileError: If the label does not exist and creation is disabled.
        """
        label = self.repo.label_by_key_value(key, value)
        if label is not None:
            return label["href"]

        if not self.allow_create:
            raise ReconcileError(
                line, f"{key}:{value} does not exist as a label. use --create-labels to create it"
            )

        href = placeholder_href(self.prefix, key, value)
        self.repo.add_placeholder_label(key, value, href)
        self.to_create[href] = (key, value)
        logger.info("csv line %d - %s:%s is a new label to be created", line, key, value)
        return href


def reconcile_labels(
    current: Sequence[dict[str, Any]],
    row: Sequence[str],
    headers: HeaderMap,
    label_keys: Iterable[str],
    resolver: LabelResolver,
    remove_value: str,
    line: int,
    ident: str,
) -> FieldChange:
    """Reconcile a workload's labels with the label columns of a row.

    Labels whose key has no column are kept, as are labels with keys the
    repository does not know.

    Returns:
        FieldChange whose value is a list of ``{"href": ...}`` references.
    """
    repo = resolver.repo
    current_by_key: dict[str, str] = {}
    unknown: list[str] = []
    for ref in current:
        label = repo.label(ref["href"])
        if label is None:
            unknown.append(ref["href"])
        else:
            current_by_key[label["key"]] = ref["href"]

    changed = False
    new_hrefs: list[str] = []
    for key in label_keys:
        current_href = current_by_key.pop(key, None)
        current_value = repo.label(current_href)["value"] if current_href else ""

        if key not in headers:
            if current_href:
                new_hrefs.append(current_href)
            continue

        cell = headers.cell(row, key)
        if cell == "" or cell == current_value:
            if current_href:
                new_hrefs.append(current_href)
            continue

        if is_remove(cell, remove_value):
            if current_href:
                changed = True
                logger.info(
                    "csv line %d - %s - %s label of %s to be removed",
                    line,
                    ident,
                    key,
                    current_value,
                )
            continue

        changed = True
        new_hrefs.append(resolver.resolve(key, cell, line))
        logger.info(
            "csv line %d - %s - %s label to be changed from %s to %s",
            line,
            ident,
            key,
            current_value or "<empty>",
            cell,
        )

    # Labels of keys outside label_keys are left alone
    new_hrefs.extend(current_by_key.values())
    new_hrefs.extend(unknown)

    return FieldChange(changed=changed, value=[{"href": href} for href in new_hrefs])


# =============================================================================
# Interfaces
# =============================================================================


@dataclass(frozen=True, slots=True)
class Interface:
    """A workload network interface."""

    address: str
    cidr_block: int | None
    name: str = DEFAULT_INTERFACE_NAME

    @property
    def key(self) -> tuple[str, int | None, str]:
        return (self.address, self.cidr_block, self.name)

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> Interface:
        return cls(
            address=data.get("address", ""),
            cidr_block=data.get("cidr_block"),
            name=data.get("name") or DEFAULT_INTERFACE_NAME,
        )

    def to_api(self) -> dict[str, Any]:
        data: dict[str, Any] = {"address": self.address, "name": self.name}
        if self.cidr_block is not None:
            data["cidr_block"] = self.cidr_block
        return data

    def __str__(self) -> str:
        cidr = f"/{self.cidr_block}" if self.cidr_block is not None else ""
        return f"{self.name}:{self.address}{cidr}"


def parse_interface(value: str) -> Interface:
    """Parse ``[name:]address[/cidr]``.

    IPv6 addresses are accepted with or without a name prefix.

    Raises:
        ValueError: If the address or CIDR is invalid.
    """
    value = value.strip()
    addr_part, slash, cidr_part = value.partition("/")

    name = DEFAULT_INTERFACE_NAME
    try:
        ip = ipaddress.ip_address(addr_part)
    except ValueError:
        name, sep, addr_part = addr_part.partition(":")
        if not sep or not name:
            raise ValueError(f"invalid interface '{value}'") from None
        try:
            ip = ipaddress.ip_address(addr_part)
        except ValueError:
            raise ValueError(f"invalid ip address in interface '{value}'") from None

    cidr_block = None
    if slash:
        if not cidr_part.isdigit() or int(cidr_part) > ip.max_prefixlen:
            raise ValueError(f"invalid cidr block in interface '{value}'")
        cidr_block = int(cidr_part)

    return Interface(address=str(ip), cidr_block=cidr_block, name=name)


def reconcile_interfaces(
    current: Sequence[dict[str, Any]],
    cell: str,
    remove_value: str,
    line: int,
    keep_all_pce_interfaces: bool = False,
) -> FieldChange:
    """Reconcile a workload's interfaces with an interfaces cell.

    Returns:
        FieldChange whose value is a list of API interface dicts.

    Raises:
        ReconcileError: If any interface in the cell is invalid.
    """
    current_ifaces = [Interface.from_api(i) for i in current]

    if cell == "":
        return FieldChange.keep([i.to_api() for i in current_ifaces])
    if is_remove(cell, remove_value):
        return FieldChange(changed=bool(current_ifaces), value=[])

    try:
        desired = [parse_interface(entry) for entry in split_cell(cell)]
    except ValueError as e:
        raise ReconcileError(line, str(e)) from None

    if keep_all_pce_interfaces:
        csv_addresses = {i.address for i in desired}
        desired.extend(i for i in current_ifaces if i.address not in csv_addresses)

    result = reconcile_set(current_ifaces, desired, key=lambda i: i.key)
    return FieldChange(changed=result.changed, value=[i.to_api() for i in result.value])


def validate_public_ip(value: str) -> str:
    """Validate a public IP cell and return its normalized form.

    Raises:
        ValueError: If the value is not an IP address.
    """
    try:
        return str(ipaddress.ip_address(value.strip()))
    except ValueError:
        raise ValueError(f"invalid public ip '{value}'") from None
