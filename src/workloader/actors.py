"""Policy actor and ingress service reconciliation.

Rules and enforcement boundaries describe each side of a policy with a list
of actors (all workloads, labels, label groups, IP lists, workloads, virtual
services) and a list of ingress services. The CSV spreads each side over a
set of columns sharing a prefix, for example ``src_labels`` and
``src_iplists``. Every actor kind is reconciled as its own set.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from typing import Any

from workloader.headers import HeaderMap
from workloader.reconcile import (
    FieldChange,
    LabelResolver,
    ReconcileError,
    parse_bool,
    reconcile_set_cell,
)
from workloader.repository import EntityRepository
from workloader.services import format_port_entry, parse_port_entry, port_entry_key

logger = logging.getLogger(__name__)

ALL_WORKLOADS = "ams"

# CSV column suffix -> actor key in the API
ACTOR_KINDS: dict[str, str] = {
    "labels": "label",
    "label_groups": "label_group",
    "iplists": "ip_list",
    "workloads": "workload",
    "virtual_services": "virtual_service",
}


def _actor_kind(actor: dict[str, Any]) -> str | None:
    for kind in ACTOR_KINDS.values():
        if kind in actor:
            return kind
    return None


class ActorResolver:
    """Turns CSV actor names into API actor references."""

    def __init__(self, repo: EntityRepository, labels: LabelResolver) -> None:
        self.repo = repo
        self.labels = labels

    def resolver(self, suffix: str, line: int) -> Callable[[str], dict[str, Any]]:
        """Return a function resolving one cell entry for the given column suffix."""
        kind = ACTOR_KINDS[suffix]

        def resolve(entry: str) -> dict[str, Any]:
            if suffix == "labels":
                key, sep, value = entry.partition(":")
                if not sep or not key.strip() or not value.strip():
                    raise ReconcileError(line, f"'{entry}' is not in key:value format")
                href = self.labels.resolve(key.strip(), value.strip(), line)
                return {kind: {"href": href}}

            lookup = {
                "label_groups": self.repo.label_group_by_name,
                "iplists": self.repo.ip_list_by_name,
                "workloads": self.repo.workload_by_hostname_or_name,
                "virtual_services": self.repo.virtual_service_by_name,
            }[suffix]
            found = lookup(entry)
            if found is None:
                raise ReconcileError(line, f"{entry} does not exist as a {kind.replace('_', ' ')}")
            return {kind: {"href": found["href"]}}

        return resolve

    def name(self, actor: dict[str, Any]) -> str:
        """CSV representation of a single actor."""
        kind = _actor_kind(actor)
        if kind is None:
            return ""
        href = actor[kind]["href"]
        if kind == "label":
            label = self.repo.label(href)
            return f"{label['key']}:{label['value']}" if label else href
        entity = {
            "label_group": self.repo.label_groups,
            "ip_list": self.repo.ip_lists,
            "workload": self.repo.workloads,
            "virtual_service": self.repo.virtual_services,
        }[kind].get(href)
        if entity is None:
            return href
        if kind == "workload":
            return entity.get("hostname") or entity.get("name") or href
        return entity.get("name") or href


def _actor_key(actor: dict[str, Any]) -> str:
    kind = _actor_kind(actor)
    return f"{kind}:{actor[kind]['href']}" if kind else str(actor)


def reconcile_actors(
    current: Sequence[dict[str, Any]],
    row: Sequence[str],
    headers: HeaderMap,
    prefix: str,
    resolver: ActorResolver,
    remove_value: str,
    line: int,
    suffixes: Sequence[str] = tuple(ACTOR_KINDS),
) -> FieldChange:
    """Reconcile one side of a rule or boundary.

    Args:
        current: Current actor list.
        row: CSV row.
        headers: Header map for the CSV.
        prefix: Column prefix for this side (e.g. "src_" or "consumer_").
        resolver: Resolves CSV names to actors.
        remove_value: Cell value that clears an actor kind.
        line: CSV line number.
        suffixes: Actor column suffixes this object type supports.

    Returns:
        FieldChange whose value is the new actor list.

    Raises:
        ReconcileError: On an invalid boolean or unknown reference.
    """
    changed = False
    has_ams = any(a.get("actors") == ALL_WORKLOADS for a in current)

    all_col = f"{prefix}all_workloads"
    cell = headers.cell(row, all_col)
    if cell:
        try:
            want_ams = parse_bool(cell)
        except ValueError:
            raise ReconcileError(line, f"{cell} is not valid boolean for {all_col}") from None
        if want_ams != has_ams:
            logger.info("csv line %d - %s to be changed from %s to %s", line, all_col, has_ams, want_ams)
            changed = True
            has_ams = want_ams

    actors: list[dict[str, Any]] = [{"actors": ALL_WORKLOADS}] if has_ams else []

    # Actor kinds without a CSV column (virtual servers, or kinds this object
    # type does not import) are kept as they are.
    handled = {ACTOR_KINDS[suffix] for suffix in suffixes}
    actors += [
        a for a in current if a.get("actors") != ALL_WORKLOADS and _actor_kind(a) not in handled
    ]

    for suffix in suffixes:
        kind = ACTOR_KINDS[suffix]
        members = [a for a in current if kind in a]
        column = f"{prefix}{suffix}"
        result = reconcile_set_cell(
            members,
            headers.cell(row, column),
            resolver.resolver(suffix, line),
            remove_value,
            key=_actor_key,
        )
        if result.changed:
            logger.info("csv line %d - %s to be changed", line, column)
        changed |= result.changed
        actors.extend(result.value)

    return FieldChange(changed=changed, value=actors)


def export_actor_cells(
    actors: Sequence[dict[str, Any]],
    resolver: ActorResolver,
    suffixes: Sequence[str] = tuple(ACTOR_KINDS),
) -> list[str]:
    """Cells for all_workloads followed by each actor kind."""
    cells = [str(any(a.get("actors") == ALL_WORKLOADS for a in actors)).lower()]
    for suffix in suffixes:
        kind = ACTOR_KINDS[suffix]
        cells.append(";".join(resolver.name(a) for a in actors if kind in a))
    return cells


# =============================================================================
# Ingress services
# =============================================================================


def ingress_service_key(repo: EntityRepository, entry: dict[str, Any]) -> str:
    """Service name for service references, "<proto>-<port>-<to_port>" for port entries."""
    if "href" in entry:
        service = repo.services.get(entry["href"])
        return service["name"] if service else entry["href"]
    return port_entry_key(entry)


def resolve_ingress_service(repo: EntityRepository, entry: str, line: int) -> dict[str, Any]:
    """Resolve a services cell entry to an ingress service.

    Raises:
        ReconcileError: If the entry is neither a port entry nor a known service.
    """
    try:
        port_entry = parse_port_entry(entry)
    except ValueError as e:
        raise ReconcileError(line, str(e)) from None
    if port_entry is not None:
        return port_entry
    service = repo.service_by_name(entry)
    if service is None:
        raise ReconcileError(line, f"{entry} does not exist as a service")
    return {"href": service["href"]}


def reconcile_ingress_services(
    repo: EntityRepository,
    current: Sequence[dict[str, Any]],
    cell: str,
    remove_value: str,
    line: int,
) -> FieldChange:
    """Reconcile a services cell with a rule or boundary's ingress services."""
    current_entries = []
    for s in current:
        if "href" in s:
            current_entries.append({"href": s["href"]})
        else:
            current_entries.append({k: v for k, v in s.items() if k in ("port", "to_port", "proto")})
    result = reconcile_set_cell(
        current_entries,
        cell,
        lambda entry: resolve_ingress_service(repo, entry, line),
        remove_value,
        key=lambda s: ingress_service_key(repo, s),
    )
    if result.changed:
        logger.info("csv line %d - services to be changed", line)
    return result


def export_ingress_services(repo: EntityRepository, services: Sequence[dict[str, Any]]) -> str:
    names = []
    for entry in services:
        if "href" in entry:
            service = repo.services.get(entry["href"])
            names.append(service["name"] if service else entry["href"])
        else:
            names.append(format_port_entry(entry))
    return ";".join(names)
