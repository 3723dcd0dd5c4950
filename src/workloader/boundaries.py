"""Enforcement boundary export and import."""

from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import Any

from workloader.actors import (
    ActorResolver,
    export_actor_cells,
    export_ingress_services,
    reconcile_actors,
    reconcile_ingress_services,
)
from workloader.api_client import PCEClient
from workloader.apply import ApplyDriver, ApplyState
from workloader.csv_parser import read_csv, write_csv
from workloader.diff import DiffAccumulator, DiffEntry
from workloader.headers import HeaderMap, map_headers
from workloader.reconcile import (
    FieldChange,
    LabelResolver,
    ReconcileError,
    reconcile_bool,
    reconcile_value,
)
from workloader.repository import EntityRepository

logger = logging.getLogger(__name__)

PLACEHOLDER_PREFIX = "eb-import-temp"

NETWORK_TYPES = ("brn", "non_brn", "all")
DEFAULT_NETWORK_TYPE = "brn"

ACTOR_SUFFIXES = ("labels", "label_groups", "iplists")

SIDES = (("consumer_", "consumers"), ("provider_", "providers"))

EB_SELECTORS = ("labels", "enforcement_boundaries", "services", "ip_lists", "label_groups")


def export_headers() -> list[str]:
    headers = ["name", "href", "enabled", "network_type"]
    for prefix, _ in SIDES:
        headers += [f"{prefix}all_workloads"] + [f"{prefix}{s}" for s in ACTOR_SUFFIXES]
    headers.append("services")
    return headers


def export_rows(repo: EntityRepository) -> list[list[str]]:
    """Header row plus one row per enforcement boundary."""
    resolver = ActorResolver(repo, LabelResolver(repo, PLACEHOLDER_PREFIX, allow_create=False))
    rows = [export_headers()]
    for eb in sorted(repo.enforcement_boundaries.values(), key=lambda e: e.get("name") or ""):
        row = [eb.get("name") or "", eb["href"]]
        row.append(str(eb.get("enabled", True)).lower())
        row.append(eb.get("network_type") or DEFAULT_NETWORK_TYPE)
        for _, side in SIDES:
            row += export_actor_cells(eb.get(side) or [], resolver, ACTOR_SUFFIXES)
        row.append(export_ingress_services(repo, eb.get("ingress_services") or []))
        rows.append(row)
    return rows


async def export_boundaries(client: PCEClient, output_file: Path) -> int:
    """Export all draft enforcement boundaries. Returns the number written."""
    repo = EntityRepository()
    await repo.load(client, *EB_SELECTORS)
    rows = export_rows(repo)
    write_csv(output_file, rows)
    logger.info("exported %d enforcement boundaries to %s", len(rows) - 1, output_file)
    return len(rows) - 1


class BoundaryImporter:
    """Reconciles enforcement boundary rows against a repository snapshot."""

    def __init__(
        self, repo: EntityRepository, create_labels: bool = False, remove_value: str = ""
    ) -> None:
        self.repo = repo
        self.remove_value = remove_value
        self.labels = LabelResolver(repo, PLACEHOLDER_PREFIX, allow_create=create_labels)
        self.actors = ActorResolver(repo, self.labels)
        self.diff = DiffAccumulator(allow_create=True)

    def process(self, rows: list[list[str]]) -> DiffAccumulator:
        headers = map_headers(rows[0])
        for line, row in enumerate(rows[1:], start=2):
            self._process_row(headers, row, line)
        self.diff.add_placeholders(self.labels.to_create)
        return self.diff

    def _process_row(self, headers: HeaderMap, row: list[str], line: int) -> None:
        href = headers.cell(row, "href")
        existing = None
        if href:
            existing = self.repo.enforcement_boundaries.get(href)
            if existing is None:
                logger.warning("csv line %d - %s does not exist. skipping.", line, href)
                self.diff.skip()
                return

        is_new = existing is None
        eb: dict[str, Any] = copy.deepcopy(existing) if existing else {}
        ident = href or headers.cell(row, "name") or f"line {line}"
        entity: dict[str, Any] = {}
        changed = False

        def take(field: str, change: FieldChange) -> None:
            nonlocal changed
            if change.changed and not is_new:
                logger.info("csv line %d - %s - %s to be changed", line, ident, field)
            changed |= change.changed
            entity[field] = change.value

        take("name", reconcile_value(eb.get("name"), headers.cell(row, "name")))
        if is_new and not entity["name"]:
            raise ReconcileError(line, "name is required for new enforcement boundaries")

        current_enabled = None if is_new else eb.get("enabled", True)
        enabled = reconcile_bool(current_enabled, headers.cell(row, "enabled"), line, "enabled")
        if enabled.changed or enabled.value is not None:
            take("enabled", enabled)

        network_type = headers.cell(row, "network_type").lower()
        if network_type and network_type not in NETWORK_TYPES:
            raise ReconcileError(
                line, f"invalid network_type '{network_type}'. must be {', '.join(NETWORK_TYPES)}"
            )
        current_type = eb.get("network_type") or (None if is_new else DEFAULT_NETWORK_TYPE)
        take(
            "network_type",
            reconcile_value(current_type, network_type or (DEFAULT_NETWORK_TYPE if is_new else "")),
        )

        for prefix, side in SIDES:
            take(
                side,
                reconcile_actors(
                    eb.get(side) or [],
                    row,
                    headers,
                    prefix,
                    self.actors,
                    self.remove_value,
                    line,
                    suffixes=ACTOR_SUFFIXES,
                ),
            )

        take(
            "ingress_services",
            reconcile_ingress_services(
                self.repo,
                eb.get("ingress_services") or [],
                headers.cell(row, "services"),
                self.remove_value,
                line,
            ),
        )

        if not is_new:
            entity["href"] = eb["href"]
        else:
            logger.info("csv line %d - %s is a new enforcement boundary to be created", line, ident)

        self.diff.add(DiffEntry(entity=entity, line=line, changed=changed, ident=ident), exists=not is_new)


async def import_boundaries(
    client: PCEClient,
    csv_file: Path,
    driver: ApplyDriver,
    create_labels: bool = False,
    remove_value: str = "",
    provision: bool = False,
    provision_comment: str = "",
) -> ApplyState:
    """Run eb-import end to end."""
    repo = EntityRepository()
    await repo.load(client, *EB_SELECTORS)

    diff = BoundaryImporter(repo, create_labels, remove_value).process(read_csv(csv_file))
    touched: list[str] = []

    async def update(entries: list[DiffEntry]) -> None:
        for entry in entries:
            body = {k: v for k, v in entry.entity.items() if k != "href"}
            await client.update_enforcement_boundary(entry.entity["href"], body)
            touched.append(entry.entity["href"])

    async def create(entries: list[DiffEntry]) -> None:
        for entry in entries:
            created = await client.create_enforcement_boundary(entry.entity)
            touched.append(created["href"])
            logger.info("csv line %d - created enforcement boundary %s", entry.line, created["href"])

    state = await driver.run(
        diff,
        create_label=client.create_label,
        update=update,
        create=create,
        update_noun="enforcement boundaries requiring updates",
        create_noun="enforcement boundaries to create",
    )

    if state is ApplyState.COMPLETE and provision and touched:
        await client.provision({"enforcement_boundaries": touched}, provision_comment)
        logger.info("provisioned %d enforcement boundaries", len(touched))

    return state
