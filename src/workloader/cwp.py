"""Container workload profile export and import.

Profiles are read per container cluster. Import only updates existing
profiles; there is no create path. Profile labels are stored as
``{"key": ..., "assignment": {"href": ..., "value": ...}}``.
"""

from __future__ import annotations

import copy
import logging
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
    LabelResolver,
    ReconcileError,
    is_remove,
    reconcile_bool,
    reconcile_value,
)
from workloader.repository import EntityRepository

logger = logging.getLogger(__name__)

PLACEHOLDER_PREFIX = "cwp-import-temp"

DEFAULT_REMOVE_VALUE = "workloader-remove"

DEFAULT_PROFILE = "Default Profile"

CWP_SELECTORS = ("label_dimensions", "labels", "container_workload_profiles")


def export_headers(label_keys: list[str]) -> list[str]:
    headers = ["container_cluster", "name", "description", "namespace"]
    headers += ["enforcement", "visibility", "managed"]
    return headers + label_keys + ["href"]


def assigned_labels(profile: dict[str, Any]) -> dict[str, dict[str, Any]]:
    """Label key -> label entry of a profile."""
    return {entry["key"]: entry for entry in profile.get("labels") or [] if entry.get("key")}


def export_rows(repo: EntityRepository) -> list[list[str]]:
    """Header row plus one row per profile, skipping each cluster's default profile."""
    label_keys = repo.label_keys()
    rows = [export_headers(label_keys)]
    for href, profile in repo.container_workload_profiles.items():
        if profile.get("name") == DEFAULT_PROFILE:
            continue
        labels = assigned_labels(profile)
        level = profile.get("visibility_level") or ""
        row = [
            repo.cwp_cluster.get(href, ""),
            profile.get("name") or "",
            profile.get("description") or "",
            profile.get("namespace") or "",
            profile.get("enforcement_mode") or "",
            VISIBILITY_FROM_API.get(level, level),
            str(bool(profile.get("managed"))).lower(),
        ]
        for key in label_keys:
            assignment = (labels.get(key) or {}).get("assignment") or {}
            row.append(assignment.get("value") or "")
        row.append(href)
        rows.append(row)
    return rows


async def export_profiles(client: PCEClient, output_file: Path) -> int:
    """Export container workload profiles. Returns the number written."""
    repo = EntityRepository()
    await repo.load(client, *CWP_SELECTORS)
    rows = export_rows(repo)
    write_csv(output_file, rows)
    logger.info("exported %d container workload profiles to %s", len(rows) - 1, output_file)
    return len(rows) - 1


class ProfileImporter:
    """Reconciles container workload profile rows against a repository snapshot."""

    def __init__(self, repo: EntityRepository, remove_value: str = DEFAULT_REMOVE_VALUE) -> None:
        self.repo = repo
        self.remove_value = remove_value
        self.resolver = LabelResolver(repo, PLACEHOLDER_PREFIX)
        self.diff = DiffAccumulator(allow_create=False)

    def process(self, rows: list[list[str]]) -> DiffAccumulator:
        headers = map_headers(rows[0], required=["href"])
        for line, row in enumerate(rows[1:], start=2):
            self._process_row(headers, row, line)
        self.diff.add_placeholders(self.resolver.to_create)
        return self.diff

    def _process_row(self, headers: HeaderMap, row: list[str], line: int) -> None:
        href = headers.cell(row, "href")
        existing = self.repo.container_workload_profiles.get(href) if href else None
        if existing is None:
            logger.warning("csv line %d - %s does not exist. skipping.", line, href or "<blank href>")
            self.diff.skip()
            return
        if existing.get("name") == DEFAULT_PROFILE:
            logger.info("csv line %d - skipping %s", line, DEFAULT_PROFILE)
            self.diff.skip()
            return

        profile = copy.deepcopy(existing)
        changed = False

        def take(field: str, change: FieldChange) -> None:
            nonlocal changed
            if change.changed:
                logger.info(
                    "csv line %d - %s - %s to be changed from %s to %s",
                    line,
                    href,
                    field,
                    profile.get(field),
                    change.value,
                )
                profile[field] = change.value
                changed = True

        for field in ("name", "description"):
            if field in headers:
                take(field, reconcile_value(profile.get(field), headers.cell(row, field), self.remove_value))

        mode = headers.cell(row, "enforcement").lower()
        if mode:
            if mode not in ENFORCEMENT_MODES:
                raise ReconcileError(
                    line, f"invalid enforcement '{mode}'. must be {', '.join(ENFORCEMENT_MODES)}"
                )
            take("enforcement_mode", reconcile_value(profile.get("enforcement_mode"), mode))

        visibility = headers.cell(row, "visibility").lower()
        if visibility:
            if visibility not in VISIBILITY_TO_API:
                raise ReconcileError(
                    line, f"invalid visibility '{visibility}'. must be {', '.join(VISIBILITY_TO_API)}"
                )
            take(
                "visibility_level",
                reconcile_value(profile.get("visibility_level"), VISIBILITY_TO_API[visibility]),
            )

        take("managed", reconcile_bool(profile.get("managed"), headers.cell(row, "managed"), line, "managed"))

        labels_change = self._reconcile_labels(profile, headers, row, line)
        if labels_change.changed:
            profile["labels"] = labels_change.value
            changed = True

        entity = {
            field: profile[field]
            for field in ("name", "description", "enforcement_mode", "visibility_level", "managed", "labels")
            if field in profile
        }
        entity["href"] = href
        self.diff.add(DiffEntry(entity=entity, line=line, changed=changed, ident=href), exists=True)

    def _reconcile_labels(
        self, profile: dict[str, Any], headers: HeaderMap, row: list[str], line: int
    ) -> FieldChange:
        current = assigned_labels(profile)
        result: dict[str, dict[str, Any]] = dict(current)
        changed = False

        for key in self.repo.label_keys():
            if key not in headers:
                continue
            cell = headers.cell(row, key)
            if cell == "":
                continue
            assignment = (current.get(key) or {}).get("assignment") or {}
            if is_remove(cell, self.remove_value):
                if key in current:
                    logger.info("csv line %d - %s - %s label to be removed", line, profile["href"], key)
                    del result[key]
                    changed = True
                continue
            if assignment.get("value") == cell:
                continue
            label_href = self.resolver.resolve(key, cell, line)
            logger.info(
                "csv line %d - %s - %s label to be changed from %s to %s",
                line,
                profile["href"],
                key,
                assignment.get("value") or "<empty>",
                cell,
            )
            result[key] = {"key": key, "assignment": {"href": label_href, "value": cell}}
            changed = True

        return FieldChange(changed=changed, value=list(result.values()))


async def import_profiles(
    client: PCEClient,
    csv_file: Path,
    driver: ApplyDriver,
    remove_value: str = DEFAULT_REMOVE_VALUE,
) -> ApplyState:
    """Run cwp-import end to end."""
    repo = EntityRepository()
    await repo.load(client, *CWP_SELECTORS)

    diff = ProfileImporter(repo, remove_value).process(read_csv(csv_file))

    async def update(entries: list[DiffEntry]) -> None:
        for entry in entries:
            body = {k: v for k, v in entry.entity.items() if k != "href"}
            await client.update_container_workload_profile(entry.entity["href"], body)
            logger.info("csv line %d - updated %s", entry.line, entry.entity["href"])

    return await driver.run(
        diff,
        create_label=client.create_label,
        update=update,
        update_noun="container workload profiles requiring updates",
    )
