"""Label export and import.

A row without an href names a label by key and value; it is created unless
the pair already exists. A row with an href edits that label's value and
external data. Label keys never change.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from workloader.api_client import APIError, PCEClient
from workloader.apply import ApplyDriver, ApplyState
from workloader.csv_parser import read_csv, write_csv
from workloader.diff import DiffAccumulator, DiffEntry
from workloader.headers import HeaderMap, map_headers
from workloader.reconcile import ReconcileError, placeholder_href, reconcile_value
from workloader.repository import EntityRepository

logger = logging.getLogger(__name__)

PLACEHOLDER_PREFIX = "label-import-temp"

EXPORT_HEADERS = ["href", "key", "value", "external_data_set", "external_data_reference"]

EXTERNAL_FIELDS = ("external_data_set", "external_data_reference")


def export_rows(repo: EntityRepository) -> list[list[str]]:
    """Header row plus one row per label. Deleted labels are left out."""
    rows = [list(EXPORT_HEADERS)]
    labels = sorted(repo.labels.values(), key=lambda label: (label["key"], label["value"]))
    for label in labels:
        if label.get("deleted"):
            continue
        external = [label.get(f) or "" for f in EXTERNAL_FIELDS]
        rows.append([label["href"], label["key"], label["value"], *external])
    return rows


async def export_labels(client: PCEClient, output_file: Path) -> int:
    """Export all labels. Returns the number written."""
    repo = EntityRepository()
    await repo.load(client, "labels")
    rows = export_rows(repo)
    write_csv(output_file, rows)
    logger.info("exported %d labels to %s", len(rows) - 1, output_file)
    return len(rows) - 1


class LabelImporter:
    """Reconciles label rows against a repository snapshot."""

    def __init__(self, repo: EntityRepository, remove_value: str = "") -> None:
        self.repo = repo
        self.remove_value = remove_value
        self.diff = DiffAccumulator(allow_create=True)

    def process(self, rows: list[list[str]]) -> DiffAccumulator:
        """Reconcile all label rows.

        Raises:
            MissingHeaderError: If the key or value column is missing.
            ReconcileError: If a new label has a blank key or value.
        """
        headers = map_headers(rows[0], required=["key", "value"])
        for line, row in enumerate(rows[1:], start=2):
            self._process_row(headers, row, line)
        return self.diff

    def _process_row(self, headers: HeaderMap, row: list[str], line: int) -> None:
        href = headers.cell(row, "href")
        key = headers.cell(row, "key")
        value = headers.cell(row, "value")
        data_set = headers.cell(row, "external_data_set")
        data_ref = headers.cell(row, "external_data_reference")

        if not href:
            if not key or not value:
                raise ReconcileError(line, "key and value are required for new labels")
            existing = self.repo.label_by_key_value(key, value)
            ident = f"{value} ({key})"
            if existing is not None:
                logger.info(
                    "csv line %d - %s already exists - %s. to edit provide the href in the csv input.",
                    line,
                    ident,
                    existing["href"],
                )
                self.diff.add(
                    DiffEntry(entity={"href": existing["href"]}, line=line, changed=False, ident=ident),
                    exists=True,
                )
                return

            entity: dict[str, Any] = {"key": key, "value": value}
            if data_set and data_ref and self.remove_value not in (data_set, data_ref):
                entity["external_data_set"] = data_set
                entity["external_data_reference"] = data_ref
            # Later rows with the same key and value see this label as existing
            self.repo.add_placeholder_label(key, value, placeholder_href(PLACEHOLDER_PREFIX, key, value))
            logger.info("csv line %d - %s to be created", line, ident)
            self.diff.add(DiffEntry(entity=entity, line=line, changed=True, ident=ident), exists=False)
            return

        label = self.repo.label(href)
        if label is None:
            logger.warning("csv line %d - %s does not exist in the pce. skipping.", line, href)
            self.diff.skip()
            return
        if key and key != label["key"]:
            logger.warning("csv line %d - %s - cannot change label key. skipping.", line, href)
            self.diff.skip()
            return

        entity = {"href": href}
        changed = False

        new_value = reconcile_value(label["value"], value)
        if new_value.changed:
            logger.info(
                "csv line %d - %s - value to be changed from %s to %s",
                line,
                href,
                label["value"],
                new_value.value,
            )
            entity["value"] = new_value.value
            changed = True

        for field, cell in zip(EXTERNAL_FIELDS, (data_set, data_ref), strict=True):
            change = reconcile_value(label.get(field), cell, self.remove_value)
            if change.changed:
                logger.info(
                    "csv line %d - %s - %s to be changed from %s to %s",
                    line,
                    href,
                    field,
                    label.get(field) or "",
                    change.value,
                )
                entity[field] = change.value
                changed = True

        self.diff.add(DiffEntry(entity=entity, line=line, changed=changed, ident=href), exists=True)


async def import_labels(
    client: PCEClient,
    csv_file: Path,
    driver: ApplyDriver,
    remove_value: str = "",
) -> ApplyState:
    """Run label-import end to end."""
    repo = EntityRepository()
    await repo.load(client, "labels")

    diff = LabelImporter(repo, remove_value).process(read_csv(csv_file))

    async def update(entries: list[DiffEntry]) -> None:
        for entry in entries:
            body = {k: v for k, v in entry.entity.items() if k != "href"}
            try:
                await client.update_label(entry.entity["href"], body)
            except APIError as e:
                if e.status_code != 406:
                    raise
                logger.warning("csv line %d - %s - 406 Not Acceptable - %s", entry.line, entry.ident, e.message)
                continue
            logger.info("csv line %d - updated label %s", entry.line, entry.entity["href"])

    async def create(entries: list[DiffEntry]) -> None:
        for entry in entries:
            external = {k: entry.entity[k] for k in EXTERNAL_FIELDS if k in entry.entity}
            try:
                created = await client.create_label(entry.entity["key"], entry.entity["value"], **external)
            except APIError as e:
                if e.status_code != 406:
                    raise
                logger.warning("csv line %d - %s - 406 Not Acceptable - %s", entry.line, entry.ident, e.message)
                continue
            logger.info("csv line %d - created label %s - %s", entry.line, entry.ident, created["href"])

    return await driver.run(
        diff,
        update=update,
        create=create,
        update_noun="labels requiring updates",
        create_noun="labels to create",
    )
