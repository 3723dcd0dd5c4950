"""Label group export and import.

Members are written by label value and sub-groups by name. Both are looked
up within the group's key on import, since a label group only holds labels
of its own key.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
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
    "href",
    "name",
    "key",
    "description",
    "member_labels",
    "member_label_groups",
    "fully_expanded_members",
]

LG_SELECTORS = ("labels", "label_dimensions", "label_groups")


def _label_values(repo: EntityRepository, hrefs: list[str]) -> str:
    values = []
    for href in hrefs:
        label = repo.label(href)
        values.append(label["value"] if label else href)
    return ";".join(values)


def export_rows(repo: EntityRepository) -> list[list[str]]:
    """Header row plus one row per label group."""
    rows = [list(EXPORT_HEADERS)]
    for group in sorted(repo.label_groups.values(), key=lambda g: (g.get("key") or "", g.get("name") or "")):
        sub_groups = []
        for sub_group in group.get("sub_groups") or []:
            found = repo.label_groups.get(sub_group["href"])
            sub_groups.append(found["name"] if found else sub_group["href"])
        rows.append(
            [
                group["href"],
                group.get("name") or "",
                group.get("key") or "",
                group.get("description") or "",
                _label_values(repo, [label["href"] for label in group.get("labels") or []]),
                ";".join(sub_groups),
                _label_values(repo, repo.expand_label_group(group["href"])),
            ]
        )
    return rows


async def export_label_groups(client: PCEClient, output_file: Path) -> int:
    """Export all draft label groups. Returns the number written."""
    repo = EntityRepository()
    await repo.load(client, *LG_SELECTORS)
    rows = export_rows(repo)
    write_csv(output_file, rows)
    logger.info("exported %d label groups to %s", len(rows) - 1, output_file)
    return len(rows) - 1


class LabelGroupImporter:
    """Reconciles label group rows against a repository snapshot.

    Rows that cannot be applied (unknown href, a key change, missing name or
    key on a new group, or a member that does not exist) are skipped with a
    warning.
    """

    def __init__(self, repo: EntityRepository, remove_value: str = "") -> None:
        self.repo = repo
        self.remove_value = remove_value
        self.diff = DiffAccumulator(allow_create=True)

    def process(self, rows: list[list[str]]) -> DiffAccumulator:
        """Reconcile all label group rows.

        Raises:
            MissingHeaderError: If there is no name column.
        """
        headers = map_headers(rows[0], required=["name"])
        for line, row in enumerate(rows[1:], start=2):
            try:
                self._process_row(headers, row, line)
            except ReconcileError as e:
                logger.warning("%s. skipping.", e)
                self.diff.skip()
        return self.diff

    def _resolve_label(self, key: str, line: int) -> Callable[[str], dict[str, str]]:
        def resolve(value: str) -> dict[str, str]:
            label = self.repo.label_by_key_value(key, value)
            if label is None:
                raise ReconcileError(line, f"{value} ({key}) does not exist as a label")
            return {"href": label["href"]}

        return resolve

    def _resolve_sub_group(self, key: str, line: int) -> Callable[[str], dict[str, str]]:
        def resolve(name: str) -> dict[str, str]:
            group = self.repo.label_group_by_key_name(key, name)
            if group is None:
                raise ReconcileError(line, f"{name} ({key}) does not exist as a label group")
            return {"href": group["href"]}

        return resolve

    def _process_row(self, headers: HeaderMap, row: list[str], line: int) -> None:
        href = headers.cell(row, "href")
        name = headers.cell(row, "name")
        key = headers.cell(row, "key").lower()

        existing = None
        if href:
            existing = self.repo.label_groups.get(href)
            if existing is None:
                raise ReconcileError(line, f"{href} does not exist in the pce")
            if key and key != existing.get("key"):
                raise ReconcileError(line, f"{href} - the key cannot be changed for an existing label group")
            key = existing.get("key") or ""
        else:
            if not name:
                raise ReconcileError(line, "name is required for new label groups")
            if not key:
                raise ReconcileError(line, "key is required for new label groups")
            if key not in self.repo.label_keys():
                logger.warning("csv line %d - %s is not a known label key", line, key)

        is_new = existing is None
        group: dict[str, Any] = existing or {}
        ident = name or href
        entity: dict[str, Any] = {}
        changed = False

        def take(field: str, change: FieldChange) -> None:
            nonlocal changed
            if change.changed and not is_new:
                logger.info("csv line %d - %s - %s to be changed", line, ident, field)
            changed |= change.changed
            entity[field] = change.value

        take("name", reconcile_value(group.get("name"), name))
        description = headers.cell(row, "description")
        take("description", reconcile_value(group.get("description"), description, self.remove_value))
        take(
            "labels",
            reconcile_set_cell(
                [{"href": label["href"]} for label in group.get("labels") or []],
                headers.cell(row, "member_labels"),
                self._resolve_label(key, line),
                self.remove_value,
                key=lambda label: label["href"],
            ),
        )
        take(
            "sub_groups",
            reconcile_set_cell(
                [{"href": sub_group["href"]} for sub_group in group.get("sub_groups") or []],
                headers.cell(row, "member_label_groups"),
                self._resolve_sub_group(key, line),
                self.remove_value,
                key=lambda sub_group: sub_group["href"],
            ),
        )

        if is_new:
            entity["key"] = key
            if not entity["description"]:
                del entity["description"]
            logger.info("csv line %d - %s will be created", line, ident)
        else:
            entity["href"] = group["href"]

        self.diff.add(DiffEntry(entity=entity, line=line, changed=changed, ident=ident), exists=not is_new)


async def import_label_groups(
    client: PCEClient,
    csv_file: Path,
    driver: ApplyDriver,
    remove_value: str = "",
    provision: bool = False,
    provision_comment: str = "",
) -> ApplyState:
    """Run labelgroup-import end to end."""
    repo = EntityRepository()
    await repo.load(client, *LG_SELECTORS)

    diff = LabelGroupImporter(repo, remove_value).process(read_csv(csv_file))
    touched: list[str] = []

    async def update(entries: list[DiffEntry]) -> None:
        for entry in entries:
            body = {k: v for k, v in entry.entity.items() if k != "href"}
            try:
                await client.update_label_group(entry.entity["href"], body)
            except APIError as e:
                if e.status_code != 406:
                    raise
                logger.warning("csv line %d - %s - 406 Not Acceptable - %s", entry.line, entry.ident, e.message)
                continue
            touched.append(entry.entity["href"])
            logger.info("updated label group %s - %s", entry.ident, entry.entity["href"])

    async def create(entries: list[DiffEntry]) -> None:
        for entry in entries:
            try:
                created = await client.create_label_group(entry.entity)
            except APIError as e:
                if e.status_code != 406:
                    raise
                logger.warning("csv line %d - %s - 406 Not Acceptable - %s", entry.line, entry.ident, e.message)
                continue
            touched.append(created["href"])
            logger.info("created label group %s - %s", entry.ident, created["href"])

    state = await driver.run(
        diff,
        update=update,
        create=create,
        update_noun="label groups requiring updates",
        create_noun="label groups to create",
    )

    if state is ApplyState.COMPLETE and provision and touched:
        await client.provision({"label_groups": touched}, provision_comment)
        logger.info("provisioned %d label groups", len(touched))

    return state
