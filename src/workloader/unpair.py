"""Unpair managed workloads selected by labels, heartbeat age or an href file."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from workloader.api_client import PCEClient
from workloader.apply import ApplyDriver, ApplyState
from workloader.csv_parser import read_csv, write_csv
from workloader.diff import DiffAccumulator, DiffEntry
from workloader.repository import DEFAULT_LABEL_KEYS, EntityRepository
from workloader.workloads import is_managed, label_value, last_heartbeat

logger = logging.getLogger(__name__)

RESTORE_VALUES = ("saved", "default", "disable")

OUTPUT_HEADERS = [
    "hostname",
    "href",
    *DEFAULT_LABEL_KEYS,
    "policy_sync_status",
    "last_heartbeat",
    "hours_since_last_heartbeat",
]


class UnpairError(Exception):
    """Raised when unpair options are invalid."""

    pass


@dataclass
class UnpairOptions:
    """Selection options for unpair.

    Attributes:
        restore: Firewall restore mode after unpairing.
        labels: Label key -> value every target must have.
        hours: Only unpair workloads whose last heartbeat is at least this old.
        href_file: CSV whose first column lists candidate workload hrefs.
        include_online: Also unpair workloads that are online.
    """

    restore: str
    labels: dict[str, str] = field(default_factory=dict)
    hours: float = 0
    href_file: Path | None = None
    include_online: bool = False

    def validate(self) -> None:
        """Raises UnpairError if the options could select every workload or are invalid."""
        if not any(self.labels.values()) and not self.hours and self.href_file is None:
            raise UnpairError("must provide labels, hours, or an input file")
        self.restore = self.restore.lower()
        if self.restore not in RESTORE_VALUES:
            raise UnpairError("restore value must be saved, default, or disable")


def hours_since(heartbeat: datetime | None, now: datetime) -> float | None:
    if heartbeat is None:
        return None
    return (now - heartbeat).total_seconds() / 3600


def select_targets(
    repo: EntityRepository,
    options: UnpairOptions,
    hrefs: set[str] | None = None,
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    """Managed workloads matching every selection option."""
    now = now or datetime.now(UTC)
    candidates = repo.workloads.values()
    if hrefs is not None:
        candidates = [w for w in candidates if w["href"] in hrefs]

    targets = []
    for workload in candidates:
        if not is_managed(workload):
            continue
        if any(value and label_value(repo, workload, key) != value for key, value in options.labels.items()):
            continue
        if options.hours > 0:
            age = hours_since(last_heartbeat(workload), now)
            if age is None or age < options.hours:
                continue
        if workload.get("online") and not options.include_online:
            continue
        targets.append(workload)
    return targets


def target_rows(repo: EntityRepository, targets: list[dict[str, Any]], now: datetime) -> list[list[str]]:
    rows = [list(OUTPUT_HEADERS)]
    for workload in targets:
        status = (workload.get("agent") or {}).get("status") or {}
        heartbeat = last_heartbeat(workload)
        age = hours_since(heartbeat, now)
        rows.append(
            [
                workload.get("hostname") or "",
                workload["href"],
                *(label_value(repo, workload, key) for key in DEFAULT_LABEL_KEYS),
                status.get("security_policy_sync_state") or "",
                heartbeat.isoformat() if heartbeat else "",
                f"{age:f}" if age is not None else "NA",
            ]
        )
    return rows


async def unpair_workloads(
    client: PCEClient,
    options: UnpairOptions,
    driver: ApplyDriver,
    output_file: Path,
) -> ApplyState:
    """Select workloads, write them to ``output_file``, then unpair after confirmation.

    Raises:
        UnpairError: If the options are invalid.
    """
    options.validate()

    repo = EntityRepository()
    await repo.load(client, "labels", "workloads")

    hrefs = None
    if options.href_file is not None:
        # First row is a header
        hrefs = {row[0] for row in read_csv(options.href_file)[1:] if row}

    now = datetime.now(UTC)
    targets = select_targets(repo, options, hrefs, now)
    write_csv(output_file, target_rows(repo, targets, now))
    driver.console.print(f"See {output_file} for the workloads selected for unpairing.")

    diff = DiffAccumulator(allow_create=False)
    for index, workload in enumerate(targets, start=2):
        entry = DiffEntry(entity={"href": workload["href"]}, line=index, changed=True, ident=workload["href"])
        diff.add(entry, exists=True)

    async def update(entries: list[DiffEntry]) -> None:
        await client.unpair_workloads([e.entity["href"] for e in entries], options.restore)

    return await driver.run(
        diff,
        update=update,
        update_noun="workloads requiring unpairing",
        prompt="Do you want to run the unpair (yes/no)? ",
    )
