"""Change the enforcement state of managed workloads from a CSV of href and state."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from workloader.api_client import PCEClient
from workloader.apply import ApplyDriver, ApplyState
from workloader.csv_parser import read_csv, write_csv
from workloader.diff import DiffAccumulator, DiffEntry
from workloader.headers import map_headers
from workloader.reconcile import ReconcileError
from workloader.repository import DEFAULT_LABEL_KEYS, EntityRepository
from workloader.workloads import is_managed, label_value

logger = logging.getLogger(__name__)

# Target state -> (enforcement_mode, visibility_level). None leaves visibility as is.
STATES: dict[str, tuple[str, str | None]] = {
    "idle": ("idle", None),
    "visibility_only": ("visibility_only", None),
    "selective": ("selective", None),
    "full": ("full", None),
    "build": ("visibility_only", "flow_summary"),
    "test": ("selective", None),
    "enforced-no": ("full", "flow_off"),
    "enforced-low": ("full", "flow_drops"),
    "enforced-high": ("full", "flow_summary"),
}

OUTPUT_HEADERS = ["hostname", "href", *DEFAULT_LABEL_KEYS, "current_mode", "target_mode"]


def current_mode(workload: dict[str, Any]) -> str:
    """Legacy state name for a workload's enforcement and visibility."""
    enforcement = workload.get("enforcement_mode") or ""
    if enforcement == "visibility_only":
        return "build"
    if enforcement == "selective":
        return "test"
    if enforcement == "full":
        return {
            "flow_off": "enforced-no",
            "flow_drops": "enforced-low",
        }.get(workload.get("visibility_level") or "", "enforced-high")
    return enforcement


def parse_targets(rows: list[list[str]]) -> list[tuple[int, str, str]]:
    """(line, href, state) for each data row.

    Raises:
        MissingHeaderError: If href or state is missing.
        ReconcileError: If a state is invalid.
    """
    headers = map_headers(rows[0], required=["href", "state"])
    targets = []
    for line, row in enumerate(rows[1:], start=2):
        state = headers.cell(row, "state").lower()
        if state not in STATES:
            raise ReconcileError(
                line, f"invalid mode {state or '<blank>'}. values must be {', '.join(STATES)}"
            )
        targets.append((line, headers.cell(row, "href"), state))
    return targets


def build_diff(
    repo: EntityRepository, targets: list[tuple[int, str, str]]
) -> tuple[DiffAccumulator, list[list[str]]]:
    """Diff of workloads whose state must change, plus the change report rows."""
    diff = DiffAccumulator(allow_create=False)
    report = [list(OUTPUT_HEADERS)]

    for line, href, state in targets:
        workload = repo.workloads.get(href)
        if workload is None or not is_managed(workload):
            logger.warning("csv line %d - %s is not a managed workload in the PCE", line, href)
            diff.skip()
            continue

        enforcement, visibility = STATES[state]
        changed = workload.get("enforcement_mode") != enforcement or (
            visibility is not None and workload.get("visibility_level") != visibility
        )

        entity: dict[str, Any] = {"href": href, "enforcement_mode": enforcement}
        if visibility is not None:
            entity["visibility_level"] = visibility

        if changed:
            logger.info(
                "required change - %s - current state: %s - desired state: %s",
                workload.get("hostname"),
                current_mode(workload),
                state,
            )
            report.append(
                [
                    workload.get("hostname") or "",
                    href,
                    *(label_value(repo, workload, key) for key in DEFAULT_LABEL_KEYS),
                    current_mode(workload),
                    state,
                ]
            )
        diff.add(DiffEntry(entity=entity, line=line, changed=changed, ident=href), exists=True)

    return diff, report


async def update_modes(
    client: PCEClient,
    csv_file: Path,
    driver: ApplyDriver,
    output_file: Path,
) -> ApplyState:
    """Run the mode command end to end."""
    repo = EntityRepository()
    await repo.load(client, "labels", "workloads")

    diff, report = build_diff(repo, parse_targets(read_csv(csv_file)))
    if diff.updates:
        write_csv(output_file, report)
        driver.console.print(f"See {output_file} for the workloads requiring a mode change.")

    async def update(entries: list[DiffEntry]) -> None:
        await client.bulk_update_workloads([e.entity for e in entries])

    return await driver.run(
        diff,
        update=update,
        update_noun="workloads requiring state update",
        prompt="Do you want to run the change (yes/no)? ",
    )
