"""Rule export and import.

Rules live inside draft rulesets. Each CSV row is one rule: a blank
``rule_href`` creates a rule in the named ruleset, a known ``rule_href``
is diffed and updated in place.
"""

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
from workloader.headers import LEGACY_RULE_PREFIXES, HeaderMap, map_headers
from workloader.reconcile import (
    FieldChange,
    LabelResolver,
    ReconcileError,
    reconcile_bool,
    reconcile_set_cell,
    reconcile_value,
    split_cell,
)
from workloader.repository import EntityRepository

logger = logging.getLogger(__name__)

PLACEHOLDER_PREFIX = "rule-import-temp"

REQUIRED_HEADERS = (
    "services",
    "unscoped_consumers",
    "ruleset_name",
    "rule_enabled",
    "src_resolve_labels_as",
    "dst_resolve_labels_as",
)

RESOLVE_LABELS_AS = frozenset(["workloads", "virtual_services"])

# CSV header -> rule field for boolean flags
BOOL_FIELDS: dict[str, str] = {
    "rule_enabled": "enabled",
    "unscoped_consumers": "unscoped_consumers",
    "machine_auth_enabled": "machine_auth",
    "secure_connect_enabled": "sec_connect",
    "stateless_enabled": "stateless",
}

# Defaults for new rules when the column is blank
NEW_RULE_DEFAULTS: dict[str, Any] = {
    "enabled": True,
    "unscoped_consumers": False,
    "machine_auth": False,
    "sec_connect": False,
    "stateless": False,
}

SIDES = (("src_", "consumers"), ("dst_", "providers"))

ACTOR_SUFFIXES = ("all_workloads", "labels", "label_groups", "iplists", "workloads", "virtual_services")


def export_headers() -> list[str]:
    headers = ["ruleset_name", "ruleset_href", "rule_href", "rule_description"]
    headers += ["rule_enabled", "unscoped_consumers"]
    headers += [f"src_{s}" for s in ACTOR_SUFFIXES] + ["src_user_groups"]
    headers += [f"dst_{s}" for s in ACTOR_SUFFIXES]
    headers += ["services", "src_resolve_labels_as", "dst_resolve_labels_as"]
    headers += ["machine_auth_enabled", "secure_connect_enabled", "stateless_enabled"]
    return headers


# =============================================================================
# Export
# =============================================================================


def rule_row(
    repo: EntityRepository,
    resolver: ActorResolver,
    ruleset: dict[str, Any],
    rule: dict[str, Any],
) -> list[str]:
    """Build the export row for one rule."""

    def flag(field: str) -> str:
        return str(bool(rule.get(field))).lower()

    resolve_as = rule.get("resolve_labels_as") or {}
    user_groups = []
    for ref in rule.get("consuming_security_principals") or []:
        group = repo.user_groups.get(ref["href"])
        user_groups.append(group["name"] if group else ref["href"])

    row = [ruleset.get("name") or "", ruleset["href"], rule["href"], rule.get("description") or ""]
    row += [flag("enabled"), flag("unscoped_consumers")]
    row += export_actor_cells(rule.get("consumers") or [], resolver)
    row.append(";".join(user_groups))
    row += export_actor_cells(rule.get("providers") or [], resolver)
    row.append(export_ingress_services(repo, rule.get("ingress_services") or []))
    row.append(";".join(resolve_as.get("consumers") or []))
    row.append(";".join(resolve_as.get("providers") or []))
    row += [flag("machine_auth"), flag("sec_connect"), flag("stateless")]
    return row


def export_rows(repo: EntityRepository) -> list[list[str]]:
    resolver = ActorResolver(repo, LabelResolver(repo, PLACEHOLDER_PREFIX, allow_create=False))
    rows = [export_headers()]
    for ruleset in sorted(repo.rulesets.values(), key=lambda r: r.get("name") or ""):
        for rule in ruleset.get("rules") or []:
            rows.append(rule_row(repo, resolver, ruleset, rule))
    return rows


RULE_SELECTORS = (
    "labels",
    "rulesets",
    "services",
    "ip_lists",
    "label_groups",
    "user_groups",
    "virtual_services",
    "workloads",
)


async def export_rules(client: PCEClient, output_file: Path) -> int:
    """Export all draft rules. Returns the number of rules written."""
    repo = EntityRepository()
    await repo.load(client, *RULE_SELECTORS)
    rows = export_rows(repo)
    write_csv(output_file, rows)
    logger.info("exported %d rules to %s", len(rows) - 1, output_file)
    return len(rows) - 1


# =============================================================================
# Import
# =============================================================================


class RuleImporter:
    """Reconciles rule CSV rows against a repository snapshot."""

    def __init__(
        self, repo: EntityRepository, create_labels: bool = False, remove_value: str = ""
    ) -> None:
        self.repo = repo
        self.remove_value = remove_value
        self.labels = LabelResolver(repo, PLACEHOLDER_PREFIX, allow_create=create_labels)
        self.actors = ActorResolver(repo, self.labels)
        self.diff = DiffAccumulator(allow_create=True)

    def process(self, rows: list[list[str]]) -> DiffAccumulator:
        """Reconcile all rows. Row 0 is the header row.

        Raises:
            MissingHeaderError: If a required header is missing.
            ReconcileError: On the first invalid row.
        """
        headers = map_headers(
            rows[0], required=REQUIRED_HEADERS, rewrite_prefixes=LEGACY_RULE_PREFIXES
        )
        for line, row in enumerate(rows[1:], start=2):
            self._process_row(headers, row, line)
        self.diff.add_placeholders(self.labels.to_create)
        return self.diff

    def _resolve_labels_as(
        self, headers: HeaderMap, row: list[str], line: int
    ) -> dict[str, list[str]] | None:
        result: dict[str, list[str]] = {}
        for prefix, side in SIDES:
            column = f"{prefix}resolve_labels_as"
            values = [v.lower() for v in split_cell(headers.cell(row, column))]
            invalid = [v for v in values if v not in RESOLVE_LABELS_AS]
            if invalid:
                logger.warning(
                    "csv line %d - %s is an invalid %s. value must be workloads, virtual_services, "
                    "or workloads;virtual_services. skipping line.",
                    line,
                    ";".join(invalid),
                    column,
                )
                return None
            result[side] = values
        return result

    def _process_row(self, headers: HeaderMap, row: list[str], line: int) -> None:
        ruleset_name = headers.cell(row, "ruleset_name")
        ruleset = self.repo.ruleset_by_name(ruleset_name)
        if ruleset is None:
            logger.warning("csv line %d - %s ruleset_name does not exist. skipping.", line, ruleset_name)
            self.diff.skip()
            return

        rule_href = headers.cell(row, "rule_href")
        existing = None
        if rule_href:
            existing = self.repo.rules.get(rule_href)
            if existing is None:
                logger.warning("csv line %d - %s rule_href does not exist. skipping.", line, rule_href)
                self.diff.skip()
                return

        resolve_as = self._resolve_labels_as(headers, row, line)
        if resolve_as is None:
            self.diff.skip()
            return

        is_new = existing is None
        rule: dict[str, Any] = copy.deepcopy(existing) if existing else {}
        ident = rule_href or f"new rule in {ruleset_name}"
        entity: dict[str, Any] = {}
        changed = False

        def take(field: str, change: FieldChange) -> None:
            nonlocal changed
            if change.changed and not is_new:
                logger.info(
                    "csv line %d - %s - %s to be changed from %s to %s",
                    line,
                    ident,
                    field,
                    rule.get(field),
                    change.value,
                )
            changed |= change.changed
            entity[field] = change.value

        take(
            "description",
            reconcile_value(
                rule.get("description"), headers.cell(row, "rule_description"), self.remove_value
            ),
        )

        for column, field in BOOL_FIELDS.items():
            change = reconcile_bool(rule.get(field), headers.cell(row, column), line, column)
            if change.value is None:
                change = FieldChange(changed=is_new, value=NEW_RULE_DEFAULTS[field])
            take(field, change)

        for prefix, side in SIDES:
            take(
                side,
                reconcile_actors(
                    rule.get(side) or [], row, headers, prefix, self.actors, self.remove_value, line
                ),
            )

        take(
            "consuming_security_principals",
            reconcile_set_cell(
                [{"href": g["href"]} for g in rule.get("consuming_security_principals") or []],
                headers.cell(row, "src_user_groups"),
                lambda name: self._user_group(name, line),
                self.remove_value,
                key=lambda g: g["href"],
            ),
        )

        take(
            "ingress_services",
            reconcile_ingress_services(
                self.repo,
                rule.get("ingress_services") or [],
                headers.cell(row, "services"),
                self.remove_value,
                line,
            ),
        )

        current_as = rule.get("resolve_labels_as") or {}
        new_as = {}
        for _, side in SIDES:
            current_values = current_as.get(side) or []
            desired = resolve_as[side] or current_values or (["workloads"] if is_new else [])
            if set(desired) != set(current_values):
                changed = True
                if not is_new:
                    logger.info(
                        "csv line %d - %s - %s resolve_labels_as to be changed from %s to %s",
                        line,
                        ident,
                        side,
                        ";".join(current_values),
                        ";".join(desired),
                    )
            new_as[side] = desired
        entity["resolve_labels_as"] = new_as

        if not is_new:
            entity["href"] = rule["href"]
        else:
            logger.info("csv line %d - new rule to be created in %s", line, ruleset_name)

        self.diff.add(
            DiffEntry(entity=entity, line=line, changed=changed, ident=ident, parent=ruleset["href"]),
            exists=not is_new,
        )

    def _user_group(self, name: str, line: int) -> dict[str, Any]:
        group = self.repo.user_group_by_name(name)
        if group is None:
            raise ReconcileError(line, f"{name} does not exist as a user group")
        return {"href": group["href"]}


async def import_rules(
    client: PCEClient,
    csv_file: Path,
    driver: ApplyDriver,
    create_labels: bool = False,
    remove_value: str = "",
    provision: bool = False,
    provision_comment: str = "",
) -> ApplyState:
    """Run rule-import end to end."""
    repo = EntityRepository()
    await repo.load(client, *RULE_SELECTORS)

    diff = RuleImporter(repo, create_labels, remove_value).process(read_csv(csv_file))
    touched: set[str] = set()

    async def update(entries: list[DiffEntry]) -> None:
        for entry in entries:
            body = {k: v for k, v in entry.entity.items() if k != "href"}
            await client.update_rule(entry.entity["href"], body)
            touched.add(entry.parent or "")
            logger.info("csv line %d - updated rule %s", entry.line, entry.entity["href"])

    async def create(entries: list[DiffEntry]) -> None:
        for entry in entries:
            created = await client.create_rule(entry.parent or "", entry.entity)
            touched.add(entry.parent or "")
            logger.info("csv line %d - created rule %s", entry.line, created.get("href"))

    state = await driver.run(
        diff,
        create_label=client.create_label,
        update=update,
        create=create,
        update_noun="rules requiring updates",
        create_noun="rules to create",
    )

    touched.discard("")
    if state is ApplyState.COMPLETE and provision and touched:
        await client.provision({"rule_sets": sorted(touched)}, provision_comment)
        logger.info("provisioned %d rulesets", len(touched))

    return state
