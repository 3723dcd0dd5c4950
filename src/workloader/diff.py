"""Diff accumulation for import commands."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class DiffEntry:
    """A reconciled entity and the CSV line it came from.

    Attributes:
        entity: The entity payload after reconciliation (a copy, never the
            repository's object).
        line: 1-based CSV line number.
        changed: Whether any field changed.
        ident: Human-readable identifier used in log messages.
        parent: Href of the containing object, such as the ruleset of a new rule.
    """

    entity: dict[str, Any]
    line: int
    changed: bool
    ident: str = ""
    parent: str | None = None


class MaxCountExceededError(Exception):
    """Raised when the diff exceeds a --max-create or --max-update limit."""

    def __init__(self, kind: str, count: int, limit: int) -> None:
        self.kind = kind
        self.count = count
        self.limit = limit
        super().__init__(f"{count} {kind}s exceeds the max {kind} value of {limit}")


@dataclass
class DiffAccumulator:
    """Buckets reconciled rows into updates, creates and unchanged.

    Attributes:
        allow_create: Whether rows without a remote entity may be created.
        updates: Existing entities with at least one changed field.
        creates: New entities to create.
        unchanged: Number of rows that need no change.
        skipped: Number of rows that were skipped.
        placeholders: Placeholder href -> (key, value) of labels to create.
    """

    allow_create: bool = True
    updates: list[DiffEntry] = field(default_factory=list)
    creates: list[DiffEntry] = field(default_factory=list)
    unchanged: int = 0
    skipped: int = 0
    placeholders: dict[str, tuple[str, str]] = field(default_factory=dict)

    def add(self, entry: DiffEntry, exists: bool) -> str:
        """Place an entry in its bucket.

        Args:
            entry: The reconciled entry.
            exists: Whether the entity exists on the PCE.

        Returns:
            The bucket name: "update", "create", "unchanged" or "skipped".
        """
        if exists:
            if entry.changed:
                self.updates.append(entry)
                return "update"
            self.unchanged += 1
            return "unchanged"

        if self.allow_create:
            self.creates.append(entry)
            return "create"

        self.skipped += 1
        logger.info("csv line %d - %s does not exist and will be skipped", entry.line, entry.ident)
        return "skipped"

    def skip(self) -> None:
        self.skipped += 1

    def add_placeholders(self, placeholders: dict[str, tuple[str, str]]) -> None:
        self.placeholders.update(placeholders)

    @property
    def has_changes(self) -> bool:
        return bool(self.updates or self.creates or self.placeholders)

    def check_limits(self, max_create: int = -1, max_update: int = -1) -> None:
        """Enforce --max-create and --max-update. -1 means unlimited.

        Raises:
            MaxCountExceededError: If either limit is exceeded.
        """
        if max_update != -1 and len(self.updates) > max_update:
            raise MaxCountExceededError("update", len(self.updates), max_update)
        if max_create != -1 and len(self.creates) > max_create:
            raise MaxCountExceededError("create", len(self.creates), max_create)

    def summary(self) -> dict[str, int]:
        """Counts per bucket."""
        return {
            "labels_to_create": len(self.placeholders),
            "updates": len(self.updates),
            "creates": len(self.creates),
            "unchanged": self.unchanged,
            "skipped": self.skipped,
        }
