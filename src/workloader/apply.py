"""Confirmation and apply driver shared by import commands.

The driver reports what an import would change and, depending on
``--update-pce`` and ``--no-prompt``, either stops there, asks the operator
to confirm, or applies the changes:

    DRY_RUN          --update-pce not set, report only
    PROMPT_PENDING   --update-pce set, waiting for "yes" on stdin
    APPLYING         confirmed or --no-prompt

Changes are applied in a fixed order: placeholder labels are created first,
their real hrefs are substituted into every queued entity, then updates are
sent, then creates. Any API error aborts the run; nothing is rolled back.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from rich.console import Console

from workloader.diff import DiffAccumulator, DiffEntry

logger = logging.getLogger(__name__)

# Exit code when --max-create or --max-update is exceeded
EXIT_MAX_EXCEEDED = 100

DEFAULT_PROMPT = "Do you want to run the import (yes/no)? "

CreateLabelFn = Callable[[str, str], Awaitable[dict[str, Any]]]
ApplyFn = Callable[[list[DiffEntry]], Awaitable[Any]]


class ApplyState(enum.Enum):
    """States of the confirmation state machine."""

    DRY_RUN = "dry_run"
    PROMPT_PENDING = "prompt_pending"
    APPLYING = "applying"
    DENIED = "denied"
    COMPLETE = "complete"


def resolve_state(update_pce: bool, no_prompt: bool) -> ApplyState:
    """Initial state for the given flags."""
    if not update_pce:
        return ApplyState.DRY_RUN
    if no_prompt:
        return ApplyState.APPLYING
    return ApplyState.PROMPT_PENDING


def confirm(prompt: str, input_fn: Callable[[str], str] = input) -> bool:
    """Ask the operator to confirm. Only a case-insensitive "yes" confirms."""
    try:
        answer = input_fn(prompt)
    except EOFError:
        return False
    return answer.strip().lower() == "yes"


def replace_placeholders(obj: Any, mapping: dict[str, str]) -> Any:
    """Recursively replace placeholder hrefs with real hrefs."""
    if isinstance(obj, dict):
        return {k: replace_placeholders(v, mapping) for k, v in obj.items()}
    if isinstance(obj, list):
        return [replace_placeholders(v, mapping) for v in obj]
    if isinstance(obj, str):
        return mapping.get(obj, obj)
    return obj


class ApplyDriver:
    """Runs the report, confirm and apply sequence for a diff."""

    def __init__(
        self,
        update_pce: bool = False,
        no_prompt: bool = False,
        max_create: int = -1,
        max_update: int = -1,
        console: Console | None = None,
        input_fn: Callable[[str], str] = input,
    ) -> None:
        self.update_pce = update_pce
        self.no_prompt = no_prompt
        self.max_create = max_create
        self.max_update = max_update
        self.console = console or Console()
        self.input_fn = input_fn
        self.state = resolve_state(update_pce, no_prompt)
        self.created_labels: dict[str, str] = {}

    def _report(self, message: str) -> None:
        logger.info(message)
        self.console.print(message)

    def report(self, diff: DiffAccumulator, update_noun: str, create_noun: str) -> None:
        """Print and log the diff summary."""
        if diff.placeholders:
            self._report(f"identified {len(diff.placeholders)} labels to create")
        if diff.updates:
            self._report(f"{len(diff.updates)} {update_noun}")
        if diff.creates:
            self._report(f"{len(diff.creates)} {create_noun}")
        if diff.unchanged:
            self._report(f"{diff.unchanged} entries in CSV require no changes")
        if diff.skipped:
            self._report(f"{diff.skipped} entries in CSV skipped. see log for details")

    async def run(
        self,
        diff: DiffAccumulator,
        *,
        create_label: CreateLabelFn | None = None,
        update: ApplyFn | None = None,
        create: ApplyFn | None = None,
        update_noun: str = "objects requiring updates",
        create_noun: str = "objects to create",
        prompt: str = DEFAULT_PROMPT,
    ) -> ApplyState:
        """Report the diff and apply it if the flags and operator allow.

        Args:
            diff: Accumulated diff.
            create_label: Creates a label from (key, value), returns the label.
            update: Sends the update entries.
            create: Sends the create entries.
            update_noun: Summary wording for updates.
            create_noun: Summary wording for creates.
            prompt: Confirmation prompt.

        Returns:
            The final state: DRY_RUN, DENIED or COMPLETE.

        Raises:
            MaxCountExceededError: If --update-pce is set and a limit is exceeded.
            APIError: If any apply call fails.
        """
        self.report(diff, update_noun, create_noun)

        if not diff.has_changes:
            self._report("nothing to be done")
            self.state = ApplyState.COMPLETE
            return self.state

        if self.update_pce:
            diff.check_limits(self.max_create, self.max_update)

        if self.state is ApplyState.DRY_RUN:
            self.console.print(
                "See workloader.log for details. To do the import, run again using --update-pce flag."
            )
            logger.info("dry run complete - no changes made")
            return self.state

        if self.state is ApplyState.PROMPT_PENDING:
            if not confirm(prompt, self.input_fn):
                logger.info("prompt denied")
                self.console.print("Prompt denied. No changes made.")
                self.state = ApplyState.DENIED
                return self.state
            self.state = ApplyState.APPLYING

        await self._apply(diff, create_label, update, create)
        self.state = ApplyState.COMPLETE
        return self.state

    async def _apply(
        self,
        diff: DiffAccumulator,
        create_label: CreateLabelFn | None,
        update: ApplyFn | None,
        create: ApplyFn | None,
    ) -> None:
        # Step 1: labels referenced by placeholder hrefs
        if diff.placeholders:
            if create_label is None:
                raise RuntimeError("diff has placeholder labels but no create_label step")
            for placeholder, (key, value) in diff.placeholders.items():
                label = await create_label(key, value)
                self.created_labels[placeholder] = label["href"]
                logger.info("created new %s label - %s - %s", key, value, label["href"])

        # Step 2: swap placeholders for real hrefs
        if self.created_labels:
            for entry in diff.updates + diff.creates:
                entry.entity = replace_placeholders(entry.entity, self.created_labels)

        # Step 3 and 4: updates then creates
        if diff.updates and update is not None:
            await update(diff.updates)
            logger.info("%d updates sent to the pce", len(diff.updates))
        if diff.creates and create is not None:
            await create(diff.creates)
            logger.info("%d creates sent to the pce", len(diff.creates))
