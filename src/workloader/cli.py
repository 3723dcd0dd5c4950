"""CLI module for workloader.

Every command reads its PCE connection from the config file (or the
environment) and follows the same pattern: export commands write a CSV,
import commands diff a CSV against the PCE and only change anything with
``--update-pce``. Without ``--no-prompt`` the operator must confirm first.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, TypeVar

import typer
from rich.console import Console
from rich.panel import Panel

from workloader.api_client import APIError, PCEClient
from workloader.apply import EXIT_MAX_EXCEEDED, ApplyDriver
from workloader.boundaries import export_boundaries, import_boundaries
from workloader.config import DEFAULT_CONFIG_FILE, ConfigError, PCEConfigStore, PCESettings
from workloader.csv_parser import CSVParserError, output_filename
from workloader.cwp import DEFAULT_REMOVE_VALUE, export_profiles, import_profiles
from workloader.diff import MaxCountExceededError
from workloader.iplists import export_ip_lists, import_ip_lists
from workloader.labelgroups import export_label_groups, import_label_groups
from workloader.labels import export_labels, import_labels
from workloader.logging_config import DEFAULT_LOG_FILE, setup_logging
from workloader.mode import update_modes
from workloader.reconcile import ReconcileError
from workloader.repository import RepositoryError
from workloader.rules import export_rules, import_rules
from workloader.services import export_services, import_services
from workloader.unpair import UnpairError, UnpairOptions, unpair_workloads
from workloader.workloads import WorkloadImportOptions, export_workloads, import_workloads

# Create Typer app
app = typer.Typer(
    name="workloader",
    help="CSV-driven import and export for PCE workloads and policy",
    no_args_is_help=True,
)

# Rich console for output
console = Console()
error_console = Console(stderr=True)

# Logger for this module
logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class GlobalOptions:
    """Options shared by every command, set on the root callback."""

    update_pce: bool = False
    no_prompt: bool = False
    pce: str | None = None
    config_file: Path = Path(DEFAULT_CONFIG_FILE)


CsvFile = Annotated[
    Path,
    typer.Argument(
        help="Input CSV file",
        exists=True,
        file_okay=True,
        dir_okay=False,
        readable=True,
        resolve_path=True,
    ),
]

OutputFile = Annotated[
    Path | None,
    typer.Option("--output-file", "-o", help="Output CSV file (default: timestamped name)"),
]

MaxCreate = Annotated[
    int,
    typer.Option("--max-create", help="Abort if more than this many objects would be created (-1 = no limit)"),
]

MaxUpdate = Annotated[
    int,
    typer.Option("--max-update", help="Abort if more than this many objects would be updated (-1 = no limit)"),
]

RemoveValue = Annotated[
    str,
    typer.Option("--remove-value", help="Cell value that clears a field"),
]

CreateLabels = Annotated[
    bool,
    typer.Option("--create-labels", help="Create labels that do not exist yet"),
]

Provision = Annotated[
    bool,
    typer.Option("--provision", help="Provision changed objects after the import"),
]

ProvisionComment = Annotated[
    str,
    typer.Option("--provision-comment", help="Comment for the provision"),
]


@app.callback()
def main(
    ctx: typer.Context,
    update_pce: Annotated[
        bool,
        typer.Option("--update-pce", help="Apply changes to the PCE (default is a dry run)"),
    ] = False,
    no_prompt: Annotated[
        bool,
        typer.Option("--no-prompt", help="Do not ask for confirmation before changing the PCE"),
    ] = False,
    pce: Annotated[
        str | None,
        typer.Option("--pce", "-p", help="Name of the PCE in the config file (default PCE if omitted)"),
    ] = None,
    config_file: Annotated[
        Path,
        typer.Option(
            "--config-file",
            help="PCE config file",
            envvar="WORKLOADER_CONFIG_FILE",
            dir_okay=False,
        ),
    ] = Path(DEFAULT_CONFIG_FILE),
    log_file: Annotated[
        Path,
        typer.Option("--log-file", help="Log file", dir_okay=False),
    ] = Path(DEFAULT_LOG_FILE),
    debug: Annotated[
        bool,
        typer.Option("--debug", help="Enable debug logging"),
    ] = False,
) -> None:
    """Import and export PCE objects with CSV files."""
    setup_logging(log_file, debug)
    ctx.obj = GlobalOptions(
        update_pce=update_pce,
        no_prompt=no_prompt,
        pce=pce,
        config_file=config_file,
    )


def _options(ctx: typer.Context) -> GlobalOptions:
    return ctx.obj if isinstance(ctx.obj, GlobalOptions) else GlobalOptions()


def _load_settings(opts: GlobalOptions) -> PCESettings:
    """Load PCE settings, exiting on configuration errors."""
    try:
        return PCEConfigStore.load(opts.config_file).get(opts.pce)
    except ConfigError as e:
        logger.error(str(e))
        error_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None


def _open_client(settings: PCESettings) -> PCEClient:
    return PCEClient.from_settings(settings)


def _driver(opts: GlobalOptions, max_create: int = -1, max_update: int = -1) -> ApplyDriver:
    return ApplyDriver(
        update_pce=opts.update_pce,
        no_prompt=opts.no_prompt,
        max_create=max_create,
        max_update=max_update,
        console=console,
    )


def _execute(opts: GlobalOptions, command: str, func: Callable[[PCEClient], Awaitable[T]]) -> T:
    """Run an async command against the configured PCE.

    Converts workloader errors into exit codes: 100 for --max-create and
    --max-update violations, 1 for everything else.
    """
    logger.info("started running %s command", command)
    settings = _load_settings(opts)

    async def runner() -> T:
        async with _open_client(settings) as client:
            return await func(client)

    try:
        result = asyncio.run(runner())
    except MaxCountExceededError as e:
        logger.error(str(e))
        error_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(EXIT_MAX_EXCEEDED) from None
    except (APIError, CSVParserError, ReconcileError, RepositoryError, UnpairError) as e:
        logger.error(str(e))
        error_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None

    logger.info("completed running %s command", command)
    return result


def _exported(count: int, noun: str, path: Path) -> None:
    console.print(
        Panel(
            f"[green]Exported {count} {noun}[/green]\n\n{path}",
            title="Done",
            border_style="green",
        )
    )


# =============================================================================
# Workloads
# =============================================================================


@app.command("wkld-export")
def wkld_export(
    ctx: typer.Context,
    output_file: OutputFile = None,
    no_href: Annotated[
        bool,
        typer.Option("--no-href", help="Omit the href column (for importing into another PCE)"),
    ] = False,
) -> None:
    """Export workloads to a CSV file."""
    opts = _options(ctx)
    path = output_file or Path(output_filename("wkld-export"))
    count = _execute(opts, "wkld-export", lambda client: export_workloads(client, path, not no_href))
    _exported(count, "workloads", path)


@app.command("wkld-import")
def wkld_import(
    ctx: typer.Context,
    csv_file: CsvFile,
    umwl: Annotated[
        bool,
        typer.Option("--umwl", help="Create unmanaged workloads for rows that match no workload"),
    ] = False,
    remove_value: RemoveValue = "",
    match: Annotated[
        str,
        typer.Option("--match", help="Match column: href, hostname, name or external_data"),
    ] = "",
    allow_enforcement_changes: Annotated[
        bool,
        typer.Option("--allow-enforcement-changes", help="Apply the enforcement and visibility columns"),
    ] = False,
    keep_all_pce_interfaces: Annotated[
        bool,
        typer.Option("--keep-all-pce-interfaces", help="Keep PCE interfaces that are not in the CSV"),
    ] = False,
    max_create: MaxCreate = -1,
    max_update: MaxUpdate = -1,
) -> None:
    """Create and update workloads from a CSV file."""
    opts = _options(ctx)
    options = WorkloadImportOptions(
        umwl=umwl,
        remove_value=remove_value,
        match=match,
        allow_enforcement_changes=allow_enforcement_changes,
        keep_all_pce_interfaces=keep_all_pce_interfaces,
    )
    driver = _driver(opts, max_create, max_update)
    _execute(opts, "wkld-import", lambda client: import_workloads(client, csv_file, options, driver))


# =============================================================================
# Rules
# =============================================================================


@app.command("rule-export")
def rule_export(ctx: typer.Context, output_file: OutputFile = None) -> None:
    """Export draft rules to a CSV file."""
    opts = _options(ctx)
    path = output_file or Path(output_filename("rule-export"))
    count = _execute(opts, "rule-export", lambda client: export_rules(client, path))
    _exported(count, "rules", path)


@app.command("rule-import")
def rule_import(
    ctx: typer.Context,
    csv_file: CsvFile,
    create_labels: CreateLabels = False,
    remove_value: RemoveValue = "",
    provision: Provision = False,
    provision_comment: ProvisionComment = "",
    max_create: MaxCreate = -1,
    max_update: MaxUpdate = -1,
) -> None:
    """Create and update draft rules from a CSV file."""
    opts = _options(ctx)
    driver = _driver(opts, max_create, max_update)
    _execute(
        opts,
        "rule-import",
        lambda client: import_rules(
            client, csv_file, driver, create_labels, remove_value, provision, provision_comment
        ),
    )


# =============================================================================
# Enforcement Boundaries
# =============================================================================


@app.command("eb-export")
def eb_export(ctx: typer.Context, output_file: OutputFile = None) -> None:
    """Export draft enforcement boundaries to a CSV file."""
    opts = _options(ctx)
    path = output_file or Path(output_filename("eb-export"))
    count = _execute(opts, "eb-export", lambda client: export_boundaries(client, path))
    _exported(count, "enforcement boundaries", path)


@app.command("eb-import")
def eb_import(
    ctx: typer.Context,
    csv_file: CsvFile,
    create_labels: CreateLabels = False,
    remove_value: RemoveValue = "",
    provision: Provision = False,
    provision_comment: ProvisionComment = "",
    max_create: MaxCreate = -1,
    max_update: MaxUpdate = -1,
) -> None:
    """Create and update draft enforcement boundaries from a CSV file."""
    opts = _options(ctx)
    driver = _driver(opts, max_create, max_update)
    _execute(
        opts,
        "eb-import",
        lambda client: import_boundaries(
            client, csv_file, driver, create_labels, remove_value, provision, provision_comment
        ),
    )


# =============================================================================
# Services
# =============================================================================


@app.command("svc-export")
def svc_export(ctx: typer.Context, output_file: OutputFile = None) -> None:
    """Export draft services to a CSV file."""
    opts = _options(ctx)
    path = output_file or Path(output_filename("svc-export"))
    count = _execute(opts, "svc-export", lambda client: export_services(client, path))
    _exported(count, "service entries", path)


@app.command("svc-import")
def svc_import(
    ctx: typer.Context,
    csv_file: CsvFile,
    remove_value: RemoveValue = "",
    provision: Provision = False,
    provision_comment: ProvisionComment = "",
    max_create: MaxCreate = -1,
    max_update: MaxUpdate = -1,
) -> None:
    """Create and update draft services from a CSV file."""
    opts = _options(ctx)
    driver = _driver(opts, max_create, max_update)
    _execute(
        opts,
        "svc-import",
        lambda client: import_services(client, csv_file, driver, provision, provision_comment, remove_value),
    )


# =============================================================================
# Labels, IP Lists, Label Groups
# =============================================================================


@app.command("label-export")
def label_export(ctx: typer.Context, output_file: OutputFile = None) -> None:
    """Export labels to a CSV file."""
    opts = _options(ctx)
    path = output_file or Path(output_filename("label-export"))
    count = _execute(opts, "label-export", lambda client: export_labels(client, path))
    _exported(count, "labels", path)


@app.command("label-import")
def label_import(
    ctx: typer.Context,
    csv_file: CsvFile,
    remove_value: RemoveValue = "",
    max_create: MaxCreate = -1,
    max_update: MaxUpdate = -1,
) -> None:
    """Create labels and update label values and external data from a CSV file."""
    opts = _options(ctx)
    driver = _driver(opts, max_create, max_update)
    _execute(opts, "label-import", lambda client: import_labels(client, csv_file, driver, remove_value))


@app.command("ipl-export")
def ipl_export(ctx: typer.Context, output_file: OutputFile = None) -> None:
    """Export draft IP lists to a CSV file."""
    opts = _options(ctx)
    path = output_file or Path(output_filename("ipl-export"))
    count = _execute(opts, "ipl-export", lambda client: export_ip_lists(client, path))
    _exported(count, "ip lists", path)


@app.command("ipl-import")
def ipl_import(
    ctx: typer.Context,
    csv_file: CsvFile,
    remove_value: RemoveValue = "",
    provision: Provision = False,
    provision_comment: ProvisionComment = "",
    max_create: MaxCreate = -1,
    max_update: MaxUpdate = -1,
) -> None:
    """Create and update draft IP lists from a CSV file."""
    opts = _options(ctx)
    driver = _driver(opts, max_create, max_update)
    _execute(
        opts,
        "ipl-import",
        lambda client: import_ip_lists(
            client, csv_file, driver, remove_value, provision, provision_comment
        ),
    )


@app.command("labelgroup-export")
def labelgroup_export(ctx: typer.Context, output_file: OutputFile = None) -> None:
    """Export draft label groups to a CSV file."""
    opts = _options(ctx)
    path = output_file or Path(output_filename("labelgroup-export"))
    count = _execute(opts, "labelgroup-export", lambda client: export_label_groups(client, path))
    _exported(count, "label groups", path)


@app.command("labelgroup-import")
def labelgroup_import(
    ctx: typer.Context,
    csv_file: CsvFile,
    remove_value: RemoveValue = "",
    provision: Provision = False,
    provision_comment: ProvisionComment = "",
    max_create: MaxCreate = -1,
    max_update: MaxUpdate = -1,
) -> None:
    """Create and update draft label groups from a CSV file."""
    opts = _options(ctx)
    driver = _driver(opts, max_create, max_update)
    _execute(
        opts,
        "labelgroup-import",
        lambda client: import_label_groups(
            client, csv_file, driver, remove_value, provision, provision_comment
        ),
    )


# =============================================================================
# Container Workload Profiles
# =============================================================================


@app.command("cwp-export")
def cwp_export(ctx: typer.Context, output_file: OutputFile = None) -> None:
    """Export container workload profiles to a CSV file."""
    opts = _options(ctx)
    path = output_file or Path(output_filename("cwp-export"))
    count = _execute(opts, "cwp-export", lambda client: export_profiles(client, path))
    _exported(count, "container workload profiles", path)


@app.command("cwp-import")
def cwp_import(
    ctx: typer.Context,
    csv_file: CsvFile,
    remove_value: RemoveValue = DEFAULT_REMOVE_VALUE,
    max_update: MaxUpdate = -1,
) -> None:
    """Update container workload profiles from a CSV file."""
    opts = _options(ctx)
    driver = _driver(opts, max_update=max_update)
    _execute(opts, "cwp-import", lambda client: import_profiles(client, csv_file, driver, remove_value))


# =============================================================================
# Unpair and Mode
# =============================================================================


@app.command("unpair")
def unpair(
    ctx: typer.Context,
    restore: Annotated[
        str,
        typer.Option("--restore", help="Firewall state after unpairing: saved, default or disable"),
    ],
    href_file: Annotated[
        Path | None,
        typer.Option(
            "--href-file",
            help="CSV with workload hrefs in the first column",
            exists=True,
            dir_okay=False,
            resolve_path=True,
        ),
    ] = None,
    role: Annotated[str, typer.Option("--role", help="Role label to match")] = "",
    app_label: Annotated[str, typer.Option("--app", help="App label to match")] = "",
    env: Annotated[str, typer.Option("--env", help="Env label to match")] = "",
    loc: Annotated[str, typer.Option("--loc", help="Loc label to match")] = "",
    hours: Annotated[
        float,
        typer.Option("--hours", help="Only unpair workloads without a heartbeat for this many hours"),
    ] = 0,
    include_online: Annotated[
        bool,
        typer.Option("--include-online", help="Also unpair workloads that are online"),
    ] = False,
    output_file: OutputFile = None,
) -> None:
    """Unpair managed workloads selected by labels, heartbeat age or href file."""
    opts = _options(ctx)
    options = UnpairOptions(
        restore=restore,
        labels={"role": role, "app": app_label, "env": env, "loc": loc},
        hours=hours,
        href_file=href_file,
        include_online=include_online,
    )
    path = output_file or Path(output_filename("unpair"))
    driver = _driver(opts)
    _execute(opts, "unpair", lambda client: unpair_workloads(client, options, driver, path))


@app.command("mode")
def mode(
    ctx: typer.Context,
    csv_file: CsvFile,
    output_file: OutputFile = None,
    max_update: MaxUpdate = -1,
) -> None:
    """Change the enforcement state of managed workloads from a CSV of href and state."""
    opts = _options(ctx)
    path = output_file or Path(output_filename("mode"))
    driver = _driver(opts, max_update=max_update)
    _execute(opts, "mode", lambda client: update_modes(client, csv_file, driver, path))


# =============================================================================
# Configuration
# =============================================================================


@app.command("pce-add")
def pce_add(
    ctx: typer.Context,
    name: Annotated[str, typer.Option("--name", "-n", help="Name to store the PCE under")],
    fqdn: Annotated[str, typer.Option("--fqdn", help="PCE fully qualified domain name")],
    port: Annotated[int, typer.Option("--port", help="PCE API port")] = 8443,
    org: Annotated[int, typer.Option("--org", help="PCE organization ID")] = 1,
    api_user: Annotated[
        str,
        typer.Option("--api-user", help="API key username", envvar="WORKLOADER_API_USER"),
    ] = "",
    api_key: Annotated[
        str,
        typer.Option("--api-key", help="API key secret", envvar="WORKLOADER_API_KEY"),
    ] = "",
    disable_tls_verification: Annotated[
        bool,
        typer.Option("--disable-tls-verification", help="Skip TLS certificate verification"),
    ] = False,
    default: Annotated[
        bool,
        typer.Option("--default", help="Make this the default PCE"),
    ] = False,
) -> None:
    """Add or replace a PCE in the config file."""
    opts = _options(ctx)
    try:
        store = PCEConfigStore.load(opts.config_file)
        store.add(
            PCESettings.from_values(
                name=name,
                fqdn=fqdn,
                port=port,
                org=org,
                api_user=api_user,
                api_key=api_key,
                disable_tls_verification=disable_tls_verification,
            ),
            default=default,
        )
        store.save(opts.config_file)
    except ConfigError as e:
        error_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None

    logger.info("added pce %s (%s) to %s", name, fqdn, opts.config_file)
    console.print(f"[green]Added PCE[/green] {name} ({fqdn}:{port}) to {opts.config_file}")
    if store.default_pce_name == name:
        console.print(f"[bold]Default PCE:[/bold] {name}")


if __name__ == "__main__":
    app()
