"""
CLI entry point for Gatekeeper.

This module provides the Typer-based command-line interface for Gatekeeper.

Commands:
    serve       Run the gateway
    validate    Check every policy file in a directory
    evaluate    Dry-run one policy decision against a directory

Architecture Note:
    The CLI is intentionally thin - it parses arguments and delegates to the
    gateway and policy modules. Nothing here is needed to embed the gateway
    in another ASGI server.
"""

import json
import logging
import traceback
from pathlib import Path
from typing import Annotated, Any, Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from gatekeeper import __version__
from gatekeeper.config import GatewaySettings
from gatekeeper.errors import ConfigError, InvalidBodyError
from gatekeeper.gateway.pipeline import parse_body
from gatekeeper.policy import PolicyEngine, PolicyLoader

# Initialize Typer app with metadata
app = typer.Typer(
    name="gatekeeper",
    help="Policy-enforcing gateway for agent tool calls.",
    add_completion=False,
    no_args_is_help=True,
)

# Rich console for formatted output
console = Console()


def configure_logging(level: str) -> None:
    """Route all logging through rich at the given level."""
    logging.basicConfig(
        level=level,
        format="%(name)s: %(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold]gatekeeper[/bold] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option(
            "--version",
            "-v",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """
    Gatekeeper - Policy-enforcing gateway for agent tool calls.

    Every call is checked against hot-reloaded YAML policies, audited,
    and forwarded only when allowed.
    """
    pass


@app.command()
def serve(
    host: Annotated[
        Optional[str],
        typer.Option("--host", help="Bind address. Defaults to GATEKEEPER_HOST or 0.0.0.0."),
    ] = None,
    port: Annotated[
        Optional[int],
        typer.Option("--port", "-p", help="Listen port. Defaults to GATEKEEPER_PORT or 8080."),
    ] = None,
    policies: Annotated[
        Optional[Path],
        typer.Option(
            "--policies",
            help="Policy directory. Defaults to GATEKEEPER_POLICIES_DIR or ./policies.",
            resolve_path=True,
        ),
    ] = None,
    log_dir: Annotated[
        Optional[Path],
        typer.Option("--log-dir", help="Audit log directory.", resolve_path=True),
    ] = None,
    log_level: Annotated[
        Optional[str],
        typer.Option("--log-level", help="Logging level (DEBUG, INFO, ...)."),
    ] = None,
    no_watch: Annotated[
        bool,
        typer.Option("--no-watch", help="Disable policy hot-reload."),
    ] = False,
    debug: Annotated[
        bool,
        typer.Option("--debug", help="Show full error tracebacks."),
    ] = False,
) -> None:
    """
    Run the gateway.

    Settings come from GATEKEEPER_* environment variables (and .env);
    options given here take precedence.

    Example:
        $ gatekeeper serve --policies policies/ --port 8080
    """
    import uvicorn

    from gatekeeper.gateway.app import create_app

    overrides: dict[str, Any] = {
        "host": host,
        "port": port,
        "policies_dir": policies,
        "log_dir": log_dir,
        "log_level": log_level,
    }
    overrides = {key: value for key, value in overrides.items() if value is not None}
    if no_watch:
        overrides["watch_policies"] = False

    try:
        settings = GatewaySettings(**overrides)
    except ValidationError as e:
        console.print(f"[red]Invalid configuration:[/red]\n{escape(str(e))}")
        raise typer.Exit(code=1)

    try:
        # Fail before binding the port if the directory is unusable
        PolicyLoader(settings.policies_dir).discover()
        gateway = create_app(settings)
    except ConfigError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        if debug:
            console.print(f"[dim]{escape(traceback.format_exc())}[/dim]")
        raise typer.Exit(code=1)

    configure_logging(settings.log_level)

    console.print(
        f"[bold]gatekeeper[/bold] {__version__} listening on "
        f"[cyan]{settings.host}:{settings.port}[/cyan], "
        f"policies from [cyan]{settings.policies_dir}[/cyan]"
    )
    uvicorn.run(
        gateway,
        host=settings.host,
        port=settings.port,
        log_config=None,
        log_level=settings.log_level.lower(),
    )


@app.command()
def validate(
    directory: Annotated[
        Path,
        typer.Argument(help="Policy directory to check.", resolve_path=True),
    ],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output results in JSON format."),
    ] = False,
) -> None:
    """
    Check every policy file in a directory.

    Exits with status 1 if any file fails to parse or validate.

    Example:
        $ gatekeeper validate policies/
    """
    loader = PolicyLoader(directory)

    try:
        report = loader.load_directory()
    except ConfigError as e:
        if json_output:
            print(json.dumps({"ok": False, "error": e.to_dict()}, indent=2))
        else:
            console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(code=1)

    files: list[dict[str, Any]] = [
        {
            "source_id": policy.source_id,
            "valid": True,
            "version": policy.version,
            "agents": policy.agent_ids(),
        }
        for policy in report.policies
    ]
    files.extend(
        {"source_id": error.source, "valid": False, "error": error.reason}
        for error in report.errors
    )
    files.sort(key=lambda entry: entry["source_id"])

    if json_output:
        print(json.dumps({"ok": report.ok, "files": files}, indent=2))
    else:
        _display_validation(loader.directory, files)

    raise typer.Exit(code=0 if report.ok else 1)


def _display_validation(directory: Path, files: list[dict[str, Any]]) -> None:
    """Display per-file validation results."""
    if not files:
        console.print(f"[yellow]No policy files found in {directory}[/yellow]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("File", style="cyan")
    table.add_column("Status", width=8)
    table.add_column("Version")
    table.add_column("Details")

    for entry in files:
        name = Path(entry["source_id"]).name
        if entry["valid"]:
            agents = ", ".join(entry["agents"]) or "(no agents)"
            table.add_row(name, "[green]ok[/green]", entry["version"], agents)
        else:
            table.add_row(name, "[red]error[/red]", "", escape(entry["error"]))

    console.print(table)

    failed = sum(1 for entry in files if not entry["valid"])
    console.print(f"[dim]Files: {len(files)} | Valid: {len(files) - failed} | Failed: {failed}[/dim]")


@app.command()
def evaluate(
    tool: Annotated[str, typer.Argument(help="Tool name, e.g. payments.")],
    action: Annotated[str, typer.Argument(help="Action name, e.g. create.")],
    agent: Annotated[
        str,
        typer.Option("--agent", "-a", help="Agent id making the call."),
    ],
    policies: Annotated[
        Path,
        typer.Option("--policies", help="Policy directory.", resolve_path=True),
    ] = Path("policies"),
    params: Annotated[
        str,
        typer.Option("--params", help="Call parameters as a JSON object."),
    ] = "{}",
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output the decision in JSON format."),
    ] = False,
) -> None:
    """
    Dry-run one policy decision without forwarding anything.

    Exits with status 0 when allowed and 1 when denied.

    Example:
        $ gatekeeper evaluate --agent finance-agent payments create --params '{"amount": 10}'
    """
    try:
        call_params = parse_body(params.encode("utf-8"))
    except InvalidBodyError as e:
        raise typer.BadParameter(e.message, param_hint="--params") from e

    engine = PolicyEngine(policies, watch=False)
    try:
        engine.load_all()
    except ConfigError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(code=1)

    decision = engine.evaluate(agent, tool, action, call_params)

    if json_output:
        print(json.dumps(decision.model_dump(), indent=2))
    elif decision.allowed:
        source = Path(decision.source_id).name if decision.source_id else ""
        console.print(f"[green]✓ allowed[/green] {agent} → {tool}/{action} [dim]({source})[/dim]")
    else:
        console.print(f"[red]✗ denied[/red] {agent} → {tool}/{action}")
        console.print(f"    [yellow]{escape(decision.reason)}[/yellow]")

    raise typer.Exit(code=0 if decision.allowed else 1)


if __name__ == "__main__":
    app()
