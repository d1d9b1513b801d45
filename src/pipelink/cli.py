"""Command line front end.

Commands:
- pipelink alive
- pipelink scripts
- pipelink run SCRIPT [-i name=value] [-o name=value] [-p name:type=value]
- pipelink jobs / status JOB / delete JOB / log JOB / results JOB -o FILE
- pipelink queue / halt KEY
- pipelink config
- pipelink app [ARGS]...
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from pipelink import __version__
from pipelink.config import Settings, load_settings
from pipelink.errors import LinkError
from pipelink.launcher import ProcessLauncher, find_app
from pipelink.link import Link
from pipelink.logs import setup_logging
from pipelink.models import (
    ForwardedToHost,
    JobRequest,
    JobStatus,
    LogLine,
    StreamError,
    StylesheetParameter,
    Terminal,
)

console = Console()
err_console = Console(stderr=True)

T = TypeVar("T")


class LinkContext:
    """Settings and command line facts shared by all commands."""

    def __init__(self, settings: Settings, argv: List[str], pinned: bool):
        self.settings = settings
        self.argv = argv
        self.pinned = pinned

    def run(self, action: Callable[[Link], Awaitable[T]]) -> T:
        """Bring the link up, run action, and handle the exit paths."""

        async def main():
            link = Link(self.settings, argv=self.argv, pinned_endpoint=self.pinned)
            async with link:
                outcome = await link.init()
                if isinstance(outcome, ForwardedToHost):
                    return outcome
                return await action(link)

        try:
            result = asyncio.run(main())
        except LinkError as e:
            err_console.print(f"[red]Error: {escape(str(e))}[/red]")
            sys.exit(1)
        if isinstance(result, ForwardedToHost):
            sys.exit(result.exit_code)
        return result


def _pairs(values: Tuple[str, ...], what: str) -> Dict[str, List[str]]:
    """Group repeated name=value arguments, keeping order."""
    result: Dict[str, List[str]] = {}
    for raw in values:
        if "=" not in raw:
            raise click.BadParameter(f"expected name=value, got {raw!r}", param_hint=what)
        name, value = raw.split("=", 1)
        result.setdefault(name, []).append(value)
    return result


def _parameters(values: Tuple[str, ...]) -> Dict[str, StylesheetParameter]:
    """Parse name:type=value (type defaults to string)."""
    params: Dict[str, StylesheetParameter] = {}
    for raw in values:
        if "=" not in raw:
            raise click.BadParameter(
                f"expected name[:type]=value, got {raw!r}", param_hint="--param"
            )
        key, value = raw.split("=", 1)
        name, _, type_name = key.partition(":")
        params[name] = StylesheetParameter(type=type_name or "string", value=value)
    return params


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "config_path", type=click.Path(), help="Settings file")
@click.option("--host", default=None, help="Webservice host, e.g. http://localhost")
@click.option("--port", type=int, default=None, help="Webservice port")
@click.option("--debug/--no-debug", default=None, help="Print debug messages")
@click.option(
    "--starting/--no-starting",
    default=None,
    help="Start a local webservice if none is running",
)
@click.pass_context
def cli(
    ctx: click.Context,
    config_path: Optional[str],
    host: Optional[str],
    port: Optional[int],
    debug: Optional[bool],
    starting: Optional[bool],
):
    """Client for the pipeline webservice."""
    try:
        settings = load_settings(config_path).with_overrides(
            host=host, port=port, debug=debug, starting=starting
        )
    except LinkError as e:
        err_console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(1)
    setup_logging(settings.debug)
    ctx.obj = LinkContext(
        settings, sys.argv[1:], pinned=host is not None or port is not None
    )


@cli.command()
@click.pass_obj
def alive(obj: LinkContext):
    """Check the webservice and show its capabilities."""

    async def action(link: Link):
        return link.session

    session = obj.run(action)
    table = Table(title="Webservice")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("URL", obj.settings.url)
    table.add_row("Version", session.version)
    table.add_row("Authentication", str(session.authentication_required))
    table.add_row("Local filesystem", str(session.local_filesystem_allowed))
    console.print(table)


@cli.command()
@click.pass_obj
def scripts(obj: LinkContext):
    """List available scripts."""

    async def action(link: Link):
        return await link.scripts()

    table = Table(title="Scripts")
    table.add_column("Id", style="cyan")
    table.add_column("Name")
    table.add_column("Description", style="dim")
    for script in obj.run(action):
        table.add_row(script.id, script.nicename, script.description)
    console.print(table)


@cli.command()
@click.argument("script")
@click.option("--input", "-i", "inputs", multiple=True, help="Input as name=value")
@click.option("--option", "-o", "options", multiple=True, help="Option as name=value")
@click.option(
    "--param", "-p", "params", multiple=True, help="Stylesheet parameter name:type=value"
)
@click.option("--data", type=click.Path(exists=True, dir_okay=False), help="Zipped resources")
@click.option("--nicename", default="", help="Job name")
@click.option("--priority", default="", help="Job priority (low, medium, high)")
@click.option("--background", is_flag=True, help="Submit and return immediately")
@click.option("--output", type=click.Path(), help="Write the zipped results here")
@click.option("--quiet", "-q", is_flag=True, help="Hide job messages")
@click.pass_obj
def run(
    obj: LinkContext,
    script: str,
    inputs: Tuple[str, ...],
    options: Tuple[str, ...],
    params: Tuple[str, ...],
    data: Optional[str],
    nicename: str,
    priority: str,
    background: bool,
    output: Optional[str],
    quiet: bool,
):
    """Run SCRIPT and follow its messages."""
    request = JobRequest(
        script=script,
        nicename=nicename,
        priority=priority,
        inputs=_pairs(inputs, "--input"),
        options=_pairs(options, "--option"),
        stylesheet_parameters=_parameters(params),
        data=Path(data).read_bytes() if data else b"",
        background=background,
    )

    async def action(link: Link):
        job, stream = await link.execute(request)
        console.print(f"[bold]Job {job.id}[/bold]")
        final = None
        async with stream:
            async for event in stream:
                if isinstance(event, LogLine):
                    if not quiet:
                        console.print(event.render(), markup=False, highlight=False)
                elif isinstance(event, StreamError):
                    err_console.print(f"[red]Error following job: {escape(event.cause)}[/red]")
                    final = event
                elif isinstance(event, Terminal):
                    final = event
        if isinstance(final, Terminal) and output:
            with open(output, "wb") as sink:
                await link.results(job.id, sink)
        return final

    final = obj.run(action)
    if background:
        console.print("[dim]Job running in the background[/dim]")
        return
    if isinstance(final, Terminal):
        colour = "green" if final.status == JobStatus.SUCCESS else "red"
        console.print(f"[{colour}]Job finished: {final.status.value}[/{colour}]")
        if final.status != JobStatus.SUCCESS:
            sys.exit(2)
    else:
        sys.exit(1)


@cli.command()
@click.pass_obj
def jobs(obj: LinkContext):
    """List jobs."""

    async def action(link: Link):
        return await link.jobs()

    table = Table(title="Jobs")
    table.add_column("Id", style="cyan")
    table.add_column("Name")
    table.add_column("Status")
    for job in obj.run(action):
        table.add_row(job.id, job.nicename, job.status.value)
    console.print(table)


@cli.command()
@click.argument("job_id")
@click.pass_obj
def status(obj: LinkContext, job_id: str):
    """Show a job's status and messages."""

    async def action(link: Link):
        return await link.job(job_id)

    job = obj.run(action)
    console.print(f"[bold]{job.id}[/bold] {job.nicename} [cyan]{job.status.value}[/cyan]")
    console.print(f"Progress: {job.messages.progress:.0%}")


@cli.command()
@click.argument("job_id")
@click.pass_obj
def delete(obj: LinkContext, job_id: str):
    """Delete a job."""

    async def action(link: Link):
        return await link.delete(job_id)

    if obj.run(action):
        console.print(f"[green]✓ Job {job_id} deleted[/green]")


@cli.command()
@click.argument("job_id")
@click.pass_obj
def log(obj: LinkContext, job_id: str):
    """Print a job's log."""

    async def action(link: Link):
        return await link.log(job_id)

    click.echo(obj.run(action).decode("utf-8", errors="replace"))


@cli.command()
@click.argument("job_id")
@click.option("--output", "-o", required=True, type=click.Path(), help="Zip file")
@click.pass_obj
def results(obj: LinkContext, job_id: str, output: str):
    """Download a job's results."""

    async def action(link: Link):
        with open(output, "wb") as sink:
            return await link.results(job_id, sink)

    if obj.run(action):
        console.print(f"[green]✓ Results written to {output}[/green]")


@cli.command()
@click.pass_obj
def queue(obj: LinkContext):
    """Show the execution queue."""

    async def action(link: Link):
        return await link.queue()

    table = Table(title="Queue")
    table.add_column("Id", style="cyan")
    table.add_column("Priority")
    table.add_column("Job priority")
    table.add_column("Client priority")
    for entry in obj.run(action):
        table.add_row(
            entry.id,
            f"{entry.computed_priority:.2f}",
            entry.job_priority,
            entry.client_priority,
        )
    console.print(table)


@cli.command()
@click.argument("key")
@click.pass_obj
def halt(obj: LinkContext, key: str):
    """Stop the webservice (KEY is the halt key)."""

    async def action(link: Link):
        await link.halt(key)

    obj.run(action)
    console.print("[yellow]Webservice halted[/yellow]")


@cli.command("config")
@click.pass_obj
def show_config(obj: LinkContext):
    """Show the effective settings."""
    table = Table(title="Settings")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="green")
    table.add_column("Description", style="dim")
    for key, (value, description) in obj.settings.describe().items():
        table.add_row(key, str(value), description)
    console.print(table)


@cli.command(context_settings={"ignore_unknown_options": True})
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
def app(args: Tuple[str, ...]):
    """Run the desktop app with ARGS."""
    path = find_app()
    if path is None:
        err_console.print("[red]Error: the desktop app is not installed[/red]")
        sys.exit(1)
    try:
        code = asyncio.run(ProcessLauncher().forward(path, args))
    except OSError as e:
        err_console.print(f"[red]Error: could not start {path}: {escape(str(e))}[/red]")
        sys.exit(1)
    sys.exit(code)


def main() -> None:
    cli()
