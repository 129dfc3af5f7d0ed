import os
import sys
import time

import click
import halo
import httpx
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from mcdrop.config import load_settings
from mcdrop.control.lifecycle import LifecycleController
from mcdrop.control.state import LifecycleState

console = Console()

DEFAULT_API_URL = "http://127.0.0.1:8080"
WAIT_INTERVAL = 5

STATE_STYLES = {
    "down": "dim",
    "starting": "yellow",
    "up": "green",
    "stopping": "yellow",
    "weird": "bold red",
}


class StepProgress:
    """One line per status change while waiting on the server.

    In "steps" mode each status gets a halo spinner that is ticked off when
    the next one arrives. "plain" prints the lines as-is (non-TTY, --debug).
    """

    def __init__(self, mode="steps"):
        self._mode = mode
        self._spinner = None

    def update(self, message):
        if self._mode != "steps":
            print(message)
            return
        if self._spinner:
            self._spinner.succeed()
        self._spinner = halo.Halo(text=message, spinner="bouncingBar")
        self._spinner.start()

    def finish(self):
        if self._spinner:
            self._spinner.succeed()
            self._spinner = None

    def fail(self, message):
        if self._spinner:
            self._spinner.fail(message)
            self._spinner = None
        else:
            print(message)


def _progress_mode(ctx):
    debug = ctx.obj.get("debug", False) if ctx.obj else False
    if debug or not sys.stderr.isatty():
        return "plain"
    return "steps"


class ApiError(Exception):
    def __init__(self, status_code: int, detail: str):
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail


def _make_client(ctx) -> httpx.Client:
    return httpx.Client(base_url=ctx.obj["api_url"], timeout=30)


def _request(ctx, method: str, path: str, **kwargs) -> dict:
    with _make_client(ctx) as client:
        response = client.request(method, path, **kwargs)
    if response.status_code >= 400:
        try:
            detail = response.json().get("detail", response.text)
        except ValueError:
            detail = response.text
        raise ApiError(response.status_code, str(detail))
    return response.json()


def _call(ctx, method: str, path: str, **kwargs) -> dict:
    """Call the API, turning failures into a printed error and exit code."""
    try:
        return _request(ctx, method, path, **kwargs)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted.[/]")
        raise SystemExit(130)
    except ApiError as e:
        if e.status_code == 409:
            console.print(f"[yellow]{escape(e.detail)}[/]")
        else:
            console.print(f"[bold red]Error:[/] {escape(e.detail)}")
        raise SystemExit(1)
    except httpx.HTTPError as e:
        console.print(f"[bold red]Error:[/] could not reach mcdrop API at {ctx.obj['api_url']}: {e}")
        raise SystemExit(1)


def _print_status(status: dict) -> None:
    state = status["state"]
    style = STATE_STYLES.get(state, "")
    lines = [
        f"[bold]Status:[/]     [{style}]{state}[/]" if style else f"[bold]Status:[/]     {state}",
        f"[bold]Address:[/]    {status.get('address') or '-'}",
        f"[bold]Instance:[/]   {status.get('instance_id') or '-'}",
    ]
    console.print(Panel("\n".join(lines), title="Game Server", border_style=style or "white"))


def _wait_for(ctx, targets: set[str], timeout: float) -> dict:
    progress = StepProgress(mode=_progress_mode(ctx))
    deadline = time.monotonic() + timeout
    last_state = None
    try:
        while True:
            status = _request(ctx, "GET", "/status")
            if status["state"] != last_state:
                last_state = status["state"]
                progress.update(f"Status: {last_state}")
            if last_state in targets:
                progress.finish()
                return status
            if time.monotonic() >= deadline:
                progress.fail(f"Still '{last_state}' after {timeout:.0f}s")
                raise SystemExit(1)
            time.sleep(WAIT_INTERVAL)
    except KeyboardInterrupt:
        progress.fail("Interrupted")
        console.print("\n[yellow]Interrupted.[/]")
        raise SystemExit(130)
    except (ApiError, httpx.HTTPError) as e:
        progress.fail(str(e))
        console.print(f"[bold red]Error:[/] {escape(str(e))}")
        raise SystemExit(1)


def _parse_instance_id(raw: str):
    return int(raw) if raw.isdigit() else raw


class HelpfulCommand(click.Command):
    """Show full help text when a command is invoked incorrectly."""

    def parse_args(self, ctx, args):
        try:
            return super().parse_args(ctx, args)
        except click.UsageError as e:
            click.echo(ctx.get_help())
            click.echo()
            console.print(f"[bold red]Error:[/] {e.format_message()}")
            ctx.exit(2)


class HelpfulGroup(click.Group):
    command_class = HelpfulCommand


@click.group(cls=HelpfulGroup)
@click.version_option(version="0.1.0", prog_name="mcdrop")
@click.option("--debug", is_flag=True, help="Show SSH commands and output")
@click.option("--api-url", default=None, help="mcdrop API base URL (env: MCDROP_API_URL)")
@click.pass_context
def cli(ctx, debug, api_url):
    """mcdrop - Run a game server on a throwaway cloud instance."""
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["api_url"] = api_url or os.environ.get("MCDROP_API_URL", DEFAULT_API_URL)


@cli.command(context_settings={"ignore_unknown_options": True})
@click.argument("command", required=False, default=None)
@click.pass_context
def help(ctx, command):
    """Show help for a command."""
    if command:
        cmd = cli.get_command(ctx, command)
        if cmd is None:
            console.print(f"[red]Unknown command: {command}[/]")
            raise SystemExit(1)
        click.echo(cmd.get_help(ctx))
    else:
        click.echo(ctx.parent.get_help())


@cli.command()
@click.option("--host", default=None, help="API host (default: MCDROP_API_HOST or 127.0.0.1)")
@click.option("--port", "-p", default=None, type=int, help="API port (default: MCDROP_API_PORT or 8080)")
@click.option("--env-file", default=None, type=click.Path(exists=True, dir_okay=False), help="Path to .env file")
@click.pass_context
def serve(ctx, host, port, env_file):
    """Run the lifecycle controller behind the HTTP API."""
    from mcdrop.api import create_app
    import uvicorn

    debug = ctx.obj.get("debug", False)
    try:
        settings = load_settings(env_file)
        controller = LifecycleController.from_settings(
            settings,
            on_status=lambda msg: console.log(escape(msg)),
            on_error=lambda msg: console.log(f"[bold red]Error:[/] {escape(msg)}"),
            debug=debug,
            on_debug=lambda msg: console.log(f"[dim]{escape(msg)}[/]"),
        )
    except ValueError as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise SystemExit(1)

    if settings.initial_instance_id is not None:
        controller.set_instance_id(settings.initial_instance_id)
    if settings.initial_state is not None:
        controller.force_status(settings.initial_state)

    app = create_app(controller=controller)
    host = host or settings.api_host
    port = port or settings.api_port
    console.print(f"[green]Starting mcdrop API ({settings.provider}) on {host}:{port}[/]")
    uvicorn.run(app, host=host, port=port)


@cli.command()
@click.pass_context
def status(ctx):
    """Show the server status."""
    _print_status(_call(ctx, "GET", "/status"))


@cli.command()
@click.option("--wait", is_flag=True, help="Wait until the server is up (or fails)")
@click.option("--timeout", default=1800, type=int, help="Seconds to wait with --wait")
@click.pass_context
def start(ctx, wait, timeout):
    """Create and initialize the server instance."""
    status = _call(ctx, "POST", "/start")
    console.print(f"[green]Start accepted[/] (instance {status.get('instance_id')}). "
                  "The server will be up in a few minutes.")
    if not wait:
        return
    status = _wait_for(ctx, {"up", "weird", "down"}, timeout)
    _print_status(status)
    if status["state"] != "up":
        raise SystemExit(1)


@cli.command()
@click.option("--wait", is_flag=True, help="Wait until the server is down")
@click.option("--timeout", default=600, type=int, help="Seconds to wait with --wait")
@click.pass_context
def stop(ctx, wait, timeout):
    """Save the world, shut down and delete the server instance."""
    _call(ctx, "POST", "/stop")
    console.print("[green]Stop accepted.[/] The instance is being saved and deleted.")
    if not wait:
        return
    _print_status(_wait_for(ctx, {"down"}, timeout))


@cli.command("force-status")
@click.argument("state", type=click.Choice([s.value for s in LifecycleState]))
@click.pass_context
def force_status(ctx, state):
    """Override the server status without running any workflow."""
    status = _call(ctx, "POST", "/force-status", json={"state": state})
    _print_status(status)
    if state == "up" and not status.get("address"):
        console.print("[yellow]Warning:[/] no public address found for the instance.")


@cli.command("set-instance")
@click.argument("instance_id")
@click.pass_context
def set_instance(ctx, instance_id):
    """Point the controller at an existing instance ID."""
    _print_status(_call(ctx, "PUT", "/instance-id", json={"instance_id": _parse_instance_id(instance_id)}))


@cli.command("console")
@click.argument("command", nargs=-1, required=True)
@click.pass_context
def console_cmd(ctx, command):
    """Send a command to the game server console."""
    result = _call(ctx, "POST", "/console", json={"command": " ".join(command)})
    if result["output"]:
        click.echo(result["output"])


@cli.command()
@click.pass_context
def init(ctx):
    """Re-run the instance initialization script."""
    _call(ctx, "POST", "/init")
    console.print("[green]Initialization started.[/] Check `mcdrop status` for the result.")


@cli.command()
@click.pass_context
def balance(ctx):
    """Show the cloud account balance."""
    result = _call(ctx, "GET", "/balance")
    table = Table(title="Account Balance")
    table.add_column("Item", style="cyan")
    table.add_column("Amount", style="green")
    table.add_row("Month-to-date usage", f"${result['month_to_date_usage']}")
    table.add_row("Current month balance", f"${result['month_to_date_balance']}")
    table.add_row("Total balance", f"${result['account_balance']}")
    console.print(table)
