import json
import os
import sys
import time
from typing import List, Optional

import requests
import typer
from rich.console import Console
from rich.table import Table
from rich.tree import Tree

from relay.sdk.client import RelayClient

app = typer.Typer(help="relayctl: Command Line Interface for the Relay workflow controller")
console = Console()

STATUS_STYLES = {
    "SUCCEEDED": "green",
    "FAILED": "red",
    "CANCELED": "yellow",
    "SKIPPED": "dim",
    "RUNNING": "cyan",
    "RUNNABLE": "cyan",
    "PENDING": "white",
}

# Configuration
RELAY_URL = os.getenv("RELAY_URL", "http://localhost:8080")
API_TOKEN = os.getenv("RELAY_API_TOKEN", "default-insecure-token")


@app.callback()
def main(
    url: str = typer.Option(None, envvar="RELAY_URL", help="Relay controller URL"),
    token: str = typer.Option(None, envvar="RELAY_API_TOKEN", help="Admin API token"),
):
    global RELAY_URL, API_TOKEN
    if url:
        RELAY_URL = url
    if token:
        API_TOKEN = token


def get_client() -> RelayClient:
    return RelayClient(url=RELAY_URL, token=API_TOKEN)


def fail(message: str, error: Exception):
    detail = str(error)
    if isinstance(error, requests.exceptions.HTTPError) and error.response is not None:
        try:
            detail = error.response.json().get("detail", detail)
        except ValueError:
            pass
    console.print(f"[bold red]{message}:[/bold red] {detail}")
    raise typer.Exit(code=1)


def styled(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def parse_params(pairs: List[str]) -> dict:
    """key=value pairs; values that parse as JSON keep their type."""
    params = {}
    for pair in pairs:
        if "=" not in pair:
            console.print(f"[bold red]Invalid parameter '{pair}', expected key=value[/bold red]")
            raise typer.Exit(code=2)
        key, raw = pair.split("=", 1)
        try:
            params[key] = json.loads(raw)
        except ValueError:
            params[key] = raw
    return params


@app.command()
def serve(host: str = "0.0.0.0", port: int = typer.Option(None, envvar="RELAY_PORT")):
    """Run the controller in the foreground"""
    from relay.controller import config
    from relay.controller.main import serve as run_server
    run_server(host=host, port=port or config.PORT)


@app.command()
def register(file: str):
    """Register (or replace) a workflow from a JSON definition file"""
    if not os.path.exists(file):
        console.print(f"[bold red]File {file} not found![/bold red]")
        raise typer.Exit(code=1)
    with open(file, "r") as f:
        try:
            definition = json.load(f)
        except ValueError as e:
            console.print(f"[bold red]{file} is not valid JSON:[/bold red] {e}")
            raise typer.Exit(code=1)

    try:
        result = get_client().register(definition)
    except requests.exceptions.RequestException as e:
        fail("Registration failed", e)
    workflow = result["workflow"]
    console.print(f"[bold green]Registered '{workflow['name']}'[/bold green] ({len(workflow['steps'])} steps)")


@app.command()
def workflows():
    """List registered workflows"""
    try:
        items = get_client().list_workflows()
    except requests.exceptions.RequestException as e:
        fail("Could not list workflows", e)

    table = Table(title="Workflows")
    table.add_column("Name", style="cyan")
    table.add_column("Steps", justify="right")
    table.add_column("Triggers", justify="right")
    table.add_column("Active", style="green")
    for w in items:
        table.add_row(w["name"], str(len(w["steps"])), str(len(w["triggers"])), "yes" if w["active"] else "no")
    console.print(table)


@app.command()
def run(
    workflow: str,
    param: List[str] = typer.Option([], "--param", "-p", help="key=value, repeatable"),
    wait: bool = typer.Option(False, help="Block until the run finishes"),
):
    """Start a manual run"""
    client = get_client()
    try:
        run_id = client.run(workflow, parse_params(param))
    except requests.exceptions.RequestException as e:
        fail("Run failed to start", e)
    console.print(f"Started run [bold]{run_id}[/bold]")

    if wait:
        with console.status("Waiting for run to finish..."):
            try:
                result = client.wait(run_id)
            except requests.exceptions.RequestException as e:
                fail("Lost track of run", e)
        _print_run(result)
        if result["status"] != "SUCCEEDED":
            raise typer.Exit(code=1)


def _print_run(run: dict):
    tree = Tree(f"[bold]{run['workflow_name']}[/bold] {run['run_id']} {styled(run['status'])}")
    for step in run.get("steps", []):
        label = f"{step['step_name']} {styled(step['status'])}"
        if step.get("exit_code") is not None:
            label += f" exit={step['exit_code']}"
        if step.get("error"):
            label += f" [dim]{step.get('error_kind') or ''} {step['error']}[/dim]"
        branch = tree.add(label)
        for line in step.get("log_tail", []):
            branch.add(f"[dim]{line['level']}[/dim] {line['message']}")
    console.print(tree)


@app.command()
def status(run_id: Optional[str] = typer.Argument(None), workflow: Optional[str] = None, tail: int = 5):
    """Show one run in detail, or the most recent runs"""
    client = get_client()
    if run_id:
        try:
            _print_run(client.get_run(run_id, tail=tail))
        except requests.exceptions.RequestException as e:
            fail("Could not fetch run", e)
        return

    try:
        runs = client.list_runs(workflow)
    except requests.exceptions.RequestException as e:
        fail("Could not list runs", e)

    table = Table(title="Runs")
    table.add_column("Run", style="cyan")
    table.add_column("Workflow")
    table.add_column("Status")
    table.add_column("Triggered By", style="magenta")
    table.add_column("Age", justify="right")
    for r in runs:
        table.add_row(
            r["run_id"], r["workflow_name"], styled(r["status"]), r["triggered_by"] or "",
            f"{time.time() - r['created_at']:.0f}s",
        )
    console.print(table)


@app.command()
def logs(run_id: Optional[str] = typer.Argument(None), step: Optional[str] = None, tail: Optional[int] = None):
    """Print a step's log lines, or the controller log buffer"""
    client = get_client()
    try:
        if run_id and step:
            for line in client.get_step_logs(run_id, step, tail=tail):
                console.print(f"[dim]{line['level']:>7}[/dim] {line['message']}")
        else:
            for entry in client.controller_logs(limit=tail or 100):
                console.print(f"[dim]{entry.get('timestamp')}[/dim] {entry.get('level')} {entry.get('message')}")
    except requests.exceptions.RequestException as e:
        fail("Could not fetch logs", e)


@app.command()
def cancel(run_id: str):
    """Cancel a running workflow run"""
    try:
        result = get_client().cancel(run_id)
    except requests.exceptions.RequestException as e:
        fail("Cancel failed", e)
    console.print(f"Run {run_id} {styled(result['status'])}")


@app.command()
def activate(workflow: str):
    """Launch a workflow's triggers"""
    try:
        result = get_client().activate(workflow)
    except requests.exceptions.RequestException as e:
        fail("Activation failed", e)

    table = Table(title=f"Triggers of {workflow}")
    table.add_column("Trigger", style="cyan")
    table.add_column("Status")
    table.add_column("Webhook", style="magenta")
    table.add_column("Error", style="red")
    for t in result["triggers"]:
        table.add_row(t["trigger_name"], t["status"], f"{RELAY_URL}{t['webhook_path']}", t.get("error") or "")
    console.print(table)


@app.command()
def deactivate(workflow: str):
    """Stop a workflow's triggers"""
    try:
        result = get_client().deactivate(workflow)
    except requests.exceptions.RequestException as e:
        fail("Deactivation failed", e)
    console.print(f"Stopped {result['stopped']} triggers of '{workflow}'")


@app.command()
def secret(workflow: str, name: str, value: Optional[str] = typer.Option(None, help="Read from stdin when omitted")):
    """Set a workflow secret"""
    if value is None:
        value = sys.stdin.read().rstrip("\n")
    try:
        get_client().set_secret(workflow, name, value)
    except requests.exceptions.RequestException as e:
        fail("Could not set secret", e)
    console.print(f"Secret '{name}' set on '{workflow}'")


if __name__ == "__main__":
    app()
