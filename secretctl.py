#!/usr/bin/env python3
"""
CLI tool for the Secret Sync Operator
Provides a kubectl-like interface for inspecting synced secrets
"""

import json
import os
import sys

import click
import requests
import yaml
from tabulate import tabulate

from errors import SecretSyncError
from events import utc_timestamp
from specs import load_specs_file

API_BASE_URL = os.getenv("SECRETCTL_API_URL", "http://localhost:8000/api/v1")


class SecretSyncCLI:
    """CLI client for the Secret Sync Operator status API"""

    def __init__(self, base_url: str = API_BASE_URL):
        self.base_url = base_url.rstrip("/")

    def _make_request(self, method: str, endpoint: str, **kwargs):
        """Make HTTP request to the API"""
        url = f"{self.base_url}{endpoint}"
        try:
            response = requests.request(method, url, **kwargs)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.RequestException as e:
            click.echo(f"Error: {e}", err=True)
            if hasattr(e, "response") and e.response is not None:
                try:
                    error_detail = e.response.json()
                    click.echo(f"Detail: {error_detail}", err=True)
                except (ValueError, json.JSONDecodeError):
                    click.echo(f"Response: {e.response.text}", err=True)
            return None

    def stream_events(self, spec_id=None):
        """Yield phase transition events from the SSE endpoint"""
        params = {"spec_id": spec_id} if spec_id else None
        with requests.get(
            f"{self.base_url}/events", params=params, stream=True
        ) as response:
            response.raise_for_status()
            for line in response.iter_lines(decode_unicode=True):
                if line and line.startswith("data: "):
                    yield json.loads(line[len("data: "):])


def _format_time(epoch):
    if epoch is None:
        return "-"
    return utc_timestamp(epoch)


@click.group()
@click.option(
    "--api-url",
    default=API_BASE_URL,
    show_default=True,
    help="Base URL of the status API",
)
@click.pass_context
def cli(ctx, api_url):
    """Secret Sync CLI - inspect and trigger secret synchronization"""
    ctx.obj = SecretSyncCLI(api_url)


@cli.command()
@click.argument("filename", type=click.Path(exists=True))
def validate(filename):
    """Validate a secret spec file without contacting the API"""
    try:
        registry = load_specs_file(filename)
    except SecretSyncError as e:
        click.echo(f"Invalid: {e}", err=True)
        sys.exit(1)

    click.echo(f"Valid: {len(registry)} secret spec(s)")
    for spec in registry:
        click.echo(f"  - {spec.id} ({spec.provider}:{spec.remote_key})")


@cli.command()
@click.option("--phase", "-p", default=None, help="Only show specs in this phase")
@click.option(
    "--output", "-o", type=click.Choice(["table", "json", "wide"]), default="table"
)
@click.pass_obj
def get(client, phase, output):
    """List the sync state of all secrets"""
    params = {"phase": phase} if phase else None
    result = client._make_request("GET", "/secrets", params=params)
    if result is None:
        sys.exit(1)

    if output == "json":
        click.echo(json.dumps(result, indent=2))
        return

    if not result:
        click.echo("No secrets found")
        return

    headers = ["Namespace", "Name", "Phase", "Failures", "Last Success"]
    if output == "wide":
        headers += ["Provider", "Remote Key", "Next Sync", "Last Error"]

    rows = []
    for entry in result:
        row = [
            entry["namespace"],
            entry["name"],
            entry["phase"],
            entry["consecutive_failures"],
            _format_time(entry.get("last_success_at")),
        ]
        if output == "wide":
            row += [
                entry["provider"],
                entry["remote_key"],
                _format_time(entry.get("next_eligible_at")),
                entry.get("last_error_class") or "-",
            ]
        rows.append(row)

    click.echo(tabulate(rows, headers=headers, tablefmt="grid"))


@cli.command()
@click.argument("namespace")
@click.argument("name")
@click.option("--output", "-o", type=click.Choice(["json", "yaml"]), default="json")
@click.pass_obj
def describe(client, namespace, name, output):
    """Describe the sync state of one secret"""
    result = client._make_request("GET", f"/secrets/{namespace}/{name}")
    if result is None:
        sys.exit(1)

    if output == "yaml":
        click.echo(yaml.dump(result, default_flow_style=False))
    else:
        click.echo(json.dumps(result, indent=2))


@cli.command()
@click.argument("namespace")
@click.argument("name")
@click.pass_obj
def sync(client, namespace, name):
    """Manually trigger synchronization of one secret"""
    result = client._make_request("POST", f"/secrets/{namespace}/{name}/sync")
    if result is None:
        sys.exit(1)
    click.echo("Sync triggered successfully")


@cli.command()
@click.argument("namespace")
@click.argument("name")
@click.pass_obj
def history(client, namespace, name):
    """Show recent phase transitions of one secret"""
    result = client._make_request("GET", f"/secrets/{namespace}/{name}/transitions")
    if result is None:
        sys.exit(1)

    if not result:
        click.echo("No transitions recorded")
        return

    headers = ["Time", "From", "To", "Error", "Message"]
    rows = [
        [
            entry["timestamp"],
            entry.get("old_phase") or "-",
            entry["new_phase"],
            entry.get("error_class") or "-",
            entry.get("message", ""),
        ]
        for entry in result
    ]
    click.echo(tabulate(rows, headers=headers, tablefmt="grid"))


@cli.command()
@click.pass_obj
def providers(client):
    """List the provider names specs may refer to"""
    result = client._make_request("GET", "/providers")
    if result is None:
        sys.exit(1)

    rows = [[p["name"], p["plugin"], p["version"]] for p in result]
    click.echo(tabulate(rows, headers=["Name", "Plugin", "Version"], tablefmt="grid"))


@cli.command()
@click.option("--spec", "-s", "spec_id", default=None, help="namespace/name to follow")
@click.pass_obj
def watch(client, spec_id):
    """Follow phase transitions as they happen"""
    try:
        for event in client.stream_events(spec_id):
            old = event.get("old_phase") or "-"
            line = (
                f"{event['timestamp']}  {event['spec_id']}: "
                f"{old} -> {event['new_phase']}"
            )
            if event.get("error_class"):
                line += f" ({event['error_class']})"
            click.echo(line)
    except requests.exceptions.RequestException as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nStopped watching")


if __name__ == "__main__":
    cli()
