#!/usr/bin/env python3
"""
CLI tool for the Packet device controller
Provides a kubectl-like interface for managing devices
"""

import json
import os
import time

import click
import requests
import yaml
from tabulate import tabulate

API_BASE_URL = os.getenv("DEVICECTL_API_URL", "http://localhost:8000/api/v1")


class DeviceControllerCLI:
    """CLI client for the device API"""

    def __init__(self, namespace: str = "default", base_url: str = API_BASE_URL):
        self.namespace = namespace
        self.base_url = base_url

    def _make_request(self, method: str, endpoint: str, **kwargs):
        """Make HTTP request to the API"""
        url = f"{self.base_url}/namespaces/{self.namespace}{endpoint}"
        try:
            response = requests.request(method, url, **kwargs)
            response.raise_for_status()
            if response.status_code == 204:
                return {}
            return response.json()
        except requests.exceptions.RequestException as e:
            click.echo(f"Error: {e}", err=True)
            if hasattr(e, "response") and e.response is not None:
                try:
                    error_detail = e.response.json()
                    click.echo(f"Detail: {error_detail}", err=True)
                except ValueError:
                    click.echo(f"Response: {e.response.text}", err=True)
            return None


def load_manifest(filename: str):
    with open(filename, "r") as f:
        if filename.endswith(".yaml") or filename.endswith(".yml"):
            return yaml.safe_load(f)
        return json.load(f)


@click.group()
@click.option("--namespace", "-n", default="default", help="Device namespace")
@click.pass_context
def cli(ctx, namespace):
    """Packet device controller CLI - kubectl-like interface for devices"""
    ctx.obj = DeviceControllerCLI(namespace=namespace)


@cli.command()
@click.argument("filename", type=click.Path(exists=True))
@click.pass_obj
def apply(client, filename):
    """Create a device from a YAML/JSON file, or update its spec if it exists"""
    data = load_manifest(filename)
    name = data.get("name") or data.get("metadata", {}).get("name")
    if not name:
        raise click.UsageError("manifest must set a device name")

    existing = requests.get(
        f"{client.base_url}/namespaces/{client.namespace}/devices/{name}"
    )
    if existing.status_code == 200:
        result = client._make_request(
            "PUT", f"/devices/{name}", json={"spec": data["spec"]}
        )
        action = "updated"
    else:
        result = client._make_request(
            "POST", "/devices", json={"name": name, "spec": data["spec"]}
        )
        action = "created"

    if result:
        click.echo(f"device/{name} {action}")
        click.echo(f"Generation: {result['metadata']['generation']}")


@cli.command()
@click.option(
    "--output", "-o", type=click.Choice(["table", "json", "wide"]), default="table"
)
@click.pass_obj
def get(client, output):
    """List devices"""
    result = client._make_request("GET", "/devices")
    if result is None:
        return

    if output == "json":
        click.echo(json.dumps(result, indent=2))
        return

    headers = ["Name", "Hostname", "ID", "State", "Ready"]
    if output == "wide":
        headers += ["Facility", "Plan", "Addresses"]

    rows = []
    for device in result:
        status = device["status"]
        spec = device["spec"]
        row = [
            device["metadata"]["name"],
            spec["hostname"],
            status["id"] or "<none>",
            status["state"] or "unknown",
            "✓" if status["ready"] else "✗",
        ]
        if output == "wide":
            row += [
                spec["facility"],
                spec["plan"],
                ",".join(ip["address"] for ip in status["ipAddresses"]),
            ]
        rows.append(row)

    click.echo(tabulate(rows, headers=headers, tablefmt="grid"))


@cli.command()
@click.argument("name")
@click.option("--output", "-o", type=click.Choice(["json", "yaml"]), default="yaml")
@click.pass_obj
def describe(client, name, output):
    """Describe a device"""
    result = client._make_request("GET", f"/devices/{name}")

    if result:
        if output == "yaml":
            click.echo(yaml.dump(result, default_flow_style=False))
        else:
            click.echo(json.dumps(result, indent=2))


@cli.command()
@click.argument("name")
@click.confirmation_option(prompt="Are you sure you want to delete this device?")
@click.pass_obj
def delete(client, name):
    """Delete a device (releases the Packet device)"""
    result = client._make_request("DELETE", f"/devices/{name}")

    if result:
        click.echo("Device marked for deletion")


@cli.command()
@click.argument("name")
@click.option("--limit", "-l", default=10, help="Number of history entries to show")
@click.pass_obj
def history(client, name, limit):
    """Show reconciliation history for a device"""
    result = client._make_request(
        "GET", f"/devices/{name}/history", params={"limit": limit}
    )

    if result:
        headers = ["ID", "Success", "Message", "Error", "Requeue", "Duration", "Time"]
        rows = []
        for entry in result:
            duration = entry.get("duration_seconds")
            rows.append(
                [
                    entry["id"],
                    "✓" if entry["success"] else "✗",
                    entry.get("message") or "",
                    entry.get("error_kind") or "",
                    entry.get("requeue_after") or "-",
                    f"{duration:.2f}s" if duration is not None else "-",
                    entry["reconcile_time"],
                ]
            )

        click.echo(tabulate(rows, headers=headers, tablefmt="grid"))


@cli.command()
@click.argument("name")
@click.pass_obj
def events(client, name):
    """Show recent events for a device"""
    result = client._make_request("GET", f"/devices/{name}/events")
    if result is None:
        return
    if not result:
        click.echo("No events")
        return

    rows = [
        [e["timestamp"], e["event_type"], e["reason"], e["message"]] for e in result
    ]
    click.echo(tabulate(rows, headers=["Time", "Type", "Reason", "Message"]))


@cli.command()
@click.argument("name")
@click.pass_obj
def reconcile(client, name):
    """Manually trigger reconciliation for a device"""
    result = client._make_request("POST", f"/devices/{name}/reconcile")

    if result:
        click.echo("Reconciliation triggered successfully")


@cli.command()
@click.argument("name", default="packet-secret")
@click.option(
    "--api-key", prompt=True, hide_input=True, help="Packet API key to store"
)
@click.pass_obj
def secret(client, name, api_key):
    """Store the Packet API key used for devices in the namespace"""
    result = client._make_request(
        "PUT", f"/secrets/{name}", json={"data": {"apiKey": api_key}}
    )

    if result:
        click.echo(f"secret/{result['name']} configured")


@cli.command()
@click.argument("name")
@click.option("--follow", "-f", is_flag=True, help="Follow status updates")
@click.option("--interval", "-i", default=5, help="Polling interval in seconds")
@click.pass_obj
def status(client, name, follow, interval):
    """Show status of a device"""

    def show_status():
        result = client._make_request("GET", f"/devices/{name}")
        if result:
            metadata = result["metadata"]
            device_status = result["status"]
            click.clear()
            click.echo(f"Device: {metadata['namespace']}/{metadata['name']}")
            click.echo(f"ID: {device_status['id'] or '<none>'}")
            click.echo(f"State: {device_status['state'] or 'unknown'}")
            click.echo(f"Generation: {metadata['generation']}")
            for ip in device_status["ipAddresses"]:
                scope = "public" if ip["public"] else "private"
                click.echo(f"Address: {ip['address']} (IPv{ip['addressFamily']}, {scope})")

            if metadata.get("deletionTimestamp"):
                click.echo("\nDevice is being deleted")
            elif device_status["ready"]:
                click.echo("\n✓ Device is active")

    show_status()

    if follow:
        try:
            while True:
                time.sleep(interval)
                show_status()
        except KeyboardInterrupt:
            click.echo("\nStopped following")


if __name__ == "__main__":
    cli()
