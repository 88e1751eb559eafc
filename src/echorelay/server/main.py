"""EchoRelay Server - Main entry point."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import Any

import click
import structlog
from click.core import ParameterSource
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from echorelay.core.config import (
    ServerConfig,
    flatten_config,
    get_config,
    load_config_from_file,
)
from echorelay.server.relay import run_server

console = Console()

BANNER = """
███████╗ ██████╗██╗  ██╗ ██████╗ ██████╗ ███████╗██╗      █████╗ ██╗   ██╗
██╔════╝██╔════╝██║  ██║██╔═══██╗██╔══██╗██╔════╝██║     ██╔══██╗╚██╗ ██╔╝
█████╗  ██║     ███████║██║   ██║██████╔╝█████╗  ██║     ███████║ ╚████╔╝
██╔══╝  ██║     ██╔══██║██║   ██║██╔══██╗██╔══╝  ██║     ██╔══██║  ╚██╔╝
███████╗╚██████╗██║  ██║╚██████╔╝██║  ██║███████╗███████╗██║  ██║   ██║
╚══════╝ ╚═════╝╚═╝  ╚═╝ ╚═════╝ ╚═╝  ╚═╝╚══════╝╚══════╝╚═╝  ╚═╝   ╚═╝
                         REVERSE TUNNEL RELAY
"""

LOG_LEVELS = ["debug", "info", "warning", "error"]
REGISTRATION_KEY_ENVVARS = ["ECHORELAY_REGISTRATION_API_KEY", "TUNNEL_REGISTRATION_API_KEY"]
DEFAULT_SERVER_URL = "http://localhost:8000"


def configure_logging(log_level: str, json_logs: bool = False) -> None:
    """Configure structlog with a level filter and console or JSON rendering."""
    renderer: Any = (
        structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper())
        ),
    )


def _server_options(func):
    options = [
        click.option("--host", envvar="HOST", default="0.0.0.0", help="Bind address"),
        click.option("--port", "-p", envvar="PORT", type=int, default=8000, help="Bind port"),
        click.option(
            "--public-host",
            envvar="PUBLIC_HOST",
            default="localhost",
            help="Host name advertised in tunnel URLs",
        ),
        click.option(
            "--public-protocol",
            envvar="PUBLIC_PROTOCOL",
            type=click.Choice(["http", "https"]),
            default="http",
            help="Scheme advertised in tunnel URLs (https implies wss)",
        ),
        click.option(
            "--registration-api-key",
            envvar=REGISTRATION_KEY_ENVVARS,
            help="Secret required to create or restore tunnels",
        ),
        click.option(
            "--request-timeout",
            envvar="ECHORELAY_REQUEST_TIMEOUT",
            type=float,
            default=30.0,
            help="Seconds to wait for the laptop before 504. Default: 30s",
        ),
        click.option(
            "--ping-interval",
            envvar="ECHORELAY_PING_INTERVAL",
            type=float,
            default=20.0,
            help="Seconds between tunnel pings. Default: 20s",
        ),
        click.option(
            "--pong-timeout",
            envvar="ECHORELAY_PONG_TIMEOUT",
            type=float,
            default=30.0,
            help="Seconds without a pong before a tunnel is dropped. Default: 30s",
        ),
        click.option(
            "--sse-heartbeat-interval",
            envvar="ECHORELAY_SSE_HEARTBEAT_INTERVAL",
            type=float,
            default=15.0,
            help="Seconds between SSE heartbeat comments. Default: 15s",
        ),
        click.option(
            "--proxy-auth/--no-proxy-auth",
            default=True,
            help="Require X-Laptop-Auth-Key on proxied API calls",
        ),
        click.option(
            "--cors-origin",
            envvar="ECHORELAY_CORS_ORIGIN",
            default="*",
            help="Access-Control-Allow-Origin value",
        ),
        click.option(
            "--credential-ttl",
            envvar="ECHORELAY_CREDENTIAL_TTL",
            type=float,
            default=86_400.0,
            help="Seconds unused tunnel credentials are kept. Default: 24h",
        ),
        click.option(
            "--max-credentials",
            envvar="ECHORELAY_MAX_CREDENTIALS",
            type=int,
            default=10_000,
            help="Issued tunnel credentials kept in memory. Default: 10000",
        ),
        click.option(
            "--config",
            "config_file",
            type=click.Path(exists=True, dir_okay=False),
            help="YAML or TOML file with server settings",
        ),
        click.option(
            "--log-level",
            type=click.Choice(LOG_LEVELS),
            default="info",
            envvar="ECHORELAY_LOG_LEVEL",
            help="Log level",
        ),
        click.option("--json-logs", is_flag=True, help="Emit logs as JSON lines"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


# CLI option name -> ServerConfig field
_OPTION_FIELDS = {
    "host": "host",
    "port": "port",
    "public_host": "public_host",
    "public_protocol": "public_protocol",
    "registration_api_key": "registration_api_key",
    "request_timeout": "request_timeout",
    "ping_interval": "ping_interval",
    "pong_timeout": "pong_timeout",
    "sse_heartbeat_interval": "sse_heartbeat_interval",
    "proxy_auth": "proxy_auth_required",
    "cors_origin": "cors_allow_origin",
    "credential_ttl": "credential_ttl",
    "max_credentials": "max_credentials",
}


def build_server_config(ctx: click.Context, params: dict[str, Any]) -> ServerConfig:
    """Merge CLI options with an optional config file.

    Options given explicitly (or through their env var) win over the file;
    the file wins over option defaults.
    """
    file_config: dict[str, Any] = {}
    config_file = params.get("config_file")
    if config_file:
        try:
            file_config = flatten_config(load_config_from_file(config_file))
        except (FileNotFoundError, ValueError) as e:
            raise click.ClickException(f"Failed to load config: {e}") from e
        console.print(f"Loaded config from {config_file}", style="dim")

    values: dict[str, Any] = {}
    for option, field_name in _OPTION_FIELDS.items():
        value = params.get(option)
        source = ctx.get_parameter_source(option)
        if source in (ParameterSource.DEFAULT, None) and field_name in file_config:
            value = file_config[field_name]
        if value is not None:
            values[field_name] = value

    if not values.get("registration_api_key"):
        raise click.UsageError(
            "A registration API key is required "
            "(--registration-api-key or ECHORELAY_REGISTRATION_API_KEY)"
        )

    try:
        return ServerConfig(**values)
    except ValidationError as e:
        raise click.ClickException(f"Invalid configuration: {e}") from e


def _serve(ctx: click.Context, params: dict[str, Any]) -> None:
    configure_logging(params["log_level"], params["json_logs"])
    config = build_server_config(ctx, params)

    console.print(BANNER, style="cyan")
    console.print(f"Starting relay on {config.host}:{config.port}...", style="yellow")
    console.print(f"Public URL base: {config.base_url}/api/<tunnel-id>", style="dim")
    console.print(f"Tunnel URL base: {config.ws_url('<tunnel-id>')}", style="dim")
    console.print(f"Request timeout: {config.request_timeout:g}s", style="dim")
    console.print(
        f"Heartbeat: ping every {config.ping_interval:g}s, "
        f"timeout after {config.pong_timeout:g}s",
        style="dim",
    )
    if not config.proxy_auth_required:
        console.print(
            "Proxy auth: disabled (API calls do not need X-Laptop-Auth-Key)", style="yellow"
        )

    try:
        asyncio.run(run_server(config))
    except KeyboardInterrupt:
        console.print("\nShutting down...", style="yellow")
    console.print("[green]Relay stopped.[/green]")


@click.group(invoke_without_command=True)
@_server_options
@click.pass_context
def main(ctx: click.Context, **params: Any):
    """EchoRelay - reverse-tunnel relay for NAT-hidden laptops.

    Runs the relay server when invoked without a command.

    Examples:

        echorelay-server --registration-api-key s3cret

        echorelay-server --public-host relay.example.com --public-protocol https

        echorelay-server create-tunnel --api-key s3cret --name "Work laptop"

    Use 'echorelay-server COMMAND --help' for more info on specific commands.
    """
    if ctx.invoked_subcommand is None:
        _serve(ctx, params)


@main.command()
@_server_options
@click.pass_context
def serve(ctx: click.Context, **params: Any):
    """Run the relay server."""
    _serve(ctx, params)


@main.command("create-tunnel")
@click.option("--server", default=DEFAULT_SERVER_URL, envvar="ECHORELAY_SERVER_URL", help="Relay base URL")
@click.option("--api-key", envvar=REGISTRATION_KEY_ENVVARS, required=True, help="Registration API key")
@click.option("--name", help="Display name for the laptop")
@click.option("--tunnel-id", help="Restore an existing tunnel id (rotates its key)")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def create_tunnel(
    server: str,
    api_key: str,
    name: str | None,
    tunnel_id: str | None,
    json_output: bool,
):
    """Register a tunnel and print its connection config."""
    import httpx

    payload = {}
    if name:
        payload["name"] = name
    if tunnel_id:
        payload["tunnel_id"] = tunnel_id

    try:
        with httpx.Client(timeout=10.0) as client:
            resp = client.post(
                f"{server.rstrip('/')}/tunnel/create",
                json=payload,
                headers={"X-Api-Key": api_key},
            )
    except httpx.HTTPError as e:
        console.print(f"[red]Error connecting to server:[/red] {e}")
        sys.exit(1)

    if resp.status_code != 200:
        try:
            message = resp.json().get("message", resp.text)
        except ValueError:
            message = resp.text
        console.print(f"[red]Tunnel creation failed ({resp.status_code}):[/red] {message}")
        sys.exit(1)

    tunnel_config = resp.json()["config"]
    if json_output:
        click.echo(json.dumps(tunnel_config, indent=2))
        return

    title = "Tunnel restored" if tunnel_config.get("isRestored") else "Tunnel created"
    table = Table(title=title)
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green", overflow="fold")
    table.add_row("Tunnel ID", tunnel_config["tunnelId"])
    table.add_row("Public URL", tunnel_config["publicUrl"])
    table.add_row("WebSocket URL", tunnel_config["wsUrl"])
    table.add_row("API key", tunnel_config["apiKey"])
    console.print(table)
    console.print("\nKeep the API key secret: it authenticates the laptop and mobile clients.", style="dim")


@main.command()
@click.option("--server", default=DEFAULT_SERVER_URL, envvar="ECHORELAY_SERVER_URL", help="Relay base URL")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def status(server: str, json_output: bool):
    """Show relay health and the number of connected tunnels."""
    import httpx

    try:
        with httpx.Client(timeout=5.0) as client:
            health_resp = client.get(f"{server.rstrip('/')}/health")
            health = health_resp.json()
    except Exception as e:
        console.print(f"[red]Error connecting to server:[/red] {e}")
        sys.exit(1)

    if json_output:
        click.echo(json.dumps(health, indent=2))
        return

    state = health.get("status", "unknown")
    color = "green" if state == "ok" else "red"
    console.print(f"\n[bold]Server:[/bold] {server}")
    console.print(f"[bold]Status:[/bold] [{color}]{state}[/{color}]")
    console.print(f"[bold]Connected Tunnels:[/bold] {health.get('tunnels', 0)}")
    console.print(f"[bold]Uptime:[/bold] {_format_uptime(health.get('uptime', 0))}")


@main.command("config")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def config_show(json_output: bool):
    """Show environment-driven tuning settings."""
    env_dict = get_config().to_env_dict()

    if json_output:
        click.echo(json.dumps(env_dict, indent=2))
        return

    table = Table(title="Performance")
    table.add_column("Env Variable", style="cyan")
    table.add_column("Value", style="green")
    for key, value in env_dict.items():
        table.add_row(key, value)
    console.print(table)


def _format_uptime(seconds: float) -> str:
    seconds = int(seconds)
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


if __name__ == "__main__":
    main()
