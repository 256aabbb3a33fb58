"""
Tigra CLI: data export, factory reset, cloud configuration and a terminal chat.

Registered as the `tigra` console script via pyproject.toml.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import replace
from pathlib import Path
from typing import Any

import click

from .client import AssistantClient, TurnStatus
from .config import AppConfig, load_config
from .exceptions import ProviderSetupError
from .models import Message
from .protocols import AppleFMProvider
from .settings import SETTINGS_FILENAME, DeviceSettings
from .storage import StorageFacade


def _config(ctx: click.Context) -> AppConfig:
    return ctx.ensure_object(dict)["config"]


def _facade(config: AppConfig) -> StorageFacade:
    settings = DeviceSettings(config.data_dir / SETTINGS_FILENAME)
    return StorageFacade(settings, config)


async def _export(config: AppConfig) -> dict[str, Any]:
    facade = _facade(config)
    try:
        return await facade.export_all_data()
    finally:
        await facade.close()


async def _reset(config: AppConfig) -> None:
    facade = _facade(config)
    try:
        await facade.delete_database()
    finally:
        await facade.close()


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(package_name="tigra-client")
@click.option(
    "--data-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory for local records and device settings (default: $TIGRA_DATA_DIR or ~/.tigra).",
)
@click.option("-v", "--verbose", is_flag=True, help="Log storage and provider diagnostics.")
@click.pass_context
def cli(ctx: click.Context, data_dir: Path | None, verbose: bool) -> None:
    """Tigra: personal assistant client with hybrid local/cloud storage."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    config = load_config()
    if data_dir is not None:
        config = replace(config, data_dir=data_dir)
    ctx.ensure_object(dict)["config"] = config


# ---------------------------------------------------------------------------
# Operational tooling
# ---------------------------------------------------------------------------


@cli.command(name="export")
@click.option(
    "-o",
    "--output",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write the snapshot to a file instead of stdout.",
)
@click.pass_context
def export_cmd(ctx: click.Context, output: Path | None) -> None:
    """Dump users, chats and preferences from the active backend as JSON."""
    snapshot = asyncio.run(_export(_config(ctx)))
    payload = json.dumps(snapshot, indent=2, ensure_ascii=False)
    if output is None:
        click.echo(payload)
        return
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(payload + "\n", encoding="utf-8")
    click.secho(f"Exported {snapshot['source']} data to {output}", fg="green")


@cli.command()
@click.confirmation_option(prompt="Factory reset? This wipes local data.")
@click.pass_context
def reset(ctx: click.Context) -> None:
    """Delete local records and device settings. Cloud rows are untouched."""
    asyncio.run(_reset(_config(ctx)))
    click.secho("Local data deleted.", fg="yellow")


# ---------------------------------------------------------------------------
# Cloud configuration
# ---------------------------------------------------------------------------


@cli.group()
def cloud() -> None:
    """Inspect or change which storage backend this device uses."""


@cloud.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show the backend that would be selected on startup."""
    facade = _facade(_config(ctx))
    try:
        click.echo(f"Backend: {facade.source}")
        click.echo(f"Selection: {facade.kind.value}")
    finally:
        asyncio.run(facade.close())


@cloud.command()
@click.argument("url")
@click.argument("key")
@click.pass_context
def connect(ctx: click.Context, url: str, key: str) -> None:
    """Use a custom cloud project (URL and API key)."""
    facade = _facade(_config(ctx))
    try:
        facade.set_cloud_config(url, key)
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc
    click.secho("Cloud override saved. It applies the next time Tigra starts.", fg="green")


@cloud.command()
@click.pass_context
def disconnect(ctx: click.Context) -> None:
    """Store everything on this device only."""
    _facade(_config(ctx)).disconnect_cloud()
    click.secho("Disconnected from cloud. Data is local only.", fg="yellow")


# ---------------------------------------------------------------------------
# Terminal chat
# ---------------------------------------------------------------------------


def _print_delta(state: dict[str, int]) -> Any:
    def on_update(snapshot: tuple[Message, ...]) -> None:
        last = snapshot[-1]
        if last.role != "model":
            return
        printed = state.get(last.id, 0)
        click.echo(last.content[printed:], nl=False)
        state[last.id] = len(last.content)

    return on_update


async def _chat(
    provider: AppleFMProvider, config: AppConfig, email: str | None, password: str | None
) -> None:
    client = AssistantClient.create(provider, config)
    try:
        await client.restore()
        if email and password is not None:
            result = await client.login(email, password)
            if not result:
                click.secho(result.error or "Login failed.", fg="red", err=True)
                return
        if not client.is_authenticated:
            decision = client.enter_guest_mode()
            if not decision.allowed:
                click.secho(decision.message or "Guest limit reached.", fg="yellow")
                return
            click.secho(f"Guest mode: {decision.remaining} messages left.", fg="yellow")

        click.echo("Type /new for a fresh session, /exit to quit.")
        while True:
            text = await asyncio.to_thread(click.prompt, "you", prompt_suffix="> ")
            command = text.strip().lower()
            if command in {"/exit", "/quit"}:
                break
            if command == "/new":
                client.sessions.start_new_session()
                continue
            click.echo("tigra> ", nl=False)
            result = await client.send(text, on_update=_print_delta({}))
            click.echo()
            if result.status is TurnStatus.DENIED:
                click.secho(result.notice or "Guest limit reached.", fg="yellow")
                break
    finally:
        await client.close()


@cli.command()
@click.option("--email", default=None, help="Sign in as this user.")
@click.option("--password", default=None, hide_input=True, help="Password for --email.")
@click.pass_context
def chat(ctx: click.Context, email: str | None, password: str | None) -> None:
    """Chat with the on-device model from the terminal."""
    provider = AppleFMProvider()
    provider.check_available()
    if email and password is None:
        password = click.prompt("password", hide_input=True)
    asyncio.run(_chat(provider, _config(ctx), email, password))


def cli_entry() -> None:
    """Entry point for the console_scripts."""
    try:
        cli()
    except ProviderSetupError as exc:
        click.secho(str(exc), fg="red", err=True)
        raise SystemExit(2) from exc


if __name__ == "__main__":
    cli_entry()
