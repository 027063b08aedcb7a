from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import NoReturn, Optional

import typer
import uvicorn

from . import __version__
from .client.client_id import ClientIdStore
from .client.lifecycle import ORIGIN_BOT, ORIGIN_SYSTEM, ConnectionLifecycle, TranscriptEntry
from .core.config import ConfigError, SupportRelayConfig, load_config
from .surfaces.web.app import create_app

DEFAULT_CLIENT_ID_FILE = Path(".support-relay/client-id")

app = typer.Typer(add_completion=False)


def _raise_exit(message: str, *, cause: Optional[BaseException] = None) -> NoReturn:
    typer.echo(message, err=True)
    if cause is not None:
        raise typer.Exit(code=1) from cause
    raise typer.Exit(code=1)


def _require_config(path: Optional[Path]) -> SupportRelayConfig:
    try:
        return load_config(path)
    except ConfigError as exc:
        _raise_exit(f"Invalid configuration: {exc}", cause=exc)


def _version_callback(value: bool) -> None:
    if not value:
        return
    typer.echo(f"support-relay {__version__}")
    raise typer.Exit(code=0)


@app.callback()
def _root(
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
) -> None:
    return


@app.command("serve")
def serve(
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to support-relay.yml"
    ),
    host: Optional[str] = typer.Option(None, "--host", help="Host to bind"),
    port: Optional[int] = typer.Option(None, "--port", help="Port to bind"),
):
    """Run the web server and, when enabled, the Discord bot."""
    config = _require_config(config_path)
    bind_host = host or config.server.host
    bind_port = port or config.server.port
    typer.echo(f"Serving support relay on http://{bind_host}:{bind_port}")
    uvicorn.run(create_app(config), host=bind_host, port=bind_port)


@app.command("check-config")
def check_config(
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to support-relay.yml"
    ),
):
    """Validate configuration and print what would be started."""
    config = _require_config(config_path)
    discord = config.discord
    typer.echo(f"root: {config.root}")
    typer.echo(f"state_file: {config.state_file}")
    typer.echo(f"server: {config.server.host}:{config.server.port}")
    typer.echo(f"base_url: {config.server.base_url}")
    typer.echo(f"discord.enabled: {discord.enabled}")
    if discord.enabled:
        typer.echo(f"discord.guild_id: {discord.guild_id}")
        typer.echo(f"discord.support_category_id: {discord.support_category_id}")
        typer.echo(
            f"discord.moderation_channel_id: {discord.moderation_channel_id or '-'}"
        )
        typer.echo(f"discord.redirect_uri: {discord.redirect_uri}")
        typer.echo(f"discord.admin_users: {len(discord.admin_user_ids)}")
        typer.echo(f"discord.admin_roles: {len(discord.admin_role_ids)}")


def _print_entry(entry: TranscriptEntry) -> None:
    if entry.origin == ORIGIN_BOT:
        typer.echo(f"[{entry.author or 'support'}] {entry.text}")
    elif entry.origin == ORIGIN_SYSTEM:
        typer.echo(f"* {entry.text}", err=True)


async def _chat(
    url: str, session_id: Optional[str], client_id: str, config: SupportRelayConfig
) -> None:
    lifecycle = ConnectionLifecycle(
        url=url,
        client_id=client_id,
        session_id=session_id,
        heartbeat_seconds=config.client.heartbeat_seconds,
        reconnect_delay_seconds=config.client.reconnect_delay_seconds,
        max_reconnect_attempts=config.client.max_reconnect_attempts,
        reconnect_reset_seconds=config.client.reconnect_reset_seconds,
        on_entry=_print_entry,
    )
    lifecycle.open()
    settled = asyncio.ensure_future(lifecycle.wait_settled())
    loop = asyncio.get_running_loop()
    try:
        while not settled.done():
            reader = loop.run_in_executor(None, sys.stdin.readline)
            done, _ = await asyncio.wait(
                {reader, settled}, return_when=asyncio.FIRST_COMPLETED
            )
            if reader not in done:
                break
            line = reader.result()
            if not line:
                break
            await lifecycle.send_text(line)
    finally:
        settled.cancel()
        await lifecycle.close()


@app.command("chat")
def chat(
    url: str = typer.Option(
        "ws://localhost:3000/ws", "--url", help="Support socket URL"
    ),
    session_id: Optional[str] = typer.Option(
        None, "--session-id", help="Value of the sessionId cookie"
    ),
    client_id_file: Path = typer.Option(
        DEFAULT_CLIENT_ID_FILE, "--client-id-file", help="Where the client id lives"
    ),
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to support-relay.yml"
    ),
):
    """Talk to a running relay from the terminal, one line per message."""
    config = _require_config(config_path)
    client_id = ClientIdStore(client_id_file).load_or_create()
    typer.echo(f"Connecting to {url} as {client_id}", err=True)
    try:
        asyncio.run(_chat(url, session_id, client_id, config))
    except KeyboardInterrupt:
        pass


def main() -> None:
    """Entrypoint for CLI execution."""
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
