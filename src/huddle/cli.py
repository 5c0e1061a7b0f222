"""CLI entry point for Huddle."""

import asyncio
from pathlib import Path

import click

from huddle import __version__
from huddle.client import DirectoryClient
from huddle.codes import KIND_MEETING, KIND_TRANSFER
from huddle.config import load_config
from huddle.errors import HuddleError
from huddle.logging import setup_logging


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file.",
)
@click.pass_context
def main(ctx: click.Context, config: Path | None) -> None:
    """Huddle - short-code rendezvous for peer sessions."""
    ctx.ensure_object(dict)
    ctx.obj["config"] = load_config(config)
    ctx.obj["logger"] = setup_logging(ctx.obj["config"])


def _run(ctx: click.Context, operation) -> None:
    """Run operation(client) against the configured server, reporting errors."""
    config = ctx.obj["config"]

    async def _call():
        async with DirectoryClient(config.server_url) as client:
            return await operation(client)

    try:
        asyncio.run(_call())
    except HuddleError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)


@main.command()
def version() -> None:
    """Show version."""
    click.echo(f"huddle version {__version__}")


@main.command()
@click.option("--host", default=None, help="Address to bind (default from config).")
@click.option("--port", type=int, default=None, help="Port to bind (default from config).")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None) -> None:
    """Run the rendezvous server."""
    from huddle.server import HuddleServer

    config = ctx.obj["config"]
    host = host or config.bind_address
    port = port or config.port

    async def _serve():
        server = HuddleServer.from_config(config)
        runner = await server.start(host, port)
        click.echo(f"Huddle server listening on {host}:{port}")
        click.echo("Press Ctrl+C to stop")
        try:
            await asyncio.Event().wait()
        finally:
            await runner.cleanup()

    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        click.echo("\nShutting down...")


@main.group()
def code() -> None:
    """Short code commands."""
    pass


@code.command("register")
@click.argument("target")
@click.option(
    "--kind",
    type=click.Choice([KIND_TRANSFER, KIND_MEETING]),
    default=KIND_TRANSFER,
    show_default=True,
    help="Code kind (selects the lifetime).",
)
@click.pass_context
def code_register(ctx: click.Context, target: str, kind: str) -> None:
    """Register a short code for TARGET."""

    async def _register(client: DirectoryClient):
        short_code = await client.register_code(target, kind)
        click.echo(f"Code: {short_code.code} (expires in {short_code.ttl}s)")

    _run(ctx, _register)


@code.command("resolve")
@click.argument("short_code")
@click.pass_context
def code_resolve(ctx: click.Context, short_code: str) -> None:
    """Resolve SHORT_CODE to its target."""

    async def _resolve(client: DirectoryClient):
        click.echo(await client.resolve_code(short_code))

    _run(ctx, _resolve)


@main.group()
def room() -> None:
    """Meeting room commands."""
    pass


@room.command("create")
@click.argument("title")
@click.option("--secret", required=True, help="Host secret for this room.")
@click.option("--max-participants", type=int, default=None, help="Roster capacity.")
@click.pass_context
def room_create(
    ctx: click.Context, title: str, secret: str, max_participants: int | None
) -> None:
    """Create a room titled TITLE."""

    async def _create(client: DirectoryClient):
        data = await client.create_room(title, secret, max_participants)
        click.echo(f"Room: {data['roomId']}")
        if data.get("code"):
            click.echo(f"Code: {data['code']}")

    _run(ctx, _create)


@room.command("show")
@click.argument("room_id")
@click.option("--secret", default=None, help="Host secret (shows the roster).")
@click.pass_context
def room_show(ctx: click.Context, room_id: str, secret: str | None) -> None:
    """Show room ROOM_ID."""

    async def _show(client: DirectoryClient):
        data = await client.get_room(room_id, secret)
        info = data["room"]
        click.echo(f"Room: {info['id']} - {info['title']}")
        click.echo(f"Status: {info['status']}")
        click.echo(f"Participants: {info['participantCount']}/{info['maxParticipants']}")
        click.echo(f"Host connected: {'yes' if info['hostConnected'] else 'no'}")
        if data.get("isHost"):
            for participant in info.get("participants", []):
                click.echo(f"  {participant['id']}  {participant['name']}  ({participant['admissionStatus']})")

    _run(ctx, _show)


@room.command("end")
@click.argument("room_id")
@click.option("--secret", required=True, help="Host secret for this room.")
@click.pass_context
def room_end(ctx: click.Context, room_id: str, secret: str) -> None:
    """End room ROOM_ID."""

    async def _end(client: DirectoryClient):
        await client.end_room(room_id, secret)
        click.echo(f"Room {room_id} ended")

    _run(ctx, _end)
