"""CLI entry point for linkd."""

from pathlib import Path

import click

from linkd import __version__
from linkd.config import load_config
from linkd.errors import ValidationError
from linkd.logging import setup_logging


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
    """linkd - Link a device to a messaging account and deliver its credential."""
    ctx.ensure_object(dict)
    ctx.obj["config"] = load_config(config)
    ctx.obj["logger"] = setup_logging(ctx.obj["config"])


@main.command()
@click.option(
    "--transport",
    "-t",
    default=None,
    help="Transport factory as 'package.module:factory'. Overrides config.",
)
@click.option("--port", "-p", type=int, default=None, help="Port to listen on.")
@click.option("--bind", default=None, help="Address to bind to.")
@click.pass_context
def serve(
    ctx: click.Context,
    transport: str | None,
    port: int | None,
    bind: str | None,
) -> None:
    """Run the linking daemon."""
    import asyncio

    from linkd.daemon import Daemon, StartupError
    from linkd.transport import load_transport_factory

    config = ctx.obj["config"]
    if port is not None:
        config.port = port
    if bind is not None:
        config.bind_address = bind

    target = transport or config.transport
    if not target:
        click.echo(
            "Error: no transport configured. Pass --transport package.module:factory "
            "or set 'transport' in the config file.",
            err=True,
        )
        raise SystemExit(1)

    try:
        factory = load_transport_factory(target)
    except ValidationError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)

    async def _serve():
        daemon = Daemon(config=config, transport_factory=factory)
        try:
            await daemon.start()
        except StartupError as e:
            click.echo(f"Startup error: {e}", err=True)
            raise SystemExit(1)

        click.echo(f"Daemon started on {config.bind_address}:{config.port}")
        click.echo("Press Ctrl+C to stop")
        await daemon.run_forever()

    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        click.echo("\nShutting down...")


@main.command()
@click.option(
    "--max-age",
    type=float,
    default=None,
    help="Purge credentials older than this many seconds (default from config).",
)
@click.pass_context
def purge(ctx: click.Context, max_age: float | None) -> None:
    """Delete stale credentials left in the credentials directory."""
    import asyncio

    from linkd.credentials import FileCredentialStore

    config = ctx.obj["config"]
    age = config.stale_credential_age if max_age is None else max_age
    store = FileCredentialStore(Path(config.credentials_dir).expanduser())

    removed = asyncio.run(store.purge_stale(age))
    click.echo(f"Removed {removed} stale credential(s).")


@main.command()
@click.argument("payload")
@click.option(
    "--png",
    "png_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write a PNG image instead of printing to the terminal.",
)
def qr(payload: str, png_path: Path | None) -> None:
    """Render a linking QR payload."""
    from linkd.qr import QrRenderer

    renderer = QrRenderer(payload)
    if png_path is not None:
        png_path.write_bytes(renderer.to_png())
        click.echo(f"QR code saved to: {png_path}")
        return
    click.echo(renderer.to_terminal())


@main.command()
@click.argument("phone")
def normalize(phone: str) -> None:
    """Show the normalized digits and session key for a phone number."""
    from linkd.keys import normalize_phone, phone_session_key

    try:
        digits = normalize_phone(phone)
    except ValidationError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)

    click.echo(f"Phone: {digits}")
    click.echo(f"Session key: {phone_session_key(digits)}")


@main.command()
def version() -> None:
    """Show version."""
    click.echo(f"linkd version {__version__}")


if __name__ == "__main__":
    main()
