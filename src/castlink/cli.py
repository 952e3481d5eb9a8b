"""CLI entry point for castlink."""

import asyncio
import threading
from pathlib import Path

import click

from castlink import __version__
from castlink.access_code import encode as encode_code
from castlink.access_code import resolve as resolve_code
from castlink.config import Config, load_config
from castlink.errors import CastlinkError
from castlink.logging import setup_logging
from castlink.protocols import AuthState, CaptureOptions, SessionState


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file.",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def main(ctx: click.Context, config: Path | None, verbose: bool) -> None:
    """castlink - Cast your screen to a receiver on the local network."""
    ctx.ensure_object(dict)
    ctx.obj["config"] = load_config(config)
    ctx.obj["logger"] = setup_logging(ctx.obj["config"], verbose=verbose)


@main.command()
def version() -> None:
    """Show version."""
    click.echo(f"castlink version {__version__}")


@main.command()
@click.argument("code")
@click.pass_context
def resolve(ctx: click.Context, code: str) -> None:
    """Show the receiver address behind an access code."""
    config = ctx.obj["config"]
    try:
        address = resolve_code(code, port=config.port)
    except CastlinkError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    click.echo(str(address))


@main.command()
@click.argument("host")
@click.option("--salt", default=None, help="Salt byte as two hex digits (10-character code).")
def encode(host: str, salt: str | None) -> None:
    """Build an access code for a receiver IP address."""
    salt_value = None
    if salt is not None:
        try:
            salt_value = int(salt, 16)
        except ValueError:
            raise click.BadParameter(f"not a hex byte: {salt}", param_hint="--salt")
    try:
        code = encode_code(host, salt=salt_value)
    except CastlinkError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    click.echo(code)


@main.command()
@click.argument("code")
@click.option("--pin", default=None, help="PIN shown on the receiver (defaults to the code).")
@click.option("--no-audio", is_flag=True, help="Cast video only.")
@click.pass_context
def cast(ctx: click.Context, code: str, pin: str | None, no_audio: bool) -> None:
    """Connect to a receiver and cast the screen until Ctrl+C."""
    config: Config = ctx.obj["config"]
    try:
        resolve_code(code, port=config.port)
    except CastlinkError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)

    options = CaptureOptions(
        video=config.capture.video,
        audio=config.capture.audio and not no_audio,
        framerate=config.capture.framerate,
        video_size=config.capture.video_size,
    )

    try:
        exit_code = asyncio.run(_run_cast(config, code, pin, options))
    except KeyboardInterrupt:
        exit_code = 0
    if exit_code:
        raise SystemExit(exit_code)


async def _prompt(text: str, hide_input: bool = False) -> str:
    """Ask the operator without blocking the event loop.

    The prompt runs in a daemon thread so Ctrl+C never waits for Enter.
    """
    loop = asyncio.get_running_loop()
    future: asyncio.Future[str] = loop.create_future()

    def ask() -> None:
        try:
            outcome = (click.prompt(text, hide_input=hide_input), None)
        except Exception as e:
            outcome = (None, e)
        try:
            loop.call_soon_threadsafe(_set_outcome, future, *outcome)
        except RuntimeError:
            # Event loop already closed
            return

    threading.Thread(target=ask, name="castlink-prompt", daemon=True).start()
    return await future


def _set_outcome(future: asyncio.Future, result: str | None, error: Exception | None) -> None:
    if future.done():
        return
    if error is not None:
        future.set_exception(error)
    else:
        future.set_result(result)


async def _submit_pin(controller) -> None:
    try:
        await controller.authenticate(await _prompt("PIN", hide_input=True))
    except CastlinkError as e:
        click.echo(f"Error: {e}", err=True)


async def _start_casting(controller, options: CaptureOptions) -> bool:
    try:
        await controller.start_casting(options)
    except CastlinkError as e:
        click.echo(f"Error: {e}", err=True)
        return False
    return True


async def _run_cast(config: Config, code: str, pin: str | None, options: CaptureOptions) -> int:
    """Drive one SessionController from the terminal.

    Events are handled after they were queued, possibly after a prompt, so
    each one is checked against the controller's state at handling time.
    A DISCONNECTED event carries whether a retry was scheduled when it fired.
    """
    from castlink.controller import SessionController, SessionStatus

    controller = SessionController(config)
    events: asyncio.Queue[tuple[str, object]] = asyncio.Queue()
    controller.on_state_changed(
        lambda state: events.put_nowait(("state", (state, controller.channel.reconnect_pending)))
    )
    controller.on_auth_failed(lambda error: events.put_nowait(("auth_failed", error)))
    controller.on_media_lost(lambda reason: events.put_nowait(("media_lost", reason)))

    try:
        try:
            await controller.connect(code, credential=pin)
        except CastlinkError as e:
            click.echo(f"Error: {e}", err=True)
            return 1

        while True:
            kind, value = await events.get()

            if kind == "auth_failed":
                click.echo(f"Authentication failed: {value.reason}", err=True)
                if controller.state is SessionState.AWAITING_AUTH:
                    await _submit_pin(controller)
                continue

            if kind == "media_lost":
                click.echo(f"Connection lost: {value}", err=True)
                if await _prompt("Restart casting? [y/n]") not in ("y", "Y", "yes"):
                    return 0
                # Before re-authentication the AUTHENTICATED event starts casting
                if controller.state is SessionState.AUTHENTICATED and not controller.negotiator.is_active:
                    if not await _start_casting(controller, options):
                        return 1
                continue

            state, reconnect_pending = value
            click.echo(SessionStatus(state, controller.status.error).text)
            if state is not controller.state:
                continue

            if state is SessionState.AWAITING_AUTH and controller.auth.state is AuthState.UNAUTHENTICATED:
                await _submit_pin(controller)
            elif state is SessionState.AUTHENTICATED and not controller.negotiator.is_active:
                if not await _start_casting(controller, options):
                    return 1
            elif state is SessionState.DISCONNECTED and not reconnect_pending:
                return 1
    finally:
        await controller.shutdown()
