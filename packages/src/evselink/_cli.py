"""Command-line interface (Typer-based).

Provides :func:`build_cli` which constructs a Typer app with global
options (``--version``, ``--log-level``, ``--log-format``,
``--env-file``) and the commands ``discover``, ``status``, ``set-mode``,
``set-current`` and ``pair``.

Every command bootstraps :class:`~evselink._settings.Settings`, applies
the CLI overrides, configures logging and runs one async operation.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Coroutine
from typing import Annotated, Any, get_args

import typer
from pydantic import ValidationError

from evselink import __version__
from evselink._codec import ChargeMode
from evselink._discovery import DiscoveryEngine
from evselink._engine import (
    EngineUpdate,
    FailoverState,
    TransportEngine,
    UpdateSubscription,
)
from evselink._errors import DecodeError, EvseLinkError, user_message
from evselink._logging import configure_logging
from evselink._pairing import PairingClient
from evselink._poll import PollTransport
from evselink._push import PushTransport
from evselink._registry import Device
from evselink._settings import LoggingSettings, Settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_DEVICE_ERROR = 2
EXIT_RUNTIME_ERROR = 3

# ---------------------------------------------------------------------------
# Allowed values (extracted from LoggingSettings Literal types)
# ---------------------------------------------------------------------------

_VALID_LOG_LEVELS: tuple[str, ...] = get_args(
    LoggingSettings.model_fields["level"].annotation,
)
_VALID_LOG_FORMATS: tuple[str, ...] = get_args(
    LoggingSettings.model_fields["format"].annotation,
)

_SETTLED = frozenset(
    {FailoverState.POLL_ACTIVE, FailoverState.PUSH_ACTIVE, FailoverState.DISCONNECTED},
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro: Coroutine[Any, Any, None]) -> None:
    """Run *coro*, translating failures into exit codes."""
    try:
        with contextlib.suppress(KeyboardInterrupt):
            asyncio.run(coro)
    except (SystemExit, typer.Exit):
        raise
    except EvseLinkError as exc:
        typer.echo(user_message(exc), err=True)
        raise typer.Exit(EXIT_DEVICE_ERROR) from exc
    except Exception as exc:
        logger.error("Runtime error: %s", exc)
        raise typer.Exit(EXIT_RUNTIME_ERROR) from exc


def _settings(ctx: typer.Context) -> Settings:
    settings: Settings = ctx.obj
    return settings


def _render(update: EngineUpdate, *, as_json: bool) -> str:
    if as_json:
        return json.dumps(
            {
                "serial": update.serial,
                "state": update.state.value,
                "transport": update.status.active_transport.value,
                "push_session_live": update.status.push_session_live,
                "last_error": update.status.last_error,
                "snapshot": update.snapshot.to_dict(),
            },
        )
    lines = [
        f"state:     {update.state.value}",
        f"transport: {update.status.active_transport.value}",
    ]
    if update.status.last_error:
        lines.append(f"error:     {update.status.last_error}")
    lines.extend(
        f"{key}: {value}"
        for key, value in update.snapshot.to_dict().items()
        if value is not None
    )
    return "\n".join(lines)


async def _resolve_device(
    poll: PollTransport,
    settings: Settings,
    address: str,
    serial: str | None,
    credential: str | None,
) -> Device:
    if serial is None:
        found = await poll.probe(address, settings.poll.request_timeout)
        serial = found.serial if found is not None else address
    return Device(serial=serial, address=address, credential=credential)


def _engine(settings: Settings, poll: PollTransport) -> TransportEngine:
    return TransportEngine(
        push=PushTransport(settings=settings.push, product=settings.product),
        poll=poll,
        identity=settings.identity,
        settings=settings.engine,
    )


async def _first_settled(updates: UpdateSubscription, timeout: float) -> EngineUpdate:
    """Wait for the first update in a settled state with data or an error."""
    async with asyncio.timeout(timeout):
        async for update in updates:
            if update.state in _SETTLED and (
                update.status.last_error or not update.snapshot.is_empty
            ):
                return update
    msg = "Engine update stream ended"
    raise RuntimeError(msg)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

AddressArg = Annotated[str, typer.Argument(help="Device LAN address.")]
SerialOpt = Annotated[
    str | None,
    typer.Option("--serial", help="Device serial (probed when omitted)."),
]
CredentialOpt = Annotated[
    str | None,
    typer.Option("--credential", help="Push credential from pairing.", envvar="EVSELINK_CREDENTIAL"),
]


def build_cli() -> typer.Typer:
    """Construct the ``evselink`` Typer app."""
    cli = typer.Typer(
        help=f"evselink v{__version__} - talk to charging controllers over LAN and MQTT",
        no_args_is_help=True,
    )

    @cli.callback(invoke_without_command=True)
    def main(
        ctx: typer.Context,
        version_flag: Annotated[
            bool | None,
            typer.Option(
                "--version",
                is_eager=True,
                help="Show version and exit.",
            ),
        ] = None,
        log_level: Annotated[
            str | None,
            typer.Option("--log-level", help="Override log level."),
        ] = None,
        log_format: Annotated[
            str | None,
            typer.Option("--log-format", help="Override log format."),
        ] = None,
        env_file: Annotated[
            str,
            typer.Option("--env-file", help="Path to .env file."),
        ] = ".env",
    ) -> None:
        if version_flag:
            typer.echo(f"evselink v{__version__}")
            raise typer.Exit()

        if ctx.invoked_subcommand is None:
            typer.echo(ctx.get_help())
            raise typer.Exit()

        if log_level is not None and log_level.upper() not in _VALID_LOG_LEVELS:
            raise typer.BadParameter(
                f"Invalid log level '{log_level}'. Choose from: {', '.join(_VALID_LOG_LEVELS)}",
                param_hint="'--log-level'",
            )

        if log_format is not None and log_format.lower() not in _VALID_LOG_FORMATS:
            raise typer.BadParameter(
                f"Invalid log format '{log_format}'. Choose from: {', '.join(_VALID_LOG_FORMATS)}",
                param_hint="'--log-format'",
            )

        try:
            settings = Settings(_env_file=env_file)  # type: ignore[call-arg]
        except ValidationError as exc:
            typer.echo(f"Configuration error: {exc}", err=True)
            raise typer.Exit(EXIT_CONFIG_ERROR) from exc

        if log_level is not None:
            settings.logging = settings.logging.model_copy(
                update={"level": log_level.upper()},
            )
        if log_format is not None:
            settings.logging = settings.logging.model_copy(
                update={"format": log_format.lower()},
            )

        configure_logging(settings.logging, service="evselink", version=__version__)
        ctx.obj = settings

    # -- discover -----------------------------------------------------------

    @cli.command()
    def discover(
        ctx: typer.Context,
        as_json: Annotated[bool, typer.Option("--json", help="Print JSON.")] = False,
    ) -> None:
        """Find devices on the local network."""
        settings = _settings(ctx)

        def progress(scanned: int, total: int) -> None:
            if not as_json:
                typer.echo(f"scanned {scanned}/{total}", err=True)

        async def run() -> None:
            async with PollTransport(settings=settings.poll) as poll:
                found = await DiscoveryEngine(poll=poll, settings=settings.discovery).discover(
                    progress,
                )
            if as_json:
                typer.echo(json.dumps([{"serial": d.serial, "address": d.address} for d in found]))
                return
            if not found:
                typer.echo("No devices found")
                return
            for device in found:
                typer.echo(f"{settings.product}-{device.serial}\t{device.address}")

        _run(run())

    # -- status -------------------------------------------------------------

    @cli.command()
    def status(
        ctx: typer.Context,
        address: AddressArg,
        serial: SerialOpt = None,
        credential: CredentialOpt = None,
        watch: Annotated[bool, typer.Option("--watch", help="Keep printing updates.")] = False,
        as_json: Annotated[bool, typer.Option("--json", help="Print JSON.")] = False,
    ) -> None:
        """Show the live state of one device."""
        settings = _settings(ctx)

        async def run() -> None:
            async with PollTransport(settings=settings.poll) as poll:
                device = await _resolve_device(poll, settings, address, serial, credential)
                async with _engine(settings, poll) as engine:
                    if watch:
                        with engine.subscribe() as updates:
                            await engine.select(device)
                            async for update in updates:
                                typer.echo(_render(update, as_json=as_json))
                        return
                    timeout = settings.engine.poll_interval + settings.push.connect_timeout
                    with engine.subscribe() as updates:
                        await engine.select(device)
                        update = await _first_settled(updates, timeout)
            typer.echo(_render(update, as_json=as_json))
            if update.state is FailoverState.DISCONNECTED:
                raise typer.Exit(EXIT_DEVICE_ERROR)

        _run(run())

    # -- commands -----------------------------------------------------------

    @cli.command("set-mode")
    def set_mode(
        ctx: typer.Context,
        address: AddressArg,
        mode: Annotated[str, typer.Argument(help="off, normal, solar or smart.")],
        serial: SerialOpt = None,
        credential: CredentialOpt = None,
    ) -> None:
        """Change the charging mode."""
        settings = _settings(ctx)
        try:
            charge_mode = ChargeMode.parse(mode)
        except DecodeError as exc:
            raise typer.BadParameter(str(exc), param_hint="'MODE'") from exc

        async def run() -> None:
            async with PollTransport(settings=settings.poll) as poll:
                device = await _resolve_device(poll, settings, address, serial, credential)
                async with _engine(settings, poll) as engine:
                    await engine.select(device)
                    transport = await engine.set_mode(charge_mode)
            typer.echo(f"Mode set to {charge_mode.label} via {transport.value}")

        _run(run())

    @cli.command("set-current")
    def set_current(
        ctx: typer.Context,
        address: AddressArg,
        amps: Annotated[float, typer.Argument(min=0, help="Override current in amps, 0 clears.")],
        serial: SerialOpt = None,
        credential: CredentialOpt = None,
    ) -> None:
        """Set or clear the override current."""
        settings = _settings(ctx)

        async def run() -> None:
            async with PollTransport(settings=settings.poll) as poll:
                device = await _resolve_device(poll, settings, address, serial, credential)
                async with _engine(settings, poll) as engine:
                    await engine.select(device)
                    transport = await engine.set_override_current(amps)
            typer.echo(f"Override current set to {amps:g} A via {transport.value}")

        _run(run())

    # -- pair ---------------------------------------------------------------

    @cli.command()
    def pair(
        ctx: typer.Context,
        serial: Annotated[str, typer.Argument(help="Device serial.")],
        pin: Annotated[str, typer.Argument(help="Pairing PIN shown by the device.")],
    ) -> None:
        """Exchange a pairing PIN for a push credential."""
        settings = _settings(ctx)
        if not settings.identity:
            typer.echo("Configuration error: EVSELINK_IDENTITY is not set", err=True)
            raise typer.Exit(EXIT_CONFIG_ERROR)

        async def run() -> None:
            async with PairingClient(settings=settings.pairing, product=settings.product) as client:
                credential = await client.pair(settings.identity, serial, pin)
            typer.echo(credential)

        _run(run())

    return cli


def main() -> None:
    """Console-script entry point."""
    build_cli()()
