"""Thin CLI wrapper over :class:`envibridge.Client` and :class:`envibridge.Bridge`."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import sys
from datetime import datetime

import typer
from rich.console import Console
from rich.syntax import Syntax

from envibridge.backends import BACKENDS
from envibridge.bridge import Bridge
from envibridge.client import Client
from envibridge.config import Config, load_config, save_config
from envibridge.errors import BridgeError, ConfigError
from envibridge.models import (
    DeviceIdentity,
    EnviSnapshot,
    Intent,
    SetFanMode,
    SetPower,
    SetSetting,
    SetTargetTemperature,
    Snapshot,
    describe_intent,
)

app = typer.Typer(help="Bridge Envi heaters and purifier-cloud devices.", invoke_without_command=True)


@app.callback()
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log HTTP traffic"),
) -> None:
    """Bridge Envi heaters and purifier-cloud devices."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
        )
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit(0)


def _print_json(obj: object) -> None:
    """Print JSON, syntax-highlighted when stdout is a TTY."""
    if sys.stdout.isatty():
        Console().print(Syntax(json.dumps(obj, indent=2), "json"))
    else:
        typer.echo(json.dumps(obj))


def _ensure_config() -> Config:
    """Load the configuration or exit with an error."""
    try:
        config = load_config()
        config.validate()
    except ConfigError as e:
        typer.echo(f"{e} Run `envibridge login` first.", err=True)
        raise typer.Exit(1) from None
    return config


def _on_off(value: str) -> bool:
    lowered = value.lower()
    if lowered not in ("on", "off"):
        raise ValueError(f"Invalid value '{value}'. Expected: on | off")
    return lowered == "on"


def parse_intent(setting: str, value: str) -> Intent:
    """Turn a CLI ``SETTING VALUE`` pair into an intent."""
    if setting == "power":
        return SetPower(_on_off(value))
    if setting == "temperature":
        try:
            return SetTargetTemperature(float(value))
        except ValueError:
            raise ValueError(f"Invalid temperature '{value}'. Expected degrees Celsius.") from None
    if setting == "child-lock":
        return SetSetting("child_lock", _on_off(value))
    if setting == "fan-mode":
        return SetFanMode(value)
    raise ValueError(
        f"Unknown setting '{setting}'. Available: power, temperature, child-lock, fan-mode"
    )


def _resolve_device(client: Client, key: str | None) -> DeviceIdentity:
    if key is None:
        return client.device(0)
    if key.isdigit():
        return client.device(int(key))
    return client.device(key)


def _format_temperature(celsius: float | None) -> str:
    return "--" if celsius is None else f"{celsius:.1f}°C"


def _format_flag(value: bool | None) -> str:
    if value is None:
        return "--"
    return "ON" if value else "OFF"


def format_snapshot(snapshot: Snapshot) -> list[tuple[str, str]]:
    """Label/value rows describing *snapshot*."""
    rows = [("Power", _format_flag(snapshot.power_on))]
    rows.append(("Room temperature", _format_temperature(snapshot.ambient_temperature)))
    if isinstance(snapshot, EnviSnapshot):
        rows.append(("Target temperature", _format_temperature(snapshot.target_temperature)))
        rows.append(("Display unit", snapshot.temperature_unit))
        rows.append(("Child lock", _format_flag(snapshot.child_lock)))
        light = snapshot.night_light
        hue, saturation = light.color.hue_saturation()
        rows.append(
            (
                "Night light",
                f"{_format_flag(light.on)} {light.brightness}% "
                f"(hue {hue:.0f}, saturation {saturation:.0f}%)",
            )
        )
    else:
        rows.append(("Fan mode", snapshot.fan_mode or "--"))
        rows.append(("Child lock", _format_flag(snapshot.child_lock)))
        rows.append(("Air quality", "--" if snapshot.air_quality is None else str(snapshot.air_quality)))
        rows.append(
            ("Filter life", "--" if snapshot.filter_life is None else f"{snapshot.filter_life}%")
        )
    return rows


def _echo_snapshot(name: str, snapshot: Snapshot) -> None:
    is_tty = sys.stdout.isatty()
    typer.echo(typer.style(name, bold=True) if is_tty else name)
    for label, value in format_snapshot(snapshot):
        if is_tty:
            typer.echo(f"  {typer.style(label, fg='cyan')}: {value}")
        else:
            typer.echo(f"  {label}: {value}")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def login(
    username: str = typer.Option(..., prompt=True, help="Account username or email"),
    password: str = typer.Option(..., prompt=True, hide_input=True, help="Account password"),
    backend: str = typer.Option("envi", help=f"Vendor backend: {' | '.join(BACKENDS)}"),
) -> None:
    """Check the credentials and save them to the config file."""
    config = Config(username=username, password=password, backend=backend)
    typer.echo(f"Logging in as {username}...")
    try:
        n = asyncio.run(_login_async(config))
    except (BridgeError, ValueError) as e:
        typer.echo(f"Login failed: {e}", err=True)
        raise typer.Exit(1) from None
    path = save_config(config)
    typer.echo(f"Logged in. {n} device(s) found. Saved {path}.")


async def _login_async(config: Config) -> int:
    async with Client.from_config(config) as client:
        await client.authenticate()
        return len(await client.list_devices())


@app.command()
def devices() -> None:
    """List the account's devices."""
    config = _ensure_config()
    try:
        all_devices = asyncio.run(_devices_async(config))
    except BridgeError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(1) from None
    if not all_devices:
        typer.echo("No devices found.", err=True)
        raise typer.Exit(1)
    for i, dev in enumerate(all_devices):
        typer.echo(f"  [{i}] {dev.name} ({config.backend})")
        typer.echo(f"        ID: {dev.external_id}  local: {dev.local_id}")


async def _devices_async(config: Config) -> list[DeviceIdentity]:
    async with Client.from_config(config) as client:
        return await client.list_devices()


@app.command()
def status(
    device: str | None = typer.Argument(None, help="Device index, id or local id"),
    as_json: bool = typer.Option(False, "--json", "-j", help="Output the raw state as JSON"),
) -> None:
    """Fetch and show a device's current state."""
    config = _ensure_config()
    try:
        dev, snapshot = asyncio.run(_status_async(config, device))
    except (BridgeError, KeyError, IndexError) as e:
        typer.echo(str(e).strip("'\""), err=True)
        raise typer.Exit(1) from None
    if as_json:
        _print_json(dict(snapshot.raw))
        return
    _echo_snapshot(dev.name, snapshot)


async def _status_async(config: Config, key: str | None) -> tuple[DeviceIdentity, Snapshot]:
    async with Client.from_config(config) as client:
        await client.list_devices()
        dev = _resolve_device(client, key)
        return dev, await client.fetch_state(dev)


@app.command("set", context_settings={"help_option_names": ["-h", "--help"]})
def set_setting(
    device: str = typer.Argument(..., help="Device index, id or local id"),
    setting: str = typer.Argument(..., help="power | temperature | child-lock | fan-mode"),
    value: str = typer.Argument(..., help="on/off, degrees Celsius, or a fan mode"),
) -> None:
    """Change a device setting and show the refreshed state.

    \b
    Settings:
      power, child-lock      on | off
      temperature            target in degrees Celsius
      fan-mode               purifier fan mode (e.g. auto, sleep, turbo)
    """
    try:
        intent = parse_intent(setting, value)
    except ValueError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(1) from None

    config = _ensure_config()
    typer.echo(f"Setting {describe_intent(intent)}...")
    try:
        dev, snapshot = asyncio.run(_set_async(config, device, intent))
    except (BridgeError, ValueError, KeyError, IndexError) as e:
        typer.echo(str(e).strip("'\""), err=True)
        raise typer.Exit(1) from None
    _echo_snapshot(dev.name, snapshot)


async def _set_async(
    config: Config, key: str, intent: Intent
) -> tuple[DeviceIdentity, Snapshot]:
    async with Client.from_config(config) as client:
        await client.list_devices()
        dev = _resolve_device(client, key)
        return dev, await client.set_state(dev, intent)


@app.command()
def watch(
    updates: int = typer.Option(0, "--updates", "-n", help="Stop after N updates (0 = forever)"),
) -> None:
    """Poll every device and print each state update.

    Press Ctrl+C to stop.
    """
    config = _ensure_config()
    with contextlib.suppress(KeyboardInterrupt):
        try:
            asyncio.run(_watch_async(config, updates))
        except BridgeError as e:
            typer.echo(str(e), err=True)
            raise typer.Exit(1) from None


async def _watch_async(config: Config, limit: int) -> None:
    """Async implementation of the watch command."""
    is_tty = sys.stdout.isatty()
    done = asyncio.Event()
    seen = 0

    async def on_update(device: DeviceIdentity, snapshot: Snapshot) -> None:
        nonlocal seen
        ts = datetime.now().strftime("%H:%M:%S")
        summary = ", ".join(f"{label}: {value}" for label, value in format_snapshot(snapshot))
        if is_tty:
            typer.echo(f"[{ts}] {typer.style(device.name, bold=True)} {summary}")
        else:
            typer.echo(f"[{ts}] {device.name} {summary}")
        seen += 1
        if limit and seen >= limit:
            done.set()

    async with Bridge(config, on_update=on_update) as bridge:
        found = await bridge.discover_devices()
        if not found:
            typer.echo("No devices found.", err=True)
            return
        typer.echo(f"Watching {len(found)} device(s)... (Ctrl+C to stop)")
        await done.wait()
