"""Canonical device model: identities, state snapshots and write intents.

Vendor APIs report temperatures in Fahrenheit; everything exposed to callers
is in Celsius.  The conversions are exact floating-point arithmetic with no
rounding.
"""

from __future__ import annotations

import colorsys
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Union

from envibridge._constants import DEVICE_NAMESPACE


def f_to_c(fahrenheit: float) -> float:
    """Fahrenheit to Celsius."""
    return (fahrenheit - 32) * 5 / 9


def c_to_f(celsius: float) -> float:
    """Celsius to Fahrenheit."""
    return celsius * 9 / 5 + 32


@dataclass(frozen=True)
class DeviceIdentity:
    """A device as listed by the account's device directory."""

    external_id: str
    """Serial number (Envi) or barcode (purifier); stable across accounts."""

    vendor_id: int
    """Numeric id used in the vendor's URLs."""

    name: str
    backend: str = "envi"

    @property
    def local_id(self) -> str:
        """Deterministic identifier used to match a device across restarts."""
        return str(uuid.uuid5(DEVICE_NAMESPACE, f"{self.backend}:{self.external_id}"))


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RGB:
    r: int = 255
    g: int = 255
    b: int = 255

    def hue_saturation(self) -> tuple[float, float]:
        """Hue (0-360) and saturation (0-100) of this colour."""
        h, _l, s = colorsys.rgb_to_hls(self.r / 255, self.g / 255, self.b / 255)
        return h * 360, s * 100


@dataclass(frozen=True)
class NightLight:
    on: bool = False
    auto: bool = False
    brightness: int = 0
    color: RGB = field(default_factory=RGB)


@dataclass(frozen=True)
class EnviSnapshot:
    """State of an Envi panel heater."""

    power_on: bool
    ambient_temperature_f: float | None
    target_temperature_f: float | None
    temperature_unit: str
    current_mode: int | None = None
    device_status: int | None = None
    child_lock: bool | None = None
    night_light: NightLight = field(default_factory=NightLight)
    raw: Mapping[str, object] = field(default_factory=dict, compare=False)
    fetched_at: float = field(default_factory=time.time, compare=False)

    @property
    def ambient_temperature(self) -> float | None:
        """Room temperature in Celsius."""
        if self.ambient_temperature_f is None:
            return None
        return f_to_c(self.ambient_temperature_f)

    @property
    def target_temperature(self) -> float | None:
        """Setpoint in Celsius."""
        if self.target_temperature_f is None:
            return None
        return f_to_c(self.target_temperature_f)


@dataclass(frozen=True)
class PurifierSnapshot:
    """State of a purifier-cloud air purifier."""

    power_on: bool
    fan_mode: str | None
    child_lock: bool | None
    ambient_temperature_f: float | None = None
    temperature_unit: str = "C"
    air_quality: int | None = None
    filter_life: int | None = None
    raw: Mapping[str, object] = field(default_factory=dict, compare=False)
    fetched_at: float = field(default_factory=time.time, compare=False)

    @property
    def ambient_temperature(self) -> float | None:
        if self.ambient_temperature_f is None:
            return None
        return f_to_c(self.ambient_temperature_f)


Snapshot = Union[EnviSnapshot, PurifierSnapshot]


# ---------------------------------------------------------------------------
# Intents
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SetPower:
    on: bool


@dataclass(frozen=True)
class SetTargetTemperature:
    celsius: float

    @property
    def fahrenheit(self) -> float:
        return c_to_f(self.celsius)


@dataclass(frozen=True)
class SetSetting:
    """Toggle a boolean sub-setting such as ``child_lock``."""

    name: str
    value: bool


@dataclass(frozen=True)
class SetFanMode:
    mode: str


Intent = Union[SetPower, SetTargetTemperature, SetSetting, SetFanMode]


def describe_intent(intent: Intent) -> str:
    """Short human-readable form of *intent* for logs and CLI output."""
    if isinstance(intent, SetPower):
        return f"power {'on' if intent.on else 'off'}"
    if isinstance(intent, SetTargetTemperature):
        return f"target temperature {intent.celsius:g}°C"
    if isinstance(intent, SetSetting):
        return f"{intent.name} {'on' if intent.value else 'off'}"
    return f"fan mode {intent.mode}"
