"""Per-vendor endpoint and payload definitions.

A :class:`Backend` knows where a vendor keeps its device list, status and
write endpoints, how to turn the vendor's JSON into the canonical model, and
which authenticator logs in to it.  The HTTP mechanics live in
:class:`~envibridge.client.Client`.
"""

from __future__ import annotations

import abc
import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass

from envibridge._constants import (
    DEFAULT_REQUEST_TIMEOUT,
    ENVI_API_BASE,
    PURIFIER_API_BASE,
    PURIFIER_PAGE_SIZE,
)
from envibridge.auth import Authenticator, FormLoginAuthenticator, OAuthHandshakeAuthenticator
from envibridge.credentials import AccountCredentials
from envibridge.errors import ProtocolError
from envibridge.models import (
    RGB,
    DeviceIdentity,
    EnviSnapshot,
    Intent,
    NightLight,
    PurifierSnapshot,
    SetFanMode,
    SetPower,
    SetSetting,
    SetTargetTemperature,
    Snapshot,
)

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class DevicePage:
    """One page of the device directory."""

    devices: list[DeviceIdentity]
    total_pages: int = 1


@dataclass(frozen=True)
class WriteRequest:
    url: str
    body: dict[str, object]
    method: str = "PATCH"


def extract_data(body: object, what: str) -> object:
    """Return the ``data`` member of a ``{"data": ...}`` envelope."""
    if not isinstance(body, Mapping) or "data" not in body:
        raise ProtocolError(f"{what} response has no data envelope")
    return body["data"]


def _number(value: object) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return float(value)


def _int(value: object) -> int | None:
    number = _number(value)
    return None if number is None else int(number)


def _required_int(value: object, what: str) -> int:
    """Like :func:`_int`, but a missing or non-numeric value is a :class:`ProtocolError`."""
    if isinstance(value, str) and value.strip().isdigit():
        return int(value)
    number = _int(value)
    if number is None:
        raise ProtocolError(f"{what} is not a number: {value!r}")
    return number


def _flag(value: object) -> bool | None:
    if value is None:
        return None
    return bool(value)


class Backend(abc.ABC):
    """Endpoint layout and payload mapping for one vendor API."""

    name: str

    @abc.abstractmethod
    def create_authenticator(
        self,
        account: AccountCredentials,
        *,
        use_refresh_token: bool = False,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> Authenticator:
        """Build the authenticator for this vendor."""

    @abc.abstractmethod
    def list_request(self) -> tuple[str, dict[str, str] | None]:
        """URL and query parameters of the first device-list page."""

    @abc.abstractmethod
    def parse_device_page(self, body: object) -> DevicePage:
        """Turn a device-list response into identities."""

    @abc.abstractmethod
    def status_url(self, device: DeviceIdentity) -> str:
        """URL of the single-device status endpoint."""

    @abc.abstractmethod
    def parse_snapshot(self, body: object) -> Snapshot:
        """Turn a single-device status response into a snapshot."""

    @abc.abstractmethod
    def write_request(self, device: DeviceIdentity, intent: Intent) -> WriteRequest:
        """Serialise *intent*; raise :class:`ValueError` if it is unsupported."""


# ---------------------------------------------------------------------------
# Envi heaters
# ---------------------------------------------------------------------------


class EnviBackend(Backend):
    """Envi panel heaters (``app-apis.enviliving.com``)."""

    name = "envi"

    # Boolean sub-settings accepted by ``/device/update/settings``.
    SETTINGS: dict[str, str] = {"child_lock": "child_lock_setting"}

    def __init__(self, base_url: str = ENVI_API_BASE) -> None:
        self.base_url = base_url

    def create_authenticator(
        self,
        account: AccountCredentials,
        *,
        use_refresh_token: bool = False,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> Authenticator:
        # The Envi API issues no refresh tokens.
        return FormLoginAuthenticator(
            account, login_url=f"{self.base_url}/auth/login", timeout=timeout
        )

    def list_request(self) -> tuple[str, dict[str, str] | None]:
        return f"{self.base_url}/device/list", None

    def parse_device_page(self, body: object) -> DevicePage:
        data = extract_data(body, "Device list")
        if not isinstance(data, list):
            raise ProtocolError("Device list data is not a list")
        devices = []
        for item in data:
            if not isinstance(item, Mapping) or "id" not in item or "serial_no" not in item:
                _LOGGER.debug("Skipping malformed device entry: %s", item)
                continue
            serial = str(item["serial_no"])
            devices.append(
                DeviceIdentity(
                    external_id=serial,
                    vendor_id=_required_int(item["id"], "Device id"),
                    name=str(item.get("name") or serial),
                    backend=self.name,
                )
            )
        return DevicePage(devices)

    def status_url(self, device: DeviceIdentity) -> str:
        return f"{self.base_url}/device/{device.vendor_id}"

    def parse_snapshot(self, body: object) -> EnviSnapshot:
        data = extract_data(body, "Device status")
        if not isinstance(data, Mapping):
            raise ProtocolError("Device status data is not an object")

        light = data.get("night_light_setting")
        night_light = NightLight()
        if isinstance(light, Mapping):
            color = light.get("color")
            rgb = RGB()
            if isinstance(color, Mapping):
                rgb = RGB(
                    *(
                        _required_int(color.get(channel, 255), f"Night light {channel}")
                        for channel in ("r", "g", "b")
                    )
                )
            night_light = NightLight(
                on=bool(light.get("on", False)),
                auto=bool(light.get("auto", False)),
                brightness=_int(light.get("brightness")) or 0,
                color=rgb,
            )

        return EnviSnapshot(
            power_on=data.get("state") == 1,
            ambient_temperature_f=_number(data.get("ambient_temperature")),
            target_temperature_f=_number(data.get("current_temperature")),
            temperature_unit="F" if data.get("temperature_unit") == "F" else "C",
            current_mode=_int(data.get("current_mode")),
            device_status=_int(data.get("device_status")),
            child_lock=_flag(data.get("child_lock_setting")),
            night_light=night_light,
            raw=dict(data),
        )

    def write_request(self, device: DeviceIdentity, intent: Intent) -> WriteRequest:
        if isinstance(intent, SetPower):
            return WriteRequest(
                f"{self.base_url}/device/update-temperature/{device.vendor_id}",
                {"state": 1 if intent.on else 0},
            )
        if isinstance(intent, SetTargetTemperature):
            return WriteRequest(
                f"{self.base_url}/device/update-temperature/{device.vendor_id}",
                {"temperature": intent.fahrenheit},
            )
        if isinstance(intent, SetSetting) and intent.name in self.SETTINGS:
            return WriteRequest(
                f"{self.base_url}/device/update/settings/{device.vendor_id}",
                {self.SETTINGS[intent.name]: intent.value},
            )
        raise ValueError(f"Envi heaters do not support {intent!r}.")


# ---------------------------------------------------------------------------
# Purifier cloud
# ---------------------------------------------------------------------------


class PurifierBackend(Backend):
    """Purifier cloud with the browser-emulating OAuth login."""

    name = "purifier"

    SETTINGS: dict[str, str] = {"child_lock": "childLock"}

    def __init__(self, base_url: str = PURIFIER_API_BASE) -> None:
        self.base_url = base_url

    def create_authenticator(
        self,
        account: AccountCredentials,
        *,
        use_refresh_token: bool = False,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> Authenticator:
        return OAuthHandshakeAuthenticator(
            account,
            token_url=f"{self.base_url}/v1/auth/token",
            refresh_url=f"{self.base_url}/v1/auth/refresh",
            use_refresh_token=use_refresh_token,
            timeout=timeout,
        )

    def list_request(self) -> tuple[str, dict[str, str] | None]:
        return f"{self.base_url}/v1/devices", {"page": "0", "size": str(PURIFIER_PAGE_SIZE)}

    def parse_device_page(self, body: object) -> DevicePage:
        data = extract_data(body, "Device list")
        if not isinstance(data, Mapping) or not isinstance(data.get("devices"), list):
            raise ProtocolError("Device list data has no devices array")
        devices = []
        for item in data["devices"]:
            if not isinstance(item, Mapping) or "deviceId" not in item or "barcode" not in item:
                _LOGGER.debug("Skipping malformed device entry: %s", item)
                continue
            barcode = str(item["barcode"])
            devices.append(
                DeviceIdentity(
                    external_id=barcode,
                    vendor_id=_required_int(item["deviceId"], "Device id"),
                    name=str(item.get("nickname") or item.get("modelName") or barcode),
                    backend=self.name,
                )
            )
        total_pages = _int(data.get("totalPages"))
        return DevicePage(devices, total_pages if total_pages is not None else 1)

    def status_url(self, device: DeviceIdentity) -> str:
        return f"{self.base_url}/v1/devices/{device.vendor_id}"

    def parse_snapshot(self, body: object) -> PurifierSnapshot:
        data = extract_data(body, "Device status")
        if not isinstance(data, Mapping):
            raise ProtocolError("Device status data is not an object")
        fan_mode = data.get("fanMode")
        return PurifierSnapshot(
            power_on=bool(data.get("power", False)),
            fan_mode=str(fan_mode) if fan_mode is not None else None,
            child_lock=_flag(data.get("childLock")),
            ambient_temperature_f=_number(data.get("temperature")),
            temperature_unit="F" if data.get("temperatureUnit") == "F" else "C",
            air_quality=_int(data.get("aqi")),
            filter_life=_int(data.get("filterLife")),
            raw=dict(data),
        )

    def write_request(self, device: DeviceIdentity, intent: Intent) -> WriteRequest:
        url = f"{self.base_url}/v1/devices/{device.vendor_id}"
        if isinstance(intent, SetPower):
            return WriteRequest(url, {"power": intent.on})
        if isinstance(intent, SetFanMode):
            return WriteRequest(url, {"fanMode": intent.mode})
        if isinstance(intent, SetTargetTemperature):
            return WriteRequest(url, {"targetTemperature": intent.fahrenheit})
        if isinstance(intent, SetSetting) and intent.name in self.SETTINGS:
            return WriteRequest(url, {self.SETTINGS[intent.name]: intent.value})
        raise ValueError(f"Purifiers do not support {intent!r}.")


BACKENDS: dict[str, type[Backend]] = {
    EnviBackend.name: EnviBackend,
    PurifierBackend.name: PurifierBackend,
}


def get_backend(name: str) -> Backend:
    """Instantiate the backend registered under *name*."""
    try:
        return BACKENDS[name]()
    except KeyError:
        raise ValueError(
            f"Unknown backend '{name}'. Expected: {' | '.join(BACKENDS)}"
        ) from None
