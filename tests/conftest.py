"""Shared fixtures for envibridge tests."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from envibridge.auth import Authenticator
from envibridge.backends import EnviBackend, PurifierBackend
from envibridge.client import Client
from envibridge.credentials import AccountCredentials, Credential
from envibridge.models import DeviceIdentity, EnviSnapshot

ACCOUNT = AccountCredentials("me@example.com", "secret")

ENVI_DEVICE_JSON: dict[str, Any] = {
    "id": 42,
    "serial_no": "ENV-0001",
    "name": "Bedroom heater",
    "ambient_temperature": 63,
    "current_temperature": 72,
    "state": 1,
    "temperature_unit": "F",
}

ENVI_STATUS_JSON: dict[str, Any] = {
    "current_mode": 1,
    "current_temperature": 72,
    "device_status": 1,
    "state": 1,
    "status": 1,
    "child_lock_setting": False,
    "night_light_setting": {
        "brightness": 50,
        "auto": False,
        "on": True,
        "off": False,
        "color": {"r": 255, "g": 0, "b": 0},
    },
    "ambient_temperature": 68,
    "temperature_unit": "F",
}


class FakeAuthenticator(Authenticator):
    """Hands out ``token-1``, ``token-2``... and counts logins."""

    def __init__(self, *, delay: float = 0.0, error: Exception | None = None) -> None:
        super().__init__(ACCOUNT)
        self.calls = 0
        self.delay = delay
        self.error = error

    async def authenticate(self, previous: Credential) -> Credential:
        self.calls += 1
        await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return Credential(access_token=f"token-{self.calls}")


@pytest.fixture
def envi_device() -> DeviceIdentity:
    return DeviceIdentity("ENV-0001", 42, "Bedroom heater", "envi")


@pytest.fixture
def purifier_device() -> DeviceIdentity:
    return DeviceIdentity("PUR-BARCODE-9", 7, "Living room purifier", "purifier")


@pytest.fixture
def envi_snapshot() -> EnviSnapshot:
    return EnviBackend().parse_snapshot({"data": ENVI_STATUS_JSON})


@pytest.fixture
def fake_auth() -> FakeAuthenticator:
    return FakeAuthenticator()


@pytest.fixture
async def envi_client(fake_auth: FakeAuthenticator):
    client = Client(EnviBackend(), fake_auth, credential=Credential("old-token"))
    yield client
    await client.close()


@pytest.fixture
async def purifier_client(fake_auth: FakeAuthenticator):
    client = Client(PurifierBackend(), fake_auth, credential=Credential("old-token"))
    yield client
    await client.close()
