"""Tests for envibridge.client."""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any

import aiohttp
import pytest
from aioresponses import CallbackResult, aioresponses
from yarl import URL

from envibridge._constants import ENVI_API_BASE, PURIFIER_API_BASE, PURIFIER_TOKEN_URL
from envibridge.auth import OAuthHandshakeAuthenticator
from envibridge.backends import EnviBackend, PurifierBackend
from envibridge.client import ApiResponse, Client
from envibridge.config import Config
from envibridge.credentials import Credential
from envibridge.errors import (
    AuthenticationError,
    AuthorizationFailure,
    CommunicationFailure,
    ConfigError,
    ProtocolError,
)
from envibridge.models import EnviSnapshot, SetFanMode, SetPower, SetTargetTemperature

from .conftest import ACCOUNT, ENVI_DEVICE_JSON, ENVI_STATUS_JSON, FakeAuthenticator
from .test_auth import _mock_handshake

_LIST_URL = f"{ENVI_API_BASE}/device/list"
_STATUS_URL = f"{ENVI_API_BASE}/device/42"
_PURIFIER_LIST_URL = re.compile(rf"^{re.escape(PURIFIER_API_BASE)}/v1/devices\?")


def _auth_header(m: aioresponses, method: str, url: str, index: int = 0) -> str:
    return m.requests[(method, URL(url))][index].kwargs["headers"].get("Authorization", "")


def _reject_token(token: str):
    """Response callback that answers 401 only to requests carrying *token*."""

    def callback(url: URL, **kwargs: Any) -> CallbackResult:
        if kwargs["headers"].get("Authorization") == f"Bearer {token}":
            return CallbackResult(status=401)
        return CallbackResult(payload={"data": {}})

    return callback


# ---------------------------------------------------------------------------
# ApiResponse
# ---------------------------------------------------------------------------


class TestApiResponse:
    def test_ok_range(self):
        assert ApiResponse(204, "").ok
        assert not ApiResponse(302, "").ok

    def test_json_error(self):
        with pytest.raises(ProtocolError, match="JSON"):
            ApiResponse(200, "<html>").json()

    def test_unauthenticated_variants(self):
        assert ApiResponse(401, "").is_unauthenticated
        assert ApiResponse(400, '{"message": "Unauthenticated."}').is_unauthenticated
        assert not ApiResponse(400, '{"message": "Bad temperature"}').is_unauthenticated
        assert not ApiResponse(400, "not json").is_unauthenticated
        assert not ApiResponse(403, '{"message": "Unauthenticated"}').is_unauthenticated


# ---------------------------------------------------------------------------
# Request pipeline
# ---------------------------------------------------------------------------


class TestRequestPipeline:
    async def test_attaches_bearer_token(self, envi_client, fake_auth):
        with aioresponses() as m:
            m.get(_STATUS_URL, payload={"data": {}})
            response = await envi_client.request("GET", _STATUS_URL)
            header = _auth_header(m, "GET", _STATUS_URL)

        assert response.status == 200
        assert header == "Bearer old-token"
        assert fake_auth.calls == 0

    async def test_logs_in_before_first_request(self, fake_auth):
        client = Client(EnviBackend(), fake_auth)
        try:
            with aioresponses() as m:
                m.get(_STATUS_URL, payload={"data": {}})
                await client.request("GET", _STATUS_URL)
                header = _auth_header(m, "GET", _STATUS_URL)
        finally:
            await client.close()

        assert fake_auth.calls == 1
        assert header == "Bearer token-1"

    async def test_401_reauthenticates_and_retries_once(self, envi_client, fake_auth):
        with aioresponses() as m:
            m.get(_STATUS_URL, status=401)
            m.get(_STATUS_URL, payload={"data": {"state": 1}})
            response = await envi_client.request("GET", _STATUS_URL)
            headers = [_auth_header(m, "GET", _STATUS_URL, i) for i in range(2)]

        assert response.json() == {"data": {"state": 1}}
        assert fake_auth.calls == 1
        assert headers == ["Bearer old-token", "Bearer token-1"]
        assert envi_client.credentials.get().access_token == "token-1"

    async def test_second_401_raises_without_third_attempt(self, envi_client, fake_auth):
        with aioresponses() as m:
            m.get(_STATUS_URL, status=401)
            m.get(_STATUS_URL, status=401)
            m.get(_STATUS_URL, payload={"data": {}})
            with pytest.raises(AuthorizationFailure):
                await envi_client.request("GET", _STATUS_URL)
            attempts = len(m.requests[("GET", URL(_STATUS_URL))])

        assert attempts == 2
        assert fake_auth.calls == 1

    async def test_400_unauthenticated_behaves_like_401(self, envi_client, fake_auth):
        with aioresponses() as m:
            m.get(_STATUS_URL, status=400, payload={"message": "Unauthenticated: token expired"})
            m.get(_STATUS_URL, payload={"data": {}})
            response = await envi_client.request("GET", _STATUS_URL)
            attempts = len(m.requests[("GET", URL(_STATUS_URL))])

        assert response.ok
        assert attempts == 2
        assert fake_auth.calls == 1

    async def test_repeated_400_unauthenticated_is_authorization_failure(self, envi_client):
        with aioresponses() as m:
            m.get(_STATUS_URL, status=400, payload={"message": "Unauthenticated"})
            m.get(_STATUS_URL, status=400, payload={"message": "Unauthenticated"})
            with pytest.raises(AuthorizationFailure):
                await envi_client.request("GET", _STATUS_URL)

    async def test_other_400_is_communication_failure(self, envi_client, fake_auth):
        with aioresponses() as m:
            m.get(_STATUS_URL, status=400, payload={"message": "Invalid device"})
            with pytest.raises(CommunicationFailure) as exc_info:
                await envi_client.request("GET", _STATUS_URL)

        assert exc_info.value.status == 400
        assert fake_auth.calls == 0

    async def test_server_error(self, envi_client):
        with aioresponses() as m:
            m.get(_STATUS_URL, status=500)
            with pytest.raises(CommunicationFailure) as exc_info:
                await envi_client.request("GET", _STATUS_URL)
        assert exc_info.value.status == 500

    async def test_network_error_not_retried(self, envi_client, fake_auth):
        with aioresponses() as m:
            m.get(_STATUS_URL, exception=aiohttp.ClientConnectionError("refused"))
            m.get(_STATUS_URL, payload={"data": {}})
            with pytest.raises(CommunicationFailure) as exc_info:
                await envi_client.request("GET", _STATUS_URL)
            attempts = len(m.requests[("GET", URL(_STATUS_URL))])

        assert exc_info.value.status is None
        assert attempts == 1
        assert fake_auth.calls == 0

    async def test_timeout_is_communication_failure(self, envi_client):
        with aioresponses() as m:
            m.get(_STATUS_URL, exception=asyncio.TimeoutError())
            with pytest.raises(CommunicationFailure):
                await envi_client.request("GET", _STATUS_URL)

    async def test_reauthentication_failure_propagates(self):
        auth = FakeAuthenticator(error=AuthenticationError("locked out"))
        client = Client(EnviBackend(), auth, credential=Credential("old-token"))
        try:
            with aioresponses() as m:
                m.get(_STATUS_URL, status=401)
                with pytest.raises(AuthenticationError, match="locked out"):
                    await client.request("GET", _STATUS_URL)
        finally:
            await client.close()

    async def test_concurrent_expiry_triggers_one_login(self):
        auth = FakeAuthenticator(delay=0.05)
        client = Client(EnviBackend(), auth, credential=Credential("expired"))
        try:
            with aioresponses() as m:
                m.get(_STATUS_URL, callback=_reject_token("expired"), repeat=True)
                responses = await asyncio.gather(
                    *(client.request("GET", _STATUS_URL) for _ in range(8))
                )
                headers = [
                    call.kwargs["headers"]["Authorization"]
                    for call in m.requests[("GET", URL(_STATUS_URL))]
                ]
        finally:
            await client.close()

        assert all(r.ok for r in responses)
        assert auth.calls == 1
        assert set(headers) <= {"Bearer expired", "Bearer token-1"}
        assert headers.count("Bearer token-1") == 8

    async def test_late_401_from_old_token_does_not_relogin(self, envi_client, fake_auth):
        envi_client.credentials.replace(Credential("fresh"))
        stale = Credential("stale")
        envi_client.credentials.invalidate(stale)

        with aioresponses() as m:
            m.get(_STATUS_URL, payload={"data": {}})
            await envi_client.request("GET", _STATUS_URL)
            header = _auth_header(m, "GET", _STATUS_URL)

        assert header == "Bearer fresh"
        assert fake_auth.calls == 0


# ---------------------------------------------------------------------------
# Device directory
# ---------------------------------------------------------------------------


def _purifier_item(n: int) -> dict[str, Any]:
    return {"deviceId": n, "barcode": f"PUR-{n:04d}", "nickname": f"Purifier {n}"}


class TestListDevices:
    async def test_envi_devices(self, envi_client):
        with aioresponses() as m:
            m.get(_LIST_URL, payload={"data": [ENVI_DEVICE_JSON]})
            devices = await envi_client.list_devices()

        assert len(devices) == 1
        dev = devices[0]
        assert dev.external_id == "ENV-0001"
        assert dev.vendor_id == 42
        assert dev.name == "Bedroom heater"
        assert envi_client.devices == devices

    async def test_purifier_single_page(self, purifier_client, caplog):
        with aioresponses() as m:
            m.get(
                _PURIFIER_LIST_URL,
                payload={"data": {"devices": [_purifier_item(1)], "totalPages": 1}},
            )
            with caplog.at_level(logging.WARNING, logger="envibridge.client"):
                devices = await purifier_client.list_devices()

        assert [d.external_id for d in devices] == ["PUR-0001"]
        assert "pages" not in caplog.text

    async def test_more_pages_warns_and_returns_first_page(self, purifier_client, caplog):
        with aioresponses() as m:
            m.get(
                _PURIFIER_LIST_URL,
                payload={
                    "data": {"devices": [_purifier_item(1), _purifier_item(2)], "totalPages": 2}
                },
            )
            with caplog.at_level(logging.WARNING, logger="envibridge.client"):
                devices = await purifier_client.list_devices()
            list_calls = [k for k in m.requests if k[0] == "GET"]

        assert [d.vendor_id for d in devices] == [1, 2]
        assert "2 pages" in caplog.text
        assert len(list_calls) == 1
        assert list_calls[0][1].query["page"] == "0"

    async def test_null_device_id(self, envi_client):
        with aioresponses() as m:
            m.get(_LIST_URL, payload={"data": [{"id": None, "serial_no": "X"}]})
            with pytest.raises(ProtocolError):
                await envi_client.list_devices()

    async def test_malformed_list(self, envi_client):
        with aioresponses() as m:
            m.get(_LIST_URL, payload={"devices": []})
            with pytest.raises(ProtocolError):
                await envi_client.list_devices()


class TestDeviceLookup:
    async def test_by_index_and_ids(self, envi_client):
        with aioresponses() as m:
            m.get(_LIST_URL, payload={"data": [ENVI_DEVICE_JSON]})
            await envi_client.list_devices()

        dev = envi_client.device(0)
        assert envi_client.device("ENV-0001") is dev
        assert envi_client.device(dev.local_id) is dev

    async def test_empty_list(self, envi_client):
        with pytest.raises(IndexError, match="list_devices"):
            envi_client.device(0)

    async def test_unknown_key(self, envi_client):
        with aioresponses() as m:
            m.get(_LIST_URL, payload={"data": [ENVI_DEVICE_JSON]})
            await envi_client.list_devices()
        with pytest.raises(KeyError):
            envi_client.device("nope")
        with pytest.raises(IndexError):
            envi_client.device(3)


# ---------------------------------------------------------------------------
# State and commands
# ---------------------------------------------------------------------------


class TestFetchState:
    async def test_envi_snapshot(self, envi_client, envi_device):
        with aioresponses() as m:
            m.get(_STATUS_URL, payload={"data": ENVI_STATUS_JSON})
            snapshot = await envi_client.fetch_state(envi_device)

        assert isinstance(snapshot, EnviSnapshot)
        assert snapshot.power_on is True
        assert snapshot.ambient_temperature == pytest.approx(20.0)
        assert snapshot.target_temperature == pytest.approx((72 - 32) * 5 / 9)

    async def test_null_colour_channel(self, envi_client, envi_device):
        status = {
            **ENVI_STATUS_JSON,
            "night_light_setting": {"on": True, "color": {"r": None, "g": 0, "b": 0}},
        }
        with aioresponses() as m:
            m.get(_STATUS_URL, payload={"data": status})
            with pytest.raises(ProtocolError):
                await envi_client.fetch_state(envi_device)


class TestSetState:
    async def test_patch_then_refetch(self, envi_client, envi_device):
        write_url = f"{ENVI_API_BASE}/device/update-temperature/42"
        with aioresponses() as m:
            m.patch(write_url, payload={"data": {"ok": True}})
            m.get(_STATUS_URL, payload={"data": {**ENVI_STATUS_JSON, "state": 1}})
            snapshot = await envi_client.set_state(envi_device, SetPower(True))
            patch_call = m.requests[("PATCH", URL(write_url))][0]
            get_calls = m.requests[("GET", URL(_STATUS_URL))]
            order = [k[0] for k in m.requests]

        assert patch_call.kwargs["json"] == {"state": 1}
        assert len(get_calls) == 1
        assert order == ["PATCH", "GET"]
        assert snapshot.power_on is True

    async def test_temperature_sent_in_fahrenheit(self, envi_client, envi_device):
        write_url = f"{ENVI_API_BASE}/device/update-temperature/42"
        with aioresponses() as m:
            m.patch(write_url, payload={"data": {}})
            m.get(_STATUS_URL, payload={"data": ENVI_STATUS_JSON})
            await envi_client.set_state(envi_device, SetTargetTemperature(21.5))
            body = m.requests[("PATCH", URL(write_url))][0].kwargs["json"]

        assert body == {"temperature": pytest.approx(70.7)}

    async def test_unsupported_intent_sends_nothing(self, envi_client, envi_device):
        with aioresponses() as m:
            with pytest.raises(ValueError, match="do not support"):
                await envi_client.set_state(envi_device, SetFanMode("turbo"))
            assert not m.requests

    async def test_write_failure_skips_refetch(self, envi_client, envi_device):
        write_url = f"{ENVI_API_BASE}/device/update-temperature/42"
        with aioresponses() as m:
            m.patch(write_url, status=500)
            with pytest.raises(CommunicationFailure):
                await envi_client.set_state(envi_device, SetPower(False))
            assert ("GET", URL(_STATUS_URL)) not in m.requests


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


class TestFromConfig:
    def test_envi(self):
        client = Client.from_config(Config(username="u", password="p"))
        assert isinstance(client.backend, EnviBackend)

    def test_purifier(self):
        client = Client.from_config(
            Config(username="u", password="p", backend="purifier", use_refresh_token=True)
        )
        assert isinstance(client.backend, PurifierBackend)
        assert isinstance(client._authenticator, OAuthHandshakeAuthenticator)

    def test_missing_credentials(self):
        with pytest.raises(ConfigError, match="password"):
            Client.from_config(Config(username="u"))

    def test_unknown_backend(self):
        with pytest.raises(ValueError, match="Unknown backend"):
            Client.from_config(Config(username="u", password="p", backend="nest"))


class TestHandshakeEndToEnd:
    async def test_token_from_handshake_used_for_listing(self):
        backend = PurifierBackend()
        client = Client(backend, backend.create_authenticator(ACCOUNT))
        try:
            with aioresponses() as m:
                _mock_handshake(m)
                m.get(_PURIFIER_LIST_URL, payload={"data": {"devices": [], "totalPages": 1}})
                await client.list_devices()
                exchange = m.requests[("POST", URL(PURIFIER_TOKEN_URL))][0]
                list_key = next(
                    k for k in m.requests if k[0] == "GET" and "/v1/devices" in k[1].path
                )
                list_call = m.requests[list_key][0]
        finally:
            await client.close()

        assert exchange.kwargs["json"] == {"authCode": "ABC", "redirectUrl": "https://x/cb"}
        assert list_call.kwargs["headers"]["Authorization"] == "Bearer access-1"
        assert client.credentials.get().refresh_token == "refresh-1"
