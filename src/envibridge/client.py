"""Authenticated API client for Envi heaters and purifier-cloud purifiers.

The :class:`Client` owns one HTTP session and one
:class:`~envibridge.credentials.CredentialStore` per account.  Every call
goes through :meth:`Client.request`, which attaches the bearer token and
re-authenticates once when the API rejects it::

    import asyncio
    from envibridge import Client, SetPower, load_config

    async with Client.from_config(load_config()) as client:
        devices = await client.list_devices()
        snapshot = await client.fetch_state(devices[0])
        await client.set_state(devices[0], SetPower(True))
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import TracebackType

import aiohttp

from envibridge._constants import DEFAULT_REQUEST_TIMEOUT
from envibridge.auth import Authenticator
from envibridge.backends import Backend, get_backend
from envibridge.config import Config
from envibridge.credentials import Credential, CredentialStore
from envibridge.errors import AuthorizationFailure, CommunicationFailure, ProtocolError
from envibridge.models import DeviceIdentity, Intent, Snapshot, describe_intent

_LOGGER = logging.getLogger(__name__)

_MAX_REAUTH = 1  # re-authentications per request

HTTP_BAD_REQUEST = 400
HTTP_UNAUTHORIZED = 401


@dataclass(frozen=True)
class ApiResponse:
    """A fully read HTTP response."""

    status: int
    text: str
    headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> object:
        """Decode the body; raise :class:`ProtocolError` if it is not JSON."""
        try:
            return json.loads(self.text)
        except ValueError as err:
            raise ProtocolError(f"Expected a JSON body (HTTP {self.status})") from err

    @property
    def is_unauthenticated(self) -> bool:
        """True for 401, and for the vendor's 400 ``Unauthenticated...`` variant."""
        if self.status == HTTP_UNAUTHORIZED:
            return True
        if self.status != HTTP_BAD_REQUEST:
            return False
        try:
            body = json.loads(self.text)
        except ValueError:
            return False
        message = body.get("message") if isinstance(body, Mapping) else None
        return isinstance(message, str) and message.startswith("Unauthenticated")


class Client:
    """Vendor API client for one account.

    Use :meth:`from_config` to build one from a :class:`~envibridge.config.Config`,
    and close it with :meth:`close` (or ``async with``) to release the HTTP
    session.
    """

    def __init__(
        self,
        backend: Backend,
        authenticator: Authenticator,
        *,
        session: aiohttp.ClientSession | None = None,
        credential: Credential | None = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        self.backend = backend
        self._authenticator = authenticator
        self._store = CredentialStore(authenticator.authenticate, credential)
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._devices: list[DeviceIdentity] = []

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_config(cls, config: Config) -> Client:
        """Build a client for the configured account and backend.

        Raises :class:`~envibridge.errors.ConfigError` if the username or
        password is missing.
        """
        config.validate()
        backend = get_backend(config.backend)
        authenticator = backend.create_authenticator(
            config.account,
            use_refresh_token=config.use_refresh_token,
            timeout=config.request_timeout,
        )
        return cls(backend, authenticator, timeout=config.request_timeout)

    async def __aenter__(self) -> Client:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the HTTP session if this client created it."""
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def credentials(self) -> CredentialStore:
        """The account's credential store."""
        return self._store

    @property
    def devices(self) -> list[DeviceIdentity]:
        """Devices returned by the last :meth:`list_devices` call."""
        return list(self._devices)

    # ------------------------------------------------------------------
    # Request pipeline
    # ------------------------------------------------------------------

    async def authenticate(self) -> Credential:
        """Log in now unless a credential is already held."""
        return await self._store.authenticate_if_needed()

    async def request(
        self,
        method: str,
        url: str,
        *,
        params: Mapping[str, str] | None = None,
        json: object = None,
    ) -> ApiResponse:
        """Send an authenticated request and return the read response.

        A 401 (or a 400 whose ``message`` starts with ``Unauthenticated``)
        invalidates the credential, re-authenticates and retries once.

        Raises:
            CommunicationFailure: Transport error or any other non-2xx status.
            AuthorizationFailure: Still rejected after re-authenticating.
        """
        await self._store.authenticate_if_needed()

        reauths = 0
        while True:
            credential = self._store.get()
            response = await self._send(method, url, credential, params=params, json=json)
            if not response.is_unauthenticated:
                break
            if reauths >= _MAX_REAUTH:
                raise AuthorizationFailure(
                    f"{method} {url} rejected after re-authenticating (HTTP {response.status})"
                )
            reauths += 1
            _LOGGER.warning(
                "%s %s: credential rejected (HTTP %d), re-authenticating",
                method,
                url,
                response.status,
            )
            self._store.invalidate(credential)
            await self._store.authenticate_if_needed()

        if not response.ok:
            raise CommunicationFailure(
                f"{method} {url} failed: HTTP {response.status}", status=response.status
            )
        return response

    async def _send(
        self,
        method: str,
        url: str,
        credential: Credential,
        *,
        params: Mapping[str, str] | None,
        json: object,
    ) -> ApiResponse:
        headers = {"Accept": "application/json"}
        if credential.access_token:
            headers["Authorization"] = f"Bearer {credential.access_token}"
        session = self._get_session()
        try:
            async with session.request(
                method,
                url,
                params=params,
                json=json,
                headers=headers,
                timeout=self._timeout,
            ) as resp:
                text = await resp.text()
                _LOGGER.debug("%s %s -> %d", method, url, resp.status)
                return ApiResponse(resp.status, text, dict(resp.headers))
        except (aiohttp.ClientError, TimeoutError) as err:
            raise CommunicationFailure(f"{method} {url} failed: {err}") from err

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    # ------------------------------------------------------------------
    # Device directory
    # ------------------------------------------------------------------

    async def list_devices(self) -> list[DeviceIdentity]:
        """Fetch the account's devices.

        Only the first page is requested.  If the API reports more pages a
        warning is logged and the remaining devices are not returned.
        """
        url, params = self.backend.list_request()
        response = await self.request("GET", url, params=params)
        page = self.backend.parse_device_page(response.json())
        if page.total_pages > 1:
            _LOGGER.warning(
                "Device list has %d pages; only the %d device(s) on the first page are used",
                page.total_pages,
                len(page.devices),
            )
        self._devices = page.devices
        return list(page.devices)

    def device(self, key: int | str) -> DeviceIdentity:
        """Look up a listed device by index, external id or local id.

        Raises:
            IndexError: Integer index out of range, or no devices listed yet.
            KeyError: No device matches the string key.
        """
        devs = self._devices
        if isinstance(key, int):
            if not devs:
                raise IndexError("No device list. Call list_devices() first.")
            if key < 0 or key >= len(devs):
                raise IndexError(f"Invalid index {key}. Must be 0..{len(devs) - 1}.")
            return devs[key]
        for dev in devs:
            if key in (dev.external_id, dev.local_id):
                return dev
        raise KeyError(f"No device '{key}'.")

    # ------------------------------------------------------------------
    # State and commands
    # ------------------------------------------------------------------

    async def fetch_state(self, device: DeviceIdentity) -> Snapshot:
        """Fetch the current state of *device*."""
        response = await self.request("GET", self.backend.status_url(device))
        return self.backend.parse_snapshot(response.json())

    async def send_intent(self, device: DeviceIdentity, intent: Intent) -> None:
        """Issue the write for *intent* without re-reading the state.

        Raises :class:`ValueError` before any request if the backend does not
        support *intent*.
        """
        write = self.backend.write_request(device, intent)
        _LOGGER.info("Setting %s on %s", describe_intent(intent), device.name)
        response = await self.request(write.method, write.url, json=write.body)
        _LOGGER.debug("Write response for %s: %s", device.name, response.text)

    async def set_state(self, device: DeviceIdentity, intent: Intent) -> Snapshot:
        """Apply *intent* and return the state fetched right after the write."""
        await self.send_intent(device, intent)
        return await self.fetch_state(device)
