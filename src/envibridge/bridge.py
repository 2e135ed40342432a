"""The bridge facade: discovery, per-device pollers and command routing."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from types import TracebackType

from envibridge.client import Client
from envibridge.config import Config
from envibridge.models import DeviceIdentity, Intent, Snapshot
from envibridge.poller import Poller, UpdateListener

_LOGGER = logging.getLogger(__name__)


class Bridge:
    """Keeps a fresh snapshot of every device on one account.

    Devices seen in a previous run can be handed to :meth:`restore`; they are
    matched by :attr:`~envibridge.models.DeviceIdentity.local_id` during
    :meth:`discover_devices`.  Every discovered device gets a
    :class:`~envibridge.poller.Poller` that runs until :meth:`unregister` or
    :meth:`close`.
    """

    def __init__(
        self,
        config: Config,
        *,
        client: Client | None = None,
        on_update: UpdateListener | None = None,
    ) -> None:
        self.config = config
        self._client = client
        self._on_update = on_update
        self._restored: dict[str, DeviceIdentity] = {}
        self._pollers: dict[str, Poller] = {}

    async def __aenter__(self) -> Bridge:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = Client.from_config(self.config)
        return self._client

    @property
    def devices(self) -> list[DeviceIdentity]:
        """Devices that currently have a poller."""
        return [p.device for p in self._pollers.values()]

    def restore(self, devices: Iterable[DeviceIdentity]) -> None:
        """Remember devices known from an earlier run."""
        for device in devices:
            _LOGGER.info("Loading device from cache: %s", device.name)
            self._restored[device.local_id] = device

    async def discover_devices(self) -> list[DeviceIdentity]:
        """List the account's devices and start polling each of them.

        Missing credentials are logged as errors and discovery is skipped.
        """
        missing = self.config.missing()
        if missing:
            for name in missing:
                _LOGGER.error("missing %s", name)
            return []

        devices = await self.client.list_devices()
        for device in devices:
            if device.local_id in self._restored or device.local_id in self._pollers:
                _LOGGER.info("Restoring existing device from cache: %s", device.name)
            else:
                _LOGGER.info("Adding new device: %s", device.name)
            self.register(device)
        return devices

    def register(self, device: DeviceIdentity) -> Poller:
        """Start polling *device* unless it already has a poller."""
        poller = self._pollers.get(device.local_id)
        if poller is None:
            poller = Poller(
                self.client,
                device,
                interval=self.config.poll_interval,
                on_update=self._on_update,
            )
            self._pollers[device.local_id] = poller
        poller.start()
        return poller

    async def unregister(self, device_id: str) -> None:
        """Stop polling a device and forget it."""
        poller = self._poller(device_id)
        del self._pollers[poller.device.local_id]
        self._restored.pop(poller.device.local_id, None)
        await poller.stop()
        _LOGGER.info("Removed device: %s", poller.device.name)

    def get_snapshot(self, device_id: str) -> Snapshot | None:
        """Last known state of a device, possibly up to one poll interval old."""
        return self._poller(device_id).snapshot

    async def set_state(self, device_id: str, intent: Intent) -> Snapshot:
        """Apply *intent*, then refresh the device's snapshot immediately.

        Errors are returned to the caller; nothing is retried or queued.
        """
        poller = self._poller(device_id)
        await self.client.send_intent(poller.device, intent)
        return await poller.refresh()

    async def close(self) -> None:
        """Stop every poller and close the client."""
        await asyncio.gather(*(p.stop() for p in self._pollers.values()))
        self._pollers.clear()
        if self._client is not None:
            await self._client.close()

    def _poller(self, device_id: str) -> Poller:
        poller = self._pollers.get(device_id)
        if poller is not None:
            return poller
        for candidate in self._pollers.values():
            if candidate.device.external_id == device_id:
                return candidate
        raise KeyError(f"No registered device '{device_id}'.")
