"""Per-device background polling."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable

from envibridge._constants import DEFAULT_POLL_INTERVAL
from envibridge.client import Client
from envibridge.errors import BridgeError
from envibridge.models import DeviceIdentity, Snapshot

_LOGGER = logging.getLogger(__name__)

UpdateListener = Callable[[DeviceIdentity, Snapshot], Awaitable[None]]


class Poller:
    """Keeps the latest :class:`~envibridge.models.Snapshot` of one device.

    :meth:`start` launches a task that fetches the state immediately and then
    again *interval* seconds after each fetch finishes, so ticks never
    overlap.  A failed tick is logged and the loop carries on.  :meth:`stop`
    ends the loop; the stop signal is checked before every reschedule.
    """

    def __init__(
        self,
        client: Client,
        device: DeviceIdentity,
        *,
        interval: float = DEFAULT_POLL_INTERVAL,
        on_update: UpdateListener | None = None,
    ) -> None:
        self._client = client
        self.device = device
        self._interval = interval
        self._on_update = on_update
        self._snapshot: Snapshot | None = None
        self._fetch_lock = asyncio.Lock()
        self._stopped = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self.consecutive_failures = 0

    @property
    def snapshot(self) -> Snapshot | None:
        """Last successfully fetched state, or ``None`` before the first fetch."""
        return self._snapshot

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start polling (no-op if already running)."""
        if self.running:
            return
        self._stopped.clear()
        self._task = asyncio.create_task(
            self._run(), name=f"envibridge-poll-{self.device.external_id}"
        )

    async def stop(self) -> None:
        """Stop polling and wait for the task to finish."""
        self._stopped.set()
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await self._task
        self._task = None

    async def refresh(self) -> Snapshot:
        """Fetch the state now and replace the stored snapshot.

        Fetches are serialised, so a refresh requested after a command never
        runs alongside a scheduled tick.  Errors propagate to the caller.
        """
        async with self._fetch_lock:
            snapshot = await self._client.fetch_state(self.device)
            self._snapshot = snapshot
        if self._on_update is not None:
            try:
                await self._on_update(self.device, snapshot)
            except Exception:
                _LOGGER.exception("Update listener failed for %s", self.device.name)
        return snapshot

    async def _run(self) -> None:
        while not self._stopped.is_set():
            await self._tick()
            if self._stopped.is_set():
                break
            with contextlib.suppress(TimeoutError):
                async with asyncio.timeout(self._interval):
                    await self._stopped.wait()

    async def _tick(self) -> None:
        try:
            await self.refresh()
        except BridgeError as err:
            self.consecutive_failures += 1
            _LOGGER.warning(
                "Polling %s failed (%d in a row): %s",
                self.device.name,
                self.consecutive_failures,
                err,
            )
        except Exception:
            self.consecutive_failures += 1
            _LOGGER.exception("Unexpected error polling %s", self.device.name)
        else:
            if self.consecutive_failures:
                _LOGGER.info("Polling %s recovered", self.device.name)
            self.consecutive_failures = 0
