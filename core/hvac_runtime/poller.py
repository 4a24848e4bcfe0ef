"""
Stale Device Poller

Push delivery is lossy. Devices that have not reported within the stale
threshold are read through the device-list API and fed to the engine as
synthetic readings, so session ends are not missed indefinitely.
"""

import asyncio
import logging
import uuid
from datetime import timedelta

from .engine import RuntimeEngine
from .exceptions import MalformedEvent
from .normalizer import device_id_from_name, reading_from_device_resource
from .sdm_client import SdmClient

logger = logging.getLogger(__name__)


class StaleDevicePoller:
    """Periodic poll of devices that went quiet."""

    def __init__(
        self,
        engine: RuntimeEngine,
        client: SdmClient,
        interval_seconds: float = 300,
        stale_after_seconds: float = 1200,
    ):
        self.engine = engine
        self.client = client
        self.interval_seconds = interval_seconds
        self.stale_after = timedelta(seconds=stale_after_seconds)
        self._task: asyncio.Task | None = None
        self._running = False

    async def start(self):
        if self._running:
            logger.warning("Stale device poller already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            f"Stale device poller started (every {self.interval_seconds:.0f}s, "
            f"stale after {self.stale_after.total_seconds() / 60:.0f} min)"
        )

    async def stop(self):
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self.client.close()
        logger.info("Stale device poller stopped")

    async def _run_loop(self):
        while self._running:
            try:
                await self.poll_once()
            except Exception as e:
                logger.error(f"Error in stale device poll: {e}", exc_info=True)
            await asyncio.sleep(self.interval_seconds)

    async def poll_once(self, all_devices: bool = False) -> int:
        """Poll stale devices (or every device) once.

        Returns:
            Number of synthetic readings submitted

        Raises:
            VendorApiError: If the device list cannot be fetched
        """
        now = self.engine.now()
        stale = set(self.engine.stale_devices(now, self.stale_after))
        if not stale and not all_devices:
            logger.debug("All devices are up to date, no polling needed")
            return 0

        devices = await asyncio.to_thread(self.client.list_devices)

        submitted = 0
        for device in devices:
            name = device.get("name") if isinstance(device, dict) else None
            if not name:
                continue
            device_id = device_id_from_name(name)
            if not all_devices and device_id not in stale:
                continue
            state = self.engine.machine.get_state(device_id)
            try:
                reading = reading_from_device_resource(
                    device,
                    now,
                    user_id=state.user_id if state else None,
                    source_event_id=f"poll-{uuid.uuid4().hex[:12]}"
                )
            except MalformedEvent as e:
                logger.warning(f"Skipping polled device {name}: {e}")
                continue
            self.engine.submit(reading)
            submitted += 1

        logger.info(f"Polled {submitted} device(s) ({len(stale)} stale)")
        return submitted
