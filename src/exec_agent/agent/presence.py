"""Destination online/offline status and periodic heartbeats."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from exec_agent.agent.models import DestinationStatus
from exec_agent.gateway.base import BackendGateway, GatewayError

logger = logging.getLogger(__name__)

LoadProbe = Callable[[], tuple[int, int]]


class PresenceReporter:
    """Publish this destination's availability.

    ``load`` returns ``(active, queued)`` counts. With a positive
    ``capacity`` the destination reports ``busy`` once ``active`` reaches it.
    """

    def __init__(
        self,
        gateway: BackendGateway,
        *,
        destination_id: str,
        load: LoadProbe,
        capacity: int = 0,
        interval_seconds: float = 60.0,
    ) -> None:
        self._gateway = gateway
        self._destination_id = destination_id
        self._load = load
        self._capacity = capacity
        self._interval_seconds = interval_seconds

    async def go_online(self) -> bool:
        return await self._set_status(DestinationStatus.ONLINE)

    async def go_offline(self) -> bool:
        return await self._set_status(DestinationStatus.OFFLINE)

    async def beat(self) -> DestinationStatus:
        active, queued = self._load()
        status = DestinationStatus.ONLINE
        if self._capacity > 0 and active >= self._capacity:
            status = DestinationStatus.BUSY
        await self._gateway.insert_heartbeat(
            destination_id=self._destination_id,
            status=status,
            active_tasks=active,
            queued_tasks=queued,
        )
        return status

    async def run(self) -> None:
        while True:
            try:
                await self.beat()
            except GatewayError as error:
                logger.warning("Heartbeat failed: %s", error)
            await asyncio.sleep(self._interval_seconds)

    async def _set_status(self, status: DestinationStatus) -> bool:
        try:
            await self._gateway.set_destination_status(self._destination_id, status)
        except GatewayError as error:
            logger.warning("Could not mark %s %s: %s", self._destination_id, status.value, error)
            return False
        logger.info("Destination %s is %s", self._destination_id, status.value)
        return True
