"""Write work item state transitions back to the backend."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from exec_agent.agent.models import ExecutionStatus
from exec_agent.gateway.base import BackendGateway, GatewayError
from exec_agent.storage.common import utc_now

logger = logging.getLogger(__name__)


class StatusReporter:
    """Partial updates for rows this destination owns.

    Timestamps are added here so callers only send what changed. A failed
    write is logged and reported as ``False``; the caller decides whether it
    matters.
    """

    def __init__(
        self,
        gateway: BackendGateway,
        destination_id: str,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._gateway = gateway
        self._destination_id = destination_id
        self._clock = clock
        self._started: dict[str, datetime] = {}

    async def report(
        self,
        item_id: str,
        status: ExecutionStatus,
        patch: dict[str, Any] | None = None,
    ) -> bool:
        values: dict[str, Any] = dict(patch or {})
        values["status"] = status
        now = self._clock()
        if status is ExecutionStatus.RUNNING:
            values.setdefault("started_at", now)
            self._started[item_id] = values["started_at"]
        elif status.is_terminal:
            values.setdefault("completed_at", now)
            started_at = self._started.pop(item_id, None)
            if started_at is not None and "duration_ms" not in values:
                values["duration_ms"] = max(0, int((now - started_at).total_seconds() * 1000))

        try:
            updated = await self._gateway.update_work_item(
                item_id,
                values,
                destination_id=self._destination_id,
            )
        except GatewayError as error:
            logger.error("Failed to mark %s as %s: %s", item_id, status.value, error)
            return False
        if not updated:
            logger.warning("Work item %s is no longer owned by %s", item_id, self._destination_id)
        return updated
