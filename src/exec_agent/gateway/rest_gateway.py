"""Backend gateway for a PostgREST (Supabase-compatible) API."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from datetime import datetime
from typing import Any

import httpx

from exec_agent.agent.models import (
    DestinationStatus,
    ExecutionStatus,
    ScheduleRecord,
    TaskRecord,
    TaskStatus,
    WorkItem,
    WorkItemCreate,
)
from exec_agent.gateway.base import (
    CHANGE_INSERT,
    CHANGE_UPDATE,
    ChangeEvent,
    ChangeFilter,
    GatewayError,
    WorkItemQuery,
)
from exec_agent.storage.common import from_iso, utc_now

logger = logging.getLogger(__name__)

EXECUTIONS = "executions"
TASKS = "tasks"
SCHEDULES = "schedules"
DESTINATIONS = "agent_destinations"
HEARTBEATS = "destination_heartbeats"

RETURN_REPRESENTATION = "return=representation"
KNOWN_STATUSES = frozenset(status.value for status in ExecutionStatus)


class RestGateway:
    """Talk to the backend tables through PostgREST filters over httpx.

    The conditional claim is a filtered ``PATCH``; PostgREST returns the
    updated rows, so an empty representation means another destination won.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        base_url: str,
        api_key: str,
        schema: str = "agents",
        access_token: str | None = None,
        timeout_seconds: float = 30.0,
        feed_interval_seconds: float = 1.0,
        feed_batch_size: int = 100,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {
            "apikey": api_key,
            "Authorization": f"Bearer {access_token or api_key}",
            "Accept-Profile": schema,
            "Content-Profile": schema,
        }
        self._client = httpx.AsyncClient(
            base_url=f"{base_url.rstrip('/')}/rest/v1",
            headers=headers,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            transport=transport,
        )
        self._feed_interval_seconds = feed_interval_seconds
        self._feed_batch_size = feed_batch_size

    async def claim_work_item(
        self,
        *,
        item_id: str,
        destination_id: str,
        claimed_at: datetime,
    ) -> WorkItem | None:
        rows = await self._request(
            "PATCH",
            EXECUTIONS,
            params={
                "id": f"eq.{item_id}",
                "status": f"eq.{ExecutionStatus.PENDING.value}",
                "claimed_at": "is.null",
                "or": f"(destination_id.is.null,destination_id.eq.{destination_id})",
            },
            json={
                "status": ExecutionStatus.CLAIMED.value,
                "destination_id": destination_id,
                "claimed_at": claimed_at.isoformat(),
                "updated_at": utc_now().isoformat(),
            },
            prefer=RETURN_REPRESENTATION,
        )
        return _to_work_item(rows[0]) if rows else None

    async def list_work_items(self, query: WorkItemQuery) -> list[WorkItem]:
        base: dict[str, str] = {
            "order": "queued_at.asc",
            "limit": str(query.limit),
        }
        if query.status is not None:
            base["status"] = f"eq.{query.status.value}"
        if query.unclaimed_only:
            base["claimed_at"] = "is.null"

        requests: list[dict[str, str]] = []
        if query.destination_id is not None:
            requests.append({**base, "destination_id": f"eq.{query.destination_id}"})
        if query.unassigned:
            requests.append({**base, "destination_id": "is.null"})
        if not requests:
            requests.append(dict(base))

        items: dict[str, WorkItem] = {}
        for params in requests:
            if query.organization_id is not None:
                params["select"] = "*,tasks!inner(organization_id)"
                params["tasks.organization_id"] = f"eq.{query.organization_id}"
            for row in await self._request("GET", EXECUTIONS, params=params):
                if not _has_known_status(row):
                    continue
                item = _to_work_item(row)
                items.setdefault(item.item_id, item)
        ordered = sorted(items.values(), key=lambda item: (item.queued_at or utc_now(), item.item_id))
        return ordered[: query.limit]

    async def subscribe(self, change_filter: ChangeFilter) -> AsyncIterator[ChangeEvent]:
        cursor = utc_now().isoformat()
        destination_id = change_filter.destination_id
        while True:
            rows = await self._request(
                "GET",
                EXECUTIONS,
                params={
                    "updated_at": f"gt.{cursor}",
                    "or": (
                        f"(destination_id.eq.{destination_id},"
                        f"and(destination_id.is.null,status.eq.{ExecutionStatus.PENDING.value}))"
                    ),
                    "order": "updated_at.asc",
                    "limit": str(self._feed_batch_size),
                },
            )
            for row in rows:
                cursor = str(row.get("updated_at") or cursor)
                if not _has_known_status(row):
                    continue
                item = _to_work_item(row)
                if not change_filter.matches(item):
                    continue
                kind = CHANGE_INSERT if row.get("queued_at") == row.get("updated_at") else CHANGE_UPDATE
                yield ChangeEvent(kind=kind, item=item)
            if len(rows) < self._feed_batch_size:
                await asyncio.sleep(self._feed_interval_seconds)

    async def get_work_item(self, item_id: str) -> WorkItem | None:
        rows = await self._request("GET", EXECUTIONS, params={"id": f"eq.{item_id}"})
        return _to_work_item(rows[0]) if rows else None

    async def update_work_item(
        self,
        item_id: str,
        patch: dict[str, Any],
        *,
        destination_id: str,
    ) -> bool:
        body = {key: _to_json_value(value) for key, value in patch.items()}
        body["updated_at"] = utc_now().isoformat()
        rows = await self._request(
            "PATCH",
            EXECUTIONS,
            params={"id": f"eq.{item_id}", "destination_id": f"eq.{destination_id}"},
            json=body,
            prefer=RETURN_REPRESENTATION,
        )
        return bool(rows)

    async def insert_work_item(self, payload: WorkItemCreate) -> WorkItem:
        now = utc_now().isoformat()
        body: dict[str, Any] = {
            "task_id": payload.task_id,
            "destination_id": payload.destination_id,
            "status": ExecutionStatus.PENDING.value,
            "input_params": payload.input_params,
            "trigger": payload.trigger,
            "trigger_source": payload.trigger_source,
            "schedule_id": payload.schedule_id,
            "queued_at": now,
            "updated_at": now,
        }
        if payload.item_id is not None:
            body["id"] = payload.item_id
        rows = await self._request(
            "POST",
            EXECUTIONS,
            json=body,
            prefer=RETURN_REPRESENTATION,
        )
        if not rows:
            raise GatewayError("Backend returned no row for inserted execution", transient=False)
        return _to_work_item(rows[0])

    async def get_task(self, task_id: str) -> TaskRecord | None:
        rows = await self._request("GET", TASKS, params={"id": f"eq.{task_id}"})
        if not rows:
            return None
        row = rows[0]
        return TaskRecord(
            task_id=str(row["id"]),
            organization_id=str(row.get("organization_id") or ""),
            name=str(row.get("name") or ""),
            task_type=str(row.get("task_type") or ""),
            status=str(row.get("status") or TaskStatus.ACTIVE.value),
            configuration=row.get("configuration") or {},
            workflow=row.get("workflow") or [],
        )

    async def list_due_schedules(
        self,
        *,
        organization_id: str,
        now: datetime,
    ) -> list[ScheduleRecord]:
        rows = await self._request(
            "GET",
            SCHEDULES,
            params={
                "select": "*,tasks!inner(id,organization_id,status)",
                "is_enabled": "eq.true",
                "tasks.organization_id": f"eq.{organization_id}",
                "tasks.status": f"eq.{TaskStatus.ACTIVE.value}",
                "next_run_at": f"lte.{now.isoformat()}",
                "schedule_type": "neq.manual",
                "order": "next_run_at.asc",
            },
        )
        return [_to_schedule_record(row) for row in rows]

    async def advance_schedule(
        self,
        *,
        schedule_id: str,
        expected_next_run_at: datetime | None,
        next_run_at: datetime | None,
        is_enabled: bool,
        last_run_at: datetime,
        run_count: int,
    ) -> bool:
        params = {"id": f"eq.{schedule_id}"}
        params["next_run_at"] = (
            "is.null" if expected_next_run_at is None else f"eq.{expected_next_run_at.isoformat()}"
        )
        rows = await self._request(
            "PATCH",
            SCHEDULES,
            params=params,
            json={
                "next_run_at": next_run_at.isoformat() if next_run_at is not None else None,
                "is_enabled": is_enabled,
                "last_run_at": last_run_at.isoformat(),
                "run_count": run_count,
                "updated_at": utc_now().isoformat(),
            },
            prefer=RETURN_REPRESENTATION,
        )
        return bool(rows)

    async def set_destination_status(
        self,
        destination_id: str,
        status: DestinationStatus,
    ) -> None:
        now = utc_now().isoformat()
        await self._request(
            "PATCH",
            DESTINATIONS,
            params={"id": f"eq.{destination_id}"},
            json={"status": status.value, "last_heartbeat_at": now, "updated_at": now},
        )

    async def insert_heartbeat(
        self,
        *,
        destination_id: str,
        status: DestinationStatus,
        active_tasks: int,
        queued_tasks: int,
    ) -> None:
        await self._request(
            "POST",
            HEARTBEATS,
            json={
                "destination_id": destination_id,
                "status": status.value,
                "active_tasks": active_tasks,
                "queued_tasks": queued_tasks,
            },
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        table: str,
        *,
        params: dict[str, str] | None = None,
        json: dict[str, Any] | None = None,
        prefer: str | None = None,
    ) -> list[dict[str, Any]]:
        headers = {"Prefer": prefer} if prefer else None
        try:
            response = await self._client.request(
                method,
                f"/{table}",
                params=params,
                json=json,
                headers=headers,
            )
        except httpx.TimeoutException as error:
            raise GatewayError(f"Timeout calling {method} {table}", transient=True) from error
        except httpx.HTTPError as error:
            raise GatewayError(f"HTTP error calling {method} {table}: {error}", transient=True) from error

        if response.status_code >= 400:
            transient = response.status_code >= 500 or response.status_code == 429
            logger.debug(
                "Backend %s %s failed with HTTP %s: %s",
                method,
                table,
                response.status_code,
                response.text,
            )
            raise GatewayError(
                f"{method} {table} failed with HTTP {response.status_code}",
                transient=transient,
            )
        if not response.content:
            return []
        payload = response.json()
        if isinstance(payload, dict):
            return [payload]
        return payload


def _to_json_value(value: Any) -> Any:
    if isinstance(value, ExecutionStatus):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _has_known_status(row: dict[str, Any]) -> bool:
    if row.get("status") in KNOWN_STATUSES:
        return True
    logger.debug("Ignoring execution %s with status %r", row.get("id"), row.get("status"))
    return False


def _parse_optional_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    return from_iso(str(value))


def _to_work_item(row: dict[str, Any]) -> WorkItem:
    return WorkItem(
        item_id=str(row["id"]),
        task_id=str(row["task_id"]),
        status=ExecutionStatus(row["status"]),
        destination_id=row.get("destination_id"),
        claimed_at=_parse_optional_datetime(row.get("claimed_at")),
        input_params=row.get("input_params") or {},
        output_result=row.get("output_result"),
        error_message=row.get("error_message"),
        trigger=row.get("trigger") or "manual",
        trigger_source=row.get("trigger_source"),
        schedule_id=row.get("schedule_id"),
        queued_at=_parse_optional_datetime(row.get("queued_at")),
        started_at=_parse_optional_datetime(row.get("started_at")),
        completed_at=_parse_optional_datetime(row.get("completed_at")),
        updated_at=_parse_optional_datetime(row.get("updated_at")),
        duration_ms=row.get("duration_ms"),
    )


def _to_schedule_record(row: dict[str, Any]) -> ScheduleRecord:
    return ScheduleRecord(
        schedule_id=str(row["id"]),
        task_id=str(row["task_id"]),
        schedule_type=str(row.get("schedule_type") or "interval"),
        is_enabled=bool(row.get("is_enabled", True)),
        next_run_at=_parse_optional_datetime(row.get("next_run_at")),
        interval_seconds=row.get("interval_seconds"),
        cron_expression=row.get("cron_expression"),
        last_run_at=_parse_optional_datetime(row.get("last_run_at")),
        run_count=int(row.get("run_count") or 0),
        input_params=row.get("input_params") or {},
    )
