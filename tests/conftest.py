"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest

from exec_agent.agent.models import TaskRecord
from exec_agent.config import (
    DestinationSettings,
    DetectionSettings,
    ExecutionSettings,
    ScheduleSettings,
    Settings,
)
from exec_agent.gateway.sql_gateway import SqlGateway
from exec_agent.storage.repository import ExecutionRepository, TaskCreate

DESTINATION_ID = "dest-a"
ORGANIZATION_ID = "org-a"


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[ExecutionRepository]:
    repo = ExecutionRepository(tmp_path / "agent.db")
    repo.init_schema()
    repo.register_destination(
        destination_id=DESTINATION_ID,
        organization_id=ORGANIZATION_ID,
        name="Test destination",
    )
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def gateway(repository: ExecutionRepository) -> SqlGateway:
    return SqlGateway(repository, feed_interval_seconds=0.02)


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        db_path=tmp_path / "agent.db",
        destination=DestinationSettings(
            destination_id=DESTINATION_ID,
            organization_id=ORGANIZATION_ID,
            name="Test destination",
        ),
        detection=DetectionSettings(
            poll_interval_seconds=0.05,
            reconnect_initial_seconds=0.02,
            reconnect_max_seconds=0.1,
            seen_ttl_seconds=0.0,
        ),
        execution=ExecutionSettings(
            echo_output=False,
            bootstrap_seconds=0.5,
            close_grace_seconds=0.2,
        ),
        schedule=ScheduleSettings(check_interval_seconds=0.05, heartbeat_interval_seconds=0.05),
    )


def make_task(
    repository: ExecutionRepository,
    *,
    task_type: str = "single",
    organization_id: str = ORGANIZATION_ID,
    configuration: dict[str, Any] | None = None,
    workflow: list[dict[str, Any]] | None = None,
    name: str = "task",
) -> TaskRecord:
    return repository.create_task(
        TaskCreate(
            name=name,
            task_type=task_type,
            organization_id=organization_id,
            configuration=configuration or {"command": "echo hello"},
            workflow=workflow or [],
        ),
    )
