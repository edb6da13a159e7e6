from pathlib import Path

import allure
from sqlalchemy import inspect, text

from exec_agent.storage.alembic_runner import current_head
from exec_agent.storage.repository import ExecutionRepository

pytestmark = [
    allure.epic("Storage"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = ExecutionRepository(tmp_path / "migrations.db")
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
    assert version == current_head() == "20261019_0001"

    tables = set(inspect(repository.engine).get_table_names())
    assert {
        "destinations",
        "destination_heartbeats",
        "tasks",
        "schedules",
        "executions",
        "execution_events",
    } <= tables
    repository.close()


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    db_path = tmp_path / "twice.db"
    first = ExecutionRepository(db_path)
    first.init_schema()
    first.close()

    second = ExecutionRepository(db_path)
    second.init_schema()

    with second.engine.connect() as connection:
        versions = connection.execute(text("SELECT version_num FROM alembic_version")).all()
    assert len(versions) == 1
    second.close()
