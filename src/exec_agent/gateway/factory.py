"""Build the configured backend gateway."""

from __future__ import annotations

from exec_agent.config import Settings
from exec_agent.gateway.base import BackendGateway
from exec_agent.gateway.rest_gateway import RestGateway
from exec_agent.gateway.sql_gateway import SqlGateway
from exec_agent.storage.repository import ExecutionRepository


def build_gateway(settings: Settings) -> BackendGateway:
    """Return a gateway for ``settings.backend.kind``; SQLite schemas are migrated first."""

    backend = settings.backend
    if backend.kind == "rest":
        return RestGateway(
            base_url=backend.rest_url,
            api_key=backend.api_key,
            schema=backend.schema,
            timeout_seconds=backend.request_timeout_seconds,
            feed_interval_seconds=backend.feed_interval_seconds,
        )
    repository = ExecutionRepository(settings.db_path, busy_timeout_ms=backend.busy_timeout_ms)
    repository.init_schema()
    return SqlGateway(repository, feed_interval_seconds=backend.feed_interval_seconds)
