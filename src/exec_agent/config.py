"""Runtime configuration for the execution agent."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from exec_agent.agent.models import TaskType

BACKEND_KINDS = ("sqlite", "rest")


@dataclass(slots=True)
class BackendSettings:
    """Backend gateway settings."""

    kind: str = "sqlite"
    rest_url: str = ""
    api_key: str = ""
    schema: str = "agents"
    request_timeout_seconds: float = 30.0
    busy_timeout_ms: int = 5_000
    feed_interval_seconds: float = 1.0


@dataclass(slots=True)
class DestinationSettings:
    """Identity of this agent in the backend."""

    destination_id: str = "local-destination"
    organization_id: str = "default_org"
    name: str = field(default_factory=socket.gethostname)
    allowed_task_types: tuple[str, ...] = ()


@dataclass(slots=True)
class DetectionSettings:
    """Push and poll detection channel settings."""

    push_enabled: bool = True
    poll_interval_seconds: float = 15.0
    poll_batch_limit: int = 10
    reconnect_initial_seconds: float = 1.0
    reconnect_max_seconds: float = 60.0
    seen_ttl_seconds: float = 15.0


@dataclass(slots=True)
class ExecutionSettings:
    """Local process execution settings."""

    max_concurrent_items: int = 0
    bootstrap_seconds: float = 2.0
    close_grace_seconds: float = 1.0
    auto_continue_delay_seconds: float = 15.0
    echo_output: bool = True
    max_output_chars: int = 65_536
    batch_max_items: int = 100
    terminal_app: str = ""
    terminal_command: str = ""
    keep_terminal_open: bool = False


@dataclass(slots=True)
class ScheduleSettings:
    """Recurring schedule and heartbeat settings."""

    enabled: bool = True
    check_interval_seconds: float = 30.0
    heartbeat_interval_seconds: float = 60.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".exec_agent.db")
    backend: BackendSettings = field(default_factory=BackendSettings)
    destination: DestinationSettings = field(default_factory=DestinationSettings)
    detection: DetectionSettings = field(default_factory=DetectionSettings)
    execution: ExecutionSettings = field(default_factory=ExecutionSettings)
    schedule: ScheduleSettings = field(default_factory=ScheduleSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("EXEC_AGENT_DB_PATH", ".exec_agent.db")),
            backend=BackendSettings(
                kind=os.getenv("EXEC_AGENT_BACKEND", "sqlite").strip().lower(),
                rest_url=os.getenv("EXEC_AGENT_REST_URL", "").strip(),
                api_key=os.getenv("EXEC_AGENT_API_KEY", ""),
                schema=os.getenv("EXEC_AGENT_REST_SCHEMA", "agents"),
                request_timeout_seconds=float(
                    os.getenv("EXEC_AGENT_REQUEST_TIMEOUT_SECONDS", "30.0"),
                ),
                busy_timeout_ms=int(os.getenv("EXEC_AGENT_SQLITE_BUSY_TIMEOUT_MS", "5000")),
                feed_interval_seconds=float(
                    os.getenv("EXEC_AGENT_FEED_INTERVAL_SECONDS", "1.0"),
                ),
            ),
            destination=DestinationSettings(
                destination_id=os.getenv("EXEC_AGENT_DESTINATION_ID", "local-destination"),
                organization_id=os.getenv("EXEC_AGENT_ORGANIZATION_ID", "default_org"),
                name=os.getenv("EXEC_AGENT_DESTINATION_NAME", "") or socket.gethostname(),
                allowed_task_types=_collect_csv("EXEC_AGENT_ALLOWED_TASK_TYPES"),
            ),
            detection=DetectionSettings(
                push_enabled=_env_bool("EXEC_AGENT_PUSH_ENABLED", default=True),
                poll_interval_seconds=float(
                    os.getenv("EXEC_AGENT_POLL_INTERVAL_SECONDS", "15.0"),
                ),
                poll_batch_limit=int(os.getenv("EXEC_AGENT_POLL_BATCH_LIMIT", "10")),
                reconnect_initial_seconds=float(
                    os.getenv("EXEC_AGENT_RECONNECT_INITIAL_SECONDS", "1.0"),
                ),
                reconnect_max_seconds=float(
                    os.getenv("EXEC_AGENT_RECONNECT_MAX_SECONDS", "60.0"),
                ),
                seen_ttl_seconds=float(os.getenv("EXEC_AGENT_SEEN_TTL_SECONDS", "15.0")),
            ),
            execution=ExecutionSettings(
                max_concurrent_items=int(os.getenv("EXEC_AGENT_MAX_CONCURRENT_ITEMS", "0")),
                bootstrap_seconds=float(os.getenv("EXEC_AGENT_BOOTSTRAP_SECONDS", "2.0")),
                close_grace_seconds=float(os.getenv("EXEC_AGENT_CLOSE_GRACE_SECONDS", "1.0")),
                auto_continue_delay_seconds=float(
                    os.getenv("EXEC_AGENT_AUTO_CONTINUE_DELAY_SECONDS", "15.0"),
                ),
                echo_output=_env_bool("EXEC_AGENT_ECHO_OUTPUT", default=True),
                max_output_chars=int(os.getenv("EXEC_AGENT_MAX_OUTPUT_CHARS", "65536")),
                batch_max_items=int(os.getenv("EXEC_AGENT_BATCH_MAX_ITEMS", "100")),
                terminal_app=os.getenv("EXEC_AGENT_TERMINAL_APP", "").strip(),
                terminal_command=os.getenv("EXEC_AGENT_TERMINAL_COMMAND", "").strip(),
                keep_terminal_open=_env_bool("EXEC_AGENT_KEEP_TERMINAL_OPEN", default=False),
            ),
            schedule=ScheduleSettings(
                enabled=_env_bool("EXEC_AGENT_SCHEDULES_ENABLED", default=True),
                check_interval_seconds=float(
                    os.getenv("EXEC_AGENT_SCHEDULE_CHECK_INTERVAL_SECONDS", "30.0"),
                ),
                heartbeat_interval_seconds=float(
                    os.getenv("EXEC_AGENT_HEARTBEAT_INTERVAL_SECONDS", "60.0"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the agent cannot run with."""

        if self.backend.kind not in BACKEND_KINDS:
            raise ValueError(
                f"EXEC_AGENT_BACKEND must be one of {', '.join(BACKEND_KINDS)}: "
                f"{self.backend.kind!r}",
            )
        if self.backend.kind == "rest":
            _validate_rest_url(self.backend.rest_url)
            if not self.backend.api_key:
                raise ValueError("EXEC_AGENT_API_KEY is required for the rest backend.")
        if not self.destination.destination_id.strip():
            raise ValueError("EXEC_AGENT_DESTINATION_ID must not be empty.")
        if not self.destination.organization_id.strip():
            raise ValueError("EXEC_AGENT_ORGANIZATION_ID must not be empty.")
        known_types = {item.value for item in TaskType}
        for task_type in self.destination.allowed_task_types:
            if task_type not in known_types:
                raise ValueError(
                    f"Unknown task type in EXEC_AGENT_ALLOWED_TASK_TYPES: {task_type!r}",
                )
        if self.detection.poll_interval_seconds <= 0:
            raise ValueError("EXEC_AGENT_POLL_INTERVAL_SECONDS must be > 0.")
        if self.detection.poll_batch_limit <= 0:
            raise ValueError("EXEC_AGENT_POLL_BATCH_LIMIT must be > 0.")
        if self.detection.reconnect_initial_seconds <= 0:
            raise ValueError("EXEC_AGENT_RECONNECT_INITIAL_SECONDS must be > 0.")
        if self.detection.reconnect_max_seconds < self.detection.reconnect_initial_seconds:
            raise ValueError(
                "EXEC_AGENT_RECONNECT_MAX_SECONDS must be >= EXEC_AGENT_RECONNECT_INITIAL_SECONDS.",
            )
        if self.execution.max_concurrent_items < 0:
            raise ValueError("EXEC_AGENT_MAX_CONCURRENT_ITEMS must be >= 0.")
        if self.execution.bootstrap_seconds < 0:
            raise ValueError("EXEC_AGENT_BOOTSTRAP_SECONDS must be >= 0.")
        if self.execution.close_grace_seconds < 0:
            raise ValueError("EXEC_AGENT_CLOSE_GRACE_SECONDS must be >= 0.")
        if self.execution.max_output_chars <= 0:
            raise ValueError("EXEC_AGENT_MAX_OUTPUT_CHARS must be > 0.")
        if self.execution.batch_max_items <= 0:
            raise ValueError("EXEC_AGENT_BATCH_MAX_ITEMS must be > 0.")
        if self.execution.terminal_command and "{script}" not in self.execution.terminal_command:
            raise ValueError("EXEC_AGENT_TERMINAL_COMMAND must contain a {script} placeholder.")
        if self.schedule.check_interval_seconds <= 0:
            raise ValueError("EXEC_AGENT_SCHEDULE_CHECK_INTERVAL_SECONDS must be > 0.")
        if self.schedule.heartbeat_interval_seconds <= 0:
            raise ValueError("EXEC_AGENT_HEARTBEAT_INTERVAL_SECONDS must be > 0.")


def _collect_csv(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return ()
    values: list[str] = []
    for part in raw.split(","):
        normalized = part.strip().lower()
        if normalized and normalized not in values:
            values.append(normalized)
    return tuple(values)


def _validate_rest_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid EXEC_AGENT_REST_URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
