from __future__ import annotations

from dataclasses import dataclass

SOURCE_PLATFORMS = ("directory", "map_listings", "professional_network", "other")
SCHEDULE_TYPES = ("manual", "daily", "interval")
RUN_TRIGGERS = ("manual", "scheduled", "retry")

RUN_PENDING = "pending"
RUN_RUNNING = "running"
RUN_COMPLETED = "completed"
RUN_FAILED = "failed"
RUN_CANCELLED = "cancelled"

ACTIVE_RUN_STATUSES = (RUN_PENDING, RUN_RUNNING)
TERMINAL_RUN_STATUSES = (RUN_COMPLETED, RUN_FAILED, RUN_CANCELLED)
RUN_STATUSES = ACTIVE_RUN_STATUSES + TERMINAL_RUN_STATUSES


@dataclass(frozen=True)
class Job:
    id: str
    name: str
    source_platform: str
    schedule_type: str
    params: dict[str, object]
    is_active: bool
    rotation_config_id: str | None
    interval_minutes: int | None
    last_run_at: str | None
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class Run:
    id: str
    job_id: str
    status: str
    triggered_by: str
    run_params: dict[str, object]
    started_at: str | None
    completed_at: str | None
    duration_seconds: int | None
    contacts_found: int
    contacts_imported: int
    contacts_skipped: int
    error_message: str | None
    created_at: str

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES


@dataclass(frozen=True)
class RotationConfig:
    id: str
    name: str
    source_platform: str
    countries: list[str]
    industries: list[str]
    current_country_index: int
    current_industry_index: int
    runs_per_day: int
    is_active: bool
    version: int
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class SourceConfig:
    id: str
    source_platform: str
    fields: dict[str, str]
    is_valid: bool | None
    validation_error: str | None
    last_validated_at: str | None
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class Suggestion:
    type: str
    value: str
    reason: str
    source_platform: str
    supporting_runs: int
    contacts_imported: int


@dataclass(frozen=True)
class AuditEvent:
    id: str
    action: str
    entity_type: str
    entity_id: str | None
    actor: str
    ip_address: str | None
    details: dict[str, object]
    created_at: str
