"""Pydantic models shared across the queue, runner, planner, stores, and API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, get_args

from pydantic import BaseModel, Field, field_validator

# Roles that own a queue partition and an executor.
AgentRole = Literal[
    "VENDOR_ONBOARDING",
    "BOOKING_MANAGER",
    "CALENDAR_SYNC",
    "PRICING",
    "MARKETING",
    "SUPPORT",
    "FINANCE",
]
# Order here is the order the runner visits roles within a tick.
TASK_ROLES: tuple[AgentRole, ...] = get_args(AgentRole)

OWNER_ROLE = "OWNER"
LEADER_ROLE = "LEADER"
FINANCE_ROLE: AgentRole = "FINANCE"
SUPPORT_ROLE: AgentRole = "SUPPORT"

IdentityRole = Literal[
    "OWNER",
    "LEADER",
    "VENDOR_ONBOARDING",
    "BOOKING_MANAGER",
    "CALENDAR_SYNC",
    "PRICING",
    "MARKETING",
    "SUPPORT",
    "FINANCE",
]
IDENTITY_ROLES: tuple[str, ...] = get_args(IdentityRole)

TaskStatus = Literal["QUEUED", "RUNNING", "DONE", "FAILED"]
TASK_STATUSES: tuple[str, ...] = get_args(TaskStatus)
AuditStatus = Literal["SUCCESS", "FAIL"]
OutcomeStatus = Literal["success", "failed"]


class Task(BaseModel):
    """One unit of work bound to exactly one role."""

    id: str
    assigned_to_role: AgentRole
    input: dict[str, Any] = Field(default_factory=dict)
    priority: int = 5
    status: TaskStatus = "QUEUED"
    retry_count: int = 0
    output: dict[str, Any] | None = None
    error: str | None = None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_by_agent_id: str | None = None

    @property
    def action(self) -> str:
        value = self.input.get("action")
        return value if isinstance(value, str) and value else "unknown"


class AgentIdentity(BaseModel):
    """Registered agent; the credential hash never leaves the process."""

    id: str
    name: str
    role: IdentityRole
    # Empty when the model is rebuilt from a serialized response.
    credential_hash: str = Field(default="", exclude=True, repr=False)
    is_active: bool = True
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


class AgentPrincipal(BaseModel):
    """Authenticated caller attached to a request."""

    id: str
    name: str
    role: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class CreatedIdentity(BaseModel):
    identity: AgentIdentity
    # Plaintext secret, returned exactly once at creation.
    api_key: str


class AuditLogEntry(BaseModel):
    id: int | None = None
    agent_id: str
    action: str
    target_type: str | None = None
    target_id: str | None = None
    request_body: dict[str, Any] | None = None
    result_body: dict[str, Any] | None = None
    status: AuditStatus
    idempotency_key: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime


class IdempotencyRecord(BaseModel):
    key: str
    agent_id: str
    result_body: dict[str, Any]
    expires_at: datetime
    created_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


class TaskSummary(BaseModel):
    """Ring-buffer entry for the notifier digest. Advisory only."""

    task_id: str
    role: str
    action: str
    status: OutcomeStatus
    timestamp: datetime
    error: str | None = None
    is_critical: bool = False


class DailyDigest(BaseModel):
    window_start: datetime
    window_end: datetime
    total: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    by_role: dict[str, int] = Field(default_factory=dict)
    critical: int = 0


class Lead(BaseModel):
    """Inbound business event to be classified into tasks."""

    type: str
    data: dict[str, Any] = Field(default_factory=dict)
    source: str = "api"
    metadata: dict[str, Any] = Field(default_factory=dict)


class PlannedTask(BaseModel):
    role: AgentRole
    priority: int = Field(default=5, ge=1, le=10)
    input: dict[str, Any]

    @field_validator("input")
    @classmethod
    def _require_action(cls, value: dict[str, Any]) -> dict[str, Any]:
        action = value.get("action")
        if not isinstance(action, str) or not action.strip():
            raise ValueError("planned task input must carry a non-empty 'action'")
        return value


class TaskPlan(BaseModel):
    """Ordered queue insertions produced for one lead."""

    tasks: list[PlannedTask] = Field(min_length=1)
    summary: str
    reasoning: str | None = None
    source: Literal["rules", "assistant"] = "rules"


class LeadIntakeResult(BaseModel):
    success: bool
    plan: TaskPlan | None = None
    task_ids: list[str] = Field(default_factory=list)
    message: str


class ExecutionResult(BaseModel):
    """Executor contract: business failures come back as ``success=False``."""

    success: bool
    data: dict[str, Any] | None = None
    error: str | None = None

    @classmethod
    def ok(cls, **data: Any) -> ExecutionResult:
        return cls(success=True, data=data)

    @classmethod
    def failed(cls, error: str) -> ExecutionResult:
        return cls(success=False, error=error)


class PolicyResult(BaseModel):
    allowed: bool
    reason: str | None = None
    requires_approval: bool = False
    # Downstream follow-ups the caller must act on (e.g. "notify_customers").
    flags: list[str] = Field(default_factory=list)


class IdempotentResult(BaseModel):
    cached: bool
    result: dict[str, Any]


class TaskOutcome(BaseModel):
    task_id: str
    role: str
    status: OutcomeStatus
    error: str | None = None


class TickSummary(BaseModel):
    tasks_processed: int = 0
    tasks_succeeded: int = 0
    tasks_failed: int = 0
    details: list[TaskOutcome] = Field(default_factory=list)
    skipped_roles: list[str] = Field(default_factory=list)
    started_at: datetime
    finished_at: datetime | None = None

    def record(self, outcome: TaskOutcome) -> None:
        self.tasks_processed += 1
        if outcome.status == "success":
            self.tasks_succeeded += 1
        else:
            self.tasks_failed += 1
        self.details.append(outcome)
