"""FastAPI app entrypoint for role-orchestrator."""

from __future__ import annotations

import logging
from collections.abc import Callable
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from role_orchestrator.config import Settings, get_settings
from role_orchestrator.errors import (
    ApprovalRequired,
    InvalidRequest,
    NotFoundError,
    OrchestratorError,
    PermissionDenied,
    TickInProgress,
)
from role_orchestrator.executors import RoleExecutor
from role_orchestrator.identity import require_roles
from role_orchestrator.llm import LLMAdapter
from role_orchestrator.logging_config import configure_logging
from role_orchestrator.models import (
    FINANCE_ROLE,
    LEADER_ROLE,
    AgentIdentity,
    AgentPrincipal,
    AgentRole,
    AuditLogEntry,
    CreatedIdentity,
    IdentityRole,
    Lead,
    LeadIntakeResult,
    Task,
    TickSummary,
)
from role_orchestrator.notifier import NotificationChannel
from role_orchestrator.planner import lead_from_chat_message
from role_orchestrator.policy import check_permission, enforce_permission, validate_refund
from role_orchestrator.runtime import Runtime, build_runtime
from role_orchestrator.storage import OrchestratorStore

logger = logging.getLogger(__name__)

AGENT_KEY_HEADER = "x-agent-key"
IDEMPOTENCY_HEADER = "idempotency-key"
TELEGRAM_SECRET_HEADER = "x-telegram-bot-api-secret-token"


class LeadRequest(BaseModel):
    type: str = Field(min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)
    source: str = "api"
    metadata: dict[str, Any] = Field(default_factory=dict)


class CreateTaskToolRequest(BaseModel):
    role: AgentRole
    input: dict[str, Any]
    priority: int = Field(default=5, ge=1, le=10)


class RefundToolRequest(BaseModel):
    booking_id: str | int
    amount: float = Field(gt=0)
    booking_status: str
    original_amount: float | None = None
    reason: str | None = None


class CreateIdentityRequest(BaseModel):
    name: str = Field(min_length=1)
    role: IdentityRole
    metadata: dict[str, Any] = Field(default_factory=dict)


class UpdateIdentityRequest(BaseModel):
    name: str | None = None
    role: IdentityRole | None = None
    is_active: bool | None = None
    metadata: dict[str, Any] | None = None


class ToolResponse(BaseModel):
    success: bool = True
    cached: bool
    data: dict[str, Any]


def _ensure_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    store_override: OrchestratorStore | None,
    executors: dict[str, RoleExecutor | None] | None,
    notification_channel: NotificationChannel | None,
    llm_adapter: LLMAdapter | None,
) -> Runtime:
    if not hasattr(app.state, "runtime"):
        app.state.runtime = build_runtime(
            settings,
            store=store_override,
            executors=executors,
            notification_channel=notification_channel,
            llm_adapter=llm_adapter,
        )
    return app.state.runtime


def create_app(
    *,
    store: OrchestratorStore | None = None,
    settings_override: Settings | None = None,
    executors: dict[str, RoleExecutor | None] | None = None,
    notification_channel: NotificationChannel | None = None,
    llm_adapter: LLMAdapter | None = None,
) -> FastAPI:
    settings = settings_override or get_settings()
    configure_logging(settings.log_level)

    def ensure(app: FastAPI) -> Runtime:
        return _ensure_runtime_state(
            app,
            settings=settings,
            store_override=store,
            executors=executors,
            notification_channel=notification_channel,
            llm_adapter=llm_adapter,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        runtime = ensure(app)
        if settings.runner_enabled:
            runtime.background.start()
        try:
            yield
        finally:
            runtime.background.stop()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)

    # Keep test paths reliable when lifespan is not executed by the client.
    if store is not None:
        ensure(app)

    def _runtime(request: Request) -> Runtime:
        return ensure(request.app)

    def _authenticate(request: Request) -> AgentPrincipal:
        secret = request.headers.get(AGENT_KEY_HEADER)
        if not secret:
            authorization = request.headers.get("authorization", "")
            scheme, _, token = authorization.partition(" ")
            if scheme.lower() == "bearer":
                secret = token.strip()
        return _runtime(request).identities.authenticate(secret)

    def _authorize(principal: AgentPrincipal, action: str) -> None:
        enforce_permission(
            principal.role,
            action,
            require_owner_approval=settings.require_owner_approval,
        )

    def _authorize_tool(
        runtime: Runtime,
        principal: AgentPrincipal,
        action: str,
        request_body: dict[str, Any],
        *,
        target_data: dict[str, Any] | None = None,
    ) -> None:
        verdict = check_permission(
            principal.role,
            action,
            target_data,
            require_owner_approval=settings.require_owner_approval,
        )
        if verdict.allowed:
            return
        message = verdict.reason or f"Action {action} is not permitted"
        runtime.audit.log_failure(
            principal.id,
            action,
            message,
            request_body=request_body,
            metadata={"requires_approval": verdict.requires_approval, "role": principal.role},
        )
        if verdict.requires_approval:
            raise ApprovalRequired(message, details={"action": action})
        raise PermissionDenied(message, details={"action": action})

    def _run_tool(
        request: Request,
        runtime: Runtime,
        principal: AgentPrincipal,
        action: str,
        request_body: dict[str, Any],
        fn: Callable[[], dict[str, Any]],
    ) -> ToolResponse:
        key = request.headers.get(IDEMPOTENCY_HEADER)

        def execute() -> dict[str, Any]:
            result = fn()
            runtime.audit.log_success(
                principal.id,
                action,
                target_type="task",
                target_id=result.get("taskId"),
                request_body=request_body,
                result_body=result,
                idempotency_key=key,
            )
            return result

        outcome = runtime.idempotency.handle(principal.id, key, execute)
        return ToolResponse(cached=outcome.cached, data=outcome.result)

    @app.exception_handler(OrchestratorError)
    async def orchestrator_error_handler(request: Request, exc: OrchestratorError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.to_payload()},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        fields = ", ".join(".".join(str(part) for part in err["loc"]) for err in exc.errors())
        return JSONResponse(
            status_code=422,
            content={
                "success": False,
                "error": {"kind": "invalid_request", "message": f"Invalid request fields: {fields}"},
            },
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": {"kind": "invalid_request", "message": str(exc)}},
        )

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("api event=unhandled_error path=%s", request.url.path)
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": {"kind": "internal_error", "message": "Internal server error"},
            },
        )

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    @app.post("/api/agent/leads", response_model=LeadIntakeResult)
    def submit_lead(payload: LeadRequest, request: Request) -> LeadIntakeResult:
        principal = _authenticate(request)
        runtime = _runtime(request)
        _authorize(principal, "tasks:create")
        lead = Lead(**payload.model_dump())
        return runtime.intake.handle_lead_intake(lead, created_by=principal.id)

    @app.post("/api/agent/cron/tick", response_model=TickSummary)
    def manual_tick(request: Request) -> TickSummary:
        require_roles(_authenticate(request), LEADER_ROLE)
        summary = _runtime(request).runner.try_tick()
        if summary is None:
            raise TickInProgress("A tick is already running")
        return summary

    @app.get("/api/agent/tasks", response_model=list[Task])
    def list_tasks(
        request: Request,
        status: str | None = None,
        role: str | None = None,
        limit: int | None = None,
    ) -> list[Task]:
        principal = _authenticate(request)
        runtime = _runtime(request)
        _authorize(principal, "tasks:read")
        return runtime.queue.list_tasks(status=status, role=role, limit=limit)

    @app.get("/api/agent/tasks/{task_id}", response_model=Task)
    def get_task(task_id: str, request: Request) -> Task:
        principal = _authenticate(request)
        runtime = _runtime(request)
        _authorize(principal, "tasks:read")
        task = runtime.queue.get_by_id(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found")
        return task

    @app.post("/api/agent/tasks/{task_id}/requeue", response_model=Task)
    def requeue_task(task_id: str, request: Request) -> Task:
        principal = _authenticate(request)
        runtime = _runtime(request)
        _authorize(principal, "tasks:requeue")
        task = runtime.queue.requeue(task_id)
        if task is not None:
            runtime.audit.log_success(principal.id, "tasks:requeue", target_type="task", target_id=task_id)
            return task
        current = runtime.queue.get_by_id(task_id)
        if current is None:
            raise NotFoundError(f"Task {task_id} not found")
        message = (
            f"Task {task_id} cannot be requeued "
            f"(status={current.status}, retry_count={current.retry_count}, "
            f"max_retries={runtime.queue.max_retries})"
        )
        runtime.audit.log_failure(principal.id, "tasks:requeue", message, target_type="task", target_id=task_id)
        raise InvalidRequest(message)

    @app.post("/api/agent/tools/tasks", response_model=ToolResponse)
    def create_task_tool(payload: CreateTaskToolRequest, request: Request) -> ToolResponse:
        principal = _authenticate(request)
        runtime = _runtime(request)
        body = payload.model_dump()
        _authorize_tool(runtime, principal, "tasks:create", body)

        def enqueue() -> dict[str, Any]:
            task = runtime.queue.enqueue(
                payload.role,
                payload.input,
                priority=payload.priority,
                created_by=principal.id,
            )
            return {"taskId": task.id, "role": task.assigned_to_role, "status": task.status}

        return _run_tool(request, runtime, principal, "tasks:create", body, enqueue)

    @app.post("/api/agent/tools/refunds", response_model=ToolResponse)
    def refund_tool(payload: RefundToolRequest, request: Request) -> ToolResponse:
        principal = _authenticate(request)
        runtime = _runtime(request)
        body = payload.model_dump()
        _authorize_tool(runtime, principal, "refunds:create", body)

        verdict = validate_refund(
            booking_status=payload.booking_status,
            amount=payload.amount,
            original_amount=payload.original_amount,
        )
        if not verdict.allowed:
            runtime.audit.log_failure(principal.id, "refunds:create", verdict.reason or "Refund rejected", request_body=body)
            raise InvalidRequest(verdict.reason or "Refund rejected")

        def enqueue_refund() -> dict[str, Any]:
            task = runtime.queue.enqueue(
                FINANCE_ROLE,
                {
                    "action": "process_refund",
                    "bookingId": payload.booking_id,
                    "amount": payload.amount,
                    "reason": payload.reason,
                    "bookingStatus": payload.booking_status,
                    "originalAmount": payload.original_amount,
                    "source": "api",
                },
                priority=1,
                created_by=principal.id,
            )
            return {"taskId": task.id, "role": task.assigned_to_role, "status": task.status}

        return _run_tool(request, runtime, principal, "refunds:create", body, enqueue_refund)

    @app.get("/api/agent/audit-logs", response_model=list[AuditLogEntry])
    def audit_logs(
        request: Request,
        agent_id: str | None = None,
        action: str | None = None,
        status: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[AuditLogEntry]:
        principal = _authenticate(request)
        runtime = _runtime(request)
        _authorize(principal, "audit:read")
        return runtime.audit.query(agent_id=agent_id, action=action, status=status, limit=limit, offset=offset)

    @app.post("/api/agent/identities", response_model=CreatedIdentity, status_code=201)
    def create_identity(payload: CreateIdentityRequest, request: Request) -> CreatedIdentity:
        require_roles(_authenticate(request))
        return _runtime(request).identities.create_identity(payload.name, payload.role, payload.metadata)

    @app.get("/api/agent/identities", response_model=list[AgentIdentity])
    def list_identities(request: Request, active_only: bool = False) -> list[AgentIdentity]:
        require_roles(_authenticate(request))
        return _runtime(request).identities.list_identities(active_only=active_only)

    @app.patch("/api/agent/identities/{identity_id}", response_model=AgentIdentity)
    def update_identity(identity_id: str, payload: UpdateIdentityRequest, request: Request) -> AgentIdentity:
        require_roles(_authenticate(request))
        return _runtime(request).identities.update_identity(identity_id, **payload.model_dump())

    @app.delete("/api/agent/identities/{identity_id}", response_model=AgentIdentity)
    def deactivate_identity(identity_id: str, request: Request) -> AgentIdentity:
        require_roles(_authenticate(request))
        return _runtime(request).identities.deactivate(identity_id)

    @app.get("/api/agent/reports/daily")
    def daily_report(request: Request) -> dict[str, Any]:
        require_roles(_authenticate(request), LEADER_ROLE)
        notifier = _runtime(request).notifier
        return {
            "digest": notifier.generate_daily_summary().model_dump(mode="json"),
            "text": notifier.render_daily_summary(),
        }

    @app.post("/api/agent/reports/daily/send")
    def send_daily_report(request: Request) -> dict[str, Any]:
        require_roles(_authenticate(request))
        notifier = _runtime(request).notifier
        return {"sent": notifier.send_daily_summary(), "text": notifier.render_daily_summary()}

    @app.get("/api/agent/reports/recent")
    def recent_report(request: Request, limit: int = 50) -> dict[str, Any]:
        require_roles(_authenticate(request), LEADER_ROLE)
        notifier = _runtime(request).notifier
        return {
            "tasks": [entry.model_dump(mode="json") for entry in notifier.recent_tasks(limit)],
            "stats": notifier.stats(),
        }

    @app.post("/api/telegram/webhook")
    def telegram_webhook(update: dict[str, Any], request: Request) -> JSONResponse:
        secret = settings.telegram_webhook_secret
        if secret and request.headers.get(TELEGRAM_SECRET_HEADER) != secret:
            logger.warning("telegram_webhook event=invalid_secret")
            return JSONResponse(
                status_code=401,
                content={
                    "success": False,
                    "error": {"kind": "authentication_error", "message": "Invalid secret token"},
                },
            )
        runtime = _runtime(request)
        message = update.get("edited_message") or update.get("message") or {}
        text = message.get("text")
        if not text:
            return JSONResponse({"ok": True})

        chat_id = str((message.get("chat") or {}).get("id", ""))
        try:
            if text.startswith("/"):
                reply = _command_reply(text)
            else:
                result = runtime.intake.handle_lead_intake(lead_from_chat_message(message))
                reply = _intake_reply(result)
            if chat_id and runtime.channel is not None:
                runtime.channel.send(chat_id, reply)
        except Exception as exc:  # noqa: BLE001
            # The bot API retries non-200 responses, so errors are reported in-band.
            logger.exception("telegram_webhook event=failed chat_id=%s", chat_id)
            return JSONResponse({"ok": True, "error": str(exc)})
        return JSONResponse({"ok": True})

    return app


def _intake_reply(result: LeadIntakeResult) -> str:
    if result.success:
        return (
            f"{result.message}\n\nCreated {len(result.task_ids)} task(s).\n"
            f"Task IDs: {', '.join(result.task_ids)}"
        )
    return f"Error: {result.message}"


def _command_reply(text: str) -> str:
    command = text.split(" ", 1)[0].lower()
    if command == "/start":
        return (
            "Welcome!\n\nI can help you with vendor onboarding, booking requests, "
            "calendar sync, support tickets and more.\n\nType /help for more info."
        )
    if command == "/help":
        return (
            "Bot Commands\n\n/start - Start the bot\n/help - Show this message\n"
            "/status - Check system status\n\n"
            "You can also send requests like \"Create booking for John Doe\" and "
            "they will be routed to the right agent."
        )
    if command == "/status":
        return "System Status\n\nBot: Online\nTask Queue: Active\nAgents: Ready"
    return f"Unknown command: {command}\n\nType /help for available commands."


app = create_app()
