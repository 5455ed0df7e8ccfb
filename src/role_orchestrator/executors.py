"""Role executors and the static role -> executor dispatch table.

Each executor maps ``input["action"]`` to a handler with a typed input model.
Handlers return ``ExecutionResult``; business failures are ``success=False``
and never exceptions. No payment provider, mailer, or calendar fetcher is
wired in, so handlers acknowledge the request and report ``status="queued"``
or ``status="mock"`` for a human or downstream system to finish.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol
from urllib.parse import urlparse
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from role_orchestrator.errors import ConfigurationError
from role_orchestrator.models import TASK_ROLES, ExecutionResult
from role_orchestrator.policy import validate_booking_creation, validate_refund

logger = logging.getLogger(__name__)

URGENT_TICKET_KEYWORDS = ("urgent", "critical", "down", "broken", "payment", "refund")


class RoleExecutor(Protocol):
    role: str

    def execute(self, input: dict[str, Any]) -> ExecutionResult: ...


class ActionInput(BaseModel):
    """Task payloads arrive camelCased from leads; extra keys are ignored."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


@dataclass(frozen=True)
class ActionSpec:
    input_model: type[ActionInput]
    fn: Callable[[Any], ExecutionResult]


class ActionExecutor:
    role: str = ""
    label: str = "task"

    def __init__(self) -> None:
        self.actions: dict[str, ActionSpec] = self.build_actions()

    def build_actions(self) -> dict[str, ActionSpec]:
        raise NotImplementedError

    def execute(self, input: dict[str, Any]) -> ExecutionResult:
        action = input.get("action")
        spec = self.actions.get(action) if isinstance(action, str) else None
        if spec is None:
            return ExecutionResult.failed(f"Unknown {self.label} action: {action}")
        try:
            payload = spec.input_model.model_validate(input)
        except ValidationError as exc:
            return ExecutionResult.failed(f"Invalid {action} input: {_field_errors(exc)}")
        try:
            return spec.fn(payload)
        except Exception as exc:  # noqa: BLE001
            logger.exception("executor event=handler_error role=%s action=%s", self.role, action)
            return ExecutionResult.failed(str(exc) or f"{self.label.capitalize()} task failed")


def _field_errors(exc: ValidationError) -> str:
    parts = []
    for item in exc.errors():
        location = ".".join(str(part) for part in item.get("loc", ()))
        parts.append(f"{location} ({item.get('msg', 'invalid')})" if location else item.get("msg", "invalid"))
    return ", ".join(parts)


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _mock_id(prefix: str) -> str:
    return f"{prefix}-{uuid4().hex[:12]}"


Identifier = str | int


# -- vendor onboarding --------------------------------------------------------


class CreateVendorInput(ActionInput):
    email: str = Field(min_length=3)
    full_name: str = Field(min_length=1)
    business_name: str = Field(min_length=1)
    business_type: str = Field(min_length=1)
    categories_allowed: list[str] | None = None


class VendorRefInput(ActionInput):
    vendor_id: Identifier
    message: str | None = None


class VendorOnboardingExecutor(ActionExecutor):
    role = "VENDOR_ONBOARDING"
    label = "vendor onboarding"

    def build_actions(self) -> dict[str, ActionSpec]:
        return {
            "create_vendor": ActionSpec(CreateVendorInput, self.create_vendor),
            "approve_vendor": ActionSpec(VendorRefInput, self.approve_vendor),
            "send_welcome": ActionSpec(VendorRefInput, self.send_welcome),
        }

    def create_vendor(self, payload: CreateVendorInput) -> ExecutionResult:
        return ExecutionResult.ok(
            vendorId=_mock_id("vendor"),
            email=payload.email,
            businessName=payload.business_name,
            businessType=payload.business_type,
            categoriesAllowed=payload.categories_allowed or [],
            status="pending_approval",
        )

    def approve_vendor(self, payload: VendorRefInput) -> ExecutionResult:
        return ExecutionResult.ok(vendorId=payload.vendor_id, status="approved", approvedAt=_now_iso())

    def send_welcome(self, payload: VendorRefInput) -> ExecutionResult:
        message = payload.message or "Your vendor account has been created. Start adding your services!"
        return ExecutionResult.ok(vendorId=payload.vendor_id, notificationQueued=True, message=message)


# -- booking manager ----------------------------------------------------------


class CreateBookingInput(ActionInput):
    user_id: Identifier
    service_id: Identifier
    customer_name: str = Field(min_length=1)
    customer_email: str = Field(min_length=3)
    start_date: str
    end_date: str
    total_price: float = Field(gt=0)
    commission: float | None = None
    notes: str | None = None
    service_available: bool | None = None
    conflicting_bookings: int | None = None


class BookingRefInput(ActionInput):
    booking_id: Identifier
    reason: str | None = None


class AvailabilityInput(ActionInput):
    service_id: Identifier
    start_date: str
    end_date: str


class BookingManagerExecutor(ActionExecutor):
    role = "BOOKING_MANAGER"
    label = "booking"

    def build_actions(self) -> dict[str, ActionSpec]:
        return {
            "create_booking": ActionSpec(CreateBookingInput, self.create_booking),
            "confirm_booking": ActionSpec(BookingRefInput, self.confirm_booking),
            "cancel_booking": ActionSpec(BookingRefInput, self.cancel_booking),
            "check_availability": ActionSpec(AvailabilityInput, self.check_availability),
        }

    def create_booking(self, payload: CreateBookingInput) -> ExecutionResult:
        verdict = validate_booking_creation(
            start_date=payload.start_date,
            end_date=payload.end_date,
            service_available=payload.service_available,
            conflicting_bookings=payload.conflicting_bookings,
        )
        if not verdict.allowed:
            return ExecutionResult.failed(verdict.reason or "Booking rejected")
        commission = payload.commission if payload.commission is not None else round(payload.total_price * 0.1, 2)
        return ExecutionResult.ok(
            bookingId=_mock_id("booking"),
            status="pending",
            customerName=payload.customer_name,
            customerEmail=payload.customer_email,
            startDate=payload.start_date,
            endDate=payload.end_date,
            totalPrice=payload.total_price,
            commission=commission,
        )

    def confirm_booking(self, payload: BookingRefInput) -> ExecutionResult:
        return ExecutionResult.ok(bookingId=payload.booking_id, status="confirmed")

    def cancel_booking(self, payload: BookingRefInput) -> ExecutionResult:
        return ExecutionResult.ok(
            bookingId=payload.booking_id,
            status="cancelled",
            reason=payload.reason or "No reason provided",
        )

    def check_availability(self, payload: AvailabilityInput) -> ExecutionResult:
        verdict = validate_booking_creation(start_date=payload.start_date, end_date=payload.end_date)
        if not verdict.allowed:
            return ExecutionResult.failed(verdict.reason or "Invalid date range")
        # No calendar backend: availability is reported optimistically.
        return ExecutionResult.ok(
            serviceId=payload.service_id,
            startDate=payload.start_date,
            endDate=payload.end_date,
            available=True,
            conflictingBookings=0,
        )


# -- calendar sync ------------------------------------------------------------


class CalendarSourceInput(ActionInput):
    user_id: Identifier
    name: str = Field(min_length=1)
    url: str = Field(min_length=1)
    type: str = Field(min_length=1)
    service_id: Identifier | None = None


class CalendarSyncInput(ActionInput):
    calendar_source_id: Identifier


class CalendarUrlInput(ActionInput):
    url: str = Field(min_length=1)


class CalendarSyncExecutor(ActionExecutor):
    role = "CALENDAR_SYNC"
    label = "calendar"

    def build_actions(self) -> dict[str, ActionSpec]:
        return {
            "add_source": ActionSpec(CalendarSourceInput, self.add_source),
            "sync_calendar": ActionSpec(CalendarSyncInput, self.sync_calendar),
            "validate_url": ActionSpec(CalendarUrlInput, self.validate_url),
        }

    def add_source(self, payload: CalendarSourceInput) -> ExecutionResult:
        if not _is_http_url(payload.url):
            return ExecutionResult.failed(f"Invalid calendar URL: {payload.url}")
        return ExecutionResult.ok(
            calendarSourceId=_mock_id("calendar"),
            name=payload.name,
            type=payload.type,
            url=payload.url,
        )

    def sync_calendar(self, payload: CalendarSyncInput) -> ExecutionResult:
        return ExecutionResult.ok(
            calendarSourceId=payload.calendar_source_id,
            status="queued",
            requestedAt=_now_iso(),
        )

    def validate_url(self, payload: CalendarUrlInput) -> ExecutionResult:
        parsed = urlparse(payload.url)
        if not parsed.scheme or not parsed.netloc:
            return ExecutionResult.failed("Invalid URL format")
        return ExecutionResult.ok(url=payload.url, valid=_is_http_url(payload.url), protocol=f"{parsed.scheme}:")


def _is_http_url(url: str) -> bool:
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


# -- pricing ------------------------------------------------------------------


class UpdatePriceInput(ActionInput):
    service_id: Identifier
    base_price: float


class ValidatePriceInput(ActionInput):
    base_price: float
    min_price: float | None = None
    max_price: float | None = None


class PriceChangeInput(ActionInput):
    service_id: Identifier
    old_price: float
    new_price: float
    reason: str | None = None


class PricingExecutor(ActionExecutor):
    role = "PRICING"
    label = "pricing"

    def build_actions(self) -> dict[str, ActionSpec]:
        return {
            "update_price": ActionSpec(UpdatePriceInput, self.update_price),
            "validate_price": ActionSpec(ValidatePriceInput, self.validate_price),
            "log_change": ActionSpec(PriceChangeInput, self.log_change),
        }

    def update_price(self, payload: UpdatePriceInput) -> ExecutionResult:
        if payload.base_price <= 0:
            return ExecutionResult.failed("Base price must be positive")
        return ExecutionResult.ok(serviceId=payload.service_id, basePrice=payload.base_price, status="queued")

    def validate_price(self, payload: ValidatePriceInput) -> ExecutionResult:
        problems: list[str] = []
        if payload.base_price <= 0:
            problems.append("Price must be positive")
        if payload.min_price is not None and payload.base_price < payload.min_price:
            problems.append(f"Price {payload.base_price} is below minimum {payload.min_price}")
        if payload.max_price is not None and payload.base_price > payload.max_price:
            problems.append(f"Price {payload.base_price} exceeds maximum {payload.max_price}")
        if problems:
            return ExecutionResult.failed(", ".join(problems))
        return ExecutionResult.ok(basePrice=payload.base_price, valid=True)

    def log_change(self, payload: PriceChangeInput) -> ExecutionResult:
        logger.info(
            "executor event=price_change service_id=%s old=%s new=%s",
            payload.service_id,
            payload.old_price,
            payload.new_price,
        )
        return ExecutionResult.ok(
            serviceId=payload.service_id,
            oldPrice=payload.old_price,
            newPrice=payload.new_price,
            reason=payload.reason or "N/A",
            loggedAt=_now_iso(),
        )


# -- marketing ----------------------------------------------------------------


class CampaignInput(ActionInput):
    title: str = Field(min_length=1)
    type: str = Field(min_length=1)
    message: str = Field(min_length=1)
    target_audience: str | None = None


class ContentInput(ActionInput):
    service_description: str = Field(min_length=1)
    content_type: str = Field(min_length=1)
    target_audience: str | None = None
    tone: str | None = None


class CampaignRefInput(ActionInput):
    campaign_id: Identifier


class MarketingExecutor(ActionExecutor):
    role = "MARKETING"
    label = "marketing"

    def build_actions(self) -> dict[str, ActionSpec]:
        return {
            "create_campaign": ActionSpec(CampaignInput, self.create_campaign),
            "generate_content": ActionSpec(ContentInput, self.generate_content),
            "launch_campaign": ActionSpec(CampaignRefInput, self.launch_campaign),
        }

    def create_campaign(self, payload: CampaignInput) -> ExecutionResult:
        return ExecutionResult.ok(
            campaignId=_mock_id("CAM"),
            title=payload.title,
            type=payload.type,
            status="draft",
            targetAudience=payload.target_audience or "all",
            createdAt=_now_iso(),
        )

    def generate_content(self, payload: ContentInput) -> ExecutionResult:
        return ExecutionResult.ok(
            content=f"[Mock {payload.content_type} content for: {payload.service_description}]",
            contentType=payload.content_type,
            status="mock",
        )

    def launch_campaign(self, payload: CampaignRefInput) -> ExecutionResult:
        return ExecutionResult.ok(campaignId=payload.campaign_id, status="launched", launchedAt=_now_iso())


# -- support ------------------------------------------------------------------


class TicketInput(ActionInput):
    subject: str = Field(min_length=1)
    message: str = Field(min_length=1)
    priority: str | None = None
    user_id: Identifier | None = None


class TicketUpdateInput(ActionInput):
    ticket_id: Identifier
    status: str | None = None
    response: str | None = None


class TicketPriorityInput(ActionInput):
    ticket_id: Identifier
    priority: str | None = None
    keywords: str | None = None


class SupportExecutor(ActionExecutor):
    role = "SUPPORT"
    label = "support"

    def build_actions(self) -> dict[str, ActionSpec]:
        return {
            "create_ticket": ActionSpec(TicketInput, self.create_ticket),
            "update_ticket": ActionSpec(TicketUpdateInput, self.update_ticket),
            "assign_priority": ActionSpec(TicketPriorityInput, self.assign_priority),
        }

    def create_ticket(self, payload: TicketInput) -> ExecutionResult:
        return ExecutionResult.ok(
            ticketId=_mock_id("ticket"),
            subject=payload.subject,
            priority=(payload.priority or "medium").lower(),
            status="open",
            createdAt=_now_iso(),
        )

    def update_ticket(self, payload: TicketUpdateInput) -> ExecutionResult:
        return ExecutionResult.ok(
            ticketId=payload.ticket_id,
            status=payload.status or "updated",
            updatedAt=_now_iso(),
        )

    def assign_priority(self, payload: TicketPriorityInput) -> ExecutionResult:
        assigned = payload.priority or "medium"
        if payload.keywords and any(word in payload.keywords.lower() for word in URGENT_TICKET_KEYWORDS):
            assigned = "high"
        return ExecutionResult.ok(ticketId=payload.ticket_id, priority=assigned, assignedAt=_now_iso())


# -- finance ------------------------------------------------------------------


class CheckoutInput(ActionInput):
    booking_id: Identifier
    amount: float = Field(gt=0)
    customer_email: str = Field(min_length=3)
    currency: str = "USD"


class RefundInput(ActionInput):
    booking_id: Identifier
    amount: float = Field(gt=0)
    reason: str | None = None
    booking_status: str | None = None
    original_amount: float | None = None


class PaymentCheckInput(ActionInput):
    session_id: str | None = None
    payment_intent_id: str | None = None


class FinanceExecutor(ActionExecutor):
    role = "FINANCE"
    label = "finance"

    def build_actions(self) -> dict[str, ActionSpec]:
        return {
            "create_checkout": ActionSpec(CheckoutInput, self.create_checkout),
            "process_refund": ActionSpec(RefundInput, self.process_refund),
            "verify_payment": ActionSpec(PaymentCheckInput, self.verify_payment),
        }

    def create_checkout(self, payload: CheckoutInput) -> ExecutionResult:
        return ExecutionResult.ok(
            sessionId=_mock_id("mock-session"),
            bookingId=payload.booking_id,
            amount=payload.amount,
            currency=payload.currency.upper(),
            status="mock",
            warning="Payment provider not configured. Returning mock checkout session.",
        )

    def process_refund(self, payload: RefundInput) -> ExecutionResult:
        if payload.booking_status is not None:
            verdict = validate_refund(
                booking_status=payload.booking_status,
                amount=payload.amount,
                original_amount=payload.original_amount,
            )
            if not verdict.allowed:
                return ExecutionResult.failed(verdict.reason or "Refund rejected")
        return ExecutionResult.ok(
            refundId=_mock_id("mock-refund"),
            bookingId=payload.booking_id,
            amount=payload.amount,
            reason=payload.reason or "N/A",
            status="mock",
            warning="Payment provider not configured. Refund logged for manual processing.",
        )

    def verify_payment(self, payload: PaymentCheckInput) -> ExecutionResult:
        if not payload.session_id and not payload.payment_intent_id:
            return ExecutionResult.failed("Missing sessionId or paymentIntentId")
        return ExecutionResult.failed("Payment provider not configured. Cannot verify payment.")


DEFAULT_EXECUTORS: tuple[type[ActionExecutor], ...] = (
    VendorOnboardingExecutor,
    BookingManagerExecutor,
    CalendarSyncExecutor,
    PricingExecutor,
    MarketingExecutor,
    SupportExecutor,
    FinanceExecutor,
)


def build_executor_registry(
    overrides: Mapping[str, RoleExecutor | None] | None = None,
) -> dict[str, RoleExecutor]:
    """Build the role -> executor table once at startup.

    ``overrides`` replaces entries; mapping a role to ``None`` removes it, which
    leaves that role to be failed by the runner as a configuration error.
    """
    registry: dict[str, RoleExecutor] = {cls.role: cls() for cls in DEFAULT_EXECUTORS}
    for role, executor in (overrides or {}).items():
        if role not in TASK_ROLES:
            raise ConfigurationError(f"Executor registered for unknown role: {role}")
        if executor is None:
            registry.pop(role, None)
        else:
            registry[role] = executor

    missing = [role for role in TASK_ROLES if role not in registry]
    if missing:
        logger.warning("executor event=registry_incomplete missing=%s", ",".join(missing))
    return registry
