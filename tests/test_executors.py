from __future__ import annotations

from typing import Any

import pytest

from role_orchestrator.errors import ConfigurationError
from role_orchestrator.executors import (
    BookingManagerExecutor,
    CalendarSyncExecutor,
    FinanceExecutor,
    MarketingExecutor,
    PricingExecutor,
    SupportExecutor,
    VendorOnboardingExecutor,
    build_executor_registry,
)
from role_orchestrator.models import TASK_ROLES, ExecutionResult


def test_registry_covers_every_role() -> None:
    registry = build_executor_registry()

    assert sorted(registry) == sorted(TASK_ROLES)
    assert all(executor.role == role for role, executor in registry.items())


def test_registry_overrides() -> None:
    class Stub:
        role = "PRICING"

        def execute(self, input: dict[str, Any]) -> ExecutionResult:
            return ExecutionResult.ok()

    stub = Stub()
    registry = build_executor_registry({"PRICING": stub, "MARKETING": None})

    assert registry["PRICING"] is stub
    assert "MARKETING" not in registry
    with pytest.raises(ConfigurationError):
        build_executor_registry({"JANITOR": stub})


@pytest.mark.parametrize(
    "executor",
    [
        VendorOnboardingExecutor(),
        BookingManagerExecutor(),
        CalendarSyncExecutor(),
        PricingExecutor(),
        MarketingExecutor(),
        SupportExecutor(),
        FinanceExecutor(),
    ],
)
def test_unknown_action_is_a_failure_not_an_exception(executor: Any) -> None:
    result = executor.execute({"action": "self_destruct"})

    assert result.success is False
    assert "self_destruct" in result.error
    assert executor.execute({}).success is False


def test_missing_fields_are_reported_by_name() -> None:
    result = SupportExecutor().execute({"action": "create_ticket", "subject": "Wifi"})

    assert result.success is False
    assert result.error.startswith("Invalid create_ticket input")
    assert "message" in result.error


def test_support_ticket_and_priority() -> None:
    support = SupportExecutor()

    ticket = support.execute({"action": "create_ticket", "subject": "Wifi", "message": "Slow", "priority": "HIGH"})
    escalated = support.execute({"action": "assign_priority", "ticketId": "t-1", "keywords": "Site is DOWN"})

    assert ticket.success is True
    assert ticket.data["priority"] == "high"
    assert ticket.data["status"] == "open"
    assert escalated.data["priority"] == "high"


def test_booking_creation_applies_date_rules() -> None:
    booking = BookingManagerExecutor()
    base = {
        "action": "create_booking",
        "userId": 1,
        "serviceId": 2,
        "customerName": "Ana",
        "customerEmail": "ana@example.com",
        "totalPrice": 200,
    }

    ok = booking.execute({**base, "startDate": "2026-07-01", "endDate": "2026-07-03"})
    backwards = booking.execute({**base, "startDate": "2026-07-03", "endDate": "2026-07-01"})
    clash = booking.execute({**base, "startDate": "2026-07-01", "endDate": "2026-07-03", "conflictingBookings": 1})

    assert ok.success is True
    assert ok.data["commission"] == 20.0
    assert ok.data["status"] == "pending"
    assert backwards.error == "End date must be after start date"
    assert clash.success is False


def test_calendar_url_checks() -> None:
    calendar = CalendarSyncExecutor()

    assert calendar.execute({"action": "validate_url", "url": "https://cal.example.com/feed.ics"}).data["valid"] is True
    assert calendar.execute({"action": "validate_url", "url": "not a url"}).success is False
    added = calendar.execute(
        {"action": "add_source", "userId": 1, "name": "Airbnb", "url": "ftp://x.example.com", "type": "ical"}
    )
    assert added.success is False


def test_pricing_bounds() -> None:
    pricing = PricingExecutor()

    assert pricing.execute({"action": "validate_price", "basePrice": 50, "minPrice": 10}).success is True
    too_high = pricing.execute({"action": "validate_price", "basePrice": 500, "maxPrice": 300})
    assert "exceeds maximum" in too_high.error
    assert pricing.execute({"action": "update_price", "serviceId": 1, "basePrice": 0}).success is False


def test_refund_respects_booking_state() -> None:
    finance = FinanceExecutor()

    mock = finance.execute({"action": "process_refund", "bookingId": 7, "amount": 50})
    pending = finance.execute(
        {"action": "process_refund", "bookingId": 7, "amount": 50, "bookingStatus": "pending"}
    )
    negative = finance.execute({"action": "process_refund", "bookingId": 7, "amount": -5})

    assert mock.success is True
    assert mock.data["status"] == "mock"
    assert pending.error == "Cannot refund booking with status: pending"
    assert negative.success is False


def test_payment_verification_is_not_configured() -> None:
    finance = FinanceExecutor()

    assert finance.execute({"action": "verify_payment"}).error == "Missing sessionId or paymentIntentId"
    assert "not configured" in finance.execute({"action": "verify_payment", "sessionId": "cs_1"}).error


def test_marketing_and_vendor_flows() -> None:
    campaign = MarketingExecutor().execute(
        {"action": "create_campaign", "title": "Summer", "type": "email", "message": "Sun!"}
    )
    vendor = VendorOnboardingExecutor().execute(
        {
            "action": "create_vendor",
            "email": "v@example.com",
            "fullName": "Vera",
            "businessName": "Vera Tours",
            "businessType": "tours",
        }
    )

    assert campaign.data["status"] == "draft"
    assert campaign.data["targetAudience"] == "all"
    assert vendor.data["status"] == "pending_approval"
    assert vendor.data["categoriesAllowed"] == []
