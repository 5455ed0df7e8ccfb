"""Lead planning for the orchestrator.

Two planning styles, mirroring each other:
1) Deterministic routing: ordered keyword rules over ``lead.type``. This is
   always computed and is the authoritative baseline.
2) Advisory LLM planning: the model may propose a replacement plan. The reply
   is validated against the same schema and discarded wholesale on any error.

The planner never drops a lead: unmatched types become a SUPPORT ticket that
carries the raw payload.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

from role_orchestrator.llm import LLMAdapter
from role_orchestrator.models import (
    TASK_ROLES,
    Lead,
    LeadIntakeResult,
    PlannedTask,
    TaskPlan,
)
from role_orchestrator.task_queue import TaskQueue

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RoutingRule:
    keywords: tuple[str, ...]
    role: str
    priority: int
    action: str
    summary: str

    def matches(self, lead_type: str) -> bool:
        return any(keyword in lead_type for keyword in self.keywords)


# First match wins. Refund precedes every other rule so that a refund is never
# routed as a generic payment or booking.
ROUTING_RULES: tuple[RoutingRule, ...] = (
    RoutingRule(("refund",), "FINANCE", 1, "process_refund", "Refund request task created"),
    RoutingRule(
        ("vendor", "onboard", "signup"),
        "VENDOR_ONBOARDING",
        3,
        "create_vendor",
        "Vendor onboarding task created",
    ),
    RoutingRule(
        ("booking", "reservation", "book"),
        "BOOKING_MANAGER",
        2,
        "create_booking",
        "Booking request task created",
    ),
    RoutingRule(("calendar", "sync", "ical"), "CALENDAR_SYNC", 4, "sync_calendar", "Calendar sync task created"),
    RoutingRule(("price", "pricing", "cost"), "PRICING", 5, "update_price", "Pricing update task created"),
    RoutingRule(
        ("marketing", "campaign", "content"),
        "MARKETING",
        6,
        "create_campaign",
        "Marketing task created",
    ),
    RoutingRule(
        ("support", "help", "issue", "problem"),
        "SUPPORT",
        1,
        "create_ticket",
        "Support ticket task created",
    ),
    RoutingRule(
        ("payment", "checkout", "pay"),
        "FINANCE",
        2,
        "create_checkout",
        "Payment/checkout task created",
    ),
)

FALLBACK_ROLE = "SUPPORT"
FALLBACK_PRIORITY = 5


def build_plan(lead: Lead) -> TaskPlan:
    """Route ``lead`` to exactly one task using the first matching rule."""
    lead_type = lead.type.lower()
    for rule in ROUTING_RULES:
        if rule.matches(lead_type):
            return TaskPlan(
                tasks=[
                    PlannedTask(
                        role=rule.role,
                        priority=rule.priority,
                        # The rule's action wins over any "action" key in the payload.
                        input={**lead.data, "action": rule.action, "source": lead.source},
                    )
                ],
                summary=rule.summary,
                reasoning=f"Rule-based: matched {'/'.join(rule.keywords)}",
            )

    return TaskPlan(
        tasks=[
            PlannedTask(
                role=FALLBACK_ROLE,
                priority=FALLBACK_PRIORITY,
                input={
                    "action": "create_ticket",
                    "subject": f"Unrecognized request: {lead_type}",
                    "message": json.dumps(lead.data, indent=2, default=str),
                    "source": lead.source,
                },
            )
        ],
        summary="Unrecognized request routed to support",
        reasoning="Rule-based: no matching pattern, defaulting to support",
    )


class LLMPlanAdvisor:
    """Ask an LLM for a replacement plan.

    Model output is never trusted directly: the adapter validates it as a
    ``TaskPlan`` (known roles, non-empty, priority 1..10, every input names an
    action) and any violation raises, which the ``Planner`` turns into a
    fallback to the rule-based plan.
    """

    def __init__(self, *, llm_adapter: LLMAdapter, timeout_s: float = 8.0) -> None:
        self.llm_adapter = llm_adapter
        self.timeout_s = timeout_s

    def propose(self, lead: Lead, baseline: TaskPlan) -> TaskPlan:
        lead_json = json.dumps(lead.data, ensure_ascii=True, sort_keys=True, default=str)
        system_prompt = (
            "You are a strict task planner for a tourism marketplace. Return JSON only. "
            f"Use only these roles: {', '.join(TASK_ROLES)}. "
            "Priority is 1-10, lower is more urgent. Every task input must include an "
            "'action' string plus any structured data (emails, dates, amounts, names) "
            "extracted from the lead."
        )
        user_prompt = (
            f"Lead type: {lead.type}\n"
            f"Source: {lead.source}\n"
            f"Data JSON:\n{lead_json}\n\n"
            f"Rule-based plan suggests: {baseline.summary}\n"
            "Validate or improve it and return a plan that conforms to the provided schema."
        )
        proposal = self.llm_adapter.generate_structured(
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            response_model=TaskPlan,
            timeout_s=self.timeout_s,
        )
        # Re-validate in case the adapter handed back a partially built model.
        plan = TaskPlan.model_validate(proposal.model_dump())
        return plan.model_copy(
            update={"source": "assistant", "reasoning": f"Assistant-reviewed: {plan.reasoning or ''}".strip()}
        )


class Planner:
    """Public planner entrypoint used by lead intake."""

    def __init__(
        self,
        *,
        mode: str = "deterministic",
        llm_adapter: LLMAdapter | None = None,
        timeout_s: float = 8.0,
    ) -> None:
        self.mode = mode.lower().strip()
        self.advisor = LLMPlanAdvisor(llm_adapter=llm_adapter, timeout_s=timeout_s) if llm_adapter else None

    def plan_tasks(self, lead: Lead) -> TaskPlan:
        baseline = build_plan(lead)
        if self.mode != "llm":
            return baseline
        if self.advisor is None:
            logger.warning("planner event=advisor_missing mode=llm fallback=rules")
            return baseline
        try:
            return self.advisor.propose(lead, baseline)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "planner event=advisor_rejected lead_type=%s fallback=rules reason=%s",
                lead.type,
                exc,
            )
            return baseline


class LeadIntake:
    def __init__(self, planner: Planner, queue: TaskQueue) -> None:
        self.planner = planner
        self.queue = queue

    def handle_lead_intake(self, lead: Lead, created_by: str | None = None) -> LeadIntakeResult:
        """Plan ``lead`` and enqueue every planned task in order.

        Tasks already enqueued stay in the queue when a later insert fails; the
        result then reports ``success=False`` with the IDs created so far.
        """
        plan = self.planner.plan_tasks(lead)
        task_ids: list[str] = []
        for planned in plan.tasks:
            try:
                task = self.queue.enqueue(
                    planned.role,
                    planned.input,
                    priority=planned.priority,
                    created_by=created_by,
                )
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "lead_intake event=enqueue_failed lead_type=%s role=%s created=%d error=%s",
                    lead.type,
                    planned.role,
                    len(task_ids),
                    exc,
                )
                return LeadIntakeResult(
                    success=False,
                    plan=plan,
                    task_ids=task_ids,
                    message=f"Created {len(task_ids)} of {len(plan.tasks)} task(s) before failure: {exc}",
                )
            task_ids.append(task.id)

        logger.info(
            "lead_intake event=planned lead_type=%s source=%s plan_source=%s tasks=%d",
            lead.type,
            lead.source,
            plan.source,
            len(task_ids),
        )
        return LeadIntakeResult(
            success=True,
            plan=plan,
            task_ids=task_ids,
            message=f"Created {len(task_ids)} task(s): {plan.summary}",
        )


# -- chat message parsing -----------------------------------------------------

LEAD_TYPE_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("vendor_signup", ("vendor", "onboard", "signup", "register")),
    ("booking_request", ("booking", "book", "reservation", "reserve")),
    ("calendar_sync", ("calendar", "sync", "ical")),
    ("pricing_update", ("price", "pricing", "cost")),
    ("marketing_request", ("marketing", "campaign", "content")),
    ("support_issue", ("support", "help", "issue", "problem")),
    ("refund_request", ("refund",)),
    ("payment_request", ("payment", "checkout", "pay")),
)

EMAIL_PATTERN = re.compile(r"[\w.-]+@[\w.-]+\.\w+")
PHONE_PATTERN = re.compile(r"\+?\d{10,15}")
DATE_PATTERN = re.compile(r"\d{4}-\d{2}-\d{2}")
AMOUNT_PATTERN = re.compile(r"\$?\d+(?:\.\d{2})?")


def detect_lead_type(text: str) -> str:
    lowered = text.lower()
    for lead_type, keywords in LEAD_TYPE_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return lead_type
    return "general_inquiry"


def extract_lead_data(text: str, sender: dict[str, Any] | None = None) -> dict[str, Any]:
    sender = sender or {}
    data: dict[str, Any] = {
        "rawMessage": text,
        "telegramUser": {
            "id": sender.get("id"),
            "username": sender.get("username"),
            "firstName": sender.get("first_name"),
            "lastName": sender.get("last_name"),
        },
    }
    if match := EMAIL_PATTERN.search(text):
        data["email"] = match.group(0)
    if match := PHONE_PATTERN.search(text):
        data["phone"] = match.group(0)
    dates = DATE_PATTERN.findall(text)
    if len(dates) >= 2:
        data["startDate"], data["endDate"] = dates[0], dates[1]
    if match := AMOUNT_PATTERN.search(text):
        data["amount"] = float(match.group(0).lstrip("$"))
    return data


def lead_from_chat_message(message: dict[str, Any]) -> Lead:
    text = message.get("text", "")
    sender = message.get("from") or {}
    chat = message.get("chat") or {}
    return Lead(
        type=detect_lead_type(text),
        data=extract_lead_data(text, sender),
        source="telegram",
        metadata={
            "chatId": chat.get("id"),
            "username": sender.get("username"),
            "firstName": sender.get("first_name"),
            "messageId": message.get("message_id"),
        },
    )
