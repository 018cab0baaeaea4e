"""Condition evaluation for flow triggers and condition nodes."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from apps.backend.services.flow_schema import FlowCondition


@dataclass
class ConditionContext:
    text: str = ""
    button_value: str | None = None
    message_count: int = 0
    started_at: datetime | None = None
    status: str = "active"
    lead: dict[str, Any] = field(default_factory=dict)
    vars: dict[str, Any] = field(default_factory=dict)
    now: datetime | None = None


def resolve_field(name: str, ctx: ConditionContext) -> str:
    """Field value as text. Unknown fields resolve to an empty string."""
    key = (name or "").strip()
    if key in ("user_input", "message", "input"):
        return ctx.text or ""
    if key == "button_value":
        return ctx.button_value or ""
    if key == "message_count":
        return str(ctx.message_count)
    if key == "session_duration":
        if not ctx.started_at:
            return "0"
        now = ctx.now or datetime.utcnow()
        return str(max(0, int((now - ctx.started_at).total_seconds())))
    if key == "status":
        return ctx.status or ""
    if key.startswith("lead."):
        lead_key = key.split(".", 1)[1]
        if lead_key in ctx.lead:
            return "" if ctx.lead[lead_key] is None else str(ctx.lead[lead_key])
        custom = ctx.lead.get("custom_fields") or {}
        return "" if custom.get(lead_key) is None else str(custom.get(lead_key))
    if key.startswith("var.") or key.startswith("var:"):
        var_value = ctx.vars.get(key[4:])
        return "" if var_value is None else str(var_value)
    return ""


def evaluate_condition(cond: FlowCondition, ctx: ConditionContext) -> bool:
    actual = resolve_field(cond.field, ctx)
    expected = cond.value
    op = cond.operator
    if op == "equals":
        return actual == expected
    if op == "contains":
        return expected.lower() in actual.lower()
    if op == "starts_with":
        return actual.lower().startswith(expected.lower())
    if op == "ends_with":
        return actual.lower().endswith(expected.lower())
    if op == "regex":
        return re.search(expected, actual) is not None
    return False


def evaluate_conditions(conditions: list[FlowCondition], ctx: ConditionContext) -> bool:
    """Logical AND. An empty list never matches."""
    if not conditions:
        return False
    return all(evaluate_condition(c, ctx) for c in conditions)
