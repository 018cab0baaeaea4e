"""Bot flow execution for chatbot conversations.

The engine is storage-free: it reads the chatbot's flows and the conversation's
flow state, mutates ``flow_state_json``/``lead_json`` and analytics flags on the
conversation object, and returns an ``EngineResult`` describing replies,
scheduled delays and outbound deliveries. Persisting messages, status changes
and delays is the caller's job (see ``message_ingest``).
"""
from __future__ import annotations

import copy
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from apps.backend.config import get_settings
from apps.backend.models.chatbot import DEFAULT_FALLBACK_MESSAGE
from apps.backend.models.conversation import TERMINAL_STATUSES
from apps.backend.services.flow_conditions import ConditionContext, evaluate_condition, evaluate_conditions
from apps.backend.services.flow_schema import (
    NODE_TYPES,
    ActionNode,
    DelayNode,
    Flow,
    FlowTrigger,
    InputContent,
    InputNode,
    MessageNode,
    parse_flows,
)
from apps.backend.services.outbound_webhooks import DeliveryResult, post_signed_webhook
from apps.backend.utils.errors import EngineFault

logger = logging.getLogger(__name__)

FLOW_CONFIDENCE = 0.9
FALLBACK_CONFIDENCE = 0.1
DEFAULT_INPUT_SUCCESS = "Thank you for providing that information!"
LEAD_FIELDS = ("email", "name", "phone", "company")

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE_RE = re.compile(r"^\+?[\d\s\-()]{10,}$")

# collect action -> (lead field, pattern, prompt, invalid answer, thanks)
_COLLECT_ACTIONS = {
    "collect_email": ("email", _EMAIL_RE, "Please provide your email address.", "Please provide a valid email address.", "Thank you for your email!"),
    "collect_phone": ("phone", _PHONE_RE, "Please provide your phone number.", "Please provide a valid phone number.", "Thank you for your phone number!"),
}

WebhookSender = Callable[..., DeliveryResult]


@dataclass
class VisitorInput:
    text: str = ""
    button_value: str | None = None


@dataclass
class BotReply:
    text: str
    flow_id: str | None = None
    node_id: str | None = None
    buttons: list[dict[str, Any]] = field(default_factory=list)
    confidence: float = FLOW_CONFIDENCE


@dataclass
class ScheduledDelay:
    flow_id: str
    node_id: str
    seconds: float


@dataclass
class EngineResult:
    replies: list[BotReply] = field(default_factory=list)
    flow_id: str | None = None
    matched: bool = False
    fallback: bool = False
    fault: str | None = None
    delays: list[ScheduledDelay] = field(default_factory=list)
    deliveries: list[DeliveryResult] = field(default_factory=list)
    new_status: str | None = None


def _render_template(text: str, vars_map: dict[str, Any]) -> str:
    if not text:
        return text
    out = text
    for k, v in vars_map.items():
        out = out.replace("{{" + k + "}}", str(v))
    return out


def validate_input(content: InputContent, value: str) -> str | None:
    """Return an error message for an invalid answer, None when it is acceptable."""
    rules = content.validation
    custom = content.error_text
    if not value:
        return (custom or "This field is required.") if rules.required else None
    if rules.min_length is not None and len(value) < rules.min_length:
        return custom or f"Please enter at least {rules.min_length} characters."
    if rules.max_length is not None and len(value) > rules.max_length:
        return custom or f"Please enter no more than {rules.max_length} characters."
    if content.input_type == "email" and not _EMAIL_RE.match(value):
        return custom or "Please provide a valid email address."
    if content.input_type == "phone" and not _PHONE_RE.match(value):
        return custom or "Please provide a valid phone number."
    if content.input_type == "number":
        try:
            float(value)
        except ValueError:
            return custom or "Please enter a valid number."
    if rules.pattern and re.search(rules.pattern, value) is None:
        return custom or "Please check the format and try again."
    return None


class _Run:
    """Buffered effects of one engine pass; applied to the conversation only on success."""

    def __init__(self, chatbot: Any, conversation: Any, visitor: VisitorInput, state: dict[str, Any], now: datetime):
        self.chatbot_id = chatbot.id
        self.conversation_id = conversation.id
        self.secret = chatbot.webhook_secret
        self.visitor = visitor
        self.now = now
        self.initial_vars = dict(state.get("vars") or {})
        self.vars = dict(self.initial_vars)
        self.lead = copy.deepcopy(conversation.lead_json or {})
        self.status = conversation.status or "active"
        self.message_count = conversation.message_count or 0
        self.started_at = conversation.started_at
        self.handoff = False
        self.goal_type: str | None = None
        self.goal_completed = False
        self.replies: list[BotReply] = []
        self.delays: list[ScheduledDelay] = []
        self.deliveries: list[DeliveryResult] = []
        self.awaiting: dict[str, Any] | None = None
        self.hops = 0

    def context(self) -> ConditionContext:
        return ConditionContext(
            text=self.visitor.text or "",
            button_value=self.visitor.button_value,
            message_count=self.message_count,
            started_at=self.started_at,
            status=self.status,
            lead=self.lead,
            vars=self.vars,
            now=self.now,
        )

    def template_vars(self) -> dict[str, Any]:
        out: dict[str, Any] = {f"lead.{k}": v for k, v in self.lead.items() if not isinstance(v, (dict, list))}
        out.update(self.vars)
        return out

    def reply(self, text: str, flow: Flow, node: Any, buttons: list[dict[str, Any]] | None = None, confidence: float = FLOW_CONFIDENCE) -> None:
        self.replies.append(
            BotReply(
                text=_render_template(text, self.template_vars()),
                flow_id=flow.id,
                node_id=node.id,
                buttons=buttons or [],
                confidence=confidence,
            )
        )


def _load_state(conversation: Any) -> dict[str, Any]:
    raw = conversation.flow_state_json
    if not raw or not isinstance(raw, dict):
        return {"flow_id": None, "awaiting": None, "vars": {}}
    return {"flow_id": raw.get("flow_id"), "awaiting": raw.get("awaiting"), "vars": raw.get("vars") or {}}


def _single_successor(node: Any) -> str | None:
    if len(node.connections) > 1:
        raise EngineFault(
            f"node {node.id!r} of type {node.type} has {len(node.connections)} successors",
            code="ambiguous_successor",
        )
    return node.connections[0] if node.connections else None


def _button_targets(node: MessageNode) -> list[tuple[Any, str]]:
    """Pair reply buttons with successors: one shared successor, or one successor per button."""
    buttons = node.content.reply_buttons()
    conns = node.connections
    if len(conns) == 1:
        return [(b, conns[0]) for b in buttons]
    if len(conns) == len(buttons):
        return list(zip(buttons, conns))
    raise EngineFault(
        f"node {node.id!r} has {len(buttons)} buttons for {len(conns)} successors",
        code="ambiguous_successor",
    )


# Node type -> handler method name; checked against the schema below.
_NODE_HANDLERS = {
    "message": "_exec_message",
    "condition": "_exec_condition",
    "input": "_exec_input",
    "delay": "_exec_delay",
    "action": "_exec_action",
    "webhook": "_exec_webhook",
}

if set(_NODE_HANDLERS) != set(NODE_TYPES):
    raise RuntimeError(f"flow node handlers out of sync: {sorted(set(NODE_TYPES) ^ set(_NODE_HANDLERS))}")


class FlowEngine:
    def __init__(
        self,
        *,
        max_hops: int | None = None,
        webhook_sender: WebhookSender | None = None,
        webhook_max_attempts: int | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        s = get_settings()
        self.max_hops = max_hops if max_hops is not None else s.flow_max_hops
        self.webhook_max_attempts = max(1, webhook_max_attempts if webhook_max_attempts is not None else s.flow_webhook_max_attempts)
        self.webhook_sender = webhook_sender or post_signed_webhook
        self.clock = clock or datetime.utcnow

    # ----- entry points -----

    def handle_input(self, chatbot: Any, conversation: Any, visitor: VisitorInput) -> EngineResult:
        flows = [f for f in parse_flows(chatbot.flows_json, chatbot_id=chatbot.id) if f.is_active]
        state = _load_state(conversation)
        run = _Run(chatbot, conversation, visitor, state, self.clock())

        awaiting = state.get("awaiting")
        if awaiting:
            flow = next((f for f in flows if f.id == state.get("flow_id")), None)
            node = flow.node(awaiting.get("node_id")) if flow else None
            if awaiting.get("kind") == "input" and isinstance(node, InputNode):
                return self._execute(chatbot, conversation, run, flow, lambda: self._resume_input(run, flow, node, awaiting))
            if awaiting.get("kind") == "collect" and isinstance(node, ActionNode) and node.content.action.type in _COLLECT_ACTIONS:
                return self._execute(chatbot, conversation, run, flow, lambda: self._resume_collect(run, flow, node, awaiting))
            if awaiting.get("kind") == "button" and isinstance(node, MessageNode):
                try:
                    target = self._pick_button(node, visitor)
                except EngineFault as e:
                    return self._fault(chatbot, conversation, run, flow, e)
                if target:
                    return self._execute(chatbot, conversation, run, flow, lambda: self._walk(run, flow, target))
                # not a button answer: treat as a fresh message
            else:
                logger.info(
                    "flow_awaiting_stale chatbot_id=%s conversation_id=%s flow_id=%s node_id=%s",
                    chatbot.id,
                    conversation.id,
                    state.get("flow_id"),
                    awaiting.get("node_id"),
                )
                conversation.flow_state_json = {"flow_id": None, "awaiting": None, "vars": run.initial_vars}

        flow = self.match_flow(flows, visitor, run.context())
        if flow is None:
            return self._fallback_result(chatbot)
        entry = flow.entry_node()
        return self._execute(chatbot, conversation, run, flow, lambda: self._walk(run, flow, entry.id))

    def resume_after_delay(self, chatbot: Any, conversation: Any, flow_id: str, node_id: str) -> EngineResult:
        """Continue a flow past a delay node once its timer has fired."""
        flows = [f for f in parse_flows(chatbot.flows_json, chatbot_id=chatbot.id) if f.is_active]
        flow = next((f for f in flows if f.id == flow_id), None)
        node = flow.node(node_id) if flow else None
        if not isinstance(node, DelayNode):
            logger.info("flow_delay_orphaned chatbot_id=%s conversation_id=%s flow_id=%s node_id=%s", chatbot.id, conversation.id, flow_id, node_id)
            return EngineResult(flow_id=flow_id)
        run = _Run(chatbot, conversation, VisitorInput(), _load_state(conversation), self.clock())

        def step() -> None:
            nxt = _single_successor(node)
            if nxt:
                self._walk(run, flow, nxt)

        return self._execute(chatbot, conversation, run, flow, step, must_reply=False)

    def match_flow(self, flows: list[Flow], visitor: VisitorInput, ctx: ConditionContext) -> Flow | None:
        """First active flow in declared order whose trigger matches."""
        for flow in flows:
            if not flow.is_active or not flow.nodes:
                continue
            if self._trigger_matches(flow.trigger, visitor, ctx):
                return flow
        return None

    # ----- trigger resolution -----

    def _trigger_matches(self, trigger: FlowTrigger, visitor: VisitorInput, ctx: ConditionContext) -> bool:
        text = (visitor.text or "").strip().lower()
        value = trigger.value.strip().lower()
        if trigger.type == "keyword":
            if not value:
                hit = False
            elif trigger.match == "exact":
                hit = text == value
            else:
                hit = value in text
        elif trigger.type == "intent":
            keywords = [k.strip().lower() for k in trigger.value.split(",") if k.strip()]
            hit = any(k in text for k in keywords)
        elif trigger.type == "button":
            clicked = visitor.button_value if visitor.button_value is not None else visitor.text
            hit = bool(trigger.value) and clicked == trigger.value
        elif trigger.type == "condition":
            return evaluate_conditions(trigger.conditions, ctx)
        elif trigger.type == "webhook":
            # started by inbound events, never by visitor text
            return False
        else:
            raise EngineFault(f"unknown trigger type {trigger.type!r}", code="bad_trigger")
        if hit and trigger.conditions:
            return evaluate_conditions(trigger.conditions, ctx)
        return hit

    # ----- execution -----

    def _execute(
        self,
        chatbot: Any,
        conversation: Any,
        run: _Run,
        flow: Flow,
        step: Callable[[], None],
        *,
        must_reply: bool = True,
    ) -> EngineResult:
        """Run ``step`` and commit its effects; a visitor message that produced nothing gets the fallback."""
        try:
            step()
        except EngineFault as e:
            return self._fault(chatbot, conversation, run, flow, e)
        conversation.flow_state_json = {"flow_id": flow.id, "awaiting": run.awaiting, "vars": run.vars}
        conversation.lead_json = run.lead
        if run.handoff:
            conversation.handoff_requested = True
        if run.goal_completed:
            conversation.goal_completed = True
            conversation.goal_type = run.goal_type
        new_status = run.status if run.status != (conversation.status or "active") else None
        if must_reply and not (run.replies or run.awaiting or run.delays or new_status):
            logger.info(
                "flow_no_reply chatbot_id=%s conversation_id=%s flow_id=%s hops=%s",
                chatbot.id,
                conversation.id,
                flow.id,
                run.hops,
            )
            result = self._fallback_result(chatbot)
            result.flow_id = flow.id
            result.matched = True
            result.deliveries = run.deliveries
            return result
        return EngineResult(
            replies=run.replies,
            flow_id=flow.id,
            matched=True,
            delays=run.delays,
            deliveries=run.deliveries,
            new_status=new_status,
        )

    def _fault(self, chatbot: Any, conversation: Any, run: _Run, flow: Flow | None, e: EngineFault) -> EngineResult:
        logger.warning(
            "flow_engine_fault chatbot_id=%s conversation_id=%s flow_id=%s code=%s hops=%s detail=%s",
            chatbot.id,
            conversation.id,
            flow.id if flow else None,
            e.code,
            run.hops,
            e.detail,
        )
        conversation.flow_state_json = {"flow_id": None, "awaiting": None, "vars": run.initial_vars}
        result = self._fallback_result(chatbot)
        result.flow_id = flow.id if flow else None
        result.matched = flow is not None
        result.fault = e.code
        result.deliveries = run.deliveries
        return result

    def _fallback_result(self, chatbot: Any) -> EngineResult:
        text = chatbot.fallback_message or DEFAULT_FALLBACK_MESSAGE
        return EngineResult(replies=[BotReply(text=text, confidence=FALLBACK_CONFIDENCE)], fallback=True)

    def _walk(self, run: _Run, flow: Flow, node_id: str | None) -> None:
        # node id -> (vars, lead) seen on entry; the same pair twice means the walk cannot make progress
        seen: dict[str, list[tuple[dict[str, Any], dict[str, Any]]]] = {}
        while node_id:
            node = flow.node(node_id)
            if node is None:
                raise EngineFault(f"flow {flow.id!r} has no node {node_id!r}", code="missing_node")
            run.hops += 1
            if run.hops > self.max_hops:
                raise EngineFault(f"flow {flow.id!r} exceeded {self.max_hops} hops", code="hop_limit")
            snapshot = (dict(run.vars), copy.deepcopy(run.lead))
            visits = seen.setdefault(node_id, [])
            if snapshot in visits:
                raise EngineFault(f"flow {flow.id!r} revisits node {node_id!r} without progress", code="cycle")
            visits.append(snapshot)
            handler = getattr(self, _NODE_HANDLERS[node.type])
            node_id = handler(run, flow, node)

    def _exec_message(self, run: _Run, flow: Flow, node: Any) -> str | None:
        content = node.content
        buttons = [b.model_dump(exclude_none=True) for b in content.buttons]
        if content.text or buttons:
            run.reply(content.text, flow, node, buttons)
        if content.reply_buttons() and node.connections:
            _button_targets(node)
            run.awaiting = {"kind": "button", "node_id": node.id}
            return None
        return _single_successor(node)

    def _exec_condition(self, run: _Run, flow: Flow, node: Any) -> str | None:
        content = node.content
        ctx = run.context()
        if content.branches:
            for branch in content.branches:
                if evaluate_condition(branch.condition, ctx):
                    return branch.next
            return content.default
        conns = node.connections
        if len(conns) > 2:
            raise EngineFault(
                f"condition {node.id!r} has {len(conns)} successors and no branches",
                code="ambiguous_successor",
            )
        if evaluate_condition(content.condition, ctx):
            return conns[0] if conns else None
        return conns[1] if len(conns) > 1 else None

    def _exec_input(self, run: _Run, flow: Flow, node: Any) -> str | None:
        _single_successor(node)
        if node.content.text:
            run.reply(node.content.text, flow, node)
        run.awaiting = {"kind": "input", "node_id": node.id, "attempts": 0}
        return None

    def _exec_delay(self, run: _Run, flow: Flow, node: Any) -> str | None:
        nxt = _single_successor(node)
        if node.content.text:
            run.reply(node.content.text, flow, node)
        if nxt:
            run.delays.append(ScheduledDelay(flow_id=flow.id, node_id=node.id, seconds=node.content.delay))
        return None

    def _exec_action(self, run: _Run, flow: Flow, node: Any) -> str | None:
        action = node.content.action
        if action.type in _COLLECT_ACTIONS:
            _single_successor(node)
            prompt = _COLLECT_ACTIONS[action.type][2]
            run.reply(action.message or prompt, flow, node)
            run.awaiting = {"kind": "collect", "node_id": node.id, "attempts": 0}
            return None
        if action.type == "redirect":
            button = {"text": "Continue", "action": "url", "url": action.url}
            run.reply(action.message or "I'll redirect you now.", flow, node, [button])
        elif action.type == "webhook":
            self._post_webhook(run, flow, node, action.url, {})
            if action.message:
                run.reply(action.message, flow, node)
        elif action.type == "handoff":
            run.reply(action.message or "Connecting you with a human agent.", flow, node)
            run.handoff = True
            run.status = "transferred"
        elif action.type == "end_conversation":
            if action.message:
                run.reply(action.message, flow, node)
            run.status = "ended"
        elif action.type == "complete_goal":
            run.goal_completed = True
            run.goal_type = action.value or action.name
            if action.message:
                run.reply(action.message, flow, node)
        elif action.type == "set_variable":
            if action.name:
                run.vars[action.name] = _render_template(action.value or "", run.template_vars())
        elif action.type == "tag_lead":
            tags = list(run.lead.get("tags") or [])
            if action.value and action.value not in tags:
                tags.append(action.value)
            run.lead["tags"] = tags
        if run.status in TERMINAL_STATUSES:
            return None
        return _single_successor(node)

    def _exec_webhook(self, run: _Run, flow: Flow, node: Any) -> str | None:
        content = node.content
        self._post_webhook(run, flow, node, content.webhook_url, content.payload)
        if content.text:
            run.reply(content.text, flow, node)
        return _single_successor(node)

    def _post_webhook(self, run: _Run, flow: Flow, node: Any, url: str, extra: dict[str, Any]) -> None:
        """POST the flow event with retries; a delivery that never succeeds faults the pass."""
        tvars = run.template_vars()
        payload = {k: _render_template(v, tvars) if isinstance(v, str) else v for k, v in extra.items()}
        payload.update(
            {
                "event": "flow.webhook",
                "chatbot_id": run.chatbot_id,
                "conversation_id": run.conversation_id,
                "flow_id": flow.id,
                "node_id": node.id,
                "text": run.visitor.text,
                "vars": run.vars,
                "lead": run.lead,
            }
        )
        result = None
        for attempt in range(1, self.webhook_max_attempts + 1):
            result = self.webhook_sender(url, payload, secret=run.secret, event="flow.webhook")
            result.attempts = attempt
            if result.success:
                break
        run.deliveries.append(result)
        if not result.success:
            raise EngineFault(
                f"webhook node {node.id!r} failed after {result.attempts} attempts: {result.error}",
                code="webhook_failed",
            )

    # ----- resumption -----

    def _pick_button(self, node: MessageNode, visitor: VisitorInput) -> str | None:
        targets = _button_targets(node)
        if visitor.button_value is not None:
            for button, target in targets:
                if button.value == visitor.button_value:
                    return target
            return None
        typed = (visitor.text or "").strip()
        for button, target in targets:
            if typed == button.value or typed.lower() == button.text.strip().lower():
                return target
        return None

    def _resume_input(self, run: _Run, flow: Flow, node: InputNode, awaiting: dict[str, Any]) -> None:
        run.hops += 1
        value = (run.visitor.button_value or run.visitor.text or "").strip()
        error = validate_input(node.content, value)
        if error:
            run.reply(error, flow, node, confidence=0.8)
            run.awaiting = {"kind": "input", "node_id": node.id, "attempts": int(awaiting.get("attempts") or 0) + 1}
            return
        self._capture(run, node, value)
        nxt = _single_successor(node)
        if node.content.success_text:
            run.reply(node.content.success_text, flow, node)
        before = len(run.replies)
        self._walk(run, flow, nxt)
        if len(run.replies) == before and not node.content.success_text:
            run.reply(DEFAULT_INPUT_SUCCESS, flow, node)

    def _capture(self, run: _Run, node: InputNode, value: str) -> None:
        content = node.content
        key = content.field
        if not key and content.input_type in ("email", "phone"):
            key = content.input_type
        if key:
            if key in LEAD_FIELDS:
                run.lead[key] = value
            else:
                custom = dict(run.lead.get("custom_fields") or {})
                custom[key] = value
                run.lead["custom_fields"] = custom
        run.vars[key or node.id] = value

    def _resume_collect(self, run: _Run, flow: Flow, node: ActionNode, awaiting: dict[str, Any]) -> None:
        run.hops += 1
        key, pattern, _prompt, invalid, thanks = _COLLECT_ACTIONS[node.content.action.type]
        value = (run.visitor.text or "").strip()
        if not pattern.match(value):
            run.reply(invalid, flow, node, confidence=0.8)
            run.awaiting = {"kind": "collect", "node_id": node.id, "attempts": int(awaiting.get("attempts") or 0) + 1}
            return
        run.lead[key] = value
        run.vars[key] = value
        nxt = _single_successor(node)
        run.reply(thanks, flow, node)
        self._walk(run, flow, nxt)
