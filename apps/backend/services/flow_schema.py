"""Typed flow definitions parsed from ``Chatbot.flows_json``.

Node content is a tagged union keyed by node ``type``. A flow whose trigger,
nodes or edges do not validate is quarantined (logged and skipped) instead of
being executed with an open-ended schema.
"""
from __future__ import annotations

import logging
import re
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

logger = logging.getLogger(__name__)

ConditionOperator = Literal["equals", "contains", "starts_with", "ends_with", "regex"]
TriggerType = Literal["keyword", "intent", "button", "condition", "webhook"]
NodeType = Literal["message", "condition", "action", "input", "delay", "webhook"]
NODE_TYPES: tuple[str, ...] = ("message", "condition", "action", "input", "delay", "webhook")


class _Model(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


def _as_text(v: Any) -> str:
    if v is None:
        return ""
    return str(v)


class FlowCondition(_Model):
    field: str = "user_input"
    operator: ConditionOperator = "equals"
    value: str = ""

    @field_validator("value", mode="before")
    @classmethod
    def coerce_value(cls, v: Any) -> str:
        return _as_text(v)

    @model_validator(mode="after")
    def check_regex(self) -> "FlowCondition":
        if self.operator == "regex":
            try:
                re.compile(self.value)
            except re.error as e:
                raise ValueError(f"invalid regex {self.value!r}: {e}")
        return self


class FlowTrigger(_Model):
    type: TriggerType
    value: str = ""
    match: Literal["contains", "exact"] = "contains"
    conditions: list[FlowCondition] = Field(default_factory=list)

    @field_validator("value", mode="before")
    @classmethod
    def coerce_value(cls, v: Any) -> str:
        return _as_text(v)


class FlowButton(_Model):
    text: str
    value: str = ""
    action: Literal["reply", "url", "phone", "email"] = "reply"
    url: str | None = None

    @model_validator(mode="after")
    def default_value(self) -> "FlowButton":
        if not self.value:
            self.value = self.text
        return self


class MessageContent(_Model):
    text: str = ""
    buttons: list[FlowButton] = Field(default_factory=list)

    def reply_buttons(self) -> list[FlowButton]:
        return [b for b in self.buttons if b.action == "reply"]


class ConditionBranch(_Model):
    condition: FlowCondition
    next: str


class ConditionContent(_Model):
    condition: FlowCondition | None = None
    branches: list[ConditionBranch] = Field(default_factory=list)
    default: str | None = None

    @model_validator(mode="after")
    def needs_condition(self) -> "ConditionContent":
        if self.condition is None and not self.branches:
            raise ValueError("condition node needs a condition or branches")
        return self


class InputValidation(_Model):
    required: bool = True
    pattern: str | None = None
    min_length: int | None = Field(default=None, alias="minLength", ge=0)
    max_length: int | None = Field(default=None, alias="maxLength", ge=0)

    @field_validator("pattern")
    @classmethod
    def check_pattern(cls, v: str | None) -> str | None:
        if v:
            try:
                re.compile(v)
            except re.error as e:
                raise ValueError(f"invalid pattern {v!r}: {e}")
        return v


class InputContent(_Model):
    text: str = ""
    input_type: Literal["text", "email", "phone", "number", "file"] = Field(default="text", alias="inputType")
    field: str | None = None
    validation: InputValidation = Field(default_factory=InputValidation)
    error_text: str | None = Field(default=None, alias="errorText")
    success_text: str | None = Field(default=None, alias="successText")


class DelayContent(_Model):
    delay: float = Field(default=0, ge=0)  # seconds
    text: str = ""


class FlowAction(_Model):
    type: Literal[
        "collect_email",
        "collect_phone",
        "redirect",
        "webhook",
        "handoff",
        "end_conversation",
        "complete_goal",
        "set_variable",
        "tag_lead",
    ]
    message: str | None = None
    url: str | None = None
    name: str | None = None
    value: str | None = None

    @model_validator(mode="after")
    def webhook_needs_url(self) -> "FlowAction":
        if self.type == "webhook" and not self.url:
            raise ValueError("webhook action needs a url")
        return self


class ActionContent(_Model):
    action: FlowAction


class WebhookContent(_Model):
    webhook_url: str = Field(alias="webhookUrl", min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    text: str = ""


class _NodeBase(_Model):
    id: str = Field(min_length=1)
    connections: list[str] = Field(default_factory=list)
    entry: bool = False


class MessageNode(_NodeBase):
    type: Literal["message"]
    content: MessageContent = Field(default_factory=MessageContent)


class ConditionNode(_NodeBase):
    type: Literal["condition"]
    content: ConditionContent


class InputNode(_NodeBase):
    type: Literal["input"]
    content: InputContent = Field(default_factory=InputContent)


class DelayNode(_NodeBase):
    type: Literal["delay"]
    content: DelayContent = Field(default_factory=DelayContent)


class ActionNode(_NodeBase):
    type: Literal["action"]
    content: ActionContent


class WebhookNode(_NodeBase):
    type: Literal["webhook"]
    content: WebhookContent


FlowNode = Annotated[
    Union[MessageNode, ConditionNode, InputNode, DelayNode, ActionNode, WebhookNode],
    Field(discriminator="type"),
]


class Flow(_Model):
    id: str = Field(min_length=1)
    name: str = ""
    is_active: bool = Field(default=True, alias="isActive")
    trigger: FlowTrigger
    nodes: list[FlowNode] = Field(default_factory=list)

    _arena: dict[str, Any] = PrivateAttr(default_factory=dict)

    @model_validator(mode="after")
    def check_graph(self) -> "Flow":
        arena: dict[str, Any] = {}
        for node in self.nodes:
            if node.id in arena:
                raise ValueError(f"duplicate node id {node.id!r}")
            arena[node.id] = node
        for node in self.nodes:
            for target in node.connections:
                if target not in arena:
                    raise ValueError(f"node {node.id!r} connects to unknown node {target!r}")
            if isinstance(node, ConditionNode):
                targets = [b.next for b in node.content.branches]
                if node.content.default:
                    targets.append(node.content.default)
                for target in targets:
                    if target not in node.connections:
                        raise ValueError(f"condition {node.id!r} branches to {target!r} outside its connections")
        return self

    def model_post_init(self, __context: Any) -> None:
        self._arena = {node.id: node for node in self.nodes}

    def node(self, node_id: str) -> Any:
        return self._arena.get(node_id)

    def entry_node(self) -> Any:
        for node in self.nodes:
            if node.entry:
                return node
        return self.nodes[0] if self.nodes else None


def parse_flows(raw: Any, *, chatbot_id: int | None = None) -> list[Flow]:
    """Parse the stored flow list, preserving declared order and skipping malformed flows."""
    if not raw or not isinstance(raw, list):
        return []
    flows: list[Flow] = []
    for idx, item in enumerate(raw):
        try:
            flows.append(Flow.model_validate(item))
        except PydanticValidationError as e:
            flow_id = item.get("id") if isinstance(item, dict) else None
            logger.warning(
                "flow_quarantined chatbot_id=%s flow_id=%s index=%s errors=%s",
                chatbot_id,
                flow_id,
                idx,
                e.error_count(),
            )
    return flows
