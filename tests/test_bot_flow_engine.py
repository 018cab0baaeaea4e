from datetime import datetime
from types import SimpleNamespace

from apps.backend.services.bot_flow_engine import (
    DEFAULT_INPUT_SUCCESS,
    FALLBACK_CONFIDENCE,
    FlowEngine,
    ScheduledDelay,
    VisitorInput,
    validate_input,
)
from apps.backend.services.flow_schema import InputContent
from apps.backend.services.outbound_webhooks import DeliveryResult

FALLBACK = "Sorry, I did not get that."


def _bot(flows, secret=None):
    return SimpleNamespace(id=7, flows_json=flows, fallback_message=FALLBACK, webhook_secret=secret)


def _conv():
    return SimpleNamespace(
        id=11,
        lead_json={},
        status="active",
        message_count=1,
        started_at=datetime(2026, 1, 1, 12, 0, 0),
        flow_state_json=None,
        handoff_requested=False,
        goal_completed=False,
        goal_type=None,
    )


def _msg(node_id, text, connections=(), **content):
    return {"id": node_id, "type": "message", "content": {"text": text, **content}, "connections": list(connections)}


def _flow(flow_id, nodes, trigger=None):
    return {"id": flow_id, "name": flow_id, "trigger": trigger or {"type": "keyword", "value": "hello"}, "nodes": nodes}


def _engine(**kw):
    kw.setdefault("max_hops", 50)
    kw.setdefault("clock", lambda: datetime(2026, 1, 1, 12, 5, 0))
    return FlowEngine(**kw)


def _texts(result):
    return [r.text for r in result.replies]


def test_first_declared_flow_wins():
    flows = [
        _flow("greet-a", [_msg("a1", "Hi from A")]),
        _flow("greet-b", [_msg("b1", "Hi from B")]),
    ]
    result = _engine().handle_input(_bot(flows), _conv(), VisitorInput(text="hello"))
    assert result.matched
    assert result.flow_id == "greet-a"
    assert _texts(result) == ["Hi from A"]


def test_no_trigger_match_returns_fallback_without_state_change():
    conv = _conv()
    result = _engine().handle_input(_bot([_flow("f", [_msg("m", "Hi")])]), conv, VisitorInput(text="weather?"))
    assert result.fallback and not result.matched
    assert _texts(result) == [FALLBACK]
    assert result.replies[0].confidence == FALLBACK_CONFIDENCE
    assert conv.flow_state_json is None


def test_inactive_and_empty_flows_are_skipped():
    flows = [
        {**_flow("off", [_msg("x", "never")]), "isActive": False},
        _flow("empty", []),
        _flow("on", [_msg("y", "live")]),
    ]
    result = _engine().handle_input(_bot(flows), _conv(), VisitorInput(text="hello there"))
    assert result.flow_id == "on"


def test_runaway_chain_emits_fallback_exactly_once():
    nodes = [_msg(f"n{i}", f"step {i}", [f"n{i + 1}"]) for i in range(50)]
    nodes.append(_msg("n50", "step 50"))
    conv = _conv()
    result = _engine().handle_input(_bot([_flow("chain", nodes)]), conv, VisitorInput(text="hello"))
    assert result.fault == "hop_limit"
    assert result.fallback
    assert _texts(result) == [FALLBACK]
    assert conv.flow_state_json["awaiting"] is None
    assert conv.flow_state_json["flow_id"] is None


def test_chain_within_hop_limit_runs_fully():
    nodes = [_msg(f"n{i}", f"step {i}", [f"n{i + 1}"]) for i in range(49)]
    nodes.append(_msg("n49", "step 49"))
    result = _engine().handle_input(_bot([_flow("chain", nodes)]), _conv(), VisitorInput(text="hello"))
    assert result.fault is None
    assert len(result.replies) == 50


def test_ambiguous_successor_is_a_fault():
    nodes = [_msg("start", "Hi", ["a", "b"]), _msg("a", "A"), _msg("b", "B")]
    result = _engine().handle_input(_bot([_flow("f", nodes)]), _conv(), VisitorInput(text="hello"))
    assert result.fault == "ambiguous_successor"
    assert _texts(result) == [FALLBACK]


def test_buttons_pause_and_resume_on_click():
    buttons = [{"text": "Sales", "value": "sales"}, {"text": "Support", "value": "support"}]
    nodes = [
        _msg("menu", "Pick one", ["s", "t"], buttons=buttons),
        _msg("s", "Sales here"),
        _msg("t", "Support here"),
    ]
    bot, conv, engine = _bot([_flow("f", nodes)]), _conv(), _engine()

    first = engine.handle_input(bot, conv, VisitorInput(text="hello"))
    assert _texts(first) == ["Pick one"]
    assert [b["value"] for b in first.replies[0].buttons] == ["sales", "support"]
    assert conv.flow_state_json["awaiting"] == {"kind": "button", "node_id": "menu"}

    second = engine.handle_input(bot, conv, VisitorInput(text="Support", button_value="support"))
    assert _texts(second) == ["Support here"]
    assert conv.flow_state_json["awaiting"] is None


def test_typed_button_label_is_accepted():
    nodes = [_msg("menu", "Pick", ["s"], buttons=[{"text": "Yes please"}]), _msg("s", "Great")]
    bot, conv, engine = _bot([_flow("f", nodes)]), _conv(), _engine()
    engine.handle_input(bot, conv, VisitorInput(text="hello"))
    result = engine.handle_input(bot, conv, VisitorInput(text="yes please"))
    assert _texts(result) == ["Great"]


def test_unmatched_button_answer_falls_through_to_triggers():
    nodes = [_msg("menu", "Pick", ["s"], buttons=[{"text": "Yes"}]), _msg("s", "Great")]
    bot, conv, engine = _bot([_flow("f", nodes)]), _conv(), _engine()
    engine.handle_input(bot, conv, VisitorInput(text="hello"))
    result = engine.handle_input(bot, conv, VisitorInput(text="what is this"))
    assert result.fallback
    assert conv.flow_state_json["awaiting"] == {"kind": "button", "node_id": "menu"}


def test_input_node_validates_and_captures_lead():
    nodes = [
        {
            "id": "ask",
            "type": "input",
            "content": {"text": "Your email?", "inputType": "email", "successText": "Thanks {{email}}"},
        }
    ]
    bot, conv, engine = _bot([_flow("f", nodes)]), _conv(), _engine()

    first = engine.handle_input(bot, conv, VisitorInput(text="hello"))
    assert _texts(first) == ["Your email?"]
    assert conv.flow_state_json["awaiting"]["kind"] == "input"

    bad = engine.handle_input(bot, conv, VisitorInput(text="not-an-email"))
    assert _texts(bad) == ["Please provide a valid email address."]
    assert conv.flow_state_json["awaiting"]["attempts"] == 1

    good = engine.handle_input(bot, conv, VisitorInput(text="ann@example.com"))
    assert _texts(good) == ["Thanks ann@example.com"]
    assert conv.lead_json["email"] == "ann@example.com"
    assert conv.flow_state_json["awaiting"] is None


def test_input_custom_field_and_default_success_text():
    nodes = [{"id": "ask", "type": "input", "content": {"text": "Budget?", "field": "budget"}}]
    bot, conv, engine = _bot([_flow("f", nodes)]), _conv(), _engine()
    engine.handle_input(bot, conv, VisitorInput(text="hello"))
    result = engine.handle_input(bot, conv, VisitorInput(text="5000"))
    assert _texts(result) == [DEFAULT_INPUT_SUCCESS]
    assert conv.lead_json["custom_fields"] == {"budget": "5000"}
    assert conv.flow_state_json["vars"]["budget"] == "5000"


def test_validate_input_messages():
    content = InputContent.model_validate({"inputType": "number", "validation": {"minLength": 2}})
    assert validate_input(content, "") == "This field is required."
    assert validate_input(content, "1") == "Please enter at least 2 characters."
    assert validate_input(content, "ab") == "Please enter a valid number."
    assert validate_input(content, "42") is None
    custom = InputContent.model_validate({"inputType": "phone", "errorText": "Nope"})
    assert validate_input(custom, "123") == "Nope"


def test_condition_branches_pick_first_true_then_default():
    nodes = [
        {
            "id": "route",
            "type": "condition",
            "content": {
                "branches": [{"condition": {"field": "user_input", "operator": "contains", "value": "price"}, "next": "p"}],
                "default": "d",
            },
            "connections": ["p", "d"],
        },
        _msg("p", "Prices start at 10"),
        _msg("d", "How can I help?"),
    ]
    bot = _bot([_flow("f", nodes, {"type": "keyword", "value": "help"})])
    priced = _engine().handle_input(bot, _conv(), VisitorInput(text="help with PRICE"))
    assert _texts(priced) == ["Prices start at 10"]
    other = _engine().handle_input(bot, _conv(), VisitorInput(text="help me"))
    assert _texts(other) == ["How can I help?"]


def test_condition_without_branches_uses_true_false_successors():
    nodes = [
        {
            "id": "c",
            "type": "condition",
            "content": {"condition": {"field": "message_count", "operator": "equals", "value": "1"}},
            "connections": ["yes", "no"],
        },
        _msg("yes", "first message"),
        _msg("no", "welcome back"),
    ]
    result = _engine().handle_input(_bot([_flow("f", nodes)]), _conv(), VisitorInput(text="hello"))
    assert _texts(result) == ["first message"]


def test_delay_node_schedules_and_resumes():
    nodes = [
        {"id": "wait", "type": "delay", "content": {"delay": 30, "text": "One moment"}, "connections": ["after"]},
        _msg("after", "Still there?"),
    ]
    bot, conv, engine = _bot([_flow("f", nodes)]), _conv(), _engine()
    result = engine.handle_input(bot, conv, VisitorInput(text="hello"))
    assert _texts(result) == ["One moment"]
    assert result.delays == [ScheduledDelay(flow_id="f", node_id="wait", seconds=30)]

    resumed = engine.resume_after_delay(bot, conv, "f", "wait")
    assert _texts(resumed) == ["Still there?"]


def test_resume_after_delay_with_unknown_node_is_empty():
    bot = _bot([_flow("f", [_msg("m", "Hi")])])
    result = _engine().resume_after_delay(bot, _conv(), "f", "gone")
    assert result.replies == []


def test_handoff_action_transfers_conversation():
    nodes = [
        {"id": "h", "type": "action", "content": {"action": {"type": "handoff"}}, "connections": ["after"]},
        _msg("after", "never sent"),
    ]
    conv = _conv()
    result = _engine().handle_input(_bot([_flow("f", nodes)]), conv, VisitorInput(text="hello"))
    assert result.new_status == "transferred"
    assert conv.handoff_requested is True
    assert _texts(result) == ["Connecting you with a human agent."]


def test_set_variable_and_goal_feed_templates():
    nodes = [
        {"id": "v", "type": "action", "content": {"action": {"type": "set_variable", "name": "plan", "value": "pro"}}, "connections": ["g"]},
        {"id": "g", "type": "action", "content": {"action": {"type": "complete_goal", "value": "signup"}}, "connections": ["m"]},
        _msg("m", "You picked {{plan}}"),
    ]
    conv = _conv()
    result = _engine().handle_input(_bot([_flow("f", nodes)]), conv, VisitorInput(text="hello"))
    assert _texts(result) == ["You picked pro"]
    assert conv.goal_completed and conv.goal_type == "signup"
    assert conv.flow_state_json["vars"] == {"plan": "pro"}


def _webhook_flow():
    return [
        _flow(
            "f",
            [
                {
                    "id": "hook",
                    "type": "webhook",
                    "content": {"webhookUrl": "https://hooks.example.com/lead", "payload": {"source": "widget"}, "text": "Sent"},
                }
            ],
        )
    ]


def test_webhook_node_retries_then_succeeds():
    calls = []

    def sender(url, payload, *, secret, event):
        calls.append((url, payload, secret, event))
        return DeliveryResult(url=url, event=event, success=len(calls) > 1, status_code=200 if len(calls) > 1 else 500)

    result = _engine(webhook_sender=sender, webhook_max_attempts=2).handle_input(
        _bot(_webhook_flow(), secret="s3cret"), _conv(), VisitorInput(text="hello")
    )
    assert _texts(result) == ["Sent"]
    assert len(calls) == 2
    assert calls[0][1]["source"] == "widget"
    assert calls[0][1]["event"] == "flow.webhook"
    assert calls[0][2] == "s3cret"
    assert len(result.deliveries) == 1 and result.deliveries[0].attempts == 2


def test_webhook_node_failure_is_a_fault_with_delivery_logged():
    def sender(url, payload, *, secret, event):
        return DeliveryResult(url=url, event=event, success=False, error="timeout")

    result = _engine(webhook_sender=sender, webhook_max_attempts=2).handle_input(
        _bot(_webhook_flow()), _conv(), VisitorInput(text="hello")
    )
    assert result.fault == "webhook_failed"
    assert _texts(result) == [FALLBACK]
    assert result.deliveries[0].success is False


def test_fault_discards_partial_replies_and_state():
    nodes = [
        {"id": "v", "type": "action", "content": {"action": {"type": "set_variable", "name": "x", "value": "1"}}, "connections": ["m"]},
        _msg("m", "partial", ["a", "b"]),
        _msg("a", "A"),
        _msg("b", "B"),
    ]
    conv = _conv()
    conv.flow_state_json = {"flow_id": None, "awaiting": None, "vars": {"keep": "yes"}}
    result = _engine().handle_input(_bot([_flow("f", nodes)]), conv, VisitorInput(text="hello"))
    assert _texts(result) == [FALLBACK]
    assert conv.flow_state_json["vars"] == {"keep": "yes"}


def test_intent_and_button_triggers():
    flows = [
        _flow("buy", [_msg("m", "Buying")], {"type": "intent", "value": "purchase, buy ,order"}),
        _flow("btn", [_msg("m", "Clicked")], {"type": "button", "value": "start"}),
    ]
    engine = _engine()
    assert _texts(engine.handle_input(_bot(flows), _conv(), VisitorInput(text="I want to ORDER"))) == ["Buying"]
    assert _texts(engine.handle_input(_bot(flows), _conv(), VisitorInput(text="Start", button_value="start"))) == ["Clicked"]


def test_flow_does_not_loop_on_self_edge():
    nodes = [_msg("start", "Hi", ["loop"]), _msg("loop", "Again", ["loop"])]
    result = _engine().handle_input(_bot([_flow("f", nodes)]), _conv(), VisitorInput(text="hello"))
    assert result.fault == "cycle"
    assert _texts(result) == [FALLBACK]


def test_loop_that_changes_state_runs_until_hop_limit():
    nodes = [
        {"id": "tag", "type": "action", "content": {"action": {"type": "set_variable", "name": "n", "value": "{{n}}x"}}, "connections": ["tag"]},
    ]
    conv = _conv()
    conv.flow_state_json = {"flow_id": None, "awaiting": None, "vars": {"n": ""}}
    result = _engine(max_hops=10).handle_input(_bot([_flow("f", nodes)]), conv, VisitorInput(text="hello"))
    assert result.fault == "hop_limit"
    assert _texts(result) == [FALLBACK]


def test_matched_flow_that_says_nothing_falls_back():
    nodes = [
        {
            "id": "vip",
            "type": "condition",
            "content": {"condition": {"field": "user_input", "operator": "contains", "value": "vip"}},
            "connections": ["m"],
        },
        _msg("m", "Welcome, VIP"),
    ]
    conv = _conv()
    result = _engine().handle_input(_bot([_flow("f", nodes)]), conv, VisitorInput(text="hello"))
    assert result.matched and result.fallback
    assert result.flow_id == "f"
    assert _texts(result) == [FALLBACK]
    assert result.replies[0].confidence == FALLBACK_CONFIDENCE


def test_silent_continuation_after_delay_sends_nothing():
    nodes = [
        {"id": "wait", "type": "delay", "content": {"delay": 5}, "connections": ["v"]},
        {"id": "v", "type": "action", "content": {"action": {"type": "set_variable", "name": "nudged", "value": "yes"}}},
    ]
    bot, conv = _bot([_flow("f", nodes)]), _conv()
    result = _engine().resume_after_delay(bot, conv, "f", "wait")
    assert result.replies == []
    assert not result.fallback
    assert conv.flow_state_json["vars"] == {"nudged": "yes"}


def _collect_flow(kind, message=None):
    action = {"type": kind}
    if message:
        action["message"] = message
    return [
        _flow(
            "lead",
            [
                {"id": "ask", "type": "action", "content": {"action": action}, "connections": ["done"]},
                _msg("done", "We will be in touch at {{lead.email}}"),
            ],
        )
    ]


def test_collect_email_action_prompts_validates_and_captures():
    bot, conv, engine = _bot(_collect_flow("collect_email", "Please provide your email")), _conv(), _engine()
    first = engine.handle_input(bot, conv, VisitorInput(text="hello"))
    assert _texts(first) == ["Please provide your email"]
    assert conv.flow_state_json["awaiting"]["kind"] == "collect"

    bad = engine.handle_input(bot, conv, VisitorInput(text="not-an-email"))
    assert _texts(bad) == ["Please provide a valid email address."]
    assert conv.flow_state_json["awaiting"]["attempts"] == 1
    assert "email" not in conv.lead_json

    good = engine.handle_input(bot, conv, VisitorInput(text="ana@example.com"))
    assert _texts(good) == ["Thank you for your email!", "We will be in touch at ana@example.com"]
    assert conv.lead_json["email"] == "ana@example.com"
    assert conv.flow_state_json["awaiting"] is None


def test_collect_phone_action_uses_default_prompt():
    bot, conv, engine = _bot(_collect_flow("collect_phone")), _conv(), _engine()
    assert _texts(engine.handle_input(bot, conv, VisitorInput(text="hello"))) == ["Please provide your phone number."]
    assert _texts(engine.handle_input(bot, conv, VisitorInput(text="12"))) == ["Please provide a valid phone number."]
    done = engine.handle_input(bot, conv, VisitorInput(text="+91 98765 43210"))
    assert _texts(done)[0] == "Thank you for your phone number!"
    assert conv.lead_json["phone"] == "+91 98765 43210"


def test_webhook_action_posts_to_its_url():
    calls = []

    def sender(url, payload, *, secret, event):
        calls.append((url, payload))
        return DeliveryResult(url=url, event=event, success=True, status_code=200)

    nodes = [{"id": "notify", "type": "action", "content": {"action": {"type": "webhook", "url": "https://crm.example.com/in", "message": "Noted"}}}]
    result = _engine(webhook_sender=sender).handle_input(_bot([_flow("f", nodes)]), _conv(), VisitorInput(text="hello"))
    assert _texts(result) == ["Noted"]
    assert calls[0][0] == "https://crm.example.com/in"
    assert calls[0][1]["node_id"] == "notify"
    assert len(result.deliveries) == 1
