from __future__ import annotations

import threading
from typing import Any, Dict, List

from toolgate.router.classifier import Stage2Result
from toolgate.router.config import RouterConfig


def _cfg(**kw: Any) -> RouterConfig:
    return RouterConfig(chat_model="chat-m", tool_model="tool-m", classifier_model="cls-m", **kw)


def _msgs(*texts: str) -> List[Dict[str, str]]:
    out = []
    for i, t in enumerate(texts):
        out.append({"role": "user" if (len(texts) - 1 - i) % 2 == 0 else "assistant", "content": t})
    return out


class _Classifier:
    def __init__(self, result: Stage2Result) -> None:
        self.result = result
        self.calls = 0

    def __call__(self, messages, *, cfg):
        self.calls += 1
        return self.result


def test_heuristic_mode_never_calls_classifier() -> None:
    from toolgate.router.router import route_turn

    clf = _Classifier(Stage2Result(label="DB_QUERY", status="ok"))
    d = route_turn(_msgs("Wie geht's?"), cfg=_cfg(mode="heuristic"), classifier=clf)
    assert clf.calls == 0
    assert d.needs_tools is False
    assert d.tier == "chat"
    assert d.model == "chat-m"
    assert d.step_budget == 1
    assert d.reason == "general-chat"


def test_vision_routes_to_chat_tier_with_screenshot_in_every_mode() -> None:
    from toolgate.router.router import route_turn

    for mode in ("heuristic", "hybrid", "ai"):
        clf = _Classifier(Stage2Result(label="DB_QUERY", status="ok"))
        d = route_turn(_msgs("Siehst du den Fehler?"), cfg=_cfg(mode=mode), classifier=clf)
        assert d.needs_screenshot is True
        assert d.needs_tools is False
        assert d.tier == "chat"
        assert clf.calls == 0


def test_hybrid_uses_stage1_when_it_matches() -> None:
    from toolgate.router.router import route_turn

    clf = _Classifier(Stage2Result(label="CHAT", status="ok"))
    d = route_turn(_msgs("Zeige alle Rollen"), cfg=_cfg(mode="hybrid"), classifier=clf)
    assert clf.calls == 0
    assert d.needs_tools is True
    assert d.tier == "tool"
    assert d.model == "tool-m"
    assert d.step_budget == 8


def test_confirmation_after_navigation_offer_routes_to_ui_via_stage2() -> None:
    from toolgate.router.router import route_turn

    clf = _Classifier(Stage2Result(label="UI_ACTION", status="ok", raw="UI_ACTION"))
    d = route_turn(
        _msgs("Wo stelle ich das Theme ein?", "Soll ich die Einstellungen für dich aufrufen?", "ja bitte"),
        cfg=_cfg(mode="hybrid"),
        classifier=clf,
    )
    assert clf.calls == 1
    assert d.needs_tools is True
    assert d.reason == "ai-router:ui-action"
    assert d.degraded is False


def test_ai_mode_consults_stage2_even_when_stage1_matches() -> None:
    from toolgate.router.router import route_turn

    clf = _Classifier(Stage2Result(label="CHAT", status="ok"))
    d = route_turn(_msgs("Zeige alle Rollen"), cfg=_cfg(mode="ai"), classifier=clf)
    assert clf.calls == 1
    assert d.needs_tools is False
    assert d.reason == "ai-router:chat"


def test_stage2_failure_falls_back_to_chat_and_is_flagged() -> None:
    from toolgate.router.router import route_turn

    clf = _Classifier(Stage2Result(label="CHAT", status="timeout", error="timeout"))
    d = route_turn(_msgs("Erzähl mir was"), cfg=_cfg(mode="hybrid"), classifier=clf)
    assert d.needs_tools is False
    assert d.degraded is True
    assert d.stage2 is not None and d.stage2.status == "timeout"


def test_stage2_failure_with_mutation_verb_routes_to_tools() -> None:
    from toolgate.router.router import route_turn

    clf = _Classifier(Stage2Result(label="CHAT", status="error", error="rate_limited"))
    d = route_turn(_msgs("bitte löschen"), cfg=_cfg(mode="hybrid"), classifier=clf)
    assert d.needs_tools is True
    assert d.reason == "stage2-fallback-mutation:delete"
    assert d.degraded is True


def test_ai_mode_failure_keeps_stage1_tool_decision() -> None:
    from toolgate.router.router import route_turn

    clf = _Classifier(Stage2Result(label="CHAT", status="invalid_output", raw="maybe?"))
    d = route_turn(_msgs("Öffne die Einstellungen"), cfg=_cfg(mode="ai"), classifier=clf)
    assert d.needs_tools is True
    assert d.reason == "ui-action:öffne"
    assert d.degraded is True


def test_raising_classifier_does_not_escape() -> None:
    from toolgate.router.router import route_turn

    def _boom(messages, *, cfg):
        raise RuntimeError("boom")

    d = route_turn(_msgs("Erzähl mir was"), cfg=_cfg(mode="hybrid"), classifier=_boom)
    assert d.needs_tools is False
    assert d.degraded is True


def test_parse_label_strictness() -> None:
    from toolgate.router.classifier import parse_label

    assert parse_label(" db_query\n") == "DB_QUERY"
    assert parse_label("**VISION**") == "VISION"
    assert parse_label("UI_ACTION or CHAT") is None
    assert parse_label("") is None
    assert parse_label(None) is None


def test_format_conversation_uses_trailing_window_and_redacts() -> None:
    from toolgate.router.classifier import format_conversation

    msgs = _msgs("one", "two", "three", "password=hunter2hunter2", "five")
    txt = format_conversation(msgs, window=3)
    assert "one" not in txt
    assert "two" not in txt
    assert txt.splitlines()[0].startswith("USER: three")
    assert "hunter2" not in txt
    assert txt.splitlines()[-1] == "USER: five"


def test_classify_conversation_ok_and_invalid_output() -> None:
    from toolgate.router.classifier import classify_conversation

    seen: Dict[str, Any] = {}

    def _gen(**kw):
        seen.update(kw)
        return "DB_QUERY", None

    r = classify_conversation(_msgs("zeig mir was"), cfg=_cfg(), generate=_gen)
    assert r.label == "DB_QUERY"
    assert r.status == "ok"
    assert seen["temperature"] == 0.0
    assert seen["model"] == "cls-m"

    r2 = classify_conversation(_msgs("x"), cfg=_cfg(), generate=lambda **kw: ("I think UI", None))
    assert r2.label == "CHAT"
    assert r2.status == "invalid_output"


def test_classify_conversation_transport_error() -> None:
    from toolgate.router.classifier import classify_conversation

    r = classify_conversation(_msgs("x"), cfg=_cfg(), generate=lambda **kw: (None, "rate_limited"))
    assert r.label == "CHAT"
    assert r.status == "error"
    assert r.error == "rate_limited"


def test_classify_conversation_times_out_without_waiting() -> None:
    from toolgate.router.classifier import classify_conversation

    release = threading.Event()

    def _slow(**kw):
        release.wait(5)
        return "UI_ACTION", None

    try:
        r = classify_conversation(_msgs("x"), cfg=_cfg(classifier_timeout_seconds=0.05), generate=_slow)
    finally:
        release.set()
    assert r.label == "CHAT"
    assert r.status == "timeout"


def test_router_config_from_env(monkeypatch) -> None:
    from toolgate.router.config import load_router_config

    monkeypatch.setenv("ROUTER_MODE", "bogus")
    monkeypatch.setenv("ROUTER_HISTORY_WINDOW", "999")
    monkeypatch.setenv("LLM_CHAT_MODEL", "gemini-2.5-pro")
    monkeypatch.delenv("LLM_CLASSIFIER_MODEL", raising=False)
    cfg = load_router_config()
    assert cfg.mode == "hybrid"
    assert cfg.history_window == 20
    assert cfg.classifier_model == "gemini-2.5-pro"
