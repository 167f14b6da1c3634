from __future__ import annotations

from typing import Any, Dict

import pytest


def test_mock_mode_makes_no_external_call(monkeypatch) -> None:
    from toolgate.llm import client
    from toolgate.llm.schemas import ToolPlanResponse

    monkeypatch.setenv("LLM_MOCK", "1")
    monkeypatch.setattr(client, "_get_llm_instance", lambda *a, **kw: pytest.fail("no provider in mock mode"))
    text, err = client.generate_text(prompt="hi")
    assert err is None
    assert text == client.MOCK_TEXT
    obj, err = client.generate_json("plan", schema=ToolPlanResponse)
    assert err is None
    assert obj == {"schema_version": "toolgate.tool_plan.v1", "reply": "", "tool_calls": [], "meta": None}


@pytest.mark.parametrize(
    "model,provider",
    [
        ("claude-sonnet-4-5", "anthropic"),
        ("anthropic/claude-opus-4-5", "anthropic"),
        ("gemini-2.5-flash", "vertexai"),
        ("google/gemini-2.5-pro", "vertexai"),
    ],
)
def test_provider_for_model(model: str, provider: str) -> None:
    from toolgate.llm.client import provider_for_model

    assert provider_for_model(model) == provider


def test_provider_falls_back_to_env(monkeypatch) -> None:
    from toolgate.llm.client import provider_for_model

    monkeypatch.setenv("LLM_PROVIDER", "Anthropic")
    assert provider_for_model("custom-model") == "anthropic"
    monkeypatch.delenv("LLM_PROVIDER")
    assert provider_for_model("custom-model") == "vertexai"


def test_config_bounds(monkeypatch) -> None:
    from toolgate.llm.client import _effective_config, _load_config

    monkeypatch.setenv("LLM_TIMEOUT_SECONDS", "9999")
    monkeypatch.setenv("LLM_TEMPERATURE", "3")
    cfg = _load_config()
    assert cfg.timeout == 300
    assert cfg.temperature == 1.0

    monkeypatch.setenv("LLM_TIMEOUT_SECONDS", "oops")
    assert _load_config().timeout == 180

    # A per-call timeout can shorten, never extend, the configured one.
    monkeypatch.setenv("LLM_TIMEOUT_SECONDS", "30")
    assert _effective_config(model="m", temperature=0.0, timeout=8.0).timeout == 8
    assert _effective_config(model=None, temperature=None, timeout=120).timeout == 30


def test_extract_json_object() -> None:
    from toolgate.llm.client import _extract_json_object

    assert _extract_json_object('```json\n{"reply": "ok"}\n```') == {"reply": "ok"}
    assert _extract_json_object('Sure! {"a": {"b": "}"}} trailing') == {"a": {"b": "}"}}
    assert _extract_json_object("[1, 2]") is None
    assert _extract_json_object("") is None


@pytest.mark.parametrize(
    "exc,code",
    [
        (TimeoutError("x"), "timeout"),
        (RuntimeError("504 Gateway Timeout"), "gateway_timeout"),
        (RuntimeError("403 PERMISSION_DENIED"), "permission_denied"),
        (RuntimeError("Error code: 429 - rate limit"), "rate_limited"),
        (RuntimeError("overloaded_error"), "rate_limited"),
        (ValueError("weird"), "llm_error:ValueError"),
    ],
)
def test_classify_error(exc: Exception, code: str) -> None:
    from toolgate.llm.client import _classify_error

    assert _classify_error(exc, model="m") == code


class _FakeMessage:
    def __init__(self, content: Any, usage: Dict[str, int]) -> None:
        self.content = content
        self.usage_metadata = usage


class _FakeLLM:
    def __init__(self, out: Any = None, exc: Exception = None) -> None:
        self.out = out
        self.exc = exc
        self.seen: Any = None

    def invoke(self, msgs):
        self.seen = msgs
        if self.exc is not None:
            raise self.exc
        return self.out


def test_generate_text_collects_usage(monkeypatch) -> None:
    from toolgate.llm import client

    llm = _FakeLLM(_FakeMessage([{"type": "text", "text": "Hallo "}, "Welt"], {"input_tokens": 12, "output_tokens": 3}))
    seen_cfg = {}

    def _factory(provider, cfg, enable_thinking=False):
        seen_cfg.update(provider=provider, model=cfg.model, temperature=cfg.temperature)
        return llm, None

    monkeypatch.setattr(client, "_get_llm_instance", _factory)
    usage: Dict[str, int] = {}
    text, err = client.generate_text(
        system="sys", messages=[{"role": "user", "content": "hi"}], model="claude-sonnet-4-5", temperature=0.0, usage=usage
    )
    assert (text, err) == ("Hallo Welt", None)
    assert usage == {"input_tokens": 12, "output_tokens": 3}
    assert seen_cfg == {"provider": "anthropic", "model": "claude-sonnet-4-5", "temperature": 0.0}
    assert len(llm.seen) == 2


def test_generate_text_errors_are_codes(monkeypatch) -> None:
    from toolgate.llm import client

    monkeypatch.setattr(client, "_get_llm_instance", lambda *a, **kw: (_FakeLLM(exc=RuntimeError("401")), None))
    assert client.generate_text(prompt="x") == (None, "unauthenticated")

    monkeypatch.setattr(client, "_get_llm_instance", lambda *a, **kw: (_FakeLLM(_FakeMessage("  ", {})), None))
    assert client.generate_text(prompt="x") == (None, "empty_response")

    monkeypatch.setattr(client, "_get_llm_instance", lambda *a, **kw: (None, "missing_api_key"))
    assert client.generate_text(prompt="x") == (None, "missing_api_key")


def test_vertex_requires_project(monkeypatch) -> None:
    from toolgate.llm.client import _get_llm_instance, _load_config

    monkeypatch.delenv("GOOGLE_CLOUD_PROJECT", raising=False)
    assert _get_llm_instance("vertexai", _load_config()) == (None, "missing_gcp_project")
    assert _get_llm_instance("openai", _load_config()) == (None, "provider_not_configured")


def test_build_messages_attaches_image_to_last_user_message() -> None:
    from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

    from toolgate.llm.client import build_messages

    msgs = build_messages(
        system="sys",
        messages=[{"role": "user", "content": "a"}, {"role": "assistant", "content": "b"}, {"role": "user", "content": "Siehst du das?"}],
        image_b64="AAAA",
    )
    assert isinstance(msgs[0], SystemMessage)
    assert isinstance(msgs[2], AIMessage)
    last = msgs[3]
    assert isinstance(last, HumanMessage)
    assert last.content[0] == {"type": "text", "text": "Siehst du das?"}
    assert last.content[1]["image_url"]["url"] == "data:image/png;base64,AAAA"


def test_tool_plan_schema_caps() -> None:
    from toolgate.llm.schemas import ToolPlanResponse

    plan = ToolPlanResponse.model_validate(
        {
            "reply": "x" * 5000,
            "tool_calls": [{"tool": "a"}, {"tool": ""}, {"tool": "b", "args": "bad"}, {"tool": "c"}, {"tool": "d"}],
            "unknown": True,
        }
    )
    assert len(plan.reply) == 2000
    assert [tc.tool for tc in plan.tool_calls] == ["a", "b"]
    assert plan.tool_calls[1].args == {}


def test_costs() -> None:
    from toolgate.llm.costs import (
        calculate_cost,
        create_cost_info,
        format_cost,
        model_short_name,
        model_supports_tools,
        model_supports_vision,
    )

    assert calculate_cost("claude-sonnet-4-5", 1000, 1000) == pytest.approx(0.018)
    assert calculate_cost("unknown-model", 500, 500) == pytest.approx(0.002)
    assert format_cost(0.00001) == "<$0.0001"
    assert format_cost(0.0023) == "$0.0023"
    assert format_cost(0.1234) == "$0.123"
    assert model_short_name("google/gemini-2.5-flash") == "Gemini 2.5 Flash"
    assert model_short_name("custom/thing") == "thing"
    assert model_supports_vision("gemini-2.5-pro") is True
    assert model_supports_vision("claude-3-5-haiku-latest") is False
    assert model_supports_tools("unknown") is False

    info = create_cost_info("gemini-2.5-flash", {"input_tokens": 2000, "output_tokens": 1000})
    assert info.total_tokens == 3000
    assert info.estimated_cost == pytest.approx(0.0009)
    assert info.to_dict()["formatted_cost"] == "$0.0009"
