import asyncio
import json
import threading

import httpx
import pytest

from conftest import SAMPLE_REPORT, FakeChatProvider, FakeClock, FakeProvider, report_json
from ideavalidator import ai_provider
from ideavalidator.ai_provider import (
    AnalysisGateway,
    OpenRouterProvider,
    SarvamProvider,
    parse_ai_json,
    validate_report,
)
from ideavalidator.config import Settings
from ideavalidator.errors import AllProvidersExhausted, InvalidAIResponse, ProviderUnavailable
from ideavalidator.utils import DecodedAttachment


# ---- Response normalisation ----
def test_parse_pure_json_and_prose_wrapped_json_agree():
    pure = report_json()
    wrapped = f"Sure! Here is the analysis you asked for:\n```json\n{pure}\n```\nLet me know if you need more."
    assert parse_ai_json(pure) == parse_ai_json(wrapped) == SAMPLE_REPORT


@pytest.mark.parametrize("text", ["", "   ", "no json here at all", "{not: valid json}", "[1, 2, 3]"])
def test_parse_rejects_non_object_replies(text):
    with pytest.raises(InvalidAIResponse):
        parse_ai_json(text)


def test_validate_report_normalizes_verdict_and_null_lists():
    report = validate_report({**SAMPLE_REPORT, "summaryVerdict": "  promising ", "pros": None})
    assert report.summary_verdict == "Promising"
    assert report.pros == []


def test_validate_report_lists_failing_fields():
    data = dict(SAMPLE_REPORT)
    del data["oneLineTakeaway"]
    data["viabilityScore"] = 140
    with pytest.raises(InvalidAIResponse) as exc:
        validate_report(data)
    assert "oneLineTakeaway" in exc.value.message
    assert "viabilityScore" in exc.value.message


# ---- Fallback chain ----
async def test_first_success_wins_after_earlier_failures(monkeypatch):
    a = FakeProvider("a", error=RuntimeError("a exploded"))
    b = FakeProvider("b", error=RuntimeError("b exploded"))
    c = FakeProvider("c", reply=report_json())
    d = FakeProvider("d", reply=report_json())

    def no_aggregate(failures):
        raise AssertionError("aggregate error built on a successful run")

    monkeypatch.setattr(ai_provider, "AllProvidersExhausted", no_aggregate)
    result = await AnalysisGateway([a, b, c, d]).analyze("A marketplace for used lab gear")

    assert result.provider == "c"
    assert result.report.viability_score == 72
    assert [f.provider for f in result.failures] == ["a", "b"]
    assert (a.calls, b.calls, c.calls, d.calls) == (1, 1, 1, 0)


async def test_all_failures_are_aggregated_with_every_reason():
    gateway = AnalysisGateway([
        FakeProvider("a", error=RuntimeError("quota exceeded")),
        FakeProvider("b", reply="I cannot help with that"),
        FakeProvider("c", error=ConnectionError("connection reset")),
    ])
    with pytest.raises(AllProvidersExhausted) as exc:
        await gateway.analyze("Idea")

    error = exc.value
    assert [f.provider for f in error.failures] == ["a", "b", "c"]
    assert "quota exceeded" in error.message
    assert "Invalid AI response format" in error.message
    assert "connection reset" in error.message
    assert not error.misconfigured
    assert error.status_code == 503
    assert len(error.details) == 3


async def test_providers_without_credentials_are_skipped():
    a = FakeProvider("a", api_key="", reply=report_json())
    b = FakeProvider("b", reply=report_json())
    result = await AnalysisGateway([a, b]).analyze("Idea")
    assert result.provider == "b"
    assert a.calls == 0
    assert result.failures[0].skipped
    assert result.failures[0].reason == "missing credential"


async def test_nothing_configured_is_reported_as_misconfiguration():
    gateway = AnalysisGateway([FakeProvider("a", api_key=""), FakeProvider("b", api_key="")])
    with pytest.raises(AllProvidersExhausted) as exc:
        await gateway.analyze("Idea")
    assert exc.value.misconfigured
    assert all(f.skipped for f in exc.value.failures)


async def test_empty_chain_is_misconfigured():
    with pytest.raises(AllProvidersExhausted) as exc:
        await AnalysisGateway([]).analyze("Idea")
    assert exc.value.misconfigured
    assert "no providers registered" in exc.value.message


async def test_malformed_or_invalid_shape_reply_falls_through():
    a = FakeProvider("a", reply="Totally not JSON")
    b = FakeProvider("b", reply=json.dumps({"summaryVerdict": "Maybe later"}))
    c = FakeProvider("c", reply=report_json(summaryVerdict="Risky"))
    result = await AnalysisGateway([a, b, c]).analyze("Idea")
    assert result.provider == "c"
    assert result.report.summary_verdict == "Risky"
    assert "schema validation" in result.failures[1].reason


async def test_each_timeout_is_what_remains_of_the_budget():
    clock = FakeClock()
    a = FakeProvider("a", error=RuntimeError("slow failure"), on_call=lambda: clock.advance(3.0))
    b = FakeProvider("b", reply=report_json())
    result = await AnalysisGateway([a, b], deadline_seconds=8.5, clock=clock).analyze("Idea")
    assert result.provider == "b"
    assert a.last_timeout == pytest.approx(8.5)
    assert b.last_timeout == pytest.approx(5.5)


async def test_providers_are_skipped_once_the_deadline_is_near():
    clock = FakeClock()
    a = FakeProvider("a", error=RuntimeError("slow failure"), on_call=lambda: clock.advance(7.8))
    b = FakeProvider("b", reply=report_json())
    c = FakeProvider("c", reply=report_json())
    gateway = AnalysisGateway([a, b, c], deadline_seconds=8.5, min_attempt_seconds=1.0, clock=clock)

    with pytest.raises(AllProvidersExhausted) as exc:
        await gateway.analyze("Idea")

    assert b.calls == 0 and c.calls == 0
    assert [f.skipped for f in exc.value.failures] == [False, True, True]
    assert "deadline" in exc.value.failures[1].reason
    assert not exc.value.misconfigured


async def test_slow_provider_is_cancelled_when_the_budget_runs_out():
    slow = FakeProvider("slow", reply=report_json(), delay=5.0)
    gateway = AnalysisGateway([slow], deadline_seconds=0.2, min_attempt_seconds=0.05)

    loop = asyncio.get_running_loop()
    started = loop.time()
    with pytest.raises(AllProvidersExhausted) as exc:
        await gateway.analyze("Idea")

    assert loop.time() - started < 2.0
    assert slow.cancelled
    assert "timed out" in exc.value.failures[0].reason


async def test_preferred_provider_is_tried_first():
    a = FakeProvider("gemini", reply=report_json())
    b = FakeProvider("openrouter:some/model", reply=report_json(summaryVerdict="Risky"))
    gateway = AnalysisGateway([a, b])

    result = await gateway.analyze("Idea", preferred_provider="openrouter")
    assert result.provider == "openrouter:some/model"
    assert a.calls == 0

    result = await gateway.analyze("Idea", preferred_provider="does-not-exist")
    assert result.provider == "gemini"


async def test_text_only_providers_skip_image_attachments():
    text_only = FakeProvider("text-only", reply=report_json())
    multimodal = FakeProvider("multimodal", reply=report_json(), supports_attachments=True)
    image = DecodedAttachment("image/png", b"\x89PNG\r\n\x1a\nfake")

    result = await AnalysisGateway([text_only, multimodal]).analyze("", image)

    assert result.provider == "multimodal"
    assert text_only.calls == 0
    assert result.failures[0].reason == "attachment not supported"
    assert multimodal.last_request.attachment is image


async def test_text_only_providers_receive_extracted_text():
    text_only = FakeProvider("text-only", reply=report_json())
    notes = DecodedAttachment("text/plain", b"Pitch: subscription boxes for houseplants")

    result = await AnalysisGateway([text_only]).analyze("See attached", notes)

    assert result.provider == "text-only"
    assert "houseplants" in text_only.last_request.attachment_text


async def test_attachment_text_is_extracted_off_loop_before_the_deadline_starts(monkeypatch):
    clock = FakeClock()
    seen = {}

    def slow_extract(attachment):
        seen["thread"] = threading.current_thread()
        clock.advance(30.0)
        return "Extracted pitch deck"

    monkeypatch.setattr(ai_provider, "extract_attachment_text", slow_extract)
    provider = FakeProvider("text-only", reply=report_json())
    deck = DecodedAttachment("application/pdf", b"%PDF-1.4 fake")

    result = await AnalysisGateway([provider], clock=clock).analyze("", deck)

    assert result.provider == "text-only"
    assert seen["thread"] is not threading.current_thread()
    assert provider.last_timeout == pytest.approx(8.5)
    assert provider.last_request.attachment_text == "Extracted pitch deck"


@pytest.mark.parametrize("gateway_kwargs, attachment, reason", [
    ({}, DecodedAttachment("image/png", b"\x89PNG fake"), "attachment not supported"),
    ({"deadline_seconds": 0.5, "min_attempt_seconds": 1.0}, None, "analysis deadline reached"),
])
async def test_skips_other_than_missing_credentials_are_not_misconfiguration(gateway_kwargs, attachment, reason):
    gateway = AnalysisGateway([FakeProvider("text-only", reply=report_json())], **gateway_kwargs)
    with pytest.raises(AllProvidersExhausted) as exc:
        await gateway.analyze("Idea", attachment)
    assert exc.value.failures[0].skipped
    assert exc.value.failures[0].reason == reason
    assert not exc.value.misconfigured


# ---- HTTP providers ----
async def test_openrouter_provider_posts_chat_completion():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        seen["referer"] = request.headers.get("HTTP-Referer")
        seen["body"] = json.loads(request.content)
        content = f"Here is my assessment.\n{report_json()}\nGood luck!"
        return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})

    provider = OpenRouterProvider("or-key", "meta/llama", referer="https://example.com",
                                  transport=httpx.MockTransport(handler))
    result = await AnalysisGateway([provider]).analyze("Dog walking for cats")

    assert result.provider == "openrouter:meta/llama"
    assert result.report.summary_verdict == "Promising"
    assert seen["url"] == ai_provider.OPENROUTER_URL
    assert seen["auth"] == "Bearer or-key"
    assert seen["referer"] == "https://example.com"
    assert seen["body"]["model"] == "meta/llama"
    assert "Dog walking for cats" in seen["body"]["messages"][1]["content"]


async def test_openrouter_error_message_is_surfaced():
    def handler(request):
        return httpx.Response(429, json={"error": {"message": "Rate limit exceeded"}})

    provider = OpenRouterProvider("or-key", "meta/llama", transport=httpx.MockTransport(handler))
    with pytest.raises(AllProvidersExhausted) as exc:
        await AnalysisGateway([provider]).analyze("Idea")
    assert exc.value.failures[0].reason == "Rate limit exceeded"


async def test_sarvam_without_choices_is_a_failure():
    def handler(request):
        assert request.headers["api-subscription-key"] == "sv-key"
        return httpx.Response(200, json={"choices": []})

    provider = SarvamProvider("sv-key", "sarvam-m", transport=httpx.MockTransport(handler))
    with pytest.raises(AllProvidersExhausted) as exc:
        await AnalysisGateway([provider]).analyze("Idea")
    assert "no choices" in exc.value.failures[0].reason


def test_gateway_from_settings_keeps_default_order():
    settings = Settings(gemini_api_key="g", openrouter_models=["m1", "m2"], sarvam_api_key="s")
    gateway = AnalysisGateway.from_settings(settings)
    assert [p.name for p in gateway.providers] == ["gemini", "openrouter:m1", "openrouter:m2", "sarvam"]
    assert [p.is_configured() for p in gateway.providers] == [True, False, False, True]
    assert gateway.chat_provider is gateway.providers[0]
    assert gateway.deadline_seconds == 8.5


# ---- Chat ----
async def test_chat_uses_the_chat_provider():
    chat_provider = FakeChatProvider(reply="Validate pricing first.")
    gateway = AnalysisGateway([], chat_provider=chat_provider)
    text = await gateway.chat("What next?", "Idea", SAMPLE_REPORT)
    assert text == "Validate pricing first."
    assert chat_provider.calls[0][:2] == ("What next?", "Idea")


@pytest.mark.parametrize("chat_provider", [None, FakeChatProvider(configured=False)])
async def test_chat_without_a_configured_provider_is_unavailable(chat_provider):
    gateway = AnalysisGateway([], chat_provider=chat_provider)
    with pytest.raises(ProviderUnavailable):
        await gateway.chat("What next?", "Idea", SAMPLE_REPORT)
