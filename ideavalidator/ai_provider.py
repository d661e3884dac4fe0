"""LLM providers and the fallback gateway that turns an idea into a report.

Providers share one interface (``AIProvider``) and are tried in order by
``AnalysisGateway.analyze`` under a single wall-clock budget; every call gets
a timeout derived from whatever is left of that budget.
"""
import asyncio
import json
import logging
import re
import time
from typing import Any, Callable, Dict, List, Optional

import google.generativeai as genai
import httpx
from google.generativeai.types import GenerationConfig
from pydantic import ValidationError

from ideavalidator import prompts
from ideavalidator.config import Settings
from ideavalidator.errors import (
    MISSING_CREDENTIAL,
    AllProvidersExhausted,
    AppError,
    InvalidAIResponse,
    ProviderFailure,
    ProviderUnavailable,
)
from ideavalidator.schemas import ValidationReport
from ideavalidator.utils import DecodedAttachment, extract_attachment_text

logger = logging.getLogger(__name__)

OPENROUTER_URL = "https://openrouter.ai/api/v1/chat/completions"
SARVAM_URL = "https://api.sarvam.ai/v1/chat/completions"

_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


# ---- Response normalisation ----
def parse_ai_json(text: str) -> Dict[str, Any]:
    """Parse a provider reply that is either pure JSON or JSON wrapped in prose."""
    raw = (text or "").strip()
    if not raw:
        raise InvalidAIResponse("Empty AI response")
    try:
        data = json.loads(raw)
    except ValueError:
        match = _JSON_OBJECT_RE.search(raw)
        if not match:
            raise InvalidAIResponse()
        try:
            data = json.loads(match.group(0))
        except ValueError:
            raise InvalidAIResponse()
    if not isinstance(data, dict):
        raise InvalidAIResponse("AI response is not a JSON object")
    return data


def validate_report(data: Dict[str, Any]) -> ValidationReport:
    try:
        return ValidationReport.model_validate(data)
    except ValidationError as e:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
        raise InvalidAIResponse(f"AI report failed schema validation: {', '.join(fields)}")


class AnalysisRequest:
    def __init__(self, idea: str, attachment: Optional[DecodedAttachment] = None):
        self.idea = (idea or "").strip()
        self.attachment = attachment
        self.attachment_text: Optional[str] = None

    async def load_attachment_text(self) -> None:
        """Extract text for text-only providers; PDF parsing runs off the event loop."""
        if self.attachment is None or self.attachment.is_image:
            return
        self.attachment_text = await asyncio.to_thread(extract_attachment_text, self.attachment)


# ---- Providers ----
class AIProvider:
    """Common interface: one analyze-capable LLM endpoint."""

    name = "provider"
    supports_attachments = False

    def __init__(self, api_key: str):
        self.api_key = api_key or ""

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def matches(self, hint: str) -> bool:
        hint = (hint or "").strip().lower()
        return bool(hint) and (self.name.lower() == hint or self.name.lower().split(":", 1)[0] == hint)

    def unsupported_reason(self, request: AnalysisRequest) -> Optional[str]:
        if request.attachment is None or self.supports_attachments:
            return None
        if request.attachment_text is None:
            return "attachment not supported"
        return None

    async def generate(self, request: AnalysisRequest, timeout: float) -> str:
        raise NotImplementedError


class GeminiProvider(AIProvider):
    name = "gemini"
    supports_attachments = True

    def __init__(self, api_key: str, model_name: str = "gemini-2.0-flash"):
        super().__init__(api_key)
        self.model_name = model_name

    def _model(self, system_instruction: Optional[str] = None):
        genai.configure(api_key=self.api_key)
        return genai.GenerativeModel(self.model_name, system_instruction=system_instruction)

    async def generate(self, request: AnalysisRequest, timeout: float) -> str:
        model = self._model(prompts.STARTUP_ADVISOR)
        parts: List[Any] = []
        if request.attachment is not None:
            parts.append({"mime_type": request.attachment.mime_type, "data": request.attachment.data})
        parts.append(prompts.analysis_user_prompt(request.idea))
        response = await model.generate_content_async(
            parts,
            generation_config=GenerationConfig(response_mime_type="application/json", temperature=0.7),
            request_options={"timeout": timeout},
        )
        # .text raises ValueError when the reply was blocked
        return response.text or ""

    async def chat(self, message: str, original_idea: str, report: Dict[str, Any], timeout: float) -> str:
        model = self._model()
        contents = [
            {"role": "user", "parts": [prompts.chat_context_prompt(original_idea, json.dumps(report))]},
            {"role": "model", "parts": [prompts.CHAT_ACKNOWLEDGEMENT]},
            {"role": "user", "parts": [message]},
        ]
        response = await model.generate_content_async(contents, request_options={"timeout": timeout})
        return response.text or ""


class ChatCompletionsProvider(AIProvider):
    """OpenAI-compatible ``/chat/completions`` endpoint; text only."""

    url = ""

    def __init__(self, api_key: str, model: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(api_key)
        self.model = model
        self.transport = transport

    def headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    def _error_message(self, status_code: int, data: Any) -> str:
        return f"{self.name} error {status_code}"

    async def generate(self, request: AnalysisRequest, timeout: float) -> str:
        body = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": prompts.STARTUP_ADVISOR},
                {"role": "user", "content": prompts.analysis_user_prompt(request.idea, request.attachment_text)},
            ],
        }
        async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
            resp = await client.post(self.url, headers=self.headers(), json=body)
        try:
            data = resp.json()
        except ValueError:
            data = None
        if resp.status_code >= 400:
            raise RuntimeError(self._error_message(resp.status_code, data))
        try:
            return data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError):
            raise InvalidAIResponse(f"{self.name} returned no choices")


class OpenRouterProvider(ChatCompletionsProvider):
    url = OPENROUTER_URL

    def __init__(self, api_key: str, model: str, referer: str = "", transport=None):
        super().__init__(api_key, model, transport)
        self.name = f"openrouter:{model}"
        self.referer = referer

    def headers(self) -> Dict[str, str]:
        headers = super().headers()
        headers["Authorization"] = f"Bearer {self.api_key}"
        headers["X-Title"] = "Greenli8 AI"
        if self.referer:
            headers["HTTP-Referer"] = self.referer
        return headers

    def _error_message(self, status_code: int, data: Any) -> str:
        if isinstance(data, dict) and isinstance(data.get("error"), dict) and data["error"].get("message"):
            return data["error"]["message"]
        return f"OpenRouter error {status_code}"


class SarvamProvider(ChatCompletionsProvider):
    name = "sarvam"
    url = SARVAM_URL

    def headers(self) -> Dict[str, str]:
        headers = super().headers()
        headers["api-subscription-key"] = self.api_key
        return headers


def build_providers(settings: Settings) -> List[AIProvider]:
    """Default order: Gemini (multi-modal), OpenRouter models, Sarvam."""
    providers: List[AIProvider] = [GeminiProvider(settings.gemini_api_key, settings.gemini_model)]
    providers.extend(
        OpenRouterProvider(settings.openrouter_api_key, model, referer=settings.openrouter_referer)
        for model in settings.openrouter_models
    )
    providers.append(SarvamProvider(settings.sarvam_api_key, settings.sarvam_model))
    return providers


# ---- Gateway ----
class AnalysisResult:
    def __init__(self, report: ValidationReport, provider: str, failures: List[ProviderFailure]):
        self.report = report
        self.provider = provider
        self.failures = failures


class AnalysisGateway:
    def __init__(
        self,
        providers: List[AIProvider],
        deadline_seconds: float = 8.5,
        min_attempt_seconds: float = 1.0,
        chat_provider: Optional[GeminiProvider] = None,
        chat_timeout_seconds: float = 8.5,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.providers = list(providers)
        self.deadline_seconds = deadline_seconds
        self.min_attempt_seconds = min_attempt_seconds
        self.chat_provider = chat_provider
        self.chat_timeout_seconds = chat_timeout_seconds
        self.clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> "AnalysisGateway":
        providers = build_providers(settings)
        chat_provider = next((p for p in providers if isinstance(p, GeminiProvider)), None)
        return cls(
            providers,
            deadline_seconds=settings.ai_deadline_seconds,
            min_attempt_seconds=settings.ai_min_attempt_seconds,
            chat_provider=chat_provider,
            chat_timeout_seconds=settings.ai_chat_timeout_seconds,
        )

    def ordered_providers(self, preferred: Optional[str] = None) -> List[AIProvider]:
        if not preferred:
            return list(self.providers)
        first = [p for p in self.providers if p.matches(preferred)]
        return first + [p for p in self.providers if p not in first]

    async def analyze(
        self,
        idea: str,
        attachment: Optional[DecodedAttachment] = None,
        preferred_provider: Optional[str] = None,
    ) -> AnalysisResult:
        request = AnalysisRequest(idea, attachment)
        # Extraction happens before the deadline clock starts
        await request.load_attachment_text()
        started = self.clock()
        failures: List[ProviderFailure] = []
        logger.info(
            f"Starting analysis: {len(request.idea)} chars, attachment={'yes' if attachment else 'no'}, "
            f"configured={[p.name for p in self.providers if p.is_configured()]}"
        )

        for provider in self.ordered_providers(preferred_provider):
            if not provider.is_configured():
                failures.append(ProviderFailure(provider.name, MISSING_CREDENTIAL, skipped=True))
                continue
            reason = provider.unsupported_reason(request)
            if reason:
                failures.append(ProviderFailure(provider.name, reason, skipped=True))
                continue
            remaining = self.deadline_seconds - (self.clock() - started)
            if remaining < self.min_attempt_seconds:
                logger.warning(f"{provider.name} skipped - analysis deadline reached")
                failures.append(ProviderFailure(provider.name, "analysis deadline reached", skipped=True))
                continue

            logger.info(f"Attempting {provider.name} (timeout {remaining:.1f}s)")
            try:
                # wait_for cancels the in-flight call when the budget runs out
                text = await asyncio.wait_for(provider.generate(request, remaining), timeout=remaining)
                report = validate_report(parse_ai_json(text))
            except asyncio.TimeoutError:
                logger.warning(f"{provider.name} timed out after {remaining:.1f}s")
                failures.append(ProviderFailure(provider.name, f"timed out after {remaining:.1f}s"))
            except Exception as e:
                message = str(e) or e.__class__.__name__
                logger.warning(f"{provider.name} failed: {message}")
                failures.append(ProviderFailure(provider.name, message))
            else:
                logger.info(f"{provider.name} succeeded in {self.clock() - started:.2f}s")
                return AnalysisResult(report, provider.name, failures)

        error = AllProvidersExhausted(failures)
        if error.misconfigured:
            logger.error(f"No AI provider could be attempted: {error.message}")
        else:
            logger.error(error.message)
        raise error

    async def chat(self, message: str, original_idea: str, report: Dict[str, Any]) -> str:
        provider = self.chat_provider
        if provider is None or not provider.is_configured():
            raise ProviderUnavailable()
        timeout = self.chat_timeout_seconds
        try:
            return await asyncio.wait_for(provider.chat(message, original_idea, report, timeout), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Chat timed out after {timeout:.1f}s")
            raise ProviderUnavailable("AI chat timed out")
        except AppError:
            raise
        except Exception as e:
            logger.warning(f"Chat failed: {e}")
            raise ProviderUnavailable(f"AI chat failed: {e}")
