"""
Task Planner — LLM Client
=========================
Version 1.0 — November 2025

Completion providers used by the planning pipeline.

Supported Providers:
- openrouter: OpenRouter proxy (requires OPENROUTER_API_KEY)
- google: Gemini models (requires GEMINI_API_KEY or GOOGLE_API_KEY)

Each provider has a primary and a fallback model. A rate-limit signal on the
primary (a 429/quota error, or an error object embedded in an otherwise
successful response) is retried exactly once on the fallback model. Safety
blocks are reported as ResultKind.BLOCKED, never as parse failures.

Example:
    config = PlannerConfig.from_env()
    provider = create_completion_provider(config)
    result = await provider.generate_structured(prompt, TaskBreakdownResponse)
    if result.success:
        subtasks = result.data.subtasks
"""

import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple, Type

from pydantic import BaseModel

from config import ModelConfig, PlannerConfig
from llm_logger import log_llm_request, log_llm_response
from metrics import llm_metrics
from planner_types import LLMResult, ResultKind
from planning.response_parser import parse_and_validate_json_response, parse_json_text

logger = logging.getLogger(__name__)

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"

_RATE_LIMIT_RE = re.compile(
    r"rate[ _-]?limit|resource[ _]exhausted|too many requests"
    r"|\b(?:status|code|error|http)\W{0,3}429\b"
    r"|quota[ _](?:exceeded|exhausted)|exceeded (?:your |the )?(?:current )?quota|insufficient_quota",
    re.IGNORECASE,
)


class ProviderConfigurationError(Exception):
    """The provider cannot be built (unknown backend, missing credentials)."""


# =============================================================================
# LLM FACTORY
# =============================================================================

def get_llm(model_config: ModelConfig, json_mode: bool = False, api_key: Optional[str] = None):
    """
    Get a chat model instance for one model configuration.

    Client-level retries are disabled: the provider classes below own the
    retry policy (one fallback attempt on rate limits).

    Args:
        model_config: Model configuration
        json_mode: Ask the backend for a JSON object response
        api_key: Overrides the key read from the environment

    Returns:
        Configured LangChain chat model (or a bound runnable in JSON mode)
    """
    provider = model_config.provider.lower()

    if provider == "openrouter":
        # OpenRouter uses OpenAI-compatible API
        from langchain_openai import ChatOpenAI
        llm = ChatOpenAI(
            model=model_config.model_name,
            temperature=model_config.temperature,
            max_tokens=model_config.max_tokens,
            api_key=api_key or os.getenv("OPENROUTER_API_KEY"),
            base_url=OPENROUTER_BASE_URL,
            max_retries=0,
            timeout=60.0,
            default_headers={"X-Title": "Task Planner"},
        )
        if json_mode:
            return llm.bind(response_format={"type": "json_object"})
        return llm
    elif provider == "google":
        from langchain_google_genai import ChatGoogleGenerativeAI
        extra: Dict[str, Any] = {}
        if json_mode:
            extra["response_mime_type"] = "application/json"
        return ChatGoogleGenerativeAI(
            model=model_config.model_name,
            temperature=model_config.temperature,
            max_tokens=model_config.max_tokens,
            google_api_key=api_key or os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY"),
            max_retries=0,
            timeout=60.0,
            **extra,
        )
    else:
        raise ProviderConfigurationError(f"Unsupported LLM provider: {provider}")


# =============================================================================
# SIGNAL DETECTION
# =============================================================================

def is_rate_limit_error(error: BaseException) -> bool:
    """True when an exception carries a rate-limit or quota signal."""
    for attr in ("status_code", "code", "status"):
        if getattr(error, attr, None) == 429:
            return True
    return bool(_RATE_LIMIT_RE.search(str(error)))


def message_text(message: Any) -> str:
    """Plain text of a chat model response (content may be a list of parts)."""
    content = getattr(message, "content", message)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type", "text") == "text":
                parts.append(part.get("text", ""))
        return "".join(parts)
    return "" if content is None else str(content)


def _error_is_rate_limit(error: Any) -> bool:
    if isinstance(error, dict):
        if error.get("code") in (429, "429") or error.get("status") in (429, "RESOURCE_EXHAUSTED"):
            return True
        error = error.get("message", "")
    return bool(_RATE_LIMIT_RE.search(str(error)))


class _RateLimited(Exception):
    pass


class _Blocked(Exception):
    pass


@dataclass
class _Completion:
    text: Optional[str]
    model: str
    kind: ResultKind = ResultKind.OK
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.kind == ResultKind.OK


# =============================================================================
# PROVIDERS
# =============================================================================

LLMFactory = Callable[[ModelConfig, bool], Any]


class CompletionProvider:
    """
    One LLM backend with a primary and a fallback model.

    Subclasses name the backend and say how that backend reports safety
    blocks and in-band errors. The model objects come from ``llm_factory``
    (``get_llm`` by default) and are cached per call shape.
    """

    provider_name = "base"

    def __init__(
        self,
        primary_model: str,
        fallback_model: str,
        api_key: Optional[str] = None,
        llm_factory: Optional[LLMFactory] = None,
        default_temperature: float = 0.5,
        logs_path: Optional[str] = None,
    ):
        self.primary_model = primary_model
        self.fallback_model = fallback_model
        self.default_temperature = default_temperature
        self.logs_path = logs_path
        self._api_key = api_key
        self._llm_factory = llm_factory or (
            lambda model_config, json_mode: get_llm(model_config, json_mode, api_key=self._api_key)
        )
        self._models: Dict[Tuple[str, float, Optional[int], bool], Any] = {}

    # ----- backend hooks -------------------------------------------------

    def blocked_reason(self, message: Any) -> Optional[str]:
        """Reason the backend refused to answer, or None."""
        return None

    def is_blocked_error(self, error: BaseException) -> bool:
        return False

    def embedded_rate_limit(self, message: Any) -> bool:
        """Rate-limit signal inside a response the client treated as successful."""
        metadata = getattr(message, "response_metadata", None) or {}
        error = metadata.get("error")
        if error and _error_is_rate_limit(error):
            return True

        text = message_text(message).strip()
        if not text.startswith("{") or '"error"' not in text:
            return False
        body = parse_json_text(text)
        if isinstance(body, dict) and set(body.keys()) <= {"error", "user_id"} and body.get("error"):
            return _error_is_rate_limit(body["error"])
        return False

    # ----- invocation ----------------------------------------------------

    def _get_model(self, model_name: str, temperature: float, max_tokens: Optional[int], json_mode: bool):
        key = (model_name, temperature, max_tokens, json_mode)
        if key not in self._models:
            config = ModelConfig(
                provider=self.provider_name,
                model_name=model_name,
                temperature=temperature,
                max_tokens=max_tokens,
            )
            self._models[key] = self._llm_factory(config, json_mode)
        return self._models[key]

    async def _attempt(
        self,
        model_name: str,
        prompt: str,
        temperature: float,
        max_tokens: Optional[int],
        json_mode: bool,
        feature_id: Optional[str],
    ) -> str:
        log_llm_request(self.logs_path, feature_id, prompt, model_name, {
            "provider": self.provider_name,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "json_mode": json_mode,
        })

        with llm_metrics.track_request(model_name, self.provider_name) as meta:
            try:
                llm = self._get_model(model_name, temperature, max_tokens, json_mode)
                response = await llm.ainvoke(prompt)
            except Exception as e:
                if is_rate_limit_error(e):
                    meta["result"] = "rate_limit"
                    raise _RateLimited(str(e)) from e
                if self.is_blocked_error(e):
                    meta["result"] = "blocked"
                    raise _Blocked(str(e)) from e
                raise

            reason = self.blocked_reason(response)
            if reason:
                meta["result"] = "blocked"
                raise _Blocked(reason)
            if self.embedded_rate_limit(response):
                meta["result"] = "rate_limit"
                raise _RateLimited("rate limit reported in response body")

        text = message_text(response)
        log_llm_response(self.logs_path, feature_id, model_name, text, status="ok")
        return text

    async def _complete(
        self,
        prompt: str,
        temperature: Optional[float],
        max_tokens: Optional[int],
        json_mode: bool,
        feature_id: Optional[str],
    ) -> _Completion:
        temperature = self.default_temperature if temperature is None else temperature
        model = self.primary_model

        try:
            try:
                text = await self._attempt(model, prompt, temperature, max_tokens, json_mode, feature_id)
                return _Completion(text=text, model=model)
            except _RateLimited as e:
                llm_metrics.rate_limit_events.labels(model=model, provider=self.provider_name).inc()
                llm_metrics.fallback_total.labels(provider=self.provider_name).inc()
                logger.warning(f"⚠️ Rate limited on {model} ({e}); retrying once with {self.fallback_model}")

            model = self.fallback_model
            text = await self._attempt(model, prompt, temperature, max_tokens, json_mode, feature_id)
            return _Completion(text=text, model=model)

        except _RateLimited as e:
            llm_metrics.rate_limit_events.labels(model=model, provider=self.provider_name).inc()
            logger.error(f"❌ Fallback model {model} also rate limited: {e}")
            return _Completion(text=None, model=model, kind=ResultKind.RATE_LIMITED,
                               error=f"Rate limit exceeded on {self.primary_model} and {self.fallback_model}")
        except _Blocked as e:
            logger.warning(f"Content blocked by {self.provider_name} safety filter: {e}")
            return _Completion(text=None, model=model, kind=ResultKind.BLOCKED,
                               error=f"Content blocked by safety filter: {e}")
        except Exception as e:
            logger.error(f"❌ {self.provider_name} call to {model} failed: {e}")
            log_llm_response(self.logs_path, feature_id, model, None, status=f"error: {e}")
            return _Completion(text=None, model=model, kind=ResultKind.ERROR, error=str(e))

    async def generate_structured(
        self,
        prompt: str,
        schema: Type[BaseModel],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        feature_id: Optional[str] = None,
    ) -> LLMResult:
        """
        Ask for a JSON answer and validate it against a pydantic schema.

        Returns:
            LLMResult; ``kind`` separates provider failures (blocked,
            rate_limited, error) from parse failures. ``text`` holds the
            model's full answer whenever one was received.
        """
        completion = await self._complete(prompt, temperature, max_tokens, True, feature_id)
        if not completion.ok:
            return LLMResult.fail(completion.error or "completion failed", kind=completion.kind)

        result = parse_and_validate_json_response(completion.text, schema)
        result.text = completion.text
        if not result.success:
            llm_metrics.parse_failures_total.labels(provider=self.provider_name).inc()
            logger.warning(f"Structured response from {completion.model} failed validation: {result.error}")
        return result

    async def generate_free_text(
        self,
        prompt: str,
        temperature: Optional[float] = None,
        feature_id: Optional[str] = None,
    ) -> Optional[str]:
        """Plain completion; None when the call failed for any reason."""
        completion = await self._complete(prompt, temperature, None, False, feature_id)
        if not completion.ok:
            return None
        return completion.text


class OpenRouterProvider(CompletionProvider):
    """OpenRouter (OpenAI-compatible) backend."""

    provider_name = "openrouter"

    def blocked_reason(self, message: Any) -> Optional[str]:
        metadata = getattr(message, "response_metadata", None) or {}
        if metadata.get("finish_reason") == "content_filter":
            return "finish_reason=content_filter"
        return None

    def is_blocked_error(self, error: BaseException) -> bool:
        return "content_filter" in str(error) or "content management policy" in str(error).lower()


class GeminiProvider(CompletionProvider):
    """Google Gemini backend."""

    provider_name = "google"

    _BLOCK_FINISH_REASONS = ("SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "SPII")

    def blocked_reason(self, message: Any) -> Optional[str]:
        metadata = getattr(message, "response_metadata", None) or {}
        feedback = metadata.get("prompt_feedback") or {}
        block_reason = feedback.get("block_reason") if isinstance(feedback, dict) else None
        if block_reason:
            return f"block_reason={block_reason}"

        finish_reason = str(metadata.get("finish_reason") or "")
        if finish_reason.upper() in self._BLOCK_FINISH_REASONS:
            return f"finish_reason={finish_reason}"
        return None

    def is_blocked_error(self, error: BaseException) -> bool:
        error_msg = str(error)
        return "block_reason" in error_msg or "SAFETY" in error_msg


def create_completion_provider(
    config: PlannerConfig,
    llm_factory: Optional[LLMFactory] = None,
) -> Optional[CompletionProvider]:
    """
    Build the provider for the configured credentials.

    OpenRouter is used when its key is set, otherwise Gemini. Returns None
    when neither key is configured; callers report that as a planning failure.
    """
    common = {
        "llm_factory": llm_factory,
        "default_temperature": config.planning_temperature,
        "logs_path": config.llm_logs_path,
    }
    if config.openrouter_api_key:
        logger.info(f"Using OpenRouter ({config.openrouter_model}, fallback {config.fallback_openrouter_model})")
        return OpenRouterProvider(
            config.openrouter_model,
            config.fallback_openrouter_model,
            api_key=config.openrouter_api_key,
            **common,
        )
    if config.gemini_api_key:
        logger.info(f"Using Gemini ({config.gemini_model}, fallback {config.fallback_gemini_model})")
        return GeminiProvider(
            config.gemini_model,
            config.fallback_gemini_model,
            api_key=config.gemini_api_key,
            **common,
        )
    logger.warning("No LLM API key configured (OPENROUTER_API_KEY / GEMINI_API_KEY); planning is disabled")
    return None
