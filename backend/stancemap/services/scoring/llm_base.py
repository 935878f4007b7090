"""Async LLM provider interface and implementations.

Both SDKs (openai, google-genai) are sync; calls run in a worker thread via
asyncio.to_thread and are bounded by asyncio.wait_for. Every provider
normalizes its envelope into a ProviderResponse whose content is already
validated JSON text, and classifies failures as retryable or fatal.
"""
import asyncio
import json
import logging
import re
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Tuple

from stancemap.services.scoring.errors import ProviderError
from stancemap.services.scoring.models import CallOptions, LogRecord, ProviderResponse

logger = logging.getLogger(__name__)

# Replies shorter than this (ignoring whitespace) are treated as empty.
MIN_CONTENT_LENGTH = 10

LOG_PROMPT_LIMIT = 20000
LOG_RESPONSE_LIMIT = 50000

_FENCE_RE = re.compile(r"^```(?:json|JSON)?\s*\n?(.*?)\n?\s*```$", re.DOTALL)
_HTML_TITLE_RE = re.compile(r"<title[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL)


def unwrap_code_fence(text: str) -> str:
    """Strip a surrounding ```json ... ``` fence, if present."""
    match = _FENCE_RE.match(text.strip())
    if match:
        return match.group(1).strip()
    return text.strip()


def clean_response_content(content: Optional[str]) -> str:
    """Trim, unwrap and validate a model reply.

    Returns the JSON text. Empty, near-empty and non-JSON replies raise a
    retryable ProviderError: truncation and stray prose usually clear up
    on the next attempt.
    """
    text = (content or "").strip()
    if len("".join(text.split())) < MIN_CONTENT_LENGTH:
        raise ProviderError.retryable_error(
            f"Empty or near-empty response ({len(text)} chars)"
        )

    text = unwrap_code_fence(text)
    try:
        json.loads(text)
    except json.JSONDecodeError as e:
        raise ProviderError.retryable_error(
            f"Response is not valid JSON ({e.msg} at char {e.pos}): {text[:200]}"
        )
    return text


def clean_error_body(status_code: Optional[int], body: Optional[str]) -> str:
    """Rewrite an HTTP error body (HTML page or JSON envelope) into one clean line."""
    prefix = f"HTTP {status_code}" if status_code else "Provider error"
    text = (body or "").strip()
    if not text:
        return prefix

    lowered = text[:500].lower()
    if lowered.startswith("<") and ("<html" in lowered or "<!doctype" in lowered):
        match = _HTML_TITLE_RE.search(text)
        title = " ".join(match.group(1).split()) if match else ""
        return f"{prefix}: {title or 'provider returned an HTML error page'}"

    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return f"{prefix}: {text[:300]}"

    message = None
    if isinstance(data, dict):
        err = data.get("error", data)
        if isinstance(err, dict):
            message = err.get("message") or err.get("status") or err.get("code")
        elif isinstance(err, str):
            message = err
        if not message:
            message = data.get("message")
    if isinstance(data, list) and data and isinstance(data[0], dict):
        # Gemini sometimes wraps the error envelope in a one-element list
        return clean_error_body(status_code, json.dumps(data[0]))
    return f"{prefix}: {message or text[:300]}"


class BaseLLMProvider(ABC):
    """Abstract base class for async LLM providers."""

    provider_id = "base"

    def __init__(self, api_key: str, model_name: str):
        if not model_name:
            raise ValueError("No model configured for provider")
        self.api_key = api_key
        self.model_name = model_name

    async def call(
        self, system_prompt: str, user_prompt: str,
        options: Optional[CallOptions] = None, *, action: str = "call",
    ) -> ProviderResponse:
        """Issue one graded request and return validated JSON content.

        Raises ProviderError: retryable for malformed/empty replies, fatal for
        transport, HTTP and timeout failures.
        """
        if not system_prompt or not system_prompt.strip():
            raise ValueError("system_prompt must be non-empty")
        if not user_prompt or not user_prompt.strip():
            raise ValueError("user_prompt must be non-empty")
        options = options or CallOptions()

        try:
            pending = asyncio.to_thread(self._sync_call, system_prompt, user_prompt, options)
            if options.timeout:
                text, raw = await asyncio.wait_for(pending, timeout=options.timeout)
            else:
                text, raw = await pending
        except asyncio.TimeoutError:
            raise ProviderError.fatal(
                f"{self.provider_id} call to {self.model_name} timed out after {options.timeout}s"
            )
        except ProviderError:
            raise
        except Exception as e:
            raise self._translate_error(e) from e

        return ProviderResponse(content=clean_response_content(text), raw=raw)

    @abstractmethod
    def _sync_call(
        self, system_prompt: str, user_prompt: str, options: CallOptions,
    ) -> Tuple[Optional[str], Dict[str, Any]]:
        """Blocking SDK call. Returns (reply text, response metadata)."""

    def _translate_error(self, exc: Exception) -> ProviderError:
        status = getattr(exc, "status_code", None)
        body = None
        response = getattr(exc, "response", None)
        if response is not None:
            try:
                body = response.text
            except Exception:
                body = None
        message = clean_error_body(status, body) if body else f"{type(exc).__name__}: {exc}"
        return ProviderError.fatal(message, status_code=status)


class OpenAIProvider(BaseLLMProvider):
    """Chat-completion provider (Provider A)."""

    provider_id = "openai"

    def __init__(self, api_key: str, model_name: str = ""):
        super().__init__(api_key, model_name)
        from openai import OpenAI
        # Non-2xx responses surface immediately; the retry policy decides the rest.
        self.client = OpenAI(api_key=api_key, max_retries=0)

    def _sync_call(self, system_prompt, user_prompt, options):
        params: Dict[str, Any] = {
            "model": self.model_name,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": options.temperature,
        }
        if options.max_tokens:
            params["max_tokens"] = options.max_tokens
        if options.json_response:
            params["response_format"] = {"type": "json_object"}
        if options.timeout:
            params["timeout"] = options.timeout

        response = self.client.chat.completions.create(**params)
        content = None
        finish_reason = None
        if response.choices:
            content = response.choices[0].message.content
            finish_reason = response.choices[0].finish_reason
        raw = {
            "status": 200,
            "id": getattr(response, "id", None),
            "finish_reason": finish_reason,
            "tokens_in": response.usage.prompt_tokens if response.usage else None,
            "tokens_out": response.usage.completion_tokens if response.usage else None,
        }
        return content, raw

    def _translate_error(self, exc):
        from openai import APIStatusError, APITimeoutError, APIConnectionError

        if isinstance(exc, APITimeoutError):
            return ProviderError.fatal(f"openai call to {self.model_name} timed out")
        if isinstance(exc, APIStatusError):
            try:
                body = exc.response.text
            except Exception:
                body = None
            return ProviderError.fatal(
                clean_error_body(exc.status_code, body or exc.message),
                status_code=exc.status_code,
            )
        if isinstance(exc, APIConnectionError):
            return ProviderError.fatal(f"openai connection error: {exc}")
        return super()._translate_error(exc)


class GeminiProvider(BaseLLMProvider):
    """Generate-content provider (Provider B) with optional Google Search grounding."""

    provider_id = "gemini"

    def __init__(self, api_key: str, model_name: str = ""):
        super().__init__(api_key, model_name)
        if not api_key:
            raise ValueError("Gemini api_key must be provided")
        from google import genai
        self.client = genai.Client(api_key=api_key)

    @staticmethod
    def _extract_tokens(response):
        """Extract token counts from Gemini response. Returns (in, out) tuple."""
        tokens_in = tokens_out = None
        if hasattr(response, "usage_metadata") and response.usage_metadata:
            tokens_in = getattr(response.usage_metadata, "prompt_token_count", None)
            tokens_out = getattr(response.usage_metadata, "candidates_token_count", None)
        return tokens_in, tokens_out

    def _sync_call(self, system_prompt, user_prompt, options):
        from google.genai import types

        config_dict: Dict[str, Any] = {
            "temperature": options.temperature,
            "system_instruction": system_prompt,
        }
        if options.max_tokens:
            config_dict["max_output_tokens"] = options.max_tokens
        if options.grounding:
            # The API rejects a JSON mime type combined with tools; the prompt asks for JSON instead.
            config_dict["tools"] = [types.Tool(google_search=types.GoogleSearch())]
        elif options.json_response:
            config_dict["response_mime_type"] = "application/json"
        if options.timeout:
            config_dict["http_options"] = types.HttpOptions(timeout=int(options.timeout * 1000))
        config = types.GenerateContentConfig(**config_dict)

        response = self.client.models.generate_content(
            model=self.model_name, contents=user_prompt, config=config,
        )
        tokens_in, tokens_out = self._extract_tokens(response)
        finish_reason = None
        if getattr(response, "candidates", None):
            reason = getattr(response.candidates[0], "finish_reason", None)
            finish_reason = getattr(reason, "name", reason)
        raw = {
            "status": 200,
            "finish_reason": finish_reason,
            "tokens_in": tokens_in,
            "tokens_out": tokens_out,
            "grounded": options.grounding,
        }
        return response.text, raw

    def _translate_error(self, exc):
        from google.genai import errors

        if isinstance(exc, errors.APIError):
            body = json.dumps(exc.details) if getattr(exc, "details", None) else exc.message
            return ProviderError.fatal(clean_error_body(exc.code, body), status_code=exc.code)
        return super()._translate_error(exc)


class LoggingProvider(BaseLLMProvider):
    """Wraps any provider and emits one AI log record per attempt.

    The sink's ``append`` is best-effort and never raises, so this wrapper
    neither awaits nor checks it.
    """

    def __init__(self, inner: BaseLLMProvider, log_sink=None):
        self._inner = inner
        self._log_sink = log_sink

    @property
    def provider_id(self):
        return self._inner.provider_id

    @property
    def model_name(self):
        return self._inner.model_name

    @property
    def api_key(self):
        return self._inner.api_key

    def _sync_call(self, system_prompt, user_prompt, options):
        return self._inner._sync_call(system_prompt, user_prompt, options)

    async def call(self, system_prompt, user_prompt, options=None, *, action="call"):
        started_at = datetime.now(timezone.utc)
        start = time.monotonic()
        response: Optional[ProviderResponse] = None
        error_text = None
        status = None
        try:
            response = await self._inner.call(system_prompt, user_prompt, options, action=action)
            status = response.raw.get("status", 200)
            return response
        except ProviderError as e:
            error_text = str(e)
            status = e.status_code
            raise
        except Exception as e:
            error_text = f"{type(e).__name__}: {e}"
            raise
        finally:
            duration_ms = (time.monotonic() - start) * 1000
            self._emit(LogRecord(
                timestamp=started_at,
                action=action,
                provider=self.provider_id,
                model=self.model_name,
                system_prompt=(system_prompt or "")[:LOG_PROMPT_LIMIT],
                user_prompt=(user_prompt or "")[:LOG_PROMPT_LIMIT],
                status=status,
                response=(response.content[:LOG_RESPONSE_LIMIT] if response else None),
                error=error_text,
                duration_ms=round(duration_ms, 2),
            ))

    def _emit(self, record: LogRecord) -> None:
        if self._log_sink is not None:
            self._log_sink.append(record)


def create_llm_provider(provider: str, api_key: str = "", model_name: str = "") -> BaseLLMProvider:
    """Factory. Plain constructor, no credential policy."""
    if not model_name:
        raise ValueError("No model selected for provider")
    if provider == "gemini":
        return GeminiProvider(api_key=api_key, model_name=model_name)
    elif provider == "openai":
        return OpenAIProvider(api_key=api_key, model_name=model_name)
    else:
        raise ValueError(f"Unknown LLM provider: {provider}")
