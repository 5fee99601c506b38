"""
Completion service adapter for an OpenAI-compatible /chat/completions endpoint.
"""

import logging
import math
import os
import re
from typing import Optional

import httpx
from pydantic import BaseModel, ConfigDict

from errors import (
    ModelUnavailableError,
    UpstreamError,
    UpstreamInvalidResponse,
    UpstreamTimeout,
    UpstreamUnavailable,
)
from turn_config import _env_float, _env_int

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.together.xyz/v1/chat/completions"
DEFAULT_MODEL = "meta-llama/Meta-Llama-3.1-8B-Instruct-Turbo"
SERVERLESS_FALLBACKS = [
    "mistralai/Mixtral-8x7B-Instruct-v0.1",
    "Qwen/Qwen2.5-7B-Instruct",
    "meta-llama/Meta-Llama-3.1-8B-Instruct-Turbo",
]


class DecodingParams(BaseModel):
    """Sampling controls for one completion call."""

    temperature: float = 0.85
    top_p: float = 0.92
    repetition_penalty: float = 1.05
    presence_penalty: float = 0.2
    frequency_penalty: float = 0.4
    stop: Optional[list[str]] = None
    max_tokens: Optional[int] = None
    model: Optional[str] = None

    def to_payload(self) -> dict:
        return self.model_dump(exclude_none=True, exclude={"model"})


class CompletionConfig(BaseModel):
    """Completion endpoint configuration."""

    model_config = ConfigDict(protected_namespaces=())

    api_url: str = DEFAULT_API_URL
    api_key: Optional[str] = None
    model_name: str = DEFAULT_MODEL
    fallback_models: list[str] = SERVERLESS_FALLBACKS
    max_tokens: int = 1000
    timeout_sec: float = 60.0

    @classmethod
    def from_env(cls) -> "CompletionConfig":
        fallbacks_raw = os.getenv("TOGETHER_FALLBACK_MODELS", "")
        fallbacks = [m.strip() for m in fallbacks_raw.split(",") if m.strip()] or list(SERVERLESS_FALLBACKS)
        return cls(
            api_url=os.getenv("TOGETHER_API_URL", DEFAULT_API_URL),
            api_key=os.getenv("TOGETHER_API_KEY"),
            model_name=os.getenv("TOGETHER_MODEL", DEFAULT_MODEL),
            fallback_models=fallbacks,
            max_tokens=_env_int("TOGETHER_MAX_TOKENS", 1000, 16, 8192),
            timeout_sec=_env_float("TOGETHER_TIMEOUT_SEC", 60.0, 1.0, 600.0),
        )


def _error_body(response: httpx.Response) -> dict:
    try:
        data = response.json()
    except ValueError:
        return {"message": (response.text or "")[:300]}
    return data if isinstance(data, dict) else {"message": str(data)[:300]}


def _error_code_and_message(body: dict) -> tuple[str, str]:
    err = body.get("error")
    if isinstance(err, dict):
        return str(err.get("code") or body.get("code") or ""), str(err.get("message") or body.get("message") or "")
    return str(body.get("code") or ""), str(err or body.get("message") or "")


def is_model_unavailable(body: dict) -> bool:
    code, message = _error_code_and_message(body)
    if code == "model_not_available":
        return True
    return bool(re.search(r"non-serverless|dedicated endpoint", message, re.IGNORECASE))


class CompletionClient:
    """Single chat-completion call with ordered model fallback."""

    def __init__(self, config: Optional[CompletionConfig] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config or CompletionConfig.from_env()
        self._transport = transport

    def candidate_models(self, preferred: Optional[str] = None) -> list[str]:
        ordered = [preferred or self.config.model_name, self.config.model_name, *self.config.fallback_models]
        seen: list[str] = []
        for model in ordered:
            if model and model not in seen:
                seen.append(model)
        return seen

    @staticmethod
    def _parse_retry_after(response: httpx.Response) -> float:
        """Wait hint from rate-limit headers ("2", "1m26.4s", "305ms")."""
        ra = response.headers.get("retry-after", "")
        if ra:
            try:
                return float(ra)
            except ValueError:
                pass
        for hdr in ("x-ratelimit-reset-tokens", "x-ratelimit-reset-requests", "x-ratelimit-reset"):
            val = response.headers.get(hdr, "")
            if not val:
                continue
            total = 0.0
            m = re.search(r"(\d+)m(?!s)", val)
            if m:
                total += int(m.group(1)) * 60
            ms = re.search(r"(\d+)ms", val)
            if ms:
                total += int(ms.group(1)) / 1000.0
            s = re.search(r"(?<!m)([\d.]+)s\b", val)
            if s:
                total += float(s.group(1))
            if total > 0:
                return total
        return 2.0

    async def complete(self, messages: list[dict], params: Optional[DecodingParams] = None) -> str:
        """Return the first choice's text; raise a typed UpstreamError on failure."""
        params = params or DecodingParams()
        if not self.config.api_key:
            raise UpstreamUnavailable("Completion service is not configured")

        last_error: Optional[UpstreamError] = None
        async with httpx.AsyncClient(timeout=self.config.timeout_sec, transport=self._transport) as client:
            for model in self.candidate_models(params.model):
                try:
                    return await self._call_model(client, model, messages, params)
                except ModelUnavailableError as exc:
                    logger.warning("model unavailable, trying next fallback model=%s detail=%s", model, exc.message)
                    last_error = exc

        raise UpstreamUnavailable(
            f"No completion model available: {last_error.message if last_error else 'no candidates'}",
            model=last_error.model if last_error else None,
        )

    async def _call_model(
        self,
        client: httpx.AsyncClient,
        model: str,
        messages: list[dict],
        params: DecodingParams,
    ) -> str:
        payload = {
            "model": model,
            "messages": messages,
            "max_tokens": self.config.max_tokens,
            **params.to_payload(),
        }
        headers = {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
        }
        try:
            response = await client.post(self.config.api_url, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise UpstreamTimeout(f"Completion request timed out: {exc}", model=model) from exc
        except httpx.HTTPError as exc:
            raise UpstreamUnavailable(f"Completion service unreachable: {exc}", model=model) from exc

        if response.status_code == 200:
            try:
                result = response.json()
            except ValueError as exc:
                raise UpstreamInvalidResponse("Completion response is not JSON", model=model) from exc
            choices = result.get("choices") if isinstance(result, dict) else None
            if not choices or not isinstance(choices[0], dict):
                raise UpstreamInvalidResponse("Completion response has no choices", model=model)
            content = (choices[0].get("message") or {}).get("content")
            if content is not None and not isinstance(content, str):
                raise UpstreamInvalidResponse("Completion content is not text", model=model)
            logger.debug("completion ok model=%s chars=%d", model, len(content or ""))
            return (content or "").strip()

        body = _error_body(response)
        _, message = _error_code_and_message(body)
        if is_model_unavailable(body):
            raise ModelUnavailableError(message or f"http={response.status_code}", model=model)
        if response.status_code == 429:
            wait = self._parse_retry_after(response)
            raise UpstreamUnavailable("Completion service rate limited", retry_after=max(1, math.ceil(wait)), model=model)
        if response.status_code in (408, 504):
            raise UpstreamTimeout(f"Completion service timed out http={response.status_code}", model=model)
        raise UpstreamUnavailable(f"Completion service error http={response.status_code} {message[:200]}".strip(), model=model)
