"""JSON-mode chat completions against an OpenAI-compatible API.

Every judgment call in the pipeline (extraction, generation, validation,
resolution, dispute review) goes through :meth:`LLMClient.json_request`.
"""

from __future__ import annotations

import json
import re
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

import httpx

from utils.logger import get_logger
from utils.retry import LLM_RETRY, RetryConfig, retry_async

logger = get_logger("llm")


class LLMError(Exception):
    """The judgment service failed or returned something unusable. Retried by the consumer."""


@dataclass
class TokenUsage:
    input_tokens: int
    output_tokens: int
    total_tokens: int


@dataclass
class LLMResult:
    content: dict[str, Any]
    request_id: str
    model: str
    usage: Optional[TokenUsage] = None
    latency_ms: int = 0


def parse_json_content(text: str) -> dict[str, Any]:
    """Parse a JSON object out of model output, tolerating code fences and chatter."""
    text = (text or "").strip()
    if not text:
        raise LLMError("LLM returned empty JSON content")

    candidates = [text]
    fenced = re.search(r"```(?:json)?\s*([\s\S]*?)\s*```", text, flags=re.IGNORECASE)
    if fenced:
        candidates.append(fenced.group(1).strip())
    obj_start = text.find("{")
    obj_end = text.rfind("}")
    if obj_start != -1 and obj_end > obj_start:
        candidates.append(text[obj_start : obj_end + 1])

    last_error: Optional[Exception] = None
    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError as exc:
            last_error = exc
            continue
        if isinstance(parsed, dict):
            return parsed
    raise LLMError(f"LLM returned invalid JSON: {last_error}")


def _default_client_factory(timeout: float) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=timeout)


class LLMClient:
    def __init__(
        self,
        api_key: Optional[str],
        *,
        base_url: str = "https://api.openai.com/v1",
        default_model: str = "gpt-4o-mini",
        timeout_seconds: float = 120.0,
        retry: RetryConfig = LLM_RETRY,
        client_factory: Callable[[float], httpx.AsyncClient] = _default_client_factory,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.default_model = default_model
        self.timeout_seconds = timeout_seconds
        self.retry = retry
        self._client_factory = client_factory

    def _build_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def json_request(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        temperature: float = 0.3,
        max_tokens: int = 2000,
        model: Optional[str] = None,
    ) -> LLMResult:
        if not self.api_key:
            raise LLMError("OPENAI_API_KEY is not configured")

        model = model or self.default_model
        request_id = uuid.uuid4().hex
        payload = {
            "model": model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": temperature,
            "max_tokens": max_tokens,
            "response_format": {"type": "json_object"},
        }
        start_ms = int(time.time() * 1000)
        logger.info("Making LLM request", request_id=request_id, model=model)

        async with self._client_factory(self.timeout_seconds) as client:

            async def _post() -> httpx.Response:
                response = await client.post(
                    f"{self.base_url}/chat/completions",
                    headers=self._build_headers(),
                    json=payload,
                )
                response.raise_for_status()
                return response

            try:
                response = await retry_async(_post, self.retry, operation="llm.chat")
            except httpx.HTTPError as exc:
                raise LLMError(f"LLM request failed: {exc}") from exc

        try:
            data = response.json()
            message = data["choices"][0]["message"]
        except (ValueError, KeyError, IndexError) as exc:
            raise LLMError(f"Unexpected LLM response shape: {exc}") from exc

        usage_data = data.get("usage") or {}
        result = LLMResult(
            content=parse_json_content(message.get("content") or ""),
            request_id=str(data.get("id") or request_id),
            model=str(data.get("model") or model),
            usage=TokenUsage(
                input_tokens=int(usage_data.get("prompt_tokens", 0)),
                output_tokens=int(usage_data.get("completion_tokens", 0)),
                total_tokens=int(usage_data.get("total_tokens", 0)),
            ),
            latency_ms=int(time.time() * 1000) - start_ms,
        )
        logger.info(
            "LLM request completed",
            request_id=result.request_id,
            latency_ms=result.latency_ms,
            total_tokens=result.usage.total_tokens if result.usage else 0,
        )
        return result
