from __future__ import annotations

import logging
import re
from typing import Any

import httpx

from triage_core.errors import (
    ModelAuthError,
    ModelError,
    ModelOutputError,
    ModelRequestError,
    ModelTransientError,
)
from triage_core.models import ModelCompletion
from triage_core.settings import TriageSettings

logger = logging.getLogger(__name__)

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+);base64,(?P<data>.+)$", re.DOTALL)


def _provider_error_message(response: httpx.Response) -> str:
    message = response.text.strip()
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        err = payload.get("error")
        if isinstance(err, dict):
            msg = err.get("message")
            if isinstance(msg, str) and msg.strip():
                return msg.strip()
        msg = payload.get("message")
        if isinstance(msg, str) and msg.strip():
            return msg.strip()
    return message or f"HTTP {response.status_code}"


def classify_http_error(response: httpx.Response, provider: str) -> ModelError:
    message = f"{provider}: {_provider_error_message(response)}"
    status = response.status_code
    if status in {401, 403}:
        return ModelAuthError(message, operation="model_call")
    if status in {408, 409, 429} or status >= 500:
        return ModelTransientError(message, operation="model_call")
    return ModelRequestError(message, operation="model_call")


def _coerce_completion_text(response_json: dict[str, Any]) -> tuple[str, str | None]:
    choices = response_json.get("choices")
    if not isinstance(choices, list) or not choices:
        return "", None
    first = choices[0] if isinstance(choices[0], dict) else {}
    finish_reason = first.get("finish_reason")
    content = (first.get("message") or {}).get("content")
    if isinstance(content, str):
        return content, finish_reason
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict):
                text_value = item.get("text")
                if isinstance(text_value, str):
                    parts.append(text_value)
        return "\n".join(parts), finish_reason
    return "", finish_reason


def _coerce_anthropic_text(response_json: dict[str, Any]) -> tuple[str, str | None]:
    finish_reason = "length" if response_json.get("stop_reason") == "max_tokens" else response_json.get("stop_reason")
    content = response_json.get("content")
    if not isinstance(content, list):
        return "", finish_reason
    parts: list[str] = []
    for item in content:
        if not isinstance(item, dict) or item.get("type") != "text":
            continue
        text_value = item.get("text")
        if isinstance(text_value, str) and text_value.strip():
            parts.append(text_value.strip())
    return "\n".join(parts).strip(), finish_reason


def _anthropic_part(part: Any) -> dict[str, Any] | None:
    if isinstance(part, str):
        return {"type": "text", "text": part}
    if not isinstance(part, dict):
        return None
    if part.get("type") == "text":
        return {"type": "text", "text": str(part.get("text") or "")}
    if part.get("type") == "image_url":
        url = str((part.get("image_url") or {}).get("url") or "")
        match = _DATA_URL_RE.match(url)
        if match:
            return {
                "type": "image",
                "source": {"type": "base64", "media_type": match.group("mime"), "data": match.group("data")},
            }
        if url:
            return {"type": "image", "source": {"type": "url", "url": url}}
    return None


def to_anthropic_messages(messages: list[dict[str, Any]]) -> tuple[str, list[dict[str, Any]]]:
    system_parts: list[str] = []
    converted: list[dict[str, Any]] = []
    for message in messages:
        role = str(message.get("role") or "").strip().lower()
        content = message.get("content")
        if role == "system":
            if isinstance(content, str) and content.strip():
                system_parts.append(content.strip())
            continue
        if role not in {"user", "assistant"}:
            continue
        raw_parts = content if isinstance(content, list) else [content]
        parts = [part for part in (_anthropic_part(item) for item in raw_parts) if part]
        if not parts:
            continue
        # The Messages API requires strictly alternating roles.
        if converted and converted[-1]["role"] == role:
            converted[-1]["content"].extend(parts)
        else:
            converted.append({"role": role, "content": parts})
    if converted and converted[0]["role"] != "user":
        converted.insert(0, {"role": "user", "content": [{"type": "text", "text": "Bonjour."}]})
    return "\n\n".join(system_parts), converted


class ReasoningModelClient:
    """Async client for the reasoning model, trying configured providers in order."""

    def __init__(self, settings: TriageSettings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._settings = settings
        self._transport = transport

    def _model_for(self, purpose: str) -> str:
        return {
            "report": self._settings.report_model,
            "vision": self._settings.vision_model,
        }.get(purpose, self._settings.chat_model)

    def provider_candidates(self, purpose: str = "chat") -> list[dict[str, Any]]:
        candidates: list[dict[str, Any]] = []
        if self._settings.anthropic_api_key:
            candidates.append(
                {
                    "provider": "anthropic",
                    "base_url": self._settings.anthropic_base_url,
                    "api_key": self._settings.anthropic_api_key,
                    "model": self._settings.anthropic_model,
                }
            )
        if self._settings.openai_api_key:
            candidates.append(
                {
                    "provider": "openai",
                    "base_url": self._settings.openai_base_url,
                    "api_key": self._settings.openai_api_key,
                    "model": self._model_for(purpose),
                }
            )
        preference = self._settings.model_provider
        if preference in {"", "auto"}:
            # OpenAI first in auto mode: its models are the ones tuned per purpose.
            return sorted(candidates, key=lambda item: item["provider"] != "openai")
        canonical = {"claude": "anthropic", "anthropic": "anthropic", "openai": "openai"}.get(preference)
        if not canonical:
            return candidates
        preferred = [candidate for candidate in candidates if candidate["provider"] == canonical]
        others = [candidate for candidate in candidates if candidate["provider"] != canonical]
        return preferred + others

    def _client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(self._settings.model_timeout_seconds, connect=8.0)
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    async def _post(self, provider: dict[str, Any], url: str, headers: dict[str, str], payload: dict[str, Any]) -> dict[str, Any]:
        try:
            async with self._client() as client:
                response = await client.post(url, headers=headers, json=payload)
        except httpx.TimeoutException as exc:
            raise ModelTransientError(f"{provider['provider']}: request timed out", operation="model_call") from exc
        except httpx.TransportError as exc:
            raise ModelTransientError(f"{provider['provider']}: {exc}", operation="model_call") from exc
        if response.status_code >= 400:
            raise classify_http_error(response, provider["provider"])
        try:
            body = response.json()
        except ValueError as exc:
            raise ModelOutputError(f"{provider['provider']}: response was not JSON", operation="model_call") from exc
        if not isinstance(body, dict):
            raise ModelOutputError(f"{provider['provider']}: unexpected response shape", operation="model_call")
        return body

    async def _openai_compatible(
        self,
        provider: dict[str, Any],
        messages: list[dict[str, Any]],
        *,
        max_tokens: int,
        temperature: float,
        json_mode: bool,
    ) -> ModelCompletion:
        payload: dict[str, Any] = {
            "model": provider["model"],
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}
        headers = {
            "Authorization": f"Bearer {provider['api_key']}",
            "Content-Type": "application/json",
        }
        body = await self._post(provider, f"{provider['base_url']}/chat/completions", headers, payload)
        text, finish_reason = _coerce_completion_text(body)
        return ModelCompletion(text=text.strip(), finish_reason=finish_reason, provider="openai", model=provider["model"])

    async def _anthropic(
        self,
        provider: dict[str, Any],
        messages: list[dict[str, Any]],
        *,
        max_tokens: int,
        temperature: float,
    ) -> ModelCompletion:
        system_prompt, anthropic_messages = to_anthropic_messages(messages)
        payload: dict[str, Any] = {
            "model": provider["model"],
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": anthropic_messages,
        }
        if system_prompt:
            payload["system"] = system_prompt
        headers = {
            "x-api-key": str(provider["api_key"]),
            "anthropic-version": self._settings.anthropic_version,
            "Content-Type": "application/json",
        }
        body = await self._post(provider, f"{provider['base_url']}/messages", headers, payload)
        text, finish_reason = _coerce_anthropic_text(body)
        return ModelCompletion(text=text, finish_reason=finish_reason, provider="anthropic", model=provider["model"])

    async def complete(
        self,
        messages: list[dict[str, Any]],
        *,
        purpose: str = "chat",
        max_tokens: int = 500,
        temperature: float = 0.7,
        json_mode: bool = False,
    ) -> ModelCompletion:
        providers = self.provider_candidates(purpose)
        if not providers:
            raise ModelAuthError("No reasoning model provider key is configured.", operation="model_call")

        errors: list[ModelError] = []
        for provider in providers:
            name = provider["provider"]
            try:
                if name == "anthropic":
                    completion = await self._anthropic(
                        provider, messages, max_tokens=max_tokens, temperature=temperature
                    )
                else:
                    completion = await self._openai_compatible(
                        provider, messages, max_tokens=max_tokens, temperature=temperature, json_mode=json_mode
                    )
            except ModelError as exc:
                logger.warning("%s call failed (%s): %s", purpose, name, exc)
                errors.append(exc)
                continue
            logger.info("%s call answered by %s (%s)", purpose, name, provider["model"])
            return completion
        raise errors[-1]
