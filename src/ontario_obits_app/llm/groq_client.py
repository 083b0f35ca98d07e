#!src/ontario_obits_app/llm/groq_client.py
from __future__ import annotations

from typing import Any, Optional

import requests
from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from ontario_obits_app.llm.errors import ErrorKind, LLMError, LLMErrorDetails
from ontario_obits_app.llm.http_transport import HTTPTransport
from ontario_obits_app.llm.models import ChatRequest, ChatResponse


class GroqSettings(BaseSettings):
    """Groq client configuration.

    Attributes:
        groq_api_key: Groq API key.
        timeout_seconds: Total timeout per request in seconds.
        base_url: API base URL.
    """

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    groq_api_key: str = Field(default="", validation_alias=AliasChoices("GROQ_API_KEY", "groq_api_key"))
    timeout_seconds: int = Field(
        default=45,
        validation_alias=AliasChoices("GROQ_TIMEOUT_SECONDS", "groq_timeout_seconds"),
    )
    base_url: str = Field(
        default="https://api.groq.com/openai/v1",
        validation_alias=AliasChoices("GROQ_BASE_URL", "groq_base_url"),
    )


class GroqClient:
    """Client for Groq's OpenAI-compatible chat completions route."""

    provider = "groq"

    def __init__(self, settings: GroqSettings, *, session: Optional[requests.Session] = None) -> None:
        self._settings = settings
        self._session = session

    @property
    def settings(self) -> GroqSettings:
        return self._settings

    def chat(self, req: ChatRequest, *, timeout_seconds: Optional[int] = None) -> ChatResponse:
        """Run one chat completion.

        Raises:
            LLMError: Missing key, transport failure, error status or a
                response without choices.
        """
        model = str(req.model or "")
        if not self._settings.groq_api_key:
            raise LLMError(
                LLMErrorDetails(kind=ErrorKind.AUTH, provider=self.provider, model=model, message="GROQ_API_KEY is not set")
            )

        transport = HTTPTransport(
            timeout_seconds=int(timeout_seconds or self._settings.timeout_seconds),
            session=self._session,
        )
        headers = {
            "Authorization": f"Bearer {self._settings.groq_api_key}",
            "Content-Type": "application/json",
        }
        payload: dict[str, Any] = {
            "model": model,
            "messages": [{"role": m.role, "content": m.content} for m in req.messages],
            "temperature": req.temperature,
        }
        if req.max_tokens is not None:
            payload["max_tokens"] = int(req.max_tokens)
        if req.top_p is not None:
            payload["top_p"] = float(req.top_p)
        if req.response_format is not None:
            payload["response_format"] = dict(req.response_format)

        resp = transport.post_json(
            url=f"{self._settings.base_url.rstrip('/')}/chat/completions",
            headers=headers,
            payload=payload,
            provider=self.provider,
            model=model,
        )

        choices = resp.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            raise LLMError(
                LLMErrorDetails(kind=ErrorKind.PARSE, provider=self.provider, model=model, message="Response has no choices")
            )
        msg = choices[0].get("message") or {}
        content = str(msg.get("content") or "").strip() if isinstance(msg, dict) else ""

        usage = resp.get("usage") if isinstance(resp.get("usage"), dict) else {}
        total = usage.get("total_tokens")
        return ChatResponse(
            content=content,
            provider=self.provider,
            model=str(resp.get("model") or model),
            total_tokens=int(total) if isinstance(total, (int, float)) else None,
            raw=resp,
        )
