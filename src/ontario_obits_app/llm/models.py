#!src/ontario_obits_app/llm/models.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol


@dataclass(frozen=True, slots=True)
class ChatMessage:
    role: str
    content: str


@dataclass(frozen=True, slots=True)
class ChatRequest:
    """One completion sent by the rewriter or the auditor.

    Both stages ask for `response_format={"type": "json_object"}` and keep
    `max_tokens` close to the estimate they reserved from the token budget.
    """

    model: Optional[str] = None
    messages: List[ChatMessage] = field(default_factory=list)
    temperature: float = 0.0
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    response_format: Optional[Dict[str, Any]] = None


@dataclass(frozen=True, slots=True)
class ChatResponse:
    """Completion text plus the usage the budget limiter settles against.

    Attributes:
        total_tokens: Prompt plus completion tokens, None when the
            provider left usage out of the body.
        raw: Decoded provider body, kept for error diagnostics.
    """

    content: str
    provider: str
    model: str
    total_tokens: Optional[int] = None
    raw: Optional[Dict[str, Any]] = None

    def billed_tokens(self, estimate: int) -> int:
        """Tokens to report to the limiter, the reserved estimate when usage is unknown."""
        return int(self.total_tokens) if self.total_tokens is not None else int(estimate)


class ChatClient(Protocol):
    def chat(self, req: ChatRequest) -> ChatResponse: ...


__all__ = ["ChatClient", "ChatMessage", "ChatRequest", "ChatResponse"]
