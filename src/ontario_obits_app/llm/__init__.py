#!filepath: src/ontario_obits_app/llm/__init__.py
from ontario_obits_app.llm.errors import ErrorKind, LLMError
from ontario_obits_app.llm.models import ChatClient, ChatMessage, ChatRequest, ChatResponse
from ontario_obits_app.llm.rate_limiter import TokenBudgetLimiter

__all__ = [
    "ChatClient",
    "ChatMessage",
    "ChatRequest",
    "ChatResponse",
    "ErrorKind",
    "LLMError",
    "TokenBudgetLimiter",
]
