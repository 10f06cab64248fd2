"""LLM backends for the research providers.

Thin wrappers over the OpenAI and Google GenAI SDKs that return text plus
the provider's native citation metadata.
"""

from research_engine.llm.backends import (
    GeminiBackend,
    LLMCallResult,
    ModelBackend,
    OpenAIBackend,
)
from research_engine.llm.factory import get_backend

__all__ = [
    "GeminiBackend",
    "LLMCallResult",
    "ModelBackend",
    "OpenAIBackend",
    "get_backend",
]
