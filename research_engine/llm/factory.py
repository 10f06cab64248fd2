"""Model backend factory.

Resolves a provider lane and model ID to the appropriate backend.
"""

import logging
from typing import Union

from research_engine.llm.backends import GeminiBackend, OpenAIBackend

logger = logging.getLogger(__name__)


def get_backend(provider: str, model_id: str) -> Union[OpenAIBackend, GeminiBackend]:
    """Get the backend for a provider lane.

    Args:
        provider: 'openai' or 'gemini'
        model_id: Model identifier for that provider (e.g. 'gpt-5-mini',
                  'gemini-2.5-pro')

    Raises:
        ValueError: If the provider is not recognized
    """
    if provider == "openai":
        return OpenAIBackend(model_id=model_id)
    elif provider == "gemini":
        return GeminiBackend(model_id=model_id)
    else:
        raise ValueError(
            f"Unknown provider: '{provider}'. Expected 'openai' or 'gemini'."
        )
