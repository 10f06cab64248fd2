"""LLM backend abstraction for the research providers.

Provides a unified interface for calling the two research providers
(OpenAI, Google Gemini) with a consistent response format.

Each backend handles provider-specific concerns:
- Client creation and timeout configuration
- Web search / grounding tool configuration
- Response parsing and token counting
- Extracting the provider's native citation metadata (OpenAI url_citation
  annotations, Gemini grounding metadata) without interpreting it

Transport failures are raised as TransientProviderError so the executor's
retry classifier sees them as retryable. Everything else propagates with
the SDK's own message, which the classifier inspects.
"""

import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, runtime_checkable

from research_engine.executor.errors import TransientProviderError

logger = logging.getLogger(__name__)


@dataclass
class LLMCallResult:
    """Normalized response from any LLM backend."""

    content: str
    model_id: str
    input_tokens: int
    output_tokens: int
    duration_ms: int
    tools_used: list[str] = field(default_factory=list)
    # OpenAI: url_citation annotations with offsets into `content`
    annotations: list[dict[str, Any]] = field(default_factory=list)
    # OpenAI: web search sources; Gemini: grounding chunk web records
    sources: list[dict[str, Any]] = field(default_factory=list)
    # Gemini: grounding chunks + supports
    grounding_metadata: Optional[dict[str, Any]] = None


@runtime_checkable
class ModelBackend(Protocol):
    """Protocol for LLM backend implementations."""

    @property
    def model_id(self) -> str: ...

    @property
    def provider(self) -> str: ...

    def execute_sync(
        self,
        system_prompt: str,
        user_message: str,
        *,
        max_tokens: int,
        use_search: bool = False,
        timeout_seconds: float = 600,
        label: str = "",
    ) -> LLMCallResult: ...


def _as_dict(obj: Any) -> dict:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    if hasattr(obj, "model_dump"):
        return obj.model_dump(mode="json", exclude_none=True)
    return dict(obj)


class OpenAIBackend:
    """OpenAI Responses API backend.

    Handles:
    - Optional web_search tool (source discovery, deep research)
    - Offsetting url_citation annotations from per-part to whole-text positions
    - Collecting web search sources via `include`

    Requires OPENAI_API_KEY environment variable.
    """

    def __init__(self, model_id: str = "gpt-5-mini"):
        self._model_id = model_id

    @property
    def model_id(self) -> str:
        return self._model_id

    @property
    def provider(self) -> str:
        return "openai"

    def _get_client(self, timeout_seconds: float):
        import httpx
        from openai import OpenAI

        api_key = os.environ.get("OPENAI_API_KEY")
        if not api_key:
            raise RuntimeError(
                "OPENAI_API_KEY not set. Set the environment variable to use OpenAI."
            )
        # Retries are whole-step re-executions driven by the orchestrator
        return OpenAI(
            api_key=api_key,
            timeout=httpx.Timeout(
                connect=60.0,
                read=timeout_seconds,  # web search + long outputs
                write=120.0,
                pool=60.0,
            ),
            max_retries=0,
        )

    def execute_sync(
        self,
        system_prompt: str,
        user_message: str,
        *,
        max_tokens: int,
        use_search: bool = False,
        timeout_seconds: float = 600,
        label: str = "",
    ) -> LLMCallResult:
        """Execute one Responses API call and collect text, annotations and sources."""
        import openai

        client = self._get_client(timeout_seconds)
        start_time = time.time()

        kwargs: dict[str, Any] = {
            "model": self._model_id,
            "instructions": system_prompt,
            "input": user_message,
            "max_output_tokens": max_tokens,
        }
        if use_search:
            kwargs["tools"] = [{"type": "web_search"}]
            kwargs["include"] = ["web_search_call.action.sources"]

        logger.info(
            f"[{label}] OpenAI call: model={self._model_id}, max_tokens={max_tokens}, "
            f"search={'yes' if use_search else 'no'}"
        )

        try:
            response = client.responses.create(**kwargs)
        except (openai.APITimeoutError, openai.APIConnectionError, openai.RateLimitError) as e:
            raise TransientProviderError(f"[{label}] OpenAI transport error: {e}") from e
        except openai.InternalServerError as e:
            raise TransientProviderError(f"[{label}] OpenAI server error, try again: {e}") from e

        duration_ms = int((time.time() - start_time) * 1000)

        text = ""
        annotations: list[dict] = []
        sources: list[dict] = []
        tools_used: list[str] = []
        for item in response.output or []:
            item_type = getattr(item, "type", "")
            if item_type == "web_search_call":
                if "web_search" not in tools_used:
                    tools_used.append("web_search")
                action = _as_dict(getattr(item, "action", None))
                sources.extend(s for s in action.get("sources") or [] if isinstance(s, dict))
            elif item_type == "message":
                for part in item.content or []:
                    if getattr(part, "type", "") != "output_text":
                        continue
                    base = len(text)
                    for ann in getattr(part, "annotations", None) or []:
                        ann_dict = _as_dict(ann)
                        for key in ("start_index", "end_index"):
                            if isinstance(ann_dict.get(key), int):
                                ann_dict[key] += base
                        annotations.append(ann_dict)
                    text += part.text or ""

        usage = getattr(response, "usage", None)
        input_tokens = getattr(usage, "input_tokens", 0) if usage else 0
        output_tokens = getattr(usage, "output_tokens", len(text) // 4) if usage else len(text) // 4

        logger.info(
            f"[{label}] OpenAI completed: {input_tokens}+{output_tokens} tokens, "
            f"{duration_ms}ms, {len(text):,} chars, {len(annotations)} annotations"
        )

        return LLMCallResult(
            content=text,
            model_id=self._model_id,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            duration_ms=duration_ms,
            tools_used=tools_used,
            annotations=annotations,
            sources=sources,
        )


class GeminiBackend:
    """Google Gemini backend.

    Handles:
    - Google Search grounding (grounding chunks + supports)
    - Per-call HTTP timeout
    - Separating thought parts from output text

    Requires GEMINI_API_KEY environment variable.
    Requires google-genai package: pip install google-genai
    """

    def __init__(self, model_id: str = "gemini-2.5-pro"):
        self._model_id = model_id

    @property
    def model_id(self) -> str:
        return self._model_id

    @property
    def provider(self) -> str:
        return "gemini"

    def _get_client(self, timeout_seconds: float):
        from google import genai

        api_key = os.environ.get("GEMINI_API_KEY")
        if not api_key:
            raise RuntimeError(
                "GEMINI_API_KEY not set. Set the environment variable to use Gemini."
            )
        return genai.Client(
            api_key=api_key,
            http_options=genai.types.HttpOptions(timeout=int(timeout_seconds * 1000)),
        )

    def execute_sync(
        self,
        system_prompt: str,
        user_message: str,
        *,
        max_tokens: int,
        use_search: bool = False,
        timeout_seconds: float = 600,
        label: str = "",
    ) -> LLMCallResult:
        """Execute one generate_content call, optionally grounded in Google Search."""
        from google import genai
        from google.genai import errors as genai_errors

        client = self._get_client(timeout_seconds)
        start_time = time.time()

        config_kwargs: dict[str, Any] = {
            "system_instruction": system_prompt,
            "max_output_tokens": max_tokens,
        }
        if use_search:
            config_kwargs["tools"] = [genai.types.Tool(google_search=genai.types.GoogleSearch())]
        config = genai.types.GenerateContentConfig(**config_kwargs)

        logger.info(
            f"[{label}] Gemini call: model={self._model_id}, max_tokens={max_tokens}, "
            f"search={'yes' if use_search else 'no'}"
        )

        try:
            response = client.models.generate_content(
                model=self._model_id,
                contents=user_message,
                config=config,
            )
        except genai_errors.ServerError as e:
            raise TransientProviderError(f"[{label}] Gemini server error, try again: {e}") from e

        duration_ms = int((time.time() - start_time) * 1000)

        raw_text = ""
        grounding: Optional[dict] = None
        if response.candidates:
            candidate = response.candidates[0]
            if candidate.content:
                for part in candidate.content.parts or []:
                    if getattr(part, "thought", False):
                        continue
                    raw_text += getattr(part, "text", "") or ""
            if getattr(candidate, "grounding_metadata", None) is not None:
                grounding = _as_dict(candidate.grounding_metadata)

        sources = []
        for chunk in (grounding or {}).get("grounding_chunks") or []:
            web = chunk.get("web") if isinstance(chunk, dict) else None
            if isinstance(web, dict) and web.get("uri"):
                sources.append({"url": web["uri"], "title": web.get("title")})

        usage = getattr(response, "usage_metadata", None)
        input_tokens = getattr(usage, "prompt_token_count", 0) or 0 if usage else 0
        output_tokens = getattr(usage, "candidates_token_count", 0) or 0 if usage else len(raw_text) // 4

        logger.info(
            f"[{label}] Gemini completed: {input_tokens}+{output_tokens} tokens, "
            f"{duration_ms}ms, {len(raw_text):,} chars, {len(sources)} grounding chunks"
        )

        return LLMCallResult(
            content=raw_text,
            model_id=self._model_id,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            duration_ms=duration_ms,
            tools_used=["google_search"] if use_search else [],
            sources=sources,
            grounding_metadata=grounding,
        )
