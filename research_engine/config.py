"""Research engine configuration.

Engine-wide settings are module-level constants read from the environment.
Per-provider research settings (model tiers, per-step output budgets,
candidate/shortlist sizes, gap-loop ceiling) start from built-in defaults
and are overridden, in order, by:

1. RESEARCH_CONFIG_FILE: a YAML file shaped {"openai": {...}, "gemini": {...}}
2. RESEARCH_STEP_CONFIG_JSON: the same shape as a JSON string

Out-of-range numbers are clamped, unknown model tiers fall back to "mini".
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from pydantic import BaseModel, Field

from research_engine.workflows.schemas import ResearchDepth, ResearchProvider, StepType

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int, low: int, high: int) -> int:
    try:
        value = int(os.environ.get(name, default))
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={os.environ.get(name)!r}")
        return default
    return max(low, min(high, value))


# Consecutive transient failures tolerated per step
MAX_TRANSIENT_RETRIES = _env_int("RESEARCH_MAX_TRANSIENT_RETRIES", 3, 0, 10)

# Per-call timeout handed to the step executor
STEP_TIMEOUT_SECONDS = _env_int("RESEARCH_STEP_TIMEOUT_SECONDS", 600, 30, 3600)

# Minimum interval between poll-triggered session advances
POLL_THROTTLE_SECONDS = _env_int("RESEARCH_POLL_THROTTLE_SECONDS", 15, 1, 3600)

ModelTier = Literal["nano", "mini", "full", "pro"]

# Legacy two-tier names still accepted in overrides
_TIER_ALIASES = {"fast": "mini", "deep": "full"}


class StepModelConfig(BaseModel):
    model_tier: ModelTier = "mini"
    max_output_tokens: int = Field(default=4000, ge=300, le=32768)


class ProviderResearchConfig(BaseModel):
    """Model tiers and budgets for one provider lane."""

    nano_model: str
    mini_model: str
    full_model: str
    pro_model: str
    steps: dict[StepType, StepModelConfig]
    max_candidates: int = Field(default=40, ge=10, le=80)
    shortlist_size: int = Field(default=18, ge=8, le=40)
    max_gap_loops: int = Field(default=2, ge=0, le=3)

    def model_for(self, step_type: StepType) -> str:
        tier = self.steps[step_type].model_tier
        return getattr(self, f"{tier}_model")


class DepthSettings(BaseModel):
    """Run budgets derived from the requested depth."""

    min_word_count: int
    target_sources_per_step: int
    max_tokens_per_step: int


DEPTH_SETTINGS: dict[ResearchDepth, DepthSettings] = {
    ResearchDepth.LIGHT: DepthSettings(min_word_count=1200, target_sources_per_step=6, max_tokens_per_step=3000),
    ResearchDepth.STANDARD: DepthSettings(min_word_count=2500, target_sources_per_step=10, max_tokens_per_step=5000),
    ResearchDepth.DEEP: DepthSettings(min_word_count=6000, target_sources_per_step=15, max_tokens_per_step=8000),
}

_DEFAULT_STEPS: dict[StepType, tuple[str, int]] = {
    StepType.DEVELOP_RESEARCH_PLAN: ("mini", 4000),
    StepType.DISCOVER_SOURCES_WITH_PLAN: ("full", 12000),
    StepType.SHORTLIST_RESULTS: ("nano", 4000),
    StepType.DEEP_READ: ("full", 16000),
    StepType.EXTRACT_EVIDENCE: ("nano", 8000),
    StepType.COUNTERPOINTS: ("pro", 12000),
    StepType.GAP_CHECK: ("nano", 4000),
    StepType.SECTION_SYNTHESIS: ("pro", 32768),
}


def _default_steps() -> dict[StepType, StepModelConfig]:
    return {
        step: StepModelConfig(model_tier=tier, max_output_tokens=tokens)
        for step, (tier, tokens) in _DEFAULT_STEPS.items()
    }


def _defaults() -> dict[ResearchProvider, ProviderResearchConfig]:
    env = os.environ.get
    gemini_fast = env("GEMINI_FAST_MODEL") or "gemini-2.5-flash"
    gemini_deep = env("GEMINI_DEEP_MODEL") or env("GEMINI_MODEL") or "gemini-2.5-pro"
    return {
        ResearchProvider.OPENAI: ProviderResearchConfig(
            nano_model=env("OPENAI_NANO_MODEL") or "gpt-5-nano",
            mini_model=env("OPENAI_MINI_MODEL") or "gpt-5-mini",
            full_model=env("OPENAI_FULL_MODEL") or "gpt-5",
            pro_model=env("OPENAI_PRO_MODEL") or "gpt-5-pro",
            steps=_default_steps(),
        ),
        ResearchProvider.GEMINI: ProviderResearchConfig(
            nano_model=gemini_fast,
            mini_model=gemini_fast,
            full_model=gemini_deep,
            pro_model=gemini_deep,
            steps=_default_steps(),
        ),
    }


def _clamp(value: Any, fallback: int, low: int, high: int) -> int:
    try:
        n = int(float(value))
    except (TypeError, ValueError):
        return fallback
    return max(low, min(high, n))


def merge_provider_config(base: ProviderResearchConfig, override: Optional[dict]) -> ProviderResearchConfig:
    """Overlay a raw override dict onto a provider config."""
    if not isinstance(override, dict):
        return base

    steps = {k: v.model_copy() for k, v in base.steps.items()}
    for key, raw in (override.get("steps") or {}).items():
        try:
            step_type = StepType(key)
        except ValueError:
            logger.warning(f"Ignoring config for unknown step type {key!r}")
            continue
        if not isinstance(raw, dict):
            continue
        tier = _TIER_ALIASES.get(raw.get("model_tier"), raw.get("model_tier"))
        if tier not in ("nano", "mini", "full", "pro"):
            tier = "mini"
        steps[step_type] = StepModelConfig(
            model_tier=tier,
            max_output_tokens=_clamp(raw.get("max_output_tokens"), steps[step_type].max_output_tokens, 300, 32768),
        )

    def _model(name: str, legacy: str) -> str:
        value = override.get(name) or override.get(legacy)
        return value if isinstance(value, str) and value else getattr(base, name)

    return ProviderResearchConfig(
        nano_model=_model("nano_model", "fast_model"),
        mini_model=_model("mini_model", "fast_model"),
        full_model=_model("full_model", "deep_model"),
        pro_model=_model("pro_model", "deep_model"),
        steps=steps,
        max_candidates=_clamp(override.get("max_candidates"), base.max_candidates, 10, 80),
        shortlist_size=_clamp(override.get("shortlist_size"), base.shortlist_size, 8, 40),
        max_gap_loops=_clamp(override.get("max_gap_loops"), base.max_gap_loops, 0, 3),
    )


def _load_overrides() -> list[dict]:
    overrides = []
    config_file = os.environ.get("RESEARCH_CONFIG_FILE")
    if config_file:
        path = Path(config_file)
        try:
            with open(path) as f:
                data = yaml.safe_load(f)
            if isinstance(data, dict):
                overrides.append(data)
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Could not load research config file {path}: {e}")

    raw_json = os.environ.get("RESEARCH_STEP_CONFIG_JSON")
    if raw_json:
        try:
            data = json.loads(raw_json)
            if isinstance(data, dict):
                overrides.append(data)
        except json.JSONDecodeError as e:
            logger.warning(f"RESEARCH_STEP_CONFIG_JSON is not valid JSON, using defaults: {e}")
    return overrides


_provider_configs: Optional[dict[ResearchProvider, ProviderResearchConfig]] = None


def get_provider_config(provider: ResearchProvider) -> ProviderResearchConfig:
    """Get the research config for a provider (lazy, cached)."""
    global _provider_configs
    if _provider_configs is None:
        configs = _defaults()
        for override in _load_overrides():
            for prov in ResearchProvider:
                configs[prov] = merge_provider_config(configs[prov], override.get(prov.value))
        _provider_configs = configs
    return _provider_configs[ResearchProvider(provider)]


def reset_provider_configs() -> None:
    """Drop the cached configs so the next lookup re-reads the environment."""
    global _provider_configs
    _provider_configs = None
