"""
LLM Package

Provider selection and the three-tier extraction chain:
  - Anthropic   (Claude 3.7 Sonnet — large context window)
  - OpenAI      (GPT-4o — table detection)
  - Google      (Gemini 1.5 Pro — multimodal)
  - Perplexity  (Llama 3.1 Sonar — default)

Public API::

    from app.llm import DocumentCharacteristics, get_adapter, route

    decision = route(DocumentCharacteristics(page_count=15))
    result   = await get_adapter(decision.provider).extract(text)
"""

from app.llm.adapters import ProviderAdapter, get_adapter
from app.llm.fallback import PatternTier, RemoteTier, SimulatedTier
from app.llm.router import (
    DocumentCharacteristics,
    ModelRouter,
    Provider,
    RoutingDecision,
    route,
)

__all__ = [
    "DocumentCharacteristics",
    "ModelRouter",
    "PatternTier",
    "Provider",
    "ProviderAdapter",
    "RemoteTier",
    "RoutingDecision",
    "SimulatedTier",
    "get_adapter",
    "route",
]
