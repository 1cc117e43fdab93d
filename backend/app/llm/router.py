"""
LLM Routing Engine — Provider Selection by Document Characteristics

The router is the decision engine that answers:
  "Which provider should extract this document?"

Inputs (DocumentCharacteristics, produced by the metadata stage):
  page_count            int ≥ 1
  has_financial_tables  statement keywords + `Label: amount` lines
  is_scanned            PDF with almost no text layer

Rules (RoutingRule rows from llm_configs) are evaluated by ascending
priority; the first ACTIVE rule whose condition matches wins. When the
store holds no active rules, DEFAULT_RULES apply:

  priority 1   page_count > 10       → anthropic  (large context window)
  priority 2   has_financial_tables  → openai     (table detection)
  priority 3   is_scanned            → gemini     (multimodal)
  otherwise                          → settings.default_llm_provider (llama)

Condition grammar (case-insensitive):
  numeric page predicates   "page_count > 10", "Length > 10 pages", "pages >= 5"
  financial                 any condition mentioning "financial"
  scanned                   any condition mentioning "scan"
  always | default | *      always matches
  anything else             never matches (logged once)

Design principles:
  - route() is pure Python (no I/O, no network): total and deterministic.
  - build_llm() returns a LangChain chat model; credentials are resolved
    from settings at instantiation and vendor packages are imported lazily.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum

from langchain_core.language_models.chat_models import BaseChatModel

from app.core.config import is_configured, settings
from app.schemas.documents import RoutingRule

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

class Provider(str, Enum):
    ANTHROPIC = "anthropic"
    OPENAI    = "openai"
    GEMINI    = "gemini"
    LLAMA     = "llama"      # Llama via the Perplexity Sonar API


@dataclass(frozen=True)
class ProviderSpec:
    """
    Static metadata for one provider.

    credential_setting : attribute on Settings holding the API key
    aliases            : free-text names admins use in llm_configs rows
    """
    provider:           Provider
    model_id:           str
    display_name:       str
    strengths:          str
    context_window:     int
    credential_setting: str
    aliases:            tuple[str, ...] = ()


_REGISTERED_PROVIDERS: dict[Provider, ProviderSpec] = {
    Provider.ANTHROPIC: ProviderSpec(
        provider           = Provider.ANTHROPIC,
        model_id           = "claude-3-7-sonnet-20250219",
        display_name       = "Claude 3.7 Sonnet",
        strengths          = "Larger context window",
        context_window     = 200_000,
        credential_setting = "anthropic_api_key",
        aliases            = ("claude", "claude-3-7-sonnet", "claude-3-7-sonnet-20250219"),
    ),
    Provider.OPENAI: ProviderSpec(
        provider           = Provider.OPENAI,
        model_id           = "gpt-4o",
        display_name       = "GPT-4o",
        strengths          = "Superior table detection",
        context_window     = 128_000,
        credential_setting = "openai_api_key",
        aliases            = ("gpt-4o", "gpt-4", "gpt4", "chatgpt"),
    ),
    Provider.GEMINI: ProviderSpec(
        provider           = Provider.GEMINI,
        model_id           = "gemini-1.5-pro",
        display_name       = "Gemini 1.5 Pro",
        strengths          = "Multimodal capabilities",
        context_window     = 1_000_000,
        credential_setting = "google_api_key",
        aliases            = ("gemini", "gemini-pro", "gemini-1.5-pro", "google"),
    ),
    Provider.LLAMA: ProviderSpec(
        provider           = Provider.LLAMA,
        model_id           = "llama-3.1-sonar-small-128k-online",
        display_name       = "Llama 3.1 Sonar",
        strengths          = "General-purpose default",
        context_window     = 128_000,
        credential_setting = "perplexity_api_key",
        aliases            = ("llama", "llama-3", "perplexity", "sonar"),
    ),
}


def get_spec(provider: Provider) -> ProviderSpec:
    return _REGISTERED_PROVIDERS[provider]


def resolve_provider(name: str | None) -> Provider | None:
    """Map an enum value, model id or admin-facing alias to a Provider."""
    if not name:
        return None
    key = name.strip().lower()
    for spec in _REGISTERED_PROVIDERS.values():
        if key == spec.provider.value or key == spec.model_id or key in spec.aliases:
            return spec.provider
    # "Claude-3-7-sonnet-20250219 (Anthropic)", "GPT-4o vision", ...
    for spec in _REGISTERED_PROVIDERS.values():
        if any(key.startswith(alias) for alias in spec.aliases):
            return spec.provider
    return None


def credential_for(provider: Provider) -> str:
    return getattr(settings, get_spec(provider).credential_setting, "")


def has_credential(provider: Provider) -> bool:
    return is_configured(credential_for(provider))


def default_provider() -> Provider:
    return resolve_provider(settings.default_llm_provider) or Provider.LLAMA


# ---------------------------------------------------------------------------
# Routing inputs / outputs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DocumentCharacteristics:
    page_count:           int
    has_financial_tables: bool = False
    is_scanned:           bool = False


@dataclass(frozen=True)
class RoutingDecision:
    provider:  Provider
    rule:      RoutingRule | None   # None → default provider
    rationale: str


def default_rules() -> list[RoutingRule]:
    threshold = settings.large_document_page_threshold
    return [
        RoutingRule(
            id=0, priority=1,
            condition=f"page_count > {threshold}",
            llm_provider=Provider.ANTHROPIC.value,
            rationale="Larger context window",
        ),
        RoutingRule(
            id=0, priority=2,
            condition="has_financial_tables",
            llm_provider=Provider.OPENAI.value,
            rationale="Superior table detection",
        ),
        RoutingRule(
            id=0, priority=3,
            condition="is_scanned",
            llm_provider=Provider.GEMINI.value,
            rationale="Multimodal capabilities",
        ),
    ]


# ---------------------------------------------------------------------------
# Condition matching
# ---------------------------------------------------------------------------

_PAGE_PREDICATE_RE = re.compile(
    r"(?:page[_ ]?count|pages|length)\s*(>=|<=|==|=|>|<)\s*(\d+)",
    re.IGNORECASE,
)
_ALWAYS = frozenset({"always", "default", "*", "true"})

_COMPARATORS = {
    ">":  lambda a, b: a > b,
    ">=": lambda a, b: a >= b,
    "<":  lambda a, b: a < b,
    "<=": lambda a, b: a <= b,
    "==": lambda a, b: a == b,
    "=":  lambda a, b: a == b,
}

_warned_conditions: set[str] = set()


def condition_matches(condition: str, chars: DocumentCharacteristics) -> bool:
    text = condition.strip().lower()

    if text in _ALWAYS:
        return True

    page = _PAGE_PREDICATE_RE.search(text)
    if page:
        op, value = page.group(1), int(page.group(2))
        return _COMPARATORS[op](chars.page_count, value)

    if "financial" in text:
        return chars.has_financial_tables

    if "scan" in text:
        return chars.is_scanned

    if text not in _warned_conditions:
        _warned_conditions.add(text)
        logger.warning("Router | unrecognised condition=%r (never matches)", condition)
    return False


# ---------------------------------------------------------------------------
# route()
# ---------------------------------------------------------------------------

def route(
    chars: DocumentCharacteristics,
    rules: list[RoutingRule] | None = None,
) -> RoutingDecision:
    """
    Select a provider. Total: always returns a decision.

    rules: the configured rule set; None or no active rule → default_rules().
    """
    active = [r for r in (rules or []) if r.is_active]
    if not active:
        active = default_rules()
    active.sort(key=lambda r: (r.priority, r.id))

    for rule in active:
        if not condition_matches(rule.condition, chars):
            continue
        provider = resolve_provider(rule.llm_provider)
        if provider is None:
            logger.warning(
                "Router | rule id=%d matched but provider=%r is unknown; skipping",
                rule.id, rule.llm_provider,
            )
            continue
        logger.info(
            "Router | selected provider=%s rule=%r priority=%d pages=%d financial=%s scanned=%s",
            provider.value, rule.condition, rule.priority,
            chars.page_count, chars.has_financial_tables, chars.is_scanned,
        )
        return RoutingDecision(provider=provider, rule=rule, rationale=rule.rationale)

    provider = default_provider()
    logger.info(
        "Router | no rule matched, default provider=%s pages=%d",
        provider.value, chars.page_count,
    )
    return RoutingDecision(provider=provider, rule=None, rationale="Default provider")


# ---------------------------------------------------------------------------
# ModelRouter — LangChain model construction
# ---------------------------------------------------------------------------

class ModelRouter:
    """
    Builds the LangChain chat model for a provider.

    Usage::

        llm = ModelRouter().build_llm(Provider.OPENAI)
        reply = await llm.ainvoke(messages)

    Vendor retries are disabled (max_retries=0): the extraction tiers own
    the failure policy and fall back instead of retrying.
    """

    def build_llm(self, provider: Provider) -> BaseChatModel:
        spec = get_spec(provider)

        if provider == Provider.ANTHROPIC:
            return self._build_anthropic(spec)

        if provider == Provider.OPENAI:
            return self._build_openai(spec)

        if provider == Provider.GEMINI:
            return self._build_gemini(spec)

        if provider == Provider.LLAMA:
            return self._build_perplexity(spec)

        raise ValueError(f"Unsupported provider: {provider}")   # pragma: no cover

    # -----------------------------------------------------------------------
    # Provider-specific builders
    # -----------------------------------------------------------------------

    @staticmethod
    def _build_anthropic(spec: ProviderSpec) -> BaseChatModel:
        from langchain_anthropic import ChatAnthropic
        return ChatAnthropic(
            model=spec.model_id,
            api_key=settings.anthropic_api_key,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
            timeout=settings.llm_request_timeout,
            max_retries=0,
        )

    @staticmethod
    def _build_openai(spec: ProviderSpec) -> BaseChatModel:
        from langchain_openai import ChatOpenAI
        return ChatOpenAI(
            model=spec.model_id,
            api_key=settings.openai_api_key,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
            timeout=settings.llm_request_timeout,
            max_retries=0,
        )

    @staticmethod
    def _build_gemini(spec: ProviderSpec) -> BaseChatModel:
        from langchain_google_genai import ChatGoogleGenerativeAI
        return ChatGoogleGenerativeAI(
            model=spec.model_id,
            google_api_key=settings.google_api_key,
            temperature=settings.llm_temperature,
            max_output_tokens=settings.llm_max_tokens,
            timeout=settings.llm_request_timeout,
            max_retries=0,
        )

    @staticmethod
    def _build_perplexity(spec: ProviderSpec) -> BaseChatModel:
        # Perplexity exposes an OpenAI-compatible chat completions endpoint
        from langchain_openai import ChatOpenAI
        return ChatOpenAI(
            model=spec.model_id,
            api_key=settings.perplexity_api_key,
            base_url=settings.perplexity_base_url,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
            timeout=settings.llm_request_timeout,
            max_retries=0,
        )
