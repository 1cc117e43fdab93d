"""
Extraction Tiers — Pattern → Remote LLM → Simulated

Every provider adapter runs the same ordered chain and stops at the first
tier that returns content:

  1. PatternTier    regex pass over the text, no network
                    (app.processing.patterns; needs > pattern_min_metrics)
  2. RemoteTier     one chat-completion call to the routed provider
  3. SimulatedTier  schema-valid generated content; cannot fail

Tier contract:
  try_extract(text) → ExtractedDocumentData   success, stop here
                    → None                    not applicable, try next tier
                    → raises                  failed, adapter logs and tries next

Remote failure policy:
  - No credential (or the dev placeholder)        → None, no call made
  - Circuit open for the provider                 → None, no call made
  - 401/403, 429, 5xx, connection error, timeout  → VendorError (expected)
  - Reply is not JSON / fails schema validation   → ResponseSchemaError
  - Per-call timeout: settings.llm_request_timeout (asyncio.wait_for)

Circuit breaker pattern:
  After OPEN_THRESHOLD consecutive vendor failures the provider's remote
  tier is skipped for RESET_SECONDS. This prevents every queued document
  from paying the full timeout during an outage.
  (Implemented as a simple in-process counter.)
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from pydantic import ValidationError

from app.core.config import settings
from app.llm.router import ModelRouter, Provider, get_spec, has_credential
from app.processing import patterns
from app.processing.simulated import SimulatedContentGenerator
from app.schemas.documents import ExtractedDocumentData
from app.services.errors import ResponseSchemaError, VendorError

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a financial document analyst. Extract only the most important financial "
    "tables, key financial metrics, and provide a brief summary. Respond with a single "
    "JSON object and nothing else, with keys: tables (array of objects with title, rows "
    "and location; rows is an array of string arrays whose first row is the header), "
    "summary (max 2 sentences), keyFindings (max 3 strings), metadata (object of basic "
    "document info with string values)."
)

USER_PROMPT = (
    "Extract only the key financial tables and metrics from this document. Focus on "
    "revenue, profit, growth rates, and financial performance indicators:\n\n{text}"
)


# ---------------------------------------------------------------------------
# Tier protocol
# ---------------------------------------------------------------------------

@runtime_checkable
class ExtractionTier(Protocol):
    name: str

    async def try_extract(self, text: str) -> ExtractedDocumentData | None: ...


# ---------------------------------------------------------------------------
# Vendor error classification
# ---------------------------------------------------------------------------

_AUTH_NAMES       = ("AuthenticationError", "PermissionDeniedError", "PermissionDenied", "Unauthenticated")
_RATE_LIMIT_NAMES = ("RateLimitError", "ResourceExhausted", "TooManyRequests")
_SERVER_NAMES     = (
    "InternalServerError",
    "ServiceUnavailableError",
    "ServiceUnavailable",
    "APIConnectionError",
    "ConnectError",
    "RemoteProtocolError",
    "OverloadedError",
)
_TIMEOUT_NAMES    = ("APITimeoutError", "ConnectTimeout", "ReadTimeout", "TimeoutError", "DeadlineExceeded")


def _status_code(exc: BaseException) -> int | None:
    """HTTP status from SDK exceptions (openai / anthropic) or an httpx response."""
    for candidate in (
        getattr(exc, "status_code", None),
        getattr(getattr(exc, "response", None), "status_code", None),
        getattr(exc, "status", None),
        getattr(exc, "code", None),
    ):
        if isinstance(candidate, int) and 100 <= candidate < 600:
            return candidate
    return None


def classify_exception(provider: Provider, exc: BaseException) -> VendorError:
    status = _status_code(exc)
    name   = type(exc).__name__

    if status in (401, 403) or name.endswith(_AUTH_NAMES):
        kind = "auth"
    elif status == 429 or name.endswith(_RATE_LIMIT_NAMES):
        kind = "rate_limit"
    elif name.endswith(_TIMEOUT_NAMES):
        kind = "timeout"
    elif (status is not None and status >= 500) or name.endswith(_SERVER_NAMES):
        kind = "server"
    else:
        kind = "other"

    return VendorError(
        provider.value,
        f"{name}: {exc}",
        status_code=status,
        kind=kind,
    )


# ---------------------------------------------------------------------------
# Circuit breaker (in-process)
# ---------------------------------------------------------------------------

@dataclass
class _CircuitState:
    failures:       int   = 0
    open_until:     float = 0.0        # monotonic time after which to retry
    OPEN_THRESHOLD: int   = 3          # consecutive failures before opening
    RESET_SECONDS:  int   = 60         # how long circuit stays open


_CIRCUIT_STATES: dict[Provider, _CircuitState] = {
    p: _CircuitState() for p in Provider
}


def is_circuit_open(provider: Provider) -> bool:
    state = _CIRCUIT_STATES[provider]
    if state.failures < state.OPEN_THRESHOLD:
        return False
    if time.monotonic() >= state.open_until:
        state.failures = 0     # reset — let it try again
        return False
    return True                # still open


def any_circuit_open() -> bool:
    return any(is_circuit_open(p) for p in Provider)


def record_failure(provider: Provider) -> None:
    state = _CIRCUIT_STATES[provider]
    state.failures  += 1
    state.open_until = time.monotonic() + state.RESET_SECONDS
    logger.warning(
        "Circuit breaker | provider=%s failures=%d open_until=+%ds",
        provider.value, state.failures, state.RESET_SECONDS,
    )


def record_success(provider: Provider) -> None:
    _CIRCUIT_STATES[provider].failures = 0


def reset_circuits() -> None:
    for state in _CIRCUIT_STATES.values():
        state.failures   = 0
        state.open_until = 0.0


# ---------------------------------------------------------------------------
# Reply parsing
# ---------------------------------------------------------------------------

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def _reply_text(content: Any) -> str:
    """AIMessage.content is a str, or a list of content blocks (Anthropic)."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type", "text") == "text":
                parts.append(str(block.get("text", "")))
        return "".join(parts)
    return str(content or "")


def parse_reply(provider: Provider, content: Any) -> ExtractedDocumentData:
    raw  = _reply_text(content).strip()
    text = _FENCE_RE.sub("", raw).strip()

    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end <= start:
        raise ResponseSchemaError(provider.value, "no JSON object in reply", raw)

    try:
        payload = json.loads(text[start:end + 1])
    except json.JSONDecodeError as exc:
        raise ResponseSchemaError(provider.value, f"invalid JSON: {exc.msg}", raw) from exc

    try:
        return ExtractedDocumentData.model_validate(payload)
    except ValidationError as exc:
        raise ResponseSchemaError(
            provider.value, f"{exc.error_count()} schema error(s)", raw,
        ) from exc


# ---------------------------------------------------------------------------
# Tiers
# ---------------------------------------------------------------------------

class PatternTier:
    name = "pattern"

    def __init__(self, min_metrics: int | None = None) -> None:
        self._min_metrics = settings.pattern_min_metrics if min_metrics is None else min_metrics

    async def try_extract(self, text: str) -> ExtractedDocumentData | None:
        return patterns.parse(text, self._min_metrics)


class RemoteTier:
    """
    One call to the routed provider's chat model.

    Usage::

        tier = RemoteTier(Provider.OPENAI)
        data = await tier.try_extract(text)   # None → no key / circuit open
    """

    name = "remote"

    def __init__(
        self,
        provider:        Provider,
        router:          ModelRouter | None = None,
        timeout:         float | None = None,
        max_input_chars: int | None = None,
    ) -> None:
        self.provider         = provider
        self._router          = router or ModelRouter()
        self._timeout         = timeout if timeout is not None else settings.llm_request_timeout
        self._max_input_chars = max_input_chars or settings.llm_max_input_chars

    def build_messages(self, text: str) -> list[BaseMessage]:
        truncated = text[: self._max_input_chars]
        if len(truncated) < len(text):
            logger.debug(
                "RemoteTier | provider=%s truncated %d → %d chars",
                self.provider.value, len(text), len(truncated),
            )
        return [
            SystemMessage(content=SYSTEM_PROMPT),
            HumanMessage(content=USER_PROMPT.format(text=truncated)),
        ]

    async def try_extract(self, text: str) -> ExtractedDocumentData | None:
        provider = self.provider

        if not has_credential(provider):
            logger.info("RemoteTier | provider=%s skipped (no credential)", provider.value)
            return None

        if is_circuit_open(provider):
            logger.info("RemoteTier | provider=%s skipped (circuit open)", provider.value)
            return None

        messages = self.build_messages(text)
        llm      = self._router.build_llm(provider)
        model_id = get_spec(provider).model_id

        t0 = time.perf_counter()
        try:
            reply = await asyncio.wait_for(llm.ainvoke(messages), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            record_failure(provider)
            raise VendorError(
                provider.value, f"timed out after {self._timeout}s", kind="timeout",
            ) from exc
        except Exception as exc:
            record_failure(provider)
            raise classify_exception(provider, exc) from exc

        record_success(provider)
        logger.info(
            "RemoteTier | provider=%s model=%s latency_ms=%.0f",
            provider.value, model_id, (time.perf_counter() - t0) * 1000,
        )
        return parse_reply(provider, reply.content)


class SimulatedTier:
    name = "simulated"

    def __init__(self, generator: SimulatedContentGenerator | None = None) -> None:
        self._generator = generator or SimulatedContentGenerator()

    async def try_extract(self, text: str) -> ExtractedDocumentData | None:
        return self._generator.generate()
