"""
Observability Tracing — LangSmith + stage timing

Traces every document run stage by stage:
  Metadata → Routing → Extraction (tier chain) → Finalization

Supported backends:

  LangSmith (hosted):
    - Set LANGSMITH_API_KEY (or LANGCHAIN_TRACING_V2 / LANGCHAIN_API_KEY directly)
    - Every remote-tier chat model call is traced through LangChain's
      callback injection; no code changes needed

  Logging (always on):
    - `@traced(name)` records elapsed time per stage at DEBUG, and
      failures at WARNING (expected) or ERROR (with traceback)

Environment variables:
  LANGSMITH_API_KEY=ls__...
  LANGSMITH_PROJECT=document-orchestrator
"""

from __future__ import annotations

import functools
import logging
import os
import time
from typing import Any, Callable, Coroutine, TypeVar

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Coroutine[Any, Any, Any]])


# ---------------------------------------------------------------------------
# TracingConfig — initialise at app startup
# ---------------------------------------------------------------------------

class TracingConfig:
    """
    Call once at application startup::

        from app.observability.tracing import TracingConfig
        TracingConfig.init()
    """

    _initialised: bool = False

    @classmethod
    def init(cls) -> None:
        if cls._initialised:
            return
        cls._initialised = True
        cls._init_langsmith()

    @staticmethod
    def _init_langsmith() -> None:
        """
        LangChain reads these env vars on import; we only set them from
        settings when they are not already present.
        """
        from app.core.config import settings

        if settings.langsmith_api_key and not os.environ.get("LANGCHAIN_API_KEY"):
            os.environ["LANGCHAIN_TRACING_V2"] = "true"
            os.environ["LANGCHAIN_API_KEY"]     = settings.langsmith_api_key
            os.environ["LANGCHAIN_PROJECT"]     = settings.langsmith_project
            logger.info("LangSmith tracing enabled | project=%s", settings.langsmith_project)
        elif os.environ.get("LANGCHAIN_TRACING_V2") == "true":
            logger.info(
                "LangSmith tracing active (from env) | project=%s",
                os.environ.get("LANGCHAIN_PROJECT", "default"),
            )
        else:
            logger.debug("LangSmith tracing disabled (LANGCHAIN_TRACING_V2 not set)")


# ---------------------------------------------------------------------------
# @traced decorator
# ---------------------------------------------------------------------------

def traced(
    name:     str | None = None,
    expected: tuple[type[BaseException], ...] = (),
) -> Callable[[F], F]:
    """
    Decorator that instruments an async function with timing and error logging.

    expected: exception types that are part of normal control flow; they
    are logged at WARNING without a traceback and re-raised unchanged.

    Usage::

        @traced("orchestrator.metadata")
        async def _metadata_stage(self, run): ...
    """
    def decorator(func: F) -> F:
        span_name = name or func.__qualname__

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            t0 = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except expected as exc:
                elapsed_ms = (time.perf_counter() - t0) * 1000
                logger.warning(
                    "trace | span=%s elapsed_ms=%.1f %s: %s",
                    span_name, elapsed_ms, type(exc).__name__, exc,
                )
                raise
            except Exception as exc:
                elapsed_ms = (time.perf_counter() - t0) * 1000
                logger.error(
                    "trace | span=%s elapsed_ms=%.1f error=%s",
                    span_name, elapsed_ms, exc, exc_info=True,
                )
                raise
            elapsed_ms = (time.perf_counter() - t0) * 1000
            logger.debug("trace | span=%s elapsed_ms=%.1f ok", span_name, elapsed_ms)
            return result

        return wrapper  # type: ignore[return-value]
    return decorator
