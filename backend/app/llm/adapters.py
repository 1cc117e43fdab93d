"""
Provider Adapters — one per LLM vendor, each running the tier chain.

    adapter = get_adapter(Provider.OPENAI)
    result  = await adapter.extract(text)
    # result.success is True with the default tiers; result.tier tells
    # which tier produced result.content

Failures inside a tier never propagate: expected vendor / schema errors
are logged at WARNING, anything else at ERROR with a traceback, and the
next tier is tried. Every payload is stamped with
metadata.extractionMethod and metadata.provider.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Sequence

from app.llm.fallback import ExtractionTier, PatternTier, RemoteTier, SimulatedTier
from app.llm.router import Provider
from app.schemas.documents import ExtractedDocumentData, ExtractionResult
from app.services.errors import ProcessingError

logger = logging.getLogger(__name__)


class ProviderAdapter:

    def __init__(
        self,
        provider: Provider,
        tiers:    Sequence[ExtractionTier] | None = None,
    ) -> None:
        self.provider = provider
        self._tiers: list[ExtractionTier] = list(tiers) if tiers is not None else [
            PatternTier(),
            RemoteTier(provider),
            SimulatedTier(),
        ]

    @property
    def tiers(self) -> list[ExtractionTier]:
        return list(self._tiers)

    async def extract(self, text: str) -> ExtractionResult:
        errors: list[str] = []

        for tier in self._tiers:
            try:
                content = await tier.try_extract(text)
            except ProcessingError as exc:
                logger.warning(
                    "Adapter | provider=%s tier=%s failed, falling back: %s",
                    self.provider.value, tier.name, exc,
                )
                errors.append(f"{tier.name}: {exc}")
                continue
            except Exception as exc:
                logger.error(
                    "Adapter | provider=%s tier=%s unexpected error, falling back: %s",
                    self.provider.value, tier.name, exc, exc_info=True,
                )
                errors.append(f"{tier.name}: {type(exc).__name__}: {exc}")
                continue

            if content is None:
                continue

            logger.info(
                "Adapter | provider=%s tier=%s tables=%d findings=%d",
                self.provider.value, tier.name, len(content.tables), len(content.key_findings),
            )
            return ExtractionResult(
                success=True,
                content=self._stamp(content, tier.name),
                tier=tier.name,
            )

        return ExtractionResult(
            success=False,
            error="; ".join(errors) or "no tier produced content",
        )

    def _stamp(self, content: ExtractedDocumentData, tier: str) -> ExtractedDocumentData:
        metadata = {
            **content.metadata,
            "extractionMethod": tier,
            "provider":         self.provider.value,
        }
        return content.model_copy(update={"metadata": metadata})


@lru_cache(maxsize=None)
def get_adapter(provider: Provider) -> ProviderAdapter:
    return ProviderAdapter(provider)
