"""
Unit Tests — Provider adapters (tier chain)
════════════════════════════════════════════

Coverage targets:
  ✅ Pattern tier answers first; remote tier never called
  ✅ Remote tier used when patterns find too little
  ✅ Vendor / schema / unexpected errors fall through to simulated
  ✅ Every payload stamped with extractionMethod + provider
  ✅ Empty chain → unsuccessful result, never an exception
  ✅ get_adapter: one cached adapter per provider with the default chain
"""

from __future__ import annotations

import random
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.llm.adapters import ProviderAdapter, get_adapter
from app.llm.fallback import PatternTier, SimulatedTier
from app.llm.router import Provider
from app.processing.simulated import SimulatedContentGenerator
from app.schemas.documents import ExtractedDocumentData
from app.services.errors import ResponseSchemaError, VendorError
from tests.conftest import FINANCIAL_STATEMENT_TEXT, plain_text


def _remote(result=None, side_effect=None) -> MagicMock:
    tier = MagicMock()
    tier.name = "remote"
    tier.try_extract = AsyncMock(return_value=result, side_effect=side_effect)
    return tier


def _adapter(remote: MagicMock, provider: Provider = Provider.OPENAI) -> ProviderAdapter:
    return ProviderAdapter(
        provider,
        tiers=[
            PatternTier(),
            remote,
            SimulatedTier(SimulatedContentGenerator(random.Random(5))),
        ],
    )


REMOTE_CONTENT = ExtractedDocumentData(
    summary="From the vendor.",
    key_findings=["one"],
    metadata={"documentType": "Memo"},
)


@pytest.mark.unit
@pytest.mark.extraction
class TestTierOrder:

    async def test_pattern_tier_short_circuits(self):
        remote = _remote(REMOTE_CONTENT)

        result = await _adapter(remote).extract(FINANCIAL_STATEMENT_TEXT)

        assert result.success
        assert result.tier == "pattern"
        assert remote.try_extract.await_count == 0
        assert result.content.metadata["extractionMethod"] == "pattern"
        assert result.content.metadata["provider"] == "openai"
        assert result.content.metadata["documentType"] == "Financial Report"

    async def test_remote_tier_when_patterns_insufficient(self):
        remote = _remote(REMOTE_CONTENT)

        result = await _adapter(remote, Provider.ANTHROPIC).extract(plain_text(50))

        assert result.tier == "remote"
        assert result.content.summary == "From the vendor."
        assert result.content.metadata == {
            "documentType":     "Memo",
            "extractionMethod": "remote",
            "provider":         "anthropic",
        }
        remote.try_extract.assert_awaited_once()

    async def test_skipped_remote_falls_to_simulated(self):
        result = await _adapter(_remote(None)).extract(plain_text(5))

        assert result.success
        assert result.tier == "simulated"
        assert result.content.metadata["extractionMethod"] == "simulated"
        assert 2 <= len(result.content.tables) <= 3


@pytest.mark.unit
@pytest.mark.extraction
class TestFallback:

    @pytest.mark.parametrize(
        "error",
        [
            VendorError("openai", "HTTP 429", status_code=429, kind="rate_limit"),
            VendorError("openai", "HTTP 401", status_code=401, kind="auth"),
            ResponseSchemaError("openai", "no JSON object in reply"),
            RuntimeError("unexpected bug"),
        ],
    )
    async def test_errors_fall_back_to_simulated(self, error):
        result = await _adapter(_remote(side_effect=error)).extract(plain_text(5))

        assert result.success
        assert result.tier == "simulated"

    async def test_empty_chain_is_unsuccessful(self):
        result = await ProviderAdapter(Provider.GEMINI, tiers=[]).extract("x")

        assert not result.success
        assert result.content is None
        assert result.error == "no tier produced content"

    async def test_errors_collected_when_every_tier_fails(self):
        adapter = ProviderAdapter(
            Provider.LLAMA,
            tiers=[_remote(side_effect=VendorError("llama", "HTTP 500", kind="server"))],
        )
        result = await adapter.extract("x")

        assert not result.success
        assert "remote: llama: HTTP 500" in result.error


@pytest.mark.unit
@pytest.mark.extraction
class TestAdapterRegistry:

    def test_cached_per_provider(self):
        assert get_adapter(Provider.LLAMA) is get_adapter(Provider.LLAMA)
        assert get_adapter(Provider.LLAMA) is not get_adapter(Provider.OPENAI)

    def test_default_chain(self):
        adapter = get_adapter(Provider.GEMINI)
        assert [t.name for t in adapter.tiers] == ["pattern", "remote", "simulated"]
        assert adapter.provider == Provider.GEMINI

    async def test_default_chain_without_credentials_is_simulated(self):
        result = await get_adapter(Provider.OPENAI).extract(plain_text(5))
        assert result.tier == "simulated"
