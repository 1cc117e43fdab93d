"""
Unit Tests — Simulated Extraction
══════════════════════════════════
The last tier: must always produce schema-valid content.
"""

from __future__ import annotations

import random

import pytest

from app.processing.simulated import TABLE_TEMPLATES, SimulatedContentGenerator
from app.schemas.documents import ExtractedDocumentData


@pytest.mark.unit
@pytest.mark.extraction
class TestSimulatedContent:

    @pytest.mark.parametrize("seed", range(25))
    def test_shape(self, seed):
        data = SimulatedContentGenerator(random.Random(seed)).generate()

        assert 2 <= len(data.tables) <= 3
        assert len({t.title for t in data.tables}) == len(data.tables)
        assert 3 <= len(data.key_findings) <= 5
        assert len(set(data.key_findings)) == len(data.key_findings)
        assert data.summary
        assert "{" not in data.summary

    @pytest.mark.parametrize("seed", range(10))
    def test_tables_have_header_and_rows(self, seed):
        data = SimulatedContentGenerator(random.Random(seed)).generate()
        headers = {t.title: list(t.headers) for t in TABLE_TEMPLATES}

        for table in data.tables:
            assert table.rows[0] == headers[table.title]
            assert len(table.rows) >= 4
            assert all(len(row) == len(table.rows[0]) for row in table.rows)
            assert 1 <= table.location["page"] <= 20

    def test_metadata_keys(self):
        data = SimulatedContentGenerator(random.Random(7)).generate()
        assert set(data.metadata) == {
            "documentType", "fiscalYear", "authoringDepartment", "approvalDate", "distributionLevel",
        }
        assert 2022 <= int(data.metadata["fiscalYear"]) <= 2025

    def test_seeded_output_is_reproducible(self):
        first  = SimulatedContentGenerator(random.Random(99)).generate()
        second = SimulatedContentGenerator(random.Random(99)).generate()
        assert first == second

    def test_round_trips_through_wire_format(self):
        data = SimulatedContentGenerator(random.Random(3)).generate()
        wire = data.model_dump(mode="json", by_alias=True)

        assert "keyFindings" in wire
        assert ExtractedDocumentData.model_validate(wire) == data
