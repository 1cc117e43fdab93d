"""
Root conftest.py — Shared fixtures for ALL tests (unit + integration)

Fixture hierarchy:
  function-scoped : store, broadcaster, orchestrator, make_document,
                    app_with_state, async_client, sample texts

Environment strategy:
  - The in-memory document store is used everywhere; SQL store tests
    inject a mocked session scope (no PostgreSQL needed).
  - Provider credentials are forced to the dev placeholder, so the remote
    tier never reaches a vendor unless a test patches ModelRouter.build_llm.
  - Uploaded files are written under pytest's tmp_path.
  - Circuit breaker state is reset before every test.

How to run:
  pytest                               # all tests
  pytest -m unit                       # unit tests only (fast, no I/O)
  pytest -m orchestrator               # state machine + run scenarios
  pytest backend/tests/unit/test_router.py
"""

from __future__ import annotations

import os
from typing import AsyncGenerator, Awaitable, Callable

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# ─────────────────────────────────────────────────────────────────────────────
# Patch settings BEFORE any app imports so modules read test config
# ─────────────────────────────────────────────────────────────────────────────

os.environ.setdefault("DOCUMENT_STORE_BACKEND", "memory")
os.environ.setdefault("APP_ENV",                "development")
os.environ.setdefault("DEBUG",                  "true")
os.environ.setdefault("LLM_REQUEST_TIMEOUT",    "2")

# Never call a real vendor from the test suite
for _key in ("OPENAI_API_KEY", "ANTHROPIC_API_KEY", "GOOGLE_API_KEY", "PERPLEXITY_API_KEY"):
    os.environ[_key] = "dummy-key-for-development"
os.environ.pop("LANGSMITH_API_KEY", None)

from app.schemas.documents import DocumentRecord  # noqa: E402


# ─────────────────────────────────────────────────────────────────────────────
# Sample document texts
# ─────────────────────────────────────────────────────────────────────────────

def plain_text(lines: int) -> str:
    """Non-financial prose, one sentence per line (40 lines ≈ 1 page)."""
    return "\n".join(
        f"Line {i} of the project notes covers onboarding and planning." for i in range(1, lines + 1)
    )


FINANCIAL_STATEMENT_TEXT = """Balance Sheet
Assets:
- Cash: $50,000
- Receivables: $30,000
Liabilities:
- Loans: $20,000
Equity:
- Share Capital: $60,000

Profit and Loss Statement
Revenue:
- Sales: $120,000
Expenses:
- Salaries: $40,000
Net Profit: $80,000

Notes to Accounts: 1. Receivables are due within 30 days. 2. Loans are secured.
"""


@pytest.fixture
def three_page_text() -> str:
    return plain_text(100)


@pytest.fixture
def fifteen_page_text() -> str:
    return plain_text(600)


@pytest.fixture
def financial_text() -> str:
    return FINANCIAL_STATEMENT_TEXT


# ─────────────────────────────────────────────────────────────────────────────
# Global state resets
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def _reset_circuits():
    from app.llm.fallback import reset_circuits
    reset_circuits()
    yield
    reset_circuits()


@pytest.fixture(autouse=True)
def _upload_dir(tmp_path, monkeypatch):
    from app.core.config import settings
    monkeypatch.setattr(settings, "upload_dir", str(tmp_path / "uploads"))


# ─────────────────────────────────────────────────────────────────────────────
# Core components
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def store():
    from app.storage.documents import InMemoryDocumentStore
    return InMemoryDocumentStore()


@pytest.fixture
def broadcaster(store):
    from app.services.broadcaster import UpdateBroadcaster
    return UpdateBroadcaster(store, queue_size=500)


@pytest_asyncio.fixture
async def orchestrator(store, broadcaster):
    from app.services.orchestrator import DocumentOrchestrator
    orch = DocumentOrchestrator(store, broadcaster)
    yield orch
    await orch.shutdown()


MakeDocument = Callable[..., Awaitable[DocumentRecord]]


@pytest.fixture
def make_document(store, tmp_path) -> MakeDocument:
    """
    Factory: write a source file and insert a QUEUED record for it.

    Usage:
        doc = await make_document("notes.txt", three_page_text)
        doc = await make_document("gone.txt", missing=True)
    """
    async def _build(
        file_name: str = "notes.txt",
        content:   str | bytes = "hello",
        missing:   bool = False,
    ) -> DocumentRecord:
        data = content.encode() if isinstance(content, str) else content
        path = tmp_path / "sources" / file_name
        if not missing:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        return await store.create(file_name=file_name, file_path=str(path), file_size=len(data))

    return _build


# ─────────────────────────────────────────────────────────────────────────────
# FastAPI test client with process singletons on app.state
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def app_with_state(store, broadcaster, orchestrator):
    """
    The FastAPI app with its lifespan singletons replaced by the test
    fixtures (ASGITransport does not run the lifespan).
    """
    from app.main import app

    app.state.store        = store
    app.state.broadcaster  = broadcaster
    app.state.orchestrator = orchestrator
    return app


@pytest_asyncio.fixture
async def async_client(app_with_state) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client; httpx >= 0.28 requires ASGITransport explicitly."""
    transport = ASGITransport(app=app_with_state)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
