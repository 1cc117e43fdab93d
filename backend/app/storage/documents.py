"""
Document Store — keyed record store behind a narrow interface

The orchestrator only ever calls get() and update(); the API layer adds
create / list / delete and routing-rule CRUD.

Backends (DOCUMENT_STORE_BACKEND):
  memory  InMemoryDocumentStore — default; single-process, lost on restart
  sql     SqlDocumentStore      — SQLAlchemy async ORM over documents / llm_configs

Guarantee: a write is visible to every subsequent read in the same process.
Records handed out are copies; mutating them never changes stored state.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from sqlalchemy import delete, select, update

from app.core.config import settings
from app.models.documents import Document
from app.models.documents import RoutingRule as RoutingRuleRow
from app.schemas.documents import (
    DocumentRecord,
    ExtractedDocumentData,
    ProcessingStatus,
    RoutingRule,
    RoutingRuleCreate,
    RoutingRuleUpdate,
)
from app.services.errors import DocumentNotFoundError

logger = logging.getLogger(__name__)

_DOCUMENT_FIELDS = frozenset(DocumentRecord.model_fields) - {"id", "created_at"}
_SORTABLE = ("created_at", "completed_at", "processing_started_at", "id")
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _check_fields(changes: dict[str, Any]) -> None:
    unknown = set(changes) - _DOCUMENT_FIELDS
    if unknown:
        raise ValueError(f"Unknown document fields: {sorted(unknown)}")


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------

class DocumentStore(ABC):
    """Abstract base — every backend implements this interface."""

    @abstractmethod
    async def get(self, document_id: int) -> DocumentRecord | None:
        """Return the document, or None when the id is unknown."""

    @abstractmethod
    async def update(self, document_id: int, changes: dict[str, Any]) -> DocumentRecord:
        """
        Apply a partial update and return the new record.

        Raises:
            DocumentNotFoundError: no document with this id.
            ValueError: a key in `changes` is not a document field.
        """

    @abstractmethod
    async def create(self, file_name: str, file_path: str, file_size: int) -> DocumentRecord:
        """Insert a new QUEUED document."""

    @abstractmethod
    async def delete(self, document_id: int) -> bool: ...

    @abstractmethod
    async def list_documents(
        self,
        statuses:   Iterable[ProcessingStatus] | None = None,
        limit:      int | None = None,
        order_by:   str = "created_at",
        descending: bool = False,
    ) -> list[DocumentRecord]: ...

    @abstractmethod
    async def list_routing_rules(self, active_only: bool = True) -> list[RoutingRule]:
        """Rules ordered by (priority, id)."""

    @abstractmethod
    async def create_routing_rule(self, data: RoutingRuleCreate) -> RoutingRule: ...

    @abstractmethod
    async def update_routing_rule(self, rule_id: int, data: RoutingRuleUpdate) -> RoutingRule | None: ...

    @abstractmethod
    async def delete_routing_rule(self, rule_id: int) -> bool: ...

    async def close(self) -> None:
        return None


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------

class InMemoryDocumentStore(DocumentStore):

    def __init__(self) -> None:
        self._documents: dict[int, DocumentRecord] = {}
        self._rules:     dict[int, RoutingRule]    = {}
        self._next_doc_id  = 1
        self._next_rule_id = 1
        self._lock = asyncio.Lock()

    async def get(self, document_id: int) -> DocumentRecord | None:
        record = self._documents.get(document_id)
        return record.model_copy(deep=True) if record else None

    async def update(self, document_id: int, changes: dict[str, Any]) -> DocumentRecord:
        _check_fields(changes)
        async with self._lock:
            current = self._documents.get(document_id)
            if current is None:
                raise DocumentNotFoundError(document_id)
            merged = current.model_dump()
            merged.update(changes)
            record = DocumentRecord.model_validate(merged)
            self._documents[document_id] = record
        return record.model_copy(deep=True)

    async def create(self, file_name: str, file_path: str, file_size: int) -> DocumentRecord:
        async with self._lock:
            record = DocumentRecord(
                id=self._next_doc_id,
                file_name=file_name,
                file_path=file_path,
                file_size=file_size,
                status=ProcessingStatus.QUEUED,
                progress=0,
                created_at=utcnow(),
            )
            self._documents[record.id] = record
            self._next_doc_id += 1
        logger.info("DocumentStore | created id=%d file=%s", record.id, file_name)
        return record.model_copy(deep=True)

    async def delete(self, document_id: int) -> bool:
        async with self._lock:
            return self._documents.pop(document_id, None) is not None

    async def list_documents(
        self,
        statuses:   Iterable[ProcessingStatus] | None = None,
        limit:      int | None = None,
        order_by:   str = "created_at",
        descending: bool = False,
    ) -> list[DocumentRecord]:
        if order_by not in _SORTABLE:
            raise ValueError(f"Cannot order by '{order_by}'")
        wanted = set(statuses) if statuses is not None else None
        docs = [
            d for d in self._documents.values()
            if wanted is None or d.status in wanted
        ]
        # None timestamps sort first ascending, last descending
        def _key(d: DocumentRecord) -> tuple:
            value = getattr(d, order_by)
            return (value is not None, value if value is not None else _EPOCH, d.id)

        docs.sort(key=_key, reverse=descending)
        if limit is not None:
            docs = docs[:limit]
        return [d.model_copy(deep=True) for d in docs]

    async def list_routing_rules(self, active_only: bool = True) -> list[RoutingRule]:
        rules = [r for r in self._rules.values() if r.is_active or not active_only]
        rules.sort(key=lambda r: (r.priority, r.id))
        return [r.model_copy() for r in rules]

    async def create_routing_rule(self, data: RoutingRuleCreate) -> RoutingRule:
        async with self._lock:
            rule = RoutingRule(id=self._next_rule_id, **data.model_dump())
            self._rules[rule.id] = rule
            self._next_rule_id += 1
        return rule.model_copy()

    async def update_routing_rule(self, rule_id: int, data: RoutingRuleUpdate) -> RoutingRule | None:
        async with self._lock:
            current = self._rules.get(rule_id)
            if current is None:
                return None
            rule = current.model_copy(update=data.model_dump(exclude_unset=True))
            self._rules[rule_id] = rule
        return rule.model_copy()

    async def delete_routing_rule(self, rule_id: int) -> bool:
        async with self._lock:
            return self._rules.pop(rule_id, None) is not None


# ---------------------------------------------------------------------------
# SQL backend
# ---------------------------------------------------------------------------

SessionScope = Callable[[], AbstractAsyncContextManager[Any]]


def _document_to_record(row: Document) -> DocumentRecord:
    return DocumentRecord(
        id=row.id,
        file_name=row.file_name,
        file_path=row.file_path,
        file_size=row.file_size or 0,
        page_count=row.page_count,
        status=ProcessingStatus(row.status),
        progress=row.progress or 0,
        current_step=row.current_step,
        step_progress=row.step_progress,
        llm_provider=row.llm_provider,
        extracted_content=row.extracted_content,
        error=row.error,
        error_details=row.error_details,
        created_at=row.created_at,
        processing_started_at=row.processing_started_at,
        completed_at=row.completed_at,
    )


def _rule_to_schema(row: RoutingRuleRow) -> RoutingRule:
    return RoutingRule(
        id=row.id,
        condition=row.condition,
        llm_provider=row.llm_provider,
        rationale=row.rationale or "",
        priority=row.priority,
        is_active=row.is_active,
    )


def _column_values(changes: dict[str, Any]) -> dict[str, Any]:
    """Convert record-level values into JSON/str column values."""
    values: dict[str, Any] = {}
    for key, value in changes.items():
        if isinstance(value, ExtractedDocumentData):
            value = value.model_dump(mode="json", by_alias=True)
        elif isinstance(value, ProcessingStatus):
            value = value.value
        values[key] = value
    return values


class SqlDocumentStore(DocumentStore):
    """
    Each call runs in its own transaction obtained from `session_scope`
    (app.db.session.session_scope by default; tests inject a mock).
    """

    def __init__(self, session_scope: SessionScope | None = None) -> None:
        if session_scope is None:
            from app.db.session import session_scope as default_scope
            session_scope = default_scope
        self._scope = session_scope

    async def get(self, document_id: int) -> DocumentRecord | None:
        async with self._scope() as session:
            result = await session.execute(select(Document).where(Document.id == document_id))
            row = result.scalars().first()
        return _document_to_record(row) if row else None

    async def update(self, document_id: int, changes: dict[str, Any]) -> DocumentRecord:
        _check_fields(changes)
        if "progress" in changes and not 0 <= int(changes["progress"]) <= 100:
            raise ValueError(f"progress out of range: {changes['progress']}")
        async with self._scope() as session:
            result = await session.execute(
                update(Document)
                .where(Document.id == document_id)
                .values(**_column_values(changes))
                .returning(Document)
            )
            row = result.scalars().first()
        if row is None:
            raise DocumentNotFoundError(document_id)
        return _document_to_record(row)

    async def create(self, file_name: str, file_path: str, file_size: int) -> DocumentRecord:
        async with self._scope() as session:
            row = Document(
                file_name=file_name,
                file_path=file_path,
                file_size=file_size,
                status=ProcessingStatus.QUEUED.value,
                progress=0,
                created_at=utcnow(),
            )
            session.add(row)
            await session.flush()
            await session.refresh(row)
        logger.info("DocumentStore | created id=%d file=%s", row.id, file_name)
        return _document_to_record(row)

    async def delete(self, document_id: int) -> bool:
        async with self._scope() as session:
            result = await session.execute(delete(Document).where(Document.id == document_id))
        return bool(result.rowcount)

    async def list_documents(
        self,
        statuses:   Iterable[ProcessingStatus] | None = None,
        limit:      int | None = None,
        order_by:   str = "created_at",
        descending: bool = False,
    ) -> list[DocumentRecord]:
        if order_by not in _SORTABLE:
            raise ValueError(f"Cannot order by '{order_by}'")
        column = getattr(Document, order_by)
        stmt = select(Document).order_by(
            column.desc().nulls_last() if descending else column.asc().nulls_first(),
            Document.id.desc() if descending else Document.id.asc(),
        )
        if statuses is not None:
            stmt = stmt.where(Document.status.in_([ProcessingStatus(s).value for s in statuses]))
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._scope() as session:
            result = await session.execute(stmt)
            rows = result.scalars().all()
        return [_document_to_record(r) for r in rows]

    async def list_routing_rules(self, active_only: bool = True) -> list[RoutingRule]:
        stmt = select(RoutingRuleRow).order_by(RoutingRuleRow.priority, RoutingRuleRow.id)
        if active_only:
            stmt = stmt.where(RoutingRuleRow.is_active.is_(True))
        async with self._scope() as session:
            result = await session.execute(stmt)
            rows = result.scalars().all()
        return [_rule_to_schema(r) for r in rows]

    async def create_routing_rule(self, data: RoutingRuleCreate) -> RoutingRule:
        async with self._scope() as session:
            row = RoutingRuleRow(**data.model_dump())
            session.add(row)
            await session.flush()
            await session.refresh(row)
        return _rule_to_schema(row)

    async def update_routing_rule(self, rule_id: int, data: RoutingRuleUpdate) -> RoutingRule | None:
        values = data.model_dump(exclude_unset=True)
        async with self._scope() as session:
            if not values:
                result = await session.execute(select(RoutingRuleRow).where(RoutingRuleRow.id == rule_id))
            else:
                result = await session.execute(
                    update(RoutingRuleRow)
                    .where(RoutingRuleRow.id == rule_id)
                    .values(**values)
                    .returning(RoutingRuleRow)
                )
            row = result.scalars().first()
        return _rule_to_schema(row) if row else None

    async def delete_routing_rule(self, rule_id: int) -> bool:
        async with self._scope() as session:
            result = await session.execute(delete(RoutingRuleRow).where(RoutingRuleRow.id == rule_id))
        return bool(result.rowcount)

    async def close(self) -> None:
        from app.db.session import dispose_engine
        await dispose_engine()


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def get_document_store() -> DocumentStore:
    """
    Return a store for the configured backend.
    Called once from the FastAPI lifespan; the instance is shared.
    """
    backend = settings.document_store_backend.lower()

    if backend == "memory":
        return InMemoryDocumentStore()

    if backend == "sql":
        return SqlDocumentStore()

    raise ValueError(
        f"Unknown document store backend: '{backend}'. "
        f"Valid options: 'memory', 'sql'"
    )
