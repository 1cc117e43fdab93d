"""
SQLAlchemy ORM Models — Documents & Routing Rules

Used by SqlDocumentStore (app.storage.documents) when
DOCUMENT_STORE_BACKEND=sql. Using SQLAlchemy 2.x mapped classes for full
async support.

Tables:
  documents    one row per uploaded file, mutated by the orchestrator
  llm_configs  administrator-defined routing rules (condition → provider)
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ---------------------------------------------------------------------------
# Declarative base — shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Document model — documents
# ---------------------------------------------------------------------------

class Document(Base):
    """
    Tracks a single uploaded file from upload → extraction → completion.

    State machine (status column):
        QUEUED      — file stored, no run started
        IN_PROGRESS — metadata, routing or extraction running
        EXTRACTED   — content extracted, finalising
        COMPLETED   — extracted_content persisted
        FAILED      — see error / error_details
        STOPPED     — cancelled by the user

    progress is 100 exactly when status is COMPLETED, FAILED or STOPPED.
    """

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint(
            "status IN ('QUEUED', 'IN_PROGRESS', 'EXTRACTED', 'COMPLETED', 'FAILED', 'STOPPED')",
            name="documents_status_check",
        ),
        CheckConstraint("progress BETWEEN 0 AND 100", name="documents_progress_check"),
        Index("idx_documents_status",       "status"),
        Index("idx_documents_completed_at", "completed_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    file_name: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Original sanitized filename provided by the client",
    )
    file_path: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Server-side path under UPLOAD_DIR",
    )
    file_size: Mapped[int]           = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    page_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Processing state machine
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="QUEUED",
        server_default="QUEUED",
    )
    progress: Mapped[int]                 = mapped_column(Integer, nullable=False, default=0, server_default="0")
    current_step: Mapped[Optional[str]]   = mapped_column(Text, nullable=True)
    step_progress: Mapped[Optional[str]]  = mapped_column(String(10), nullable=True)
    llm_provider: Mapped[Optional[str]]   = mapped_column(String(50), nullable=True)

    extracted_content: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSON,
        nullable=True,
        comment="{tables, summary, keyFindings, metadata}",
    )
    error: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Populated only when status='FAILED'",
    )
    error_details: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    processing_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]]          = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<Document id={self.id} status={self.status} "
            f"progress={self.progress} file={self.file_name!r}>"
        )


# ---------------------------------------------------------------------------
# RoutingRule model — llm_configs
# ---------------------------------------------------------------------------

class RoutingRule(Base):
    """
    One administrator-defined routing rule.
    Rules are evaluated by ascending priority; the first active match wins.
    """

    __tablename__ = "llm_configs"
    __table_args__ = (
        Index("idx_llm_configs_priority", "is_active", "priority"),
    )

    id: Mapped[int]           = mapped_column(Integer, primary_key=True, autoincrement=True)
    condition: Mapped[str]    = mapped_column(Text, nullable=False)
    llm_provider: Mapped[str] = mapped_column(String(50), nullable=False)
    rationale: Mapped[str]    = mapped_column(Text, nullable=False, default="", server_default="")
    priority: Mapped[int]     = mapped_column(Integer, nullable=False, default=100, server_default="100")
    is_active: Mapped[bool]   = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<RoutingRule id={self.id} priority={self.priority} "
            f"condition={self.condition!r} provider={self.llm_provider}>"
        )
