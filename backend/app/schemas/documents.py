"""
Document Processing — Pydantic Schemas

Covers:
  - The document record and its processing state machine enum
  - Extracted content payload ({tables, summary, keyFindings, metadata})
  - Broadcast deltas (document_update) and aggregate stats (stats_update)
  - Routing rule CRUD bodies
  - All structured error bodies (400, 404, 409, 413, 422, 500)

Design decisions:
  - Python attributes are snake_case; the wire format is camelCase
    (alias_generator=to_camel). Both are accepted on input.
  - Document ids are store-assigned integers; never client-supplied.
  - All timestamps are timezone-aware UTC datetimes.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
)
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


# ---------------------------------------------------------------------------
# Processing pipeline state machine
# ---------------------------------------------------------------------------

class ProcessingStatus(str, Enum):
    """
    Maps to documents.status column.
    Transitions: QUEUED → IN_PROGRESS → EXTRACTED → COMPLETED
                 IN_PROGRESS | EXTRACTED → FAILED | STOPPED
                 QUEUED → STOPPED           (stop before a run starts)
                 FAILED | STOPPED → QUEUED  (retry)
    """
    QUEUED      = "QUEUED"        # uploaded, no run started yet
    IN_PROGRESS = "IN_PROGRESS"   # metadata / routing / extraction running
    EXTRACTED   = "EXTRACTED"     # content extracted, finalising
    COMPLETED   = "COMPLETED"
    FAILED      = "FAILED"
    STOPPED     = "STOPPED"       # cancelled by the user

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: frozenset[ProcessingStatus] = frozenset(
    {ProcessingStatus.COMPLETED, ProcessingStatus.FAILED, ProcessingStatus.STOPPED}
)

ACTIVE_STATUSES: frozenset[ProcessingStatus] = frozenset(
    {ProcessingStatus.IN_PROGRESS, ProcessingStatus.EXTRACTED}
)


# ---------------------------------------------------------------------------
# Extracted content
# ---------------------------------------------------------------------------

def _cell(value: Any) -> str:
    return "" if value is None else str(value)


class ExtractedTable(_CamelModel):
    """One table; row 0 is the header row."""
    title:    str
    # Vendors reply with either "rows" or "data" for the cell grid
    rows:     list[list[str]] = Field(
        default_factory=list,
        validation_alias=AliasChoices("rows", "data"),
    )
    location: dict[str, Any] | None = None

    @field_validator("rows", mode="before")
    @classmethod
    def _stringify_cells(cls, v: Any) -> Any:
        if isinstance(v, list):
            return [
                [_cell(c) for c in row] if isinstance(row, (list, tuple)) else [_cell(row)]
                for row in v
            ]
        return v


class ExtractedDocumentData(_CamelModel):
    tables:       list[ExtractedTable] = Field(default_factory=list)
    summary:      str                  = Field(..., min_length=1)
    key_findings: list[str]            = Field(default_factory=list)
    metadata:     dict[str, str]       = Field(default_factory=dict)

    @field_validator("key_findings", mode="before")
    @classmethod
    def _stringify_findings(cls, v: Any) -> Any:
        if isinstance(v, list):
            return [_cell(item) for item in v if item not in (None, "")]
        return v

    @field_validator("metadata", mode="before")
    @classmethod
    def _stringify_metadata(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return {str(k): _cell(val) for k, val in v.items()}
        return v


class ExtractionResult(BaseModel):
    """
    Return value of ProviderAdapter.extract().

    success : always True once the simulated tier has run
    tier    : "pattern" | "remote" | "simulated"
    """
    success: bool
    content: ExtractedDocumentData | None = None
    error:   str | None = None
    tier:    str | None = None


# ---------------------------------------------------------------------------
# Document record
# ---------------------------------------------------------------------------

class DocumentRecord(_CamelModel):
    """Full document row as seen by the orchestrator and the API."""
    id:                    int
    file_name:             str
    file_path:             str
    file_size:             int                 = 0
    page_count:            int | None          = None
    status:                ProcessingStatus    = ProcessingStatus.QUEUED
    progress:              int                 = Field(0, ge=0, le=100)
    current_step:          str | None          = None
    step_progress:         str | None          = None
    llm_provider:          str | None          = None
    extracted_content:     ExtractedDocumentData | None = None
    error:                 str | None          = None
    error_details:         dict[str, Any] | None = None
    created_at:            datetime
    processing_started_at: datetime | None     = None
    completed_at:          datetime | None     = None


class DocumentListResponse(_CamelModel):
    documents: list[DocumentRecord]


class ActionAccepted(_CamelModel):
    """202 body for process / stop / retry — outcome is observed via status/events."""
    message:     str
    document_id: int


# ---------------------------------------------------------------------------
# Broadcast payloads
# ---------------------------------------------------------------------------

class DocumentUpdate(_CamelModel):
    """
    Delta published on every persisted change.
    event: document_update
    data: <json of this model, None fields omitted>
    """
    type:          Literal["document_update"] = "document_update"
    document_id:   int
    status:        ProcessingStatus | None = None
    progress:      int | None              = None
    current_step:  str | None              = None
    step_progress: str | None              = None
    error:         str | None              = None
    llm_provider:  str | None              = None

    @property
    def is_terminal(self) -> bool:
        return self.status is not None and self.status.is_terminal

    def wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class StatsSnapshot(_CamelModel):
    """
    Aggregate dashboard numbers.
    event: stats_update
    """
    type:            Literal["stats_update"] = "stats_update"
    active_count:    int = 0
    processed_today: int = 0
    failed_count:    int = 0
    system_status:   str = "operational"   # operational | degraded

    def wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Routing rules — llm_configs table
# ---------------------------------------------------------------------------

class RoutingRule(_CamelModel):
    """
    condition    : symbolic predicate, e.g. "page_count > 10", "Is scanned document"
    llm_provider : provider id ("anthropic" | "openai" | "gemini" | "llama")
    priority     : lower is evaluated first
    """
    id:           int
    condition:    str
    llm_provider: str
    rationale:    str  = ""
    priority:     int  = 100
    is_active:    bool = True


class RoutingRuleCreate(_CamelModel):
    condition:    str  = Field(..., min_length=1, max_length=200)
    llm_provider: str  = Field(..., min_length=1, max_length=50)
    rationale:    str  = ""
    priority:     int  = Field(100, ge=0)
    is_active:    bool = True


class RoutingRuleUpdate(_CamelModel):
    condition:    str | None  = Field(None, min_length=1, max_length=200)
    llm_provider: str | None  = Field(None, min_length=1, max_length=50)
    rationale:    str | None  = None
    priority:     int | None  = Field(None, ge=0)
    is_active:    bool | None = None


class RoutingRuleListResponse(_CamelModel):
    routes: list[RoutingRule]


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error — may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str         = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None        = Field(None, description="Trace ID for log correlation")


# ---------------------------------------------------------------------------
# Pre-defined error factories (keeps route handlers thin)
# ---------------------------------------------------------------------------

class ProcessingErrors:
    """Factories for every documented error case."""

    @staticmethod
    def document_not_found(document_id: int) -> ErrorResponse:
        return ErrorResponse(
            error_code="DOCUMENT_NOT_FOUND",
            message=f"Document '{document_id}' was not found.",
        )

    @staticmethod
    def invalid_document_id(raw: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="INVALID_DOCUMENT_ID",
            message="Invalid document ID.",
            details=[
                ErrorDetail(
                    field="document_id",
                    message=f"'{raw}' is not a positive integer.",
                    code="INVALID_DOCUMENT_ID",
                )
            ],
        )

    @staticmethod
    def unsupported_file_type(filename: str, allowed: list[str]) -> ErrorResponse:
        return ErrorResponse(
            error_code="UNSUPPORTED_FILE_TYPE",
            message="File type is not supported.",
            details=[
                ErrorDetail(
                    field="file",
                    message=f"'{filename}' is not one of: {', '.join(sorted(allowed))}.",
                    code="UNSUPPORTED_FILE_TYPE",
                )
            ],
        )

    @staticmethod
    def file_too_large(size_bytes: int, limit_bytes: int) -> ErrorResponse:
        max_mb = limit_bytes // (1024 * 1024)
        return ErrorResponse(
            error_code="FILE_TOO_LARGE",
            message=f"Uploaded file exceeds the {max_mb} MB limit.",
            details=[
                ErrorDetail(
                    field="file",
                    message=f"Received {size_bytes:,} bytes; limit is {limit_bytes:,} bytes.",
                    code="FILE_TOO_LARGE",
                )
            ],
        )

    @staticmethod
    def missing_file() -> ErrorResponse:
        return ErrorResponse(
            error_code="MISSING_FILE",
            message="No file was provided in the request.",
            details=[
                ErrorDetail(
                    field="file",
                    message="The 'file' multipart field is required and must not be empty.",
                    code="MISSING_FILE",
                )
            ],
        )

    @staticmethod
    def invalid_state(document_id: int, status: str, action: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="INVALID_STATE",
            message=f"Cannot {action} document '{document_id}' while it is {status}.",
        )

    @staticmethod
    def routing_rule_not_found(rule_id: int) -> ErrorResponse:
        return ErrorResponse(
            error_code="ROUTING_RULE_NOT_FOUND",
            message=f"LLM route '{rule_id}' was not found.",
        )

    @staticmethod
    def internal_error(request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred. Our team has been notified.",
            request_id=request_id,
        )
