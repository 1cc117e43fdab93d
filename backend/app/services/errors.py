"""
Processing error taxonomy.

  ProcessingError
   ├── DocumentNotFoundError   store has no record for the id
   ├── SourceFileError         uploaded file missing / unreadable      → FAILED
   ├── InvalidTransitionError  state machine refused a status change   → no-op
   ├── VendorError             remote LLM auth / rate / server failure → fallback
   └── ResponseSchemaError     remote LLM replied with unusable JSON   → fallback

Only SourceFileError and unexpected exceptions ever surface on a document
as FAILED. Vendor and schema errors are absorbed by the extraction tiers.
"""

from __future__ import annotations

from typing import Any

# Shown to the user on every FAILED document.
REMEDIATION_HINT = (
    "Rescan the document with higher quality or check file format. "
    "If the problem persists, contact support."
)


class ProcessingError(Exception):
    """Base class for all document-pipeline errors."""


class DocumentNotFoundError(ProcessingError):
    def __init__(self, document_id: int) -> None:
        self.document_id = document_id
        super().__init__(f"Document {document_id} not found")


class SourceFileError(ProcessingError):
    def __init__(self, path: str, reason: str) -> None:
        self.path   = path
        self.reason = reason
        super().__init__(f"Cannot read source file '{path}': {reason}")


class InvalidTransitionError(ProcessingError):
    def __init__(self, document_id: int, current: str, target: str) -> None:
        self.document_id = document_id
        self.current     = current
        self.target      = target
        super().__init__(
            f"Document {document_id}: illegal transition {current} -> {target}"
        )


class VendorError(ProcessingError):
    """
    A remote provider call failed.

    kind:
      auth        401 / 403, missing or revoked key
      rate_limit  429
      server      5xx, connection reset
      timeout     no reply within llm_request_timeout
      other       anything else (still absorbed by fallback)
    """

    KINDS = ("auth", "rate_limit", "server", "timeout", "other")

    def __init__(
        self,
        provider:    str,
        message:     str,
        status_code: int | None = None,
        kind:        str = "other",
    ) -> None:
        self.provider    = provider
        self.status_code = status_code
        self.kind        = kind if kind in self.KINDS else "other"
        super().__init__(f"{provider}: {message}")

    @property
    def expected(self) -> bool:
        """Auth / rate / server / timeout failures are routine, not bugs."""
        return self.kind != "other"


class ResponseSchemaError(ProcessingError):
    def __init__(self, provider: str, reason: str, raw: str = "") -> None:
        self.provider = provider
        self.raw      = raw[:500]
        super().__init__(f"{provider}: unusable response ({reason})")


def build_error_details(exc: BaseException, stage: str) -> dict[str, Any]:
    """Structured payload stored in Document.errorDetails on FAILED."""
    return {
        "message":       REMEDIATION_HINT,
        "pages":         [{"page": 1, "issue": "Processing failed"}],
        "stage":         stage,
        "exceptionType": type(exc).__name__,
    }
