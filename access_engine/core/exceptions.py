"""
Domain exceptions raised by the catalog, stores, resolution engine and bulk manager.

HTTP mapping happens in access_engine.core.exception_handlers; services never raise HTTPException.
"""
from dataclasses import dataclass, field
from typing import Any, Optional


class AccessEngineError(Exception):
    """Base class for every error raised by this package."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"error": type(self).__name__, "message": self.message, "details": self.details}


class ValidationError(AccessEngineError):
    """Malformed input, rejected before any store access."""


class NotFoundError(AccessEngineError):
    """A referenced id is absent for a catalog-authoritative operation."""

    def __init__(self, entity: str, identifier: Any):
        super().__init__(f"{entity} '{identifier}' not found", {"entity": entity, "id": identifier})
        self.entity = entity
        self.identifier = identifier


class ConflictError(AccessEngineError):
    """The write would violate a uniqueness or immutability rule."""


class DuplicateCodeError(ConflictError):
    def __init__(self, code: str):
        super().__init__(f"Permission with code '{code}' already exists", {"code": code})
        self.code = code


class StorageUnavailableError(AccessEngineError):
    """Persistence could not be reached; retryable."""

    retryable = True


@dataclass
class BulkItemOutcome:
    permission_id: str
    status: str  # applied | rolled_back | failed | not_attempted
    detail: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {"permission_id": self.permission_id, "status": self.status, "detail": self.detail}


@dataclass
class BulkFailureReport:
    operation: str
    owner_type: str
    owner_id: str
    committed: bool
    outcomes: list[BulkItemOutcome] = field(default_factory=list)

    def ids_with_status(self, status: str) -> list[str]:
        return [outcome.permission_id for outcome in self.outcomes if outcome.status == status]


class PartialBulkFailureError(AccessEngineError):
    """
    A bulk operation failed before it could be fully committed.

    committed=False means nothing was applied (the transaction rolled back);
    committed=True means some stages were committed and the outcomes list which.
    """

    def __init__(self, report: BulkFailureReport):
        state = "partially applied" if report.committed else "rolled back"
        super().__init__(
            f"Bulk {report.operation} for {report.owner_type} '{report.owner_id}' failed and was {state}",
            {
                "operation": report.operation,
                "owner_type": report.owner_type,
                "owner_id": report.owner_id,
                "committed": report.committed,
                "outcomes": [outcome.to_dict() for outcome in report.outcomes],
            },
        )
        self.report = report

    @property
    def committed(self) -> bool:
        return self.report.committed

    @property
    def applied(self) -> list[str]:
        return self.report.ids_with_status("applied")

    @property
    def failed(self) -> list[str]:
        return self.report.ids_with_status("failed")
