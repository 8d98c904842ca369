from __future__ import annotations

from typing import Any


class DealEngineError(Exception):
    status_code = 500
    code = "deal_engine_error"

    def __init__(self, message: str, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class DealNotFoundError(DealEngineError):
    status_code = 404
    code = "deal_not_found"

    def __init__(self, deal_id: Any, entity: str = "deal") -> None:
        super().__init__(f"{entity} not found", details={"id": str(deal_id)})
        self.deal_id = deal_id


class DealValidationError(DealEngineError):
    """Input rejected before anything is written; carries the offending field when known."""

    status_code = 422
    code = "deal_validation_failed"

    def __init__(self, message: str, field: str | None = None, details: Any = None) -> None:
        super().__init__(message, details=details if details is not None else ({"field": field} if field else None))
        self.field = field


class InvalidTransitionError(DealEngineError):
    status_code = 409
    code = "deal_invalid_transition"

    def __init__(self, current: str, target: str) -> None:
        super().__init__(
            f"Transition not allowed: {current} -> {target}",
            details={"from_status": current, "to_status": target},
        )
        self.current = current
        self.target = target


class StoreFailure(DealEngineError):
    status_code = 503
    code = "deal_store_unavailable"
