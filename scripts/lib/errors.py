"""
Custom error classes for Funnel Hub.
Structured error handling with error codes across all modules.

Hierarchy:
    HubError
    ├── ValidationError
    │   ├── InvalidStageError
    │   ├── StaleTransitionError
    │   ├── OutOfOrderTransitionError
    │   └── MissingExchangeRateError
    └── DataError
        ├── DataInconsistencyError
        ├── EntityNotFoundError
        ├── ConfigError
        ├── SchemaValidationError
        └── DataFetchError
"""


class HubError(Exception):
    """Base exception for all Funnel Hub errors."""

    def __init__(self, message: str, code: str = "UNKNOWN", details: dict = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(f"[{code}] {message}")


# --- Validation Errors ---

class ValidationError(HubError):
    """Input rejected at the boundary. Always surfaced to the caller."""
    pass


class InvalidStageError(ValidationError):
    """Unrecognised stage value, or a transition that does not change stage."""

    def __init__(self, stage, reason: str = None):
        msg = f"Invalid stage: {stage!r}"
        if reason:
            msg += f" ({reason})"
        super().__init__(
            msg, code="INVALID_STAGE", details={"stage": str(stage)},
        )


class StaleTransitionError(ValidationError):
    """Optimistic-concurrency precondition failed.

    The caller must re-read the entity and retry with a fresh from_stage.
    """

    def __init__(self, entity_id: str, expected, actual):
        self.entity_id = entity_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Entity '{entity_id}' is in stage {actual}, not {expected}",
            code="STALE_TRANSITION",
            details={
                "entity_id": entity_id,
                "expected_stage": str(expected) if expected else None,
                "actual_stage": str(actual) if actual else None,
            },
        )


class OutOfOrderTransitionError(ValidationError):
    """Transition timestamped before the entity's latest recorded transition."""

    def __init__(self, entity_id: str, at, last_changed_at):
        super().__init__(
            f"Transition for '{entity_id}' at {at.isoformat()} precedes "
            f"last change at {last_changed_at.isoformat()}",
            code="OUT_OF_ORDER_TRANSITION",
            details={"entity_id": entity_id},
        )


class MissingExchangeRateError(ValidationError):
    """Foreign-currency amount normalised without a positive exchange rate."""

    def __init__(self, currency, rate=None):
        super().__init__(
            f"Exchange rate required for {currency} amounts (got {rate!r})",
            code="MISSING_EXCHANGE_RATE",
            details={"currency": str(currency), "rate": rate},
        )


# --- Data Errors ---

class DataError(HubError):
    """Base class for data processing errors."""
    pass


class DataInconsistencyError(DataError):
    """Entity stage not reachable through its recorded history."""

    def __init__(self, entity_id: str, reason: str):
        self.entity_id = entity_id
        super().__init__(
            f"Entity '{entity_id}' history is inconsistent: {reason}",
            code="DATA_INCONSISTENCY",
            details={"entity_id": entity_id, "reason": reason},
        )


class EntityNotFoundError(DataError):
    """Requested pipeline entity does not exist."""

    def __init__(self, entity_id: str):
        super().__init__(
            f"Entity not found: {entity_id}",
            code="ENTITY_NOT_FOUND", details={"entity_id": entity_id},
        )


class ConfigError(DataError):
    """Configuration file error."""

    def __init__(self, message: str, config_path: str = None):
        super().__init__(
            message, code="CONFIG_ERROR",
            details={"config_path": config_path},
        )


class SchemaValidationError(DataError):
    """Data doesn't match expected schema."""

    def __init__(self, message: str, field: str = None):
        super().__init__(
            message, code="SCHEMA_INVALID", details={"field": field},
        )


class DataFetchError(DataError):
    """Failed to fetch or load data from storage."""

    def __init__(self, message: str, source: str = None):
        super().__init__(
            message, code="DATA_FETCH_FAILED", details={"source": source},
        )
