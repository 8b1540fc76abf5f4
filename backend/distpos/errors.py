# Overview: Engine error taxonomy shared by services and routes.

"""
Order engine errors.

Every error carries a human-readable message plus a details dict that the
HTTP layer returns verbatim, and an HTTP status code routes use directly.

StepUpRequired is not a hard failure: it tells the caller to collect a
privileged credential and resubmit the same request.
"""


class EngineError(Exception):
    """Base class for order engine errors."""
    status_code = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": self.message, "details": self.details}


class ValidationError(EngineError):
    """Malformed input (bad quantity, tender breakdown mismatch, ...)."""
    status_code = 400


class NotFoundError(EngineError):
    status_code = 404


class PermissionDenied(EngineError):
    """Caller lacks a capability; the message names it."""
    status_code = 403

    def __init__(self, capability: str, message: str | None = None):
        super().__init__(
            message or f"Missing required capability: {capability}",
            details={"required_capability": capability},
        )
        self.capability = capability


class LockConflict(EngineError):
    """Another session holds the editing lease for this order."""
    status_code = 409

    def __init__(self, order_id: int, held_by: str | None):
        who = held_by or "another session"
        super().__init__(
            f"Order {order_id} is being edited by {who}",
            details={"order_id": order_id, "held_by": held_by},
        )
        self.order_id = order_id
        self.held_by = held_by


class StockInsufficient(EngineError):
    """
    One or more items exceed available stock.

    shortfalls: [{"product_id", "product_name", "requested", "available"}]
    """
    status_code = 409

    def __init__(self, shortfalls: list[dict]):
        names = ", ".join(
            f"{s['product_name']} (requested {s['requested']}, available {s['available']})"
            for s in shortfalls
        )
        super().__init__(f"Insufficient stock: {names}", details={"items": shortfalls})
        self.shortfalls = shortfalls


class StepUpRequired(EngineError):
    """A privileged credential must be supplied before the action proceeds."""
    status_code = 428

    def __init__(self, reason: str, message: str, details: dict | None = None):
        payload = {"reason": reason}
        payload.update(details or {})
        super().__init__(message, details=payload)
        self.reason = reason


class CreditLimitExceeded(StepUpRequired):
    def __init__(self, client_name: str, balance, credit_limit, credit_amount):
        super().__init__(
            "credit_limit_exceeded",
            f"Credit limit exceeded for {client_name}; supervisor authorization required",
            details={
                "client_name": client_name,
                "balance": float(balance),
                "credit_limit": float(credit_limit),
                "credit_amount": float(credit_amount),
            },
        )


class TransientStoreError(EngineError):
    """Network/store failure; safe to retry."""
    status_code = 503


class SettlementFailed(EngineError):
    """Failure while applying a settlement; nothing was committed."""
    status_code = 500
