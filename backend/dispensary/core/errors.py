"""
Domain error taxonomy for the dispensing engine.

Every failure kind carries a stable ``code`` so the API layer can pick an
HTTP status and message without string-matching. Errors are raised inside a
unit of work; the unit of work rolls back before they reach the caller.
"""
from typing import Any, Dict, List, Optional


class DispensingError(Exception):
    """Base class. Subclasses set ``code`` and ``http_status``."""

    code = "DISPENSING_ERROR"
    http_status = 400
    retryable = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class InvalidTransition(DispensingError):
    """State machine misuse: the edge is not in the lifecycle graph."""

    code = "INVALID_TRANSITION"
    http_status = 409

    def __init__(self, from_status: str, to_status: str):
        super().__init__(
            f"Invalid transition: {from_status} -> {to_status}",
            from_status=from_status,
            to_status=to_status,
        )


class InvalidState(DispensingError):
    """Operation attempted from the wrong lifecycle state."""

    code = "INVALID_STATE"
    http_status = 409


class PrescriptionNotFound(InvalidState):
    code = "PRESCRIPTION_NOT_FOUND"
    http_status = 404

    def __init__(self, prescription_id: int):
        super().__init__(f"Prescription {prescription_id} not found", prescription_id=prescription_id)


class InventoryItemNotFound(DispensingError):
    code = "INVENTORY_ITEM_NOT_FOUND"
    http_status = 404

    def __init__(self, item_id: int):
        super().__init__(f"Inventory item {item_id} not found", inventory_item_id=item_id)


class InsufficientStock(DispensingError):
    """
    Ledger precondition failed.

    ``shortages`` lists every short item as
    ``{"inventory_item_id", "item_name", "requested", "available"}``.
    """

    code = "INSUFFICIENT_STOCK"
    http_status = 409

    def __init__(self, shortages: List[Dict[str, Any]]):
        names = ", ".join(
            f"{s.get('item_name') or s['inventory_item_id']} (requested {s['requested']}, available {s['available']})"
            for s in shortages
        )
        super().__init__(f"Insufficient stock: {names}", shortages=shortages)
        self.shortages = shortages


class SevereInteractionDetected(DispensingError):
    """Safety gate blocked the dispense."""

    code = "SEVERE_INTERACTION"
    http_status = 409

    def __init__(self, medication_a_id: int, medication_b_id: int, severity: str, description: Optional[str] = None):
        super().__init__(
            f"{severity} drug interaction detected between items {medication_a_id} and {medication_b_id}"
            + (f": {description}" if description else ""),
            medication_a_id=medication_a_id,
            medication_b_id=medication_b_id,
            severity=severity,
        )


class RefillLimitExceeded(DispensingError):
    code = "REFILL_LIMIT_EXCEEDED"
    http_status = 409

    def __init__(self, prescription_id: int, times_filled: int, allowed_refills: int):
        super().__init__(
            f"Prescription {prescription_id} already filled {times_filled} time(s); "
            f"limit is {allowed_refills + 1}",
            prescription_id=prescription_id,
            times_filled=times_filled,
            allowed_refills=allowed_refills,
        )


class RefillNotAllowed(DispensingError):
    code = "REFILL_NOT_ALLOWED"
    http_status = 409


class ConcurrentConflict(DispensingError):
    """Lock or version contention. Safe to retry."""

    code = "CONCURRENT_CONFLICT"
    http_status = 503
    retryable = True


class InvariantViolation(DispensingError):
    """A storage or domain invariant tripped. Indicates a logic bug."""

    code = "INVARIANT_VIOLATION"
    http_status = 500
