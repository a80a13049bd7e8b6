"""
Audit logging for dispensing operations.

Every state transition, stock movement and rejected dispense is written as
one JSON document to the ``audit`` logger so compliance tooling can ship it
to centralized logging. The StockTransaction table remains the durable audit
record; these entries are the operational trail.

Entries raised while a transaction is open are queued on the session with
``defer`` and written by the unit of work only after the commit succeeds, so
a rolled-back or retried attempt leaves no trace here.
"""
import logging
import json
from functools import partial
from typing import Any, Callable, Dict, Optional

from dispensary.core.clock import utcnow
from dispensary.core.context import Actor

# Separate logger for audit events (can be shipped to centralized logging)
audit_logger = logging.getLogger("audit")

_DEFERRED_KEY = "deferred_audit"


def _entry(event_type: str, actor: Optional[Actor], **fields: Any) -> Dict[str, Any]:
    entry = {
        "timestamp": utcnow().isoformat(),
        "event_type": event_type,
    }
    if actor is not None:
        entry["tenant_id"] = actor.tenant_id
        entry["actor_id"] = actor.user_id
    entry.update({k: v for k, v in fields.items() if v is not None})
    return entry


def defer(db, log: Callable[..., None], *args: Any, **kwargs: Any):
    """Queue an audit call on the session; it runs after a successful commit."""
    db.info.setdefault(_DEFERRED_KEY, []).append(partial(log, *args, **kwargs))


def emit_deferred(db):
    for log in db.info.pop(_DEFERRED_KEY, []):
        log()


def discard_deferred(db):
    db.info.pop(_DEFERRED_KEY, None)


class AuditLog:
    """Central audit logging for dispensing events."""

    @staticmethod
    def log_transition(
        prescription_id: int,
        from_status: str,
        to_status: str,
        actor: Optional[Actor] = None,
    ):
        """
        Log a prescription lifecycle transition.

        Usage:
            AuditLog.log_transition(12, "PENDING", "DISPENSED", actor)
        """
        audit_logger.info(json.dumps(_entry(
            "prescription.transition",
            actor,
            prescription_id=prescription_id,
            from_status=from_status,
            to_status=to_status,
        )))

    @staticmethod
    def log_dispense(
        prescription_id: int,
        actor: Actor,
        transaction_ids: list,
        warnings: int = 0,
    ):
        audit_logger.info(json.dumps(_entry(
            "prescription.dispensed",
            actor,
            prescription_id=prescription_id,
            stock_transactions=transaction_ids,
            interaction_warnings=warnings,
        )))

    @staticmethod
    def log_dispense_rejected(
        prescription_id: int,
        actor: Actor,
        code: str,
        reason: str,
    ):
        """
        Log a dispense that failed a precondition. Nothing was mutated.

        Usage:
            AuditLog.log_dispense_rejected(12, actor, "INSUFFICIENT_STOCK", "Amoxicillin short by 5")
        """
        audit_logger.warning(json.dumps(_entry(
            "prescription.dispense_rejected",
            actor,
            prescription_id=prescription_id,
            code=code,
            reason=reason,
        )))

    @staticmethod
    def log_interaction_warning(
        prescription_id: int,
        actor: Actor,
        medication_a_id: int,
        medication_b_id: int,
        severity: str,
    ):
        audit_logger.info(json.dumps(_entry(
            "prescription.interaction_warning",
            actor,
            prescription_id=prescription_id,
            medication_a_id=medication_a_id,
            medication_b_id=medication_b_id,
            severity=severity,
        )))

    @staticmethod
    def log_refill(
        source_id: int,
        refill_id: int,
        actor: Actor,
    ):
        audit_logger.info(json.dumps(_entry(
            "prescription.refill_issued",
            actor,
            source_prescription_id=source_id,
            refill_prescription_id=refill_id,
        )))

    @staticmethod
    def log_stock_movement(
        inventory_item_id: int,
        kind: str,
        quantity: int,
        stock_before: int,
        stock_after: int,
        actor: Actor,
        reference: Optional[str] = None,
    ):
        audit_logger.info(json.dumps(_entry(
            f"inventory.{kind.lower()}",
            actor,
            inventory_item_id=inventory_item_id,
            quantity=quantity,
            stock_before=stock_before,
            stock_after=stock_after,
            reference=reference,
        )))

    @staticmethod
    def log_invariant_violation(
        operation: str,
        detail: str,
        actor: Optional[Actor] = None,
    ):
        """
        Log a tripped invariant. These indicate a logic bug and page on-call.
        """
        audit_logger.critical(json.dumps(_entry(
            "invariant.violation",
            actor,
            event_severity="CRITICAL",
            operation=operation,
            detail=detail,
        )))
