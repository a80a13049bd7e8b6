"""
Dispensing coordinator.

One dispense is one unit of work:

    1. prescription exists and is PENDING            -> InvalidState
    2. refill quota of the chain not exhausted       -> RefillLimitExceeded
    3. stock covers every line                       -> InsufficientStock
    4. no SEVERE interaction among the medications   -> SevereInteractionDetected
    5. decrement stock, record dispensed quantities
    6. PENDING -> DISPENSED
    7. increment times_filled

Steps 1-4 only read (under row locks) and abort before anything is written.
Steps 5-7 run in the same transaction, so any failure rolls all of them back.
"""
import logging
from typing import List, Optional

from sqlalchemy.orm import Session, sessionmaker

from dispensary.core.audit import AuditLog
from dispensary.core.config import settings
from dispensary.core.context import Actor
from dispensary.core.errors import (
    InsufficientStock,
    InvalidState,
    RefillLimitExceeded,
    SevereInteractionDetected,
)
from dispensary.db.session import SessionLocal
from dispensary.db.unit_of_work import run_in_transaction
from dispensary.models.drug_interaction import InteractionSeverity
from dispensary.models.prescription import Prescription, PrescriptionStatus
from dispensary.schemas.dispense import (
    DispensedItem,
    DispenseResult,
    InteractionWarning,
    StockTransactionRecord,
)
from dispensary.schemas.prescription import PrescriptionRecord
from dispensary.services import interaction_gate, prescription_state, stock_ledger
from dispensary.services.prescription_service import get_prescription

logger = logging.getLogger(__name__)

# Failures that mean "request refused, nothing changed"
_REJECTIONS = (InvalidState, RefillLimitExceeded, InsufficientStock, SevereInteractionDetected)


def lock_quota_holder(db: Session, prescription: Prescription) -> Prescription:
    """The prescription whose counter governs this refill chain, locked."""
    if prescription.quota_holder_id == prescription.id:
        return prescription
    return get_prescription(db, prescription.tenant_id, prescription.quota_holder_id, for_update=True)


def _blocks(severity: InteractionSeverity) -> bool:
    if severity == InteractionSeverity.SEVERE:
        return True
    return severity == InteractionSeverity.MODERATE and settings.MODERATE_INTERACTION_POLICY == "block"


def _dispense(db: Session, prescription_id: int, actor: Actor) -> DispenseResult:
    # 1. State
    prescription = get_prescription(db, actor.tenant_id, prescription_id, for_update=True)
    if prescription.status != PrescriptionStatus.PENDING:
        raise InvalidState(
            f"Prescription {prescription_id} is {prescription.status.value}; only PENDING can be dispensed",
            prescription_id=prescription_id,
            status=prescription.status.value,
        )

    # 2. Refill quota
    holder = lock_quota_holder(db, prescription)
    if holder.times_filled >= holder.allowed_refills + 1:
        raise RefillLimitExceeded(prescription_id, holder.times_filled, holder.allowed_refills)

    # 3. Stock
    demands = [
        stock_ledger.StockDemand(
            inventory_item_id=line.inventory_item_id,
            quantity=line.prescribed_quantity,
            cause=stock_ledger.StockCause("prescription", prescription.id, line.id),
        )
        for line in prescription.items
    ]
    stock = stock_ledger.lock_items(db, actor.tenant_id, [d.inventory_item_id for d in demands])
    shortages = stock_ledger.find_shortages(stock, demands)
    if shortages:
        raise InsufficientStock(shortages)

    # 4. Interactions
    matches = interaction_gate.evaluate(db, actor.tenant_id, stock.keys())
    for match in matches:
        if _blocks(match.severity):
            raise SevereInteractionDetected(
                match.medication_a_id,
                match.medication_b_id,
                match.severity.value,
                match.description,
            )

    # 5-7. Mutate
    before = {item_id: item.current_stock for item_id, item in stock.items()}
    transactions = stock_ledger.decrement_batch(db, actor, demands)
    for line in prescription.items:
        line.dispensed_quantity = line.prescribed_quantity
    prescription_state.mark_dispensed(prescription, actor.user_id)
    prescription.times_filled += 1
    if holder is not prescription:
        holder.times_filled += 1
        prescription_state.validate_invariants(holder)
    prescription_state.validate_invariants(prescription)
    db.flush()

    warnings = [
        InteractionWarning(
            medication_a_id=m.medication_a_id,
            medication_b_id=m.medication_b_id,
            severity=m.severity,
            description=m.description,
            recommendation=m.recommendation,
        )
        for m in matches
    ]

    # Lines sharing an item see the running balance, same as the ledger rows
    running = dict(before)
    items: List[DispensedItem] = []
    for line in prescription.items:
        stock_before = running[line.inventory_item_id]
        running[line.inventory_item_id] = stock_before - line.dispensed_quantity
        items.append(DispensedItem(
            prescription_item_id=line.id,
            inventory_item_id=line.inventory_item_id,
            medication_name=stock[line.inventory_item_id].item_name,
            dosage_unit=line.dosage_unit,
            prescribed_quantity=line.prescribed_quantity,
            dispensed_quantity=line.dispensed_quantity,
            stock_before=stock_before,
            stock_after=running[line.inventory_item_id],
        ))

    return DispenseResult(
        prescription_id=prescription.id,
        status=prescription.status,
        dispensed_at=prescription.dispensed_at,
        dispensed_by=prescription.dispensed_by,
        times_filled=prescription.times_filled,
        items=items,
        transactions=[StockTransactionRecord.model_validate(tx) for tx in transactions],
        warnings=warnings,
    )


def dispense(prescription_id: int, actor: Actor, session_factory: Optional[sessionmaker] = None) -> DispenseResult:
    """
    Fill a PENDING prescription. Either every stock decrement, the status
    change and the fill counter land together, or nothing changes.
    """
    factory = session_factory or SessionLocal
    try:
        result = run_in_transaction(
            factory,
            lambda db: _dispense(db, prescription_id, actor),
            operation=f"dispense prescription {prescription_id}",
            actor=actor,
        )
    except _REJECTIONS as e:
        logger.info(f"Dispense of prescription {prescription_id} rejected: {e.code}")
        AuditLog.log_dispense_rejected(prescription_id, actor, e.code, e.message)
        raise

    AuditLog.log_transition(prescription_id, PrescriptionStatus.PENDING.value, result.status.value, actor)
    for w in result.warnings:
        AuditLog.log_interaction_warning(
            prescription_id, actor, w.medication_a_id, w.medication_b_id, w.severity.value
        )
    AuditLog.log_dispense(
        prescription_id, actor, [tx.id for tx in result.transactions], warnings=len(result.warnings)
    )
    logger.info(
        f"Dispensed prescription {prescription_id}: {len(result.transactions)} stock transaction(s), "
        f"{len(result.warnings)} warning(s), fill {result.times_filled}"
    )
    return result


def _load_in_status(
    db: Session,
    prescription_id: int,
    actor: Actor,
    allowed_from: tuple,
    verb: str,
) -> Prescription:
    prescription = get_prescription(db, actor.tenant_id, prescription_id, for_update=True)
    if prescription.status not in allowed_from:
        raise InvalidState(
            f"Cannot {verb} prescription {prescription_id} in status {prescription.status.value}",
            prescription_id=prescription_id,
            status=prescription.status.value,
        )
    return prescription


def complete(prescription_id: int, actor: Actor, session_factory: Optional[sessionmaker] = None) -> PrescriptionRecord:
    """DISPENSED -> COMPLETED. A second call fails with InvalidState."""
    factory = session_factory or SessionLocal

    def work(db: Session) -> PrescriptionRecord:
        prescription = _load_in_status(db, prescription_id, actor, (PrescriptionStatus.DISPENSED,), "complete")
        prescription_state.mark_completed(prescription)
        db.flush()
        return PrescriptionRecord.model_validate(prescription)

    record = run_in_transaction(factory, work, operation=f"complete prescription {prescription_id}", actor=actor)
    AuditLog.log_transition(prescription_id, PrescriptionStatus.DISPENSED.value, record.status.value, actor)
    logger.info(f"Completed prescription {prescription_id}")
    return record


def cancel(prescription_id: int, actor: Actor, session_factory: Optional[sessionmaker] = None) -> PrescriptionRecord:
    """
    PENDING or DISPENSED -> CANCELLED. Stock already dispensed is not put
    back; a physical return goes through the ledger's return_stock.
    """
    factory = session_factory or SessionLocal
    previous = {}

    def work(db: Session) -> PrescriptionRecord:
        prescription = _load_in_status(
            db, prescription_id, actor,
            (PrescriptionStatus.PENDING, PrescriptionStatus.DISPENSED), "cancel",
        )
        previous["status"] = prescription.status.value
        prescription_state.cancel(prescription, actor.user_id)
        db.flush()
        return PrescriptionRecord.model_validate(prescription)

    record = run_in_transaction(factory, work, operation=f"cancel prescription {prescription_id}", actor=actor)
    AuditLog.log_transition(prescription_id, previous["status"], record.status.value, actor)
    logger.info(f"Cancelled prescription {prescription_id} (was {previous['status']})")
    return record
