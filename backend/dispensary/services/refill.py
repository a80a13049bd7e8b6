"""Refill issuance: a new PENDING prescription continuing a filled one."""
import logging
from typing import Optional

from sqlalchemy.orm import Session, sessionmaker

from dispensary.core.audit import AuditLog
from dispensary.core.config import settings
from dispensary.core.context import Actor
from dispensary.core.errors import RefillNotAllowed
from dispensary.db.session import SessionLocal
from dispensary.db.unit_of_work import run_in_transaction
from dispensary.models.prescription import Prescription, PrescriptionStatus
from dispensary.schemas.prescription import PrescriptionRecord
from dispensary.services import prescription_state
from dispensary.services.dispensing import lock_quota_holder
from dispensary.services.prescription_service import build_item, get_prescription

logger = logging.getLogger(__name__)


def refill_sources() -> tuple:
    if settings.ALLOW_REFILL_FROM_DISPENSED:
        return (PrescriptionStatus.COMPLETED, PrescriptionStatus.DISPENSED)
    return (PrescriptionStatus.COMPLETED,)


def _refill(db: Session, prescription_id: int, actor: Actor) -> PrescriptionRecord:
    source = get_prescription(db, actor.tenant_id, prescription_id, for_update=True)
    if source.status not in refill_sources():
        raise RefillNotAllowed(
            f"Prescription {prescription_id} is {source.status.value}; "
            f"refills need {' or '.join(s.value for s in refill_sources())}",
            prescription_id=prescription_id,
            status=source.status.value,
        )

    holder = lock_quota_holder(db, source)
    if holder.times_filled >= holder.allowed_refills + 1:
        raise RefillNotAllowed(
            f"Refill quota exhausted: filled {holder.times_filled} of {holder.allowed_refills + 1}",
            prescription_id=prescription_id,
            times_filled=holder.times_filled,
            allowed_refills=holder.allowed_refills,
        )

    refill = Prescription(
        tenant_id=source.tenant_id,
        patient_id=source.patient_id,
        prescriber_id=source.prescriber_id,
        status=PrescriptionStatus.PENDING,
        notes=source.notes,
        allowed_refills=source.allowed_refills,
        times_filled=0,
        refill_of_id=source.id,
        original_id=source.quota_holder_id,
        created_by=actor.user_id,
    )
    for line in source.items:
        refill.items.append(build_item(
            source.tenant_id,
            line.inventory_item_id,
            line.dosage,
            line.dosage_unit,
            line.frequency_per_day,
            line.duration_days,
            line.instructions,
        ))
    db.add(refill)
    db.flush()
    prescription_state.validate_invariants(refill)
    return PrescriptionRecord.model_validate(refill)


def refill(prescription_id: int, actor: Actor, session_factory: Optional[sessionmaker] = None) -> PrescriptionRecord:
    """
    Issue the next cycle of ``prescription_id``. The source is not modified;
    the new prescription starts PENDING with times_filled = 0 and counts
    against the quota of the chain's original prescription when dispensed.
    """
    record = run_in_transaction(
        session_factory or SessionLocal,
        lambda db: _refill(db, prescription_id, actor),
        operation=f"refill prescription {prescription_id}",
        actor=actor,
    )
    AuditLog.log_refill(prescription_id, record.id, actor)
    logger.info(f"Issued refill {record.id} of prescription {prescription_id} (chain {record.original_id})")
    return record
