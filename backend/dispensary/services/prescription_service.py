"""Prescription issuance and lookups. Lifecycle changes go through the coordinator."""
import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from dispensary.core.context import Actor
from dispensary.core.errors import InventoryItemNotFound, PrescriptionNotFound
from dispensary.models.inventory import InventoryItem
from dispensary.models.prescription import (
    Prescription,
    PrescriptionItem,
    PrescriptionStatus,
    compute_prescribed_quantity,
    normalize_dosage,
)
from dispensary.schemas.prescription import PrescriptionCreate
from dispensary.services import prescription_state

logger = logging.getLogger(__name__)


def build_item(tenant_id: str, inventory_item_id: int, dosage, dosage_unit: str,
               frequency_per_day: int, duration_days: int, instructions: Optional[str] = None) -> PrescriptionItem:
    dosage = normalize_dosage(dosage)
    if dosage <= 0:
        raise ValueError("Dosage must be positive at two decimal places")
    return PrescriptionItem(
        tenant_id=tenant_id,
        inventory_item_id=inventory_item_id,
        dosage=dosage,
        dosage_unit=dosage_unit,
        frequency_per_day=frequency_per_day,
        duration_days=duration_days,
        prescribed_quantity=compute_prescribed_quantity(dosage, frequency_per_day, duration_days),
        dispensed_quantity=0,
        instructions=instructions,
    )


def issue_prescription(db: Session, actor: Actor, data: PrescriptionCreate) -> Prescription:
    """Create a PENDING prescription. Every line must reference a stock item of this tenant."""
    wanted = {line.inventory_item_id for line in data.items}
    found = {
        row.id
        for row in db.query(InventoryItem.id).filter(
            InventoryItem.tenant_id == actor.tenant_id, InventoryItem.id.in_(wanted)
        )
    }
    for item_id in sorted(wanted):
        if item_id not in found:
            raise InventoryItemNotFound(item_id)

    prescription = Prescription(
        tenant_id=actor.tenant_id,
        patient_id=data.patient_id,
        prescriber_id=data.prescriber_id or actor.user_id,
        status=PrescriptionStatus.PENDING,
        notes=data.notes,
        allowed_refills=data.allowed_refills,
        times_filled=0,
        created_by=actor.user_id,
    )
    for line in data.items:
        prescription.items.append(build_item(
            actor.tenant_id,
            line.inventory_item_id,
            line.dosage,
            line.dosage_unit,
            line.frequency_per_day,
            line.duration_days,
            line.instructions,
        ))
    db.add(prescription)
    db.flush()
    prescription_state.validate_invariants(prescription)
    logger.info(
        f"Issued prescription {prescription.id} for patient {prescription.patient_id} "
        f"with {len(prescription.items)} item(s), tenant {actor.tenant_id}"
    )
    return prescription


def get_prescription(db: Session, tenant_id: str, prescription_id: int, for_update: bool = False) -> Prescription:
    q = db.query(Prescription).filter(
        Prescription.tenant_id == tenant_id,
        Prescription.id == prescription_id,
    )
    if for_update:
        q = q.with_for_update()
    prescription = q.first()
    if not prescription:
        raise PrescriptionNotFound(prescription_id)
    return prescription


def list_prescriptions(
    db: Session,
    tenant_id: str,
    status: Optional[PrescriptionStatus] = None,
    patient_id: Optional[str] = None,
    limit: int = 100,
) -> List[Prescription]:
    q = db.query(Prescription).filter(Prescription.tenant_id == tenant_id)
    if status is not None:
        q = q.filter(Prescription.status == status)
    if patient_id:
        q = q.filter(Prescription.patient_id == patient_id)
    return q.order_by(Prescription.created_at.desc(), Prescription.id.desc()).limit(limit).all()
