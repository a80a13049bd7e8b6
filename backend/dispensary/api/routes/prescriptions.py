"""Prescriptions: issuance, lookups and the dispensing lifecycle."""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session, sessionmaker

from dispensary.api.deps import get_actor, get_db, get_session_factory
from dispensary.core.context import Actor
from dispensary.db.unit_of_work import run_in_transaction
from dispensary.models.prescription import PrescriptionStatus
from dispensary.schemas.dispense import DispenseResult
from dispensary.schemas.prescription import PrescriptionCreate, PrescriptionRecord
from dispensary.services import dispensing, prescription_service
from dispensary.services.refill import refill

router = APIRouter()


@router.post("", response_model=PrescriptionRecord, status_code=status.HTTP_201_CREATED)
def issue_prescription(
    body: PrescriptionCreate,
    actor: Actor = Depends(get_actor),
    factory: sessionmaker = Depends(get_session_factory),
):
    """Issue a new PENDING prescription."""
    return run_in_transaction(
        factory,
        lambda db: PrescriptionRecord.model_validate(prescription_service.issue_prescription(db, actor, body)),
        operation="issue prescription",
        actor=actor,
    )


@router.get("", response_model=List[PrescriptionRecord])
def list_prescriptions(
    status_filter: Optional[PrescriptionStatus] = Query(None, alias="status"),
    patient_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    rows = prescription_service.list_prescriptions(db, actor.tenant_id, status_filter, patient_id, limit)
    return [PrescriptionRecord.model_validate(p) for p in rows]


@router.get("/{prescription_id}", response_model=PrescriptionRecord)
def get_prescription(
    prescription_id: int,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    return PrescriptionRecord.model_validate(
        prescription_service.get_prescription(db, actor.tenant_id, prescription_id)
    )


@router.post("/{prescription_id}/dispense", response_model=DispenseResult)
def dispense_prescription(
    prescription_id: int,
    actor: Actor = Depends(get_actor),
    factory: sessionmaker = Depends(get_session_factory),
):
    """
    Dispense a PENDING prescription.

    409 with a stable code when a precondition fails (INVALID_STATE,
    REFILL_LIMIT_EXCEEDED, INSUFFICIENT_STOCK, SEVERE_INTERACTION); nothing
    is changed in that case.
    """
    return dispensing.dispense(prescription_id, actor, session_factory=factory)


@router.post("/{prescription_id}/complete", response_model=PrescriptionRecord)
def complete_prescription(
    prescription_id: int,
    actor: Actor = Depends(get_actor),
    factory: sessionmaker = Depends(get_session_factory),
):
    return dispensing.complete(prescription_id, actor, session_factory=factory)


@router.post("/{prescription_id}/cancel", response_model=PrescriptionRecord)
def cancel_prescription(
    prescription_id: int,
    actor: Actor = Depends(get_actor),
    factory: sessionmaker = Depends(get_session_factory),
):
    return dispensing.cancel(prescription_id, actor, session_factory=factory)


@router.post("/{prescription_id}/refill", response_model=PrescriptionRecord, status_code=status.HTTP_201_CREATED)
def refill_prescription(
    prescription_id: int,
    actor: Actor = Depends(get_actor),
    factory: sessionmaker = Depends(get_session_factory),
):
    """Issue the next cycle of a completed prescription."""
    return refill(prescription_id, actor, session_factory=factory)
