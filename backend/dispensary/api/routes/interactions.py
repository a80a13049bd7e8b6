"""Drug interactions maintained by clinical staff, plus an ad-hoc safety check."""
from typing import List

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session, sessionmaker

from dispensary.api.deps import get_actor, get_db, get_session_factory
from dispensary.core.context import Actor
from dispensary.core.exceptions import BusinessError
from dispensary.db.unit_of_work import run_in_transaction
from dispensary.schemas.dispense import InteractionWarning
from dispensary.schemas.interaction import InteractionCheck, InteractionRecord, InteractionUpsert
from dispensary.services import interaction_gate

router = APIRouter()


@router.put("", response_model=InteractionRecord)
def upsert_interaction(
    body: InteractionUpsert,
    actor: Actor = Depends(get_actor),
    factory: sessionmaker = Depends(get_session_factory),
):
    """Create or update the interaction for a pair; order of the two ids does not matter."""
    if body.medication_a_id == body.medication_b_id:
        raise BusinessError.bad_request({
            "code": "INVALID_PAIR",
            "message": "An interaction needs two distinct medications",
            "details": {"medication_id": body.medication_a_id},
        })
    return run_in_transaction(
        factory,
        lambda db: InteractionRecord.model_validate(interaction_gate.upsert_interaction(
            db, actor,
            body.medication_a_id, body.medication_b_id,
            body.severity, body.description, body.recommendation,
        )),
        operation="upsert drug interaction",
        actor=actor,
    )


@router.delete("/{first_id}/{second_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_interaction(
    first_id: int,
    second_id: int,
    actor: Actor = Depends(get_actor),
    factory: sessionmaker = Depends(get_session_factory),
):
    if first_id == second_id:
        raise BusinessError.not_found({
            "code": "INTERACTION_NOT_FOUND",
            "message": "Interaction not found",
            "details": {},
        })
    deleted = run_in_transaction(
        factory,
        lambda db: interaction_gate.delete_interaction(db, actor, first_id, second_id),
        operation="delete drug interaction",
        actor=actor,
    )
    if not deleted:
        raise BusinessError.not_found({
            "code": "INTERACTION_NOT_FOUND",
            "message": f"No interaction recorded between {first_id} and {second_id}",
            "details": {"medication_ids": sorted([first_id, second_id])},
        })


@router.get("", response_model=List[InteractionRecord])
def list_interactions(
    medication_id: int = Query(...),
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    rows = interaction_gate.interactions_for_medication(db, actor.tenant_id, medication_id)
    return [InteractionRecord.model_validate(r) for r in rows]


@router.post("/check", response_model=List[InteractionWarning])
def check_interactions(
    body: InteractionCheck,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    """Run the safety gate over an arbitrary medication set, most severe first."""
    return [
        InteractionWarning(
            medication_a_id=m.medication_a_id,
            medication_b_id=m.medication_b_id,
            severity=m.severity,
            description=m.description,
            recommendation=m.recommendation,
        )
        for m in interaction_gate.evaluate(db, actor.tenant_id, body.medication_ids)
    ]
