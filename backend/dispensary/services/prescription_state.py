"""
Prescription state machine.

Valid transitions (a DAG, no edge ever returns to an earlier state):

    PENDING ──dispense──> DISPENSED ──complete──> COMPLETED
       │                      │
       └──────cancel──────────┴──────────────────> CANCELLED

COMPLETED and CANCELLED are terminal. Re-applying a transition that already
happened is rejected with InvalidTransition, never silently accepted.

The invariants are checked synchronously after every write, inside the same
transaction as the mutation.
"""
from datetime import datetime
from typing import Dict, FrozenSet, Optional

from dispensary.core.clock import as_utc, utcnow
from dispensary.core.errors import InvalidTransition, InvariantViolation
from dispensary.models.prescription import Prescription, PrescriptionStatus

TRANSITIONS: Dict[PrescriptionStatus, FrozenSet[PrescriptionStatus]] = {
    PrescriptionStatus.PENDING: frozenset({PrescriptionStatus.DISPENSED, PrescriptionStatus.CANCELLED}),
    PrescriptionStatus.DISPENSED: frozenset({PrescriptionStatus.COMPLETED, PrescriptionStatus.CANCELLED}),
    PrescriptionStatus.COMPLETED: frozenset(),
    PrescriptionStatus.CANCELLED: frozenset(),
}


def can_transition(current: PrescriptionStatus, target: PrescriptionStatus) -> bool:
    return target in TRANSITIONS[current]


def _require(prescription: Prescription, target: PrescriptionStatus):
    current = PrescriptionStatus(prescription.status)
    if not can_transition(current, target):
        raise InvalidTransition(current.value, target.value)


def mark_dispensed(prescription: Prescription, actor_id: str, now: Optional[datetime] = None) -> Prescription:
    _require(prescription, PrescriptionStatus.DISPENSED)
    prescription.status = PrescriptionStatus.DISPENSED
    prescription.dispensed_at = now or utcnow()
    prescription.dispensed_by = actor_id
    validate_invariants(prescription)
    return prescription


def mark_completed(prescription: Prescription, now: Optional[datetime] = None) -> Prescription:
    _require(prescription, PrescriptionStatus.COMPLETED)
    prescription.status = PrescriptionStatus.COMPLETED
    prescription.completed_at = now or utcnow()
    validate_invariants(prescription)
    return prescription


def cancel(prescription: Prescription, actor_id: str, now: Optional[datetime] = None) -> Prescription:
    _require(prescription, PrescriptionStatus.CANCELLED)
    prescription.status = PrescriptionStatus.CANCELLED
    prescription.cancelled_at = now or utcnow()
    prescription.cancelled_by = actor_id
    validate_invariants(prescription)
    return prescription


def validate_invariants(prescription: Prescription):
    """
    Raise InvariantViolation if the row is inconsistent:

    1. each non-pending status carries its timestamp
    2. created_at <= dispensed_at <= completed_at, created_at <= cancelled_at
    3. times_filled <= allowed_refills + 1
    4. at least one line item, and dispensed_quantity <= prescribed_quantity on each
    """
    status = PrescriptionStatus(prescription.status)
    created = as_utc(prescription.created_at)
    dispensed = as_utc(prescription.dispensed_at)
    completed = as_utc(prescription.completed_at)
    cancelled = as_utc(prescription.cancelled_at)

    if status == PrescriptionStatus.DISPENSED and dispensed is None:
        raise InvariantViolation("DISPENSED status requires dispensed_at")
    if status == PrescriptionStatus.COMPLETED and (completed is None or dispensed is None):
        raise InvariantViolation("COMPLETED status requires dispensed_at and completed_at")
    if status == PrescriptionStatus.CANCELLED and cancelled is None:
        raise InvariantViolation("CANCELLED status requires cancelled_at")

    if created is not None:
        if dispensed is not None and dispensed < created:
            raise InvariantViolation("dispensed_at cannot be before created_at")
        if cancelled is not None and cancelled < created:
            raise InvariantViolation("cancelled_at cannot be before created_at")
    if dispensed is not None and completed is not None and completed < dispensed:
        raise InvariantViolation("completed_at cannot be before dispensed_at")

    if prescription.times_filled > prescription.allowed_refills + 1:
        raise InvariantViolation(
            f"times_filled ({prescription.times_filled}) > allowed_refills + 1 "
            f"({prescription.allowed_refills + 1})"
        )

    if not prescription.items:
        raise InvariantViolation("Prescription must have at least one medication")
    for item in prescription.items:
        if (item.dispensed_quantity or 0) > item.prescribed_quantity:
            raise InvariantViolation(
                f"dispensed_quantity ({item.dispensed_quantity}) > prescribed_quantity "
                f"({item.prescribed_quantity}) on item {item.id}"
            )
