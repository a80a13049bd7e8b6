from __future__ import annotations

from decimal import Decimal

import pytest

from dispensary.core.config import settings
from dispensary.core.errors import PrescriptionNotFound, RefillLimitExceeded, RefillNotAllowed
from dispensary.db.unit_of_work import unit_of_work
from dispensary.models.prescription import Prescription, PrescriptionStatus, compute_prescribed_quantity
from dispensary.schemas.prescription import PrescriptionCreate, PrescriptionItemCreate
from dispensary.services import dispensing, prescription_service, prescription_state
from dispensary.services.refill import refill


@pytest.fixture
def filled(session_factory, actor, make_item, make_prescription):
    """A dispensed and completed prescription with one refill allowed."""
    item_id = make_item("Metformin 500mg", 500)
    pid = make_prescription([(item_id, 30)], allowed_refills=1)
    dispensing.dispense(pid, actor, session_factory=session_factory)
    dispensing.complete(pid, actor, session_factory=session_factory)
    return pid


def _times_filled(session_factory, pid) -> int:
    with unit_of_work(session_factory) as db:
        return db.get(Prescription, pid).times_filled


def test_refill_is_a_new_pending_prescription(session_factory, actor, filled) -> None:
    record = refill(filled, actor, session_factory=session_factory)

    assert record.id != filled
    assert record.status == PrescriptionStatus.PENDING
    assert record.times_filled == 0
    assert record.allowed_refills == 1
    assert (record.refill_of_id, record.original_id) == (filled, filled)
    assert [(i.prescribed_quantity, i.dispensed_quantity, i.duration_days) for i in record.items] == [(30, 0, 30)]

    with unit_of_work(session_factory) as db:
        source = db.get(Prescription, filled)
        assert source.status == PrescriptionStatus.COMPLETED
        assert source.times_filled == 1


def test_refill_quota_is_enforced_across_the_chain(session_factory, actor, filled) -> None:
    second = refill(filled, actor, session_factory=session_factory).id
    third = refill(filled, actor, session_factory=session_factory).id

    result = dispensing.dispense(second, actor, session_factory=session_factory)
    assert result.status == PrescriptionStatus.DISPENSED
    assert _times_filled(session_factory, filled) == 2

    with pytest.raises(RefillLimitExceeded) as exc:
        dispensing.dispense(third, actor, session_factory=session_factory)

    assert exc.value.details["times_filled"] == 2
    with unit_of_work(session_factory) as db:
        assert db.get(Prescription, third).status == PrescriptionStatus.PENDING
        for p in db.query(Prescription).all():
            prescription_state.validate_invariants(p)


def test_refill_of_a_refill_points_at_the_original(session_factory, actor, make_item, make_prescription) -> None:
    item_id = make_item("Metformin 500mg", 500)
    pid = make_prescription([(item_id, 10)], allowed_refills=3)
    dispensing.dispense(pid, actor, session_factory=session_factory)
    dispensing.complete(pid, actor, session_factory=session_factory)
    second = refill(pid, actor, session_factory=session_factory).id
    dispensing.dispense(second, actor, session_factory=session_factory)
    dispensing.complete(second, actor, session_factory=session_factory)

    third = refill(second, actor, session_factory=session_factory)

    assert (third.refill_of_id, third.original_id) == (second, pid)
    assert _times_filled(session_factory, pid) == 2


def test_exhausted_quota_refuses_refill(session_factory, actor, filled) -> None:
    second = refill(filled, actor, session_factory=session_factory).id
    dispensing.dispense(second, actor, session_factory=session_factory)
    dispensing.complete(second, actor, session_factory=session_factory)

    with pytest.raises(RefillNotAllowed):
        refill(second, actor, session_factory=session_factory)
    with pytest.raises(RefillNotAllowed):
        refill(filled, actor, session_factory=session_factory)


def test_no_refills_allowed_means_single_fill(session_factory, actor, make_item, make_prescription) -> None:
    pid = make_prescription([(make_item("Item A", 100), 10)], allowed_refills=0)
    dispensing.dispense(pid, actor, session_factory=session_factory)
    dispensing.complete(pid, actor, session_factory=session_factory)

    with pytest.raises(RefillNotAllowed):
        refill(pid, actor, session_factory=session_factory)


@pytest.mark.parametrize("stage", ["pending", "dispensed", "cancelled"])
def test_refill_requires_completed_source(session_factory, actor, make_item, make_prescription, stage) -> None:
    pid = make_prescription([(make_item("Item A", 100), 10)], allowed_refills=2)
    if stage == "dispensed":
        dispensing.dispense(pid, actor, session_factory=session_factory)
    if stage == "cancelled":
        dispensing.cancel(pid, actor, session_factory=session_factory)

    with pytest.raises(RefillNotAllowed) as exc:
        refill(pid, actor, session_factory=session_factory)

    assert exc.value.details["status"] == stage.upper()


def test_refill_from_dispensed_when_policy_allows(
    monkeypatch, session_factory, actor, make_item, make_prescription
) -> None:
    monkeypatch.setattr(settings, "ALLOW_REFILL_FROM_DISPENSED", True)
    pid = make_prescription([(make_item("Item A", 100), 10)], allowed_refills=1)
    dispensing.dispense(pid, actor, session_factory=session_factory)

    record = refill(pid, actor, session_factory=session_factory)

    assert record.status == PrescriptionStatus.PENDING


def test_refill_of_unknown_prescription(session_factory, actor) -> None:
    with pytest.raises(PrescriptionNotFound):
        refill(4242, actor, session_factory=session_factory)


def test_refill_recomputes_quantity_from_the_stored_dosage(session_factory, actor, make_item) -> None:
    item_id = make_item("Lactulose syrup", 1000)
    # Built without validation, as an internal caller would
    data = PrescriptionCreate.model_construct(
        patient_id="patient-1",
        prescriber_id=None,
        allowed_refills=1,
        notes=None,
        items=[PrescriptionItemCreate.model_construct(
            inventory_item_id=item_id,
            dosage=Decimal("0.335"),
            dosage_unit="ml",
            frequency_per_day=1,
            duration_days=200,
            instructions=None,
        )],
    )
    with unit_of_work(session_factory) as db:
        pid = prescription_service.issue_prescription(db, actor, data).id
    dispensing.dispense(pid, actor, session_factory=session_factory)
    dispensing.complete(pid, actor, session_factory=session_factory)

    record = refill(pid, actor, session_factory=session_factory)

    with unit_of_work(session_factory) as db:
        source = db.get(Prescription, pid).items[0]
        assert (source.dosage, source.prescribed_quantity) == (Decimal("0.34"), 68)
        assert source.prescribed_quantity == compute_prescribed_quantity(
            source.dosage, source.frequency_per_day, source.duration_days
        )
    assert (record.items[0].dosage, record.items[0].prescribed_quantity) == (Decimal("0.34"), 68)
