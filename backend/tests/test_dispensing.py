from __future__ import annotations

import json
import logging
import threading

import pytest

from dispensary.core.clock import as_utc
from dispensary.core.config import settings
from dispensary.core.errors import (
    ConcurrentConflict,
    InsufficientStock,
    InvalidState,
    PrescriptionNotFound,
    SevereInteractionDetected,
)
from dispensary.db.unit_of_work import unit_of_work
from dispensary.models.drug_interaction import InteractionSeverity
from dispensary.models.prescription import Prescription, PrescriptionStatus
from dispensary.models.stock_transaction import TransactionKind
from dispensary.services import dispensing, interaction_gate, prescription_state, stock_ledger


@pytest.fixture
def interaction(session_factory, actor):
    def _record(first, second, severity, description="interaction", recommendation=None):
        with unit_of_work(session_factory) as db:
            interaction_gate.upsert_interaction(db, actor, first, second, severity, description, recommendation)

    return _record


def _assert_all_invariants(session_factory) -> None:
    with unit_of_work(session_factory) as db:
        for p in db.query(Prescription).all():
            prescription_state.validate_invariants(p)


def test_dispense_decrements_stock_and_advances_state(
    session_factory, actor, make_item, make_prescription, stock_of, load_prescription
) -> None:
    a = make_item("Amoxicillin 500mg", 50)
    b = make_item("Paracetamol 500mg", 20)
    pid = make_prescription([(a, 30), (b, 10)])

    result = dispensing.dispense(pid, actor, session_factory=session_factory)

    assert result.status == PrescriptionStatus.DISPENSED
    assert result.dispensed_by == actor.user_id
    assert result.times_filled == 1
    assert [(i.inventory_item_id, i.stock_before, i.stock_after) for i in result.items] == [(a, 50, 20), (b, 20, 10)]
    assert [(t.kind, t.quantity, t.reference_id) for t in result.transactions] == [
        (TransactionKind.SALE, 30, pid),
        (TransactionKind.SALE, 10, pid),
    ]
    assert result.warnings == []
    assert (stock_of(a), stock_of(b)) == (20, 10)
    assert load_prescription(pid) == (PrescriptionStatus.DISPENSED, 1, [30, 10])
    _assert_all_invariants(session_factory)


def test_insufficient_stock_on_one_line_changes_nothing(
    session_factory, actor, make_item, make_prescription, stock_of, load_prescription, sale_count
) -> None:
    a = make_item("Item A", 50)
    b = make_item("Item B", 5)
    pid = make_prescription([(a, 30), (b, 10)])

    with pytest.raises(InsufficientStock) as exc:
        dispensing.dispense(pid, actor, session_factory=session_factory)

    assert exc.value.shortages == [{"inventory_item_id": b, "item_name": "Item B", "requested": 10, "available": 5}]
    assert (stock_of(a), stock_of(b)) == (50, 5)
    assert load_prescription(pid) == (PrescriptionStatus.PENDING, 0, [0, 0])
    assert sale_count() == 0


def test_severe_interaction_blocks_before_any_stock_moves(
    session_factory, actor, make_item, make_prescription, interaction, stock_of, load_prescription, sale_count
) -> None:
    x = make_item("Warfarin 5mg", 100)
    y = make_item("Aspirin 75mg", 100)
    interaction(y, x, InteractionSeverity.SEVERE, "bleeding risk")
    pid = make_prescription([(x, 10), (y, 10)])

    with pytest.raises(SevereInteractionDetected) as exc:
        dispensing.dispense(pid, actor, session_factory=session_factory)

    assert exc.value.code == "SEVERE_INTERACTION"
    assert (exc.value.details["medication_a_id"], exc.value.details["medication_b_id"]) == (min(x, y), max(x, y))
    assert sale_count() == 0
    assert (stock_of(x), stock_of(y)) == (100, 100)
    assert load_prescription(pid)[0] == PrescriptionStatus.PENDING


def test_stock_is_checked_before_interactions(
    session_factory, actor, make_item, make_prescription, interaction
) -> None:
    x = make_item("Simvastatin 20mg", 1)
    y = make_item("Clarithromycin 500mg", 100)
    interaction(x, y, InteractionSeverity.SEVERE)
    pid = make_prescription([(x, 10), (y, 10)])

    with pytest.raises(InsufficientStock):
        dispensing.dispense(pid, actor, session_factory=session_factory)


def test_moderate_and_minor_interactions_are_returned_as_warnings(
    session_factory, actor, make_item, make_prescription, interaction, stock_of
) -> None:
    w = make_item("Warfarin 5mg", 100)
    i = make_item("Ibuprofen 400mg", 100)
    z = make_item("Azithromycin 500mg", 100)
    interaction(w, z, InteractionSeverity.MINOR, "INR drift", "monitor INR")
    interaction(w, i, InteractionSeverity.MODERATE, "bleeding risk", "prefer paracetamol")
    pid = make_prescription([(w, 5), (i, 5), (z, 5)])

    result = dispensing.dispense(pid, actor, session_factory=session_factory)

    assert [(x.severity, x.recommendation) for x in result.warnings] == [
        (InteractionSeverity.MODERATE, "prefer paracetamol"),
        (InteractionSeverity.MINOR, "monitor INR"),
    ]
    assert stock_of(w) == 95


def test_moderate_interaction_blocks_under_block_policy(
    monkeypatch, session_factory, actor, make_item, make_prescription, interaction, sale_count
) -> None:
    monkeypatch.setattr(settings, "MODERATE_INTERACTION_POLICY", "block")
    w = make_item("Warfarin 5mg", 100)
    i = make_item("Ibuprofen 400mg", 100)
    interaction(w, i, InteractionSeverity.MODERATE)
    pid = make_prescription([(w, 5), (i, 5)])

    with pytest.raises(SevereInteractionDetected) as exc:
        dispensing.dispense(pid, actor, session_factory=session_factory)

    assert exc.value.details["severity"] == "MODERATE"
    assert sale_count() == 0


def test_failure_between_two_decrements_rolls_back_both(
    caplog, monkeypatch, session_factory, actor, make_item, make_prescription, stock_of, load_prescription, sale_count
) -> None:
    a = make_item("Item A", 50)
    b = make_item("Item B", 50)
    pid = make_prescription([(a, 10), (b, 10)])

    original = stock_ledger.reserve_and_decrement
    calls = []

    def fail_on_second(*args, **kwargs):
        calls.append(args)
        if len(calls) == 2:
            raise RuntimeError("store went away")
        return original(*args, **kwargs)

    monkeypatch.setattr(stock_ledger, "reserve_and_decrement", fail_on_second)
    caplog.set_level(logging.INFO, logger="audit")

    with pytest.raises(RuntimeError):
        dispensing.dispense(pid, actor, session_factory=session_factory)

    assert len(calls) == 2
    assert (stock_of(a), stock_of(b)) == (50, 50)
    assert load_prescription(pid) == (PrescriptionStatus.PENDING, 0, [0, 0])
    assert sale_count() == 0
    events = [json.loads(r.getMessage()) for r in caplog.records if r.name == "audit"]
    assert [e for e in events if e["event_type"] == "inventory.sale"] == []


def test_dispensing_twice_fails_with_invalid_state(
    session_factory, actor, make_item, make_prescription, stock_of
) -> None:
    a = make_item("Item A", 100)
    pid = make_prescription([(a, 10)])
    dispensing.dispense(pid, actor, session_factory=session_factory)

    with pytest.raises(InvalidState) as exc:
        dispensing.dispense(pid, actor, session_factory=session_factory)

    assert exc.value.details["status"] == "DISPENSED"
    assert stock_of(a) == 90


def test_unknown_or_foreign_prescription_is_not_found(
    session_factory, actor, other_tenant, make_item, make_prescription
) -> None:
    pid = make_prescription([(make_item("Item A", 100), 10)])

    with pytest.raises(PrescriptionNotFound):
        dispensing.dispense(9999, actor, session_factory=session_factory)
    with pytest.raises(PrescriptionNotFound):
        dispensing.dispense(pid, other_tenant, session_factory=session_factory)


def test_rejection_is_written_to_the_audit_log(
    caplog, session_factory, actor, make_item, make_prescription
) -> None:
    pid = make_prescription([(make_item("Item A", 1), 10)])
    caplog.set_level(logging.INFO, logger="audit")

    with pytest.raises(InsufficientStock):
        dispensing.dispense(pid, actor, session_factory=session_factory)

    events = [json.loads(r.getMessage()) for r in caplog.records if r.name == "audit"]
    rejected = [e for e in events if e["event_type"] == "prescription.dispense_rejected"]
    assert rejected and rejected[0]["code"] == "INSUFFICIENT_STOCK"
    assert rejected[0]["tenant_id"] == actor.tenant_id


def test_complete_succeeds_once(session_factory, actor, make_item, make_prescription) -> None:
    pid = make_prescription([(make_item("Item A", 100), 10)])
    dispensing.dispense(pid, actor, session_factory=session_factory)

    first = dispensing.complete(pid, actor, session_factory=session_factory)
    with pytest.raises(InvalidState):
        dispensing.complete(pid, actor, session_factory=session_factory)

    with unit_of_work(session_factory) as db:
        p = db.get(Prescription, pid)
        assert p.status == PrescriptionStatus.COMPLETED
        assert as_utc(p.completed_at) == as_utc(first.completed_at)
    assert as_utc(first.dispensed_at) <= as_utc(first.completed_at)


def test_complete_requires_dispensed(session_factory, actor, make_item, make_prescription) -> None:
    pid = make_prescription([(make_item("Item A", 100), 10)])

    with pytest.raises(InvalidState):
        dispensing.complete(pid, actor, session_factory=session_factory)


def test_cancel_pending_and_dispensed(session_factory, actor, make_item, make_prescription, stock_of) -> None:
    a = make_item("Item A", 100)
    pending = make_prescription([(a, 10)])
    dispensed = make_prescription([(a, 10)])
    dispensing.dispense(dispensed, actor, session_factory=session_factory)

    first = dispensing.cancel(pending, actor, session_factory=session_factory)
    second = dispensing.cancel(dispensed, actor, session_factory=session_factory)

    assert first.status == second.status == PrescriptionStatus.CANCELLED
    assert second.cancelled_by == actor.user_id
    # Dispensed stock stays out; returns go through the ledger
    assert stock_of(a) == 90
    with pytest.raises(InvalidState):
        dispensing.cancel(pending, actor, session_factory=session_factory)
    with pytest.raises(InvalidState):
        dispensing.dispense(pending, actor, session_factory=session_factory)


def test_concurrent_dispense_of_one_prescription_succeeds_once(
    session_factory, actor, make_item, make_prescription, stock_of, sale_count
) -> None:
    a = make_item("Item A", 40)
    pid = make_prescription([(a, 30)])
    barrier = threading.Barrier(2)
    outcomes = []

    def worker():
        barrier.wait()
        try:
            outcomes.append(dispensing.dispense(pid, actor, session_factory=session_factory))
        except (InvalidState, ConcurrentConflict) as e:
            outcomes.append(e)

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    successes = [o for o in outcomes if not isinstance(o, Exception)]
    failures = [o for o in outcomes if isinstance(o, Exception)]
    assert len(successes) == 1 and len(failures) == 1
    assert stock_of(a) == 10
    assert sale_count() == 1
    _assert_all_invariants(session_factory)


def test_concurrent_dispenses_of_one_item_serialize(
    session_factory, actor, make_item, make_prescription, stock_of
) -> None:
    a = make_item("Item A", 30)
    first = make_prescription([(a, 20)], patient_id="patient-1")
    second = make_prescription([(a, 20)], patient_id="patient-2")
    barrier = threading.Barrier(2)
    outcomes = {}

    def worker(pid):
        barrier.wait()
        try:
            outcomes[pid] = dispensing.dispense(pid, actor, session_factory=session_factory)
        except (InsufficientStock, ConcurrentConflict) as e:
            outcomes[pid] = e

    threads = [threading.Thread(target=worker, args=(pid,)) for pid in (first, second)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert sum(1 for o in outcomes.values() if not isinstance(o, Exception)) == 1
    assert stock_of(a) == 10
    _assert_all_invariants(session_factory)


def test_stock_movements_are_audited_once_after_commit(
    caplog, session_factory, actor, make_item, make_prescription
) -> None:
    a = make_item("Item A", 50)
    b = make_item("Item B", 50)
    pid = make_prescription([(a, 10), (b, 5)])
    caplog.set_level(logging.INFO, logger="audit")

    result = dispensing.dispense(pid, actor, session_factory=session_factory)

    events = [json.loads(r.getMessage()) for r in caplog.records if r.name == "audit"]
    sales = [e for e in events if e["event_type"] == "inventory.sale"]
    assert sorted((e["inventory_item_id"], e["quantity"]) for e in sales) == [(a, 10), (b, 5)]
    assert len(sales) == len(result.transactions)
