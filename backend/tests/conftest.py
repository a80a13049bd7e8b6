from __future__ import annotations

from decimal import Decimal

import pytest

from dispensary.core.config import settings
from dispensary.core.context import Actor
from dispensary.db.init_db import init_db
from dispensary.db.session import build_engine, build_session_factory
from dispensary.db.unit_of_work import unit_of_work
from dispensary.models.inventory import InventoryItem
from dispensary.models.prescription import Prescription
from dispensary.models.stock_transaction import StockTransaction, TransactionKind
from dispensary.schemas.inventory import InventoryCreate
from dispensary.schemas.prescription import PrescriptionCreate, PrescriptionItemCreate
from dispensary.services import prescription_service, stock_ledger


@pytest.fixture
def engine(tmp_path):
    # File-backed so worker threads share one database
    engine = build_engine(f"sqlite:///{tmp_path / 'dispensary.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture(autouse=True)
def fast_retries(monkeypatch):
    monkeypatch.setattr(settings, "RETRY_BACKOFF_SECONDS", 0.0)
    monkeypatch.setattr(settings, "MODERATE_INTERACTION_POLICY", "warn")
    monkeypatch.setattr(settings, "ALLOW_REFILL_FROM_DISPENSED", False)


@pytest.fixture
def actor() -> Actor:
    return Actor(tenant_id="clinic-a", user_id="pharmacist-1")


@pytest.fixture
def other_tenant() -> Actor:
    return Actor(tenant_id="clinic-b", user_id="pharmacist-9")


@pytest.fixture
def make_item(session_factory, actor):
    def _make(name: str, stock: int, minimum: int = 0, owner: Actor | None = None) -> int:
        with unit_of_work(session_factory) as db:
            item = stock_ledger.create_item(
                db,
                owner or actor,
                InventoryCreate(item_name=name, initial_stock=stock, minimum_stock=minimum),
            )
            return item.id

    return _make


@pytest.fixture
def make_prescription(session_factory, actor):
    """``lines`` holds (inventory_item_id, quantity); quantity is issued as 1 unit/day."""

    def _make(lines, allowed_refills: int = 0, patient_id: str = "patient-1") -> int:
        data = PrescriptionCreate(
            patient_id=patient_id,
            allowed_refills=allowed_refills,
            items=[
                PrescriptionItemCreate(
                    inventory_item_id=item_id,
                    dosage=Decimal("1"),
                    dosage_unit="tablet",
                    frequency_per_day=1,
                    duration_days=quantity,
                )
                for item_id, quantity in lines
            ],
        )
        with unit_of_work(session_factory) as db:
            return prescription_service.issue_prescription(db, actor, data).id

    return _make


@pytest.fixture
def stock_of(session_factory):
    def _stock(item_id: int) -> int:
        with unit_of_work(session_factory) as db:
            return db.get(InventoryItem, item_id).current_stock

    return _stock


@pytest.fixture
def load_prescription(session_factory):
    """Detached snapshot: (status, times_filled, [dispensed_quantity per line])."""

    def _load(prescription_id: int):
        with unit_of_work(session_factory) as db:
            p = db.get(Prescription, prescription_id)
            return p.status, p.times_filled, [line.dispensed_quantity for line in p.items]

    return _load


@pytest.fixture
def sale_count(session_factory):
    def _count() -> int:
        with unit_of_work(session_factory) as db:
            return db.query(StockTransaction).filter(StockTransaction.kind == TransactionKind.SALE).count()

    return _count
