"""Seed a tenant with stock items and a few well-known drug interactions."""
import sys

from dispensary.core.context import Actor
from dispensary.db.init_db import init_db
from dispensary.db.session import SessionLocal
from dispensary.db.unit_of_work import unit_of_work
from dispensary.models.drug_interaction import InteractionSeverity
from dispensary.models.inventory import InventoryItem
from dispensary.schemas.inventory import InventoryCreate
from dispensary.services import interaction_gate, stock_ledger

MEDICINES = [
    {"name": "Paracetamol 500mg", "code": "PCM500", "unit": "tablet", "stock": 200, "minimum": 50},
    {"name": "Amoxicillin 500mg", "code": "AMX500", "unit": "capsule", "stock": 100, "minimum": 30},
    {"name": "Azithromycin 500mg", "code": "AZI500", "unit": "tablet", "stock": 80, "minimum": 20},
    {"name": "Warfarin 5mg", "code": "WRF5", "unit": "tablet", "stock": 60, "minimum": 20},
    {"name": "Aspirin 75mg", "code": "ASP75", "unit": "tablet", "stock": 150, "minimum": 40},
    {"name": "Ibuprofen 400mg", "code": "IBU400", "unit": "tablet", "stock": 120, "minimum": 40},
    {"name": "Simvastatin 20mg", "code": "SIM20", "unit": "tablet", "stock": 90, "minimum": 30},
    {"name": "Clarithromycin 500mg", "code": "CLR500", "unit": "tablet", "stock": 40, "minimum": 15},
    {"name": "Metformin 500mg", "code": "MET500", "unit": "tablet", "stock": 300, "minimum": 60},
    {"name": "Tramadol 50mg", "code": "TRM50", "unit": "tablet", "stock": 18, "minimum": 10},
]

INTERACTIONS = [
    ("WRF5", "ASP75", InteractionSeverity.SEVERE,
     "Additive anticoagulant and antiplatelet effect; major bleeding risk",
     "Avoid combination unless specifically indicated; monitor INR closely"),
    ("SIM20", "CLR500", InteractionSeverity.SEVERE,
     "Clarithromycin inhibits CYP3A4 and raises simvastatin levels; rhabdomyolysis risk",
     "Suspend simvastatin during clarithromycin course"),
    ("WRF5", "IBU400", InteractionSeverity.MODERATE,
     "NSAIDs increase bleeding risk with warfarin",
     "Prefer paracetamol for analgesia"),
    ("ASP75", "IBU400", InteractionSeverity.MODERATE,
     "Ibuprofen may reduce the cardioprotective effect of low-dose aspirin",
     "Take aspirin at least 30 minutes before ibuprofen"),
    ("AZI500", "WRF5", InteractionSeverity.MINOR,
     "Occasional reports of increased INR",
     "Monitor INR at course start"),
]


def seed(tenant_id: str = "demo-clinic"):
    init_db()
    actor = Actor(tenant_id=tenant_id, user_id="seed-script")

    with unit_of_work(SessionLocal) as db:
        existing = {
            item.item_code: item
            for item in db.query(InventoryItem).filter(InventoryItem.tenant_id == tenant_id)
        }
        by_code = dict(existing)
        for med in MEDICINES:
            if med["code"] in existing:
                print(f"  = {med['name']} already present (stock {existing[med['code']].current_stock})")
                continue
            item = stock_ledger.create_item(db, actor, InventoryCreate(
                item_name=med["name"],
                item_code=med["code"],
                unit=med["unit"],
                initial_stock=med["stock"],
                minimum_stock=med["minimum"],
            ))
            by_code[med["code"]] = item
            print(f"  + {med['name']}: {med['stock']} {med['unit']}(s)")

        for first, second, severity, description, recommendation in INTERACTIONS:
            interaction_gate.upsert_interaction(
                db, actor, by_code[first].id, by_code[second].id, severity, description, recommendation
            )
            print(f"  ! {first} <-> {second}: {severity.value}")

    print(f"\n[OK] Seeded {len(MEDICINES)} medicines and {len(INTERACTIONS)} interactions for tenant '{tenant_id}'")


if __name__ == "__main__":
    seed(sys.argv[1] if len(sys.argv) > 1 else "demo-clinic")
