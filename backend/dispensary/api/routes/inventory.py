"""Inventory: stock items and the ledger movements outside dispensing."""
from typing import List

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session, sessionmaker

from dispensary.api.deps import get_actor, get_db, get_session_factory
from dispensary.core.context import Actor
from dispensary.db.unit_of_work import run_in_transaction
from dispensary.schemas.dispense import StockTransactionRecord
from dispensary.schemas.inventory import InventoryCreate, InventoryRecord, StockAdjustment, StockMovement
from dispensary.services import stock_ledger

router = APIRouter()


@router.post("", response_model=InventoryRecord, status_code=status.HTTP_201_CREATED)
def create_item(
    body: InventoryCreate,
    actor: Actor = Depends(get_actor),
    factory: sessionmaker = Depends(get_session_factory),
):
    return run_in_transaction(
        factory,
        lambda db: InventoryRecord.model_validate(stock_ledger.create_item(db, actor, body)),
        operation="create inventory item",
        actor=actor,
    )


@router.get("/low-stock", response_model=List[InventoryRecord])
def low_stock(actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    """Items at or below their minimum stock level."""
    return [InventoryRecord.model_validate(i) for i in stock_ledger.low_stock_items(db, actor.tenant_id)]


@router.get("/{item_id}", response_model=InventoryRecord)
def get_item(item_id: int, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    return InventoryRecord.model_validate(stock_ledger.get_item(db, actor.tenant_id, item_id))


@router.get("/{item_id}/transactions", response_model=List[StockTransactionRecord])
def list_transactions(
    item_id: int,
    limit: int = Query(100, ge=1, le=500),
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    """Audit trail for one item, newest first."""
    rows = stock_ledger.list_transactions(db, actor.tenant_id, item_id, limit)
    return [StockTransactionRecord.model_validate(tx) for tx in rows]


def _movement(factory: sessionmaker, actor: Actor, operation: str, apply) -> StockTransactionRecord:
    return run_in_transaction(
        factory,
        lambda db: StockTransactionRecord.model_validate(apply(db)),
        operation=operation,
        actor=actor,
    )


@router.post("/{item_id}/receipts", response_model=StockTransactionRecord, status_code=status.HTTP_201_CREATED)
def receive(
    item_id: int,
    body: StockMovement,
    actor: Actor = Depends(get_actor),
    factory: sessionmaker = Depends(get_session_factory),
):
    return _movement(
        factory, actor, f"receive stock for item {item_id}",
        lambda db: stock_ledger.receive_stock(db, actor, item_id, body.quantity, body.notes),
    )


@router.post("/{item_id}/returns", response_model=StockTransactionRecord, status_code=status.HTTP_201_CREATED)
def return_item(
    item_id: int,
    body: StockMovement,
    actor: Actor = Depends(get_actor),
    factory: sessionmaker = Depends(get_session_factory),
):
    return _movement(
        factory, actor, f"return stock for item {item_id}",
        lambda db: stock_ledger.return_stock(db, actor, item_id, body.quantity, notes=body.notes),
    )


@router.post("/{item_id}/adjustments", response_model=StockTransactionRecord, status_code=status.HTTP_201_CREATED)
def adjust(
    item_id: int,
    body: StockAdjustment,
    actor: Actor = Depends(get_actor),
    factory: sessionmaker = Depends(get_session_factory),
):
    """Set stock to a physically counted level."""
    return _movement(
        factory, actor, f"adjust stock for item {item_id}",
        lambda db: stock_ledger.adjust_stock(db, actor, item_id, body.counted_stock, body.notes),
    )
