"""Stock ledger: the only writer of InventoryItem.current_stock.

Every quantity change appends a StockTransaction in the caller's session.
Callers own the transaction boundary; nothing here commits, so a batch of
decrements inside one unit of work either all land or none do.
"""
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from dispensary.core.audit import AuditLog, defer
from dispensary.core.context import Actor
from dispensary.core.errors import InsufficientStock, InventoryItemNotFound, InvariantViolation
from dispensary.models.inventory import InventoryItem
from dispensary.models.stock_transaction import StockTransaction, TransactionKind
from dispensary.schemas.inventory import InventoryCreate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StockCause:
    """What a stock movement is attributed to in the audit trail."""
    reference_type: str
    reference_id: int
    prescription_item_id: Optional[int] = None

    def __str__(self) -> str:
        return f"{self.reference_type}:{self.reference_id}"


@dataclass(frozen=True)
class StockDemand:
    inventory_item_id: int
    quantity: int
    cause: StockCause


def get_item(db: Session, tenant_id: str, item_id: int) -> InventoryItem:
    item = (
        db.query(InventoryItem)
        .filter(InventoryItem.tenant_id == tenant_id, InventoryItem.id == item_id)
        .first()
    )
    if not item:
        raise InventoryItemNotFound(item_id)
    return item


def lock_items(db: Session, tenant_id: str, item_ids: Iterable[int]) -> Dict[int, InventoryItem]:
    """Load items FOR UPDATE in ascending id order so concurrent dispenses cannot deadlock."""
    wanted = sorted(set(item_ids))
    rows = (
        db.query(InventoryItem)
        .filter(InventoryItem.tenant_id == tenant_id, InventoryItem.id.in_(wanted))
        .order_by(InventoryItem.id)
        .with_for_update()
        .all()
    )
    items = {row.id: row for row in rows}
    for item_id in wanted:
        if item_id not in items:
            raise InventoryItemNotFound(item_id)
    return items


def check_sufficiency(db: Session, tenant_id: str, item_id: int, quantity: int) -> bool:
    """Read-only: is current stock at least ``quantity``?"""
    return get_item(db, tenant_id, item_id).current_stock >= quantity


def find_shortages(items: Dict[int, InventoryItem], demands: Iterable[StockDemand]) -> List[dict]:
    """
    Every item whose stock cannot cover its demand. Lines that draw on the
    same item are summed before comparing.
    """
    requested: Dict[int, int] = {}
    for demand in demands:
        requested[demand.inventory_item_id] = requested.get(demand.inventory_item_id, 0) + demand.quantity

    shortages = []
    for item_id in sorted(requested):
        item = items[item_id]
        if item.current_stock < requested[item_id]:
            shortages.append({
                "inventory_item_id": item_id,
                "item_name": item.item_name,
                "requested": requested[item_id],
                "available": item.current_stock,
            })
    return shortages


def _append(
    db: Session,
    actor: Actor,
    item: InventoryItem,
    kind: TransactionKind,
    quantity: int,
    stock_after: int,
    cause: Optional[StockCause] = None,
    notes: Optional[str] = None,
) -> StockTransaction:
    stock_before = item.current_stock
    _validate_movement(kind, quantity, stock_before, stock_after)

    item.current_stock = stock_after
    tx = StockTransaction(
        tenant_id=item.tenant_id,
        inventory_item_id=item.id,
        kind=kind,
        quantity=quantity,
        stock_before=stock_before,
        stock_after=stock_after,
        reference_type=cause.reference_type if cause else None,
        reference_id=cause.reference_id if cause else None,
        prescription_item_id=cause.prescription_item_id if cause else None,
        notes=notes,
        created_by=actor.user_id,
    )
    db.add(tx)
    db.flush()
    defer(
        db, AuditLog.log_stock_movement, item.id, kind.value, quantity, stock_before, stock_after, actor,
        reference=str(cause) if cause else None,
    )
    return tx


def _validate_movement(kind: TransactionKind, quantity: int, stock_before: int, stock_after: int):
    if stock_after < 0:
        raise InvariantViolation(
            f"{kind.value} would leave negative stock (before={stock_before}, after={stock_after})"
        )
    if kind == TransactionKind.SALE:
        expected = stock_before - quantity
    else:
        # RECEIPT / RETURN add; ADJUSTMENT quantity is signed
        expected = stock_before + quantity
    if stock_after != expected:
        raise InvariantViolation(
            f"{kind.value} expects stock_after={expected} "
            f"(before={stock_before}, quantity={quantity}) but got {stock_after}"
        )


def reserve_and_decrement(
    db: Session,
    actor: Actor,
    item_id: int,
    quantity: int,
    cause: StockCause,
) -> StockTransaction:
    """
    Verify stock covers ``quantity`` and, if so, decrement it and append a
    SALE transaction. Raises InsufficientStock and changes nothing otherwise.
    """
    if quantity <= 0:
        raise ValueError("Quantity must be positive")
    item = lock_items(db, actor.tenant_id, [item_id])[item_id]
    if item.current_stock < quantity:
        raise InsufficientStock([{
            "inventory_item_id": item.id,
            "item_name": item.item_name,
            "requested": quantity,
            "available": item.current_stock,
        }])
    return _append(db, actor, item, TransactionKind.SALE, quantity, item.current_stock - quantity, cause)


def decrement_batch(db: Session, actor: Actor, demands: List[StockDemand]) -> List[StockTransaction]:
    """
    Apply every decrement or none. Shortages are checked across the whole
    batch first; a failure part-way relies on the caller's rollback.
    """
    items = lock_items(db, actor.tenant_id, [d.inventory_item_id for d in demands])
    shortages = find_shortages(items, demands)
    if shortages:
        raise InsufficientStock(shortages)
    return [
        reserve_and_decrement(db, actor, d.inventory_item_id, d.quantity, d.cause)
        for d in demands
    ]


def receive_stock(db: Session, actor: Actor, item_id: int, quantity: int, notes: str | None = None) -> StockTransaction:
    if quantity <= 0:
        raise ValueError("Quantity must be positive")
    item = lock_items(db, actor.tenant_id, [item_id])[item_id]
    return _append(db, actor, item, TransactionKind.RECEIPT, quantity, item.current_stock + quantity, notes=notes)


def return_stock(
    db: Session,
    actor: Actor,
    item_id: int,
    quantity: int,
    cause: StockCause | None = None,
    notes: str | None = None,
) -> StockTransaction:
    if quantity <= 0:
        raise ValueError("Quantity must be positive")
    item = lock_items(db, actor.tenant_id, [item_id])[item_id]
    return _append(db, actor, item, TransactionKind.RETURN, quantity, item.current_stock + quantity, cause, notes)


def adjust_stock(db: Session, actor: Actor, item_id: int, counted_stock: int, notes: str | None = None) -> StockTransaction:
    """Set stock to a physically counted level. Quantity is recorded signed."""
    if counted_stock < 0:
        raise ValueError("Counted stock cannot be negative")
    item = lock_items(db, actor.tenant_id, [item_id])[item_id]
    delta = counted_stock - item.current_stock
    return _append(db, actor, item, TransactionKind.ADJUSTMENT, delta, counted_stock, notes=notes)


def create_item(db: Session, actor: Actor, data: InventoryCreate) -> InventoryItem:
    """New stock item. A non-zero opening balance is booked as a RECEIPT."""
    item = InventoryItem(
        tenant_id=actor.tenant_id,
        item_name=data.item_name.strip(),
        item_code=data.item_code,
        unit=data.unit,
        description=data.description,
        current_stock=0,
        minimum_stock=data.minimum_stock,
    )
    db.add(item)
    db.flush()
    if data.initial_stock:
        _append(db, actor, item, TransactionKind.RECEIPT, data.initial_stock, data.initial_stock, notes="Opening balance")
    logger.info(f"Created inventory item {item.id} ({item.item_name}) for tenant {actor.tenant_id}")
    return item


def list_transactions(db: Session, tenant_id: str, item_id: int, limit: int = 100) -> List[StockTransaction]:
    get_item(db, tenant_id, item_id)
    return (
        db.query(StockTransaction)
        .filter(StockTransaction.tenant_id == tenant_id, StockTransaction.inventory_item_id == item_id)
        .order_by(StockTransaction.id.desc())
        .limit(limit)
        .all()
    )


def low_stock_items(db: Session, tenant_id: str) -> List[InventoryItem]:
    return (
        db.query(InventoryItem)
        .filter(InventoryItem.tenant_id == tenant_id, InventoryItem.current_stock <= InventoryItem.minimum_stock)
        .order_by(InventoryItem.item_name)
        .all()
    )
