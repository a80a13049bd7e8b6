"""
StockTransaction: immutable, append-only record of one stock quantity change.

Kinds: SALE (dispense), RECEIPT (goods in), RETURN (goods back in),
ADJUSTMENT (count correction, signed quantity). stock_before / stock_after
make every row independently verifiable against the running balance.
"""
import enum

from sqlalchemy import CheckConstraint, Column, DateTime, Enum, ForeignKey, Integer, String, Text, event
from sqlalchemy.orm import relationship

from dispensary.core.clock import utcnow
from dispensary.core.errors import InvariantViolation
from dispensary.db.base import Base


class TransactionKind(str, enum.Enum):
    SALE = "SALE"
    RECEIPT = "RECEIPT"
    ADJUSTMENT = "ADJUSTMENT"
    RETURN = "RETURN"


class StockTransaction(Base):
    __tablename__ = "stock_transactions"
    __table_args__ = (
        CheckConstraint("stock_before >= 0", name="ck_stock_tx_before_non_negative"),
        CheckConstraint("stock_after >= 0", name="ck_stock_tx_after_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    inventory_item_id = Column(Integer, ForeignKey("inventory_items.id"), nullable=False, index=True)
    kind = Column(Enum(TransactionKind, native_enum=False, create_constraint=True, length=16), nullable=False)
    quantity = Column(Integer, nullable=False)
    stock_before = Column(Integer, nullable=False)
    stock_after = Column(Integer, nullable=False)
    # What caused the movement, e.g. reference_type="prescription", reference_id=<prescription id>
    reference_type = Column(String(100), nullable=True)
    reference_id = Column(Integer, nullable=True, index=True)
    prescription_item_id = Column(Integer, ForeignKey("prescription_items.id"), nullable=True)
    notes = Column(Text, nullable=True)
    created_by = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    inventory_item = relationship("InventoryItem", back_populates="transactions")

    def __repr__(self):
        return f"<StockTransaction id={self.id} {self.kind} qty={self.quantity} item={self.inventory_item_id}>"


@event.listens_for(StockTransaction, "before_update")
def _reject_update(mapper, connection, target):
    raise InvariantViolation(f"Stock transaction {target.id} is append-only and cannot be updated")


@event.listens_for(StockTransaction, "before_delete")
def _reject_delete(mapper, connection, target):
    raise InvariantViolation(f"Stock transaction {target.id} is append-only and cannot be deleted")
