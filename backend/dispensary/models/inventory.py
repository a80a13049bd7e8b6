from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String, Text
from sqlalchemy.orm import relationship

from dispensary.core.clock import utcnow
from dispensary.db.base import Base


class InventoryItem(Base):
    """
    Stockable medication or good.

    current_stock is written only by the stock ledger; every change appends
    a StockTransaction. ``version`` is the optimistic concurrency counter,
    so two writers that both read the same stock cannot both commit.
    Reorder parameters (EOQ, reorder point, ABC class) live with the
    analytics component and are not read here.
    """
    __tablename__ = "inventory_items"
    __table_args__ = (
        CheckConstraint("current_stock >= 0", name="ck_inventory_stock_non_negative"),
        CheckConstraint("minimum_stock >= 0", name="ck_inventory_minimum_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    item_name = Column(String(255), nullable=False)
    item_code = Column(String(100), nullable=True)
    unit = Column(String(50), nullable=False, default="unit")
    description = Column(Text, nullable=True)
    current_stock = Column(Integer, nullable=False, default=0)
    minimum_stock = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    transactions = relationship(
        "StockTransaction",
        back_populates="inventory_item",
        order_by="StockTransaction.id",
        lazy="dynamic",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_low_stock(self) -> bool:
        return self.current_stock <= self.minimum_stock

    def __repr__(self):
        return f"<InventoryItem id={self.id} name={self.item_name!r} stock={self.current_stock}>"
