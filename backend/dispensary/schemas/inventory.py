from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime


class InventoryCreate(BaseModel):
    item_name: str = Field(min_length=1, max_length=255)
    item_code: Optional[str] = None
    unit: str = "unit"
    description: Optional[str] = None
    initial_stock: int = Field(default=0, ge=0)
    minimum_stock: int = Field(default=0, ge=0)


class InventoryRecord(BaseModel):
    id: int
    tenant_id: str
    item_name: str
    item_code: Optional[str] = None
    unit: str
    current_stock: int
    minimum_stock: int
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class StockMovement(BaseModel):
    """Body for receipts and returns."""
    quantity: int = Field(gt=0)
    notes: Optional[str] = None


class StockAdjustment(BaseModel):
    """Physical count correction: set stock to the counted level."""
    counted_stock: int = Field(ge=0)
    notes: Optional[str] = None
