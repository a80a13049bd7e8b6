from pydantic import BaseModel
from typing import List, Optional
from datetime import datetime

from dispensary.models.drug_interaction import InteractionSeverity
from dispensary.models.prescription import PrescriptionStatus
from dispensary.models.stock_transaction import TransactionKind


class StockTransactionRecord(BaseModel):
    id: int
    inventory_item_id: int
    kind: TransactionKind
    quantity: int
    stock_before: int
    stock_after: int
    reference_type: Optional[str] = None
    reference_id: Optional[int] = None
    prescription_item_id: Optional[int] = None
    notes: Optional[str] = None
    created_by: str
    created_at: datetime

    class Config:
        from_attributes = True


class InteractionWarning(BaseModel):
    """A non-blocking interaction surfaced by a successful dispense."""
    medication_a_id: int
    medication_b_id: int
    severity: InteractionSeverity
    description: str
    recommendation: Optional[str] = None


class DispensedItem(BaseModel):
    prescription_item_id: int
    inventory_item_id: int
    medication_name: str
    dosage_unit: str
    prescribed_quantity: int
    dispensed_quantity: int
    stock_before: int
    stock_after: int


class DispenseResult(BaseModel):
    prescription_id: int
    status: PrescriptionStatus
    dispensed_at: datetime
    dispensed_by: str
    times_filled: int
    items: List[DispensedItem]
    transactions: List[StockTransactionRecord]
    warnings: List[InteractionWarning] = []
