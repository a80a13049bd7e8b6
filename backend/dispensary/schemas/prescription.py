from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime
from decimal import Decimal

from dispensary.models.prescription import (
    MAX_DOSAGE,
    MAX_DURATION_DAYS,
    MAX_FREQUENCY_PER_DAY,
    PrescriptionStatus,
)


class PrescriptionItemCreate(BaseModel):
    inventory_item_id: int
    dosage: Decimal = Field(gt=0, le=MAX_DOSAGE, max_digits=10, decimal_places=2)
    dosage_unit: str = Field(min_length=1, max_length=50)
    frequency_per_day: int = Field(gt=0, le=MAX_FREQUENCY_PER_DAY)
    duration_days: int = Field(gt=0, le=MAX_DURATION_DAYS)
    instructions: Optional[str] = None


class PrescriptionCreate(BaseModel):
    patient_id: str = Field(min_length=1, max_length=64)
    prescriber_id: Optional[str] = None
    allowed_refills: int = Field(default=0, ge=0)
    notes: Optional[str] = None
    items: List[PrescriptionItemCreate] = Field(min_length=1)


class PrescriptionItemRecord(BaseModel):
    id: int
    inventory_item_id: int
    dosage: Decimal
    dosage_unit: str
    frequency_per_day: int
    duration_days: int
    prescribed_quantity: int
    dispensed_quantity: int
    instructions: Optional[str] = None

    class Config:
        from_attributes = True


class PrescriptionRecord(BaseModel):
    id: int
    tenant_id: str
    patient_id: str
    prescriber_id: Optional[str] = None
    status: PrescriptionStatus
    notes: Optional[str] = None
    allowed_refills: int
    times_filled: int
    refill_of_id: Optional[int] = None
    original_id: Optional[int] = None
    created_at: datetime
    dispensed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_by: str
    dispensed_by: Optional[str] = None
    cancelled_by: Optional[str] = None
    items: List[PrescriptionItemRecord] = []

    class Config:
        from_attributes = True
