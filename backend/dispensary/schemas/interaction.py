from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime

from dispensary.models.drug_interaction import InteractionSeverity


class InteractionUpsert(BaseModel):
    medication_a_id: int
    medication_b_id: int
    severity: InteractionSeverity
    description: str = Field(min_length=1)
    recommendation: Optional[str] = None


class InteractionRecord(BaseModel):
    id: int
    medication_a_id: int
    medication_b_id: int
    severity: InteractionSeverity
    description: str
    recommendation: Optional[str] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class InteractionCheck(BaseModel):
    medication_ids: List[int] = Field(min_length=1)
