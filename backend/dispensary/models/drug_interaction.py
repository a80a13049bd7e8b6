"""
DrugInteraction: unordered pair of medications with a severity.

Pairs are stored once, in canonical order (medication_a_id < medication_b_id),
so lookup for (A, B) and (B, A) hit the same row. Maintained by the
clinical-data component; the dispensing engine only reads it.
"""
import enum

from sqlalchemy import CheckConstraint, Column, DateTime, Enum, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from dispensary.core.clock import utcnow
from dispensary.db.base import Base


class InteractionSeverity(str, enum.Enum):
    MINOR = "MINOR"
    MODERATE = "MODERATE"
    SEVERE = "SEVERE"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    InteractionSeverity.MINOR: 1,
    InteractionSeverity.MODERATE: 2,
    InteractionSeverity.SEVERE: 3,
}


class DrugInteraction(Base):
    __tablename__ = "drug_interactions"
    __table_args__ = (
        UniqueConstraint("tenant_id", "medication_a_id", "medication_b_id", name="uk_drug_interactions_pair"),
        CheckConstraint("medication_a_id < medication_b_id", name="ck_drug_interactions_canonical_pair"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    medication_a_id = Column(Integer, ForeignKey("inventory_items.id"), nullable=False, index=True)
    medication_b_id = Column(Integer, ForeignKey("inventory_items.id"), nullable=False, index=True)
    severity = Column(
        Enum(InteractionSeverity, native_enum=False, create_constraint=True, length=16),
        nullable=False,
        index=True,
    )
    description = Column(Text, nullable=False)
    recommendation = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    medication_a = relationship("InventoryItem", foreign_keys=[medication_a_id])
    medication_b = relationship("InventoryItem", foreign_keys=[medication_b_id])
