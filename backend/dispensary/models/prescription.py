"""
Prescription and its line items.

Lifecycle (DAG, see services.prescription_state):
    PENDING -> DISPENSED -> COMPLETED
    PENDING -> CANCELLED, DISPENSED -> CANCELLED
COMPLETED and CANCELLED are terminal. Prescriptions are never deleted.

Refills are new rows: refill_of_id points at the direct source and
original_id at the first prescription of the chain. The chain's original
holds the authoritative fill counter for the refill quota.
"""
import enum
import math
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import CheckConstraint, Column, DateTime, Enum, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import relationship

from dispensary.core.clock import utcnow
from dispensary.db.base import Base

MAX_DURATION_DAYS = 365
MAX_FREQUENCY_PER_DAY = 24
MAX_DOSAGE = Decimal("10000")
# Matches the scale of PrescriptionItem.dosage
DOSAGE_STEP = Decimal("0.01")


class PrescriptionStatus(str, enum.Enum):
    PENDING = "PENDING"
    DISPENSED = "DISPENSED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (PrescriptionStatus.COMPLETED, PrescriptionStatus.CANCELLED)


def normalize_dosage(dosage) -> Decimal:
    """Round to the stored scale so the quantity is computed from what is persisted."""
    return Decimal(str(dosage)).quantize(DOSAGE_STEP, rounding=ROUND_HALF_UP)


def compute_prescribed_quantity(dosage, frequency_per_day: int, duration_days: int) -> int:
    """dosage x frequency_per_day x duration_days, rounded up to whole units."""
    return math.ceil(Decimal(str(dosage)) * frequency_per_day * duration_days)


class Prescription(Base):
    __tablename__ = "prescriptions"
    __table_args__ = (
        CheckConstraint("allowed_refills >= 0", name="ck_prescription_allowed_refills"),
        CheckConstraint("times_filled >= 0", name="ck_prescription_times_filled"),
        CheckConstraint("times_filled <= allowed_refills + 1", name="ck_prescription_refill_quota"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    patient_id = Column(String(64), nullable=False, index=True)
    prescriber_id = Column(String(64), nullable=True)
    status = Column(
        Enum(PrescriptionStatus, native_enum=False, create_constraint=True, length=16),
        nullable=False,
        default=PrescriptionStatus.PENDING,
        index=True,
    )
    notes = Column(Text, nullable=True)

    allowed_refills = Column(Integer, nullable=False, default=0)
    times_filled = Column(Integer, nullable=False, default=0)
    refill_of_id = Column(Integer, ForeignKey("prescriptions.id"), nullable=True)
    original_id = Column(Integer, ForeignKey("prescriptions.id"), nullable=True, index=True)

    # State machine timestamps
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    dispensed_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    created_by = Column(String(64), nullable=False)
    dispensed_by = Column(String(64), nullable=True)
    cancelled_by = Column(String(64), nullable=True)

    version = Column(Integer, nullable=False)

    items = relationship(
        "PrescriptionItem",
        back_populates="prescription",
        cascade="all, delete-orphan",
        order_by="PrescriptionItem.id",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def quota_holder_id(self) -> int:
        """Id of the prescription whose counter governs this refill chain."""
        return self.original_id or self.id

    def __repr__(self):
        return f"<Prescription id={self.id} status={self.status} filled={self.times_filled}/{self.allowed_refills + 1}>"


class PrescriptionItem(Base):
    """
    One medication line. Immutable after issuance except dispensed_quantity,
    which is written once per successful dispense.
    """
    __tablename__ = "prescription_items"
    __table_args__ = (
        CheckConstraint(f"dosage > 0 AND dosage <= {MAX_DOSAGE}", name="ck_item_dosage_range"),
        CheckConstraint(
            f"frequency_per_day > 0 AND frequency_per_day <= {MAX_FREQUENCY_PER_DAY}",
            name="ck_item_frequency_range",
        ),
        CheckConstraint(
            f"duration_days > 0 AND duration_days <= {MAX_DURATION_DAYS}",
            name="ck_item_duration_range",
        ),
        CheckConstraint("prescribed_quantity >= 1", name="ck_item_prescribed_positive"),
        CheckConstraint("dispensed_quantity >= 0", name="ck_item_dispensed_non_negative"),
        CheckConstraint("dispensed_quantity <= prescribed_quantity", name="ck_item_dispensed_le_prescribed"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    prescription_id = Column(Integer, ForeignKey("prescriptions.id", ondelete="CASCADE"), nullable=False, index=True)
    inventory_item_id = Column(Integer, ForeignKey("inventory_items.id"), nullable=False, index=True)
    dosage = Column(Numeric(10, 2), nullable=False)
    dosage_unit = Column(String(50), nullable=False)
    frequency_per_day = Column(Integer, nullable=False)
    duration_days = Column(Integer, nullable=False)
    prescribed_quantity = Column(Integer, nullable=False)
    dispensed_quantity = Column(Integer, nullable=False, default=0)
    instructions = Column(Text, nullable=True)

    prescription = relationship("Prescription", back_populates="items")
    inventory_item = relationship("InventoryItem")
