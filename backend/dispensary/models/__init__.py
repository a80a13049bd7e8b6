from dispensary.models.inventory import InventoryItem
from dispensary.models.stock_transaction import StockTransaction, TransactionKind
from dispensary.models.prescription import Prescription, PrescriptionItem, PrescriptionStatus
from dispensary.models.drug_interaction import DrugInteraction, InteractionSeverity

__all__ = [
    "InventoryItem",
    "StockTransaction",
    "TransactionKind",
    "Prescription",
    "PrescriptionItem",
    "PrescriptionStatus",
    "DrugInteraction",
    "InteractionSeverity",
]
