"""
Interaction gate: which pairs of medications must not be dispensed together.

``evaluate`` is a pure query. It never raises for business reasons and never
writes; the dispensing coordinator decides what each severity means.
Pairs are keyed in canonical (low id, high id) order everywhere, so the
lookup is symmetric by construction.

The maintenance functions below serve the clinical-data collaborator that
owns interaction records.
"""
import logging
from dataclasses import dataclass
from itertools import combinations
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session

from dispensary.core.context import Actor
from dispensary.core.errors import InventoryItemNotFound
from dispensary.models.drug_interaction import DrugInteraction, InteractionSeverity
from dispensary.models.inventory import InventoryItem

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InteractionMatch:
    medication_a_id: int
    medication_b_id: int
    severity: InteractionSeverity
    description: str
    recommendation: Optional[str] = None


def canonical_pair(first: int, second: int) -> Tuple[int, int]:
    if first == second:
        raise ValueError("An interaction needs two distinct medications")
    return (first, second) if first < second else (second, first)


def candidate_pairs(medication_ids: Iterable[int]) -> List[Tuple[int, int]]:
    """Every unordered pair drawn from the set, canonical order."""
    return list(combinations(sorted(set(medication_ids)), 2))


def evaluate(db: Session, tenant_id: str, medication_ids: Iterable[int]) -> List[InteractionMatch]:
    """
    All recorded interactions among ``medication_ids``, most severe first.

    Both columns are restricted to the input set; since rows are stored in
    canonical order, each returned row is exactly one candidate pair.
    """
    ids = sorted(set(medication_ids))
    if len(ids) < 2:
        return []

    rows = (
        db.query(DrugInteraction)
        .filter(
            DrugInteraction.tenant_id == tenant_id,
            DrugInteraction.medication_a_id.in_(ids),
            DrugInteraction.medication_b_id.in_(ids),
        )
        .all()
    )
    matches = [
        InteractionMatch(
            medication_a_id=row.medication_a_id,
            medication_b_id=row.medication_b_id,
            severity=row.severity,
            description=row.description,
            recommendation=row.recommendation,
        )
        for row in rows
    ]
    matches.sort(key=lambda m: (-m.severity.rank, m.medication_a_id, m.medication_b_id))
    logger.debug(f"Interaction check over {len(ids)} medication(s): {len(matches)} match(es)")
    return matches


def lookup(db: Session, tenant_id: str, first: int, second: int) -> Optional[DrugInteraction]:
    a, b = canonical_pair(first, second)
    return (
        db.query(DrugInteraction)
        .filter(
            DrugInteraction.tenant_id == tenant_id,
            DrugInteraction.medication_a_id == a,
            DrugInteraction.medication_b_id == b,
        )
        .first()
    )


def upsert_interaction(
    db: Session,
    actor: Actor,
    first: int,
    second: int,
    severity: InteractionSeverity,
    description: str,
    recommendation: Optional[str] = None,
) -> DrugInteraction:
    """Create the pair or update its severity and guidance in place."""
    a, b = canonical_pair(first, second)
    found = {
        row.id
        for row in db.query(InventoryItem.id).filter(
            InventoryItem.tenant_id == actor.tenant_id, InventoryItem.id.in_([a, b])
        )
    }
    for item_id in (a, b):
        if item_id not in found:
            raise InventoryItemNotFound(item_id)

    interaction = lookup(db, actor.tenant_id, a, b)
    if interaction:
        interaction.severity = severity
        interaction.description = description
        interaction.recommendation = recommendation
        logger.info(f"Updated drug interaction: {a} <-> {b} ({severity.value}) by {actor.user_id}")
    else:
        interaction = DrugInteraction(
            tenant_id=actor.tenant_id,
            medication_a_id=a,
            medication_b_id=b,
            severity=severity,
            description=description,
            recommendation=recommendation,
        )
        db.add(interaction)
        logger.info(f"Created drug interaction: {a} <-> {b} ({severity.value}) by {actor.user_id}")
    db.flush()
    return interaction


def delete_interaction(db: Session, actor: Actor, first: int, second: int) -> bool:
    interaction = lookup(db, actor.tenant_id, first, second)
    if not interaction:
        return False
    db.delete(interaction)
    db.flush()
    logger.info(f"Deleted drug interaction: {interaction.medication_a_id} <-> {interaction.medication_b_id}")
    return True


def interactions_for_medication(db: Session, tenant_id: str, medication_id: int) -> List[DrugInteraction]:
    return (
        db.query(DrugInteraction)
        .filter(
            DrugInteraction.tenant_id == tenant_id,
            or_(
                DrugInteraction.medication_a_id == medication_id,
                DrugInteraction.medication_b_id == medication_id,
            ),
        )
        .order_by(DrugInteraction.id)
        .all()
    )
