"""Confidence gate for receipt item visibility."""
from dataclasses import dataclass, field
from typing import Any, List, Sequence

from proofpay.database.models import ConfidenceLabel


def is_visible(receipt: Any, threshold: float) -> bool:
    """
    Whether a receipt's item detail may be shown.

    HIGH-confidence receipts are always visible. Otherwise a receipt is
    hidden only when it has a score and that score is strictly below
    ``threshold``; an unscored receipt is visible.
    """
    if receipt.confidence_label == ConfidenceLabel.HIGH.value:
        return True
    score = receipt.confidence_score
    if score is None:
        return True
    return score >= threshold


@dataclass
class GatedItems:
    items: List[Any] = field(default_factory=list)
    below_threshold: bool = False


def apply_confidence_gate(receipt: Any, items: Sequence[Any], threshold: float) -> GatedItems:
    """Items to expose for ``receipt`` and whether they were withheld."""
    if is_visible(receipt, threshold):
        return GatedItems(items=list(items), below_threshold=False)
    return GatedItems(items=[], below_threshold=True)
