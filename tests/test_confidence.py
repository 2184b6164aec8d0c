"""
Unit tests for the confidence gate.
"""
from types import SimpleNamespace
from typing import Optional

import pytest

from proofpay.core.confidence import apply_confidence_gate, is_visible


def receipt(score: Optional[int], label: Optional[str] = None) -> SimpleNamespace:
    return SimpleNamespace(confidence_score=score, confidence_label=label)


class TestConfidenceGate:
    """Test suite for item visibility by confidence."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "score, label, threshold, visible",
        [
            (None, None, 85, True),
            (90, "MEDIUM", 85, True),
            (85, "MEDIUM", 85, True),
            (84, "MEDIUM", 85, False),
            (10, "HIGH", 85, True),
            (None, "LOW", 100, True),
            (0, "LOW", 0, True),
            (99, None, 100, False),
            (85, "MEDIUM", 85.5, False),
            (86, "MEDIUM", 85.5, True),
        ],
    )
    def test_visibility(
        self, score: Optional[int], label: Optional[str], threshold: float, visible: bool
    ) -> None:
        assert is_visible(receipt(score, label), threshold) is visible

    @pytest.mark.unit
    def test_visible_receipt_keeps_items(self) -> None:
        gated = apply_confidence_gate(receipt(95), ["a", "b"], 85)
        assert gated.items == ["a", "b"]
        assert gated.below_threshold is False

    @pytest.mark.unit
    def test_hidden_receipt_drops_items(self) -> None:
        """Items are withheld and the receipt flagged, never partially shown."""
        gated = apply_confidence_gate(receipt(40, "LOW"), ["a", "b"], 85)
        assert gated.items == []
        assert gated.below_threshold is True
