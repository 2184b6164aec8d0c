"""Database package for ProofPay receipts."""
from .connection import get_db, init_db
from .models import (
    Base,
    BankSetting,
    Dispute,
    DisputeItem,
    Receipt,
    ReceiptEvent,
    ReceiptItem,
    ReceiptShare,
)

__all__ = [
    "Base",
    "BankSetting",
    "Dispute",
    "DisputeItem",
    "Receipt",
    "ReceiptEvent",
    "ReceiptItem",
    "ReceiptShare",
    "get_db",
    "init_db",
]
