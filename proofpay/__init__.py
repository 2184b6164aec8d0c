"""ProofPay receipts: ingestion, share tokens, verification and disputes."""

__version__ = "1.0.0"
