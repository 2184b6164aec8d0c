"""
Core receipt logic.

Submodules are imported directly (``proofpay.core.shares`` and so on);
the store adapter depends on ``proofpay.core.errors``, so this package
does not re-export the services.
"""
