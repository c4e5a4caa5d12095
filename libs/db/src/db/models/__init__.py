"""Shared SQLAlchemy models registry for the workspace database.

Currently includes the reconciliation models used by ``ledger_recon``.
"""

from .ledger import Base, LrTransaction

__all__ = [
    "Base",
    "LrTransaction",
]
