"""
Wallet Ledger for a Task Marketplace

This module provides:
- Compare-and-swap wallet mutation with non-negative balances
- Campaign budget deduction with compensation on a failed wallet leg
- Work approval and crediting: pending → approved / rejected
- Admin-mediated add-money and withdrawal requests
- A time-expiring read cache that is never used for ledger decisions
"""

from .errors import (
    AbortedTransaction,
    InfrastructureFailure,
    LedgerServiceError,
    NotFound,
    PreconditionFailed,
    Unauthorized,
)
from .models import (
    Campaign,
    CampaignStatus,
    MoneyRequest,
    MoneyRequestType,
    RequestStatus,
    TransactionRecord,
    TransactionType,
    WalletBalance,
    WorkStatus,
    WorkSubmission,
)
from .service import LedgerService
from .store import ABORT, DocumentStore, InMemoryDocumentStore

__all__ = [
    "ABORT",
    "AbortedTransaction",
    "Campaign",
    "CampaignStatus",
    "DocumentStore",
    "InMemoryDocumentStore",
    "InfrastructureFailure",
    "LedgerService",
    "LedgerServiceError",
    "MoneyRequest",
    "MoneyRequestType",
    "NotFound",
    "PreconditionFailed",
    "RequestStatus",
    "TransactionRecord",
    "TransactionType",
    "Unauthorized",
    "WalletBalance",
    "WorkStatus",
    "WorkSubmission",
]
