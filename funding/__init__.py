"""
Crowdfunding Settlement System

This package provides:
- Projects funded by real (client-reported chain hash) or demo contributions
- Funding lifecycle: open → goal met / expired → withdrawn / refunded
- Single withdrawal per project, guarded under a per-project lock
- Refund requests approved by the project creator, deducted exactly once
- Decimal-string amounts, never binary floats
"""

from .errors import (
    FundingServiceError,
    InvalidInputError,
    InvalidAmountError,
    ResourceNotFoundError,
    ProjectNotFoundError,
    RefundNotFoundError,
    ForbiddenError,
    StateConflictError,
    DeadlinePassedError,
    ProjectInactiveError,
    GoalNotMetError,
    GoalAlreadyMetError,
    AlreadyWithdrawnError,
    RefundAlreadyApprovedError,
)
from .models import (
    ProjectCategory,
    ProjectStatus,
    TransactionType,
    Project,
    Transaction,
    RefundRequest,
    User,
)
from .service import FundingService
from .storage import LedgerStore, SqlLedgerStore

__all__ = [
    "FundingServiceError",
    "InvalidInputError",
    "InvalidAmountError",
    "ResourceNotFoundError",
    "ProjectNotFoundError",
    "RefundNotFoundError",
    "ForbiddenError",
    "StateConflictError",
    "DeadlinePassedError",
    "ProjectInactiveError",
    "GoalNotMetError",
    "GoalAlreadyMetError",
    "AlreadyWithdrawnError",
    "RefundAlreadyApprovedError",
    "ProjectCategory",
    "ProjectStatus",
    "TransactionType",
    "Project",
    "Transaction",
    "RefundRequest",
    "User",
    "FundingService",
    "LedgerStore",
    "SqlLedgerStore",
]
