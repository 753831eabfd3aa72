"""
SQLAlchemy ORM models package.

All models are imported here so that Base.metadata knows every table before
create_all() runs, and other modules can import from fundcard.models directly.
"""

from fundcard.models.funding_intent import FundingIntent, IntentPurpose, IntentStatus, RailKind  # noqa: F401
from fundcard.models.card import CardBrand, VirtualCard  # noqa: F401
from fundcard.models.card_transaction import (  # noqa: F401
    CardTransaction,
    TransactionStatus,
    TransactionType,
)
