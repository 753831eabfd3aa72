"""
Payment rail capability interface and its normalized vocabulary.

Every rail, whatever its wire format, exposes the same two calls:

    request_payment(PaymentRequest) -> rail_reference
    query_status(rail_reference)    -> RailStatusReport

and reports one of PENDING / SUCCESSFUL / FAILED. The verifier never sees a
provider-specific status string.

Transport problems (timeouts, connection errors, 5xx) raise RailError. They
are transient: a failed poll never moves a funding intent.
"""

import enum
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Protocol

from fundcard.models.funding_intent import RailKind


class RailStatus(str, enum.Enum):
    PENDING = "PENDING"
    SUCCESSFUL = "SUCCESSFUL"
    FAILED = "FAILED"


@dataclass(frozen=True)
class PaymentRequest:
    """What the payer is asked for. `amount` is the fee-inclusive total."""

    reference: str
    amount: Decimal
    currency: str
    payer: str | None = None
    description: str = "Virtual card funding"


@dataclass(frozen=True)
class RailStatusReport:
    status: RailStatus
    amount: Decimal | None = None
    currency: str | None = None
    external_transaction_id: str | None = None
    reason: str | None = None


class PaymentRail(Protocol):
    """Capability interface implemented once per rail."""

    kind: RailKind

    async def request_payment(self, request: PaymentRequest) -> str:
        ...

    async def query_status(self, rail_reference: str) -> RailStatusReport:
        ...

    async def aclose(self) -> None:
        ...


def parse_amount(value) -> Decimal | None:
    """Rails send amounts as strings or numbers; None if absent or unparsable."""
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None
