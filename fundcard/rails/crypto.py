"""
Crypto rail — Commerce-style hosted charges.

  POST /charges         -> data.code (the rail reference)
  GET  /charges/{code}  -> data.timeline[], data.payments[]

The latest timeline entry decides the normalized status:

  COMPLETED, RESOLVED           -> SUCCESSFUL
  EXPIRED, CANCELED             -> FAILED
  NEW, PENDING, UNRESOLVED, ... -> PENDING

Reported amount is the sum of the local-currency value of every payment on
the charge, which lets the verifier catch underpayment.
"""

import logging
from decimal import Decimal

import httpx

from fundcard.exceptions import RailError
from fundcard.models.funding_intent import RailKind
from fundcard.rails.base import PaymentRequest, RailStatus, RailStatusReport, parse_amount

logger = logging.getLogger(__name__)

_SUCCESS_STATES = {"COMPLETED", "RESOLVED"}
_FAILURE_STATES = {"EXPIRED", "CANCELED"}


def normalize_charge_status(raw: str | None) -> RailStatus:
    value = (raw or "").upper()
    if value in _SUCCESS_STATES:
        return RailStatus.SUCCESSFUL
    if value in _FAILURE_STATES:
        return RailStatus.FAILED
    return RailStatus.PENDING


class CryptoRail:
    kind = RailKind.CRYPTO

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        api_version: str,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 20.0,
    ):
        self._headers = {
            "X-CC-Api-Key": api_key,
            "X-CC-Version": api_version,
            "Accept": "application/json",
        }
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds),
        )

    async def request_payment(self, request: PaymentRequest) -> str:
        payload = {
            "name": "Virtual card funding",
            "description": request.description,
            "pricing_type": "fixed_price",
            "local_price": {"amount": str(request.amount), "currency": request.currency},
            "metadata": {"reference": request.reference},
        }
        try:
            response = await self._client.post("/charges", headers=self._headers, json=payload)
            response.raise_for_status()
            code = response.json()["data"]["code"]
        except httpx.HTTPStatusError as exc:
            raise RailError(
                self.kind.value,
                f"charge rejected with HTTP {exc.response.status_code}",
            ) from exc
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as exc:
            raise RailError(self.kind.value, f"charge creation failed: {exc}") from exc

        logger.info("Crypto charge created reference=%s code=%s", request.reference, code)
        return code

    async def query_status(self, rail_reference: str) -> RailStatusReport:
        try:
            response = await self._client.get(
                f"/charges/{rail_reference}", headers=self._headers
            )
            response.raise_for_status()
            return self._report(response.json()["data"])
        except (httpx.HTTPError, ValueError, KeyError, TypeError, AttributeError) as exc:
            raise RailError(self.kind.value, f"charge lookup failed: {exc}") from exc

    def _report(self, data: dict) -> RailStatusReport:
        timeline = data.get("timeline") or []
        latest = timeline[-1] if timeline else {}
        status = normalize_charge_status(latest.get("status"))

        payments = data.get("payments") or []
        values = [(p.get("value") or {}).get("local") or {} for p in payments]
        paid = [parse_amount(value.get("amount")) for value in values]
        paid = [amount for amount in paid if amount is not None]
        amount = sum(paid, Decimal("0")) if paid else None
        currency = values[-1].get("currency") if values else None
        external_id = payments[-1].get("transaction_id") if payments else None

        reason = None
        if status is RailStatus.FAILED:
            reason = f"charge {str(latest.get('status')).lower()}"

        return RailStatusReport(
            status=status,
            amount=amount,
            currency=currency,
            external_transaction_id=external_id,
            reason=reason,
        )

    async def aclose(self) -> None:
        await self._client.aclose()
