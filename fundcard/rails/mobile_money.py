"""
Mobile money rail — MTN MoMo Collections API.

Flow:
  1. POST /collection/token/            basic auth (api user : api key) -> bearer token
  2. POST /collection/v1_0/requesttopay X-Reference-Id: uuid5(reference) -> 202 Accepted
  3. GET  /collection/v1_0/requesttopay/{X-Reference-Id}                  -> status

Every call carries Ocp-Apim-Subscription-Key and X-Target-Environment.
The bearer token is cached until shortly before it expires.

MoMo already speaks PENDING / SUCCESSFUL / FAILED; anything else it returns
is treated as PENDING.
"""

import logging
import re
import time
import uuid

import httpx

from fundcard.exceptions import RailError, ValidationError
from fundcard.logging_config import mask_phone
from fundcard.models.funding_intent import RailKind
from fundcard.rails.base import PaymentRequest, RailStatus, RailStatusReport, parse_amount

logger = logging.getLogger(__name__)

MIN_PAYER_DIGITS = 10
TOKEN_REFRESH_MARGIN_SECONDS = 60

# X-Reference-Id namespace; one collection id per funding reference
REFERENCE_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "fundcard:momo:requesttopay")


def momo_reference_id(reference: str) -> str:
    return str(uuid.uuid5(REFERENCE_NAMESPACE, reference))


def validate_payer(phone: str | None) -> str:
    """
    Check a mobile-money payer number (MSISDN).

    Returns:
        The number with every non-digit removed.

    Raises:
        ValidationError: If it holds fewer than 10 digits.
    """
    digits = re.sub(r"\D", "", phone or "")
    if len(digits) < MIN_PAYER_DIGITS:
        raise ValidationError("Invalid phone number format")
    return digits


class MobileMoneyRail:
    kind = RailKind.MOBILE_MONEY

    def __init__(
        self,
        *,
        base_url: str,
        subscription_key: str,
        api_user_id: str,
        api_key: str,
        environment: str = "sandbox",
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 20.0,
    ):
        self._subscription_key = subscription_key
        self._api_user_id = api_user_id
        self._api_key = api_key
        self._environment = environment
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds),
        )
        self._token: str | None = None
        self._token_expires_at = 0.0

    def _base_headers(self) -> dict[str, str]:
        return {
            "Ocp-Apim-Subscription-Key": self._subscription_key,
            "X-Target-Environment": self._environment,
        }

    async def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        try:
            response = await self._client.post(
                "/collection/token/",
                auth=(self._api_user_id, self._api_key),
                headers=self._base_headers(),
            )
            response.raise_for_status()
            body = response.json()
            token = body.get("access_token")
            expires_in = float(body.get("expires_in", 3600))
        except (httpx.HTTPError, ValueError, TypeError, AttributeError) as exc:
            raise RailError(self.kind.value, f"authentication failed: {exc}") from exc

        if not token:
            raise RailError(self.kind.value, "authentication returned no access token")

        self._token = token
        self._token_expires_at = time.monotonic() + max(
            expires_in - TOKEN_REFRESH_MARGIN_SECONDS, 0
        )
        return self._token

    async def _auth_headers(self) -> dict[str, str]:
        token = await self._access_token()
        return {"Authorization": f"Bearer {token}", **self._base_headers()}

    async def request_payment(self, request: PaymentRequest) -> str:
        """
        Send a requestToPay for the fee-inclusive amount.

        The X-Reference-Id is derived from the funding reference, so a retry
        after a lost response names the same collection. MoMo answers 409 to
        a repeated id, which means the first attempt was accepted.

        Returns:
            The X-Reference-Id used, which is also the status lookup key.
        """
        payer = validate_payer(request.payer)
        reference_id = momo_reference_id(request.reference)
        payload = {
            "amount": str(request.amount),
            "currency": request.currency,
            "externalId": request.reference,
            "payer": {"partyIdType": "MSISDN", "partyId": payer},
            "payerMessage": f"{request.description} - {request.reference}",
            "payeeNote": f"Virtual card payment - {request.reference}",
        }

        headers = {**await self._auth_headers(), "X-Reference-Id": reference_id}
        try:
            response = await self._client.post(
                "/collection/v1_0/requesttopay",
                headers=headers,
                json=payload,
            )
            if response.status_code == 409:
                logger.info(
                    "MoMo requesttopay already accepted reference=%s rail_reference=%s",
                    request.reference,
                    reference_id,
                )
                return reference_id
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise RailError(
                self.kind.value,
                f"requesttopay rejected with HTTP {exc.response.status_code}",
            ) from exc
        except httpx.HTTPError as exc:
            raise RailError(self.kind.value, f"requesttopay failed: {exc}") from exc

        logger.info(
            "MoMo requesttopay accepted reference=%s rail_reference=%s payer=%s",
            request.reference,
            reference_id,
            mask_phone(payer),
        )
        return reference_id

    async def query_status(self, rail_reference: str) -> RailStatusReport:
        headers = await self._auth_headers()
        try:
            response = await self._client.get(
                f"/collection/v1_0/requesttopay/{rail_reference}",
                headers=headers,
            )
            response.raise_for_status()
            return self._report(response.json())
        except (httpx.HTTPError, ValueError, TypeError, AttributeError) as exc:
            raise RailError(self.kind.value, f"status check failed: {exc}") from exc

    def _report(self, body: dict) -> RailStatusReport:
        raw_status = str(body.get("status", "")).upper()
        try:
            status = RailStatus(raw_status)
        except ValueError:
            status = RailStatus.PENDING

        reason = body.get("reason")
        if isinstance(reason, dict):
            reason = reason.get("message") or reason.get("code")

        return RailStatusReport(
            status=status,
            amount=parse_amount(body.get("amount")),
            currency=body.get("currency"),
            external_transaction_id=body.get("financialTransactionId"),
            reason=reason,
        )

    async def aclose(self) -> None:
        await self._client.aclose()
