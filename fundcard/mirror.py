"""
External ledger mirror (optional, best effort).

After a card is persisted, the issuance coordinator records
(card_id, funding_reference, amount) with an external ledger, for example
an on-chain registry behind an HTTP gateway. A failed mirror never undoes
issuance; the coordinator deactivates the card instead.

Mirroring is disabled when MIRROR_URL is empty.
"""

import logging
import uuid
from typing import Protocol

import httpx

from fundcard.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class MirrorError(Exception):
    """The external ledger did not accept the record."""


class LedgerMirror(Protocol):
    async def record(self, card_id: uuid.UUID, funding_reference: str, amount: int) -> None:
        ...

    async def aclose(self) -> None:
        ...


class HttpLedgerMirror:
    """POSTs one JSON record per issued card to MIRROR_URL."""

    def __init__(
        self,
        url: str,
        api_key: str = "",
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 10.0,
    ):
        self._url = url
        self._headers = {"Accept": "application/json"}
        if api_key:
            self._headers["Authorization"] = f"Bearer {api_key}"
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds))

    async def record(self, card_id: uuid.UUID, funding_reference: str, amount: int) -> None:
        payload = {
            "card_id": str(card_id),
            "funding_reference": funding_reference,
            "amount": amount,
        }
        try:
            response = await self._client.post(self._url, headers=self._headers, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise MirrorError(f"mirror answered HTTP {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise MirrorError(f"mirror unreachable: {exc}") from exc
        logger.info("Card %s mirrored (reference=%s)", card_id, funding_reference)

    async def aclose(self) -> None:
        await self._client.aclose()


def build_mirror(config: Settings | None = None) -> LedgerMirror | None:
    config = config or default_settings
    if not config.MIRROR_URL:
        return None
    return HttpLedgerMirror(config.MIRROR_URL, config.MIRROR_API_KEY)
