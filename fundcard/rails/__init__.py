"""
Payment rails, selected by RailKind tag.

build_rails() returns the dispatch table the verifier uses; each entry
implements the PaymentRail interface from fundcard.rails.base.
"""

from fundcard.config import Settings, settings as default_settings
from fundcard.models.funding_intent import RailKind
from fundcard.rails.base import (  # noqa: F401
    PaymentRail,
    PaymentRequest,
    RailStatus,
    RailStatusReport,
)
from fundcard.rails.crypto import CryptoRail
from fundcard.rails.mobile_money import MobileMoneyRail


def build_rails(config: Settings | None = None) -> dict[RailKind, PaymentRail]:
    config = config or default_settings
    return {
        RailKind.MOBILE_MONEY: MobileMoneyRail(
            base_url=config.MOMO_BASE_URL,
            subscription_key=config.MOMO_SUBSCRIPTION_KEY,
            api_user_id=config.MOMO_API_USER_ID,
            api_key=config.MOMO_API_KEY,
            environment=config.MOMO_ENVIRONMENT,
        ),
        RailKind.CRYPTO: CryptoRail(
            base_url=config.CRYPTO_BASE_URL,
            api_key=config.CRYPTO_API_KEY,
            api_version=config.CRYPTO_API_VERSION,
        ),
    }
