# booking_service/services/payment/provider_factory.py
import logging
from typing import Dict, Optional

from booking_service.core.config import settings
from .provider_interface import PaymentProviderInterface
from .providers.stripe_provider import StripeConfig, StripeProvider

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER = "stripe"


class PaymentProviderFactory:
    """Creates the configured payment providers once and hands them out by code."""

    def __init__(self):
        self._providers: Dict[str, PaymentProviderInterface] = {}
        self._initialize_providers()

    def _initialize_providers(self) -> None:
        if settings.STRIPE_SECRET_KEY and settings.STRIPE_WEBHOOK_SECRET:
            config = StripeConfig(
                secret_key=settings.STRIPE_SECRET_KEY,
                publishable_key=settings.STRIPE_PUBLISHABLE_KEY,
                webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
                api_version=settings.STRIPE_API_VERSION,
                max_retries=settings.STRIPE_MAX_NETWORK_RETRIES,
            )
            self._providers["stripe"] = StripeProvider(config)
            logger.info("Stripe payment provider initialized")
        else:
            logger.warning(
                "Stripe provider not initialized: missing STRIPE_SECRET_KEY or STRIPE_WEBHOOK_SECRET"
            )

    def get_provider(self, code: str) -> PaymentProviderInterface:
        """
        Get a payment provider by its code.

        Raises:
            ValueError: If provider is not available
        """
        provider = self._providers.get(code)
        if not provider:
            raise ValueError(f"Payment provider '{code}' is not available")
        return provider


_factory_instance: Optional[PaymentProviderFactory] = None


def get_payment_provider(code: str = DEFAULT_PROVIDER) -> PaymentProviderInterface:
    global _factory_instance
    if _factory_instance is None:
        _factory_instance = PaymentProviderFactory()
    return _factory_instance.get_provider(code)
