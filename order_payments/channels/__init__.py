"""Payment channel adapters and gateway clients."""
from .base import (
    ChannelAdapter,
    ChannelError,
    GatewayClient,
    GatewayResponseError,
    GatewayUnavailableError,
    PayloadValidationError,
    SignatureVerificationError,
)
from .cash import CashOnDeliveryAdapter
from .flutterwave import (
    FlutterwaveClient,
    FlutterwaveConfig,
    FlutterwaveWebhookAdapter,
    detect_provider,
    make_tx_ref,
)
from .manual import ManualMomoAdapter
from .paypal import PayPalCaptureAdapter, PayPalClient, PayPalConfig
from .pesapal import PesapalClient, PesapalConfig, PesapalStatusAdapter, PollResult

__all__ = [
    "ChannelAdapter",
    "ChannelError",
    "GatewayClient",
    "GatewayResponseError",
    "GatewayUnavailableError",
    "PayloadValidationError",
    "SignatureVerificationError",
    "CashOnDeliveryAdapter",
    "FlutterwaveClient",
    "FlutterwaveConfig",
    "FlutterwaveWebhookAdapter",
    "detect_provider",
    "make_tx_ref",
    "ManualMomoAdapter",
    "PayPalCaptureAdapter",
    "PayPalClient",
    "PayPalConfig",
    "PesapalClient",
    "PesapalConfig",
    "PesapalStatusAdapter",
    "PollResult",
]
