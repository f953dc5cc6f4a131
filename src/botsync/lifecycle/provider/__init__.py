"""Bot provider boundary: protocol, vendor data types, errors and the Recall.ai client."""

from src.botsync.lifecycle.provider.base import (
    BotProvider,
    VendorBotStatus,
    VendorRecording,
    VendorStatusChange,
)
from src.botsync.lifecycle.provider.errors import (
    ProviderError,
    ProviderNotFoundError,
    ProviderTimeoutError,
)
from src.botsync.lifecycle.provider.recall_client import RecallClient

__all__ = [
    "BotProvider",
    "ProviderError",
    "ProviderNotFoundError",
    "ProviderTimeoutError",
    "RecallClient",
    "VendorBotStatus",
    "VendorRecording",
    "VendorStatusChange",
]
