"""
ESL Bridge - Minew ESL cloud reliability layer

Keeps inventory products and shelf-label devices mirrored in the Minew ESL
cloud and turns label button presses into replenishment requests.

Features:
- Database-backed platform token with single-flight refresh
- Bounded retry with one forced refresh on rejected tokens
- Cached default store id
- Durable sync queue with exponential backoff and stale-claim recovery
- Deduplicated button webhook with a fixed priority/quantity policy
- Button log polling for presses the webhook never received

Quick Start:
    pip install esl-bridge
    esl-bridge init-db         # Create tables
    esl-bridge test            # Verify platform login
    esl-bridge serve           # Webhook + queue trigger
"""

__version__ = "1.0.0"

from esl_bridge.bridge import EslBridge
from esl_bridge.button_poller import ButtonLogPoller
from esl_bridge.client import PlatformClient
from esl_bridge.config import BridgeSettings, load_settings
from esl_bridge.dispatcher import SyncDispatcher
from esl_bridge.errors import (
    AuthError,
    BridgeError,
    ConfigurationError,
    DuplicateEvent,
    NotFoundLocally,
    PlatformRejection,
    TransientNetworkError,
)
from esl_bridge.models import (
    BatchResult,
    ButtonEvent,
    ButtonLogEntry,
    PlatformResponse,
    Priority,
    PollResult,
    SyncEntity,
    SyncOperation,
    SyncOutcome,
    SyncStatus,
)
from esl_bridge.store_resolver import StoreResolver
from esl_bridge.sync_queue import QueueProcessor, SyncQueue
from esl_bridge.token_manager import CredentialStore, TokenManager
from esl_bridge.webhook import WebhookIngestor

__all__ = [
    # Wiring
    "EslBridge",
    "BridgeSettings",
    "load_settings",

    # Platform access
    "PlatformClient",
    "PlatformResponse",
    "TokenManager",
    "CredentialStore",
    "StoreResolver",

    # Sync queue
    "SyncQueue",
    "QueueProcessor",
    "SyncDispatcher",
    "SyncEntity",
    "SyncOperation",
    "SyncStatus",
    "SyncOutcome",
    "BatchResult",

    # Webhook
    "WebhookIngestor",
    "ButtonEvent",
    "Priority",
    "ButtonLogPoller",
    "ButtonLogEntry",
    "PollResult",

    # Errors
    "BridgeError",
    "ConfigurationError",
    "AuthError",
    "TransientNetworkError",
    "PlatformRejection",
    "NotFoundLocally",
    "DuplicateEvent",
]
