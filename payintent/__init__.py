"""
payintent-verifier: payment intents for EVM networks, verified against chain state.
"""
from .version import __version__
from .exceptions import (
    ErrorCode,
    PayIntentError,
    IntentValidationError,
    ChainMismatchError,
    RpcError,
    RangeLimitError,
    StoreError,
    DuplicateIntentError,
    IntentNotFoundError,
)
from .models import (
    PaymentStatus,
    AssetType,
    PaymentAsset,
    ConfirmationPolicy,
    PaymentIntent,
    CreateIntentInput,
    PaymentRequest,
    VerificationResult,
    VerificationMeta,
    StoredIntent,
    IntentEvent,
    CreateIntentResult,
    IntentView,
    HealthStatus,
)
from .state import can_transition, transition_status, is_terminal, resolve_next_status
from .validation import to_base_units, is_expired
from .config import NetworkConfig, VerifierSettings
from .chain import EvmAdapter, ChainClient, Web3ChainClient
from .storage import IntentStore
from .orchestrator import VerificationOrchestrator, SweepReport
from .service import PaymentIntentService

__all__ = [
    "__version__",
    "ErrorCode",
    "PayIntentError",
    "IntentValidationError",
    "ChainMismatchError",
    "RpcError",
    "RangeLimitError",
    "StoreError",
    "DuplicateIntentError",
    "IntentNotFoundError",
    "PaymentStatus",
    "AssetType",
    "PaymentAsset",
    "ConfirmationPolicy",
    "PaymentIntent",
    "CreateIntentInput",
    "PaymentRequest",
    "VerificationResult",
    "VerificationMeta",
    "StoredIntent",
    "IntentEvent",
    "CreateIntentResult",
    "IntentView",
    "HealthStatus",
    "can_transition",
    "transition_status",
    "is_terminal",
    "resolve_next_status",
    "to_base_units",
    "is_expired",
    "NetworkConfig",
    "VerifierSettings",
    "EvmAdapter",
    "ChainClient",
    "Web3ChainClient",
    "IntentStore",
    "VerificationOrchestrator",
    "SweepReport",
    "PaymentIntentService",
]
