"""
Boundary operations of the verifier: create, read, verify, health.
"""
import logging
import threading
from typing import Any, Dict, Optional, Union

from .chain.adapter import EvmAdapter
from .chain.client import Web3ChainClient
from .config import VerifierSettings
from .exceptions import IntentNotFoundError
from .models import (
    CreateIntentInput, CreateIntentResult, HealthStatus, IntentView, PaymentStatus,
    VerificationResult
)
from .orchestrator import VerificationOrchestrator
from .storage.store import IntentStore

logger = logging.getLogger(__name__)


class PaymentIntentService:
    """
    Facade a transport layer (HTTP, CLI, queue consumer) calls into.

    Example:
        service = PaymentIntentService.from_settings(VerifierSettings.from_env())
        service.start()
        created = service.create_intent({...})
        service.trigger_verify(created.intent.id)
    """

    def __init__(
        self,
        adapter: EvmAdapter,
        store: IntentStore,
        orchestrator: Optional[VerificationOrchestrator] = None,
        logger: Optional[logging.Logger] = None
    ):
        self.adapter = adapter
        self.store = store
        self.orchestrator = orchestrator or VerificationOrchestrator(adapter, store)
        self.logger = logger or logging.getLogger(__name__)
        # Reference check and insert must not interleave between two creators
        self._create_lock = threading.Lock()
        self._client: Optional[Web3ChainClient] = None

    @classmethod
    def from_settings(cls, settings: VerifierSettings) -> "PaymentIntentService":
        """Wire a web3 chain client, a SQLAlchemy store and an orchestrator from settings."""
        store = IntentStore(settings.database_url)
        client = Web3ChainClient(
            settings.rpc_url,
            timeout=settings.rpc_timeout,
            retry_count=settings.rpc_retries,
        )
        adapter = EvmAdapter(
            client,
            chain_id=settings.chain_id,
            scan_blocks=settings.scan_blocks,
            min_confirmations=settings.min_confirmations,
            is_reference_used=lambda reference: store.find_by_reference(reference) is not None,
            debug_split_ranges=settings.debug_split_ranges,
        )
        orchestrator = VerificationOrchestrator(
            adapter,
            store,
            poll_interval=settings.poll_interval,
            max_concurrency=settings.max_concurrency,
        )
        service = cls(adapter, store, orchestrator)
        service._client = client
        logger.info(f"Verifier configured for {settings.network} ({settings.chain_id})")
        return service

    def create_intent(self, data: Union[CreateIntentInput, Dict[str, Any]]) -> CreateIntentResult:
        """
        Validate, persist and return a new PENDING intent with its payment request.

        Raises:
            IntentValidationError: If the input is invalid or the reference is taken
            ChainMismatchError: If the input names another network
        """
        with self._create_lock:
            intent = self.adapter.create_intent(data)
            payment_request = self.adapter.build_request(intent)
            self.store.create_intent(intent)
        self.logger.info(f"Created intent {intent.id} ({intent.asset.symbol} {intent.amount})")
        return CreateIntentResult(intent=intent, payment_request=payment_request)

    def get_intent(self, intent_id: str) -> IntentView:
        stored = self.store.get_intent(intent_id)
        if stored is None:
            raise IntentNotFoundError(intent_id)
        return IntentView(
            intent=stored.intent,
            status=stored.status,
            tx_hash=stored.tx_hash,
            confirmations=stored.confirmations,
            last_checked_at=stored.last_checked_at,
        )

    def trigger_verify(self, intent_id: str) -> VerificationResult:
        """
        Verify an intent now, sharing any attempt already in flight.

        Raises:
            IntentNotFoundError: If no intent has this id
        """
        return self.orchestrator.verify(intent_id)

    def health(self) -> HealthStatus:
        """
        Database and node status.

        `ok` holds only when the database answers and the node reports the
        configured network. When the node is unreachable the configured
        chain id is reported.
        """
        db_status = self.store.ping()
        rpc_health = self.adapter.get_rpc_health()
        chain_id = rpc_health["chainId"] or self.adapter.chain_id
        rpc_connected = rpc_health["rpcConnected"] and chain_id == self.adapter.chain_id
        return HealthStatus(
            ok=db_status and rpc_connected,
            chain_id=chain_id,
            rpc_connected=rpc_connected,
            db_status=db_status,
        )

    def status_counts(self) -> Dict[PaymentStatus, int]:
        return self.store.status_counts()

    def start(self) -> None:
        self.orchestrator.start()

    def close(self) -> None:
        """Stop the sweep and release the database and HTTP session."""
        self.orchestrator.stop()
        self.store.close()
        if self._client is not None:
            self._client.close()
