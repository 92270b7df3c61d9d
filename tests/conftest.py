"""
Pytest fixtures for the payintent verifier tests.
"""
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from payintent._rate_limited_log import reset_rate_limits
from payintent.chain.adapter import EvmAdapter
from payintent.chain.client import EvmBlock, EvmTransaction, LogQuery, TransferLog
from payintent.config import NetworkConfig
from payintent.models import (
    AssetType, ConfirmationPolicy, PaymentAsset, PaymentIntent, PaymentStatus
)
from payintent.orchestrator import VerificationOrchestrator
from payintent.service import PaymentIntentService
from payintent.storage.store import IntentStore

# ─────────────────────────────────────────────────────────────────────────
#  CONSTANTS
# ─────────────────────────────────────────────────────────────────────────

TEST_CHAIN_ID = "eip155:421614"
TEST_EVM_CHAIN_ID = 421614
TEST_NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
TEST_RECIPIENT = "0x" + "ab" * 20
TEST_OTHER_ADDRESS = "0x" + "cd" * 20
TEST_TOKEN = "0x" + "12" * 20
TEST_TX_HASH = "0x" + "aa" * 32
TEST_LATEST_BLOCK = 1000
TEST_SCAN_BLOCKS = 20


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = TEST_NOW):
        self.current = now

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


class MockChainClient:
    """
    In-memory ChainClient.

    Blocks are given as {block_number: [EvmTransaction, ...]}; logs are
    filtered by the query's block range only.
    """

    def __init__(
        self,
        chain_id: int = TEST_EVM_CHAIN_ID,
        latest: int = TEST_LATEST_BLOCK,
        blocks: Optional[Dict[int, List[EvmTransaction]]] = None,
        logs: Optional[List[TransferLog]] = None
    ):
        self.chain_id = chain_id
        self.latest = latest
        self.blocks = blocks or {}
        self.logs = logs or []
        self.network_error: Optional[Exception] = None
        self.latest_error: Optional[Exception] = None
        self.logs_error: Optional[Exception] = None
        self.latest_block_calls = 0
        self.block_requests: List[int] = []
        self.log_queries: List[LogQuery] = []
        self._lock = threading.Lock()

    def network_id(self) -> int:
        if self.network_error is not None:
            raise self.network_error
        return self.chain_id

    def latest_block(self) -> int:
        with self._lock:
            self.latest_block_calls += 1
        if self.latest_error is not None:
            raise self.latest_error
        return self.latest

    def block_with_transactions(self, block_number: int) -> EvmBlock:
        with self._lock:
            self.block_requests.append(block_number)
        return EvmBlock(number=block_number, transactions=list(self.blocks.get(block_number, [])))

    def filtered_logs(self, query: LogQuery) -> List[TransferLog]:
        with self._lock:
            self.log_queries.append(query)
        if self.logs_error is not None:
            raise self.logs_error
        return [
            entry for entry in self.logs
            if entry.block_number is None or query.from_block <= entry.block_number <= query.to_block
        ]


def native_asset() -> PaymentAsset:
    return PaymentAsset(symbol="ETH", decimals=18, type=AssetType.NATIVE)


def erc20_asset(contract_address: Optional[str] = TEST_TOKEN) -> PaymentAsset:
    return PaymentAsset(symbol="USDC", decimals=6, type=AssetType.ERC20, contract_address=contract_address)


def make_intent(
    intent_id: str = "intent-1",
    asset: Optional[PaymentAsset] = None,
    amount: int = 1000,
    reference: str = "order-1",
    expires_at: Optional[datetime] = None,
    min_confirmations: int = 2,
    chain_id: str = TEST_CHAIN_ID,
    recipient: str = TEST_RECIPIENT,
    status: PaymentStatus = PaymentStatus.PENDING
) -> PaymentIntent:
    return PaymentIntent(
        id=intent_id,
        created_at=TEST_NOW,
        expires_at=expires_at or TEST_NOW + timedelta(hours=1),
        chain_id=chain_id,
        asset=asset or native_asset(),
        recipient=recipient,
        amount=amount,
        reference=reference,
        confirmation_policy=ConfirmationPolicy(min_confirmations=min_confirmations),
        status=status,
    )


def create_input(**overrides) -> dict:
    """camelCase creation payload, as a transport layer would pass it."""
    data = {
        "chainId": TEST_CHAIN_ID,
        "asset": {"symbol": "ETH", "decimals": 18, "type": "native"},
        "recipient": TEST_RECIPIENT,
        "amount": "1000",
        "reference": "order-1",
        "expiresAt": (TEST_NOW + timedelta(hours=1)).isoformat(),
    }
    data.update(overrides)
    return data


# ─────────────────────────────────────────────────────────────────────────
#  FIXTURES
# ─────────────────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def _reset_shared_state():
    """Rate-limit memory and the network cache are module level."""
    reset_rate_limits()
    NetworkConfig._networks_cache = None
    yield
    reset_rate_limits()
    NetworkConfig._networks_cache = None


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def chain_client():
    return MockChainClient()


@pytest.fixture
def store():
    intent_store = IntentStore("sqlite://")
    yield intent_store
    intent_store.close()


@pytest.fixture
def adapter(chain_client, store, clock):
    return EvmAdapter(
        chain_client,
        chain_id=TEST_CHAIN_ID,
        scan_blocks=TEST_SCAN_BLOCKS,
        min_confirmations=2,
        is_reference_used=lambda reference: store.find_by_reference(reference) is not None,
        now=clock,
    )


@pytest.fixture
def orchestrator(adapter, store, clock):
    return VerificationOrchestrator(adapter, store, poll_interval=0.05, max_concurrency=4, now=clock)


@pytest.fixture
def service(adapter, store, orchestrator):
    svc = PaymentIntentService(adapter, store, orchestrator)
    yield svc
    svc.orchestrator.stop()
