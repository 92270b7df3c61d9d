"""
EVM verification engine.

`EvmAdapter` creates payment intents for one configured network, derives
payment requests from them, and decides whether a matching transfer
landed on chain within a bounded window of recent blocks.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from .._rate_limited_log import rate_limited_log
from ..config import DEFAULT_MIN_CONFIRMATIONS, DEFAULT_SCAN_BLOCKS, evm_chain_id_to_caip2
from ..exceptions import (
    ChainMismatchError, ErrorCode, IntentValidationError, RangeLimitError, RpcError
)
from ..models import (
    AssetType, ConfirmationPolicy, CreateIntentInput, PaymentIntent, PaymentRequest,
    PaymentStatus, VerificationResult
)
from ..validation import is_intent_expired, validate_create_intent_input
from .client import ChainClient, LogQuery, TransferLog, TRANSFER_TOPIC, pad_address_topic

logger = logging.getLogger(__name__)

DEFAULT_CHAIN_ID = "eip155:42161"
# Smallest sub-range the debug splitter will try before giving up
DEFAULT_MIN_SPLIT_BLOCKS = 8


def normalize_address(address: str) -> str:
    return address.lower()


def compute_scan_range(latest_block: int, scan_blocks: int) -> Tuple[int, int]:
    """
    Inclusive block window ending at `latest_block`.

    Transfers older than `scan_blocks` blocks are never found. That bound
    keeps every verification a fixed, predictable amount of RPC work.
    """
    from_block = latest_block - scan_blocks if latest_block > scan_blocks else 0
    return from_block, latest_block


def build_erc20_transfer_log_query(
    contract_address: str,
    recipient: str,
    from_block: int,
    to_block: int
) -> LogQuery:
    """Transfer(from, to, value) logs emitted by `contract_address` with `to == recipient`."""
    return LogQuery(
        address=normalize_address(contract_address),
        recipient=normalize_address(recipient),
        from_block=from_block,
        to_block=to_block,
        topics=(TRANSFER_TOPIC, None, pad_address_topic(recipient)),
    )


class EvmAdapter:
    """
    Verification engine for a single EVM network.

    Native transfers are matched by recipient and value only: two open
    intents for the same recipient and amount can both be satisfied by the
    same transaction. The intent reference is not bound to the transfer.
    """

    def __init__(
        self,
        client: ChainClient,
        chain_id: str = DEFAULT_CHAIN_ID,
        scan_blocks: int = DEFAULT_SCAN_BLOCKS,
        min_confirmations: int = DEFAULT_MIN_CONFIRMATIONS,
        is_reference_used: Optional[Callable[[str], bool]] = None,
        now: Optional[Callable[[], datetime]] = None,
        debug_split_ranges: bool = False,
        min_split_blocks: int = DEFAULT_MIN_SPLIT_BLOCKS,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize the adapter

        Args:
            client: Chain RPC client
            chain_id: CAIP-2 id of the network this adapter verifies on
            scan_blocks: How many blocks behind the latest block to scan
            min_confirmations: Confirmation policy applied when an intent sets none
            is_reference_used: Predicate backed by persistence; when omitted the
                adapter remembers references it created itself
            now: Clock returning an aware UTC datetime
            debug_split_ranges: Bisect log queries the node rejects as too large
            min_split_blocks: Smallest range the bisection will query
            logger: Optional logger instance
        """
        if scan_blocks < 0:
            raise ValueError("scan_blocks must be >= 0")
        if min_confirmations < 0:
            raise ValueError("min_confirmations must be >= 0")

        self.client = client
        self.chain_id = chain_id
        self.scan_blocks = scan_blocks
        self.min_confirmations = min_confirmations
        self.debug_split_ranges = debug_split_ranges
        self.min_split_blocks = max(1, min_split_blocks)
        self.now = now or (lambda: datetime.now(timezone.utc))
        self.logger = logger or logging.getLogger(__name__)

        self._seen_references: Optional[Set[str]] = None
        if is_reference_used is None:
            self._seen_references = set()
            is_reference_used = self._seen_references.__contains__
        self._is_reference_used = is_reference_used

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_intent(self, data: Union[CreateIntentInput, Dict[str, Any]]) -> PaymentIntent:
        """
        Validate a creation request and build a PENDING intent.

        Args:
            data: CreateIntentInput or its camelCase/snake_case dict form

        Returns:
            The new intent; nothing is persisted here

        Raises:
            IntentValidationError: If any field is invalid or the reference is taken
            ChainMismatchError: If the request targets another network
        """
        if not isinstance(data, CreateIntentInput):
            try:
                data = CreateIntentInput.model_validate(data)
            except PydanticValidationError as e:
                first = e.errors()[0]
                location = ".".join(str(part) for part in first.get("loc", ()))
                raise IntentValidationError(f"invalid {location or 'input'}: {first.get('msg')}")

        created_at = self.now()
        expires_at = validate_create_intent_input(data, now=created_at)

        if data.chain_id is not None and data.chain_id != self.chain_id:
            raise ChainMismatchError(
                f"chainId {data.chain_id} does not match configured network {self.chain_id}"
            )

        if self._is_reference_used(data.reference):
            raise IntentValidationError("reference must be unique")

        min_confirmations = (
            data.confirmation_policy.min_confirmations
            if data.confirmation_policy is not None
            else self.min_confirmations
        )

        intent = PaymentIntent(
            id=str(uuid.uuid4()),
            created_at=created_at,
            expires_at=expires_at,
            chain_id=self.chain_id,
            asset=data.asset,
            recipient=data.recipient,
            amount=int(data.amount),
            reference=data.reference,
            confirmation_policy=ConfirmationPolicy(min_confirmations=min_confirmations),
            status=PaymentStatus.PENDING,
        )
        if self._seen_references is not None:
            self._seen_references.add(data.reference)
        self.logger.debug(f"Created intent {intent.id} for reference {intent.reference}")
        return intent

    def build_request(self, intent: PaymentIntent) -> PaymentRequest:
        """Payment link (EIP-681 style), QR payload and instructions for an intent."""
        if intent.asset.type == AssetType.NATIVE:
            payment_link = f"ethereum:{intent.recipient}?value={intent.amount}"
        else:
            payment_link = (
                f"ethereum:{intent.asset.contract_address}/transfer"
                f"?address={intent.recipient}&uint256={intent.amount}"
            )

        expires_at = intent.expires_at.astimezone(timezone.utc).isoformat()
        instructions = [
            f"Send {intent.amount} base units of {intent.asset.symbol} to {intent.recipient}.",
            f"Use reference: {intent.reference}.",
            f"Payment expires at {expires_at}.",
        ]
        return PaymentRequest(
            payment_link=payment_link,
            qr_payload=payment_link,
            instructions=instructions,
            expires_at=intent.expires_at,
        )

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify(self, intent: PaymentIntent) -> VerificationResult:
        """
        Look for a transfer that satisfies `intent`.

        Every chain-state outcome, RPC failures included, comes back as a
        VerificationResult. Only a client that breaks its contract makes
        this raise.
        """
        if intent.chain_id != self.chain_id:
            return VerificationResult(
                status=PaymentStatus.FAILED,
                reason=f"intent chainId {intent.chain_id} does not match configured network {self.chain_id}",
                error_code=ErrorCode.CHAIN_MISMATCH,
            )

        if is_intent_expired(intent, self.now()):
            return VerificationResult(
                status=PaymentStatus.EXPIRED,
                reason="intent expired",
                error_code=ErrorCode.EXPIRED_ERROR,
            )

        if intent.asset.type == AssetType.ERC20 and not intent.asset.contract_address:
            return VerificationResult(
                status=PaymentStatus.FAILED,
                reason="missing erc20 contract address",
                error_code=ErrorCode.VALIDATION_ERROR,
            )

        try:
            reported = evm_chain_id_to_caip2(self.client.network_id())
            if reported != self.chain_id:
                return VerificationResult(
                    status=PaymentStatus.FAILED,
                    reason=f"rpc reports {reported}, expected {self.chain_id}",
                    error_code=ErrorCode.CHAIN_MISMATCH,
                )

            latest_block = self.client.latest_block()
            if intent.asset.type == AssetType.NATIVE:
                match = self._find_native_transfer(intent, latest_block)
            else:
                match = self._find_erc20_transfer(intent, latest_block)
        except RpcError as e:
            rate_limited_log(f"RPC error while verifying on {self.chain_id}: {e}", "warning", 60, self.logger)
            return VerificationResult(
                status=PaymentStatus.FAILED,
                reason=str(e),
                error_code=ErrorCode.RPC_ERROR,
            )

        if match is None:
            return VerificationResult(
                status=PaymentStatus.PENDING,
                reason="matching transfer not found in scan range",
            )

        tx_hash, match_block = match
        confirmations = latest_block - match_block + 1
        if confirmations < intent.confirmation_policy.min_confirmations:
            return VerificationResult(
                status=PaymentStatus.DETECTED,
                tx_hash=tx_hash,
                confirmations=confirmations,
                reason=(
                    f"{confirmations} of {intent.confirmation_policy.min_confirmations} "
                    "required confirmations"
                ),
                error_code=ErrorCode.CONFIRMATION_PENDING,
            )
        return VerificationResult(
            status=PaymentStatus.CONFIRMED,
            tx_hash=tx_hash,
            confirmations=confirmations,
        )

    def _find_native_transfer(self, intent: PaymentIntent, latest_block: int) -> Optional[Tuple[str, int]]:
        """Newest block first; the first qualifying transaction in the first qualifying block wins."""
        from_block, to_block = compute_scan_range(latest_block, self.scan_blocks)
        recipient = normalize_address(intent.recipient)
        minimum = intent.amount

        for block_number in range(to_block, from_block - 1, -1):
            block = self.client.block_with_transactions(block_number)
            for tx in block.transactions:
                if not tx.to:
                    continue
                if normalize_address(tx.to) == recipient and tx.value >= minimum:
                    match_block = tx.block_number if tx.block_number is not None else block_number
                    self.logger.debug(f"Native match {tx.hash} in block {match_block} for intent {intent.id}")
                    return tx.hash, match_block
        return None

    def _find_erc20_transfer(self, intent: PaymentIntent, latest_block: int) -> Optional[Tuple[str, int]]:
        from_block, to_block = compute_scan_range(latest_block, self.scan_blocks)
        query = build_erc20_transfer_log_query(
            intent.asset.contract_address, intent.recipient, from_block, to_block
        )
        logs = self._fetch_logs(query)

        recipient = normalize_address(intent.recipient)
        for entry in logs:
            if entry.block_number is None or entry.tx_hash is None or entry.value is None:
                continue
            if entry.to is not None and normalize_address(entry.to) != recipient:
                continue
            if entry.value >= intent.amount:
                return entry.tx_hash, entry.block_number
        return None

    def _fetch_logs(self, query: LogQuery) -> List[TransferLog]:
        try:
            return self.client.filtered_logs(query)
        except RangeLimitError as e:
            if not self.debug_split_ranges:
                raise
            self.logger.info(
                f"Log range {query.from_block}..{query.to_block} rejected ({e}); splitting into sub-ranges"
            )
            return self._fetch_logs_split(query)

    def _fetch_logs_split(self, query: LogQuery) -> List[TransferLog]:
        span = query.to_block - query.from_block + 1
        if span <= self.min_split_blocks:
            return self.client.filtered_logs(query)

        middle = query.from_block + span // 2
        logs: List[TransferLog] = []
        for part in (query.with_range(query.from_block, middle - 1), query.with_range(middle, query.to_block)):
            try:
                logs.extend(self.client.filtered_logs(part))
            except RangeLimitError:
                self.logger.debug(f"Sub-range {part.from_block}..{part.to_block} still too large")
                logs.extend(self._fetch_logs_split(part))
        return logs

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def get_rpc_health(self) -> Dict[str, Any]:
        """
        Probe the node.

        Returns:
            {"rpcConnected": bool, "chainId": reported CAIP-2 id or None}
        """
        try:
            reported = evm_chain_id_to_caip2(self.client.network_id())
        except RpcError as e:
            self.logger.warning(f"RPC health check failed: {e}")
            return {"rpcConnected": False, "chainId": None}
        return {"rpcConnected": True, "chainId": reported}
