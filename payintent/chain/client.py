"""
Chain RPC client capability and its web3.py implementation.

The verification engine only ever talks to a `ChainClient`; anything that
provides the four calls below (a web3 node, a test double, a cached proxy)
can be injected.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple, TypeVar

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry
from web3 import Web3
from web3.exceptions import Web3Exception

from ..exceptions import RpcError, RangeLimitError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSFER_EVENT_SIGNATURE = "Transfer(address,address,uint256)"
TRANSFER_TOPIC = Web3.to_hex(Web3.keccak(text=TRANSFER_EVENT_SIGNATURE))

# Phrases nodes use when refusing an eth_getLogs range (Alchemy, Infura, QuickNode, geth)
RANGE_LIMIT_KEYWORDS = (
    "block range",
    "range is too large",
    "range too large",
    "more than",
    "too many results",
    "limit exceeded",
    "response size",
    "query returned more than",
)
RANGE_LIMIT_RPC_CODES = (-32005,)


@dataclass
class EvmTransaction:
    hash: str
    to: Optional[str]
    value: int
    block_number: Optional[int]


@dataclass
class EvmBlock:
    number: int
    transactions: List[EvmTransaction] = field(default_factory=list)


@dataclass
class TransferLog:
    """A decoded ERC20 Transfer event"""
    tx_hash: Optional[str]
    block_number: Optional[int]
    to: Optional[str]
    value: Optional[int]


@dataclass(frozen=True)
class LogQuery:
    """Filter for Transfer logs sent to one recipient by one token contract."""
    address: str
    recipient: str
    from_block: int
    to_block: int
    topics: Tuple[Optional[str], ...] = ()

    def with_range(self, from_block: int, to_block: int) -> "LogQuery":
        return LogQuery(
            address=self.address,
            recipient=self.recipient,
            from_block=from_block,
            to_block=to_block,
            topics=self.topics,
        )

    def to_filter_params(self) -> Dict[str, Any]:
        """eth_getLogs filter object for this query"""
        return {
            "address": Web3.to_checksum_address(self.address),
            "fromBlock": self.from_block,
            "toBlock": self.to_block,
            "topics": list(self.topics),
        }


class ChainClient(Protocol):
    """Capability interface the verification engine depends on"""

    def network_id(self) -> int:
        """Numeric chain id reported by the node"""
        ...

    def latest_block(self) -> int:
        ...

    def block_with_transactions(self, block_number: int) -> EvmBlock:
        ...

    def filtered_logs(self, query: LogQuery) -> List[TransferLog]:
        ...


def _hex(value: Any) -> str:
    if isinstance(value, str):
        return value if value.startswith("0x") else "0x" + value
    return Web3.to_hex(value)


def pad_address_topic(address: str) -> str:
    """Left-pad a 20-byte address into a 32-byte log topic."""
    return "0x" + "0" * 24 + address.lower()[2:]


def is_range_limit_error(error: Exception) -> bool:
    """
    Guess whether an RPC failure is a node refusing an oversized log range.

    Nodes do not agree on an error code, so this checks the JSON-RPC code
    when one is available and falls back to message keywords.
    """
    payload = getattr(error, "rpc_response", None)
    if not isinstance(payload, dict) and error.args and isinstance(error.args[0], dict):
        payload = error.args[0]
    if isinstance(payload, dict):
        details = payload.get("error", payload)
        if isinstance(details, dict) and details.get("code") in RANGE_LIMIT_RPC_CODES:
            return True
    message = str(error).lower()
    return any(keyword in message for keyword in RANGE_LIMIT_KEYWORDS)


class Web3ChainClient:
    """
    `ChainClient` backed by a JSON-RPC node through web3.py.

    Every call is bounded by the HTTP timeout given to the provider, and
    every failure surfaces as `RpcError` (or `RangeLimitError` for log
    queries the node refuses to serve).
    """

    def __init__(
        self,
        rpc_url: str,
        timeout: int = 10,
        retry_count: int = 3,
        w3: Optional[Web3] = None,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize the client

        Args:
            rpc_url: JSON-RPC endpoint URL
            timeout: Per-request timeout in seconds
            retry_count: Number of retries for connection errors and 5xx responses
            w3: Prebuilt Web3 instance (the session and provider are not created)
            logger: Optional logger instance
        """
        self.rpc_url = rpc_url
        self.timeout = timeout
        self.logger = logger or logging.getLogger(__name__)

        if w3 is not None:
            self.session = None
            self.w3 = w3
            return

        # Setup HTTP session with retries
        self.session = requests.Session()
        retries = Retry(
            total=retry_count,
            backoff_factor=0.5,
            status_forcelist=[500, 502, 503, 504],
            allowed_methods=["POST"],
            raise_on_status=False,
            connect=retry_count,
            read=retry_count,
            other=retry_count
        )
        self.session.mount("http://", HTTPAdapter(max_retries=retries))
        self.session.mount("https://", HTTPAdapter(max_retries=retries))

        self.w3 = Web3(Web3.HTTPProvider(
            rpc_url,
            request_kwargs={"timeout": timeout},
            session=self.session,
        ))

    def _call(self, description: str, fn: Callable[[], T], logs_query: bool = False) -> T:
        try:
            return fn()
        except requests.exceptions.Timeout as e:
            raise RpcError(f"{description} timed out after {self.timeout}s: {e}")
        except (requests.RequestException, OSError) as e:
            raise RpcError(f"{description} failed, RPC unreachable: {e}")
        except (Web3Exception, ValueError) as e:
            if logs_query and is_range_limit_error(e):
                raise RangeLimitError(f"{description} rejected by node, range too large: {e}")
            raise RpcError(f"{description} failed: {e}")

    def network_id(self) -> int:
        return int(self._call("eth_chainId", lambda: self.w3.eth.chain_id))

    def latest_block(self) -> int:
        return int(self._call("eth_blockNumber", lambda: self.w3.eth.block_number))

    def block_with_transactions(self, block_number: int) -> EvmBlock:
        block = self._call(
            f"eth_getBlockByNumber({block_number})",
            lambda: self.w3.eth.get_block(block_number, full_transactions=True)
        )
        transactions = []
        for tx in block.get("transactions", []):
            # Hash-only entries mean the node ignored full_transactions
            if isinstance(tx, (bytes, str)):
                continue
            transactions.append(EvmTransaction(
                hash=_hex(tx["hash"]),
                to=tx.get("to"),
                value=int(tx.get("value", 0)),
                block_number=tx.get("blockNumber"),
            ))
        return EvmBlock(number=int(block.get("number", block_number)), transactions=transactions)

    def filtered_logs(self, query: LogQuery) -> List[TransferLog]:
        params = query.to_filter_params()
        raw_logs = self._call(
            f"eth_getLogs({query.from_block}..{query.to_block})",
            lambda: self.w3.eth.get_logs(params),
            logs_query=True
        )
        self.logger.debug(f"eth_getLogs returned {len(raw_logs)} logs for {query.address}")
        return [self._decode_transfer_log(entry) for entry in raw_logs]

    @staticmethod
    def _decode_transfer_log(entry: Dict[str, Any]) -> TransferLog:
        topics = entry.get("topics") or []
        to_address = None
        if len(topics) > 2:
            to_address = "0x" + _hex(topics[2])[-40:]

        value = None
        data = entry.get("data")
        if data:
            data_hex = _hex(data)
            if data_hex != "0x":
                value = int(data_hex, 16)

        tx_hash = entry.get("transactionHash")
        return TransferLog(
            tx_hash=_hex(tx_hash) if tx_hash is not None else None,
            block_number=entry.get("blockNumber"),
            to=to_address,
            value=value,
        )

    def close(self) -> None:
        if self.session is not None:
            self.session.close()
