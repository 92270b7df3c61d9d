"""
Chain access and transfer verification for EVM networks.
"""
from .adapter import EvmAdapter, build_erc20_transfer_log_query, compute_scan_range
from .client import (
    ChainClient,
    EvmBlock,
    EvmTransaction,
    LogQuery,
    TransferLog,
    TRANSFER_TOPIC,
    Web3ChainClient,
)

__all__ = [
    "EvmAdapter",
    "compute_scan_range",
    "build_erc20_transfer_log_query",
    "ChainClient",
    "Web3ChainClient",
    "EvmBlock",
    "EvmTransaction",
    "LogQuery",
    "TransferLog",
    "TRANSFER_TOPIC",
]
