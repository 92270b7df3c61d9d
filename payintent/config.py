"""
Configuration for the payintent verifier.

Network definitions ship in `networks.json`; runtime settings come from
environment variables.
"""
import json
import logging
import os
import urllib.parse
from dataclasses import dataclass
from importlib import resources
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_NETWORK = "arbitrum-one"
DEFAULT_SCAN_BLOCKS = 500
DEFAULT_MIN_CONFIRMATIONS = 2
DEFAULT_DB_URL = "sqlite:///payintent-verifier.sqlite"
DEFAULT_POLL_INTERVAL = 10.0
DEFAULT_RPC_TIMEOUT = 10
DEFAULT_RPC_RETRIES = 3
DEFAULT_MAX_CONCURRENCY = 4


class NetworkConfig:
    """Lookup of bundled network definitions, keyed by network name."""

    _networks_cache: Optional[Dict[str, Dict[str, Any]]] = None

    @classmethod
    def load_networks(cls) -> Dict[str, Dict[str, Any]]:
        """
        Load network definitions, reading the bundled file only once.

        Returns:
            Mapping of network name to its definition
        """
        if cls._networks_cache is None:
            source = resources.files("payintent").joinpath("networks.json")
            with source.open("r", encoding="utf-8") as f:
                cls._networks_cache = json.load(f)
        return cls._networks_cache

    @classmethod
    def get_network(cls, name: str) -> Dict[str, Any]:
        """
        Get a single network definition.

        Raises:
            ValueError: If the network is unknown
        """
        networks = cls.load_networks()
        if name not in networks:
            available = ", ".join(sorted(networks))
            raise ValueError(f"Unknown network '{name}'. Available networks: {available}")
        return networks[name]

    @classmethod
    def get_chain_id(cls, name: str) -> str:
        """CAIP-2 chain id of a network, e.g. 'eip155:42161'."""
        return cls.get_network(name)["chainId"]

    @classmethod
    def get_rpc_url(cls, name: str, override: Optional[str] = None) -> str:
        """
        Resolve the RPC URL for a network.

        Precedence: explicit override, then `<NETWORK_NAME>_RPC_URL`, then the
        bundled default.
        """
        if override:
            return override
        env_name = name.upper().replace("-", "_") + "_RPC_URL"
        env_value = os.environ.get(env_name)
        if env_value:
            return env_value
        return cls.get_network(name)["rpc"]


def caip2_to_evm_chain_id(chain_id: str) -> Optional[int]:
    """Numeric EVM chain id from 'eip155:<n>', or None when it is not one."""
    namespace, _, reference = chain_id.partition(":")
    if namespace != "eip155" or not reference.isdigit():
        return None
    return int(reference)


def evm_chain_id_to_caip2(chain_id: int) -> str:
    return f"eip155:{chain_id}"


def validate_rpc_url(url: str) -> None:
    """
    Require https for anything that is not a loopback address.

    Raises:
        ValueError: If the URL is insecure
    """
    parsed = urllib.parse.urlparse(url)
    host = parsed.hostname or ""
    is_local = host in ("localhost", "127.0.0.1", "::1")
    if parsed.scheme != "https" and not is_local:
        raise ValueError(f"rpc_url must use https:// for security (got: {parsed.scheme}://)")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    if not raw.strip().isdigit():
        logger.warning(f"Ignoring non-numeric {name}={raw!r}, using default {default}")
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"Ignoring non-numeric {name}={raw!r}, using default {default}")
        return default
    if value <= 0:
        logger.warning(f"Ignoring non-positive {name}={raw!r}, using default {default}")
        return default
    return value


@dataclass(frozen=True)
class VerifierSettings:
    """Runtime settings for a verifier deployment."""
    network: str = DEFAULT_NETWORK
    chain_id: str = "eip155:42161"
    rpc_url: str = "https://arb1.arbitrum.io/rpc"
    scan_blocks: int = DEFAULT_SCAN_BLOCKS
    min_confirmations: int = DEFAULT_MIN_CONFIRMATIONS
    database_url: str = DEFAULT_DB_URL
    poll_interval: float = DEFAULT_POLL_INTERVAL
    rpc_timeout: int = DEFAULT_RPC_TIMEOUT
    rpc_retries: int = DEFAULT_RPC_RETRIES
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    debug_split_ranges: bool = False

    @classmethod
    def from_env(cls) -> "VerifierSettings":
        """
        Build settings from environment variables.

        Raises:
            ValueError: If PAYINTENT_NETWORK is unknown or the RPC URL is insecure
        """
        network = os.environ.get("PAYINTENT_NETWORK", DEFAULT_NETWORK)
        rpc_url = NetworkConfig.get_rpc_url(network, override=os.environ.get("EVM_RPC_URL"))
        validate_rpc_url(rpc_url)

        return cls(
            network=network,
            chain_id=NetworkConfig.get_chain_id(network),
            rpc_url=rpc_url,
            scan_blocks=_env_int("EVM_SCAN_BLOCKS", DEFAULT_SCAN_BLOCKS),
            min_confirmations=_env_int("PAYINTENT_MIN_CONFIRMATIONS", DEFAULT_MIN_CONFIRMATIONS),
            database_url=os.environ.get("PAYINTENT_DB_URL", DEFAULT_DB_URL),
            poll_interval=_env_float("PAYINTENT_POLL_INTERVAL", DEFAULT_POLL_INTERVAL),
            rpc_timeout=_env_int("PAYINTENT_RPC_TIMEOUT", DEFAULT_RPC_TIMEOUT),
            rpc_retries=_env_int("PAYINTENT_RPC_RETRIES", DEFAULT_RPC_RETRIES),
            max_concurrency=max(1, _env_int("PAYINTENT_MAX_CONCURRENCY", DEFAULT_MAX_CONCURRENCY)),
            debug_split_ranges=os.environ.get("PAYINTENT_DEBUG_SPLIT_RANGES") == "1",
        )
