"""
accountkit Configuration

Network presets and environment driven settings.

SECURITY NOTICE:
- Verifier keys MUST be provided via environment variables
- Never commit verifier keys to version control
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


class NetworkType(Enum):
    TESTNET = "testnet"
    MAINNET = "mainnet"
    LOCAL = "local"


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


# Canonical EntryPoint v0.7 deployment shared by every supported chain
ENTRY_POINT_V07 = "0x0000000071727De22E5E9d8BAf0edAc6f37da032"
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# paymaster_and_data layouts: sponsor address (20) || verification gas (16) || post-op gas (16)
PAYMASTER_ADDRESS_LENGTH = 20
PAYMASTER_DATA_OFFSET_V07 = 52
PAYMASTER_DATA_OFFSET_LEGACY = 20

MAX_OWNERS = 10


@dataclass(frozen=True)
class NetworkConfig:
    """Static description of a chain the core can target."""

    name: str
    chain_id: int
    network_type: NetworkType
    entry_point: str
    factory: str
    rpc_url_template: str
    bundler_url_template: Optional[str] = None

    def get_rpc_url(self, api_key: Optional[str] = None) -> str:
        if "{api_key}" in self.rpc_url_template:
            if not api_key:
                raise ConfigurationError(f"API key required for {self.name} network")
            return self.rpc_url_template.replace("{api_key}", api_key)
        return self.rpc_url_template

    def get_bundler_url(self, api_key: Optional[str] = None) -> str:
        if self.bundler_url_template is None:
            return self.get_rpc_url(api_key)
        if "{api_key}" in self.bundler_url_template:
            if not api_key:
                raise ConfigurationError(f"API key required for {self.name} bundler")
            return self.bundler_url_template.replace("{api_key}", api_key)
        return self.bundler_url_template


def _alchemy(subdomain: str) -> str:
    return f"https://{subdomain}.g.alchemy.com/v2/{{api_key}}"


MAINNET = NetworkConfig(
    name="Ethereum Mainnet",
    chain_id=1,
    network_type=NetworkType.MAINNET,
    entry_point=ENTRY_POINT_V07,
    factory=ZERO_ADDRESS,
    rpc_url_template=_alchemy("eth-mainnet"),
    bundler_url_template=_alchemy("eth-mainnet"),
)
SEPOLIA = NetworkConfig(
    name="Sepolia Testnet",
    chain_id=11155111,
    network_type=NetworkType.TESTNET,
    entry_point=ENTRY_POINT_V07,
    factory="0xDE5034D1c32E1edD9a355cbEBFF8ac16Bbb9d5C3",
    rpc_url_template=_alchemy("eth-sepolia"),
    bundler_url_template=_alchemy("eth-sepolia"),
)
GOERLI = NetworkConfig(
    name="Goerli Testnet",
    chain_id=5,
    network_type=NetworkType.TESTNET,
    entry_point=ENTRY_POINT_V07,
    factory=ZERO_ADDRESS,
    rpc_url_template=_alchemy("eth-goerli"),
    bundler_url_template=_alchemy("eth-goerli"),
)
POLYGON = NetworkConfig(
    name="Polygon Mainnet",
    chain_id=137,
    network_type=NetworkType.MAINNET,
    entry_point=ENTRY_POINT_V07,
    factory=ZERO_ADDRESS,
    rpc_url_template=_alchemy("polygon-mainnet"),
    bundler_url_template=_alchemy("polygon-mainnet"),
)
POLYGON_MUMBAI = NetworkConfig(
    name="Polygon Mumbai",
    chain_id=80001,
    network_type=NetworkType.TESTNET,
    entry_point=ENTRY_POINT_V07,
    factory=ZERO_ADDRESS,
    rpc_url_template=_alchemy("polygon-mumbai"),
    bundler_url_template=_alchemy("polygon-mumbai"),
)
ARBITRUM = NetworkConfig(
    name="Arbitrum One",
    chain_id=42161,
    network_type=NetworkType.MAINNET,
    entry_point=ENTRY_POINT_V07,
    factory=ZERO_ADDRESS,
    rpc_url_template=_alchemy("arb-mainnet"),
    bundler_url_template=_alchemy("arb-mainnet"),
)
OPTIMISM = NetworkConfig(
    name="Optimism",
    chain_id=10,
    network_type=NetworkType.MAINNET,
    entry_point=ENTRY_POINT_V07,
    factory=ZERO_ADDRESS,
    rpc_url_template=_alchemy("opt-mainnet"),
    bundler_url_template=_alchemy("opt-mainnet"),
)
ANVIL = NetworkConfig(
    name="Anvil Local",
    chain_id=31337,
    network_type=NetworkType.LOCAL,
    entry_point=ENTRY_POINT_V07,
    factory="0xe7f1725E7734CE288F8367e1Bb143E90bb3F0512",
    rpc_url_template="http://localhost:8545",
)

_NETWORKS_BY_CHAIN_ID: Dict[int, NetworkConfig] = {
    network.chain_id: network
    for network in (MAINNET, GOERLI, OPTIMISM, POLYGON, SEPOLIA, ANVIL, ARBITRUM, POLYGON_MUMBAI)
}


def get_network_config(chain_id: int) -> NetworkConfig:
    try:
        return _NETWORKS_BY_CHAIN_ID[chain_id]
    except KeyError:
        raise ConfigurationError(f"Unsupported network: chain ID {chain_id}") from None


def list_supported_networks() -> List[NetworkConfig]:
    return [MAINNET, SEPOLIA, GOERLI, POLYGON, POLYGON_MUMBAI, ARBITRUM, OPTIMISM, ANVIL]


def _get_int(env_var: str, default: int) -> int:
    raw = os.getenv(env_var, "").strip()
    if not raw:
        return default
    try:
        return int(raw, 0)
    except ValueError:
        raise ConfigurationError(f"{env_var} must be an integer, got {raw!r}") from None


def _parse_verifier_keys(raw: str) -> Dict[str, str]:
    """Parse ``name=hexkey,name2=hexkey2`` into a mapping."""
    keys: Dict[str, str] = {}
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        name, sep, key = entry.partition("=")
        if not sep or not name.strip() or not key.strip():
            raise ConfigurationError(f"Malformed verifier key entry: {entry.split('=')[0]!r}")
        keys[name.strip()] = key.strip()
    return keys


def _get_paymaster_data_offset() -> int:
    offset = _get_int("ACCOUNTKIT_PAYMASTER_DATA_OFFSET", PAYMASTER_DATA_OFFSET_V07)
    if offset not in (PAYMASTER_DATA_OFFSET_V07, PAYMASTER_DATA_OFFSET_LEGACY):
        raise ConfigurationError(
            f"ACCOUNTKIT_PAYMASTER_DATA_OFFSET must be {PAYMASTER_DATA_OFFSET_V07} or "
            f"{PAYMASTER_DATA_OFFSET_LEGACY}, got {offset}"
        )
    return offset


NETWORK = os.getenv("ACCOUNTKIT_NETWORK", "testnet")
CHAIN_ID = _get_int("ACCOUNTKIT_CHAIN_ID", ANVIL.chain_id)
ENTRY_POINT_ADDRESS = os.getenv("ACCOUNTKIT_ENTRY_POINT", ENTRY_POINT_V07).strip()
LOG_LEVEL = os.getenv("ACCOUNTKIT_LOG_LEVEL", "WARNING").upper()
LOG_FILE = os.getenv("ACCOUNTKIT_LOG_FILE", "").strip() or None

# Must match the Executor the paymaster is deployed against
PAYMASTER_DATA_OFFSET = _get_paymaster_data_offset()

VERIFIER_KEYS = _parse_verifier_keys(os.getenv("ACCOUNTKIT_VERIFIER_KEYS", ""))
if NETWORK.lower() == "mainnet" and not VERIFIER_KEYS:
    logger.warning(
        "No verifier keys configured for mainnet; sponsorship signing is disabled",
        extra={"event": "config.verifier_keys_missing", "network": NETWORK},
    )
