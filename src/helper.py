from typing import Dict, Optional

from stellar_sdk import Network

X402_VERSION = 1
SCHEME_EXACT = "exact"

SUPPORTED_SCHEMES = (SCHEME_EXACT,)

# Every network identifier the x402 protocol knows about. Only the Stellar
# family can actually be verified and settled by this facilitator.
KNOWN_NETWORKS = (
    "abstract",
    "abstract-testnet",
    "base-sepolia",
    "base",
    "avalanche-fuji",
    "avalanche",
    "iotex",
    "solana-devnet",
    "solana",
    "sei",
    "sei-testnet",
    "polygon",
    "polygon-amoy",
    "peaq",
    "story",
    "skale-base-sepolia",
    "stellar-testnet",
    "stellar-mainnet",
)

network_passphrases: Dict[str, str] = {
    "stellar-testnet": Network.TESTNET_NETWORK_PASSPHRASE,
    "stellar-mainnet": Network.PUBLIC_NETWORK_PASSPHRASE,
}

SUPPORTED_NETWORKS = tuple(network_passphrases)


def is_stellar_network(network: str) -> bool:
    return network.startswith("stellar-")


def is_supported_network(network: str) -> bool:
    return network in SUPPORTED_NETWORKS


def get_network_passphrase(network: str) -> Optional[str]:
    return network_passphrases.get(network)
