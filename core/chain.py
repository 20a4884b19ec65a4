"""
Chain Helpers - addresses, supported chains, ERC-20 calldata

Everything the switch engine needs to know about EVM chains without
holding an RPC connection:
- Supported sweep chains (chain id, Token API network id, explorer)
- Gas-token allow-list (tokens that never need an approval)
- Address validation and normalisation
- ERC-20 approve(spender, amount) calldata

The engine only PREPARES transactions. Nothing here signs or sends.
"""

import logging
from typing import Optional

from eth_abi import encode
from web3 import Web3

logger = logging.getLogger("deadhand.chain")


# ============================================================
# CHAIN DEFAULTS
# ============================================================

CHAIN_DEFAULTS = {
    137: {
        "name": "polygon",
        "network_id": "matic",                # The Graph Token API network id
        "rpc": "https://polygon-rpc.com",
        "explorer": "https://polygonscan.com",
        "native_symbol": "POL",
    },
    42161: {
        "name": "arbitrum",
        "network_id": "arbitrum-one",
        "rpc": "https://arb1.arbitrum.io/rpc",
        "explorer": "https://arbiscan.io",
        "native_symbol": "ETH",
    },
    1: {
        "name": "ethereum",
        "network_id": "mainnet",
        "rpc": "https://eth.llamarpc.com",
        "explorer": "https://etherscan.io",
        "native_symbol": "ETH",
    },
    10: {
        "name": "optimism",
        "network_id": "optimism",
        "rpc": "https://mainnet.optimism.io",
        "explorer": "https://optimistic.etherscan.io",
        "native_symbol": "ETH",
    },
    8453: {
        "name": "base",
        "network_id": "base",
        "rpc": "https://mainnet.base.org",
        "explorer": "https://basescan.org",
        "native_symbol": "ETH",
    },
}


# Native gas token representations. Lowercase.
GAS_TOKEN_ADDRESSES = frozenset({
    "0x0000000000000000000000000000000000000000",  # zero address
    "0xeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeee",  # 0xEeee... convention
    "0x0000000000000000000000000000000000001010",  # POL/MATIC on Polygon
})

# LI.FI diamond: approval target when a quote omits approvalAddress
DEFAULT_APPROVAL_ADDRESS = "0x1231DEB6f5749EF6cE6943a275A1D3E7486F4EaE"

# approve(address,uint256)
APPROVE_SELECTOR = bytes(Web3.keccak(text="approve(address,uint256)")[:4])

MAX_UINT256 = 2 ** 256 - 1


# ============================================================
# ADDRESSES
# ============================================================

def is_valid_address(address) -> bool:
    """True for a 0x-prefixed 20-byte hex address (any casing)."""
    if not isinstance(address, str):
        return False
    if not address.startswith("0x") or len(address) != 42:
        return False
    return Web3.is_address(address.lower())


def normalize_address(address: str) -> str:
    """Lowercase key form used throughout the engine and the stores."""
    return address.strip().lower()


def is_gas_token(token_address: str) -> bool:
    return token_address.lower() in GAS_TOKEN_ADDRESSES


def chain_name(chain_id: int) -> str:
    cfg = CHAIN_DEFAULTS.get(chain_id)
    return cfg["name"] if cfg else f"chain-{chain_id}"


def network_id(chain_id: int) -> Optional[str]:
    cfg = CHAIN_DEFAULTS.get(chain_id)
    return cfg["network_id"] if cfg else None


# ============================================================
# CALLDATA
# ============================================================

def encode_approve(spender: str, amount: int) -> str:
    """
    ERC-20 approve(spender, amount) calldata as 0x-hex.

    Raises ValueError for a malformed spender or an amount outside uint256.
    """
    if not is_valid_address(spender):
        raise ValueError(f"invalid spender address: {spender}")
    if amount < 0 or amount > MAX_UINT256:
        raise ValueError(f"approve amount out of uint256 range: {amount}")

    args = encode(["address", "uint256"], [Web3.to_checksum_address(spender), amount])
    return "0x" + (APPROVE_SELECTOR + args).hex()
