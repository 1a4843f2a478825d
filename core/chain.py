"""
Chain Adapters - On-Chain Transaction Layer

Bridges the gap between tipping decisions (Python) and chain execution.
One adapter per chain, all behind the same interface, so the router only
ever talks to ChainAdapter and never to web3 or solana-py directly.

Design:
- Strategy pattern: ChainAdapter ABC, EVM and Solana implementations in core/adapters/
- Amounts cross this boundary as raw integers (base units of the tip token)
- Non-fatal: chain failure → ChainTxResult(success=False, error) → router tries next chain
- transfer() = build + sign + submit + wait for confirmation; confirmed=False
  means the tx was submitted but its outcome is unknown
- sign_payment() builds an x402 payment payload without submitting anything

Designed for: autonomous creator tipping agent
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from core.constitution import ChainConfig, TokenSpec
from core.models import ChainBalance

logger = logging.getLogger("blinktip.chain")


# ============================================================
# MINIMAL ABI: only functions we call at runtime
# ============================================================

# ERC20: balanceOf, decimals, transfer
ERC20_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "type": "function",
    },
]


# ============================================================
# RESULT TYPE
# ============================================================

@dataclass
class ChainTxResult:
    """Result of an on-chain transaction attempt."""
    success: bool
    tx_hash: str = ""
    chain: str = ""
    error: str = ""
    confirmed: bool = False
    gas_used: int = 0


# ============================================================
# ADAPTER INTERFACE
# ============================================================

class ChainAdapter(ABC):
    """
    One chain, one signing wallet, one tip token.

    Usage:
        adapter = EvmChainAdapter(chain_cfg, token, private_key, rpc_url)
        balance = await adapter.get_balance()
        await adapter.ensure_recipient_ready(creator_address)
        result = await adapter.transfer(creator_address, raw_amount)
    """

    def __init__(self, chain: ChainConfig, token: TokenSpec):
        self.chain = chain
        self.token = token

    @property
    def chain_id(self) -> str:
        return self.chain.chain_id

    @property
    @abstractmethod
    def address(self) -> str:
        """The adapter's own wallet address."""

    @abstractmethod
    def is_valid_address(self, address: str) -> bool:
        ...

    @abstractmethod
    async def get_balance(self) -> ChainBalance:
        """Native + stablecoin balances. May raise; the aggregator handles it."""

    @abstractmethod
    async def ensure_recipient_ready(self, address: str) -> Optional[str]:
        """
        Make sure the recipient can receive the tip token.
        Returns the tx reference of any setup transaction, None if nothing was needed.
        """

    @abstractmethod
    async def transfer(self, to: str, raw_amount: int) -> ChainTxResult:
        ...

    @abstractmethod
    async def sign_payment(self, requirements: dict) -> dict:
        """Signed x402 payment payload for the given payment requirements."""

    async def transaction_status(self, tx_ref: str) -> Optional[bool]:
        """True once confirmed, False if it failed on-chain, None while unknown."""
        return None

    def explorer_url(self, tx_ref: str) -> str:
        return f"{self.chain.explorer}{tx_ref}"

    async def close(self):
        pass
