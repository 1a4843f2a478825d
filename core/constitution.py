"""
BlinkTip Constitution - Layer 0 (Immutable)

Tipping rules, chain registry and token table. These are hardcoded.
The reasoning model cannot change any of them; settings may override
amounts and addresses, never decimals.

Design:
- Frozen dataclasses = truly immutable at runtime
- Decimals are named per (chain, token) and never read from chain state
- Amount conversion is exact (Decimal) and refuses sub-unit precision

Designed for: autonomous creator tipping agent
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Final, Tuple, Union


class UnknownChainError(ValueError):
    """Raised for a chain or token that is not in the registry."""
    pass


class ChainId(str, Enum):
    SOLANA = "solana"
    BASE = "base"
    CELO = "celo"


# ============================================================
# TIPPING RULES - cannot be modified by the reasoning model
# ============================================================

@dataclass(frozen=True)
class TippingRules:
    """Frozen dataclass = truly immutable at runtime."""

    # --- AMOUNTS ---
    TIP_AMOUNT_USD: Final[Decimal] = Decimal("0.10")     # One tip, in stablecoin units
    MAX_TIPS_PER_RUN: Final[int] = 5                     # Hard cap per agent run
    MAX_REQUIRED_RATIO: Final[Decimal] = Decimal("1.5")  # Reject 402 requirements above 1.5x tip

    # --- PACING ---
    COOLDOWN_DAYS: Final[int] = 7                        # No second agent tip within 7 days
    CANDIDATE_DELAY_SECONDS: Final[float] = 2.0          # Pause between creators
    RUN_TIMEOUT_SECONDS: Final[float] = 300.0            # Wall-clock budget per run

    # --- LENIENCY POLICY ---
    # Only skip a creator for being new when BOTH are true
    NEW_ACCOUNT_DAYS: Final[int] = 30
    LOW_FOLLOWER_COUNT: Final[int] = 100

    # --- FUNDING ---
    MIN_USABLE_BALANCE: Final[Decimal] = Decimal("0.01")


TIPPING_RULES = TippingRules()


# ============================================================
# DECIMALS - one name per (chain, token), never inferred
# ============================================================

SOL_DECIMALS: Final[int] = 9
SOLANA_USDC_DECIMALS: Final[int] = 6
ETH_DECIMALS: Final[int] = 18
BASE_USDC_DECIMALS: Final[int] = 6
CELO_DECIMALS: Final[int] = 18
CELO_USDC_DECIMALS: Final[int] = 6
CELO_CUSD_DECIMALS: Final[int] = 18


# ============================================================
# CHAIN REGISTRY
# ============================================================

@dataclass(frozen=True)
class ChainConfig:
    """Immutable per-chain configuration."""
    chain_id: str           # "solana", "base", "celo"
    display_name: str
    native_symbol: str
    native_decimals: int
    rpc: str
    explorer: str
    x402_network: str       # network name used in payment requirements
    evm_chain_id: int = 0   # 0 for non-EVM


SUPPORTED_CHAINS: Final[Tuple[ChainConfig, ...]] = (
    ChainConfig(
        chain_id="solana", display_name="Solana",
        native_symbol="SOL", native_decimals=SOL_DECIMALS,
        rpc="https://api.mainnet-beta.solana.com",
        explorer="https://solscan.io/tx/",
        x402_network="solana",
    ),
    ChainConfig(
        chain_id="base", display_name="Base",
        native_symbol="ETH", native_decimals=ETH_DECIMALS,
        rpc="https://mainnet.base.org",
        explorer="https://basescan.org/tx/",
        x402_network="base",
        evm_chain_id=8453,
    ),
    ChainConfig(
        chain_id="celo", display_name="Celo",
        native_symbol="CELO", native_decimals=CELO_DECIMALS,
        rpc="https://forno.celo.org",
        explorer="https://celoscan.io/tx/",
        x402_network="celo",
        evm_chain_id=42220,
    ),
)

DEFAULT_CHAIN_PRIORITY: Final[Tuple[str, ...]] = ("solana", "base", "celo")


@dataclass(frozen=True)
class TokenSpec:
    """A tippable token on one chain. Decimals are fixed here."""
    chain: str
    symbol: str
    address: str
    decimals: int
    eip712_name: str = ""      # EIP-3009 domain name (EVM only)
    eip712_version: str = ""


TOKENS: Final[Tuple[TokenSpec, ...]] = (
    TokenSpec(
        chain="solana", symbol="USDC",
        address="EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
        decimals=SOLANA_USDC_DECIMALS,
    ),
    TokenSpec(
        chain="base", symbol="USDC",
        address="0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
        decimals=BASE_USDC_DECIMALS,
        eip712_name="USD Coin", eip712_version="2",
    ),
    TokenSpec(
        chain="celo", symbol="USDC",
        address="0xcebA9300f2b948710d2653dD7B07f33A8B32118C",
        decimals=CELO_USDC_DECIMALS,
        eip712_name="USDC", eip712_version="2",
    ),
    TokenSpec(
        chain="celo", symbol="cUSD",
        address="0x765DE816845861e75A25fCA122bb6898B8B1282a",
        decimals=CELO_CUSD_DECIMALS,
    ),
)


def get_chain_config(chain_id: str) -> ChainConfig:
    """Get chain config by ID. Raises UnknownChainError if invalid."""
    for chain in SUPPORTED_CHAINS:
        if chain.chain_id == chain_id:
            return chain
    raise UnknownChainError(
        f"Unknown chain: {chain_id}. Supported: {[c.chain_id for c in SUPPORTED_CHAINS]}"
    )


def get_token(chain_id: str, symbol: str) -> TokenSpec:
    for token in TOKENS:
        if token.chain == chain_id and token.symbol.lower() == symbol.lower():
            return token
    raise UnknownChainError(f"No token {symbol} on chain {chain_id}")


def tokens_for_chain(chain_id: str) -> Tuple[TokenSpec, ...]:
    get_chain_config(chain_id)
    return tuple(t for t in TOKENS if t.chain == chain_id)


# ============================================================
# AMOUNT CONVERSION
# ============================================================

def to_raw(amount: Union[Decimal, str, int], decimals: int) -> int:
    """
    Convert a human amount to integer base units.

    Raises ValueError for negative amounts or amounts finer than the
    token's smallest unit. Floats are refused: pass str or Decimal.
    """
    if isinstance(amount, float):
        raise ValueError("float amounts are ambiguous; pass str or Decimal")
    try:
        value = Decimal(amount)
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"invalid amount {amount!r}: {e}")
    if not value.is_finite():
        raise ValueError(f"invalid amount {amount!r}")
    if value < 0:
        raise ValueError(f"negative amount {amount}")
    scaled = value.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise ValueError(f"amount {amount} exceeds {decimals}-decimal precision")
    return int(scaled)


def from_raw(raw: int, decimals: int) -> Decimal:
    """Convert integer base units back to a human amount (exact)."""
    if raw < 0:
        raise ValueError(f"negative raw amount {raw}")
    return Decimal(int(raw)).scaleb(-decimals)
