"""
Agent settings, read once from the environment.

main.py calls load_dotenv() before anything here runs, so a .env file
and real environment variables behave the same. Every value is validated
at startup: a bad setting stops the process before any run starts.
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path

from core.constitution import (
    TIPPING_RULES, DEFAULT_CHAIN_PRIORITY, SUPPORTED_CHAINS,
    UnknownChainError, get_chain_config, get_token,
)


class SettingsError(ValueError):
    """Invalid configuration value."""
    pass


PROTOCOL_DIRECT = "direct"
PROTOCOL_X402 = "x402"
_PROTOCOLS = (PROTOCOL_DIRECT, PROTOCOL_X402)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_decimal(name: str, default: Decimal) -> Decimal:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return Decimal(raw.strip())
    except InvalidOperation:
        raise SettingsError(f"{name}={raw!r} is not a number")


def _env_number(name: str, default, cast):
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return cast(raw.strip())
    except ValueError:
        raise SettingsError(f"{name}={raw!r} is not a valid {cast.__name__}")


@dataclass
class AgentSettings:
    rpc_urls: dict[str, str] = field(default_factory=dict)
    token_addresses: dict[str, str] = field(default_factory=dict)   # "chain:SYMBOL" -> address
    evm_chain_ids: dict[str, int] = field(default_factory=dict)
    tip_tokens: dict[str, str] = field(default_factory=dict)        # chain -> symbol
    protocols: dict[str, str] = field(default_factory=dict)         # chain -> direct | x402

    solana_secret_key: str = ""
    evm_private_key: str = ""
    treasury_evm_private_key: str = ""
    treasury_solana_secret_key: str = ""
    treasury_chains: tuple = ("base",)
    solana_fee_payer: str = ""

    facilitator_url: str = "https://facilitator.payai.network"
    public_base_url: str = "http://localhost:8000"
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    reasoning_model: str = "anthropic/claude-3.5-sonnet"
    kaito_api_url: str = "https://api.kaito.ai/api/v1/yaps"

    tip_amount: Decimal = TIPPING_RULES.TIP_AMOUNT_USD
    max_tips_per_run: int = TIPPING_RULES.MAX_TIPS_PER_RUN
    cooldown_days: int = TIPPING_RULES.COOLDOWN_DAYS
    candidate_delay: float = TIPPING_RULES.CANDIDATE_DELAY_SECONDS
    run_timeout: float = TIPPING_RULES.RUN_TIMEOUT_SECONDS
    max_required_ratio: Decimal = TIPPING_RULES.MAX_REQUIRED_RATIO
    chain_priority: tuple = DEFAULT_CHAIN_PRIORITY
    recheck_balance: bool = True

    data_dir: Path = Path("data")

    @property
    def ledger_path(self) -> Path:
        return self.data_dir / "ledger.json"

    @property
    def creators_path(self) -> Path:
        return self.data_dir / "creators.json"

    def token_address(self, chain: str, symbol: str) -> str:
        return self.token_addresses.get(f"{chain}:{symbol}") or get_token(chain, symbol).address

    def protocol_for(self, chain: str) -> str:
        return self.protocols.get(chain, PROTOCOL_DIRECT)

    def tip_token_for(self, chain: str) -> str:
        return self.tip_tokens.get(chain, "USDC")

    def validate(self) -> "AgentSettings":
        if self.tip_amount <= 0:
            raise SettingsError(f"TIP_AMOUNT_USD must be positive, got {self.tip_amount}")
        if self.max_tips_per_run < 1:
            raise SettingsError("MAX_TIPS_PER_RUN must be at least 1")
        if self.cooldown_days < 0:
            raise SettingsError("COOLDOWN_DAYS must not be negative")
        if self.max_required_ratio < 1:
            raise SettingsError("MAX_REQUIRED_RATIO must be at least 1")
        if not self.chain_priority:
            raise SettingsError("CHAIN_PRIORITY is empty")
        if len(set(self.chain_priority)) != len(self.chain_priority):
            raise SettingsError(f"CHAIN_PRIORITY has duplicates: {self.chain_priority}")
        for chain in self.chain_priority:
            try:
                get_chain_config(chain)
            except UnknownChainError as e:
                raise SettingsError(str(e))
        for chain in self.treasury_chains:
            try:
                get_chain_config(chain)
            except UnknownChainError as e:
                raise SettingsError(f"TREASURY_ROUTED_CHAINS: {e}")
        for chain, proto in self.protocols.items():
            if proto not in _PROTOCOLS:
                raise SettingsError(f"SETTLEMENT_PROTOCOL_{chain.upper()}={proto!r}, expected one of {_PROTOCOLS}")
        for chain, symbol in self.tip_tokens.items():
            try:
                get_token(chain, symbol)
            except UnknownChainError as e:
                raise SettingsError(str(e))
        return self

    @classmethod
    def from_env(cls) -> "AgentSettings":
        s = cls()
        for chain in SUPPORTED_CHAINS:
            cid = chain.chain_id
            s.rpc_urls[cid] = os.getenv(f"{cid.upper()}_RPC_URL", chain.rpc)
            if chain.evm_chain_id:
                s.evm_chain_ids[cid] = _env_number(f"{cid.upper()}_CHAIN_ID", chain.evm_chain_id, int)
            proto = os.getenv(f"SETTLEMENT_PROTOCOL_{cid.upper()}", "").strip().lower()
            if proto:
                s.protocols[cid] = proto

        for key, env in (
            ("solana:USDC", "SOLANA_USDC_MINT"),
            ("base:USDC", "BASE_USDC_TOKEN"),
            ("celo:USDC", "CELO_USDC_TOKEN"),
            ("celo:cUSD", "CELO_CUSD_TOKEN"),
        ):
            value = os.getenv(env, "").strip()
            if value:
                s.token_addresses[key] = value

        celo_token = os.getenv("TIP_TOKEN_CELO", "").strip()
        if celo_token:
            s.tip_tokens["celo"] = celo_token

        s.solana_secret_key = os.getenv("AGENT_SOLANA_SECRET_KEY", "")
        s.evm_private_key = os.getenv("AGENT_EVM_PRIVATE_KEY", "")
        s.treasury_evm_private_key = os.getenv("TREASURY_EVM_PRIVATE_KEY", "")
        s.treasury_solana_secret_key = os.getenv("TREASURY_SOLANA_SECRET_KEY", "")
        routed = os.getenv("TREASURY_ROUTED_CHAINS")
        if routed is not None:
            s.treasury_chains = tuple(c.strip().lower() for c in routed.split(",") if c.strip())
        s.solana_fee_payer = os.getenv("SOLANA_FEE_PAYER", "")

        s.facilitator_url = os.getenv("FACILITATOR_URL", s.facilitator_url).rstrip("/")
        s.public_base_url = os.getenv("PUBLIC_BASE_URL", s.public_base_url).rstrip("/")
        s.openrouter_api_key = os.getenv("OPENROUTER_API_KEY", "")
        s.openrouter_base_url = os.getenv("OPENROUTER_BASE_URL", s.openrouter_base_url)
        s.reasoning_model = os.getenv("REASONING_MODEL", s.reasoning_model)
        s.kaito_api_url = os.getenv("KAITO_API_URL", s.kaito_api_url)

        s.tip_amount = _env_decimal("TIP_AMOUNT_USD", s.tip_amount)
        s.max_required_ratio = _env_decimal("MAX_REQUIRED_RATIO", s.max_required_ratio)
        s.max_tips_per_run = _env_number("MAX_TIPS_PER_RUN", s.max_tips_per_run, int)
        s.cooldown_days = _env_number("COOLDOWN_DAYS", s.cooldown_days, int)
        s.candidate_delay = _env_number("CANDIDATE_DELAY_SECONDS", s.candidate_delay, float)
        s.run_timeout = _env_number("RUN_TIMEOUT_SECONDS", s.run_timeout, float)
        s.recheck_balance = _env_bool("RECHECK_BALANCE_BEFORE_SETTLE", True)

        priority = os.getenv("CHAIN_PRIORITY", "")
        if priority.strip():
            s.chain_priority = tuple(c.strip().lower() for c in priority.split(",") if c.strip())

        s.data_dir = Path(os.getenv("DATA_DIR", "data"))
        return s.validate()

