"""
Data model shared by every tipping module.

Timestamps are unix seconds (time.time()), amounts are Decimal in token
units and serialize as strings so no float ever touches a balance.
"""

import time
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Optional

SECONDS_PER_DAY = 86400


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


def _dec(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


# ============================================================
# CREATORS
# ============================================================

@dataclass
class Creator:
    id: str
    slug: str
    name: str = ""
    bio: str = ""
    twitter_handle: str = ""
    verified: bool = False
    follower_count: int = 0
    twitter_created_at: Optional[float] = None
    created_at: float = 0.0
    solana_address: str = ""
    evm_address: str = ""           # same address on Base and Celo

    def wallet_for(self, chain: str) -> str:
        if chain == "solana":
            return self.solana_address or ""
        if chain in ("base", "celo"):
            return self.evm_address or ""
        return ""

    @property
    def has_any_wallet(self) -> bool:
        return bool(self.solana_address or self.evm_address)

    def account_age_days(self, now: Optional[float] = None) -> Optional[int]:
        if not self.twitter_created_at:
            return None
        now = time.time() if now is None else now
        return int((now - self.twitter_created_at) // SECONDS_PER_DAY)

    @classmethod
    def from_dict(cls, d: dict) -> "Creator":
        return cls(
            id=str(d["id"]),
            slug=d.get("slug", str(d["id"])),
            name=d.get("name", ""),
            bio=d.get("bio") or "",
            twitter_handle=(d.get("twitter_handle") or "").lstrip("@"),
            verified=bool(d.get("verified", False)),
            follower_count=int(d.get("follower_count") or 0),
            twitter_created_at=d.get("twitter_created_at"),
            created_at=float(d.get("created_at") or 0.0),
            solana_address=d.get("solana_address") or "",
            evm_address=d.get("evm_address") or "",
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "slug": self.slug,
            "name": self.name,
            "bio": self.bio,
            "twitter_handle": self.twitter_handle,
            "verified": self.verified,
            "follower_count": self.follower_count,
            "twitter_created_at": self.twitter_created_at,
            "created_at": self.created_at,
            "solana_address": self.solana_address,
            "evm_address": self.evm_address,
        }


# ============================================================
# BALANCES
# ============================================================

@dataclass
class ChainBalance:
    """Agent holdings on one chain. enabled=False means the read failed."""
    chain: str
    address: str = ""
    native: Decimal = Decimal(0)
    stables: dict[str, Decimal] = field(default_factory=dict)
    fetched_at: float = field(default_factory=time.time)
    enabled: bool = True
    error: str = ""

    def spendable(self, symbol: str) -> Decimal:
        if not self.enabled:
            return Decimal(0)
        return self.stables.get(symbol, Decimal(0))

    @property
    def usd_credits(self) -> Decimal:
        """Stablecoin total; stables are treated 1:1 with USD."""
        if not self.enabled:
            return Decimal(0)
        return sum(self.stables.values(), Decimal(0))

    def to_dict(self) -> dict:
        return {
            "chain": self.chain,
            "address": self.address,
            "native": str(self.native),
            "stables": {k: str(v) for k, v in self.stables.items()},
            "fetched_at": self.fetched_at,
            "enabled": self.enabled,
            "error": self.error,
        }


@dataclass
class WalletSnapshot:
    chains: dict[str, ChainBalance] = field(default_factory=dict)
    taken_at: float = field(default_factory=time.time)

    def get(self, chain: str) -> Optional[ChainBalance]:
        return self.chains.get(chain)

    def spendable(self, chain: str, symbol: str) -> Decimal:
        bal = self.chains.get(chain)
        return bal.spendable(symbol) if bal else Decimal(0)

    def usd_credits(self, chain: str) -> Decimal:
        bal = self.chains.get(chain)
        return bal.usd_credits if bal else Decimal(0)

    @property
    def total_usd(self) -> Decimal:
        return sum((b.usd_credits for b in self.chains.values()), Decimal(0))

    def to_dict(self) -> dict:
        return {
            "taken_at": self.taken_at,
            "total_usd": str(self.total_usd),
            "chains": {k: v.to_dict() for k, v in self.chains.items()},
        }


# ============================================================
# DECISIONS
# ============================================================

class DecisionKind(str, Enum):
    TIP = "TIP"
    SKIP = "SKIP"


@dataclass(frozen=True)
class Decision:
    """Immutable once written."""
    id: str
    run_id: str
    creator_id: str
    creator_handle: str
    kind: DecisionKind
    reason: str
    score: Optional[dict] = None
    created_at: float = 0.0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "creator_id": self.creator_id,
            "creator_handle": self.creator_handle,
            "kind": self.kind.value,
            "reason": self.reason,
            "score": self.score,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Decision":
        return cls(
            id=d["id"],
            run_id=d.get("run_id", ""),
            creator_id=d["creator_id"],
            creator_handle=d.get("creator_handle", ""),
            kind=DecisionKind(d["kind"]),
            reason=d.get("reason", ""),
            score=d.get("score"),
            created_at=float(d.get("created_at", 0.0)),
        )


@dataclass
class CooldownInfo:
    active: bool = False
    last_tip_at: Optional[float] = None
    days_since: Optional[int] = None
    last_amount: Optional[Decimal] = None
    recommendation: str = "No recent agent tips - eligible"


# ============================================================
# SETTLEMENTS
# ============================================================

class SettlementStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class SettlementProtocolKind(str, Enum):
    DIRECT_TRANSFER = "direct-transfer"
    REQUEST_FOR_PAYMENT = "request-for-payment"


class RedistributionStatus(str, Enum):
    NOT_REQUIRED = "not_required"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class FailureKind(str, Enum):
    INSUFFICIENT_FUNDS = "insufficient_funds"
    NO_WALLET = "no_wallet"
    INVALID_ADDRESS = "invalid_address"
    REQUIREMENTS_ERROR = "requirements_error"
    VERIFICATION_FAILED = "verification_failed"
    SETTLEMENT_FAILED = "settlement_failed"
    CONFIRMATION_FAILED = "confirmation_failed"
    PROTOCOL_ERROR = "protocol_error"


@dataclass
class Settlement:
    id: str
    decision_id: str
    creator_id: str
    chain: str
    token: str
    amount: Decimal
    protocol: SettlementProtocolKind
    status: SettlementStatus = SettlementStatus.PENDING
    transaction_ref: str = ""
    is_agent_tip: bool = True
    facilitator_ref: str = ""
    redistribution_status: RedistributionStatus = RedistributionStatus.NOT_REQUIRED
    redistribution_ref: str = ""
    redistribution_to: str = ""
    reasoning: str = ""
    created_at: float = field(default_factory=time.time)
    confirmed_at: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "decision_id": self.decision_id,
            "creator_id": self.creator_id,
            "chain": self.chain,
            "token": self.token,
            "amount": str(self.amount),
            "protocol": self.protocol.value,
            "status": self.status.value,
            "transaction_ref": self.transaction_ref,
            "is_agent_tip": self.is_agent_tip,
            "facilitator_ref": self.facilitator_ref,
            "redistribution_status": self.redistribution_status.value,
            "redistribution_ref": self.redistribution_ref,
            "redistribution_to": self.redistribution_to,
            "reasoning": self.reasoning,
            "created_at": self.created_at,
            "confirmed_at": self.confirmed_at,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Settlement":
        return cls(
            id=d["id"],
            decision_id=d.get("decision_id", ""),
            creator_id=d["creator_id"],
            chain=d["chain"],
            token=d.get("token", "USDC"),
            amount=_dec(d["amount"]),
            protocol=SettlementProtocolKind(d.get("protocol", "direct-transfer")),
            status=SettlementStatus(d.get("status", "pending")),
            transaction_ref=d.get("transaction_ref", ""),
            is_agent_tip=bool(d.get("is_agent_tip", True)),
            facilitator_ref=d.get("facilitator_ref", ""),
            redistribution_status=RedistributionStatus(d.get("redistribution_status", "not_required")),
            redistribution_ref=d.get("redistribution_ref", ""),
            redistribution_to=d.get("redistribution_to", ""),
            reasoning=d.get("reasoning", ""),
            created_at=float(d.get("created_at", 0.0)),
            confirmed_at=d.get("confirmed_at"),
        )


@dataclass
class SettlementResult:
    """Unified outcome of one settlement attempt on one chain."""
    success: bool
    chain: str = ""
    transaction_ref: str = ""
    error: str = ""
    failure: Optional[FailureKind] = None
    amount: Decimal = Decimal(0)
    token: str = "USDC"
    protocol: SettlementProtocolKind = SettlementProtocolKind.DIRECT_TRANSFER
    facilitator_ref: str = ""
    redistribution_status: RedistributionStatus = RedistributionStatus.NOT_REQUIRED
    redistribution_ref: str = ""
    redistribution_to: str = ""

    @classmethod
    def failed(cls, chain: str, failure: FailureKind, error: str, **kw) -> "SettlementResult":
        return cls(success=False, chain=chain, failure=failure, error=error, **kw)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "chain": self.chain,
            "transaction_ref": self.transaction_ref,
            "error": self.error,
            "failure": self.failure.value if self.failure else None,
            "amount": str(self.amount),
            "token": self.token,
            "protocol": self.protocol.value,
            "facilitator_ref": self.facilitator_ref,
            "redistribution_status": self.redistribution_status.value,
            "redistribution_ref": self.redistribution_ref,
        }


# ============================================================
# REPORTS
# ============================================================

@dataclass
class LedgerStats:
    total_decisions: int = 0
    total_tips: int = 0
    total_skips: int = 0
    total_tipped_usd: Decimal = Decimal(0)

    def to_dict(self) -> dict:
        return {
            "totalDecisions": self.total_decisions,
            "totalTips": self.total_tips,
            "totalSkips": self.total_skips,
            "totalTippedUSD": str(self.total_tipped_usd),
        }


@dataclass
class DecisionEntry:
    creator: str
    decision: str
    reason: str
    amount: Optional[Decimal] = None
    chains: list[str] = field(default_factory=list)
    references: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "creator": self.creator,
            "decision": self.decision,
            "reason": self.reason,
            "amount": str(self.amount) if self.amount is not None else None,
            "chains": list(self.chains),
            "references": list(self.references),
        }


@dataclass
class RunReport:
    run_id: str
    success: bool = True
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None
    creators_analyzed: int = 0
    tips_created: int = 0
    tips_by_chain: dict[str, int] = field(default_factory=dict)
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    decisions: list[DecisionEntry] = field(default_factory=list)
    wallet: Optional[WalletSnapshot] = None
    stats: LedgerStats = field(default_factory=LedgerStats)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "runId": self.run_id,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "creatorsAnalyzed": self.creators_analyzed,
            "tipsCreated": self.tips_created,
            "tipsByChain": dict(self.tips_by_chain),
            "skipped": self.skipped,
            "errors": list(self.errors),
            "decisions": [d.to_dict() for d in self.decisions],
            "walletBalances": self.wallet.to_dict() if self.wallet else None,
            "stats": self.stats.to_dict(),
        }
