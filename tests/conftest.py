"""
BlinkTip - Test Fixtures

Shared fakes and fixtures. No test touches a real chain, RPC node,
facilitator or LLM: adapters, oracle and scorer are in-memory fakes.
"""

import os
from decimal import Decimal
from typing import Optional

import pytest

os.environ.setdefault("LOG_LEVEL", "WARNING")

from core.agent import TippingAgent
from core.balances import BalanceAggregator
from core.chain import ChainAdapter, ChainTxResult
from core.constitution import from_raw, get_chain_config, get_token
from core.decision import DecisionEngine
from core.directory import InMemoryCreatorDirectory
from core.ledger import Ledger
from core.models import (
    ChainBalance, Creator, Decision, DecisionKind, SECONDS_PER_DAY, Settlement,
    SettlementProtocolKind, SettlementStatus,
)
from core.reasoning import ReasoningOracle
from core.router import SettlementOrchestrator
from core.selector import CandidateSelector
from core.settlement import DirectTransferProtocol

NOW = 1_700_000_000.0

SOL_ADDR = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"
EVM_ADDR = "0x1111111111111111111111111111111111111111"
TREASURY_EVM = "0x2222222222222222222222222222222222222222"


def clock():
    return NOW


def days_ago(days: float) -> float:
    return NOW - days * SECONDS_PER_DAY


# =============================================================================
# Fakes
# =============================================================================


class FakeChainAdapter(ChainAdapter):
    """In-memory chain: balances, transfers and payment signing are recorded, never sent."""

    def __init__(
        self,
        chain: str,
        balance: str = "10",
        address: Optional[str] = None,
        symbol: str = "USDC",
        fail_transfer: str = "",
        unconfirmed: bool = False,
        balance_error: str = "",
    ):
        super().__init__(get_chain_config(chain), get_token(chain, symbol))
        self._address = address or (SOL_ADDR if chain == "solana" else "0x" + "a" * 40)
        self.stable = Decimal(balance)
        self.fail_transfer = fail_transfer
        self.unconfirmed = unconfirmed
        self.balance_error = balance_error
        self.transfers: list[tuple[str, int]] = []
        self.prepared: list[str] = []
        self.signed: list[dict] = []
        self.balance_reads = 0
        self.tx_statuses: dict[str, Optional[bool]] = {}

    @property
    def address(self) -> str:
        return self._address

    def is_valid_address(self, address: str) -> bool:
        return bool(address) and not address.startswith("bad")

    async def get_balance(self) -> ChainBalance:
        self.balance_reads += 1
        if self.balance_error:
            raise ConnectionError(self.balance_error)
        return ChainBalance(
            chain=self.chain_id,
            address=self.address,
            native=Decimal("1"),
            stables={self.token.symbol: self.stable},
            fetched_at=NOW,
        )

    async def ensure_recipient_ready(self, address: str) -> Optional[str]:
        self.prepared.append(address)
        return None

    async def transfer(self, to: str, raw_amount: int) -> ChainTxResult:
        self.transfers.append((to, raw_amount))
        if self.fail_transfer:
            return ChainTxResult(success=False, chain=self.chain_id, error=self.fail_transfer)
        ref = f"{self.chain_id}-tx-{len(self.transfers)}"
        if self.unconfirmed:
            return ChainTxResult(success=False, tx_hash=ref, chain=self.chain_id, error="confirmation failed: timeout")
        self.stable -= from_raw(raw_amount, self.token.decimals)
        return ChainTxResult(success=True, tx_hash=ref, chain=self.chain_id, confirmed=True)

    async def transaction_status(self, tx_ref: str) -> Optional[bool]:
        return self.tx_statuses.get(tx_ref)

    async def sign_payment(self, requirements: dict) -> dict:
        self.signed.append(requirements)
        return {
            "x402Version": 1,
            "scheme": "exact",
            "network": requirements["network"],
            "payload": {"signature": "0xsig", "to": requirements["payTo"]},
        }


class FakeOracle(ReasoningOracle):
    def __init__(self, reply: str = '{"decision": "TIP", "reason": "solid creator"}', error: Optional[Exception] = None):
        self.reply = reply
        self.error = error
        self.prompts: list[str] = []

    async def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.error:
            raise self.error
        return self.reply


class FakeScorer:
    def __init__(self, score=None):
        self.score = score
        self.calls: list[str] = []

    async def get_score(self, handle: str):
        self.calls.append(handle)
        return self.score


def make_creator(
    cid: str = "c1",
    created_days_ago: float = 1,
    solana: str = SOL_ADDR,
    evm: str = EVM_ADDR,
    verified: bool = True,
    followers: int = 5000,
) -> Creator:
    return Creator(
        id=cid,
        slug=cid,
        name=f"Creator {cid}",
        bio="Writes about onchain payments",
        twitter_handle=f"{cid}_handle",
        verified=verified,
        follower_count=followers,
        twitter_created_at=days_ago(800),
        created_at=days_ago(created_days_ago),
        solana_address=solana,
        evm_address=evm,
    )


def record_tip(ledger: Ledger, creator_id: str, when: float, agent: bool = True, chain: str = "base"):
    """Write a confirmed settlement for creator_id dated `when`, as an earlier run would."""
    did = ""
    if agent:
        did = f"dec-{creator_id}-{when}"
        ledger.append_decision(Decision(
            id=did, run_id="earlier", creator_id=creator_id, creator_handle=creator_id,
            kind=DecisionKind.TIP, reason="earlier run", created_at=when,
        ))
    sid = f"stl-{creator_id}-{when}"
    ledger.append_settlement(Settlement(
        id=sid, decision_id=did, creator_id=creator_id, chain=chain, token="USDC",
        amount=Decimal("0.10"), protocol=SettlementProtocolKind.DIRECT_TRANSFER,
        transaction_ref=f"0x{sid}", is_agent_tip=agent, created_at=when,
    ))
    ledger.finalize_settlement(sid, SettlementStatus.CONFIRMED)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def ledger(tmp_path) -> Ledger:
    return Ledger(tmp_path / "ledger.json")


@pytest.fixture
def oracle() -> FakeOracle:
    return FakeOracle()


@pytest.fixture
def build_agent(ledger, oracle):
    """Factory: build_agent(creators, adapters, **overrides) -> TippingAgent."""

    def _build(
        creators: list[Creator],
        adapters: dict[str, ChainAdapter],
        priority: tuple = ("solana", "base", "celo"),
        protocols: Optional[dict] = None,
        max_tips_per_run: int = 5,
        recheck_balance: bool = False,
        engine_oracle: Optional[ReasoningOracle] = None,
        scorer: Optional[FakeScorer] = None,
    ) -> TippingAgent:
        directory = InMemoryCreatorDirectory(creators)
        selector = CandidateSelector(directory, ledger, cooldown_days=7, clock=clock)
        direct = DirectTransferProtocol()
        orchestrator = SettlementOrchestrator(
            adapters,
            protocols or {chain: direct for chain in adapters},
            priority=priority,
            tip_amount=Decimal("0.10"),
            recheck_balance=recheck_balance,
        )
        engine = DecisionEngine(engine_oracle or oracle, tip_amount=Decimal("0.10"), clock=clock)
        return TippingAgent(
            selector,
            BalanceAggregator(adapters),
            scorer or FakeScorer(),
            engine,
            orchestrator,
            ledger,
            max_tips_per_run=max_tips_per_run,
            candidate_delay=0,
            run_timeout=30,
            clock=clock,
        )

    return _build
