"""
Tests for chain routing, fallback and the balance snapshot.
"""

from decimal import Decimal

from core.balances import BalanceAggregator
from core.models import (
    Decision, DecisionKind, FailureKind, Settlement, SettlementProtocolKind, SettlementStatus,
)
from core.router import SettlementOrchestrator
from core.settlement import DirectTransferProtocol, SettlementRequest

from conftest import EVM_ADDR, NOW, SOL_ADDR, FakeChainAdapter, make_creator

PRIORITY = ("solana", "base", "celo")


def _orchestrator(adapters, recheck=False):
    direct = DirectTransferProtocol()
    return SettlementOrchestrator(
        adapters, {c: direct for c in adapters},
        priority=PRIORITY, tip_amount=Decimal("0.10"), recheck_balance=recheck,
    )


class TestPlan:

    async def test_priority_order_is_deterministic(self):
        adapters = {c: FakeChainAdapter(c) for c in ("celo", "base", "solana")}
        orch = _orchestrator(adapters)
        snapshot = await BalanceAggregator(adapters).get_balances()
        steps = orch.plan(make_creator(), snapshot)
        assert [s.chain for s in steps] == ["solana", "base", "celo"]
        assert all(s.eligible for s in steps)
        assert orch.plan(make_creator(), snapshot) == steps

    async def test_ineligible_reasons(self):
        adapters = {
            "solana": FakeChainAdapter("solana"),
            "base": FakeChainAdapter("base", balance="0.05"),
        }
        orch = _orchestrator(adapters)
        snapshot = await BalanceAggregator(adapters).get_balances()
        steps = {s.chain: s for s in orch.plan(make_creator(solana=""), snapshot)}
        assert "no address" in steps["solana"].reason
        assert "insufficient" in steps["base"].reason
        assert "not configured" in steps["celo"].reason

    async def test_invalid_address_is_ineligible(self):
        adapters = {"base": FakeChainAdapter("base")}
        snapshot = await BalanceAggregator(adapters).get_balances()
        steps = _orchestrator(adapters).plan(make_creator(evm="bad-address"), snapshot)
        base = [s for s in steps if s.chain == "base"][0]
        assert not base.eligible
        assert "invalid address" in base.reason

    async def test_fundable_chains(self):
        adapters = {
            "solana": FakeChainAdapter("solana", balance="0"),
            "base": FakeChainAdapter("base"),
            "celo": FakeChainAdapter("celo", balance_error="rpc down"),
        }
        snapshot = await BalanceAggregator(adapters).get_balances()
        assert _orchestrator(adapters).fundable_chains(snapshot) == ["base"]


class TestSettleTip:

    async def test_first_eligible_chain_only(self):
        adapters = {"solana": FakeChainAdapter("solana"), "base": FakeChainAdapter("base")}
        orch = _orchestrator(adapters)
        snapshot = await BalanceAggregator(adapters).get_balances()
        outcome = await orch.settle_tip(make_creator(), snapshot)
        assert outcome.settled
        assert outcome.result.chain == "solana"
        assert outcome.result.protocol == SettlementProtocolKind.DIRECT_TRANSFER
        assert adapters["solana"].transfers == [(SOL_ADDR, 100_000)]
        assert adapters["base"].transfers == []

    async def test_falls_back_when_creator_lacks_first_address(self):
        adapters = {"solana": FakeChainAdapter("solana"), "base": FakeChainAdapter("base")}
        snapshot = await BalanceAggregator(adapters).get_balances()
        outcome = await _orchestrator(adapters).settle_tip(make_creator(solana=""), snapshot)
        assert outcome.result.chain == "base"
        assert adapters["base"].transfers == [(EVM_ADDR, 100_000)]

    async def test_continues_after_chain_failure(self):
        adapters = {
            "solana": FakeChainAdapter("solana", fail_transfer="blockhash expired"),
            "base": FakeChainAdapter("base"),
        }
        snapshot = await BalanceAggregator(adapters).get_balances()
        outcome = await _orchestrator(adapters).settle_tip(make_creator(), snapshot)
        assert outcome.settled
        assert outcome.result.chain == "base"
        assert outcome.attempts[0].failure == FailureKind.SETTLEMENT_FAILED
        assert outcome.errors == ["solana: blockhash expired"]

    async def test_all_chains_fail(self):
        adapters = {
            "solana": FakeChainAdapter("solana", fail_transfer="boom"),
            "base": FakeChainAdapter("base", fail_transfer="nonce too low"),
        }
        snapshot = await BalanceAggregator(adapters).get_balances()
        outcome = await _orchestrator(adapters).settle_tip(make_creator(), snapshot)
        assert not outcome.settled
        assert outcome.pending is None
        assert [a.failure for a in outcome.attempts] == [FailureKind.SETTLEMENT_FAILED] * 2
        assert outcome.errors[-1] == "all 2 eligible chain(s) failed"

    async def test_unconfirmed_transfer_stops_fallback(self):
        """A submitted transfer may still land: no second chain is paid."""
        adapters = {
            "solana": FakeChainAdapter("solana", unconfirmed=True),
            "base": FakeChainAdapter("base"),
        }
        snapshot = await BalanceAggregator(adapters).get_balances()
        outcome = await _orchestrator(adapters).settle_tip(make_creator(), snapshot)
        assert not outcome.settled
        assert outcome.pending.failure == FailureKind.CONFIRMATION_FAILED
        assert outcome.pending.transaction_ref == "solana-tx-1"
        assert outcome.pending.amount == Decimal("0.10")
        assert adapters["solana"].transfers == [(SOL_ADDR, 100_000)]
        assert adapters["base"].transfers == []
        assert "unconfirmed" in outcome.errors[0]

    async def test_no_eligible_chain(self):
        adapters = {"solana": FakeChainAdapter("solana", balance="0")}
        snapshot = await BalanceAggregator(adapters).get_balances()
        outcome = await _orchestrator(adapters).settle_tip(make_creator(), snapshot)
        assert not outcome.settled
        assert outcome.attempts == []
        assert outcome.errors[0].startswith("no eligible chain")

    async def test_recheck_uses_live_balance(self):
        solana = FakeChainAdapter("solana")
        adapters = {"solana": solana, "base": FakeChainAdapter("base")}
        snapshot = await BalanceAggregator(adapters).get_balances()
        solana.stable = Decimal("0.01")   # drained since the snapshot
        outcome = await _orchestrator(adapters, recheck=True).settle_tip(make_creator(), snapshot)
        assert outcome.result.chain == "base"
        assert outcome.attempts[0].failure == FailureKind.INSUFFICIENT_FUNDS
        assert solana.transfers == []

    async def test_recheck_failure_falls_back_to_snapshot(self):
        solana = FakeChainAdapter("solana")
        adapters = {"solana": solana}
        snapshot = await BalanceAggregator(adapters).get_balances()
        solana.balance_error = "rpc flaked"
        outcome = await _orchestrator(adapters, recheck=True).settle_tip(make_creator(), snapshot)
        assert outcome.result.chain == "solana"


class TestReconcilePending:

    def _pending(self, ledger, chain="solana", ref="solana-tx-1"):
        ledger.append_decision(Decision(
            id="d1", run_id="r1", creator_id="alice", creator_handle="alice",
            kind=DecisionKind.TIP, reason="good", created_at=NOW,
        ))
        return ledger.append_settlement(Settlement(
            id="s1", decision_id="d1", creator_id="alice", chain=chain, token="USDC",
            amount=Decimal("0.10"), protocol=SettlementProtocolKind.DIRECT_TRANSFER,
            transaction_ref=ref, is_agent_tip=True, created_at=NOW,
        ))

    async def test_landed_transfer_is_confirmed(self, ledger):
        solana = FakeChainAdapter("solana")
        solana.tx_statuses["solana-tx-1"] = True
        self._pending(ledger)
        results = await _orchestrator({"solana": solana}).reconcile_pending(ledger)
        assert results == [{"settlement_id": "s1", "status": "confirmed", "error": ""}]
        assert ledger.get_settlement("s1").status == SettlementStatus.CONFIRMED
        assert ledger.stats().total_tips == 1

    async def test_dropped_transfer_is_failed(self, ledger):
        solana = FakeChainAdapter("solana")
        solana.tx_statuses["solana-tx-1"] = False
        self._pending(ledger)
        await _orchestrator({"solana": solana}).reconcile_pending(ledger)
        assert ledger.get_settlement("s1").status == SettlementStatus.FAILED
        assert ledger.last_agent_settlement("alice") is None

    async def test_unknown_stays_pending(self, ledger):
        self._pending(ledger)
        results = await _orchestrator({"solana": FakeChainAdapter("solana")}).reconcile_pending(ledger)
        assert results[0]["status"] == "pending"
        assert [s.id for s in ledger.pending_settlements()] == ["s1"]

    async def test_unconfigured_chain_is_reported(self, ledger):
        self._pending(ledger, chain="celo", ref="celo-tx-1")
        results = await _orchestrator({"solana": FakeChainAdapter("solana")}).reconcile_pending(ledger)
        assert results[0]["error"] == "cannot check"
        assert ledger.get_settlement("s1").status == SettlementStatus.PENDING


class TestDirectTransfer:

    async def test_excess_precision_is_protocol_error(self):
        adapter = FakeChainAdapter("base")
        result = await DirectTransferProtocol().settle(
            adapter, SettlementRequest(make_creator(), EVM_ADDR, Decimal("0.0000001")))
        assert result.failure == FailureKind.PROTOCOL_ERROR
        assert adapter.transfers == []

    async def test_prepares_recipient_before_transfer(self):
        adapter = FakeChainAdapter("solana")
        result = await DirectTransferProtocol().settle(
            adapter, SettlementRequest(make_creator(), SOL_ADDR, Decimal("0.10"), Decimal("1")))
        assert result.success
        assert adapter.prepared == [SOL_ADDR]
        assert result.transaction_ref == "solana-tx-1"


class TestBalanceAggregator:

    async def test_failing_chain_is_disabled_others_unaffected(self):
        adapters = {
            "solana": FakeChainAdapter("solana", balance_error="connection refused"),
            "base": FakeChainAdapter("base", balance="3"),
        }
        snapshot = await BalanceAggregator(adapters).get_balances()
        assert not snapshot.get("solana").enabled
        assert "connection refused" in snapshot.get("solana").error
        assert snapshot.spendable("solana", "USDC") == 0
        assert snapshot.spendable("base", "USDC") == Decimal("3")
        assert snapshot.total_usd == Decimal("3")
