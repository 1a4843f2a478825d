"""
Tests for the append-only ledger.
"""

from decimal import Decimal

import pytest

from core.ledger import Ledger, LedgerError
from core.models import (
    Decision,
    DecisionKind,
    RedistributionStatus,
    Settlement,
    SettlementProtocolKind,
    SettlementStatus,
)

from conftest import NOW, days_ago


def _decision(did="d1", kind=DecisionKind.TIP, creator="c1"):
    return Decision(id=did, run_id="r1", creator_id=creator, creator_handle=creator,
                    kind=kind, reason="test", created_at=NOW)


def _settlement(sid="s1", did="d1", creator="c1", chain="base", ref="0xabc", agent=True, created=NOW):
    return Settlement(
        id=sid, decision_id=did, creator_id=creator, chain=chain, token="USDC",
        amount=Decimal("0.10"), protocol=SettlementProtocolKind.DIRECT_TRANSFER,
        transaction_ref=ref, is_agent_tip=agent, created_at=created,
    )


class TestAppendOnly:

    def test_finalize_once(self, ledger):
        ledger.append_decision(_decision())
        ledger.append_settlement(_settlement())
        s = ledger.finalize_settlement("s1", SettlementStatus.CONFIRMED)
        assert s.status == SettlementStatus.CONFIRMED
        assert s.confirmed_at is not None
        with pytest.raises(LedgerError):
            ledger.finalize_settlement("s1", SettlementStatus.FAILED)

    def test_settlement_must_start_pending(self, ledger):
        ledger.append_decision(_decision())
        s = _settlement()
        s.status = SettlementStatus.CONFIRMED
        with pytest.raises(LedgerError):
            ledger.append_settlement(s)

    def test_duplicate_decision_rejected(self, ledger):
        ledger.append_decision(_decision())
        with pytest.raises(LedgerError):
            ledger.append_decision(_decision())

    def test_unknown_decision_rejected(self, ledger):
        with pytest.raises(LedgerError):
            ledger.append_settlement(_settlement(did="missing"))

    def test_confirmed_ref_unique_per_chain(self, ledger):
        ledger.append_decision(_decision("d1"))
        ledger.append_decision(_decision("d2"))
        ledger.append_decision(_decision("d3"))
        ledger.append_settlement(_settlement("s1", "d1", ref="0xsame"))
        ledger.finalize_settlement("s1", SettlementStatus.CONFIRMED)

        ledger.append_settlement(_settlement("s2", "d2", ref="0xsame"))
        with pytest.raises(LedgerError):
            ledger.finalize_settlement("s2", SettlementStatus.CONFIRMED)

        # Same reference on another chain is a different transaction
        ledger.append_settlement(_settlement("s3", "d3", chain="celo", ref="0xsame"))
        ledger.finalize_settlement("s3", SettlementStatus.CONFIRMED)

    def test_confirmed_needs_reference(self, ledger):
        ledger.append_decision(_decision())
        ledger.append_settlement(_settlement(ref=""))
        with pytest.raises(LedgerError):
            ledger.finalize_settlement("s1", SettlementStatus.CONFIRMED)


class TestQueries:

    def test_last_agent_settlement_ignores_human_and_failed(self, ledger):
        ledger.append_decision(_decision())
        ledger.append_settlement(_settlement("human", did="", agent=False, ref="h1"))
        ledger.finalize_settlement("human", SettlementStatus.CONFIRMED)
        ledger.append_settlement(_settlement("failed", ref="f1"))
        ledger.finalize_settlement("failed", SettlementStatus.FAILED)
        assert ledger.last_agent_settlement("c1") is None

    def test_pending_agent_settlement_counts(self, ledger):
        """An unconfirmed transfer may still land, so it holds the cooldown."""
        ledger.append_decision(_decision())
        ledger.append_settlement(_settlement("inflight", ref="p1"))
        assert ledger.last_agent_settlement("c1").id == "inflight"
        assert [s.id for s in ledger.pending_settlements()] == ["inflight"]

        ledger.finalize_settlement("inflight", SettlementStatus.FAILED)
        assert ledger.last_agent_settlement("c1") is None
        assert ledger.pending_settlements() == []

    def test_last_agent_settlement_is_most_recent(self, ledger):
        ledger.append_decision(_decision("d1"))
        ledger.append_decision(_decision("d2"))
        ledger.append_settlement(_settlement("old", "d1", ref="a", created=days_ago(20)))
        ledger.append_settlement(_settlement("new", "d2", ref="b", created=days_ago(2)))
        ledger.finalize_settlement("old", SettlementStatus.CONFIRMED)
        ledger.finalize_settlement("new", SettlementStatus.CONFIRMED)
        assert ledger.last_agent_settlement("c1").id == "new"

    def test_stats(self, ledger):
        ledger.append_decision(_decision("d1", DecisionKind.TIP))
        ledger.append_decision(_decision("d2", DecisionKind.SKIP))
        ledger.append_decision(_decision("d3", DecisionKind.TIP))   # never settled
        ledger.append_settlement(_settlement("s1", "d1"))
        ledger.finalize_settlement("s1", SettlementStatus.CONFIRMED)

        stats = ledger.stats()
        assert stats.total_decisions == 3
        assert stats.total_tips == 1
        assert stats.total_skips == 1
        assert stats.total_tipped_usd == Decimal("0.10")

    def test_failed_redistributions(self, ledger):
        ledger.append_decision(_decision())
        s = _settlement()
        s.redistribution_status = RedistributionStatus.FAILED
        s.redistribution_to = "0xcreator"
        ledger.append_settlement(s)
        ledger.finalize_settlement("s1", SettlementStatus.CONFIRMED)
        assert [x.id for x in ledger.failed_redistributions()] == ["s1"]

        ledger.update_redistribution("s1", RedistributionStatus.SUCCEEDED, "0xredist")
        assert ledger.failed_redistributions() == []

    def test_redistribution_update_keeps_transaction_ref(self, ledger):
        """Only the redistribution fields move; the written reference stands."""
        ledger.append_decision(_decision("d1"))
        ledger.append_decision(_decision("d2"))
        ledger.append_settlement(_settlement("s1", "d1", ref="0xfirst"))
        ledger.finalize_settlement("s1", SettlementStatus.CONFIRMED)
        s = _settlement("s2", "d2", ref="0xsecond")
        s.redistribution_status = RedistributionStatus.FAILED
        ledger.append_settlement(s)
        ledger.finalize_settlement("s2", SettlementStatus.CONFIRMED)

        # A redistribution hash that collides with another confirmed row changes nothing there
        updated = ledger.update_redistribution("s2", RedistributionStatus.SUCCEEDED, "0xfirst")
        assert updated.transaction_ref == "0xsecond"
        assert updated.redistribution_ref == "0xfirst"
        assert updated.redistribution_status == RedistributionStatus.SUCCEEDED
        assert ledger.get_settlement("s1").transaction_ref == "0xfirst"

        with pytest.raises(LedgerError):
            ledger.update_redistribution("s2", RedistributionStatus.SUCCEEDED, "0xagain")


class TestPersistence:

    def test_reload(self, tmp_path):
        path = tmp_path / "ledger.json"
        ledger = Ledger(path)
        ledger.append_decision(_decision())
        ledger.append_settlement(_settlement())
        ledger.finalize_settlement("s1", SettlementStatus.CONFIRMED)

        reloaded = Ledger(path)
        assert len(reloaded.decisions) == 1
        s = reloaded.get_settlement("s1")
        assert s.status == SettlementStatus.CONFIRMED
        assert s.amount == Decimal("0.10")
        assert reloaded.decisions[0].kind == DecisionKind.TIP

    def test_missing_file_is_empty(self, tmp_path):
        assert Ledger(tmp_path / "nope.json").stats().total_decisions == 0
