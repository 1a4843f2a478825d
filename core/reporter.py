"""
Ledger Writer / Run Reporter

The single writer for one agent run. Every decision goes to the ledger
exactly once; every successful settlement is appended as pending and
then finalized as confirmed by this writer, nobody else. A transfer that
was submitted but never confirmed is appended and left pending, so the
money it may move is on record and holds the creator's cooldown. At the end of
the run it produces the RunReport, with cumulative stats read back from
the ledger.
"""

import logging
import time
from typing import Optional

from core.decision import DecisionVerdict
from core.ledger import Ledger
from core.models import (
    Creator, Decision, DecisionEntry, DecisionKind, RunReport, Settlement,
    SettlementResult, SettlementStatus, WalletSnapshot, new_id,
)

logger = logging.getLogger("blinktip.reporter")


class LedgerWriter:

    def __init__(self, ledger: Ledger, run_id: Optional[str] = None, clock=time.time):
        self.ledger = ledger
        self._clock = clock
        self.report = RunReport(run_id=run_id or new_id("run"), started_at=clock())
        self._entries: dict[str, DecisionEntry] = {}
        self._tipped_decisions: set[str] = set()

    @property
    def run_id(self) -> str:
        return self.report.run_id

    def record_decision(self, creator: Creator, verdict: DecisionVerdict) -> Decision:
        decision = Decision(
            id=new_id("dec"),
            run_id=self.run_id,
            creator_id=creator.id,
            creator_handle=creator.twitter_handle or creator.slug,
            kind=verdict.kind,
            reason=verdict.reason,
            score=verdict.score,
            created_at=self._clock(),
        )
        self.ledger.append_decision(decision)

        entry = DecisionEntry(
            creator=decision.creator_handle,
            decision=decision.kind.value,
            reason=decision.reason,
        )
        self._entries[decision.id] = entry
        self.report.decisions.append(entry)
        self.report.creators_analyzed += 1
        if decision.kind == DecisionKind.SKIP:
            self.report.skipped += 1
        return decision

    def record_settlement(self, decision: Decision, result: SettlementResult) -> Settlement:
        if decision.kind != DecisionKind.TIP:
            raise ValueError(f"decision {decision.id} is {decision.kind.value}, cannot settle")
        if not result.success:
            raise ValueError("only successful settlements are recorded")

        settlement = self._settlement(decision, result)
        self.ledger.append_settlement(settlement)
        self.ledger.finalize_settlement(settlement.id, SettlementStatus.CONFIRMED, result.transaction_ref)

        entry = self._entries.get(decision.id)
        if entry is not None:
            entry.amount = (entry.amount or 0) + result.amount
            entry.chains.append(result.chain)
            entry.references.append(result.transaction_ref)

        if decision.id not in self._tipped_decisions:
            self._tipped_decisions.add(decision.id)
            self.report.tips_created += 1
        self.report.tips_by_chain[result.chain] = self.report.tips_by_chain.get(result.chain, 0) + 1

        if result.error:
            # Settled, with a non-fatal problem (redistribution)
            self.record_error(f"@{decision.creator_handle} on {result.chain}: {result.error}")
        return settlement

    def record_pending(self, decision: Decision, result: SettlementResult) -> Settlement:
        if decision.kind != DecisionKind.TIP:
            raise ValueError(f"decision {decision.id} is {decision.kind.value}, cannot settle")
        if not result.transaction_ref:
            raise ValueError("a pending settlement needs the submitted transaction reference")

        settlement = self._settlement(decision, result)
        self.ledger.append_settlement(settlement)

        entry = self._entries.get(decision.id)
        if entry is not None:
            entry.chains.append(result.chain)
            entry.references.append(result.transaction_ref)
        logger.info(f"@{decision.creator_handle}: {result.chain} {result.transaction_ref[:16]}... recorded pending")
        return settlement

    def _settlement(self, decision: Decision, result: SettlementResult) -> Settlement:
        return Settlement(
            id=new_id("stl"),
            decision_id=decision.id,
            creator_id=decision.creator_id,
            chain=result.chain,
            token=result.token,
            amount=result.amount,
            protocol=result.protocol,
            transaction_ref=result.transaction_ref,
            is_agent_tip=True,
            facilitator_ref=result.facilitator_ref,
            redistribution_status=result.redistribution_status,
            redistribution_ref=result.redistribution_ref,
            redistribution_to=result.redistribution_to,
            reasoning=decision.reason,
            created_at=self._clock(),
        )

    def record_error(self, message: str):
        logger.warning(f"Run {self.run_id}: {message}")
        self.report.errors.append(message)

    def finalize_run(self, snapshot: Optional[WalletSnapshot] = None, success: bool = True) -> RunReport:
        self.report.success = success
        self.report.finished_at = self._clock()
        if snapshot is not None:
            self.report.wallet = snapshot
        self.report.stats = self.ledger.stats()
        logger.info(
            f"Run {self.run_id} done: analyzed={self.report.creators_analyzed} "
            f"tips={self.report.tips_created} skipped={self.report.skipped} "
            f"errors={len(self.report.errors)}"
        )
        return self.report
