"""
Tipping Agent - one autonomous run, end to end

    balances → candidates → (score, decide) → settle → record → report

Design:
- One run at a time: a second trigger while a run is active gets a
  non-success report and touches nothing
- Fatal conditions (no creators, no chain with enough balance) end the
  run early with success=False and the reason in errors
- Candidates are processed sequentially with a pause between them
- A per-candidate failure is recorded and the run moves on
- Wall-clock budget: on timeout the partial report is returned; records
  already written stay written
- Never raises: every outcome is a RunReport

Designed for: autonomous creator tipping agent
"""

import asyncio
import logging
import time
from decimal import Decimal
from typing import Optional

from core.balances import BalanceAggregator
from core.constitution import TIPPING_RULES
from core.decision import DecisionEngine
from core.ledger import Ledger
from core.models import RunReport, WalletSnapshot, new_id
from core.reporter import LedgerWriter
from core.router import SettlementOrchestrator
from core.scoring import KaitoScoreProvider
from core.selector import Candidate, CandidateSelector

logger = logging.getLogger("blinktip.agent")

RUN_IN_PROGRESS = "run already in progress"


class TippingAgent:
    """
    Usage:
        agent = TippingAgent(selector, aggregator, scorer, engine, orchestrator, ledger)
        report = await agent.run_with_timeout()
    """

    def __init__(
        self,
        selector: CandidateSelector,
        balances: BalanceAggregator,
        scorer: KaitoScoreProvider,
        engine: DecisionEngine,
        orchestrator: SettlementOrchestrator,
        ledger: Ledger,
        max_tips_per_run: int = TIPPING_RULES.MAX_TIPS_PER_RUN,
        candidate_delay: float = TIPPING_RULES.CANDIDATE_DELAY_SECONDS,
        run_timeout: float = TIPPING_RULES.RUN_TIMEOUT_SECONDS,
        clock=time.time,
    ):
        self.selector = selector
        self.balances = balances
        self.scorer = scorer
        self.engine = engine
        self.orchestrator = orchestrator
        self.ledger = ledger
        self.max_tips_per_run = max_tips_per_run
        self.candidate_delay = candidate_delay
        self.run_timeout = run_timeout
        self._clock = clock

        self._lock = asyncio.Lock()
        self._writer: Optional[LedgerWriter] = None
        self._snapshot: Optional[WalletSnapshot] = None
        self._last_report: Optional[RunReport] = None

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    @property
    def last_report(self) -> Optional[RunReport]:
        return self._last_report

    def _rejected_report(self, message: str) -> RunReport:
        now = self._clock()
        return RunReport(
            run_id=new_id("run"), success=False, started_at=now, finished_at=now,
            errors=[message], stats=self.ledger.stats(),
        )

    # ============================================================
    # RUN
    # ============================================================

    async def run(self) -> RunReport:
        if self._lock.locked():
            logger.warning("Run trigger rejected: another run is active")
            return self._rejected_report(RUN_IN_PROGRESS)

        async with self._lock:
            writer = LedgerWriter(self.ledger, clock=self._clock)
            self._writer = writer
            self._snapshot = None
            logger.info(f"Agent run {writer.run_id} starting")
            try:
                report = await self._run(writer)
            except Exception as e:
                logger.error(f"Agent run {writer.run_id} aborted: {e}")
                writer.record_error(f"run aborted: {e}")
                report = writer.finalize_run(self._snapshot, success=False)
            self._last_report = report
            return report

    async def run_with_timeout(self, timeout: Optional[float] = None) -> RunReport:
        budget = self.run_timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(self.run(), timeout=budget)
        except asyncio.TimeoutError:
            writer = self._writer
            if writer is None or writer.report.finished_at is not None:
                report = self._rejected_report(f"run timed out after {budget}s")
            else:
                writer.record_error(f"run timed out after {budget}s")
                report = writer.finalize_run(self._snapshot, success=False)
            self._last_report = report
            return report

    async def _run(self, writer: LedgerWriter) -> RunReport:
        snapshot = await self.balances.get_balances()
        self._snapshot = snapshot

        creators = self.selector.verified_with_wallet()
        if not creators:
            writer.record_error("no verified creators with a wallet")
            return writer.finalize_run(snapshot, success=False)

        fundable = self.orchestrator.fundable_chains(snapshot)
        if not fundable:
            writer.record_error(
                f"no chain has at least {self.orchestrator.tip_amount} to tip; fund the agent wallets"
            )
            return writer.finalize_run(snapshot, success=False)
        logger.info(f"{len(creators)} verified creators, fundable chains: {fundable}")

        first = True
        async for candidate in self.selector.iter_candidates():
            if writer.report.tips_created >= self.max_tips_per_run:
                logger.info(f"Reached max tips per run ({self.max_tips_per_run})")
                break
            if not first and self.candidate_delay > 0:
                await asyncio.sleep(self.candidate_delay)
            first = False

            handle = candidate.creator.twitter_handle or candidate.creator.slug
            try:
                await self._process(writer, candidate, snapshot)
            except Exception as e:
                writer.record_error(f"@{handle}: {e}")

        return writer.finalize_run(snapshot, success=True)

    async def _process(self, writer: LedgerWriter, candidate: Candidate, snapshot: WalletSnapshot):
        creator = candidate.creator
        handle = creator.twitter_handle or creator.slug

        score = None
        if candidate.eligible and creator.twitter_handle:
            score = await self.scorer.get_score(creator.twitter_handle)

        verdict = await self.engine.decide(creator, score, candidate.cooldown)
        decision = writer.record_decision(creator, verdict)
        if not verdict.is_tip:
            logger.info(f"@{handle}: SKIP - {verdict.reason}")
            return

        outcome = await self.orchestrator.settle_tip(creator, snapshot)
        if outcome.settled:
            writer.record_settlement(decision, outcome.result)
            return
        if outcome.pending is not None:
            writer.record_pending(decision, outcome.pending)
        for error in outcome.errors:
            writer.record_error(f"@{handle}: {error}")

    # ============================================================
    # STATUS
    # ============================================================

    async def status(self) -> dict:
        snapshot = await self.balances.get_balances()
        stats = self.ledger.stats()
        tip = self.orchestrator.tip_amount
        potential = 0
        for chain in self.orchestrator.fundable_chains(snapshot):
            symbol = self.orchestrator.adapters[chain].token.symbol
            potential += int(snapshot.spendable(chain, symbol) // tip)
        average = (stats.total_tipped_usd / stats.total_tips) if stats.total_tips else Decimal(0)
        return {
            "running": self.is_running,
            "wallet": snapshot.to_dict(),
            "stats": stats.to_dict(),
            "tipAmount": str(tip),
            "potentialTips": potential,
            "averageTipAmount": str(average),
            "lastRun": self._last_report.to_dict() if self._last_report else None,
        }
