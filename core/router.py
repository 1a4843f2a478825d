"""
Chain Router & Settlement Orchestrator

For a TIP decision, walk the chains in priority order and pay on the
first one where both sides can transact.

Design:
- plan() is pure: no I/O, decides from the creator's addresses and the
  run's balance snapshot which chains are worth attempting
- settle_tip() attempts eligible chains in order, stops at first success
- A definite chain failure is logged and collected, then the next chain is tried
- A transfer that was submitted but not confirmed stops the walk: the
  money may still move, so it is handed back as pending instead of
  paying again elsewhere
- Optional live balance re-check right before each attempt (the snapshot
  can be stale after earlier tips in the same run); a failed re-check
  falls back to the snapshot
- Exactly one successful settlement per TIP decision

Designed for: autonomous creator tipping agent
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from core.chain import ChainAdapter
from core.constitution import DEFAULT_CHAIN_PRIORITY, TIPPING_RULES, to_raw
from core.ledger import Ledger
from core.models import (
    Creator, FailureKind, RedistributionStatus, SettlementResult, SettlementStatus, WalletSnapshot,
)
from core.settlement import Redistributor, SettlementProtocol, SettlementRequest

logger = logging.getLogger("blinktip.router")


@dataclass
class RouteStep:
    chain: str
    eligible: bool
    reason: str = ""
    recipient: str = ""


@dataclass
class TipOutcome:
    settled: bool
    result: Optional[SettlementResult] = None
    pending: Optional[SettlementResult] = None
    attempts: list[SettlementResult] = field(default_factory=list)
    skipped: list[RouteStep] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


class SettlementOrchestrator:
    """
    Usage:
        orchestrator = SettlementOrchestrator(adapters, protocols, priority=("solana", "base", "celo"))
        outcome = await orchestrator.settle_tip(creator, snapshot)
    """

    def __init__(
        self,
        adapters: dict[str, ChainAdapter],
        protocols: dict[str, SettlementProtocol],
        priority: tuple = DEFAULT_CHAIN_PRIORITY,
        tip_amount: Decimal = TIPPING_RULES.TIP_AMOUNT_USD,
        recheck_balance: bool = True,
    ):
        self.adapters = adapters
        self.protocols = protocols
        self.priority = tuple(priority)
        self.tip_amount = tip_amount
        self.recheck_balance = recheck_balance

    def plan(self, creator: Creator, snapshot: WalletSnapshot) -> list[RouteStep]:
        steps = []
        for chain in self.priority:
            recipient = creator.wallet_for(chain)
            adapter = self.adapters.get(chain)
            if not recipient:
                steps.append(RouteStep(chain, False, "creator has no address on this chain"))
                continue
            if adapter is None or chain not in self.protocols:
                steps.append(RouteStep(chain, False, "chain not configured", recipient))
                continue
            if not adapter.is_valid_address(recipient):
                steps.append(RouteStep(chain, False, f"invalid address {recipient}", recipient))
                continue
            balance = snapshot.get(chain)
            if balance is None or not balance.enabled:
                steps.append(RouteStep(chain, False, "chain balance unavailable", recipient))
                continue
            available = balance.spendable(adapter.token.symbol)
            if available < self.tip_amount:
                steps.append(RouteStep(
                    chain, False,
                    f"insufficient {adapter.token.symbol}: {available} < {self.tip_amount}",
                    recipient,
                ))
                continue
            steps.append(RouteStep(chain, True, "", recipient))
        return steps

    def fundable_chains(self, snapshot: WalletSnapshot) -> list[str]:
        """Configured chains, in priority order, holding at least one tip."""
        chains = []
        for chain in self.priority:
            adapter = self.adapters.get(chain)
            if adapter is None or chain not in self.protocols:
                continue
            if snapshot.spendable(chain, adapter.token.symbol) >= self.tip_amount:
                chains.append(chain)
        return chains

    async def _available(self, adapter: ChainAdapter, snapshot: WalletSnapshot) -> Decimal:
        snap_value = snapshot.spendable(adapter.chain_id, adapter.token.symbol)
        if not self.recheck_balance:
            return snap_value
        try:
            live = await adapter.get_balance()
            return live.spendable(adapter.token.symbol)
        except Exception as e:
            logger.warning(f"[{adapter.chain_id}] balance re-check failed, using snapshot: {e}")
            return snap_value

    async def settle_tip(self, creator: Creator, snapshot: WalletSnapshot) -> TipOutcome:
        handle = creator.twitter_handle or creator.slug
        outcome = TipOutcome(settled=False)

        for step in self.plan(creator, snapshot):
            if not step.eligible:
                logger.debug(f"@{handle}: skip {step.chain} ({step.reason})")
                outcome.skipped.append(step)
                continue

            adapter = self.adapters[step.chain]
            protocol = self.protocols[step.chain]
            request = SettlementRequest(
                creator=creator,
                recipient=step.recipient,
                amount=self.tip_amount,
                available=await self._available(adapter, snapshot),
            )
            try:
                result = await protocol.settle(adapter, request)
            except Exception as e:
                # Protocols return failures; anything raised is a bug, still not fatal to the run
                logger.error(f"[{step.chain}] unexpected settlement error for @{handle}: {e}")
                result = SettlementResult(success=False, chain=step.chain, error=f"unexpected error: {e}")

            outcome.attempts.append(result)
            if result.success:
                outcome.settled = True
                outcome.result = result
                logger.info(f"@{handle}: settled on {step.chain} ({result.transaction_ref[:16]}...)")
                return outcome

            if result.failure == FailureKind.CONFIRMATION_FAILED and result.transaction_ref:
                outcome.pending = result
                outcome.errors.append(
                    f"{step.chain}: submitted {result.transaction_ref} but unconfirmed "
                    f"({result.error}); not retried on another chain"
                )
                logger.warning(f"@{handle}: {step.chain} tx in flight, stopping fallback")
                return outcome

            outcome.errors.append(f"{step.chain}: {result.error}")
            logger.warning(f"@{handle}: {step.chain} failed, trying next chain")

        if not outcome.attempts:
            outcome.errors.append(
                "no eligible chain: " + "; ".join(f"{s.chain} ({s.reason})" for s in outcome.skipped)
            )
        else:
            outcome.errors.append(f"all {len(outcome.attempts)} eligible chain(s) failed")
        return outcome

    async def reconcile_redistributions(self, ledger: Ledger, redistributor: Redistributor) -> list[dict]:
        """
        Retry the intermediary → creator hop for settlements whose redistribution
        failed. Operator-triggered; never runs inside an agent run.
        """
        results = []
        for s in ledger.failed_redistributions():
            adapter = self.adapters.get(s.chain)
            if adapter is None or not s.redistribution_to:
                results.append({"settlement_id": s.id, "success": False, "error": "cannot redistribute"})
                continue
            raw = to_raw(s.amount, adapter.token.decimals)
            tx = await redistributor.redistribute(s.chain, s.redistribution_to, raw)
            if tx.success:
                ledger.update_redistribution(s.id, RedistributionStatus.SUCCEEDED, tx.tx_hash)
            results.append({
                "settlement_id": s.id,
                "success": tx.success,
                "transaction_ref": tx.tx_hash,
                "error": tx.error,
            })
        return results

    async def reconcile_pending(self, ledger: Ledger) -> list[dict]:
        """
        Resolve agent settlements left pending by an unconfirmed transfer.
        A chain that still cannot say leaves the record pending.
        """
        results = []
        for s in ledger.pending_settlements():
            adapter = self.adapters.get(s.chain)
            if adapter is None or not s.transaction_ref:
                results.append({"settlement_id": s.id, "status": s.status.value, "error": "cannot check"})
                continue
            try:
                landed = await adapter.transaction_status(s.transaction_ref)
            except Exception as e:
                logger.warning(f"[{s.chain}] status check failed for {s.transaction_ref[:16]}...: {e}")
                results.append({"settlement_id": s.id, "status": s.status.value, "error": str(e)})
                continue
            if landed is not None:
                status = SettlementStatus.CONFIRMED if landed else SettlementStatus.FAILED
                ledger.finalize_settlement(s.id, status)
                logger.info(f"[{s.chain}] pending {s.transaction_ref[:16]}... resolved {status.value}")
            results.append({"settlement_id": s.id, "status": s.status.value, "error": ""})
        return results
