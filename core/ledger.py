"""
Ledger - append-only record of decisions and settlements

Every decision the agent makes and every settlement it attempts ends up
here exactly once. The ledger is the only place the cooldown and the
cumulative statistics are computed from.

Design:
- Append-only: decisions are immutable, settlements move pending → confirmed|failed once
- Redistribution fields on a settlement may be updated (separate retryable step)
- A confirmed transaction reference is unique per chain
- JSON file, ATOMIC WRITE (tempfile + os.replace) after every mutation
- Loads tolerate a missing file (fresh ledger)

Designed for: autonomous creator tipping agent
"""

import json
import logging
import os
import tempfile
import time
from decimal import Decimal
from pathlib import Path
from typing import Optional

from core.models import (
    Decision, DecisionKind, LedgerStats, Settlement, SettlementStatus,
    RedistributionStatus,
)

logger = logging.getLogger("blinktip.ledger")


class LedgerError(Exception):
    """Raised when a write would break the ledger's append-only rules."""
    pass


class Ledger:
    """
    Usage:
        ledger = Ledger(Path("data/ledger.json"))
        ledger.append_decision(decision)
        ledger.append_settlement(settlement)       # status must be pending
        ledger.finalize_settlement(settlement.id, SettlementStatus.CONFIRMED, tx_ref)
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else None
        self._decisions: list[Decision] = []
        self._settlements: list[Settlement] = []
        self._decision_ids: set[str] = set()
        self._settlement_index: dict[str, Settlement] = {}
        if self.path is not None:
            self._load()

    # ============================================================
    # WRITES
    # ============================================================

    def append_decision(self, decision: Decision) -> Decision:
        if decision.id in self._decision_ids:
            raise LedgerError(f"duplicate decision id {decision.id}")
        self._decisions.append(decision)
        self._decision_ids.add(decision.id)
        self._save()
        return decision

    def append_settlement(self, settlement: Settlement) -> Settlement:
        if settlement.id in self._settlement_index:
            raise LedgerError(f"duplicate settlement id {settlement.id}")
        if settlement.status != SettlementStatus.PENDING:
            raise LedgerError(f"settlement {settlement.id} must be appended as pending")
        if settlement.decision_id and settlement.decision_id not in self._decision_ids:
            raise LedgerError(f"settlement {settlement.id} references unknown decision {settlement.decision_id}")
        if settlement.amount <= 0:
            raise LedgerError(f"settlement {settlement.id} amount must be positive")
        self._settlements.append(settlement)
        self._settlement_index[settlement.id] = settlement
        self._save()
        return settlement

    def finalize_settlement(
        self,
        settlement_id: str,
        status: SettlementStatus,
        transaction_ref: str = "",
    ) -> Settlement:
        """The only status transition: pending → confirmed | failed."""
        s = self._settlement_index.get(settlement_id)
        if s is None:
            raise LedgerError(f"unknown settlement {settlement_id}")
        if s.status != SettlementStatus.PENDING:
            raise LedgerError(f"settlement {settlement_id} already {s.status.value}")
        if status == SettlementStatus.PENDING:
            raise LedgerError("cannot finalize to pending")

        ref = transaction_ref or s.transaction_ref
        if status == SettlementStatus.CONFIRMED:
            if not ref:
                raise LedgerError(f"confirmed settlement {settlement_id} needs a transaction reference")
            for other in self._settlements:
                if (other is not s and other.chain == s.chain
                        and other.status == SettlementStatus.CONFIRMED
                        and other.transaction_ref == ref):
                    raise LedgerError(f"transaction {ref} already recorded on {s.chain}")
            s.confirmed_at = time.time()

        s.transaction_ref = ref
        s.status = status
        self._save()
        return s

    def update_redistribution(
        self, settlement_id: str, status: RedistributionStatus, ref: str = "",
    ) -> Settlement:
        s = self._settlement_index.get(settlement_id)
        if s is None:
            raise LedgerError(f"unknown settlement {settlement_id}")
        if s.redistribution_status == RedistributionStatus.SUCCEEDED:
            raise LedgerError(f"settlement {settlement_id} already redistributed")
        s.redistribution_status = status
        if ref:
            s.redistribution_ref = ref
        self._save()
        return s

    # ============================================================
    # READS
    # ============================================================

    @property
    def decisions(self) -> list[Decision]:
        return list(self._decisions)

    @property
    def settlements(self) -> list[Settlement]:
        return list(self._settlements)

    def get_settlement(self, settlement_id: str) -> Optional[Settlement]:
        return self._settlement_index.get(settlement_id)

    def settlements_for_decision(self, decision_id: str) -> list[Settlement]:
        return [s for s in self._settlements if s.decision_id == decision_id]

    def last_agent_settlement(self, creator_id: str) -> Optional[Settlement]:
        """
        Most recent agent-attributed settlement for a creator that did or may
        still move money: confirmed, or pending on an unconfirmed transfer.
        """
        latest = None
        for s in self._settlements:
            if (s.creator_id == creator_id and s.is_agent_tip
                    and s.status != SettlementStatus.FAILED):
                if latest is None or _settled_at(s) > _settled_at(latest):
                    latest = s
        return latest

    def pending_settlements(self) -> list[Settlement]:
        return [s for s in self._settlements if s.status == SettlementStatus.PENDING]

    def failed_redistributions(self) -> list[Settlement]:
        return [
            s for s in self._settlements
            if s.status == SettlementStatus.CONFIRMED
            and s.redistribution_status == RedistributionStatus.FAILED
        ]

    def stats(self) -> LedgerStats:
        confirmed_decisions = {
            s.decision_id for s in self._settlements
            if s.is_agent_tip and s.status == SettlementStatus.CONFIRMED
        }
        tips = sum(
            1 for d in self._decisions
            if d.kind == DecisionKind.TIP and d.id in confirmed_decisions
        )
        skips = sum(1 for d in self._decisions if d.kind == DecisionKind.SKIP)
        tipped = sum(
            (s.amount for s in self._settlements
             if s.is_agent_tip and s.status == SettlementStatus.CONFIRMED),
            Decimal(0),
        )
        return LedgerStats(
            total_decisions=len(self._decisions),
            total_tips=tips,
            total_skips=skips,
            total_tipped_usd=tipped,
        )

    # ============================================================
    # PERSISTENCE
    # ============================================================

    def _save(self):
        if self.path is None:
            return
        data = {
            "decisions": [d.to_dict() for d in self._decisions],
            "settlements": [s.to_dict() for s in self._settlements],
            "saved_at": time.time(),
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        # ATOMIC WRITE: write to temp file, then rename
        tmp_fd, tmp_path = tempfile.mkstemp(
            dir=str(self.path.parent), suffix=".tmp", prefix="ledger_"
        )
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
            os.replace(tmp_path, str(self.path))
        except Exception:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def _load(self):
        if not self.path.exists():
            return
        with open(self.path, encoding="utf-8") as f:
            data = json.load(f)
        for d in data.get("decisions", []):
            decision = Decision.from_dict(d)
            self._decisions.append(decision)
            self._decision_ids.add(decision.id)
        for s in data.get("settlements", []):
            settlement = Settlement.from_dict(s)
            self._settlements.append(settlement)
            self._settlement_index[settlement.id] = settlement
        logger.info(
            f"Ledger loaded: {len(self._decisions)} decisions, "
            f"{len(self._settlements)} settlements"
        )


def _settled_at(s: Settlement) -> float:
    return s.created_at
