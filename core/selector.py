"""
Candidate Selector - which creators to look at, in what order

Verified creators, newest registration first. A creator the agent tipped
within the cooldown window is still yielded (the run logs a SKIP for it)
but marked so the decision engine never asks the oracle.

Design:
- Cooldown reads agent-attributed settlements that are confirmed or still
  pending on an unconfirmed transfer; failed ones never count
- Window is half-open: a tip exactly cooldown_days ago is outside it
- Creators with no wallet on any chain are excluded before anything else
- Injectable clock for tests

Designed for: autonomous creator tipping agent
"""

import logging
import time
from dataclasses import dataclass
from typing import AsyncIterator

from core.constitution import TIPPING_RULES
from core.directory import CreatorDirectory
from core.ledger import Ledger
from core.models import Creator, CooldownInfo, SECONDS_PER_DAY

logger = logging.getLogger("blinktip.selector")


@dataclass
class Candidate:
    creator: Creator
    cooldown: CooldownInfo

    @property
    def eligible(self) -> bool:
        return not self.cooldown.active


class CandidateSelector:

    def __init__(
        self,
        directory: CreatorDirectory,
        ledger: Ledger,
        cooldown_days: int = TIPPING_RULES.COOLDOWN_DAYS,
        clock=time.time,
    ):
        self.directory = directory
        self.ledger = ledger
        self.cooldown_days = cooldown_days
        self._clock = clock

    def check_cooldown(self, creator: Creator) -> CooldownInfo:
        last = self.ledger.last_agent_settlement(creator.id)
        if last is None:
            return CooldownInfo()

        elapsed = self._clock() - last.created_at
        days_since = int(elapsed // SECONDS_PER_DAY)
        if elapsed < self.cooldown_days * SECONDS_PER_DAY:
            return CooldownInfo(
                active=True,
                last_tip_at=last.created_at,
                days_since=days_since,
                last_amount=last.amount,
                recommendation=(
                    f"SKIP - recent tip: already tipped ${last.amount} "
                    f"{days_since} day(s) ago"
                ),
            )
        return CooldownInfo(
            active=False,
            last_tip_at=last.created_at,
            days_since=days_since,
            last_amount=last.amount,
            recommendation=f"Last tipped {days_since} day(s) ago - eligible",
        )

    def verified_with_wallet(self) -> list[Creator]:
        creators = []
        for c in self.directory.list_verified():
            if not c.has_any_wallet:
                logger.debug(f"Excluding @{c.twitter_handle or c.slug}: no wallet on any chain")
                continue
            creators.append(c)
        return creators

    async def iter_candidates(self) -> AsyncIterator[Candidate]:
        for creator in self.verified_with_wallet():
            yield Candidate(creator=creator, cooldown=self.check_cooldown(creator))

    async def select_candidates(self, max_count: int) -> list[Candidate]:
        """
        Eligible candidates only, at most max_count. The bounded form for
        callers that only want who could be tipped next; an agent run walks
        iter_candidates() instead so cooldown SKIPs are recorded too.
        """
        selected = []
        async for candidate in self.iter_candidates():
            if len(selected) >= max_count:
                break
            if candidate.eligible:
                selected.append(candidate)
        return selected
