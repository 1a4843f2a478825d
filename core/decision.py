"""
Decision Engine - TIP or SKIP for one creator

Builds a prompt from the creator's profile signals, the reputation score
and the cooldown status, asks the reasoning oracle, and parses its answer.

Design:
- Fail-safe: any error (oracle exception, timeout, malformed JSON,
  unexpected fields, unknown decision) → SKIP, never raises
- Strict parse: the JSON object must carry exactly "decision" and "reason"
- Decision is upper-cased, then must be TIP or SKIP
- No retries: a SKIP costs nothing, a retried TIP can cost twice
- A candidate in cooldown is SKIPped without calling the oracle

Designed for: autonomous creator tipping agent
"""

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from core.constitution import TIPPING_RULES
from core.models import Creator, CooldownInfo, DecisionKind
from core.reasoning import ReasoningOracle
from core.scoring import ReputationScore, analyze_score

logger = logging.getLogger("blinktip.decision")

ERROR_REASON_PREFIX = "Decision error:"
_EXPECTED_FIELDS = {"decision", "reason"}


@dataclass
class ProfileSignals:
    followers: int
    account_age_days: Optional[int]
    has_bio: bool
    verified: bool
    is_new_low_follower: bool


@dataclass
class DecisionVerdict:
    kind: DecisionKind
    reason: str
    score: Optional[dict] = None

    @property
    def is_tip(self) -> bool:
        return self.kind == DecisionKind.TIP


class DecisionParseError(ValueError):
    pass


def profile_signals(creator: Creator, now: Optional[float] = None, rules=TIPPING_RULES) -> ProfileSignals:
    age = creator.account_age_days(now)
    new_and_small = (
        age is not None and age < rules.NEW_ACCOUNT_DAYS
        and creator.follower_count < rules.LOW_FOLLOWER_COUNT
    )
    return ProfileSignals(
        followers=creator.follower_count,
        account_age_days=age,
        has_bio=bool(creator.bio.strip()),
        verified=creator.verified,
        is_new_low_follower=new_and_small,
    )


def parse_decision(content: str) -> tuple[DecisionKind, str]:
    """Extract and validate the {"decision", "reason"} object from model output."""
    if not content or not content.strip():
        raise DecisionParseError("empty response")
    # Tolerate markdown fences and chatter around the object
    match = re.search(r"\{.*\}", content, re.DOTALL)
    if not match:
        raise DecisionParseError("no JSON object in response")
    try:
        parsed = json.loads(match.group())
    except json.JSONDecodeError as e:
        raise DecisionParseError(f"invalid JSON: {e}")
    if not isinstance(parsed, dict):
        raise DecisionParseError("response is not a JSON object")
    if set(parsed.keys()) != _EXPECTED_FIELDS:
        raise DecisionParseError(f"unexpected fields {sorted(parsed.keys())}")
    decision, reason = parsed["decision"], parsed["reason"]
    if not isinstance(decision, str) or not isinstance(reason, str):
        raise DecisionParseError("decision and reason must be strings")
    if not reason.strip():
        raise DecisionParseError("empty reason")
    try:
        kind = DecisionKind(decision.strip().upper())
    except ValueError:
        raise DecisionParseError(f"unknown decision {decision!r}")
    return kind, reason.strip()


class DecisionEngine:
    """
    Usage:
        engine = DecisionEngine(oracle, tip_amount=Decimal("0.10"))
        verdict = await engine.decide(creator, score, cooldown)
    """

    def __init__(
        self,
        oracle: ReasoningOracle,
        tip_amount: Decimal = TIPPING_RULES.TIP_AMOUNT_USD,
        max_tips_per_run: int = TIPPING_RULES.MAX_TIPS_PER_RUN,
        cooldown_days: int = TIPPING_RULES.COOLDOWN_DAYS,
        timeout: float = 60.0,
        clock=time.time,
    ):
        self.oracle = oracle
        self.tip_amount = tip_amount
        self.max_tips_per_run = max_tips_per_run
        self.cooldown_days = cooldown_days
        self.timeout = timeout
        self._clock = clock

    async def decide(
        self,
        creator: Creator,
        score: Optional[ReputationScore],
        cooldown: CooldownInfo,
    ) -> DecisionVerdict:
        score_dict = score.to_dict() if score else None

        if cooldown.active:
            return DecisionVerdict(DecisionKind.SKIP, cooldown.recommendation, score_dict)

        prompt = self.build_prompt(creator, score, cooldown)
        try:
            content = await asyncio.wait_for(self.oracle.complete(prompt), timeout=self.timeout)
            kind, reason = parse_decision(content)
        except asyncio.TimeoutError:
            logger.warning(f"Oracle timed out for @{creator.twitter_handle}")
            return DecisionVerdict(DecisionKind.SKIP, f"{ERROR_REASON_PREFIX} oracle timeout", score_dict)
        except Exception as e:
            logger.warning(f"Decision failed for @{creator.twitter_handle}: {e}")
            return DecisionVerdict(DecisionKind.SKIP, f"{ERROR_REASON_PREFIX} {e}", score_dict)

        logger.info(f"Decision @{creator.twitter_handle}: {kind.value} - {reason}")
        return DecisionVerdict(kind, reason, score_dict)

    def build_prompt(
        self,
        creator: Creator,
        score: Optional[ReputationScore],
        cooldown: CooldownInfo,
    ) -> str:
        signals = profile_signals(creator, self._clock())

        if signals.account_age_days is not None:
            age_line = f"{signals.account_age_days} days ({signals.account_age_days / 365:.1f} years)"
        else:
            age_line = "Unknown"

        if score and score.yaps_7d > 0:
            analysis = analyze_score(score)
            score_block = (
                f"- 7-day score: {score.yaps_7d:.2f}\n"
                f"- 30-day score: {score.yaps_30d:.2f}\n"
                f"- All-time score: {score.yaps_all:.2f}\n"
                f"- Trend: {analysis.trend}\n"
                f"- Priority: {analysis.priority}\n"
                f"- Note: high score = strong crypto Twitter influence"
            )
        else:
            score_block = "- No reputation score (not crypto-focused or new to crypto Twitter)"

        return f"""You are an autonomous agent that tips creators on BlinkTip, a multi-chain tipping platform.

Your mission: identify and reward high-quality creators.

CREATOR PROFILE:
- Name: {creator.name}
- Twitter: @{creator.twitter_handle}
- Bio: {creator.bio or "No bio"}
- Verified: {"Yes" if signals.verified else "No"}

SOCIAL METRICS:
- Followers: {signals.followers:,}
- Account age: {age_line}
- New account with few followers: {"Yes" if signals.is_new_low_follower else "No"}

REPUTATION SCORE (optional):
{score_block}

RECENT TIP HISTORY:
{cooldown.recommendation}

BUDGET:
- ${self.tip_amount} per tip
- Up to {self.max_tips_per_run} creators per run

DECISION CRITERIA (be lenient):
1. The reputation score is OPTIONAL - reward creators even without it
2. Must NOT have been tipped by you in the last {self.cooldown_days} days
3. PRIORITIZE: high reputation score; 1000+ followers with a 1+ year account;
   complete profile (bio, verified); rising creators
4. SKIP only if:
   - very new account (<{TIPPING_RULES.NEW_ACCOUNT_DAYS} days) AND low followers (<{TIPPING_RULES.LOW_FOLLOWER_COUNT})
   - recently tipped
   - suspicious or incomplete profile

Tip most verified creators.

Respond ONLY with valid JSON in exactly this format:
{{"decision": "TIP" or "SKIP", "reason": "Brief explanation (1-2 sentences)"}}"""
