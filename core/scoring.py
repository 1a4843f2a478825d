"""
Reputation scoring: Kaito Yaps

Fetches a creator's attention score and classifies its trend. The score
is an input to the decision prompt, never a gate on its own: a missing
score (provider down, unknown handle) just means the prompt says so.

Design:
- aiohttp session, lazily created, 30s total timeout
- Any HTTP or parse error → None (logged), never raised
- Trend = weekly average vs monthly average of the attention score

Designed for: autonomous creator tipping agent
"""

import logging
from dataclasses import dataclass, asdict
from typing import Optional

import aiohttp

logger = logging.getLogger("blinktip.scoring")

KAITO_API_URL = "https://api.kaito.ai/api/v1/yaps"


@dataclass
class ReputationScore:
    username: str
    yaps_all: float = 0.0
    yaps_24h: float = 0.0
    yaps_7d: float = 0.0
    yaps_30d: float = 0.0
    user_id: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ScoreAnalysis:
    trend: str           # strongly_rising | rising | stable | declining
    priority: str        # high | medium | low
    recommendation: str

    def to_dict(self) -> dict:
        return asdict(self)


def analyze_score(score: ReputationScore) -> ScoreAnalysis:
    weekly_avg = score.yaps_7d / 7
    monthly_avg = score.yaps_30d / 30

    if weekly_avg > monthly_avg * 1.5:
        trend, priority = "strongly_rising", "high"
        rec = (f"HIGH PRIORITY - strong momentum, weekly avg {weekly_avg:.1f} "
               f"is 50%+ above monthly {monthly_avg:.1f}")
    elif weekly_avg > monthly_avg * 1.2:
        trend, priority = "rising", "medium"
        rec = f"RISING - weekly avg {weekly_avg:.1f} vs monthly {monthly_avg:.1f}"
    elif weekly_avg >= monthly_avg * 0.8:
        trend, priority = "stable", "medium"
        rec = f"STABLE - weekly {weekly_avg:.1f}, monthly {monthly_avg:.1f}"
    else:
        trend, priority = "declining", "low"
        rec = "DECLINING - activity slowing down"

    if score.yaps_all > 1000 and priority == "medium":
        priority = "high"
        rec += " + high all-time score"

    return ScoreAnalysis(trend=trend, priority=priority, recommendation=rec)


class KaitoScoreProvider:

    def __init__(self, api_url: str = KAITO_API_URL, timeout: float = 30):
        self.api_url = api_url
        self._session: Optional[aiohttp.ClientSession] = None
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def get_score(self, handle: str) -> Optional[ReputationScore]:
        username = (handle or "").replace("@", "").strip()
        if not username:
            return None
        try:
            session = await self._get_session()
            async with session.get(self.api_url, params={"username": username}) as resp:
                if resp.status != 200:
                    logger.warning(f"Kaito API error for @{username}: HTTP {resp.status}")
                    return None
                data = await resp.json(content_type=None)
        except Exception as e:
            logger.warning(f"Kaito fetch failed for @{username}: {e}")
            return None

        try:
            score = ReputationScore(
                username=data.get("username") or username,
                user_id=str(data.get("user_id") or ""),
                yaps_all=float(data.get("yaps_all") or 0),
                yaps_24h=float(data.get("yaps_l24h") or 0),
                yaps_7d=float(data.get("yaps_l7d") or 0),
                yaps_30d=float(data.get("yaps_l30d") or 0),
            )
        except (AttributeError, TypeError, ValueError) as e:
            logger.warning(f"Kaito response for @{username} unreadable: {e}")
            return None

        logger.info(f"Kaito @{username}: 7d={score.yaps_7d:.2f} 30d={score.yaps_30d:.2f}")
        return score

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()
