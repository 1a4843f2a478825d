"""
x402 Facilitator client

The facilitator checks a signed payment payload against its requirements
(/verify) and submits it on-chain (/settle). Both calls are plain JSON
POSTs; transport errors come back as a failed response carrying the
error text, never as an exception.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import aiohttp

logger = logging.getLogger("blinktip.adapter.facilitator")


@dataclass
class VerifyResponse:
    is_valid: bool
    invalid_reason: str = ""
    payer: str = ""


@dataclass
class SettleResponse:
    success: bool
    transaction: str = ""
    network: str = ""
    error_reason: str = ""
    payer: str = ""


class FacilitatorClient:

    def __init__(self, base_url: str = "https://facilitator.payai.network", timeout: float = 60):
        self.base_url = base_url.rstrip("/")
        self._session: Optional[aiohttp.ClientSession] = None
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def _post(self, path: str, payload: dict, requirements: dict) -> dict:
        session = await self._get_session()
        body = {
            "x402Version": payload.get("x402Version", 1),
            "paymentPayload": payload,
            "paymentRequirements": requirements,
        }
        async with session.post(f"{self.base_url}{path}", json=body) as resp:
            data = await resp.json(content_type=None)
            if resp.status >= 400 and not isinstance(data, dict):
                raise RuntimeError(f"HTTP {resp.status}")
            return data or {}

    async def verify(self, payload: dict, requirements: dict) -> VerifyResponse:
        try:
            data = await self._post("/verify", payload, requirements)
        except Exception as e:
            logger.warning(f"Facilitator verify error: {e}")
            return VerifyResponse(is_valid=False, invalid_reason=f"facilitator unreachable: {e}")
        result = VerifyResponse(
            is_valid=bool(data.get("isValid")),
            invalid_reason=data.get("invalidReason") or "",
            payer=data.get("payer") or "",
        )
        if not result.is_valid:
            logger.warning(f"Payment verification rejected: {result.invalid_reason or 'unknown reason'}")
        return result

    async def settle(self, payload: dict, requirements: dict) -> SettleResponse:
        try:
            data = await self._post("/settle", payload, requirements)
        except Exception as e:
            logger.warning(f"Facilitator settle error: {e}")
            return SettleResponse(success=False, error_reason=f"facilitator unreachable: {e}")
        result = SettleResponse(
            success=bool(data.get("success")),
            transaction=data.get("transaction") or "",
            network=data.get("network") or "",
            error_reason=data.get("errorReason") or "",
            payer=data.get("payer") or "",
        )
        if result.success:
            logger.info(f"Facilitator settled on {result.network}: {result.transaction[:16]}...")
        else:
            logger.warning(f"Facilitator settlement failed: {result.error_reason or 'unknown reason'}")
        return result

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()
