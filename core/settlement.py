"""
Settlement protocols - how one tip moves on one chain

Two ways to pay a creator, same result contract (SettlementResult):

DirectTransferProtocol:
    balance check → recipient token account → signed transfer → confirmation

PaymentRequestProtocol (x402):
    GET creator payment resource → 402 + requirements → sign payload →
    facilitator /verify → facilitator /settle → redistribution to the
    creator when the resource is paid to an intermediary wallet

Design:
- Nothing here raises for a chain or network failure: every failure is a
  SettlementResult with a FailureKind, so the router can move on
- Verification and settlement failures are distinct kinds
- The requirements amount is authoritative; a missing or invalid amount
  is a hard error (no default), one above max_required_ratio × tip is refused
- Redistribution failure does NOT fail the tip: the payment reached the
  intermediary, the record says redistribution failed, reconcile later

Designed for: autonomous creator tipping agent
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import aiohttp

from core.adapters.facilitator import FacilitatorClient
from core.chain import ChainAdapter, ChainTxResult
from core.constitution import TIPPING_RULES, from_raw, to_raw
from core.models import (
    Creator, FailureKind, RedistributionStatus, SettlementProtocolKind, SettlementResult,
)
from core.x402 import PaymentRequirementsError, select_requirements

logger = logging.getLogger("blinktip.settlement")


@dataclass
class SettlementRequest:
    creator: Creator
    recipient: str
    amount: Decimal
    available: Optional[Decimal] = None   # spendable tip-token balance, None = unknown


def same_address(a: str, b: str) -> bool:
    if a.startswith("0x") or b.startswith("0x"):
        return a.lower() == b.lower()
    return a == b


class SettlementProtocol(ABC):
    kind: SettlementProtocolKind

    @abstractmethod
    async def settle(self, adapter: ChainAdapter, request: SettlementRequest) -> SettlementResult:
        ...

    def _fail(self, adapter: ChainAdapter, failure: FailureKind, error: str, amount=Decimal(0)) -> SettlementResult:
        logger.warning(f"[{adapter.chain_id}] {self.kind.value} failed ({failure.value}): {error}")
        return SettlementResult.failed(
            adapter.chain_id, failure, error,
            amount=amount, token=adapter.token.symbol, protocol=self.kind,
        )


# ============================================================
# DIRECT TRANSFER
# ============================================================

class DirectTransferProtocol(SettlementProtocol):
    kind = SettlementProtocolKind.DIRECT_TRANSFER

    async def settle(self, adapter: ChainAdapter, request: SettlementRequest) -> SettlementResult:
        amount = request.amount
        try:
            raw = to_raw(amount, adapter.token.decimals)
        except ValueError as e:
            return self._fail(adapter, FailureKind.PROTOCOL_ERROR, str(e), amount)

        if request.available is not None and request.available < amount:
            return self._fail(
                adapter, FailureKind.INSUFFICIENT_FUNDS,
                f"balance {request.available} {adapter.token.symbol} < {amount}", amount,
            )
        if not adapter.is_valid_address(request.recipient):
            return self._fail(adapter, FailureKind.INVALID_ADDRESS, f"invalid address {request.recipient}", amount)

        try:
            setup_ref = await adapter.ensure_recipient_ready(request.recipient)
            if setup_ref:
                logger.info(f"[{adapter.chain_id}] recipient account created: {setup_ref[:16]}...")
        except Exception as e:
            return self._fail(adapter, FailureKind.SETTLEMENT_FAILED, f"recipient setup failed: {e}", amount)

        tx = await adapter.transfer(request.recipient, raw)
        if not tx.success:
            kind = FailureKind.CONFIRMATION_FAILED if tx.tx_hash and not tx.confirmed else FailureKind.SETTLEMENT_FAILED
            result = self._fail(adapter, kind, tx.error or "transfer failed", amount)
            result.transaction_ref = tx.tx_hash
            return result

        logger.info(f"[{adapter.chain_id}] tipped {amount} {adapter.token.symbol} → {request.recipient[:10]}...")
        return SettlementResult(
            success=True,
            chain=adapter.chain_id,
            transaction_ref=tx.tx_hash,
            amount=amount,
            token=adapter.token.symbol,
            protocol=self.kind,
        )


# ============================================================
# REDISTRIBUTION (intermediary wallet → creator)
# ============================================================

class Redistributor:
    """Forwards a payment that landed in an intermediary wallet to the creator."""

    def __init__(self, adapters: Optional[dict[str, ChainAdapter]] = None):
        self.adapters = adapters or {}

    def address_for(self, chain: str) -> str:
        adapter = self.adapters.get(chain)
        return adapter.address if adapter else ""

    async def redistribute(self, chain: str, to: str, raw_amount: int) -> ChainTxResult:
        adapter = self.adapters.get(chain)
        if adapter is None:
            return ChainTxResult(success=False, chain=chain, error=f"no intermediary wallet on {chain}")
        try:
            await adapter.ensure_recipient_ready(to)
        except Exception as e:
            return ChainTxResult(success=False, chain=chain, error=f"recipient setup failed: {e}")
        result = await adapter.transfer(to, raw_amount)
        if result.success:
            logger.info(f"[{chain}] redistributed {raw_amount} base units → {to[:10]}...: {result.tx_hash[:16]}...")
        else:
            logger.warning(f"[{chain}] redistribution to {to[:10]}... failed: {result.error}")
        return result


# ============================================================
# PAYMENT REQUEST (x402)
# ============================================================

class PaymentRequestProtocol(SettlementProtocol):
    kind = SettlementProtocolKind.REQUEST_FOR_PAYMENT

    def __init__(
        self,
        resource_base_url: str,
        facilitator: FacilitatorClient,
        redistributor: Optional[Redistributor] = None,
        agent_id: str = "blinktip-agent",
        max_required_ratio: Decimal = TIPPING_RULES.MAX_REQUIRED_RATIO,
        timeout: float = 30,
    ):
        self.resource_base_url = resource_base_url.rstrip("/")
        self.facilitator = facilitator
        self.redistributor = redistributor or Redistributor()
        self.agent_id = agent_id
        self.max_required_ratio = max_required_ratio
        self._session: Optional[aiohttp.ClientSession] = None
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    def resource_url(self, creator: Creator, chain: str) -> str:
        return f"{self.resource_base_url}/x402/tip/{creator.slug}/{chain}"

    async def fetch_requirements(self, creator: Creator, adapter: ChainAdapter, amount: Decimal) -> dict:
        """Unauthenticated GET; the resource must answer 402 with an accepts list."""
        session = await self._get_session()
        url = self.resource_url(creator, adapter.chain_id)
        async with session.get(url, params={"amount": str(amount), "agent_id": self.agent_id}) as resp:
            if resp.status != 402:
                raise PaymentRequirementsError(f"expected 402 from {url}, got {resp.status}")
            return await resp.json(content_type=None)

    async def settle(self, adapter: ChainAdapter, request: SettlementRequest) -> SettlementResult:
        chain = adapter.chain_id
        decimals = adapter.token.decimals

        try:
            body = await self.fetch_requirements(request.creator, adapter, request.amount)
            requirements = select_requirements(body, adapter.chain.x402_network)
            raw = requirements.raw_amount
        except PaymentRequirementsError as e:
            return self._fail(adapter, FailureKind.REQUIREMENTS_ERROR, str(e), request.amount)
        except Exception as e:
            return self._fail(adapter, FailureKind.PROTOCOL_ERROR, f"payment resource error: {e}", request.amount)

        amount = from_raw(raw, decimals)
        ceiling = request.amount * self.max_required_ratio
        if amount > ceiling:
            return self._fail(
                adapter, FailureKind.REQUIREMENTS_ERROR,
                f"required {amount} exceeds limit {ceiling}", amount,
            )
        if request.available is not None and request.available < amount:
            return self._fail(
                adapter, FailureKind.INSUFFICIENT_FUNDS,
                f"balance {request.available} {adapter.token.symbol} < required {amount}", amount,
            )
        if not adapter.is_valid_address(requirements.pay_to):
            return self._fail(adapter, FailureKind.REQUIREMENTS_ERROR, f"invalid payTo {requirements.pay_to}", amount)

        try:
            await adapter.ensure_recipient_ready(requirements.pay_to)
            payload = await adapter.sign_payment(requirements.to_dict())
        except Exception as e:
            return self._fail(adapter, FailureKind.PROTOCOL_ERROR, f"payment signing failed: {e}", amount)

        verify = await self.facilitator.verify(payload, requirements.to_dict())
        if not verify.is_valid:
            return self._fail(
                adapter, FailureKind.VERIFICATION_FAILED,
                f"payment verification failed: {verify.invalid_reason or 'unknown reason'}", amount,
            )

        settled = await self.facilitator.settle(payload, requirements.to_dict())
        if not settled.success or not settled.transaction:
            return self._fail(
                adapter, FailureKind.SETTLEMENT_FAILED,
                f"payment settlement failed: {settled.error_reason or 'no transaction returned'}", amount,
            )

        result = SettlementResult(
            success=True,
            chain=chain,
            transaction_ref=settled.transaction,
            amount=amount,
            token=adapter.token.symbol,
            protocol=self.kind,
            facilitator_ref=settled.transaction,
        )

        if not same_address(requirements.pay_to, request.recipient):
            result.redistribution_to = request.recipient
            redist = await self.redistributor.redistribute(chain, request.recipient, raw)
            if redist.success:
                result.redistribution_status = RedistributionStatus.SUCCEEDED
                result.redistribution_ref = redist.tx_hash
                result.transaction_ref = redist.tx_hash
            else:
                # Tip stands; the funds sit in the intermediary wallet until reconciled
                result.redistribution_status = RedistributionStatus.FAILED
                result.error = f"redistribution failed: {redist.error}"

        return result

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()
