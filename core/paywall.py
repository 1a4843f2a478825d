"""
Payment Gate - server side of the x402 resources

Two kinds of paid resource:
- /x402/tip/{slug}/{chain}     pay a creator (directly, or via the treasury
                               wallet and then redistributed to the creator)
- /x402/fund-agent/{chain}     top up the agent's own wallet on that chain

Without an X-PAYMENT header the gate answers 402 with the requirements.
With one, it verifies and settles through the facilitator.

Design:
- Invalid payment → 402 (client may retry with a new payload)
- Settlement failure → 500
- Unknown creator → 404; no creator wallet on that chain / bad amount → 400
- Tip payments are written to the ledger (human source unless an agent_id
  is given); funding payments are not tips and are not recorded
- Redistribution failure is reported in the response, the tip stands

Designed for: autonomous creator tipping agent
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Optional

from core.adapters.facilitator import FacilitatorClient
from core.constitution import TIPPING_RULES, TokenSpec, UnknownChainError, get_chain_config, from_raw, to_raw
from core.directory import CreatorDirectory
from core.ledger import Ledger, LedgerError
from core.models import (
    RedistributionStatus, Settlement, SettlementProtocolKind, SettlementStatus, new_id,
)
from core.settlement import Redistributor, same_address
from core.x402 import (
    PAYMENT_RESPONSE_HEADER, PaymentRequirements, PaymentRequirementsError,
    decode_payment_header, encode_payment_header, payment_required_body,
)

logger = logging.getLogger("blinktip.paywall")


@dataclass
class GateResponse:
    status_code: int
    body: dict
    headers: dict = field(default_factory=dict)


class PaymentGate:
    """
    Usage:
        gate = PaymentGate(directory, ledger, facilitator, tokens, agent_addresses, ...)
        resp = await gate.handle_tip("alice", "base", amount="0.10", payment_header=None)
        # resp.status_code == 402, resp.body["accepts"][0]
    """

    def __init__(
        self,
        directory: CreatorDirectory,
        ledger: Ledger,
        facilitator: FacilitatorClient,
        tokens: dict[str, TokenSpec],
        agent_addresses: dict[str, str],
        redistributor: Optional[Redistributor] = None,
        treasury_chains: tuple = (),
        solana_fee_payer: str = "",
        public_base_url: str = "http://localhost:8000",
        default_amount: Decimal = TIPPING_RULES.TIP_AMOUNT_USD,
    ):
        self.directory = directory
        self.ledger = ledger
        self.facilitator = facilitator
        self.tokens = tokens
        self.agent_addresses = agent_addresses
        self.redistributor = redistributor or Redistributor()
        self.treasury_chains = tuple(treasury_chains)
        self.solana_fee_payer = solana_fee_payer
        self.public_base_url = public_base_url.rstrip("/")
        self.default_amount = default_amount

    # ============================================================
    # REQUIREMENTS
    # ============================================================

    def build_requirements(
        self, chain: str, pay_to: str, raw_amount: int, resource: str, description: str,
    ) -> PaymentRequirements:
        cfg = get_chain_config(chain)
        token = self.tokens[chain]
        if chain == "solana":
            extra = {"feePayer": self.solana_fee_payer or pay_to}
        else:
            extra = {"name": token.eip712_name, "version": token.eip712_version}
        return PaymentRequirements(
            network=cfg.x402_network,
            max_amount_required=str(raw_amount),
            pay_to=pay_to,
            asset=token.address,
            resource=resource,
            description=description,
            extra=extra,
        )

    def _parse_amount(self, chain: str, amount: Optional[str]) -> int:
        value = self.default_amount if amount in (None, "") else amount
        try:
            dec = Decimal(str(value))
        except InvalidOperation:
            raise ValueError(f"invalid amount {amount!r}")
        if not dec.is_finite():
            raise ValueError(f"invalid amount {amount!r}")
        if dec <= 0:
            raise ValueError("amount must be positive")
        return to_raw(dec, self.tokens[chain].decimals)

    def _check_chain(self, chain: str) -> Optional[GateResponse]:
        try:
            get_chain_config(chain)
        except UnknownChainError as e:
            return GateResponse(400, {"error": str(e)})
        if chain not in self.tokens:
            return GateResponse(400, {"error": f"chain {chain} not enabled"})
        return None

    # ============================================================
    # VERIFY + SETTLE
    # ============================================================

    async def _collect(self, requirements: PaymentRequirements, payment_header: str):
        """Returns (settle_response, None) or (None, GateResponse error)."""
        try:
            payload = decode_payment_header(payment_header)
        except PaymentRequirementsError as e:
            return None, GateResponse(402, payment_required_body(requirements, str(e)))

        verify = await self.facilitator.verify(payload, requirements.to_dict())
        if not verify.is_valid:
            body = payment_required_body(requirements, "Invalid payment")
            body["reason"] = verify.invalid_reason
            return None, GateResponse(402, body)

        settled = await self.facilitator.settle(payload, requirements.to_dict())
        if not settled.success or not settled.transaction:
            return None, GateResponse(500, {
                "error": "Payment settlement failed",
                "reason": settled.error_reason,
            })
        return settled, None

    # ============================================================
    # TIP RESOURCE
    # ============================================================

    async def handle_tip(
        self,
        slug: str,
        chain: str,
        amount: Optional[str] = None,
        payment_header: Optional[str] = None,
        agent_id: Optional[str] = None,
    ) -> GateResponse:
        bad_chain = self._check_chain(chain)
        if bad_chain:
            return bad_chain

        creator = self.directory.get_by_slug(slug)
        if creator is None:
            return GateResponse(404, {"error": "Creator not found"})
        recipient = creator.wallet_for(chain)
        if not recipient:
            return GateResponse(400, {"error": f"Creator has no {chain} wallet"})

        try:
            raw = self._parse_amount(chain, amount)
        except ValueError as e:
            return GateResponse(400, {"error": str(e)})

        via_treasury = chain in self.treasury_chains and bool(self.redistributor.address_for(chain))
        pay_to = self.redistributor.address_for(chain) if via_treasury else recipient
        token = self.tokens[chain]
        requirements = self.build_requirements(
            chain, pay_to, raw,
            resource=f"{self.public_base_url}/x402/tip/{slug}/{chain}",
            description=f"Tip {creator.name or slug} with {token.symbol}",
        )

        if not payment_header:
            return GateResponse(402, payment_required_body(requirements))

        settled, error = await self._collect(requirements, payment_header)
        if error:
            return error

        redistribution = RedistributionStatus.NOT_REQUIRED
        redistribution_ref = ""
        redistribution_error = ""
        if not same_address(pay_to, recipient):
            tx = await self.redistributor.redistribute(chain, recipient, raw)
            if tx.success:
                redistribution, redistribution_ref = RedistributionStatus.SUCCEEDED, tx.tx_hash
            else:
                redistribution, redistribution_error = RedistributionStatus.FAILED, tx.error

        tx_ref = redistribution_ref or settled.transaction
        settlement = Settlement(
            id=new_id("stl"),
            decision_id="",
            creator_id=creator.id,
            chain=chain,
            token=token.symbol,
            amount=from_raw(raw, token.decimals),
            protocol=SettlementProtocolKind.REQUEST_FOR_PAYMENT,
            transaction_ref=tx_ref,
            is_agent_tip=bool(agent_id),
            facilitator_ref=settled.transaction,
            redistribution_status=redistribution,
            redistribution_ref=redistribution_ref,
            redistribution_to=recipient if redistribution != RedistributionStatus.NOT_REQUIRED else "",
            reasoning=f"x402 payment via {chain}" + (f" by {agent_id}" if agent_id else ""),
        )
        try:
            self.ledger.append_settlement(settlement)
            self.ledger.finalize_settlement(settlement.id, SettlementStatus.CONFIRMED, tx_ref)
        except LedgerError as e:
            # Payment already happened on-chain; report it, flag the record problem
            logger.error(f"Failed to record tip {tx_ref} for {slug}: {e}")

        logger.info(f"x402 tip settled: {slug} on {chain} ({tx_ref[:16]}...)")
        body = {
            "success": True,
            "message": f"Successfully tipped {creator.name or slug}",
            "tip": {
                "id": settlement.id,
                "creator": creator.name,
                "slug": creator.slug,
                "amount": str(settlement.amount),
                "token": token.symbol,
                "transaction": tx_ref,
                "network": settled.network or requirements.network,
                "explorer": f"{get_chain_config(chain).explorer}{tx_ref}",
                "redistribution": {
                    "status": redistribution.value,
                    "transaction": redistribution_ref,
                    "facilitatorTransaction": settled.transaction,
                    "error": redistribution_error,
                },
            },
        }
        return GateResponse(200, body, {PAYMENT_RESPONSE_HEADER: encode_payment_header({
            "success": True, "transaction": settled.transaction, "network": settled.network,
            "payer": settled.payer,
        })})

    # ============================================================
    # FUNDING RESOURCE
    # ============================================================

    async def handle_funding(
        self, chain: str, amount: Optional[str] = None, payment_header: Optional[str] = None,
    ) -> GateResponse:
        bad_chain = self._check_chain(chain)
        if bad_chain:
            return bad_chain
        pay_to = self.agent_addresses.get(chain)
        if not pay_to:
            return GateResponse(400, {"error": f"Agent has no {chain} wallet"})
        try:
            raw = self._parse_amount(chain, amount)
        except ValueError as e:
            return GateResponse(400, {"error": str(e)})

        token = self.tokens[chain]
        requirements = self.build_requirements(
            chain, pay_to, raw,
            resource=f"{self.public_base_url}/x402/fund-agent/{chain}",
            description=f"Fund the tipping agent with {token.symbol} on {chain}",
        )
        if not payment_header:
            return GateResponse(402, payment_required_body(requirements))

        settled, error = await self._collect(requirements, payment_header)
        if error:
            return error

        logger.info(f"Agent funded on {chain}: {raw} base units ({settled.transaction[:16]}...)")
        return GateResponse(200, {
            "success": True,
            "message": f"Agent funded on {chain}",
            "funding": {
                "amount": str(from_raw(raw, token.decimals)),
                "token": token.symbol,
                "agentWallet": pay_to,
                "transaction": settled.transaction,
                "network": settled.network or requirements.network,
            },
        })
