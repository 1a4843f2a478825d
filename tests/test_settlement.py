"""
Tests for the x402 payment-request protocol and the wire helpers.

The payment resource and the facilitator are mocked; the adapter is the
in-memory fake, so signing and redistribution are recorded, not sent.
"""

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from core.adapters.facilitator import SettleResponse, VerifyResponse
from core.models import FailureKind, RedistributionStatus, SettlementProtocolKind
from core.settlement import PaymentRequestProtocol, Redistributor, SettlementRequest
from core.x402 import (
    PaymentRequirementsError,
    decode_payment_header,
    encode_payment_header,
    select_requirements,
)

from conftest import EVM_ADDR, TREASURY_EVM, FakeChainAdapter, make_creator

USDC_BASE = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"


def accepts(pay_to=EVM_ADDR, amount="100000", network="base"):
    entry = {
        "scheme": "exact",
        "network": network,
        "payTo": pay_to,
        "asset": USDC_BASE,
        "extra": {"name": "USD Coin", "version": "2"},
    }
    if amount is not None:
        entry["maxAmountRequired"] = amount
    return {"x402Version": 1, "accepts": [entry]}


def facilitator(valid=True, settled=True, tx="0xsettled"):
    fac = AsyncMock()
    fac.verify.return_value = VerifyResponse(is_valid=valid, invalid_reason="" if valid else "bad signature")
    fac.settle.return_value = SettleResponse(
        success=settled, transaction=tx if settled else "", network="base",
        error_reason="" if settled else "nonce used",
    )
    return fac


def protocol(fac, body, redistributor=None):
    p = PaymentRequestProtocol("http://tips.test", fac, redistributor)
    p.fetch_requirements = AsyncMock(return_value=body)
    return p


def request(available="5"):
    return SettlementRequest(make_creator(), EVM_ADDR, Decimal("0.10"), Decimal(available))


class TestPaymentRequestProtocol:

    async def test_pays_creator_directly(self):
        adapter = FakeChainAdapter("base")
        fac = facilitator()
        result = await protocol(fac, accepts()).settle(adapter, request())

        assert result.success
        assert result.protocol == SettlementProtocolKind.REQUEST_FOR_PAYMENT
        assert result.transaction_ref == "0xsettled"
        assert result.amount == Decimal("0.1")
        assert result.redistribution_status == RedistributionStatus.NOT_REQUIRED
        assert adapter.signed[0]["payTo"] == EVM_ADDR
        fac.verify.assert_awaited_once()
        fac.settle.assert_awaited_once()

    async def test_verification_failure_is_distinct(self):
        fac = facilitator(valid=False)
        result = await protocol(fac, accepts()).settle(FakeChainAdapter("base"), request())
        assert result.failure == FailureKind.VERIFICATION_FAILED
        assert "bad signature" in result.error
        fac.settle.assert_not_awaited()

    async def test_settlement_failure_is_distinct(self):
        result = await protocol(facilitator(settled=False), accepts()).settle(FakeChainAdapter("base"), request())
        assert result.failure == FailureKind.SETTLEMENT_FAILED
        assert "nonce used" in result.error

    @pytest.mark.parametrize("amount", [None, "", "abc", "0", "-5"])
    async def test_bad_required_amount_is_hard_error(self, amount):
        adapter = FakeChainAdapter("base")
        result = await protocol(facilitator(), accepts(amount=amount)).settle(adapter, request())
        assert result.failure == FailureKind.REQUIREMENTS_ERROR
        assert adapter.signed == []

    async def test_required_amount_above_ceiling_refused(self):
        adapter = FakeChainAdapter("base")
        result = await protocol(facilitator(), accepts(amount="1000000")).settle(adapter, request())
        assert result.failure == FailureKind.REQUIREMENTS_ERROR
        assert "exceeds limit" in result.error
        assert adapter.signed == []

    async def test_insufficient_for_required_amount(self):
        result = await protocol(facilitator(), accepts(amount="120000")).settle(
            FakeChainAdapter("base"), request(available="0.11"))
        assert result.failure == FailureKind.INSUFFICIENT_FUNDS

    async def test_no_entry_for_network(self):
        result = await protocol(facilitator(), accepts(network="solana")).settle(FakeChainAdapter("base"), request())
        assert result.failure == FailureKind.REQUIREMENTS_ERROR

    async def test_resource_unreachable_is_protocol_error(self):
        p = protocol(facilitator(), None)
        p.fetch_requirements = AsyncMock(side_effect=ConnectionError("refused"))
        result = await p.settle(FakeChainAdapter("base"), request())
        assert result.failure == FailureKind.PROTOCOL_ERROR

    async def test_redistributes_from_intermediary(self):
        treasury = FakeChainAdapter("base", address=TREASURY_EVM)
        result = await protocol(facilitator(), accepts(pay_to=TREASURY_EVM), Redistributor({"base": treasury})).settle(
            FakeChainAdapter("base"), request())
        assert result.success
        assert result.redistribution_status == RedistributionStatus.SUCCEEDED
        assert result.redistribution_to == EVM_ADDR
        assert result.facilitator_ref == "0xsettled"
        assert result.transaction_ref == "base-tx-1"
        assert treasury.transfers == [(EVM_ADDR, 100_000)]

    async def test_redistribution_failure_keeps_tip(self):
        treasury = FakeChainAdapter("base", address=TREASURY_EVM, fail_transfer="out of gas")
        result = await protocol(facilitator(), accepts(pay_to=TREASURY_EVM), Redistributor({"base": treasury})).settle(
            FakeChainAdapter("base"), request())
        assert result.success
        assert result.redistribution_status == RedistributionStatus.FAILED
        assert result.transaction_ref == "0xsettled"
        assert "out of gas" in result.error

    async def test_checksum_case_is_same_address(self):
        lower = "0x" + "ab" * 20
        treasury = FakeChainAdapter("base", address=TREASURY_EVM)
        req = SettlementRequest(make_creator(evm=lower), lower, Decimal("0.10"), Decimal("5"))
        result = await protocol(facilitator(), accepts(pay_to="0x" + "AB" * 20),
                                Redistributor({"base": treasury})).settle(FakeChainAdapter("base"), req)
        assert result.success
        assert result.redistribution_status == RedistributionStatus.NOT_REQUIRED
        assert treasury.transfers == []


class TestWire:

    def test_header_round_trip(self):
        payload = {"x402Version": 1, "scheme": "exact", "network": "base", "payload": {"signature": "0x1"}}
        assert decode_payment_header(encode_payment_header(payload)) == payload

    @pytest.mark.parametrize("header", [None, "", "not-base64!!", encode_payment_header({"x": 1})])
    def test_bad_header(self, header):
        with pytest.raises(PaymentRequirementsError):
            decode_payment_header(header)

    def test_select_requires_pay_to(self):
        body = accepts()
        body["accepts"][0]["payTo"] = ""
        with pytest.raises(PaymentRequirementsError):
            select_requirements(body, "base")

    def test_select_empty_accepts(self):
        with pytest.raises(PaymentRequirementsError):
            select_requirements({"accepts": []}, "base")
