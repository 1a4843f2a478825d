"""
Solana Adapter: SPL USDC tips

Design:
- solana-py AsyncClient for RPC, solders for keys, messages and signing
- Versioned (v0) transactions, sent raw, confirmed at "confirmed" commitment
- Recipient associated token account is created in its OWN transaction
  before the tip; a failed setup never leaves a half-built tip transaction
- x402 payload: v0 transaction with the facilitator as fee payer, partially
  signed by the agent (facilitator adds the fee-payer signature on settle)

Designed for: autonomous creator tipping agent
"""

import base64
import logging
from typing import Optional

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.types import TxOpts
from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.keypair import Keypair
from solders.message import MessageV0, to_bytes_versioned
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import (
    TransferCheckedParams,
    create_associated_token_account,
    get_associated_token_address,
    transfer_checked,
)

from core.chain import ChainAdapter, ChainTxResult
from core.constitution import ChainConfig, TokenSpec, from_raw
from core.models import ChainBalance

logger = logging.getLogger("blinktip.adapter.solana")

COMPUTE_UNIT_LIMIT = 40_000
COMPUTE_UNIT_PRICE_MICROLAMPORTS = 1


def _parse_pubkey(address: str) -> Optional[Pubkey]:
    try:
        return Pubkey.from_string(address)
    except (ValueError, TypeError):
        return None


class SolanaChainAdapter(ChainAdapter):

    def __init__(
        self,
        chain: ChainConfig,
        token: TokenSpec,
        secret_key: str,
        rpc_url: str = "",
        mint_address: str = "",
        client: Optional[AsyncClient] = None,
    ):
        super().__init__(chain, token)
        self._keypair = Keypair.from_base58_string(secret_key)
        self._client = client or AsyncClient(rpc_url or chain.rpc, commitment=Confirmed)
        self._mint = Pubkey.from_string(mint_address or token.address)
        self._tx_count = 0
        logger.info(f"Solana adapter ready | wallet={self.address[:10]}... | mint={str(self._mint)[:10]}...")

    @property
    def address(self) -> str:
        return str(self._keypair.pubkey())

    def is_valid_address(self, address: str) -> bool:
        return bool(address) and _parse_pubkey(address) is not None

    def _ata(self, owner: Pubkey) -> Pubkey:
        return get_associated_token_address(owner, self._mint)

    async def _account_exists(self, account: Pubkey) -> bool:
        resp = await self._client.get_account_info(account)
        return resp.value is not None

    # ============================================================
    # BALANCES
    # ============================================================

    async def get_balance(self) -> ChainBalance:
        owner = self._keypair.pubkey()
        lamports = (await self._client.get_balance(owner)).value

        ata = self._ata(owner)
        usdc_raw = 0
        if await self._account_exists(ata):
            resp = await self._client.get_token_account_balance(ata)
            usdc_raw = int(resp.value.amount)

        return ChainBalance(
            chain=self.chain_id,
            address=self.address,
            native=from_raw(lamports, self.chain.native_decimals),
            stables={self.token.symbol: from_raw(usdc_raw, self.token.decimals)},
        )

    # ============================================================
    # TRANSACTIONS
    # ============================================================

    async def _send(self, instructions: list) -> ChainTxResult:
        try:
            blockhash = (await self._client.get_latest_blockhash()).value.blockhash
            msg = MessageV0.try_compile(
                payer=self._keypair.pubkey(),
                instructions=instructions,
                address_lookup_table_accounts=[],
                recent_blockhash=blockhash,
            )
            tx = VersionedTransaction(msg, [self._keypair])
            resp = await self._client.send_raw_transaction(
                bytes(tx), opts=TxOpts(preflight_commitment=Confirmed),
            )
            signature = resp.value
        except Exception as e:
            logger.warning(f"Solana submit failed: {e}")
            return ChainTxResult(success=False, chain=self.chain_id, error=str(e))

        sig_str = str(signature)
        try:
            status = await self._client.confirm_transaction(signature, commitment=Confirmed)
            tx_status = status.value[0] if status.value else None
        except Exception as e:
            logger.warning(f"Solana tx unconfirmed: {sig_str[:16]}... {e}")
            return ChainTxResult(
                success=False, tx_hash=sig_str, chain=self.chain_id,
                error=f"confirmation failed: {e}",
            )

        if tx_status is None:
            return ChainTxResult(
                success=False, tx_hash=sig_str, chain=self.chain_id,
                error="confirmation failed: no status",
            )
        if tx_status.err is not None:
            error = f"TX failed: {tx_status.err}"
            logger.warning(f"TX FAILED [solana]: {sig_str[:16]}... {error}")
            return ChainTxResult(success=False, tx_hash=sig_str, chain=self.chain_id, error=error, confirmed=True)

        self._tx_count += 1
        logger.info(f"TX SUCCESS [solana]: {sig_str[:16]}...")
        return ChainTxResult(success=True, tx_hash=sig_str, chain=self.chain_id, confirmed=True)

    async def ensure_recipient_ready(self, address: str) -> Optional[str]:
        owner = _parse_pubkey(address)
        if owner is None:
            raise ValueError(f"invalid Solana address {address}")
        ata = self._ata(owner)
        if await self._account_exists(ata):
            return None

        logger.info(f"Creating token account for {address[:10]}...")
        ix = create_associated_token_account(
            payer=self._keypair.pubkey(), owner=owner, mint=self._mint,
        )
        result = await self._send([ix])
        if not result.success:
            raise RuntimeError(f"token account creation failed: {result.error}")
        return result.tx_hash

    def _transfer_ix(self, to_owner: Pubkey, raw_amount: int):
        return transfer_checked(
            TransferCheckedParams(
                program_id=TOKEN_PROGRAM_ID,
                source=self._ata(self._keypair.pubkey()),
                mint=self._mint,
                dest=self._ata(to_owner),
                owner=self._keypair.pubkey(),
                amount=int(raw_amount),
                decimals=self.token.decimals,
            )
        )

    async def transfer(self, to: str, raw_amount: int) -> ChainTxResult:
        owner = _parse_pubkey(to)
        if owner is None:
            return ChainTxResult(success=False, chain=self.chain_id, error=f"invalid address {to}")
        return await self._send([self._transfer_ix(owner, raw_amount)])

    async def transaction_status(self, tx_ref: str) -> Optional[bool]:
        resp = await self._client.get_signature_statuses([Signature.from_string(tx_ref)])
        status = resp.value[0] if resp.value else None
        if status is None:
            return None
        if status.err is not None:
            return False
        if status.confirmation_status in (TransactionConfirmationStatus.Confirmed,
                                          TransactionConfirmationStatus.Finalized):
            return True
        return None

    # ============================================================
    # x402 PAYMENT PAYLOAD
    # ============================================================

    async def sign_payment(self, requirements: dict) -> dict:
        pay_to = _parse_pubkey(requirements["payTo"])
        if pay_to is None:
            raise ValueError(f"invalid payTo {requirements['payTo']}")
        extra = requirements.get("extra") or {}
        fee_payer = _parse_pubkey(extra.get("feePayer") or requirements["payTo"])

        instructions = [
            set_compute_unit_limit(COMPUTE_UNIT_LIMIT),
            set_compute_unit_price(COMPUTE_UNIT_PRICE_MICROLAMPORTS),
            self._transfer_ix(pay_to, int(requirements["maxAmountRequired"])),
        ]
        blockhash = (await self._client.get_latest_blockhash()).value.blockhash
        msg = MessageV0.try_compile(
            payer=fee_payer,
            instructions=instructions,
            address_lookup_table_accounts=[],
            recent_blockhash=blockhash,
        )

        # Only our signature; fee payer slot stays empty for the facilitator
        own_sig = self._keypair.sign_message(to_bytes_versioned(msg))
        signers = msg.account_keys[: msg.header.num_required_signatures]
        sigs = [own_sig if key == self._keypair.pubkey() else Signature.default() for key in signers]
        tx = VersionedTransaction.populate(msg, sigs)

        return {
            "x402Version": 1,
            "scheme": "exact",
            "network": requirements.get("network") or self.chain.x402_network,
            "payload": {"transaction": base64.b64encode(bytes(tx)).decode()},
        }

    def status(self) -> dict:
        return {
            "chain": self.chain_id,
            "address": self.address,
            "token": self.token.symbol,
            "tx_count": self._tx_count,
        }

    async def close(self):
        await self._client.close()
