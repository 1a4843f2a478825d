"""
EVM Adapter: Base and Celo

ERC-20 tips from the agent's EOA, plus x402 "exact" payment payloads
(EIP-3009 transferWithAuthorization, signed off-chain, submitted by the
facilitator).

Design:
- Sync Web3 calls wrapped in asyncio.run_in_executor() (web3.py async is fragile)
- Gas estimation + 20% buffer, nonce auto from chain
- Receipt wait with timeout; status != 1 → failed, timeout → submitted but unconfirmed
- Same address on every EVM chain: one private key, one adapter per chain

Designed for: autonomous creator tipping agent
"""

import asyncio
import logging
import os
import time
from decimal import Decimal
from typing import Optional

from eth_account import Account
from web3 import Web3
from web3.exceptions import TransactionNotFound

from core.chain import ChainAdapter, ChainTxResult, ERC20_ABI
from core.constitution import ChainConfig, TokenSpec, from_raw, tokens_for_chain
from core.models import ChainBalance

logger = logging.getLogger("blinktip.adapter.evm")

RECEIPT_TIMEOUT = 120
DEFAULT_GAS = 200_000


class EvmChainAdapter(ChainAdapter):

    def __init__(
        self,
        chain: ChainConfig,
        token: TokenSpec,
        private_key: str,
        rpc_url: str = "",
        evm_chain_id: Optional[int] = None,
        token_addresses: Optional[dict[str, str]] = None,
        w3: Optional[Web3] = None,
    ):
        super().__init__(chain, token)
        self._private_key = private_key
        self._account = Account.from_key(private_key)
        self._evm_chain_id = evm_chain_id or chain.evm_chain_id
        self._w3 = w3 or Web3(Web3.HTTPProvider(rpc_url or chain.rpc, request_kwargs={"timeout": 30}))
        # symbol -> checksum address, overrides applied
        overrides = token_addresses or {}
        self._token_addresses = {
            t.symbol: Web3.to_checksum_address(overrides.get(t.symbol, t.address))
            for t in tokens_for_chain(chain.chain_id)
        }
        self._decimals = {t.symbol: t.decimals for t in tokens_for_chain(chain.chain_id)}
        self._tx_count = 0
        logger.info(f"EVM adapter ready: {chain.chain_id} | wallet={self.address[:10]}... | token={token.symbol}")

    @property
    def address(self) -> str:
        return self._account.address

    @property
    def token_address(self) -> str:
        return self._token_addresses[self.token.symbol]

    def _contract(self, symbol: str):
        return self._w3.eth.contract(address=self._token_addresses[symbol], abi=ERC20_ABI)

    def is_valid_address(self, address: str) -> bool:
        return bool(address) and Web3.is_address(address)

    # ============================================================
    # BALANCES
    # ============================================================

    async def get_balance(self) -> ChainBalance:
        loop = asyncio.get_running_loop()
        native_raw = await loop.run_in_executor(None, self._w3.eth.get_balance, self.address)
        stables = {}
        for symbol in self._token_addresses:
            raw = await loop.run_in_executor(
                None, self._contract(symbol).functions.balanceOf(self.address).call,
            )
            stables[symbol] = from_raw(raw, self._decimals[symbol])
        return ChainBalance(
            chain=self.chain_id,
            address=self.address,
            native=from_raw(native_raw, self.chain.native_decimals),
            stables=stables,
        )

    # ============================================================
    # TRANSFERS
    # ============================================================

    async def ensure_recipient_ready(self, address: str) -> Optional[str]:
        # ERC-20 balances need no per-recipient setup
        return None

    async def transfer(self, to: str, raw_amount: int) -> ChainTxResult:
        if not self.is_valid_address(to):
            return ChainTxResult(success=False, chain=self.chain_id, error=f"invalid address {to}")
        tx_fn = self._contract(self.token.symbol).functions.transfer(
            Web3.to_checksum_address(to), int(raw_amount),
        )
        return await self._send_tx(tx_fn)

    async def _send_tx(self, tx_fn) -> ChainTxResult:
        """Build, sign, and send a transaction. Handles gas estimation + nonce."""
        w3 = self._w3
        chain_id = self.chain_id
        tx_hash_hex = ""

        def _submit():
            nonce = w3.eth.get_transaction_count(self.address)
            tx = tx_fn.build_transaction({
                "from": self.address,
                "nonce": nonce,
                "gasPrice": w3.eth.gas_price,
                "chainId": self._evm_chain_id,
            })

            # Gas estimation + 20% buffer
            try:
                gas_estimate = w3.eth.estimate_gas(tx)
                tx["gas"] = int(gas_estimate * 1.2)
            except Exception as gas_err:
                logger.warning(f"Gas estimation failed for {chain_id}, using default 200k: {gas_err}")
                tx["gas"] = DEFAULT_GAS

            signed = w3.eth.account.sign_transaction(tx, self._private_key)
            return w3.eth.send_raw_transaction(signed.raw_transaction)

        loop = asyncio.get_running_loop()
        try:
            tx_hash = await loop.run_in_executor(None, _submit)
            tx_hash_hex = Web3.to_hex(tx_hash)
        except Exception as e:
            logger.warning(f"TX submit failed [{chain_id}]: {e}")
            return ChainTxResult(success=False, chain=chain_id, error=str(e))

        try:
            receipt = await loop.run_in_executor(
                None, lambda: w3.eth.wait_for_transaction_receipt(tx_hash, timeout=RECEIPT_TIMEOUT),
            )
        except Exception as e:
            logger.warning(f"TX unconfirmed [{chain_id}]: {tx_hash_hex[:16]}... {e}")
            return ChainTxResult(
                success=False, tx_hash=tx_hash_hex, chain=chain_id,
                error=f"confirmation failed: {e}",
            )

        if receipt["status"] == 1:
            self._tx_count += 1
            gas_used = receipt.get("gasUsed", 0)
            logger.info(f"TX SUCCESS [{chain_id}]: {tx_hash_hex[:16]}... | gas={gas_used}")
            return ChainTxResult(
                success=True, tx_hash=tx_hash_hex, chain=chain_id,
                confirmed=True, gas_used=gas_used,
            )

        error = f"TX reverted: {tx_hash_hex}"
        logger.warning(f"TX FAILED [{chain_id}]: {error}")
        return ChainTxResult(success=False, tx_hash=tx_hash_hex, chain=chain_id, error=error, confirmed=True)

    async def transaction_status(self, tx_ref: str) -> Optional[bool]:
        loop = asyncio.get_running_loop()
        try:
            receipt = await loop.run_in_executor(None, self._w3.eth.get_transaction_receipt, tx_ref)
        except TransactionNotFound:
            return None
        return receipt["status"] == 1

    # ============================================================
    # x402 PAYMENT PAYLOAD (EIP-3009)
    # ============================================================

    async def sign_payment(self, requirements: dict) -> dict:
        extra = requirements.get("extra") or {}
        name = extra.get("name") or self.token.eip712_name
        version = extra.get("version") or self.token.eip712_version
        if not name or not version:
            raise ValueError(f"{self.token.symbol} on {self.chain_id} does not support transferWithAuthorization")

        now = int(time.time())
        valid_after = now - 600
        valid_before = now + int(requirements.get("maxTimeoutSeconds") or 300)
        nonce = os.urandom(32)
        asset = Web3.to_checksum_address(requirements.get("asset") or self.token_address)
        pay_to = Web3.to_checksum_address(requirements["payTo"])
        value = int(requirements["maxAmountRequired"])

        typed = {
            "types": {
                "EIP712Domain": [
                    {"name": "name", "type": "string"},
                    {"name": "version", "type": "string"},
                    {"name": "chainId", "type": "uint256"},
                    {"name": "verifyingContract", "type": "address"},
                ],
                "TransferWithAuthorization": [
                    {"name": "from", "type": "address"},
                    {"name": "to", "type": "address"},
                    {"name": "value", "type": "uint256"},
                    {"name": "validAfter", "type": "uint256"},
                    {"name": "validBefore", "type": "uint256"},
                    {"name": "nonce", "type": "bytes32"},
                ],
            },
            "primaryType": "TransferWithAuthorization",
            "domain": {
                "name": name,
                "version": version,
                "chainId": self._evm_chain_id,
                "verifyingContract": asset,
            },
            "message": {
                "from": self.address,
                "to": pay_to,
                "value": value,
                "validAfter": valid_after,
                "validBefore": valid_before,
                "nonce": nonce,
            },
        }
        signed = Account.sign_typed_data(self._private_key, full_message=typed)

        return {
            "x402Version": 1,
            "scheme": "exact",
            "network": requirements.get("network") or self.chain.x402_network,
            "payload": {
                "signature": Web3.to_hex(signed.signature),
                "authorization": {
                    "from": self.address,
                    "to": pay_to,
                    "value": str(value),
                    "validAfter": str(valid_after),
                    "validBefore": str(valid_before),
                    "nonce": Web3.to_hex(nonce),
                },
            },
        }

    def status(self) -> dict:
        return {
            "chain": self.chain_id,
            "address": self.address,
            "token": self.token.symbol,
            "tx_count": self._tx_count,
        }
