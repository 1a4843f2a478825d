"""
Balance Aggregator - one snapshot of the agent's wallets per run

Chains are read concurrently and independently. A chain that cannot be
read is reported as disabled with zero balance, so the router never
plans a tip on it; the other chains are unaffected. No retries.
"""

import asyncio
import logging

from core.chain import ChainAdapter
from core.models import ChainBalance, WalletSnapshot

logger = logging.getLogger("blinktip.balances")


class BalanceAggregator:

    def __init__(self, adapters: dict[str, ChainAdapter]):
        self.adapters = adapters

    async def _read(self, chain: str, adapter: ChainAdapter) -> ChainBalance:
        try:
            balance = await adapter.get_balance()
            logger.info(
                f"[{chain}] balance: native={balance.native} "
                + " ".join(f"{k}={v}" for k, v in balance.stables.items())
            )
            return balance
        except Exception as e:
            logger.warning(f"[{chain}] balance read failed, chain disabled for this run: {e}")
            return ChainBalance(chain=chain, address=adapter.address, enabled=False, error=str(e))

    async def get_balances(self) -> WalletSnapshot:
        chains = list(self.adapters.items())
        balances = await asyncio.gather(*(self._read(c, a) for c, a in chains))
        return WalletSnapshot(chains={c: b for (c, _), b in zip(chains, balances)})
