"""
Service wiring - every long-lived handle the process owns

Built once from AgentSettings by main.py and passed explicitly to the
agent and the API. No module-level singletons below this point.
"""

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Optional

from core.adapters.evm_adapter import EvmChainAdapter
from core.adapters.facilitator import FacilitatorClient
from core.adapters.solana_adapter import SolanaChainAdapter
from core.agent import TippingAgent
from core.balances import BalanceAggregator
from core.chain import ChainAdapter
from core.constitution import TokenSpec, get_chain_config, get_token
from core.decision import DecisionEngine
from core.directory import JsonCreatorDirectory
from core.ledger import Ledger
from core.paywall import PaymentGate
from core.reasoning import OpenAIReasoningOracle
from core.router import SettlementOrchestrator
from core.scoring import KaitoScoreProvider
from core.selector import CandidateSelector
from core.settings import PROTOCOL_X402, AgentSettings
from core.settlement import (
    DirectTransferProtocol, PaymentRequestProtocol, Redistributor, SettlementProtocol,
)

logger = logging.getLogger("blinktip.context")


@dataclass
class AgentContext:
    settings: AgentSettings
    ledger: Ledger
    agent: TippingAgent
    gate: PaymentGate
    orchestrator: SettlementOrchestrator
    redistributor: Redistributor
    adapters: dict[str, ChainAdapter] = field(default_factory=dict)
    closers: list = field(default_factory=list)

    async def close(self):
        for closer in self.closers:
            try:
                await closer()
            except Exception as e:
                logger.warning(f"Shutdown: close failed: {e}")


def tip_tokens(settings: AgentSettings) -> dict[str, TokenSpec]:
    """Tip token per chain with any address override applied."""
    tokens = {}
    for chain in settings.chain_priority:
        symbol = settings.tip_token_for(chain)
        token = get_token(chain, symbol)
        tokens[chain] = dataclasses.replace(token, address=settings.token_address(chain, token.symbol))
    return tokens


def _symbol_overrides(settings: AgentSettings, chain: str) -> dict[str, str]:
    prefix = f"{chain}:"
    return {k[len(prefix):]: v for k, v in settings.token_addresses.items() if k.startswith(prefix)}


def build_adapter(
    settings: AgentSettings, chain: str, token: TokenSpec, evm_key: str, solana_key: str,
) -> Optional[ChainAdapter]:
    cfg = get_chain_config(chain)
    rpc = settings.rpc_urls.get(chain, cfg.rpc)
    if cfg.evm_chain_id:
        if not evm_key:
            return None
        return EvmChainAdapter(
            cfg, token, evm_key, rpc,
            evm_chain_id=settings.evm_chain_ids.get(chain),
            token_addresses=_symbol_overrides(settings, chain),
        )
    if not solana_key:
        return None
    return SolanaChainAdapter(cfg, token, solana_key, rpc, mint_address=token.address)


def build_adapters(settings: AgentSettings, tokens: dict[str, TokenSpec], evm_key: str, solana_key: str) -> dict[str, ChainAdapter]:
    adapters = {}
    for chain, token in tokens.items():
        try:
            adapter = build_adapter(settings, chain, token, evm_key, solana_key)
        except Exception as e:
            logger.warning(f"Failed to initialize {chain} adapter: {e}")
            continue
        if adapter is None:
            logger.warning(f"No key configured for {chain} - chain disabled")
            continue
        adapters[chain] = adapter
    return adapters


def build_context(settings: AgentSettings) -> AgentContext:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    tokens = tip_tokens(settings)

    adapters = build_adapters(settings, tokens, settings.evm_private_key, settings.solana_secret_key)
    treasury = build_adapters(
        settings,
        {c: t for c, t in tokens.items() if c in settings.treasury_chains},
        settings.treasury_evm_private_key,
        settings.treasury_solana_secret_key,
    )
    redistributor = Redistributor(treasury)

    ledger = Ledger(settings.ledger_path)
    directory = JsonCreatorDirectory(settings.creators_path)
    facilitator = FacilitatorClient(settings.facilitator_url)
    payment_request = PaymentRequestProtocol(
        settings.public_base_url, facilitator, redistributor,
        max_required_ratio=settings.max_required_ratio,
    )
    direct = DirectTransferProtocol()
    protocols: dict[str, SettlementProtocol] = {
        chain: payment_request if settings.protocol_for(chain) == PROTOCOL_X402 else direct
        for chain in adapters
    }

    orchestrator = SettlementOrchestrator(
        adapters, protocols,
        priority=settings.chain_priority,
        tip_amount=settings.tip_amount,
        recheck_balance=settings.recheck_balance,
    )
    scorer = KaitoScoreProvider(settings.kaito_api_url)
    oracle = OpenAIReasoningOracle(
        api_key=settings.openrouter_api_key,
        base_url=settings.openrouter_base_url,
        model=settings.reasoning_model,
    )
    engine = DecisionEngine(
        oracle,
        tip_amount=settings.tip_amount,
        max_tips_per_run=settings.max_tips_per_run,
        cooldown_days=settings.cooldown_days,
    )
    selector = CandidateSelector(directory, ledger, cooldown_days=settings.cooldown_days)
    agent = TippingAgent(
        selector, BalanceAggregator(adapters), scorer, engine, orchestrator, ledger,
        max_tips_per_run=settings.max_tips_per_run,
        candidate_delay=settings.candidate_delay,
        run_timeout=settings.run_timeout,
    )
    gate = PaymentGate(
        directory, ledger, facilitator,
        tokens=tokens,
        agent_addresses={c: a.address for c, a in adapters.items()},
        redistributor=redistributor,
        treasury_chains=settings.treasury_chains,
        solana_fee_payer=settings.solana_fee_payer,
        public_base_url=settings.public_base_url,
        default_amount=settings.tip_amount,
    )

    closers = [scorer.close, facilitator.close, payment_request.close, oracle.close]
    closers += [a.close for a in adapters.values()] + [a.close for a in treasury.values()]

    logger.info(
        f"Context ready: chains={list(adapters)} priority={settings.chain_priority} "
        f"protocols={ {c: p.kind.value for c, p in protocols.items()} } "
        f"treasury={list(treasury)}"
    )
    return AgentContext(
        settings=settings,
        ledger=ledger,
        agent=agent,
        gate=gate,
        orchestrator=orchestrator,
        redistributor=redistributor,
        adapters=adapters,
        closers=closers,
    )
