"""
BlinkTip agent - main entry point

Loads settings, builds every service once, starts the server.
One file to understand how everything connects.

Usage:
    python main.py              # Start the API (agent runs via POST /agent/run)
    python main.py --run-once   # One agent run, print the RunReport, exit
"""

import os
import re
import sys
import json
import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv

# ============================================================
# BOOTSTRAP
# ============================================================

load_dotenv()

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


class _SecretMaskingFilter(logging.Filter):
    """Redact private keys from all log output: 64-char hex (EVM) and base58 keypairs (Solana)."""
    _PATTERNS = (
        re.compile(r'(?<![0-9a-fA-F])(?:0x)?([0-9a-fA-F]{64})(?![0-9a-fA-F])'),
        re.compile(r'(?<![1-9A-HJ-NP-Za-km-z])[1-9A-HJ-NP-Za-km-z]{86,88}(?![1-9A-HJ-NP-Za-km-z])'),
    )

    def _mask(self, text: str) -> str:
        for pattern in self._PATTERNS:
            text = pattern.sub('[REDACTED]', text)
        return text

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        if isinstance(record.msg, str):
            record.msg = self._mask(record.msg)
        if record.args:
            try:
                formatted = record.getMessage()
                masked = self._mask(formatted)
                if masked != formatted:
                    record.msg = masked
                    record.args = None
            except Exception:
                pass
        return True


_mask_filter = _SecretMaskingFilter()
for _h in logging.root.handlers:
    _h.addFilter(_mask_filter)

logger = logging.getLogger("blinktip.main")


# ============================================================
# MODULE IMPORTS
# ============================================================

from api.server import create_app
from core.context import AgentContext, build_context
from core.settings import AgentSettings


def create_blinktip_app():
    """Build settings + services, wire them into the FastAPI app."""
    settings = AgentSettings.from_env()
    context = build_context(settings)
    app = create_app(context)

    @asynccontextmanager
    async def lifespan(app):
        logger.info("=" * 60)
        logger.info(
            f"BlinkTip agent up | chains={list(context.adapters)} | "
            f"tip={settings.tip_amount} | max/run={settings.max_tips_per_run}"
        )
        logger.info("=" * 60)
        yield
        logger.info("Shutting down, closing clients...")
        await context.close()

    app.router.lifespan_context = lifespan
    app.state.context = context
    return app


async def _run_once(context: AgentContext) -> int:
    try:
        report = await context.agent.run_with_timeout()
    finally:
        await context.close()
    print(json.dumps(report.to_dict(), indent=2))
    return 0 if report.success else 1


# ============================================================
# ENTRY POINT
# ============================================================

if __name__ == "__main__" and "--run-once" in sys.argv:
    sys.exit(asyncio.run(_run_once(build_context(AgentSettings.from_env()))))

app = create_blinktip_app()

if __name__ == "__main__":
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    reload = os.getenv("DEV", "").lower() in ("1", "true", "yes")

    logger.info(f"Starting server on {host}:{port} (reload={reload})")

    uvicorn.run(
        "main:app",
        host=host,
        port=port,
        reload=reload,
        log_level=LOG_LEVEL.lower(),
    )
