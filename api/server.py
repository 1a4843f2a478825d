"""
BlinkTip API Server - FastAPI Backend

Endpoints:
- POST /agent/run                     Trigger one tipping run (returns RunReport)
- GET  /agent/status                  Wallet balances + cumulative stats
- POST /agent/reconcile               Retry failed redistributions
- GET  /x402/tip/{slug}/{chain}       402 requirements / paid tip to a creator
- POST /x402/tip/{slug}/{chain}       same, for clients that POST the payment
- GET  /x402/fund-agent/{chain}       402 requirements / paid agent top-up
- POST /x402/fund-agent/{chain}
- GET  /health                        Heartbeat

The x402 resources are public (payment = access). /agent/* is meant to sit
behind the deployment's own access control.
"""

import logging
import os
import time
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from core.x402 import PAYMENT_HEADER

logger = logging.getLogger("blinktip.api")


# ============================================================
# MODELS
# ============================================================

class RunRequest(BaseModel):
    timeout_seconds: Optional[float] = None


class HealthResponse(BaseModel):
    status: str
    uptime_seconds: float
    agent_running: bool
    chains: list[str]


def create_app(context) -> FastAPI:
    """
    Create FastAPI app wired to an AgentContext.

    context.agent:   TippingAgent
    context.gate:    PaymentGate
    """
    agent = context.agent
    gate = context.gate
    started_at = time.time()

    app = FastAPI(
        title="BlinkTip Agent",
        description="Autonomous multi-chain creator tipping",
        version="0.1.0",
    )

    # CORS: allow all in dev, restrict in production via CORS_ORIGINS env var
    cors_origins = os.getenv("CORS_ORIGINS", "*").split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-PAYMENT-RESPONSE"],
    )

    def _gate_response(resp) -> JSONResponse:
        return JSONResponse(status_code=resp.status_code, content=resp.body, headers=resp.headers)

    # ============================================================
    # AGENT
    # ============================================================

    @app.post("/agent/run")
    async def run_agent(req: Optional[RunRequest] = None):
        """Run the agent once. Always a structured report, 500 on an unsuccessful run."""
        timeout = req.timeout_seconds if req else None
        try:
            report = await agent.run_with_timeout(timeout)
        except Exception as e:
            logger.error(f"Agent run endpoint error: {e}", exc_info=True)
            return JSONResponse(status_code=500, content={"success": False, "errors": [str(e)]})
        return JSONResponse(status_code=200 if report.success else 500, content=report.to_dict())

    @app.get("/agent/status")
    async def agent_status():
        try:
            return await agent.status()
        except Exception as e:
            logger.error(f"Agent status error: {e}", exc_info=True)
            return JSONResponse(status_code=500, content={"error": str(e)})

    @app.post("/agent/reconcile")
    async def reconcile():
        """Resolve pending transfers, then retry intermediary → creator transfers that failed earlier."""
        pending = await context.orchestrator.reconcile_pending(context.ledger)
        results = await context.orchestrator.reconcile_redistributions(
            context.ledger, context.redistributor,
        )
        return {
            "attempted": len(results),
            "succeeded": sum(1 for r in results if r["success"]),
            "results": results,
            "pending": pending,
        }

    # ============================================================
    # x402 RESOURCES
    # ============================================================

    @app.api_route("/x402/tip/{slug}/{chain}", methods=["GET", "POST"])
    async def x402_tip(slug: str, chain: str, request: Request):
        resp = await gate.handle_tip(
            slug, chain.lower(),
            amount=request.query_params.get("amount"),
            payment_header=request.headers.get(PAYMENT_HEADER),
            agent_id=request.query_params.get("agent_id"),
        )
        return _gate_response(resp)

    @app.api_route("/x402/fund-agent/{chain}", methods=["GET", "POST"])
    async def x402_fund_agent(chain: str, request: Request):
        resp = await gate.handle_funding(
            chain.lower(),
            amount=request.query_params.get("amount"),
            payment_header=request.headers.get(PAYMENT_HEADER),
        )
        return _gate_response(resp)

    # ============================================================
    # HEALTH
    # ============================================================

    @app.get("/health", response_model=HealthResponse)
    async def health():
        return HealthResponse(
            status="ok",
            uptime_seconds=round(time.time() - started_at, 1),
            agent_running=agent.is_running,
            chains=list(context.adapters.keys()),
        )

    return app
