#!/usr/bin/env python3
"""
Status API for the Live Signal Trader.
Runs the configured traders and exposes their state read-only.
"""

from datetime import datetime
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse
import uvicorn

from config import TraderConfig
from trader_runner import TraderRunner, resolve_configurations

# ============================================================================
# FASTAPI APP
# ============================================================================

app = FastAPI(
    title="Live Signal Trader API",
    description="Trader status, open trades and stream health",
    version="1.0.0",
)

# ============================================================================
# GLOBAL STATE
# ============================================================================

runner: Optional[TraderRunner] = None
_configs: Optional[list[TraderConfig]] = None


def configure(configs: list[TraderConfig]):
    """Set the trader configurations used at startup (called from the CLI)"""
    global _configs
    _configs = configs


# ============================================================================
# STARTUP / SHUTDOWN
# ============================================================================

@app.on_event("startup")
async def startup():
    """Start all traders"""
    global runner
    configs = _configs or resolve_configurations()
    runner = TraderRunner(configs)
    await runner.start()
    print(f"[Server] Started {len(runner.traders)} traders")


@app.on_event("shutdown")
async def shutdown():
    """Stop all traders"""
    if runner:
        await runner.stop()
    print("[Server] Shutdown complete")


# ============================================================================
# REST ENDPOINTS
# ============================================================================

@app.get("/")
async def root():
    """Health check"""
    return {
        "status": "ok",
        "traders": len(runner.traders) if runner else 0,
        "timestamp": datetime.now().isoformat(),
    }


@app.get("/api/traders")
async def get_traders():
    """Status of every running trader"""
    if not runner:
        return {"traders": [], "failed": []}
    status = runner.get_status()
    return {"traders": status["traders"], "failed": status["failed"]}


@app.get("/api/traders/{symbol}/{interval}")
async def get_trader(symbol: str, interval: str):
    """Status of one trader"""
    trader = runner.get_trader(symbol, interval) if runner else None
    if not trader:
        return JSONResponse({"error": f"Unknown trader: {symbol} {interval}"}, status_code=404)
    return trader.get_status()


@app.get("/api/connections")
async def get_connections():
    """Stream health per trader"""
    if not runner:
        return {"connections": {}}
    return {"connections": runner.monitor.get_status()}


# ============================================================================
# MAIN
# ============================================================================

def main():
    """Run the server"""
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8000,
        log_level="info",
    )


if __name__ == "__main__":
    main()
