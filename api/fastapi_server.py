from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from config import config
from monitoring.logging_utils import setup_logging


engine = None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@asynccontextmanager
async def lifespan(app: FastAPI):
    global engine
    from main import PositionEngine
    engine = PositionEngine()
    await engine.start()
    try:
        yield
    finally:
        if engine:
            await engine.shutdown()


app = FastAPI(title="Position Sentinel API", version="1.0.0", lifespan=lifespan)


class TickRequest(BaseModel):
    symbols: Optional[List[str]] = None


class ForwardedEvent(BaseModel):
    symbol: str
    posSide: Optional[str] = None
    size: Optional[float] = None
    uplRatio: Optional[float] = None
    candleDir: Optional[str] = None
    ts: Optional[int] = None


def _engine():
    if engine is None:
        raise HTTPException(status_code=503, detail="Engine not initialized")
    return engine


@app.get("/")
async def root():
    return {
        "service": "Position Sentinel",
        "version": "1.0.0",
        "status": "running" if engine and engine.running else "stopped"
    }


@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": _now(),
        "engine_running": engine.running if engine else False,
        "accounts": len(engine.monitors) if engine else 0,
    }


@app.get("/accounts")
async def list_accounts():
    return {"accounts": _engine().status(), "timestamp": _now()}


@app.post("/accounts/{account_id}/start")
async def start_account(account_id: str):
    monitor = await _engine().start_account(account_id)
    return {"status": "started", "account": monitor.status(), "timestamp": _now()}


@app.post("/accounts/{account_id}/stop")
async def stop_account(account_id: str):
    stopped = await _engine().stop_account(account_id)
    return {"status": "stopped" if stopped else "not_running", "timestamp": _now()}


@app.post("/accounts/{account_id}/refresh")
async def refresh_account(account_id: str):
    result = await _engine().refresh_account(account_id)
    if result is None:
        raise HTTPException(status_code=404, detail=f"Account {account_id} is not running")
    return {"status": "refreshed" if result else "refresh_failed", "timestamp": _now()}


@app.get("/accounts/{account_id}/status")
async def account_status(account_id: str):
    return _engine().status(account_id)


@app.post("/accounts/{account_id}/tick")
async def tick_account(account_id: str, body: Optional[TickRequest] = None):
    symbols = body.symbols if body else None
    try:
        summary: Dict[str, Any] = await _engine().tick(account_id, symbols)
    except RuntimeError as exc:
        raise HTTPException(status_code=500, detail=str(exc))
    return {"ok": True, **summary, "timestamp": _now()}


@app.post("/accounts/{account_id}/events")
async def forward_event(account_id: str, event: ForwardedEvent):
    payload = event.model_dump(exclude_none=True)
    decisions = await _engine().forward_event(account_id, payload)
    return {"ok": True, "decisions": decisions, "timestamp": _now()}


if __name__ == "__main__":
    import uvicorn
    setup_logging()
    uvicorn.run(
        app,
        host=config.api['host'],
        port=config.api['port'],
        log_level="info"
    )
