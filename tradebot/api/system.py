"""System API: health, bot control, manual passes and audit log reads."""

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlmodel import Session, select

from tradebot.api.deps import get_tick_controller, require_api_token
from tradebot.database import get_session
from tradebot.engine.scheduler import TickController
from tradebot.models.ai_decision import AIDecision
from tradebot.models.job_log import JobLog
from tradebot.models.transaction import Transaction

router = APIRouter(prefix="/api/system", tags=["system"])


@router.get("/health")
def health_check():
    return {"status": "ok"}


class StartRequest(BaseModel):
    interval_ms: int | None = Field(default=None, ge=1000)


@router.get("/bot/status", dependencies=[Depends(require_api_token)])
async def bot_status(controller: TickController = Depends(get_tick_controller)):
    return controller.status()


@router.post("/bot/start", dependencies=[Depends(require_api_token)])
async def start_bot(
    body: StartRequest | None = None,
    controller: TickController = Depends(get_tick_controller),
):
    if not controller.start(interval_ms=body.interval_ms if body else None):
        raise HTTPException(status_code=409, detail="Bot is already running")
    return {"status": "started", **controller.status()}


@router.post("/bot/stop", dependencies=[Depends(require_api_token)])
async def stop_bot(controller: TickController = Depends(get_tick_controller)):
    if not controller.stop():
        raise HTTPException(status_code=409, detail="Bot is not running")
    return {"status": "stopped", **controller.status()}


@router.post("/bot/run-once", dependencies=[Depends(require_api_token)])
async def run_once(controller: TickController = Depends(get_tick_controller)):
    """Run a single pass over all active pairs now."""
    summary = await controller.run_once()
    if summary is None:
        raise HTTPException(status_code=409, detail="A pass is already in progress")
    return summary.to_dict()


@router.post("/trigger/{pair_id}", dependencies=[Depends(require_api_token)])
async def trigger_pair(pair_id: int, controller: TickController = Depends(get_tick_controller)):
    """Manually run one cycle for a single pair."""
    if controller.store.get_pair(pair_id) is None:
        raise HTTPException(status_code=404, detail=f"Pair {pair_id} not found")
    outcome = await controller.process_instrument(pair_id)
    if outcome is None:
        raise HTTPException(status_code=409, detail="A pass is already in progress")
    return {
        "status": outcome.status,
        "action": outcome.action,
        "message": outcome.message,
        "decision": outcome.decision,
    }


@router.get("/decisions", dependencies=[Depends(require_api_token)])
def ai_decisions(
    pair_id: int | None = None,
    limit: int = 50,
    offset: int = 0,
    session: Session = Depends(get_session),
):
    stmt = select(AIDecision).order_by(AIDecision.created_at.desc())
    if pair_id is not None:
        stmt = stmt.where(AIDecision.pair_id == pair_id)
    return session.exec(stmt.offset(offset).limit(limit)).all()


@router.get("/transactions", dependencies=[Depends(require_api_token)])
def transactions(
    pair_id: int | None = None,
    limit: int = 50,
    offset: int = 0,
    session: Session = Depends(get_session),
):
    stmt = select(Transaction).order_by(Transaction.executed_at.desc())
    if pair_id is not None:
        stmt = stmt.where(Transaction.pair_id == pair_id)
    return session.exec(stmt.offset(offset).limit(limit)).all()


@router.get("/logs", dependencies=[Depends(require_api_token)])
def job_logs(
    pair_id: int | None = None,
    status: str | None = None,
    limit: int = 100,
    offset: int = 0,
    session: Session = Depends(get_session),
):
    stmt = select(JobLog).order_by(JobLog.timestamp.desc())
    if pair_id is not None:
        stmt = stmt.where(JobLog.pair_id == pair_id)
    if status is not None:
        stmt = stmt.where(JobLog.status == status)
    return session.exec(stmt.offset(offset).limit(limit)).all()
