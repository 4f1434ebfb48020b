"""
Stream Meter - Production FastAPI Server

Session control surface for the metering engine.

Endpoints:
- POST /sessions - Start (or restart) a metering session
- GET /sessions/{id} - Session stats
- DELETE /sessions/{id} - Forget a session that is no longer running
- POST /sessions/{id}/stop - Stop with a final settlement
- POST /sessions/{id}/flush - Settle the pending amount now
- POST /sessions/{id}/checkpoint - Persist the live value
- POST /sessions/{id}/recover - Restore the last checkpoint
- POST /sessions/{id}/reset - Clear the session
- POST /sessions/{id}/disconnect - Simulate a dropped connection
- GET /sessions/{id}/settlements - Settlement audit trail
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import os
import structlog

from fastapi import FastAPI, HTTPException, Depends, Header
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from billing.catalog import AccessControl, StaticCatalog
from billing.gateway import SimulatedLedgerGateway
from metering.checkpoint import CheckpointStore
from metering.config import EngineConfig
from metering.errors import AccessDenied, ErrorKind, InvalidTransition, MeteringError
from metering.session import OperationResult, SessionController, SessionStatus
from persistence.database import get_database
from persistence.kv import SQLiteKVStore
from persistence.repository import SettlementRepository

logger = structlog.get_logger()

VERSION = "1.0.0"


# ============================================================================
# Pydantic Models
# ============================================================================

class StartSessionRequest(BaseModel):
    """Request to start a metering session."""
    content_id: str = Field(..., min_length=1, description="Content being streamed")
    rate_per_minute: Optional[int] = Field(
        None, ge=0, description="Minor units per minute (catalog rate if omitted)"
    )
    viewer: Optional[str] = Field(None, description="Viewer identifier")
    session_id: Optional[str] = Field(None, description="Existing session to restart")


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    active_sessions: int
    uptime_seconds: float


# ============================================================================
# Application State
# ============================================================================

def load_content_rates(raw: Optional[str] = None) -> Dict[str, int]:
    """Parse METER_CONTENT_RATES ("content-a=60000000,content-b=120000000")."""
    raw = os.environ.get("METER_CONTENT_RATES", "") if raw is None else raw
    rates: Dict[str, int] = {}
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        content_id, _, rate = entry.partition("=")
        rates[content_id.strip()] = int(rate)
    return rates


class AppState:
    """Application state container."""

    def __init__(self):
        self.config = EngineConfig.from_env()
        self.db = get_database()
        self.checkpoints = CheckpointStore(SQLiteKVStore(self.db))
        self.repository = SettlementRepository(self.db)
        self.catalog = StaticCatalog(load_content_rates())
        self.access_control: Optional[AccessControl] = None
        self.viewer_balance = int(os.environ.get("METER_VIEWER_BALANCE", 10 ** 12))
        self.gateways: Dict[str, SimulatedLedgerGateway] = {}
        self.sessions: Dict[str, SessionController] = {}
        self.owners: Dict[str, str] = {}  # session id -> wallet key the gateway debits
        self.start_time = datetime.now(timezone.utc)

    @staticmethod
    def wallet_key(viewer: Optional[str]) -> str:
        return viewer or "anonymous"

    def gateway_for(self, viewer: Optional[str]) -> SimulatedLedgerGateway:
        """One simulated wallet per viewer."""
        key = self.wallet_key(viewer)
        if key not in self.gateways:
            self.gateways[key] = SimulatedLedgerGateway(viewer=key, balance=self.viewer_balance)
        return self.gateways[key]

    def owned_by(self, session_id: str, viewer: Optional[str]) -> bool:
        return self.owners.get(session_id) == self.wallet_key(viewer)

    def new_session(self, viewer: Optional[str], session_id: Optional[str] = None) -> SessionController:
        controller = SessionController(
            session_id=session_id,
            gateway=self.gateway_for(viewer),
            checkpoint_store=self.checkpoints,
            config=self.config,
            catalog=self.catalog,
            access_control=self.access_control,
            ledger=self.repository,
        )
        self.sessions[controller.session_id] = controller
        self.owners[controller.session_id] = self.wallet_key(viewer)
        return controller

    def evict(self, session_id: str) -> Optional[SessionController]:
        """Forget a session; its timers are cancelled."""
        controller = self.sessions.pop(session_id, None)
        self.owners.pop(session_id, None)
        if controller is not None:
            controller.shutdown()
        return controller

    def shutdown(self) -> None:
        for controller in self.sessions.values():
            controller.shutdown()


app_state: Optional[AppState] = None


# ============================================================================
# Application Factory
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    global app_state
    logger.info("stream_meter_starting", version=VERSION)
    app_state = AppState()
    yield
    app_state.shutdown()
    logger.info("stream_meter_stopping", sessions=len(app_state.sessions))
    app_state = None


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="Stream Meter",
        description="""
# Streaming Metering & Settlement

Per-second accrual for streamed content, checkpointed so a dropped
connection loses at most one checkpoint interval, and settled in batches
through the payment gateway.

## Features
- **Fixed-point accrual**: integer minor units, no drift
- **Checkpoints**: validated recovery after disconnects
- **Batched settlement**: snapshot-and-subtract, fail-stop on failure
        """,
        version=VERSION,
        lifespan=lifespan,
    )

    # CORS middleware
    application.add_middleware(
        CORSMiddleware,
        allow_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    return application


app = create_app()


# ============================================================================
# Dependencies
# ============================================================================

ERROR_STATUS_CODES = {
    ErrorKind.INVALID_STATE: 409,
    ErrorKind.ACCESS_DENIED: 403,
    ErrorKind.CONTENT_NOT_FOUND: 404,
    ErrorKind.SETTLEMENT_FAILURE: 402,
    ErrorKind.CHECKPOINT_PERSISTENCE: 503,
    ErrorKind.RECOVERY_DATA_CORRUPTION: 422,
    ErrorKind.ACCRUAL: 500,
}

EVICTABLE_STATUSES = (SessionStatus.IDLE, SessionStatus.STOPPED, SessionStatus.FAILED)


def get_state() -> AppState:
    """Get application state."""
    if app_state is None:
        raise HTTPException(status_code=503, detail="Application not initialized")
    return app_state


def verify_api_key(x_api_key: str = Header(..., alias="X-API-Key")) -> str:
    """Verify API key."""
    expected = os.environ.get("API_KEY", "dev-key-change-in-production")
    if x_api_key != expected:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


def get_session(session_id: str, state: AppState = Depends(get_state)) -> SessionController:
    controller = state.sessions.get(session_id)
    if controller is None:
        raise HTTPException(status_code=404, detail=f"Session not found: {session_id}")
    return controller


def error_response(error: MeteringError) -> HTTPException:
    """Map an engine error to an HTTP error by kind."""
    return HTTPException(
        status_code=ERROR_STATUS_CODES.get(error.kind, 500),
        detail=error.to_dict(),
    )


def operation_response(controller: SessionController, result: OperationResult) -> Dict[str, Any]:
    if not result.success:
        raise error_response(result.error)
    return {
        "session": controller.get_stats().to_dict(),
        "settlement": result.settlement.to_dict() if result.settlement else None,
    }


# ============================================================================
# Endpoints
# ============================================================================

@app.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check(state: AppState = Depends(get_state)):
    """Health check endpoint."""
    uptime = (datetime.now(timezone.utc) - state.start_time).total_seconds()
    active = sum(1 for c in state.sessions.values() if c.status == SessionStatus.ACTIVE)
    return HealthResponse(
        status="healthy",
        version=VERSION,
        active_sessions=active,
        uptime_seconds=uptime,
    )


@app.post("/sessions", tags=["Sessions"])
async def start_session(
    request: StartSessionRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """
    Start metering a piece of content.

    Passing the id of a stopped session restarts it; restarting the same
    content carries its settled total over. Only the viewer whose wallet
    the session was created for may restart it.
    """
    controller = state.sessions.get(request.session_id) if request.session_id else None
    created = controller is None
    if created:
        controller = state.new_session(request.viewer, request.session_id)
    elif not state.owned_by(controller.session_id, request.viewer):
        # The controller's gateway debits the wallet it was created for
        logger.warning(
            "session_restart_other_viewer",
            session_id=controller.session_id,
            viewer=request.viewer,
        )
        raise error_response(AccessDenied(request.content_id, request.viewer))

    result = controller.start(
        request.content_id,
        rate_per_minute=request.rate_per_minute,
        viewer=request.viewer,
    )
    if not result.success and created:
        state.evict(controller.session_id)

    return operation_response(controller, result)


@app.delete("/sessions/{session_id}", tags=["Sessions"])
async def delete_session(
    session_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Forget a session that is no longer running (Idle, Stopped or Failed)."""
    controller = get_session(session_id, state)
    if controller.status not in EVICTABLE_STATUSES:
        raise error_response(InvalidTransition("delete", controller.status))
    state.evict(session_id)
    logger.info("session_deleted", session_id=session_id)
    return {"deleted": session_id}


@app.get("/sessions", tags=["Sessions"])
async def list_sessions(state: AppState = Depends(get_state)):
    """List sessions known to this process."""
    return {
        "total": len(state.sessions),
        "sessions": [c.get_stats().to_dict() for c in state.sessions.values()],
    }


@app.get("/sessions/{session_id}", tags=["Sessions"])
async def get_session_stats(controller: SessionController = Depends(get_session)):
    """Current stats for a session."""
    return controller.get_stats().to_dict()


@app.post("/sessions/{session_id}/stop", tags=["Sessions"])
async def stop_session(
    controller: SessionController = Depends(get_session),
    api_key: str = Depends(verify_api_key),
):
    """Stop the session and settle what remains."""
    result = await controller.stop()
    return operation_response(controller, result)


@app.post("/sessions/{session_id}/flush", tags=["Settlement"])
async def flush_session(
    controller: SessionController = Depends(get_session),
    api_key: str = Depends(verify_api_key),
):
    """Settle the pending amount immediately."""
    result = await controller.flush_now()
    return operation_response(controller, result)


@app.post("/sessions/{session_id}/checkpoint", tags=["Checkpoints"])
async def checkpoint_session(
    controller: SessionController = Depends(get_session),
    api_key: str = Depends(verify_api_key),
):
    """Persist the live value as confirmed."""
    try:
        checkpoint = controller.checkpoint()
    except MeteringError as e:
        raise error_response(e)
    return {
        "checkpoint": checkpoint.model_dump(),
        "session": controller.get_stats().to_dict(),
    }


@app.post("/sessions/{session_id}/recover", tags=["Checkpoints"])
async def recover_session(
    controller: SessionController = Depends(get_session),
    api_key: str = Depends(verify_api_key),
):
    """Restore the live value to the last checkpoint."""
    try:
        checkpoint = controller.recover()
    except MeteringError as e:
        raise error_response(e)
    return {
        "checkpoint": checkpoint.model_dump() if checkpoint else None,
        "session": controller.get_stats().to_dict(),
    }


@app.post("/sessions/{session_id}/reset", tags=["Sessions"])
async def reset_session(
    controller: SessionController = Depends(get_session),
    api_key: str = Depends(verify_api_key),
):
    """Clear all value and erase the checkpoint."""
    return operation_response(controller, controller.reset())


@app.post("/sessions/{session_id}/disconnect", tags=["Sessions"])
async def disconnect_session(
    controller: SessionController = Depends(get_session),
    api_key: str = Depends(verify_api_key),
):
    """
    Simulate a dropped connection.

    With auto-reconnect enabled the session recovers from its last
    checkpoint after the reconnect delay.
    """
    try:
        controller.on_disconnect()
    except MeteringError as e:
        raise error_response(e)
    return {"session": controller.get_stats().to_dict()}


@app.get("/sessions/{session_id}/settlements", tags=["Settlement"])
async def get_settlements(
    session_id: str,
    limit: int = 100,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Settlement audit trail for a session."""
    records = state.repository.get_by_session(session_id, limit=limit)
    return {
        "summary": state.repository.get_session_summary(session_id),
        "settlements": [r.to_dict() for r in records],
    }


# ============================================================================
# Run
# ============================================================================

def run():
    """Run the server."""
    import uvicorn
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run(
        "api.server:app",
        host="0.0.0.0",
        port=port,
        reload=os.environ.get("DEBUG", "false").lower() == "true",
    )


if __name__ == "__main__":
    run()
