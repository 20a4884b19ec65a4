"""
deadhand API Server - FastAPI Backend

Endpoints:
- GET    /health                   Heartbeat + engine counters
- GET    /jobs                     Outstanding scheduled checks
- PUT    /delegations/{user}       Create/replace a delegation
- GET    /delegations/{user}       Read a delegation
- POST   /switch/arm               Arm the switch for a user
- GET    /switch/{user}            Switch state (armed / checking / triggered)
- DELETE /switch/{user}            Cancel an armed switch
- POST   /switch/{user}/activity   Report activity, restart the countdown
- GET    /switch/{user}/plan       Last sweep plan (unsigned intents)
- WS     /ws/{user}                Live switch events for one user

The server never signs. A triggered switch publishes its plan here and on
the event stream; an external signer picks it up.
"""

import os
import asyncio
import logging
from dataclasses import asdict
from typing import Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from core.chain import normalize_address
from core.delegations import DelegationStore
from core.errors import AlreadyArmedError, NotFoundError, SwitchError, ValidationError
from core.events import EventStream
from core.models import Delegation
from core.scheduler import Scheduler
from core.switch import DeadHandSwitch

logger = logging.getLogger("deadhand.api")


# ============================================================
# MODELS
# ============================================================

class DelegationRequest(BaseModel):
    beneficiary_address: str = Field(..., max_length=64)
    timeout_seconds: float = Field(..., gt=0)
    execution_account: str = Field("", max_length=64)
    ens_name: Optional[str] = Field(None, max_length=255)
    active: bool = True


class DelegationResponse(BaseModel):
    user_address: str
    beneficiary_address: str
    execution_account: str
    timeout_seconds: float
    active: bool
    ens_name: Optional[str] = None
    created_at: float
    updated_at: float


class ArmRequest(BaseModel):
    user_address: str = Field(..., max_length=64)
    timeout_seconds: Optional[float] = None
    beneficiary_address: Optional[str] = Field(None, max_length=64)


class SwitchStatusResponse(BaseModel):
    user_address: str
    state: str
    due_at: Optional[float] = None
    job_id: Optional[str] = None
    timeout_seconds: float
    triggered_at: Optional[float] = None


def _http_error(e: SwitchError) -> HTTPException:
    if isinstance(e, ValidationError):
        return HTTPException(400, str(e))
    if isinstance(e, NotFoundError):
        return HTTPException(404, str(e))
    if isinstance(e, AlreadyArmedError):
        return HTTPException(409, str(e))
    return HTTPException(500, str(e))


# ============================================================
# SERVER FACTORY
# ============================================================

def create_app(
    switch: DeadHandSwitch,
    store: DelegationStore,
    events: EventStream,
    scheduler: Scheduler,
) -> FastAPI:
    """Create FastAPI app wired to the switch engine."""
    app = FastAPI(
        title="deadhand",
        description="Dead-man's switch: inactivity -> prepared sweep to a beneficiary.",
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
    )

    # ============================================================
    # ROUTES
    # ============================================================

    @app.get("/health")
    async def health():
        """Heartbeat endpoint."""
        return {
            "ok": True,
            "switch": switch.get_status(),
            "scheduler": scheduler.status(),
            "events": events.get_status(),
        }

    @app.get("/jobs")
    async def jobs():
        """Outstanding checks, earliest deadline first."""
        return {"jobs": [asdict(j) for j in scheduler.registry.outstanding()]}

    @app.put("/delegations/{user}", response_model=DelegationResponse)
    async def put_delegation(user: str, req: DelegationRequest):
        try:
            saved = await store.put(Delegation(
                user_address=user,
                beneficiary_address=req.beneficiary_address,
                execution_account=req.execution_account,
                timeout_seconds=req.timeout_seconds,
                active=req.active,
                ens_name=req.ens_name,
            ))
        except SwitchError as e:
            raise _http_error(e)
        logger.info(f"Delegation saved for {saved.user_address} -> {saved.beneficiary_address}")
        return DelegationResponse(**saved.to_dict())

    @app.get("/delegations/{user}", response_model=DelegationResponse)
    async def get_delegation(user: str):
        delegation = await store.get(user)
        if delegation is None:
            raise HTTPException(404, "Delegation not found")
        return DelegationResponse(**delegation.to_dict())

    @app.post("/switch/arm", response_model=SwitchStatusResponse)
    async def arm(req: ArmRequest):
        try:
            status = await switch.arm(
                req.user_address,
                timeout_seconds=req.timeout_seconds,
                beneficiary_address=req.beneficiary_address,
            )
        except SwitchError as e:
            raise _http_error(e)
        return SwitchStatusResponse(**status)

    @app.get("/switch/{user}", response_model=SwitchStatusResponse)
    async def switch_status(user: str):
        try:
            return SwitchStatusResponse(**switch.status(user))
        except SwitchError as e:
            raise _http_error(e)

    @app.delete("/switch/{user}")
    async def cancel(user: str):
        """Cancel an armed switch. cancelled=false if the check already fired."""
        cancelled = await switch.cancel(user)
        return {"user_address": normalize_address(user), "cancelled": cancelled}

    @app.post("/switch/{user}/activity", response_model=SwitchStatusResponse)
    async def report_activity(user: str):
        try:
            return SwitchStatusResponse(**(await switch.record_activity(user)))
        except SwitchError as e:
            raise _http_error(e)

    @app.get("/switch/{user}/plan")
    async def sweep_plan(user: str):
        plan = switch.last_plan(user)
        if plan is None:
            raise HTTPException(404, "No sweep plan for this user")
        return plan.to_dict()

    # ============================================================
    # EVENT STREAM
    # ============================================================

    @app.websocket("/ws/{user}")
    async def event_stream(websocket: WebSocket, user: str):
        """Snapshot of recent events, then every new event for this user."""
        user = normalize_address(user)
        await websocket.accept()
        queue = events.subscribe(user)

        async def _pump():
            while True:
                event = await queue.get()
                await websocket.send_json(event.to_dict())

        pump = None
        try:
            await websocket.send_json({
                "type": "snapshot",
                "user_address": user,
                "events": [e.to_dict() for e in events.recent(user)],
            })
            pump = asyncio.create_task(_pump())
            # Inbound messages are ignored; receiving only detects the disconnect
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.debug(f"Event stream closed for {user}")
        finally:
            if pump is not None:
                pump.cancel()
            events.unsubscribe(user, queue)

    return app
