"""HTTP API: customer and operator sessions, wallets and charger status."""

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from ..central_server.control import create_control_router
from ..errors import ChargingError
from ..models import Customer, utcnow
from ..services.wallet import serialize_transaction, to_money
from .models import (
    ChargerStatus,
    OperatorStartReq,
    OperatorStopReq,
    StartResult,
    StartSessionReq,
    StopResult,
    StopSessionReq,
    TopUpReq,
    WalletOut,
)

if TYPE_CHECKING:
    from ..context import AppContext


def create_app(ctx: "AppContext") -> FastAPI:
    app = FastAPI(title="ChargeLedger API", version="0.3.0")
    app.state.ctx = ctx
    app.include_router(create_control_router(ctx))
    orchestrator = ctx.orchestrator

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        logging.info(f">>> {request.method} {request.url.path}")
        try:
            response = await call_next(request)
            logging.info(f"<<< {request.method} {request.url.path} -> {response.status_code}")
            return response
        except Exception:
            logging.exception("Handler crashed")
            raise

    @app.exception_handler(ChargingError)
    async def charging_error(request: Request, exc: ChargingError):
        logging.info(f"{request.method} {request.url.path} failed: {type(exc).__name__}: {exc.message}")
        return JSONResponse({"detail": exc.message}, status_code=exc.status_code)

    def require_customer(customer_id: int) -> None:
        with ctx.session_factory() as db:
            if db.get(Customer, customer_id) is None:
                raise HTTPException(status_code=404, detail="Customer not found")

    @app.get("/api/v1/health")
    def health():
        return {"ok": True, "time": utcnow().isoformat() + "Z"}

    # -- customer sessions --------------------------------------------

    @app.post("/api/v1/customers/{customer_id}/sessions/start", response_model=StartResult)
    async def start_session(customer_id: int, req: StartSessionReq):
        return await orchestrator.start(
            customer_id,
            req.deviceId,
            req.connectorId,
            amount=req.amount if req.amount is not None else 0,
            charging_point_ref=req.chargingPointId,
            vehicle_id=req.vehicleId,
            id_tag=req.id_tag,
        )

    @app.post("/api/v1/customers/{customer_id}/sessions/stop", response_model=StopResult)
    async def stop_session(customer_id: int, req: StopSessionReq):
        return await orchestrator.stop(customer_id, req.deviceId, req.connectorId, session_id=req.sessionId)

    @app.get("/api/v1/customers/{customer_id}/sessions")
    async def list_sessions(
        customer_id: int,
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=100),
        fromDate: Optional[datetime] = None,
        toDate: Optional[datetime] = None,
    ):
        require_customer(customer_id)
        return await orchestrator.list_sessions(customer_id, page, limit, fromDate, toDate)

    @app.get("/api/v1/customers/{customer_id}/sessions/active")
    async def active_session(customer_id: int):
        require_customer(customer_id)
        return await orchestrator.active_session(customer_id)

    @app.get("/api/v1/customers/{customer_id}/sessions/{session_id}")
    async def get_session(customer_id: int, session_id: str):
        return {"success": True, "session": await orchestrator.get_session(customer_id, session_id)}

    # -- wallet -------------------------------------------------------

    @app.get("/api/v1/customers/{customer_id}/wallet", response_model=WalletOut)
    def get_wallet(customer_id: int):
        require_customer(customer_id)
        with ctx.session_factory() as db:
            wallet = ctx.wallet.get_or_create_wallet(db, customer_id)
            db.commit()
            return WalletOut(customerId=customer_id, balance=float(to_money(wallet.balance)), currency=wallet.currency)

    @app.get("/api/v1/customers/{customer_id}/wallet/transactions")
    def wallet_transactions(
        customer_id: int,
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=100),
        type: Optional[str] = None,
        fromDate: Optional[datetime] = None,
        toDate: Optional[datetime] = None,
    ):
        require_customer(customer_id)
        with ctx.session_factory() as db:
            return ctx.wallet.transactions(db, customer_id, page, limit, type, fromDate, toDate)

    @app.post("/api/v1/customers/{customer_id}/wallet/topup")
    def wallet_topup(customer_id: int, req: TopUpReq):
        require_customer(customer_id)
        with ctx.session_factory() as db:
            entry = ctx.wallet.credit(
                db, customer_id, req.amount, req.description or "Wallet top-up", reference_id=req.referenceId
            )
            db.commit()
            return {"success": True, "balance": float(entry.balance_after), "transaction": serialize_transaction(entry)}

    # -- operator sessions --------------------------------------------

    @app.post("/api/v1/cms/sessions/start", response_model=StartResult)
    async def operator_start(req: OperatorStartReq):
        return await orchestrator.start(
            None, req.deviceId, req.connectorId, charging_point_ref=req.chargingPointId, id_tag=req.id_tag
        )

    @app.post("/api/v1/cms/sessions/stop", response_model=StopResult)
    async def operator_stop(req: OperatorStopReq):
        return await orchestrator.stop(
            None, req.deviceId, req.connectorId, transaction_id=req.transactionId, session_id=req.sessionId
        )

    # -- chargers -----------------------------------------------------

    @app.get("/api/v1/chargers")
    async def list_chargers():
        return {"chargers": await ctx.reconciler.overview(ctx.registry.device_ids())}

    @app.get("/api/v1/chargers/{device_id}/status", response_model=ChargerStatus)
    async def charger_status(device_id: str):
        if ctx.registry.get(device_id) is None and await ctx.cache.live_status(device_id) is None:
            raise HTTPException(status_code=404, detail=f"Charger '{device_id}' not found")
        return ChargerStatus(
            deviceId=device_id,
            status=await ctx.reconciler.status(device_id),
            cStatus=await ctx.reconciler.connector_status(device_id),
        )

    return app
