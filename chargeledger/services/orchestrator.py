"""Charging session lifecycle: reserve funds, start, stop, bill and refund."""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ..errors import (
    ConflictError,
    InsufficientFundsError,
    NotFoundError,
    ResolutionFailure,
    UpstreamUnavailable,
    ValidationError,
)
from ..models import OPEN_STATUSES, ChargingSession, Customer, Vehicle, utcnow
from ..ocpp_local.domain import ConnectorState, Direction, MessageKind
from .cache import Cache, list_key
from .dispatcher import CommandDispatcher, CommandMeta, CommandType, DispatchResult, EventType
from .protocol_log import ProtocolLogStore
from .reconciler import STALE_START
from .registry import TariffLookup
from .wallet import WalletLedger, to_money

logger = logging.getLogger(__name__)

START_LOOKBACK = timedelta(minutes=5)
START_LOOKAHEAD = timedelta(seconds=60)
CONFIRM_LOOKBACK = timedelta(seconds=60)
AUTO_STOP_RATIO = Decimal("0.95")
COMPLETED_TOLERANCE = Decimal("0.15")
KWH = Decimal("0.001")
ZERO = Decimal("0.00")

OPERATOR_ID_TAG = "CMS_ADMIN"
CACHED_ENTITIES = ("sessions", "charging_points")


class OwnSessionPolicy:
    """What a customer start does when the customer already holds the connector."""

    REJECT = "reject"
    REUSE = "reuse"
    SUPERSEDE = "supersede"

    ALL = (REJECT, REUSE, SUPERSEDE)


class StopReason:
    COMPLETED = "completed"
    REMOTE = "remote"
    OPERATOR = "operator"


@dataclass(frozen=True, slots=True)
class Charges:
    energy_kwh: Decimal
    final_amount: Decimal
    refund_amount: Decimal
    meter_start: Optional[float] = None
    meter_end: Optional[float] = None


def generate_session_id() -> str:
    return f"SESS_{int(time.time() * 1000)}_{secrets.token_hex(4).upper()}"


def customer_id_tag(customer_id: int) -> str:
    return f"CUSTOMER_{customer_id}"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _num(value: Any) -> Optional[float]:
    return float(value) if value is not None else None


def serialize_session(s: ChargingSession) -> Dict[str, Any]:
    return {
        "id": s.id,
        "sessionId": s.session_id,
        "customerId": s.customer_id,
        "vehicleId": s.vehicle_id,
        "chargingPointId": s.charging_point_id,
        "deviceId": s.device_id,
        "connectorId": s.connector_id,
        "transactionId": s.transaction_id,
        "status": s.status,
        "amountRequested": _num(s.amount_requested),
        "amountDeducted": _num(s.amount_deducted),
        "energyConsumed": _num(s.energy_consumed),
        "finalAmount": _num(s.final_amount),
        "refundAmount": _num(s.refund_amount),
        "meterStart": s.meter_start,
        "meterEnd": s.meter_end,
        "startTime": _iso(s.start_time),
        "endTime": _iso(s.end_time),
        "stopReason": s.stop_reason,
        "createdAt": _iso(s.created_at),
    }


def classify_stop(final_amount: Decimal, refund_amount: Decimal, deducted: Decimal, operator: bool) -> str:
    if operator:
        return StopReason.OPERATOR
    if refund_amount == 0 and final_amount > 0 and abs(final_amount - deducted) < COMPLETED_TOLERANCE:
        return StopReason.COMPLETED
    return StopReason.REMOTE


def _valid_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


class SessionOrchestrator:
    """Top-level state machine for charging sessions.

    Database work happens in short units between awaits; nothing is held
    across a dispatch, a cache call or a polling sleep.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        wallet: WalletLedger,
        dispatcher: CommandDispatcher,
        log_store: ProtocolLogStore,
        cache: Cache,
        tariffs: TariffLookup,
        system_customer_id: int,
        own_session_policy: str = OwnSessionPolicy.SUPERSEDE,
        meter_poll_attempts: int = 5,
        meter_poll_interval: float = 2.0,
        min_session_seconds: int = 30,
        list_cache_ttl: int = 120,
        now: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if own_session_policy not in OwnSessionPolicy.ALL:
            raise ValueError(f"unknown own-session policy {own_session_policy!r}")
        self._session_factory = session_factory
        self.wallet = wallet
        self.dispatcher = dispatcher
        self.log_store = log_store
        self.cache = cache
        self.tariffs = tariffs
        self.system_customer_id = system_customer_id
        self.own_session_policy = own_session_policy
        self.meter_poll_attempts = meter_poll_attempts
        self.meter_poll_interval = meter_poll_interval
        self.min_session_seconds = min_session_seconds
        self.list_cache_ttl = list_cache_ttl
        self._now = now
        self._sleep = sleep

    # -- lookups ----------------------------------------------------------

    @staticmethod
    def _open_sessions(db: Session, device_id: str, connector_id: Optional[int] = None):
        q = (
            db.query(ChargingSession)
            .filter(ChargingSession.device_id == device_id)
            .filter(ChargingSession.status.in_(OPEN_STATUSES))
            .filter(ChargingSession.end_time.is_(None))
        )
        if connector_id is not None:
            q = q.filter(ChargingSession.connector_id == connector_id)
        return q.order_by(ChargingSession.created_at.desc(), ChargingSession.id.desc())

    @staticmethod
    def _by_session_id(db: Session, session_id: str) -> Optional[ChargingSession]:
        return db.query(ChargingSession).filter(ChargingSession.session_id == session_id).first()

    def _is_operator(self, session: ChargingSession) -> bool:
        return session.customer_id == self.system_customer_id

    async def _after_write(self, device_id: Optional[str] = None) -> None:
        if device_id:
            await self.cache.update_live_status(device_id, ConnectorState.AVAILABLE)
        await self.cache.invalidate_lists(*CACHED_ENTITIES)

    async def _dispatch(self, command: str, device_id: str, payload: Dict[str, Any], meta: CommandMeta) -> DispatchResult:
        try:
            return await self.dispatcher.dispatch(command, device_id, payload, meta)
        except Exception as exc:
            logger.error("Dispatch of %s to %s raised: %s", command, device_id, exc)
            return DispatchResult(accepted=False, raw={"error": str(exc) or type(exc).__name__})

    # -- start ------------------------------------------------------------

    async def start(
        self,
        customer_id: Optional[int],
        device_id: str,
        connector_id: Any,
        amount: Any = 0,
        charging_point_ref: Any = None,
        vehicle_id: Optional[int] = None,
        id_tag: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not device_id:
            raise ValidationError("deviceId is required")
        if not _valid_int(connector_id):
            raise ValidationError("connectorId must be a positive integer")
        operator = customer_id is None
        if operator:
            amount = ZERO
        else:
            try:
                amount = to_money(amount)
            except (ArithmeticError, ValueError, TypeError):
                raise ValidationError("amount must be a number")
            if amount <= 0:
                raise ValidationError("amount must be greater than 0")

        existing_id = self._check_start(customer_id, device_id, connector_id, amount, vehicle_id)
        if existing_id is not None:
            if self.own_session_policy == OwnSessionPolicy.REUSE:
                with self._session_factory() as db:
                    existing = self._by_session_id(db, existing_id)
                    logger.info("Reusing open session %s for customer %s", existing_id, customer_id)
                    return self._start_result(existing, "Using existing charging session", queued=existing.status == "pending")
            logger.info("Superseding open session %s for customer %s", existing_id, customer_id)
            await self.stop(customer_id, device_id, connector_id, session_id=existing_id)
            self._check_start(customer_id, device_id, connector_id, amount, vehicle_id, allow_own=False)

        owner = self.system_customer_id if operator else customer_id
        session_id = generate_session_id()
        now = self._now()
        with self._session_factory() as db:
            point = self.tariffs.charging_point(db, charging_point_ref)
            if not operator:
                self.wallet.debit(db, customer_id, amount, f"Charging session {session_id}", reference_id=session_id)
            session = ChargingSession(
                session_id=session_id,
                customer_id=owner,
                vehicle_id=vehicle_id,
                charging_point_id=point.id if point else None,
                device_id=device_id,
                connector_id=connector_id,
                status="pending",
                amount_requested=amount,
                amount_deducted=amount,
                created_at=now,
                updated_at=now,
            )
            db.add(session)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                raise ConflictError(f"Connector {connector_id} on {device_id} is in use")
            pk = session.id
        logger.info(
            "Created session %s (customer=%s, device=%s, connector=%s, amount=%s)",
            session_id, owner, device_id, connector_id, amount,
        )
        await self.cache.invalidate_lists(*CACHED_ENTITIES)

        tag = id_tag or (OPERATOR_ID_TAG if operator else customer_id_tag(customer_id))
        meta = CommandMeta(session_id=session_id, customer_id=owner, connector_id=connector_id, id_tag=tag)
        result = await self._dispatch(
            CommandType.REMOTE_START, device_id, {"connectorId": connector_id, "idTag": tag}, meta
        )

        if result.queued:
            with self._session_factory() as db:
                session = db.get(ChargingSession, pk)
                return self._start_result(session, "Charging start requested", queued=True)

        if result.accepted:
            with self._session_factory() as db:
                session = db.get(ChargingSession, pk)
                session.status = "active"
                session.start_time = self._now()
                db.commit()
            await self.dispatcher.publish_event(
                EventType.STARTED, {"sessionId": session_id, "deviceId": device_id, "connectorId": connector_id}
            )
            return self._start_result(session, "Charging started", queued=False)

        reason = result.error or "Remote start failed"
        await self._compensate(session_id, reason)
        raise UpstreamUnavailable(f"Failed to start charging: {reason}")

    def _check_start(
        self,
        customer_id: Optional[int],
        device_id: str,
        connector_id: int,
        amount: Decimal,
        vehicle_id: Optional[int],
        allow_own: bool = True,
    ) -> Optional[str]:
        """Validate a start. Returns the customer's own open session id when the policy allows it."""
        with self._session_factory() as db:
            if customer_id is not None and db.get(Customer, customer_id) is None:
                raise NotFoundError("Customer not found")
            if vehicle_id is not None:
                vehicle = db.get(Vehicle, vehicle_id)
                if vehicle is None or vehicle.customer_id != customer_id:
                    raise ValidationError("Vehicle does not belong to this customer")
            existing = self._open_sessions(db, device_id, connector_id).first()
            if existing is not None:
                if customer_id is None:
                    raise ConflictError(f"Connector {connector_id} on {device_id} already has an active session")
                if existing.customer_id != customer_id:
                    raise ConflictError(f"Connector {connector_id} on {device_id} is in use by another customer")
                if not allow_own or self.own_session_policy == OwnSessionPolicy.REJECT:
                    raise ConflictError("You already have an active session on this connector")
            if customer_id is not None and (existing is None or self.own_session_policy != OwnSessionPolicy.REUSE):
                balance = self.wallet.balance(db, customer_id)
                if existing is not None:
                    # superseding returns at most the old reservation
                    balance += to_money(existing.amount_deducted or 0)
                if balance < amount:
                    raise InsufficientFundsError(
                        f"Insufficient wallet balance. Available: {balance}, Required: {amount}"
                    )
            db.rollback()
            return existing.session_id if existing is not None else None

    @staticmethod
    def _start_result(session: ChargingSession, message: str, queued: bool) -> Dict[str, Any]:
        return {
            "success": True,
            "message": message,
            "session": {
                "id": session.id,
                "sessionId": session.session_id,
                "status": session.status,
                "deviceId": session.device_id,
                "connectorId": session.connector_id,
                "amountDeducted": float(session.amount_deducted),
            },
            "useQueueFlow": queued,
        }

    async def _compensate(self, session_id: str, reason: str) -> None:
        """Refund the full reservation and fail the session."""
        with self._session_factory() as db:
            session = self._by_session_id(db, session_id)
            if session is None:
                return
            deducted = to_money(session.amount_deducted or 0)
            if deducted > 0 and not self._is_operator(session):
                self.wallet.refund(
                    db, session.customer_id, deducted, f"Refund for failed session {session_id}", reference_id=session_id
                )
            session.status = "failed"
            session.final_amount = ZERO
            session.refund_amount = deducted
            session.end_time = self._now()
            session.stop_reason = reason[:255]
            db.commit()
            device_id = session.device_id
        logger.warning("Session %s failed and was refunded: %s", session_id, reason)
        await self.cache.invalidate_lists(*CACHED_ENTITIES)
        await self.dispatcher.publish_event(
            EventType.FAILED, {"sessionId": session_id, "deviceId": device_id, "reason": reason}
        )

    # -- stop -------------------------------------------------------------

    async def stop(
        self,
        customer_id: Optional[int],
        device_id: str,
        connector_id: Optional[int] = None,
        transaction_id: Any = None,
        session_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not device_id:
            raise ValidationError("deviceId is required")
        operator = customer_id is None
        session = self._locate(customer_id, device_id, connector_id, session_id)
        if session is None and not operator:
            raise NotFoundError("No active charging session found")

        resolved = self._resolve_transaction(session, operator, device_id, connector_id, transaction_id)
        stop_success = False
        if resolved is None:
            if operator:
                raise ResolutionFailure("Could not determine the transaction id to stop")
            logger.warning("No transaction id for session %s; finalising without remote stop", session.session_id)
        else:
            meta = CommandMeta(
                session_id=session.session_id if session else None,
                customer_id=session.customer_id if session else self.system_customer_id,
                connector_id=connector_id or (session.connector_id if session else None),
                transaction_id=resolved,
            )
            result = await self._dispatch(CommandType.REMOTE_STOP, device_id, {"transactionId": resolved}, meta)
            stop_success = result.accepted
            if not stop_success:
                logger.warning("Remote stop of transaction %s on %s not confirmed: %s", resolved, device_id, result.error)

        if session is None:
            logger.info("Operator stop of transaction %s on %s without a session record", resolved, device_id)
            await self._after_write(device_id)
            return {
                "success": True,
                "message": "Remote stop sent; no session record found",
                "stopSuccess": stop_success,
                "session": None,
            }

        charges = await self.compute_charges(session)
        finished = await self._finalise(session.session_id, charges, transaction_id=resolved)
        await self.dispatcher.publish_event(
            EventType.STOPPED,
            {"sessionId": finished.session_id, "deviceId": device_id, "energyConsumed": float(charges.energy_kwh)},
        )
        return {
            "success": True,
            "message": "Charging stopped",
            "stopSuccess": stop_success,
            "session": {
                "id": finished.id,
                "sessionId": finished.session_id,
                "energyConsumed": _num(finished.energy_consumed),
                "finalAmount": _num(finished.final_amount),
                "refundAmount": _num(finished.refund_amount),
                "amountDeducted": _num(finished.amount_deducted),
                "startTime": _iso(finished.start_time),
                "endTime": _iso(finished.end_time),
            },
        }

    def _locate(
        self,
        customer_id: Optional[int],
        device_id: str,
        connector_id: Optional[int],
        session_id: Optional[str],
    ) -> Optional[ChargingSession]:
        with self._session_factory() as db:
            q = self._open_sessions(db, device_id, connector_id)
            if session_id:
                q = q.filter(ChargingSession.session_id == session_id)
            if customer_id is not None:
                return q.filter(ChargingSession.customer_id == customer_id).first()
            own = q.filter(ChargingSession.customer_id == self.system_customer_id).first()
            return own if own is not None else q.first()

    def _resolve_transaction(
        self,
        session: Optional[ChargingSession],
        operator: bool,
        device_id: str,
        connector_id: Optional[int],
        supplied: Any,
    ) -> Optional[int]:
        if session is not None and session.transaction_id:
            return session.transaction_id
        if not operator:
            return self._transaction_from_start(session)
        if _valid_int(supplied):
            return supplied
        if isinstance(supplied, str) and supplied.isdigit() and int(supplied) > 0:
            return int(supplied)
        connector = connector_id or (session.connector_id if session else None)
        return self._recent_unstopped_transaction(device_id, connector)

    def _transaction_from_start(self, session: ChargingSession) -> Optional[int]:
        anchor = session.start_time or session.created_at
        window_start = anchor - START_LOOKBACK
        start = self.log_store.latest(
            session.device_id,
            MessageKind.START_TRANSACTION,
            Direction.INCOMING,
            since=window_start,
            until=self._now() + START_LOOKAHEAD,
            connector_id=session.connector_id,
        )
        if start is None:
            return None
        response = self.log_store.response_to(session.device_id, start.correlation_id, Direction.OUTGOING, since=window_start)
        return response.transaction_id if response is not None else None

    def _recent_unstopped_transaction(self, device_id: str, connector_id: Optional[int]) -> Optional[int]:
        since = self._now() - STALE_START
        meter = self.log_store.latest(
            device_id, MessageKind.METER_VALUES, Direction.INCOMING, since=since, connector_id=connector_id
        )
        if meter is not None and meter.transaction_id and not self.log_store.stopped_after(
            device_id, meter.transaction_id, meter.timestamp
        ):
            return meter.transaction_id
        start = self.log_store.latest(
            device_id, MessageKind.START_TRANSACTION, Direction.INCOMING, since=since, connector_id=connector_id
        )
        if start is None:
            return None
        response = self.log_store.response_to(device_id, start.correlation_id, Direction.OUTGOING)
        if response is None or not response.transaction_id:
            return None
        if self.log_store.stopped_after(device_id, response.transaction_id, start.timestamp):
            return None
        return response.transaction_id

    # -- billing ----------------------------------------------------------

    def _first_reading(self, session: ChargingSession) -> Optional[float]:
        anchor = session.start_time or session.created_at
        first = self.log_store.earliest(
            session.device_id, MessageKind.METER_VALUES, Direction.INCOMING, since=anchor, connector_id=session.connector_id
        )
        return first.energy_wh if first is not None else None

    def _latest_reading(self, session: ChargingSession) -> Optional[float]:
        anchor = session.start_time or session.created_at
        latest = self.log_store.latest(
            session.device_id, MessageKind.METER_VALUES, Direction.INCOMING, since=anchor, connector_id=session.connector_id
        )
        return latest.energy_wh if latest is not None else None

    def _price(self, session: ChargingSession, meter_start: float, meter_end: float) -> Charges:
        deducted = to_money(session.amount_deducted or 0)
        energy = max(Decimal("0"), (Decimal(str(meter_end)) - Decimal(str(meter_start))) / 1000).quantize(KWH)
        if self._is_operator(session):
            return Charges(energy, ZERO, ZERO, meter_start, meter_end)
        with self._session_factory() as db:
            rate = self.tariffs.for_session(db, session)
        final = min(to_money(rate.cost(energy)), deducted)
        return Charges(energy, final, deducted - final, meter_start, meter_end)

    def _full_refund(self, session: ChargingSession) -> Charges:
        deducted = ZERO if self._is_operator(session) else to_money(session.amount_deducted or 0)
        return Charges(Decimal("0.000"), ZERO, deducted, session.meter_start, session.meter_end)

    async def compute_charges(self, session: ChargingSession, meter_end: Optional[float] = None) -> Charges:
        """Energy, billed amount and refund for ``session``.

        Prefers readings already attached by meter ingestion, otherwise reads
        the protocol log, polling briefly for the device's final reading.
        """
        deducted = to_money(session.amount_deducted or 0)
        attached = (session.energy_consumed or 0) > 0 and (session.final_amount or 0) > 0
        if meter_end is None and attached:
            final = min(to_money(session.final_amount), deducted)
            return Charges(
                Decimal(str(session.energy_consumed)), final, deducted - final, session.meter_start, session.meter_end
            )

        meter_start = session.meter_start
        if meter_start is None:
            meter_start = self._first_reading(session)

        if meter_end is None:
            started = session.start_time
            duration = (self._now() - started).total_seconds() if started else 0
            if duration < self.min_session_seconds:
                logger.info("Session %s lasted %.0fs; refunding in full", session.session_id, duration)
                return self._full_refund(session)
            for attempt in range(self.meter_poll_attempts):
                meter_end = self._latest_reading(session)
                if meter_start is None:
                    meter_start = self._first_reading(session)
                if meter_end is not None and meter_start is not None and meter_end > meter_start:
                    break
                if attempt < self.meter_poll_attempts - 1:
                    await self._sleep(self.meter_poll_interval)

        if meter_start is None or meter_end is None:
            logger.warning("No usable meter readings for session %s; refunding in full", session.session_id)
            return self._full_refund(session)
        return self._price(session, meter_start, meter_end)

    async def _finalise(
        self,
        session_id: str,
        charges: Charges,
        transaction_id: Optional[int] = None,
        status: str = "stopped",
    ) -> ChargingSession:
        with self._session_factory() as db:
            session = self._by_session_id(db, session_id)
            if session.end_time is None:
                deducted = to_money(session.amount_deducted or 0)
                operator = self._is_operator(session)
                session.status = status
                session.energy_consumed = charges.energy_kwh
                session.final_amount = charges.final_amount
                session.refund_amount = charges.refund_amount
                if charges.meter_start is not None:
                    session.meter_start = charges.meter_start
                if charges.meter_end is not None:
                    session.meter_end = charges.meter_end
                if transaction_id and not session.transaction_id:
                    session.transaction_id = transaction_id
                session.end_time = self._now()
                session.stop_reason = classify_stop(charges.final_amount, charges.refund_amount, deducted, operator)
                db.commit()
                logger.info(
                    "Session %s %s: energy=%s kWh, final=%s, refund=%s",
                    session_id, status, charges.energy_kwh, charges.final_amount, charges.refund_amount,
                )
            refund = to_money(session.refund_amount or 0)
            if refund > 0 and not self._is_operator(session):
                self.wallet.refund(
                    db, session.customer_id, refund, f"Refund for charging session {session_id}", reference_id=session_id
                )
                db.commit()
        await self._after_write(session.device_id)
        return session

    # -- protocol-driven transitions --------------------------------------

    async def confirm_remote_start(
        self,
        session_id: str,
        accepted: bool,
        transaction_id: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        with self._session_factory() as db:
            session = self._by_session_id(db, session_id)
            if session is None or not session.is_open:
                logger.info("Ignoring remote start confirmation for %s", session_id)
                return None
            if not accepted:
                start = self.log_store.latest(
                    session.device_id,
                    MessageKind.START_TRANSACTION,
                    Direction.INCOMING,
                    since=session.created_at - CONFIRM_LOOKBACK,
                    connector_id=session.connector_id,
                )
                if start is not None:
                    logger.info("Charger started %s despite the rejection; treating as accepted", session_id)
                    accepted = True
                    response = self.log_store.response_to(session.device_id, start.correlation_id, Direction.OUTGOING)
                    if transaction_id is None and response is not None:
                        transaction_id = response.transaction_id
            if accepted:
                session.status = "active"
                if session.start_time is None:
                    session.start_time = self._now()
                if transaction_id and not session.transaction_id:
                    session.transaction_id = transaction_id
                db.commit()
                result = serialize_session(session)
        if not accepted:
            await self._compensate(session_id, reason or "Remote start rejected by charger")
            with self._session_factory() as db:
                return serialize_session(self._by_session_id(db, session_id))
        await self.cache.invalidate_lists(*CACHED_ENTITIES)
        await self.dispatcher.publish_event(
            EventType.STARTED, {"sessionId": session_id, "deviceId": result["deviceId"], "connectorId": result["connectorId"]}
        )
        return result

    async def attach_transaction(
        self,
        device_id: str,
        connector_id: int,
        transaction_id: int,
        meter_start: Optional[float] = None,
    ) -> Optional[Dict[str, Any]]:
        with self._session_factory() as db:
            session = self._open_sessions(db, device_id, connector_id).first()
            if session is None:
                logger.info("StartTransaction %s on %s/%s has no open session", transaction_id, device_id, connector_id)
                return None
            session.transaction_id = transaction_id
            if meter_start is not None:
                session.meter_start = float(meter_start)
            session.status = "active"
            if session.start_time is None:
                session.start_time = self._now()
            db.commit()
            result = serialize_session(session)
        await self.cache.invalidate_lists(*CACHED_ENTITIES)
        return result

    async def record_meter_values(
        self,
        device_id: str,
        connector_id: Optional[int],
        transaction_id: Optional[int],
        energy_wh: Optional[float],
    ) -> Optional[Dict[str, Any]]:
        if energy_wh is None:
            return None
        with self._session_factory() as db:
            session = None
            if transaction_id:
                session = (
                    self._open_sessions(db, device_id)
                    .filter(ChargingSession.transaction_id == transaction_id)
                    .first()
                )
            if session is None and connector_id:
                session = self._open_sessions(db, device_id, connector_id).first()
            if session is None:
                return None
            if transaction_id and not session.transaction_id:
                session.transaction_id = transaction_id
            if session.meter_start is None:
                first = self._first_reading(session)
                session.meter_start = first if first is not None else energy_wh
            db.commit()
        charges = self._price(session, session.meter_start, energy_wh)
        with self._session_factory() as db:
            session = db.get(ChargingSession, session.id)
            session.meter_end = energy_wh
            session.energy_consumed = charges.energy_kwh
            session.final_amount = charges.final_amount
            session.refund_amount = charges.refund_amount
            db.commit()
            return serialize_session(session)

    async def on_device_stop(
        self,
        device_id: str,
        transaction_id: int,
        meter_stop: Optional[float] = None,
    ) -> Optional[Dict[str, Any]]:
        with self._session_factory() as db:
            session = (
                db.query(ChargingSession)
                .filter(ChargingSession.device_id == device_id)
                .filter(ChargingSession.transaction_id == transaction_id)
                .order_by(ChargingSession.created_at.desc())
                .first()
            )
            if session is None:
                logger.info("StopTransaction %s on %s matches no session", transaction_id, device_id)
                return None
            if session.status == "stopped":
                session.status = "completed"
                if meter_stop is not None:
                    session.meter_end = float(meter_stop)
                db.commit()
                return serialize_session(session)
        if not session.is_open:
            return None
        charges = await self.compute_charges(session, meter_end=meter_stop)
        finished = await self._finalise(session.session_id, charges, status="completed")
        await self.dispatcher.publish_event(
            EventType.STOPPED, {"sessionId": finished.session_id, "deviceId": device_id, "source": "device"}
        )
        return serialize_session(finished)

    # -- read projections -------------------------------------------------

    async def active_session(self, customer_id: int) -> Dict[str, Any]:
        with self._session_factory() as db:
            session = (
                db.query(ChargingSession)
                .filter(ChargingSession.customer_id == customer_id)
                .filter(ChargingSession.status.in_(OPEN_STATUSES))
                .filter(ChargingSession.end_time.is_(None))
                .order_by(ChargingSession.created_at.desc())
                .first()
            )
        if session is None:
            return {"success": True, "session": None}
        data = serialize_session(session)
        meter_start = session.meter_start if session.meter_start is not None else self._first_reading(session)
        latest = self._latest_reading(session)
        energy, cost = Decimal("0.000"), ZERO
        if meter_start is not None and latest is not None:
            charges = self._price(session, meter_start, latest)
            energy, cost = charges.energy_kwh, charges.final_amount
        deducted = to_money(session.amount_deducted or 0)
        data.update(
            {
                "currentEnergy": float(energy),
                "currentCost": float(cost),
                "shouldAutoStop": deducted > 0 and cost >= deducted * AUTO_STOP_RATIO,
            }
        )
        return {"success": True, "session": data}

    async def list_sessions(
        self,
        customer_id: int,
        page: int = 1,
        limit: int = 20,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        page = max(1, page)
        limit = max(1, min(limit, 100))
        key = list_key(
            "sessions",
            customer=customer_id,
            page=page,
            limit=limit,
            start=_iso(from_date),
            end=_iso(to_date),
        )

        async def load() -> Dict[str, Any]:
            with self._session_factory() as db:
                q = db.query(ChargingSession).filter(ChargingSession.customer_id == customer_id)
                if from_date is not None:
                    q = q.filter(ChargingSession.created_at >= from_date)
                if to_date is not None:
                    q = q.filter(ChargingSession.created_at <= to_date)
                total = q.count()
                rows = (
                    q.order_by(ChargingSession.created_at.desc(), ChargingSession.id.desc())
                    .offset((page - 1) * limit)
                    .limit(limit)
                    .all()
                )
                return {
                    "sessions": [serialize_session(r) for r in rows],
                    "pagination": {
                        "page": page,
                        "limit": limit,
                        "total": total,
                        "totalPages": (total + limit - 1) // limit,
                    },
                }

        return await self.cache.cached(key, self.list_cache_ttl, load)

    async def get_session(self, customer_id: int, session_id: str) -> Dict[str, Any]:
        with self._session_factory() as db:
            session = self._by_session_id(db, session_id)
            if session is None or session.customer_id != customer_id:
                raise NotFoundError("Session not found")
            return serialize_session(session)

