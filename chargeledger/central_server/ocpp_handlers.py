"""OCPP 1.6 central system: one :class:`CentralSystem` per connected charger.

Every frame in either direction is written to the protocol log before it is
routed or sent. Lifecycle messages are forwarded to the session orchestrator
and live status is pushed into the cache.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Optional

from ocpp.exceptions import OCPPError
from ocpp.messages import Call, CallError, CallResult, unpack
from ocpp.routing import on
from ocpp.v16 import ChargePoint, call, call_result
from ocpp.v16.enums import AuthorizationStatus, RegistrationStatus, RemoteStartStopStatus, ResetStatus

from ..ocpp_local.domain import ConnectorState, Direction, MessageKind, extract_energy_wh
from ..services.cache import HEARTBEAT_TTL, METER_TTL, heartbeat_key, meter_key

if TYPE_CHECKING:
    from ..context import AppContext


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _status_value(status: Any) -> Optional[str]:
    return getattr(status, "value", status)


def describe_frame(raw: str) -> Optional[Dict[str, Any]]:
    """Turn a raw OCPP-J frame into protocol log fields, or ``None`` if unparseable."""
    try:
        msg = unpack(raw)
    except (OCPPError, ValueError, TypeError) as exc:
        logging.warning(f"Unparseable OCPP frame not logged: {exc}")
        return None
    if isinstance(msg, Call):
        payload = msg.payload if isinstance(msg.payload, dict) else {}
        kind = msg.action
    elif isinstance(msg, CallResult):
        payload = msg.payload if isinstance(msg.payload, dict) else {}
        kind = MessageKind.RESPONSE
    elif isinstance(msg, CallError):
        payload = {
            "errorCode": msg.error_code,
            "errorDescription": msg.error_description,
            "errorDetails": msg.error_details,
        }
        kind = MessageKind.CALL_ERROR
    else:
        return None
    connector_id = payload.get("connectorId")
    return {
        "kind": kind,
        "correlation_id": msg.unique_id,
        "payload": payload,
        "connector_id": connector_id if isinstance(connector_id, int) else None,
    }


class CentralSystem(ChargePoint):
    def __init__(self, id, connection, ctx: "AppContext"):
        super().__init__(id, connection)
        self.ctx = ctx

    def _record(self, raw: str, direction: str) -> None:
        frame = describe_frame(raw)
        if frame is not None:
            self.ctx.log_store.append(self.id, direction=direction, **frame)

    async def route_message(self, raw_msg):
        self._record(raw_msg, Direction.INCOMING)
        await super().route_message(raw_msg)

    async def _send(self, message):
        self._record(message, Direction.OUTGOING)
        await super()._send(message)

    async def remote_start(self, connector_id: int, id_tag: str):
        req = call.RemoteStartTransaction(id_tag=id_tag, connector_id=connector_id)
        logging.info(f"→ RemoteStartTransaction to {self.id} (connector={connector_id}, idTag={id_tag})")
        resp = await self.call(req)
        status = getattr(resp, "status", None)
        if status != RemoteStartStopStatus.accepted:
            logging.warning(f"RemoteStartTransaction rejected by {self.id}: {status}")
        return _status_value(status)

    async def remote_stop(self, transaction_id: int):
        req = call.RemoteStopTransaction(transaction_id=transaction_id)
        logging.info(f"→ RemoteStopTransaction to {self.id} (tx={transaction_id})")
        resp = await self.call(req)
        status = getattr(resp, "status", None)
        if status != RemoteStartStopStatus.accepted:
            logging.warning(f"RemoteStopTransaction rejected by {self.id}: {status}")
        return _status_value(status)

    async def remote_reset(self, reset_type: str):
        req = call.Reset(type=reset_type)
        logging.info(f"→ Reset to {self.id} (type={reset_type})")
        resp = await self.call(req)
        status = getattr(resp, "status", None)
        if status != ResetStatus.accepted:
            logging.warning(f"Reset rejected by {self.id}: {status}")
        return _status_value(status)

    async def change_configuration(self, key: str, value: str):
        req = call.ChangeConfiguration(key=key, value=value)
        logging.info(f"→ ChangeConfiguration to {self.id} ({key}={value})")
        resp = await self.call(req)
        logging.info(f"← ChangeConfiguration.conf from {self.id}: {resp}")
        return _status_value(getattr(resp, "status", None))

    @on("BootNotification")
    async def on_boot_notification(self, charge_point_vendor, charge_point_model, **kwargs):
        logging.info(f"← BootNotification from {self.id}: vendor={charge_point_vendor}, model={charge_point_model}")
        self.ctx.registry.touch(self.id, vendor=charge_point_vendor, model=charge_point_model)
        await self.ctx.cache.set(heartbeat_key(self.id), {"timestamp": _now_iso()}, HEARTBEAT_TTL)
        return call_result.BootNotification(
            current_time=_now_iso(),
            interval=300,
            status=RegistrationStatus.accepted,
        )

    @on("Heartbeat")
    async def on_heartbeat(self, **kwargs):
        logging.info(f"← Heartbeat from {self.id}")
        self.ctx.registry.touch(self.id)
        now = _now_iso()
        await self.ctx.cache.set(heartbeat_key(self.id), {"timestamp": now}, HEARTBEAT_TTL)
        return call_result.Heartbeat(current_time=now)

    @on("Authorize")
    async def on_authorize(self, id_tag, **kwargs):
        logging.info(f"← Authorize from {self.id}, idTag={id_tag}")
        return call_result.Authorize(id_tag_info={"status": AuthorizationStatus.accepted})

    @on("StatusNotification")
    async def on_status_notification(self, connector_id, error_code, status, **kwargs):
        logging.info(
            f"← StatusNotification from {self.id}: connector {connector_id} → status={status}, errorCode={error_code}"
        )
        self.ctx.registry.touch(self.id, status=status)
        await self.ctx.cache.update_live_status(self.id, status, error_code, self.ctx.settings.status_ttl)
        return call_result.StatusNotification()

    @on("MeterValues")
    async def on_meter_values(self, connector_id, meter_value, transaction_id=None, **kwargs):
        energy = extract_energy_wh({"meter_value": meter_value})
        logging.info(f"← MeterValues from {self.id}: connector={connector_id}, tx={transaction_id}, energy={energy}Wh")
        self.ctx.registry.touch(self.id)
        if energy is not None:
            await self.ctx.cache.set(
                meter_key(self.id),
                {
                    "connectorId": connector_id,
                    "transactionId": transaction_id,
                    "energyWh": energy,
                    "timestamp": _now_iso(),
                },
                METER_TTL,
            )
            await self.ctx.orchestrator.record_meter_values(self.id, connector_id, transaction_id, energy)
        return call_result.MeterValues()

    @on("StartTransaction")
    async def on_start_transaction(self, connector_id, id_tag, meter_start, timestamp, **kwargs):
        tx_id = next(self.ctx.transaction_ids)
        logging.info(
            f"← StartTransaction from {self.id}: connector={connector_id}, idTag={id_tag}, meterStart={meter_start}"
        )
        logging.info(f"→ Assign transactionId={tx_id}")
        await self.ctx.orchestrator.attach_transaction(self.id, int(connector_id), tx_id, meter_start)
        await self.ctx.cache.update_live_status(self.id, ConnectorState.CHARGING, ttl=self.ctx.settings.status_ttl)
        return call_result.StartTransaction(
            transaction_id=tx_id,
            id_tag_info={"status": AuthorizationStatus.accepted},
        )

    @on("StopTransaction")
    async def on_stop_transaction(self, meter_stop, timestamp, transaction_id, **kwargs):
        logging.info(f"← StopTransaction from {self.id}: tx={transaction_id}, meterStop={meter_stop}")
        await self.ctx.orchestrator.on_device_stop(self.id, int(transaction_id), meter_stop)
        await self.ctx.cache.update_live_status(self.id, ConnectorState.AVAILABLE, ttl=self.ctx.settings.status_ttl)
        return call_result.StopTransaction(id_tag_info={"status": AuthorizationStatus.accepted})
