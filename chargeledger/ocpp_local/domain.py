"""Domain records for protocol traffic.

The ``ocpp`` library demultiplexes raw frames; these dataclasses are the
transport-independent view of a logged frame that the reconciler and the
orchestrator reason about.  Payloads are kept in their wire (camelCase) form.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional


class Direction:
    INCOMING = "Incoming"  # device -> central system
    OUTGOING = "Outgoing"  # central system -> device


class MessageKind:
    BOOT_NOTIFICATION = "BootNotification"
    HEARTBEAT = "Heartbeat"
    STATUS_NOTIFICATION = "StatusNotification"
    METER_VALUES = "MeterValues"
    START_TRANSACTION = "StartTransaction"
    STOP_TRANSACTION = "StopTransaction"
    REMOTE_START = "RemoteStartTransaction"
    REMOTE_STOP = "RemoteStopTransaction"
    RESPONSE = "Response"
    CALL_ERROR = "CallError"


class ConnectorState:
    AVAILABLE = "Available"
    PREPARING = "Preparing"
    CHARGING = "Charging"
    SUSPENDED_EV = "SuspendedEV"
    SUSPENDED_EVSE = "SuspendedEVSE"
    FINISHING = "Finishing"
    RESERVED = "Reserved"
    UNAVAILABLE = "Unavailable"
    FAULTED = "Faulted"
    OFFLINE = "Offline"


ONLINE = "Online"
OFFLINE = "Offline"

ONLINE_STATES = frozenset(
    {ConnectorState.AVAILABLE, ConnectorState.CHARGING, ConnectorState.PREPARING, ConnectorState.FINISHING}
)
STOPPED_STATES = frozenset({ConnectorState.AVAILABLE, ConnectorState.FINISHING})

NO_ERROR = "NoError"

ENERGY_MEASURANDS = (
    "Energy.Active.Import.Register",
    "Energy",
    "energy",
)


def map_online_status(protocol_status: Optional[str]) -> str:
    """Map a connector status string to ``Online``/``Offline``.

    Matching ignores case. Unknown values map to ``Offline``.
    """
    if any(same_status(protocol_status, state) for state in ONLINE_STATES):
        return ONLINE
    return OFFLINE


def same_status(value: Optional[str], expected: str) -> bool:
    return bool(value) and value.lower() == expected.lower()


def _items(value: Any) -> list:
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


def extract_energy_wh(payload: Dict[str, Any]) -> Optional[float]:
    """Return the cumulative energy register (Wh) carried by a MeterValues payload.

    Accepts both wire (``meterValue``/``sampledValue``) and snake_case keys.  A
    sampled value without a measurand is the energy register by protocol default.
    Readings reported in kWh are converted.
    """
    meter_values = _items(payload.get("meterValue", payload.get("meter_value")))
    if not meter_values or not isinstance(meter_values[0], dict):
        return None
    first = meter_values[0]
    for sample in _items(first.get("sampledValue", first.get("sampled_value"))):
        if not isinstance(sample, dict):
            continue
        measurand = sample.get("measurand")
        if measurand is not None and measurand not in ENERGY_MEASURANDS:
            continue
        try:
            value = float(sample.get("value"))
        except (TypeError, ValueError):
            continue
        if str(sample.get("unit", "Wh")).lower() == "kwh":
            value *= 1000
        return value
    return None


@dataclass(frozen=True, slots=True)
class LoggedMessage:
    """A protocol frame as recorded in the protocol log."""

    id: int
    device_id: str
    kind: str
    direction: str
    timestamp: datetime
    correlation_id: Optional[str] = None
    connector_id: Optional[int] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: Any) -> "LoggedMessage":
        return cls(
            id=row.id,
            device_id=row.device_id,
            kind=row.message,
            direction=row.direction,
            timestamp=row.timestamp,
            correlation_id=row.message_id,
            connector_id=row.connector_id,
            payload=dict(row.payload or {}),
        )

    def is_(self, kind: str, direction: str) -> bool:
        return self.kind == kind and self.direction == direction

    @property
    def transaction_id(self) -> Optional[int]:
        value = self.payload.get("transactionId")
        try:
            return int(value) if value is not None else None
        except (TypeError, ValueError):
            return None

    @property
    def status(self) -> Optional[str]:
        return self.payload.get("status")

    @property
    def error_code(self) -> Optional[str]:
        return self.payload.get("errorCode")

    @property
    def connector_status(self) -> Optional[str]:
        return self.payload.get("connectorStatus") or self.payload.get("status")

    @property
    def energy_wh(self) -> Optional[float]:
        return extract_energy_wh(self.payload)
