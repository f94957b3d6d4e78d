"""Reconstruct a device's online, fault and charging state.

The live cache is authoritative whenever it holds a snapshot. When it is cold
the state is rebuilt from the protocol log by an ordered list of predicates,
each of which returns ``True``/``False`` or ``None`` for "no verdict".
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from ..models import utcnow
from ..ocpp_local.domain import (
    NO_ERROR,
    OFFLINE,
    ONLINE,
    STOPPED_STATES,
    ConnectorState,
    Direction,
    MessageKind,
    map_online_status,
    same_status,
)
from .cache import Cache
from .protocol_log import LogView, ProtocolLogStore
from .registry import DeviceRegistry

logger = logging.getLogger(__name__)

STALE_START = timedelta(hours=2)
CHARGING_WINDOW = timedelta(minutes=5)
REMOTE_STOP_WINDOW = timedelta(minutes=2)
REMOTE_STOP_GRACE = timedelta(seconds=30)

FAULT_FLAGS = ("faulted", "fault")

Verdict = Optional[bool]
LogPredicate = Callable[[LogView, datetime], Verdict]


def live_status_verdict(snapshot: Optional[Dict[str, Any]]) -> Verdict:
    if not snapshot:
        return None
    status = snapshot.get("status")
    if same_status(status, ConnectorState.AVAILABLE):
        return False
    if same_status(status, ConnectorState.CHARGING):
        return True
    return None


def _reports_stopped(msg) -> bool:
    return msg.status in STOPPED_STATES


def remote_stop_verdict(view: LogView, now: datetime) -> Verdict:
    """An accepted remote stop in the last two minutes means charging ended."""
    accepted = []
    for command in view.select(MessageKind.REMOTE_STOP, Direction.OUTGOING, since=now - REMOTE_STOP_WINDOW):
        response = view.response_to(command.correlation_id, Direction.INCOMING)
        if response is not None and response.status == "Accepted":
            accepted.append(response)
    if not accepted:
        return None
    latest = max(accepted, key=lambda m: (m.timestamp, m.id))
    for status in view.select(MessageKind.STATUS_NOTIFICATION, Direction.INCOMING, since=latest.timestamp):
        if _reports_stopped(status):
            return False
    if now - latest.timestamp < REMOTE_STOP_GRACE:
        return False
    return None


def charging_status_verdict(view: LogView, now: datetime) -> Verdict:
    charging = view.latest(
        MessageKind.STATUS_NOTIFICATION,
        Direction.INCOMING,
        since=now - CHARGING_WINDOW,
        predicate=lambda m: m.status == ConnectorState.CHARGING,
    )
    if charging is None:
        return None
    later = view.select(MessageKind.STATUS_NOTIFICATION, Direction.INCOMING, after=charging)
    return not any(_reports_stopped(m) for m in later)


def start_transaction_verdict(view: LogView, now: datetime) -> Verdict:
    start = view.latest(MessageKind.START_TRANSACTION, Direction.INCOMING)
    if start is None:
        return False
    if now - start.timestamp > STALE_START:
        return False
    response = view.response_to(start.correlation_id, Direction.OUTGOING)
    transaction_id = response.transaction_id if response is not None else None
    if transaction_id is None:
        transaction_id = start.transaction_id
    stops = view.select(MessageKind.STOP_TRANSACTION, Direction.INCOMING, after=start)
    if transaction_id is None:
        return not stops
    return not any(m.transaction_id == transaction_id for m in stops)


LOG_PREDICATES: Sequence[LogPredicate] = (
    remote_stop_verdict,
    charging_status_verdict,
    start_transaction_verdict,
)


def first_verdict(view: LogView, now: datetime, predicates: Iterable[LogPredicate] = LOG_PREDICATES) -> bool:
    for predicate in predicates:
        verdict = predicate(view, now)
        if verdict is not None:
            logger.debug("%s decided %s", predicate.__name__, verdict)
            return verdict
    return False


class DeviceStateReconciler:
    def __init__(
        self,
        cache: Cache,
        log_store: ProtocolLogStore,
        registry: DeviceRegistry,
        now: Callable[[], datetime] = utcnow,
        offline_threshold: int = 300,
    ) -> None:
        self.cache = cache
        self.log_store = log_store
        self.registry = registry
        self._now = now
        self.offline_threshold = timedelta(seconds=offline_threshold)

    async def status(self, device_id: str) -> str:
        snapshot = await self.cache.live_status(device_id)
        if snapshot and snapshot.get("status"):
            return map_online_status(snapshot["status"])
        charger = self.registry.get(device_id)
        if charger is None or charger.last_seen is None:
            return OFFLINE
        if self._now() - charger.last_seen <= self.offline_threshold:
            return ONLINE
        return OFFLINE

    def has_fault(self, device_id: str) -> bool:
        charger = self.registry.get(device_id)
        if charger is not None and (charger.status or "").lower() in FAULT_FLAGS:
            return True
        latest = self.log_store.latest(device_id, MessageKind.STATUS_NOTIFICATION, Direction.INCOMING)
        if latest is None:
            return False
        if latest.error_code and latest.error_code != NO_ERROR:
            return True
        return latest.connector_status in (ConnectorState.FAULTED, ConnectorState.UNAVAILABLE)

    async def has_active_transaction(self, device_id: str) -> bool:
        if not device_id:
            return False
        verdict = live_status_verdict(await self.cache.live_status(device_id))
        if verdict is not None:
            return verdict
        return first_verdict(self.log_store.recent(device_id), self._now())

    async def connector_status(self, device_id: str) -> str:
        if await self.status(device_id) == OFFLINE:
            return ConnectorState.UNAVAILABLE
        if self.has_fault(device_id):
            return ConnectorState.FAULTED
        if await self.has_active_transaction(device_id):
            return ConnectorState.CHARGING
        return ConnectorState.AVAILABLE

    async def overview(self, device_ids: Iterable[str]) -> List[Dict[str, Any]]:
        result = []
        for device_id in device_ids:
            result.append(
                {
                    "deviceId": device_id,
                    "status": await self.status(device_id),
                    "cStatus": await self.connector_status(device_id),
                }
            )
        return result
