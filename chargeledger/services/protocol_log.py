"""Append-only store of protocol frames exchanged with devices."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

from sqlalchemy.orm import sessionmaker

from ..models import ProtocolLogEntry, utcnow
from ..ocpp_local.domain import Direction, LoggedMessage, MessageKind

logger = logging.getLogger(__name__)

RECENT_LIMIT = 2000


class LogView:
    """Read-only, newest-first window over one device's protocol log."""

    def __init__(self, messages: Iterable[LoggedMessage]) -> None:
        self._messages = tuple(messages)

    def __iter__(self) -> Iterator[LoggedMessage]:
        return iter(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def select(
        self,
        kind: str,
        direction: str,
        since: Optional[datetime] = None,
        after: Optional[LoggedMessage] = None,
    ) -> List[LoggedMessage]:
        found = []
        for msg in self._messages:
            if not msg.is_(kind, direction):
                continue
            if since is not None and msg.timestamp < since:
                continue
            if after is not None and not _newer(msg, after):
                continue
            found.append(msg)
        return found

    def latest(
        self,
        kind: str,
        direction: str,
        since: Optional[datetime] = None,
        predicate: Optional[Callable[[LoggedMessage], bool]] = None,
    ) -> Optional[LoggedMessage]:
        for msg in self.select(kind, direction, since=since):
            if predicate is None or predicate(msg):
                return msg
        return None

    def response_to(self, correlation_id: Optional[str], direction: str) -> Optional[LoggedMessage]:
        if not correlation_id:
            return None
        for msg in self._messages:
            if msg.kind == MessageKind.RESPONSE and msg.direction == direction and msg.correlation_id == correlation_id:
                return msg
        return None


def _newer(msg: LoggedMessage, than: LoggedMessage) -> bool:
    return (msg.timestamp, msg.id) > (than.timestamp, than.id)


class ProtocolLogStore:
    """Durable protocol log backed by the ``protocol_log`` table.

    Entries are only ever inserted. All reads return :class:`LoggedMessage`
    records detached from the ORM session.
    """

    def __init__(self, session_factory: sessionmaker, now: Callable[[], datetime] = utcnow) -> None:
        self._session_factory = session_factory
        self._now = now

    def append(
        self,
        device_id: str,
        kind: str,
        direction: str,
        payload: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
        connector_id: Optional[int] = None,
        timestamp: Optional[datetime] = None,
    ) -> LoggedMessage:
        row = ProtocolLogEntry(
            device_id=device_id,
            connector_id=connector_id,
            message=kind,
            direction=direction,
            message_id=correlation_id,
            timestamp=timestamp or self._now(),
            payload=payload or {},
        )
        with self._session_factory() as db:
            db.add(row)
            db.commit()
            return LoggedMessage.from_row(row)

    def _query(self, db, device_id: str, kind: str, direction: str):
        return (
            db.query(ProtocolLogEntry)
            .filter(ProtocolLogEntry.device_id == device_id)
            .filter(ProtocolLogEntry.message == kind)
            .filter(ProtocolLogEntry.direction == direction)
        )

    def latest(
        self,
        device_id: str,
        kind: str,
        direction: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        connector_id: Optional[int] = None,
    ) -> Optional[LoggedMessage]:
        with self._session_factory() as db:
            q = self._query(db, device_id, kind, direction)
            if since is not None:
                q = q.filter(ProtocolLogEntry.timestamp >= since)
            if until is not None:
                q = q.filter(ProtocolLogEntry.timestamp <= until)
            if connector_id is not None:
                q = q.filter(ProtocolLogEntry.connector_id == connector_id)
            row = q.order_by(ProtocolLogEntry.timestamp.desc(), ProtocolLogEntry.id.desc()).first()
            return LoggedMessage.from_row(row) if row else None

    def earliest(
        self,
        device_id: str,
        kind: str,
        direction: str,
        since: datetime,
        connector_id: Optional[int] = None,
    ) -> Optional[LoggedMessage]:
        with self._session_factory() as db:
            q = self._query(db, device_id, kind, direction).filter(ProtocolLogEntry.timestamp >= since)
            if connector_id is not None:
                q = q.filter(ProtocolLogEntry.connector_id == connector_id)
            row = q.order_by(ProtocolLogEntry.timestamp.asc(), ProtocolLogEntry.id.asc()).first()
            return LoggedMessage.from_row(row) if row else None

    def response_to(
        self,
        device_id: str,
        correlation_id: Optional[str],
        direction: str,
        since: Optional[datetime] = None,
    ) -> Optional[LoggedMessage]:
        """Return the CALLRESULT that answers the call with ``correlation_id``."""
        if not correlation_id:
            return None
        with self._session_factory() as db:
            q = self._query(db, device_id, MessageKind.RESPONSE, direction).filter(
                ProtocolLogEntry.message_id == correlation_id
            )
            if since is not None:
                q = q.filter(ProtocolLogEntry.timestamp >= since)
            row = q.order_by(ProtocolLogEntry.timestamp.desc()).first()
            return LoggedMessage.from_row(row) if row else None

    def stopped_after(self, device_id: str, transaction_id: int, after: datetime) -> bool:
        """True when a StopTransaction for ``transaction_id`` was logged after ``after``."""
        with self._session_factory() as db:
            rows = (
                self._query(db, device_id, MessageKind.STOP_TRANSACTION, Direction.INCOMING)
                .filter(ProtocolLogEntry.timestamp > after)
                .all()
            )
        return any(LoggedMessage.from_row(r).transaction_id == transaction_id for r in rows)

    def recent(self, device_id: str, limit: int = RECENT_LIMIT) -> LogView:
        with self._session_factory() as db:
            rows = (
                db.query(ProtocolLogEntry)
                .filter(ProtocolLogEntry.device_id == device_id)
                .order_by(ProtocolLogEntry.timestamp.desc(), ProtocolLogEntry.id.desc())
                .limit(limit)
                .all()
            )
            return LogView(LoggedMessage.from_row(r) for r in rows)
