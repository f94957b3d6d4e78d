"""Remote command dispatch: durable queue first, direct device-control call as fallback."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import aio_pika
import httpx
from aio_pika.abc import AbstractChannel, AbstractConnection, AbstractExchange
from aio_pika.exceptions import AMQPException

from ..models import utcnow

logger = logging.getLogger(__name__)

EXCHANGE_NAME = "ev_charging_events"

COMMAND_PRIORITY = 5
EVENT_PRIORITY = 10


class CommandType:
    REMOTE_START = "RemoteStartTransaction"
    REMOTE_STOP = "RemoteStopTransaction"
    CHANGE_CONFIGURATION = "ChangeConfiguration"
    RESET = "Reset"


class EventType:
    STARTED = "charging.started"
    STOPPED = "charging.stopped"
    FAILED = "charging.failed"


ROUTING_KEYS: Dict[str, str] = {
    CommandType.REMOTE_START: "charging.remote.start",
    CommandType.REMOTE_STOP: "charging.remote.stop",
    CommandType.CHANGE_CONFIGURATION: "command.changeconfig",
    CommandType.RESET: "command.reset",
}

# device-control endpoint per command
ENDPOINTS: Dict[str, str] = {
    CommandType.REMOTE_START: "/api/charger/remote-start",
    CommandType.REMOTE_STOP: "/api/charger/remote-stop",
    CommandType.CHANGE_CONFIGURATION: "/api/charger/change-configuration",
    CommandType.RESET: "/api/charger/reset",
}


@dataclass(slots=True)
class CommandMeta:
    session_id: Optional[str] = None
    customer_id: Optional[int] = None
    connector_id: Optional[int] = None
    id_tag: Optional[str] = None
    transaction_id: Optional[int] = None


@dataclass(frozen=True, slots=True)
class DispatchResult:
    accepted: bool
    raw: Dict[str, Any] = field(default_factory=dict)
    via: str = "direct"

    @property
    def queued(self) -> bool:
        return self.via == "queue"

    @property
    def error(self) -> Optional[str]:
        return self.raw.get("error") or self.raw.get("message")


def build_envelope(command: str, device_id: str, payload: Dict[str, Any], meta: CommandMeta) -> Dict[str, Any]:
    return {
        "deviceId": device_id,
        "command": command,
        "payload": payload,
        "sessionId": meta.session_id,
        "customerId": meta.customer_id,
        "connectorId": meta.connector_id,
        "idTag": meta.id_tag,
        "transactionId": meta.transaction_id,
        "timestamp": utcnow().isoformat() + "Z",
    }


class DispatchStrategy(ABC):
    name: str = ""

    @property
    def available(self) -> bool:
        return True

    @abstractmethod
    async def send(
        self, command: str, device_id: str, payload: Dict[str, Any], meta: CommandMeta
    ) -> DispatchResult:
        ...


class QueuePublisher:
    """Owns the broker connection and the topic exchange commands are published to."""

    def __init__(self, url: str) -> None:
        self.url = url
        self.connection: Optional[AbstractConnection] = None
        self.channel: Optional[AbstractChannel] = None
        self.exchange: Optional[AbstractExchange] = None

    @property
    def connected(self) -> bool:
        return self.exchange is not None and self.connection is not None and not self.connection.is_closed

    async def connect(self) -> bool:
        try:
            self.connection = await aio_pika.connect_robust(self.url)
            self.channel = await self.connection.channel()
            self.exchange = await self.channel.declare_exchange(
                EXCHANGE_NAME, aio_pika.ExchangeType.TOPIC, durable=True
            )
        except (AMQPException, OSError) as exc:
            logger.error("RabbitMQ connection to %s failed: %s", self.url, exc)
            self.exchange = None
            return False
        logger.info("Connected to RabbitMQ exchange %s", EXCHANGE_NAME)
        return True

    async def close(self) -> None:
        if self.connection is not None:
            await self.connection.close()
        self.connection = self.channel = self.exchange = None


async def publish_json(exchange: AbstractExchange, routing_key: str, body: Dict[str, Any], priority: int) -> None:
    message = aio_pika.Message(
        body=json.dumps(body, default=str).encode(),
        content_type="application/json",
        delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        priority=min(max(priority, 1), 10),
    )
    await exchange.publish(message, routing_key=routing_key)


class QueueStrategy(DispatchStrategy):
    name = "queue"

    def __init__(self, publisher: QueuePublisher) -> None:
        self.publisher = publisher

    @property
    def available(self) -> bool:
        return self.publisher.connected

    async def send(self, command, device_id, payload, meta) -> DispatchResult:
        envelope = build_envelope(command, device_id, payload, meta)
        await publish_json(self.publisher.exchange, ROUTING_KEYS[command], envelope, COMMAND_PRIORITY)
        logger.info("→ %s for %s queued on %s", command, device_id, ROUTING_KEYS[command])
        return DispatchResult(accepted=True, raw=envelope, via=self.name)


class DirectCallStrategy(DispatchStrategy):
    """POSTs the command to the device-control endpoint and waits for the device's answer."""

    name = "direct"

    def __init__(self, base_url: str, timeout: float = 60.0, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def send(self, command, device_id, payload, meta) -> DispatchResult:
        body = {"deviceId": device_id, **payload}
        url = f"{self.base_url}{ENDPOINTS[command]}"
        logger.info("→ %s for %s via %s", command, device_id, url)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.post(url, json=body)
            data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Direct %s call for %s failed: %s", command, device_id, exc)
            return DispatchResult(accepted=False, raw={"error": str(exc) or type(exc).__name__}, via=self.name)
        if not isinstance(data, dict):
            data = {"error": f"unexpected response: {data!r}"}
        accepted = resp.is_success and bool(data.get("success"))
        if not accepted:
            if not data.get("error"):
                data["error"] = f"{command} rejected (HTTP {resp.status_code}, status={data.get('status')})"
            logger.warning("%s for %s not accepted: %s", command, device_id, data.get("error"))
        return DispatchResult(accepted=accepted, raw=data, via=self.name)


class CommandDispatcher:
    """Send remote commands through the queue when enabled, otherwise directly."""

    def __init__(
        self,
        direct: DispatchStrategy,
        queue: Optional[DispatchStrategy] = None,
        queue_enabled: bool = False,
        publisher: Optional[QueuePublisher] = None,
    ) -> None:
        self.direct = direct
        self.queue = queue
        self.queue_enabled = queue_enabled
        self.publisher = publisher

    def _queue_usable(self) -> bool:
        return self.queue_enabled and self.queue is not None and self.queue.available

    async def dispatch(
        self,
        command: str,
        device_id: str,
        payload: Dict[str, Any],
        meta: Optional[CommandMeta] = None,
    ) -> DispatchResult:
        if command not in ROUTING_KEYS:
            raise ValueError(f"unknown command {command}")
        meta = meta or CommandMeta()
        if self._queue_usable():
            try:
                return await self.queue.send(command, device_id, payload, meta)
            except Exception as exc:
                logger.error("Queue publish of %s for %s failed, falling back to direct call: %s", command, device_id, exc)
        return await self.direct.send(command, device_id, payload, meta)

    async def publish_event(self, event_type: str, data: Dict[str, Any]) -> bool:
        """Publish a lifecycle event. Best effort: failures are only logged."""
        if not self.queue_enabled or self.publisher is None or not self.publisher.connected:
            return False
        body = {"type": event_type, **data, "timestamp": utcnow().isoformat() + "Z"}
        try:
            await publish_json(self.publisher.exchange, event_type, body, EVENT_PRIORITY)
        except Exception as exc:
            logger.warning("Publishing %s event failed: %s", event_type, exc)
            return False
        return True
