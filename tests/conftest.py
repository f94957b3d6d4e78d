from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest

from chargeledger.config import Settings
from chargeledger.context import build_context
from chargeledger.models import ChargingPoint, Customer, Tariff
from chargeledger.ocpp_local.domain import Direction, MessageKind
from chargeledger.services.cache import MemoryCache
from chargeledger.services.dispatcher import CommandDispatcher, DispatchResult, DispatchStrategy

T0 = datetime(2026, 3, 1, 12, 0, 0)
DEVICE = "DEV1"


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current += timedelta(seconds=seconds)
        return self.current


class RecordingStrategy(DispatchStrategy):
    """Stands in for the device-control endpoint or the queue."""

    def __init__(self, name: str = "direct", accepted: bool = True, error: Optional[str] = None):
        self.name = name
        self.accepted = accepted
        self.error = error
        self.sent: List[Dict[str, Any]] = []

    async def send(self, command, device_id, payload, meta):
        self.sent.append({"command": command, "deviceId": device_id, "payload": payload, "meta": meta})
        raw = {"success": self.accepted, "status": "Accepted" if self.accepted else "Rejected"}
        if self.error:
            raw["error"] = self.error
        return DispatchResult(accepted=self.accepted, raw=raw, via=self.name)


class FakeExchange:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.published = []

    async def publish(self, message, routing_key):
        if self.fail:
            raise RuntimeError("channel closed")
        self.published.append((message, routing_key))


class FakePublisher:
    def __init__(self, exchange: Optional[FakeExchange] = None):
        self.exchange = exchange or FakeExchange()
        self.connected = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def direct():
    return RecordingStrategy()


@pytest.fixture
def settings():
    return Settings(database_url="sqlite://", redis_url="", enable_rabbitmq=False)


@pytest.fixture
def ctx(settings, clock, sleeps, direct):
    async def fake_sleep(seconds):
        sleeps.append(seconds)

    context = build_context(
        settings,
        cache=MemoryCache(),
        dispatcher=CommandDispatcher(direct=direct),
        now=clock,
        sleep=fake_sleep,
    )
    yield context
    context.engine.dispose()


@pytest.fixture
def orchestrator(ctx):
    return ctx.orchestrator


def add_customer(ctx, balance: Any = 0, name: str = "Asha Rao") -> int:
    with ctx.session_factory() as db:
        customer = Customer(full_name=name, email=f"{name.split()[0].lower()}@example.com")
        db.add(customer)
        db.flush()
        if balance:
            ctx.wallet.credit(db, customer.id, balance, "Initial top-up")
        else:
            ctx.wallet.get_or_create_wallet(db, customer.id)
        db.commit()
        return customer.id


def add_charging_point(
    ctx, device_id: str = DEVICE, ref: str = "CP-REF-1", base: str = "10.00", tax: str = "18.00"
) -> int:
    with ctx.session_factory() as db:
        tariff = Tariff(tariff_id=f"TRF-{ref}", tariff_name="Standard", base_charges=Decimal(base), tax=Decimal(tax))
        db.add(tariff)
        db.flush()
        point = ChargingPoint(charging_point_id=ref, device_id=device_id, device_name="Bay 1", tariff_id=tariff.id)
        db.add(point)
        db.commit()
        return point.id


def balance(ctx, customer_id: int) -> Decimal:
    with ctx.session_factory() as db:
        return ctx.wallet.balance(db, customer_id)


def log_meter(ctx, energy_wh: float, connector_id: int = 1, transaction_id: Optional[int] = None, device_id=DEVICE):
    payload: Dict[str, Any] = {
        "connectorId": connector_id,
        "meterValue": [
            {
                "timestamp": "2026-03-01T12:00:00Z",
                "sampledValue": [{"value": str(energy_wh), "measurand": "Energy.Active.Import.Register", "unit": "Wh"}],
            }
        ],
    }
    if transaction_id is not None:
        payload["transactionId"] = transaction_id
    return ctx.log_store.append(
        device_id, MessageKind.METER_VALUES, Direction.INCOMING, payload, connector_id=connector_id
    )


def log_start_transaction(ctx, correlation_id: str, transaction_id: int, connector_id: int = 1, device_id=DEVICE):
    start = ctx.log_store.append(
        device_id,
        MessageKind.START_TRANSACTION,
        Direction.INCOMING,
        {"connectorId": connector_id, "idTag": "CUSTOMER_1", "meterStart": 0, "timestamp": "2026-03-01T12:00:00Z"},
        correlation_id=correlation_id,
        connector_id=connector_id,
    )
    ctx.log_store.append(
        device_id,
        MessageKind.RESPONSE,
        Direction.OUTGOING,
        {"transactionId": transaction_id, "idTagInfo": {"status": "Accepted"}},
        correlation_id=correlation_id,
    )
    return start


def log_stop_transaction(ctx, transaction_id: int, device_id=DEVICE):
    return ctx.log_store.append(
        device_id,
        MessageKind.STOP_TRANSACTION,
        Direction.INCOMING,
        {"transactionId": transaction_id, "meterStop": 0, "timestamp": "2026-03-01T12:00:00Z"},
        correlation_id=f"stop-{transaction_id}",
    )


def log_status(ctx, status: str, error_code: str = "NoError", connector_id: int = 1, device_id=DEVICE):
    return ctx.log_store.append(
        device_id,
        MessageKind.STATUS_NOTIFICATION,
        Direction.INCOMING,
        {"connectorId": connector_id, "errorCode": error_code, "status": status},
        correlation_id=f"sn-{status}",
        connector_id=connector_id,
    )


class FakeChargePoint:
    """Connected charger double answering every command with a fixed status."""

    def __init__(self, status: str = "Accepted"):
        self.status = status
        self.calls = []

    async def remote_start(self, connector_id, id_tag):
        self.calls.append(("RemoteStartTransaction", connector_id, id_tag))
        return self.status

    async def remote_stop(self, transaction_id):
        self.calls.append(("RemoteStopTransaction", transaction_id))
        return self.status

    async def remote_reset(self, reset_type):
        self.calls.append(("Reset", reset_type))
        return self.status

    async def change_configuration(self, key, value):
        self.calls.append(("ChangeConfiguration", key, value))
        return self.status
