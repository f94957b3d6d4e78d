import itertools
import json
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from ocpp.v16 import call_result
from ocpp.v16.enums import RemoteStartStopStatus

from chargeledger.central_server.control import CommandConsumer
from chargeledger.central_server.ocpp_handlers import CentralSystem, describe_frame
from chargeledger.ocpp_local.domain import Direction, MessageKind
from chargeledger.services.dispatcher import CommandDispatcher, QueueStrategy

from conftest import DEVICE, FakeChargePoint, FakePublisher, add_charging_point, add_customer, balance


class DummyConnection:
    def __init__(self):
        self.sent = []

    async def send(self, message):
        self.sent.append(json.loads(message))

    async def recv(self):
        raise AssertionError("not used")


@pytest.fixture
def central(ctx):
    return CentralSystem(DEVICE, DummyConnection(), ctx)


def _frame(unique_id, action, payload):
    return json.dumps([2, unique_id, action, payload])


def test_describe_frame_classifies_message_types():
    call = describe_frame(_frame("u1", "StatusNotification", {"connectorId": 2, "errorCode": "NoError", "status": "Charging"}))
    assert call == {
        "kind": "StatusNotification",
        "correlation_id": "u1",
        "payload": {"connectorId": 2, "errorCode": "NoError", "status": "Charging"},
        "connector_id": 2,
    }

    result = describe_frame(json.dumps([3, "u1", {"transactionId": 12}]))
    assert result["kind"] == MessageKind.RESPONSE
    assert result["payload"] == {"transactionId": 12}

    error = describe_frame(json.dumps([4, "u2", "NotImplemented", "no handler", {}]))
    assert error["kind"] == MessageKind.CALL_ERROR
    assert error["payload"]["errorCode"] == "NotImplemented"

    assert describe_frame("not json") is None
    assert describe_frame(json.dumps([9, "u3"])) is None


@pytest.mark.asyncio
async def test_every_frame_is_logged_in_both_directions(ctx, central):
    await central.route_message(_frame("hb-1", "Heartbeat", {}))

    view = list(ctx.log_store.recent(DEVICE))
    assert [(m.kind, m.direction) for m in reversed(view)] == [
        (MessageKind.HEARTBEAT, Direction.INCOMING),
        (MessageKind.RESPONSE, Direction.OUTGOING),
    ]
    assert view[0].correlation_id == "hb-1"
    assert "currentTime" in central._connection.sent[0][2]
    assert ctx.registry.get(DEVICE) is not None


@pytest.mark.asyncio
async def test_status_notification_updates_live_status(ctx, central):
    await central.route_message(
        _frame("sn-1", "StatusNotification", {"connectorId": 1, "errorCode": "GroundFailure", "status": "Faulted"})
    )

    snapshot = await ctx.cache.live_status(DEVICE)
    assert snapshot["status"] == "Faulted"
    assert snapshot["errorCode"] == "GroundFailure"
    assert ctx.registry.get(DEVICE).status == "Faulted"
    assert ctx.reconciler.has_fault(DEVICE)
    assert await ctx.reconciler.status(DEVICE) == "Offline"


@pytest.mark.asyncio
async def test_device_transaction_lifecycle(ctx, central, orchestrator, clock):
    cid = add_customer(ctx, balance=100)
    add_charging_point(ctx)
    await orchestrator.start(cid, DEVICE, 1, amount=80)

    await central.route_message(
        _frame(
            "st-1",
            "StartTransaction",
            {"connectorId": 1, "idTag": f"CUSTOMER_{cid}", "meterStart": 1000, "timestamp": "2026-03-01T12:00:00Z"},
        )
    )
    tx = central._connection.sent[-1][2]["transactionId"]
    assert (await ctx.cache.live_status(DEVICE))["status"] == "Charging"
    assert (await orchestrator.active_session(cid))["session"]["transactionId"] == tx

    clock.advance(300)
    await central.route_message(
        _frame(
            "mv-1",
            "MeterValues",
            {
                "connectorId": 1,
                "transactionId": tx,
                "meterValue": [
                    {
                        "timestamp": "2026-03-01T12:05:00Z",
                        "sampledValue": [{"value": "2.5", "measurand": "Energy.Active.Import.Register", "unit": "kWh"}],
                    }
                ],
            },
        )
    )
    running = (await orchestrator.active_session(cid))["session"]
    assert running["energyConsumed"] == 1.5
    assert running["meterEnd"] == 2500.0

    await central.route_message(
        _frame("sp-1", "StopTransaction", {"meterStop": 3000, "timestamp": "2026-03-01T12:06:00Z", "transactionId": tx})
    )

    assert (await orchestrator.active_session(cid))["session"] is None
    assert (await ctx.cache.live_status(DEVICE))["status"] == "Available"
    assert balance(ctx, cid) == Decimal("76.40")


@pytest.mark.asyncio
async def test_remote_start_reports_charger_status(central):
    central.call = AsyncMock(return_value=call_result.RemoteStartTransaction(status=RemoteStartStopStatus.accepted))
    assert await central.remote_start(1, "CMS_ADMIN") == "Accepted"

    central.call = AsyncMock(return_value=call_result.RemoteStartTransaction(status=RemoteStartStopStatus.rejected))
    assert await central.remote_start(1, "CMS_ADMIN") == "Rejected"


@pytest.mark.asyncio
async def test_queue_consumer_confirms_or_refunds_queued_starts(ctx, orchestrator, direct):
    publisher = FakePublisher()
    orchestrator.dispatcher = CommandDispatcher(
        direct=direct, queue=QueueStrategy(publisher), queue_enabled=True, publisher=publisher
    )
    cid = add_customer(ctx, balance=100)
    consumer = CommandConsumer(ctx)

    ctx.connected[DEVICE] = FakeChargePoint("Accepted")
    started = await orchestrator.start(cid, DEVICE, 1, amount=30)
    envelope = json.loads(publisher.exchange.published[-1][0].body)
    result = await consumer.handle(envelope)
    assert result["success"] is True
    assert (await orchestrator.get_session(cid, started["session"]["sessionId"]))["status"] == "active"

    ctx.connected[DEVICE] = FakeChargePoint("Rejected")
    second = await orchestrator.start(cid, DEVICE, 2, amount=30)
    envelope = json.loads(publisher.exchange.published[-1][0].body)
    result = await consumer.handle(envelope)
    assert result["success"] is False
    session = await orchestrator.get_session(cid, second["session"]["sessionId"])
    assert session["status"] == "failed"
    assert session["stopReason"] == "RemoteStartTransaction rejected: Rejected"
    assert balance(ctx, cid) == Decimal("70.00")


@pytest.mark.asyncio
async def test_transaction_ids_come_from_the_application_context(ctx, central):
    ctx.transaction_ids = itertools.count(500)
    other = CentralSystem("DEV2", DummyConnection(), ctx)

    for cs, unique_id in ((central, "st-a"), (other, "st-b")):
        await cs.route_message(
            _frame(
                unique_id,
                "StartTransaction",
                {"connectorId": 1, "idTag": "CMS_ADMIN", "meterStart": 0, "timestamp": "2026-03-01T12:00:00Z"},
            )
        )

    assert central._connection.sent[-1][2]["transactionId"] == 500
    assert other._connection.sent[-1][2]["transactionId"] == 501
