import httpx
import pytest
import pytest_asyncio

from chargeledger.api import create_app
from chargeledger.services.dispatcher import CommandDispatcher, DirectCallStrategy

from conftest import DEVICE, FakeChargePoint, add_customer, log_start_transaction


@pytest.fixture
def app(ctx):
    return create_app(ctx)


@pytest_asyncio.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/api/v1/health")
    assert resp.status_code == 200
    assert resp.json()["ok"] is True


@pytest.mark.asyncio
async def test_start_and_stop_over_http(ctx, client, clock):
    cid = add_customer(ctx, balance=100)

    resp = await client.post(
        f"/api/v1/customers/{cid}/sessions/start", json={"deviceId": DEVICE, "connectorId": 1, "amount": 40}
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["session"]["status"] == "active"
    assert body["session"]["amountDeducted"] == 40.0

    active = (await client.get(f"/api/v1/customers/{cid}/sessions/active")).json()
    assert active["session"]["sessionId"] == body["session"]["sessionId"]

    clock.advance(5)
    resp = await client.post(f"/api/v1/customers/{cid}/sessions/stop", json={"deviceId": DEVICE, "connectorId": 1})
    assert resp.status_code == 200
    assert resp.json()["session"]["refundAmount"] == 40.0

    listed = (await client.get(f"/api/v1/customers/{cid}/sessions")).json()
    assert listed["pagination"]["total"] == 1
    assert listed["sessions"][0]["status"] == "stopped"


@pytest.mark.asyncio
async def test_domain_errors_map_to_status_codes(ctx, client):
    cid = add_customer(ctx, balance=10)

    resp = await client.post(
        f"/api/v1/customers/{cid}/sessions/start", json={"deviceId": DEVICE, "connectorId": 1, "amount": 50}
    )
    assert resp.status_code == 402
    assert resp.json()["detail"].startswith("Insufficient wallet balance")

    resp = await client.post(
        f"/api/v1/customers/{cid}/sessions/start", json={"deviceId": DEVICE, "connectorId": 0, "amount": 5}
    )
    assert resp.status_code == 400

    resp = await client.post(f"/api/v1/customers/{cid}/sessions/stop", json={"deviceId": DEVICE})
    assert resp.status_code == 404

    resp = await client.get(f"/api/v1/customers/{cid}/sessions/SESS_0_DEADBEEF")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_operator_session_routes(ctx, client, clock):
    resp = await client.post("/api/v1/cms/sessions/start", json={"cpid": DEVICE, "connectorId": 1})
    assert resp.status_code == 200
    assert resp.json()["session"]["amountDeducted"] == 0.0

    resp = await client.post("/api/v1/cms/sessions/start", json={"deviceId": DEVICE, "connectorId": 1})
    assert resp.status_code == 409

    clock.advance(60)
    resp = await client.post("/api/v1/cms/sessions/stop", json={"deviceId": DEVICE, "connectorId": 1})
    assert resp.status_code == 404

    log_start_transaction(ctx, "op-1", transaction_id=501)
    resp = await client.post("/api/v1/cms/sessions/stop", json={"deviceId": DEVICE, "connectorId": 1})
    assert resp.status_code == 200
    assert resp.json()["stopSuccess"] is True


@pytest.mark.asyncio
async def test_wallet_topup_and_history(ctx, client):
    cid = add_customer(ctx)

    resp = await client.post(f"/api/v1/customers/{cid}/wallet/topup", json={"amount": 25, "referenceId": "UPI-1"})
    assert resp.status_code == 200
    assert resp.json()["balance"] == 25.0

    wallet = (await client.get(f"/api/v1/customers/{cid}/wallet")).json()
    assert wallet == {"customerId": cid, "balance": 25.0, "currency": "INR"}

    history = (await client.get(f"/api/v1/customers/{cid}/wallet/transactions", params={"type": "credit"})).json()
    assert history["pagination"]["total"] == 1
    assert history["transactions"][0]["referenceId"] == "UPI-1"

    resp = await client.post(f"/api/v1/customers/{cid}/wallet/topup", json={"amount": 0})
    assert resp.status_code == 400
    assert (await client.get("/api/v1/customers/9999/wallet")).status_code == 404


@pytest.mark.asyncio
async def test_charger_status_routes(ctx, client):
    assert (await client.get(f"/api/v1/chargers/{DEVICE}/status")).status_code == 404

    ctx.registry.touch(DEVICE, status="Available")
    resp = await client.get(f"/api/v1/chargers/{DEVICE}/status")
    assert resp.json() == {"deviceId": DEVICE, "status": "Online", "cStatus": "Available"}

    await ctx.cache.update_live_status(DEVICE, "Charging")
    overview = (await client.get("/api/v1/chargers")).json()
    assert overview["chargers"] == [{"deviceId": DEVICE, "status": "Online", "cStatus": "Charging"}]


# -- device-control endpoints ------------------------------------------------------


@pytest.mark.asyncio
async def test_device_control_requires_a_connection(client):
    resp = await client.post("/api/charger/remote-stop", json={"deviceId": "GHOST", "transactionId": 3})
    assert resp.status_code == 404
    assert resp.json() == {"success": False, "status": None, "error": "ChargePoint 'GHOST' not connected"}


@pytest.mark.asyncio
async def test_device_control_forwards_to_connected_charger(ctx, client):
    cp = FakeChargePoint()
    ctx.connected[DEVICE] = cp

    resp = await client.post("/api/charger/remote-start", json={"cpid": DEVICE, "connectorId": 2, "idTag": "CMS_ADMIN"})
    assert resp.status_code == 200
    assert resp.json()["success"] is True

    await client.post(
        "/api/charger/change-configuration", json={"deviceId": DEVICE, "key": "HeartbeatInterval", "value": "60"}
    )
    assert cp.calls == [("RemoteStartTransaction", 2, "CMS_ADMIN"), ("ChangeConfiguration", "HeartbeatInterval", "60")]

    assert (await client.post("/api/charger/reset", json={"deviceId": DEVICE, "type": "Warm"})).status_code == 400

    cp.status = "Rejected"
    resp = await client.post("/api/charger/remote-stop", json={"deviceId": DEVICE, "transactionId": 7})
    assert resp.status_code == 409
    assert resp.json()["error"] == "RemoteStopTransaction rejected: Rejected"


@pytest.mark.asyncio
async def test_session_start_dispatches_through_device_control_route(ctx, app, orchestrator, client):
    cp = FakeChargePoint()
    ctx.connected[DEVICE] = cp
    orchestrator.dispatcher = CommandDispatcher(
        direct=DirectCallStrategy("http://test", transport=httpx.ASGITransport(app=app))
    )
    cid = add_customer(ctx, balance=100)

    resp = await client.post(
        f"/api/v1/customers/{cid}/sessions/start", json={"deviceId": DEVICE, "connectorId": 1, "amount": 20}
    )

    assert resp.status_code == 200
    assert resp.json()["session"]["status"] == "active"
    assert cp.calls == [("RemoteStartTransaction", 1, f"CUSTOMER_{cid}")]

    cp.status = "Rejected"
    other = await client.post(
        f"/api/v1/customers/{cid}/sessions/start", json={"deviceId": DEVICE, "connectorId": 2, "amount": 20}
    )
    assert other.status_code == 502
    assert "rejected" in other.json()["detail"]
