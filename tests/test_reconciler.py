from datetime import timedelta

import pytest

from chargeledger.ocpp_local.domain import Direction, LoggedMessage, MessageKind, map_online_status
from chargeledger.services.protocol_log import LogView
from chargeledger.services.reconciler import (
    charging_status_verdict,
    live_status_verdict,
    remote_stop_verdict,
    start_transaction_verdict,
)

from conftest import DEVICE, T0, log_start_transaction, log_status, log_stop_transaction


def _msg(i, kind, direction, seconds_ago, payload=None, corr=None):
    return LoggedMessage(
        id=i,
        device_id=DEVICE,
        kind=kind,
        direction=direction,
        timestamp=T0 - timedelta(seconds=seconds_ago),
        correlation_id=corr,
        payload=payload or {},
    )


def _log_remote_stop(ctx, status="Accepted"):
    ctx.log_store.append(DEVICE, MessageKind.REMOTE_STOP, Direction.OUTGOING, {"transactionId": 7}, correlation_id="rs-1")
    ctx.log_store.append(DEVICE, MessageKind.RESPONSE, Direction.INCOMING, {"status": status}, correlation_id="rs-1")


# -- predicates ------------------------------------------------------------


def test_live_status_verdicts():
    assert live_status_verdict({"status": "Available"}) is False
    assert live_status_verdict({"status": "charging"}) is True
    assert live_status_verdict({"status": "Preparing"}) is None
    assert live_status_verdict(None) is None


def test_online_mapping_ignores_case():
    assert map_online_status("available") == "Online"
    assert map_online_status("CHARGING") == "Online"
    assert map_online_status("faulted") == "Offline"
    assert map_online_status(None) == "Offline"


def test_stale_start_without_ack_is_not_active():
    view = LogView([_msg(1, MessageKind.START_TRANSACTION, Direction.INCOMING, 3 * 3600, corr="a")])
    assert start_transaction_verdict(view, T0) is False


def test_start_is_active_until_matching_stop():
    start = _msg(1, MessageKind.START_TRANSACTION, Direction.INCOMING, 600, corr="a")
    ack = _msg(2, MessageKind.RESPONSE, Direction.OUTGOING, 599, {"transactionId": 11}, corr="a")
    other_stop = _msg(3, MessageKind.STOP_TRANSACTION, Direction.INCOMING, 300, {"transactionId": 10})
    assert start_transaction_verdict(LogView([other_stop, ack, start]), T0) is True

    stop = _msg(4, MessageKind.STOP_TRANSACTION, Direction.INCOMING, 60, {"transactionId": 11})
    assert start_transaction_verdict(LogView([stop, other_stop, ack, start]), T0) is False


def test_no_start_transaction_means_idle():
    assert start_transaction_verdict(LogView([]), T0) is False


def test_charging_notification_needs_no_later_stop_state():
    charging = _msg(1, MessageKind.STATUS_NOTIFICATION, Direction.INCOMING, 120, {"status": "Charging"})
    suspended = _msg(2, MessageKind.STATUS_NOTIFICATION, Direction.INCOMING, 60, {"status": "SuspendedEV"})
    finishing = _msg(3, MessageKind.STATUS_NOTIFICATION, Direction.INCOMING, 30, {"status": "Finishing"})
    assert charging_status_verdict(LogView([suspended, charging]), T0) is True
    assert charging_status_verdict(LogView([finishing, suspended, charging]), T0) is False

    old = _msg(4, MessageKind.STATUS_NOTIFICATION, Direction.INCOMING, 600, {"status": "Charging"})
    assert charging_status_verdict(LogView([old]), T0) is None


def test_recent_accepted_remote_stop():
    cmd = _msg(1, MessageKind.REMOTE_STOP, Direction.OUTGOING, 11, {"transactionId": 7}, corr="r")
    ack = _msg(2, MessageKind.RESPONSE, Direction.INCOMING, 10, {"status": "Accepted"}, corr="r")
    assert remote_stop_verdict(LogView([ack, cmd]), T0) is False

    old_cmd = _msg(1, MessageKind.REMOTE_STOP, Direction.OUTGOING, 91, {"transactionId": 7}, corr="r")
    old_ack = _msg(2, MessageKind.RESPONSE, Direction.INCOMING, 90, {"status": "Accepted"}, corr="r")
    assert remote_stop_verdict(LogView([old_ack, old_cmd]), T0) is None
    available = _msg(3, MessageKind.STATUS_NOTIFICATION, Direction.INCOMING, 80, {"status": "Available"})
    assert remote_stop_verdict(LogView([available, old_ack, old_cmd]), T0) is False

    rejected = _msg(2, MessageKind.RESPONSE, Direction.INCOMING, 10, {"status": "Rejected"}, corr="r")
    assert remote_stop_verdict(LogView([rejected, cmd]), T0) is None


# -- reconciler ------------------------------------------------------------


@pytest.mark.asyncio
async def test_cached_available_wins_over_log(ctx):
    log_start_transaction(ctx, "c1", 5)
    log_status(ctx, "Charging")
    await ctx.cache.update_live_status(DEVICE, "Available")
    assert await ctx.reconciler.has_active_transaction(DEVICE) is False


@pytest.mark.asyncio
async def test_cached_charging_is_active(ctx):
    await ctx.cache.update_live_status(DEVICE, "Charging")
    assert await ctx.reconciler.has_active_transaction(DEVICE) is True


@pytest.mark.asyncio
async def test_cold_cache_falls_back_to_log(ctx, clock):
    log_start_transaction(ctx, "c1", 5)
    clock.advance(600)
    assert await ctx.reconciler.has_active_transaction(DEVICE) is True

    log_stop_transaction(ctx, 5)
    assert await ctx.reconciler.has_active_transaction(DEVICE) is False


@pytest.mark.asyncio
async def test_remote_stop_acceptance_overrides_charging_notification(ctx, clock):
    log_status(ctx, "Charging")
    clock.advance(5)
    _log_remote_stop(ctx)
    clock.advance(5)
    assert await ctx.reconciler.has_active_transaction(DEVICE) is False


@pytest.mark.asyncio
async def test_status_uses_cache_then_last_seen(ctx, clock):
    assert await ctx.reconciler.status(DEVICE) == "Offline"

    ctx.registry.touch(DEVICE)
    clock.advance(120)
    assert await ctx.reconciler.status(DEVICE) == "Online"
    clock.advance(400)
    assert await ctx.reconciler.status(DEVICE) == "Offline"

    await ctx.cache.update_live_status(DEVICE, "Preparing")
    assert await ctx.reconciler.status(DEVICE) == "Online"
    await ctx.cache.update_live_status(DEVICE, "SomethingNew")
    assert await ctx.reconciler.status(DEVICE) == "Offline"


@pytest.mark.asyncio
async def test_lowercase_cached_status_agrees_across_queries(ctx):
    await ctx.cache.update_live_status(DEVICE, "available")
    assert await ctx.reconciler.status(DEVICE) == "Online"
    assert await ctx.reconciler.has_active_transaction(DEVICE) is False


@pytest.mark.asyncio
async def test_connector_status_precedence(ctx):
    assert await ctx.reconciler.connector_status(DEVICE) == "Unavailable"

    ctx.registry.touch(DEVICE, status="Available")
    assert await ctx.reconciler.connector_status(DEVICE) == "Available"

    log_start_transaction(ctx, "c1", 9)
    assert await ctx.reconciler.connector_status(DEVICE) == "Charging"

    log_status(ctx, "Charging", error_code="GroundFailure")
    assert await ctx.reconciler.connector_status(DEVICE) == "Faulted"


@pytest.mark.asyncio
async def test_registry_fault_flag(ctx):
    ctx.registry.touch(DEVICE, status="Faulted")
    assert ctx.reconciler.has_fault(DEVICE)
    assert await ctx.reconciler.connector_status(DEVICE) == "Faulted"


@pytest.mark.asyncio
async def test_overview_lists_each_device(ctx):
    ctx.registry.touch("A1")
    ctx.registry.touch("B2")
    await ctx.cache.update_live_status("B2", "Charging")
    overview = await ctx.reconciler.overview(ctx.registry.device_ids())
    assert overview == [
        {"deviceId": "A1", "status": "Online", "cStatus": "Available"},
        {"deviceId": "B2", "status": "Online", "cStatus": "Charging"},
    ]
