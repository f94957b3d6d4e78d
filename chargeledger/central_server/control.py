"""Device-control endpoints and the command queue consumer.

Both execute commands on a connected :class:`CentralSystem`. The HTTP routes
are the direct-call path of the dispatcher; the consumer drains the queue path.
"""

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any, Dict, Optional

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from ..services.dispatcher import ROUTING_KEYS, CommandType

if TYPE_CHECKING:
    from ..context import AppContext

ACCEPTED = "Accepted"
COMMAND_QUEUE = "chargeledger_commands"


class DeviceCommand(BaseModel):
    deviceId: str = Field(validation_alias=AliasChoices("deviceId", "cpid"))

    model_config = ConfigDict(populate_by_name=True)


class RemoteStartReq(DeviceCommand):
    connectorId: int
    idTag: str
    sessionId: Optional[str] = None


class RemoteStopReq(DeviceCommand):
    transactionId: int


class ResetReq(DeviceCommand):
    type: str = "Soft"


class ChangeConfigurationReq(DeviceCommand):
    key: str
    value: str


def command_result(status: Optional[str], error: Optional[str] = None) -> Dict[str, Any]:
    return {"success": status == ACCEPTED, "status": status, "error": error}


async def execute(ctx: "AppContext", command: str, device_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Run ``command`` on the connected charger and report ``{success, status, error}``."""
    cp = ctx.connected.get(device_id)
    if cp is None:
        return command_result(None, f"ChargePoint '{device_id}' not connected")
    try:
        if command == CommandType.REMOTE_START:
            status = await cp.remote_start(int(payload["connectorId"]), payload["idTag"])
        elif command == CommandType.REMOTE_STOP:
            status = await cp.remote_stop(int(payload["transactionId"]))
        elif command == CommandType.RESET:
            status = await cp.remote_reset(payload.get("type", "Soft"))
        elif command == CommandType.CHANGE_CONFIGURATION:
            status = await cp.change_configuration(payload["key"], str(payload["value"]))
        else:
            return command_result(None, f"Unsupported command {command}")
    except asyncio.TimeoutError:
        logging.error(f"{command} to {device_id} timed out")
        return command_result(None, f"{command} timed out")
    except (KeyError, ValueError, TypeError) as exc:
        return command_result(None, f"Invalid {command} payload: {exc}")
    error = None if status == ACCEPTED else f"{command} rejected: {status}"
    return command_result(status, error)


def _respond(result: Dict[str, Any]) -> JSONResponse:
    if result["success"]:
        code = 200
    elif result["status"] is None and "not connected" in (result["error"] or ""):
        code = 404
    elif result["status"] is None:
        code = 504
    else:
        code = 409
    return JSONResponse(result, status_code=code)


def create_control_router(ctx: "AppContext") -> APIRouter:
    router = APIRouter(prefix="/api/charger", tags=["device-control"])

    @router.post("/remote-start")
    async def remote_start(req: RemoteStartReq):
        payload = {"connectorId": req.connectorId, "idTag": req.idTag}
        return _respond(await execute(ctx, CommandType.REMOTE_START, req.deviceId, payload))

    @router.post("/remote-stop")
    async def remote_stop(req: RemoteStopReq):
        payload = {"transactionId": req.transactionId}
        return _respond(await execute(ctx, CommandType.REMOTE_STOP, req.deviceId, payload))

    @router.post("/reset")
    async def reset(req: ResetReq):
        if req.type not in ("Soft", "Hard"):
            return JSONResponse(command_result(None, "invalid reset type"), status_code=400)
        return _respond(await execute(ctx, CommandType.RESET, req.deviceId, {"type": req.type}))

    @router.post("/change-configuration")
    async def change_configuration(req: ChangeConfigurationReq):
        payload = {"key": req.key, "value": req.value}
        return _respond(await execute(ctx, CommandType.CHANGE_CONFIGURATION, req.deviceId, payload))

    return router


class CommandConsumer:
    """Executes queued command envelopes and reports remote-start outcomes."""

    def __init__(self, ctx: "AppContext") -> None:
        self.ctx = ctx

    async def handle(self, envelope: Dict[str, Any]) -> Dict[str, Any]:
        command = envelope.get("command")
        device_id = envelope.get("deviceId")
        payload = envelope.get("payload") or {}
        logging.info(f"Consuming {command} for {device_id} (session={envelope.get('sessionId')})")
        result = await execute(self.ctx, command, device_id, payload)
        session_id = envelope.get("sessionId")
        if command == CommandType.REMOTE_START and session_id:
            await self.ctx.orchestrator.confirm_remote_start(
                session_id, result["success"], reason=result["error"]
            )
        return result

    async def run(self) -> None:
        publisher = self.ctx.publisher
        if publisher is None or not publisher.connected:
            logging.warning("Command consumer not started: queue is not connected")
            return
        queue = await publisher.channel.declare_queue(COMMAND_QUEUE, durable=True)
        for routing_key in ROUTING_KEYS.values():
            await queue.bind(publisher.exchange, routing_key=routing_key)
        logging.info(f"Command consumer listening on {COMMAND_QUEUE}")
        async with queue.iterator() as messages:
            async for message in messages:
                try:
                    async with message.process():
                        await self.handle(json.loads(message.body.decode()))
                except Exception:
                    logging.exception(f"Processing error for command message {message.message_id}")
