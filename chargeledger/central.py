import asyncio
import logging

import uvicorn
from websockets import serve

from .api import create_app
from .central_server.control import CommandConsumer
from .central_server.ocpp_handlers import CentralSystem
from .config import Settings
from .context import AppContext, build_context


def make_ws_handler(ctx: AppContext):
    async def handler(websocket, path=None):
        if path is None:
            try:
                path = websocket.request.path
            except AttributeError:
                path = websocket.path if hasattr(websocket, "path") else ""
        cp_id = path.rstrip("/").rsplit("/", 1)[-1] if path else "UNKNOWN"
        logging.info(f"[Central] New connection for Charge Point ID: {cp_id}")

        central = CentralSystem(cp_id, websocket, ctx)
        ctx.connected[cp_id] = central
        try:
            await central.start()
        finally:
            if ctx.connected.get(cp_id) is central:
                ctx.connected.pop(cp_id, None)
            logging.info(f"[Central] Disconnected: {cp_id}")

    return handler


async def run_http_api(ctx: AppContext):
    config = uvicorn.Config(
        create_app(ctx),
        host=ctx.settings.ws_host,
        port=ctx.settings.http_port,
        loop="asyncio",
        log_level=ctx.settings.log_level.lower(),
    )
    server = uvicorn.Server(config)
    await server.serve()


async def serve_forever(settings: Settings):
    ctx = build_context(settings)
    tasks = [asyncio.create_task(run_http_api(ctx))]
    if await ctx.connect_queue():
        tasks.append(asyncio.create_task(CommandConsumer(ctx).run()))
    try:
        async with serve(
            make_ws_handler(ctx),
            host=settings.ws_host,
            port=settings.ws_port,
            subprotocols=["ocpp1.6"],
        ):
            logging.info(
                f"⚡ Central listening on ws://{settings.ws_host}:{settings.ws_port}/ocpp/<ChargePointID> "
                f"| HTTP :{settings.http_port}"
            )
            await asyncio.Future()
    finally:
        for task in tasks:
            task.cancel()
        await ctx.close()


def main():
    settings = Settings.from_env()
    logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))
    try:
        asyncio.run(serve_forever(settings))
    except KeyboardInterrupt:
        logging.info("Shutting down")


if __name__ == "__main__":
    main()
