"""Application-scoped state, built once at startup and passed to every surface."""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterator, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from .config import Settings
from .db import ensure_system_customer, init_db, make_engine, make_session_factory
from .models import utcnow
from .services.cache import Cache, create_cache
from .services.dispatcher import CommandDispatcher, DirectCallStrategy, QueuePublisher, QueueStrategy
from .services.orchestrator import SessionOrchestrator
from .services.protocol_log import ProtocolLogStore
from .services.reconciler import DeviceStateReconciler
from .services.registry import DeviceRegistry, TariffLookup
from .services.wallet import WalletLedger

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    settings: Settings
    engine: Engine
    session_factory: sessionmaker
    cache: Cache
    log_store: ProtocolLogStore
    registry: DeviceRegistry
    tariffs: TariffLookup
    wallet: WalletLedger
    dispatcher: CommandDispatcher
    reconciler: DeviceStateReconciler
    orchestrator: SessionOrchestrator
    system_customer_id: int
    publisher: Optional[QueuePublisher] = None
    # device id -> CentralSystem for every open websocket
    connected: Dict[str, Any] = field(default_factory=dict)
    # StartTransaction ids, seeded from the clock to stay unique across restarts
    transaction_ids: Iterator[int] = field(default_factory=lambda: itertools.count(int(time.time())))

    async def connect_queue(self) -> bool:
        if not self.settings.enable_rabbitmq or self.publisher is None:
            logger.info("RabbitMQ disabled; commands use the direct device-control endpoint")
            return False
        return await self.publisher.connect()

    async def close(self) -> None:
        if self.publisher is not None:
            await self.publisher.close()
        await self.cache.close()
        self.engine.dispose()


def build_context(
    settings: Settings,
    cache: Optional[Cache] = None,
    dispatcher: Optional[CommandDispatcher] = None,
    now: Callable[[], datetime] = utcnow,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> AppContext:
    engine = make_engine(settings.database_url)
    init_db(engine)
    session_factory = make_session_factory(engine)
    with session_factory() as db:
        system_customer_id = ensure_system_customer(db, settings.system_customer_email)

    cache = cache or create_cache(settings.redis_url)
    log_store = ProtocolLogStore(session_factory, now=now)
    registry = DeviceRegistry(session_factory, now=now)
    tariffs = TariffLookup()
    wallet = WalletLedger()

    publisher = None
    if dispatcher is None:
        publisher = QueuePublisher(settings.rabbitmq_url) if settings.enable_rabbitmq else None
        dispatcher = CommandDispatcher(
            direct=DirectCallStrategy(settings.backend_url, timeout=settings.command_timeout),
            queue=QueueStrategy(publisher) if publisher else None,
            queue_enabled=settings.enable_rabbitmq,
            publisher=publisher,
        )

    reconciler = DeviceStateReconciler(
        cache, log_store, registry, now=now, offline_threshold=settings.offline_threshold
    )
    orchestrator = SessionOrchestrator(
        session_factory,
        wallet,
        dispatcher,
        log_store,
        cache,
        tariffs,
        system_customer_id,
        own_session_policy=settings.own_session_policy,
        meter_poll_attempts=settings.meter_poll_attempts,
        meter_poll_interval=settings.meter_poll_interval,
        min_session_seconds=settings.min_session_seconds,
        list_cache_ttl=settings.list_cache_ttl,
        now=now,
        sleep=sleep,
    )
    return AppContext(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        cache=cache,
        log_store=log_store,
        registry=registry,
        tariffs=tariffs,
        wallet=wallet,
        dispatcher=dispatcher,
        reconciler=reconciler,
        orchestrator=orchestrator,
        system_customer_id=system_customer_id,
        publisher=publisher,
    )
