from __future__ import annotations

import logging

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .models import Base, Customer

logger = logging.getLogger(__name__)


def make_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # single shared connection so every session sees the same database
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(engine)


def ensure_system_customer(db: Session, email: str) -> int:
    """Return the id of the reserved customer that owns operator sessions."""
    customer = db.query(Customer).filter(Customer.email == email).first()
    if customer is None:
        customer = Customer(full_name="CMS System", email=email, phone="0000000000")
        db.add(customer)
        db.commit()
        logger.info("Created system customer %s for operator sessions", customer.id)
    return customer.id
