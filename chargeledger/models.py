from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import declarative_base, relationship

# All timestamps are stored as naive UTC.

Base = declarative_base()

OPEN_STATUSES = ("pending", "active")


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Customer(Base):
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True)
    full_name = Column(String(200), nullable=False)
    email = Column(String(200), nullable=False, unique=True, index=True)
    phone = Column(String(40), nullable=True)
    created_at = Column(DateTime, default=utcnow)


class Vehicle(Base):
    __tablename__ = "vehicles"

    id = Column(Integer, primary_key=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    label = Column(String(100), nullable=True)


class Tariff(Base):
    __tablename__ = "tariffs"

    id = Column(Integer, primary_key=True)
    tariff_id = Column(String(50), nullable=False, unique=True)
    tariff_name = Column(String(100), nullable=False)
    base_charges = Column(Numeric(10, 2), nullable=False, default=0)
    tax = Column(Numeric(5, 2), nullable=False, default=0)
    currency = Column(String(8), nullable=False, default="INR")


class Charger(Base):
    """Registry row for a physical device, keyed by its protocol identity."""

    __tablename__ = "chargers"

    id = Column(Integer, primary_key=True)
    device_id = Column(String(100), nullable=False, unique=True, index=True)
    vendor = Column(String(100), nullable=True)
    model = Column(String(100), nullable=True)
    status = Column(String(50), nullable=True)
    last_seen = Column(DateTime, nullable=True)


class ChargingPoint(Base):
    __tablename__ = "charging_points"

    id = Column(Integer, primary_key=True)
    charging_point_id = Column(String(100), nullable=False, unique=True, index=True)
    device_id = Column(String(100), nullable=False, index=True)
    device_name = Column(String(200), nullable=True)
    tariff_id = Column(Integer, ForeignKey("tariffs.id"), nullable=True)

    tariff = relationship("Tariff")


class ChargingSession(Base):
    __tablename__ = "charging_sessions"
    __table_args__ = (
        # one open session per connector
        Index(
            "uq_open_session_per_connector",
            "device_id",
            "connector_id",
            unique=True,
            sqlite_where=text("end_time IS NULL"),
            postgresql_where=text("end_time IS NULL"),
        ),
    )

    id = Column(Integer, primary_key=True)
    session_id = Column(String(64), nullable=False, unique=True, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    vehicle_id = Column(Integer, ForeignKey("vehicles.id"), nullable=True)
    charging_point_id = Column(Integer, ForeignKey("charging_points.id"), nullable=True)
    device_id = Column(String(100), nullable=False, index=True)
    connector_id = Column(Integer, nullable=False)
    transaction_id = Column(Integer, nullable=True, index=True)
    status = Column(String(20), nullable=False, default="pending")
    amount_requested = Column(Numeric(12, 2), nullable=False, default=0)
    amount_deducted = Column(Numeric(12, 2), nullable=False, default=0)
    energy_consumed = Column(Numeric(12, 3), nullable=True)
    final_amount = Column(Numeric(12, 2), nullable=True)
    refund_amount = Column(Numeric(12, 2), nullable=True)
    meter_start = Column(Float, nullable=True)
    meter_end = Column(Float, nullable=True)
    start_time = Column(DateTime, nullable=True)
    end_time = Column(DateTime, nullable=True)
    stop_reason = Column(String(255), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    charging_point = relationship("ChargingPoint")

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES and self.end_time is None


class Wallet(Base):
    __tablename__ = "wallets"

    id = Column(Integer, primary_key=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, unique=True)
    balance = Column(Numeric(12, 2), nullable=False, default=0)
    currency = Column(String(8), nullable=False, default="INR")
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class WalletTransaction(Base):
    __tablename__ = "wallet_transactions"

    id = Column(Integer, primary_key=True)
    wallet_id = Column(Integer, ForeignKey("wallets.id"), nullable=False, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    transaction_type = Column(String(10), nullable=False)
    transaction_category = Column(String(20), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    balance_before = Column(Numeric(12, 2), nullable=False)
    balance_after = Column(Numeric(12, 2), nullable=False)
    description = Column(Text, nullable=True)
    reference_id = Column(String(64), nullable=True, index=True)
    status = Column(String(10), nullable=False, default="completed")
    created_at = Column(DateTime, nullable=False, default=utcnow)


class ProtocolLogEntry(Base):
    """One protocol frame exchanged with a device. Never updated."""

    __tablename__ = "protocol_log"
    __table_args__ = (
        Index("ix_protocol_log_device_kind_ts", "device_id", "message", "timestamp"),
    )

    id = Column(Integer, primary_key=True)
    device_id = Column(String(100), nullable=False, index=True)
    connector_id = Column(Integer, nullable=True)
    message = Column(String(50), nullable=False)
    direction = Column(String(10), nullable=False)
    message_id = Column(String(64), nullable=True, index=True)
    timestamp = Column(DateTime, nullable=False, default=utcnow)
    payload = Column(JSON, nullable=False, default=dict)
