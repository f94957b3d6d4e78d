"""Read/touch access to the device, charging point and tariff registry."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional, Union

from sqlalchemy.orm import Session, sessionmaker

from ..models import Charger, ChargingPoint, ChargingSession, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Rate:
    base_charges: Decimal = Decimal("0")
    tax: Decimal = Decimal("0")
    currency: str = "INR"

    def cost(self, energy_kwh: Decimal) -> Decimal:
        return energy_kwh * self.base_charges * (1 + self.tax / 100)


ZERO_RATE = Rate()


class DeviceRegistry:
    def __init__(self, session_factory: sessionmaker, now: Callable[[], datetime] = utcnow) -> None:
        self._session_factory = session_factory
        self._now = now

    def get(self, device_id: str) -> Optional[Charger]:
        with self._session_factory() as db:
            return db.query(Charger).filter(Charger.device_id == device_id).first()

    def device_ids(self) -> list[str]:
        with self._session_factory() as db:
            return [row.device_id for row in db.query(Charger).order_by(Charger.device_id).all()]

    def touch(
        self,
        device_id: str,
        status: Optional[str] = None,
        vendor: Optional[str] = None,
        model: Optional[str] = None,
    ) -> None:
        """Record that ``device_id`` was heard from, registering it on first contact."""
        with self._session_factory() as db:
            charger = db.query(Charger).filter(Charger.device_id == device_id).first()
            if charger is None:
                charger = Charger(device_id=device_id)
                db.add(charger)
                logger.info("Registered charger %s", device_id)
            charger.last_seen = self._now()
            if status is not None:
                charger.status = status
            if vendor is not None:
                charger.vendor = vendor
            if model is not None:
                charger.model = model
            db.commit()


class TariffLookup:
    """Tariff rates keyed by charging point."""

    @staticmethod
    def charging_point(db: Session, ref: Union[int, str, None]) -> Optional[ChargingPoint]:
        if ref is None or ref == "":
            return None
        point = db.query(ChargingPoint).filter(ChargingPoint.charging_point_id == str(ref)).first()
        if point is None and str(ref).isdigit():
            point = db.get(ChargingPoint, int(ref))
        return point

    @staticmethod
    def for_point(point: Optional[ChargingPoint]) -> Rate:
        if point is None or point.tariff is None:
            return ZERO_RATE
        tariff = point.tariff
        return Rate(
            base_charges=Decimal(str(tariff.base_charges or 0)),
            tax=Decimal(str(tariff.tax or 0)),
            currency=tariff.currency or "INR",
        )

    def for_session(self, db: Session, session: ChargingSession) -> Rate:
        point = db.get(ChargingPoint, session.charging_point_id) if session.charging_point_id else None
        if point is None:
            point = db.query(ChargingPoint).filter(ChargingPoint.device_id == session.device_id).first()
        return self.for_point(point)
