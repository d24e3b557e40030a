from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy.orm import Session

from garson.models.store import Store

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0


@dataclass(frozen=True)
class ServiceAreaResult:
    within_area: bool
    nearest_store: str | None = None
    delivery_fee_cents: int = 0
    distance_km: float | None = None
    min_basket_cents: int = 0
    message: str | None = None


class GeoService(Protocol):
    def check_service_area(self, db: Session, tenant_id: int, lat: float, lng: float) -> ServiceAreaResult:
        ...


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


class StoreRadiusGeoService:
    """Picks the nearest active store whose delivery radius covers the point."""

    def check_service_area(self, db: Session, tenant_id: int, lat: float, lng: float) -> ServiceAreaResult:
        stores = (
            db.query(Store)
            .filter(Store.tenant_id == tenant_id, Store.active.is_(True))
            .order_by(Store.id.asc())
            .all()
        )
        if not stores:
            return ServiceAreaResult(within_area=False, message="Şu anda teslimat yapan şubemiz bulunmuyor.")

        ranked = sorted(
            ((haversine_km(lat, lng, store.lat, store.lng), store) for store in stores),
            key=lambda entry: (entry[0], entry[1].id),
        )
        for distance, store in ranked:
            if distance <= float(store.radius_km or 0):
                return ServiceAreaResult(
                    within_area=True,
                    nearest_store=store.name,
                    delivery_fee_cents=int(store.delivery_fee_cents or 0),
                    distance_km=round(distance, 2),
                    min_basket_cents=int(store.min_basket_cents or 0),
                )

        distance, nearest = ranked[0]
        logger.info("location outside service area tenant_id=%s distance_km=%.2f", tenant_id, distance)
        return ServiceAreaResult(
            within_area=False,
            nearest_store=nearest.name,
            distance_km=round(distance, 2),
            message=f"Üzgünüz, konumunuz teslimat alanımızın dışında (en yakın şube {nearest.name}, {distance:.1f} km).",
        )
