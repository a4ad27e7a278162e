from __future__ import annotations

import math
from typing import Iterable

from aegis_ics.config import DEFAULT_ALERT_RADIUS_KM, MAX_RADIUS_KM, MIN_RADIUS_KM
from aegis_ics.models import Helper, NearbyHelper

EARTH_RADIUS_KM = 6371.0


class GeospatialMatcher:
    """Great-circle distance and radius ranking of responders."""

    @staticmethod
    def distance_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
        phi1, phi2 = math.radians(lat1), math.radians(lat2)
        dlng = math.radians(lng2) - math.radians(lng1)

        cos_angle = math.cos(phi1) * math.cos(phi2) * math.cos(dlng) + math.sin(phi1) * math.sin(phi2)
        # Rounding can push identical points just past 1.0.
        cos_angle = min(1.0, max(-1.0, cos_angle))
        return EARTH_RADIUS_KM * math.acos(cos_angle)

    @staticmethod
    def clamp_radius(radius_km: float | None) -> float:
        if radius_km is None:
            radius_km = DEFAULT_ALERT_RADIUS_KM
        radius_km = float(radius_km)
        if math.isnan(radius_km):
            radius_km = DEFAULT_ALERT_RADIUS_KM
        return min(MAX_RADIUS_KM, max(MIN_RADIUS_KM, radius_km))

    def rank(
        self,
        latitude: float,
        longitude: float,
        helpers: Iterable[Helper],
        radius_km: float | None = None,
    ) -> list[NearbyHelper]:
        radius = self.clamp_radius(radius_km)
        ranked = []
        for helper in helpers:
            if not helper.is_active:
                continue

            distance = self.distance_km(latitude, longitude, helper.location.latitude, helper.location.longitude)
            if distance <= radius:
                ranked.append(NearbyHelper(helper=helper, distance_km=distance))

        ranked.sort(key=lambda item: item.distance_km)
        return ranked
