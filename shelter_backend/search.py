"""Bounding-box search over shelters."""

from dataclasses import dataclass
from typing import Iterable, Optional


@dataclass(frozen=True)
class BoundingBox:
    min_lat: float
    max_lat: float
    min_lon: float
    max_lon: float

    @classmethod
    def from_params(
        cls,
        min_lat: Optional[float] = None,
        max_lat: Optional[float] = None,
        min_lon: Optional[float] = None,
        max_lon: Optional[float] = None,
    ) -> Optional["BoundingBox"]:
        """Build a box only when all four bounds are given.

        Any missing bound means no spatial filter at all, never a half-open
        strip.
        """
        if None in (min_lat, max_lat, min_lon, max_lon):
            return None
        return cls(min_lat, max_lat, min_lon, max_lon)

    def contains(self, latitude: float, longitude: float) -> bool:
        return (
            self.min_lat <= latitude <= self.max_lat
            and self.min_lon <= longitude <= self.max_lon
        )


def search(
    candidates: Iterable,
    bbox: Optional[BoundingBox] = None,
    limit: Optional[int] = None,
) -> list:
    """Filter shelters to ``bbox``, order by name and keep the first ``limit``.

    Names compare by code point (Python's default ``str`` ordering), so the
    result does not depend on database collation.
    """
    if bbox is not None:
        candidates = [
            shelter
            for shelter in candidates
            if bbox.contains(shelter.latitude, shelter.longitude)
        ]
    results = sorted(candidates, key=lambda shelter: shelter.name)
    if limit is not None:
        results = results[:limit]
    return results
