"""Point resolver: latitude/longitude to neighborhood via the H3 index.

A point resolves to the region owning its cell. There is no exhaustive
point-in-polygon fallback: a point whose cell was never registered (water,
gaps between polygons, coastline rounding) resolves to no region. Every null
result carries a reason code saying which path was taken.
"""

import logging
import math
from collections.abc import Iterable
from enum import StrEnum

import h3
from pydantic import BaseModel, Field

from gothameye.spatial.index import CityIndex

logger = logging.getLogger(__name__)


class LookupReason(StrEnum):
    """Which path a lookup took."""

    MATCHED = "matched"
    CELL_NOT_REGISTERED = "cell_not_registered"
    INVALID_COORDINATE = "invalid_coordinate"
    UNCONFIGURED_CITY = "unconfigured_city"


class LookupResult(BaseModel):
    """Outcome of resolving one point."""

    region_id: str | None = Field(default=None)
    region_name: str | None = Field(default=None)
    reason: LookupReason
    cell: str | None = Field(default=None, description="H3 cell of the point, if computed")

    @property
    def found(self) -> bool:
        return self.region_id is not None


class BatchPoint(BaseModel):
    """Point submitted for batch resolution."""

    lat: float
    lon: float
    id: str | None = Field(default=None, description="Caller correlation id, echoed back")


class BatchLookupResult(BaseModel):
    """Resolution of one batch point."""

    id: str | None = None
    lat: float
    lon: float
    region_id: str | None = None
    region_name: str | None = None
    reason: LookupReason


def is_valid_coordinate(lat: float, lon: float) -> bool:
    """Check latitude/longitude are finite and within WGS84 range."""
    try:
        lat = float(lat)
        lon = float(lon)
    except (TypeError, ValueError):
        return False
    if not (math.isfinite(lat) and math.isfinite(lon)):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0


def resolve_point(index: CityIndex | None, lat: float, lon: float) -> LookupResult:
    """Resolve a point against one index snapshot.

    Never raises: a missing index, an invalid coordinate or an unregistered
    cell all produce a null result.

    Args:
        index: City index snapshot, or None if the city is not configured
        lat: Latitude (WGS84)
        lon: Longitude (WGS84)

    Returns:
        LookupResult with region id/name or nulls and the reason code
    """
    if index is None:
        logger.debug(f"No index for lookup ({lat}, {lon}): {LookupReason.UNCONFIGURED_CITY}")
        return LookupResult(reason=LookupReason.UNCONFIGURED_CITY)

    if not is_valid_coordinate(lat, lon):
        logger.debug(f"{index.city}: invalid coordinates lat={lat}, lon={lon}")
        return LookupResult(reason=LookupReason.INVALID_COORDINATE)

    cell = h3.latlng_to_cell(float(lat), float(lon), index.resolution)
    region_id = index.cell_to_region.get(cell)
    if region_id is None:
        logger.debug(f"{index.city}: cell {cell} for ({lat}, {lon}) not registered")
        return LookupResult(reason=LookupReason.CELL_NOT_REGISTERED, cell=cell)

    region = index.region_meta[region_id]
    return LookupResult(
        region_id=region_id,
        region_name=region.region_name,
        reason=LookupReason.MATCHED,
        cell=cell,
    )


def resolve_batch(index: CityIndex | None, points: Iterable[BatchPoint]) -> list[BatchLookupResult]:
    """Resolve points independently, preserving order, count and caller ids."""
    results = []
    for point in points:
        result = resolve_point(index, point.lat, point.lon)
        results.append(
            BatchLookupResult(
                id=point.id,
                lat=point.lat,
                lon=point.lon,
                region_id=result.region_id,
                region_name=result.region_name,
                reason=result.reason,
            )
        )
    return results
