"""Region catalog: neighborhood boundaries loaded from GeoJSON.

Each city has one FeatureCollection file. Every feature becomes a Region with
an id and display name picked from the feature properties using the city's
ordered candidate lists (first non-empty value wins). Features without a usable
id, or with a geometry other than Polygon/MultiPolygon, are logged and skipped.
"""

import json
import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from gothameye.config import CityConfig, Config
from gothameye.spatial.errors import (
    MalformedFeatureError,
    MissingResourceError,
    UnconfiguredCityError,
    UnsupportedGeometryError,
)

logger = logging.getLogger(__name__)

SUPPORTED_GEOMETRIES = ("Polygon", "MultiPolygon")

# ring: [(lon, lat), ...]; polygon: [outer, *holes]
Ring = list[tuple[float, float]]
PolygonRings = list[Ring]


class Region(BaseModel):
    """Named sub-area of a city."""

    model_config = ConfigDict(frozen=True)

    region_id: str = Field(description="Stable id, unique within the city")
    region_name: str = Field(description="Display label")
    city: str = Field(description="City id (nyc, sf)")
    polygons: list[PolygonRings] = Field(description="Polygons as [outer, *holes] rings")
    properties: dict[str, Any] = Field(default_factory=dict)


class CatalogLoad(BaseModel):
    """Regions parsed from one boundary file."""

    city: str
    regions: list[Region]
    skipped_features: int = 0


def _first_present(props: dict[str, Any], candidates: list[str]) -> str | None:
    for key in candidates:
        value = props.get(key)
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def _parse_ring(ring: Any) -> Ring:
    return [(float(point[0]), float(point[1])) for point in ring]


def _parse_polygons(geometry: dict[str, Any]) -> list[PolygonRings]:
    """Normalize Polygon/MultiPolygon coordinates to a list of polygons.

    Raises:
        UnsupportedGeometryError: For any other geometry type
        MalformedFeatureError: If coordinates are missing or not numeric
    """
    geom_type = geometry.get("type")
    if geom_type not in SUPPORTED_GEOMETRIES:
        raise UnsupportedGeometryError(f"Unsupported geometry type: {geom_type}")

    coordinates = geometry.get("coordinates")
    if not coordinates:
        raise MalformedFeatureError(f"{geom_type} has no coordinates")

    raw_polygons = [coordinates] if geom_type == "Polygon" else coordinates
    try:
        return [[_parse_ring(ring) for ring in polygon] for polygon in raw_polygons]
    except (TypeError, ValueError, IndexError) as e:
        raise MalformedFeatureError(f"Invalid {geom_type} coordinates: {e}") from e


def parse_feature(feature: dict[str, Any], city: str, city_config: CityConfig) -> Region:
    """Convert one GeoJSON feature into a Region.

    Args:
        feature: GeoJSON Feature dict
        city: City id the feature belongs to
        city_config: Candidate property names for id and name

    Returns:
        Parsed Region

    Raises:
        MalformedFeatureError: If no candidate id property is set or geometry is missing
        UnsupportedGeometryError: If geometry is not Polygon/MultiPolygon
    """
    if not isinstance(feature, dict):
        raise MalformedFeatureError(f"Feature is not an object: {type(feature).__name__}")

    props = feature.get("properties") or {}

    region_id = _first_present(props, city_config.id_fields)
    if region_id is None:
        raise MalformedFeatureError(
            f"No region id in any of {city_config.id_fields} (properties: {sorted(props)})"
        )
    region_name = _first_present(props, city_config.name_fields) or region_id

    geometry = feature.get("geometry")
    if not geometry:
        raise MalformedFeatureError(f"Feature {region_id} has no geometry")

    return Region(
        region_id=region_id,
        region_name=region_name,
        city=city,
        polygons=_parse_polygons(geometry),
        properties=props,
    )


def load_regions(city: str, config: Config) -> CatalogLoad:
    """Load and normalize all neighborhood regions for a city.

    Regions are returned in file order; that order decides cell ownership
    when polygons overlap (later regions win).

    Args:
        city: City id from the configured set
        config: Configuration object

    Returns:
        CatalogLoad with regions and the number of skipped features

    Raises:
        UnconfiguredCityError: If the city has no boundary configuration
        MissingResourceError: If the boundary file can't be read or parsed
    """
    if city not in config.cities:
        raise UnconfiguredCityError(f"No boundary configuration for city: {city}")

    city_config = config.cities[city]
    path = config.boundaries_path(city)

    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except OSError as e:
        raise MissingResourceError(f"Could not read boundaries for {city} from {path}: {e}") from e
    except UnicodeDecodeError as e:
        raise MissingResourceError(f"Boundaries for {city} in {path} are not UTF-8: {e}") from e
    except json.JSONDecodeError as e:
        raise MissingResourceError(f"Invalid GeoJSON in {path}: {e}") from e

    if not isinstance(data, dict) or not isinstance(data.get("features"), list):
        raise MissingResourceError(f"Not a FeatureCollection: {path}")

    regions: list[Region] = []
    skipped = 0
    for position, feature in enumerate(data["features"]):
        try:
            regions.append(parse_feature(feature, city, city_config))
        except MalformedFeatureError as e:
            skipped += 1
            logger.warning(f"Skipping {city} feature #{position}: {e}")

    logger.info(f"Loaded {len(regions)} regions for {city} from {path} ({skipped} skipped)")

    return CatalogLoad(city=city, regions=regions, skipped_features=skipped)


def region_bounds(region: Region) -> tuple[float, float, float, float] | None:
    """Bounding box of a region as (min_lat, max_lat, min_lon, max_lon).

    Returns None when the region has no coordinates.
    """
    points = [point for polygon in region.polygons for ring in polygon for point in ring]
    if not points:
        return None

    lons = [lon for lon, _ in points]
    lats = [lat for _, lat in points]
    return min(lats), max(lats), min(lons), max(lons)
