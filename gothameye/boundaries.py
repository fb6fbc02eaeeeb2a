"""Neighborhood boundary download from the cities' open data portals.

Data Sources:
- NYC: 2020 Neighborhood Tabulation Areas (NYC Open Data, 9nt8-h7nd)
- SF: Analysis Neighborhoods (DataSF, j2bu-swwd)

Both portals serve GeoJSON FeatureCollections with Polygon/MultiPolygon
geometries in (lon, lat) order. Files are written where the spatial index
expects them (see `Config.boundaries_path`).

Key functions:
- download_boundaries(): Get the FeatureCollection for one city
- save_boundaries(): Download and write boundary files for all cities
"""

import json
import logging
import os
import urllib.request
from pathlib import Path
from typing import Any

from gothameye.config import Config

logger = logging.getLogger(__name__)

# URLs for data sources
BOUNDARY_URLS = {
    "nyc": "https://data.cityofnewyork.us/resource/9nt8-h7nd.geojson?$limit=50000",
    "sf": "https://data.sfgov.org/resource/j2bu-swwd.geojson?$limit=50000",
}

# Optional Socrata app tokens (raise rate limits)
APP_TOKEN_ENV = {
    "nyc": "NYC_OPENDATA_APP_TOKEN",
    "sf": "SF_OPENDATA_APP_TOKEN",
}


def download_boundaries(city: str) -> dict[str, Any]:
    """Download a city's neighborhood boundaries GeoJSON.

    Args:
        city: City id (nyc, sf)

    Returns:
        GeoJSON FeatureCollection dict

    Raises:
        KeyError: If the city has no known boundary source
        urllib.error.URLError: If download fails
        ValueError: If the response is not a FeatureCollection
    """
    url = BOUNDARY_URLS[city]
    headers = {"Accept": "application/json"}
    token = os.environ.get(APP_TOKEN_ENV[city])
    if token:
        headers["X-App-Token"] = token

    logger.info(f"Downloading {city} boundaries from {url}")

    req = urllib.request.Request(url, headers=headers)
    with urllib.request.urlopen(req, timeout=60) as response:
        data: dict[str, Any] = json.load(response)

    if not isinstance(data, dict) or not isinstance(data.get("features"), list):
        raise ValueError(f"Unexpected response for {city} boundaries: not a FeatureCollection")

    feature_count = len(data.get("features", []))
    logger.info(f"Downloaded {feature_count} {city} neighborhood features")

    return data


def save_boundaries(config: Config, cities: list[str] | None = None) -> list[Path]:
    """Download and save boundary files for the configured cities.

    Uses an atomic write (temp file, then rename) so a failed download never
    leaves a truncated file for the spatial index to read.

    Args:
        config: Configuration object (paths resolved against data_dir)
        cities: Cities to download, all configured cities if None

    Returns:
        Paths of the written files
    """
    written = []
    for city in cities or list(config.cities):
        data = download_boundaries(city)

        path = config.boundaries_path(city)
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_file = path.with_suffix(".tmp")
        try:
            with open(temp_file, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False)
            temp_file.rename(path)
        finally:
            if temp_file.exists():
                temp_file.unlink()

        logger.info(f"Saved {city} boundaries to {path}")
        written.append(path)

    return written


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    config_path = Path("config.toml")
    save_boundaries(Config.from_file(config_path) if config_path.exists() else Config())
