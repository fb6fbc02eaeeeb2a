"""Immutable per-city spatial index."""

import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from gothameye.config import Config
from gothameye.spatial.catalog import Region, load_regions
from gothameye.spatial.grid import build_cell_map

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CityIndex:
    """Cell→region map and region metadata for one city.

    Never mutated after construction. A rebuild produces a new instance.
    """

    city: str
    resolution: int
    cell_to_region: Mapping[str, str]
    region_meta: Mapping[str, Region]
    skipped_features: int = 0
    skipped_polygons: int = 0
    overwritten_cells: int = 0
    build_seconds: float = 0.0
    total_regions: int = field(init=False)
    total_cells: int = field(init=False)

    def __post_init__(self) -> None:
        # Freeze the mappings and precompute counters
        object.__setattr__(self, "cell_to_region", MappingProxyType(dict(self.cell_to_region)))
        object.__setattr__(self, "region_meta", MappingProxyType(dict(self.region_meta)))
        object.__setattr__(self, "total_regions", len(self.region_meta))
        object.__setattr__(self, "total_cells", len(self.cell_to_region))

        dangling = set(self.cell_to_region.values()) - set(self.region_meta)
        if dangling:
            raise ValueError(f"Cells reference unknown regions: {sorted(dangling)[:5]}")

    def region_cells(self, region_id: str) -> list[str]:
        """All cells owned by a region (diagnostics, linear scan)."""
        return [cell for cell, owner in self.cell_to_region.items() if owner == region_id]


def build_city_index(city: str, config: Config) -> CityIndex:
    """Load a city's boundaries and fill them with cells.

    Args:
        city: City id
        config: Configuration object

    Returns:
        Newly built CityIndex

    Raises:
        UnconfiguredCityError: If the city has no boundary configuration
        MissingResourceError: If the boundary file can't be read
    """
    resolution = config.spatial.resolution
    start = time.perf_counter()

    catalog = load_regions(city, config)

    # Duplicate ids keep the metadata of the last feature, matching cell ownership
    region_meta: dict[str, Region] = {}
    for region in catalog.regions:
        if region.region_id in region_meta:
            logger.warning(f"{city}: duplicate region id {region.region_id}, later feature wins")
        region_meta[region.region_id] = region

    build = build_cell_map(catalog.regions, resolution)
    elapsed = time.perf_counter() - start

    index = CityIndex(
        city=city,
        resolution=resolution,
        cell_to_region=build.cell_to_region,
        region_meta=region_meta,
        skipped_features=catalog.skipped_features,
        skipped_polygons=build.skipped_polygons,
        overwritten_cells=build.overwritten_cells,
        build_seconds=elapsed,
    )

    logger.info(
        f"Built H3 index for {city}: {index.total_regions:,} regions, "
        f"{index.total_cells:,} cells at resolution {resolution} in {elapsed:.2f}s"
    )
    return index
