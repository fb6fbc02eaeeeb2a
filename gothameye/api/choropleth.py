"""Choropleth aggregation: incident counts bucketed by neighborhood.

Incidents are first counted per H3 cell in the warehouse; each cell centre is
then resolved to a neighborhood through the spatial index and the counts are
summed per region. When the warehouse lacks the h3 extension, counts are
grouped on a rounded lat/lon grid instead and each grid point is resolved.
"""

import logging
import math
from enum import StrEnum
from typing import Any

import duckdb
import h3

from gothameye.api.queries import EventQuery, query_cell_counts, query_grid_counts
from gothameye.data_access import has_h3_functions
from gothameye.spatial.resolver import BatchPoint
from gothameye.spatial.service import SpatialService

logger = logging.getLogger(__name__)

SCALE_QUANTILES = {"p50": 0.5, "p90": 0.9, "p99": 0.99}


class AggregationStrategy(StrEnum):
    """How incident rows were grouped before region lookup."""

    H3_CELLS = "h3_cells"
    LATLON_GRID = "latlon_grid"


def compute_scale(counts: list[int]) -> dict[str, int]:
    """Deterministic color scale over region counts.

    Percentiles use the nearest-rank-below rule: sorted[floor(n * q)].
    """
    if not counts:
        return {"min": 0, "max": 0, "p50": 0, "p90": 0, "p99": 0}

    ordered = sorted(counts)
    n = len(ordered)
    scale = {"min": ordered[0], "max": ordered[-1]}
    for name, q in SCALE_QUANTILES.items():
        scale[name] = ordered[min(math.floor(n * q), n - 1)]
    return scale


def aggregate_by_region(
    service: SpatialService,
    city: str,
    points: list[tuple[BatchPoint, int]],
) -> tuple[dict[str, int], int]:
    """Sum weighted points per region.

    Args:
        service: Spatial service used for batch lookup
        city: City id
        points: (point, count) pairs

    Returns:
        Tuple of (region_id → count, count that resolved to no region)
    """
    results = service.batch_lookup(city, [point for point, _ in points])

    region_counts: dict[str, int] = {}
    unassigned = 0
    for result, (_, count) in zip(results, points, strict=True):
        if result.region_id is None:
            unassigned += count
            continue
        region_counts[result.region_id] = region_counts.get(result.region_id, 0) + count

    return region_counts, unassigned


def cell_points(cell_counts: list[tuple[str, int]]) -> list[tuple[BatchPoint, int]]:
    """Convert per-cell counts to weighted cell-centre points."""
    points = []
    for cell, count in cell_counts:
        lat, lon = h3.cell_to_latlng(cell)
        points.append((BatchPoint(lat=lat, lon=lon, id=cell), count))
    return points


def get_choropleth(
    service: SpatialService,
    conn: duckdb.DuckDBPyConnection,
    query: EventQuery,
    max_cells: int = 10000,
) -> dict[str, Any]:
    """Per-neighborhood incident counts and color scale for a query.

    Args:
        service: Spatial service (index built lazily if needed)
        conn: Warehouse connection
        query: City, date range and filters
        max_cells: Cap on cells/grid points fetched from the warehouse

    Returns:
        Dict with neighborhoods [{region_id, count}], scale, strategy and
        the number of incidents that resolved to no neighborhood
    """
    resolution = service.config.spatial.resolution

    if has_h3_functions(conn):
        strategy = AggregationStrategy.H3_CELLS
        cell_counts = query_cell_counts(conn, query, resolution, limit=max_cells)
        points = cell_points(cell_counts)
        logger.info(f"Using H3 aggregation: {len(cell_counts)} cells for {query.city}")
    else:
        strategy = AggregationStrategy.LATLON_GRID
        logger.warning("H3 functions not available in warehouse, falling back to lat/lon grid")
        grid_counts = query_grid_counts(conn, query, limit=max_cells)
        points = [(BatchPoint(lat=lat, lon=lon), count) for lat, lon, count in grid_counts]
        logger.info(f"Grid aggregation: {len(grid_counts)} grid points for {query.city}")

    region_counts, unassigned = aggregate_by_region(service, query.city, points)

    neighborhoods = [
        {"region_id": region_id, "count": count}
        for region_id, count in sorted(region_counts.items(), key=lambda item: (-item[1], item[0]))
    ]
    scale = compute_scale([n["count"] for n in neighborhoods])

    logger.info(
        f"Choropleth for {query.city}: {len(neighborhoods)} neighborhoods, "
        f"{unassigned:,} unassigned incidents, scale {scale}"
    )

    return {
        "neighborhoods": neighborhoods,
        "scale": scale,
        "strategy": strategy,
        "unassigned": unassigned,
    }
