"""Statistics panels: totals, monthly series and breakdowns for a query.

City-wide statistics come straight from warehouse aggregates, with the
per-neighborhood breakdown resolved through the spatial index. When a single
neighborhood is selected, incidents are grouped on the lat/lon grid, each grid
point is resolved once, and only rows inside the neighborhood are counted.
"""

import logging
from collections import Counter
from typing import Any

import duckdb

from gothameye.api.choropleth import aggregate_by_region
from gothameye.api.queries import (
    EventQuery,
    query_grid_breakdown,
    query_grid_counts,
    query_law_class_breakdown,
    query_offense_breakdown,
    query_time_series,
    query_total_count,
)
from gothameye.spatial.resolver import BatchPoint
from gothameye.spatial.service import SpatialService

logger = logging.getLogger(__name__)

OFFENSE_LIMIT = 20
LAW_CLASS_LIMIT = 15
LOCATION_LIMIT = 20


def _ranked(counter: Counter, key: str, limit: int) -> list[dict[str, Any]]:
    items = sorted(counter.items(), key=lambda item: (-item[1], item[0]))
    return [{key: name, "count": count} for name, count in items[:limit]]


def location_breakdown(
    service: SpatialService, city: str, region_counts: dict[str, int]
) -> list[dict[str, Any]]:
    """Largest neighborhoods by count, with display names."""
    index = service.get_index(city)
    names = {rid: r.region_name for rid, r in index.region_meta.items()} if index else {}
    ranked = sorted(region_counts.items(), key=lambda item: (-item[1], item[0]))
    return [
        {"region_id": rid, "region_name": names.get(rid, rid), "count": count}
        for rid, count in ranked[:LOCATION_LIMIT]
    ]


def _city_stats(
    service: SpatialService,
    conn: duckdb.DuckDBPyConnection,
    query: EventQuery,
    max_cells: int,
) -> dict[str, Any]:
    grid_counts = query_grid_counts(conn, query, limit=max_cells)
    points = [(BatchPoint(lat=lat, lon=lon), count) for lat, lon, count in grid_counts]
    region_counts, _ = aggregate_by_region(service, query.city, points)

    return {
        "totals": {"events": query_total_count(conn, query)},
        "time_series": query_time_series(conn, query),
        "by_offense": query_offense_breakdown(conn, query, limit=OFFENSE_LIMIT),
        "by_law_class": query_law_class_breakdown(conn, query, limit=LAW_CLASS_LIMIT),
        "by_location": location_breakdown(service, query.city, region_counts),
    }


def _neighborhood_stats(
    service: SpatialService,
    conn: duckdb.DuckDBPyConnection,
    query: EventQuery,
    region_id: str,
) -> dict[str, Any]:
    rows = query_grid_breakdown(conn, query)

    grid = sorted({(lat, lon) for lat, lon, *_ in rows})
    results = service.batch_lookup(query.city, [BatchPoint(lat=lat, lon=lon) for lat, lon in grid])
    inside = {point for point, result in zip(grid, results, strict=True) if result.region_id == region_id}

    months: Counter = Counter()
    offenses: Counter = Counter()
    law_classes: Counter = Counter()
    total = 0
    for lat, lon, month, offense, law_class, count in rows:
        if (lat, lon) not in inside:
            continue
        total += count
        months[month] += count
        if offense:
            offenses[offense] += count
        if law_class and query.city == "nyc":
            law_classes[law_class] += count

    logger.info(
        f"Stats for {query.city}/{region_id}: {len(inside)} of {len(grid)} grid points, "
        f"{total:,} incidents"
    )

    return {
        "totals": {"events": total},
        "time_series": [{"month": m, "count": c} for m, c in sorted(months.items())],
        "by_offense": _ranked(offenses, "offense", OFFENSE_LIMIT),
        "by_law_class": _ranked(law_classes, "law_class", LAW_CLASS_LIMIT),
        "by_location": location_breakdown(service, query.city, {region_id: total} if total else {}),
    }


def get_stats(
    service: SpatialService,
    conn: duckdb.DuckDBPyConnection,
    query: EventQuery,
    selected_neighborhood: str | None = None,
    max_cells: int = 10000,
) -> dict[str, Any]:
    """Totals, monthly series and breakdowns for a query.

    Args:
        service: Spatial service (index must be built for the city)
        conn: Warehouse connection
        query: City, date range and filters
        selected_neighborhood: Region id to restrict the statistics to
        max_cells: Cap on grid points fetched for the city-wide location breakdown

    Returns:
        Dict with totals, time_series, by_offense, by_law_class, by_location
        and the selected neighborhood (None for city-wide)
    """
    if selected_neighborhood is None:
        stats = _city_stats(service, conn, query, max_cells)
    else:
        stats = _neighborhood_stats(service, conn, query, selected_neighborhood)
    stats["selected_neighborhood"] = selected_neighborhood
    return stats
