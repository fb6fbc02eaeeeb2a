"""Hex-grid builder: fill region polygons with H3 cells.

Every polygon of every region is filled with the cells whose centre lies
inside it, at one resolution shared by all cities. Regions are processed in
catalog order and a later region overwrites an earlier claim on the same cell
(last write wins), so overlapping slivers belong to the region listed last.
"""

import logging
from typing import NamedTuple

import h3

from gothameye.spatial.catalog import PolygonRings, Region, Ring

logger = logging.getLogger(__name__)


class CellMapBuild(NamedTuple):
    """Result of filling a catalog with cells."""

    cell_to_region: dict[str, str]
    overwritten_cells: int
    skipped_polygons: int


def _to_latlng(ring: Ring) -> list[tuple[float, float]]:
    """Convert a GeoJSON (lon, lat) ring to an open (lat, lng) loop for h3."""
    loop = [(lat, lon) for lon, lat in ring]
    if len(loop) > 1 and loop[0] == loop[-1]:
        loop = loop[:-1]
    return loop


def polygon_to_cells(polygon: PolygonRings, resolution: int) -> list[str]:
    """Cells whose centre lies inside the polygon (holes excluded).

    Args:
        polygon: [outer, *holes] rings in (lon, lat) order
        resolution: H3 resolution

    Returns:
        List of H3 cell id strings

    Raises:
        ValueError: If the outer ring has fewer than three distinct vertices
        h3.H3BaseException: If h3 rejects the outer ring
    """
    outer, *holes = polygon
    outer_loop = _to_latlng(outer)
    if len(set(outer_loop)) < 3:
        raise ValueError(f"Outer ring has {len(set(outer_loop))} distinct vertices")

    hole_loops = []
    for i, hole in enumerate(holes, start=1):
        loop = _to_latlng(hole)
        if len(set(loop)) < 3:
            logger.warning(f"Dropping hole {i}: {len(set(loop))} distinct vertices")
            continue
        hole_loops.append(loop)

    if hole_loops:
        try:
            return list(h3.polygon_to_cells(h3.LatLngPoly(outer_loop, *hole_loops), resolution))
        except (ValueError, h3.H3BaseException) as e:
            # A bad hole must not cost the region its interior
            logger.warning(f"h3 rejected polygon holes, filling outer ring only: {e}")

    return list(h3.polygon_to_cells(h3.LatLngPoly(outer_loop), resolution))


def region_to_cells(region: Region, resolution: int) -> tuple[set[str], int]:
    """Fill every polygon of a region.

    Polygons that can't be filled are skipped with a warning; the region keeps
    the cells of its remaining polygons.

    Returns:
        Tuple of (cells, number of skipped polygons)
    """
    cells: set[str] = set()
    skipped = 0
    for i, polygon in enumerate(region.polygons):
        if not polygon:
            skipped += 1
            logger.warning(f"{region.city}/{region.region_id}: polygon {i} has no rings")
            continue
        try:
            cells.update(polygon_to_cells(polygon, resolution))
        except (ValueError, h3.H3BaseException) as e:
            skipped += 1
            logger.warning(f"{region.city}/{region.region_id}: skipping polygon {i}: {e}")
    return cells, skipped


def build_cell_map(regions: list[Region], resolution: int) -> CellMapBuild:
    """Map every covering cell to its owning region id.

    Args:
        regions: Regions in catalog order
        resolution: H3 resolution shared by all regions

    Returns:
        CellMapBuild with the cell→region map and overlap/skip counters
    """
    cell_to_region: dict[str, str] = {}
    overwritten = 0
    skipped_polygons = 0

    for region in regions:
        cells, skipped = region_to_cells(region, resolution)
        skipped_polygons += skipped
        if not cells:
            logger.warning(f"{region.city}/{region.region_id}: no cells at resolution {resolution}")

        for cell in cells:
            previous = cell_to_region.get(cell)
            if previous is not None and previous != region.region_id:
                overwritten += 1
            cell_to_region[cell] = region.region_id

    if overwritten:
        logger.info(f"{overwritten:,} cells claimed by more than one region (last region wins)")

    return CellMapBuild(
        cell_to_region=cell_to_region,
        overwritten_cells=overwritten,
        skipped_polygons=skipped_polygons,
    )
