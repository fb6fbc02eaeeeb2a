"""Pydantic schemas for API request/response models.

Defines the contract for the map API endpoints, enabling
automatic OpenAPI documentation and request/response validation.
"""

from pydantic import BaseModel, Field

from gothameye.api.choropleth import AggregationStrategy
from gothameye.spatial.resolver import BatchLookupResult, BatchPoint, LookupResult


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service status")
    events_count: int = Field(description="Total incidents in warehouse")
    spatial_ready: bool = Field(description="Whether every city index is built")


class SpatialStats(BaseModel):
    """Counters over the loaded spatial indexes."""

    total_cities: int
    cities_loaded: list[str]
    total_regions: int
    total_cells: int
    resolution: int
    memory_usage_estimate: str


class RegionSummary(BaseModel):
    """Region id and display name."""

    region_id: str
    region_name: str


class SpatialStatusResponse(BaseModel):
    """Spatial index diagnostics."""

    ready: bool
    stats: SpatialStats
    test_result: LookupResult | None = Field(default=None)
    regions: list[RegionSummary] | None = Field(
        default=None, description="First 10 regions of test_city"
    )
    total_regions: int | None = Field(default=None)


class CellRoundTripResponse(BaseModel):
    """Round trip of a known cell centre through the resolver."""

    known_h3_cell: str
    lat: float
    lon: float
    lookup_result: LookupResult
    success: bool


class BatchLookupRequest(BaseModel):
    """Points to resolve for one city."""

    city: str
    points: list[BatchPoint] = Field(max_length=50000)


class BatchLookupResponse(BaseModel):
    """Batch results in input order."""

    city: str
    results: list[BatchLookupResult]


class RebuildResponse(BaseModel):
    """Outcome of an explicit index rebuild."""

    city: str
    total_regions: int
    total_cells: int
    build_seconds: float


class RegionDetail(RegionSummary):
    """Region with cell count and bounding box."""

    cell_count: int
    bounds: list[float] | None = Field(
        default=None, description="[min_lat, max_lat, min_lon, max_lon]"
    )


class NeighborhoodsResponse(BaseModel):
    """All regions of a city."""

    city: str
    regions: list[RegionDetail]


class NeighborhoodCount(BaseModel):
    """Incident count for one neighborhood."""

    region_id: str
    count: int


class ChoroplethScale(BaseModel):
    """Color scale over neighborhood counts."""

    min: int
    max: int
    p50: int
    p90: int
    p99: int


class ChoroplethResponse(BaseModel):
    """Neighborhood counts and scale for map shading."""

    neighborhoods: list[NeighborhoodCount]
    scale: ChoroplethScale
    strategy: AggregationStrategy
    unassigned: int = Field(description="Incidents that resolved to no neighborhood")


class OffenseCount(BaseModel):
    """Offense name with incident count."""

    offense: str
    count: int


class LawClassCount(BaseModel):
    """Law class with incident count."""

    law_class: str
    count: int


class FiltersResponse(BaseModel):
    """Filter options for a city and date range."""

    offenses: list[OffenseCount]
    law_classes: list[LawClassCount]
    total_offenses: int


class StatsTotals(BaseModel):
    """Headline counters for the statistics panels."""

    events: int = Field(description="Matching incidents")


class MonthCount(BaseModel):
    """Incidents in one calendar month."""

    month: str = Field(description="Month as YYYY-MM")
    count: int


class LocationCount(BaseModel):
    """Incidents in one neighborhood."""

    region_id: str
    region_name: str
    count: int


class StatsResponse(BaseModel):
    """Totals, monthly series and breakdowns for a query."""

    totals: StatsTotals
    time_series: list[MonthCount]
    by_offense: list[OffenseCount] = Field(description="Top offenses, largest first")
    by_law_class: list[LawClassCount] = Field(description="Top law classes (nyc only)")
    by_location: list[LocationCount] = Field(description="Top neighborhoods, largest first")
    selected_neighborhood: str | None = Field(
        default=None, description="Region the statistics are restricted to"
    )
