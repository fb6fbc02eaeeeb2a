"""FastAPI application for the Gotham Eye crime map API.

Provides:
- /api/choropleth: Incident counts per neighborhood with a color scale
- /api/stats: Totals, monthly series and breakdowns, optionally for one neighborhood
- /api/filters: Offense and law class options for a date range
- /api/neighborhoods: Regions of a city from the spatial index
- /api/spatial/*: Spatial index status, point lookups and rebuilds
- /health: Health check endpoint

Usage:
    python -m gothameye.api.main [--port 8080] [--config config.toml]
"""

import argparse
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import date
from pathlib import Path
from typing import Annotated

import duckdb
import h3
from cachetools import TTLCache
from fastapi import FastAPI, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from gothameye.api.choropleth import get_choropleth
from gothameye.api.queries import (
    EventQuery,
    get_law_class_counts,
    get_offense_counts,
    is_valid_h3_cell,
)
from gothameye.api.schemas import (
    BatchLookupRequest,
    BatchLookupResponse,
    CellRoundTripResponse,
    ChoroplethResponse,
    FiltersResponse,
    HealthResponse,
    NeighborhoodsResponse,
    RebuildResponse,
    RegionDetail,
    RegionSummary,
    SpatialStatusResponse,
    StatsResponse,
)
from gothameye.api.stats import get_stats
from gothameye.config import Config
from gothameye.data_access import get_event_count, init_warehouse
from gothameye.spatial.catalog import region_bounds
from gothameye.spatial.errors import SpatialError
from gothameye.spatial.resolver import LookupResult
from gothameye.spatial.service import SpatialService

logger = logging.getLogger(__name__)

# Centre used by the round-trip check when no cell is given
TEST_POINT = (40.7589, -73.9851)

# Regions listed by the status endpoint
STATUS_REGION_LIMIT = 10

CACHE_CONTROL = "public, max-age=300"


def load_config(root_dir: Path) -> Config:
    """Load config.toml from root_dir, falling back to defaults."""
    config_path = root_dir / "config.toml"
    if config_path.exists():
        return Config.from_file(config_path)
    return Config()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Build spatial indexes and open the warehouse; close it on shutdown."""
    root_dir: Path = getattr(app.state, "root_dir", Path(__file__).parent.parent.parent)
    config: Config = getattr(app.state, "config", None) or load_config(root_dir)
    app.state.config = config

    service = SpatialService(config)
    app.state.spatial = service
    app.state.cache = TTLCache(
        maxsize=config.api.cache_max_entries, ttl=config.api.cache_ttl_seconds
    )

    if config.spatial.build_on_startup:
        try:
            print("Building spatial indexes...")
            await run_in_threadpool(service.ensure_ready)
            print(f"✓ Spatial index ready: {service.stats()}")
        except SpatialError as e:
            print(f"⚠ Warning: {e}")
            print("  Spatial endpoints will retry the build on demand")

    events_path = config.data_dir / config.api.events_file
    try:
        print(f"Initializing warehouse from {events_path}...")
        app.state.db = init_warehouse(events_path, config)
        count = get_event_count(app.state.db)
        print(f"✓ Warehouse ready with {count:,} incidents")
    except FileNotFoundError as e:
        print(f"⚠ Warning: {e}")
        print("  API will run but /api/choropleth will return 503")
        app.state.db = None

    yield

    if app.state.db:
        app.state.db.close()


# API metadata for OpenAPI docs
app = FastAPI(
    title="Gotham Eye API",
    description="Crime incident map API with neighborhood choropleths",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)


def get_service(request: Request) -> SpatialService:
    """Get spatial service from app state.

    Raises:
        HTTPException: If the service was not initialized
    """
    service: SpatialService | None = getattr(request.app.state, "spatial", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Spatial service not initialized")
    return service


def get_db(request: Request) -> duckdb.DuckDBPyConnection:
    """Get warehouse connection from app state.

    Raises:
        HTTPException: If database not initialized
    """
    db: duckdb.DuckDBPyConnection | None = getattr(request.app.state, "db", None)
    if db is None:
        raise HTTPException(status_code=503, detail="Database not initialized")
    return db


def get_cache(request: Request) -> TTLCache:
    """Get (or lazily create) the response cache."""
    cache: TTLCache | None = getattr(request.app.state, "cache", None)
    if cache is None:
        api = get_service(request).config.api
        cache = TTLCache(maxsize=api.cache_max_entries, ttl=api.cache_ttl_seconds)
        request.app.state.cache = cache
    return cache


def check_city(service: SpatialService, city: str) -> None:
    """Reject cities without spatial configuration."""
    if city not in service.config.cities:
        supported = ", ".join(service.cities)
        raise HTTPException(status_code=400, detail=f"Invalid city: {city}. Must be one of {supported}")


async def ensure_city_ready(service: SpatialService, city: str) -> None:
    """Build a city's index off the event loop, mapping failures to 503."""
    try:
        await run_in_threadpool(service.ensure_ready, city)
    except SpatialError as e:
        raise HTTPException(status_code=503, detail=f"Spatial index unavailable: {e}") from e


@app.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check(request: Request) -> HealthResponse:
    """Check API health and return basic stats."""
    service: SpatialService | None = getattr(request.app.state, "spatial", None)
    spatial_ready = service.is_ready() if service else False
    try:
        db = get_db(request)
        count = get_event_count(db)
    except HTTPException:
        # Warehouse not initialized - still healthy but no incidents
        count = 0
    return HealthResponse(status="healthy", events_count=count, spatial_ready=spatial_ready)


@app.get("/api/spatial/status", response_model=SpatialStatusResponse, tags=["Spatial"])
async def spatial_status(
    request: Request,
    test_city: Annotated[str | None, Query(description="City for test lookup/region list")] = None,
    test_lat: Annotated[float | None, Query(description="Test lookup latitude")] = None,
    test_lon: Annotated[float | None, Query(description="Test lookup longitude")] = None,
) -> SpatialStatusResponse | JSONResponse:
    """Report index readiness, stats, an optional test lookup and region list."""
    service = get_service(request)

    if not service.is_ready():
        try:
            await run_in_threadpool(service.ensure_ready)
        except SpatialError as e:
            logger.error(f"Failed to initialize spatial index: {e}")
            return JSONResponse(
                status_code=503,
                content={
                    "ready": False,
                    "message": "Failed to initialize spatial index",
                    "error": str(e),
                },
            )

    test_result = None
    if test_city is not None and test_lat is not None and test_lon is not None:
        test_result = service.lookup(test_city, test_lat, test_lon)

    regions = None
    total_regions = None
    if test_city is not None:
        city_regions = service.regions(test_city)
        total_regions = len(city_regions)
        regions = [
            RegionSummary(region_id=r.region_id, region_name=r.region_name)
            for r in city_regions[:STATUS_REGION_LIMIT]
        ]

    return SpatialStatusResponse(
        ready=True,
        stats=service.stats(),
        test_result=test_result,
        regions=regions,
        total_regions=total_regions,
    )


@app.get("/api/spatial/lookup", response_model=LookupResult, tags=["Spatial"])
async def spatial_lookup(
    request: Request,
    city: Annotated[str, Query(description="City id (nyc, sf)")],
    lat: Annotated[float, Query(description="Latitude (WGS84)")],
    lon: Annotated[float, Query(description="Longitude (WGS84)")],
) -> LookupResult:
    """Resolve one point to its neighborhood.

    Unconfigured cities and out-of-range coordinates give a null result.
    """
    service = get_service(request)
    if city in service.config.cities:
        await ensure_city_ready(service, city)
    return service.lookup(city, lat, lon)


@app.post("/api/spatial/batch-lookup", response_model=BatchLookupResponse, tags=["Spatial"])
async def spatial_batch_lookup(request: Request, body: BatchLookupRequest) -> BatchLookupResponse:
    """Resolve many points, preserving input order and caller ids."""
    service = get_service(request)
    if body.city in service.config.cities:
        await ensure_city_ready(service, body.city)
    results = service.batch_lookup(body.city, body.points)
    return BatchLookupResponse(city=body.city, results=results)


@app.get("/api/spatial/test-lookup", response_model=CellRoundTripResponse, tags=["Spatial"])
async def spatial_test_lookup(
    request: Request,
    h3_cell: Annotated[
        str | None, Query(alias="h3", description="H3 cell whose centre is looked up in nyc")
    ] = None,
) -> CellRoundTripResponse:
    """Look up the centre of a known cell in nyc.

    Defaults to the Times Square cell at the configured resolution.
    """
    service = get_service(request)
    if h3_cell is None:
        h3_cell = h3.latlng_to_cell(*TEST_POINT, service.config.spatial.resolution)
    elif not is_valid_h3_cell(h3_cell) or not h3.is_valid_cell(h3_cell):
        raise HTTPException(status_code=400, detail=f"Invalid H3 cell ID: {h3_cell}")

    check_city(service, "nyc")
    await ensure_city_ready(service, "nyc")

    lat, lon = h3.cell_to_latlng(h3_cell)
    result = service.lookup("nyc", lat, lon)
    return CellRoundTripResponse(
        known_h3_cell=h3_cell,
        lat=lat,
        lon=lon,
        lookup_result=result,
        success=result.found,
    )


@app.post("/api/spatial/rebuild", response_model=RebuildResponse, tags=["Spatial"])
async def spatial_rebuild(
    request: Request,
    city: Annotated[str, Query(description="City id (nyc, sf)")],
) -> RebuildResponse:
    """Rebuild a city's index and swap it in.

    On failure the previous index (if any) keeps serving.
    """
    service = get_service(request)
    check_city(service, city)
    try:
        index = await run_in_threadpool(service.rebuild, city)
    except SpatialError as e:
        raise HTTPException(status_code=503, detail=f"Rebuild failed: {e}") from e

    # Cached choropleths were resolved against the old index
    get_cache(request).clear()

    return RebuildResponse(
        city=city,
        total_regions=index.total_regions,
        total_cells=index.total_cells,
        build_seconds=index.build_seconds,
    )


@app.get("/api/neighborhoods", response_model=NeighborhoodsResponse, tags=["Spatial"])
async def get_neighborhoods(
    request: Request,
    city: Annotated[str, Query(description="City id (nyc, sf)")],
) -> NeighborhoodsResponse:
    """List a city's regions with cell counts and bounding boxes."""
    service = get_service(request)
    check_city(service, city)
    await ensure_city_ready(service, city)

    index = service.get_index(city)
    if index is None:
        raise HTTPException(status_code=503, detail=f"Spatial index for {city} not available")

    cell_counts: dict[str, int] = {}
    for owner in index.cell_to_region.values():
        cell_counts[owner] = cell_counts.get(owner, 0) + 1

    regions = []
    for region in index.region_meta.values():
        bounds = region_bounds(region)
        regions.append(
            RegionDetail(
                region_id=region.region_id,
                region_name=region.region_name,
                cell_count=cell_counts.get(region.region_id, 0),
                bounds=list(bounds) if bounds else None,
            )
        )
    return NeighborhoodsResponse(city=city, regions=regions)


@app.get("/api/choropleth", response_model=ChoroplethResponse, tags=["Incidents"])
async def choropleth(
    request: Request,
    response: Response,
    city: Annotated[str, Query(description="City id (nyc, sf)")],
    start_date: Annotated[date, Query(alias="from", description="First day (YYYY-MM-DD)")],
    end_date: Annotated[date, Query(alias="to", description="Last day (YYYY-MM-DD)")],
    offenses: Annotated[list[str] | None, Query(description="Offense names to include")] = None,
    law_class: Annotated[
        list[str] | None, Query(alias="lawClass", description="Law classes (nyc only)")
    ] = None,
    show_no_results: Annotated[
        bool, Query(alias="showNoResults", description="Return an empty result")
    ] = False,
) -> ChoroplethResponse:
    """Incident counts per neighborhood and a color scale.

    Results are cached for five minutes per normalized query.
    """
    service = get_service(request)
    check_city(service, city)

    if end_date < start_date:
        raise HTTPException(status_code=400, detail="'to' must not be before 'from'")

    query = EventQuery(
        city=city,
        start_date=start_date,
        end_date=end_date,
        offenses=[o for o in offenses or [] if o],
        law_classes=[c for c in law_class or [] if c],
        show_no_results=show_no_results,
    )

    response.headers["Cache-Control"] = CACHE_CONTROL

    await ensure_city_ready(service, city)

    # Keyed by index generation so a rebuild never serves stale regions
    cache = get_cache(request)
    cache_key = f"choropleth:{service.generation(city)}:{query.cache_key()}"
    cached = cache.get(cache_key)
    if cached is not None:
        logger.debug(f"Returning cached choropleth for {cache_key}")
        return cached

    db = get_db(request)
    cursor = db.cursor()
    try:
        data = await run_in_threadpool(
            get_choropleth, service, cursor, query, service.config.api.max_cells
        )
    finally:
        cursor.close()

    result = ChoroplethResponse(**data)
    cache[cache_key] = result
    return result


@app.get("/api/stats", response_model=StatsResponse, tags=["Incidents"])
async def stats(
    request: Request,
    response: Response,
    city: Annotated[str, Query(description="City id (nyc, sf)")],
    start_date: Annotated[date, Query(alias="from", description="First day (YYYY-MM-DD)")],
    end_date: Annotated[date, Query(alias="to", description="Last day (YYYY-MM-DD)")],
    offenses: Annotated[list[str] | None, Query(description="Offense names to include")] = None,
    law_class: Annotated[
        list[str] | None, Query(alias="lawClass", description="Law classes (nyc only)")
    ] = None,
    show_no_results: Annotated[
        bool, Query(alias="showNoResults", description="Return an empty result")
    ] = False,
    selected_neighborhood: Annotated[
        str | None,
        Query(alias="selectedNeighborhood", description="Region id to restrict statistics to"),
    ] = None,
) -> StatsResponse:
    """Totals, monthly series and offense/law class/neighborhood breakdowns.

    Results are cached for five minutes per normalized query and neighborhood.
    """
    service = get_service(request)
    check_city(service, city)

    if end_date < start_date:
        raise HTTPException(status_code=400, detail="'to' must not be before 'from'")

    query = EventQuery(
        city=city,
        start_date=start_date,
        end_date=end_date,
        offenses=[o for o in offenses or [] if o],
        law_classes=[c for c in law_class or [] if c],
        show_no_results=show_no_results,
    )
    selected = selected_neighborhood or None

    response.headers["Cache-Control"] = CACHE_CONTROL

    await ensure_city_ready(service, city)

    cache = get_cache(request)
    cache_key = f"stats:{service.generation(city)}:{query.cache_key()}:{selected or ''}"
    cached = cache.get(cache_key)
    if cached is not None:
        logger.debug(f"Returning cached stats for {cache_key}")
        return cached

    db = get_db(request)
    cursor = db.cursor()
    try:
        data = await run_in_threadpool(
            get_stats, service, cursor, query, selected, service.config.api.max_cells
        )
    finally:
        cursor.close()

    result = StatsResponse(**data)
    cache[cache_key] = result
    return result


@app.get("/api/filters", response_model=FiltersResponse, tags=["Incidents"])
async def get_filters(
    request: Request,
    city: Annotated[str, Query(description="City id (nyc, sf)")],
    start_date: Annotated[date, Query(alias="from", description="First day (YYYY-MM-DD)")],
    end_date: Annotated[date, Query(alias="to", description="Last day (YYYY-MM-DD)")],
) -> FiltersResponse:
    """Offenses and law classes with counts for the filter UI."""
    service = get_service(request)
    check_city(service, city)
    if end_date < start_date:
        raise HTTPException(status_code=400, detail="'to' must not be before 'from'")

    db = get_db(request)
    offenses = get_offense_counts(db, city, start_date, end_date)
    law_classes = get_law_class_counts(db, city, start_date, end_date)
    return FiltersResponse(
        offenses=offenses,
        law_classes=law_classes,
        total_offenses=len(offenses),
    )


def create_app(root_dir: Path | None = None, config: Config | None = None) -> FastAPI:
    """Configure the app with a project root and optional configuration.

    Args:
        root_dir: Directory containing config.toml and data/. Defaults to project root.
        config: Configuration object. Loaded from root_dir/config.toml if None.

    Returns:
        Configured FastAPI application
    """
    if root_dir is None:
        root_dir = Path(__file__).parent.parent.parent

    app.state.root_dir = root_dir
    app.state.config = config
    return app


def main() -> None:
    """Run the development server."""
    import uvicorn

    parser = argparse.ArgumentParser(description="Gotham Eye API server")
    parser.add_argument(
        "--port", "-p", type=int, default=8080, help="Port to serve on (default: 8080)"
    )
    parser.add_argument(
        "--host",
        "-H",
        type=str,
        default="127.0.0.1",
        help="Host to bind to (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--config", "-c", type=Path, default=None, help="Path to config.toml (default: ./config.toml)"
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)

    config = Config.from_file(args.config) if args.config else None

    print("Starting Gotham Eye server...")
    print(f"API docs: http://{args.host}:{args.port}/docs")
    print("Press Ctrl+C to stop\n")

    create_app(config=config)
    uvicorn.run(app, host=args.host, port=args.port, log_level="info")


if __name__ == "__main__":
    main()
