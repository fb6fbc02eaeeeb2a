"""Shared pytest fixtures for Gotham Eye tests."""

from collections.abc import Generator
from datetime import datetime
from pathlib import Path

import duckdb
import pytest

from gothameye.config import Config
from gothameye.data_access import EVENTS_TABLE
from gothameye.spatial.service import SpatialService

FIXTURES_DIR = Path(__file__).parent / "fixtures"

# Interior points of the fixture neighborhoods
TIMES_SQUARE = (40.7589, -73.9851)  # MN0502
KIPS_BAY = (40.7425, -73.9850)  # MN0501
GREENPOINT = (40.7275, -73.9550)  # BK0101
TURTLE_BAY = (40.7600, -73.9600)  # MN0604
TURTLE_BAY_HOLE = (40.7540, -73.9710)  # hole in MN0604
OPEN_WATER = (40.7000, -74.0300)  # outside every fixture polygon
MISSION = (37.7580, -122.4140)
TENDERLOIN = (37.7850, -122.4125)


@pytest.fixture
def test_config() -> Config:
    """Create test configuration pointing at fixture boundary files.

    Returns:
        Config object with test-specific settings
    """
    config = Config(data_dir=FIXTURES_DIR)
    # Override for tests
    config.cities["nyc"].boundaries = Path("nyc_boundaries.geojson")
    config.cities["sf"].boundaries = Path("sf_boundaries.geojson")
    config.spatial.build_on_startup = False
    config.duckdb.memory_limit = "1GB"
    config.duckdb.threads = 1
    config.duckdb.temp_directory = "/tmp/test_duckdb"
    return config


@pytest.fixture
def spatial_service(test_config: Config) -> SpatialService:
    """Spatial service with both fixture cities built."""
    service = SpatialService(test_config)
    service.ensure_ready()
    return service


EVENT_ROWS = [
    # city, occurred_at, offense, law_class, lat, lon
    *[("nyc", datetime(2024, 3, d, 12, 0), "ASSAULT", "FELONY", *TIMES_SQUARE) for d in range(1, 6)],
    *[("nyc", datetime(2024, 3, d, 8, 30), "PETIT LARCENY", "MISDEMEANOR", *KIPS_BAY) for d in range(1, 4)],
    ("nyc", datetime(2024, 3, 10, 23, 59, 30), "ROBBERY", "FELONY", *GREENPOINT),
    ("nyc", datetime(2024, 3, 11, 0, 0), "PETIT LARCENY", "MISDEMEANOR", *GREENPOINT),
    ("nyc", datetime(2024, 3, 12, 1, 0), "HARASSMENT", "VIOLATION", *OPEN_WATER),
    ("nyc", datetime(2023, 12, 31, 23, 0), "ASSAULT", "FELONY", *TIMES_SQUARE),
    ("nyc", datetime(2024, 3, 2, 9, 0), "ASSAULT", "FELONY", None, None),
    *[("sf", datetime(2024, 3, d, 15, 0), "Larceny Theft", None, *MISSION) for d in range(1, 5)],
    ("sf", datetime(2024, 3, 5, 15, 0), "Burglary", None, *TENDERLOIN),
]


@pytest.fixture
def warehouse(test_config: Config) -> Generator[duckdb.DuckDBPyConnection]:
    """In-memory warehouse with a small synthetic incident table.

    Yields:
        DuckDB connection with the crime_events table

    Note:
        Connection is automatically closed after test
    """
    conn = duckdb.connect(":memory:")
    conn.execute(f"SET threads = {test_config.duckdb.threads}")
    conn.execute(f"""
        CREATE TABLE {EVENTS_TABLE} (
            city VARCHAR,
            occurred_at TIMESTAMP,
            offense VARCHAR,
            law_class VARCHAR,
            lat DOUBLE,
            lon DOUBLE
        )
    """)
    conn.executemany(f"INSERT INTO {EVENTS_TABLE} VALUES (?, ?, ?, ?, ?, ?)", EVENT_ROWS)

    yield conn
    conn.close()


@pytest.fixture
def events_parquet(tmp_path: Path, warehouse: duckdb.DuckDBPyConnection) -> Path:
    """Synthetic incidents exported to Parquet."""
    path = tmp_path / "crime_events.parquet"
    warehouse.execute(f"COPY {EVENTS_TABLE} TO '{path}' (FORMAT PARQUET)")
    return path
