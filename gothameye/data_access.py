"""DuckDB warehouse connection management with configuration."""

import logging
from pathlib import Path

import duckdb

from gothameye.config import Config

logger = logging.getLogger(__name__)

# Core extensions (built-in); anything else comes from the community repository
CORE_EXTENSIONS = {"spatial", "json", "parquet", "httpfs"}

EVENTS_TABLE = "crime_events"


def load_extension(conn: duckdb.DuckDBPyConnection, ext: str) -> None:
    """Install (if needed) and load one extension.

    Raises:
        duckdb.Error: If the extension can be neither installed nor loaded
    """
    try:
        if ext in CORE_EXTENSIONS:
            conn.execute(f"INSTALL {ext}")
        else:
            conn.execute(f"INSTALL {ext} FROM community")
        conn.execute(f"LOAD {ext}")
    except duckdb.Error:
        # Install can fail offline; the extension may already be installed
        conn.execute(f"LOAD {ext}")


def try_load_extension(conn: duckdb.DuckDBPyConnection, ext: str) -> bool:
    """Load an extension, reporting failure instead of raising."""
    try:
        load_extension(conn, ext)
    except duckdb.Error as e:
        logger.warning(f"DuckDB extension '{ext}' unavailable: {e}")
        return False
    return True


def create_configured_connection(
    config: Config,
    extensions: list[str] | None = None,
    database: str = ":memory:",
) -> duckdb.DuckDBPyConnection:
    """Create DuckDB connection with standard configuration.

    Applies memory limits, threading, and loads extensions.

    Args:
        config: Configuration object
        extensions: Optional list of extensions to load (e.g., ["h3"])
        database: Database path, in-memory by default

    Returns:
        Configured DuckDB connection

    Example:
        >>> from gothameye.config import Config
        >>> config = Config.from_file("config.toml")
        >>> conn = create_configured_connection(config, extensions=["h3"])
        >>> result = conn.execute("SELECT h3_latlng_to_cell_string(40.7589, -73.9851, 9)").fetchone()
    """
    conn = duckdb.connect(database)

    # Apply DuckDB settings from config
    conn.execute(f"SET memory_limit = '{config.duckdb.memory_limit}'")
    conn.execute(f"SET threads = {config.duckdb.threads}")
    conn.execute(f"SET temp_directory = '{config.duckdb.temp_directory}'")
    conn.execute(f"SET max_temp_directory_size = '{config.duckdb.max_temp_directory_size}'")

    for ext in extensions or []:
        load_extension(conn, ext)

    return conn


def init_warehouse(events_parquet: Path, config: Config) -> duckdb.DuckDBPyConnection:
    """Open the incident warehouse from a Parquet export.

    Expected columns: city, occurred_at, offense, law_class, lat, lon.
    The h3 extension is loaded when available; callers check
    `has_h3_functions` before relying on it.

    Raises:
        FileNotFoundError: If events parquet file doesn't exist
    """
    if not events_parquet.exists():
        raise FileNotFoundError(f"Events file not found: {events_parquet}")

    conn = create_configured_connection(config)
    try_load_extension(conn, "h3")

    conn.execute(f"""
        CREATE TABLE {EVENTS_TABLE} AS
        SELECT * FROM '{events_parquet}'
    """)
    return conn


def has_h3_functions(conn: duckdb.DuckDBPyConnection) -> bool:
    """Check whether the h3 extension's scalar functions are usable."""
    try:
        conn.execute("SELECT h3_latlng_to_cell_string(0.0, 0.0, 0)").fetchone()
    except duckdb.Error:
        return False
    return True


def get_event_count(conn: duckdb.DuckDBPyConnection) -> int:
    """Get total event count in the warehouse."""
    result = conn.execute(f"SELECT COUNT(*) FROM {EVENTS_TABLE}").fetchone()
    return result[0] if result else 0
